"""In-process stand-ins for the collaborators outside the booking core"""
from decimal import Decimal
from typing import Any, Dict, List, Optional, Tuple

import structlog

from domain.auth import User
from domain.enums import Permission, Role
from domain.errors import NotFound
from domain.ports import (
    CompanyConfig, CompanyDirectory, NotificationSink, PermissionChecker, UserDirectory
)
from domain.repositories import TaxRepository

logger = structlog.get_logger(__name__)


ROLE_PERMISSIONS = {
    Role.CUSTOMER: {
        Permission.BOOKING_CREATE,
        Permission.PAYMENT_CREATE,
    },
    Role.STAFF: {
        Permission.BOOKING_CREATE,
        Permission.BOOKING_VIEW_ALL,
        Permission.BOOKING_MANAGE,
        Permission.PAYMENT_CREATE,
        Permission.PAYMENT_PROCESS,
        Permission.PAYMENT_VIEW_ALL,
    },
    Role.ADMIN: set(Permission),
}


class InMemoryUserDirectory(UserDirectory):

    def __init__(self, users: Optional[Dict[str, User]] = None):
        self._users: Dict[str, User] = dict(users or {})

    def add(self, user: User) -> None:
        self._users[user.user_id] = user

    async def get_user(self, user_id: str) -> Optional[User]:
        return self._users.get(user_id)


class InMemoryCompanyDirectory(CompanyDirectory):
    """Fee rates kept here, taxes read live from the tax repository"""

    def __init__(self, tax_repository: TaxRepository, currency: str = "GHS"):
        self.tax_repository = tax_repository
        self.currency = currency
        self._fee_rates: Dict[str, Decimal] = {}

    def register_company(self, company_id: str, service_fee_rate: Decimal = Decimal("0")) -> None:
        self._fee_rates[company_id] = Decimal(service_fee_rate)

    async def get_company_fee_and_tax_config(self, company_id: str) -> CompanyConfig:
        if company_id not in self._fee_rates:
            raise NotFound(f"Company {company_id} not found")
        taxes = await self.tax_repository.find_by_company(company_id, active=True)
        return CompanyConfig(
            company_id=company_id,
            service_fee_rate=self._fee_rates[company_id],
            currency=self.currency,
            taxes=taxes
        )


class NullNotificationSink(NotificationSink):
    """Process-wide default: drops every event"""

    async def emit(self, kind: str, payload: Dict[str, Any]) -> None:
        return None


class RecordingNotificationSink(NotificationSink):
    """Keeps emitted events in memory and logs them"""

    def __init__(self):
        self.events: List[Tuple[str, Dict[str, Any]]] = []

    async def emit(self, kind: str, payload: Dict[str, Any]) -> None:
        self.events.append((kind, payload))
        logger.info("notification_emitted", kind=kind, payload=payload)

    def kinds(self) -> List[str]:
        return [kind for kind, _ in self.events]


class RolePermissionChecker(PermissionChecker):

    def __init__(self, role_permissions: Optional[Dict[Role, set]] = None):
        self.role_permissions = role_permissions or ROLE_PERMISSIONS

    async def check(self, user: User, permission: Permission) -> bool:
        return permission in self.role_permissions.get(user.role, set())
