"""Interfaces to collaborators outside the booking core"""
from abc import ABC, abstractmethod
from decimal import Decimal
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field

from domain.auth import User
from domain.entities import Tax
from domain.enums import Permission


class CompanyConfig(BaseModel):
    """Fee and tax configuration of a company, snapshotted per quote"""
    company_id: str
    service_fee_rate: Decimal = Field(default=Decimal("0"), ge=0, lt=1)
    currency: str = "GHS"
    taxes: List[Tax] = []


class UserDirectory(ABC):

    @abstractmethod
    async def get_user(self, user_id: str) -> Optional[User]:
        """Find a user by id"""
        pass


class CompanyDirectory(ABC):

    @abstractmethod
    async def get_company_fee_and_tax_config(self, company_id: str) -> CompanyConfig:
        """Fee rate and taxes for a company; raises NotFound for unknown companies"""
        pass


class NotificationSink(ABC):

    @abstractmethod
    async def emit(self, kind: str, payload: Dict[str, Any]) -> None:
        """Hand a domain event to the notification collaborator"""
        pass


class PermissionChecker(ABC):

    @abstractmethod
    async def check(self, user: User, permission: Permission) -> bool:
        """Whether the user holds the permission"""
        pass
