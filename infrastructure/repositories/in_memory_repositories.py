"""In-Memory Repository Implementations

Entities are stored as copies so a caller holding a loaded aggregate cannot
change stored state without going through ``update``.
"""
from typing import Optional, List, Dict, Tuple
from uuid import UUID

from domain.repositories import (
    ResourceRepository, TaxRepository, ReservationRepository, PendingTransactionRepository
)
from domain.entities import Resource, Tax, Reservation, PendingTransaction
from domain.enums import SettlementStatus, TaxScope, TransactionType
from domain.errors import Conflict, NotFound


def _check_version(stored, expected_version: Optional[int], label: str) -> None:
    if expected_version is not None and stored.version != expected_version:
        raise Conflict(
            f"{label} was modified concurrently (expected version {expected_version}, found {stored.version})"
        )


class InMemoryResourceRepository(ResourceRepository):
    """In-memory implementation of ResourceRepository"""

    def __init__(self):
        self._storage: Dict[UUID, Resource] = {}

    async def save(self, resource: Resource) -> Resource:
        self._storage[resource.resource_id] = resource.model_copy(deep=True)
        return resource

    async def find_by_id(self, resource_id: UUID) -> Optional[Resource]:
        resource = self._storage.get(resource_id)
        return resource.model_copy(deep=True) if resource else None

    async def find_by_company(self, company_id: str) -> List[Resource]:
        return [
            r.model_copy(deep=True) for r in self._storage.values()
            if r.company_id == company_id and not r.is_deleted
        ]


class InMemoryTaxRepository(TaxRepository):
    """In-memory implementation of TaxRepository"""

    def __init__(self):
        self._storage: Dict[UUID, Tax] = {}

    async def save(self, tax: Tax) -> Tax:
        self._storage[tax.tax_id] = tax.model_copy(deep=True)
        return tax

    async def find_by_id(self, tax_id: UUID) -> Optional[Tax]:
        tax = self._storage.get(tax_id)
        return tax.model_copy(deep=True) if tax else None

    async def find_by_company(
        self,
        company_id: str,
        active: Optional[bool] = None,
        applies_to: Optional[TaxScope] = None
    ) -> List[Tax]:
        results = []
        for tax in self._storage.values():
            if tax.company_id != company_id:
                continue
            if active is not None and tax.active != active:
                continue
            if applies_to is not None and tax.applies_to != applies_to:
                continue
            results.append(tax.model_copy(deep=True))
        return sorted(results, key=lambda t: t.created_at)

    async def update(self, tax: Tax, expected_version: Optional[int] = None) -> Tax:
        stored = self._storage.get(tax.tax_id)
        if stored is None:
            raise NotFound("Tax not found")
        _check_version(stored, expected_version, "Tax")
        self._storage[tax.tax_id] = tax.model_copy(deep=True)
        return tax


class InMemoryReservationRepository(ReservationRepository):
    """In-memory implementation of ReservationRepository"""

    def __init__(self):
        self._storage: Dict[UUID, Reservation] = {}

    async def save(self, reservation: Reservation) -> Reservation:
        """Save reservation to memory"""
        self._storage[reservation.reservation_id] = reservation.model_copy(deep=True)
        return reservation

    async def find_by_id(self, reservation_id: UUID, include_deleted: bool = False) -> Optional[Reservation]:
        """Find reservation by ID"""
        reservation = self._storage.get(reservation_id)
        if reservation is None or (reservation.is_deleted and not include_deleted):
            return None
        return reservation.model_copy(deep=True)

    async def find_by_user(self, user_id: str, include_deleted: bool = False) -> List[Reservation]:
        """Find reservations by requester"""
        return [
            r.model_copy(deep=True) for r in self._storage.values()
            if r.user_id == user_id and (include_deleted or not r.is_deleted)
        ]

    async def find_all(self, include_deleted: bool = False) -> List[Reservation]:
        """Find all reservations"""
        return [
            r.model_copy(deep=True) for r in self._storage.values()
            if include_deleted or not r.is_deleted
        ]

    async def find_holding_by_resource(self, resource_id: UUID) -> List[Reservation]:
        return [
            r.model_copy(deep=True) for r in self._storage.values()
            if r.resource_id == resource_id and r.is_holding()
        ]

    async def update(self, reservation: Reservation, expected_version: Optional[int] = None) -> Reservation:
        """Update reservation"""
        stored = self._storage.get(reservation.reservation_id)
        if stored is None:
            raise NotFound("Reservation not found")
        _check_version(stored, expected_version, "Reservation")
        self._storage[reservation.reservation_id] = reservation.model_copy(deep=True)
        return reservation


class InMemoryPendingTransactionRepository(PendingTransactionRepository):
    """In-memory implementation of PendingTransactionRepository"""

    def __init__(self):
        self._storage: Dict[UUID, PendingTransaction] = {}

    async def save(self, transaction: PendingTransaction) -> PendingTransaction:
        self._storage[transaction.transaction_id] = transaction.model_copy(deep=True)
        return transaction

    async def find_by_id(self, transaction_id: UUID) -> Optional[PendingTransaction]:
        transaction = self._storage.get(transaction_id)
        if transaction is None or transaction.is_deleted:
            return None
        return transaction.model_copy(deep=True)

    async def find_by_provider_reference(self, provider_reference: str) -> Optional[PendingTransaction]:
        for transaction in self._storage.values():
            if transaction.provider_reference == provider_reference and not transaction.is_deleted:
                return transaction.model_copy(deep=True)
        return None

    async def find_by_reference(self, reference_id: str) -> List[PendingTransaction]:
        return [
            t.model_copy(deep=True) for t in self._storage.values()
            if t.reference_id == reference_id and not t.is_deleted
        ]

    async def search(
        self,
        company_id: Optional[str] = None,
        user_id: Optional[str] = None,
        status: Optional[SettlementStatus] = None,
        type: Optional[TransactionType] = None,
        page: int = 1,
        limit: int = 10
    ) -> Tuple[List[PendingTransaction], int]:
        matches = [
            t for t in self._storage.values()
            if not t.is_deleted
            and (company_id is None or t.company_id == company_id)
            and (user_id is None or t.user_id == user_id)
            and (status is None or t.status == status)
            and (type is None or t.type == type)
        ]
        matches.sort(key=lambda t: t.created_at, reverse=True)
        skip = (page - 1) * limit
        return [t.model_copy(deep=True) for t in matches[skip:skip + limit]], len(matches)

    async def update(
        self,
        transaction: PendingTransaction,
        expected_version: Optional[int] = None
    ) -> PendingTransaction:
        stored = self._storage.get(transaction.transaction_id)
        if stored is None:
            raise NotFound("Pending transaction not found")
        _check_version(stored, expected_version, "Pending transaction")
        self._storage[transaction.transaction_id] = transaction.model_copy(deep=True)
        return transaction
