"""Domain Repository Interfaces"""
from abc import ABC, abstractmethod
from typing import Optional, List, Tuple
from uuid import UUID

from domain.entities import Resource, Tax, Reservation, PendingTransaction
from domain.enums import SettlementStatus, TaxScope, TransactionType


class ResourceRepository(ABC):
    """Repository interface for Resource"""

    @abstractmethod
    async def save(self, resource: Resource) -> Resource:
        """Save resource"""
        pass

    @abstractmethod
    async def find_by_id(self, resource_id: UUID) -> Optional[Resource]:
        """Find resource by ID, soft-deleted ones included"""
        pass

    @abstractmethod
    async def find_by_company(self, company_id: str) -> List[Resource]:
        """Find resources of a company"""
        pass


class TaxRepository(ABC):
    """Repository interface for Tax"""

    @abstractmethod
    async def save(self, tax: Tax) -> Tax:
        """Save tax"""
        pass

    @abstractmethod
    async def find_by_id(self, tax_id: UUID) -> Optional[Tax]:
        """Find tax by ID"""
        pass

    @abstractmethod
    async def find_by_company(
        self,
        company_id: str,
        active: Optional[bool] = None,
        applies_to: Optional[TaxScope] = None
    ) -> List[Tax]:
        """Find taxes of a company, oldest first"""
        pass

    @abstractmethod
    async def update(self, tax: Tax, expected_version: Optional[int] = None) -> Tax:
        """Update tax"""
        pass


class ReservationRepository(ABC):
    """Repository interface for Reservation Aggregate"""

    @abstractmethod
    async def save(self, reservation: Reservation) -> Reservation:
        """Save reservation"""
        pass

    @abstractmethod
    async def find_by_id(self, reservation_id: UUID, include_deleted: bool = False) -> Optional[Reservation]:
        """Find reservation by ID"""
        pass

    @abstractmethod
    async def find_by_user(self, user_id: str, include_deleted: bool = False) -> List[Reservation]:
        """Find reservations by requester"""
        pass

    @abstractmethod
    async def find_all(self, include_deleted: bool = False) -> List[Reservation]:
        """Find all reservations"""
        pass

    @abstractmethod
    async def find_holding_by_resource(self, resource_id: UUID) -> List[Reservation]:
        """Reservations that currently occupy the resource (pending/confirmed, not deleted)"""
        pass

    @abstractmethod
    async def update(self, reservation: Reservation, expected_version: Optional[int] = None) -> Reservation:
        """Update reservation; a stale expected_version raises Conflict"""
        pass


class PendingTransactionRepository(ABC):
    """Repository interface for PendingTransaction"""

    @abstractmethod
    async def save(self, transaction: PendingTransaction) -> PendingTransaction:
        """Save pending transaction"""
        pass

    @abstractmethod
    async def find_by_id(self, transaction_id: UUID) -> Optional[PendingTransaction]:
        """Find pending transaction by ID"""
        pass

    @abstractmethod
    async def find_by_provider_reference(self, provider_reference: str) -> Optional[PendingTransaction]:
        """Find pending transaction by gateway reference"""
        pass

    @abstractmethod
    async def find_by_reference(self, reference_id: str) -> List[PendingTransaction]:
        """Find every obligation attributed to a reservation or purchase"""
        pass

    @abstractmethod
    async def search(
        self,
        company_id: Optional[str] = None,
        user_id: Optional[str] = None,
        status: Optional[SettlementStatus] = None,
        type: Optional[TransactionType] = None,
        page: int = 1,
        limit: int = 10
    ) -> Tuple[List[PendingTransaction], int]:
        """Filtered page, newest first, plus the total match count"""
        pass

    @abstractmethod
    async def update(
        self,
        transaction: PendingTransaction,
        expected_version: Optional[int] = None
    ) -> PendingTransaction:
        """Update pending transaction; a stale expected_version raises Conflict"""
        pass
