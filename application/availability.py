"""Availability Ledger

Answers whether a window or quantity of a resource is free and, when it is,
claims it while the per-resource lock is held. Availability is derived from
the reservations that currently hold the resource, so a released hold is
visible to the very next check.
"""
from typing import Awaitable, Callable, List, Optional, TypeVar, Union
from uuid import UUID

import structlog
from pydantic import BaseModel

from domain.entities import Resource, Reservation
from domain.errors import ResourceNotFound, ValidationError
from domain.repositories import ResourceRepository, ReservationRepository
from domain.value_objects import CalendarSlot, TimeWindow
from infrastructure.locks import KeyedLock, resource_key

T = TypeVar("T")


class ReservationHold(BaseModel):
    """Claim granted by the ledger"""
    resource_id: UUID
    reservation_id: UUID
    window: Optional[TimeWindow] = None
    quantity: int = 1


class Unavailable(BaseModel):
    """Normal negative answer; callers branch on it"""
    resource_id: UUID
    reason: str
    conflicting_reservation_ids: List[UUID] = []
    available_quantity: Optional[int] = None


class AvailabilityLedger:
    """Check-and-claim serialized per resource"""

    def __init__(
        self,
        resource_repository: ResourceRepository,
        reservation_repository: ReservationRepository,
        locks: Optional[KeyedLock] = None,
        logger=None
    ):
        self.resource_repository = resource_repository
        self.reservation_repository = reservation_repository
        self.locks = locks or KeyedLock()
        self.logger = logger or structlog.get_logger(__name__)

    def locked(self, resource_id: UUID):
        """Hold the resource's lock for a check-and-claim or a release"""
        return self.locks.hold(resource_key(resource_id))

    async def get_resource(self, resource_id: UUID) -> Resource:
        resource = await self.resource_repository.find_by_id(resource_id)
        if resource is None or resource.is_deleted:
            raise ResourceNotFound(f"Resource {resource_id} not found")
        return resource

    async def check(
        self,
        resource: Resource,
        window: Optional[TimeWindow] = None,
        quantity: int = 1
    ) -> Optional[Unavailable]:
        """None when the claim is possible. Callers must hold the resource lock."""
        holding = await self.reservation_repository.find_holding_by_resource(resource.resource_id)

        if resource.is_countable:
            if quantity < 1:
                raise ValidationError("Quantity must be at least 1")
            available = self._available_quantity(resource, holding)
            if quantity > available:
                return Unavailable(
                    resource_id=resource.resource_id,
                    reason=f"Requested quantity {quantity} exceeds available quantity {available}",
                    available_quantity=available
                )
            return None

        if window is None:
            raise ValidationError("A time window is required for this resource")
        conflicts = [
            r.reservation_id for r in holding
            if r.window is not None and r.window.overlaps(window)
        ]
        if conflicts:
            return Unavailable(
                resource_id=resource.resource_id,
                reason="Requested window overlaps an existing reservation",
                conflicting_reservation_ids=conflicts
            )
        return None

    async def try_reserve(
        self,
        resource_id: UUID,
        claim: Callable[[Resource], Awaitable[Reservation]],
        window: Optional[TimeWindow] = None,
        quantity: int = 1
    ) -> Union[ReservationHold, Unavailable]:
        """Atomically check availability and run ``claim`` to persist the reservation"""
        async with self.locked(resource_id):
            resource = await self.get_resource(resource_id)
            unavailable = await self.check(resource, window=window, quantity=quantity)
            if unavailable is not None:
                self.logger.info(
                    "hold_refused",
                    resource_id=str(resource_id),
                    reason=unavailable.reason
                )
                return unavailable

            reservation = await claim(resource)
            self.logger.info(
                "hold_granted",
                resource_id=str(resource_id),
                reservation_id=str(reservation.reservation_id)
            )
            return ReservationHold(
                resource_id=resource_id,
                reservation_id=reservation.reservation_id,
                window=window,
                quantity=quantity
            )

    async def release(self, resource_id: UUID, apply: Callable[[], Awaitable[T]]) -> T:
        """Run a change that stops a reservation holding, under the resource lock"""
        async with self.locked(resource_id):
            result = await apply()
        self.logger.info("hold_released", resource_id=str(resource_id))
        return result

    async def committed_windows(self, resource_id: UUID) -> List[CalendarSlot]:
        """Pending and confirmed windows for public display"""
        await self.get_resource(resource_id)
        holding = await self.reservation_repository.find_holding_by_resource(resource_id)
        slots = [
            CalendarSlot(start=r.window.start, end=r.window.end, status=r.status)
            for r in holding if r.window is not None
        ]
        return sorted(slots, key=lambda s: s.start)

    async def available_quantity(self, resource_id: UUID) -> int:
        resource = await self.get_resource(resource_id)
        holding = await self.reservation_repository.find_holding_by_resource(resource_id)
        return self._available_quantity(resource, holding)

    @staticmethod
    def _available_quantity(resource: Resource, holding: List[Reservation]) -> int:
        committed = sum(r.quantity for r in holding)
        return max(0, (resource.quantity or 0) - committed)
