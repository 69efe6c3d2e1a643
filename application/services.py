"""Application Services - Business use cases"""
from uuid import UUID
from decimal import Decimal
from typing import List, Optional, Union

import structlog

from application.availability import AvailabilityLedger, Unavailable
from application.settlement import SettlementService
from domain.auth import User
from domain.entities import Resource, Tax, Reservation
from domain.enums import ResourceKind, TaxScope, TimingPlan, CheckOutCondition
from domain.errors import Conflict, NotFound, ValidationError
from domain.ports import CompanyDirectory, NotificationSink
from domain.pricing import quote as price_quote
from domain.repositories import ResourceRepository, TaxRepository, ReservationRepository
from domain.value_objects import Actor, PricingRule, Quote, TimeWindow
from infrastructure.collaborators import NullNotificationSink
from infrastructure.locks import KeyedLock, reservation_key


class ResourceService:
    """Service for Resource use cases"""

    def __init__(self, repository: ResourceRepository, ledger: AvailabilityLedger):
        self.repository = repository
        self.ledger = ledger

    async def create_resource(
        self,
        company_id: str,
        name: str,
        kind: ResourceKind,
        pricing_rules: List[PricingRule],
        is_taxable: bool = True,
        quantity: Optional[int] = None
    ) -> Resource:
        resource = Resource.create(
            company_id=company_id,
            name=name,
            kind=kind,
            pricing_rules=pricing_rules,
            is_taxable=is_taxable,
            quantity=quantity
        )
        return await self.repository.save(resource)

    async def get_resource(self, resource_id: UUID) -> Resource:
        return await self.ledger.get_resource(resource_id)


class TaxService:
    """Service for Tax use cases"""

    def __init__(self, repository: TaxRepository):
        self.repository = repository

    async def create_tax(
        self,
        company_id: str,
        name: str,
        rate: Decimal,
        applies_to: TaxScope = TaxScope.BOTH,
        active: bool = True
    ) -> Tax:
        if not name or not name.strip():
            raise ValidationError("Tax name is required")
        if rate < 0:
            raise ValidationError("Tax rate cannot be negative")
        existing = await self.repository.find_by_company(company_id, active=True)
        if active and any(t.name.strip().lower() == name.strip().lower() for t in existing):
            raise Conflict(f"An active tax named {name} already exists")

        tax = Tax(company_id=company_id, name=name.strip(), rate=rate, applies_to=applies_to, active=active)
        return await self.repository.save(tax)

    async def list_taxes(
        self,
        company_id: str,
        active: Optional[bool] = None,
        applies_to: Optional[TaxScope] = None
    ) -> List[Tax]:
        return await self.repository.find_by_company(company_id, active=active, applies_to=applies_to)

    async def update_tax(
        self,
        tax_id: UUID,
        company_id: str,
        rate: Optional[Decimal] = None,
        active: Optional[bool] = None
    ) -> Tax:
        tax = await self.repository.find_by_id(tax_id)
        if tax is None or tax.company_id != company_id:
            raise NotFound("Tax not found")
        loaded_version = tax.version
        if active and not tax.active:
            others = await self.repository.find_by_company(company_id, active=True)
            if any(t.name.lower() == tax.name.lower() for t in others):
                raise Conflict(f"An active tax named {tax.name} already exists")
        tax.update(rate=rate, active=active)
        return await self.repository.update(tax, expected_version=loaded_version)


class QuoteService:
    """Prices a resource using its company's fee and tax configuration"""

    def __init__(self, ledger: AvailabilityLedger, companies: CompanyDirectory):
        self.ledger = ledger
        self.companies = companies

    async def quote_for(
        self,
        resource: Resource,
        window: Optional[TimeWindow] = None,
        quantity: int = 1,
        duration_units: Optional[int] = None
    ) -> Quote:
        rule = resource.default_rule()
        if window is not None:
            duration_units = window.duration_units(rule.unit)
        elif resource.kind == ResourceKind.FACILITY:
            raise ValidationError("A time window is required to price a facility")
        config = await self.companies.get_company_fee_and_tax_config(resource.company_id)
        return price_quote(
            base_price=rule.amount,
            quantity=quantity,
            duration_units=duration_units or 1,
            taxes=config.taxes,
            company_fee_rate=config.service_fee_rate,
            is_taxable=resource.is_taxable,
            item_kind=resource.kind,
            currency=config.currency
        )

    async def quote(
        self,
        resource_id: UUID,
        window: Optional[TimeWindow] = None,
        quantity: int = 1,
        duration_units: Optional[int] = None
    ) -> Quote:
        resource = await self.ledger.get_resource(resource_id)
        return await self.quote_for(resource, window, quantity, duration_units)


class BookingService:
    """Service for Reservation business use cases"""

    def __init__(
        self,
        repository: ReservationRepository,
        ledger: AvailabilityLedger,
        quotes: QuoteService,
        settlement: SettlementService,
        locks: Optional[KeyedLock] = None,
        notifier: Optional[NotificationSink] = None,
        logger=None
    ):
        self.repository = repository
        self.ledger = ledger
        self.quotes = quotes
        self.settlement = settlement
        self.locks = locks or KeyedLock()
        self.notifier = notifier or NullNotificationSink()
        self.logger = logger or structlog.get_logger(__name__)

    async def create_booking(
        self,
        resource_id: UUID,
        requester: User,
        window: Optional[TimeWindow] = None,
        quantity: int = 1,
        duration_units: Optional[int] = None,
        timing_plan: TimingPlan = TimingPlan.FULL,
        notes: Optional[str] = None,
        owner: Optional[User] = None
    ) -> Union[Reservation, Unavailable]:
        """Price, check and claim in one go; Unavailable when the window or quantity is taken.

        ``owner`` is the customer a staff member books on behalf of.
        """
        owner = owner or requester
        resource = await self.ledger.get_resource(resource_id)
        quote = await self.quotes.quote_for(resource, window, quantity, duration_units)
        actor = requester.as_actor()
        created = []

        async def claim(current: Resource) -> Reservation:
            reservation = Reservation.create(
                resource=current,
                user_id=owner.user_id,
                quote=quote,
                created_by=actor,
                window=window,
                quantity=quantity,
                timing_plan=timing_plan,
                notes=notes
            )
            created.append(await self.repository.save(reservation))
            return reservation

        result = await self.ledger.try_reserve(resource_id, claim, window=window, quantity=quantity)
        if isinstance(result, Unavailable):
            return result

        reservation = created[0]
        self.logger.info(
            "booking_created",
            reservation_id=str(reservation.reservation_id),
            resource_id=str(resource_id),
            actor=actor.label,
            total_minor=reservation.total_minor
        )
        await self._notify("booking_created", reservation)
        return reservation

    async def get_booking(self, reservation_id: UUID, include_deleted: bool = False) -> Reservation:
        reservation = await self.repository.find_by_id(reservation_id, include_deleted=include_deleted)
        if reservation is None:
            raise NotFound("Reservation not found")
        return reservation

    async def list_bookings(self, user_id: Optional[str] = None, include_deleted: bool = False) -> List[Reservation]:
        if user_id is not None:
            reservations = await self.repository.find_by_user(user_id, include_deleted=include_deleted)
        else:
            reservations = await self.repository.find_all(include_deleted=include_deleted)
        return sorted(reservations, key=lambda r: r.created_at, reverse=True)

    async def confirm_booking(self, reservation_id: UUID, actor: Actor) -> Reservation:
        return await self._change(reservation_id, actor, "booking_confirmed", lambda r: r.confirm(actor))

    async def complete_booking(self, reservation_id: UUID, actor: Actor) -> Reservation:
        return await self._change(reservation_id, actor, "booking_completed", lambda r: r.complete(actor))

    async def mark_no_show(self, reservation_id: UUID, actor: Actor) -> Reservation:
        return await self._change(reservation_id, actor, "booking_no_show", lambda r: r.mark_no_show(actor))

    async def check_in(self, reservation_id: UUID, actor: Actor, notes: Optional[str] = None) -> Reservation:
        return await self._change(
            reservation_id, actor, "booking_checked_in", lambda r: r.record_check_in(actor, notes)
        )

    async def check_out(
        self,
        reservation_id: UUID,
        actor: Actor,
        condition: CheckOutCondition = CheckOutCondition.GOOD,
        notes: Optional[str] = None,
        damage_report: Optional[str] = None
    ) -> Reservation:
        return await self._change(
            reservation_id, actor, "booking_checked_out",
            lambda r: r.record_check_out(actor, condition, notes, damage_report)
        )

    async def cancel_booking(self, reservation_id: UUID, actor: Actor, reason: str) -> Reservation:
        """Cancel, release the hold and drop any still-pending obligations"""
        reservation = await self.get_booking(reservation_id)
        cancelled = await self.ledger.release(
            reservation.resource_id,
            lambda: self._apply(reservation_id, lambda r: r.cancel(actor, reason))
        )
        self.logger.info("booking_cancelled", reservation_id=str(reservation_id), actor=actor.label, reason=reason)
        await self._notify("booking_cancelled", cancelled, reason=reason)
        await self.settlement.cancel_open_for_reference(str(reservation_id), Actor.system())
        return cancelled

    async def delete_booking(self, reservation_id: UUID, actor: Actor) -> Reservation:
        """Soft delete; the hold is released immediately"""
        reservation = await self.get_booking(reservation_id)
        deleted = await self.ledger.release(
            reservation.resource_id,
            lambda: self._apply(reservation_id, lambda r: r.soft_delete(actor))
        )
        self.logger.info("booking_deleted", reservation_id=str(reservation_id), actor=actor.label)
        await self._notify("booking_deleted", deleted)
        await self.settlement.cancel_open_for_reference(str(reservation_id), Actor.system())
        return deleted

    async def calendar(self, resource_id: UUID):
        return await self.ledger.committed_windows(resource_id)

    # ==================== PRIVATE METHODS ====================
    async def _apply(self, reservation_id: UUID, mutate) -> Reservation:
        async with self.locks.hold(reservation_key(reservation_id)):
            reservation = await self.get_booking(reservation_id)
            loaded_version = reservation.version
            mutate(reservation)
            return await self.repository.update(reservation, expected_version=loaded_version)

    async def _change(self, reservation_id: UUID, actor: Actor, kind: str, mutate) -> Reservation:
        reservation = await self._apply(reservation_id, mutate)
        self.logger.info(kind, reservation_id=str(reservation_id), actor=actor.label)
        await self._notify(kind, reservation)
        return reservation

    async def _notify(self, kind: str, reservation: Reservation, **extra) -> None:
        payload = {
            "reservation_id": str(reservation.reservation_id),
            "user_id": reservation.user_id,
            "status": reservation.status.value,
            "payment_status": reservation.payment_status.value,
        }
        payload.update(extra)
        await self.notifier.emit(kind, payload)
