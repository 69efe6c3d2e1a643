"""Domain Entities - Aggregates"""
from pydantic import BaseModel, Field
from uuid import UUID, uuid4
from datetime import datetime, timedelta
from typing import Optional, List, Dict, Any, ClassVar, Set, Tuple
from decimal import Decimal

from domain.enums import (
    ResourceKind, PricingUnit, TaxScope, ReservationStatus, PaymentStatus, TransactionType,
    PaymentMethod, TimingPlan, SettlementStatus, CheckOutCondition
)
from domain.errors import ValidationError, InvalidStatusTransition, AlreadyProcessed
from domain.value_objects import (
    Actor, TimeWindow, PricingRule, Quote, StatusChange, CheckRecord, Cancellation,
    from_minor, utcnow
)


def _next_timestamp(previous: datetime) -> datetime:
    """Wall clock, but never behind the previous marker"""
    now = utcnow()
    if now <= previous:
        return previous + timedelta(microseconds=1)
    return now


class Resource(BaseModel):
    """Facility (time-boxed) or inventory item (countable)"""

    resource_id: UUID = Field(default_factory=uuid4)
    company_id: str
    name: str
    kind: ResourceKind
    pricing_rules: List[PricingRule]
    is_taxable: bool = True
    quantity: Optional[int] = Field(default=None, ge=0)

    is_deleted: bool = False
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)
    version: int = 1

    class Config:
        from_attributes = True

    @staticmethod
    def create(
        company_id: str,
        name: str,
        kind: ResourceKind,
        pricing_rules: List[PricingRule],
        is_taxable: bool = True,
        quantity: Optional[int] = None
    ) -> "Resource":
        """Create new resource with validation"""
        if not pricing_rules:
            raise ValidationError("At least one pricing rule is required")
        if kind == ResourceKind.INVENTORY_ITEM and quantity is None:
            raise ValidationError("Inventory items require a quantity")
        if kind == ResourceKind.FACILITY and any(r.unit == PricingUnit.ITEM for r in pricing_rules):
            raise ValidationError("Facilities are priced per hour or per day")
        return Resource(
            company_id=company_id,
            name=name,
            kind=kind,
            pricing_rules=pricing_rules,
            is_taxable=is_taxable,
            quantity=quantity
        )

    def default_rule(self) -> PricingRule:
        """Rule flagged as default, else the first one"""
        for rule in self.pricing_rules:
            if rule.is_default:
                return rule
        return self.pricing_rules[0]

    @property
    def is_countable(self) -> bool:
        return self.kind == ResourceKind.INVENTORY_ITEM


class Tax(BaseModel):
    """Company tax; rate is a percentage"""

    tax_id: UUID = Field(default_factory=uuid4)
    company_id: str
    name: str
    rate: Decimal
    applies_to: TaxScope = TaxScope.BOTH
    active: bool = True

    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)
    version: int = 1

    class Config:
        from_attributes = True

    def applies_to_kind(self, kind: ResourceKind) -> bool:
        return self.applies_to == TaxScope.BOTH or self.applies_to.value == kind.value

    def update(self, rate: Optional[Decimal] = None, active: Optional[bool] = None) -> None:
        if rate is not None:
            if rate < 0:
                raise ValidationError("Tax rate cannot be negative")
            self.rate = rate
        if active is not None:
            self.active = active
        self.updated_at = _next_timestamp(self.updated_at)
        self.version += 1


class Reservation(BaseModel):
    """Reservation Aggregate Root Entity"""

    # Identity
    reservation_id: UUID = Field(default_factory=uuid4)

    # References to other contexts
    resource_id: UUID
    resource_kind: ResourceKind
    user_id: str
    company_id: str

    # Claim
    window: Optional[TimeWindow] = None
    quantity: int = Field(default=1, ge=1)
    duration_units: int = Field(default=1, ge=1)

    # Status axes
    status: ReservationStatus = ReservationStatus.PENDING
    payment_status: PaymentStatus = PaymentStatus.PENDING
    timing_plan: TimingPlan = TimingPlan.FULL

    # Money
    quote: Quote
    refunded_minor: int = 0

    notes: Optional[str] = None
    check_in: Optional[CheckRecord] = None
    check_out: Optional[CheckRecord] = None
    cancellation: Optional[Cancellation] = None
    history: List[StatusChange] = []

    # Metadata
    is_deleted: bool = False
    created_by: Actor
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)
    version: int = 1

    class Config:
        from_attributes = True

    STATUS_TRANSITIONS: ClassVar[Dict[ReservationStatus, Set[ReservationStatus]]] = {
        ReservationStatus.PENDING: {ReservationStatus.CONFIRMED, ReservationStatus.CANCELLED},
        ReservationStatus.CONFIRMED: {
            ReservationStatus.COMPLETED, ReservationStatus.CANCELLED, ReservationStatus.NO_SHOW
        },
    }

    PAYMENT_TRANSITIONS: ClassVar[Dict[PaymentStatus, Set[PaymentStatus]]] = {
        PaymentStatus.PENDING: {PaymentStatus.COMPLETED, PaymentStatus.FAILED},
        PaymentStatus.FAILED: {PaymentStatus.PENDING},
        PaymentStatus.COMPLETED: {PaymentStatus.REFUNDED, PaymentStatus.PARTIAL_REFUND},
        PaymentStatus.PARTIAL_REFUND: {PaymentStatus.REFUNDED},
    }

    # ==================== FACTORY METHOD ====================
    @staticmethod
    def create(
        resource: Resource,
        user_id: str,
        quote: Quote,
        created_by: Actor,
        window: Optional[TimeWindow] = None,
        quantity: int = 1,
        timing_plan: TimingPlan = TimingPlan.FULL,
        notes: Optional[str] = None
    ) -> "Reservation":
        """Create new reservation with validation"""
        if resource.kind == ResourceKind.FACILITY and window is None:
            raise ValidationError("Facility reservations require a time window")
        if quantity < 1:
            raise ValidationError("Quantity must be at least 1")

        return Reservation(
            resource_id=resource.resource_id,
            resource_kind=resource.kind,
            user_id=user_id,
            company_id=resource.company_id,
            window=window,
            quantity=quantity,
            duration_units=quote.duration_units,
            timing_plan=timing_plan,
            quote=quote,
            notes=notes,
            created_by=created_by
        )

    # ==================== STATE TRANSITION METHODS ====================
    def confirm(self, actor: Actor) -> None:
        self._transition(ReservationStatus.CONFIRMED, actor)

    def cancel(self, actor: Actor, reason: str) -> None:
        if not reason or not reason.strip():
            raise ValidationError("Cancellation reason is required")
        self._transition(ReservationStatus.CANCELLED, actor, note=reason)
        self.cancellation = Cancellation(reason=reason, cancelled_by=actor)

    def complete(self, actor: Actor) -> None:
        self._transition(ReservationStatus.COMPLETED, actor)

    def mark_no_show(self, actor: Actor) -> None:
        self._transition(ReservationStatus.NO_SHOW, actor)

    def record_check_in(self, actor: Actor, notes: Optional[str] = None) -> None:
        if self.status != ReservationStatus.CONFIRMED:
            raise InvalidStatusTransition(
                f"Cannot check in reservation with status {self.status.value}"
            )
        if self.check_in is not None:
            raise InvalidStatusTransition("Reservation is already checked in")
        self.check_in = CheckRecord(verified_by=actor, notes=notes)
        self._touch()

    def record_check_out(
        self,
        actor: Actor,
        condition: CheckOutCondition = CheckOutCondition.GOOD,
        notes: Optional[str] = None,
        damage_report: Optional[str] = None
    ) -> None:
        if self.check_in is None:
            raise InvalidStatusTransition("Cannot check out before check-in")
        if self.check_out is not None:
            raise InvalidStatusTransition("Reservation is already checked out")
        if condition == CheckOutCondition.DAMAGED and not damage_report:
            raise ValidationError("A damage report is required when condition is damaged")
        self.check_out = CheckRecord(
            verified_by=actor, notes=notes, condition=condition, damage_report=damage_report
        )
        self._touch()

    def soft_delete(self, actor: Actor) -> None:
        if self.is_deleted:
            raise InvalidStatusTransition("Reservation is already deleted")
        self.is_deleted = True
        self.history.append(
            StatusChange(field="is_deleted", from_value="false", to_value="true", actor=actor)
        )
        self._touch()

    def set_payment_status(self, new_status: PaymentStatus, actor: Actor, note: Optional[str] = None) -> None:
        """Only the settlement ledger calls this"""
        allowed = self.PAYMENT_TRANSITIONS.get(self.payment_status, set())
        if new_status not in allowed:
            raise InvalidStatusTransition(
                f"Cannot move payment status from {self.payment_status.value} to {new_status.value}"
            )
        self.history.append(StatusChange(
            field="payment_status",
            from_value=self.payment_status.value,
            to_value=new_status.value,
            actor=actor,
            note=note
        ))
        self.payment_status = new_status
        self._touch()

    def apply_refund(self, amount_minor: int, paid_minor: int, actor: Actor) -> None:
        """Record money returned out of ``paid_minor``"""
        if self.payment_status not in (PaymentStatus.COMPLETED, PaymentStatus.PARTIAL_REFUND):
            raise InvalidStatusTransition(
                f"Cannot refund a reservation with payment status {self.payment_status.value}"
            )
        refundable = paid_minor - self.refunded_minor
        if amount_minor > refundable:
            raise ValidationError(f"Refund exceeds the refundable amount {from_minor(refundable)}")

        self.refunded_minor += amount_minor
        note = f"refund {from_minor(amount_minor)}"
        target = PaymentStatus.REFUNDED if self.refunded_minor >= paid_minor else PaymentStatus.PARTIAL_REFUND
        if target != self.payment_status:
            self.set_payment_status(target, actor, note=note)
        else:
            self.history.append(StatusChange(
                field="refunded_minor",
                from_value=str(self.refunded_minor - amount_minor),
                to_value=str(self.refunded_minor),
                actor=actor,
                note=note
            ))
            self._touch()

    # ==================== QUERY METHODS ====================
    def is_holding(self) -> bool:
        """True while the reservation occupies its window or quantity"""
        return not self.is_deleted and self.status in (
            ReservationStatus.PENDING, ReservationStatus.CONFIRMED
        )

    def is_cancellable(self) -> bool:
        return ReservationStatus.CANCELLED in self.STATUS_TRANSITIONS.get(self.status, set())

    @property
    def total_minor(self) -> int:
        return self.quote.total_minor

    @property
    def total(self) -> Decimal:
        return from_minor(self.quote.total_minor)

    # ==================== PRIVATE METHODS ====================
    def _transition(self, new_status: ReservationStatus, actor: Actor, note: Optional[str] = None) -> None:
        if self.is_deleted:
            raise InvalidStatusTransition("Cannot change a deleted reservation")
        allowed = self.STATUS_TRANSITIONS.get(self.status, set())
        if new_status not in allowed:
            raise InvalidStatusTransition(
                f"Cannot move reservation from {self.status.value} to {new_status.value}"
            )
        self.history.append(StatusChange(
            field="status",
            from_value=self.status.value,
            to_value=new_status.value,
            actor=actor,
            note=note
        ))
        self.status = new_status
        self._touch()

    def _touch(self) -> None:
        self.updated_at = _next_timestamp(self.updated_at)
        self.version += 1


class PendingTransaction(BaseModel):
    """Settlement obligation: an intent to pay recorded before money moves"""

    # Identity
    transaction_id: UUID = Field(default_factory=uuid4)

    # References
    user_id: str
    company_id: str
    resource_id: Optional[UUID] = None
    type: TransactionType
    reference_id: str

    # Payment
    amount_minor: int = Field(gt=0)
    currency: str
    payment_method: PaymentMethod
    timing_plan: TimingPlan = TimingPlan.FULL
    payment_details: Dict[str, Any] = {}
    provider_reference: Optional[str] = None

    # Processing
    status: SettlementStatus = SettlementStatus.PENDING
    notes: Optional[str] = None
    processed_by: Optional[Actor] = None
    processed_at: Optional[datetime] = None
    rejection_reason: Optional[str] = None
    history: List[StatusChange] = []

    # Metadata
    is_deleted: bool = False
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)
    version: int = 1

    class Config:
        from_attributes = True

    TERMINAL: ClassVar[Tuple[SettlementStatus, ...]] = (
        SettlementStatus.CONFIRMED, SettlementStatus.REJECTED, SettlementStatus.CANCELLED
    )

    # ==================== STATE TRANSITION METHODS ====================
    def confirm(self, actor: Actor, notes: Optional[str] = None) -> None:
        self._ensure_pending()
        self._finish(SettlementStatus.CONFIRMED, actor, notes)

    def reject(self, actor: Actor, reason: Optional[str], notes: Optional[str] = None) -> None:
        self._ensure_pending()
        if not reason or not reason.strip():
            raise ValidationError("Rejection reason is required when rejecting a transaction")
        self.rejection_reason = reason
        self._finish(SettlementStatus.REJECTED, actor, notes)

    def cancel(self, actor: Actor) -> None:
        self._ensure_pending()
        self._finish(SettlementStatus.CANCELLED, actor, None)

    # ==================== QUERY METHODS ====================
    def is_terminal(self) -> bool:
        return self.status in self.TERMINAL

    @property
    def amount(self) -> Decimal:
        return from_minor(self.amount_minor)

    # ==================== PRIVATE METHODS ====================
    def _ensure_pending(self) -> None:
        if self.is_terminal():
            raise AlreadyProcessed(
                f"Transaction has already been processed (status {self.status.value})"
            )

    def _finish(self, new_status: SettlementStatus, actor: Actor, notes: Optional[str]) -> None:
        self.history.append(StatusChange(
            field="status",
            from_value=self.status.value,
            to_value=new_status.value,
            actor=actor,
            note=self.rejection_reason if new_status == SettlementStatus.REJECTED else None
        ))
        self.status = new_status
        self.processed_by = actor
        self.processed_at = utcnow()
        if notes:
            self.notes = notes
        self.updated_at = _next_timestamp(self.updated_at)
        self.version += 1
