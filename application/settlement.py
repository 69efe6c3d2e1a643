"""Settlement Ledger

Records how a reservation will be paid before any money moves, and is the
only writer of a reservation's payment status. Processing is serialized per
transaction id so that a staff decision and a gateway callback racing on the
same record resolve to a single winner.
"""
import math
from contextlib import nullcontext
from decimal import Decimal
from typing import Any, Dict, List, Optional, Tuple
from uuid import UUID, uuid4

import structlog
from pydantic import BaseModel, Field

from domain.entities import PendingTransaction, Reservation
from domain.enums import (
    PaymentMethod, PaymentStatus, ReservationStatus, SettlementDecision, SettlementStatus,
    TimingPlan, TransactionType
)
from domain.errors import AlreadyProcessed, InvalidStatusTransition, NotFound, ValidationError
from domain.ports import NotificationSink
from domain.repositories import PendingTransactionRepository, ReservationRepository
from domain.value_objects import Actor, from_minor, to_minor
from infrastructure.collaborators import NullNotificationSink
from infrastructure.locks import KeyedLock, reservation_key, transaction_key

RESERVATION_TYPES = (TransactionType.BOOKING, TransactionType.RENTAL)


class PaymentPolicy(BaseModel):
    """Minimum first installment per timing plan, as a percentage of the total"""
    advance_min_percent: Decimal = Field(default=Decimal("30"), gt=0, le=100)
    split_min_percent: Decimal = Field(default=Decimal("50"), gt=0, le=100)

    def first_installment_minor(self, plan: TimingPlan, total_minor: int) -> int:
        if plan == TimingPlan.ADVANCE:
            percent = self.advance_min_percent
        elif plan == TimingPlan.SPLIT:
            percent = self.split_min_percent
        else:
            return total_minor
        return int(math.ceil(Decimal(total_minor) * percent / 100))


class SettlementSummary(BaseModel):
    """Money attributed to one reservation"""
    total_minor: int
    confirmed_minor: int
    pending_minor: int
    has_rejections: bool

    @property
    def outstanding_minor(self) -> int:
        return max(0, self.total_minor - self.confirmed_minor - self.pending_minor)


def summarize(total_minor: int, transactions: List[PendingTransaction]) -> SettlementSummary:
    return SettlementSummary(
        total_minor=total_minor,
        confirmed_minor=sum(
            t.amount_minor for t in transactions if t.status == SettlementStatus.CONFIRMED
        ),
        pending_minor=sum(
            t.amount_minor for t in transactions if t.status == SettlementStatus.PENDING
        ),
        has_rejections=any(t.status == SettlementStatus.REJECTED for t in transactions)
    )


class SettlementService:
    """Create, process and cancel settlement obligations"""

    def __init__(
        self,
        repository: PendingTransactionRepository,
        reservation_repository: ReservationRepository,
        locks: Optional[KeyedLock] = None,
        notifier: Optional[NotificationSink] = None,
        policy: Optional[PaymentPolicy] = None,
        currency: str = "GHS",
        logger=None
    ):
        self.repository = repository
        self.reservation_repository = reservation_repository
        self.locks = locks or KeyedLock()
        self.notifier = notifier or NullNotificationSink()
        self.policy = policy or PaymentPolicy()
        self.currency = currency
        self.logger = logger or structlog.get_logger(__name__)

    # ==================== CREATE ====================
    async def create(
        self,
        owner: Actor,
        user_id: str,
        company_id: str,
        type: TransactionType,
        reference_id: str,
        amount: Decimal,
        payment_method: PaymentMethod,
        timing_plan: TimingPlan = TimingPlan.FULL,
        currency: Optional[str] = None,
        payment_details: Optional[Dict[str, Any]] = None,
        notes: Optional[str] = None,
        resource_id: Optional[UUID] = None,
        provider_reference: Optional[str] = None
    ) -> PendingTransaction:
        """Record an obligation in status pending"""
        try:
            payment_method = PaymentMethod(payment_method)
            timing_plan = TimingPlan(timing_plan)
            type = TransactionType(type)
        except ValueError as e:
            raise ValidationError(str(e))

        amount_minor = to_minor(Decimal(amount))
        if amount_minor <= 0:
            raise ValidationError("Amount must be greater than 0")
        if not reference_id:
            raise ValidationError("A reference is required")

        if payment_method == PaymentMethod.GATEWAY and not provider_reference:
            provider_reference = f"PT-{uuid4().hex}"

        guard = nullcontext()
        if type in RESERVATION_TYPES:
            reservation = await self._load_reservation(reference_id)
            guard = self.locks.hold(reservation_key(reservation.reservation_id))

        # validation and save under one lock
        async with guard:
            if type in RESERVATION_TYPES:
                reservation = await self._load_reservation(reference_id)
                await self._validate_installment(reservation, amount_minor, timing_plan, owner)
                reference_id = str(reservation.reservation_id)
                company_id = reservation.company_id
                user_id = reservation.user_id
                resource_id = reservation.resource_id
                currency = currency or reservation.quote.currency

            transaction = PendingTransaction(
                user_id=user_id,
                company_id=company_id,
                resource_id=resource_id,
                type=type,
                reference_id=str(reference_id),
                amount_minor=amount_minor,
                currency=currency or self.currency,
                payment_method=payment_method,
                timing_plan=timing_plan,
                payment_details=payment_details or {},
                provider_reference=provider_reference,
                notes=notes
            )
            await self.repository.save(transaction)

        self.logger.info(
            "pending_transaction_created",
            transaction_id=str(transaction.transaction_id),
            reference_id=transaction.reference_id,
            amount_minor=amount_minor,
            method=payment_method.value,
            plan=timing_plan.value,
            actor=owner.label
        )
        await self.notifier.emit("pending_transaction_created", {
            "transaction_id": str(transaction.transaction_id),
            "reference_id": transaction.reference_id,
            "amount": str(transaction.amount),
            "payment_method": payment_method.value,
        })
        return transaction

    # ==================== PROCESS ====================
    async def process(
        self,
        transaction_id: UUID,
        decision: SettlementDecision,
        actor: Actor,
        notes: Optional[str] = None,
        rejection_reason: Optional[str] = None
    ) -> PendingTransaction:
        """Confirm or reject; terminal either way"""
        async with self.locks.hold(transaction_key(transaction_id)):
            transaction = await self.get(transaction_id)
            loaded_version = transaction.version

            if decision == SettlementDecision.CONFIRM:
                transaction.confirm(actor, notes)
            else:
                transaction.reject(actor, rejection_reason, notes)

            await self.repository.update(transaction, expected_version=loaded_version)

        self.logger.info(
            "pending_transaction_processed",
            transaction_id=str(transaction_id),
            status=transaction.status.value,
            actor=actor.label,
            rejection_reason=transaction.rejection_reason
        )
        await self.notifier.emit("pending_transaction_processed", {
            "transaction_id": str(transaction_id),
            "status": transaction.status.value,
            "processed_by": actor.label,
        })

        if transaction.type in RESERVATION_TYPES:
            await self.settle_reservation(transaction.reference_id, actor)
        return transaction

    async def cancel(self, transaction_id: UUID, actor: Actor) -> PendingTransaction:
        async with self.locks.hold(transaction_key(transaction_id)):
            transaction = await self.get(transaction_id)
            loaded_version = transaction.version
            transaction.cancel(actor)
            await self.repository.update(transaction, expected_version=loaded_version)

        self.logger.info(
            "pending_transaction_cancelled",
            transaction_id=str(transaction_id),
            actor=actor.label
        )
        await self.notifier.emit("pending_transaction_cancelled", {
            "transaction_id": str(transaction_id),
            "cancelled_by": actor.label,
        })
        return transaction

    async def cancel_open_for_reference(self, reference_id: str, actor: Actor) -> List[PendingTransaction]:
        """Cancel every still-pending obligation of a reservation"""
        cancelled = []
        for transaction in await self.repository.find_by_reference(str(reference_id)):
            if transaction.status != SettlementStatus.PENDING:
                continue
            try:
                cancelled.append(await self.cancel(transaction.transaction_id, actor))
            except AlreadyProcessed:
                self.logger.info(
                    "pending_transaction_cancel_skipped",
                    transaction_id=str(transaction.transaction_id)
                )
        return cancelled

    # ==================== RESERVATION PAYMENT STATUS ====================
    async def settle_reservation(self, reference_id: str, actor: Actor) -> Optional[Reservation]:
        """Recompute the reservation's payment status from its confirmed obligations"""
        try:
            reservation_id = UUID(str(reference_id))
        except ValueError:
            self.logger.warning("settlement_reference_invalid", reference_id=reference_id)
            return None

        events = []
        async with self.locks.hold(reservation_key(reservation_id)):
            reservation = await self.reservation_repository.find_by_id(reservation_id, include_deleted=True)
            if reservation is None:
                self.logger.warning("settlement_reservation_missing", reference_id=reference_id)
                return None
            loaded_version = reservation.version
            summary = summarize(
                reservation.total_minor,
                await self.repository.find_by_reference(str(reservation_id))
            )

            threshold = self.policy.first_installment_minor(reservation.timing_plan, reservation.total_minor)
            if (
                reservation.status == ReservationStatus.PENDING
                and not reservation.is_deleted
                and summary.confirmed_minor >= threshold
            ):
                reservation.confirm(Actor.system())
                events.append("booking_confirmed")

            if reservation.payment_status == PaymentStatus.PENDING:
                if summary.confirmed_minor >= reservation.total_minor:
                    reservation.set_payment_status(PaymentStatus.COMPLETED, actor)
                    events.append("payment_completed")
                elif (
                    summary.confirmed_minor == 0
                    and summary.pending_minor == 0
                    and summary.has_rejections
                ):
                    reservation.set_payment_status(PaymentStatus.FAILED, actor)
                    events.append("payment_failed")

            if reservation.version != loaded_version:
                await self.reservation_repository.update(reservation, expected_version=loaded_version)

        for kind in events:
            await self.notifier.emit(kind, {
                "reservation_id": str(reservation.reservation_id),
                "user_id": reservation.user_id,
                "confirmed_amount": str(from_minor(summary.confirmed_minor)),
                "total": str(reservation.total),
            })
        if events:
            self.logger.info(
                "reservation_settled",
                reservation_id=str(reservation.reservation_id),
                payment_status=reservation.payment_status.value,
                status=reservation.status.value,
                confirmed_minor=summary.confirmed_minor
            )
        return reservation

    async def record_refund(self, reservation_id: UUID, amount: Decimal, actor: Actor) -> Reservation:
        """completed -> partial_refund / refunded"""
        amount_minor = to_minor(Decimal(amount))
        if amount_minor <= 0:
            raise ValidationError("Refund amount must be greater than 0")

        async with self.locks.hold(reservation_key(reservation_id)):
            reservation = await self._load_reservation(str(reservation_id), include_deleted=True)
            loaded_version = reservation.version
            summary = await self.summary_for(reservation)
            reservation.apply_refund(amount_minor, summary.confirmed_minor, actor)
            await self.reservation_repository.update(reservation, expected_version=loaded_version)

        self.logger.info(
            "refund_recorded",
            reservation_id=str(reservation_id),
            amount_minor=amount_minor,
            payment_status=reservation.payment_status.value,
            actor=actor.label
        )
        await self.notifier.emit("payment_refunded", {
            "reservation_id": str(reservation_id),
            "amount": str(from_minor(amount_minor)),
            "payment_status": reservation.payment_status.value,
        })
        return reservation

    # ==================== QUERIES ====================
    async def get(self, transaction_id: UUID) -> PendingTransaction:
        transaction = await self.repository.find_by_id(transaction_id)
        if transaction is None:
            raise NotFound("Pending transaction not found")
        return transaction

    async def list_for_company(
        self,
        company_id: str,
        status: Optional[SettlementStatus] = None,
        type: Optional[TransactionType] = None,
        page: int = 1,
        limit: int = 10
    ) -> Tuple[List[PendingTransaction], int]:
        return await self.repository.search(
            company_id=company_id, status=status, type=type, page=page, limit=limit
        )

    async def list_for_user(
        self,
        user_id: str,
        status: Optional[SettlementStatus] = None,
        type: Optional[TransactionType] = None,
        page: int = 1,
        limit: int = 10
    ) -> Tuple[List[PendingTransaction], int]:
        return await self.repository.search(
            user_id=user_id, status=status, type=type, page=page, limit=limit
        )

    async def summary_for(self, reservation: Reservation) -> SettlementSummary:
        return summarize(
            reservation.total_minor,
            await self.repository.find_by_reference(str(reservation.reservation_id))
        )

    # ==================== PRIVATE METHODS ====================
    async def _load_reservation(self, reference_id: str, include_deleted: bool = False) -> Reservation:
        try:
            reservation_id = UUID(str(reference_id))
        except ValueError:
            raise ValidationError(f"Invalid reservation reference {reference_id}")
        reservation = await self.reservation_repository.find_by_id(
            reservation_id, include_deleted=include_deleted
        )
        if reservation is None:
            raise NotFound("Reservation not found")
        return reservation

    async def _validate_installment(
        self,
        reservation: Reservation,
        amount_minor: int,
        timing_plan: TimingPlan,
        owner: Actor
    ) -> None:
        """Caller holds the reservation lock"""
        if not reservation.is_holding():
            raise InvalidStatusTransition(
                f"Cannot take payment for a reservation with status {reservation.status.value}"
            )
        if reservation.payment_status not in (PaymentStatus.PENDING, PaymentStatus.FAILED):
            raise InvalidStatusTransition(
                f"Reservation payment is already {reservation.payment_status.value}"
            )
        if timing_plan != reservation.timing_plan:
            raise ValidationError(
                f"Reservation is paid on the {reservation.timing_plan.value} plan, not {timing_plan.value}"
            )

        summary = await self.summary_for(reservation)
        if amount_minor > summary.outstanding_minor:
            raise ValidationError(
                f"Amount exceeds the outstanding balance {from_minor(summary.outstanding_minor)}"
            )
        if timing_plan == TimingPlan.FULL and amount_minor != summary.outstanding_minor:
            raise ValidationError(
                f"Full payment must cover the outstanding balance {from_minor(summary.outstanding_minor)}"
            )
        is_first_installment = summary.confirmed_minor == 0 and summary.pending_minor == 0
        if is_first_installment:
            minimum = self.policy.first_installment_minor(timing_plan, reservation.total_minor)
            if amount_minor < min(minimum, summary.outstanding_minor):
                raise ValidationError(
                    f"First installment must be at least {from_minor(minimum)} on the {timing_plan.value} plan"
                )

        if reservation.payment_status == PaymentStatus.FAILED:
            loaded_version = reservation.version
            reservation.set_payment_status(PaymentStatus.PENDING, owner, note="payment retried")
            await self.reservation_repository.update(reservation, expected_version=loaded_version)
