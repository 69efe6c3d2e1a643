"""Gateway Reconciler

Maps asynchronous, possibly duplicated gateway callbacks onto settlement
obligations. The decision itself is the pure function ``reconcile``; the
``GatewayReconciler`` wraps it with authentication, lookup and the shared
``SettlementService.process`` path so a gateway confirmation and a staff
confirmation go through exactly the same code.
"""
import json
from decimal import Decimal, InvalidOperation
from typing import Any, Dict, Optional
from uuid import UUID

import structlog
from pydantic import BaseModel

from application.settlement import SettlementService
from domain.entities import PendingTransaction
from domain.enums import GatewayStatus, ReconciliationOutcome, SettlementDecision, SettlementStatus
from domain.errors import AlreadyProcessed, ExternalSignalRejected
from domain.repositories import PendingTransactionRepository
from domain.value_objects import Actor, from_minor, to_minor
from infrastructure.security import verify_webhook_signature

AMOUNT_MISMATCH = "AmountMismatch"

SUCCESS_EVENTS = {"charge.success"}
FAILURE_EVENTS = {"charge.failed", "charge.abandoned"}


class GatewayEvent(BaseModel):
    """Inbound callback, keyed by the provider's reference"""
    provider_reference: str
    status: GatewayStatus
    amount: Decimal
    currency: Optional[str] = None
    metadata: Dict[str, Any] = {}


class ReconciliationDecision(BaseModel):
    outcome: ReconciliationOutcome
    decision: Optional[SettlementDecision] = None
    reason: Optional[str] = None


class ReconciliationResult(BaseModel):
    outcome: ReconciliationOutcome
    provider_reference: Optional[str] = None
    transaction_id: Optional[UUID] = None
    transaction_status: Optional[SettlementStatus] = None
    reason: Optional[str] = None


def reconcile(stored: Optional[PendingTransaction], event: GatewayEvent) -> ReconciliationDecision:
    """Decide what a callback means for the stored obligation, without side effects"""
    if stored is None:
        return ReconciliationDecision(outcome=ReconciliationOutcome.UNMATCHED)
    if stored.is_terminal():
        return ReconciliationDecision(outcome=ReconciliationOutcome.DUPLICATE)

    currency_differs = event.currency is not None and event.currency.upper() != stored.currency.upper()
    if to_minor(event.amount) != stored.amount_minor or currency_differs:
        return ReconciliationDecision(
            outcome=ReconciliationOutcome.REJECTED,
            decision=SettlementDecision.REJECT,
            reason=AMOUNT_MISMATCH
        )
    if event.status == GatewayStatus.SUCCESS:
        return ReconciliationDecision(
            outcome=ReconciliationOutcome.CONFIRMED,
            decision=SettlementDecision.CONFIRM
        )
    return ReconciliationDecision(
        outcome=ReconciliationOutcome.REJECTED,
        decision=SettlementDecision.REJECT,
        reason=f"Gateway reported {event.status.value}"
    )


class GatewayReconciler:
    """Applies authenticated gateway callbacks"""

    def __init__(
        self,
        settlement: SettlementService,
        repository: PendingTransactionRepository,
        webhook_secret: Optional[str] = None,
        logger=None
    ):
        self.settlement = settlement
        self.repository = repository
        self.webhook_secret = webhook_secret
        self.logger = logger or structlog.get_logger(__name__)

    def authenticate(self, raw_body: bytes, signature: Optional[str]) -> None:
        """Raise ExternalSignalRejected unless the body carries a valid signature"""
        if not verify_webhook_signature(raw_body, signature, self.webhook_secret):
            self.logger.warning("gateway_signature_invalid", has_signature=bool(signature))
            raise ExternalSignalRejected("Invalid webhook signature")

    def parse(self, raw_body: bytes) -> Optional[GatewayEvent]:
        """Gateway payload -> GatewayEvent; None for events that carry no payment outcome"""
        try:
            body = json.loads(raw_body)
            event_name = body["event"]
            data = body["data"]
            reference = str(data["reference"])
            amount = from_minor(int(data["amount"]))
        except (ValueError, KeyError, TypeError, InvalidOperation) as e:
            self.logger.warning("gateway_payload_malformed", error=str(e))
            raise ExternalSignalRejected("Malformed webhook payload")

        if event_name in SUCCESS_EVENTS:
            status = GatewayStatus.SUCCESS if data.get("status", "success") == "success" else GatewayStatus.FAILED
        elif event_name in FAILURE_EVENTS:
            status = GatewayStatus.ABANDONED if event_name == "charge.abandoned" else GatewayStatus.FAILED
        else:
            self.logger.info("gateway_event_ignored", gateway_event=event_name, reference=reference)
            return None

        return GatewayEvent(
            provider_reference=reference,
            status=status,
            amount=amount,
            currency=data.get("currency"),
            metadata=data.get("metadata") or {}
        )

    async def handle_payload(self, raw_body: bytes) -> Optional[ReconciliationResult]:
        """Entry point for an already-authenticated webhook body"""
        try:
            event = self.parse(raw_body)
        except ExternalSignalRejected:
            return None
        if event is None:
            return None
        return await self.handle_callback(
            event.provider_reference, event.status, event.amount, event.metadata, event.currency
        )

    async def handle_callback(
        self,
        provider_reference: str,
        provider_status: GatewayStatus,
        amount: Decimal,
        metadata: Optional[Dict[str, Any]] = None,
        currency: Optional[str] = None
    ) -> ReconciliationResult:
        event = GatewayEvent(
            provider_reference=provider_reference,
            status=provider_status,
            amount=amount,
            currency=currency,
            metadata=metadata or {}
        )
        log = self.logger.bind(provider_reference=provider_reference, provider_status=event.status.value)

        stored = await self.repository.find_by_provider_reference(provider_reference)
        decision = reconcile(stored, event)

        if decision.outcome == ReconciliationOutcome.UNMATCHED:
            log.warning("gateway_callback_unmatched")
            return ReconciliationResult(outcome=decision.outcome, provider_reference=provider_reference)

        if decision.outcome == ReconciliationOutcome.DUPLICATE:
            log.info("gateway_callback_duplicate", transaction_id=str(stored.transaction_id))
            return self._result(ReconciliationOutcome.DUPLICATE, stored)

        if decision.reason == AMOUNT_MISMATCH:
            log.warning(
                "gateway_amount_mismatch",
                expected_minor=stored.amount_minor,
                received_minor=to_minor(event.amount)
            )

        try:
            processed = await self.settlement.process(
                stored.transaction_id,
                decision.decision,
                Actor.gateway(),
                notes=f"Gateway callback {provider_reference}",
                rejection_reason=decision.reason
            )
        except AlreadyProcessed:
            # lost the race to another writer on the same transaction
            log.info("gateway_callback_duplicate", transaction_id=str(stored.transaction_id))
            current = await self.repository.find_by_id(stored.transaction_id)
            return self._result(ReconciliationOutcome.DUPLICATE, current or stored)

        log.info(
            "gateway_callback_applied",
            transaction_id=str(processed.transaction_id),
            outcome=decision.outcome.value
        )
        return self._result(decision.outcome, processed, reason=decision.reason)

    @staticmethod
    def _result(
        outcome: ReconciliationOutcome,
        transaction: PendingTransaction,
        reason: Optional[str] = None
    ) -> ReconciliationResult:
        return ReconciliationResult(
            outcome=outcome,
            provider_reference=transaction.provider_reference,
            transaction_id=transaction.transaction_id,
            transaction_status=transaction.status,
            reason=reason
        )
