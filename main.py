import uuid
from decimal import Decimal
from datetime import datetime, timedelta
from typing import List, Optional
from uuid import UUID

import structlog
from fastapi import FastAPI, HTTPException, Depends, Request, BackgroundTasks, Header, Query
from fastapi.responses import JSONResponse
from fastapi.security import OAuth2PasswordRequestForm
from pydantic import ValidationError as PydanticValidationError

from api.schemas import (
    # Resources & taxes
    CreateResourceRequest, ResourceResponse, PricingRuleRequest,
    CreateTaxRequest, UpdateTaxRequest, TaxResponse,
    # Quotes & bookings
    QuoteRequest, QuoteResponse, CreateBookingRequest, CancelBookingRequest,
    CheckInRequest, CheckOutRequest, RefundRequest, ReservationResponse,
    StatusChangeResponse, CalendarSlotResponse,
    # Settlement
    CreatePendingTransactionRequest, ProcessPendingTransactionRequest,
    PendingTransactionResponse, PendingTransactionPage, WebhookResponse,
    # Auth
    Token, UserResponse
)

from api.dependencies import (
    get_current_active_user, require_permission, permission_checker,
    fake_users_db, fake_companies_db, get_user, build_user_directory
)
from config import settings
from infrastructure.logging_config import configure_logging
from infrastructure.security import verify_password, create_access_token, ACCESS_TOKEN_EXPIRE_MINUTES
from infrastructure.locks import KeyedLock
from infrastructure.collaborators import InMemoryCompanyDirectory, RecordingNotificationSink
from domain.auth import User

from application.availability import AvailabilityLedger, Unavailable
from application.settlement import SettlementService, PaymentPolicy, RESERVATION_TYPES
from application.reconciler import GatewayReconciler
from application.services import ResourceService, TaxService, QuoteService, BookingService
from infrastructure.repositories.in_memory_repositories import (
    InMemoryResourceRepository, InMemoryTaxRepository,
    InMemoryReservationRepository, InMemoryPendingTransactionRepository
)
from domain.entities import Reservation, PendingTransaction, Resource, Tax
from domain.enums import (
    ReservationStatus, PaymentStatus, SettlementStatus, SettlementDecision, TimingPlan,
    PaymentMethod, TransactionType, ResourceKind, PricingUnit, TaxScope, Permission
)
from domain.errors import BookingError, ExternalSignalRejected, Forbidden, NotFound, ValidationError
from domain.value_objects import PricingRule, TimeWindow, from_minor

configure_logging(settings.LOG_LEVEL, settings.LOG_JSON)
logger = structlog.get_logger(__name__)

app = FastAPI(
    title="Rental & Settlement API",
    description="Resource booking, pricing and payment settlement",
    version="1.0.0"
)

# Initialize repositories
resource_repo = InMemoryResourceRepository()
tax_repo = InMemoryTaxRepository()
reservation_repo = InMemoryReservationRepository()
transaction_repo = InMemoryPendingTransactionRepository()

# Shared collaborators; one lock table for every service
locks = KeyedLock()
notifier = RecordingNotificationSink()
user_directory = build_user_directory()
company_directory = InMemoryCompanyDirectory(tax_repo, currency=settings.DEFAULT_CURRENCY)
for _company_id, _company in fake_companies_db.items():
    company_directory.register_company(_company_id, Decimal(_company["service_fee_rate"]))

ledger = AvailabilityLedger(resource_repo, reservation_repo, locks)
settlement_service = SettlementService(
    transaction_repo,
    reservation_repo,
    locks=locks,
    notifier=notifier,
    policy=PaymentPolicy(
        advance_min_percent=settings.ADVANCE_MIN_PERCENT,
        split_min_percent=settings.SPLIT_MIN_PERCENT
    ),
    currency=settings.DEFAULT_CURRENCY
)
quote_service = QuoteService(ledger, company_directory)
booking_service = BookingService(
    reservation_repo, ledger, quote_service, settlement_service, locks=locks, notifier=notifier
)
reconciler = GatewayReconciler(settlement_service, transaction_repo, settings.GATEWAY_WEBHOOK_SECRET)

# Dependency injection
def get_resource_service() -> ResourceService:
    return ResourceService(resource_repo, ledger)

def get_tax_service() -> TaxService:
    return TaxService(tax_repo)

def get_quote_service() -> QuoteService:
    return quote_service

def get_booking_service() -> BookingService:
    return booking_service

def get_settlement_service() -> SettlementService:
    return settlement_service

def get_reconciler() -> GatewayReconciler:
    return reconciler

# ============================================================================
# MIDDLEWARE
# ============================================================================

@app.middleware("http")
async def correlation_id_middleware(request: Request, call_next):
    """Bind a correlation id to every log line of the request"""
    correlation_id = request.headers.get("X-Correlation-ID") or uuid.uuid4().hex
    structlog.contextvars.clear_contextvars()
    structlog.contextvars.bind_contextvars(
        correlation_id=correlation_id,
        method=request.method,
        path=request.url.path
    )
    try:
        response = await call_next(request)
    except Exception:
        logger.exception("unhandled_error")
        return JSONResponse(
            status_code=500,
            content={"detail": "Internal server error", "correlation_id": correlation_id},
            headers={"X-Correlation-ID": correlation_id}
        )
    response.headers["X-Correlation-ID"] = correlation_id
    return response

# ============================================================================
# HEALTH & ENUM REFERENCE ENDPOINTS
# ============================================================================

@app.get("/api/health", tags=["Health"])
async def health_check():
    """Health check endpoint"""
    return {"status": "healthy", "message": "API is running"}

@app.get("/api/enums/reservation-status", tags=["Enum Reference"])
async def get_reservation_statuses():
    """Get all ReservationStatus enum values"""
    return {
        "values": [item.value for item in ReservationStatus],
        "description": "Reservation status values: pending, confirmed, completed, cancelled, no_show"
    }

@app.get("/api/enums/payment-status", tags=["Enum Reference"])
async def get_payment_statuses():
    """Get all PaymentStatus enum values"""
    return {
        "values": [item.value for item in PaymentStatus],
        "description": "Payment status values: pending, completed, failed, refunded, partial_refund"
    }

@app.get("/api/enums/settlement-status", tags=["Enum Reference"])
async def get_settlement_statuses():
    """Get all pending transaction status values"""
    return {
        "values": [item.value for item in SettlementStatus],
        "description": "Pending transaction status values: pending, confirmed, rejected, cancelled"
    }

@app.get("/api/enums/timing-plan", tags=["Enum Reference"])
async def get_timing_plans():
    """Get all TimingPlan enum values"""
    return {
        "values": [item.value for item in TimingPlan],
        "description": "Payment timing values: full, advance, split"
    }

@app.get("/api/enums/payment-method", tags=["Enum Reference"])
async def get_payment_methods():
    """Get all PaymentMethod enum values"""
    return {
        "values": [item.value for item in PaymentMethod],
        "description": "Payment method values: gateway, cash, cheque"
    }

@app.get("/api/enums/transaction-type", tags=["Enum Reference"])
async def get_transaction_types():
    """Get all TransactionType enum values"""
    return {
        "values": [item.value for item in TransactionType],
        "description": "Transaction type values: booking, rental, subscription, purchase"
    }

@app.get("/api/enums/pricing-unit", tags=["Enum Reference"])
async def get_pricing_units():
    """Get all PricingUnit enum values"""
    return {
        "values": [item.value for item in PricingUnit],
        "description": "Pricing unit values: hour, day, item"
    }

# ============================================================================
# AUTH ENDPOINTS
# ============================================================================

@app.post("/token", response_model=Token, tags=["Auth"])
async def login_for_access_token(form_data: OAuth2PasswordRequestForm = Depends()):
    user = get_user(fake_users_db, form_data.username)
    if not user or not verify_password(form_data.password, user.hashed_password):
        raise HTTPException(
            status_code=401,
            detail="Incorrect username or password",
            headers={"WWW-Authenticate": "Bearer"},
        )
    access_token_expires = timedelta(minutes=ACCESS_TOKEN_EXPIRE_MINUTES)
    access_token = create_access_token(
        data={"sub": user.username}, expires_delta=access_token_expires
    )
    return {"access_token": access_token, "token_type": "bearer"}

@app.get("/users/me", response_model=UserResponse, tags=["Auth"])
async def read_users_me(current_user: User = Depends(get_current_active_user)):
    return UserResponse(
        user_id=current_user.user_id,
        username=current_user.username,
        company_id=current_user.company_id,
        role=current_user.role.value,
        email=current_user.email,
        full_name=current_user.full_name,
        disabled=current_user.disabled
    )

# ============================================================================
# RESOURCE ENDPOINTS
# ============================================================================

@app.post("/api/resources", response_model=ResourceResponse, status_code=201, tags=["Resources"])
async def create_resource(
    request: CreateResourceRequest,
    service: ResourceService = Depends(get_resource_service),
    current_user: User = Depends(require_permission(Permission.RESOURCE_MANAGE))
):
    """Create a facility or an inventory item"""
    try:
        resource = await service.create_resource(
            company_id=current_user.company_id,
            name=request.name,
            kind=request.kind,
            pricing_rules=[
                PricingRule(amount=rule.amount, unit=rule.unit, is_default=rule.is_default)
                for rule in request.pricing_rules
            ],
            is_taxable=request.is_taxable,
            quantity=request.quantity
        )
        return await _resource_to_response(resource)
    except BookingError as e:
        raise _http_error(e)

@app.get("/api/resources/{resource_id}", response_model=ResourceResponse, tags=["Resources"])
async def get_resource(
    resource_id: UUID,
    service: ResourceService = Depends(get_resource_service),
    current_user: User = Depends(get_current_active_user)
):
    """Get resource by ID"""
    try:
        resource = await service.get_resource(resource_id)
        return await _resource_to_response(resource)
    except BookingError as e:
        raise _http_error(e)

@app.get("/api/facilities/{resource_id}/calendar", response_model=List[CalendarSlotResponse], tags=["Resources"])
async def get_facility_calendar(
    resource_id: UUID,
    service: BookingService = Depends(get_booking_service)
):
    """Committed windows of a facility, for public display"""
    try:
        slots = await service.calendar(resource_id)
        return [CalendarSlotResponse(start=s.start, end=s.end, status=s.status.value) for s in slots]
    except BookingError as e:
        raise _http_error(e)

# ============================================================================
# TAX ENDPOINTS
# ============================================================================

@app.post("/api/taxes", response_model=TaxResponse, status_code=201, tags=["Taxes"])
async def create_tax(
    request: CreateTaxRequest,
    service: TaxService = Depends(get_tax_service),
    current_user: User = Depends(require_permission(Permission.TAX_MANAGE))
):
    """Create a company tax"""
    try:
        tax = await service.create_tax(
            company_id=current_user.company_id,
            name=request.name,
            rate=request.rate,
            applies_to=request.applies_to,
            active=request.active
        )
        return _tax_to_response(tax)
    except BookingError as e:
        raise _http_error(e)

@app.get("/api/taxes", response_model=List[TaxResponse], tags=["Taxes"])
async def list_taxes(
    active: Optional[bool] = None,
    applies_to: Optional[TaxScope] = None,
    service: TaxService = Depends(get_tax_service),
    current_user: User = Depends(get_current_active_user)
):
    """List the caller's company taxes"""
    taxes = await service.list_taxes(current_user.company_id, active=active, applies_to=applies_to)
    return [_tax_to_response(t) for t in taxes]

@app.patch("/api/taxes/{tax_id}", response_model=TaxResponse, tags=["Taxes"])
async def update_tax(
    tax_id: UUID,
    request: UpdateTaxRequest,
    service: TaxService = Depends(get_tax_service),
    current_user: User = Depends(require_permission(Permission.TAX_MANAGE))
):
    """Change a tax rate or switch it on/off"""
    try:
        tax = await service.update_tax(
            tax_id, current_user.company_id, rate=request.rate, active=request.active
        )
        return _tax_to_response(tax)
    except BookingError as e:
        raise _http_error(e)

# ============================================================================
# QUOTE & BOOKING ENDPOINTS
# ============================================================================

@app.post("/api/quotes", response_model=QuoteResponse, tags=["Bookings"])
async def create_quote(
    request: QuoteRequest,
    service: QuoteService = Depends(get_quote_service),
    current_user: User = Depends(get_current_active_user)
):
    """Price a resource without reserving it"""
    try:
        quote = await service.quote(
            request.resource_id,
            window=_window(request.start, request.end),
            quantity=request.quantity,
            duration_units=request.duration_units
        )
        return QuoteResponse(**quote.as_display())
    except BookingError as e:
        raise _http_error(e)

@app.post("/api/bookings", response_model=ReservationResponse, status_code=201, tags=["Bookings"])
async def create_booking(
    request: CreateBookingRequest,
    service: BookingService = Depends(get_booking_service),
    current_user: User = Depends(require_permission(Permission.BOOKING_CREATE))
):
    """Reserve a facility window or an inventory quantity; 409 when unavailable"""
    try:
        owner = None
        if request.user_id and request.user_id != current_user.user_id:
            if not await permission_checker.check(current_user, Permission.BOOKING_MANAGE):
                raise Forbidden("Only staff can book on behalf of another user")
            owner = await user_directory.get_user(request.user_id)
            if owner is None:
                raise NotFound(f"User {request.user_id} not found")

        result = await service.create_booking(
            resource_id=request.resource_id,
            requester=current_user,
            window=_window(request.start, request.end),
            quantity=request.quantity,
            duration_units=request.duration_units,
            timing_plan=request.timing_plan,
            notes=request.notes,
            owner=owner
        )
        if isinstance(result, Unavailable):
            return JSONResponse(status_code=409, content=_unavailable_content(result))
        return _reservation_to_response(result)
    except BookingError as e:
        raise _http_error(e)

@app.get("/api/bookings", response_model=List[ReservationResponse], tags=["Bookings"])
async def list_bookings(
    include_deleted: bool = False,
    service: BookingService = Depends(get_booking_service),
    current_user: User = Depends(get_current_active_user)
):
    """Own reservations; staff see their company's"""
    if await permission_checker.check(current_user, Permission.BOOKING_VIEW_ALL):
        reservations = await service.list_bookings(include_deleted=include_deleted)
        reservations = [r for r in reservations if r.company_id == current_user.company_id]
    else:
        reservations = await service.list_bookings(user_id=current_user.user_id)
    return [_reservation_to_response(r) for r in reservations]

@app.get("/api/bookings/{reservation_id}", response_model=ReservationResponse, tags=["Bookings"])
async def get_booking(
    reservation_id: UUID,
    service: BookingService = Depends(get_booking_service),
    current_user: User = Depends(get_current_active_user)
):
    """Get reservation by ID"""
    try:
        reservation = await service.get_booking(reservation_id)
        await _ensure_booking_access(current_user, reservation)
        return _reservation_to_response(reservation)
    except BookingError as e:
        raise _http_error(e)

@app.post("/api/bookings/{reservation_id}/confirm", response_model=ReservationResponse, tags=["Bookings"])
async def confirm_booking(
    reservation_id: UUID,
    service: BookingService = Depends(get_booking_service),
    current_user: User = Depends(require_permission(Permission.BOOKING_MANAGE))
):
    """Manually confirm a pending reservation"""
    try:
        await _ensure_booking_access(current_user, await service.get_booking(reservation_id))
        reservation = await service.confirm_booking(reservation_id, current_user.as_actor())
        return _reservation_to_response(reservation)
    except BookingError as e:
        raise _http_error(e)

@app.post("/api/bookings/{reservation_id}/cancel", response_model=ReservationResponse, tags=["Bookings"])
async def cancel_booking(
    reservation_id: UUID,
    request: CancelBookingRequest,
    service: BookingService = Depends(get_booking_service),
    current_user: User = Depends(get_current_active_user)
):
    """Cancel a reservation; its owner or staff"""
    try:
        await _ensure_booking_access(current_user, await service.get_booking(reservation_id))
        reservation = await service.cancel_booking(reservation_id, current_user.as_actor(), request.reason)
        return _reservation_to_response(reservation)
    except BookingError as e:
        raise _http_error(e)

@app.post("/api/bookings/{reservation_id}/complete", response_model=ReservationResponse, tags=["Bookings"])
async def complete_booking(
    reservation_id: UUID,
    service: BookingService = Depends(get_booking_service),
    current_user: User = Depends(require_permission(Permission.BOOKING_MANAGE))
):
    """Mark a confirmed reservation completed"""
    try:
        await _ensure_booking_access(current_user, await service.get_booking(reservation_id))
        reservation = await service.complete_booking(reservation_id, current_user.as_actor())
        return _reservation_to_response(reservation)
    except BookingError as e:
        raise _http_error(e)

@app.post("/api/bookings/{reservation_id}/no-show", response_model=ReservationResponse, tags=["Bookings"])
async def mark_no_show(
    reservation_id: UUID,
    service: BookingService = Depends(get_booking_service),
    current_user: User = Depends(require_permission(Permission.BOOKING_MANAGE))
):
    """Mark customer as no-show"""
    try:
        await _ensure_booking_access(current_user, await service.get_booking(reservation_id))
        reservation = await service.mark_no_show(reservation_id, current_user.as_actor())
        return _reservation_to_response(reservation)
    except BookingError as e:
        raise _http_error(e)

@app.post("/api/bookings/{reservation_id}/check-in", response_model=ReservationResponse, tags=["Bookings"])
async def check_in(
    reservation_id: UUID,
    request: CheckInRequest,
    service: BookingService = Depends(get_booking_service),
    current_user: User = Depends(require_permission(Permission.BOOKING_MANAGE))
):
    """Record check-in"""
    try:
        await _ensure_booking_access(current_user, await service.get_booking(reservation_id))
        reservation = await service.check_in(reservation_id, current_user.as_actor(), notes=request.notes)
        return _reservation_to_response(reservation)
    except BookingError as e:
        raise _http_error(e)

@app.post("/api/bookings/{reservation_id}/check-out", response_model=ReservationResponse, tags=["Bookings"])
async def check_out(
    reservation_id: UUID,
    request: CheckOutRequest,
    service: BookingService = Depends(get_booking_service),
    current_user: User = Depends(require_permission(Permission.BOOKING_MANAGE))
):
    """Record check-out and the returned condition"""
    try:
        await _ensure_booking_access(current_user, await service.get_booking(reservation_id))
        reservation = await service.check_out(
            reservation_id,
            current_user.as_actor(),
            condition=request.condition,
            notes=request.notes,
            damage_report=request.damage_report
        )
        return _reservation_to_response(reservation)
    except BookingError as e:
        raise _http_error(e)

@app.delete("/api/bookings/{reservation_id}", response_model=ReservationResponse, tags=["Bookings"])
async def delete_booking(
    reservation_id: UUID,
    service: BookingService = Depends(get_booking_service),
    current_user: User = Depends(require_permission(Permission.BOOKING_MANAGE))
):
    """Soft delete a reservation"""
    try:
        await _ensure_booking_access(current_user, await service.get_booking(reservation_id))
        reservation = await service.delete_booking(reservation_id, current_user.as_actor())
        return _reservation_to_response(reservation)
    except BookingError as e:
        raise _http_error(e)

@app.post("/api/bookings/{reservation_id}/refunds", response_model=ReservationResponse, tags=["Bookings"])
async def record_refund(
    reservation_id: UUID,
    request: RefundRequest,
    service: SettlementService = Depends(get_settlement_service),
    current_user: User = Depends(require_permission(Permission.PAYMENT_REFUND))
):
    """Record a full or partial refund of a paid reservation"""
    try:
        reservation = await service.record_refund(reservation_id, request.amount, current_user.as_actor())
        return _reservation_to_response(reservation)
    except BookingError as e:
        raise _http_error(e)

# ============================================================================
# PENDING TRANSACTION ENDPOINTS
# ============================================================================

@app.post("/api/pending-transactions", response_model=PendingTransactionResponse, status_code=201, tags=["Payments"])
async def create_pending_transaction(
    request: CreatePendingTransactionRequest,
    service: SettlementService = Depends(get_settlement_service),
    bookings: BookingService = Depends(get_booking_service),
    current_user: User = Depends(require_permission(Permission.PAYMENT_CREATE))
):
    """Record how a reservation (or other purchase) will be paid"""
    try:
        if request.type in RESERVATION_TYPES:
            reservation = await bookings.get_booking(_parse_uuid(request.reference_id))
            await _ensure_booking_access(current_user, reservation)

        transaction = await service.create(
            owner=current_user.as_actor(),
            user_id=current_user.user_id,
            company_id=current_user.company_id,
            type=request.type,
            reference_id=request.reference_id,
            amount=request.amount,
            payment_method=request.payment_method,
            timing_plan=request.timing_plan,
            currency=request.currency,
            payment_details=request.payment_details,
            notes=request.notes,
            provider_reference=request.provider_reference
        )
        return _transaction_to_response(transaction)
    except BookingError as e:
        raise _http_error(e)

@app.get("/api/pending-transactions", response_model=PendingTransactionPage, tags=["Payments"])
async def list_pending_transactions(
    status: Optional[SettlementStatus] = None,
    type: Optional[TransactionType] = None,
    page: int = Query(1, ge=1),
    limit: int = Query(10, ge=1, le=100),
    service: SettlementService = Depends(get_settlement_service),
    current_user: User = Depends(require_permission(Permission.PAYMENT_VIEW_ALL))
):
    """Company obligations, newest first"""
    transactions, total = await service.list_for_company(
        current_user.company_id, status=status, type=type, page=page, limit=limit
    )
    return PendingTransactionPage(
        transactions=[_transaction_to_response(t) for t in transactions],
        total=total,
        page=page,
        limit=limit
    )

@app.get("/api/pending-transactions/mine", response_model=PendingTransactionPage, tags=["Payments"])
async def list_my_pending_transactions(
    status: Optional[SettlementStatus] = None,
    type: Optional[TransactionType] = None,
    page: int = Query(1, ge=1),
    limit: int = Query(10, ge=1, le=100),
    service: SettlementService = Depends(get_settlement_service),
    current_user: User = Depends(get_current_active_user)
):
    """The caller's own obligations"""
    transactions, total = await service.list_for_user(
        current_user.user_id, status=status, type=type, page=page, limit=limit
    )
    return PendingTransactionPage(
        transactions=[_transaction_to_response(t) for t in transactions],
        total=total,
        page=page,
        limit=limit
    )

@app.get("/api/pending-transactions/{transaction_id}", response_model=PendingTransactionResponse, tags=["Payments"])
async def get_pending_transaction(
    transaction_id: UUID,
    service: SettlementService = Depends(get_settlement_service),
    current_user: User = Depends(get_current_active_user)
):
    """Get pending transaction by ID"""
    try:
        transaction = await service.get(transaction_id)
        await _ensure_transaction_access(current_user, transaction, Permission.PAYMENT_VIEW_ALL)
        return _transaction_to_response(transaction)
    except BookingError as e:
        raise _http_error(e)

@app.put("/api/pending-transactions/{transaction_id}/process", response_model=PendingTransactionResponse, tags=["Payments"])
async def process_pending_transaction(
    transaction_id: UUID,
    request: ProcessPendingTransactionRequest,
    service: SettlementService = Depends(get_settlement_service),
    current_user: User = Depends(require_permission(Permission.PAYMENT_PROCESS))
):
    """Staff confirmation or rejection; 400 once terminal"""
    try:
        if request.status == SettlementStatus.CONFIRMED:
            decision = SettlementDecision.CONFIRM
        elif request.status == SettlementStatus.REJECTED:
            decision = SettlementDecision.REJECT
        else:
            raise ValidationError("Status must be confirmed or rejected")

        transaction = await service.get(transaction_id)
        if transaction.company_id != current_user.company_id:
            raise Forbidden("Transaction belongs to another company")

        transaction = await service.process(
            transaction_id,
            decision,
            current_user.as_actor(),
            notes=request.notes,
            rejection_reason=request.rejection_reason
        )
        return _transaction_to_response(transaction)
    except BookingError as e:
        raise _http_error(e)

@app.put("/api/pending-transactions/{transaction_id}/cancel", response_model=PendingTransactionResponse, tags=["Payments"])
async def cancel_pending_transaction(
    transaction_id: UUID,
    service: SettlementService = Depends(get_settlement_service),
    current_user: User = Depends(get_current_active_user)
):
    """Withdraw a still-pending obligation; its owner or staff"""
    try:
        transaction = await service.get(transaction_id)
        await _ensure_transaction_access(current_user, transaction, Permission.PAYMENT_PROCESS)
        transaction = await service.cancel(transaction_id, current_user.as_actor())
        return _transaction_to_response(transaction)
    except BookingError as e:
        raise _http_error(e)

# ============================================================================
# GATEWAY WEBHOOK
# ============================================================================

@app.post("/api/transactions/webhook", response_model=WebhookResponse, tags=["Payments"])
async def gateway_webhook(
    request: Request,
    background_tasks: BackgroundTasks,
    signature: Optional[str] = Header(None, alias=settings.GATEWAY_SIGNATURE_HEADER),
    gateway: GatewayReconciler = Depends(get_reconciler)
):
    """Signature-authenticated gateway callback, processed after the response"""
    payload = await request.body()
    try:
        gateway.authenticate(payload, signature)
    except ExternalSignalRejected as e:
        raise _http_error(e)

    background_tasks.add_task(_process_gateway_payload, gateway, payload)
    return WebhookResponse(status="accepted", message="Webhook queued for processing")

async def _process_gateway_payload(gateway: GatewayReconciler, payload: bytes) -> None:
    try:
        result = await gateway.handle_payload(payload)
    except BookingError as e:
        logger.error("gateway_webhook_failed", error=e.message, code=e.code)
        return
    if result is not None:
        logger.info(
            "gateway_webhook_processed",
            outcome=result.outcome.value,
            provider_reference=result.provider_reference
        )

# ============================================================================
# HELPER FUNCTIONS
# ============================================================================

def _http_error(e: BookingError) -> HTTPException:
    """Map a core error onto its HTTP status"""
    return HTTPException(status_code=e.status_code, detail=e.message)

def _window(start: Optional[datetime], end: Optional[datetime]) -> Optional[TimeWindow]:
    if start is None and end is None:
        return None
    if start is None or end is None:
        raise ValidationError("Both start and end are required")
    try:
        return TimeWindow(start=start, end=end)
    except PydanticValidationError as e:
        raise ValidationError(e.errors()[0]["msg"])

def _parse_uuid(value: str) -> UUID:
    try:
        return UUID(str(value))
    except ValueError:
        raise ValidationError(f"Invalid reservation reference {value}")

async def _ensure_booking_access(user: User, reservation: Reservation) -> None:
    """Owner, or staff of the owning company"""
    if reservation.user_id == user.user_id:
        return
    if (
        reservation.company_id == user.company_id
        and await permission_checker.check(user, Permission.BOOKING_VIEW_ALL)
    ):
        return
    raise Forbidden("Not allowed to access this reservation")

async def _ensure_transaction_access(user: User, transaction: PendingTransaction, permission: Permission) -> None:
    if transaction.user_id == user.user_id:
        return
    if transaction.company_id == user.company_id and await permission_checker.check(user, permission):
        return
    raise Forbidden("Not allowed to access this transaction")

def _unavailable_content(result: Unavailable) -> dict:
    return {
        "detail": result.reason,
        "resource_id": str(result.resource_id),
        "conflicting_reservation_ids": [str(i) for i in result.conflicting_reservation_ids],
        "available_quantity": result.available_quantity,
    }

async def _resource_to_response(resource: Resource) -> ResourceResponse:
    """Convert Resource entity to ResourceResponse"""
    available = None
    if resource.kind == ResourceKind.INVENTORY_ITEM:
        available = await ledger.available_quantity(resource.resource_id)
    return ResourceResponse(
        resource_id=resource.resource_id,
        company_id=resource.company_id,
        name=resource.name,
        kind=resource.kind.value,
        pricing_rules=[
            PricingRuleRequest(amount=r.amount, unit=r.unit, is_default=r.is_default)
            for r in resource.pricing_rules
        ],
        is_taxable=resource.is_taxable,
        quantity=resource.quantity,
        available_quantity=available,
        created_at=resource.created_at,
        updated_at=resource.updated_at,
        version=resource.version
    )

def _tax_to_response(tax: Tax) -> TaxResponse:
    """Convert Tax entity to TaxResponse"""
    return TaxResponse(
        tax_id=tax.tax_id,
        company_id=tax.company_id,
        name=tax.name,
        rate=tax.rate,
        applies_to=tax.applies_to.value,
        active=tax.active,
        created_at=tax.created_at,
        updated_at=tax.updated_at,
        version=tax.version
    )

def _reservation_to_response(reservation: Reservation) -> ReservationResponse:
    """Convert Reservation entity to ReservationResponse"""
    window = reservation.window
    return ReservationResponse(
        reservation_id=reservation.reservation_id,
        resource_id=reservation.resource_id,
        resource_kind=reservation.resource_kind.value,
        user_id=reservation.user_id,
        company_id=reservation.company_id,
        start=window.start if window else None,
        end=window.end if window else None,
        quantity=reservation.quantity,
        duration_units=reservation.duration_units,
        status=reservation.status.value,
        payment_status=reservation.payment_status.value,
        timing_plan=reservation.timing_plan.value,
        quote=QuoteResponse(**reservation.quote.as_display()),
        total=reservation.total,
        refunded=from_minor(reservation.refunded_minor),
        notes=reservation.notes,
        checked_in_at=reservation.check_in.time if reservation.check_in else None,
        checked_out_at=reservation.check_out.time if reservation.check_out else None,
        cancellation_reason=reservation.cancellation.reason if reservation.cancellation else None,
        history=[
            StatusChangeResponse(
                field=change.field,
                from_value=change.from_value,
                to_value=change.to_value,
                actor=change.actor.label,
                at=change.at,
                note=change.note
            )
            for change in reservation.history
        ],
        is_deleted=reservation.is_deleted,
        created_by=reservation.created_by.label,
        created_at=reservation.created_at,
        updated_at=reservation.updated_at,
        version=reservation.version
    )

def _transaction_to_response(transaction: PendingTransaction) -> PendingTransactionResponse:
    """Convert PendingTransaction entity to PendingTransactionResponse"""
    return PendingTransactionResponse(
        transaction_id=transaction.transaction_id,
        user_id=transaction.user_id,
        company_id=transaction.company_id,
        resource_id=transaction.resource_id,
        type=transaction.type.value,
        reference_id=transaction.reference_id,
        amount=transaction.amount,
        currency=transaction.currency,
        payment_method=transaction.payment_method.value,
        timing_plan=transaction.timing_plan.value,
        payment_details=transaction.payment_details,
        provider_reference=transaction.provider_reference,
        status=transaction.status.value,
        notes=transaction.notes,
        processed_by=transaction.processed_by.label if transaction.processed_by else None,
        processed_at=transaction.processed_at,
        rejection_reason=transaction.rejection_reason,
        created_at=transaction.created_at,
        updated_at=transaction.updated_at,
        version=transaction.version
    )

if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=8000)
