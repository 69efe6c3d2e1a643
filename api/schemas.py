"""API Schemas - Request and Response DTOs"""
from pydantic import BaseModel, Field
from datetime import datetime
from decimal import Decimal
from uuid import UUID
from typing import Any, Dict, List, Optional

from domain.enums import (
    ResourceKind, PricingUnit, TaxScope, TimingPlan, PaymentMethod, TransactionType,
    SettlementStatus, CheckOutCondition
)


# ============================================================================
# RESOURCE SCHEMAS
# ============================================================================

class PricingRuleRequest(BaseModel):
    """Pricing rule DTO"""
    amount: Decimal = Field(ge=0)
    unit: PricingUnit
    is_default: bool = False


class CreateResourceRequest(BaseModel):
    """Create facility or inventory item request DTO"""
    name: str
    kind: ResourceKind
    pricing_rules: List[PricingRuleRequest] = Field(min_length=1)
    is_taxable: bool = True
    quantity: Optional[int] = Field(None, ge=0)


class ResourceResponse(BaseModel):
    """Resource response DTO"""
    resource_id: UUID
    company_id: str
    name: str
    kind: str
    pricing_rules: List[PricingRuleRequest]
    is_taxable: bool
    quantity: Optional[int] = None
    available_quantity: Optional[int] = None
    created_at: datetime
    updated_at: datetime
    version: int


# ============================================================================
# TAX SCHEMAS
# ============================================================================

class CreateTaxRequest(BaseModel):
    """Create tax request DTO"""
    name: str
    rate: Decimal = Field(ge=0)
    applies_to: TaxScope = TaxScope.BOTH
    active: bool = True


class UpdateTaxRequest(BaseModel):
    """Update tax request DTO"""
    rate: Optional[Decimal] = Field(None, ge=0)
    active: Optional[bool] = None


class TaxResponse(BaseModel):
    """Tax response DTO"""
    tax_id: UUID
    company_id: str
    name: str
    rate: Decimal
    applies_to: str
    active: bool
    created_at: datetime
    updated_at: datetime
    version: int


# ============================================================================
# QUOTE SCHEMAS
# ============================================================================

class QuoteRequest(BaseModel):
    """Price quote request DTO"""
    resource_id: UUID
    start: Optional[datetime] = None
    end: Optional[datetime] = None
    quantity: int = Field(default=1, ge=1)
    duration_units: Optional[int] = Field(None, ge=1)


class TaxLineResponse(BaseModel):
    tax_id: str
    name: str
    rate: Decimal
    amount: Decimal


class QuoteResponse(BaseModel):
    """Itemized quote DTO, 2-decimal amounts"""
    currency: str
    unit_price: Decimal
    quantity: int
    duration_units: int
    subtotal: Decimal
    service_fee: Decimal
    tax_breakdown: List[TaxLineResponse]
    tax_total: Decimal
    total: Decimal


# ============================================================================
# BOOKING SCHEMAS
# ============================================================================

class CreateBookingRequest(BaseModel):
    """Create reservation request DTO"""
    resource_id: UUID
    start: Optional[datetime] = None
    end: Optional[datetime] = None
    quantity: int = Field(default=1, ge=1)
    duration_units: Optional[int] = Field(None, ge=1)
    timing_plan: TimingPlan = TimingPlan.FULL
    notes: Optional[str] = None
    user_id: Optional[str] = None  # staff booking on behalf of a customer


class CancelBookingRequest(BaseModel):
    """Cancel reservation request DTO"""
    reason: str = "Customer changed plans"


class CheckInRequest(BaseModel):
    """Check-in request DTO"""
    notes: Optional[str] = None


class CheckOutRequest(BaseModel):
    """Check-out request DTO"""
    condition: CheckOutCondition = CheckOutCondition.GOOD
    notes: Optional[str] = None
    damage_report: Optional[str] = None


class RefundRequest(BaseModel):
    """Refund request DTO"""
    amount: Decimal = Field(gt=0)


class StatusChangeResponse(BaseModel):
    field: str
    from_value: str
    to_value: str
    actor: str
    at: datetime
    note: Optional[str] = None


class ReservationResponse(BaseModel):
    """Reservation response DTO"""
    reservation_id: UUID
    resource_id: UUID
    resource_kind: str
    user_id: str
    company_id: str
    start: Optional[datetime] = None
    end: Optional[datetime] = None
    quantity: int
    duration_units: int
    status: str
    payment_status: str
    timing_plan: str
    quote: QuoteResponse
    total: Decimal
    refunded: Decimal
    notes: Optional[str] = None
    checked_in_at: Optional[datetime] = None
    checked_out_at: Optional[datetime] = None
    cancellation_reason: Optional[str] = None
    history: List[StatusChangeResponse]
    is_deleted: bool
    created_by: str
    created_at: datetime
    updated_at: datetime
    version: int


class CalendarSlotResponse(BaseModel):
    """Public calendar entry; carries no reservation details"""
    start: datetime
    end: datetime
    status: str


# ============================================================================
# PENDING TRANSACTION SCHEMAS
# ============================================================================

class CreatePendingTransactionRequest(BaseModel):
    """Create settlement obligation request DTO"""
    type: TransactionType = TransactionType.BOOKING
    reference_id: str
    amount: Decimal
    payment_method: PaymentMethod
    timing_plan: TimingPlan = TimingPlan.FULL
    currency: Optional[str] = None
    payment_details: Dict[str, Any] = {}
    notes: Optional[str] = None
    provider_reference: Optional[str] = None


class ProcessPendingTransactionRequest(BaseModel):
    """Process settlement obligation request DTO"""
    status: SettlementStatus
    notes: Optional[str] = None
    rejection_reason: Optional[str] = None


class PendingTransactionResponse(BaseModel):
    """Settlement obligation response DTO"""
    transaction_id: UUID
    user_id: str
    company_id: str
    resource_id: Optional[UUID] = None
    type: str
    reference_id: str
    amount: Decimal
    currency: str
    payment_method: str
    timing_plan: str
    payment_details: Dict[str, Any]
    provider_reference: Optional[str] = None
    status: str
    notes: Optional[str] = None
    processed_by: Optional[str] = None
    processed_at: Optional[datetime] = None
    rejection_reason: Optional[str] = None
    created_at: datetime
    updated_at: datetime
    version: int


class PendingTransactionPage(BaseModel):
    """Paginated settlement obligations"""
    transactions: List[PendingTransactionResponse]
    total: int
    page: int
    limit: int


class WebhookResponse(BaseModel):
    status: str
    message: Optional[str] = None


# ============================================================================
# AUTH SCHEMAS
# ============================================================================

class Token(BaseModel):
    """Token response DTO"""
    access_token: str
    token_type: str

class TokenData(BaseModel):
    """Token payload DTO"""
    username: Optional[str] = None

class UserResponse(BaseModel):
    """User response DTO"""
    user_id: str
    username: str
    company_id: str
    role: str
    email: Optional[str] = None
    full_name: Optional[str] = None
    disabled: bool
