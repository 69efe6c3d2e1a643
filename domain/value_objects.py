"""Domain Value Objects"""
import math
from pydantic import BaseModel, Field, field_validator, ValidationInfo
from datetime import datetime, timezone
from decimal import Decimal, ROUND_HALF_UP
from typing import Optional, Tuple

from domain.enums import ActorKind, PricingUnit, ReservationStatus, CheckOutCondition


CENT = Decimal("0.01")


def to_minor(amount: Decimal) -> int:
    """Convert a major-unit amount to integer minor units (cents)"""
    return int((Decimal(amount) * 100).quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def from_minor(amount_minor: int) -> Decimal:
    """Convert integer minor units back to a 2-decimal amount"""
    return (Decimal(amount_minor) / 100).quantize(CENT)


def utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Actor(BaseModel):
    """Who performed a state-mutating call"""
    kind: ActorKind
    id: str

    class Config:
        frozen = True

    @classmethod
    def system(cls) -> "Actor":
        return cls(kind=ActorKind.SYSTEM, id="system")

    @classmethod
    def gateway(cls) -> "Actor":
        return cls(kind=ActorKind.GATEWAY, id="gateway")

    @classmethod
    def staff(cls, staff_id: str) -> "Actor":
        return cls(kind=ActorKind.STAFF, id=staff_id)

    @classmethod
    def user(cls, user_id: str) -> "Actor":
        return cls(kind=ActorKind.USER, id=user_id)

    @property
    def label(self) -> str:
        if self.kind in (ActorKind.SYSTEM, ActorKind.GATEWAY):
            return self.kind.value
        return f"{self.kind.value}:{self.id}"


class TimeWindow(BaseModel):
    """Half-open interval [start, end)"""
    start: datetime
    end: datetime

    @field_validator("start", "end")
    @classmethod
    def normalize_timezone(cls, v: datetime) -> datetime:
        return utc(v)

    @field_validator("end")
    @classmethod
    def end_after_start(cls, v: datetime, info: ValidationInfo) -> datetime:
        start = info.data.get("start")
        if start is not None and v <= start:
            raise ValueError("Window end must be after window start")
        return v

    class Config:
        frozen = True

    def overlaps(self, other: "TimeWindow") -> bool:
        """Touching endpoints do not conflict"""
        return self.start < other.end and other.start < self.end

    def duration_units(self, unit: PricingUnit) -> int:
        """Billable units for this window; partial units round up"""
        seconds = (self.end - self.start).total_seconds()
        if unit == PricingUnit.HOUR:
            return max(1, math.ceil(seconds / 3600))
        if unit == PricingUnit.DAY:
            return max(1, math.ceil(seconds / 86400))
        return 1


class PricingRule(BaseModel):
    """Price of a resource per unit"""
    amount: Decimal = Field(ge=0)
    unit: PricingUnit
    is_default: bool = False

    class Config:
        frozen = True


class TaxLine(BaseModel):
    """One tax as it was applied to a quote"""
    tax_id: str
    name: str
    rate: Decimal
    amount_minor: int

    class Config:
        frozen = True


class Quote(BaseModel):
    """Itemized price, all amounts in minor units"""
    currency: str
    unit_price_minor: int
    quantity: int
    duration_units: int
    subtotal_minor: int
    service_fee_rate: Decimal
    service_fee_minor: int
    tax_breakdown: Tuple[TaxLine, ...] = ()
    tax_total_minor: int
    total_minor: int

    class Config:
        frozen = True

    def as_display(self) -> dict:
        """Presentation view rounded to 2 decimals"""
        return {
            "currency": self.currency,
            "unit_price": from_minor(self.unit_price_minor),
            "quantity": self.quantity,
            "duration_units": self.duration_units,
            "subtotal": from_minor(self.subtotal_minor),
            "service_fee": from_minor(self.service_fee_minor),
            "tax_breakdown": [
                {
                    "tax_id": line.tax_id,
                    "name": line.name,
                    "rate": line.rate,
                    "amount": from_minor(line.amount_minor),
                }
                for line in self.tax_breakdown
            ],
            "tax_total": from_minor(self.tax_total_minor),
            "total": from_minor(self.total_minor),
        }


class StatusChange(BaseModel):
    """Audit entry for a status or payment-status change"""
    field: str
    from_value: str
    to_value: str
    actor: Actor
    at: datetime = Field(default_factory=utcnow)
    note: Optional[str] = None

    class Config:
        frozen = True


class CheckRecord(BaseModel):
    """Check-in or check-out record"""
    time: datetime = Field(default_factory=utcnow)
    verified_by: Actor
    notes: Optional[str] = None
    condition: Optional[CheckOutCondition] = None
    damage_report: Optional[str] = None

    class Config:
        frozen = True


class Cancellation(BaseModel):
    reason: str
    cancelled_by: Actor
    cancelled_at: datetime = Field(default_factory=utcnow)

    class Config:
        frozen = True


class CalendarSlot(BaseModel):
    """Public view of a committed window"""
    start: datetime
    end: datetime
    status: ReservationStatus

    class Config:
        frozen = True
