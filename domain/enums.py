"""Domain Enums"""
from enum import Enum


class ResourceKind(str, Enum):
    FACILITY = "facility"
    INVENTORY_ITEM = "inventory_item"


class PricingUnit(str, Enum):
    HOUR = "hour"
    DAY = "day"
    ITEM = "item"


class TaxScope(str, Enum):
    FACILITY = "facility"
    INVENTORY_ITEM = "inventory_item"
    BOTH = "both"


class ReservationStatus(str, Enum):
    PENDING = "pending"
    CONFIRMED = "confirmed"
    COMPLETED = "completed"
    CANCELLED = "cancelled"
    NO_SHOW = "no_show"


class PaymentStatus(str, Enum):
    PENDING = "pending"
    COMPLETED = "completed"
    FAILED = "failed"
    REFUNDED = "refunded"
    PARTIAL_REFUND = "partial_refund"


class TransactionType(str, Enum):
    BOOKING = "booking"
    RENTAL = "rental"
    SUBSCRIPTION = "subscription"
    PURCHASE = "purchase"


class PaymentMethod(str, Enum):
    GATEWAY = "gateway"
    CASH = "cash"
    CHEQUE = "cheque"


class TimingPlan(str, Enum):
    FULL = "full"
    ADVANCE = "advance"
    SPLIT = "split"


class SettlementStatus(str, Enum):
    PENDING = "pending"
    CONFIRMED = "confirmed"
    REJECTED = "rejected"
    CANCELLED = "cancelled"


class SettlementDecision(str, Enum):
    CONFIRM = "confirm"
    REJECT = "reject"


class ActorKind(str, Enum):
    USER = "user"
    STAFF = "staff"
    SYSTEM = "system"
    GATEWAY = "gateway"


class Role(str, Enum):
    CUSTOMER = "customer"
    STAFF = "staff"
    ADMIN = "admin"


class Permission(str, Enum):
    BOOKING_CREATE = "booking:create"
    BOOKING_VIEW_ALL = "booking:view_all"
    BOOKING_MANAGE = "booking:manage"
    PAYMENT_CREATE = "payment:create"
    PAYMENT_PROCESS = "payment:process"
    PAYMENT_VIEW_ALL = "payment:view_all"
    PAYMENT_REFUND = "payment:refund"
    RESOURCE_MANAGE = "resource:manage"
    TAX_MANAGE = "tax:manage"


class GatewayStatus(str, Enum):
    SUCCESS = "success"
    FAILED = "failed"
    ABANDONED = "abandoned"


class ReconciliationOutcome(str, Enum):
    CONFIRMED = "confirmed"
    REJECTED = "rejected"
    DUPLICATE = "duplicate"
    UNMATCHED = "unmatched"
    SIGNATURE_INVALID = "signature_invalid"


class CheckOutCondition(str, Enum):
    GOOD = "good"
    FAIR = "fair"
    DAMAGED = "damaged"
