"""Affiliate / sales-rep commission enums."""

from enum import Enum


class AffiliateKind(str, Enum):
    AFFILIATE = "AFFILIATE"
    SALES_REP = "SALES_REP"


class AffiliateStatus(str, Enum):
    ACTIVE = "ACTIVE"
    PAUSED = "PAUSED"
    SUSPENDED = "SUSPENDED"


class CommissionPlanType(str, Enum):
    FLAT = "FLAT"
    PERCENT = "PERCENT"


class CommissionEventStatus(str, Enum):
    """Commission ledger states."""

    PENDING = "PENDING"
    APPROVED = "APPROVED"
    ON_HOLD = "ON_HOLD"
    PAID = "PAID"
    REVERSED = "REVERSED"
    VOIDED = "VOIDED"


class AttributionModel(str, Enum):
    FIRST_CLICK = "FIRST_CLICK"
    LAST_CLICK = "LAST_CLICK"
    LINEAR = "LINEAR"


class FraudAlertType(str, Enum):
    VELOCITY_SPIKE = "VELOCITY_SPIKE"
    DUPLICATE_IP = "DUPLICATE_IP"
    REFUND_ABUSE = "REFUND_ABUSE"
    SELF_REFERRAL = "SELF_REFERRAL"


class FraudSeverity(str, Enum):
    LOW = "LOW"
    MEDIUM = "MEDIUM"
    HIGH = "HIGH"
    CRITICAL = "CRITICAL"


class FraudAlertStatus(str, Enum):
    OPEN = "OPEN"
    INVESTIGATING = "INVESTIGATING"
    CONFIRMED_FRAUD = "CONFIRMED_FRAUD"
    FALSE_POSITIVE = "FALSE_POSITIVE"
    DISMISSED = "DISMISSED"


# Alerts in these states keep the referenced commission out of payouts
HOLDING_FRAUD_ALERT_STATUSES = frozenset(
    {FraudAlertStatus.OPEN, FraudAlertStatus.CONFIRMED_FRAUD}
)


class PayoutMethod(str, Enum):
    BANK = "BANK"
    WIRE = "WIRE"
    PAYPAL = "PAYPAL"


class PayoutStatus(str, Enum):
    PENDING = "PENDING"
    PROCESSING = "PROCESSING"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"
    CANCELLED = "CANCELLED"
    ON_HOLD = "ON_HOLD"
