"""Refill queue enums."""

from enum import Enum


class RefillStatus(str, Enum):
    """Refill gate states."""

    SCHEDULED = "SCHEDULED"
    PENDING_PAYMENT = "PENDING_PAYMENT"
    PENDING_ADMIN = "PENDING_ADMIN"
    APPROVED = "APPROVED"
    PENDING_PROVIDER = "PENDING_PROVIDER"
    PRESCRIBED = "PRESCRIBED"
    REJECTED = "REJECTED"
    CANCELLED = "CANCELLED"
    ON_HOLD = "ON_HOLD"


TERMINAL_REFILL_STATUSES = frozenset(
    {RefillStatus.PRESCRIBED, RefillStatus.REJECTED, RefillStatus.CANCELLED}
)

# Statuses that count as "in flight" for duplicate detection
ACTIVE_REFILL_STATUSES = frozenset(
    {
        RefillStatus.SCHEDULED,
        RefillStatus.PENDING_PAYMENT,
        RefillStatus.PENDING_ADMIN,
        RefillStatus.APPROVED,
        RefillStatus.PENDING_PROVIDER,
    }
)


class PaymentMethod(str, Enum):
    """How a refill payment was verified."""

    STRIPE_AUTO = "STRIPE_AUTO"
    MANUAL_VERIFIED = "MANUAL_VERIFIED"
    EXTERNAL_REFERENCE = "EXTERNAL_REFERENCE"
    PAYMENT_SKIPPED = "PAYMENT_SKIPPED"


class PaymentStatus(str, Enum):
    """Ingested processor payment status."""

    SUCCEEDED = "SUCCEEDED"
    PENDING = "PENDING"
    FAILED = "FAILED"
    REFUNDED = "REFUNDED"


class SubscriptionStatus(str, Enum):
    ACTIVE = "ACTIVE"
    PAUSED = "PAUSED"
    CANCELED = "CANCELED"
