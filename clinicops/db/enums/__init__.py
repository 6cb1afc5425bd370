"""Enum definitions for application constants."""

from clinicops.db.enums.auth import (
    ROLES_CAN_GATE_REFILLS,
    ROLES_CAN_MANAGE_COMMISSIONS,
    ROLES_CAN_MANAGE_SLA,
    ROLES_CAN_PRESCRIBE,
    Role,
)
from clinicops.db.enums.commissions import (
    HOLDING_FRAUD_ALERT_STATUSES,
    AffiliateKind,
    AffiliateStatus,
    AttributionModel,
    CommissionEventStatus,
    CommissionPlanType,
    FraudAlertStatus,
    FraudAlertType,
    FraudSeverity,
    PayoutMethod,
    PayoutStatus,
)
from clinicops.db.enums.jobs import (
    DEFAULT_JOB_STATUS,
    JobStatus,
    JobType,
    ScheduledEmailStatus,
)
from clinicops.db.enums.refills import (
    ACTIVE_REFILL_STATUSES,
    TERMINAL_REFILL_STATUSES,
    PaymentMethod,
    PaymentStatus,
    RefillStatus,
    SubscriptionStatus,
)
from clinicops.db.enums.ticketing import (
    CLOSED_TICKET_STATUSES,
    SLA_PAUSED_STATUSES,
    TicketActivityType,
    TicketCategory,
    TicketPriority,
    TicketStatus,
)

__all__ = [
    "ACTIVE_REFILL_STATUSES",
    "AffiliateKind",
    "AffiliateStatus",
    "AttributionModel",
    "CLOSED_TICKET_STATUSES",
    "CommissionEventStatus",
    "CommissionPlanType",
    "DEFAULT_JOB_STATUS",
    "FraudAlertStatus",
    "FraudAlertType",
    "FraudSeverity",
    "HOLDING_FRAUD_ALERT_STATUSES",
    "JobStatus",
    "JobType",
    "PaymentMethod",
    "PaymentStatus",
    "PayoutMethod",
    "PayoutStatus",
    "ROLES_CAN_GATE_REFILLS",
    "ROLES_CAN_MANAGE_COMMISSIONS",
    "ROLES_CAN_MANAGE_SLA",
    "ROLES_CAN_PRESCRIBE",
    "RefillStatus",
    "Role",
    "SLA_PAUSED_STATUSES",
    "ScheduledEmailStatus",
    "SubscriptionStatus",
    "TERMINAL_REFILL_STATUSES",
    "TicketActivityType",
    "TicketCategory",
    "TicketPriority",
    "TicketStatus",
]
