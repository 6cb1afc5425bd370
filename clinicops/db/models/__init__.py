"""SQLAlchemy ORM models."""

from clinicops.db.models.commissions import (
    Affiliate,
    AffiliateRefCode,
    AffiliateTouch,
    CommissionEvent,
    CommissionPlan,
    CommissionPromotion,
    CommissionTier,
    FraudAlert,
    FraudConfig,
    Payout,
    ProductRateRule,
)
from clinicops.db.models.core import Clinic, ClinicCounter, Membership, User
from clinicops.db.models.jobs import Job, ScheduledEmail
from clinicops.db.models.refills import (
    Patient,
    Payment,
    RefillQueue,
    RefillStatusHistory,
    Subscription,
)
from clinicops.db.models.ticketing import (
    SlaPolicyConfig,
    Ticket,
    TicketActivity,
    TicketBusinessHours,
    TicketComment,
    TicketSLA,
    TicketStatusHistory,
    TicketWatcher,
)

__all__ = [
    "Affiliate",
    "AffiliateRefCode",
    "AffiliateTouch",
    "Clinic",
    "ClinicCounter",
    "CommissionEvent",
    "CommissionPlan",
    "CommissionPromotion",
    "CommissionTier",
    "FraudAlert",
    "FraudConfig",
    "Job",
    "Membership",
    "Patient",
    "Payment",
    "Payout",
    "ProductRateRule",
    "RefillQueue",
    "RefillStatusHistory",
    "ScheduledEmail",
    "SlaPolicyConfig",
    "Subscription",
    "Ticket",
    "TicketActivity",
    "TicketBusinessHours",
    "TicketComment",
    "TicketSLA",
    "TicketStatusHistory",
    "TicketWatcher",
    "User",
]
