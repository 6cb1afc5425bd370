"""Job-related enums."""

from enum import Enum


class JobType(str, Enum):
    """Types of background jobs."""

    SEND_SCHEDULED_EMAILS = "send_scheduled_emails"
    REFILL_SWEEP = "refill_sweep"  # SCHEDULED refills that came due
    SHIPMENT_REMINDERS = "shipment_reminders"
    COMMISSION_APPROVAL = "commission_approval"  # Release commissions past hold
    SLA_SWEEP = "sla_sweep"  # Warnings and breaches


class JobStatus(str, Enum):
    """Status of background jobs."""

    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"


class ScheduledEmailStatus(str, Enum):
    PENDING = "PENDING"
    SENT = "SENT"
    FAILED = "FAILED"
    CANCELLED = "CANCELLED"


DEFAULT_JOB_STATUS = JobStatus.PENDING
