"""Job handler registry."""

from __future__ import annotations

from typing import Awaitable, Callable, Mapping

from clinicops.db.enums import JobType
from clinicops.jobs.handlers import commissions, email, refills, tickets

JobHandler = Callable[[object, object], Awaitable[None]]

JOB_HANDLERS: Mapping[str, JobHandler] = {
    JobType.REFILL_SWEEP.value: refills.process_refill_sweep,
    JobType.SHIPMENT_REMINDERS.value: refills.process_shipment_reminders,
    JobType.COMMISSION_APPROVAL.value: commissions.process_commission_approval,
    JobType.SLA_SWEEP.value: tickets.process_sla_sweep,
    JobType.SEND_SCHEDULED_EMAILS.value: email.process_send_scheduled_emails,
}


def resolve_job_handler(job_type: str) -> JobHandler:
    handler = JOB_HANDLERS.get(job_type)
    if not handler:
        raise ValueError(f"Unknown job type: {job_type}")
    return handler
