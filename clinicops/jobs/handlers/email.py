"""Email job handlers."""

from __future__ import annotations

import logging

from clinicops.services import email_service

logger = logging.getLogger(__name__)


async def process_send_scheduled_emails(db, job) -> None:
    """Send due ScheduledEmail rows via Resend."""
    payload = job.payload or {}
    result = await email_service.process_due_emails(db, limit=int(payload.get("limit", 50)))
    logger.info(
        "Email job %s: sent=%s retried=%s failed=%s",
        job.id,
        result.sent,
        result.retried,
        result.failed,
    )
