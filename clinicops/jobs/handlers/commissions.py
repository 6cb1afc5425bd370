"""Commission job handlers."""

from __future__ import annotations

import logging

from clinicops.jobs.handlers._payload import coerce_now, coerce_uuid
from clinicops.services import commission_service

logger = logging.getLogger(__name__)


async def process_commission_approval(db, job) -> None:
    """Approve PENDING commissions whose hold period has passed."""
    payload = job.payload or {}
    approved = commission_service.approve_pending_commissions(
        db,
        now=coerce_now(payload.get("now")),
        clinic_id=coerce_uuid(payload.get("clinic_id")),
    )
    logger.info("Commission approval job %s approved %s events", job.id, approved)
