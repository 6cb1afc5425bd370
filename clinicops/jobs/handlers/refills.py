"""Refill queue job handlers."""

from __future__ import annotations

import logging

from clinicops.jobs.handlers._payload import coerce_now, coerce_uuid
from clinicops.services import refill_service

logger = logging.getLogger(__name__)


async def process_refill_sweep(db, job) -> None:
    """
    Move SCHEDULED refills that came due into their gate.

    Payload:
        - clinic_id: Clinic to sweep (optional, sweeps all if not provided)
        - now: ISO timestamp override (optional)
    """
    payload = job.payload or {}
    moved = refill_service.process_due_refills(
        db,
        now=coerce_now(payload.get("now")),
        clinic_id=coerce_uuid(payload.get("clinic_id")),
    )
    logger.info("Refill sweep job %s moved %s refills", job.id, moved)


async def process_shipment_reminders(db, job) -> None:
    """Queue reminder emails for shipments inside the reminder lead window."""
    payload = job.payload or {}
    days_ahead = payload.get("days_ahead")
    queued = refill_service.send_shipment_reminders(
        db,
        now=coerce_now(payload.get("now")),
        days_ahead=int(days_ahead) if days_ahead is not None else None,
    )
    logger.info("Shipment reminder job %s queued %s reminders", job.id, queued)
