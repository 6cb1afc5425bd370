"""Ticket SLA job handlers."""

from __future__ import annotations

import logging

from clinicops.jobs.handlers._payload import coerce_now, coerce_uuid
from clinicops.services import sla_service

logger = logging.getLogger(__name__)


async def process_sla_sweep(db, job) -> None:
    payload = job.payload or {}
    result = sla_service.sweep_slas(
        db,
        now=coerce_now(payload.get("now")),
        clinic_id=coerce_uuid(payload.get("clinic_id")),
    )
    logger.info(
        "SLA sweep job %s: warnings=%s breaches=%s", job.id, result.warnings, result.breaches
    )
