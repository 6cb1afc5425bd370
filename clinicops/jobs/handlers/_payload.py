"""Payload coercion shared by sweep handlers."""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from uuid import UUID

logger = logging.getLogger(__name__)


def coerce_uuid(raw_id: object | None) -> UUID | None:
    if not raw_id:
        return None
    try:
        return UUID(str(raw_id))
    except (TypeError, ValueError):
        logger.warning("Invalid UUID value '%s' in job payload", raw_id)
        return None


def coerce_now(raw_value: object | None) -> datetime | None:
    """Optional `now` override (ISO-8601) for replaying a sweep."""
    if not raw_value:
        return None
    try:
        value = datetime.fromisoformat(str(raw_value))
    except ValueError:
        logger.warning("Invalid timestamp '%s' in job payload", raw_value)
        return None
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value
