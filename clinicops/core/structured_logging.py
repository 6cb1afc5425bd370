"""Structured logging helpers (PHI-safe)."""

from typing import Any


def build_log_context(
    *,
    clinic_id: str | None = None,
    route: str | None = None,
    method: str | None = None,
    job_id: str | None = None,
    job_type: str | None = None,
) -> dict[str, Any]:
    """Return a PHI-safe log context dict. Ids only, never patient fields."""
    context: dict[str, Any] = {}
    if clinic_id:
        context["clinic_id"] = clinic_id
    if route:
        context["route"] = route
    if method:
        context["method"] = method
    if job_id:
        context["job_id"] = job_id
    if job_type:
        context["job_type"] = job_type
    return context
