"""SLA engine - policy matching, due dates, pause/resume and the breach sweep.

Due dates are computed once when the clock starts. Afterwards they only
move when a paused clock resumes (extended by the paused duration) or
when a reopen restarts the resolution clock. Breach flags are permanent.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from datetime import date, datetime, timedelta, timezone
from uuid import UUID
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from fastapi import HTTPException
from sqlalchemy.orm import Session

from clinicops.core.config import settings
from clinicops.db.enums import (
    CLOSED_TICKET_STATUSES,
    SLA_PAUSED_STATUSES,
    TicketActivityType,
    TicketCategory,
    TicketPriority,
    TicketStatus,
)
from clinicops.db.models import Clinic, SlaPolicyConfig, Ticket, TicketBusinessHours, TicketSLA
from clinicops.services import activity_service
from clinicops.utils.business_hours import (
    BusinessCalendar,
    add_business_minutes,
    calendar_from_schedule,
    default_calendar,
)

logger = logging.getLogger(__name__)

_HHMM_RE = re.compile(r"^([01]\d|2[0-3]):[0-5]\d$")


@dataclass(frozen=True)
class SlaSweepResult:
    warnings: int
    breaches: int


def _now_utc() -> datetime:
    return datetime.now(timezone.utc)


# =============================================================================
# Policies and calendars
# =============================================================================


def match_policy(
    db: Session,
    *,
    clinic_id: UUID,
    priority: TicketPriority,
    category: TicketCategory,
) -> SlaPolicyConfig | None:
    """Most specific active policy: priority+category > priority > category > default."""
    policies = (
        db.query(SlaPolicyConfig)
        .filter(SlaPolicyConfig.clinic_id == clinic_id, SlaPolicyConfig.is_active.is_(True))
        .order_by(SlaPolicyConfig.created_at.asc())
        .all()
    )

    def rank(policy: SlaPolicyConfig) -> int | None:
        if policy.priority == priority and policy.category == category:
            return 0
        if policy.priority == priority and policy.category is None:
            return 1
        if policy.priority is None and policy.category == category:
            return 2
        if policy.is_default:
            return 3
        return None

    ranked = [(rank(policy), policy) for policy in policies]
    ranked = [(score, policy) for score, policy in ranked if score is not None]
    if not ranked:
        return None
    return min(ranked, key=lambda item: item[0])[1]


def _clinic_timezone(db: Session, clinic_id: UUID) -> str:
    clinic = db.get(Clinic, clinic_id)
    return (clinic.timezone if clinic else None) or settings.SLA_DEFAULT_TIMEZONE


def calendar_for_policy(db: Session, policy: SlaPolicyConfig) -> BusinessCalendar:
    """Policy calendar, else the clinic default calendar, else 8-18 Mon-Fri US holidays."""
    hours = policy.business_hours
    if hours is None:
        hours = (
            db.query(TicketBusinessHours)
            .filter(
                TicketBusinessHours.clinic_id == policy.clinic_id,
                TicketBusinessHours.is_default.is_(True),
            )
            .first()
        )
    if hours is not None:
        return calendar_from_schedule(hours.timezone, hours.schedule, hours.holidays, name=hours.name)
    return default_calendar(_clinic_timezone(db, policy.clinic_id))


def compute_due(
    db: Session, policy: SlaPolicyConfig, start: datetime, minutes: int
) -> datetime:
    if not policy.respect_business_hours:
        return start + timedelta(minutes=minutes)
    try:
        return add_business_minutes(start, minutes, calendar_for_policy(db, policy))
    except ValueError as exc:
        raise HTTPException(status_code=422, detail=str(exc)) from exc


# =============================================================================
# Clock lifecycle
# =============================================================================


def attach_sla(db: Session, ticket: Ticket, *, now: datetime | None = None) -> TicketSLA | None:
    """Start the SLA clock for a new ticket; None when no policy matches."""
    now = now or _now_utc()
    policy = match_policy(
        db, clinic_id=ticket.clinic_id, priority=ticket.priority, category=ticket.category
    )
    if policy is None:
        return None

    sla = TicketSLA(
        clinic_id=ticket.clinic_id,
        ticket=ticket,
        policy_id=policy.id,
        started_at=now,
        first_response_due=(
            compute_due(db, policy, now, policy.first_response_minutes)
            if policy.first_response_minutes
            else None
        ),
        resolution_due=compute_due(db, policy, now, policy.resolution_minutes),
    )
    db.add(sla)
    db.flush()
    return sla


def apply_status_change(
    db: Session,
    ticket: Ticket,
    old_status: TicketStatus,
    new_status: TicketStatus,
    *,
    actor_user_id: UUID | None = None,
    now: datetime | None = None,
) -> None:
    """
    Pause or resume the clock for a status change. Caller commits.

    Runs inside the status change's transaction so the clock is never
    left half-paused.
    """
    sla = ticket.sla
    if sla is None:
        return
    now = now or _now_utc()
    was_paused = old_status in SLA_PAUSED_STATUSES
    is_paused = new_status in SLA_PAUSED_STATUSES

    if is_paused and not was_paused and sla.paused_at is None:
        sla.paused_at = now
        activity_service.log_activity(
            db,
            ticket.id,
            ticket.clinic_id,
            TicketActivityType.SLA_PAUSED,
            actor_user_id=actor_user_id,
            details={"status": new_status.value},
        )
    elif was_paused and not is_paused and sla.paused_at is not None:
        paused_for = now - sla.paused_at
        if sla.first_response_due and ticket.first_response_at is None and not sla.first_response_breached:
            sla.first_response_due = sla.first_response_due + paused_for
        if not sla.resolution_breached:
            sla.resolution_due = sla.resolution_due + paused_for
        sla.total_paused_seconds += int(paused_for.total_seconds())
        sla.paused_at = None
        activity_service.log_activity(
            db,
            ticket.id,
            ticket.clinic_id,
            TicketActivityType.SLA_RESUMED,
            actor_user_id=actor_user_id,
            details={"paused_seconds": int(paused_for.total_seconds())},
        )


def restart_resolution_clock(db: Session, ticket: Ticket, *, now: datetime | None = None) -> None:
    """
    Reopen: resolution_due recomputed from now per policy.

    Breach flags from the previous cycle stay set.
    """
    now = now or _now_utc()
    sla = ticket.sla
    if sla is None:
        attach_sla(db, ticket, now=now)
        return
    policy = sla.policy
    if policy is None:
        return
    sla.started_at = now
    sla.total_paused_seconds = 0
    sla.paused_at = None
    sla.warning_notified_at = None
    sla.resolution_due = compute_due(db, policy, now, policy.resolution_minutes)


# =============================================================================
# Sweep
# =============================================================================


def _elapsed_pct(sla: TicketSLA, now: datetime) -> float:
    paused = sla.total_paused_seconds
    allowed = (sla.resolution_due - sla.started_at).total_seconds() - paused
    if allowed <= 0:
        return 100.0
    elapsed = (now - sla.started_at).total_seconds() - paused
    return elapsed / allowed * 100


def sweep_slas(
    db: Session, *, now: datetime | None = None, clinic_id: UUID | None = None
) -> SlaSweepResult:
    """
    Warn once at warning_threshold_pct, breach once when a due passes.

    Only open, unpaused, unmerged tickets are evaluated.
    """
    now = now or _now_utc()
    query = (
        db.query(TicketSLA)
        .join(Ticket, Ticket.id == TicketSLA.ticket_id)
        .filter(
            Ticket.status.not_in(CLOSED_TICKET_STATUSES),
            Ticket.merged_into_id.is_(None),
            TicketSLA.paused_at.is_(None),
        )
    )
    if clinic_id:
        query = query.filter(TicketSLA.clinic_id == clinic_id)

    warnings = breaches = 0
    for sla in query.all():
        ticket = sla.ticket

        if (
            sla.first_response_due is not None
            and ticket.first_response_at is None
            and not sla.first_response_breached
            and now > sla.first_response_due
        ):
            sla.first_response_breached = True
            sla.breached_at = sla.breached_at or now
            activity_service.log_sla_breached(
                db, ticket.id, ticket.clinic_id, "first_response", sla.first_response_due.isoformat()
            )
            breaches += 1

        if not sla.resolution_breached and now > sla.resolution_due:
            sla.resolution_breached = True
            sla.breached_at = sla.breached_at or now
            activity_service.log_sla_breached(
                db, ticket.id, ticket.clinic_id, "resolution", sla.resolution_due.isoformat()
            )
            breaches += 1
            continue

        threshold = sla.policy.warning_threshold_pct if sla.policy else 80
        if (
            sla.warning_notified_at is None
            and not sla.resolution_breached
            and _elapsed_pct(sla, now) >= threshold
        ):
            sla.warning_notified_at = now
            activity_service.log_activity(
                db,
                ticket.id,
                ticket.clinic_id,
                TicketActivityType.SLA_BREACH_WARNING,
                details={"threshold_pct": threshold, "resolution_due": sla.resolution_due.isoformat()},
            )
            warnings += 1

    db.commit()
    if breaches:
        logger.warning("SLA sweep recorded %s breaches", breaches)
    return SlaSweepResult(warnings=warnings, breaches=breaches)


# =============================================================================
# Configuration
# =============================================================================


def list_policies(db: Session, *, clinic_id: UUID) -> list[SlaPolicyConfig]:
    return (
        db.query(SlaPolicyConfig)
        .filter(SlaPolicyConfig.clinic_id == clinic_id)
        .order_by(SlaPolicyConfig.created_at.asc())
        .all()
    )


def create_policy(
    db: Session,
    *,
    clinic_id: UUID,
    name: str,
    resolution_minutes: int,
    first_response_minutes: int | None = None,
    priority: TicketPriority | None = None,
    category: TicketCategory | None = None,
    is_default: bool = False,
    respect_business_hours: bool = False,
    business_hours_id: UUID | None = None,
    warning_threshold_pct: int = 80,
) -> SlaPolicyConfig:
    if resolution_minutes <= 0 or (first_response_minutes is not None and first_response_minutes <= 0):
        raise HTTPException(status_code=422, detail="SLA minutes must be positive")
    if not 1 <= warning_threshold_pct <= 100:
        raise HTTPException(status_code=422, detail="warning_threshold_pct must be 1-100")
    if business_hours_id is not None:
        hours = (
            db.query(TicketBusinessHours)
            .filter(
                TicketBusinessHours.clinic_id == clinic_id,
                TicketBusinessHours.id == business_hours_id,
            )
            .first()
        )
        if not hours:
            raise HTTPException(status_code=404, detail="Business hours not found")

    if is_default:
        db.query(SlaPolicyConfig).filter(
            SlaPolicyConfig.clinic_id == clinic_id, SlaPolicyConfig.is_default.is_(True)
        ).update({SlaPolicyConfig.is_default: False})

    policy = SlaPolicyConfig(
        clinic_id=clinic_id,
        name=name,
        priority=priority,
        category=category,
        is_default=is_default,
        first_response_minutes=first_response_minutes,
        resolution_minutes=resolution_minutes,
        respect_business_hours=respect_business_hours,
        business_hours_id=business_hours_id,
        warning_threshold_pct=warning_threshold_pct,
    )
    db.add(policy)
    db.commit()
    db.refresh(policy)
    return policy


def _validate_schedule(schedule: list[dict]) -> None:
    for row in schedule:
        day = row.get("day_of_week")
        if not isinstance(day, int) or not 0 <= day <= 6:
            raise HTTPException(status_code=422, detail="day_of_week must be 0-6 (Sunday=0)")
        for key in ("start_time", "end_time"):
            if not _HHMM_RE.match(str(row.get(key, ""))):
                raise HTTPException(status_code=422, detail=f"{key} must be HH:MM")


def _validate_holidays(holidays: list[dict]) -> None:
    for entry in holidays:
        try:
            date.fromisoformat(str(entry.get("date", "")))
        except ValueError as exc:
            raise HTTPException(status_code=422, detail="Holiday date must be YYYY-MM-DD") from exc


def upsert_business_hours(
    db: Session,
    *,
    clinic_id: UUID,
    name: str,
    timezone_name: str,
    schedule: list[dict],
    holidays: list[dict] | None = None,
) -> TicketBusinessHours:
    """Create or replace the clinic's default business calendar."""
    try:
        ZoneInfo(timezone_name)
    except (ZoneInfoNotFoundError, ValueError) as exc:
        raise HTTPException(status_code=422, detail="Unknown timezone") from exc
    _validate_schedule(schedule)
    _validate_holidays(holidays or [])

    hours = (
        db.query(TicketBusinessHours)
        .filter(
            TicketBusinessHours.clinic_id == clinic_id,
            TicketBusinessHours.is_default.is_(True),
        )
        .first()
    )
    if hours is None:
        hours = TicketBusinessHours(clinic_id=clinic_id, is_default=True)
        db.add(hours)
    hours.name = name
    hours.timezone = timezone_name
    hours.schedule = schedule
    hours.holidays = holidays or []
    db.commit()
    db.refresh(hours)
    return hours
