"""Multi-shipment splitting of refills bounded by medication beyond-use dates."""

from __future__ import annotations

import logging
import math
from collections import Counter
from datetime import datetime, timedelta, timezone
from uuid import UUID

from fastapi import HTTPException
from sqlalchemy.orm import Session

from clinicops.core.config import settings
from clinicops.core.constants import DEFAULT_REFILL_INTERVAL_DAYS, VIAL_TO_INTERVAL_DAYS
from clinicops.db.enums import RefillStatus
from clinicops.db.models import Patient, RefillQueue, RefillStatusHistory, Subscription

logger = logging.getLogger(__name__)


def _now_utc() -> datetime:
    return datetime.now(timezone.utc)


# =============================================================================
# Splitter math
# =============================================================================


def interval_days_for_vials(vial_count: int) -> int:
    """Days of supply for a vial count (1 -> 30, 3 -> 90, 6 -> 180)."""
    return VIAL_TO_INTERVAL_DAYS.get(vial_count, DEFAULT_REFILL_INTERVAL_DAYS)


def calculate_shipments_needed(duration_days: int, bud_days: int) -> int:
    """ceil(duration / bud), never less than one shipment."""
    if bud_days <= 0:
        raise ValueError("bud_days must be positive")
    if duration_days <= 0:
        return 1
    return max(1, math.ceil(duration_days / bud_days))


def plan_shipment_supply(duration_days: int, bud_days: int) -> list[int]:
    """
    Supply days per shipment.

    Every shipment carries a full bud_days except the last, which carries
    the remainder. No entry exceeds bud_days and the entries sum to
    duration_days.
    """
    total = calculate_shipments_needed(duration_days, bud_days)
    if duration_days <= 0:
        return [0]
    supply = [bud_days] * (total - 1)
    supply.append(duration_days - bud_days * (total - 1))
    return supply


def next_shipment_date(fulfilled_at: datetime, previous: RefillQueue) -> datetime:
    """Next shipment lands when the previous one's supply runs out."""
    return fulfilled_at + timedelta(days=previous.supply_days)


# =============================================================================
# Series persistence
# =============================================================================


def _ensure_patient_belongs_to_clinic(db: Session, clinic_id: UUID, patient_id: UUID) -> Patient:
    patient = (
        db.query(Patient)
        .filter(Patient.clinic_id == clinic_id, Patient.id == patient_id)
        .first()
    )
    if not patient:
        raise HTTPException(status_code=404, detail="Patient not found")
    return patient


def schedule_refill_series(
    db: Session,
    *,
    clinic_id: UUID,
    patient_id: UUID,
    start_date: datetime,
    duration_days: int | None = None,
    vial_count: int = 1,
    bud_days: int | None = None,
    subscription_id: UUID | None = None,
    medication_name: str | None = None,
    amount_cents: int | None = None,
    actor_user_id: UUID | None = None,
    commit: bool = True,
) -> list[RefillQueue]:
    """
    Create the refill rows for one prescribed duration.

    Shipment 1 is the series head (parent_refill_id=None) and is
    PENDING_PAYMENT when already due, SCHEDULED otherwise. Shipments 2..N
    are SCHEDULED and point at the head.
    """
    _ensure_patient_belongs_to_clinic(db, clinic_id, patient_id)
    if subscription_id is not None:
        subscription = (
            db.query(Subscription)
            .filter(Subscription.clinic_id == clinic_id, Subscription.id == subscription_id)
            .first()
        )
        if not subscription:
            raise HTTPException(status_code=404, detail="Subscription not found")

    duration = duration_days or interval_days_for_vials(vial_count)
    bud = bud_days or settings.REFILL_DEFAULT_BUD_DAYS
    if duration <= 0 or bud <= 0:
        raise HTTPException(status_code=422, detail="duration_days and bud_days must be positive")

    supply = plan_shipment_supply(duration, bud)
    total = len(supply)
    now = _now_utc()

    rows: list[RefillQueue] = []
    due = start_date
    head: RefillQueue | None = None
    for index, supply_days in enumerate(supply, start=1):
        if index == 1 and due <= now:
            status = RefillStatus.PENDING_PAYMENT
        else:
            status = RefillStatus.SCHEDULED
        refill = RefillQueue(
            clinic_id=clinic_id,
            patient_id=patient_id,
            subscription_id=subscription_id,
            status=status,
            medication_name=medication_name,
            amount_cents=amount_cents if index == 1 else None,
            next_refill_date=due,
            refill_interval_days=duration,
            vial_count=vial_count,
            shipment_number=index,
            total_shipments=total,
            parent_refill_id=head.id if head else None,
            bud_days=bud,
            supply_days=supply_days,
        )
        db.add(refill)
        db.flush()
        db.add(
            RefillStatusHistory(
                clinic_id=clinic_id,
                refill_id=refill.id,
                from_status=None,
                to_status=status,
                actor_user_id=actor_user_id,
                note=f"Shipment {index} of {total} scheduled",
            )
        )
        if head is None:
            head = refill
        rows.append(refill)
        due = due + timedelta(days=supply_days)

    if commit:
        db.commit()
        for refill in rows:
            db.refresh(refill)

    logger.info(
        "Scheduled refill series head=%s shipments=%s clinic=%s",
        rows[0].id,
        total,
        clinic_id,
    )
    return rows


def _series_head_id(refill: RefillQueue) -> UUID:
    return refill.parent_refill_id or refill.id


def get_series(db: Session, *, clinic_id: UUID, refill: RefillQueue) -> list[RefillQueue]:
    """All shipments of the refill's series, ordered by shipment number."""
    head_id = _series_head_id(refill)
    return (
        db.query(RefillQueue)
        .filter(
            RefillQueue.clinic_id == clinic_id,
            (RefillQueue.id == head_id) | (RefillQueue.parent_refill_id == head_id),
        )
        .order_by(RefillQueue.shipment_number.asc())
        .all()
    )


def next_in_series(db: Session, refill: RefillQueue) -> RefillQueue | None:
    return (
        db.query(RefillQueue)
        .filter(
            RefillQueue.clinic_id == refill.clinic_id,
            RefillQueue.parent_refill_id == _series_head_id(refill),
            RefillQueue.shipment_number == refill.shipment_number + 1,
        )
        .first()
    )


def shipments_needing_reminder(
    db: Session,
    *,
    now: datetime | None = None,
    days_ahead: int | None = None,
    clinic_id: UUID | None = None,
) -> list[RefillQueue]:
    """
    SCHEDULED shipments whose reminder is due and has not been sent.

    A shipment lands when the previous one's supply runs out, so its
    reminder falls days_ahead before next_refill_date.
    """
    now = now or _now_utc()
    lead = settings.REFILL_REMINDER_LEAD_DAYS if days_ahead is None else days_ahead
    query = db.query(RefillQueue).filter(
        RefillQueue.status == RefillStatus.SCHEDULED,
        RefillQueue.next_refill_date <= now + timedelta(days=lead),
        RefillQueue.reminder_sent_at.is_(None),
    )
    if clinic_id:
        query = query.filter(RefillQueue.clinic_id == clinic_id)
    return query.order_by(RefillQueue.next_refill_date.asc()).all()


def reschedule_shipment(
    db: Session,
    *,
    clinic_id: UUID,
    refill: RefillQueue,
    new_date: datetime,
    actor_user_id: UUID | None = None,
) -> RefillQueue:
    """Move a not-yet-gated shipment; notification stamps reset."""
    if refill.status not in {RefillStatus.SCHEDULED, RefillStatus.PENDING_PAYMENT}:
        raise HTTPException(
            status_code=409,
            detail=f"Cannot reschedule a refill in status {refill.status.value}",
        )
    previous = refill.next_refill_date
    refill.next_refill_date = new_date
    refill.reminder_sent_at = None
    refill.patient_notified_at = None
    db.add(
        RefillStatusHistory(
            clinic_id=clinic_id,
            refill_id=refill.id,
            from_status=refill.status,
            to_status=refill.status,
            actor_user_id=actor_user_id,
            note=f"Rescheduled from {previous.isoformat()} to {new_date.isoformat()}",
        )
    )
    db.commit()
    db.refresh(refill)
    return refill


def cancel_remaining_shipments(
    db: Session,
    *,
    clinic_id: UUID,
    refill: RefillQueue,
    reason: str | None = None,
    actor_user_id: UUID | None = None,
    commit: bool = True,
) -> int:
    """Cancel the SCHEDULED shipments of a series; gated ones are left alone."""
    now = _now_utc()
    cancelled = 0
    for row in get_series(db, clinic_id=clinic_id, refill=refill):
        if row.status != RefillStatus.SCHEDULED:
            continue
        db.add(
            RefillStatusHistory(
                clinic_id=clinic_id,
                refill_id=row.id,
                from_status=row.status,
                to_status=RefillStatus.CANCELLED,
                actor_user_id=actor_user_id,
                note=reason,
            )
        )
        row.status = RefillStatus.CANCELLED
        row.cancelled_at = now
        row.cancel_reason = reason
        cancelled += 1
    if commit:
        db.commit()
    return cancelled


def series_summary(db: Session, *, clinic_id: UUID, refill: RefillQueue) -> dict:
    series = get_series(db, clinic_id=clinic_id, refill=refill)
    counts = Counter(row.status.value for row in series)
    upcoming = [
        row.next_refill_date
        for row in series
        if row.status in {RefillStatus.SCHEDULED, RefillStatus.PENDING_PAYMENT}
    ]
    return {
        "head_id": _series_head_id(refill),
        "total_shipments": len(series),
        "completed_shipments": counts.get(RefillStatus.PRESCRIBED.value, 0),
        "total_supply_days": sum(row.supply_days for row in series),
        "bud_days": series[0].bud_days if series else None,
        "next_shipment_date": min(upcoming) if upcoming else None,
        "status_counts": dict(counts),
    }
