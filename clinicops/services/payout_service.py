"""Affiliate payouts - eligibility, batching approved commissions, settlement."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from uuid import UUID

from fastapi import HTTPException
from sqlalchemy import func, select
from sqlalchemy.orm import Session

from clinicops.core.config import settings
from clinicops.db.enums import (
    HOLDING_FRAUD_ALERT_STATUSES,
    CommissionEventStatus,
    PayoutMethod,
    PayoutStatus,
)
from clinicops.db.models import Affiliate, CommissionEvent, FraudAlert, Payout

logger = logging.getLogger(__name__)

OPEN_PAYOUT_STATUSES = frozenset({PayoutStatus.PENDING, PayoutStatus.PROCESSING})


@dataclass
class PayoutEligibility:
    eligible: bool
    available_amount_cents: int
    event_count: int
    minimum_payout_cents: int
    requires_tax_doc: bool
    has_tax_doc: bool
    has_payout_method: bool
    reason: str | None = None


def _now_utc() -> datetime:
    return datetime.now(timezone.utc)


def _ensure_affiliate_belongs_to_clinic(db: Session, clinic_id: UUID, affiliate_id: UUID) -> Affiliate:
    affiliate = (
        db.query(Affiliate)
        .filter(Affiliate.clinic_id == clinic_id, Affiliate.id == affiliate_id)
        .first()
    )
    if not affiliate:
        raise HTTPException(status_code=404, detail="Affiliate not found")
    return affiliate


def _payable_events_query(db: Session, clinic_id: UUID, affiliate_id: UUID):
    """APPROVED, unassigned, and not referenced by a holding fraud alert."""
    held_ids = select(FraudAlert.commission_event_id).where(
        FraudAlert.clinic_id == clinic_id,
        FraudAlert.commission_event_id.is_not(None),
        FraudAlert.status.in_(HOLDING_FRAUD_ALERT_STATUSES),
    )
    return db.query(CommissionEvent).filter(
        CommissionEvent.clinic_id == clinic_id,
        CommissionEvent.affiliate_id == affiliate_id,
        CommissionEvent.status == CommissionEventStatus.APPROVED,
        CommissionEvent.payout_id.is_(None),
        CommissionEvent.id.not_in(held_ids),
    )


def _ytd_paid_cents(db: Session, clinic_id: UUID, affiliate_id: UUID, now: datetime) -> int:
    year_start = datetime(now.year, 1, 1, tzinfo=timezone.utc)
    total = (
        db.query(func.coalesce(func.sum(Payout.net_amount_cents), 0))
        .filter(
            Payout.clinic_id == clinic_id,
            Payout.affiliate_id == affiliate_id,
            Payout.status == PayoutStatus.COMPLETED,
            Payout.processed_at >= year_start,
        )
        .scalar()
    )
    return int(total or 0)


def check_payout_eligibility(
    db: Session, *, clinic_id: UUID, affiliate_id: UUID
) -> PayoutEligibility:
    affiliate = _ensure_affiliate_belongs_to_clinic(db, clinic_id, affiliate_id)
    events = _payable_events_query(db, clinic_id, affiliate_id).all()
    available = sum(event.commission_amount_cents for event in events)

    minimum = settings.COMMISSION_MIN_PAYOUT_CENTS
    ytd = _ytd_paid_cents(db, clinic_id, affiliate_id, _now_utc())
    requires_tax_doc = ytd + available >= settings.COMMISSION_TAX_DOC_THRESHOLD_CENTS
    has_payout_method = affiliate.payout_method is not None and affiliate.payout_method_verified

    reason = None
    if available < minimum:
        reason = f"Balance {available} below minimum payout {minimum}"
    elif not has_payout_method:
        reason = "No verified payout method on file"
    elif requires_tax_doc and not affiliate.tax_doc_verified:
        reason = "Tax documents required but not verified"

    return PayoutEligibility(
        eligible=reason is None,
        available_amount_cents=available,
        event_count=len(events),
        minimum_payout_cents=minimum,
        requires_tax_doc=requires_tax_doc,
        has_tax_doc=affiliate.tax_doc_verified,
        has_payout_method=has_payout_method,
        reason=reason,
    )


def create_payout(
    db: Session,
    *,
    clinic_id: UUID,
    affiliate_id: UUID,
    actor_user_id: UUID | None = None,
) -> Payout:
    """Batch every payable event for the affiliate into a PENDING payout."""
    eligibility = check_payout_eligibility(db, clinic_id=clinic_id, affiliate_id=affiliate_id)
    if not eligibility.eligible:
        raise HTTPException(status_code=409, detail=eligibility.reason)

    affiliate = db.get(Affiliate, affiliate_id)
    events = _payable_events_query(db, clinic_id, affiliate_id).with_for_update().all()
    amount = sum(event.commission_amount_cents for event in events)
    fee = settings.COMMISSION_WIRE_FEE_CENTS if affiliate.payout_method == PayoutMethod.WIRE else 0

    payout = Payout(
        clinic_id=clinic_id,
        affiliate_id=affiliate_id,
        status=PayoutStatus.PENDING,
        method=affiliate.payout_method,
        amount_cents=amount,
        fee_cents=fee,
        net_amount_cents=amount - fee,
        event_count=len(events),
        period_start=min((event.occurred_at for event in events), default=None),
        period_end=max((event.occurred_at for event in events), default=None),
        created_by=actor_user_id,
    )
    db.add(payout)
    db.flush()
    for event in events:
        event.payout_id = payout.id

    db.commit()
    db.refresh(payout)
    logger.info(
        "Payout %s created affiliate=%s events=%s amount=%s",
        payout.id,
        affiliate_id,
        len(events),
        amount,
    )
    return payout


def get_payout(db: Session, *, clinic_id: UUID, payout_id: UUID, lock: bool = False) -> Payout:
    query = db.query(Payout).filter(Payout.clinic_id == clinic_id, Payout.id == payout_id)
    if lock:
        query = query.with_for_update()
    payout = query.first()
    if not payout:
        raise HTTPException(status_code=404, detail="Payout not found")
    return payout


def _payout_events(db: Session, payout: Payout) -> list[CommissionEvent]:
    return (
        db.query(CommissionEvent)
        .filter(
            CommissionEvent.clinic_id == payout.clinic_id,
            CommissionEvent.payout_id == payout.id,
        )
        .all()
    )


def _ensure_open(payout: Payout, action: str) -> None:
    if payout.status not in OPEN_PAYOUT_STATUSES:
        raise HTTPException(
            status_code=409,
            detail=f"Cannot {action} a payout in status {payout.status.value}",
        )


def _recalculate(db: Session, payout: Payout) -> list[CommissionEvent]:
    """Re-total the payout from the APPROVED events still batched in it."""
    events = [
        event
        for event in _payout_events(db, payout)
        if event.status == CommissionEventStatus.APPROVED
    ]
    amount = sum(event.commission_amount_cents for event in events)
    payout.amount_cents = amount
    payout.net_amount_cents = amount - payout.fee_cents
    payout.event_count = len(events)
    payout.period_start = min((event.occurred_at for event in events), default=None)
    payout.period_end = max((event.occurred_at for event in events), default=None)
    return events


def detach_event(db: Session, event: CommissionEvent) -> Payout | None:
    """
    Take an event that stopped being payable out of its open payout.

    The payout is re-totalled; one left with no events is cancelled.
    Does not commit.
    """
    if event.payout_id is None:
        return None
    payout = db.get(Payout, event.payout_id)
    if payout is None or payout.status not in OPEN_PAYOUT_STATUSES:
        return payout

    event.payout_id = None
    db.flush()
    _recalculate(db, payout)
    if payout.event_count == 0:
        payout.status = PayoutStatus.CANCELLED
    logger.info(
        "Commission event %s removed from payout %s, amount now %s",
        event.id,
        payout.id,
        payout.amount_cents,
    )
    return payout


def complete_payout(db: Session, *, clinic_id: UUID, payout_id: UUID) -> Payout:
    payout = get_payout(db, clinic_id=clinic_id, payout_id=payout_id, lock=True)
    _ensure_open(payout, "complete")

    events = _recalculate(db, payout)
    if not events:
        raise HTTPException(status_code=409, detail="Payout has no payable commissions left")

    now = _now_utc()
    payout.status = PayoutStatus.COMPLETED
    payout.processed_at = now
    for event in events:
        event.status = CommissionEventStatus.PAID
        event.paid_at = now

    db.commit()
    db.refresh(payout)
    logger.info("Payout %s completed", payout.id)
    return payout


def _release(db: Session, payout: Payout) -> int:
    """Hand the payout's events back to the APPROVED pool."""
    events = _payout_events(db, payout)
    for event in events:
        event.payout_id = None
    return len(events)


def fail_payout(db: Session, *, clinic_id: UUID, payout_id: UUID, reason: str) -> Payout:
    reason = (reason or "").strip()
    if not reason:
        raise HTTPException(status_code=422, detail="Failure reason is required")
    payout = get_payout(db, clinic_id=clinic_id, payout_id=payout_id, lock=True)
    _ensure_open(payout, "fail")

    payout.status = PayoutStatus.FAILED
    payout.failure_reason = reason
    payout.processed_at = _now_utc()
    released = _release(db, payout)

    db.commit()
    db.refresh(payout)
    logger.warning("Payout %s failed, %s events released", payout.id, released)
    return payout


def cancel_payout(db: Session, *, clinic_id: UUID, payout_id: UUID) -> Payout:
    payout = get_payout(db, clinic_id=clinic_id, payout_id=payout_id, lock=True)
    _ensure_open(payout, "cancel")

    payout.status = PayoutStatus.CANCELLED
    released = _release(db, payout)

    db.commit()
    db.refresh(payout)
    logger.info("Payout %s cancelled, %s events released", payout.id, released)
    return payout
