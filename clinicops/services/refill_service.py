"""Refill gate service - payment verification, admin approval and provider queue.

Every gate transition loads the refill row with SELECT ... FOR UPDATE,
validates before mutating, writes a RefillStatusHistory row and commits
once, so two staff members cannot double-approve or double-reject.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from uuid import UUID

from fastapi import HTTPException
from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from clinicops.core.config import settings
from clinicops.db.enums import (
    ACTIVE_REFILL_STATUSES,
    TERMINAL_REFILL_STATUSES,
    PaymentMethod,
    PaymentStatus,
    RefillStatus,
    SubscriptionStatus,
)
from clinicops.db.models import Patient, Payment, RefillQueue, RefillStatusHistory, Subscription
from clinicops.services import email_service, payment_matching_service, shipment_service

logger = logging.getLogger(__name__)


@dataclass
class AutoMatchResult:
    matched: bool
    refill: RefillQueue
    payment: Payment | None = None


def _now_utc() -> datetime:
    return datetime.now(timezone.utc)


# =============================================================================
# Helpers
# =============================================================================


def _ensure_refill_belongs_to_clinic(
    db: Session, clinic_id: UUID, refill_id: UUID, *, lock: bool = False
) -> RefillQueue:
    stmt = select(RefillQueue).where(
        RefillQueue.id == refill_id, RefillQueue.clinic_id == clinic_id
    )
    if lock:
        stmt = stmt.with_for_update()
    refill = db.execute(stmt).scalar_one_or_none()
    if not refill:
        raise HTTPException(status_code=404, detail="Refill not found")
    return refill


def _record_transition(
    db: Session,
    refill: RefillQueue,
    to_status: RefillStatus,
    *,
    actor_user_id: UUID | None = None,
    note: str | None = None,
) -> None:
    db.add(
        RefillStatusHistory(
            clinic_id=refill.clinic_id,
            refill_id=refill.id,
            from_status=refill.status,
            to_status=to_status,
            actor_user_id=actor_user_id,
            note=note,
        )
    )
    refill.status = to_status


def _commit(db: Session, refill: RefillQueue) -> RefillQueue:
    db.commit()
    db.refresh(refill)
    return refill


def _queue_payment_request(db: Session, refill: RefillQueue) -> None:
    """Queue the 'payment due' email when the patient has an address."""
    patient = db.get(Patient, refill.patient_id)
    if not patient or not patient.email:
        return
    medication = refill.medication_name or "your medication"
    email_service.queue_email(
        db,
        clinic_id=refill.clinic_id,
        recipient_email=patient.email,
        subject="Your refill is ready for payment",
        body=(
            f"<p>Hi {patient.first_name},</p>"
            f"<p>Your refill of {medication} is due. "
            "Please complete payment so we can prepare your shipment.</p>"
        ),
        template="refill_payment_request",
        refill_id=refill.id,
        commit=False,
    )


def _enter_pending_payment(
    db: Session,
    refill: RefillQueue,
    *,
    actor_user_id: UUID | None = None,
    note: str | None = None,
) -> None:
    _record_transition(
        db, refill, RefillStatus.PENDING_PAYMENT, actor_user_id=actor_user_id, note=note
    )
    _queue_payment_request(db, refill)


def _enter_due_gate(
    db: Session,
    refill: RefillQueue,
    *,
    actor_user_id: UUID | None = None,
    note: str | None = None,
) -> None:
    """A due shipment asks for payment, unless it was prepaid with its series."""
    if refill.payment_verified:
        _record_transition(
            db,
            refill,
            RefillStatus.PENDING_ADMIN,
            actor_user_id=actor_user_id,
            note=note or "Prepaid shipment due",
        )
        return
    _enter_pending_payment(db, refill, actor_user_id=actor_user_id, note=note)


def _is_payment_verifiable(refill: RefillQueue, now: datetime) -> bool:
    if refill.status == RefillStatus.PENDING_PAYMENT:
        return True
    return refill.status == RefillStatus.SCHEDULED and refill.next_refill_date <= now


def _ensure_payment_verifiable(refill: RefillQueue) -> None:
    if refill.payment_verified:
        raise HTTPException(status_code=409, detail="Payment already verified")
    if not _is_payment_verifiable(refill, _now_utc()):
        raise HTTPException(
            status_code=409,
            detail=f"Cannot verify payment for a refill in status {refill.status.value}",
        )


def _apply_payment_verification(
    db: Session,
    refill: RefillQueue,
    *,
    method: PaymentMethod,
    payment_reference: str | None,
    actor_user_id: UUID | None,
    payment: Payment | None = None,
) -> None:
    now = _now_utc()
    # A due SCHEDULED row passes through the payment gate on its way in
    if refill.status == RefillStatus.SCHEDULED:
        _record_transition(db, refill, RefillStatus.PENDING_PAYMENT, actor_user_id=actor_user_id)
    refill.payment_verified = True
    refill.payment_verified_at = now
    refill.payment_verified_by = actor_user_id
    refill.payment_method = method
    refill.payment_reference = payment_reference
    if payment is not None:
        refill.stripe_payment_id = payment.id
    _record_transition(
        db,
        refill,
        RefillStatus.PENDING_ADMIN,
        actor_user_id=actor_user_id,
        note=f"Payment verified ({method.value})",
    )
    email_service.cancel_pending_emails(db, clinic_id=refill.clinic_id, refill_id=refill.id)


def _apply_provider_queue(
    db: Session, refill: RefillQueue, *, actor_user_id: UUID | None = None
) -> None:
    if not (refill.payment_verified and refill.admin_approved):
        raise HTTPException(
            status_code=409,
            detail="Refill needs verified payment and admin approval before the provider queue",
        )
    refill.provider_queued_at = _now_utc()
    _record_transition(db, refill, RefillStatus.PENDING_PROVIDER, actor_user_id=actor_user_id)


# =============================================================================
# Reads
# =============================================================================


def get_refill(db: Session, *, clinic_id: UUID, refill_id: UUID) -> RefillQueue:
    return _ensure_refill_belongs_to_clinic(db, clinic_id, refill_id)


def list_refills(
    db: Session,
    *,
    clinic_id: UUID,
    status: RefillStatus | None = None,
    patient_id: UUID | None = None,
    limit: int = 50,
    offset: int = 0,
) -> tuple[list[RefillQueue], int]:
    query = db.query(RefillQueue).filter(RefillQueue.clinic_id == clinic_id)
    if status:
        query = query.filter(RefillQueue.status == status)
    if patient_id:
        query = query.filter(RefillQueue.patient_id == patient_id)
    total = query.count()
    items = (
        query.order_by(RefillQueue.next_refill_date.asc(), RefillQueue.shipment_number.asc())
        .offset(offset)
        .limit(limit)
        .all()
    )
    return items, total


def queue_stats(db: Session, *, clinic_id: UUID) -> dict[str, int]:
    """Row counts per status, every status present, plus total."""
    rows = (
        db.query(RefillQueue.status, func.count(RefillQueue.id))
        .filter(RefillQueue.clinic_id == clinic_id)
        .group_by(RefillQueue.status)
        .all()
    )
    stats = {status.value: 0 for status in RefillStatus}
    for status, count in rows:
        stats[status.value] = count
    stats["total"] = sum(count for _, count in rows)
    return stats


# =============================================================================
# Scheduling
# =============================================================================


def schedule_refills(
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
) -> list[RefillQueue]:
    """Schedule a shipment series; a head that is already due asks for payment."""
    rows = shipment_service.schedule_refill_series(
        db,
        clinic_id=clinic_id,
        patient_id=patient_id,
        start_date=start_date,
        duration_days=duration_days,
        vial_count=vial_count,
        bud_days=bud_days,
        subscription_id=subscription_id,
        medication_name=medication_name,
        amount_cents=amount_cents,
        actor_user_id=actor_user_id,
        commit=False,
    )
    if rows[0].status == RefillStatus.PENDING_PAYMENT:
        _queue_payment_request(db, rows[0])
    db.commit()
    for refill in rows:
        db.refresh(refill)
    return rows


def process_due_refills(
    db: Session, *, now: datetime | None = None, clinic_id: UUID | None = None
) -> int:
    """
    Move every due SCHEDULED refill into its gate. Returns the count moved.

    Unpaid rows go to PENDING_PAYMENT; rows prepaid with their series go
    straight to PENDING_ADMIN.
    """
    now = now or _now_utc()
    query = db.query(RefillQueue).filter(
        RefillQueue.status == RefillStatus.SCHEDULED,
        RefillQueue.next_refill_date <= now,
    )
    if clinic_id:
        query = query.filter(RefillQueue.clinic_id == clinic_id)
    due = query.order_by(RefillQueue.next_refill_date.asc()).with_for_update().all()

    for refill in due:
        _enter_due_gate(db, refill, note="Refill due")
    db.commit()

    if due:
        logger.info("Moved %s due refills into the gate", len(due))
    return len(due)


def request_early_refill(
    db: Session,
    *,
    clinic_id: UUID,
    refill_id: UUID,
    actor_user_id: UUID | None = None,
    reason: str | None = None,
) -> RefillQueue:
    refill = _ensure_refill_belongs_to_clinic(db, clinic_id, refill_id, lock=True)
    if refill.status != RefillStatus.SCHEDULED:
        raise HTTPException(
            status_code=409,
            detail=f"Only scheduled refills can be requested early (status {refill.status.value})",
        )
    refill.next_refill_date = _now_utc()
    _enter_due_gate(
        db, refill, actor_user_id=actor_user_id, note=reason or "Early refill requested"
    )
    logger.info("Early refill requested refill=%s", refill.id)
    return _commit(db, refill)


def reschedule(
    db: Session,
    *,
    clinic_id: UUID,
    refill_id: UUID,
    new_date: datetime,
    actor_user_id: UUID | None = None,
) -> RefillQueue:
    refill = _ensure_refill_belongs_to_clinic(db, clinic_id, refill_id, lock=True)
    email_service.cancel_pending_emails(db, clinic_id=clinic_id, refill_id=refill.id)
    return shipment_service.reschedule_shipment(
        db, clinic_id=clinic_id, refill=refill, new_date=new_date, actor_user_id=actor_user_id
    )


# =============================================================================
# Payment gate
# =============================================================================


def verify_payment(
    db: Session,
    *,
    clinic_id: UUID,
    refill_id: UUID,
    method: PaymentMethod,
    payment_reference: str | None = None,
    actor_user_id: UUID | None = None,
) -> RefillQueue:
    """
    Manually verify payment and move the refill to PENDING_ADMIN.

    EXTERNAL_REFERENCE requires a non-empty reference.
    """
    reference = (payment_reference or "").strip() or None
    if method == PaymentMethod.EXTERNAL_REFERENCE and not reference:
        raise HTTPException(
            status_code=422, detail="Payment reference is required for external payments"
        )

    refill = _ensure_refill_belongs_to_clinic(db, clinic_id, refill_id, lock=True)
    _ensure_payment_verifiable(refill)

    _apply_payment_verification(
        db,
        refill,
        method=method,
        payment_reference=reference,
        actor_user_id=actor_user_id,
    )
    logger.info("Payment verified refill=%s method=%s", refill.id, method.value)
    return _commit(db, refill)


def auto_match_payment(
    db: Session,
    *,
    clinic_id: UUID,
    refill_id: UUID,
    actor_user_id: UUID | None = None,
    window_days: int | None = None,
) -> AutoMatchResult:
    """
    Try to settle the refill from an ingested payment.

    No candidate is a normal outcome (matched=False) and leaves the refill
    untouched so staff can fall back to manual verification.
    """
    refill = _ensure_refill_belongs_to_clinic(db, clinic_id, refill_id, lock=True)
    _ensure_payment_verifiable(refill)

    payment = payment_matching_service.find_matching_payment(db, refill, window_days=window_days)
    if payment is None:
        logger.info("No payment match for refill=%s", refill.id)
        return AutoMatchResult(matched=False, refill=refill)
    return _settle_with_payment(db, refill, payment, actor_user_id=actor_user_id)


def _settle_with_payment(
    db: Session,
    refill: RefillQueue,
    payment: Payment,
    *,
    actor_user_id: UUID | None = None,
) -> AutoMatchResult:
    clinic_id, refill_id = refill.clinic_id, refill.id
    _apply_payment_verification(
        db,
        refill,
        method=PaymentMethod.STRIPE_AUTO,
        payment_reference=payment.stripe_payment_intent_id or payment.stripe_charge_id,
        actor_user_id=actor_user_id,
        payment=payment,
    )
    try:
        db.commit()
    except IntegrityError:
        # Another refill claimed the same payment first
        db.rollback()
        logger.info("Payment %s already bound, refill=%s unmatched", payment.id, refill_id)
        refill = _ensure_refill_belongs_to_clinic(db, clinic_id, refill_id)
        return AutoMatchResult(matched=False, refill=refill)

    db.refresh(refill)
    logger.info("Auto-matched payment=%s to refill=%s", payment.id, refill.id)
    return AutoMatchResult(matched=True, refill=refill, payment=payment)


# =============================================================================
# Admin gate
# =============================================================================


def approve(
    db: Session,
    *,
    clinic_id: UUID,
    refill_id: UUID,
    actor_user_id: UUID | None = None,
    notes: str | None = None,
) -> RefillQueue:
    """Admin approval: PENDING_ADMIN -> APPROVED -> PENDING_PROVIDER."""
    refill = _ensure_refill_belongs_to_clinic(db, clinic_id, refill_id, lock=True)
    if not refill.payment_verified:
        raise HTTPException(
            status_code=409, detail="Payment must be verified before admin approval"
        )
    if refill.status != RefillStatus.PENDING_ADMIN:
        raise HTTPException(
            status_code=409,
            detail=f"Cannot approve a refill in status {refill.status.value}",
        )

    refill.admin_approved = True
    refill.admin_approved_at = _now_utc()
    refill.admin_approved_by = actor_user_id
    refill.admin_notes = notes
    _record_transition(db, refill, RefillStatus.APPROVED, actor_user_id=actor_user_id, note=notes)
    _apply_provider_queue(db, refill, actor_user_id=actor_user_id)

    logger.info("Refill approved refill=%s", refill.id)
    return _commit(db, refill)


def queue_for_provider(
    db: Session,
    *,
    clinic_id: UUID,
    refill_id: UUID,
    actor_user_id: UUID | None = None,
) -> RefillQueue:
    refill = _ensure_refill_belongs_to_clinic(db, clinic_id, refill_id, lock=True)
    if refill.status != RefillStatus.APPROVED:
        raise HTTPException(
            status_code=409,
            detail=f"Only approved refills can be queued (status {refill.status.value})",
        )
    _apply_provider_queue(db, refill, actor_user_id=actor_user_id)
    return _commit(db, refill)


def reject(
    db: Session,
    *,
    clinic_id: UUID,
    refill_id: UUID,
    reason: str,
    actor_user_id: UUID | None = None,
) -> RefillQueue:
    """
    Reject a refill. Terminal.

    Rejecting an already rejected refill returns it unchanged, keeping the
    first reason.
    """
    reason = (reason or "").strip()
    if not reason:
        raise HTTPException(status_code=422, detail="Rejection reason is required")

    refill = _ensure_refill_belongs_to_clinic(db, clinic_id, refill_id, lock=True)
    if refill.status == RefillStatus.REJECTED:
        return refill
    if refill.status in TERMINAL_REFILL_STATUSES:
        raise HTTPException(
            status_code=409,
            detail=f"Cannot reject a refill in status {refill.status.value}",
        )

    refill.rejection_reason = reason
    refill.rejected_at = _now_utc()
    _record_transition(db, refill, RefillStatus.REJECTED, actor_user_id=actor_user_id, note=reason)
    email_service.cancel_pending_emails(db, clinic_id=clinic_id, refill_id=refill.id)

    logger.info("Refill rejected refill=%s", refill.id)
    return _commit(db, refill)


# =============================================================================
# Side branches
# =============================================================================


def hold(
    db: Session,
    *,
    clinic_id: UUID,
    refill_id: UUID,
    reason: str,
    actor_user_id: UUID | None = None,
) -> RefillQueue:
    reason = (reason or "").strip()
    if not reason:
        raise HTTPException(status_code=422, detail="Hold reason is required")

    refill = _ensure_refill_belongs_to_clinic(db, clinic_id, refill_id, lock=True)
    if refill.status in TERMINAL_REFILL_STATUSES or refill.status == RefillStatus.ON_HOLD:
        raise HTTPException(
            status_code=409,
            detail=f"Cannot hold a refill in status {refill.status.value}",
        )
    refill.hold_reason = reason
    refill.held_at = _now_utc()
    _record_transition(db, refill, RefillStatus.ON_HOLD, actor_user_id=actor_user_id, note=reason)
    return _commit(db, refill)


def _resume_target(refill: RefillQueue, now: datetime) -> RefillStatus:
    """The gate a held refill returns to, implied by its flags."""
    if refill.admin_approved:
        return RefillStatus.PENDING_PROVIDER
    if refill.next_refill_date > now:
        return RefillStatus.SCHEDULED
    if refill.payment_verified:
        return RefillStatus.PENDING_ADMIN
    return RefillStatus.PENDING_PAYMENT


def resume(
    db: Session,
    *,
    clinic_id: UUID,
    refill_id: UUID,
    actor_user_id: UUID | None = None,
) -> RefillQueue:
    refill = _ensure_refill_belongs_to_clinic(db, clinic_id, refill_id, lock=True)
    if refill.status != RefillStatus.ON_HOLD:
        raise HTTPException(status_code=409, detail="Only refills on hold can be resumed")

    target = _resume_target(refill, _now_utc())
    refill.hold_reason = None
    refill.held_at = None
    if target == RefillStatus.PENDING_PROVIDER:
        _apply_provider_queue(db, refill, actor_user_id=actor_user_id)
    elif target == RefillStatus.PENDING_PAYMENT:
        _enter_pending_payment(db, refill, actor_user_id=actor_user_id, note="Resumed")
    else:
        _record_transition(db, refill, target, actor_user_id=actor_user_id, note="Resumed")
    return _commit(db, refill)


def cancel(
    db: Session,
    *,
    clinic_id: UUID,
    refill_id: UUID,
    reason: str | None = None,
    cancel_series: bool = False,
    actor_user_id: UUID | None = None,
) -> RefillQueue:
    """Cancel a refill; with cancel_series the series' SCHEDULED shipments go too."""
    refill = _ensure_refill_belongs_to_clinic(db, clinic_id, refill_id, lock=True)
    if refill.status == RefillStatus.CANCELLED:
        return refill
    if refill.status in TERMINAL_REFILL_STATUSES:
        raise HTTPException(
            status_code=409,
            detail=f"Cannot cancel a refill in status {refill.status.value}",
        )

    refill.cancelled_at = _now_utc()
    refill.cancel_reason = reason
    _record_transition(db, refill, RefillStatus.CANCELLED, actor_user_id=actor_user_id, note=reason)
    email_service.cancel_pending_emails(db, clinic_id=clinic_id, refill_id=refill.id)
    if cancel_series:
        shipment_service.cancel_remaining_shipments(
            db,
            clinic_id=clinic_id,
            refill=refill,
            reason=reason,
            actor_user_id=actor_user_id,
            commit=False,
        )
    logger.info("Refill cancelled refill=%s series=%s", refill.id, cancel_series)
    return _commit(db, refill)


# =============================================================================
# Provider
# =============================================================================


def _has_other_active_refill(db: Session, refill: RefillQueue) -> bool:
    return (
        db.query(RefillQueue.id)
        .filter(
            RefillQueue.clinic_id == refill.clinic_id,
            RefillQueue.subscription_id == refill.subscription_id,
            RefillQueue.id != refill.id,
            RefillQueue.status.in_(ACTIVE_REFILL_STATUSES),
        )
        .first()
        is not None
    )


def _schedule_next_cycle(
    db: Session, refill: RefillQueue, prescribed_at: datetime, actor_user_id: UUID | None
) -> None:
    """Last shipment of an active subscription: the next cycle starts when its supply runs out."""
    if refill.subscription_id is None or refill.shipment_number < refill.total_shipments:
        return
    subscription = db.get(Subscription, refill.subscription_id)
    if not subscription or subscription.status != SubscriptionStatus.ACTIVE:
        return
    if _has_other_active_refill(db, refill):
        return
    shipment_service.schedule_refill_series(
        db,
        clinic_id=refill.clinic_id,
        patient_id=refill.patient_id,
        start_date=shipment_service.next_shipment_date(prescribed_at, refill),
        duration_days=subscription.interval_days or refill.refill_interval_days,
        vial_count=subscription.vial_count,
        bud_days=subscription.bud_days or refill.bud_days,
        subscription_id=subscription.id,
        medication_name=subscription.medication_name or refill.medication_name,
        amount_cents=subscription.amount_cents,
        actor_user_id=actor_user_id,
        commit=False,
    )


def mark_prescribed(
    db: Session,
    *,
    clinic_id: UUID,
    refill_id: UUID,
    order_id: str | None = None,
    actor_user_id: UUID | None = None,
) -> RefillQueue:
    """
    Provider wrote the prescription. Terminal.

    The next shipment of the series is re-dated to land when this one's
    supply runs out.
    """
    refill = _ensure_refill_belongs_to_clinic(db, clinic_id, refill_id, lock=True)
    if refill.status != RefillStatus.PENDING_PROVIDER:
        raise HTTPException(
            status_code=409,
            detail=f"Cannot prescribe a refill in status {refill.status.value}",
        )
    if refill.provider_queued_at is None:
        raise HTTPException(status_code=409, detail="Refill was never queued for a provider")

    now = _now_utc()
    refill.prescribed_at = now
    refill.last_refill_date = now
    refill.order_id = order_id
    _record_transition(db, refill, RefillStatus.PRESCRIBED, actor_user_id=actor_user_id)

    following = shipment_service.next_in_series(db, refill)
    if following is not None and following.status == RefillStatus.SCHEDULED:
        following.next_refill_date = shipment_service.next_shipment_date(now, refill)
        following.reminder_sent_at = None
        following.patient_notified_at = None

    _schedule_next_cycle(db, refill, now, actor_user_id)

    logger.info("Refill prescribed refill=%s", refill.id)
    return _commit(db, refill)


# =============================================================================
# Notification timestamps
# =============================================================================


def _stamp_once(
    refill: RefillQueue, attr: str, *, now: datetime, window_hours: int | None
) -> bool:
    window = timedelta(hours=window_hours or settings.REFILL_NOTIFICATION_WINDOW_HOURS)
    previous = getattr(refill, attr)
    if previous is not None and now - previous < window:
        return False
    setattr(refill, attr, now)
    return True


def mark_reminder_sent(
    db: Session,
    *,
    clinic_id: UUID,
    refill_id: UUID,
    window_hours: int | None = None,
) -> tuple[RefillQueue, bool]:
    """Stamp reminder_sent_at unless already stamped inside the window."""
    refill = _ensure_refill_belongs_to_clinic(db, clinic_id, refill_id, lock=True)
    fired = _stamp_once(refill, "reminder_sent_at", now=_now_utc(), window_hours=window_hours)
    return _commit(db, refill), fired


def mark_patient_notified(
    db: Session,
    *,
    clinic_id: UUID,
    refill_id: UUID,
    window_hours: int | None = None,
) -> tuple[RefillQueue, bool]:
    refill = _ensure_refill_belongs_to_clinic(db, clinic_id, refill_id, lock=True)
    fired = _stamp_once(refill, "patient_notified_at", now=_now_utc(), window_hours=window_hours)
    return _commit(db, refill), fired


def send_shipment_reminders(
    db: Session,
    *,
    now: datetime | None = None,
    days_ahead: int | None = None,
) -> int:
    """Queue a reminder email for every upcoming shipment not yet reminded."""
    now = now or _now_utc()
    reminded = 0
    for refill in shipment_service.shipments_needing_reminder(db, now=now, days_ahead=days_ahead):
        if not _stamp_once(refill, "reminder_sent_at", now=now, window_hours=None):
            continue
        patient = db.get(Patient, refill.patient_id)
        if patient and patient.email:
            email_service.queue_email(
                db,
                clinic_id=refill.clinic_id,
                recipient_email=patient.email,
                subject="Your next shipment is coming up",
                body=(
                    f"<p>Hi {patient.first_name},</p>"
                    f"<p>Shipment {refill.shipment_number} of {refill.total_shipments} "
                    f"is scheduled for {refill.next_refill_date:%B %d, %Y}.</p>"
                ),
                template="refill_shipment_reminder",
                refill_id=refill.id,
                commit=False,
            )
        reminded += 1
    db.commit()
    if reminded:
        logger.info("Queued %s shipment reminders", reminded)
    return reminded


# =============================================================================
# Payment ingest and subscription hooks
# =============================================================================


def match_payment_to_oldest_refill(db: Session, *, payment: Payment) -> RefillQueue | None:
    """Bind a one-off payment to the patient's oldest refill awaiting payment."""
    if payment.status != PaymentStatus.SUCCEEDED:
        return None
    refill = payment_matching_service.oldest_refill_awaiting_payment(
        db, clinic_id=payment.clinic_id, patient_id=payment.patient_id
    )
    if refill is None:
        return None
    refill = _ensure_refill_belongs_to_clinic(db, payment.clinic_id, refill.id, lock=True)
    result = _settle_with_payment(db, refill, payment)
    return result.refill if result.matched else None


def trigger_refill_for_subscription_payment(db: Session, *, payment: Payment) -> RefillQueue | None:
    """
    Subscription renewal paid: create an auto-approved refill series.

    Every shipment of the series is verified with STRIPE_AUTO. The head is
    auto-approved and queued for the provider; the follow-on shipments
    skip the payment gate and wait for admin review when they come due.

    If the subscription already has an active refill, that refill is
    returned instead; one still waiting on payment is settled by this
    payment.
    """
    if payment.subscription_id is None or payment.status != PaymentStatus.SUCCEEDED:
        return None
    subscription = (
        db.query(Subscription)
        .filter(
            Subscription.clinic_id == payment.clinic_id,
            Subscription.id == payment.subscription_id,
        )
        .first()
    )
    if not subscription or subscription.status != SubscriptionStatus.ACTIVE:
        logger.warning("Renewal payment=%s for inactive subscription, skipping", payment.id)
        return None

    existing = (
        db.query(RefillQueue)
        .filter(
            RefillQueue.clinic_id == subscription.clinic_id,
            RefillQueue.subscription_id == subscription.id,
            RefillQueue.status.in_(ACTIVE_REFILL_STATUSES),
        )
        .order_by(RefillQueue.next_refill_date.asc())
        .first()
    )
    if existing is not None:
        if existing.status == RefillStatus.PENDING_PAYMENT and not existing.payment_verified:
            return _settle_with_payment(db, existing, payment).refill
        logger.info(
            "Active refill=%s exists for subscription=%s, skipping", existing.id, subscription.id
        )
        return existing

    rows = shipment_service.schedule_refill_series(
        db,
        clinic_id=subscription.clinic_id,
        patient_id=subscription.patient_id,
        start_date=_now_utc(),
        duration_days=subscription.interval_days,
        vial_count=subscription.vial_count,
        bud_days=subscription.bud_days,
        subscription_id=subscription.id,
        medication_name=subscription.medication_name,
        amount_cents=payment.amount_cents,
        commit=False,
    )
    head = rows[0]
    now = _now_utc()
    reference = payment.stripe_payment_intent_id or payment.stripe_charge_id
    # The renewal pays for the whole interval, follow-on shipments included
    for refill in rows:
        refill.payment_verified = True
        refill.payment_verified_at = now
        refill.payment_method = PaymentMethod.STRIPE_AUTO
        refill.payment_reference = reference
    head.stripe_payment_id = payment.id
    head.admin_approved = True
    head.admin_approved_at = now
    head.admin_notes = "Auto-approved: subscription payment verified"
    _record_transition(db, head, RefillStatus.APPROVED, note="Auto-approved renewal")
    _apply_provider_queue(db, head)

    db.commit()
    db.refresh(head)
    logger.info(
        "Renewal refill=%s created for subscription=%s (auto-approved)", head.id, subscription.id
    )
    return head


def _bulk_transition_for_subscription(
    db: Session,
    *,
    clinic_id: UUID,
    subscription_id: UUID,
    to_status: RefillStatus,
    reason: str,
) -> int:
    eligible = set(ACTIVE_REFILL_STATUSES)
    if to_status == RefillStatus.CANCELLED:
        # Paused subscriptions leave held rows behind
        eligible.add(RefillStatus.ON_HOLD)
    rows = (
        db.query(RefillQueue)
        .filter(
            RefillQueue.clinic_id == clinic_id,
            RefillQueue.subscription_id == subscription_id,
            RefillQueue.status.in_(eligible),
        )
        .with_for_update()
        .all()
    )
    now = _now_utc()
    for refill in rows:
        if to_status == RefillStatus.CANCELLED:
            refill.cancelled_at = now
            refill.cancel_reason = reason
            email_service.cancel_pending_emails(db, clinic_id=clinic_id, refill_id=refill.id)
        else:
            refill.hold_reason = reason
            refill.held_at = now
        _record_transition(db, refill, to_status, note=reason)
    db.commit()
    return len(rows)


def cancel_refills_for_subscription(
    db: Session, *, clinic_id: UUID, subscription_id: UUID, reason: str | None = None
) -> int:
    count = _bulk_transition_for_subscription(
        db,
        clinic_id=clinic_id,
        subscription_id=subscription_id,
        to_status=RefillStatus.CANCELLED,
        reason=reason or "Subscription canceled",
    )
    if count:
        logger.info("Cancelled %s refills for subscription=%s", count, subscription_id)
    return count


def hold_refills_for_subscription(
    db: Session, *, clinic_id: UUID, subscription_id: UUID, reason: str | None = None
) -> int:
    count = _bulk_transition_for_subscription(
        db,
        clinic_id=clinic_id,
        subscription_id=subscription_id,
        to_status=RefillStatus.ON_HOLD,
        reason=reason or "Subscription paused",
    )
    if count:
        logger.info("Held %s refills for subscription=%s", count, subscription_id)
    return count
