"""Match ingested processor payments to refills awaiting payment."""

from __future__ import annotations

import logging
from datetime import timedelta
from uuid import UUID

from fastapi import HTTPException
from sqlalchemy import select
from sqlalchemy.orm import Session

from clinicops.core.config import settings
from clinicops.db.enums import PaymentStatus, RefillStatus
from clinicops.db.models import Patient, Payment, RefillQueue, Subscription

logger = logging.getLogger(__name__)


def find_matching_payment(
    db: Session,
    refill: RefillQueue,
    *,
    window_days: int | None = None,
) -> Payment | None:
    """
    Find a succeeded payment that can settle this refill.

    Same clinic and patient, created on or after
    next_refill_date - window_days, amount equal to the refill amount when
    the refill carries one, and not already bound to another refill.
    Oldest candidate wins.
    """
    window = timedelta(days=window_days or settings.REFILL_PAYMENT_MATCH_WINDOW_DAYS)
    bound_payment_ids = select(RefillQueue.stripe_payment_id).where(
        RefillQueue.stripe_payment_id.is_not(None)
    )

    query = db.query(Payment).filter(
        Payment.clinic_id == refill.clinic_id,
        Payment.patient_id == refill.patient_id,
        Payment.status == PaymentStatus.SUCCEEDED,
        Payment.created_at >= refill.next_refill_date - window,
        Payment.id.not_in(bound_payment_ids),
    )
    if refill.amount_cents is not None:
        query = query.filter(Payment.amount_cents == refill.amount_cents)

    return query.order_by(Payment.created_at.asc()).first()


def record_payment(
    db: Session,
    *,
    clinic_id: UUID,
    patient_id: UUID,
    amount_cents: int,
    status: PaymentStatus,
    subscription_id: UUID | None = None,
    stripe_payment_intent_id: str | None = None,
    stripe_charge_id: str | None = None,
    invoice_id: str | None = None,
) -> Payment:
    """Persist an ingested payment row."""
    patient = (
        db.query(Patient)
        .filter(Patient.clinic_id == clinic_id, Patient.id == patient_id)
        .first()
    )
    if not patient:
        raise HTTPException(status_code=404, detail="Patient not found")
    if subscription_id is not None:
        subscription = (
            db.query(Subscription)
            .filter(Subscription.clinic_id == clinic_id, Subscription.id == subscription_id)
            .first()
        )
        if not subscription:
            raise HTTPException(status_code=404, detail="Subscription not found")
    if amount_cents <= 0:
        raise HTTPException(status_code=422, detail="amount_cents must be positive")

    payment = Payment(
        clinic_id=clinic_id,
        patient_id=patient_id,
        subscription_id=subscription_id,
        amount_cents=amount_cents,
        status=status,
        stripe_payment_intent_id=stripe_payment_intent_id,
        stripe_charge_id=stripe_charge_id,
        stripe_customer_id=patient.stripe_customer_id,
        invoice_id=invoice_id,
    )
    db.add(payment)
    db.commit()
    db.refresh(payment)
    logger.info(
        "Payment %s recorded for clinic=%s status=%s", payment.id, clinic_id, status.value
    )
    return payment


def oldest_refill_awaiting_payment(
    db: Session, *, clinic_id: UUID, patient_id: UUID
) -> RefillQueue | None:
    return (
        db.query(RefillQueue)
        .filter(
            RefillQueue.clinic_id == clinic_id,
            RefillQueue.patient_id == patient_id,
            RefillQueue.status == RefillStatus.PENDING_PAYMENT,
            RefillQueue.payment_verified.is_(False),
        )
        .order_by(RefillQueue.next_refill_date.asc(), RefillQueue.created_at.asc())
        .first()
    )
