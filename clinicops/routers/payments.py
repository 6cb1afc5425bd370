"""Payment ingest and subscription lifecycle hooks feeding the refill queue."""

from __future__ import annotations

from uuid import UUID

from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from clinicops.core.deps import get_db, require_roles
from clinicops.db.enums import ROLES_CAN_GATE_REFILLS
from clinicops.schemas.auth import UserSession
from clinicops.schemas.refills import (
    PaymentIngestRequest,
    PaymentIngestResponse,
    RefillRead,
    SubscriptionRefillActionRequest,
    SubscriptionRefillActionResponse,
)
from clinicops.services import payment_matching_service, refill_service

router = APIRouter(prefix="/api", tags=["Payments"])

_can_gate = require_roles(ROLES_CAN_GATE_REFILLS)


@router.post("/payments", response_model=PaymentIngestResponse, status_code=201)
def ingest_payment(
    data: PaymentIngestRequest,
    db: Session = Depends(get_db),
    session: UserSession = Depends(_can_gate),
) -> PaymentIngestResponse:
    """
    Record a payment and settle the refill it pays for.

    Subscription renewals create (or settle) the subscription's refill;
    one-off payments go to the patient's oldest refill awaiting payment.
    """
    payment = payment_matching_service.record_payment(
        db,
        clinic_id=session.clinic_id,
        patient_id=data.patient_id,
        amount_cents=data.amount_cents,
        status=data.status,
        subscription_id=data.subscription_id,
        stripe_payment_intent_id=data.stripe_payment_intent_id,
        stripe_charge_id=data.stripe_charge_id,
        invoice_id=data.invoice_id,
    )
    if payment.subscription_id:
        refill = refill_service.trigger_refill_for_subscription_payment(db, payment=payment)
    else:
        refill = refill_service.match_payment_to_oldest_refill(db, payment=payment)
    return PaymentIngestResponse(
        payment_id=payment.id,
        refill=RefillRead.model_validate(refill) if refill else None,
    )


@router.post(
    "/subscriptions/{subscription_id}/cancel-refills",
    response_model=SubscriptionRefillActionResponse,
)
def cancel_subscription_refills(
    subscription_id: UUID,
    data: SubscriptionRefillActionRequest | None = None,
    db: Session = Depends(get_db),
    session: UserSession = Depends(_can_gate),
) -> SubscriptionRefillActionResponse:
    affected = refill_service.cancel_refills_for_subscription(
        db,
        clinic_id=session.clinic_id,
        subscription_id=subscription_id,
        reason=data.reason if data else None,
    )
    return SubscriptionRefillActionResponse(affected=affected)


@router.post(
    "/subscriptions/{subscription_id}/hold-refills",
    response_model=SubscriptionRefillActionResponse,
)
def hold_subscription_refills(
    subscription_id: UUID,
    data: SubscriptionRefillActionRequest | None = None,
    db: Session = Depends(get_db),
    session: UserSession = Depends(_can_gate),
) -> SubscriptionRefillActionResponse:
    affected = refill_service.hold_refills_for_subscription(
        db,
        clinic_id=session.clinic_id,
        subscription_id=subscription_id,
        reason=data.reason if data else None,
    )
    return SubscriptionRefillActionResponse(affected=affected)
