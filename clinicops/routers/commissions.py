"""Commission ledger, fraud review and affiliate payout APIs."""

from __future__ import annotations

from typing import Annotated
from uuid import UUID

from fastapi import APIRouter, Depends, Query, Request
from sqlalchemy.orm import Session

from clinicops.core.deps import get_db, require_roles
from clinicops.core.rate_limit import limiter
from clinicops.db.enums import (
    ROLES_CAN_MANAGE_COMMISSIONS,
    CommissionEventStatus,
    FraudAlertStatus,
)
from clinicops.schemas.auth import UserSession
from clinicops.schemas.commissions import (
    ApprovePendingResponse,
    CommissionEventListResponse,
    CommissionEventRead,
    CommissionResultResponse,
    ConversionRequest,
    FraudAlertListResponse,
    FraudAlertRead,
    FraudAlertResolveRequest,
    FraudCheckRead,
    FraudSignalRead,
    PayoutCreateRequest,
    PayoutEligibilityRead,
    PayoutFailRequest,
    PayoutRead,
    RefundRequest,
    TouchRead,
    TouchRequest,
    VoidRequest,
)
from clinicops.services import commission_service, fraud_service, payout_service

router = APIRouter(prefix="/api/commissions", tags=["Commissions"])

_can_manage = require_roles(ROLES_CAN_MANAGE_COMMISSIONS)


def _result_response(result: commission_service.CommissionResult) -> CommissionResultResponse:
    fraud = None
    if result.fraud is not None:
        fraud = FraudCheckRead(
            risk_score=result.fraud.risk_score,
            recommendation=result.fraud.recommendation,
            held=result.fraud.held,
            signals=[FraudSignalRead.model_validate(signal) for signal in result.fraud.signals],
        )
    return CommissionResultResponse(
        event=CommissionEventRead.model_validate(result.event) if result.event else None,
        skipped=result.skipped,
        skip_reason=result.skip_reason,
        recurring_events=[
            CommissionEventRead.model_validate(event) for event in result.recurring_events
        ],
        fraud=fraud,
    )


# =============================================================================
# Attribution and conversions
# =============================================================================


@router.post("/touches", response_model=TouchRead, status_code=201)
@limiter.limit("120/minute")
def record_touch(
    request: Request,
    data: TouchRequest,
    db: Session = Depends(get_db),
    session: UserSession = Depends(_can_manage),
) -> TouchRead:
    """Record a referral-link visit for later attribution."""
    touch = commission_service.record_touch(
        db,
        clinic_id=session.clinic_id,
        ref_code=data.ref_code,
        patient_id=data.patient_id,
        ip_address=data.ip_address,
        touched_at=data.touched_at,
    )
    return TouchRead.model_validate(touch)


@router.post("/conversions", response_model=CommissionResultResponse)
def record_conversion(
    data: ConversionRequest,
    db: Session = Depends(get_db),
    session: UserSession = Depends(_can_manage),
) -> CommissionResultResponse:
    """Credit a paid order. Repeats of the same order return skipped=true."""
    result = commission_service.record_conversion(
        db,
        clinic_id=session.clinic_id,
        amount_cents=data.amount_cents,
        patient_id=data.patient_id,
        affiliate_id=data.affiliate_id,
        ref_code=data.ref_code,
        order_id=data.order_id,
        invoice_id=data.invoice_id,
        stripe_event_id=data.stripe_event_id,
        occurred_at=data.occurred_at,
        product_sku=data.product_sku,
        product_category=data.product_category,
        ip_address=data.ip_address,
        attribution_model=data.attribution_model,
    )
    return _result_response(result)


@router.post("/refunds", response_model=CommissionResultResponse)
def reverse_for_refund(
    data: RefundRequest,
    db: Session = Depends(get_db),
    session: UserSession = Depends(_can_manage),
) -> CommissionResultResponse:
    result = commission_service.reverse_commission_for_refund(
        db,
        clinic_id=session.clinic_id,
        order_id=data.order_id,
        invoice_id=data.invoice_id,
        reason=data.reason,
    )
    return _result_response(result)


# =============================================================================
# Events
# =============================================================================


@router.get("/events", response_model=CommissionEventListResponse)
def list_events(
    affiliate_id: UUID | None = None,
    status: CommissionEventStatus | None = None,
    limit: Annotated[int, Query(ge=1, le=200)] = 50,
    offset: Annotated[int, Query(ge=0)] = 0,
    db: Session = Depends(get_db),
    session: UserSession = Depends(_can_manage),
) -> CommissionEventListResponse:
    items, total = commission_service.list_events(
        db,
        clinic_id=session.clinic_id,
        affiliate_id=affiliate_id,
        status=status,
        limit=limit,
        offset=offset,
    )
    return CommissionEventListResponse(
        items=[CommissionEventRead.model_validate(event) for event in items], total=total
    )


@router.get("/events/{event_id}", response_model=CommissionEventRead)
def get_event(
    event_id: UUID,
    db: Session = Depends(get_db),
    session: UserSession = Depends(_can_manage),
) -> CommissionEventRead:
    event = commission_service.get_event(db, clinic_id=session.clinic_id, event_id=event_id)
    return CommissionEventRead.model_validate(event)


@router.post("/events/{event_id}/void", response_model=CommissionEventRead)
def void_event(
    event_id: UUID,
    data: VoidRequest | None = None,
    db: Session = Depends(get_db),
    session: UserSession = Depends(_can_manage),
) -> CommissionEventRead:
    event = commission_service.void_commission_event(
        db,
        clinic_id=session.clinic_id,
        event_id=event_id,
        reason=data.reason if data else None,
    )
    return CommissionEventRead.model_validate(event)


@router.post("/approve-pending", response_model=ApprovePendingResponse)
def approve_pending(
    db: Session = Depends(get_db),
    session: UserSession = Depends(_can_manage),
) -> ApprovePendingResponse:
    """Approve this clinic's events whose hold period has passed."""
    approved = commission_service.approve_pending_commissions(db, clinic_id=session.clinic_id)
    return ApprovePendingResponse(approved=approved)


# =============================================================================
# Fraud alerts
# =============================================================================


@router.get("/fraud-alerts", response_model=FraudAlertListResponse)
def list_fraud_alerts(
    status: FraudAlertStatus | None = None,
    affiliate_id: UUID | None = None,
    limit: Annotated[int, Query(ge=1, le=200)] = 50,
    offset: Annotated[int, Query(ge=0)] = 0,
    db: Session = Depends(get_db),
    session: UserSession = Depends(_can_manage),
) -> FraudAlertListResponse:
    items, total = fraud_service.list_alerts(
        db,
        clinic_id=session.clinic_id,
        status=status,
        affiliate_id=affiliate_id,
        limit=limit,
        offset=offset,
    )
    return FraudAlertListResponse(
        items=[FraudAlertRead.model_validate(alert) for alert in items], total=total
    )


@router.post("/fraud-alerts/{alert_id}/resolve", response_model=FraudAlertRead)
def resolve_fraud_alert(
    alert_id: UUID,
    data: FraudAlertResolveRequest,
    db: Session = Depends(get_db),
    session: UserSession = Depends(_can_manage),
) -> FraudAlertRead:
    alert = fraud_service.resolve_alert(
        db,
        clinic_id=session.clinic_id,
        alert_id=alert_id,
        status=data.status,
        notes=data.notes,
        actor_user_id=session.user_id,
    )
    return FraudAlertRead.model_validate(alert)


# =============================================================================
# Payouts
# =============================================================================


@router.get("/affiliates/{affiliate_id}/eligibility", response_model=PayoutEligibilityRead)
def payout_eligibility(
    affiliate_id: UUID,
    db: Session = Depends(get_db),
    session: UserSession = Depends(_can_manage),
) -> PayoutEligibilityRead:
    eligibility = payout_service.check_payout_eligibility(
        db, clinic_id=session.clinic_id, affiliate_id=affiliate_id
    )
    return PayoutEligibilityRead.model_validate(eligibility)


@router.post("/payouts", response_model=PayoutRead, status_code=201)
def create_payout(
    data: PayoutCreateRequest,
    db: Session = Depends(get_db),
    session: UserSession = Depends(_can_manage),
) -> PayoutRead:
    payout = payout_service.create_payout(
        db,
        clinic_id=session.clinic_id,
        affiliate_id=data.affiliate_id,
        actor_user_id=session.user_id,
    )
    return PayoutRead.model_validate(payout)


@router.post("/payouts/{payout_id}/complete", response_model=PayoutRead)
def complete_payout(
    payout_id: UUID,
    db: Session = Depends(get_db),
    session: UserSession = Depends(_can_manage),
) -> PayoutRead:
    payout = payout_service.complete_payout(db, clinic_id=session.clinic_id, payout_id=payout_id)
    return PayoutRead.model_validate(payout)


@router.post("/payouts/{payout_id}/fail", response_model=PayoutRead)
def fail_payout(
    payout_id: UUID,
    data: PayoutFailRequest,
    db: Session = Depends(get_db),
    session: UserSession = Depends(_can_manage),
) -> PayoutRead:
    payout = payout_service.fail_payout(
        db, clinic_id=session.clinic_id, payout_id=payout_id, reason=data.reason
    )
    return PayoutRead.model_validate(payout)


@router.post("/payouts/{payout_id}/cancel", response_model=PayoutRead)
def cancel_payout(
    payout_id: UUID,
    db: Session = Depends(get_db),
    session: UserSession = Depends(_can_manage),
) -> PayoutRead:
    payout = payout_service.cancel_payout(db, clinic_id=session.clinic_id, payout_id=payout_id)
    return PayoutRead.model_validate(payout)
