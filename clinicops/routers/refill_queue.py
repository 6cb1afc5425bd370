"""Admin refill queue APIs: scheduling, payment/admin gates, provider hand-off."""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Annotated
from uuid import UUID

from fastapi import APIRouter, Depends, Query
from sqlalchemy.orm import Session

from clinicops.core.deps import get_db, require_roles
from clinicops.db.enums import ROLES_CAN_GATE_REFILLS, ROLES_CAN_PRESCRIBE, RefillStatus
from clinicops.schemas.auth import UserSession
from clinicops.schemas.refills import (
    NotificationStampResponse,
    RefillApproveRequest,
    RefillCancelRequest,
    RefillEarlyRequest,
    RefillListResponse,
    RefillPrescribeRequest,
    RefillRead,
    RefillReasonRequest,
    RefillRescheduleRequest,
    RefillScheduleRequest,
    RefillSeriesResponse,
    VerifyPaymentRequest,
    VerifyPaymentResponse,
)
from clinicops.services import refill_service, shipment_service

router = APIRouter(prefix="/api/admin/refill-queue", tags=["Refill Queue"])

_can_read = require_roles(ROLES_CAN_GATE_REFILLS | ROLES_CAN_PRESCRIBE)
_can_gate = require_roles(ROLES_CAN_GATE_REFILLS)
_can_prescribe = require_roles(ROLES_CAN_PRESCRIBE)


@router.get("", response_model=RefillListResponse)
def list_refills(
    status: RefillStatus | None = None,
    patient_id: UUID | None = None,
    limit: Annotated[int, Query(ge=1, le=200)] = 50,
    offset: Annotated[int, Query(ge=0)] = 0,
    db: Session = Depends(get_db),
    session: UserSession = Depends(_can_read),
) -> RefillListResponse:
    """List queue rows, optionally filtered by status."""
    items, total = refill_service.list_refills(
        db,
        clinic_id=session.clinic_id,
        status=status,
        patient_id=patient_id,
        limit=limit,
        offset=offset,
    )
    return RefillListResponse(
        items=[RefillRead.model_validate(refill) for refill in items], total=total
    )


@router.get("/stats")
def queue_stats(
    db: Session = Depends(get_db),
    session: UserSession = Depends(_can_read),
) -> dict[str, int]:
    return refill_service.queue_stats(db, clinic_id=session.clinic_id)


@router.post("", response_model=list[RefillRead], status_code=201)
def schedule_refills(
    data: RefillScheduleRequest,
    db: Session = Depends(get_db),
    session: UserSession = Depends(_can_gate),
) -> list[RefillRead]:
    """Schedule a shipment series split by beyond-use date."""
    rows = refill_service.schedule_refills(
        db,
        clinic_id=session.clinic_id,
        patient_id=data.patient_id,
        start_date=data.start_date or datetime.now(timezone.utc),
        duration_days=data.duration_days,
        vial_count=data.vial_count,
        bud_days=data.bud_days,
        subscription_id=data.subscription_id,
        medication_name=data.medication_name,
        amount_cents=data.amount_cents,
        actor_user_id=session.user_id,
    )
    return [RefillRead.model_validate(refill) for refill in rows]


@router.get("/{refill_id}", response_model=RefillRead)
def get_refill(
    refill_id: UUID,
    db: Session = Depends(get_db),
    session: UserSession = Depends(_can_read),
) -> RefillRead:
    refill = refill_service.get_refill(db, clinic_id=session.clinic_id, refill_id=refill_id)
    return RefillRead.model_validate(refill)


@router.get("/{refill_id}/series", response_model=RefillSeriesResponse)
def get_series(
    refill_id: UUID,
    db: Session = Depends(get_db),
    session: UserSession = Depends(_can_read),
) -> RefillSeriesResponse:
    refill = refill_service.get_refill(db, clinic_id=session.clinic_id, refill_id=refill_id)
    rows = shipment_service.get_series(db, clinic_id=session.clinic_id, refill=refill)
    summary = shipment_service.series_summary(db, clinic_id=session.clinic_id, refill=refill)
    return RefillSeriesResponse(
        items=[RefillRead.model_validate(row) for row in rows],
        summary=summary,
    )


@router.post(
    "/{refill_id}/verify-payment",
    response_model=VerifyPaymentResponse,
    response_model_exclude_none=True,
)
def verify_payment(
    refill_id: UUID,
    data: VerifyPaymentRequest,
    db: Session = Depends(get_db),
    session: UserSession = Depends(_can_gate),
) -> VerifyPaymentResponse:
    """
    Verify payment manually, or try an auto-match.

    An auto-match with no candidate answers 200 with autoMatched=false.
    """
    if data.auto_match:
        result = refill_service.auto_match_payment(
            db,
            clinic_id=session.clinic_id,
            refill_id=refill_id,
            actor_user_id=session.user_id,
        )
        if not result.matched:
            return VerifyPaymentResponse(auto_matched=False)
        return VerifyPaymentResponse(
            auto_matched=True, refill=RefillRead.model_validate(result.refill)
        )

    refill = refill_service.verify_payment(
        db,
        clinic_id=session.clinic_id,
        refill_id=refill_id,
        method=data.method,
        payment_reference=data.payment_reference,
        actor_user_id=session.user_id,
    )
    return VerifyPaymentResponse(refill=RefillRead.model_validate(refill))


@router.post("/{refill_id}/approve", response_model=RefillRead)
def approve_refill(
    refill_id: UUID,
    data: RefillApproveRequest | None = None,
    db: Session = Depends(get_db),
    session: UserSession = Depends(_can_gate),
) -> RefillRead:
    refill = refill_service.approve(
        db,
        clinic_id=session.clinic_id,
        refill_id=refill_id,
        actor_user_id=session.user_id,
        notes=data.notes if data else None,
    )
    return RefillRead.model_validate(refill)


@router.post("/{refill_id}/reject", response_model=RefillRead)
def reject_refill(
    refill_id: UUID,
    data: RefillReasonRequest,
    db: Session = Depends(get_db),
    session: UserSession = Depends(_can_gate),
) -> RefillRead:
    refill = refill_service.reject(
        db,
        clinic_id=session.clinic_id,
        refill_id=refill_id,
        reason=data.reason,
        actor_user_id=session.user_id,
    )
    return RefillRead.model_validate(refill)


@router.post("/{refill_id}/hold", response_model=RefillRead)
def hold_refill(
    refill_id: UUID,
    data: RefillReasonRequest,
    db: Session = Depends(get_db),
    session: UserSession = Depends(_can_gate),
) -> RefillRead:
    refill = refill_service.hold(
        db,
        clinic_id=session.clinic_id,
        refill_id=refill_id,
        reason=data.reason,
        actor_user_id=session.user_id,
    )
    return RefillRead.model_validate(refill)


@router.post("/{refill_id}/resume", response_model=RefillRead)
def resume_refill(
    refill_id: UUID,
    db: Session = Depends(get_db),
    session: UserSession = Depends(_can_gate),
) -> RefillRead:
    refill = refill_service.resume(
        db, clinic_id=session.clinic_id, refill_id=refill_id, actor_user_id=session.user_id
    )
    return RefillRead.model_validate(refill)


@router.post("/{refill_id}/cancel", response_model=RefillRead)
def cancel_refill(
    refill_id: UUID,
    data: RefillCancelRequest | None = None,
    db: Session = Depends(get_db),
    session: UserSession = Depends(_can_gate),
) -> RefillRead:
    data = data or RefillCancelRequest()
    refill = refill_service.cancel(
        db,
        clinic_id=session.clinic_id,
        refill_id=refill_id,
        reason=data.reason,
        cancel_series=data.cancel_series,
        actor_user_id=session.user_id,
    )
    return RefillRead.model_validate(refill)


@router.post("/{refill_id}/queue-provider", response_model=RefillRead)
def queue_for_provider(
    refill_id: UUID,
    db: Session = Depends(get_db),
    session: UserSession = Depends(_can_gate),
) -> RefillRead:
    refill = refill_service.queue_for_provider(
        db, clinic_id=session.clinic_id, refill_id=refill_id, actor_user_id=session.user_id
    )
    return RefillRead.model_validate(refill)


@router.post("/{refill_id}/prescribe", response_model=RefillRead)
def mark_prescribed(
    refill_id: UUID,
    data: RefillPrescribeRequest | None = None,
    db: Session = Depends(get_db),
    session: UserSession = Depends(_can_prescribe),
) -> RefillRead:
    refill = refill_service.mark_prescribed(
        db,
        clinic_id=session.clinic_id,
        refill_id=refill_id,
        order_id=data.order_id if data else None,
        actor_user_id=session.user_id,
    )
    return RefillRead.model_validate(refill)


@router.post("/{refill_id}/early", response_model=RefillRead)
def request_early_refill(
    refill_id: UUID,
    data: RefillEarlyRequest | None = None,
    db: Session = Depends(get_db),
    session: UserSession = Depends(_can_gate),
) -> RefillRead:
    refill = refill_service.request_early_refill(
        db,
        clinic_id=session.clinic_id,
        refill_id=refill_id,
        actor_user_id=session.user_id,
        reason=data.reason if data else None,
    )
    return RefillRead.model_validate(refill)


@router.post("/{refill_id}/reminder-sent", response_model=NotificationStampResponse)
def mark_reminder_sent(
    refill_id: UUID,
    db: Session = Depends(get_db),
    session: UserSession = Depends(_can_gate),
) -> NotificationStampResponse:
    refill, fired = refill_service.mark_reminder_sent(
        db, clinic_id=session.clinic_id, refill_id=refill_id
    )
    return NotificationStampResponse(fired=fired, refill=RefillRead.model_validate(refill))


@router.post("/{refill_id}/patient-notified", response_model=NotificationStampResponse)
def mark_patient_notified(
    refill_id: UUID,
    db: Session = Depends(get_db),
    session: UserSession = Depends(_can_gate),
) -> NotificationStampResponse:
    refill, fired = refill_service.mark_patient_notified(
        db, clinic_id=session.clinic_id, refill_id=refill_id
    )
    return NotificationStampResponse(fired=fired, refill=RefillRead.model_validate(refill))


@router.post("/{refill_id}/reschedule", response_model=RefillRead)
def reschedule_refill(
    refill_id: UUID,
    data: RefillRescheduleRequest,
    db: Session = Depends(get_db),
    session: UserSession = Depends(_can_gate),
) -> RefillRead:
    refill = refill_service.reschedule(
        db,
        clinic_id=session.clinic_id,
        refill_id=refill_id,
        new_date=data.new_date,
        actor_user_id=session.user_id,
    )
    return RefillRead.model_validate(refill)
