"""
Internal endpoints for scheduled/cron operations.

Protected by X-Internal-Secret header.
Call from external cron; the worker runs the same sweeps from Job rows.
"""

from fastapi import APIRouter, Depends
from pydantic import BaseModel
from sqlalchemy.orm import Session

from clinicops.core.deps import get_db, verify_internal_secret
from clinicops.services import (
    commission_service,
    email_service,
    refill_service,
    sla_service,
)


router = APIRouter(
    prefix="/internal/scheduled",
    tags=["internal"],
    dependencies=[Depends(verify_internal_secret)],
)


class RefillSweepResponse(BaseModel):
    moved: int


class ShipmentReminderResponse(BaseModel):
    reminders_queued: int


class CommissionSweepResponse(BaseModel):
    approved: int


class SlaSweepResponse(BaseModel):
    warnings: int
    breaches: int


class EmailSweepResponse(BaseModel):
    sent: int
    retried: int
    failed: int


@router.post("/refills", response_model=RefillSweepResponse)
def sweep_due_refills(db: Session = Depends(get_db)) -> RefillSweepResponse:
    """Move due SCHEDULED shipments into the payment or admin gate."""
    moved = refill_service.process_due_refills(db)
    return RefillSweepResponse(moved=moved)


@router.post("/shipment-reminders", response_model=ShipmentReminderResponse)
def send_shipment_reminders(db: Session = Depends(get_db)) -> ShipmentReminderResponse:
    queued = refill_service.send_shipment_reminders(db)
    return ShipmentReminderResponse(reminders_queued=queued)


@router.post("/commissions", response_model=CommissionSweepResponse)
def approve_commissions(db: Session = Depends(get_db)) -> CommissionSweepResponse:
    """Approve PENDING commissions whose hold period has passed."""
    approved = commission_service.approve_pending_commissions(db)
    return CommissionSweepResponse(approved=approved)


@router.post("/slas", response_model=SlaSweepResponse)
def sweep_slas(db: Session = Depends(get_db)) -> SlaSweepResponse:
    result = sla_service.sweep_slas(db)
    return SlaSweepResponse(warnings=result.warnings, breaches=result.breaches)


@router.post("/emails", response_model=EmailSweepResponse)
async def send_scheduled_emails(db: Session = Depends(get_db)) -> EmailSweepResponse:
    result = await email_service.process_due_emails(db)
    return EmailSweepResponse(sent=result.sent, retried=result.retried, failed=result.failed)
