"""Pydantic schemas for the refill queue and payment ingest APIs."""

from __future__ import annotations

from datetime import datetime
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field, model_validator

from clinicops.db.enums import PaymentMethod, PaymentStatus, RefillStatus


class RefillRead(BaseModel):
    """One shipment row in the refill queue."""

    model_config = ConfigDict(from_attributes=True)

    id: UUID
    patient_id: UUID
    subscription_id: UUID | None = None
    status: RefillStatus
    medication_name: str | None = None
    amount_cents: int | None = None
    next_refill_date: datetime
    last_refill_date: datetime | None = None
    refill_interval_days: int
    vial_count: int
    shipment_number: int
    total_shipments: int
    parent_refill_id: UUID | None = None
    bud_days: int
    supply_days: int
    payment_verified: bool
    payment_verified_at: datetime | None = None
    payment_method: PaymentMethod | None = None
    payment_reference: str | None = None
    stripe_payment_id: UUID | None = None
    admin_approved: bool
    admin_approved_at: datetime | None = None
    admin_notes: str | None = None
    rejection_reason: str | None = None
    provider_queued_at: datetime | None = None
    prescribed_at: datetime | None = None
    order_id: str | None = None
    hold_reason: str | None = None
    cancel_reason: str | None = None
    reminder_sent_at: datetime | None = None
    patient_notified_at: datetime | None = None
    created_at: datetime
    updated_at: datetime


class RefillListResponse(BaseModel):
    items: list[RefillRead]
    total: int


class RefillScheduleRequest(BaseModel):
    """Schedule a shipment series for a patient."""

    patient_id: UUID
    start_date: datetime | None = None
    duration_days: int | None = Field(default=None, ge=1)
    vial_count: int = Field(default=1, ge=1)
    bud_days: int | None = Field(default=None, ge=1)
    subscription_id: UUID | None = None
    medication_name: str | None = Field(default=None, max_length=255)
    amount_cents: int | None = Field(default=None, ge=0)


class RefillSeriesResponse(BaseModel):
    items: list[RefillRead]
    summary: dict


class VerifyPaymentRequest(BaseModel):
    """Either a manual verification or an auto-match attempt."""

    model_config = ConfigDict(populate_by_name=True)

    method: PaymentMethod | None = None
    payment_reference: str | None = Field(default=None, alias="paymentReference", max_length=255)
    auto_match: bool = Field(default=False, alias="autoMatch")

    @model_validator(mode="after")
    def _method_or_auto_match(self) -> "VerifyPaymentRequest":
        if not self.auto_match and self.method is None:
            raise ValueError("method is required unless autoMatch is true")
        return self


class VerifyPaymentResponse(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    auto_matched: bool | None = Field(default=None, serialization_alias="autoMatched")
    refill: RefillRead | None = None


class RefillApproveRequest(BaseModel):
    notes: str | None = None


class RefillReasonRequest(BaseModel):
    """Body for reject/hold; the service rejects blank reasons."""

    reason: str = ""


class RefillCancelRequest(BaseModel):
    reason: str | None = None
    cancel_series: bool = False


class RefillPrescribeRequest(BaseModel):
    order_id: str | None = Field(default=None, max_length=255)


class RefillEarlyRequest(BaseModel):
    reason: str | None = None


class RefillRescheduleRequest(BaseModel):
    new_date: datetime


class NotificationStampResponse(BaseModel):
    """fired=False means an earlier stamp inside the window was kept."""

    fired: bool
    refill: RefillRead


class PaymentIngestRequest(BaseModel):
    """A payment row as written by the Stripe webhook ingest."""

    patient_id: UUID
    amount_cents: int = Field(ge=0)
    status: PaymentStatus = PaymentStatus.SUCCEEDED
    subscription_id: UUID | None = None
    stripe_payment_intent_id: str | None = Field(default=None, max_length=255)
    stripe_charge_id: str | None = Field(default=None, max_length=255)
    invoice_id: str | None = Field(default=None, max_length=255)


class PaymentIngestResponse(BaseModel):
    payment_id: UUID
    refill: RefillRead | None = None


class SubscriptionRefillActionRequest(BaseModel):
    reason: str | None = None


class SubscriptionRefillActionResponse(BaseModel):
    affected: int
