"""Pydantic schemas for commission ledger, fraud alert and payout APIs."""

from __future__ import annotations

from datetime import datetime
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field

from clinicops.db.enums import (
    AttributionModel,
    CommissionEventStatus,
    FraudAlertStatus,
    FraudAlertType,
    FraudSeverity,
    PayoutMethod,
    PayoutStatus,
)


class CommissionEventRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    affiliate_id: UUID
    plan_id: UUID | None = None
    patient_id: UUID | None = None
    order_id: str | None = None
    invoice_id: str | None = None
    stripe_event_id: str | None = None
    event_amount_cents: int
    commission_amount_cents: int
    breakdown: dict = Field(default_factory=dict)
    status: CommissionEventStatus
    hold_reason: str | None = None
    is_recurring: bool
    recurring_month: int | None = None
    original_event_id: UUID | None = None
    occurred_at: datetime
    hold_until: datetime
    approved_at: datetime | None = None
    paid_at: datetime | None = None
    reversed_at: datetime | None = None
    reversal_reason: str | None = None
    voided_at: datetime | None = None
    payout_id: UUID | None = None
    created_at: datetime


class CommissionEventListResponse(BaseModel):
    items: list[CommissionEventRead]
    total: int


class ConversionRequest(BaseModel):
    """A paid order to credit. One of order_id, invoice_id, stripe_event_id is required."""

    amount_cents: int = Field(gt=0)
    patient_id: UUID | None = None
    affiliate_id: UUID | None = None
    ref_code: str | None = Field(default=None, max_length=100)
    order_id: str | None = Field(default=None, max_length=255)
    invoice_id: str | None = Field(default=None, max_length=255)
    stripe_event_id: str | None = Field(default=None, max_length=255)
    occurred_at: datetime | None = None
    product_sku: str | None = Field(default=None, max_length=100)
    product_category: str | None = Field(default=None, max_length=100)
    ip_address: str | None = Field(default=None, max_length=64)
    attribution_model: AttributionModel = AttributionModel.LAST_CLICK


class FraudSignalRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    alert_type: FraudAlertType
    severity: FraudSeverity
    description: str
    evidence: dict = Field(default_factory=dict)


class FraudCheckRead(BaseModel):
    risk_score: int
    recommendation: str
    held: bool
    signals: list[FraudSignalRead] = Field(default_factory=list)


class CommissionResultResponse(BaseModel):
    event: CommissionEventRead | None = None
    skipped: bool = False
    skip_reason: str | None = None
    recurring_events: list[CommissionEventRead] = Field(default_factory=list)
    fraud: FraudCheckRead | None = None


class RefundRequest(BaseModel):
    order_id: str | None = Field(default=None, max_length=255)
    invoice_id: str | None = Field(default=None, max_length=255)
    reason: str | None = None


class VoidRequest(BaseModel):
    reason: str | None = None


class TouchRequest(BaseModel):
    ref_code: str = Field(min_length=1, max_length=100)
    patient_id: UUID | None = None
    ip_address: str | None = Field(default=None, max_length=64)
    touched_at: datetime | None = None


class TouchRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    affiliate_id: UUID
    ref_code: str | None = None
    patient_id: UUID | None = None
    touched_at: datetime
    converted_at: datetime | None = None


class ApprovePendingResponse(BaseModel):
    approved: int


class FraudAlertRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    affiliate_id: UUID
    commission_event_id: UUID | None = None
    alert_type: FraudAlertType
    severity: FraudSeverity
    risk_score: int
    description: str
    evidence: dict = Field(default_factory=dict)
    affected_amount_cents: int | None = None
    status: FraudAlertStatus
    resolved_at: datetime | None = None
    resolved_by: UUID | None = None
    resolution_notes: str | None = None
    created_at: datetime


class FraudAlertListResponse(BaseModel):
    items: list[FraudAlertRead]
    total: int


class FraudAlertResolveRequest(BaseModel):
    status: FraudAlertStatus
    notes: str | None = None


class PayoutEligibilityRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    eligible: bool
    available_amount_cents: int
    event_count: int
    minimum_payout_cents: int
    requires_tax_doc: bool
    has_tax_doc: bool
    has_payout_method: bool
    reason: str | None = None


class PayoutCreateRequest(BaseModel):
    affiliate_id: UUID


class PayoutFailRequest(BaseModel):
    reason: str = ""


class PayoutRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    affiliate_id: UUID
    status: PayoutStatus
    method: PayoutMethod
    amount_cents: int
    fee_cents: int
    net_amount_cents: int
    event_count: int
    period_start: datetime | None = None
    period_end: datetime | None = None
    processed_at: datetime | None = None
    failure_reason: str | None = None
    created_at: datetime
