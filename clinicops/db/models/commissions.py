"""Affiliate / sales-rep commission ledger, fraud and payout models."""

from __future__ import annotations

import uuid
from datetime import datetime

from sqlalchemy import (
    JSON,
    Boolean,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from clinicops.db.base import Base
from clinicops.db.enums import (
    AffiliateKind,
    AffiliateStatus,
    CommissionEventStatus,
    CommissionPlanType,
    FraudAlertStatus,
    FraudAlertType,
    FraudSeverity,
    PayoutMethod,
    PayoutStatus,
)
from clinicops.db.types import enum_type, utc_now


class CommissionPlan(Base):
    """Rate card for affiliates or sales reps."""

    __tablename__ = "commission_plans"
    __table_args__ = (Index("idx_commission_plans_clinic", "clinic_id", "is_active"),)

    id: Mapped[uuid.UUID] = mapped_column(primary_key=True, default=uuid.uuid4)
    clinic_id: Mapped[uuid.UUID] = mapped_column(
        ForeignKey("clinics.id", ondelete="CASCADE"), nullable=False
    )
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    plan_type: Mapped[CommissionPlanType] = mapped_column(
        enum_type(CommissionPlanType, name="commission_plan_type"), nullable=False
    )
    flat_amount_cents: Mapped[int | None] = mapped_column(Integer, nullable=True)
    percent_bps: Mapped[int | None] = mapped_column(Integer, nullable=True)
    tier_enabled: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    recurring_enabled: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    recurring_months: Mapped[int | None] = mapped_column(Integer, nullable=True)
    recurring_decay_pct: Mapped[int | None] = mapped_column(Integer, nullable=True)
    recurring_percent_bps: Mapped[int | None] = mapped_column(Integer, nullable=True)
    recurring_flat_amount_cents: Mapped[int | None] = mapped_column(Integer, nullable=True)
    hold_days: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    clawback_enabled: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    is_default: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    created_at: Mapped[datetime] = mapped_column(default=utc_now, nullable=False)

    tiers: Mapped[list["CommissionTier"]] = relationship(
        back_populates="plan", order_by="CommissionTier.level", cascade="all, delete-orphan"
    )
    product_rules: Mapped[list["ProductRateRule"]] = relationship(
        back_populates="plan",
        order_by="ProductRateRule.priority.desc()",
        cascade="all, delete-orphan",
    )


class CommissionTier(Base):
    """Performance tier; the highest qualifying level wins."""

    __tablename__ = "commission_tiers"
    __table_args__ = (UniqueConstraint("plan_id", "level", name="uq_commission_tier_level"),)

    id: Mapped[uuid.UUID] = mapped_column(primary_key=True, default=uuid.uuid4)
    plan_id: Mapped[uuid.UUID] = mapped_column(
        ForeignKey("commission_plans.id", ondelete="CASCADE"), nullable=False
    )
    level: Mapped[int] = mapped_column(Integer, nullable=False)
    name: Mapped[str] = mapped_column(String(100), nullable=False)
    min_conversions: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    min_revenue_cents: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    percent_bps: Mapped[int | None] = mapped_column(Integer, nullable=True)
    flat_amount_cents: Mapped[int | None] = mapped_column(Integer, nullable=True)
    bonus_cents: Mapped[int] = mapped_column(Integer, default=0, nullable=False)

    plan: Mapped["CommissionPlan"] = relationship(back_populates="tiers")


class ProductRateRule(Base):
    """Product-specific rate override, matched by SKU, category or price range."""

    __tablename__ = "product_rate_rules"

    id: Mapped[uuid.UUID] = mapped_column(primary_key=True, default=uuid.uuid4)
    plan_id: Mapped[uuid.UUID] = mapped_column(
        ForeignKey("commission_plans.id", ondelete="CASCADE"), nullable=False
    )
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    priority: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    product_sku: Mapped[str | None] = mapped_column(String(100), nullable=True)
    product_category: Mapped[str | None] = mapped_column(String(100), nullable=True)
    min_price_cents: Mapped[int | None] = mapped_column(Integer, nullable=True)
    max_price_cents: Mapped[int | None] = mapped_column(Integer, nullable=True)
    rate_type: Mapped[CommissionPlanType] = mapped_column(
        enum_type(CommissionPlanType, name="commission_plan_type"), nullable=False
    )
    flat_amount_cents: Mapped[int | None] = mapped_column(Integer, nullable=True)
    percent_bps: Mapped[int | None] = mapped_column(Integer, nullable=True)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)

    plan: Mapped["CommissionPlan"] = relationship(back_populates="product_rules")


class CommissionPromotion(Base):
    """Time-boxed bonus. Empty targeting lists apply to everyone."""

    __tablename__ = "commission_promotions"
    __table_args__ = (Index("idx_commission_promotions_window", "clinic_id", "starts_at", "ends_at"),)

    id: Mapped[uuid.UUID] = mapped_column(primary_key=True, default=uuid.uuid4)
    clinic_id: Mapped[uuid.UUID] = mapped_column(
        ForeignKey("clinics.id", ondelete="CASCADE"), nullable=False
    )
    plan_id: Mapped[uuid.UUID | None] = mapped_column(
        ForeignKey("commission_plans.id", ondelete="CASCADE"), nullable=True
    )
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    starts_at: Mapped[datetime] = mapped_column(nullable=False)
    ends_at: Mapped[datetime | None] = mapped_column(nullable=True)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    bonus_percent_bps: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    bonus_flat_cents: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    max_uses: Mapped[int | None] = mapped_column(Integer, nullable=True)
    uses_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    min_order_cents: Mapped[int | None] = mapped_column(Integer, nullable=True)
    affiliate_ids: Mapped[list] = mapped_column(JSON, default=list, nullable=False)
    ref_codes: Mapped[list] = mapped_column(JSON, default=list, nullable=False)


class Affiliate(Base):
    """Commission beneficiary: external affiliate or internal sales rep."""

    __tablename__ = "affiliates"
    __table_args__ = (Index("idx_affiliates_clinic", "clinic_id", "status"),)

    id: Mapped[uuid.UUID] = mapped_column(primary_key=True, default=uuid.uuid4)
    clinic_id: Mapped[uuid.UUID] = mapped_column(
        ForeignKey("clinics.id", ondelete="CASCADE"), nullable=False
    )
    kind: Mapped[AffiliateKind] = mapped_column(
        enum_type(AffiliateKind, name="affiliate_kind"),
        default=AffiliateKind.AFFILIATE,
        nullable=False,
    )
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    email: Mapped[str | None] = mapped_column(String(255), nullable=True)
    status: Mapped[AffiliateStatus] = mapped_column(
        enum_type(AffiliateStatus, name="affiliate_status"),
        default=AffiliateStatus.ACTIVE,
        nullable=False,
    )
    commission_plan_id: Mapped[uuid.UUID | None] = mapped_column(
        ForeignKey("commission_plans.id", ondelete="SET NULL"), nullable=True
    )
    lifetime_conversions: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    lifetime_revenue_cents: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    tax_doc_verified: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    payout_method: Mapped[PayoutMethod | None] = mapped_column(
        enum_type(PayoutMethod, name="payout_method"), nullable=True
    )
    payout_method_verified: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    created_at: Mapped[datetime] = mapped_column(default=utc_now, nullable=False)

    commission_plan: Mapped["CommissionPlan | None"] = relationship()


class AffiliateRefCode(Base):
    __tablename__ = "affiliate_ref_codes"
    __table_args__ = (UniqueConstraint("clinic_id", "code", name="uq_affiliate_ref_code"),)

    id: Mapped[uuid.UUID] = mapped_column(primary_key=True, default=uuid.uuid4)
    clinic_id: Mapped[uuid.UUID] = mapped_column(
        ForeignKey("clinics.id", ondelete="CASCADE"), nullable=False
    )
    affiliate_id: Mapped[uuid.UUID] = mapped_column(
        ForeignKey("affiliates.id", ondelete="CASCADE"), nullable=False
    )
    code: Mapped[str] = mapped_column(String(100), nullable=False)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)


class AffiliateTouch(Base):
    """Attribution touch (click / postback) used to credit a conversion."""

    __tablename__ = "affiliate_touches"
    __table_args__ = (
        Index("idx_affiliate_touches_patient", "clinic_id", "patient_id", "touched_at"),
        Index("idx_affiliate_touches_ip", "clinic_id", "affiliate_id", "ip_address_hash"),
    )

    id: Mapped[uuid.UUID] = mapped_column(primary_key=True, default=uuid.uuid4)
    clinic_id: Mapped[uuid.UUID] = mapped_column(
        ForeignKey("clinics.id", ondelete="CASCADE"), nullable=False
    )
    affiliate_id: Mapped[uuid.UUID] = mapped_column(
        ForeignKey("affiliates.id", ondelete="CASCADE"), nullable=False
    )
    ref_code: Mapped[str | None] = mapped_column(String(100), nullable=True)
    patient_id: Mapped[uuid.UUID | None] = mapped_column(
        ForeignKey("patients.id", ondelete="SET NULL"), nullable=True
    )
    ip_address_hash: Mapped[str | None] = mapped_column(String(64), nullable=True)
    touched_at: Mapped[datetime] = mapped_column(default=utc_now, nullable=False)
    converted_at: Mapped[datetime | None] = mapped_column(nullable=True)


class CommissionEvent(Base):
    """
    One payable commission line.

    breakdown holds the base / tier / promotion / product components
    computed at conversion time; it is never rewritten.
    """

    __tablename__ = "commission_events"
    __table_args__ = (
        UniqueConstraint("clinic_id", "order_id", name="uq_commission_event_order"),
        UniqueConstraint("clinic_id", "invoice_id", name="uq_commission_event_invoice"),
        UniqueConstraint("clinic_id", "stripe_event_id", name="uq_commission_event_stripe"),
        Index("idx_commission_events_affiliate", "clinic_id", "affiliate_id", "occurred_at"),
        Index("idx_commission_events_status", "clinic_id", "status", "hold_until"),
        Index("idx_commission_events_original", "original_event_id"),
    )

    id: Mapped[uuid.UUID] = mapped_column(primary_key=True, default=uuid.uuid4)
    clinic_id: Mapped[uuid.UUID] = mapped_column(
        ForeignKey("clinics.id", ondelete="CASCADE"), nullable=False
    )
    affiliate_id: Mapped[uuid.UUID] = mapped_column(
        ForeignKey("affiliates.id", ondelete="CASCADE"), nullable=False
    )
    plan_id: Mapped[uuid.UUID | None] = mapped_column(
        ForeignKey("commission_plans.id", ondelete="SET NULL"), nullable=True
    )
    patient_id: Mapped[uuid.UUID | None] = mapped_column(
        ForeignKey("patients.id", ondelete="SET NULL"), nullable=True
    )
    touch_id: Mapped[uuid.UUID | None] = mapped_column(
        ForeignKey("affiliate_touches.id", ondelete="SET NULL"), nullable=True
    )
    order_id: Mapped[str | None] = mapped_column(String(255), nullable=True)
    invoice_id: Mapped[str | None] = mapped_column(String(255), nullable=True)
    stripe_event_id: Mapped[str | None] = mapped_column(String(255), nullable=True)

    event_amount_cents: Mapped[int] = mapped_column(Integer, nullable=False)
    commission_amount_cents: Mapped[int] = mapped_column(Integer, nullable=False)
    breakdown: Mapped[dict] = mapped_column(JSON, default=dict, nullable=False)
    status: Mapped[CommissionEventStatus] = mapped_column(
        enum_type(CommissionEventStatus, name="commission_event_status"),
        default=CommissionEventStatus.PENDING,
        nullable=False,
    )
    hold_reason: Mapped[str | None] = mapped_column(String(100), nullable=True)

    is_recurring: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    recurring_month: Mapped[int | None] = mapped_column(Integer, nullable=True)
    original_event_id: Mapped[uuid.UUID | None] = mapped_column(
        ForeignKey("commission_events.id", ondelete="SET NULL"), nullable=True
    )

    occurred_at: Mapped[datetime] = mapped_column(nullable=False)
    hold_until: Mapped[datetime] = mapped_column(nullable=False)
    approved_at: Mapped[datetime | None] = mapped_column(nullable=True)
    paid_at: Mapped[datetime | None] = mapped_column(nullable=True)
    reversed_at: Mapped[datetime | None] = mapped_column(nullable=True)
    reversal_reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    voided_at: Mapped[datetime | None] = mapped_column(nullable=True)
    payout_id: Mapped[uuid.UUID | None] = mapped_column(
        ForeignKey("payouts.id", ondelete="SET NULL"), nullable=True
    )
    created_at: Mapped[datetime] = mapped_column(default=utc_now, nullable=False)


class FraudConfig(Base):
    """Per-clinic fraud thresholds. Missing row = defaults."""

    __tablename__ = "fraud_configs"

    id: Mapped[uuid.UUID] = mapped_column(primary_key=True, default=uuid.uuid4)
    clinic_id: Mapped[uuid.UUID] = mapped_column(
        ForeignKey("clinics.id", ondelete="CASCADE"), unique=True, nullable=False
    )
    max_conversions_per_day: Mapped[int] = mapped_column(Integer, default=50, nullable=False)
    max_conversions_per_hour: Mapped[int] = mapped_column(Integer, default=10, nullable=False)
    velocity_spike_multiplier: Mapped[int] = mapped_column(Integer, default=3, nullable=False)
    max_conversions_per_ip: Mapped[int] = mapped_column(Integer, default=3, nullable=False)
    max_refund_rate_pct: Mapped[int] = mapped_column(Integer, default=20, nullable=False)
    min_refunds_for_alert: Mapped[int] = mapped_column(Integer, default=5, nullable=False)
    high_risk_score_threshold: Mapped[int] = mapped_column(Integer, default=25, nullable=False)
    auto_hold_on_high_risk: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    auto_suspend_on_critical: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)


class FraudAlert(Base):
    __tablename__ = "fraud_alerts"
    __table_args__ = (
        Index("idx_fraud_alerts_clinic_status", "clinic_id", "status"),
        Index("idx_fraud_alerts_event", "commission_event_id"),
    )

    id: Mapped[uuid.UUID] = mapped_column(primary_key=True, default=uuid.uuid4)
    clinic_id: Mapped[uuid.UUID] = mapped_column(
        ForeignKey("clinics.id", ondelete="CASCADE"), nullable=False
    )
    affiliate_id: Mapped[uuid.UUID] = mapped_column(
        ForeignKey("affiliates.id", ondelete="CASCADE"), nullable=False
    )
    commission_event_id: Mapped[uuid.UUID | None] = mapped_column(
        ForeignKey("commission_events.id", ondelete="SET NULL"), nullable=True
    )
    alert_type: Mapped[FraudAlertType] = mapped_column(
        enum_type(FraudAlertType, name="fraud_alert_type"), nullable=False
    )
    severity: Mapped[FraudSeverity] = mapped_column(
        enum_type(FraudSeverity, name="fraud_severity"), nullable=False
    )
    risk_score: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    description: Mapped[str] = mapped_column(Text, nullable=False)
    evidence: Mapped[dict] = mapped_column(JSON, default=dict, nullable=False)
    affected_amount_cents: Mapped[int | None] = mapped_column(Integer, nullable=True)
    status: Mapped[FraudAlertStatus] = mapped_column(
        enum_type(FraudAlertStatus, name="fraud_alert_status"),
        default=FraudAlertStatus.OPEN,
        nullable=False,
    )
    resolved_at: Mapped[datetime | None] = mapped_column(nullable=True)
    resolved_by: Mapped[uuid.UUID | None] = mapped_column(
        ForeignKey("users.id", ondelete="SET NULL"), nullable=True
    )
    resolution_notes: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(default=utc_now, nullable=False)


class Payout(Base):
    """A batch of approved commission events paid to one affiliate."""

    __tablename__ = "payouts"
    __table_args__ = (Index("idx_payouts_affiliate", "clinic_id", "affiliate_id", "created_at"),)

    id: Mapped[uuid.UUID] = mapped_column(primary_key=True, default=uuid.uuid4)
    clinic_id: Mapped[uuid.UUID] = mapped_column(
        ForeignKey("clinics.id", ondelete="CASCADE"), nullable=False
    )
    affiliate_id: Mapped[uuid.UUID] = mapped_column(
        ForeignKey("affiliates.id", ondelete="CASCADE"), nullable=False
    )
    status: Mapped[PayoutStatus] = mapped_column(
        enum_type(PayoutStatus, name="payout_status"),
        default=PayoutStatus.PENDING,
        nullable=False,
    )
    method: Mapped[PayoutMethod] = mapped_column(
        enum_type(PayoutMethod, name="payout_method"), nullable=False
    )
    amount_cents: Mapped[int] = mapped_column(Integer, nullable=False)
    fee_cents: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    net_amount_cents: Mapped[int] = mapped_column(Integer, nullable=False)
    event_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    period_start: Mapped[datetime | None] = mapped_column(nullable=True)
    period_end: Mapped[datetime | None] = mapped_column(nullable=True)
    processed_at: Mapped[datetime | None] = mapped_column(nullable=True)
    failure_reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_by: Mapped[uuid.UUID | None] = mapped_column(
        ForeignKey("users.id", ondelete="SET NULL"), nullable=True
    )
    created_at: Mapped[datetime] = mapped_column(default=utc_now, nullable=False)
