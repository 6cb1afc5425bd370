"""Patient, subscription, payment and refill queue models."""

from __future__ import annotations

import uuid
from datetime import datetime

from sqlalchemy import (
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
    PaymentMethod,
    PaymentStatus,
    RefillStatus,
    SubscriptionStatus,
)
from clinicops.db.types import enum_type, utc_now


class Patient(Base):
    """Patient record. Only the fields the refill and billing flows need."""

    __tablename__ = "patients"
    __table_args__ = (Index("idx_patients_clinic", "clinic_id"),)

    id: Mapped[uuid.UUID] = mapped_column(primary_key=True, default=uuid.uuid4)
    clinic_id: Mapped[uuid.UUID] = mapped_column(
        ForeignKey("clinics.id", ondelete="CASCADE"), nullable=False
    )
    first_name: Mapped[str] = mapped_column(String(100), nullable=False)
    last_name: Mapped[str] = mapped_column(String(100), nullable=False)
    email: Mapped[str | None] = mapped_column(String(255), nullable=True)
    stripe_customer_id: Mapped[str | None] = mapped_column(String(255), nullable=True)
    created_at: Mapped[datetime] = mapped_column(default=utc_now, nullable=False)


class Subscription(Base):
    """Recurring medication plan that drives refill scheduling."""

    __tablename__ = "subscriptions"
    __table_args__ = (Index("idx_subscriptions_clinic_patient", "clinic_id", "patient_id"),)

    id: Mapped[uuid.UUID] = mapped_column(primary_key=True, default=uuid.uuid4)
    clinic_id: Mapped[uuid.UUID] = mapped_column(
        ForeignKey("clinics.id", ondelete="CASCADE"), nullable=False
    )
    patient_id: Mapped[uuid.UUID] = mapped_column(
        ForeignKey("patients.id", ondelete="CASCADE"), nullable=False
    )
    status: Mapped[SubscriptionStatus] = mapped_column(
        enum_type(SubscriptionStatus, name="subscription_status"),
        default=SubscriptionStatus.ACTIVE,
        nullable=False,
    )
    medication_name: Mapped[str | None] = mapped_column(String(255), nullable=True)
    vial_count: Mapped[int] = mapped_column(Integer, default=1, nullable=False)
    amount_cents: Mapped[int | None] = mapped_column(Integer, nullable=True)
    # Per-medication overrides; None falls back to vial-count / clinic defaults
    interval_days: Mapped[int | None] = mapped_column(Integer, nullable=True)
    bud_days: Mapped[int | None] = mapped_column(Integer, nullable=True)
    created_at: Mapped[datetime] = mapped_column(default=utc_now, nullable=False)


class Payment(Base):
    """Processor payment as ingested from Stripe webhooks."""

    __tablename__ = "payments"
    __table_args__ = (
        Index("idx_payments_clinic_patient_created", "clinic_id", "patient_id", "created_at"),
    )

    id: Mapped[uuid.UUID] = mapped_column(primary_key=True, default=uuid.uuid4)
    clinic_id: Mapped[uuid.UUID] = mapped_column(
        ForeignKey("clinics.id", ondelete="CASCADE"), nullable=False
    )
    patient_id: Mapped[uuid.UUID] = mapped_column(
        ForeignKey("patients.id", ondelete="CASCADE"), nullable=False
    )
    subscription_id: Mapped[uuid.UUID | None] = mapped_column(
        ForeignKey("subscriptions.id", ondelete="SET NULL"), nullable=True
    )
    amount_cents: Mapped[int] = mapped_column(Integer, nullable=False)
    status: Mapped[PaymentStatus] = mapped_column(
        enum_type(PaymentStatus, name="payment_status"), nullable=False
    )
    stripe_payment_intent_id: Mapped[str | None] = mapped_column(String(255), nullable=True)
    stripe_charge_id: Mapped[str | None] = mapped_column(String(255), nullable=True)
    stripe_customer_id: Mapped[str | None] = mapped_column(String(255), nullable=True)
    invoice_id: Mapped[str | None] = mapped_column(String(255), nullable=True)
    created_at: Mapped[datetime] = mapped_column(default=utc_now, nullable=False)


class RefillQueue(Base):
    """
    One scheduled fill for a patient, gated by payment and admin approval.

    Multi-shipment series share parent_refill_id = id of shipment 1;
    the head row has parent_refill_id = None.
    """

    __tablename__ = "refill_queue"
    __table_args__ = (
        Index("idx_refill_queue_clinic_status", "clinic_id", "status"),
        Index("idx_refill_queue_due", "status", "next_refill_date"),
        Index("idx_refill_queue_parent", "parent_refill_id"),
        Index("idx_refill_queue_subscription", "subscription_id"),
        UniqueConstraint("stripe_payment_id", name="uq_refill_queue_stripe_payment"),
    )

    id: Mapped[uuid.UUID] = mapped_column(primary_key=True, default=uuid.uuid4)
    clinic_id: Mapped[uuid.UUID] = mapped_column(
        ForeignKey("clinics.id", ondelete="CASCADE"), nullable=False
    )
    patient_id: Mapped[uuid.UUID] = mapped_column(
        ForeignKey("patients.id", ondelete="CASCADE"), nullable=False
    )
    subscription_id: Mapped[uuid.UUID | None] = mapped_column(
        ForeignKey("subscriptions.id", ondelete="SET NULL"), nullable=True
    )
    status: Mapped[RefillStatus] = mapped_column(
        enum_type(RefillStatus, name="refill_status"),
        default=RefillStatus.SCHEDULED,
        nullable=False,
    )
    medication_name: Mapped[str | None] = mapped_column(String(255), nullable=True)
    amount_cents: Mapped[int | None] = mapped_column(Integer, nullable=True)

    # Schedule
    next_refill_date: Mapped[datetime] = mapped_column(nullable=False)
    last_refill_date: Mapped[datetime | None] = mapped_column(nullable=True)
    refill_interval_days: Mapped[int] = mapped_column(Integer, nullable=False)
    vial_count: Mapped[int] = mapped_column(Integer, default=1, nullable=False)

    # Multi-shipment split
    shipment_number: Mapped[int] = mapped_column(Integer, default=1, nullable=False)
    total_shipments: Mapped[int] = mapped_column(Integer, default=1, nullable=False)
    parent_refill_id: Mapped[uuid.UUID | None] = mapped_column(
        ForeignKey("refill_queue.id", ondelete="SET NULL"), nullable=True
    )
    bud_days: Mapped[int] = mapped_column(Integer, default=90, nullable=False)
    supply_days: Mapped[int] = mapped_column(Integer, nullable=False)

    # Payment gate
    payment_verified: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    payment_verified_at: Mapped[datetime | None] = mapped_column(nullable=True)
    payment_verified_by: Mapped[uuid.UUID | None] = mapped_column(
        ForeignKey("users.id", ondelete="SET NULL"), nullable=True
    )
    payment_method: Mapped[PaymentMethod | None] = mapped_column(
        enum_type(PaymentMethod, name="refill_payment_method"), nullable=True
    )
    payment_reference: Mapped[str | None] = mapped_column(String(255), nullable=True)
    stripe_payment_id: Mapped[uuid.UUID | None] = mapped_column(
        ForeignKey("payments.id", ondelete="SET NULL"), nullable=True
    )

    # Admin gate
    admin_approved: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    admin_approved_at: Mapped[datetime | None] = mapped_column(nullable=True)
    admin_approved_by: Mapped[uuid.UUID | None] = mapped_column(
        ForeignKey("users.id", ondelete="SET NULL"), nullable=True
    )
    admin_notes: Mapped[str | None] = mapped_column(Text, nullable=True)
    rejection_reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    rejected_at: Mapped[datetime | None] = mapped_column(nullable=True)

    # Provider
    provider_queued_at: Mapped[datetime | None] = mapped_column(nullable=True)
    prescribed_at: Mapped[datetime | None] = mapped_column(nullable=True)
    order_id: Mapped[str | None] = mapped_column(String(255), nullable=True)

    # Side branches
    hold_reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    held_at: Mapped[datetime | None] = mapped_column(nullable=True)
    cancelled_at: Mapped[datetime | None] = mapped_column(nullable=True)
    cancel_reason: Mapped[str | None] = mapped_column(Text, nullable=True)

    # Notifications
    reminder_sent_at: Mapped[datetime | None] = mapped_column(nullable=True)
    patient_notified_at: Mapped[datetime | None] = mapped_column(nullable=True)

    created_at: Mapped[datetime] = mapped_column(default=utc_now, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(
        default=utc_now, onupdate=utc_now, nullable=False
    )

    history: Mapped[list["RefillStatusHistory"]] = relationship(
        back_populates="refill",
        order_by="RefillStatusHistory.created_at",
        cascade="all, delete-orphan",
    )


class RefillStatusHistory(Base):
    """Append-only log of refill gate transitions."""

    __tablename__ = "refill_status_history"
    __table_args__ = (Index("idx_refill_history_refill", "refill_id", "created_at"),)

    id: Mapped[uuid.UUID] = mapped_column(primary_key=True, default=uuid.uuid4)
    clinic_id: Mapped[uuid.UUID] = mapped_column(
        ForeignKey("clinics.id", ondelete="CASCADE"), nullable=False
    )
    refill_id: Mapped[uuid.UUID] = mapped_column(
        ForeignKey("refill_queue.id", ondelete="CASCADE"), nullable=False
    )
    from_status: Mapped[RefillStatus | None] = mapped_column(
        enum_type(RefillStatus, name="refill_status"), nullable=True
    )
    to_status: Mapped[RefillStatus] = mapped_column(
        enum_type(RefillStatus, name="refill_status"), nullable=False
    )
    actor_user_id: Mapped[uuid.UUID | None] = mapped_column(
        ForeignKey("users.id", ondelete="SET NULL"), nullable=True
    )
    note: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(default=utc_now, nullable=False)

    refill: Mapped["RefillQueue"] = relationship(back_populates="history")
