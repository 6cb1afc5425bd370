"""Ticketing, SLA policy and business-hours models."""

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
    TicketActivityType,
    TicketCategory,
    TicketPriority,
    TicketStatus,
)
from clinicops.db.types import enum_type, utc_now


class TicketBusinessHours(Base):
    """
    Clinic working calendar used by business-hours aware SLA policies.

    schedule: [{"day_of_week": 0-6 (Sunday=0), "start_time": "HH:MM",
                "end_time": "HH:MM", "is_open": bool}]
    holidays: [{"date": "YYYY-MM-DD", "name": str}]
    """

    __tablename__ = "ticket_business_hours"

    id: Mapped[uuid.UUID] = mapped_column(primary_key=True, default=uuid.uuid4)
    clinic_id: Mapped[uuid.UUID] = mapped_column(
        ForeignKey("clinics.id", ondelete="CASCADE"), nullable=False, index=True
    )
    name: Mapped[str] = mapped_column(String(100), nullable=False)
    timezone: Mapped[str] = mapped_column(String(50), nullable=False)
    schedule: Mapped[list] = mapped_column(JSON, default=list, nullable=False)
    holidays: Mapped[list] = mapped_column(JSON, default=list, nullable=False)
    is_default: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    created_at: Mapped[datetime] = mapped_column(default=utc_now, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(
        default=utc_now, onupdate=utc_now, nullable=False
    )


class SlaPolicyConfig(Base):
    """Response/resolution budgets matched by priority and category."""

    __tablename__ = "sla_policy_configs"
    __table_args__ = (Index("idx_sla_policies_clinic", "clinic_id", "is_active"),)

    id: Mapped[uuid.UUID] = mapped_column(primary_key=True, default=uuid.uuid4)
    clinic_id: Mapped[uuid.UUID] = mapped_column(
        ForeignKey("clinics.id", ondelete="CASCADE"), nullable=False
    )
    name: Mapped[str] = mapped_column(String(100), nullable=False)
    priority: Mapped[TicketPriority | None] = mapped_column(
        enum_type(TicketPriority, name="ticket_priority"), nullable=True
    )
    category: Mapped[TicketCategory | None] = mapped_column(
        enum_type(TicketCategory, name="ticket_category"), nullable=True
    )
    is_default: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    first_response_minutes: Mapped[int | None] = mapped_column(Integer, nullable=True)
    resolution_minutes: Mapped[int] = mapped_column(Integer, nullable=False)
    respect_business_hours: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    business_hours_id: Mapped[uuid.UUID | None] = mapped_column(
        ForeignKey("ticket_business_hours.id", ondelete="SET NULL"), nullable=True
    )
    warning_threshold_pct: Mapped[int] = mapped_column(Integer, default=80, nullable=False)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    created_at: Mapped[datetime] = mapped_column(default=utc_now, nullable=False)

    business_hours: Mapped["TicketBusinessHours | None"] = relationship()


class Ticket(Base):
    """Internal support ticket."""

    __tablename__ = "tickets"
    __table_args__ = (
        UniqueConstraint("clinic_id", "ticket_number", name="uq_ticket_number"),
        Index("idx_tickets_clinic_status", "clinic_id", "status"),
        Index("idx_tickets_clinic_activity", "clinic_id", "last_activity_at"),
        Index("idx_tickets_parent", "parent_ticket_id"),
    )

    id: Mapped[uuid.UUID] = mapped_column(primary_key=True, default=uuid.uuid4)
    clinic_id: Mapped[uuid.UUID] = mapped_column(
        ForeignKey("clinics.id", ondelete="CASCADE"), nullable=False
    )
    ticket_number: Mapped[str] = mapped_column(String(20), nullable=False)
    title: Mapped[str] = mapped_column(String(500), nullable=False)
    description: Mapped[str] = mapped_column(Text, nullable=False)
    status: Mapped[TicketStatus] = mapped_column(
        enum_type(TicketStatus, name="ticket_status"),
        default=TicketStatus.NEW,
        nullable=False,
    )
    priority: Mapped[TicketPriority] = mapped_column(
        enum_type(TicketPriority, name="ticket_priority"),
        default=TicketPriority.P3_MEDIUM,
        nullable=False,
    )
    category: Mapped[TicketCategory] = mapped_column(
        enum_type(TicketCategory, name="ticket_category"),
        default=TicketCategory.GENERAL,
        nullable=False,
    )
    team_id: Mapped[uuid.UUID | None] = mapped_column(nullable=True)
    assignee_user_id: Mapped[uuid.UUID | None] = mapped_column(
        ForeignKey("users.id", ondelete="SET NULL"), nullable=True
    )
    reporter_user_id: Mapped[uuid.UUID | None] = mapped_column(
        ForeignKey("users.id", ondelete="SET NULL"), nullable=True
    )
    patient_id: Mapped[uuid.UUID | None] = mapped_column(
        ForeignKey("patients.id", ondelete="SET NULL"), nullable=True
    )
    parent_ticket_id: Mapped[uuid.UUID | None] = mapped_column(
        ForeignKey("tickets.id", ondelete="SET NULL"), nullable=True
    )
    merged_into_id: Mapped[uuid.UUID | None] = mapped_column(
        ForeignKey("tickets.id", ondelete="SET NULL"), nullable=True
    )
    reopen_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    resolution_notes: Mapped[str | None] = mapped_column(Text, nullable=True)

    first_response_at: Mapped[datetime | None] = mapped_column(nullable=True)
    resolved_at: Mapped[datetime | None] = mapped_column(nullable=True)
    closed_at: Mapped[datetime | None] = mapped_column(nullable=True)
    last_activity_at: Mapped[datetime] = mapped_column(default=utc_now, nullable=False)
    created_at: Mapped[datetime] = mapped_column(default=utc_now, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(
        default=utc_now, onupdate=utc_now, nullable=False
    )

    sla: Mapped["TicketSLA | None"] = relationship(
        back_populates="ticket", uselist=False, cascade="all, delete-orphan"
    )


class TicketSLA(Base):
    """
    SLA clock for one ticket.

    Due timestamps move only on pause/resume (and a reopen resets
    resolution_due). Breach flags never flip back.
    """

    __tablename__ = "ticket_slas"

    id: Mapped[uuid.UUID] = mapped_column(primary_key=True, default=uuid.uuid4)
    clinic_id: Mapped[uuid.UUID] = mapped_column(
        ForeignKey("clinics.id", ondelete="CASCADE"), nullable=False
    )
    ticket_id: Mapped[uuid.UUID] = mapped_column(
        ForeignKey("tickets.id", ondelete="CASCADE"), unique=True, nullable=False
    )
    policy_id: Mapped[uuid.UUID | None] = mapped_column(
        ForeignKey("sla_policy_configs.id", ondelete="SET NULL"), nullable=True
    )
    started_at: Mapped[datetime] = mapped_column(nullable=False)
    first_response_due: Mapped[datetime | None] = mapped_column(nullable=True)
    resolution_due: Mapped[datetime] = mapped_column(nullable=False)
    first_response_breached: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    resolution_breached: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    breached_at: Mapped[datetime | None] = mapped_column(nullable=True)
    paused_at: Mapped[datetime | None] = mapped_column(nullable=True)
    total_paused_seconds: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    warning_notified_at: Mapped[datetime | None] = mapped_column(nullable=True)

    ticket: Mapped["Ticket"] = relationship(back_populates="sla")
    policy: Mapped["SlaPolicyConfig | None"] = relationship()


class TicketActivity(Base):
    __tablename__ = "ticket_activities"
    __table_args__ = (Index("idx_ticket_activities_ticket", "ticket_id", "created_at"),)

    id: Mapped[uuid.UUID] = mapped_column(primary_key=True, default=uuid.uuid4)
    clinic_id: Mapped[uuid.UUID] = mapped_column(
        ForeignKey("clinics.id", ondelete="CASCADE"), nullable=False
    )
    ticket_id: Mapped[uuid.UUID] = mapped_column(
        ForeignKey("tickets.id", ondelete="CASCADE"), nullable=False
    )
    actor_user_id: Mapped[uuid.UUID | None] = mapped_column(
        ForeignKey("users.id", ondelete="SET NULL"), nullable=True
    )
    activity_type: Mapped[TicketActivityType] = mapped_column(
        enum_type(TicketActivityType, name="ticket_activity_type"), nullable=False
    )
    details: Mapped[dict] = mapped_column(JSON, default=dict, nullable=False)
    created_at: Mapped[datetime] = mapped_column(default=utc_now, nullable=False)


class TicketStatusHistory(Base):
    __tablename__ = "ticket_status_history"
    __table_args__ = (Index("idx_ticket_status_history_ticket", "ticket_id", "created_at"),)

    id: Mapped[uuid.UUID] = mapped_column(primary_key=True, default=uuid.uuid4)
    clinic_id: Mapped[uuid.UUID] = mapped_column(
        ForeignKey("clinics.id", ondelete="CASCADE"), nullable=False
    )
    ticket_id: Mapped[uuid.UUID] = mapped_column(
        ForeignKey("tickets.id", ondelete="CASCADE"), nullable=False
    )
    from_status: Mapped[TicketStatus | None] = mapped_column(
        enum_type(TicketStatus, name="ticket_status"), nullable=True
    )
    to_status: Mapped[TicketStatus] = mapped_column(
        enum_type(TicketStatus, name="ticket_status"), nullable=False
    )
    changed_by: Mapped[uuid.UUID | None] = mapped_column(
        ForeignKey("users.id", ondelete="SET NULL"), nullable=True
    )
    reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(default=utc_now, nullable=False)


class TicketComment(Base):
    __tablename__ = "ticket_comments"
    __table_args__ = (Index("idx_ticket_comments_ticket", "ticket_id", "created_at"),)

    id: Mapped[uuid.UUID] = mapped_column(primary_key=True, default=uuid.uuid4)
    clinic_id: Mapped[uuid.UUID] = mapped_column(
        ForeignKey("clinics.id", ondelete="CASCADE"), nullable=False
    )
    ticket_id: Mapped[uuid.UUID] = mapped_column(
        ForeignKey("tickets.id", ondelete="CASCADE"), nullable=False
    )
    author_user_id: Mapped[uuid.UUID | None] = mapped_column(
        ForeignKey("users.id", ondelete="SET NULL"), nullable=True
    )
    body: Mapped[str] = mapped_column(Text, nullable=False)
    is_internal: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    created_at: Mapped[datetime] = mapped_column(default=utc_now, nullable=False)


class TicketWatcher(Base):
    __tablename__ = "ticket_watchers"
    __table_args__ = (UniqueConstraint("ticket_id", "user_id", name="uq_ticket_watcher"),)

    id: Mapped[uuid.UUID] = mapped_column(primary_key=True, default=uuid.uuid4)
    clinic_id: Mapped[uuid.UUID] = mapped_column(
        ForeignKey("clinics.id", ondelete="CASCADE"), nullable=False
    )
    ticket_id: Mapped[uuid.UUID] = mapped_column(
        ForeignKey("tickets.id", ondelete="CASCADE"), nullable=False
    )
    user_id: Mapped[uuid.UUID] = mapped_column(
        ForeignKey("users.id", ondelete="CASCADE"), nullable=False
    )
    created_at: Mapped[datetime] = mapped_column(default=utc_now, nullable=False)
