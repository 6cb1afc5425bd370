"""Pydantic schemas for ticketing and SLA configuration APIs."""

from __future__ import annotations

from datetime import datetime
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field

from clinicops.db.enums import (
    TicketActivityType,
    TicketCategory,
    TicketPriority,
    TicketStatus,
)


class TicketListItem(BaseModel):
    """List row for a ticket."""

    model_config = ConfigDict(from_attributes=True)

    id: UUID
    ticket_number: str
    title: str
    status: TicketStatus
    priority: TicketPriority
    category: TicketCategory
    assignee_user_id: UUID | None = None
    reporter_user_id: UUID | None = None
    patient_id: UUID | None = None
    parent_ticket_id: UUID | None = None
    merged_into_id: UUID | None = None
    reopen_count: int
    first_response_at: datetime | None = None
    resolved_at: datetime | None = None
    closed_at: datetime | None = None
    last_activity_at: datetime | None = None
    created_at: datetime
    updated_at: datetime


class TicketRead(TicketListItem):
    description: str
    team_id: UUID | None = None
    resolution_notes: str | None = None


class TicketListResponse(BaseModel):
    """Ticket list response with cursor pagination."""

    items: list[TicketListItem]
    next_cursor: str | None = None


class TicketSLARead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    policy_id: UUID | None = None
    started_at: datetime
    first_response_due: datetime | None = None
    resolution_due: datetime
    first_response_breached: bool
    resolution_breached: bool
    breached_at: datetime | None = None
    paused_at: datetime | None = None
    total_paused_seconds: int
    warning_notified_at: datetime | None = None


class TicketActivityRead(BaseModel):
    """Immutable ticket activity."""

    model_config = ConfigDict(from_attributes=True)

    id: UUID
    actor_user_id: UUID | None = None
    activity_type: TicketActivityType
    details: dict = Field(default_factory=dict)
    created_at: datetime


class TicketCommentRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    author_user_id: UUID | None = None
    body: str
    is_internal: bool
    created_at: datetime


class TicketStatusHistoryRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    from_status: TicketStatus | None = None
    to_status: TicketStatus
    changed_by: UUID | None = None
    reason: str | None = None
    created_at: datetime


class TicketDetailResponse(BaseModel):
    """Ticket detail payload."""

    ticket: TicketRead
    sla: TicketSLARead | None = None
    activities: list[TicketActivityRead] = Field(default_factory=list)
    comments: list[TicketCommentRead] = Field(default_factory=list)
    status_history: list[TicketStatusHistoryRead] = Field(default_factory=list)
    watcher_user_ids: list[UUID] = Field(default_factory=list)


class TicketCreateRequest(BaseModel):
    title: str = Field(max_length=500)
    description: str
    priority: TicketPriority = TicketPriority.P3_MEDIUM
    category: TicketCategory = TicketCategory.GENERAL
    assignee_user_id: UUID | None = None
    patient_id: UUID | None = None
    parent_ticket_id: UUID | None = None
    team_id: UUID | None = None


class TicketStatusRequest(BaseModel):
    status: TicketStatus
    reason: str | None = None


class TicketAssignRequest(BaseModel):
    assignee_user_id: UUID | None = None


class TicketEscalateRequest(BaseModel):
    reason: str | None = None
    assignee_user_id: UUID | None = None
    priority: TicketPriority | None = None


class TicketCommentCreateRequest(BaseModel):
    body: str
    is_internal: bool = False


class TicketResolveRequest(BaseModel):
    resolution_notes: str = ""


class TicketReopenRequest(BaseModel):
    reason: str = ""


class TicketMergeRequest(BaseModel):
    target_ticket_id: UUID


class SlaPolicyRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    name: str
    priority: TicketPriority | None = None
    category: TicketCategory | None = None
    is_default: bool
    first_response_minutes: int | None = None
    resolution_minutes: int
    respect_business_hours: bool
    business_hours_id: UUID | None = None
    warning_threshold_pct: int
    is_active: bool
    created_at: datetime


class SlaPolicyCreateRequest(BaseModel):
    name: str = Field(min_length=1, max_length=100)
    resolution_minutes: int = Field(gt=0)
    first_response_minutes: int | None = Field(default=None, gt=0)
    priority: TicketPriority | None = None
    category: TicketCategory | None = None
    is_default: bool = False
    respect_business_hours: bool = False
    business_hours_id: UUID | None = None
    warning_threshold_pct: int = Field(default=80, ge=1, le=100)


class BusinessHoursDay(BaseModel):
    day_of_week: int = Field(ge=0, le=6)
    start_time: str
    end_time: str
    is_open: bool = True


class BusinessHoursHoliday(BaseModel):
    date: str
    name: str | None = None


class BusinessHoursRequest(BaseModel):
    name: str = Field(default="Default", max_length=100)
    timezone: str
    schedule: list[BusinessHoursDay]
    holidays: list[BusinessHoursHoliday] = Field(default_factory=list)


class BusinessHoursRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    name: str
    timezone: str
    schedule: list[dict] = Field(default_factory=list)
    holidays: list[dict] = Field(default_factory=list)
    is_default: bool
