"""Ticket lifecycle APIs and SLA configuration."""

from __future__ import annotations

from typing import Annotated
from uuid import UUID

from fastapi import APIRouter, Depends, Query
from sqlalchemy.orm import Session

from clinicops.core.deps import get_current_session, get_db, require_roles
from clinicops.db.enums import (
    ROLES_CAN_MANAGE_SLA,
    TicketCategory,
    TicketPriority,
    TicketStatus,
)
from clinicops.schemas.auth import UserSession
from clinicops.schemas.ticketing import (
    BusinessHoursRead,
    BusinessHoursRequest,
    SlaPolicyCreateRequest,
    SlaPolicyRead,
    TicketAssignRequest,
    TicketCommentCreateRequest,
    TicketCommentRead,
    TicketCreateRequest,
    TicketDetailResponse,
    TicketEscalateRequest,
    TicketListItem,
    TicketListResponse,
    TicketMergeRequest,
    TicketRead,
    TicketReopenRequest,
    TicketResolveRequest,
    TicketStatusRequest,
)
from clinicops.services import sla_service, ticketing_service

router = APIRouter(prefix="/api/tickets", tags=["Tickets"])

_can_manage_sla = require_roles(ROLES_CAN_MANAGE_SLA)


@router.get("", response_model=TicketListResponse)
def list_tickets(
    limit: Annotated[int, Query(ge=1, le=100)] = 50,
    cursor: str | None = None,
    status: TicketStatus | None = None,
    priority: TicketPriority | None = None,
    category: TicketCategory | None = None,
    assignee_user_id: UUID | None = None,
    patient_id: UUID | None = None,
    q: str | None = None,
    db: Session = Depends(get_db),
    session: UserSession = Depends(get_current_session),
) -> TicketListResponse:
    """List tickets with cursor pagination + filters."""
    page = ticketing_service.list_tickets(
        db,
        clinic_id=session.clinic_id,
        limit=limit,
        cursor=cursor,
        status_filter=status,
        priority_filter=priority,
        category_filter=category,
        assignee_user_id=assignee_user_id,
        patient_id=patient_id,
        q=q,
    )
    return TicketListResponse(
        items=[TicketListItem.model_validate(ticket) for ticket in page.items],
        next_cursor=page.next_cursor,
    )


@router.post("", response_model=TicketRead, status_code=201)
def create_ticket(
    data: TicketCreateRequest,
    db: Session = Depends(get_db),
    session: UserSession = Depends(get_current_session),
) -> TicketRead:
    ticket = ticketing_service.create_ticket(
        db,
        clinic_id=session.clinic_id,
        reporter_user_id=session.user_id,
        title=data.title,
        description=data.description,
        priority=data.priority,
        category=data.category,
        assignee_user_id=data.assignee_user_id,
        patient_id=data.patient_id,
        parent_ticket_id=data.parent_ticket_id,
        team_id=data.team_id,
    )
    return TicketRead.model_validate(ticket)


# =============================================================================
# SLA configuration (declared before /{ticket_id})
# =============================================================================


@router.get("/sla-policies", response_model=list[SlaPolicyRead])
def list_sla_policies(
    db: Session = Depends(get_db),
    session: UserSession = Depends(get_current_session),
) -> list[SlaPolicyRead]:
    policies = sla_service.list_policies(db, clinic_id=session.clinic_id)
    return [SlaPolicyRead.model_validate(policy) for policy in policies]


@router.post("/sla-policies", response_model=SlaPolicyRead, status_code=201)
def create_sla_policy(
    data: SlaPolicyCreateRequest,
    db: Session = Depends(get_db),
    session: UserSession = Depends(_can_manage_sla),
) -> SlaPolicyRead:
    policy = sla_service.create_policy(
        db,
        clinic_id=session.clinic_id,
        name=data.name,
        resolution_minutes=data.resolution_minutes,
        first_response_minutes=data.first_response_minutes,
        priority=data.priority,
        category=data.category,
        is_default=data.is_default,
        respect_business_hours=data.respect_business_hours,
        business_hours_id=data.business_hours_id,
        warning_threshold_pct=data.warning_threshold_pct,
    )
    return SlaPolicyRead.model_validate(policy)


@router.put("/business-hours", response_model=BusinessHoursRead)
def upsert_business_hours(
    data: BusinessHoursRequest,
    db: Session = Depends(get_db),
    session: UserSession = Depends(_can_manage_sla),
) -> BusinessHoursRead:
    """Replace the clinic's default working calendar."""
    hours = sla_service.upsert_business_hours(
        db,
        clinic_id=session.clinic_id,
        name=data.name,
        timezone_name=data.timezone,
        schedule=[day.model_dump() for day in data.schedule],
        holidays=[holiday.model_dump() for holiday in data.holidays],
    )
    return BusinessHoursRead.model_validate(hours)


# =============================================================================
# Single ticket
# =============================================================================


@router.get("/{ticket_id}", response_model=TicketDetailResponse)
def get_ticket_detail(
    ticket_id: UUID,
    db: Session = Depends(get_db),
    session: UserSession = Depends(get_current_session),
) -> TicketDetailResponse:
    """Return ticket detail with activities, comments and SLA."""
    payload = ticketing_service.get_ticket_detail(
        db, clinic_id=session.clinic_id, ticket_id=ticket_id
    )
    return TicketDetailResponse.model_validate(payload, from_attributes=True)


@router.post("/{ticket_id}/status", response_model=TicketRead)
def change_status(
    ticket_id: UUID,
    data: TicketStatusRequest,
    db: Session = Depends(get_db),
    session: UserSession = Depends(get_current_session),
) -> TicketRead:
    ticket = ticketing_service.change_status(
        db,
        clinic_id=session.clinic_id,
        ticket_id=ticket_id,
        status=data.status,
        actor_user_id=session.user_id,
        reason=data.reason,
    )
    return TicketRead.model_validate(ticket)


@router.post("/{ticket_id}/assign", response_model=TicketRead)
def assign_ticket(
    ticket_id: UUID,
    data: TicketAssignRequest,
    db: Session = Depends(get_db),
    session: UserSession = Depends(get_current_session),
) -> TicketRead:
    ticket = ticketing_service.assign(
        db,
        clinic_id=session.clinic_id,
        ticket_id=ticket_id,
        assignee_user_id=data.assignee_user_id,
        actor_user_id=session.user_id,
    )
    return TicketRead.model_validate(ticket)


@router.post("/{ticket_id}/escalate", response_model=TicketRead)
def escalate_ticket(
    ticket_id: UUID,
    data: TicketEscalateRequest | None = None,
    db: Session = Depends(get_db),
    session: UserSession = Depends(get_current_session),
) -> TicketRead:
    data = data or TicketEscalateRequest()
    ticket = ticketing_service.escalate(
        db,
        clinic_id=session.clinic_id,
        ticket_id=ticket_id,
        reason=data.reason,
        assignee_user_id=data.assignee_user_id,
        priority=data.priority,
        actor_user_id=session.user_id,
    )
    return TicketRead.model_validate(ticket)


@router.post("/{ticket_id}/comments", response_model=TicketCommentRead, status_code=201)
def add_comment(
    ticket_id: UUID,
    data: TicketCommentCreateRequest,
    db: Session = Depends(get_db),
    session: UserSession = Depends(get_current_session),
) -> TicketCommentRead:
    comment = ticketing_service.add_comment(
        db,
        clinic_id=session.clinic_id,
        ticket_id=ticket_id,
        body=data.body,
        author_user_id=session.user_id,
        is_internal=data.is_internal,
    )
    return TicketCommentRead.model_validate(comment)


@router.post("/{ticket_id}/resolve", response_model=TicketRead)
def resolve_ticket(
    ticket_id: UUID,
    data: TicketResolveRequest,
    db: Session = Depends(get_db),
    session: UserSession = Depends(get_current_session),
) -> TicketRead:
    ticket = ticketing_service.resolve(
        db,
        clinic_id=session.clinic_id,
        ticket_id=ticket_id,
        resolution_notes=data.resolution_notes,
        actor_user_id=session.user_id,
    )
    return TicketRead.model_validate(ticket)


@router.post("/{ticket_id}/close", response_model=TicketRead)
def close_ticket(
    ticket_id: UUID,
    db: Session = Depends(get_db),
    session: UserSession = Depends(get_current_session),
) -> TicketRead:
    ticket = ticketing_service.close(
        db, clinic_id=session.clinic_id, ticket_id=ticket_id, actor_user_id=session.user_id
    )
    return TicketRead.model_validate(ticket)


@router.post("/{ticket_id}/reopen", response_model=TicketRead)
def reopen_ticket(
    ticket_id: UUID,
    data: TicketReopenRequest,
    db: Session = Depends(get_db),
    session: UserSession = Depends(get_current_session),
) -> TicketRead:
    ticket = ticketing_service.reopen(
        db,
        clinic_id=session.clinic_id,
        ticket_id=ticket_id,
        reason=data.reason,
        actor_user_id=session.user_id,
    )
    return TicketRead.model_validate(ticket)


@router.post("/{ticket_id}/merge", response_model=TicketRead)
def merge_ticket(
    ticket_id: UUID,
    data: TicketMergeRequest,
    db: Session = Depends(get_db),
    session: UserSession = Depends(get_current_session),
) -> TicketRead:
    """Merge this ticket into the target; returns the target."""
    target = ticketing_service.merge(
        db,
        clinic_id=session.clinic_id,
        source_ticket_id=ticket_id,
        target_ticket_id=data.target_ticket_id,
        actor_user_id=session.user_id,
    )
    return TicketRead.model_validate(target)
