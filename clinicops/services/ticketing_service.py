"""Ticketing service - ticket lifecycle, comments, merge and list queries."""

from __future__ import annotations

import base64
import json
import logging
import uuid
from dataclasses import dataclass
from datetime import datetime, timezone
from uuid import UUID

from fastapi import HTTPException
from sqlalchemy import and_, bindparam, func, or_, text
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session
from sqlalchemy.types import Uuid

from clinicops.db.enums import (
    TicketActivityType,
    TicketCategory,
    TicketPriority,
    TicketStatus,
)
from clinicops.db.models import (
    Membership,
    Ticket,
    TicketActivity,
    TicketComment,
    TicketStatusHistory,
    TicketWatcher,
)
from clinicops.services import activity_service, sla_service

logger = logging.getLogger(__name__)


VALID_STATUS_TRANSITIONS: dict[TicketStatus, frozenset[TicketStatus]] = {
    TicketStatus.NEW: frozenset(
        {
            TicketStatus.OPEN,
            TicketStatus.IN_PROGRESS,
            TicketStatus.PENDING_CUSTOMER,
            TicketStatus.PENDING_INTERNAL,
            TicketStatus.CANCELLED,
        }
    ),
    TicketStatus.OPEN: frozenset(
        {
            TicketStatus.IN_PROGRESS,
            TicketStatus.PENDING_CUSTOMER,
            TicketStatus.PENDING_INTERNAL,
            TicketStatus.ON_HOLD,
            TicketStatus.ESCALATED,
            TicketStatus.RESOLVED,
            TicketStatus.CANCELLED,
        }
    ),
    TicketStatus.IN_PROGRESS: frozenset(
        {
            TicketStatus.PENDING_CUSTOMER,
            TicketStatus.PENDING_INTERNAL,
            TicketStatus.ON_HOLD,
            TicketStatus.ESCALATED,
            TicketStatus.RESOLVED,
            TicketStatus.CANCELLED,
        }
    ),
    TicketStatus.PENDING_CUSTOMER: frozenset(
        {TicketStatus.OPEN, TicketStatus.IN_PROGRESS, TicketStatus.RESOLVED, TicketStatus.CANCELLED}
    ),
    TicketStatus.PENDING_INTERNAL: frozenset(
        {TicketStatus.OPEN, TicketStatus.IN_PROGRESS, TicketStatus.RESOLVED, TicketStatus.CANCELLED}
    ),
    TicketStatus.ON_HOLD: frozenset(
        {TicketStatus.OPEN, TicketStatus.IN_PROGRESS, TicketStatus.RESOLVED, TicketStatus.CANCELLED}
    ),
    TicketStatus.ESCALATED: frozenset(
        {TicketStatus.IN_PROGRESS, TicketStatus.RESOLVED, TicketStatus.CANCELLED}
    ),
    TicketStatus.RESOLVED: frozenset({TicketStatus.CLOSED, TicketStatus.REOPENED}),
    TicketStatus.CLOSED: frozenset({TicketStatus.REOPENED}),
    TicketStatus.CANCELLED: frozenset(),
    TicketStatus.REOPENED: frozenset(
        {
            TicketStatus.IN_PROGRESS,
            TicketStatus.PENDING_CUSTOMER,
            TicketStatus.PENDING_INTERNAL,
            TicketStatus.ON_HOLD,
            TicketStatus.RESOLVED,
            TicketStatus.CANCELLED,
        }
    ),
}

REOPENABLE_STATUSES = frozenset({TicketStatus.RESOLVED, TicketStatus.CLOSED})


@dataclass(frozen=True)
class TicketListPage:
    """List page result with cursor."""

    items: list[Ticket]
    next_cursor: str | None


def can_transition(from_status: TicketStatus, to_status: TicketStatus) -> bool:
    return to_status in VALID_STATUS_TRANSITIONS.get(from_status, frozenset())


# =============================================================================
# Internal helpers
# =============================================================================


def _now_utc() -> datetime:
    return datetime.now(timezone.utc)


def _encode_cursor(*, sort_ts: datetime, row_id: UUID) -> str:
    payload = {"sort_ts": sort_ts.isoformat(), "id": str(row_id)}
    return base64.urlsafe_b64encode(json.dumps(payload).encode("utf-8")).decode("utf-8")


def _decode_cursor(cursor: str) -> tuple[datetime, UUID]:
    try:
        decoded = base64.urlsafe_b64decode(cursor.encode("utf-8")).decode("utf-8")
        payload = json.loads(decoded)
        sort_ts = datetime.fromisoformat(payload["sort_ts"])
        row_id = UUID(payload["id"])
        if sort_ts.tzinfo is None:
            sort_ts = sort_ts.replace(tzinfo=timezone.utc)
        return sort_ts, row_id
    except (ValueError, KeyError, TypeError) as exc:
        raise HTTPException(status_code=400, detail="Invalid cursor") from exc


def _required_text(value: str | None, field: str) -> str:
    value = (value or "").strip()
    if not value:
        raise HTTPException(status_code=422, detail=f"{field} is required")
    return value


def _ensure_ticket_belongs_to_clinic(
    db: Session, clinic_id: UUID, ticket_id: UUID, *, lock: bool = False
) -> Ticket:
    query = db.query(Ticket).filter(Ticket.clinic_id == clinic_id, Ticket.id == ticket_id)
    if lock:
        query = query.with_for_update()
    ticket = query.first()
    if not ticket:
        raise HTTPException(status_code=404, detail="Ticket not found")
    return ticket


def _ensure_clinic_member(db: Session, clinic_id: UUID, user_id: UUID) -> None:
    member = (
        db.query(Membership)
        .filter(Membership.clinic_id == clinic_id, Membership.user_id == user_id)
        .first()
    )
    if not member:
        raise HTTPException(status_code=422, detail="Assignee is not a member of this clinic")


def _add_watcher(db: Session, ticket: Ticket, user_id: UUID | None) -> None:
    if user_id is None:
        return
    exists = (
        db.query(TicketWatcher.id)
        .filter(TicketWatcher.ticket_id == ticket.id, TicketWatcher.user_id == user_id)
        .first()
    )
    if exists:
        return
    try:
        with db.begin_nested():
            db.add(TicketWatcher(clinic_id=ticket.clinic_id, ticket_id=ticket.id, user_id=user_id))
    except IntegrityError:
        # Concurrent add of the same watcher.
        pass


def _touch(ticket: Ticket, now: datetime) -> None:
    ticket.last_activity_at = now


def _apply_status(
    db: Session,
    ticket: Ticket,
    to_status: TicketStatus,
    *,
    actor_user_id: UUID | None,
    reason: str | None = None,
    now: datetime,
) -> TicketStatus:
    """Write history, move the SLA clock and set the new status. Caller commits."""
    from_status = ticket.status
    db.add(
        TicketStatusHistory(
            clinic_id=ticket.clinic_id,
            ticket_id=ticket.id,
            from_status=from_status,
            to_status=to_status,
            changed_by=actor_user_id,
            reason=reason,
        )
    )
    ticket.status = to_status
    _touch(ticket, now)
    sla_service.apply_status_change(
        db, ticket, from_status, to_status, actor_user_id=actor_user_id, now=now
    )
    return from_status


def _transition(
    db: Session,
    ticket: Ticket,
    to_status: TicketStatus,
    *,
    actor_user_id: UUID | None,
    reason: str | None = None,
    now: datetime,
) -> TicketStatus:
    if not can_transition(ticket.status, to_status):
        raise HTTPException(
            status_code=409,
            detail=f"Cannot transition ticket from {ticket.status.value} to {to_status.value}",
        )
    return _apply_status(
        db, ticket, to_status, actor_user_id=actor_user_id, reason=reason, now=now
    )


def _commit(db: Session, ticket: Ticket) -> Ticket:
    db.commit()
    db.refresh(ticket)
    return ticket


def generate_ticket_number(db: Session, clinic_id: UUID) -> str:
    """Generate next sequential ticket number for a clinic."""
    result = db.execute(
        text(
            """
            INSERT INTO clinic_counters (id, clinic_id, counter_type, current_value, updated_at)
            VALUES (:id, :clinic_id, 'ticket_number', 10001, CURRENT_TIMESTAMP)
            ON CONFLICT (clinic_id, counter_type)
            DO UPDATE SET current_value = clinic_counters.current_value + 1,
                          updated_at = CURRENT_TIMESTAMP
            RETURNING current_value
            """
        ).bindparams(bindparam("id", type_=Uuid()), bindparam("clinic_id", type_=Uuid())),
        {"id": uuid.uuid4(), "clinic_id": clinic_id},
    ).scalar_one_or_none()
    if result is None:
        raise RuntimeError("Failed to generate ticket number")
    return f"T{result:05d}"


# =============================================================================
# Ticket lifecycle
# =============================================================================


def create_ticket(
    db: Session,
    *,
    clinic_id: UUID,
    reporter_user_id: UUID | None,
    title: str,
    description: str,
    priority: TicketPriority = TicketPriority.P3_MEDIUM,
    category: TicketCategory = TicketCategory.GENERAL,
    assignee_user_id: UUID | None = None,
    patient_id: UUID | None = None,
    parent_ticket_id: UUID | None = None,
    team_id: UUID | None = None,
) -> Ticket:
    title = _required_text(title, "Title")
    description = _required_text(description, "Description")
    if assignee_user_id:
        _ensure_clinic_member(db, clinic_id, assignee_user_id)
    if parent_ticket_id:
        _ensure_ticket_belongs_to_clinic(db, clinic_id, parent_ticket_id)

    now = _now_utc()
    ticket = Ticket(
        clinic_id=clinic_id,
        ticket_number=generate_ticket_number(db, clinic_id),
        title=title,
        description=description,
        status=TicketStatus.NEW,
        priority=priority,
        category=category,
        team_id=team_id,
        assignee_user_id=assignee_user_id,
        reporter_user_id=reporter_user_id,
        patient_id=patient_id,
        parent_ticket_id=parent_ticket_id,
        last_activity_at=now,
        created_at=now,
    )
    db.add(ticket)
    db.flush()

    activity_service.log_activity(
        db,
        ticket.id,
        clinic_id,
        TicketActivityType.CREATED,
        actor_user_id=reporter_user_id,
        details={"ticket_number": ticket.ticket_number, "priority": priority.value},
    )
    sla_service.attach_sla(db, ticket, now=now)
    _add_watcher(db, ticket, reporter_user_id)
    _add_watcher(db, ticket, assignee_user_id)

    _commit(db, ticket)
    logger.info("Ticket %s created clinic=%s", ticket.ticket_number, clinic_id)
    return ticket


def change_status(
    db: Session,
    *,
    clinic_id: UUID,
    ticket_id: UUID,
    status: TicketStatus,
    actor_user_id: UUID | None = None,
    reason: str | None = None,
) -> Ticket:
    """Generic status move validated against VALID_STATUS_TRANSITIONS."""
    ticket = _ensure_ticket_belongs_to_clinic(db, clinic_id, ticket_id, lock=True)
    if status == TicketStatus.REOPENED:
        return reopen(
            db, clinic_id=clinic_id, ticket_id=ticket_id, reason=reason, actor_user_id=actor_user_id
        )
    if status == TicketStatus.RESOLVED:
        return resolve(
            db,
            clinic_id=clinic_id,
            ticket_id=ticket_id,
            resolution_notes=reason,
            actor_user_id=actor_user_id,
        )
    if ticket.merged_into_id is not None:
        raise HTTPException(status_code=409, detail="Ticket has been merged")

    now = _now_utc()
    from_status = _transition(
        db, ticket, status, actor_user_id=actor_user_id, reason=reason, now=now
    )
    if status == TicketStatus.CLOSED:
        ticket.closed_at = now
    activity_service.log_activity(
        db,
        ticket.id,
        clinic_id,
        TicketActivityType.CLOSED if status == TicketStatus.CLOSED else TicketActivityType.STATUS_CHANGED,
        actor_user_id=actor_user_id,
        details={"from": from_status.value, "to": status.value, "reason": reason},
    )
    return _commit(db, ticket)


def assign(
    db: Session,
    *,
    clinic_id: UUID,
    ticket_id: UUID,
    assignee_user_id: UUID | None,
    actor_user_id: UUID | None = None,
) -> Ticket:
    ticket = _ensure_ticket_belongs_to_clinic(db, clinic_id, ticket_id, lock=True)
    if assignee_user_id:
        _ensure_clinic_member(db, clinic_id, assignee_user_id)
    previous = ticket.assignee_user_id
    if previous == assignee_user_id:
        return ticket

    ticket.assignee_user_id = assignee_user_id
    _touch(ticket, _now_utc())
    activity_service.log_activity(
        db,
        ticket.id,
        clinic_id,
        TicketActivityType.REASSIGNED if previous else TicketActivityType.ASSIGNED,
        actor_user_id=actor_user_id,
        details={
            "from": str(previous) if previous else None,
            "to": str(assignee_user_id) if assignee_user_id else None,
        },
    )
    _add_watcher(db, ticket, assignee_user_id)
    return _commit(db, ticket)


def escalate(
    db: Session,
    *,
    clinic_id: UUID,
    ticket_id: UUID,
    reason: str | None = None,
    assignee_user_id: UUID | None = None,
    priority: TicketPriority | None = None,
    actor_user_id: UUID | None = None,
) -> Ticket:
    ticket = _ensure_ticket_belongs_to_clinic(db, clinic_id, ticket_id, lock=True)
    if assignee_user_id:
        _ensure_clinic_member(db, clinic_id, assignee_user_id)

    now = _now_utc()
    from_status = _transition(
        db, ticket, TicketStatus.ESCALATED, actor_user_id=actor_user_id, reason=reason, now=now
    )
    if priority is not None:
        ticket.priority = priority
    if assignee_user_id:
        ticket.assignee_user_id = assignee_user_id
        _add_watcher(db, ticket, assignee_user_id)

    activity_service.log_activity(
        db,
        ticket.id,
        clinic_id,
        TicketActivityType.ESCALATED,
        actor_user_id=actor_user_id,
        details={
            "from": from_status.value,
            "reason": reason,
            "assignee_user_id": str(assignee_user_id) if assignee_user_id else None,
        },
    )
    return _commit(db, ticket)


def add_comment(
    db: Session,
    *,
    clinic_id: UUID,
    ticket_id: UUID,
    body: str,
    author_user_id: UUID | None,
    is_internal: bool = False,
) -> TicketComment:
    """Add a comment. The first public reply from someone other than the reporter is the first response."""
    ticket = _ensure_ticket_belongs_to_clinic(db, clinic_id, ticket_id, lock=True)
    body = _required_text(body, "Comment body")

    now = _now_utc()
    comment = TicketComment(
        clinic_id=clinic_id,
        ticket_id=ticket.id,
        author_user_id=author_user_id,
        body=body,
        is_internal=is_internal,
        created_at=now,
    )
    db.add(comment)

    if (
        not is_internal
        and ticket.first_response_at is None
        and author_user_id is not None
        and author_user_id != ticket.reporter_user_id
    ):
        ticket.first_response_at = now
    _touch(ticket, now)

    db.flush()
    activity_service.log_activity(
        db,
        ticket.id,
        clinic_id,
        TicketActivityType.COMMENT_ADDED,
        actor_user_id=author_user_id,
        details={"comment_id": str(comment.id), "is_internal": is_internal},
    )
    _add_watcher(db, ticket, author_user_id)
    db.commit()
    db.refresh(comment)
    return comment


def resolve(
    db: Session,
    *,
    clinic_id: UUID,
    ticket_id: UUID,
    resolution_notes: str | None,
    actor_user_id: UUID | None = None,
) -> Ticket:
    notes = _required_text(resolution_notes, "Resolution notes")
    ticket = _ensure_ticket_belongs_to_clinic(db, clinic_id, ticket_id, lock=True)

    now = _now_utc()
    from_status = _transition(
        db, ticket, TicketStatus.RESOLVED, actor_user_id=actor_user_id, reason=notes, now=now
    )
    ticket.resolution_notes = notes
    ticket.resolved_at = now
    activity_service.log_activity(
        db,
        ticket.id,
        clinic_id,
        TicketActivityType.RESOLVED,
        actor_user_id=actor_user_id,
        details={"from": from_status.value},
    )
    return _commit(db, ticket)


def close(
    db: Session,
    *,
    clinic_id: UUID,
    ticket_id: UUID,
    actor_user_id: UUID | None = None,
) -> Ticket:
    return change_status(
        db,
        clinic_id=clinic_id,
        ticket_id=ticket_id,
        status=TicketStatus.CLOSED,
        actor_user_id=actor_user_id,
    )


def reopen(
    db: Session,
    *,
    clinic_id: UUID,
    ticket_id: UUID,
    reason: str | None,
    actor_user_id: UUID | None = None,
) -> Ticket:
    """Reopen a resolved/closed ticket; the resolution clock restarts from now."""
    reason = _required_text(reason, "Reopen reason")
    ticket = _ensure_ticket_belongs_to_clinic(db, clinic_id, ticket_id, lock=True)
    if ticket.status not in REOPENABLE_STATUSES:
        raise HTTPException(
            status_code=409,
            detail=f"Only resolved or closed tickets can be reopened (status {ticket.status.value})",
        )
    if ticket.merged_into_id is not None:
        raise HTTPException(status_code=409, detail="Merged tickets cannot be reopened")

    now = _now_utc()
    from_status = _apply_status(
        db, ticket, TicketStatus.REOPENED, actor_user_id=actor_user_id, reason=reason, now=now
    )
    ticket.reopen_count += 1
    ticket.resolved_at = None
    ticket.closed_at = None
    sla_service.restart_resolution_clock(db, ticket, now=now)

    activity_service.log_activity(
        db,
        ticket.id,
        clinic_id,
        TicketActivityType.REOPENED,
        actor_user_id=actor_user_id,
        details={"from": from_status.value, "reason": reason, "reopen_count": ticket.reopen_count},
    )
    return _commit(db, ticket)


def merge(
    db: Session,
    *,
    clinic_id: UUID,
    source_ticket_id: UUID,
    target_ticket_id: UUID,
    actor_user_id: UUID | None = None,
) -> Ticket:
    """Close the source ticket into the target. Returns the target."""
    if source_ticket_id == target_ticket_id:
        raise HTTPException(status_code=422, detail="Cannot merge a ticket into itself")
    source = _ensure_ticket_belongs_to_clinic(db, clinic_id, source_ticket_id, lock=True)
    target = _ensure_ticket_belongs_to_clinic(db, clinic_id, target_ticket_id, lock=True)
    if source.merged_into_id is not None:
        raise HTTPException(status_code=409, detail="Ticket is already merged")
    if target.merged_into_id is not None:
        raise HTTPException(status_code=409, detail="Cannot merge into a merged ticket")
    if source.status == TicketStatus.CANCELLED:
        raise HTTPException(status_code=409, detail="Cancelled tickets cannot be merged")

    now = _now_utc()
    if source.status != TicketStatus.CLOSED:
        _apply_status(
            db,
            source,
            TicketStatus.CLOSED,
            actor_user_id=actor_user_id,
            reason=f"Merged into {target.ticket_number}",
            now=now,
        )
    source.merged_into_id = target.id
    source.closed_at = source.closed_at or now
    _touch(target, now)

    activity_service.log_activity(
        db,
        source.id,
        clinic_id,
        TicketActivityType.MERGED,
        actor_user_id=actor_user_id,
        details={"merged_into": str(target.id), "ticket_number": target.ticket_number},
    )
    activity_service.log_activity(
        db,
        target.id,
        clinic_id,
        TicketActivityType.MERGED,
        actor_user_id=actor_user_id,
        details={"merged_from": str(source.id), "ticket_number": source.ticket_number},
    )
    db.commit()
    db.refresh(target)
    logger.info("Ticket %s merged into %s", source.ticket_number, target.ticket_number)
    return target


# =============================================================================
# Ticket list/detail/query helpers
# =============================================================================


def list_tickets(
    db: Session,
    *,
    clinic_id: UUID,
    limit: int,
    cursor: str | None,
    status_filter: TicketStatus | None = None,
    priority_filter: TicketPriority | None = None,
    category_filter: TicketCategory | None = None,
    assignee_user_id: UUID | None = None,
    patient_id: UUID | None = None,
    q: str | None = None,
) -> TicketListPage:
    """List tickets with cursor pagination and filters."""
    page_limit = max(1, min(limit, 100))
    sort_ts = func.coalesce(Ticket.last_activity_at, Ticket.created_at)

    query = db.query(Ticket, sort_ts.label("sort_ts")).filter(Ticket.clinic_id == clinic_id)

    if status_filter:
        query = query.filter(Ticket.status == status_filter)
    if priority_filter:
        query = query.filter(Ticket.priority == priority_filter)
    if category_filter:
        query = query.filter(Ticket.category == category_filter)
    if assignee_user_id:
        query = query.filter(Ticket.assignee_user_id == assignee_user_id)
    if patient_id:
        query = query.filter(Ticket.patient_id == patient_id)

    if q and q.strip():
        search = f"%{q.strip()}%"
        query = query.filter(
            or_(
                Ticket.title.ilike(search),
                Ticket.description.ilike(search),
                Ticket.ticket_number.ilike(search),
            )
        )

    if cursor:
        cursor_sort_ts, cursor_id = _decode_cursor(cursor)
        query = query.filter(
            or_(
                sort_ts < cursor_sort_ts,
                and_(sort_ts == cursor_sort_ts, Ticket.id < cursor_id),
            )
        )

    rows = query.order_by(sort_ts.desc(), Ticket.id.desc()).limit(page_limit + 1).all()
    has_more = len(rows) > page_limit
    page_rows = rows[:page_limit]

    items = [ticket for ticket, _ in page_rows]

    next_cursor = None
    if has_more and page_rows:
        last_ticket = page_rows[-1][0]
        next_cursor = _encode_cursor(
            sort_ts=last_ticket.last_activity_at or last_ticket.created_at,
            row_id=last_ticket.id,
        )

    return TicketListPage(items=items, next_cursor=next_cursor)


def get_ticket_detail(db: Session, *, clinic_id: UUID, ticket_id: UUID) -> dict:
    """Return ticket detail payload with activities, comments, history and SLA."""
    ticket = _ensure_ticket_belongs_to_clinic(db, clinic_id, ticket_id)

    activities = (
        db.query(TicketActivity)
        .filter(TicketActivity.clinic_id == clinic_id, TicketActivity.ticket_id == ticket_id)
        .order_by(TicketActivity.created_at.asc(), TicketActivity.id.asc())
        .all()
    )
    comments = (
        db.query(TicketComment)
        .filter(TicketComment.clinic_id == clinic_id, TicketComment.ticket_id == ticket_id)
        .order_by(TicketComment.created_at.asc(), TicketComment.id.asc())
        .all()
    )
    history = (
        db.query(TicketStatusHistory)
        .filter(
            TicketStatusHistory.clinic_id == clinic_id,
            TicketStatusHistory.ticket_id == ticket_id,
        )
        .order_by(TicketStatusHistory.created_at.asc(), TicketStatusHistory.id.asc())
        .all()
    )
    watcher_ids = [
        row.user_id
        for row in db.query(TicketWatcher.user_id).filter(TicketWatcher.ticket_id == ticket_id)
    ]

    return {
        "ticket": ticket,
        "sla": ticket.sla,
        "activities": activities,
        "comments": comments,
        "status_history": history,
        "watcher_user_ids": watcher_ids,
    }
