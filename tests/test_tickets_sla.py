"""Ticket lifecycle and the SLA engine."""

import uuid
from datetime import datetime, timedelta, timezone

import pytest
from fastapi import HTTPException

from clinicops.db.enums import (
    TicketActivityType,
    TicketCategory,
    TicketPriority,
    TicketStatus,
)
from clinicops.db.models import TicketActivity
from clinicops.services import sla_service, ticketing_service


def _now():
    return datetime.now(timezone.utc)


def _ticket(db, clinic, user, **kwargs):
    return ticketing_service.create_ticket(
        db,
        clinic_id=clinic.id,
        reporter_user_id=user.id,
        title=kwargs.pop("title", "Shipment never arrived"),
        description=kwargs.pop("description", "Tracking shows delivered but box missing"),
        **kwargs,
    )


def _policy(db, clinic, **kwargs):
    return sla_service.create_policy(
        db,
        clinic_id=clinic.id,
        name=kwargs.pop("name", "Default"),
        resolution_minutes=kwargs.pop("resolution_minutes", 60),
        **kwargs,
    )


def _move(db, clinic, ticket, status):
    return ticketing_service.change_status(
        db, clinic_id=clinic.id, ticket_id=ticket.id, status=status
    )


def _activity_types(db, ticket):
    return [
        a.activity_type
        for a in db.query(TicketActivity).filter(TicketActivity.ticket_id == ticket.id).all()
    ]


# =============================================================================
# Lifecycle
# =============================================================================


def test_ticket_numbers_are_sequential_per_clinic(db, test_clinic, test_user):
    first = _ticket(db, test_clinic, test_user)
    second = _ticket(db, test_clinic, test_user)
    assert first.ticket_number == "T10001"
    assert second.ticket_number == "T10002"
    assert first.status == TicketStatus.NEW


def test_create_ticket_requires_title(db, test_clinic, test_user):
    with pytest.raises(HTTPException) as exc:
        _ticket(db, test_clinic, test_user, title="  ")
    assert exc.value.status_code == 422


def test_new_ticket_cannot_jump_to_resolved(db, test_clinic, test_user):
    ticket = _ticket(db, test_clinic, test_user)
    with pytest.raises(HTTPException) as exc:
        ticketing_service.resolve(
            db, clinic_id=test_clinic.id, ticket_id=ticket.id, resolution_notes="done"
        )
    assert exc.value.status_code == 409

    _move(db, test_clinic, ticket, TicketStatus.OPEN)
    ticket = ticketing_service.resolve(
        db, clinic_id=test_clinic.id, ticket_id=ticket.id, resolution_notes="Reshipped"
    )
    assert ticket.status == TicketStatus.RESOLVED
    assert ticket.resolved_at is not None
    assert ticket.resolution_notes == "Reshipped"


def test_resolve_requires_notes(db, test_clinic, test_user):
    ticket = _ticket(db, test_clinic, test_user)
    with pytest.raises(HTTPException) as exc:
        ticketing_service.resolve(
            db, clinic_id=test_clinic.id, ticket_id=ticket.id, resolution_notes=""
        )
    assert exc.value.status_code == 422


def test_cancelled_is_terminal(db, test_clinic, test_user):
    ticket = _ticket(db, test_clinic, test_user)
    _move(db, test_clinic, ticket, TicketStatus.CANCELLED)
    with pytest.raises(HTTPException) as exc:
        _move(db, test_clinic, ticket, TicketStatus.OPEN)
    assert exc.value.status_code == 409


def test_close_and_reopen(db, test_clinic, test_user):
    ticket = _ticket(db, test_clinic, test_user)
    _move(db, test_clinic, ticket, TicketStatus.OPEN)

    with pytest.raises(HTTPException) as exc:
        ticketing_service.reopen(
            db, clinic_id=test_clinic.id, ticket_id=ticket.id, reason="Not fixed"
        )
    assert exc.value.status_code == 409

    ticketing_service.resolve(
        db, clinic_id=test_clinic.id, ticket_id=ticket.id, resolution_notes="Refunded"
    )
    ticket = ticketing_service.close(db, clinic_id=test_clinic.id, ticket_id=ticket.id)
    assert ticket.status == TicketStatus.CLOSED
    assert ticket.closed_at is not None

    with pytest.raises(HTTPException) as exc:
        ticketing_service.reopen(db, clinic_id=test_clinic.id, ticket_id=ticket.id, reason=" ")
    assert exc.value.status_code == 422

    ticket = ticketing_service.reopen(
        db, clinic_id=test_clinic.id, ticket_id=ticket.id, reason="Refund bounced"
    )
    assert ticket.status == TicketStatus.REOPENED
    assert ticket.reopen_count == 1
    assert ticket.resolved_at is None
    assert ticket.closed_at is None
    assert TicketActivityType.REOPENED in _activity_types(db, ticket)


def test_assign_requires_clinic_member(db, test_clinic, test_user, support_user):
    ticket = _ticket(db, test_clinic, test_user)
    with pytest.raises(HTTPException) as exc:
        ticketing_service.assign(
            db, clinic_id=test_clinic.id, ticket_id=ticket.id, assignee_user_id=uuid.uuid4()
        )
    assert exc.value.status_code == 422

    ticket = ticketing_service.assign(
        db,
        clinic_id=test_clinic.id,
        ticket_id=ticket.id,
        assignee_user_id=support_user.id,
        actor_user_id=test_user.id,
    )
    assert ticket.assignee_user_id == support_user.id

    detail = ticketing_service.get_ticket_detail(
        db, clinic_id=test_clinic.id, ticket_id=ticket.id
    )
    assert set(detail["watcher_user_ids"]) == {test_user.id, support_user.id}
    assert TicketActivityType.ASSIGNED in [a.activity_type for a in detail["activities"]]
    assert set(detail) == {
        "ticket",
        "sla",
        "activities",
        "comments",
        "status_history",
        "watcher_user_ids",
    }


def test_escalate_bumps_priority(db, test_clinic, test_user):
    ticket = _ticket(db, test_clinic, test_user)
    _move(db, test_clinic, ticket, TicketStatus.IN_PROGRESS)
    ticket = ticketing_service.escalate(
        db,
        clinic_id=test_clinic.id,
        ticket_id=ticket.id,
        reason="Patient threatening chargeback",
        priority=TicketPriority.P1_URGENT,
    )
    assert ticket.status == TicketStatus.ESCALATED
    assert ticket.priority == TicketPriority.P1_URGENT


def test_first_public_reply_sets_first_response(db, test_clinic, test_user, support_user):
    ticket = _ticket(db, test_clinic, test_user)

    ticketing_service.add_comment(
        db,
        clinic_id=test_clinic.id,
        ticket_id=ticket.id,
        body="Following up",
        author_user_id=test_user.id,
    )
    ticketing_service.add_comment(
        db,
        clinic_id=test_clinic.id,
        ticket_id=ticket.id,
        body="Checking with carrier",
        author_user_id=support_user.id,
        is_internal=True,
    )
    db.refresh(ticket)
    assert ticket.first_response_at is None

    ticketing_service.add_comment(
        db,
        clinic_id=test_clinic.id,
        ticket_id=ticket.id,
        body="A replacement is on the way",
        author_user_id=support_user.id,
    )
    db.refresh(ticket)
    assert ticket.first_response_at is not None


def test_merge_closes_source(db, test_clinic, test_user):
    source = _ticket(db, test_clinic, test_user, title="Duplicate report")
    target = _ticket(db, test_clinic, test_user)

    with pytest.raises(HTTPException) as exc:
        ticketing_service.merge(
            db, clinic_id=test_clinic.id, source_ticket_id=target.id, target_ticket_id=target.id
        )
    assert exc.value.status_code == 422

    merged = ticketing_service.merge(
        db, clinic_id=test_clinic.id, source_ticket_id=source.id, target_ticket_id=target.id
    )
    assert merged.id == target.id
    db.refresh(source)
    assert source.status == TicketStatus.CLOSED
    assert source.merged_into_id == target.id

    with pytest.raises(HTTPException) as exc:
        ticketing_service.reopen(
            db, clinic_id=test_clinic.id, ticket_id=source.id, reason="Wrong merge"
        )
    assert exc.value.status_code == 409


def test_list_tickets_cursor_pagination(db, test_clinic, test_user):
    created = [_ticket(db, test_clinic, test_user, title=f"Ticket {i}") for i in range(3)]

    page = ticketing_service.list_tickets(db, clinic_id=test_clinic.id, limit=2, cursor=None)
    assert len(page.items) == 2
    assert page.next_cursor is not None

    rest = ticketing_service.list_tickets(
        db, clinic_id=test_clinic.id, limit=2, cursor=page.next_cursor
    )
    assert len(rest.items) == 1
    assert rest.next_cursor is None
    assert {t.id for t in page.items + rest.items} == {t.id for t in created}

    search = ticketing_service.list_tickets(
        db, clinic_id=test_clinic.id, limit=10, cursor=None, q="ticket 1"
    )
    assert [t.id for t in search.items] == [created[1].id]


def test_list_tickets_filters_combine_with_cursor(db, test_clinic, test_user):
    opened = [_ticket(db, test_clinic, test_user, title=f"Open {i}") for i in range(3)]
    for ticket in opened:
        _move(db, test_clinic, ticket, TicketStatus.OPEN)
    urgent = _ticket(
        db, test_clinic, test_user, title="Cold chain", priority=TicketPriority.P1_URGENT
    )

    first = ticketing_service.list_tickets(
        db, clinic_id=test_clinic.id, limit=2, cursor=None, status_filter=TicketStatus.OPEN
    )
    second = ticketing_service.list_tickets(
        db,
        clinic_id=test_clinic.id,
        limit=2,
        cursor=first.next_cursor,
        status_filter=TicketStatus.OPEN,
    )
    assert len(first.items) == 2
    assert len(second.items) == 1
    assert second.next_cursor is None
    assert {t.id for t in first.items + second.items} == {t.id for t in opened}

    by_priority = ticketing_service.list_tickets(
        db,
        clinic_id=test_clinic.id,
        limit=10,
        cursor=None,
        priority_filter=TicketPriority.P1_URGENT,
    )
    assert [t.id for t in by_priority.items] == [urgent.id]


def test_list_tickets_bad_cursor(db, test_clinic):
    with pytest.raises(HTTPException) as exc:
        ticketing_service.list_tickets(db, clinic_id=test_clinic.id, limit=10, cursor="garbage")
    assert exc.value.status_code == 400


def test_other_clinic_ticket_is_not_found(db, test_clinic, test_user):
    ticket = _ticket(db, test_clinic, test_user)
    with pytest.raises(HTTPException) as exc:
        ticketing_service.get_ticket_detail(db, clinic_id=uuid.uuid4(), ticket_id=ticket.id)
    assert exc.value.status_code == 404


# =============================================================================
# SLA policies and clocks
# =============================================================================


def test_policy_matching_prefers_specific(db, test_clinic):
    default = _policy(db, test_clinic, name="Default", is_default=True)
    by_category = _policy(db, test_clinic, name="Billing", category=TicketCategory.BILLING)
    by_priority = _policy(db, test_clinic, name="P1", priority=TicketPriority.P1_URGENT)
    exact = _policy(
        db,
        test_clinic,
        name="P1 billing",
        priority=TicketPriority.P1_URGENT,
        category=TicketCategory.BILLING,
    )

    def match(priority, category):
        return sla_service.match_policy(
            db, clinic_id=test_clinic.id, priority=priority, category=category
        ).id

    assert match(TicketPriority.P1_URGENT, TicketCategory.BILLING) == exact.id
    assert match(TicketPriority.P1_URGENT, TicketCategory.SHIPPING) == by_priority.id
    assert match(TicketPriority.P4_LOW, TicketCategory.BILLING) == by_category.id
    assert match(TicketPriority.P4_LOW, TicketCategory.GENERAL) == default.id


def test_no_policy_means_no_sla(db, test_clinic, test_user):
    ticket = _ticket(db, test_clinic, test_user)
    assert ticket.sla is None


def test_create_policy_validation(db, test_clinic):
    with pytest.raises(HTTPException) as exc:
        _policy(db, test_clinic, resolution_minutes=0)
    assert exc.value.status_code == 422
    with pytest.raises(HTTPException) as exc:
        _policy(db, test_clinic, warning_threshold_pct=150)
    assert exc.value.status_code == 422
    with pytest.raises(HTTPException) as exc:
        _policy(db, test_clinic, business_hours_id=uuid.uuid4())
    assert exc.value.status_code == 404


def test_only_one_default_policy(db, test_clinic):
    first = _policy(db, test_clinic, name="Old default", is_default=True)
    second = _policy(db, test_clinic, name="New default", is_default=True)
    db.refresh(first)
    assert first.is_default is False
    assert second.is_default is True
    assert {p.id for p in sla_service.list_policies(db, clinic_id=test_clinic.id)} == {
        first.id,
        second.id,
    }


def test_sla_attached_with_wall_clock_dues(db, test_clinic, test_user):
    _policy(db, test_clinic, is_default=True, resolution_minutes=240, first_response_minutes=30)
    ticket = _ticket(db, test_clinic, test_user)

    sla = ticket.sla
    assert sla is not None
    assert sla.resolution_due - sla.started_at == timedelta(minutes=240)
    assert sla.first_response_due - sla.started_at == timedelta(minutes=30)


def test_pause_and_resume_extends_due(db, test_clinic, test_user):
    _policy(db, test_clinic, is_default=True, resolution_minutes=120)
    ticket = _ticket(db, test_clinic, test_user)
    original_due = ticket.sla.resolution_due

    _move(db, test_clinic, ticket, TicketStatus.PENDING_CUSTOMER)
    sla = ticket.sla
    assert sla.paused_at is not None

    sla.paused_at = sla.paused_at - timedelta(minutes=30)
    db.commit()

    _move(db, test_clinic, ticket, TicketStatus.OPEN)
    db.refresh(sla)
    assert sla.paused_at is None
    assert sla.total_paused_seconds >= 1800
    assert sla.resolution_due >= original_due + timedelta(minutes=30)

    types = _activity_types(db, ticket)
    assert TicketActivityType.SLA_PAUSED in types
    assert TicketActivityType.SLA_RESUMED in types


def test_sweep_warns_then_breaches_once(db, test_clinic, test_user):
    _policy(db, test_clinic, is_default=True, resolution_minutes=60, warning_threshold_pct=80)
    ticket = _ticket(db, test_clinic, test_user)
    started = ticket.sla.started_at

    def sweep(minutes):
        return sla_service.sweep_slas(
            db, now=started + timedelta(minutes=minutes), clinic_id=test_clinic.id
        )

    assert sweep(30) == sla_service.SlaSweepResult(warnings=0, breaches=0)
    assert sweep(50).warnings == 1
    assert sweep(55).warnings == 0

    assert sweep(61).breaches == 1
    db.refresh(ticket.sla)
    assert ticket.sla.resolution_breached is True
    assert ticket.sla.breached_at is not None

    assert sweep(90).breaches == 0
    types = _activity_types(db, ticket)
    assert types.count(TicketActivityType.SLA_BREACHED) == 1
    assert types.count(TicketActivityType.SLA_BREACH_WARNING) == 1


def test_sweep_first_response_breach(db, test_clinic, test_user):
    _policy(db, test_clinic, is_default=True, resolution_minutes=600, first_response_minutes=15)
    ticket = _ticket(db, test_clinic, test_user)

    result = sla_service.sweep_slas(
        db, now=ticket.sla.started_at + timedelta(minutes=20), clinic_id=test_clinic.id
    )
    assert result.breaches == 1
    db.refresh(ticket.sla)
    assert ticket.sla.first_response_breached is True
    assert ticket.sla.resolution_breached is False


def test_sweep_skips_paused_and_resolved(db, test_clinic, test_user):
    _policy(db, test_clinic, is_default=True, resolution_minutes=60)

    paused = _ticket(db, test_clinic, test_user)
    _move(db, test_clinic, paused, TicketStatus.OPEN)
    _move(db, test_clinic, paused, TicketStatus.ON_HOLD)

    resolved = _ticket(db, test_clinic, test_user)
    _move(db, test_clinic, resolved, TicketStatus.OPEN)
    ticketing_service.resolve(
        db, clinic_id=test_clinic.id, ticket_id=resolved.id, resolution_notes="Answered"
    )

    result = sla_service.sweep_slas(db, now=_now() + timedelta(days=1), clinic_id=test_clinic.id)
    assert result.breaches == 0
    assert result.warnings == 0


def test_reopen_restarts_resolution_clock(db, test_clinic, test_user):
    _policy(db, test_clinic, is_default=True, resolution_minutes=60)
    ticket = _ticket(db, test_clinic, test_user)
    _move(db, test_clinic, ticket, TicketStatus.OPEN)
    ticketing_service.resolve(
        db, clinic_id=test_clinic.id, ticket_id=ticket.id, resolution_notes="Answered"
    )
    sla = ticket.sla
    sla.resolution_breached = True
    sla.started_at = sla.started_at - timedelta(hours=5)
    db.commit()

    before = _now()
    ticket = ticketing_service.reopen(
        db, clinic_id=test_clinic.id, ticket_id=ticket.id, reason="Still broken"
    )
    db.refresh(ticket.sla)
    assert ticket.sla.started_at >= before
    assert ticket.sla.resolution_due == ticket.sla.started_at + timedelta(minutes=60)
    # breach flags from the previous cycle stay
    assert ticket.sla.resolution_breached is True
    assert ticket.sla.total_paused_seconds == 0


def test_business_hours_policy_due(db, test_clinic):
    hours = sla_service.upsert_business_hours(
        db,
        clinic_id=test_clinic.id,
        name="Weekdays",
        timezone_name="UTC",
        schedule=[
            {"day_of_week": d, "start_time": "09:00", "end_time": "17:00"} for d in range(1, 6)
        ],
    )
    policy = _policy(
        db,
        test_clinic,
        is_default=True,
        resolution_minutes=120,
        respect_business_hours=True,
        business_hours_id=hours.id,
    )
    # Friday 16:00 UTC: one hour Friday, one hour Monday
    start = datetime(2025, 1, 3, 16, 0, tzinfo=timezone.utc)
    assert sla_service.compute_due(db, policy, start, 120) == datetime(
        2025, 1, 6, 10, 0, tzinfo=timezone.utc
    )


def test_upsert_business_hours_replaces_default(db, test_clinic):
    first = sla_service.upsert_business_hours(
        db,
        clinic_id=test_clinic.id,
        name="Weekdays",
        timezone_name="America/Chicago",
        schedule=[{"day_of_week": 1, "start_time": "08:00", "end_time": "16:00"}],
        holidays=[{"date": "2025-12-25", "name": "Christmas"}],
    )
    second = sla_service.upsert_business_hours(
        db,
        clinic_id=test_clinic.id,
        name="Extended",
        timezone_name="America/Chicago",
        schedule=[{"day_of_week": 1, "start_time": "07:00", "end_time": "19:00"}],
    )
    assert second.id == first.id
    assert second.name == "Extended"
    assert second.holidays == []


@pytest.mark.parametrize(
    "overrides",
    [
        {"timezone_name": "Mars/Olympus"},
        {"schedule": [{"day_of_week": 7, "start_time": "08:00", "end_time": "16:00"}]},
        {"schedule": [{"day_of_week": 1, "start_time": "8am", "end_time": "16:00"}]},
        {"holidays": [{"date": "25/12/2025"}]},
    ],
)
def test_upsert_business_hours_validation(db, test_clinic, overrides):
    params = {
        "name": "Bad",
        "timezone_name": "UTC",
        "schedule": [{"day_of_week": 1, "start_time": "08:00", "end_time": "16:00"}],
    }
    params.update(overrides)
    with pytest.raises(HTTPException) as exc:
        sla_service.upsert_business_hours(db, clinic_id=test_clinic.id, **params)
    assert exc.value.status_code == 422
