"""Activity logging service - centralized ticket activity tracking."""

from uuid import UUID

from sqlalchemy.orm import Session

from clinicops.db.enums import TicketActivityType
from clinicops.db.models import TicketActivity


def log_activity(
    db: Session,
    ticket_id: UUID,
    clinic_id: UUID,
    activity_type: TicketActivityType,
    actor_user_id: UUID | None = None,
    details: dict | None = None,
) -> TicketActivity:
    """
    Log a ticket activity.

    Args:
        db: Database session
        ticket_id: The ticket this activity is for
        clinic_id: Clinic context
        activity_type: Type of activity (from TicketActivityType enum)
        actor_user_id: User who performed the action (None for system)
        details: Type-specific details as JSON

    Returns:
        The created activity entry
    """
    activity = TicketActivity(
        ticket_id=ticket_id,
        clinic_id=clinic_id,
        activity_type=activity_type,
        actor_user_id=actor_user_id,
        details=details or {},
    )
    db.add(activity)
    db.flush()  # Don't commit - let caller control transaction
    return activity


def log_sla_breached(
    db: Session,
    ticket_id: UUID,
    clinic_id: UUID,
    target: str,
    due_at: str,
) -> TicketActivity:
    """Log an SLA breach (system actor)."""
    return log_activity(
        db=db,
        ticket_id=ticket_id,
        clinic_id=clinic_id,
        activity_type=TicketActivityType.SLA_BREACHED,
        details={"target": target, "due_at": due_at},
    )
