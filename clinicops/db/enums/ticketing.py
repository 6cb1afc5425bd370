"""Ticketing enums."""

from enum import Enum


class TicketStatus(str, Enum):
    """Ticket lifecycle status."""

    NEW = "NEW"
    OPEN = "OPEN"
    IN_PROGRESS = "IN_PROGRESS"
    PENDING_CUSTOMER = "PENDING_CUSTOMER"
    PENDING_INTERNAL = "PENDING_INTERNAL"
    ON_HOLD = "ON_HOLD"
    ESCALATED = "ESCALATED"
    RESOLVED = "RESOLVED"
    CLOSED = "CLOSED"
    CANCELLED = "CANCELLED"
    REOPENED = "REOPENED"


# SLA clock is frozen while a ticket sits in one of these
SLA_PAUSED_STATUSES = frozenset({TicketStatus.PENDING_CUSTOMER, TicketStatus.ON_HOLD})

CLOSED_TICKET_STATUSES = frozenset(
    {TicketStatus.RESOLVED, TicketStatus.CLOSED, TicketStatus.CANCELLED}
)


class TicketPriority(str, Enum):
    """Ticket priority level."""

    P0_CRITICAL = "P0_CRITICAL"
    P1_URGENT = "P1_URGENT"
    P2_HIGH = "P2_HIGH"
    P3_MEDIUM = "P3_MEDIUM"
    P4_LOW = "P4_LOW"
    P5_PLANNING = "P5_PLANNING"


class TicketCategory(str, Enum):
    GENERAL = "GENERAL"
    BILLING = "BILLING"
    PRESCRIPTION = "PRESCRIPTION"
    SHIPPING = "SHIPPING"
    TECHNICAL = "TECHNICAL"
    CLINICAL = "CLINICAL"


class TicketActivityType(str, Enum):
    """Activity log entry type."""

    CREATED = "CREATED"
    STATUS_CHANGED = "STATUS_CHANGED"
    ASSIGNED = "ASSIGNED"
    REASSIGNED = "REASSIGNED"
    ESCALATED = "ESCALATED"
    COMMENT_ADDED = "COMMENT_ADDED"
    RESOLVED = "RESOLVED"
    REOPENED = "REOPENED"
    CLOSED = "CLOSED"
    MERGED = "MERGED"
    SLA_BREACH_WARNING = "SLA_BREACH_WARNING"
    SLA_BREACHED = "SLA_BREACHED"
    SLA_PAUSED = "SLA_PAUSED"
    SLA_RESUMED = "SLA_RESUMED"
