"""Auth-related enums."""

from enum import Enum


class Role(str, Enum):
    """
    Clinic staff roles.

    - ADMIN: Clinic admin (refill gate, payouts, SLA policies)
    - PHARMACY: Refill queue operators (payment verification, shipments)
    - PROVIDER: Prescribing providers (provider queue)
    - SUPPORT: Ticket agents
    - FINANCE: Commission and payout operators
    """

    ADMIN = "admin"
    PHARMACY = "pharmacy"
    PROVIDER = "provider"
    SUPPORT = "support"
    FINANCE = "finance"

    @classmethod
    def has_value(cls, value: str) -> bool:
        """Check if value is a valid role."""
        return value in cls._value2member_map_


ROLES_CAN_GATE_REFILLS = {Role.ADMIN, Role.PHARMACY}
ROLES_CAN_PRESCRIBE = {Role.ADMIN, Role.PROVIDER}
ROLES_CAN_MANAGE_COMMISSIONS = {Role.ADMIN, Role.FINANCE}
ROLES_CAN_MANAGE_SLA = {Role.ADMIN}
