"""Authentication-related Pydantic schemas."""

from uuid import UUID

from pydantic import BaseModel

from clinicops.db.enums import Role


class TokenPayload(BaseModel):
    """Decoded JWT payload structure."""
    sub: UUID  # user_id
    clinic_id: UUID
    role: str
    token_version: int


class UserSession(BaseModel):
    """
    Full session context for authenticated requests.

    This is returned by get_current_session dependency
    and contains all information needed for authorization.
    """
    user_id: UUID
    clinic_id: UUID
    role: Role  # Validated enum
    email: str
    display_name: str
