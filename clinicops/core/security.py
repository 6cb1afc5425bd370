"""Security utilities for JWT session tokens."""

import hashlib
from datetime import datetime, timedelta, timezone
from uuid import UUID

import jwt

from clinicops.core.config import settings


# =============================================================================
# Session Token (JWT in Authorization header)
# =============================================================================

def create_session_token(
    user_id: UUID,
    clinic_id: UUID,
    role: str,
    token_version: int,
) -> str:
    """
    Create signed session JWT.

    Always signs with current secret (JWT_SECRET).
    Token contains user identity, clinic context, and revocation version.
    """
    payload = {
        "sub": str(user_id),
        "clinic_id": str(clinic_id),
        "role": role,
        "token_version": token_version,
        "iat": datetime.now(timezone.utc),
        "exp": datetime.now(timezone.utc) + timedelta(hours=settings.JWT_EXPIRES_HOURS),
    }
    return jwt.encode(payload, settings.JWT_SECRET, algorithm="HS256")


def decode_session_token(token: str) -> dict:
    """
    Decode and verify session JWT.

    Tries current secret first, then previous (for rotation support).

    Raises:
        jwt.InvalidTokenError: If token invalid with all secrets
    """
    last_error = None
    for secret in settings.jwt_secrets:
        try:
            return jwt.decode(token, secret, algorithms=["HS256"])
        except jwt.InvalidTokenError as e:
            last_error = e
            continue
    raise last_error  # type: ignore


def hash_ip(ip_address: str) -> str:
    """One-way hash for storing client IPs on attribution touches."""
    return hashlib.sha256(ip_address.strip().encode("utf-8")).hexdigest()
