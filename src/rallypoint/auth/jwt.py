"""Bearer token issuance and verification.

A token names the user (``sub``) and carries the role and managed region
the user had when it was issued. Request handlers should still re-read the
user row before authorizing, so a promotion takes effect immediately.
"""

from __future__ import annotations

import logging
import os
import time
from typing import Any

import jwt

from rallypoint.auth.roles import Role, parse_role
from rallypoint.errors import Forbidden
from rallypoint.models.user import Principal, User

logger = logging.getLogger(__name__)

DEFAULT_SECRET = "test-secret-key-do-not-use"


class TokenExpiredError(Exception):
    """Raised when a JWT token has expired."""


class TokenInvalidError(Exception):
    """Raised when a JWT token is invalid."""


def _secret(secret: str | None) -> str:
    return secret or os.environ.get("RALLYPOINT_JWT_SECRET", DEFAULT_SECRET)


def create_token(
    user_id: str,
    role: Role | str,
    *,
    managed_region_id: str | None = None,
    secret: str | None = None,
    exp_minutes: int = 60 * 24,
) -> str:
    """Create a signed token for a user."""
    now = int(time.time())
    payload = {
        "sub": user_id,
        "role": str(role),
        "managed_region_id": managed_region_id,
        "exp": now + (exp_minutes * 60),
    }
    return jwt.encode(payload, _secret(secret), algorithm="HS256")


def verify_token(token: str, secret: str | None = None) -> dict[str, Any]:
    """Verify and decode a JWT token."""
    try:
        return jwt.decode(token, _secret(secret), algorithms=["HS256"])
    except jwt.ExpiredSignatureError as e:
        logger.warning("Token expired: %s", e)
        raise TokenExpiredError("Token has expired") from e
    except jwt.InvalidTokenError as e:
        logger.warning("Invalid token: %s", e)
        raise TokenInvalidError("Token is invalid") from e


def principal_from_token(token: str, secret: str | None = None) -> Principal:
    """Decode a token straight into a principal, without touching the store."""
    payload = verify_token(token, secret)
    user_id = payload.get("sub")
    if not user_id:
        raise TokenInvalidError("Token missing user ID")
    try:
        role = parse_role(payload.get("role") or Role.ACTIVIST)
    except ValueError as e:
        raise TokenInvalidError("Token carries an unknown role") from e
    return Principal(id=user_id, role=role, managed_region_id=payload.get("managed_region_id"))


def issue_token_for(
    user: User,
    membership_count: int,
    *,
    secret: str | None = None,
    exp_minutes: int = 60 * 24,
) -> str:
    """Issue a token, refusing Activists whose join request is still pending."""
    if user.role == Role.ACTIVIST and membership_count == 0:
        raise Forbidden("Your join request is still pending approval.")
    return create_token(
        user.id,
        user.role,
        managed_region_id=user.managed_region_id,
        secret=secret,
        exp_minutes=exp_minutes,
    )
