"""Signed bearer credentials carrying tenant, user and role claims."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any
from uuid import UUID

import jwt

from clinicops.core.config import settings
from clinicops.models import Role, User

logger = logging.getLogger(__name__)

ALGORITHM = "HS256"
_REQUIRED_CLAIMS = ("exp", "iat", "iss", "user_id", "tenant_id", "role", "username")


@dataclass(frozen=True)
class TokenClaims:
    """Verified, read-only claims extracted from a bearer token."""

    user_id: UUID
    tenant_id: UUID
    role: Role
    username: str
    expires_at: datetime


def issue_token(user: User, *, now: datetime | None = None) -> str:
    """Return a signed token for ``user`` valid for the configured window."""

    issued_at = now or datetime.now(timezone.utc)
    payload: dict[str, Any] = {
        "sub": str(user.id),
        "user_id": str(user.id),
        "tenant_id": str(user.tenant_id),
        "role": Role(user.role).value,
        "username": user.username,
        "iss": settings.jwt_issuer,
        "iat": issued_at,
        "exp": issued_at + timedelta(hours=settings.token_ttl_hours),
    }
    return jwt.encode(payload, settings.jwt_secret, algorithm=ALGORITHM)


def verify_token(token: str) -> TokenClaims | None:
    """Verify ``token`` and return its claims, or ``None`` when it is invalid.

    Signature, issuer, expiry and the shape of every custom claim are
    checked. Callers only ever learn that a token is invalid, not why.
    """

    try:
        payload = jwt.decode(
            token,
            settings.jwt_secret,
            algorithms=[ALGORITHM],
            issuer=settings.jwt_issuer,
            options={"require": list(_REQUIRED_CLAIMS)},
        )
    except jwt.PyJWTError as exc:
        logger.debug("rejected bearer token", extra={"reason": type(exc).__name__})
        return None

    try:
        return TokenClaims(
            user_id=UUID(str(payload["user_id"])),
            tenant_id=UUID(str(payload["tenant_id"])),
            role=Role(payload["role"]),
            username=str(payload["username"]),
            expires_at=datetime.fromtimestamp(int(payload["exp"]), tz=timezone.utc),
        )
    except (KeyError, TypeError, ValueError):
        logger.debug("rejected bearer token", extra={"reason": "malformed claims"})
        return None
