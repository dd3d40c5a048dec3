"""Username/password login."""

from __future__ import annotations

import logging
from uuid import UUID

from sqlalchemy.orm import Session

from clinicops.models import User
from clinicops.services.passwords import verify_password
from clinicops.services.records import find_login_candidates

logger = logging.getLogger(__name__)


def authenticate(
    session: Session,
    username: str,
    password: str,
    tenant_id: UUID | None = None,
) -> User | None:
    """Return the user whose credentials match, or ``None``.

    Usernames are only unique per tenant. When ``tenant_id`` is omitted the
    oldest account whose password matches wins.
    """

    candidates = find_login_candidates(session, username.strip())
    if tenant_id is not None:
        candidates = [user for user in candidates if user.tenant_id == tenant_id]

    for user in candidates:
        if verify_password(password, user.password_hash):
            return user

    logger.info("login rejected", extra={"candidates": len(candidates)})
    return None
