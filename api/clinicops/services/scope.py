"""Tenant scope derived from verified credentials."""

from __future__ import annotations

from dataclasses import dataclass
from uuid import UUID

from clinicops.models import Role
from clinicops.services.tokens import TokenClaims


@dataclass(frozen=True)
class ScopeHandle:
    """The caller's tenant, identity and role for the current request.

    Every scoped read filters on ``tenant_id`` and every scoped write stamps
    it onto the new row. It is only ever built from verified claims.
    """

    tenant_id: UUID
    user_id: UUID
    role: Role
    username: str


def resolve(claims: TokenClaims) -> ScopeHandle:
    return ScopeHandle(
        tenant_id=claims.tenant_id,
        user_id=claims.user_id,
        role=claims.role,
        username=claims.username,
    )
