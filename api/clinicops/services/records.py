"""Tenant-scoped persistence for clinic records.

Every query issued through :class:`RecordStore` is filtered on the scope's
tenant and every row it creates is stamped with that tenant. Creates rely on
the database's unique constraints instead of read-then-insert checks, so two
racing writers for the same key end with exactly one row and one
:class:`Conflict`.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Any, TypeVar
from uuid import UUID

from sqlalchemy import Select, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from clinicops.core.errors import ConflictKind
from clinicops.models import Appointment, Branch, Patient, Role, User, UserBranch
from clinicops.services.scope import ScopeHandle

logger = logging.getLogger(__name__)

UNIQUE_VIOLATION = "23505"

RowT = TypeVar("RowT", Patient, Appointment, User, UserBranch)


@dataclass(frozen=True)
class Conflict:
    """A create rejected by a uniqueness constraint."""

    kind: ConflictKind


@dataclass(frozen=True)
class PatientDraft:
    first_name: str
    last_name: str
    phone_number: str
    primary_branch_id: UUID | None = None


@dataclass(frozen=True)
class AppointmentDraft:
    patient_id: UUID
    branch_id: UUID
    start_at: datetime


@dataclass(frozen=True)
class UserDraft:
    username: str
    password_hash: str
    role: Role


def _is_unique_violation(exc: IntegrityError) -> bool:
    orig = exc.orig
    code = getattr(orig, "pgcode", None) or getattr(orig, "sqlstate", None)
    if code is not None:
        return code == UNIQUE_VIOLATION
    return "UNIQUE constraint failed" in str(orig)


def _constraint_name(exc: IntegrityError) -> str | None:
    diag = getattr(exc.orig, "diag", None)
    return getattr(diag, "constraint_name", None)


def find_login_candidates(session: Session, username: str) -> list[User]:
    """Return every user named ``username`` across all tenants.

    Login happens before any tenant is known, so this is the one read that
    is not filtered by a :class:`ScopeHandle`. Nothing else may bypass
    :class:`RecordStore`.
    """

    stmt = select(User).where(User.username == username).order_by(User.created_at, User.id)
    return list(session.execute(stmt).scalars().all())


class RecordStore:
    """Transactional, tenant-filtered access to scoped entities."""

    def __init__(self, session: Session, scope: ScopeHandle) -> None:
        if not isinstance(scope, ScopeHandle):
            raise TypeError("RecordStore requires a ScopeHandle")
        self._session = session
        self.scope = scope

    def _scoped(self, model: Any) -> Select[Any]:
        return select(model).where(model.tenant_id == self.scope.tenant_id)

    def _get(self, model: Any, record_id: UUID) -> Any:
        stmt = self._scoped(model).where(model.id == record_id)
        return self._session.execute(stmt).scalar_one_or_none()

    def _insert(self, row: RowT, on_duplicate: ConflictKind) -> RowT | Conflict:
        """Insert and commit ``row`` in one transaction, mapping duplicates to a Conflict."""

        self._session.add(row)
        try:
            self._session.flush()
            self._session.commit()
        except IntegrityError as exc:
            self._session.rollback()
            if not _is_unique_violation(exc):
                raise
            logger.info(
                "uniqueness conflict",
                extra={
                    "conflict": on_duplicate.value,
                    "constraint": _constraint_name(exc),
                    "table": row.__tablename__,
                },
            )
            return Conflict(on_duplicate)
        return row

    # Lookups

    def get_branch(self, branch_id: UUID) -> Branch | None:
        return self._get(Branch, branch_id)

    def get_patient(self, patient_id: UUID) -> Patient | None:
        return self._get(Patient, patient_id)

    def get_user(self, user_id: UUID) -> User | None:
        return self._get(User, user_id)

    # Listings

    def list_patients(self, branch_id: UUID | None = None) -> list[Patient]:
        """Return the tenant's patients, newest first."""

        stmt = self._scoped(Patient)
        if branch_id is not None:
            stmt = stmt.where(Patient.primary_branch_id == branch_id)
        stmt = stmt.order_by(Patient.created_at.desc(), Patient.id.desc())
        return list(self._session.execute(stmt).scalars().all())

    def list_appointments(self, branch_id: UUID | None = None) -> list[Appointment]:
        """Return the tenant's appointments, newest first."""

        stmt = self._scoped(Appointment)
        if branch_id is not None:
            stmt = stmt.where(Appointment.branch_id == branch_id)
        stmt = stmt.order_by(Appointment.created_at.desc(), Appointment.id.desc())
        return list(self._session.execute(stmt).scalars().all())

    def list_users(self) -> list[User]:
        stmt = self._scoped(User).order_by(User.username)
        return list(self._session.execute(stmt).scalars().all())

    def branch_ids_for(self, user: User) -> list[UUID]:
        stmt = (
            select(UserBranch.branch_id)
            .where(
                UserBranch.tenant_id == self.scope.tenant_id,
                UserBranch.user_id == user.id,
            )
            .order_by(UserBranch.branch_id)
        )
        return list(self._session.execute(stmt).scalars().all())

    # Writes

    def create_patient(self, draft: PatientDraft) -> Patient | Conflict:
        patient = Patient(
            tenant_id=self.scope.tenant_id,
            first_name=draft.first_name,
            last_name=draft.last_name,
            phone_number=draft.phone_number,
            primary_branch_id=draft.primary_branch_id,
        )
        return self._insert(patient, ConflictKind.DUPLICATE_PHONE)

    def create_appointment(self, draft: AppointmentDraft) -> Appointment | Conflict:
        appointment = Appointment(
            tenant_id=self.scope.tenant_id,
            patient_id=draft.patient_id,
            branch_id=draft.branch_id,
            start_at=draft.start_at,
        )
        return self._insert(appointment, ConflictKind.DUPLICATE_SLOT)

    def create_user(self, draft: UserDraft) -> User | Conflict:
        user = User(
            tenant_id=self.scope.tenant_id,
            username=draft.username,
            password_hash=draft.password_hash,
            role=draft.role,
        )
        return self._insert(user, ConflictKind.DUPLICATE_USERNAME)

    def set_role(self, user: User, role: Role) -> User:
        if user.tenant_id != self.scope.tenant_id:
            raise ValueError("user belongs to another tenant")
        user.role = role
        self._session.flush()
        self._session.commit()
        return user

    def link_branch(self, user: User, branch: Branch) -> UserBranch | Conflict:
        if user.tenant_id != self.scope.tenant_id or branch.tenant_id != self.scope.tenant_id:
            raise ValueError("user and branch must belong to the caller's tenant")
        # A link already in the identity map would fail the flush before the
        # database could report the duplicate.
        if self._session.get(UserBranch, (user.id, branch.id)) is not None:
            return Conflict(ConflictKind.DUPLICATE_BRANCH_LINK)
        link = UserBranch(
            tenant_id=self.scope.tenant_id,
            user_id=user.id,
            branch_id=branch.id,
        )
        return self._insert(link, ConflictKind.DUPLICATE_BRANCH_LINK)
