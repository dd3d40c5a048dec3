"""Role-gated entry points for reading and writing clinic records.

Writes follow one sequence: authorization, input validation, tenant-scoped
reference checks, the conflict-safe insert, then (for appointments) the
post-commit notification handoff. Nothing is written when an earlier step
fails.
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import NoReturn
from uuid import UUID

from sqlalchemy.orm import Session

from clinicops.core.errors import ConflictError, ConflictKind, InvalidInput, NotFound
from clinicops.models import Appointment, Patient, Role, User, UserBranch
from clinicops.services.notifications import AppointmentCreatedEvent, NotificationHandoff
from clinicops.services.passwords import hash_password
from clinicops.services.policy import Action, authorize
from clinicops.services.records import (
    AppointmentDraft,
    Conflict,
    PatientDraft,
    RecordStore,
    UserDraft,
)
from clinicops.services.scope import ScopeHandle

logger = logging.getLogger(__name__)

_CONFLICT_MESSAGES = {
    ConflictKind.DUPLICATE_PHONE: "A patient with this phone number already exists in this tenant.",
    ConflictKind.DUPLICATE_SLOT: "Duplicate appointment: same patient, branch, and time already exists.",
    ConflictKind.DUPLICATE_USERNAME: "A user with this username already exists in this tenant.",
}


def require_text(value: str | None, field: str) -> str:
    """Return ``value`` stripped of surrounding whitespace, rejecting blanks."""

    cleaned = (value or "").strip()
    if not cleaned:
        raise InvalidInput(f"{field} is required")
    return cleaned


def parse_role(value: str | None) -> Role:
    try:
        return Role(value)
    except ValueError:
        allowed = ", ".join(role.value for role in Role)
        raise InvalidInput(f"Role must be one of: {allowed}") from None


def ensure_utc(value: datetime) -> datetime:
    """Coerce a datetime into UTC timezone-aware form."""

    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def _raise_conflict(conflict: Conflict) -> NoReturn:
    raise ConflictError(conflict.kind, _CONFLICT_MESSAGES[conflict.kind])


class ReadGateway:
    """Authorized, tenant-filtered reads."""

    def __init__(self, session: Session, scope: ScopeHandle) -> None:
        self.scope = scope
        self.store = RecordStore(session, scope)

    def list_patients(self, branch_id: UUID | None = None) -> list[Patient]:
        authorize(self.scope, Action.LIST_PATIENTS)
        return self.store.list_patients(branch_id)

    def get_patient(self, patient_id: UUID) -> Patient:
        authorize(self.scope, Action.VIEW_PATIENT)
        patient = self.store.get_patient(patient_id)
        if patient is None:
            raise NotFound("Patient not found")
        return patient

    def list_appointments(self, branch_id: UUID | None = None) -> list[Appointment]:
        authorize(self.scope, Action.LIST_APPOINTMENTS)
        return self.store.list_appointments(branch_id)

    def list_users(self) -> list[tuple[User, list[UUID]]]:
        authorize(self.scope, Action.LIST_USERS)
        return [(user, self.store.branch_ids_for(user)) for user in self.store.list_users()]


class WriteGateway:
    """Orchestrates creates for the caller's tenant."""

    def __init__(
        self,
        session: Session,
        scope: ScopeHandle,
        notifications: NotificationHandoff | None = None,
    ) -> None:
        self.scope = scope
        self.store = RecordStore(session, scope)
        self._notifications = notifications

    def create_patient(
        self,
        *,
        first_name: str | None,
        last_name: str | None,
        phone_number: str | None,
        primary_branch_id: UUID | None = None,
    ) -> Patient:
        authorize(self.scope, Action.CREATE_PATIENT)

        draft = PatientDraft(
            first_name=require_text(first_name, "FirstName"),
            last_name=require_text(last_name, "LastName"),
            phone_number=require_text(phone_number, "PhoneNumber"),
            primary_branch_id=primary_branch_id,
        )
        if primary_branch_id is not None and self.store.get_branch(primary_branch_id) is None:
            raise NotFound("Branch not found")

        result = self.store.create_patient(draft)
        if isinstance(result, Conflict):
            _raise_conflict(result)
        logger.info(
            "patient created",
            extra={"patient_id": str(result.id), "actor_id": str(self.scope.user_id)},
        )
        return result

    def create_appointment(
        self,
        *,
        patient_id: UUID,
        branch_id: UUID,
        start_at: datetime,
    ) -> Appointment:
        authorize(self.scope, Action.CREATE_APPOINTMENT)

        if self.store.get_patient(patient_id) is None:
            raise NotFound("Patient not found")
        if self.store.get_branch(branch_id) is None:
            raise NotFound("Branch not found")

        draft = AppointmentDraft(
            patient_id=patient_id,
            branch_id=branch_id,
            start_at=ensure_utc(start_at),
        )
        result = self.store.create_appointment(draft)
        if isinstance(result, Conflict):
            _raise_conflict(result)

        logger.info(
            "appointment created",
            extra={"appointment_id": str(result.id), "actor_id": str(self.scope.user_id)},
        )
        if self._notifications is not None:
            self._notifications.submit(AppointmentCreatedEvent.from_appointment(result))
        return result

    def create_user(
        self,
        *,
        username: str | None,
        password: str | None,
        role: str | None,
    ) -> User:
        authorize(self.scope, Action.CREATE_USER)

        parsed_role = parse_role(role)
        draft = UserDraft(
            username=require_text(username, "Username"),
            password_hash=hash_password(require_text(password, "Password")),
            role=parsed_role,
        )
        result = self.store.create_user(draft)
        if isinstance(result, Conflict):
            _raise_conflict(result)
        logger.info(
            "user created",
            extra={"created_user_id": str(result.id), "role": parsed_role.value},
        )
        return result

    def assign_role(self, *, user_id: UUID, role: str | None) -> User:
        authorize(self.scope, Action.ASSIGN_ROLE)

        parsed_role = parse_role(role)
        user = self.store.get_user(user_id)
        if user is None:
            raise NotFound("User not found")
        updated = self.store.set_role(user, parsed_role)
        logger.info(
            "role assigned",
            extra={"target_user_id": str(user_id), "role": parsed_role.value},
        )
        return updated

    def associate_branch(self, *, user_id: UUID, branch_id: UUID) -> UserBranch:
        """Link a user to a branch. Repeating an existing link is a no-op."""

        authorize(self.scope, Action.ASSOCIATE_USER_BRANCH)

        user = self.store.get_user(user_id)
        if user is None:
            raise NotFound("User not found")
        branch = self.store.get_branch(branch_id)
        if branch is None:
            raise NotFound("Branch not found")

        result = self.store.link_branch(user, branch)
        if isinstance(result, Conflict):
            return UserBranch(tenant_id=self.scope.tenant_id, user_id=user_id, branch_id=branch_id)
        return result
