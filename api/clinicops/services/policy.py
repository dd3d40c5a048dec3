"""Role/action permission table."""

from __future__ import annotations

import enum
import logging
from collections.abc import Mapping
from typing import TYPE_CHECKING, Final

from clinicops.core.errors import Forbidden
from clinicops.models import Role

if TYPE_CHECKING:
    from clinicops.services.scope import ScopeHandle

logger = logging.getLogger(__name__)


class Action(str, enum.Enum):
    """Operations subject to authorization."""

    CREATE_PATIENT = "CreatePatient"
    CREATE_APPOINTMENT = "CreateAppointment"
    LIST_PATIENTS = "ListPatients"
    VIEW_PATIENT = "ViewPatient"
    LIST_APPOINTMENTS = "ListAppointments"
    CREATE_USER = "CreateUser"
    ASSIGN_ROLE = "AssignRole"
    ASSOCIATE_USER_BRANCH = "AssociateUserBranch"
    LIST_USERS = "ListUsers"


_READ_ACTIONS = frozenset(
    {Action.LIST_PATIENTS, Action.VIEW_PATIENT, Action.LIST_APPOINTMENTS}
)
_WRITE_ACTIONS = frozenset({Action.CREATE_PATIENT, Action.CREATE_APPOINTMENT})
_MANAGEMENT_ACTIONS = frozenset(
    {
        Action.CREATE_USER,
        Action.ASSIGN_ROLE,
        Action.ASSOCIATE_USER_BRANCH,
        Action.LIST_USERS,
    }
)

# Each role lists its actions explicitly; anything missing is denied.
PERMISSIONS: Final[Mapping[Role, frozenset[Action]]] = {
    Role.ADMIN: _READ_ACTIONS | _WRITE_ACTIONS | _MANAGEMENT_ACTIONS,
    Role.USER: _READ_ACTIONS | _WRITE_ACTIONS,
    Role.VIEWER: _READ_ACTIONS,
}


def can_perform(role: Role, action: Action) -> bool:
    """Return whether ``role`` may perform ``action``."""

    return action in PERMISSIONS.get(role, frozenset())


def authorize(scope: ScopeHandle, action: Action) -> None:
    """Raise :class:`Forbidden` unless the scope's role permits ``action``."""

    if can_perform(scope.role, action):
        return
    logger.info(
        "action denied",
        extra={"action": action.value, "role": scope.role.value, "actor_id": str(scope.user_id)},
    )
    raise Forbidden(f"Role {scope.role.value} is not permitted to perform {action.value}")
