"""Error taxonomy shared by the service layer and the HTTP surface."""

from __future__ import annotations

import enum
from typing import Any, ClassVar


class ConflictKind(str, enum.Enum):
    """Which uniqueness constraint a rejected write collided with."""

    DUPLICATE_PHONE = "DuplicatePhone"
    DUPLICATE_SLOT = "DuplicateSlot"
    DUPLICATE_USERNAME = "DuplicateUsername"
    DUPLICATE_BRANCH_LINK = "DuplicateBranchLink"


class ClinicOpsError(Exception):
    """Base class for errors that map onto a client-facing outcome."""

    kind: ClassVar[str] = "Error"
    status_code: ClassVar[int] = 500

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message

    def as_payload(self) -> dict[str, Any]:
        return {"kind": self.kind, "detail": self.message}


class Unauthenticated(ClinicOpsError):
    kind = "Unauthenticated"
    status_code = 401


class Forbidden(ClinicOpsError):
    kind = "Forbidden"
    status_code = 403


class InvalidInput(ClinicOpsError):
    kind = "InvalidInput"
    status_code = 400


class NotFound(ClinicOpsError):
    kind = "NotFound"
    status_code = 404


class ConflictError(ClinicOpsError):
    kind = "Conflict"
    status_code = 409

    def __init__(self, conflict: ConflictKind, message: str) -> None:
        super().__init__(message)
        self.conflict = conflict

    def as_payload(self) -> dict[str, Any]:
        payload = super().as_payload()
        payload["conflict"] = self.conflict.value
        return payload


__all__ = [
    "ClinicOpsError",
    "ConflictError",
    "ConflictKind",
    "Forbidden",
    "InvalidInput",
    "NotFound",
    "Unauthenticated",
]
