"""Service layer for the ClinicOps API."""

from clinicops.services.gateway import ReadGateway, WriteGateway
from clinicops.services.notifications import (
    AppointmentCreatedEvent,
    NotificationHandoff,
    NotificationPort,
    get_notification_port,
)
from clinicops.services.policy import Action, authorize, can_perform
from clinicops.services.records import Conflict, RecordStore
from clinicops.services.scope import ScopeHandle, resolve
from clinicops.services.tokens import TokenClaims, issue_token, verify_token

__all__ = [
    "Action",
    "AppointmentCreatedEvent",
    "Conflict",
    "NotificationHandoff",
    "NotificationPort",
    "ReadGateway",
    "RecordStore",
    "ScopeHandle",
    "TokenClaims",
    "WriteGateway",
    "authorize",
    "can_perform",
    "get_notification_port",
    "issue_token",
    "resolve",
    "verify_token",
]
