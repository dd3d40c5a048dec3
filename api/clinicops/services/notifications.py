"""Post-commit fan-out of appointment events to the task bus."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Protocol
from uuid import UUID

from celery import Celery
from prometheus_client import Counter
from starlette.background import BackgroundTasks

from clinicops.core.config import settings
from clinicops.models import Appointment

logger = logging.getLogger(__name__)

APPOINTMENT_CREATED_TASK = "jobs.appointment_created"

NOTIFICATIONS_PUBLISHED = Counter(
    "clinicops_notifications_published_total",
    "Appointment events handed to the task bus.",
)
NOTIFICATION_FAILURES = Counter(
    "clinicops_notification_failures_total",
    "Appointment events that could not be handed to the task bus.",
)


def _as_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


@dataclass(frozen=True)
class AppointmentCreatedEvent:
    appointment_id: UUID
    tenant_id: UUID
    patient_id: UUID
    branch_id: UUID
    start_at: datetime
    created_at: datetime

    @classmethod
    def from_appointment(cls, appointment: Appointment) -> AppointmentCreatedEvent:
        return cls(
            appointment_id=appointment.id,
            tenant_id=appointment.tenant_id,
            patient_id=appointment.patient_id,
            branch_id=appointment.branch_id,
            start_at=_as_utc(appointment.start_at),
            created_at=_as_utc(appointment.created_at),
        )

    def as_payload(self) -> dict[str, str]:
        return {
            "appointment_id": str(self.appointment_id),
            "tenant_id": str(self.tenant_id),
            "patient_id": str(self.patient_id),
            "branch_id": str(self.branch_id),
            "start_at": self.start_at.isoformat(),
            "created_at": self.created_at.isoformat(),
        }


class NotificationPort(Protocol):
    def publish(self, event: AppointmentCreatedEvent) -> None:
        ...


class CeleryNotificationPort:
    """Send events to the worker by task name; the API never imports worker code."""

    def __init__(self, app: Celery | None = None) -> None:
        self._app = app or Celery("clinicops", broker=settings.broker_url)

    def publish(self, event: AppointmentCreatedEvent) -> None:
        self._app.send_task(
            APPOINTMENT_CREATED_TASK,
            kwargs={"payload": event.as_payload()},
            retry=True,
            retry_policy={"max_retries": 3, "interval_start": 0, "interval_step": 0.5},
        )


class DisabledNotificationPort:
    def publish(self, event: AppointmentCreatedEvent) -> None:
        logger.debug(
            "notifications disabled, dropping event",
            extra={"appointment_id": str(event.appointment_id)},
        )


def publish_safely(port: NotificationPort, event: AppointmentCreatedEvent) -> bool:
    """Publish ``event``; failures are logged and counted, never raised."""

    try:
        port.publish(event)
    except Exception:
        NOTIFICATION_FAILURES.inc()
        logger.exception(
            "failed to publish appointment event",
            extra={
                "appointment_id": str(event.appointment_id),
                "event_tenant_id": str(event.tenant_id),
            },
        )
        return False
    NOTIFICATIONS_PUBLISHED.inc()
    logger.info(
        "published appointment event",
        extra={
            "appointment_id": str(event.appointment_id),
            "event_tenant_id": str(event.tenant_id),
        },
    )
    return True


class NotificationHandoff:
    """Decouple publication from the write that produced the event.

    With a ``BackgroundTasks`` queue the event is published after the
    response has been sent; otherwise it is published inline.
    """

    def __init__(
        self, port: NotificationPort, background: BackgroundTasks | None = None
    ) -> None:
        self._port = port
        self._background = background

    def submit(self, event: AppointmentCreatedEvent) -> None:
        if self._background is not None:
            self._background.add_task(publish_safely, self._port, event)
            return
        publish_safely(self._port, event)


_default_port: NotificationPort | None = None


def get_notification_port() -> NotificationPort:
    """Return the process-wide notification port."""

    global _default_port
    if _default_port is None:
        if settings.notifications_enabled:
            _default_port = CeleryNotificationPort()
        else:
            _default_port = DisabledNotificationPort()
    return _default_port


__all__ = [
    "APPOINTMENT_CREATED_TASK",
    "AppointmentCreatedEvent",
    "CeleryNotificationPort",
    "DisabledNotificationPort",
    "NotificationHandoff",
    "NotificationPort",
    "get_notification_port",
    "publish_safely",
]
