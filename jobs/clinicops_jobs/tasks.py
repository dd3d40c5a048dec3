from __future__ import annotations

from datetime import datetime
from typing import Any
from uuid import UUID

from celery.utils.log import get_task_logger

from clinicops_jobs.celery_app import celery_app

logger = get_task_logger(__name__)

EVENT_FIELDS = (
    "appointment_id",
    "tenant_id",
    "patient_id",
    "branch_id",
    "start_at",
    "created_at",
)
_ID_FIELDS = ("appointment_id", "tenant_id", "patient_id", "branch_id")
_TIME_FIELDS = ("start_at", "created_at")


def parse_event(payload: dict[str, Any]) -> dict[str, Any]:
    """Validate an appointment-created payload and return typed values.

    Raises ``ValueError`` naming the first missing or malformed field.
    """

    missing = [field for field in EVENT_FIELDS if not payload.get(field)]
    if missing:
        raise ValueError(f"missing fields: {', '.join(missing)}")

    parsed: dict[str, Any] = {}
    for field in _ID_FIELDS:
        try:
            parsed[field] = UUID(str(payload[field]))
        except ValueError:
            raise ValueError(f"malformed {field}") from None
    for field in _TIME_FIELDS:
        try:
            parsed[field] = datetime.fromisoformat(str(payload[field]))
        except ValueError:
            raise ValueError(f"malformed {field}") from None
    return parsed


@celery_app.task(name="jobs.appointment_created")
def appointment_created(payload: dict[str, Any]) -> dict[str, Any]:
    """Consume an appointment-created event published by the API."""

    try:
        event = parse_event(payload)
    except ValueError as exc:
        # Redelivering a malformed event cannot fix it.
        logger.warning("Discarding appointment event: %s", exc)
        return {"status": "rejected", "reason": str(exc)}

    logger.info(
        "AppointmentCreated appointment=%s tenant=%s patient=%s branch=%s start_at=%s",
        event["appointment_id"],
        event["tenant_id"],
        event["patient_id"],
        event["branch_id"],
        event["start_at"].isoformat(),
    )
    return {
        "status": "processed",
        "appointment_id": str(event["appointment_id"]),
        "tenant_id": str(event["tenant_id"]),
    }
