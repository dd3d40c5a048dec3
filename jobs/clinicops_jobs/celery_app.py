from __future__ import annotations

from celery import Celery

from clinicops_jobs.config import settings

celery_app = Celery(
    "clinicops",
    broker=settings.broker_url,
    backend=settings.result_backend,
    include=["clinicops_jobs.tasks"],
)

celery_app.conf.timezone = settings.timezone
celery_app.conf.broker_connection_retry_on_startup = True
# Events are delivered at least once: acknowledge only after the handler ran.
celery_app.conf.task_acks_late = True
celery_app.conf.task_reject_on_worker_lost = True
