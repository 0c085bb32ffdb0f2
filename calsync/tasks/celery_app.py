"""Celery application configuration."""

import time

from celery import Celery
from celery.schedules import crontab
from celery.signals import task_postrun, task_prerun

from calsync.config import get_settings
from calsync.metrics import celery_task_duration_seconds, celery_task_total

settings = get_settings()

celery_app = Celery(
    "calsync",
    broker=settings.celery_broker_url,
    backend=settings.celery_result_backend,
)

celery_app.conf.update(
    task_serializer="json",
    accept_content=["json"],
    result_serializer="json",
    timezone="UTC",
    enable_utc=True,
    task_acks_late=True,
    task_reject_on_worker_lost=True,
    worker_prefetch_multiplier=1,
    task_default_queue="default",
    task_routes={
        "calsync.tasks.sync_tasks.sync_booking": {"queue": "sync"},
        "calsync.tasks.sync_tasks.remove_booking": {"queue": "sync"},
        "calsync.tasks.sync_tasks.*": {"queue": "default"},
    },
    beat_schedule={
        # CalDAV has no push: re-fetch every active CalDAV calendar
        "sync-caldav-integrations": {
            "task": "calsync.tasks.sync_tasks.sync_caldav_integrations",
            "schedule": settings.caldav_sync_interval_seconds,
        },
        # Google channels and Graph subscriptions expire within days
        "renew-push-channels": {
            "task": "calsync.tasks.sync_tasks.renew_push_channels",
            "schedule": crontab(minute=0),
        },
        # Receipts only need to outlive provider redelivery
        "purge-webhook-receipts": {
            "task": "calsync.tasks.sync_tasks.purge_webhook_receipts",
            "schedule": crontab(minute=30, hour=3),
        },
    },
)

celery_app.autodiscover_tasks(["calsync.tasks"], related_name="sync_tasks")

_task_started: dict[str, float] = {}


@task_prerun.connect
def _record_task_start(task_id=None, **kwargs):
    _task_started[task_id] = time.monotonic()


@task_postrun.connect
def _record_task_end(task_id=None, task=None, state=None, **kwargs):
    started = _task_started.pop(task_id, None)
    name = task.name if task is not None else "unknown"
    celery_task_total.labels(task_name=name, status=(state or "UNKNOWN").lower()).inc()
    if started is not None:
        celery_task_duration_seconds.labels(task_name=name).observe(time.monotonic() - started)
