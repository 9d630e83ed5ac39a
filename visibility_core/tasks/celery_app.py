from celery import Celery
from celery.schedules import crontab
from celery.signals import worker_process_init

from visibility_core.core.config import settings, validate_settings_for_production
from visibility_core.core.logging import setup_logging
from visibility_core.core.sentry import init_sentry

celery_app = Celery(
    "visibility_core",
    broker=settings.redis_url,
    backend=settings.redis_url,
)

celery_app.conf.update(
    task_serializer="json",
    accept_content=["json"],
    result_serializer="json",
    timezone="UTC",
    enable_utc=True,
    task_track_started=True,
    task_acks_late=True,  # redelivered runs are absorbed by the idempotent trigger
    worker_prefetch_multiplier=1,
    broker_connection_retry_on_startup=True,
)

# Celery Beat schedule: automation dispatcher runs hourly,
# re-triggering entities whose next_run_at has passed.
celery_app.conf.beat_schedule = {
    "dispatch-due-pipelines": {
        "task": "dispatch_due_pipelines",
        "schedule": crontab(minute=0),  # every hour
    },
}

celery_app.conf.include = [
    "visibility_core.tasks.pipeline_tasks",
]


@worker_process_init.connect
def _init_worker(**kwargs) -> None:
    setup_logging()
    init_sentry()
    if settings.app_env != "test":
        validate_settings_for_production()
