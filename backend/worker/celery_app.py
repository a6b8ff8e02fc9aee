"""Celery application configuration.

This module sets up the Celery app with:
- Redis as broker and result backend
- Task routing to specialized queues
- Serialization and timezone settings
- Beat schedule for the scheduler tick and daily maintenance
- structlog-based logging in worker and beat processes
"""

from celery import Celery, signals
from celery.schedules import crontab

from app.config import get_settings
from core.logging_config import setup_logging

settings = get_settings()

# Create Celery app
celery_app = Celery(
    "email_schedule_engine",
    broker=settings.REDIS_URL,
    backend=settings.REDIS_URL,
)

# Configuration
celery_app.conf.update(
    # Serialization
    task_serializer="json",
    accept_content=["json"],
    result_serializer="json",

    # Timezone
    timezone="UTC",
    enable_utc=True,

    # Task routing
    task_routes={
        "worker.tasks.schedule_poller.*": {"queue": "scheduler"},
        "worker.tasks.*": {"queue": "default"},
    },

    # Default queue
    task_default_queue="default",

    # Result expiration (24 hours)
    result_expires=86400,

    # Task execution limits
    task_soft_time_limit=300,   # 5 min soft limit (raises SoftTimeLimitExceeded)
    task_time_limit=600,        # 10 min hard limit (kills the task)
    task_acks_late=True,        # Acknowledge after execution
    worker_prefetch_multiplier=1,  # One task at a time per worker process

    # Retry
    task_reject_on_worker_lost=True,
    task_acks_on_failure_or_timeout=True,

    # Beat schedule for periodic tasks
    beat_schedule={
        "poll-schedules": {
            "task": "worker.tasks.schedule_poller.poll_schedules",
            "schedule": crontab(minute="*/1"),  # Every minute
            "options": {"queue": "scheduler"},
        },
        "cleanup-old-executions": {
            "task": "worker.tasks.maintenance.cleanup_old_data",
            "schedule": crontab(hour=3, minute=0),  # Daily at 3 AM
            "options": {"queue": "default"},
        },
    },

    include=[
        "worker.tasks.schedule_poller",
        "worker.tasks.maintenance",
    ],
)


@signals.setup_logging.connect
def _configure_logging(**kwargs):
    """Use the application's structlog setup instead of Celery's own."""
    setup_logging()
