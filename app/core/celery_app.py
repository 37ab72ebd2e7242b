"""
Celery application configuration for background task processing.

CRITICAL: This module initializes the Celery app with Redis broker and wires
the rule engine tasks: history ingestion, per-message rule runs and the
delayed-action sweep.
"""

from celery import Celery
from celery.schedules import crontab
from kombu import Queue

from app.core.config import settings


# Initialize Celery app
celery_app = Celery(
    "inbox_zero",
    broker=settings.CELERY_BROKER_URL,
    backend=settings.CELERY_RESULT_BACKEND,
    include=[
        "app.tasks.ingest",
        "app.tasks.rules",
        "app.tasks.scheduled",
    ]
)


# Celery Configuration
celery_app.conf.update(
    # Serialization (JSON only for security)
    task_serializer="json",
    accept_content=["json"],
    result_serializer="json",
    timezone="UTC",
    enable_utc=True,

    # Task execution settings
    task_acks_late=True,  # Acknowledge after task completes
    task_reject_on_worker_lost=True,  # Requeue if worker crashes
    task_track_started=True,

    # Default limits; LLM calls dominate rule runs
    task_time_limit=120,
    task_soft_time_limit=110,

    task_annotations={
        "app.tasks.ingest.process_gmail_history": {
            "time_limit": 90,
            "soft_time_limit": 80,
        },
        "app.tasks.rules.run_rules_for_message": {
            "time_limit": 180,  # several LLM round trips per message
            "soft_time_limit": 170,
        },
        "app.tasks.scheduled.process_due_scheduled_actions": {
            "time_limit": 300,
            "soft_time_limit": 290,
        },
    },

    # Retry settings (exponential backoff)
    task_default_retry_delay=60,
    task_max_retries=3,

    # Result backend settings
    result_expires=3600,

    # Worker settings
    worker_prefetch_multiplier=4,
    worker_max_tasks_per_child=1000,  # Restart worker after 1000 tasks (memory)

    # Queue settings
    task_queues=(
        Queue("default", routing_key="task.#"),
        Queue("priority", routing_key="priority.#"),
    ),
    task_default_queue="default",
    task_default_exchange="tasks",
    task_default_exchange_type="topic",
    task_default_routing_key="task.default",
)


# Celery Beat Schedule (periodic tasks)
celery_app.conf.beat_schedule = {
    # Execute delayed actions that are due
    "process-due-scheduled-actions": {
        "task": "app.tasks.scheduled.process_due_scheduled_actions",
        "schedule": crontab(minute="*"),  # Every minute
        "options": {"queue": "priority"},
    },

    # Renew Gmail watches expiring within a day (watches last 7 days)
    "renew-gmail-watches": {
        "task": "app.tasks.ingest.renew_expiring_gmail_watches",
        "schedule": crontab(hour="3", minute="0"),  # Daily at 3 AM
        "options": {"queue": "priority"},
    },
}


# Task routing
celery_app.conf.task_routes = {
    "app.tasks.ingest.renew_expiring_gmail_watches": {"queue": "priority"},
    "app.tasks.scheduled.process_due_scheduled_actions": {"queue": "priority"},
    "app.tasks.ingest.process_gmail_history": {"queue": "default"},
    "app.tasks.rules.run_rules_for_message": {"queue": "default"},
    "app.tasks.scheduled.execute_scheduled_action_task": {"queue": "default"},
}


# Logging configuration
celery_app.conf.worker_hijack_root_logger = False  # Don't override logging config
celery_app.conf.worker_log_format = "[%(asctime)s: %(levelname)s/%(processName)s] %(message)s"
celery_app.conf.worker_task_log_format = (
    "[%(asctime)s: %(levelname)s/%(processName)s] "
    "[%(task_name)s(%(task_id)s)] %(message)s"
)


if __name__ == "__main__":
    celery_app.start()
