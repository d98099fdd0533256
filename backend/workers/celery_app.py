from celery import Celery
from celery.schedules import schedule
from kombu import Queue

from eventhooks.core.config import settings

celery_app = Celery(
    "eventhooks",
    broker=settings.cache_redis_url,
    backend=settings.cache_redis_url,
)

celery_app.conf.update(
    task_serializer="json",
    accept_content=["json"],
    result_serializer="json",
    timezone="UTC",
    enable_utc=True,
    task_default_queue="webhooks",
    task_queues=(
        Queue("webhooks"),
        Queue("scheduler"),
    ),
    task_routes={
        "workers.tasks.dispatch_webhook_event": {"queue": "webhooks"},
        "workers.tasks.process_due_webhook_retries": {"queue": "scheduler"},
        "workers.tasks.worker_heartbeat": {"queue": "scheduler"},
    },
    beat_schedule={
        "webhook-retry-sweep": {
            "task": "workers.tasks.process_due_webhook_retries",
            "schedule": schedule(settings.webhook_retry_sweep_interval_seconds),
            "options": {"queue": "scheduler"},
        },
        "worker-heartbeat-every-15s": {
            "task": "workers.tasks.worker_heartbeat",
            "schedule": schedule(15.0),
            "options": {"queue": "scheduler"},
        },
    },
)

celery_app.autodiscover_tasks(["workers"])
