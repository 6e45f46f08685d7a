"""
Celery application configuration.

Workers run the periodic renewal scan; the beat schedule is registered once
the app is finalized.
"""

from typing import Any

import structlog
from celery import Celery
from kombu import Queue

from subledger.settings import settings

logger = structlog.get_logger(__name__)

# Create Celery application
celery_app = Celery(
    "subledger",
    broker=settings.celery.broker_url,
    backend=settings.celery.result_backend,
    include=["subledger.tasks"],
)

# Configure Celery settings
celery_app.conf.update(
    # Task routing
    task_routes={
        "subscriptions.*": {"queue": "billing"},
    },
    # Queue configuration
    task_default_queue="default",
    task_queues=(
        Queue("default", routing_key="default"),
        Queue("billing", routing_key="billing"),
    ),
    # Task execution settings
    task_serializer="json",
    accept_content=["json"],
    result_serializer="json",
    timezone="UTC",
    enable_utc=True,
    # Task result settings
    result_expires=3600,  # 1 hour
    task_track_started=True,
    task_time_limit=900,  # 15 minutes
    task_soft_time_limit=840,
    # Worker settings
    worker_prefetch_multiplier=1,
    task_acks_late=True,
    worker_max_tasks_per_child=1000,
    # Monitoring
    worker_send_task_events=True,
    task_send_sent_event=True,
)


@celery_app.on_after_finalize.connect  # type: ignore[misc]
def setup_periodic_tasks(sender: Any, **kwargs: Any) -> None:
    """Schedule the renewal scan."""
    from subledger.tasks import run_renewal_scan_task

    interval = float(settings.celery.renewal_scan_interval_seconds)
    sender.add_periodic_task(
        interval,
        run_renewal_scan_task.s(),
        name="subscriptions-renewal-scan",
    )
    logger.info("celery.periodic_tasks_configured", renewal_scan_interval=interval)
