from celery import Celery
from kombu import Queue

from app.platform.config import settings


def create_celery_app() -> Celery:
    """
    Create and configure the Celery application.

    Queue Structure:
    - scan.run: claims jobs from the work queue and runs them (one scan per task)
    - scan.maintenance: stale job sweep and retention cleanup

    The database work queue stays the source of truth; Celery only decides
    when a worker should go and claim something.
    """
    celery_app = Celery(
        "a11y_audit_engine",
        broker=settings.CELERY_BROKER_URL,
        backend=settings.CELERY_RESULT_BACKEND,
    )

    # Task serialization
    celery_app.conf.update(
        task_serializer=settings.CELERY_TASK_SERIALIZER,
        result_serializer=settings.CELERY_RESULT_SERIALIZER,
        accept_content=[settings.CELERY_ACCEPT_CONTENT],
        timezone="UTC",
        enable_utc=True,
        task_track_started=settings.CELERY_TASK_TRACK_STARTED,
        task_time_limit=settings.CELERY_TASK_TIME_LIMIT,

        # Result settings
        result_expires=3600,  # Results expire after 1 hour

        task_routes={
            "app.features.scan.workers.tasks.drain_scan_queue": {"queue": "scan.run"},
            "app.features.scan.workers.tasks.requeue_stale_jobs": {"queue": "scan.maintenance"},
            "app.features.scan.workers.tasks.cleanup_finished_jobs": {"queue": "scan.maintenance"},
        },

        # Define queues
        task_queues=(
            Queue("default"),
            Queue("scan.run"),
            Queue("scan.maintenance"),
        ),

        # Default queue
        task_default_queue="default",

        # One scan at a time per worker process
        worker_prefetch_multiplier=1,

        # Retry settings
        task_acks_late=True,  # Acknowledge after task completes
        task_reject_on_worker_lost=True,  # Requeue if worker dies

        # Celery Beat schedule for periodic tasks
        beat_schedule={
            "drain-scan-queue": {
                "task": "app.features.scan.workers.tasks.drain_scan_queue",
                "schedule": settings.POLL_INTERVAL_SECONDS,
            },
            "requeue-stale-jobs": {
                "task": "app.features.scan.workers.tasks.requeue_stale_jobs",
                "schedule": 300.0,  # every 5 minutes
            },
            "cleanup-finished-jobs": {
                "task": "app.features.scan.workers.tasks.cleanup_finished_jobs",
                "schedule": 86400.0,  # daily
            },
        },
    )

    # Auto-discover tasks in the workers module
    celery_app.autodiscover_tasks(["app.features.scan.workers"])

    return celery_app


# Global Celery app instance
celery_app = create_celery_app()
