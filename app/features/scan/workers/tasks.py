import os
import socket
from typing import Any, Dict

from app.features.scan.services.orchestration.scan_coordinator import ScanCoordinator
from app.features.scan.services.progress.progress_tracker import progress_tracker
from app.features.scan.services.queue.work_queue import WorkQueue
from app.platform.celery_app import celery_app
from app.platform.config import settings
from app.platform.logger import get_logger

logger = get_logger(__name__)


def default_worker_id(prefix: str = "worker") -> str:
    if settings.WORKER_ID:
        return settings.WORKER_ID
    return f"{prefix}-{socket.gethostname()}-{os.getpid()}"


@celery_app.task(
    bind=True,
    name="app.features.scan.workers.tasks.drain_scan_queue",
    max_retries=0,
    ignore_result=True,
)
def drain_scan_queue(self, max_jobs: int = 1) -> Dict[str, Any]:
    """
    Claim and run up to max_jobs scans from the work queue.

    Triggered on enqueue and by beat. Retries are owned by the work queue
    (attempts / max_attempts), not by Celery, so the task never retries itself.
    """
    worker_id = default_worker_id("celery")
    queue = WorkQueue()
    coordinator = ScanCoordinator(queue=queue)

    processed = 0
    while processed < max_jobs:
        job = queue.claim(worker_id)
        if job is None:
            break
        status = coordinator.run(job)
        processed += 1
        logger.info(f"[{job.job_id}] Finished with scan status {status.value}")

    queue.heartbeat(worker_id, processed=processed)
    if processed:
        logger.info(f"{worker_id} drained {processed} job(s)")
    return {"worker_id": worker_id, "processed": processed}


@celery_app.task(bind=True, name="app.features.scan.workers.tasks.requeue_stale_jobs", max_retries=0)
def requeue_stale_jobs(self, timeout_seconds: int = None) -> Dict[str, Any]:
    """Liveness sweep: jobs held by a worker that stopped responding go back to the queue."""
    recovered = WorkQueue().requeue_stale(timeout_seconds)
    return {"recovered": recovered}


@celery_app.task(bind=True, name="app.features.scan.workers.tasks.cleanup_finished_jobs", max_retries=0)
def cleanup_finished_jobs(self, older_than_days: int = None) -> Dict[str, Any]:
    deleted = WorkQueue().cleanup_finished(older_than_days)
    forgotten = progress_tracker.cleanup()
    return {"deleted_jobs": deleted, "forgotten_progress": forgotten}
