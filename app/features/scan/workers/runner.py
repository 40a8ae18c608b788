"""
Standalone queue worker.

    python -m app.features.scan.workers.runner [--worker-id ID] [--poll-interval SECONDS]

Polls the work queue, runs one scan at a time, and beats its heartbeat every
iteration. Idle polling backs off gradually up to the poll interval; store
errors back off faster, up to MAX_ERROR_BACKOFF. SIGTERM / SIGINT finish the
current scan and then exit.
"""
import argparse
import signal
import time
from typing import Callable, Optional

from app.features.scan.services.orchestration.scan_coordinator import ScanCoordinator
from app.features.scan.services.progress.progress_tracker import progress_tracker
from app.features.scan.services.queue.work_queue import WorkQueue
from app.features.scan.workers.tasks import default_worker_id
from app.platform.config import settings
from app.platform.exceptions import JobInfrastructureError
from app.platform.logger import get_logger

logger = get_logger(__name__)

MIN_IDLE_DELAY = 1.0
IDLE_BACKOFF_FACTOR = 1.2
ERROR_BACKOFF_FACTOR = 2.0
MAX_ERROR_BACKOFF = 10.0
DELAY_AFTER_SUCCESS = 0.1
DELAY_AFTER_FAILURE = 2.0


class QueueWorker:
    def __init__(
        self,
        worker_id: str = None,
        queue: Optional[WorkQueue] = None,
        coordinator: Optional[ScanCoordinator] = None,
        poll_interval: float = None,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.worker_id = worker_id or default_worker_id()
        self.queue = queue or WorkQueue()
        self.coordinator = coordinator or ScanCoordinator(queue=self.queue)
        self.poll_interval = poll_interval or settings.POLL_INTERVAL_SECONDS
        self.sleep = sleep
        self.running = False
        self.jobs_processed = 0
        self._idle_delay = MIN_IDLE_DELAY
        self._error_delay = MIN_IDLE_DELAY

    def stop(self, *_args) -> None:
        if self.running:
            logger.info(f"{self.worker_id} stopping after the current job")
        self.running = False

    def install_signal_handlers(self) -> None:
        signal.signal(signal.SIGTERM, self.stop)
        signal.signal(signal.SIGINT, self.stop)

    def run_once(self) -> float:
        """One poll. Returns how long to sleep before the next one."""
        try:
            self.queue.heartbeat(self.worker_id)
            job = self.queue.claim(self.worker_id)
        except JobInfrastructureError as e:
            delay = self._error_delay
            self._error_delay = min(self._error_delay * ERROR_BACKOFF_FACTOR, MAX_ERROR_BACKOFF)
            logger.error(f"{self.worker_id} queue unavailable, retrying in {delay:.1f}s: {e.message}")
            return delay
        self._error_delay = MIN_IDLE_DELAY

        if job is None:
            delay = self._idle_delay
            self._idle_delay = min(self._idle_delay * IDLE_BACKOFF_FACTOR, self.poll_interval)
            return delay
        self._idle_delay = MIN_IDLE_DELAY

        status = self.coordinator.run(job)
        self.jobs_processed += 1
        try:
            self.queue.heartbeat(self.worker_id, processed=1)
        except JobInfrastructureError as e:
            logger.warning(f"{self.worker_id} heartbeat failed: {e.message}")
        progress_tracker.cleanup()
        return DELAY_AFTER_SUCCESS if status.value == "completed" else DELAY_AFTER_FAILURE

    def run(self) -> None:
        self.running = True
        logger.info(f"{self.worker_id} started (poll interval {self.poll_interval}s)")
        while self.running:
            delay = self.run_once()
            if self.running:
                self.sleep(delay)

        try:
            self.queue.heartbeat(self.worker_id, status="stopped")
        except JobInfrastructureError as e:
            logger.warning(f"{self.worker_id} could not record shutdown: {e.message}")
        logger.info(f"{self.worker_id} stopped after {self.jobs_processed} jobs")


def main(argv=None):
    parser = argparse.ArgumentParser(description="Run an accessibility scan queue worker")
    parser.add_argument("--worker-id", help="Worker identifier (default: hostname-pid)")
    parser.add_argument("--poll-interval", type=float, help="Longest idle wait between polls, in seconds")
    args = parser.parse_args(argv)

    worker = QueueWorker(worker_id=args.worker_id, poll_interval=args.poll_interval)
    worker.install_signal_handlers()
    worker.run()


if __name__ == "__main__":
    main()
