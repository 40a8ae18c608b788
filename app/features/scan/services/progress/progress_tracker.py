"""
In-process scan progress with fan-out to subscribers.

One ProgressTracker per process. The coordinator that runs a scan writes to
it; observers in the same process subscribe and receive snapshots through a
bounded queue. A subscriber that falls behind is dropped rather than slowing
the scan down. Every update is also mirrored to Redis pub/sub so observers in
other processes can follow along.
"""
import queue
import threading
import time
from dataclasses import asdict, dataclass, field
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, List, Optional

from app.platform.config import settings
from app.platform.db.base import utcnow
from app.platform.logger import get_logger
from app.platform.services.sse_helper import publish_scan_progress

logger = get_logger(__name__)

STATUS_PERCENT = {
    "queued": 0,
    "starting": 5,
    "crawling": 20,
    "analyzing": 85,
    "generating_report": 95,
    "completed": 100,
}
CRAWL_PERCENT_SPAN = 60
CRAWL_PERCENT_CAP = 80

STATUS_MESSAGES = {
    "queued": "Waiting to start",
    "starting": "Starting scan",
    "crawling": "Crawling and auditing pages",
    "analyzing": "Calculating scores",
    "generating_report": "Saving results",
    "completed": "Scan complete",
    "failed": "Scan failed",
}
TERMINAL_STATUSES = {"completed", "failed"}


@dataclass
class ProgressState:
    scan_id: str
    status: str = "queued"
    percent: int = 0
    current_step: str = STATUS_MESSAGES["queued"]
    started_at: datetime = field(default_factory=utcnow)
    estimated_completion: Optional[datetime] = None
    pages_discovered: int = 0
    pages_crawled: int = 0
    current_page: Optional[str] = None
    errors: List[Dict[str, Any]] = field(default_factory=list)
    metadata: Dict[str, Any] = field(default_factory=dict)

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    @property
    def elapsed_seconds(self) -> int:
        return max(0, int((utcnow() - self.started_at).total_seconds()))

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["started_at"] = self.started_at.isoformat()
        data["estimated_completion"] = (
            self.estimated_completion.isoformat() if self.estimated_completion else None
        )
        data["elapsed_seconds"] = self.elapsed_seconds
        return data


def compute_percent(status: str, pages_crawled: int = 0, pages_discovered: int = 0) -> int:
    if status == "crawling":
        ratio = pages_crawled / pages_discovered if pages_discovered else 0.0
        return min(CRAWL_PERCENT_CAP, STATUS_PERCENT["crawling"] + int(ratio * CRAWL_PERCENT_SPAN))
    return STATUS_PERCENT.get(status, 0)


class Subscription:
    """Handle returned by subscribe(); read snapshots with get()."""

    def __init__(self, scan_id: str, maxsize: int):
        self.scan_id = scan_id
        self.queue: "queue.Queue[Dict[str, Any]]" = queue.Queue(maxsize=maxsize)
        self.dropped = False

    def get(self, timeout: Optional[float] = None) -> Optional[Dict[str, Any]]:
        try:
            return self.queue.get(timeout=timeout)
        except queue.Empty:
            return None


class ProgressTracker:
    def __init__(
        self,
        publisher: Optional[Callable[..., bool]] = publish_scan_progress,
        subscriber_queue_size: int = None,
        retention_seconds: float = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.publisher = publisher
        self.subscriber_queue_size = subscriber_queue_size or settings.PROGRESS_SUBSCRIBER_QUEUE_SIZE
        self.retention_seconds = (
            settings.PROGRESS_RETENTION_SECONDS if retention_seconds is None else retention_seconds
        )
        self.clock = clock
        self._lock = threading.RLock()
        self._states: Dict[str, ProgressState] = {}
        self._subscribers: Dict[str, List[Subscription]] = {}
        self._finished_at: Dict[str, float] = {}

    def start(self, scan_id: str, estimated_seconds: Optional[int] = None) -> ProgressState:
        with self._lock:
            state = ProgressState(scan_id=scan_id)
            if estimated_seconds:
                state.estimated_completion = state.started_at + timedelta(seconds=estimated_seconds)
            self._states[scan_id] = state
            self._finished_at.pop(scan_id, None)
        return self.update(scan_id, status="starting")

    def update(
        self,
        scan_id: str,
        status: Optional[str] = None,
        current_step: Optional[str] = None,
        pages_discovered: Optional[int] = None,
        pages_crawled: Optional[int] = None,
        current_page: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> ProgressState:
        with self._lock:
            state = self._states.get(scan_id)
            if state is None:
                state = self._states[scan_id] = ProgressState(scan_id=scan_id)

            if status is not None:
                state.status = status
                state.current_step = STATUS_MESSAGES.get(status, status)
            if current_step is not None:
                state.current_step = current_step
            if pages_discovered is not None:
                state.pages_discovered = pages_discovered
            if pages_crawled is not None:
                state.pages_crawled = pages_crawled
            if current_page is not None:
                state.current_page = current_page
            if metadata:
                state.metadata.update(metadata)

            # Percent never goes backwards outside of reset()
            state.percent = max(
                state.percent,
                compute_percent(state.status, state.pages_crawled, state.pages_discovered),
            )
            if state.is_terminal:
                self._finished_at[scan_id] = self.clock()

            snapshot = state.to_dict()
            self._fan_out(scan_id, snapshot)

        self._publish(snapshot)
        return state

    def add_error(self, scan_id: str, page: str, error: str) -> None:
        with self._lock:
            state = self._states.get(scan_id)
            if state is None:
                return
            state.errors.append({"page": page, "error": error, "timestamp": utcnow().isoformat()})
        logger.warning(f"[{scan_id}] Page error on {page}: {error}")

    def complete(self, scan_id: str, metadata: Optional[Dict[str, Any]] = None) -> ProgressState:
        return self.update(scan_id, status="completed", metadata=metadata)

    def fail(self, scan_id: str, error: str) -> ProgressState:
        return self.update(scan_id, status="failed", current_step=error, metadata={"error": error})

    def reset(self, scan_id: str) -> None:
        """Start over for a retried scan; the only way percent may decrease."""
        with self._lock:
            if scan_id in self._states:
                self._states[scan_id] = ProgressState(scan_id=scan_id)
                self._finished_at.pop(scan_id, None)

    def forget(self, scan_id: str) -> None:
        """Drop local state so readers fall back to the persisted scan."""
        with self._lock:
            self._states.pop(scan_id, None)
            self._finished_at.pop(scan_id, None)

    def get(self, scan_id: str) -> Optional[ProgressState]:
        with self._lock:
            state = self._states.get(scan_id)
            if state is None:
                return None
            return ProgressState(**{**state.__dict__, "errors": list(state.errors), "metadata": dict(state.metadata)})

    def subscribe(self, scan_id: str) -> Subscription:
        subscription = Subscription(scan_id, self.subscriber_queue_size)
        with self._lock:
            self._subscribers.setdefault(scan_id, []).append(subscription)
            state = self._states.get(scan_id)
            if state is not None:
                subscription.queue.put_nowait(state.to_dict())
        return subscription

    def unsubscribe(self, subscription: Subscription) -> None:
        with self._lock:
            subscribers = self._subscribers.get(subscription.scan_id, [])
            if subscription in subscribers:
                subscribers.remove(subscription)
            if not subscribers:
                self._subscribers.pop(subscription.scan_id, None)

    def subscriber_count(self, scan_id: str) -> int:
        with self._lock:
            return len(self._subscribers.get(scan_id, []))

    def cleanup(self) -> int:
        """Forget scans that finished more than retention_seconds ago."""
        now = self.clock()
        removed = 0
        with self._lock:
            for scan_id, finished in list(self._finished_at.items()):
                if now - finished >= self.retention_seconds:
                    self._states.pop(scan_id, None)
                    self._subscribers.pop(scan_id, None)
                    self._finished_at.pop(scan_id, None)
                    removed += 1
        return removed

    def _fan_out(self, scan_id: str, snapshot: Dict[str, Any]) -> None:
        for subscription in list(self._subscribers.get(scan_id, [])):
            try:
                subscription.queue.put_nowait(snapshot)
            except queue.Full:
                subscription.dropped = True
                self._subscribers[scan_id].remove(subscription)
                logger.warning(f"[{scan_id}] Dropped slow progress subscriber")

    def _publish(self, snapshot: Dict[str, Any]) -> None:
        if self.publisher is None:
            return
        extra = {k: snapshot[k] for k in ("pages_discovered", "pages_crawled", "current_page", "elapsed_seconds")}
        if snapshot["status"] == "failed":
            extra["error"] = snapshot["metadata"].get("error")
        self.publisher(
            snapshot["scan_id"],
            snapshot["status"],
            snapshot["percent"],
            snapshot["current_step"],
            **extra,
        )


progress_tracker = ProgressTracker()
