"""
Runs one claimed scan job end to end.

    queued -> starting -> crawling -> analyzing -> generating_report -> completed

Any non-terminal state may move to failed. A failed attempt that the work
queue will retry puts the scan back to queued instead of failed.

Page-level problems are recorded in progress and skipped. The attempt ends
only when the start URL is unsafe or cannot be loaded, or when the store
itself fails.
"""
import time
from contextlib import ExitStack
from typing import Callable, Dict, List, Optional, Set, Tuple

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import sessionmaker

from app.features.scan.models.scan import Scan, ScanStatus
from app.features.scan.models.scan_job import ScanJobStatus
from app.features.scan.models.violation import LegalRisk, Violation, ViolationSeverity
from app.features.scan.services.audit.page_auditor import PageAuditor, ViolationRecord
from app.features.scan.services.budget.budget_policy import CrawlBudget, budget_for, estimate_scan_seconds
from app.features.scan.services.discovery.crawl_orchestrator import CrawlOrchestrator
from app.features.scan.services.fetch.safe_fetcher import SafeFetcher
from app.features.scan.services.progress.progress_tracker import ProgressTracker, progress_tracker
from app.features.scan.services.queue.work_queue import JobHandle, WorkQueue
from app.features.scan.services.scoring import scoring_engine
from app.features.scan.services.scoring.scoring_engine import ScoreResult
from app.features.scan.services.scraping.browser import BrowserSession
from app.platform.config import settings
from app.platform.db.base import utcnow
from app.platform.db.session import sync_session_scope
from app.platform.exceptions import (
    AuditEngineError,
    InvalidTransition,
    JobInfrastructureError,
    JobOwnershipLost,
    JobStateError,
    NotFoundError,
    SafetyRejection,
    TransientFetchError,
    ValidationError,
    user_facing_message,
)
from app.platform.logger import get_logger
from app.platform.utils.url_safety import UrlSafetyFilter

logger = get_logger(__name__)

ALLOWED_TRANSITIONS: Dict[ScanStatus, Set[ScanStatus]] = {
    ScanStatus.queued: {ScanStatus.starting, ScanStatus.failed},
    ScanStatus.starting: {ScanStatus.crawling, ScanStatus.queued, ScanStatus.failed},
    ScanStatus.crawling: {ScanStatus.analyzing, ScanStatus.queued, ScanStatus.failed},
    ScanStatus.analyzing: {ScanStatus.generating_report, ScanStatus.queued, ScanStatus.failed},
    ScanStatus.generating_report: {ScanStatus.completed, ScanStatus.queued, ScanStatus.failed},
    ScanStatus.completed: set(),
    ScanStatus.failed: set(),
}

# Errors that no retry can fix
PERMANENT_ERRORS = (SafetyRejection, ValidationError)


def check_transition(current: ScanStatus, target: ScanStatus) -> None:
    if target not in ALLOWED_TRANSITIONS[current]:
        raise InvalidTransition(f"Scan cannot move from {current.value} to {target.value}")


class ScanCoordinator:
    def __init__(
        self,
        queue: Optional[WorkQueue] = None,
        session_factory: sessionmaker = None,
        tracker: Optional[ProgressTracker] = None,
        safety: Optional[UrlSafetyFilter] = None,
        crawler_factory: Optional[Callable[[], CrawlOrchestrator]] = None,
        browser_factory: Optional[Callable[[], BrowserSession]] = None,
        auditor: Optional[PageAuditor] = None,
        clock: Callable[[], float] = time.monotonic,
        start_url_attempts: int = None,
    ):
        self.session_factory = session_factory
        self.queue = queue or WorkQueue(session_factory)
        self.tracker = tracker or progress_tracker
        self.safety = safety or UrlSafetyFilter()
        self.crawler_factory = crawler_factory or self._default_crawler
        self.browser_factory = browser_factory or (lambda: BrowserSession(safety=self.safety))
        self.auditor = auditor or PageAuditor()
        self.clock = clock
        self.start_url_attempts = start_url_attempts or settings.START_URL_ATTEMPTS

    def _default_crawler(self) -> CrawlOrchestrator:
        return CrawlOrchestrator(fetcher=SafeFetcher(safety=self.safety), safety=self.safety, clock=self.clock)

    def run(self, job: JobHandle) -> ScanStatus:
        """Drive job to completion. Never raises for scan-level failures; returns the final scan status."""
        scan_id = job.scan_id
        started = self.clock()
        logger.info(f"[{scan_id}] Starting scan of {job.url} (job {job.job_id}, attempt {job.attempts})")

        self.tracker.reset(scan_id)
        self.tracker.start(scan_id, estimated_seconds=estimate_scan_seconds(job.tier, job.depth))

        try:
            budget = budget_for(job.tier, job.depth)
            self.queue.mark_processing(job.job_id, job.worker_id)
            self._transition(scan_id, ScanStatus.starting, started_at=utcnow(), error_message=None)
            self.safety.check_url(job.url)

            with ExitStack() as stack:
                browser = stack.enter_context(self.browser_factory())
                crawler = self.crawler_factory()
                fetcher = getattr(crawler, "fetcher", None)
                if fetcher is not None and hasattr(fetcher, "close"):
                    stack.callback(fetcher.close)

                self._transition(scan_id, ScanStatus.crawling)
                self.tracker.update(scan_id, status="crawling")
                violations, pages = self._crawl(job, budget, crawler, browser, started)

            self._transition(scan_id, ScanStatus.analyzing)
            self.tracker.update(scan_id, status="analyzing")
            result = scoring_engine.score(violations)

            self._transition(scan_id, ScanStatus.generating_report)
            self.tracker.update(scan_id, status="generating_report")
            processing_ms = int((self.clock() - started) * 1000)
            self._persist_results(scan_id, violations, result, pages, processing_ms)

            try:
                self.queue.complete(job.job_id, job.worker_id)
            except (JobStateError, NotFoundError) as e:
                # Results are saved; a sweep that requeued the job meanwhile does not undo them
                logger.warning(f"[{scan_id}] Scan saved but job could not be completed: {e.message}")

            self.tracker.complete(scan_id, metadata={
                "total_violations": result.summary["total_violations"],
                "critical_issues": result.summary["by_severity"]["critical"],
                "quick_wins": result.summary["quick_wins"],
                "overall_score": result.wcag_score,
            })
            logger.info(
                f"[{scan_id}] Completed: {pages} pages, {len(violations)} violations, "
                f"score {result.wcag_score} in {processing_ms}ms"
            )
            return ScanStatus.completed

        except Exception as e:
            return self._handle_failure(job, e)

    def _crawl(
        self,
        job: JobHandle,
        budget: CrawlBudget,
        crawler: CrawlOrchestrator,
        browser: BrowserSession,
        started: float,
    ) -> Tuple[List[ViolationRecord], int]:
        scan_id = job.scan_id
        deadline = started + budget.max_time_seconds
        violations: List[ViolationRecord] = []
        pages = 0

        for index, url in enumerate(crawler.discover(job.url, budget)):
            if self.clock() >= deadline:
                logger.warning(f"[{scan_id}] Time budget reached after {pages} pages, scoring partial results")
                break

            discovered = max(index + 1, min(getattr(crawler, "discovered", 0), budget.max_pages))
            self.tracker.update(scan_id, pages_discovered=discovered, current_page=url)

            is_start_page = index == 0
            try:
                snapshot = self._render(browser, url, self.start_url_attempts if is_start_page else 1)
            except (TransientFetchError, SafetyRejection) as e:
                if is_start_page:
                    raise
                self.tracker.add_error(scan_id, url, e.message)
                continue

            page_violations = self.auditor.audit(snapshot)
            violations.extend(page_violations)
            pages += 1
            self.tracker.update(
                scan_id,
                pages_crawled=pages,
                metadata={
                    "total_violations": len(violations),
                    "critical_issues": sum(1 for v in violations if v.severity == "critical"),
                    "quick_wins": sum(1 for v in violations if v.quick_win),
                },
            )

        if pages == 0:
            raise TransientFetchError(f"No pages could be scanned at {job.url}", url=job.url)
        return violations, pages

    def _render(self, browser: BrowserSession, url: str, attempts: int):
        for attempt in range(1, attempts + 1):
            try:
                return browser.render(url)
            except TransientFetchError as e:
                if attempt >= attempts:
                    raise
                logger.warning(f"Render of {url} failed (attempt {attempt}/{attempts}): {e.message}")

    def _transition(self, scan_id: str, target: ScanStatus, **fields) -> None:
        try:
            with sync_session_scope(self.session_factory) as session:
                scan = session.get(Scan, scan_id)
                if scan is None:
                    raise NotFoundError(f"Scan {scan_id} not found")
                check_transition(scan.status, target)
                scan.status = target
                for name, value in fields.items():
                    setattr(scan, name, value)
        except SQLAlchemyError as e:
            raise JobInfrastructureError(f"Could not update scan state: {type(e).__name__}") from e
        logger.debug(f"[{scan_id}] -> {target.value}")

    def _persist_results(
        self,
        scan_id: str,
        violations: List[ViolationRecord],
        result: ScoreResult,
        pages: int,
        processing_ms: int,
    ) -> None:
        by_severity = result.summary["by_severity"]
        summary = dict(result.summary)
        summary["pages_scanned"] = pages
        state = self.tracker.get(scan_id)
        summary["page_errors"] = list(state.errors) if state else []

        try:
            with sync_session_scope(self.session_factory) as session:
                scan = session.get(Scan, scan_id)
                if scan is None:
                    raise NotFoundError(f"Scan {scan_id} not found")
                check_transition(scan.status, ScanStatus.completed)

                session.add_all(_violation_rows(scan_id, violations))
                scan.wcag_score = result.wcag_score
                scan.risk_score = result.risk_score
                scan.lawsuit_probability = result.lawsuit_probability
                scan.total_violations = len(violations)
                scan.critical_violations = by_severity["critical"]
                scan.serious_violations = by_severity["serious"]
                scan.moderate_violations = by_severity["moderate"]
                scan.minor_violations = by_severity["minor"]
                scan.pages_scanned = pages
                scan.summary = summary
                scan.processing_time_ms = processing_ms
                scan.completed_at = utcnow()
                scan.error_message = None
                scan.status = ScanStatus.completed
        except SQLAlchemyError as e:
            raise JobInfrastructureError(f"Could not save scan results: {type(e).__name__}") from e

    def _handle_failure(self, job: JobHandle, exc: Exception) -> ScanStatus:
        scan_id = job.scan_id
        message = user_facing_message(exc)
        if isinstance(exc, AuditEngineError):
            logger.error(f"[{scan_id}] Scan attempt failed: {message}")
        else:
            logger.exception(f"[{scan_id}] Unexpected error during scan: {exc}")

        try:
            job_status = self.queue.fail(
                job.job_id, job.worker_id, message, permanent=isinstance(exc, PERMANENT_ERRORS)
            )
        except JobOwnershipLost as e:
            # The scan now belongs to whichever worker holds the job
            logger.warning(f"[{scan_id}] Job moved to another worker, leaving scan as is: {e.message}")
            self.tracker.forget(scan_id)
            return self._current_status(scan_id)
        except (JobStateError, NotFoundError, JobInfrastructureError) as e:
            logger.error(f"[{scan_id}] Could not record job failure: {e.message}")
            job_status = ScanJobStatus.failed

        retrying = job_status == ScanJobStatus.pending
        target = ScanStatus.queued if retrying else ScanStatus.failed
        try:
            with sync_session_scope(self.session_factory) as session:
                scan = session.get(Scan, scan_id)
                if scan is not None and target in ALLOWED_TRANSITIONS[scan.status]:
                    scan.status = target
                    scan.error_message = message
                    if not retrying:
                        scan.completed_at = utcnow()
                elif scan is not None:
                    logger.warning(f"[{scan_id}] Leaving scan in {scan.status.value} after failure")
        except SQLAlchemyError as e:
            logger.error(f"[{scan_id}] Could not record scan failure: {e}")

        if retrying:
            self.tracker.update(scan_id, status="queued", current_step=f"Retrying: {message}")
        else:
            self.tracker.fail(scan_id, message)
        return target

    def _current_status(self, scan_id: str) -> ScanStatus:
        try:
            with sync_session_scope(self.session_factory) as session:
                scan = session.get(Scan, scan_id)
                return scan.status if scan is not None else ScanStatus.failed
        except SQLAlchemyError as e:
            logger.error(f"[{scan_id}] Could not read scan state: {e}")
            return ScanStatus.queued


def _violation_rows(scan_id: str, violations: List[ViolationRecord]) -> List[Violation]:
    return [
        Violation(
            scan_id=scan_id,
            wcag_criterion=v.wcag_criterion,
            severity=ViolationSeverity(v.severity),
            element_type=v.element_type,
            element_selector=(v.element_selector or "")[:512],
            element_snippet=v.element_snippet,
            page_url=v.page_url,
            user_impact=v.user_impact,
            business_impact=v.business_impact,
            legal_risk=LegalRisk(v.legal_risk),
            fix_description=v.fix_description,
            fix_snippet=v.fix_snippet,
            fix_effort=v.fix_effort,
            estimated_fix_effort=v.estimated_fix_effort,
            quick_win=v.quick_win,
        )
        for v in violations
    ]
