"""
Tests for the scan coordinator state machine and end-to-end job runs
"""
import pytest
from sqlalchemy import select

from app.features.scan.models.scan import Scan, ScanStatus
from app.features.scan.models.scan_job import ScanJobStatus
from app.features.scan.models.violation import Violation
from app.features.scan.services.orchestration.scan_coordinator import ScanCoordinator, check_transition
from app.features.scan.services.progress.progress_tracker import ProgressTracker
from app.features.scan.services.queue.work_queue import WorkQueue
from app.platform.db.session import sync_session_scope
from app.platform.exceptions import InvalidTransition, TransientFetchError
from page_payloads import snapshot_from_html

START = "https://example.com/"

PAGES = {
    START: '<html><body><h1>Home</h1><img src="a.png"><p style="color:#aaa">Low contrast</p></body></html>',
    "https://example.com/about": '<html><body><h1>About</h1><a href="/x"></a></body></html>',
    "https://example.com/contact": "<html><body><h1>Contact</h1></body></html>",
}


class FakeBrowser:
    def __init__(self, pages, failures=None):
        self.pages = pages
        self.failures = dict(failures or {})
        self.rendered = []
        self.closed = False

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc, tb):
        self.closed = True

    def render(self, url):
        self.rendered.append(url)
        if self.failures.get(url, 0) > 0:
            self.failures[url] -= 1
            raise TransientFetchError(f"Timed out loading {url}", url=url)
        return snapshot_from_html(self.pages[url], url)


class FakeCrawler:
    def __init__(self, urls):
        self.urls = urls
        self.discovered = len(urls)

    def discover(self, start_url, budget):
        yield from self.urls[:budget.max_pages]


@pytest.fixture
def queue(session_factory):
    return WorkQueue(session_factory)


@pytest.fixture
def tracker():
    return ProgressTracker(publisher=None)


def make_job(session_factory, queue, tier="starter", depth="deep"):
    with sync_session_scope(session_factory) as session:
        scan = Scan(url=START, domain="example.com", org_id="org-1", tier=tier, depth=depth)
        session.add(scan)
        session.flush()
        scan_id = scan.id
    queue.enqueue(scan_id, START, tier, depth, priority=3)
    return queue.claim("worker-test")


def load_scan(session_factory, scan_id):
    with sync_session_scope(session_factory) as session:
        return session.get(Scan, scan_id)


def coordinator(session_factory, queue, tracker, safety, browser, urls):
    return ScanCoordinator(
        queue=queue,
        session_factory=session_factory,
        tracker=tracker,
        safety=safety,
        crawler_factory=lambda: FakeCrawler(urls),
        browser_factory=lambda: browser,
        start_url_attempts=2,
    )


class TestTransitions:

    def test_forward_path(self):
        path = [
            ScanStatus.queued, ScanStatus.starting, ScanStatus.crawling,
            ScanStatus.analyzing, ScanStatus.generating_report, ScanStatus.completed,
        ]
        for current, target in zip(path, path[1:]):
            check_transition(current, target)

    @pytest.mark.parametrize("current,target", [
        (ScanStatus.queued, ScanStatus.crawling),
        (ScanStatus.crawling, ScanStatus.completed),
        (ScanStatus.completed, ScanStatus.failed),
        (ScanStatus.failed, ScanStatus.queued),
        (ScanStatus.analyzing, ScanStatus.crawling),
    ])
    def test_invalid_edges(self, current, target):
        with pytest.raises(InvalidTransition):
            check_transition(current, target)


class TestRun:

    def test_successful_scan(self, session_factory, queue, tracker, safety):
        job = make_job(session_factory, queue)
        browser = FakeBrowser(PAGES)
        urls = [START, "https://example.com/about", "https://example.com/contact"]

        status = coordinator(session_factory, queue, tracker, safety, browser, urls).run(job)

        assert status == ScanStatus.completed
        assert browser.closed
        scan = load_scan(session_factory, job.scan_id)
        assert scan.status == ScanStatus.completed
        assert scan.pages_scanned == 3
        assert scan.total_violations == 3
        assert scan.critical_violations == 1
        assert scan.serious_violations == 2
        assert scan.wcag_score == 100 - 15 - 8 - 8
        assert scan.completed_at is not None
        assert scan.summary["by_criterion"] == {"1.1.1": 1, "1.4.3": 1, "2.4.4": 1}
        assert queue.get_job(job.job_id).status == ScanJobStatus.done

        with sync_session_scope(session_factory) as session:
            rows = session.execute(select(Violation).where(Violation.scan_id == job.scan_id)).scalars().all()
            assert {row.page_url for row in rows} == {START, "https://example.com/about"}

        progress = tracker.get(job.scan_id)
        assert progress.status == "completed"
        assert progress.percent == 100
        assert progress.pages_crawled == 3

    def test_page_errors_are_skipped(self, session_factory, queue, tracker, safety):
        job = make_job(session_factory, queue)
        browser = FakeBrowser(PAGES, failures={"https://example.com/about": 5})
        urls = [START, "https://example.com/about", "https://example.com/contact"]

        status = coordinator(session_factory, queue, tracker, safety, browser, urls).run(job)

        assert status == ScanStatus.completed
        scan = load_scan(session_factory, job.scan_id)
        assert scan.pages_scanned == 2
        assert scan.summary["page_errors"][0]["page"] == "https://example.com/about"
        # Non-start pages get a single attempt
        assert browser.rendered.count("https://example.com/about") == 1

    def test_start_url_is_retried(self, session_factory, queue, tracker, safety):
        job = make_job(session_factory, queue)
        browser = FakeBrowser(PAGES, failures={START: 1})

        status = coordinator(session_factory, queue, tracker, safety, browser, [START]).run(job)

        assert status == ScanStatus.completed
        assert browser.rendered == [START, START]

    def test_unreachable_start_url_requeues_for_retry(self, session_factory, queue, tracker, safety):
        job = make_job(session_factory, queue)
        browser = FakeBrowser(PAGES, failures={START: 10})

        status = coordinator(session_factory, queue, tracker, safety, browser, [START]).run(job)

        assert status == ScanStatus.queued
        scan = load_scan(session_factory, job.scan_id)
        assert scan.status == ScanStatus.queued
        assert "Timed out" in scan.error_message
        assert queue.get_job(job.job_id).status == ScanJobStatus.pending
        assert tracker.get(job.scan_id).status == "queued"

    def test_last_attempt_fails_scan(self, session_factory, queue, tracker, safety):
        job = make_job(session_factory, queue)
        browser = FakeBrowser(PAGES, failures={START: 100})
        runner = coordinator(session_factory, queue, tracker, safety, browser, [START])

        statuses = [runner.run(job)]
        while statuses[-1] == ScanStatus.queued:
            job = queue.claim("worker-test")
            statuses.append(runner.run(job))

        assert statuses == [ScanStatus.queued, ScanStatus.queued, ScanStatus.failed]
        scan = load_scan(session_factory, job.scan_id)
        assert scan.status == ScanStatus.failed
        assert scan.completed_at is not None
        assert queue.get_job(job.job_id).is_dead_lettered
        assert tracker.get(job.scan_id).status == "failed"

    def test_failure_after_job_was_reclaimed_leaves_scan_alone(self, session_factory, queue, tracker, safety):
        job = make_job(session_factory, queue)

        class StalledBrowser(FakeBrowser):
            def render(self, url):
                if not self.rendered:
                    # The sweep gives the job to another worker while this one is stuck
                    queue.requeue_stale(timeout_seconds=-1)
                    queue.claim("worker-new")
                return super().render(url)

        browser = StalledBrowser(PAGES, failures={START: 10})

        status = coordinator(session_factory, queue, tracker, safety, browser, [START]).run(job)

        assert status == ScanStatus.crawling
        scan = load_scan(session_factory, job.scan_id)
        assert scan.status == ScanStatus.crawling
        assert scan.error_message is None
        job_row = queue.get_job(job.job_id)
        assert job_row.status == ScanJobStatus.claimed
        assert job_row.worker_id == "worker-new"
        assert tracker.get(job.scan_id) is None

    def test_unsafe_start_url_fails_permanently(self, session_factory, queue, tracker, safety):
        job = make_job(session_factory, queue)
        safety.resolver = lambda host: ["192.168.1.10"]
        browser = FakeBrowser(PAGES)

        status = coordinator(session_factory, queue, tracker, safety, browser, [START]).run(job)

        assert status == ScanStatus.failed
        assert browser.rendered == []
        job_row = queue.get_job(job.job_id)
        assert job_row.status == ScanJobStatus.failed
        assert job_row.attempts == 1

    def test_quick_depth_scans_one_page(self, session_factory, queue, tracker, safety):
        job = make_job(session_factory, queue, tier="pro", depth="quick")
        browser = FakeBrowser(PAGES)
        urls = [START, "https://example.com/about"]

        coordinator(session_factory, queue, tracker, safety, browser, urls).run(job)

        assert browser.rendered == [START]
        assert load_scan(session_factory, job.scan_id).pages_scanned == 1

    def test_time_budget_scores_partial_results(self, session_factory, queue, tracker, safety):
        job = make_job(session_factory, queue, tier="free", depth="deep")
        browser = FakeBrowser(PAGES)
        ticks = iter([0.0, 1.0, 500.0, 500.0, 500.0, 500.0])
        runner = coordinator(session_factory, queue, tracker, safety, browser,
                             [START, "https://example.com/about"])
        runner.clock = lambda: next(ticks, 500.0)

        status = runner.run(job)

        assert status == ScanStatus.completed
        assert browser.rendered == [START]
