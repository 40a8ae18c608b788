"""
Tests for the durable scan work queue
"""
import threading
from datetime import timedelta

import pytest
from sqlalchemy import update
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.sql.expression import Update

from app.features.scan.models.scan import Scan, ScanStatus
from app.features.scan.models.scan_job import ScanJob, ScanJobStatus
from app.features.scan.services.queue.work_queue import CLAIM_BATCH_SIZE, WorkQueue, new_job
from app.platform.db.base import utcnow
from app.platform.db.session import sync_session_scope
from app.platform.exceptions import JobInfrastructureError, JobOwnershipLost, JobStateError, NotFoundError


def add_job(session_factory, priority=1, age_seconds=0, max_attempts=3, url="https://example.com/"):
    """Insert a scan with its pending job; returns the job id."""
    with sync_session_scope(session_factory) as session:
        scan = Scan(url=url, domain="example.com", org_id="org-1", tier="free", depth="standard")
        session.add(scan)
        session.flush()
        job = new_job(scan.id, url, "free", "standard", priority, max_attempts=max_attempts)
        job.created_at = utcnow() - timedelta(seconds=age_seconds)
        session.add(job)
        session.flush()
        return job.id


def set_job(session_factory, job_id, **values):
    with sync_session_scope(session_factory) as session:
        session.execute(update(ScanJob).where(ScanJob.id == job_id).values(**values))


@pytest.fixture
def queue(session_factory):
    return WorkQueue(session_factory)


class TestClaim:

    def test_claim_empty_queue(self, queue):
        assert queue.claim("worker-1") is None

    def test_claim_marks_job_claimed(self, queue, session_factory):
        job_id = add_job(session_factory)

        handle = queue.claim("worker-1")

        assert handle.job_id == job_id
        assert handle.attempts == 1
        assert handle.worker_id == "worker-1"
        job = queue.get_job(job_id)
        assert job.status == ScanJobStatus.claimed
        assert job.claimed_at is not None
        assert queue.claim("worker-2") is None

    def test_priority_then_fifo(self, queue, session_factory):
        old_free = add_job(session_factory, priority=1, age_seconds=30)
        new_pro = add_job(session_factory, priority=5, age_seconds=1)
        old_pro = add_job(session_factory, priority=5, age_seconds=20)
        newest_free = add_job(session_factory, priority=1, age_seconds=0)

        order = [queue.claim("w").job_id for _ in range(4)]

        assert order == [old_pro, new_pro, old_free, newest_free]

    def test_concurrent_workers_never_share_a_job(self, session_factory):
        job_ids = {add_job(session_factory, priority=i % 3) for i in range(24)}
        claims = {}
        lock = threading.Lock()
        errors = []

        def worker(name):
            queue = WorkQueue(session_factory)
            try:
                while True:
                    handle = queue.claim(name)
                    if handle is None:
                        return
                    with lock:
                        claims.setdefault(handle.job_id, []).append(name)
            except Exception as e:
                errors.append(e)

        threads = [threading.Thread(target=worker, args=(f"worker-{n}",)) for n in range(6)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join(timeout=60)

        assert errors == []
        assert set(claims) == job_ids
        assert all(len(owners) == 1 for owners in claims.values())

    def test_claim_reads_past_a_batch_lost_to_rivals(self, session_factory):
        rival_ids = [add_job(session_factory, priority=5, age_seconds=60 - i) for i in range(CLAIM_BATCH_SIZE)]
        leftover = add_job(session_factory, priority=1)

        class RivalSession(Session):
            """Another worker takes the whole first batch just before our guarded UPDATE."""
            raced = False

            def execute(self, statement, *args, **kwargs):
                if isinstance(statement, Update) and not RivalSession.raced:
                    RivalSession.raced = True
                    super().execute(
                        update(ScanJob)
                        .where(ScanJob.id.in_(rival_ids))
                        .values(status=ScanJobStatus.claimed, worker_id="rival")
                    )
                return super().execute(statement, *args, **kwargs)

        factory = sessionmaker(bind=session_factory.kw["bind"], class_=RivalSession, expire_on_commit=False)

        handle = WorkQueue(factory).claim("w")

        assert handle is not None
        assert handle.job_id == leftover

    def test_pending_count(self, queue, session_factory):
        add_job(session_factory)
        add_job(session_factory)
        queue.claim("w")
        assert queue.pending_count() == 1


class TestLifecycle:

    def test_complete(self, queue, session_factory):
        job_id = add_job(session_factory)
        queue.claim("w")
        queue.mark_processing(job_id, "w")

        queue.complete(job_id, "w")

        job = queue.get_job(job_id)
        assert job.status == ScanJobStatus.done
        assert job.completed_at is not None
        assert job.is_terminal

    def test_mark_processing_requires_claim(self, queue, session_factory):
        job_id = add_job(session_factory)
        with pytest.raises(JobStateError):
            queue.mark_processing(job_id, "w")

    def test_terminal_jobs_reject_complete_and_fail(self, queue, session_factory):
        job_id = add_job(session_factory)
        queue.claim("w")
        queue.complete(job_id, "w")

        with pytest.raises(JobStateError):
            queue.complete(job_id, "w")
        with pytest.raises(JobStateError):
            queue.fail(job_id, "w", "late failure")

    def test_unknown_job(self, queue):
        with pytest.raises(NotFoundError):
            queue.complete("missing", "w")
        with pytest.raises(NotFoundError):
            queue.fail("missing", "w", "boom")

    def test_fail_retries_until_dead_letter(self, queue, session_factory):
        job_id = add_job(session_factory, max_attempts=3)

        outcomes = []
        for _ in range(3):
            assert queue.claim("w").job_id == job_id
            outcomes.append(queue.fail(job_id, "w", "timeout"))

        assert outcomes == [ScanJobStatus.pending, ScanJobStatus.pending, ScanJobStatus.failed]
        job = queue.get_job(job_id)
        assert job.attempts == 3
        assert job.is_dead_lettered
        assert job.error_message == "timeout"
        assert queue.claim("w") is None

    def test_permanent_failure_dead_letters_at_once(self, queue, session_factory):
        job_id = add_job(session_factory)
        queue.claim("w")

        assert queue.fail(job_id, "w", "unsafe url", permanent=True) == ScanJobStatus.failed
        assert queue.get_job(job_id).attempts == 1

    def test_retry_clears_owner(self, queue, session_factory):
        job_id = add_job(session_factory)
        queue.claim("w")
        queue.fail(job_id, "w", "flaky")

        job = queue.get_job(job_id)
        assert job.worker_id is None
        assert job.claimed_at is None


class TestMaintenance:

    def test_requeue_stale(self, queue, session_factory):
        stale = add_job(session_factory)
        queue.claim("dead-worker")
        set_job(session_factory, stale, claimed_at=utcnow() - timedelta(minutes=20))
        fresh = add_job(session_factory)
        queue.claim("live-worker")

        assert queue.requeue_stale(timeout_seconds=600) == 1

        assert queue.get_job(stale).status == ScanJobStatus.pending
        assert queue.get_job(fresh).status == ScanJobStatus.claimed

    def test_stale_job_without_attempts_left_is_dead_lettered(self, queue, session_factory):
        job_id = add_job(session_factory, max_attempts=1)
        queue.claim("dead-worker")
        set_job(session_factory, job_id, claimed_at=utcnow() - timedelta(hours=1))

        queue.requeue_stale(timeout_seconds=600)

        job = queue.get_job(job_id)
        assert job.status == ScanJobStatus.failed
        assert "dead-worker" in job.error_message

    def test_cleanup_finished(self, queue, session_factory):
        old = add_job(session_factory)
        queue.claim("w")
        queue.complete(old, "w")
        set_job(session_factory, old, updated_at=utcnow() - timedelta(days=10))
        recent = add_job(session_factory)
        queue.claim("w")
        queue.complete(recent, "w")
        waiting = add_job(session_factory)
        set_job(session_factory, waiting, updated_at=utcnow() - timedelta(days=10))

        assert queue.cleanup_finished(older_than_days=7) == 1
        assert queue.get_job(old) is None
        assert queue.get_job(recent) is not None
        assert queue.get_job(waiting) is not None

    def test_operator_requeue(self, queue, session_factory):
        job_id = add_job(session_factory, max_attempts=1)
        queue.claim("w")
        queue.fail(job_id, "w", "boom")

        with pytest.raises(JobStateError):
            queue.requeue(job_id)
        queue.requeue(job_id, reset_attempts=True)

        job = queue.get_job(job_id)
        assert job.status == ScanJobStatus.pending
        assert job.attempts == 0
        assert job.error_message is None
        assert queue.claim("w").job_id == job_id

    def test_operator_requeue_reopens_failed_scan(self, queue, session_factory):
        job_id = add_job(session_factory, max_attempts=1)
        queue.claim("w")
        queue.fail(job_id, "w", "boom")
        scan_id = queue.get_job(job_id).scan_id
        with sync_session_scope(session_factory) as session:
            session.execute(
                update(Scan).where(Scan.id == scan_id).values(status=ScanStatus.failed, completed_at=utcnow())
            )

        assert queue.requeue(job_id, reset_attempts=True) == scan_id

        with sync_session_scope(session_factory) as session:
            scan = session.get(Scan, scan_id)
            assert scan.status == ScanStatus.queued
            assert scan.completed_at is None

    def test_requeue_only_failed_jobs(self, queue, session_factory):
        job_id = add_job(session_factory)
        with pytest.raises(JobStateError):
            queue.requeue(job_id)

    def test_heartbeat_and_live_workers(self, queue):
        queue.heartbeat("worker-a")
        queue.heartbeat("worker-a", processed=2)
        queue.heartbeat("worker-b", status="stopped")

        assert queue.live_workers() == ["worker-a"]

    def test_store_errors_become_infrastructure_errors(self, tmp_path):
        from app.platform.db.session import create_sync_engine

        # Tables were never created in this database
        engine = create_sync_engine(f"sqlite:///{tmp_path / 'empty.db'}")
        queue = WorkQueue(sessionmaker(bind=engine))

        with pytest.raises(JobInfrastructureError):
            queue.claim("w")


class TestOwnership:

    def test_swept_worker_cannot_fail_a_reclaimed_job(self, queue, session_factory):
        job_id = add_job(session_factory)
        queue.claim("worker-a")
        assert queue.requeue_stale(timeout_seconds=-1) == 1
        assert queue.claim("worker-b").job_id == job_id

        with pytest.raises(JobOwnershipLost):
            queue.fail(job_id, "worker-a", "render timed out")
        with pytest.raises(JobOwnershipLost):
            queue.complete(job_id, "worker-a")
        with pytest.raises(JobOwnershipLost):
            queue.mark_processing(job_id, "worker-a")

        job = queue.get_job(job_id)
        assert job.status == ScanJobStatus.claimed
        assert job.worker_id == "worker-b"
        assert job.attempts == 2
        assert queue.claim("worker-c") is None

        queue.mark_processing(job_id, "worker-b")
        queue.complete(job_id, "worker-b")
        assert queue.get_job(job_id).status == ScanJobStatus.done

    def test_swept_worker_cannot_fail_a_requeued_job(self, queue, session_factory):
        job_id = add_job(session_factory)
        queue.claim("worker-a")
        queue.requeue_stale(timeout_seconds=-1)

        with pytest.raises(JobOwnershipLost):
            queue.fail(job_id, "worker-a", "render timed out")

        job = queue.get_job(job_id)
        assert job.status == ScanJobStatus.pending
        assert job.error_message != "render timed out"
