"""
Durable scan work queue on top of the scan_jobs table.

Claiming is a compare-and-set: candidates are read in priority order (locked
with FOR UPDATE SKIP LOCKED on PostgreSQL) and then moved to 'claimed' with an
UPDATE guarded on status = 'pending'. Only the worker whose UPDATE touches the
row owns the job, so two workers can never hold the same job even on engines
without row locks.

Every later transition (mark_processing, complete, fail) is guarded on the
claiming worker_id as well as the status. Once the stale sweep has taken a job
back, the worker that lost it gets JobOwnershipLost and cannot touch the job
again.
"""
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import timedelta
from typing import List, Optional

from sqlalchemy import delete, func, select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import sessionmaker

from app.features.scan.models.scan import Scan, ScanStatus
from app.features.scan.models.scan_job import (
    ACTIVE_JOB_STATUSES,
    TERMINAL_JOB_STATUSES,
    ScanJob,
    ScanJobStatus,
)
from app.features.scan.models.worker_heartbeat import WorkerHeartbeat
from app.platform.config import settings
from app.platform.db.base import utcnow
from app.platform.db.session import sync_session_scope
from app.platform.exceptions import JobInfrastructureError, JobOwnershipLost, JobStateError, NotFoundError
from app.platform.logger import get_logger

logger = get_logger(__name__)

# Candidates read per batch; a claim keeps reading batches until it wins a row or none are left
CLAIM_BATCH_SIZE = 5


@dataclass
class JobHandle:
    job_id: str
    scan_id: str
    url: str
    tier: str
    depth: str
    priority: int
    attempts: int
    max_attempts: int
    worker_id: Optional[str] = None

    @classmethod
    def from_job(cls, job: ScanJob) -> "JobHandle":
        return cls(
            job_id=job.id,
            scan_id=job.scan_id,
            url=job.url,
            tier=job.tier,
            depth=job.depth,
            priority=job.priority,
            attempts=job.attempts,
            max_attempts=job.max_attempts,
            worker_id=job.worker_id,
        )


def new_job(scan_id: str, url: str, tier: str, depth: str, priority: int, max_attempts: int = None) -> ScanJob:
    """Unsaved pending ScanJob, for callers that add it inside their own transaction."""
    return ScanJob(
        scan_id=scan_id,
        url=url,
        tier=tier,
        depth=depth,
        priority=priority,
        status=ScanJobStatus.pending,
        attempts=0,
        max_attempts=max_attempts or settings.JOB_MAX_ATTEMPTS,
    )


class WorkQueue:
    def __init__(self, session_factory: sessionmaker = None):
        self.session_factory = session_factory

    @contextmanager
    def _transaction(self):
        try:
            with sync_session_scope(self.session_factory) as session:
                yield session
        except SQLAlchemyError as e:
            logger.error(f"Work queue store error: {e}")
            raise JobInfrastructureError(f"Work queue store unavailable: {type(e).__name__}") from e

    def enqueue(
        self,
        scan_id: str,
        url: str,
        tier: str,
        depth: str,
        priority: int,
        max_attempts: int = None,
    ) -> str:
        with self._transaction() as session:
            job = new_job(scan_id, url, tier, depth, priority, max_attempts)
            session.add(job)
            session.flush()
            job_id = job.id
        logger.info(f"[{job_id}] Enqueued scan {scan_id} ({tier}/{depth}, priority {priority})")
        return job_id

    def claim(self, worker_id: str) -> Optional[JobHandle]:
        """Claim the best pending job for worker_id, or None. Never blocks on other workers."""
        with self._transaction() as session:
            lock_rows = session.get_bind().dialect.name == "postgresql"
            lost: List[str] = []
            while True:
                candidates = (
                    select(ScanJob.id)
                    .where(
                        ScanJob.status == ScanJobStatus.pending,
                        ScanJob.attempts < ScanJob.max_attempts,
                    )
                    .order_by(ScanJob.priority.desc(), ScanJob.created_at.asc(), ScanJob.id.asc())
                    .limit(CLAIM_BATCH_SIZE)
                )
                if lost:
                    candidates = candidates.where(ScanJob.id.notin_(lost))
                if lock_rows:
                    candidates = candidates.with_for_update(skip_locked=True)

                batch = session.execute(candidates).scalars().all()
                if not batch:
                    return None

                now = utcnow()
                for job_id in batch:
                    result = session.execute(
                        update(ScanJob)
                        .where(ScanJob.id == job_id, ScanJob.status == ScanJobStatus.pending)
                        .values(
                            status=ScanJobStatus.claimed,
                            worker_id=worker_id,
                            claimed_at=now,
                            attempts=ScanJob.attempts + 1,
                            updated_at=now,
                        )
                        .execution_options(synchronize_session=False)
                    )
                    if result.rowcount == 1:
                        job = session.get(ScanJob, job_id, populate_existing=True)
                        handle = JobHandle.from_job(job)
                        logger.info(
                            f"[{job_id}] Claimed by {worker_id} (attempt {handle.attempts}/{handle.max_attempts})"
                        )
                        return handle
                    lost.append(job_id)

    def mark_processing(self, job_id: str, worker_id: str) -> None:
        with self._transaction() as session:
            result = session.execute(
                update(ScanJob)
                .where(
                    ScanJob.id == job_id,
                    ScanJob.status == ScanJobStatus.claimed,
                    ScanJob.worker_id == worker_id,
                )
                .values(status=ScanJobStatus.processing, updated_at=utcnow())
                .execution_options(synchronize_session=False)
            )
            if result.rowcount != 1:
                self._raise_for_state(session, job_id, worker_id, "mark processing")

    def complete(self, job_id: str, worker_id: str) -> None:
        with self._transaction() as session:
            now = utcnow()
            result = session.execute(
                update(ScanJob)
                .where(
                    ScanJob.id == job_id,
                    ScanJob.status.in_(ACTIVE_JOB_STATUSES),
                    ScanJob.worker_id == worker_id,
                )
                .values(status=ScanJobStatus.done, completed_at=now, error_message=None, updated_at=now)
                .execution_options(synchronize_session=False)
            )
            if result.rowcount != 1:
                self._raise_for_state(session, job_id, worker_id, "complete")
        logger.info(f"[{job_id}] Job done")

    def fail(self, job_id: str, worker_id: str, error: str, permanent: bool = False) -> ScanJobStatus:
        """
        Record a failure by the worker holding the job. Returns pending when the
        job will be retried, failed when dead-lettered. permanent=True
        dead-letters at once (the request itself is bad).

        Raises JobOwnershipLost when the job was swept or reclaimed since
        worker_id claimed it; the current holder's run is left alone.
        """
        with self._transaction() as session:
            job = session.get(ScanJob, job_id)
            if job is None or job.status not in ACTIVE_JOB_STATUSES or job.worker_id != worker_id:
                self._raise_for_state(session, job_id, worker_id, "fail")

            retry = not permanent and job.attempts < job.max_attempts
            new_status = ScanJobStatus.pending if retry else ScanJobStatus.failed
            now = utcnow()
            values = {
                "status": new_status,
                "error_message": (error or "")[:2000],
                "failed_at": now,
                "updated_at": now,
            }
            if retry:
                values.update(worker_id=None, claimed_at=None)

            result = session.execute(
                update(ScanJob)
                .where(
                    ScanJob.id == job_id,
                    ScanJob.status == job.status,
                    ScanJob.worker_id == worker_id,
                )
                .values(**values)
                .execution_options(synchronize_session=False)
            )
            if result.rowcount != 1:
                self._raise_for_state(session, job_id, worker_id, "fail")
            attempts, max_attempts = job.attempts, job.max_attempts

        if retry:
            logger.warning(f"[{job_id}] Attempt {attempts}/{max_attempts} failed, requeued: {error}")
        else:
            logger.error(f"[{job_id}] Dead-lettered after {attempts} attempts: {error}")
        return new_status

    def requeue_stale(self, timeout_seconds: float = None) -> int:
        """Return jobs held too long by a worker to pending (or dead-letter them)."""
        timeout = settings.STALE_JOB_TIMEOUT_SECONDS if timeout_seconds is None else timeout_seconds
        cutoff = utcnow() - timedelta(seconds=timeout)
        recovered = 0

        with self._transaction() as session:
            stale = session.execute(
                select(ScanJob).where(
                    ScanJob.status.in_(ACTIVE_JOB_STATUSES),
                    ScanJob.claimed_at < cutoff,
                )
            ).scalars().all()

            now = utcnow()
            for job in stale:
                retry = job.attempts < job.max_attempts
                values = {
                    "status": ScanJobStatus.pending if retry else ScanJobStatus.failed,
                    "error_message": f"Worker {job.worker_id} stopped responding",
                    "updated_at": now,
                }
                if retry:
                    values.update(worker_id=None, claimed_at=None)
                else:
                    values["failed_at"] = now
                result = session.execute(
                    update(ScanJob)
                    .where(ScanJob.id == job.id, ScanJob.status == job.status)
                    .values(**values)
                    .execution_options(synchronize_session=False)
                )
                recovered += result.rowcount

        if recovered:
            logger.warning(f"Recovered {recovered} stale jobs (timeout {timeout}s)")
        return recovered

    def cleanup_finished(self, older_than_days: int = None) -> int:
        days = settings.JOB_RETENTION_DAYS if older_than_days is None else older_than_days
        cutoff = utcnow() - timedelta(days=days)
        with self._transaction() as session:
            result = session.execute(
                delete(ScanJob)
                .where(ScanJob.status.in_(TERMINAL_JOB_STATUSES), ScanJob.updated_at < cutoff)
                .execution_options(synchronize_session=False)
            )
            deleted = result.rowcount
        if deleted:
            logger.info(f"Deleted {deleted} finished jobs older than {days} days")
        return deleted

    def requeue(self, job_id: str, reset_attempts: bool = False) -> str:
        """
        Operator action: put a dead-lettered job back in the queue. A failed
        scan goes back to queued in the same transaction. Returns the scan id.
        """
        with self._transaction() as session:
            job = session.get(ScanJob, job_id)
            if job is None:
                raise NotFoundError(f"Job {job_id} not found")
            if job.status != ScanJobStatus.failed:
                raise JobStateError(f"Only failed jobs can be requeued; job {job_id} is {job.status.value}")
            if job.attempts >= job.max_attempts and not reset_attempts:
                raise JobStateError(f"Job {job_id} has no attempts left; pass reset_attempts to retry it")

            job.status = ScanJobStatus.pending
            job.worker_id = None
            job.claimed_at = None
            job.error_message = None
            if reset_attempts:
                job.attempts = 0

            # Operator override: the scan leaves its terminal failed state with the job
            scan = session.get(Scan, job.scan_id)
            if scan is not None and scan.status == ScanStatus.failed:
                scan.status = ScanStatus.queued
                scan.completed_at = None
            scan_id = job.scan_id
        logger.info(f"[{job_id}] Requeued by operator (reset_attempts={reset_attempts})")
        return scan_id

    def get_job(self, job_id: str) -> Optional[ScanJob]:
        with self._transaction() as session:
            return session.get(ScanJob, job_id)

    def heartbeat(self, worker_id: str, processed: int = 0, status: str = "active") -> None:
        with self._transaction() as session:
            now = utcnow()
            beat = session.execute(
                select(WorkerHeartbeat).where(WorkerHeartbeat.worker_id == worker_id)
            ).scalar_one_or_none()
            if beat is None:
                beat = WorkerHeartbeat(worker_id=worker_id, last_heartbeat=now, status=status, jobs_processed=0)
                session.add(beat)
            beat.last_heartbeat = now
            beat.status = status
            if processed:
                beat.jobs_processed = (beat.jobs_processed or 0) + processed
                beat.last_job_at = now

    def live_workers(self, within_seconds: float = 120) -> List[str]:
        cutoff = utcnow() - timedelta(seconds=within_seconds)
        with self._transaction() as session:
            return list(session.execute(
                select(WorkerHeartbeat.worker_id).where(
                    WorkerHeartbeat.last_heartbeat >= cutoff,
                    WorkerHeartbeat.status != "stopped",
                )
            ).scalars().all())

    def pending_count(self) -> int:
        with self._transaction() as session:
            return session.execute(
                select(func.count(ScanJob.id)).where(ScanJob.status == ScanJobStatus.pending)
            ).scalar_one()

    @staticmethod
    def _raise_for_state(session, job_id: str, worker_id: str, action: str):
        job = session.get(ScanJob, job_id, populate_existing=True)
        if job is None:
            raise NotFoundError(f"Job {job_id} not found")
        if job.status not in TERMINAL_JOB_STATUSES and job.worker_id != worker_id:
            holder = job.worker_id or "nobody"
            raise JobOwnershipLost(
                f"Cannot {action} job {job_id} for {worker_id}: it is {job.status.value}, held by {holder}"
            )
        raise JobStateError(f"Cannot {action} job {job_id}: status is {job.status.value}")
