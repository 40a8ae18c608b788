from datetime import datetime
from typing import Any, Dict, Optional
from urllib.parse import urlparse

from kombu.exceptions import KombuError
from sqlalchemy import delete, func, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession
from starlette.concurrency import run_in_threadpool

from app.features.scan.models.scan import TERMINAL_SCAN_STATUSES, Scan, ScanStatus
from app.features.scan.models.scan_job import ACTIVE_JOB_STATUSES, ScanJob
from app.features.scan.models.violation import Violation, ViolationSeverity
from app.features.scan.services.budget.budget_policy import (
    estimate_scan_seconds,
    priority_for_tier,
    validate_depth,
    validate_tier,
)
from app.features.scan.services.progress.progress_tracker import (
    STATUS_MESSAGES,
    ProgressTracker,
    compute_percent,
    progress_tracker,
)
from app.features.scan.services.queue.work_queue import new_job
from app.platform.db.base import utcnow
from app.platform.exceptions import JobInfrastructureError, JobStateError, NotFoundError, ValidationError
from app.platform.logger import get_logger
from app.platform.utils.url_safety import UrlSafetyFilter
from app.platform.utils.url_validator import require_valid_url

logger = get_logger(__name__)

DRAIN_TASK_NAME = "app.features.scan.workers.tasks.drain_scan_queue"

_SEVERITY_ORDER = {
    ViolationSeverity.critical: 0,
    ViolationSeverity.serious: 1,
    ViolationSeverity.moderate: 2,
    ViolationSeverity.minor: 3,
}


async def create_scan(
    db: AsyncSession,
    url: str,
    organization_id: str,
    tier: str,
    depth: str = "standard",
    safety: Optional[UrlSafetyFilter] = None,
) -> Dict[str, Any]:
    """
    Validate a scan request and enqueue it.

    The Scan row and its ScanJob are written in one transaction, so a job
    never exists without its scan (and vice versa).
    """
    url = require_valid_url(url)
    tier = validate_tier(tier)
    depth = validate_depth(depth)
    if not organization_id or not organization_id.strip():
        raise ValidationError("organization_id is required")

    # DNS lookup is blocking
    safety = safety or UrlSafetyFilter()
    await run_in_threadpool(safety.check_url, url)

    scan = Scan(
        url=url,
        domain=urlparse(url).hostname,
        org_id=organization_id.strip(),
        tier=tier,
        depth=depth,
        status=ScanStatus.queued,
    )
    try:
        db.add(scan)
        await db.flush()
        job = new_job(scan.id, url, tier, depth, priority_for_tier(tier))
        db.add(job)
        await db.commit()
    except SQLAlchemyError as e:
        await db.rollback()
        logger.error(f"Failed to enqueue scan for {url}: {e}")
        raise JobInfrastructureError("Could not enqueue scan") from e

    logger.info(f"[{scan.id}] Queued {tier}/{depth} scan of {url} as job {job.id}")
    kick_workers()

    return {
        "scan_id": scan.id,
        "job_id": job.id,
        "estimated_time": estimate_scan_seconds(tier, depth),
    }


def kick_workers() -> bool:
    """Best effort nudge so a Celery worker drains the queue now rather than at the next beat."""
    from app.platform.celery_app import celery_app

    try:
        celery_app.send_task(DRAIN_TASK_NAME)
        return True
    except (KombuError, OSError) as e:
        logger.warning(f"Could not signal workers, job waits for next poll: {e}")
        return False


def _status_payload(scan: Scan, job: Optional[ScanJob], tracker: ProgressTracker) -> Dict[str, Any]:
    state = tracker.get(scan.id)
    status_value = scan.status.value

    # Local progress wins unless the stored scan has already finished without it
    use_local = state is not None and (state.is_terminal or scan.status not in TERMINAL_SCAN_STATUSES)
    if use_local:
        payload = {
            "status": state.status,
            "progress_percent": state.percent,
            "message": state.current_step,
            "elapsed_seconds": state.elapsed_seconds,
            "pages_discovered": state.pages_discovered,
            "pages_scanned": state.pages_crawled,
            "current_page": state.current_page,
        }
    else:
        payload = {
            "status": status_value,
            "progress_percent": 100 if scan.status == ScanStatus.completed else compute_percent(status_value),
            "message": STATUS_MESSAGES.get(status_value, status_value),
            "elapsed_seconds": _elapsed_seconds(scan),
            "pages_scanned": scan.pages_scanned or 0,
        }

    payload["scan_id"] = scan.id
    payload["job_id"] = job.id if job is not None else None
    payload["attempts"] = job.attempts if job is not None else None
    if scan.status == ScanStatus.failed or scan.error_message:
        payload["error"] = scan.error_message
    return payload


def _elapsed_seconds(scan: Scan) -> int:
    if scan.started_at is None:
        return 0
    end: datetime = scan.completed_at or utcnow()
    return max(0, int((end - scan.started_at).total_seconds()))


async def _get_scan(db: AsyncSession, scan_id: str) -> Scan:
    scan = await db.get(Scan, scan_id)
    if scan is None:
        raise NotFoundError(f"Scan {scan_id} not found")
    return scan


async def _get_job_for_scan(db: AsyncSession, scan_id: str) -> Optional[ScanJob]:
    result = await db.execute(select(ScanJob).where(ScanJob.scan_id == scan_id))
    return result.scalar_one_or_none()


async def get_scan_status(
    db: AsyncSession, scan_id: str, tracker: ProgressTracker = progress_tracker
) -> Dict[str, Any]:
    scan = await _get_scan(db, scan_id)
    job = await _get_job_for_scan(db, scan_id)
    return _status_payload(scan, job, tracker)


async def get_job_status(
    db: AsyncSession, job_id: str, tracker: ProgressTracker = progress_tracker
) -> Dict[str, Any]:
    job = await db.get(ScanJob, job_id)
    if job is None:
        raise NotFoundError(f"Job {job_id} not found")
    scan = await _get_scan(db, job.scan_id)
    payload = _status_payload(scan, job, tracker)
    payload["job_status"] = job.status.value
    return payload


async def get_scan_results(db: AsyncSession, scan_id: str) -> Dict[str, Any]:
    scan = await _get_scan(db, scan_id)
    if scan.status != ScanStatus.completed:
        raise JobStateError(f"Scan {scan_id} is {scan.status.value}; results are available once it completes")

    result = await db.execute(select(Violation).where(Violation.scan_id == scan_id))
    violations = sorted(
        result.scalars().all(),
        key=lambda v: (_SEVERITY_ORDER[v.severity], v.page_url, v.wcag_criterion, v.id),
    )

    return {
        "scan_id": scan.id,
        "url": scan.url,
        "tier": scan.tier,
        "depth": scan.depth,
        "wcag_score": scan.wcag_score,
        "risk_score": scan.risk_score,
        "lawsuit_probability": scan.lawsuit_probability,
        "pages_scanned": scan.pages_scanned,
        "processing_time_ms": scan.processing_time_ms,
        "completed_at": scan.completed_at,
        "violation_counts": scan.violation_counts_by_severity,
        "summary": scan.summary or {},
        "violations": [_violation_payload(v) for v in violations],
    }


def _violation_payload(violation: Violation) -> Dict[str, Any]:
    return {
        "id": violation.id,
        "wcag_criterion": violation.wcag_criterion,
        "severity": violation.severity.value,
        "element_type": violation.element_type,
        "element_selector": violation.element_selector,
        "element_snippet": violation.element_snippet,
        "page_url": violation.page_url,
        "user_impact": violation.user_impact,
        "business_impact": violation.business_impact,
        "legal_risk": violation.legal_risk.value,
        "fix_description": violation.fix_description,
        "fix_snippet": violation.fix_snippet,
        "fix_effort": violation.fix_effort,
        "estimated_fix_effort": violation.estimated_fix_effort,
        "quick_win": violation.quick_win,
    }


async def delete_scan(db: AsyncSession, scan_id: str) -> Dict[str, Any]:
    """Data-retention delete: the scan, its job and its violations."""
    job = await _get_job_for_scan(db, scan_id)
    if job is not None and job.status in ACTIVE_JOB_STATUSES:
        raise JobStateError(f"Scan {scan_id} is running; delete it once it finishes")

    violation_count = (
        await db.execute(select(func.count(Violation.id)).where(Violation.scan_id == scan_id))
    ).scalar_one()

    try:
        result = await db.execute(delete(Scan).where(Scan.id == scan_id))
        await db.commit()
    except SQLAlchemyError as e:
        await db.rollback()
        logger.error(f"Error deleting scan {scan_id}: {e}")
        raise JobInfrastructureError("Could not delete scan") from e

    if result.rowcount == 0:
        raise NotFoundError(f"Scan {scan_id} not found")

    logger.info(f"[{scan_id}] Deleted scan with {violation_count} violations")
    return {"scan_id": scan_id, "deleted_violations": violation_count}
