from fastapi import APIRouter, Depends, status
from sqlalchemy.ext.asyncio import AsyncSession

from app.features.scan.schemas.scan import (
    ScanCreateRequest,
    ScanCreateResponse,
    ScanDeleteResponse,
    ScanResultsResponse,
    ScanStatusResponse,
)
from app.features.scan.services.scan import scan_service
from app.platform.db.session import get_db
from app.platform.logger import get_logger
from app.platform.response import api_response

logger = get_logger(__name__)

router = APIRouter(prefix="/scan", tags=["scan"])


@router.post("", status_code=status.HTTP_202_ACCEPTED)
async def create_scan(payload: ScanCreateRequest, db: AsyncSession = Depends(get_db)):
    """
    Queue an accessibility scan.

    The URL is validated and safety-checked before anything is stored; the
    scan itself runs on a worker. Poll /scan/{scan_id}/status or follow
    /scan/{scan_id}/stream for progress.
    """
    logger.info(f"Scan requested: url={payload.url}, org={payload.organization_id}, tier={payload.tier}")
    created = await scan_service.create_scan(
        db,
        url=payload.url,
        organization_id=payload.organization_id,
        tier=payload.tier,
        depth=payload.depth,
    )
    return api_response(
        data=ScanCreateResponse(**created),
        message="Scan queued",
        status_code=status.HTTP_202_ACCEPTED,
    )


@router.get("/jobs/{job_id}")
async def get_job_status(job_id: str, db: AsyncSession = Depends(get_db)):
    job_status = await scan_service.get_job_status(db, job_id)
    return api_response(data=ScanStatusResponse(**job_status), message=job_status["message"])


@router.get("/{scan_id}/status")
async def get_scan_status(scan_id: str, db: AsyncSession = Depends(get_db)):
    scan_status = await scan_service.get_scan_status(db, scan_id)
    return api_response(data=ScanStatusResponse(**scan_status), message=scan_status["message"])


@router.get("/{scan_id}/results")
async def get_scan_results(scan_id: str, db: AsyncSession = Depends(get_db)):
    """Scores, summary and violations. 409 until the scan has completed."""
    results = await scan_service.get_scan_results(db, scan_id)
    return api_response(data=ScanResultsResponse(**results), message="Scan results retrieved")


@router.delete("/{scan_id}")
async def delete_scan(scan_id: str, db: AsyncSession = Depends(get_db)):
    deleted = await scan_service.delete_scan(db, scan_id)
    return api_response(data=ScanDeleteResponse(**deleted), message="Scan deleted successfully")
