from fastapi import APIRouter, status
from starlette.concurrency import run_in_threadpool

from app.features.scan.services.queue.work_queue import WorkQueue
from app.platform.config import settings
from app.platform.exceptions import JobInfrastructureError
from app.platform.logger import get_logger
from app.platform.response import api_response

logger = get_logger(__name__)

router = APIRouter()

# A worker that has not beaten for this long is not counted as live
LIVE_WORKER_WINDOW_SECONDS = 120


@router.get("/health", tags=["health"])
async def health_check():
    queue = WorkQueue()
    try:
        workers = await run_in_threadpool(queue.live_workers, LIVE_WORKER_WINDOW_SECONDS)
        pending = await run_in_threadpool(queue.pending_count)
    except JobInfrastructureError as e:
        logger.error(f"Health check: queue store unavailable: {e.message}")
        return api_response(
            data={"status": "degraded", "service": settings.APP_NAME, "database": "unavailable"},
            message="Queue store unavailable",
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
        )

    return api_response(
        data={
            "status": "ok",
            "service": settings.APP_NAME,
            "database": "ok",
            "live_workers": len(workers),
            "pending_jobs": pending,
        },
        message="Service is healthy",
        status_code=status.HTTP_200_OK,
    )
