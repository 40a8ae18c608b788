"""
SSE (Server-Sent Events) helper for publishing real-time progress updates via Redis pub/sub.

Workers call publish_scan_progress() as a scan moves through its states; the
stream endpoint subscribes to the same channel and forwards the events to the
browser. Publishing is best effort: a Redis outage never fails a scan.
"""

import json
from datetime import datetime, timezone
from typing import Optional

import redis

from app.platform.config import settings
from app.platform.logger import get_logger

logger = get_logger(__name__)

# Redis client for pub/sub
_redis_client: Optional[redis.Redis] = None


def progress_channel(scan_id: str) -> str:
    return f"scan_progress:{scan_id}"


def get_redis_client() -> redis.Redis:
    """
    Get or create a Redis client for pub/sub operations.

    Returns:
        Redis client instance
    """
    global _redis_client

    if _redis_client is None:
        _redis_client = redis.from_url(settings.REDIS_URL, decode_responses=True)
        logger.info(f"Initialized Redis client for SSE: {settings.REDIS_URL}")

    return _redis_client


def publish_scan_progress(
    scan_id: str,
    status: str,
    progress: int,
    message: str,
    **extra_data
) -> bool:
    """
    Publish a scan progress event to Redis for SSE streaming.

    Args:
        scan_id: The scan ID (channel is scan_progress:{scan_id})
        status: Scan status (queued, starting, crawling, analyzing, generating_report, completed, failed)
        progress: Progress percentage (0-100)
        message: Human-readable status message
        **extra_data: Additional fields (pages_discovered, pages_crawled, current_page, ...)

    Returns:
        True if published successfully, False otherwise
    """
    if not settings.PUBLISH_PROGRESS:
        return False

    event_data = {
        "scan_id": scan_id,
        "status": status,
        "progress": progress,
        "message": message,
        "timestamp": datetime.now(timezone.utc).isoformat(),
        **extra_data
    }

    try:
        channel = progress_channel(scan_id)
        get_redis_client().publish(channel, json.dumps(event_data, default=str))
        logger.debug(f"Published SSE event to {channel}: {message} ({progress}%)")
        return True
    except (redis.RedisError, OSError) as e:
        logger.error(f"[{scan_id}] Failed to publish SSE event: {e}")
        return False
