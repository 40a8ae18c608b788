"""
SSE (Server-Sent Events) endpoint for real-time scan progress updates.

Sends the current state first, then relays the events workers publish on the
Redis channel scan_progress:{scan_id}, with heartbeats in between, until the
scan reaches a terminal state or the connection cap is hit.
"""
import asyncio
import json
from typing import Any, AsyncGenerator, Awaitable, Callable, Dict

import redis.asyncio as aioredis
from fastapi import APIRouter, Depends
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession
from sse_starlette.sse import EventSourceResponse

from app.features.scan.services.scan import scan_service
from app.platform.config import settings
from app.platform.db.session import SessionLocal, get_db
from app.platform.exceptions import NotFoundError
from app.platform.logger import get_logger
from app.platform.services.sse_helper import progress_channel

logger = get_logger(__name__)

router = APIRouter(prefix="/scan", tags=["scan"])

STREAM_TIMEOUT_SECONDS = 300  # 5 minutes max connection time
HEARTBEAT_SECONDS = 30.0
TERMINAL_STATUSES = ("completed", "failed")


def get_redis_pubsub_client() -> aioredis.Redis:
    return aioredis.from_url(settings.REDIS_URL, decode_responses=True)


async def load_scan_state(scan_id: str) -> Dict[str, Any]:
    """Current status from the store; the stream outlives the request's session."""
    async with SessionLocal() as db:
        return await scan_service.get_scan_status(db, scan_id)


def _complete_event(scan_id: str, status: str) -> dict:
    return {
        "event": "complete",
        "data": json.dumps({"scan_id": scan_id, "status": status, "final": True}),
    }


async def scan_progress_stream(
    scan_id: str,
    initial_state: Dict[str, Any],
    load_state: Callable[[str], Awaitable[Dict[str, Any]]] = load_scan_state,
) -> AsyncGenerator[dict, None]:
    """
    Stream scan progress events for a specific scan.

    The stored state is read again right after subscribing and on every
    heartbeat, so a scan that finished before the subscription still ends the
    stream with a complete event.

    Yields:
        Dict events in SSE format (progress, heartbeat, complete, timeout, error)
    """
    yield {"event": "progress", "data": json.dumps(initial_state, default=str)}

    # If already completed/failed, send completion event and close
    if initial_state["status"] in TERMINAL_STATUSES:
        yield _complete_event(scan_id, initial_state["status"])
        return

    redis_client = get_redis_pubsub_client()
    pubsub = redis_client.pubsub()
    channel = progress_channel(scan_id)

    subscribed = False
    try:
        await pubsub.subscribe(channel)
        subscribed = True
        logger.info(f"SSE: Subscribed to {channel}")

        loop = asyncio.get_running_loop()
        start_time = loop.time()
        state = await load_state(scan_id)

        while True:
            if state["status"] in TERMINAL_STATUSES:
                yield {"event": "progress", "data": json.dumps(state, default=str)}
                yield _complete_event(scan_id, state["status"])
                break

            if loop.time() - start_time > STREAM_TIMEOUT_SECONDS:
                logger.info(f"SSE: Connection timeout for scan {scan_id}")
                yield {"event": "timeout", "data": json.dumps({"message": "Connection timeout"})}
                break

            message = await pubsub.get_message(ignore_subscribe_messages=True, timeout=HEARTBEAT_SECONDS)
            if not message or message["type"] != "message":
                state = await load_state(scan_id)
                if state["status"] not in TERMINAL_STATUSES:
                    yield {"event": "heartbeat", "data": json.dumps({"timestamp": loop.time()})}
                continue

            event_data = json.loads(message["data"])
            yield {"event": "progress", "data": json.dumps(event_data)}

            event_status = event_data.get("status")
            if event_status in TERMINAL_STATUSES:
                yield _complete_event(scan_id, event_status)
                break

    except NotFoundError:
        logger.info(f"SSE: Scan {scan_id} was deleted while streaming")
        yield {"event": "error", "data": json.dumps({"error": "Scan no longer exists"})}
    except (aioredis.RedisError, OSError, SQLAlchemyError) as e:
        logger.error(f"SSE: Error streaming scan {scan_id}: {e}")
        yield {"event": "error", "data": json.dumps({"error": "Progress stream unavailable"})}
    finally:
        if subscribed:
            await pubsub.unsubscribe(channel)
        await pubsub.aclose()
        await redis_client.aclose()
        logger.info(f"SSE: Closed connection for scan {scan_id}")


@router.get("/{scan_id}/stream", summary="Stream scan progress (SSE)")
async def stream_scan_progress(scan_id: str, db: AsyncSession = Depends(get_db)):
    """
    Event types:
    - `progress`: status, progress percent, message and page counters
    - `complete`: scan completed or failed (connection closes)
    - `heartbeat`: keep-alive ping every 30 seconds
    - `timeout`: connection cap reached (5 minutes)
    - `error`: progress stream unavailable
    """
    # Resolve before streaming so an unknown scan is a plain 404
    initial_state = await scan_service.get_scan_status(db, scan_id)
    logger.info(f"SSE: Client connected for scan {scan_id}")

    return EventSourceResponse(
        scan_progress_stream(scan_id, initial_state),
        media_type="text/event-stream",
        headers={
            "Cache-Control": "no-cache",
            "Connection": "keep-alive",
            "X-Accel-Buffering": "no",  # Disable nginx buffering
        },
    )
