from __future__ import annotations

import asyncio
from datetime import datetime, timedelta, timezone
import logging

from arq import create_pool
from arq.connections import ArqRedis, RedisSettings

from notifyrelay.core.config import get_settings
from notifyrelay.domain.notifications import NotificationEvent


logger = logging.getLogger(__name__)

PROCESS_EVENT_JOB = "process_notification_event"

_queue_pool: ArqRedis | None = None
_queue_pool_loop: asyncio.AbstractEventLoop | None = None
_queue_lock = asyncio.Lock()


async def get_notification_queue_pool() -> ArqRedis:
    # Cache the arq pool per event loop to avoid reconnect churn for producers.
    global _queue_pool, _queue_pool_loop
    current_loop = asyncio.get_running_loop()
    if _queue_pool is not None and _queue_pool_loop == current_loop:
        return _queue_pool
    if _queue_pool is not None and _queue_pool_loop != current_loop:
        _queue_pool = None
    async with _queue_lock:
        if _queue_pool is None:
            settings = get_settings()
            _queue_pool = await create_pool(
                RedisSettings.from_dsn(settings.redis_url),
                default_queue_name=settings.notify_queue_name,
            )
            _queue_pool_loop = current_loop
    return _queue_pool


async def enqueue_notification_event(
    event: NotificationEvent,
    *,
    redis: ArqRedis | None = None,
    defer_ms: int = 0,
) -> bool:
    # The event id doubles as the job id so duplicate producers collapse at the queue.
    settings = get_settings()
    defer_delta = timedelta(milliseconds=max(0, int(defer_ms)))
    pool = redis or await get_notification_queue_pool()
    job = await pool.enqueue_job(
        PROCESS_EVENT_JOB,
        event.to_payload(),
        _job_id=event.event_id,
        _queue_name=settings.notify_queue_name,
        _defer_by=defer_delta if defer_delta.total_seconds() > 0 else None,
    )
    if job is None:
        logger.info("notification_enqueue_deduplicated event_id=%s", event.event_id)
        return False
    return True


def window_start(*, now: datetime, window_seconds: int) -> datetime:
    # Round down to a stable bucket boundary so reruns of a scheduled window agree.
    bucket = max(1, int(window_seconds))
    epoch = int(now.timestamp())
    rounded = epoch - (epoch % bucket)
    return datetime.fromtimestamp(rounded, tz=timezone.utc)
