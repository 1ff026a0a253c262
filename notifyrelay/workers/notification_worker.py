from __future__ import annotations

from datetime import datetime, timedelta, timezone
import logging

from arq import Retry, cron
from arq.connections import RedisSettings
import httpx

from notifyrelay.core.config import Settings, get_settings
from notifyrelay.core.errors import DeadlineExceededError
from notifyrelay.core.logging import configure_logging
from notifyrelay.domain.notifications import CriticalAlert
from notifyrelay.persistence.db import SessionLocal
from notifyrelay.persistence.repos.executions import SqlExecutionStore
from notifyrelay.persistence.repos.history import SqlHistoryStore
from notifyrelay.persistence.repos.preferences import SqlPreferenceStore
from notifyrelay.persistence.repos.templates import SqlTemplateStore
from notifyrelay.services.failure_detection import FailureDetector, alert_to_event
from notifyrelay.services.notifications.digest import collect_digest_events
from notifyrelay.services.notifications.pipeline import NotificationPipeline
from notifyrelay.services.notifications.queue import enqueue_notification_event, window_start
from notifyrelay.services.notifications.transports import build_transports
from notifyrelay.services.resilience import CircuitBreakerRegistry, create_breaker_redis


logger = logging.getLogger(__name__)


def build_pipeline(
    settings: Settings,
    *,
    breakers: CircuitBreakerRegistry,
    client: httpx.AsyncClient | None = None,
) -> NotificationPipeline:
    # Wire SQL-backed stores and HTTP transports for one worker process.
    return NotificationPipeline(
        preferences=SqlPreferenceStore(SessionLocal, settings),
        templates=SqlTemplateStore(SessionLocal),
        history=SqlHistoryStore(SessionLocal),
        transports=build_transports(settings, client=client),
        breakers=breakers,
        executions=SqlExecutionStore(SessionLocal),
        settings=settings,
    )


async def process_notification_event(ctx, payload: dict) -> str:
    # Run one event through the pipeline under the job deadline.
    settings = get_settings()
    pipeline: NotificationPipeline = ctx["pipeline"]
    try:
        result = await pipeline.process(payload, deadline_s=settings.notify_job_deadline_s)
    except DeadlineExceededError:
        # Hand the event back to the queue; another attempt starts from a fresh deadline.
        logger.warning(
            "notification_deadline_exceeded job_id=%s try=%s", ctx.get("job_id"), ctx.get("job_try", 1)
        )
        raise Retry(defer=settings.notify_redelivery_defer_s)
    return result.outcome.value


async def detect_failures(
    ctx,
    *,
    user_id: str,
    project_id: str | None = None,
    suite_execution_id: str | None = None,
    test_case_ids: list[str] | None = None,
) -> int:
    # Run both detectors for a finished run and enqueue any alerts as critical events.
    detector = FailureDetector(SqlExecutionStore(SessionLocal))
    alerts: list[CriticalAlert] = []
    if suite_execution_id:
        alert = await detector.detect_suite_failure_rate(suite_execution_id)
        if alert is not None:
            alerts.append(alert)
    for test_case_id in test_case_ids or []:
        alert = await detector.detect_consecutive_failures(test_case_id)
        if alert is not None:
            alerts.append(alert)
    for alert in alerts:
        event = alert_to_event(alert, user_id=user_id, project_id=project_id)
        await enqueue_notification_event(event, redis=ctx["redis"])
    return len(alerts)


async def flush_digests(ctx) -> int:
    # Turn the previous window's batched events into one summary per user.
    settings = get_settings()
    interval_s = max(60, int(settings.digest_interval_minutes) * 60)
    until = window_start(now=datetime.now(timezone.utc), window_seconds=interval_s)
    since = until - timedelta(seconds=interval_s)
    events = await collect_digest_events(SqlHistoryStore(SessionLocal), since=since, until=until)
    for event in events:
        await enqueue_notification_event(event, redis=ctx["redis"])
    logger.info("digests_enqueued count=%s since=%s until=%s", len(events), since.isoformat(), until.isoformat())
    return len(events)


async def prune_history(ctx) -> int:
    settings = get_settings()
    cutoff = datetime.now(timezone.utc) - timedelta(days=max(1, int(settings.history_retention_days)))
    removed = await SqlHistoryStore(SessionLocal).prune_before(cutoff)
    logger.info("delivery_history_pruned removed=%s cutoff=%s", removed, cutoff.isoformat())
    return removed


def digest_minutes(interval_minutes: int) -> set[int]:
    # Cron minutes must land on epoch-aligned window boundaries, so the interval divides
    # an hour or is a whole number of hours. Longer windows fire hourly and rely on
    # deterministic digest ids to collapse reruns of the same window.
    interval = max(1, int(interval_minutes))
    if interval >= 60:
        if interval % 60:
            raise ValueError(f"digest_interval_minutes={interval} must be a whole number of hours")
        return {0}
    if 60 % interval:
        raise ValueError(f"digest_interval_minutes={interval} must divide 60")
    return set(range(0, 60, interval))


async def _startup(ctx) -> None:
    # Build one pipeline per worker process; breaker state lives for the process lifetime.
    configure_logging()
    settings = get_settings()
    breaker_redis = create_breaker_redis(settings)
    client = httpx.AsyncClient()
    ctx["breaker_redis"] = breaker_redis
    ctx["http_client"] = client
    ctx["pipeline"] = build_pipeline(
        settings,
        breakers=CircuitBreakerRegistry.from_settings(settings, redis=breaker_redis),
        client=client,
    )


async def _shutdown(ctx) -> None:
    # Close outbound clients so sockets do not leak across worker restarts.
    client = ctx.get("http_client")
    if client is not None:
        await client.aclose()
    breaker_redis = ctx.get("breaker_redis")
    if breaker_redis is not None:
        await breaker_redis.aclose()


class WorkerSettings:
    # Keep worker settings as class attributes for arq CLI compatibility.
    settings = get_settings()
    redis_settings = RedisSettings.from_dsn(settings.redis_url)
    queue_name = settings.notify_queue_name
    max_tries = max(1, int(settings.notify_max_tries))
    # arq's own timeout sits above the pipeline deadline so Retry is raised first.
    job_timeout = int(settings.notify_job_deadline_s) + 10
    functions = [process_notification_event, detect_failures]
    cron_jobs = [
        cron(flush_digests, minute=digest_minutes(settings.digest_interval_minutes), run_at_startup=False),
        cron(prune_history, hour={3}, minute={30}),
    ]
    on_startup = _startup
    on_shutdown = _shutdown
