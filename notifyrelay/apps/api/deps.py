from __future__ import annotations

from functools import lru_cache
from typing import Awaitable, Callable

from notifyrelay.core.config import get_settings
from notifyrelay.domain.notifications import NotificationEvent
from notifyrelay.persistence.db import SessionLocal
from notifyrelay.persistence.repos.history import HistoryStore, SqlHistoryStore
from notifyrelay.services.notifications.queue import enqueue_notification_event
from notifyrelay.services.resilience import CircuitBreakerRegistry, create_breaker_redis


EventEnqueuer = Callable[[NotificationEvent], Awaitable[bool]]


def get_history_store() -> HistoryStore:
    # Stores open their own short-lived sessions per call.
    return SqlHistoryStore(SessionLocal)


@lru_cache
def get_breaker_registry() -> CircuitBreakerRegistry:
    # The API only reads breaker state, which is visible here when workers share it through Redis.
    settings = get_settings()
    return CircuitBreakerRegistry.from_settings(settings, redis=create_breaker_redis(settings))


def get_event_enqueuer() -> EventEnqueuer:
    return enqueue_notification_event
