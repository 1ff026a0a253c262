from __future__ import annotations

from collections import Counter, defaultdict
from datetime import datetime
import hashlib

from notifyrelay.domain.notifications import (
    SUMMARY_REPORT,
    DeliveryAttempt,
    DeliveryStatus,
    NotificationEvent,
)
from notifyrelay.persistence.repos.history import HistoryStore


def digest_event_id(user_id: str, since: datetime, until: datetime) -> str:
    # One digest per user and window, stable across scheduler reruns.
    raw = f"{user_id}:{since.isoformat()}:{until.isoformat()}"
    return "digest_" + hashlib.sha256(raw.encode("utf-8")).hexdigest()[:24]


def build_digest_event(
    user_id: str,
    attempts: list[DeliveryAttempt],
    *,
    since: datetime,
    until: datetime,
) -> NotificationEvent:
    by_type = Counter(attempt.event_type for attempt in attempts)
    event_ids = sorted({attempt.event_id for attempt in attempts})
    summary = ", ".join(f"{event_type} x{count}" for event_type, count in sorted(by_type.items()))
    return NotificationEvent(
        event_id=digest_event_id(user_id, since, until),
        event_type=SUMMARY_REPORT,
        user_id=user_id,
        context={
            "periodStart": since.isoformat(),
            "periodEnd": until.isoformat(),
            "totalEvents": len(event_ids),
            "eventTypes": dict(sorted(by_type.items())),
            "eventSummary": summary,
            "eventIds": event_ids,
        },
        created_at=until,
    )


async def collect_digest_events(
    history: HistoryStore,
    *,
    since: datetime,
    until: datetime,
) -> list[NotificationEvent]:
    # Group batched attempts per user into one summary_report event each.
    batched = await history.list_by_status_since(DeliveryStatus.BATCHED, since, until)
    grouped: dict[str, list[DeliveryAttempt]] = defaultdict(list)
    for attempt in batched:
        grouped[attempt.user_id].append(attempt)
    return [
        build_digest_event(user_id, attempts, since=since, until=until)
        for user_id, attempts in sorted(grouped.items())
    ]
