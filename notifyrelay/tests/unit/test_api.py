from __future__ import annotations

from datetime import timedelta

import pytest
from httpx import ASGITransport, AsyncClient

from notifyrelay.apps.api.deps import get_breaker_registry, get_event_enqueuer, get_history_store
from notifyrelay.apps.api.main import create_app
from notifyrelay.domain.notifications import Channel, DeliveryAttempt, DeliveryStatus, NotificationEvent
from notifyrelay.persistence.repos.history import InMemoryHistoryStore
from notifyrelay.services.resilience import CircuitBreakerRegistry
from notifyrelay.tests.utils.fakes import FIXED_NOW


class _Enqueuer:
    def __init__(self) -> None:
        self.events: list[NotificationEvent] = []

    async def __call__(self, event: NotificationEvent) -> bool:
        # Second submission of the same id is collapsed like the real queue does.
        if any(existing.event_id == event.event_id for existing in self.events):
            return False
        self.events.append(event)
        return True


async def _seed_history() -> InMemoryHistoryStore:
    history = InMemoryHistoryStore()
    event = NotificationEvent(event_id="evt-1", event_type="test_failure", user_id="u-1")
    other = NotificationEvent(event_id="evt-2", event_type="test_completion", user_id="u-2")
    await history.append(
        DeliveryAttempt.new(
            event,
            channel=Channel.WEBHOOK,
            status=DeliveryStatus.FAILED,
            timestamp=FIXED_NOW - timedelta(minutes=2),
            reason="exhausted_retries:timeout",
            attempts=3,
        )
    )
    await history.append(
        DeliveryAttempt.new(
            event,
            channel=Channel.BROADCAST,
            status=DeliveryStatus.SENT,
            timestamp=FIXED_NOW - timedelta(minutes=1),
            fallback_from=Channel.WEBHOOK,
            attempts=1,
        )
    )
    await history.append(
        DeliveryAttempt.new(other, channel=Channel.EMAIL, status=DeliveryStatus.SENT, timestamp=FIXED_NOW)
    )
    return history


async def _client(history: InMemoryHistoryStore, enqueuer: _Enqueuer) -> AsyncClient:
    app = create_app()
    app.dependency_overrides[get_history_store] = lambda: history
    app.dependency_overrides[get_event_enqueuer] = lambda: enqueuer
    app.dependency_overrides[get_breaker_registry] = lambda: CircuitBreakerRegistry()
    return AsyncClient(transport=ASGITransport(app=app), base_url="http://test")


@pytest.mark.asyncio
async def test_submit_event_is_accepted_and_enqueued() -> None:
    enqueuer = _Enqueuer()
    payload = {"eventId": "evt-9", "eventType": "test_failure", "userId": "u-1", "context": {"testName": "login"}}
    async with await _client(InMemoryHistoryStore(), enqueuer) as client:
        response = await client.post("/v1/notifications/events", json=payload, headers={"X-Request-Id": "req-1"})
        repeat = await client.post("/v1/notifications/events", json=payload)

    assert response.status_code == 202
    body = response.json()
    assert body["data"] == {"event_id": "evt-9", "queued": True}
    assert body["meta"]["request_id"] == "req-1"
    assert response.headers["X-Request-Id"] == "req-1"
    assert repeat.json()["data"]["queued"] is False
    assert [event.context for event in enqueuer.events] == [{"testName": "login"}]


@pytest.mark.asyncio
@pytest.mark.parametrize(
    ("payload", "reason", "code"),
    [
        ({"eventId": "evt-1", "eventType": "deploy_finished", "userId": "u-1"}, "unknown_event_type", "EVENT_TYPE_UNKNOWN"),
        ({"eventType": "test_failure", "userId": "u-1"}, "malformed", "EVENT_MALFORMED"),
        ({"eventId": "evt-1", "eventType": "test_failure", "userId": "u-1", "channelHint": "pager"}, "malformed", "EVENT_MALFORMED"),
    ],
)
async def test_invalid_events_are_rejected_at_the_edge(payload: dict, reason: str, code: str) -> None:
    enqueuer = _Enqueuer()
    async with await _client(InMemoryHistoryStore(), enqueuer) as client:
        response = await client.post("/v1/notifications/events", json=payload)
    assert response.status_code == 422
    error = response.json()["error"]
    assert error["code"] == code
    assert error["details"] == {"reason": reason}
    assert enqueuer.events == []


@pytest.mark.asyncio
async def test_history_filters_and_event_trail() -> None:
    history = await _seed_history()
    async with await _client(history, _Enqueuer()) as client:
        failed = await client.get("/v1/notifications/history", params={"user_id": "u-1", "status": "failed"})
        newest = await client.get("/v1/notifications/history", params={"limit": 2})
        trail = await client.get("/v1/notifications/events/evt-1/attempts")

    assert [row["reason"] for row in failed.json()["data"]] == ["exhausted_retries:timeout"]
    assert [row["event_id"] for row in newest.json()["data"]] == ["evt-2", "evt-1"]
    rows = trail.json()["data"]
    assert [(row["channel"], row["status"]) for row in rows] == [("webhook", "failed"), ("broadcast", "sent")]
    assert rows[1]["fallback_from"] == "webhook"
    assert trail.json()["meta"]["count"] == 2
    assert failed.json()["meta"]["api_version"] == "v1"


@pytest.mark.asyncio
async def test_attempt_lookup_and_not_found() -> None:
    history = await _seed_history()
    attempt_id = history.attempts[0].attempt_id
    async with await _client(history, _Enqueuer()) as client:
        found = await client.get(f"/v1/notifications/attempts/{attempt_id}")
        missing = await client.get("/v1/notifications/attempts/nope")

    assert found.status_code == 200
    assert found.json()["data"]["attempts"] == 3
    assert missing.status_code == 404
    assert missing.json()["error"]["code"] == "NOT_FOUND"
    assert missing.json()["error"]["message"] == "Delivery attempt not found"
    assert found.json()["meta"]["count"] is None


@pytest.mark.asyncio
async def test_framework_errors_use_the_error_envelope() -> None:
    async with await _client(InMemoryHistoryStore(), _Enqueuer()) as client:
        unknown_route = await client.get("/v1/notifications/nowhere", headers={"X-Request-Id": "req-7"})
        bad_limit = await client.get("/v1/notifications/history", params={"limit": 0})

    assert unknown_route.status_code == 404
    assert unknown_route.json()["error"]["code"] == "NOT_FOUND"
    assert unknown_route.json()["meta"]["request_id"] == "req-7"
    assert bad_limit.status_code == 422
    body = bad_limit.json()
    assert body["error"]["code"] == "REQUEST_INVALID"
    assert body["error"]["details"]["errors"][0]["loc"] == ["query", "limit"]


@pytest.mark.asyncio
async def test_health_and_ops_endpoints() -> None:
    async with await _client(InMemoryHistoryStore(), _Enqueuer()) as client:
        bare = await client.get("/health")
        versioned = await client.get("/v1/health")
        breakers = await client.get("/v1/ops/breakers")
        metrics = await client.get("/v1/ops/metrics")

    assert bare.json() == {"status": "ok"}
    assert versioned.json()["data"] == {"status": "ok"}
    states = {row["key"]: row["state"] for row in breakers.json()["data"]}
    assert states == {channel.value: "unknown" for channel in Channel}
    assert set(metrics.json()["data"]) == {"counters", "gauges", "channels"}
