from __future__ import annotations

from datetime import timedelta

import pytest

from notifyrelay.core.errors import DeadlineExceededError, PermanentRejectionError, ServerError
from notifyrelay.domain.notifications import (
    Channel,
    ContactInfo,
    DeliveryStatus,
    ExecutionRecord,
    FrequencyLimit,
    Outcome,
    UserPreferences,
)
from notifyrelay.persistence.repos.executions import InMemoryExecutionStore
from notifyrelay.persistence.repos.history import InMemoryHistoryStore
from notifyrelay.persistence.repos.preferences import InMemoryPreferenceStore
from notifyrelay.persistence.repos.templates import InMemoryTemplateStore
from notifyrelay.services.notifications.pipeline import NotificationPipeline, StageDecision
from notifyrelay.services.notifications.transports import OutboundMessage
from notifyrelay.services.resilience import CircuitBreakerRegistry, ResilienceConfig
from notifyrelay.services.telemetry import counters_snapshot
from notifyrelay.tests.utils.fakes import (
    FIXED_NOW,
    FakeTransport,
    FixedClock,
    make_preferences,
    make_settings,
    make_template,
    no_sleep,
    quiet_all_day,
)


class _Harness:
    def __init__(
        self,
        *,
        preferences: UserPreferences | None = None,
        with_templates: bool = True,
        failure_threshold: int = 5,
        max_attempts: int = 3,
        executions: InMemoryExecutionStore | None = None,
    ) -> None:
        self.preferences = InMemoryPreferenceStore(make_settings())
        self._initial = preferences or make_preferences()
        templates = [make_template("default", channel) for channel in Channel] if with_templates else []
        self.templates = InMemoryTemplateStore(templates)
        self.history = InMemoryHistoryStore()
        self.transports = {channel: FakeTransport() for channel in Channel}
        self.executions = executions
        self.clock = FixedClock()
        self.pipeline = NotificationPipeline(
            preferences=self.preferences,
            templates=self.templates,
            history=self.history,
            transports=self.transports,
            breakers=CircuitBreakerRegistry(
                default_config=ResilienceConfig(
                    max_attempts=max_attempts,
                    initial_delay_ms=1,
                    max_delay_ms=1,
                    failure_threshold=failure_threshold,
                )
            ),
            executions=executions,
            clock=self.clock,
            sleep=no_sleep,
            settings=make_settings(),
        )

    async def setup(self) -> _Harness:
        await self.preferences.put(self._initial)
        return self

    def calls(self, channel: Channel) -> int:
        return len(self.transports[channel].calls)


def _raw(event_id: str, event_type: str = "test_failure", **extra) -> dict:
    payload = {"eventId": event_id, "eventType": event_type, "userId": "u-1", "projectId": "p-1", "context": {}}
    payload.update(extra)
    return payload


@pytest.mark.asyncio
async def test_webhook_delivery_without_fallback() -> None:
    harness = await _Harness().setup()
    result = await harness.pipeline.process(_raw("evt-1", context={"testName": "checkout"}))

    assert result.outcome == Outcome.DELIVERED
    assert result.reason is None
    assert result.dead_letter is False
    assert [(a.channel, a.status) for a in harness.history.attempts] == [(Channel.WEBHOOK, DeliveryStatus.SENT)]
    attempt = harness.history.attempts[0]
    assert attempt.attempts == 1
    assert attempt.message_id == "msg-1"
    assert attempt.recipient == "https://hooks.example.com/notify"
    assert harness.calls(Channel.BROADCAST) == 0
    message: OutboundMessage = harness.transports[Channel.WEBHOOK].calls[0].message
    assert message.body == "test_failure for u-1"
    assert [decision.stage for decision in result.trace] == [
        "parse",
        "preferences",
        "quiet_hours",
        "frequency",
        "template",
        "render",
        "route",
    ]


@pytest.mark.asyncio
async def test_disabled_channel_is_suppressed_without_transport_calls() -> None:
    harness = await _Harness(preferences=make_preferences(channels_enabled=frozenset({Channel.EMAIL}))).setup()
    result = await harness.pipeline.process(_raw("evt-1", channelHint="webhook"))

    assert result.outcome == Outcome.SUPPRESSED
    assert result.reason == "preference_disabled"
    assert [(a.channel, a.status, a.reason) for a in harness.history.attempts] == [
        (Channel.WEBHOOK, DeliveryStatus.SUPPRESSED, "preference_disabled")
    ]
    assert sum(harness.calls(channel) for channel in Channel) == 0


@pytest.mark.asyncio
async def test_disabled_event_type_is_suppressed() -> None:
    harness = await _Harness(preferences=make_preferences(disabled_event_types=frozenset({"test_failure"}))).setup()
    result = await harness.pipeline.process(_raw("evt-1"))
    assert result.outcome == Outcome.SUPPRESSED
    assert result.reason == "preference_disabled"


@pytest.mark.asyncio
async def test_quiet_hours_suppress_delivery() -> None:
    harness = await _Harness(preferences=make_preferences(quiet_hours=quiet_all_day())).setup()
    result = await harness.pipeline.process(_raw("evt-1"))
    assert result.outcome == Outcome.SUPPRESSED
    assert result.reason == "quiet_hours"
    assert harness.calls(Channel.WEBHOOK) == 0


@pytest.mark.asyncio
async def test_critical_alert_bypasses_preferences_quiet_hours_and_frequency() -> None:
    preferences = make_preferences(
        channels_enabled=frozenset({Channel.EMAIL}),
        quiet_hours=quiet_all_day(),
        disabled_event_types=frozenset({"critical_alert"}),
        frequency_limits={"*": FrequencyLimit(max_per_window=0, window_minutes=60)},
    )
    harness = await _Harness(preferences=preferences).setup()
    result = await harness.pipeline.process(_raw("alert-1", "critical_alert", context={"reason": "suite down"}))

    assert result.outcome == Outcome.DELIVERED
    assert harness.calls(Channel.EMAIL) == 1
    assert StageDecision(stage="preferences", decision="skipped", detail="critical_override") in result.trace
    assert StageDecision(stage="quiet_hours", decision="skipped", detail="critical_override") in result.trace
    assert StageDecision(stage="frequency", decision="skipped", detail="critical_override") in result.trace


@pytest.mark.asyncio
async def test_critical_alert_respects_preferences_when_bypass_disabled() -> None:
    preferences = make_preferences(quiet_hours=quiet_all_day(), critical_alerts_bypass_preferences=False)
    harness = await _Harness(preferences=preferences).setup()
    result = await harness.pipeline.process(_raw("alert-1", "critical_alert"))
    assert result.outcome == Outcome.SUPPRESSED
    assert result.reason == "quiet_hours"


@pytest.mark.asyncio
async def test_frequency_limit_batches_exactly_the_overflow() -> None:
    preferences = make_preferences(frequency_limits={"test_failure": FrequencyLimit(max_per_window=2, window_minutes=60)})
    harness = await _Harness(preferences=preferences).setup()
    outcomes = [(await harness.pipeline.process(_raw(f"evt-{i}"))).outcome for i in range(3)]

    assert outcomes == [Outcome.DELIVERED, Outcome.DELIVERED, Outcome.BATCHED]
    batched = [a for a in harness.history.attempts if a.status == DeliveryStatus.BATCHED]
    assert len(batched) == 1
    assert batched[0].reason == "frequency_exceeded"
    assert harness.calls(Channel.WEBHOOK) == 2


@pytest.mark.asyncio
async def test_frequency_window_ignores_older_deliveries() -> None:
    preferences = make_preferences(frequency_limits={"*": FrequencyLimit(max_per_window=1, window_minutes=30)})
    harness = await _Harness(preferences=preferences).setup()
    await harness.pipeline.process(_raw("evt-1"))
    harness.clock.now = FIXED_NOW + timedelta(minutes=31)
    result = await harness.pipeline.process(_raw("evt-2"))
    assert result.outcome == Outcome.DELIVERED


@pytest.mark.asyncio
async def test_summary_report_is_never_batched() -> None:
    preferences = make_preferences(frequency_limits={"*": FrequencyLimit(max_per_window=0, window_minutes=60)})
    harness = await _Harness(preferences=preferences).setup()
    assert (await harness.pipeline.process(_raw("evt-1"))).outcome == Outcome.BATCHED
    assert (await harness.pipeline.process(_raw("digest-1", "summary_report"))).outcome == Outcome.DELIVERED


@pytest.mark.asyncio
async def test_summary_report_is_delivered_during_quiet_hours() -> None:
    harness = await _Harness(preferences=make_preferences(quiet_hours=quiet_all_day())).setup()
    assert (await harness.pipeline.process(_raw("evt-1"))).outcome == Outcome.SUPPRESSED
    result = await harness.pipeline.process(_raw("digest-1", "summary_report"))

    assert result.outcome == Outcome.DELIVERED
    assert StageDecision(stage="quiet_hours", decision="continue", detail=None) in result.trace
    assert harness.calls(Channel.WEBHOOK) == 1


@pytest.mark.asyncio
async def test_webhook_failure_falls_back_to_broadcast() -> None:
    harness = await _Harness().setup()
    harness.transports[Channel.WEBHOOK].always_fail = ServerError("down", status_code=503)
    result = await harness.pipeline.process(_raw("evt-1"))

    assert result.outcome == Outcome.DELIVERED
    assert result.reason == "fallback"
    assert harness.calls(Channel.WEBHOOK) == 3
    failed, sent = harness.history.attempts
    assert (failed.channel, failed.status, failed.reason, failed.attempts) == (
        Channel.WEBHOOK,
        DeliveryStatus.FAILED,
        "exhausted_retries:server_error",
        3,
    )
    assert (sent.channel, sent.status, sent.fallback_from) == (Channel.BROADCAST, DeliveryStatus.SENT, Channel.WEBHOOK)
    assert sent.recipient == "user:u-1"
    assert counters_snapshot()["notifications_fallback_total"] == 1


@pytest.mark.asyncio
async def test_primary_and_fallback_failure_is_dead_lettered() -> None:
    harness = await _Harness().setup()
    harness.transports[Channel.WEBHOOK].always_fail = PermanentRejectionError("gone", status_code=410)
    harness.transports[Channel.BROADCAST].always_fail = ServerError("down")
    result = await harness.pipeline.process(_raw("evt-1"))

    assert result.outcome == Outcome.FAILED
    assert result.dead_letter is True
    assert result.reason == "exhausted_retries:server_error"
    assert harness.calls(Channel.WEBHOOK) == 1
    assert [(a.channel, a.status, a.reason) for a in harness.history.attempts] == [
        (Channel.WEBHOOK, DeliveryStatus.FAILED, "permanent_rejection"),
        (Channel.BROADCAST, DeliveryStatus.FAILED, "exhausted_retries:server_error"),
    ]
    assert counters_snapshot()["notifications_dead_letter_total"] == 1


@pytest.mark.asyncio
async def test_non_webhook_failure_has_no_fallback() -> None:
    harness = await _Harness().setup()
    harness.transports[Channel.EMAIL].always_fail = PermanentRejectionError("mailbox unknown", status_code=422)
    result = await harness.pipeline.process(_raw("evt-1", channelHint="email"))

    assert result.outcome == Outcome.FAILED
    assert result.reason == "permanent_rejection"
    assert result.dead_letter is True
    assert harness.calls(Channel.BROADCAST) == 0
    assert len(harness.history.attempts) == 1


@pytest.mark.asyncio
async def test_missing_recipient_fails_without_calling_transport() -> None:
    preferences = make_preferences(contact_info=ContactInfo(webhook_url="https://hooks.example.com/notify"))
    harness = await _Harness(preferences=preferences).setup()
    result = await harness.pipeline.process(_raw("evt-1", channelHint="email"))

    assert result.outcome == Outcome.FAILED
    assert result.reason == "recipient_missing"
    assert harness.calls(Channel.EMAIL) == 0
    assert harness.history.attempts[0].attempts == 0


@pytest.mark.asyncio
async def test_sms_hint_delivers_to_contact_phone() -> None:
    preferences = make_preferences(
        channels_enabled=frozenset({Channel.WEBHOOK, Channel.SMS}),
        contact_info=ContactInfo(webhook_url="https://hooks.example.com/notify", phone="+15551234567"),
    )
    harness = await _Harness(preferences=preferences).setup()
    result = await harness.pipeline.process(_raw("evt-1", channelHint="sms"))

    assert result.outcome == Outcome.DELIVERED
    assert [call.recipient for call in harness.transports[Channel.SMS].calls] == ["+15551234567"]
    assert harness.history.attempts[0].channel == Channel.SMS
    assert harness.calls(Channel.WEBHOOK) == 0


@pytest.mark.asyncio
async def test_open_circuit_skips_webhook_for_later_events() -> None:
    harness = await _Harness(failure_threshold=1, max_attempts=1).setup()
    harness.transports[Channel.WEBHOOK].always_fail = ServerError("down")
    first = await harness.pipeline.process(_raw("evt-1"))
    second = await harness.pipeline.process(_raw("evt-2"))

    assert first.reason == "fallback"
    assert second.outcome == Outcome.DELIVERED
    assert harness.calls(Channel.WEBHOOK) == 1
    webhook_failures = [a.reason for a in harness.history.attempts if a.channel == Channel.WEBHOOK]
    assert webhook_failures == ["exhausted_retries:server_error", "circuit_open"]


@pytest.mark.asyncio
async def test_duplicate_event_is_not_delivered_twice() -> None:
    harness = await _Harness().setup()
    first = await harness.pipeline.process(_raw("evt-1"))
    second = await harness.pipeline.process(_raw("evt-1"))

    assert first.duplicate is False
    assert second.duplicate is True
    assert second.outcome == Outcome.DELIVERED
    assert second.reason == "duplicate"
    assert harness.calls(Channel.WEBHOOK) == 1
    assert len(harness.history.attempts) == 1


@pytest.mark.asyncio
async def test_failed_event_may_be_processed_again() -> None:
    harness = await _Harness().setup()
    harness.transports[Channel.WEBHOOK].always_fail = ServerError("down")
    harness.transports[Channel.BROADCAST].always_fail = ServerError("down")
    assert (await harness.pipeline.process(_raw("evt-1"))).dead_letter is True

    harness.transports[Channel.WEBHOOK].always_fail = None
    harness.transports[Channel.BROADCAST].always_fail = None
    retried = await harness.pipeline.process(_raw("evt-1"))
    assert retried.duplicate is False
    assert retried.outcome == Outcome.DELIVERED


@pytest.mark.asyncio
@pytest.mark.parametrize("raw", [{"eventType": "test_failure"}, "not json", b"[1, 2]"])
async def test_malformed_event_fails_without_history(raw) -> None:
    harness = await _Harness().setup()
    result = await harness.pipeline.process(raw)
    assert result.outcome == Outcome.FAILED
    assert result.reason == "malformed"
    assert harness.history.attempts == []


@pytest.mark.asyncio
async def test_unknown_event_type_is_recorded_as_failed() -> None:
    harness = await _Harness().setup()
    result = await harness.pipeline.process(_raw("evt-1", "deploy_finished"))
    assert result.outcome == Outcome.FAILED
    assert result.reason == "unknown_event_type"
    assert [(a.channel, a.status) for a in harness.history.attempts] == [(Channel.WEBHOOK, DeliveryStatus.FAILED)]


@pytest.mark.asyncio
async def test_template_lookup_falls_back_to_default_then_fails() -> None:
    harness = await _Harness().setup()
    await harness.templates.put(make_template("test_failure", Channel.WEBHOOK, body="specific {{testName}}"))
    await harness.pipeline.process(_raw("evt-1", context={"testName": "login"}))
    await harness.pipeline.process(_raw("evt-2", "test_completion"))
    bodies = [call.message.body for call in harness.transports[Channel.WEBHOOK].calls]
    assert bodies == ["specific login", "test_completion for u-1"]

    empty = await _Harness(with_templates=False).setup()
    result = await empty.pipeline.process(_raw("evt-3"))
    assert result.outcome == Outcome.FAILED
    assert result.reason == "template_missing"
    assert empty.calls(Channel.WEBHOOK) == 0


@pytest.mark.asyncio
async def test_execution_status_mirrors_final_attempt() -> None:
    executions = InMemoryExecutionStore([ExecutionRecord(execution_id="exec-1", result="fail", created_at=FIXED_NOW)])
    harness = await _Harness(executions=executions).setup()
    result = await harness.pipeline.process(_raw("evt-1", context={"executionId": "exec-1"}))
    assert executions.get("exec-1").notification_status == "sent"
    assert StageDecision(stage="status_update", decision="updated", detail="sent") in result.trace

    missing = await harness.pipeline.process(_raw("evt-2", context={"executionId": "exec-404"}))
    assert StageDecision(stage="status_update", decision="origin_missing", detail="sent") in missing.trace


@pytest.mark.asyncio
async def test_deadline_exceeded_raises_for_redelivery() -> None:
    harness = await _Harness().setup()
    harness.transports[Channel.WEBHOOK].delay_s = 5.0
    with pytest.raises(DeadlineExceededError):
        await harness.pipeline.process(_raw("evt-1"), deadline_s=0.05)
    assert counters_snapshot()["notifications_deadline_exceeded_total"] == 1
