from __future__ import annotations

import pytest

from notifyrelay.core.errors import (
    CircuitOpenError,
    EventValidationError,
    ExhaustedRetriesError,
    RecipientMissingError,
    ServerError,
    TemplateMissingError,
)
from notifyrelay.domain.notifications import (
    Channel,
    ContactInfo,
    FrequencyLimit,
    NotificationEvent,
    validate_contact_info,
)
from notifyrelay.persistence.repos.templates import InMemoryTemplateStore, resolve_template
from notifyrelay.services.notifications.pipeline import failure_reason, parse_event
from notifyrelay.tests.utils.fakes import make_preferences, make_template


def test_event_accepts_wire_and_python_names() -> None:
    wire = parse_event('{"eventId": "e1", "eventType": "test_failure", "userId": "u1", "channelHint": "email"}')
    assert wire.channel_hint == Channel.EMAIL
    assert wire.context == {}
    direct = NotificationEvent(event_id="e1", event_type="test_failure", user_id="u1")
    payload = direct.to_payload()
    assert payload["eventId"] == "e1"
    assert parse_event(payload).event_id == "e1"


def test_parse_event_rejects_empty_identifiers() -> None:
    with pytest.raises(EventValidationError) as excinfo:
        parse_event({"eventId": "", "eventType": "test_failure", "userId": "u1"})
    assert excinfo.value.reason == "malformed"


def test_frequency_limit_falls_back_to_wildcard() -> None:
    specific = FrequencyLimit(max_per_window=1, window_minutes=5)
    catch_all = FrequencyLimit(max_per_window=9, window_minutes=60)
    preferences = make_preferences(frequency_limits={"test_failure": specific, "*": catch_all})
    assert preferences.frequency_limit_for("test_failure") == specific
    assert preferences.frequency_limit_for("analysis_complete") == catch_all
    assert make_preferences(frequency_limits={}).frequency_limit_for("test_failure") is None
    with pytest.raises(ValueError):
        FrequencyLimit(max_per_window=1, window_minutes=0)


def test_contact_validation() -> None:
    validate_contact_info(ContactInfo(email="a@b.io", phone="+14155550100", webhook_url="https://x.test/hook"))
    with pytest.raises(ValueError, match="E.164"):
        validate_contact_info(ContactInfo(phone="4155550100"))


def test_failure_reasons() -> None:
    assert failure_reason(RecipientMissingError("email")) == "recipient_missing"
    assert failure_reason(ExhaustedRetriesError(3, ServerError("x"))) == "exhausted_retries:server_error"
    assert failure_reason(CircuitOpenError("webhook")) == "circuit_open"
    assert failure_reason(None) == "unknown"


@pytest.mark.asyncio
async def test_template_resolution_prefers_exact_then_default() -> None:
    store = InMemoryTemplateStore([make_template("default", Channel.EMAIL, body="fallback")])
    assert (await resolve_template(store, "test_failure", Channel.EMAIL)).body_template == "fallback"
    await store.put(make_template("test_failure", Channel.EMAIL, body="exact"))
    assert (await resolve_template(store, "test_failure", Channel.EMAIL)).body_template == "exact"
    with pytest.raises(TemplateMissingError):
        await resolve_template(store, "test_failure", Channel.IN_APP)
