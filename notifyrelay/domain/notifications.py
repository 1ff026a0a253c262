from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
import re
from typing import Any, Mapping
from uuid import uuid4

from pydantic import BaseModel, ConfigDict, Field


class Channel(str, Enum):
    WEBHOOK = "webhook"
    BROADCAST = "broadcast"
    EMAIL = "email"
    SMS = "sms"
    IN_APP = "in_app"


class DeliveryStatus(str, Enum):
    QUEUED = "queued"
    SENT = "sent"
    FAILED = "failed"
    SUPPRESSED = "suppressed"
    BATCHED = "batched"


class Outcome(str, Enum):
    # Terminal pipeline states; Delivered maps to a Sent attempt.
    DELIVERED = "delivered"
    SUPPRESSED = "suppressed"
    BATCHED = "batched"
    FAILED = "failed"


ANALYSIS_COMPLETE = "analysis_complete"
ANALYSIS_FAILED = "analysis_failed"
TEST_COMPLETION = "test_completion"
TEST_FAILURE = "test_failure"
SUITE_COMPLETION = "suite_completion"
CRITICAL_ALERT = "critical_alert"
SUMMARY_REPORT = "summary_report"

KNOWN_EVENT_TYPES = frozenset(
    {
        ANALYSIS_COMPLETE,
        ANALYSIS_FAILED,
        TEST_COMPLETION,
        TEST_FAILURE,
        SUITE_COMPLETION,
        CRITICAL_ALERT,
        SUMMARY_REPORT,
    }
)

# Template event type used when no exact (event type, channel) template exists.
DEFAULT_TEMPLATE_EVENT_TYPE = "default"
# Frequency limit key applied to event types without their own entry.
WILDCARD_EVENT_TYPE = "*"

_EMAIL_RE = re.compile(r"^[^\s@]+@[^\s@]+\.[^\s@]+$")
_E164_RE = re.compile(r"^\+[1-9]\d{1,14}$")


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


class NotificationEvent(BaseModel):
    # Match the published event schema; camelCase on the wire, snake_case in code.
    model_config = ConfigDict(frozen=True, populate_by_name=True, extra="ignore")

    event_id: str = Field(alias="eventId", min_length=1)
    event_type: str = Field(alias="eventType", min_length=1)
    user_id: str = Field(alias="userId", min_length=1)
    project_id: str | None = Field(default=None, alias="projectId")
    channel_hint: Channel | None = Field(default=None, alias="channelHint")
    context: dict[str, Any] = Field(default_factory=dict)
    created_at: datetime = Field(default_factory=_utc_now, alias="createdAt")

    def to_payload(self) -> dict[str, Any]:
        # Serialize back to the wire shape for queueing.
        return self.model_dump(mode="json", by_alias=True)


@dataclass(frozen=True)
class QuietHours:
    start_hour: int
    end_hour: int
    timezone: str = "UTC"

    def __post_init__(self) -> None:
        for value in (self.start_hour, self.end_hour):
            if not 0 <= int(value) <= 23:
                raise ValueError("quiet hours must be between 0 and 23")


@dataclass(frozen=True)
class FrequencyLimit:
    max_per_window: int
    window_minutes: int

    def __post_init__(self) -> None:
        if self.max_per_window < 0 or self.window_minutes <= 0:
            raise ValueError("frequency limit requires max_per_window >= 0 and window_minutes > 0")


@dataclass(frozen=True)
class ContactInfo:
    email: str | None = None
    webhook_url: str | None = None
    phone: str | None = None


def validate_contact_info(contact: ContactInfo) -> None:
    # Reject malformed contact details before they are persisted.
    if contact.email is not None and not _EMAIL_RE.match(contact.email):
        raise ValueError("invalid email address")
    if contact.phone is not None and not _E164_RE.match(contact.phone):
        raise ValueError("phone must be in E.164 format")
    if contact.webhook_url is not None and not contact.webhook_url.startswith(("http://", "https://", "noop://")):
        raise ValueError("webhook_url must start with http://, https://, or noop://")


@dataclass(frozen=True)
class UserPreferences:
    user_id: str
    channels_enabled: frozenset[Channel]
    quiet_hours: QuietHours | None = None
    frequency_limits: Mapping[str, FrequencyLimit] = field(default_factory=dict)
    critical_alerts_bypass_preferences: bool = True
    contact_info: ContactInfo = field(default_factory=ContactInfo)
    # None means webhook delivery applies to every event type.
    webhook_event_types: frozenset[str] | None = None
    disabled_event_types: frozenset[str] = frozenset()

    def frequency_limit_for(self, event_type: str) -> FrequencyLimit | None:
        return self.frequency_limits.get(event_type) or self.frequency_limits.get(WILDCARD_EVENT_TYPE)

    def webhook_enabled_for(self, event_type: str) -> bool:
        if Channel.WEBHOOK not in self.channels_enabled or not self.contact_info.webhook_url:
            return False
        return self.webhook_event_types is None or event_type in self.webhook_event_types


@dataclass(frozen=True)
class NotificationTemplate:
    template_id: str
    event_type: str
    channel: Channel
    subject_template: str
    body_template: str
    version: int = 1


@dataclass(frozen=True)
class DeliveryAttempt:
    attempt_id: str
    event_id: str
    user_id: str
    event_type: str
    channel: Channel
    status: DeliveryStatus
    timestamp: datetime
    reason: str | None = None
    fallback_from: Channel | None = None
    attempts: int = 0
    recipient: str | None = None
    message_id: str | None = None

    @classmethod
    def new(
        cls,
        event: NotificationEvent,
        *,
        channel: Channel,
        status: DeliveryStatus,
        timestamp: datetime,
        reason: str | None = None,
        fallback_from: Channel | None = None,
        attempts: int = 0,
        recipient: str | None = None,
        message_id: str | None = None,
    ) -> DeliveryAttempt:
        return cls(
            attempt_id=uuid4().hex,
            event_id=event.event_id,
            user_id=event.user_id,
            event_type=event.event_type,
            channel=channel,
            status=status,
            timestamp=timestamp,
            reason=reason,
            fallback_from=fallback_from,
            attempts=attempts,
            recipient=recipient,
            message_id=message_id,
        )


class AlertType(str, Enum):
    SUITE_FAILURE_THRESHOLD = "suite_failure_threshold"
    CONSECUTIVE_FAILURES = "consecutive_failures"


@dataclass(frozen=True)
class AlertDetails:
    failure_rate: float | None = None
    consecutive_failures: int | None = None
    affected_tests: tuple[str, ...] = ()
    last_failure: datetime | None = None
    error_message: str | None = None


@dataclass(frozen=True)
class CriticalAlert:
    alert_type: AlertType
    reason: str
    details: AlertDetails
    timestamp: datetime
    test_case_id: str | None = None
    test_suite_id: str | None = None
    suite_execution_id: str | None = None
    severity: str = "critical"


FAILED_RESULTS = frozenset({"fail", "error"})


@dataclass(frozen=True)
class ExecutionRecord:
    execution_id: str
    result: str
    created_at: datetime
    test_case_id: str | None = None
    test_suite_id: str | None = None
    suite_execution_id: str | None = None
    error_message: str | None = None
    ended_at: datetime | None = None
    notification_status: str | None = None

    @property
    def is_failure(self) -> bool:
        return self.result in FAILED_RESULTS
