from __future__ import annotations

import asyncio
from dataclasses import dataclass, field, replace
from datetime import datetime, timedelta, timezone
import json
import logging
from typing import Any, Awaitable, Callable, Mapping, Union

from pydantic import ValidationError

from notifyrelay.core.config import Settings, get_settings
from notifyrelay.core.errors import (
    CircuitOpenError,
    DeadlineExceededError,
    EventValidationError,
    ExhaustedRetriesError,
    PermanentRejectionError,
    RecipientMissingError,
    TemplateMissingError,
)
from notifyrelay.domain.notifications import (
    CRITICAL_ALERT,
    KNOWN_EVENT_TYPES,
    SUMMARY_REPORT,
    Channel,
    DeliveryAttempt,
    DeliveryStatus,
    NotificationEvent,
    NotificationTemplate,
    Outcome,
    UserPreferences,
)
from notifyrelay.persistence.repos.executions import ExecutionStore
from notifyrelay.persistence.repos.history import HistoryStore
from notifyrelay.persistence.repos.preferences import PreferenceStore
from notifyrelay.persistence.repos.templates import TemplateStore, resolve_template
from notifyrelay.services.notifications.policy import is_in_quiet_hours, recipient_for, resolve_channel
from notifyrelay.services.notifications.rendering import RenderedContent, render_template, render_values
from notifyrelay.services.notifications.transports import ChannelTransport, OutboundMessage
from notifyrelay.services.resilience import (
    CircuitBreakerRegistry,
    RetryOutcome,
    call_with_resilience,
    classify_error,
)
from notifyrelay.services.telemetry import increment_counter


logger = logging.getLogger(__name__)

_OUTCOME_STATUS = {
    Outcome.DELIVERED: DeliveryStatus.SENT,
    Outcome.SUPPRESSED: DeliveryStatus.SUPPRESSED,
    Outcome.BATCHED: DeliveryStatus.BATCHED,
    Outcome.FAILED: DeliveryStatus.FAILED,
}
_STATUS_OUTCOME = {status: outcome for outcome, status in _OUTCOME_STATUS.items()}


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class PipelineContext:
    event: NotificationEvent
    preferences: UserPreferences
    channel: Channel
    now: datetime
    template: NotificationTemplate | None = None
    content: RenderedContent | None = None


@dataclass(frozen=True)
class Continue:
    context: PipelineContext


@dataclass(frozen=True)
class Terminal:
    outcome: Outcome
    reason: str | None = None


StageResult = Union[Continue, Terminal]


@dataclass(frozen=True)
class StageDecision:
    stage: str
    decision: str
    detail: str | None = None


@dataclass(frozen=True)
class PipelineResult:
    event_id: str | None
    outcome: Outcome
    reason: str | None = None
    attempts: tuple[DeliveryAttempt, ...] = ()
    trace: tuple[StageDecision, ...] = ()
    # Failed after primary and fallback; operators must inspect it.
    dead_letter: bool = False
    duplicate: bool = False


@dataclass
class _Run:
    trace: list[StageDecision] = field(default_factory=list)
    attempts: list[DeliveryAttempt] = field(default_factory=list)

    def note(self, stage: str, decision: str, detail: str | None = None) -> None:
        self.trace.append(StageDecision(stage=stage, decision=decision, detail=detail))


def parse_event(raw: NotificationEvent | Mapping[str, Any] | str | bytes) -> NotificationEvent:
    # Accept decoded payloads or raw JSON; anything unparseable is malformed.
    if isinstance(raw, NotificationEvent):
        return raw
    try:
        if isinstance(raw, (str, bytes, bytearray)):
            raw = json.loads(raw)
        if not isinstance(raw, Mapping):
            raise EventValidationError("malformed", "event payload must be a JSON object")
        return NotificationEvent.model_validate(dict(raw))
    except (ValueError, ValidationError) as exc:
        raise EventValidationError("malformed", str(exc)) from exc


def _raw_event_id(raw: Any) -> str | None:
    if isinstance(raw, Mapping):
        value = raw.get("eventId") or raw.get("event_id")
        return str(value) if value else None
    return None


def failure_reason(error: BaseException | None) -> str:
    if isinstance(error, RecipientMissingError):
        return "recipient_missing"
    if isinstance(error, ExhaustedRetriesError):
        return f"exhausted_retries:{classify_error(error.last_error)}"
    if isinstance(error, CircuitOpenError):
        return "circuit_open"
    if isinstance(error, PermanentRejectionError):
        return "permanent_rejection"
    if error is None:
        return "unknown"
    return classify_error(error)


class NotificationPipeline:
    def __init__(
        self,
        *,
        preferences: PreferenceStore,
        templates: TemplateStore,
        history: HistoryStore,
        transports: Mapping[Channel, ChannelTransport],
        breakers: CircuitBreakerRegistry,
        executions: ExecutionStore | None = None,
        clock: Callable[[], datetime] = _utc_now,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
        settings: Settings | None = None,
        event_types: frozenset[str] = KNOWN_EVENT_TYPES,
    ) -> None:
        self._preferences = preferences
        self._templates = templates
        self._history = history
        self._transports = dict(transports)
        self._breakers = breakers
        self._executions = executions
        self._clock = clock
        self._sleep = sleep
        self._settings = settings or get_settings()
        self._event_types = event_types

    async def process(
        self,
        raw: NotificationEvent | Mapping[str, Any] | str | bytes,
        *,
        deadline_s: float | None = None,
    ) -> PipelineResult:
        # The deadline cancels in-flight channel calls; the queue redelivers the event.
        if deadline_s is None:
            return await self._process(raw)
        try:
            return await asyncio.wait_for(self._process(raw), timeout=deadline_s)
        except asyncio.TimeoutError as exc:
            increment_counter("notifications_deadline_exceeded_total")
            raise DeadlineExceededError(f"pipeline exceeded {deadline_s}s deadline") from exc

    async def _process(self, raw: NotificationEvent | Mapping[str, Any] | str | bytes) -> PipelineResult:
        run = _Run()
        try:
            event = parse_event(raw)
        except EventValidationError as exc:
            # No event identity to attach history to; surface to the caller only.
            run.note("parse", Outcome.FAILED.value, exc.reason)
            logger.warning("notification_malformed event_id=%s error=%s", _raw_event_id(raw), exc)
            increment_counter("notifications_failed_total")
            return PipelineResult(
                event_id=_raw_event_id(raw),
                outcome=Outcome.FAILED,
                reason=exc.reason,
                trace=tuple(run.trace),
            )

        prior = await self._history.for_event(event.event_id)
        duplicate = self._duplicate_result(event, prior)
        if duplicate is not None:
            logger.info("notification_duplicate event_id=%s outcome=%s", event.event_id, duplicate.outcome.value)
            increment_counter("notifications_duplicate_total")
            return duplicate

        now = self._clock()
        if event.event_type not in self._event_types:
            run.note("parse", Outcome.FAILED.value, "unknown_event_type")
            channel = event.channel_hint or Channel.WEBHOOK
            await self._record(run, event, channel, DeliveryStatus.FAILED, now, reason="unknown_event_type")
            return await self._finish(event, run, Outcome.FAILED, "unknown_event_type")
        run.note("parse", "continue")

        preferences = await self._preferences.get(event.user_id)
        ctx = PipelineContext(
            event=event,
            preferences=preferences,
            channel=resolve_channel(event, preferences),
            now=now,
        )

        # Critical alerts with bypass skip preference, quiet-hours and frequency stages.
        override = event.event_type == CRITICAL_ALERT and preferences.critical_alerts_bypass_preferences
        stages: list[tuple[str, Callable[[PipelineContext], Awaitable[StageResult]]]] = []
        if override:
            for stage in ("preferences", "quiet_hours", "frequency"):
                run.note(stage, "skipped", "critical_override")
        else:
            stages.extend(
                [
                    ("preferences", self._check_preferences),
                    ("quiet_hours", self._check_quiet_hours),
                    ("frequency", self._check_frequency),
                ]
            )
        stages.extend([("template", self._resolve_template), ("render", self._render)])

        for name, stage in stages:
            result = await stage(ctx)
            if isinstance(result, Terminal):
                run.note(name, result.outcome.value, result.reason)
                await self._record(
                    run, event, ctx.channel, _OUTCOME_STATUS[result.outcome], ctx.now, reason=result.reason
                )
                return await self._finish(event, run, result.outcome, result.reason)
            run.note(name, "continue")
            ctx = result.context

        return await self._route(ctx, run)

    def _duplicate_result(self, event: NotificationEvent, prior: list[DeliveryAttempt]) -> PipelineResult | None:
        # A Sent, Suppressed or Batched attempt already settled this event; failures may be retried.
        settled = [
            attempt
            for attempt in prior
            if attempt.status in (DeliveryStatus.SENT, DeliveryStatus.SUPPRESSED, DeliveryStatus.BATCHED)
        ]
        if not settled:
            return None
        sent = next((attempt for attempt in settled if attempt.status == DeliveryStatus.SENT), None)
        final = sent or settled[-1]
        return PipelineResult(
            event_id=event.event_id,
            outcome=_STATUS_OUTCOME[final.status],
            reason="duplicate",
            attempts=tuple(prior),
            trace=(StageDecision(stage="parse", decision="duplicate", detail=final.status.value),),
            duplicate=True,
        )

    async def _check_preferences(self, ctx: PipelineContext) -> StageResult:
        preferences = ctx.preferences
        if ctx.channel not in preferences.channels_enabled:
            return Terminal(Outcome.SUPPRESSED, "preference_disabled")
        if ctx.event.event_type in preferences.disabled_event_types:
            return Terminal(Outcome.SUPPRESSED, "preference_disabled")
        return Continue(ctx)

    async def _check_quiet_hours(self, ctx: PipelineContext) -> StageResult:
        # A suppressed summary would drop every event it carries, so digests ignore quiet hours.
        if ctx.event.event_type == SUMMARY_REPORT:
            return Continue(ctx)
        if is_in_quiet_hours(ctx.preferences.quiet_hours, ctx.now):
            return Terminal(Outcome.SUPPRESSED, "quiet_hours")
        return Continue(ctx)

    async def _check_frequency(self, ctx: PipelineContext) -> StageResult:
        # Summary reports carry batched events and are never batched themselves.
        if ctx.event.event_type == SUMMARY_REPORT:
            return Continue(ctx)
        limit = ctx.preferences.frequency_limit_for(ctx.event.event_type)
        if limit is None:
            return Continue(ctx)
        since = ctx.now - timedelta(minutes=limit.window_minutes)
        sent = await self._history.count_since(
            ctx.event.user_id, ctx.event.event_type, since, DeliveryStatus.SENT
        )
        if sent >= limit.max_per_window:
            return Terminal(Outcome.BATCHED, "frequency_exceeded")
        return Continue(ctx)

    async def _resolve_template(self, ctx: PipelineContext) -> StageResult:
        try:
            template = await resolve_template(self._templates, ctx.event.event_type, ctx.channel)
        except TemplateMissingError:
            logger.warning(
                "notification_template_missing event_type=%s channel=%s", ctx.event.event_type, ctx.channel.value
            )
            return Terminal(Outcome.FAILED, "template_missing")
        return Continue(replace(ctx, template=template))

    async def _render(self, ctx: PipelineContext) -> StageResult:
        if ctx.template is None:
            return Terminal(Outcome.FAILED, "template_missing")
        content = render_template(
            ctx.template,
            render_values(ctx.event),
            redact=self._settings.content_redaction_enabled,
        )
        return Continue(replace(ctx, content=content))

    async def _send(self, channel: Channel, ctx: PipelineContext) -> tuple[RetryOutcome[str], str | None]:
        recipient = recipient_for(channel, ctx.event, ctx.preferences)
        # Configuration gaps are settled locally without touching the dependency's breaker.
        if not recipient:
            return RetryOutcome(success=False, attempts=0, error=RecipientMissingError(channel.value)), recipient
        transport = self._transports.get(channel)
        if transport is None:
            error = PermanentRejectionError(f"no transport for {channel.value}")
            return RetryOutcome(success=False, attempts=0, error=error), recipient
        content = ctx.content or RenderedContent(subject="", body="")
        message = OutboundMessage(
            event_id=ctx.event.event_id,
            event_type=ctx.event.event_type,
            user_id=ctx.event.user_id,
            project_id=ctx.event.project_id,
            subject=content.subject,
            body=content.body,
            timestamp=ctx.event.created_at,
            context=ctx.event.context,
        )
        outcome = await call_with_resilience(
            self._breakers,
            channel.value,
            lambda: transport.send(channel, recipient, message),
            sleep=self._sleep,
        )
        return outcome, recipient

    async def _route(self, ctx: PipelineContext, run: _Run) -> PipelineResult:
        event = ctx.event
        outcome, recipient = await self._send(ctx.channel, ctx)
        if outcome.success:
            run.note("route", Outcome.DELIVERED.value, ctx.channel.value)
            await self._record(
                run,
                event,
                ctx.channel,
                DeliveryStatus.SENT,
                self._clock(),
                attempts=outcome.attempts,
                recipient=recipient,
                message_id=outcome.result,
            )
            return await self._finish(event, run, Outcome.DELIVERED, None)

        reason = failure_reason(outcome.error)
        run.note("route", Outcome.FAILED.value, reason)
        await self._record(
            run,
            event,
            ctx.channel,
            DeliveryStatus.FAILED,
            self._clock(),
            reason=reason,
            attempts=outcome.attempts,
            recipient=recipient,
        )
        if ctx.channel != Channel.WEBHOOK:
            return await self._dead_letter(event, run, reason)

        # Webhook failures fall back to broadcast under its own dependency key.
        fallback, fallback_recipient = await self._send(Channel.BROADCAST, ctx)
        if fallback.success:
            run.note("fallback", Outcome.DELIVERED.value, Channel.BROADCAST.value)
            await self._record(
                run,
                event,
                Channel.BROADCAST,
                DeliveryStatus.SENT,
                self._clock(),
                fallback_from=Channel.WEBHOOK,
                attempts=fallback.attempts,
                recipient=fallback_recipient,
                message_id=fallback.result,
            )
            increment_counter("notifications_fallback_total")
            return await self._finish(event, run, Outcome.DELIVERED, "fallback")
        fallback_reason = failure_reason(fallback.error)
        run.note("fallback", Outcome.FAILED.value, fallback_reason)
        await self._record(
            run,
            event,
            Channel.BROADCAST,
            DeliveryStatus.FAILED,
            self._clock(),
            reason=fallback_reason,
            fallback_from=Channel.WEBHOOK,
            attempts=fallback.attempts,
            recipient=fallback_recipient,
        )
        return await self._dead_letter(event, run, fallback_reason)

    async def _dead_letter(self, event: NotificationEvent, run: _Run, reason: str) -> PipelineResult:
        logger.error(
            "notification_dead_letter event_id=%s user_id=%s event_type=%s reason=%s",
            event.event_id,
            event.user_id,
            event.event_type,
            reason,
        )
        increment_counter("notifications_dead_letter_total")
        result = await self._finish(event, run, Outcome.FAILED, reason)
        return replace(result, dead_letter=True)

    async def _record(
        self,
        run: _Run,
        event: NotificationEvent,
        channel: Channel,
        status: DeliveryStatus,
        timestamp: datetime,
        *,
        reason: str | None = None,
        fallback_from: Channel | None = None,
        attempts: int = 0,
        recipient: str | None = None,
        message_id: str | None = None,
    ) -> None:
        attempt = DeliveryAttempt.new(
            event,
            channel=channel,
            status=status,
            timestamp=timestamp,
            reason=reason,
            fallback_from=fallback_from,
            attempts=attempts,
            recipient=recipient,
            message_id=message_id,
        )
        await self._history.append(attempt)
        run.attempts.append(attempt)

    async def _finish(
        self,
        event: NotificationEvent,
        run: _Run,
        outcome: Outcome,
        reason: str | None,
    ) -> PipelineResult:
        # Mirror the final attempt status onto the originating execution when it has one.
        origin_id = event.context.get("executionId")
        if self._executions is not None and isinstance(origin_id, str) and origin_id and run.attempts:
            status = run.attempts[-1].status.value
            updated = await self._executions.set_notification_status(origin_id, status)
            run.note("status_update", "updated" if updated else "origin_missing", status)
        increment_counter(f"notifications_{outcome.value}_total")
        logger.info(
            "notification_processed event_id=%s event_type=%s outcome=%s reason=%s",
            event.event_id,
            event.event_type,
            outcome.value,
            reason,
        )
        return PipelineResult(
            event_id=event.event_id,
            outcome=outcome,
            reason=reason,
            attempts=tuple(run.attempts),
            trace=tuple(run.trace),
        )
