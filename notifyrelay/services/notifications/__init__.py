from notifyrelay.services.notifications.digest import collect_digest_events, digest_event_id
from notifyrelay.services.notifications.pipeline import (
    Continue,
    NotificationPipeline,
    PipelineContext,
    PipelineResult,
    StageDecision,
    Terminal,
    parse_event,
)
from notifyrelay.services.notifications.policy import is_in_quiet_hours, resolve_channel
from notifyrelay.services.notifications.rendering import (
    RenderedContent,
    filter_sensitive_data,
    render_template,
    render_text,
)
from notifyrelay.services.notifications.transports import (
    ChannelTransport,
    OutboundMessage,
    RelayTransport,
    WebhookTransport,
    build_transports,
    compute_signature,
)

__all__ = [
    "ChannelTransport",
    "Continue",
    "NotificationPipeline",
    "OutboundMessage",
    "PipelineContext",
    "PipelineResult",
    "RelayTransport",
    "RenderedContent",
    "StageDecision",
    "Terminal",
    "WebhookTransport",
    "build_transports",
    "collect_digest_events",
    "compute_signature",
    "digest_event_id",
    "filter_sensitive_data",
    "is_in_quiet_hours",
    "parse_event",
    "render_template",
    "render_text",
    "resolve_channel",
]
