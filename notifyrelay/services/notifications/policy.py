from __future__ import annotations

from datetime import datetime, timezone
import logging
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from notifyrelay.domain.notifications import Channel, NotificationEvent, QuietHours, UserPreferences


logger = logging.getLogger(__name__)

# Routing preference when the event carries no hint and webhooks do not apply.
_CHANNEL_ORDER = (Channel.WEBHOOK, Channel.EMAIL, Channel.SMS, Channel.IN_APP, Channel.BROADCAST)


def _resolve_zone(name: str) -> ZoneInfo | timezone:
    try:
        return ZoneInfo(name)
    except (ZoneInfoNotFoundError, ValueError):
        logger.warning("quiet_hours_invalid_timezone timezone=%s falling back to UTC", name)
        return timezone.utc


def is_in_quiet_hours(quiet_hours: QuietHours | None, now: datetime) -> bool:
    # Window is [start, end) in the user's local hour and wraps midnight when start > end.
    if quiet_hours is None or quiet_hours.start_hour == quiet_hours.end_hour:
        return False
    if now.tzinfo is None:
        now = now.replace(tzinfo=timezone.utc)
    hour = now.astimezone(_resolve_zone(quiet_hours.timezone)).hour
    start, end = quiet_hours.start_hour, quiet_hours.end_hour
    if start < end:
        return start <= hour < end
    return hour >= start or hour < end


def resolve_channel(event: NotificationEvent, preferences: UserPreferences) -> Channel:
    # The hint wins; otherwise prefer webhooks, then the first enabled channel.
    hint = event.channel_hint
    if hint is not None and hint != Channel.WEBHOOK:
        return hint
    if preferences.webhook_enabled_for(event.event_type):
        return Channel.WEBHOOK
    # A webhook hint the user disabled is kept so the preference stage can suppress it.
    if hint == Channel.WEBHOOK and Channel.WEBHOOK not in preferences.channels_enabled:
        return Channel.WEBHOOK
    for channel in _CHANNEL_ORDER:
        if channel == Channel.WEBHOOK:
            continue
        if channel in preferences.channels_enabled:
            return channel
    # Nothing enabled; the preference stage suppresses this.
    return Channel.WEBHOOK


def recipient_for(channel: Channel, event: NotificationEvent, preferences: UserPreferences) -> str | None:
    contact = preferences.contact_info
    if channel == Channel.WEBHOOK:
        return contact.webhook_url
    if channel == Channel.EMAIL:
        return contact.email
    if channel == Channel.SMS:
        return contact.phone
    if channel == Channel.IN_APP:
        return event.user_id
    # Broadcast fans out to a topic per user; the transport owns the endpoint.
    return f"user:{event.user_id}"
