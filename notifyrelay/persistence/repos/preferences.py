from __future__ import annotations

from typing import Any, Protocol

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from notifyrelay.core.config import Settings, get_settings
from notifyrelay.domain.models import NotificationPreferenceRecord
from notifyrelay.domain.notifications import (
    WILDCARD_EVENT_TYPE,
    Channel,
    ContactInfo,
    FrequencyLimit,
    QuietHours,
    UserPreferences,
    validate_contact_info,
)


def default_preferences(user_id: str, settings: Settings | None = None) -> UserPreferences:
    # Users without stored preferences get every channel and a conservative catch-all cap.
    settings = settings or get_settings()
    return UserPreferences(
        user_id=user_id,
        channels_enabled=frozenset(Channel),
        quiet_hours=None,
        frequency_limits={
            WILDCARD_EVENT_TYPE: FrequencyLimit(
                max_per_window=settings.default_frequency_max_per_window,
                window_minutes=settings.default_frequency_window_minutes,
            )
        },
        critical_alerts_bypass_preferences=settings.default_critical_bypass,
    )


class PreferenceStore(Protocol):
    async def get(self, user_id: str) -> UserPreferences: ...

    async def put(self, preferences: UserPreferences) -> None: ...


class InMemoryPreferenceStore:
    # Keep an in-memory implementation for deterministic tests and local runs.
    def __init__(self, settings: Settings | None = None) -> None:
        self._settings = settings
        self._rows: dict[str, UserPreferences] = {}

    async def get(self, user_id: str) -> UserPreferences:
        return self._rows.get(user_id) or default_preferences(user_id, self._settings)

    async def put(self, preferences: UserPreferences) -> None:
        validate_contact_info(preferences.contact_info)
        self._rows[preferences.user_id] = preferences


def _to_domain(row: NotificationPreferenceRecord) -> UserPreferences:
    quiet = row.quiet_hours_json
    return UserPreferences(
        user_id=row.user_id,
        channels_enabled=frozenset(Channel(value) for value in row.channels_enabled_json or []),
        quiet_hours=(
            QuietHours(
                start_hour=int(quiet["start_hour"]),
                end_hour=int(quiet["end_hour"]),
                timezone=str(quiet.get("timezone") or "UTC"),
            )
            if quiet
            else None
        ),
        frequency_limits={
            event_type: FrequencyLimit(
                max_per_window=int(limit["max_per_window"]),
                window_minutes=int(limit["window_minutes"]),
            )
            for event_type, limit in (row.frequency_limits_json or {}).items()
        },
        critical_alerts_bypass_preferences=bool(row.critical_alerts_bypass),
        contact_info=ContactInfo(email=row.email, webhook_url=row.webhook_url, phone=row.phone),
        webhook_event_types=(
            frozenset(row.webhook_event_types_json) if row.webhook_event_types_json is not None else None
        ),
        disabled_event_types=frozenset(row.disabled_event_types_json or []),
    )


def _apply(row: NotificationPreferenceRecord, preferences: UserPreferences) -> None:
    quiet: dict[str, Any] | None = None
    if preferences.quiet_hours is not None:
        quiet = {
            "start_hour": preferences.quiet_hours.start_hour,
            "end_hour": preferences.quiet_hours.end_hour,
            "timezone": preferences.quiet_hours.timezone,
        }
    row.channels_enabled_json = sorted(channel.value for channel in preferences.channels_enabled)
    row.quiet_hours_json = quiet
    row.frequency_limits_json = {
        event_type: {"max_per_window": limit.max_per_window, "window_minutes": limit.window_minutes}
        for event_type, limit in preferences.frequency_limits.items()
    }
    row.critical_alerts_bypass = preferences.critical_alerts_bypass_preferences
    row.email = preferences.contact_info.email
    row.webhook_url = preferences.contact_info.webhook_url
    row.phone = preferences.contact_info.phone
    row.webhook_event_types_json = (
        sorted(preferences.webhook_event_types) if preferences.webhook_event_types is not None else None
    )
    row.disabled_event_types_json = sorted(preferences.disabled_event_types)


class SqlPreferenceStore:
    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        settings: Settings | None = None,
    ) -> None:
        self._session_factory = session_factory
        self._settings = settings

    async def get(self, user_id: str) -> UserPreferences:
        async with self._session_factory() as session:
            row = await session.get(NotificationPreferenceRecord, user_id)
        if row is None:
            return default_preferences(user_id, self._settings)
        return _to_domain(row)

    async def put(self, preferences: UserPreferences) -> None:
        # Upsert by primary key; preferences are owned by a single user.
        validate_contact_info(preferences.contact_info)
        async with self._session_factory() as session:
            row = await session.get(NotificationPreferenceRecord, preferences.user_id)
            if row is None:
                row = NotificationPreferenceRecord(user_id=preferences.user_id)
                session.add(row)
            _apply(row, preferences)
            await session.commit()
