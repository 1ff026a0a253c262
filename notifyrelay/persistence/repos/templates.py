from __future__ import annotations

from typing import Protocol

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from notifyrelay.core.errors import TemplateMissingError
from notifyrelay.domain.models import NotificationTemplateRecord
from notifyrelay.domain.notifications import DEFAULT_TEMPLATE_EVENT_TYPE, Channel, NotificationTemplate


class TemplateStore(Protocol):
    async def get(self, event_type: str, channel: Channel) -> NotificationTemplate | None: ...

    async def put(self, template: NotificationTemplate) -> None: ...


class InMemoryTemplateStore:
    def __init__(self, templates: list[NotificationTemplate] | None = None) -> None:
        self._rows: dict[tuple[str, Channel], NotificationTemplate] = {}
        for template in templates or []:
            self._rows[(template.event_type, template.channel)] = template

    async def get(self, event_type: str, channel: Channel) -> NotificationTemplate | None:
        return self._rows.get((event_type, Channel(channel)))

    async def put(self, template: NotificationTemplate) -> None:
        self._rows[(template.event_type, template.channel)] = template


def _to_domain(row: NotificationTemplateRecord) -> NotificationTemplate:
    return NotificationTemplate(
        template_id=row.id,
        event_type=row.event_type,
        channel=Channel(row.channel),
        subject_template=row.subject_template or "",
        body_template=row.body_template,
        version=int(row.version),
    )


class SqlTemplateStore:
    def __init__(self, session_factory: async_sessionmaker[AsyncSession]) -> None:
        self._session_factory = session_factory

    async def get(self, event_type: str, channel: Channel) -> NotificationTemplate | None:
        async with self._session_factory() as session:
            row = (
                await session.execute(
                    select(NotificationTemplateRecord).where(
                        NotificationTemplateRecord.event_type == event_type,
                        NotificationTemplateRecord.channel == Channel(channel).value,
                    )
                )
            ).scalar_one_or_none()
        return _to_domain(row) if row is not None else None

    async def put(self, template: NotificationTemplate) -> None:
        # Replace the (event type, channel) slot and bump the stored version.
        async with self._session_factory() as session:
            row = (
                await session.execute(
                    select(NotificationTemplateRecord).where(
                        NotificationTemplateRecord.event_type == template.event_type,
                        NotificationTemplateRecord.channel == template.channel.value,
                    )
                )
            ).scalar_one_or_none()
            if row is None:
                row = NotificationTemplateRecord(
                    id=template.template_id,
                    event_type=template.event_type,
                    channel=template.channel.value,
                    version=template.version,
                )
                session.add(row)
            else:
                row.version = max(int(row.version) + 1, template.version)
            row.subject_template = template.subject_template
            row.body_template = template.body_template
            await session.commit()


async def resolve_template(store: TemplateStore, event_type: str, channel: Channel) -> NotificationTemplate:
    # Exact (event type, channel) first, then the channel's default template.
    template = await store.get(event_type, channel)
    if template is None:
        template = await store.get(DEFAULT_TEMPLATE_EVENT_TYPE, channel)
    if template is None:
        raise TemplateMissingError(event_type, Channel(channel).value)
    return template
