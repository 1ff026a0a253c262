from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Protocol

from sqlalchemy import delete, func, select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from notifyrelay.domain.models import DeliveryAttemptRecord
from notifyrelay.domain.notifications import Channel, DeliveryAttempt, DeliveryStatus


@dataclass(frozen=True)
class HistoryQuery:
    # Filters for operator and user-facing history lookups; all optional.
    user_id: str | None = None
    event_id: str | None = None
    event_type: str | None = None
    channel: Channel | None = None
    status: DeliveryStatus | None = None
    since: datetime | None = None
    until: datetime | None = None
    limit: int = 50


class HistoryStore(Protocol):
    async def append(self, attempt: DeliveryAttempt) -> None: ...

    async def count_since(
        self,
        user_id: str,
        event_type: str,
        since: datetime,
        status: DeliveryStatus = DeliveryStatus.SENT,
    ) -> int: ...

    async def for_event(self, event_id: str) -> list[DeliveryAttempt]: ...

    async def get(self, attempt_id: str) -> DeliveryAttempt | None: ...

    async def query(self, filters: HistoryQuery) -> list[DeliveryAttempt]: ...

    async def list_by_status_since(
        self, status: DeliveryStatus, since: datetime, until: datetime
    ) -> list[DeliveryAttempt]: ...

    async def prune_before(self, cutoff: datetime) -> int: ...


def _matches(attempt: DeliveryAttempt, filters: HistoryQuery) -> bool:
    if filters.user_id is not None and attempt.user_id != filters.user_id:
        return False
    if filters.event_id is not None and attempt.event_id != filters.event_id:
        return False
    if filters.event_type is not None and attempt.event_type != filters.event_type:
        return False
    if filters.channel is not None and attempt.channel != filters.channel:
        return False
    if filters.status is not None and attempt.status != filters.status:
        return False
    if filters.since is not None and attempt.timestamp < filters.since:
        return False
    if filters.until is not None and attempt.timestamp > filters.until:
        return False
    return True


class InMemoryHistoryStore:
    # Append-only list; ordering follows insertion which matches timestamps in practice.
    def __init__(self) -> None:
        self._rows: list[DeliveryAttempt] = []

    @property
    def attempts(self) -> list[DeliveryAttempt]:
        return list(self._rows)

    async def append(self, attempt: DeliveryAttempt) -> None:
        self._rows.append(attempt)

    async def count_since(
        self,
        user_id: str,
        event_type: str,
        since: datetime,
        status: DeliveryStatus = DeliveryStatus.SENT,
    ) -> int:
        return sum(
            1
            for row in self._rows
            if row.user_id == user_id
            and row.event_type == event_type
            and row.status == status
            and row.timestamp >= since
        )

    async def for_event(self, event_id: str) -> list[DeliveryAttempt]:
        return sorted((row for row in self._rows if row.event_id == event_id), key=lambda row: row.timestamp)

    async def get(self, attempt_id: str) -> DeliveryAttempt | None:
        return next((row for row in self._rows if row.attempt_id == attempt_id), None)

    async def query(self, filters: HistoryQuery) -> list[DeliveryAttempt]:
        # Newest first, matching the SQL implementation.
        matched = [row for row in self._rows if _matches(row, filters)]
        matched.sort(key=lambda row: row.timestamp, reverse=True)
        return matched[: max(0, filters.limit)]

    async def list_by_status_since(
        self, status: DeliveryStatus, since: datetime, until: datetime
    ) -> list[DeliveryAttempt]:
        rows = [row for row in self._rows if row.status == status and since <= row.timestamp < until]
        return sorted(rows, key=lambda row: row.timestamp)

    async def prune_before(self, cutoff: datetime) -> int:
        before = len(self._rows)
        self._rows = [row for row in self._rows if row.timestamp >= cutoff]
        return before - len(self._rows)


def _as_utc(value: datetime) -> datetime:
    # SQLite drops tzinfo on read; all stored timestamps are UTC.
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def _to_domain(row: DeliveryAttemptRecord) -> DeliveryAttempt:
    return DeliveryAttempt(
        attempt_id=row.id,
        event_id=row.event_id,
        user_id=row.user_id,
        event_type=row.event_type,
        channel=Channel(row.channel),
        status=DeliveryStatus(row.status),
        timestamp=_as_utc(row.created_at),
        reason=row.reason,
        fallback_from=Channel(row.fallback_from) if row.fallback_from else None,
        attempts=int(row.attempts or 0),
        recipient=row.recipient,
        message_id=row.message_id,
    )


class SqlHistoryStore:
    def __init__(self, session_factory: async_sessionmaker[AsyncSession]) -> None:
        self._session_factory = session_factory

    async def append(self, attempt: DeliveryAttempt) -> None:
        async with self._session_factory() as session:
            session.add(
                DeliveryAttemptRecord(
                    id=attempt.attempt_id,
                    event_id=attempt.event_id,
                    user_id=attempt.user_id,
                    event_type=attempt.event_type,
                    channel=attempt.channel.value,
                    status=attempt.status.value,
                    reason=attempt.reason,
                    fallback_from=attempt.fallback_from.value if attempt.fallback_from else None,
                    attempts=attempt.attempts,
                    recipient=attempt.recipient,
                    message_id=attempt.message_id,
                    created_at=attempt.timestamp,
                )
            )
            await session.commit()

    async def count_since(
        self,
        user_id: str,
        event_type: str,
        since: datetime,
        status: DeliveryStatus = DeliveryStatus.SENT,
    ) -> int:
        stmt = select(func.count()).select_from(DeliveryAttemptRecord).where(
            DeliveryAttemptRecord.user_id == user_id,
            DeliveryAttemptRecord.event_type == event_type,
            DeliveryAttemptRecord.status == status.value,
            DeliveryAttemptRecord.created_at >= since,
        )
        async with self._session_factory() as session:
            return int((await session.execute(stmt)).scalar_one())

    async def for_event(self, event_id: str) -> list[DeliveryAttempt]:
        stmt = (
            select(DeliveryAttemptRecord)
            .where(DeliveryAttemptRecord.event_id == event_id)
            .order_by(DeliveryAttemptRecord.created_at.asc())
        )
        async with self._session_factory() as session:
            rows = (await session.execute(stmt)).scalars().all()
        return [_to_domain(row) for row in rows]

    async def get(self, attempt_id: str) -> DeliveryAttempt | None:
        async with self._session_factory() as session:
            row = await session.get(DeliveryAttemptRecord, attempt_id)
        return _to_domain(row) if row is not None else None

    async def query(self, filters: HistoryQuery) -> list[DeliveryAttempt]:
        stmt = select(DeliveryAttemptRecord)
        if filters.user_id:
            stmt = stmt.where(DeliveryAttemptRecord.user_id == filters.user_id)
        if filters.event_id:
            stmt = stmt.where(DeliveryAttemptRecord.event_id == filters.event_id)
        if filters.event_type:
            stmt = stmt.where(DeliveryAttemptRecord.event_type == filters.event_type)
        if filters.channel:
            stmt = stmt.where(DeliveryAttemptRecord.channel == filters.channel.value)
        if filters.status:
            stmt = stmt.where(DeliveryAttemptRecord.status == filters.status.value)
        if filters.since:
            stmt = stmt.where(DeliveryAttemptRecord.created_at >= filters.since)
        if filters.until:
            stmt = stmt.where(DeliveryAttemptRecord.created_at <= filters.until)
        stmt = stmt.order_by(DeliveryAttemptRecord.created_at.desc()).limit(max(0, filters.limit))
        async with self._session_factory() as session:
            rows = (await session.execute(stmt)).scalars().all()
        return [_to_domain(row) for row in rows]

    async def list_by_status_since(
        self, status: DeliveryStatus, since: datetime, until: datetime
    ) -> list[DeliveryAttempt]:
        stmt = (
            select(DeliveryAttemptRecord)
            .where(
                DeliveryAttemptRecord.status == status.value,
                DeliveryAttemptRecord.created_at >= since,
                DeliveryAttemptRecord.created_at < until,
            )
            .order_by(DeliveryAttemptRecord.created_at.asc())
        )
        async with self._session_factory() as session:
            rows = (await session.execute(stmt)).scalars().all()
        return [_to_domain(row) for row in rows]

    async def prune_before(self, cutoff: datetime) -> int:
        # Enforce history retention in one statement.
        async with self._session_factory() as session:
            result = await session.execute(
                delete(DeliveryAttemptRecord).where(DeliveryAttemptRecord.created_at < cutoff)
            )
            await session.commit()
        return int(result.rowcount or 0)
