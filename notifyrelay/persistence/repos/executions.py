from __future__ import annotations

from datetime import timezone
from typing import Protocol

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from notifyrelay.domain.models import TestExecutionRecord
from notifyrelay.domain.notifications import ExecutionRecord


class ExecutionStore(Protocol):
    async def recent_for_test_case(self, test_case_id: str, limit: int) -> list[ExecutionRecord]: ...

    async def for_suite_execution(self, suite_execution_id: str) -> list[ExecutionRecord]: ...

    async def set_notification_status(self, execution_id: str, status: str) -> bool: ...


class InMemoryExecutionStore:
    def __init__(self, records: list[ExecutionRecord] | None = None) -> None:
        self._rows: dict[str, ExecutionRecord] = {}
        for record in records or []:
            self._rows[record.execution_id] = record

    def add(self, record: ExecutionRecord) -> None:
        self._rows[record.execution_id] = record

    def get(self, execution_id: str) -> ExecutionRecord | None:
        return self._rows.get(execution_id)

    async def recent_for_test_case(self, test_case_id: str, limit: int) -> list[ExecutionRecord]:
        # Most recent first.
        rows = [row for row in self._rows.values() if row.test_case_id == test_case_id]
        rows.sort(key=lambda row: row.created_at, reverse=True)
        return rows[: max(0, limit)]

    async def for_suite_execution(self, suite_execution_id: str) -> list[ExecutionRecord]:
        rows = [row for row in self._rows.values() if row.suite_execution_id == suite_execution_id]
        return sorted(rows, key=lambda row: row.created_at)

    async def set_notification_status(self, execution_id: str, status: str) -> bool:
        row = self._rows.get(execution_id)
        if row is None:
            return False
        self._rows[execution_id] = ExecutionRecord(
            execution_id=row.execution_id,
            result=row.result,
            created_at=row.created_at,
            test_case_id=row.test_case_id,
            test_suite_id=row.test_suite_id,
            suite_execution_id=row.suite_execution_id,
            error_message=row.error_message,
            ended_at=row.ended_at,
            notification_status=status,
        )
        return True


def _to_domain(row: TestExecutionRecord) -> ExecutionRecord:
    created_at = row.created_at
    ended_at = row.ended_at
    # SQLite drops tzinfo on read; all stored timestamps are UTC.
    if created_at.tzinfo is None:
        created_at = created_at.replace(tzinfo=timezone.utc)
    if ended_at is not None and ended_at.tzinfo is None:
        ended_at = ended_at.replace(tzinfo=timezone.utc)
    return ExecutionRecord(
        execution_id=row.id,
        result=row.result,
        created_at=created_at,
        test_case_id=row.test_case_id,
        test_suite_id=row.test_suite_id,
        suite_execution_id=row.suite_execution_id,
        error_message=row.error_message,
        ended_at=ended_at,
        notification_status=row.notification_status,
    )


class SqlExecutionStore:
    def __init__(self, session_factory: async_sessionmaker[AsyncSession]) -> None:
        self._session_factory = session_factory

    async def add(self, record: ExecutionRecord) -> None:
        async with self._session_factory() as session:
            session.add(
                TestExecutionRecord(
                    id=record.execution_id,
                    test_case_id=record.test_case_id,
                    test_suite_id=record.test_suite_id,
                    suite_execution_id=record.suite_execution_id,
                    result=record.result,
                    error_message=record.error_message,
                    created_at=record.created_at,
                    ended_at=record.ended_at,
                    notification_status=record.notification_status,
                )
            )
            await session.commit()

    async def recent_for_test_case(self, test_case_id: str, limit: int) -> list[ExecutionRecord]:
        stmt = (
            select(TestExecutionRecord)
            .where(TestExecutionRecord.test_case_id == test_case_id)
            .order_by(TestExecutionRecord.created_at.desc())
            .limit(max(0, limit))
        )
        async with self._session_factory() as session:
            rows = (await session.execute(stmt)).scalars().all()
        return [_to_domain(row) for row in rows]

    async def for_suite_execution(self, suite_execution_id: str) -> list[ExecutionRecord]:
        stmt = (
            select(TestExecutionRecord)
            .where(TestExecutionRecord.suite_execution_id == suite_execution_id)
            .order_by(TestExecutionRecord.created_at.asc())
        )
        async with self._session_factory() as session:
            rows = (await session.execute(stmt)).scalars().all()
        return [_to_domain(row) for row in rows]

    async def set_notification_status(self, execution_id: str, status: str) -> bool:
        async with self._session_factory() as session:
            result = await session.execute(
                update(TestExecutionRecord)
                .where(TestExecutionRecord.id == execution_id)
                .values(notification_status=status)
            )
            await session.commit()
        return int(result.rowcount or 0) == 1
