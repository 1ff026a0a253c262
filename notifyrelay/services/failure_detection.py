from __future__ import annotations

from datetime import datetime, timezone
import hashlib
import logging
from typing import Callable

from notifyrelay.core.config import get_settings
from notifyrelay.domain.notifications import (
    CRITICAL_ALERT,
    AlertDetails,
    AlertType,
    CriticalAlert,
    ExecutionRecord,
    NotificationEvent,
)
from notifyrelay.persistence.repos.executions import ExecutionStore


logger = logging.getLogger(__name__)


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def _failure_time(record: ExecutionRecord) -> datetime:
    return record.ended_at or record.created_at


class FailureDetector:
    # Pure reads over execution history; forwarding alerts is the caller's job.
    def __init__(
        self,
        executions: ExecutionStore,
        *,
        failure_rate_threshold: float | None = None,
        clock: Callable[[], datetime] = _utc_now,
    ) -> None:
        self._executions = executions
        self._threshold = (
            failure_rate_threshold if failure_rate_threshold is not None else get_settings().failure_rate_threshold
        )
        self._clock = clock

    async def detect_suite_failure_rate(self, suite_execution_id: str) -> CriticalAlert | None:
        records = await self._executions.for_suite_execution(suite_execution_id)
        if not records:
            return None
        failed = [record for record in records if record.is_failure]
        failure_rate = len(failed) / len(records)
        # Strictly greater: exactly half failing does not alert.
        if failure_rate <= self._threshold:
            return None
        last = max(failed, key=_failure_time)
        percent = round(failure_rate * 100, 1)
        logger.info(
            "suite_failure_threshold suite_execution_id=%s failed=%s total=%s",
            suite_execution_id,
            len(failed),
            len(records),
        )
        return CriticalAlert(
            alert_type=AlertType.SUITE_FAILURE_THRESHOLD,
            reason=f"{percent}% of tests failed ({len(failed)}/{len(records)})",
            details=AlertDetails(
                failure_rate=round(failure_rate, 4),
                affected_tests=tuple(record.test_case_id or record.execution_id for record in failed),
                last_failure=_failure_time(last),
                error_message=last.error_message,
            ),
            timestamp=self._clock(),
            test_suite_id=records[0].test_suite_id,
            suite_execution_id=suite_execution_id,
        )

    async def detect_consecutive_failures(self, test_case_id: str, limit: int | None = None) -> CriticalAlert | None:
        limit = limit if limit is not None else get_settings().consecutive_failure_limit
        if limit <= 0:
            return None
        recent = await self._executions.recent_for_test_case(test_case_id, limit)
        # Fewer executions than the window is insufficient data, never an alert.
        if len(recent) < limit:
            return None
        if not all(record.is_failure for record in recent):
            return None
        latest = recent[0]
        logger.info("consecutive_failures test_case_id=%s streak=%s", test_case_id, limit)
        return CriticalAlert(
            alert_type=AlertType.CONSECUTIVE_FAILURES,
            reason=f"Test failed {limit} consecutive times",
            details=AlertDetails(
                consecutive_failures=limit,
                last_failure=_failure_time(latest),
                error_message=latest.error_message,
            ),
            timestamp=self._clock(),
            test_case_id=test_case_id,
            test_suite_id=latest.test_suite_id,
            suite_execution_id=latest.suite_execution_id,
        )


def alert_event_id(alert: CriticalAlert, user_id: str) -> str:
    # Same alert for the same user yields the same id so redelivery deduplicates.
    if alert.alert_type == AlertType.CONSECUTIVE_FAILURES:
        last = alert.details.last_failure.isoformat() if alert.details.last_failure else ""
        subject = f"{alert.test_case_id}:{last}"
    else:
        subject = str(alert.suite_execution_id)
    raw = f"{alert.alert_type.value}:{subject}:{user_id}"
    return "alert_" + hashlib.sha256(raw.encode("utf-8")).hexdigest()[:24]


def alert_to_event(alert: CriticalAlert, *, user_id: str, project_id: str | None = None) -> NotificationEvent:
    details = alert.details
    context = {
        "alertType": alert.alert_type.value,
        "severity": alert.severity,
        "reason": alert.reason,
        "testCaseId": alert.test_case_id,
        "testSuiteId": alert.test_suite_id,
        "suiteExecutionId": alert.suite_execution_id,
        "failureRate": details.failure_rate,
        "consecutiveFailures": details.consecutive_failures,
        "affectedTests": list(details.affected_tests),
        "lastFailure": details.last_failure.isoformat() if details.last_failure else None,
        "errorMessage": details.error_message,
    }
    return NotificationEvent(
        event_id=alert_event_id(alert, user_id),
        event_type=CRITICAL_ALERT,
        user_id=user_id,
        project_id=project_id,
        context={key: value for key, value in context.items() if value is not None},
        created_at=alert.timestamp,
    )
