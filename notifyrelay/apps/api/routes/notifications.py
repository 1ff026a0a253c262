from __future__ import annotations

from datetime import datetime
from typing import Any

from fastapi import APIRouter, Body, Depends, HTTPException, Query, Request
from pydantic import BaseModel

from notifyrelay.apps.api.deps import EventEnqueuer, get_event_enqueuer, get_history_store
from notifyrelay.apps.api.response import SuccessEnvelope, success_response
from notifyrelay.core.errors import EventValidationError
from notifyrelay.domain.notifications import KNOWN_EVENT_TYPES, Channel, DeliveryAttempt, DeliveryStatus
from notifyrelay.persistence.repos.history import HistoryQuery, HistoryStore
from notifyrelay.services.notifications.pipeline import parse_event

router = APIRouter(prefix="/notifications", tags=["notifications"])


class DeliveryAttemptOut(BaseModel):
    attempt_id: str
    event_id: str
    user_id: str
    event_type: str
    channel: Channel
    status: DeliveryStatus
    reason: str | None = None
    fallback_from: Channel | None = None
    attempts: int
    recipient: str | None = None
    message_id: str | None = None
    timestamp: datetime


class EventAccepted(BaseModel):
    event_id: str
    queued: bool


def _attempt_payload(attempt: DeliveryAttempt) -> dict[str, Any]:
    return DeliveryAttemptOut(
        attempt_id=attempt.attempt_id,
        event_id=attempt.event_id,
        user_id=attempt.user_id,
        event_type=attempt.event_type,
        channel=attempt.channel,
        status=attempt.status,
        reason=attempt.reason,
        fallback_from=attempt.fallback_from,
        attempts=attempt.attempts,
        recipient=attempt.recipient,
        message_id=attempt.message_id,
        timestamp=attempt.timestamp,
    ).model_dump(mode="json")


@router.post("/events", status_code=202, response_model=SuccessEnvelope[EventAccepted])
async def submit_event(
    request: Request,
    payload: dict[str, Any] = Body(...),
    enqueue: EventEnqueuer = Depends(get_event_enqueuer),
) -> dict:
    # Validate at the edge so producers learn about bad payloads synchronously.
    event = parse_event(payload)
    if event.event_type not in KNOWN_EVENT_TYPES:
        raise EventValidationError("unknown_event_type", f"unknown event type {event.event_type}")
    queued = await enqueue(event)
    return success_response(request=request, data=EventAccepted(event_id=event.event_id, queued=queued).model_dump())


@router.get("/history", response_model=SuccessEnvelope[list[DeliveryAttemptOut]])
async def list_history(
    request: Request,
    user_id: str | None = Query(default=None),
    event_type: str | None = Query(default=None),
    channel: Channel | None = Query(default=None),
    status_filter: DeliveryStatus | None = Query(default=None, alias="status"),
    since: datetime | None = Query(default=None),
    until: datetime | None = Query(default=None),
    limit: int = Query(default=50, ge=1, le=500),
    history: HistoryStore = Depends(get_history_store),
) -> dict:
    # Newest first so operators see the latest decisions on top.
    attempts = await history.query(
        HistoryQuery(
            user_id=user_id,
            event_type=event_type,
            channel=channel,
            status=status_filter,
            since=since,
            until=until,
            limit=limit,
        )
    )
    return success_response(request=request, data=[_attempt_payload(attempt) for attempt in attempts])


@router.get("/events/{event_id}/attempts", response_model=SuccessEnvelope[list[DeliveryAttemptOut]])
async def list_event_attempts(
    request: Request,
    event_id: str,
    history: HistoryStore = Depends(get_history_store),
) -> dict:
    # Full audit trail for one event, oldest first.
    attempts = await history.for_event(event_id)
    return success_response(request=request, data=[_attempt_payload(attempt) for attempt in attempts])


@router.get("/attempts/{attempt_id}", response_model=SuccessEnvelope[DeliveryAttemptOut])
async def get_attempt(
    request: Request,
    attempt_id: str,
    history: HistoryStore = Depends(get_history_store),
) -> dict:
    attempt = await history.get(attempt_id)
    if attempt is None:
        raise HTTPException(status_code=404, detail={"code": "NOT_FOUND", "message": "Delivery attempt not found"})
    return success_response(request=request, data=_attempt_payload(attempt))
