from __future__ import annotations

from fastapi import APIRouter, Depends, Request
from pydantic import BaseModel

from notifyrelay.apps.api.deps import get_breaker_registry
from notifyrelay.apps.api.response import SuccessEnvelope, success_response
from notifyrelay.domain.notifications import Channel
from notifyrelay.services.resilience import CircuitBreakerRegistry
from notifyrelay.services.telemetry import channel_latency_by_dependency, counters_snapshot, gauges_snapshot

router = APIRouter(prefix="/ops", tags=["ops"])


class BreakerStateOut(BaseModel):
    key: str
    state: str
    consecutive_failures: int | None = None
    opened_at: float | None = None
    half_open_attempts_used: int | None = None


class MetricsOut(BaseModel):
    counters: dict[str, int]
    gauges: dict[str, float]
    channels: dict[str, dict[str, float | None]]


@router.get("/breakers", response_model=SuccessEnvelope[list[BreakerStateOut]])
async def list_breakers(
    request: Request,
    registry: CircuitBreakerRegistry = Depends(get_breaker_registry),
) -> dict:
    # Without shared Redis state each worker owns its breakers and the API cannot see them.
    rows: list[dict] = []
    for channel in Channel:
        if not registry.shared_state:
            rows.append(BreakerStateOut(key=channel.value, state="unknown").model_dump())
            continue
        state = await registry.get(channel.value).load()
        rows.append(BreakerStateOut(key=channel.value, **state.as_dict()).model_dump())
    return success_response(request=request, data=rows)


@router.get("/metrics", response_model=SuccessEnvelope[MetricsOut])
async def metrics(request: Request) -> dict:
    payload = MetricsOut(
        counters=counters_snapshot(),
        gauges=gauges_snapshot(),
        channels=channel_latency_by_dependency(300),
    )
    return success_response(request=request, data=payload.model_dump())
