from __future__ import annotations

import math
import time
from collections import defaultdict, deque
from dataclasses import dataclass
from typing import Deque


@dataclass(frozen=True)
class ChannelCallSample:
    ts: float
    dependency: str
    latency_ms: float
    success: bool


_channel_samples: Deque[ChannelCallSample] = deque(maxlen=10000)
_counters: dict[str, int] = defaultdict(int)
_gauges: dict[str, float] = {}


def record_channel_call(*, dependency: str, latency_ms: float, success: bool) -> None:
    # Capture outbound channel latency and outcomes per dependency key.
    _channel_samples.append(
        ChannelCallSample(
            ts=time.time(),
            dependency=dependency,
            latency_ms=latency_ms,
            success=success,
        )
    )


def increment_counter(name: str, value: int = 1) -> None:
    # Store counters for delivery dashboards and retry-storm detection.
    _counters[name] += value


def set_gauge(name: str, value: float) -> None:
    _gauges[name] = float(value)


def channel_latency_by_dependency(window_s: int) -> dict[str, dict[str, float | None]]:
    # Aggregate p95/max latency and error rate per dependency in the window.
    cutoff = time.time() - window_s
    latencies: dict[str, list[float]] = defaultdict(list)
    failures: dict[str, int] = defaultdict(int)
    for sample in _channel_samples:
        if sample.ts < cutoff:
            continue
        latencies[sample.dependency].append(sample.latency_ms)
        if not sample.success:
            failures[sample.dependency] += 1
    result: dict[str, dict[str, float | None]] = {}
    for dependency, values in latencies.items():
        values.sort()
        p95_idx = max(0, math.ceil(0.95 * len(values)) - 1)
        result[dependency] = {
            "p95": values[p95_idx],
            "max": values[-1],
            "error_rate": failures[dependency] / len(values),
        }
    return result


def counters_snapshot() -> dict[str, int]:
    # Return a copy of all counters for metrics reporting.
    return dict(_counters)


def gauges_snapshot() -> dict[str, float]:
    return dict(_gauges)


def reset_telemetry() -> None:
    # Tests share one process; clear state so assertions stay isolated.
    _channel_samples.clear()
    _counters.clear()
    _gauges.clear()
