from __future__ import annotations

import asyncio
from dataclasses import dataclass, field, replace
import json
import logging
import time
from typing import Any, Awaitable, Callable, Generic, TypeVar

from redis.asyncio import Redis

from notifyrelay.core.config import Settings, get_settings
from notifyrelay.core.errors import CircuitOpenError, ExhaustedRetriesError
from notifyrelay.services.telemetry import increment_counter, record_channel_call, set_gauge


logger = logging.getLogger(__name__)

T = TypeVar("T")

CLOSED = "closed"
OPEN = "open"
HALF_OPEN = "half_open"

DEFAULT_RETRYABLE_KINDS = frozenset({"timeout", "server_error", "rate_limited"})


def classify_error(exc: BaseException) -> str:
    # Map an exception to a retry kind; typed transport errors carry their own.
    kind = getattr(exc, "kind", None)
    if isinstance(kind, str):
        return kind
    if isinstance(exc, (asyncio.TimeoutError, TimeoutError)):
        return "timeout"
    status = getattr(exc, "status_code", None)
    if isinstance(status, int):
        if status == 408:
            return "timeout"
        if status == 429:
            return "rate_limited"
        if status >= 500:
            return "server_error"
        return "permanent"
    if isinstance(exc, (ConnectionError, OSError)):
        return "server_error"
    return "unknown"


@dataclass(frozen=True)
class RetryPolicy:
    max_attempts: int
    initial_delay_ms: int
    max_delay_ms: int
    backoff_multiplier: float = 2.0
    retryable_error_kinds: frozenset[str] = DEFAULT_RETRYABLE_KINDS

    def delay_ms(self, attempt: int) -> int:
        # Delay after the given 1-based attempt, capped at max_delay_ms.
        raw = self.initial_delay_ms * (self.backoff_multiplier ** max(0, attempt - 1))
        return int(min(self.max_delay_ms, raw))

    def is_retryable(self, exc: BaseException) -> bool:
        return classify_error(exc) in self.retryable_error_kinds


@dataclass(frozen=True)
class CircuitBreakerConfig:
    failure_threshold: int
    reset_timeout_ms: int
    half_open_max_attempts: int = 1


@dataclass(frozen=True)
class ResilienceConfig:
    # Per-dependency knobs; one instance per key in the registry.
    max_attempts: int = 3
    initial_delay_ms: int = 1000
    max_delay_ms: int = 8000
    backoff_multiplier: float = 2.0
    failure_threshold: int = 5
    reset_timeout_ms: int = 30000
    half_open_max_attempts: int = 1
    retryable_error_kinds: frozenset[str] = DEFAULT_RETRYABLE_KINDS

    def retry_policy(self) -> RetryPolicy:
        return RetryPolicy(
            max_attempts=self.max_attempts,
            initial_delay_ms=self.initial_delay_ms,
            max_delay_ms=self.max_delay_ms,
            backoff_multiplier=self.backoff_multiplier,
            retryable_error_kinds=self.retryable_error_kinds,
        )

    def breaker_config(self) -> CircuitBreakerConfig:
        return CircuitBreakerConfig(
            failure_threshold=self.failure_threshold,
            reset_timeout_ms=self.reset_timeout_ms,
            half_open_max_attempts=self.half_open_max_attempts,
        )


def default_resilience_config(settings: Settings | None = None) -> ResilienceConfig:
    settings = settings or get_settings()
    kinds = frozenset(kind.strip() for kind in settings.retry_retryable_kinds.split(",") if kind.strip())
    return ResilienceConfig(
        max_attempts=settings.retry_max_attempts,
        initial_delay_ms=settings.retry_initial_delay_ms,
        max_delay_ms=settings.retry_max_delay_ms,
        backoff_multiplier=settings.retry_backoff_multiplier,
        failure_threshold=settings.cb_failure_threshold,
        reset_timeout_ms=settings.cb_reset_timeout_ms,
        half_open_max_attempts=settings.cb_half_open_max_attempts,
        retryable_error_kinds=kinds or DEFAULT_RETRYABLE_KINDS,
    )


def parse_resilience_overrides(raw: str, base: ResilienceConfig) -> dict[str, ResilienceConfig]:
    # Overrides are a JSON object keyed by dependency name; unknown fields are rejected.
    if not raw.strip():
        return {}
    payload = json.loads(raw)
    if not isinstance(payload, dict):
        raise ValueError("resilience overrides must be a JSON object")
    overrides: dict[str, ResilienceConfig] = {}
    for key, values in payload.items():
        if not isinstance(values, dict):
            raise ValueError(f"resilience override for {key} must be an object")
        if "retryable_error_kinds" in values:
            values = {**values, "retryable_error_kinds": frozenset(values["retryable_error_kinds"])}
        overrides[str(key)] = replace(base, **values)
    return overrides


@dataclass
class CircuitState:
    state: str = CLOSED
    consecutive_failures: int = 0
    opened_at: float | None = None
    half_open_attempts_used: int = 0

    def as_dict(self) -> dict[str, Any]:
        return {
            "state": self.state,
            "consecutive_failures": self.consecutive_failures,
            "opened_at": self.opened_at,
            "half_open_attempts_used": self.half_open_attempts_used,
        }


class CircuitBreaker:
    def __init__(
        self,
        name: str,
        *,
        config: CircuitBreakerConfig,
        redis: Redis | None = None,
        redis_prefix: str = "notifyrelay:cb",
        time_source: Callable[[], float] | None = None,
        on_transition: Callable[[str, str], Awaitable[None]] | None = None,
    ) -> None:
        self._name = name
        self._config = config
        self._redis = redis
        self._redis_prefix = redis_prefix
        # Wall-clock time so openedAt stays comparable across workers sharing Redis.
        self._time = time_source or time.time
        self._on_transition = on_transition
        self._local_state = CircuitState()

    @property
    def name(self) -> str:
        return self._name

    @property
    def config(self) -> CircuitBreakerConfig:
        return self._config

    def _key(self) -> str:
        return f"{self._redis_prefix}:{self._name}"

    async def load(self) -> CircuitState:
        # Read breaker state from Redis when shared; otherwise use process-local state.
        if self._redis is None:
            return replace(self._local_state)
        raw = await self._redis.hgetall(self._key())
        if not raw:
            return CircuitState()
        opened_at = raw.get("opened_at")
        return CircuitState(
            state=raw.get("state", CLOSED),
            consecutive_failures=int(raw.get("consecutive_failures", 0)),
            opened_at=float(opened_at) if opened_at else None,
            half_open_attempts_used=int(raw.get("half_open_attempts_used", 0)),
        )

    async def _save(self, state: CircuitState) -> None:
        if self._redis is None:
            self._local_state = state
            return
        payload = {
            "state": state.state,
            "consecutive_failures": str(state.consecutive_failures),
            "opened_at": str(state.opened_at or ""),
            "half_open_attempts_used": str(state.half_open_attempts_used),
        }
        await self._redis.hset(self._key(), mapping=payload)
        ttl_s = max(int(self._config.reset_timeout_ms / 1000) * 4, 60)
        await self._redis.expire(self._key(), ttl_s)

    async def _transition(self, state: CircuitState, target: str) -> CircuitState:
        # Emit logs and gauges on state changes for operator visibility.
        if state.state != target:
            logger.warning("circuit_breaker_transition name=%s from=%s to=%s", self._name, state.state, target)
            increment_counter(f"circuit_breaker_transition_total.{self._name}.{target}")
            if target == OPEN:
                increment_counter("circuit_breaker_open_total")
            set_gauge(f"circuit_breaker_state.{self._name}", {CLOSED: 0.0, HALF_OPEN: 0.5, OPEN: 1.0}[target])
            if self._on_transition is not None:
                await self._on_transition(self._name, target)
        # Half-open keeps its entry time so an abandoned probe can be replaced after another timeout.
        opened_at = self._time() if target in (OPEN, HALF_OPEN) else None
        return CircuitState(state=target, consecutive_failures=0, opened_at=opened_at, half_open_attempts_used=0)

    def _timeout_elapsed(self, state: CircuitState, now: float) -> bool:
        return state.opened_at is not None and (now - state.opened_at) * 1000.0 >= self._config.reset_timeout_ms

    async def before_call(self) -> CircuitState:
        # Gate one call; raises CircuitOpenError when the dependency must not be tried.
        state = await self.load()
        now = self._time()
        if state.state == OPEN:
            if not self._timeout_elapsed(state, now):
                increment_counter(f"circuit_breaker_rejected_total.{self._name}")
                raise CircuitOpenError(self._name)
            state = await self._transition(state, HALF_OPEN)
        if state.state == HALF_OPEN:
            if state.half_open_attempts_used >= self._config.half_open_max_attempts:
                if not self._timeout_elapsed(state, now):
                    increment_counter(f"circuit_breaker_rejected_total.{self._name}")
                    raise CircuitOpenError(self._name)
                # Probe slots leaked by cancelled calls are reclaimed after a full timeout.
                state.opened_at = now
                state.half_open_attempts_used = 0
            state.half_open_attempts_used += 1
            await self._save(state)
        return state

    async def record_success(self) -> None:
        state = await self.load()
        if state.state != CLOSED:
            state = await self._transition(state, CLOSED)
        else:
            state.consecutive_failures = 0
        await self._save(state)

    async def record_failure(self) -> CircuitState:
        state = await self.load()
        if state.state == HALF_OPEN:
            state = await self._transition(state, OPEN)
            await self._save(state)
            return state
        if state.state == OPEN:
            return state
        failures = state.consecutive_failures + 1
        if failures >= self._config.failure_threshold:
            state = await self._transition(state, OPEN)
        else:
            state.consecutive_failures = failures
        await self._save(state)
        return state


class CircuitBreakerRegistry:
    # Owned by the process and injected into callers; one breaker per dependency key.
    def __init__(
        self,
        *,
        default_config: ResilienceConfig | None = None,
        overrides: dict[str, ResilienceConfig] | None = None,
        redis: Redis | None = None,
        redis_prefix: str = "notifyrelay:cb",
        time_source: Callable[[], float] | None = None,
        on_transition: Callable[[str, str], Awaitable[None]] | None = None,
    ) -> None:
        self._default = default_config or ResilienceConfig()
        self._overrides = dict(overrides or {})
        self._redis = redis
        self._redis_prefix = redis_prefix
        self._time_source = time_source
        self._on_transition = on_transition
        self._breakers: dict[str, CircuitBreaker] = {}

    @classmethod
    def from_settings(cls, settings: Settings | None = None, *, redis: Redis | None = None) -> CircuitBreakerRegistry:
        settings = settings or get_settings()
        base = default_resilience_config(settings)
        return cls(
            default_config=base,
            overrides=parse_resilience_overrides(settings.cb_overrides_json, base),
            redis=redis if settings.cb_shared_state_enabled else None,
            redis_prefix=settings.cb_redis_prefix,
        )

    @property
    def shared_state(self) -> bool:
        return self._redis is not None

    def config_for(self, key: str) -> ResilienceConfig:
        return self._overrides.get(key, self._default)

    def policy_for(self, key: str) -> RetryPolicy:
        return self.config_for(key).retry_policy()

    def get(self, key: str) -> CircuitBreaker:
        breaker = self._breakers.get(key)
        if breaker is None:
            breaker = CircuitBreaker(
                key,
                config=self.config_for(key).breaker_config(),
                redis=self._redis,
                redis_prefix=self._redis_prefix,
                time_source=self._time_source,
                on_transition=self._on_transition,
            )
            self._breakers[key] = breaker
        return breaker

    async def snapshot(self) -> dict[str, CircuitState]:
        return {key: await breaker.load() for key, breaker in sorted(self._breakers.items())}


@dataclass
class RetryOutcome(Generic[T]):
    success: bool
    attempts: int
    result: T | None = None
    error: BaseException | None = None


@dataclass
class _AttemptCounter:
    count: int = field(default=0)


async def _run_with_retry(
    operation: Callable[[], Awaitable[T]],
    policy: RetryPolicy,
    breaker: CircuitBreaker | None,
    sleep: Callable[[float], Awaitable[Any]],
    counter: _AttemptCounter,
) -> T:
    max_attempts = max(policy.max_attempts, 1)
    last_error: BaseException | None = None
    for attempt in range(1, max_attempts + 1):
        # Each attempt is gated so an open circuit cuts the remaining schedule short.
        if breaker is not None:
            await breaker.before_call()
        counter.count = attempt
        started = time.monotonic()
        try:
            result = await operation()
        except Exception as exc:  # noqa: BLE001 - classified below, non-retryable kinds re-raise
            retryable = policy.is_retryable(exc)
            breaker_state: CircuitState | None = None
            if breaker is not None:
                record_channel_call(
                    dependency=breaker.name,
                    latency_ms=(time.monotonic() - started) * 1000.0,
                    success=False,
                )
                # A permanent rejection still proves the dependency is reachable.
                if retryable:
                    breaker_state = await breaker.record_failure()
                else:
                    await breaker.record_success()
            if not retryable:
                raise
            last_error = exc
            if attempt >= max_attempts:
                break
            # An open circuit ends the schedule now instead of after the next backoff.
            if breaker is not None and breaker_state is not None and breaker_state.state == OPEN:
                increment_counter(f"circuit_breaker_rejected_total.{breaker.name}")
                raise CircuitOpenError(breaker.name) from exc
            delay_ms = policy.delay_ms(attempt)
            # Track retry volume so operators can detect retry storms.
            increment_counter("retry_attempts_total")
            logger.info(
                "retry_scheduled attempt=%s kind=%s delay_ms=%s",
                attempt,
                classify_error(exc),
                delay_ms,
            )
            await sleep(delay_ms / 1000.0)
            continue
        if breaker is not None:
            record_channel_call(
                dependency=breaker.name,
                latency_ms=(time.monotonic() - started) * 1000.0,
                success=True,
            )
            await breaker.record_success()
        return result
    increment_counter("retry_exhausted_total")
    raise ExhaustedRetriesError(max_attempts, last_error)  # type: ignore[arg-type]


async def retry_with_backoff(
    operation: Callable[[], Awaitable[T]],
    policy: RetryPolicy,
    *,
    breaker: CircuitBreaker | None = None,
    sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
) -> T:
    # Raises ExhaustedRetriesError, CircuitOpenError, or the first non-retryable error.
    return await _run_with_retry(operation, policy, breaker, sleep, _AttemptCounter())


async def retry_with_backoff_safe(
    operation: Callable[[], Awaitable[T]],
    policy: RetryPolicy,
    *,
    breaker: CircuitBreaker | None = None,
    sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
) -> RetryOutcome[T]:
    # Result-object variant for batch call sites that must not stop on one failure.
    counter = _AttemptCounter()
    try:
        result = await _run_with_retry(operation, policy, breaker, sleep, counter)
    except Exception as exc:  # noqa: BLE001 - surfaced on the outcome instead of raised
        return RetryOutcome(success=False, attempts=counter.count, error=exc)
    return RetryOutcome(success=True, attempts=counter.count, result=result)


async def call_with_resilience(
    registry: CircuitBreakerRegistry,
    key: str,
    operation: Callable[[], Awaitable[T]],
    *,
    sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
) -> RetryOutcome[T]:
    # Compose the key's retry policy with its breaker.
    return await retry_with_backoff_safe(
        operation,
        registry.policy_for(key),
        breaker=registry.get(key),
        sleep=sleep,
    )


def create_breaker_redis(settings: Settings | None = None) -> Redis | None:
    # Shared breaker state is opt-in; per-process state needs no coordination.
    settings = settings or get_settings()
    if not settings.cb_shared_state_enabled:
        return None
    return Redis.from_url(settings.redis_url, encoding="utf-8", decode_responses=True)
