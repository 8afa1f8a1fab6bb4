from __future__ import annotations

import asyncio
from dataclasses import asdict, dataclass
import json
import logging
import random
import time
from typing import Awaitable, Callable

from redis.asyncio import Redis

from hookrelay.core.config import get_settings
from hookrelay.core.errors import IntegrationUnavailableError
from hookrelay.services.telemetry import increment_counter, set_gauge


logger = logging.getLogger(__name__)


def exponential_backoff_ms(
    *,
    attempt: int,
    initial_delay_ms: float,
    multiplier: float,
    max_delay_ms: float,
    jitter: float = 0.0,
    rand: Callable[[float, float], float] | None = None,
) -> int:
    # initial * multiplier^(attempt-1), perturbed by +/- jitter and capped.
    exponent = max(0, int(attempt) - 1)
    delay = float(initial_delay_ms) * (float(multiplier) ** exponent)
    if jitter > 0:
        uniform = rand or random.uniform
        delay *= uniform(1.0 - jitter, 1.0 + jitter)
    return int(min(float(max_delay_ms), max(0.0, delay)))


@dataclass(frozen=True)
class CircuitBreakerConfig:
    failure_threshold: int
    open_seconds: int
    half_open_trials: int


@dataclass
class _BreakerState:
    mode: str = "closed"
    failures: int = 0
    opened_at: float | None = None
    trials: int = 0


class CircuitBreaker:
    """Consecutive-failure breaker for the subscription store.

    ``failure_threshold`` failures in a row open the breaker for
    ``open_seconds``; after that ``half_open_trials`` calls are let through
    and the first outcome closes or reopens it. Given a Redis client, the
    state is one JSON value shared by every process using the same name.
    """

    def __init__(
        self,
        name: str,
        *,
        redis: Redis | None = None,
        config: CircuitBreakerConfig | None = None,
        time_source: Callable[[], float] | None = None,
    ) -> None:
        settings = get_settings()
        self.name = name
        self._redis = redis
        self._config = config or CircuitBreakerConfig(
            failure_threshold=settings.webhook_store_breaker_failure_threshold,
            open_seconds=settings.webhook_store_breaker_open_seconds,
            half_open_trials=settings.webhook_store_breaker_half_open_trials,
        )
        # Wall clock, since shared state is compared across processes.
        self._time = time_source or time.time
        self._local = _BreakerState()

    @property
    def key(self) -> str:
        return f"{get_settings().cb_redis_prefix}:{self.name}"

    async def _read(self) -> _BreakerState:
        if self._redis is None:
            return self._local
        raw = await self._redis.get(self.key)
        return _BreakerState(**json.loads(raw)) if raw else _BreakerState()

    async def _write(self, state: _BreakerState) -> None:
        if self._redis is None:
            self._local = state
            return
        await self._redis.set(self.key, json.dumps(asdict(state)), ex=max(60, self._config.open_seconds * 4))

    def _enter(self, state: _BreakerState, mode: str) -> _BreakerState:
        if state.mode != mode:
            logger.warning("circuit_breaker_transition name=%s from=%s to=%s", self.name, state.mode, mode)
            increment_counter(f"circuit_breaker_transition_total.{self.name}.{mode}")
            set_gauge(f"circuit_breaker_open.{self.name}", 1.0 if mode == "open" else 0.0)
        return _BreakerState(mode=mode, opened_at=self._time() if mode == "open" else None)

    async def before_call(self) -> None:
        state = await self._read()
        if state.mode == "open":
            if state.opened_at is not None and self._time() - state.opened_at < self._config.open_seconds:
                raise IntegrationUnavailableError(f"{self.name} is temporarily unavailable")
            state = self._enter(state, "half_open")
        if state.mode == "half_open":
            if state.trials >= self._config.half_open_trials:
                raise IntegrationUnavailableError(f"{self.name} is temporarily unavailable")
            state.trials += 1
            await self._write(state)

    async def record_success(self) -> None:
        state = await self._read()
        if state.mode == "closed" and state.failures == 0:
            return
        await self._write(self._enter(state, "closed"))

    async def record_failure(self) -> None:
        state = await self._read()
        if state.mode == "half_open" or state.failures + 1 >= self._config.failure_threshold:
            await self._write(self._enter(state, "open"))
            return
        state.failures += 1
        await self._write(state)


@dataclass(frozen=True)
class BucketConfig:
    # Configure rate limits with a sustained rate and burst capacity.
    rps: float
    burst: int


class TokenBucket:
    # Process-local token bucket; acquire() waits instead of rejecting so queued jobs are delayed, not dropped.
    def __init__(
        self,
        config: BucketConfig,
        *,
        time_source: Callable[[], float] | None = None,
        sleep: Callable[[float], Awaitable[None]] | None = None,
    ) -> None:
        self._config = config
        self._time = time_source or time.monotonic
        self._sleep = sleep or asyncio.sleep
        self._tokens = float(max(1, config.burst))
        self._updated = self._time()
        self._lock = asyncio.Lock()

    @classmethod
    def per_minute(cls, limit: int, **kwargs) -> "TokenBucket":
        limit = max(1, int(limit))
        return cls(BucketConfig(rps=limit / 60.0, burst=limit), **kwargs)

    def _refill(self) -> None:
        now = self._time()
        elapsed = max(0.0, now - self._updated)
        self._tokens = min(float(self._config.burst), self._tokens + elapsed * self._config.rps)
        self._updated = now

    def try_acquire(self) -> float:
        # Return 0 when a token was taken, otherwise the seconds until one is available.
        self._refill()
        if self._tokens >= 1.0:
            self._tokens -= 1.0
            return 0.0
        return (1.0 - self._tokens) / self._config.rps

    async def acquire(self) -> None:
        async with self._lock:
            while True:
                wait_s = self.try_acquire()
                if wait_s <= 0:
                    return
                increment_counter("rate_limit_waits_total")
                await self._sleep(wait_s)
