from __future__ import annotations

import math
import time
from collections import defaultdict, deque
from dataclasses import dataclass
from typing import Deque


@dataclass(frozen=True)
class DeliverySample:
    ts: float
    webhook_id: str
    outcome: str
    status_code: int | None
    latency_ms: float


_delivery_samples: Deque[DeliverySample] = deque(maxlen=10000)
_counters: dict[str, int] = defaultdict(int)
_gauges: dict[str, float] = {}


def increment_counter(name: str, value: int = 1) -> None:
    # Store counters for delivery dashboards and queue health checks.
    _counters[name] += value


def set_gauge(name: str, value: float) -> None:
    _gauges[name] = float(value)


def record_delivery(*, webhook_id: str, outcome: str, status_code: int | None, latency_ms: float) -> None:
    # Capture outbound call latency and outcome per subscription.
    _delivery_samples.append(
        DeliverySample(
            ts=time.time(),
            webhook_id=webhook_id,
            outcome=outcome,
            status_code=status_code,
            latency_ms=latency_ms,
        )
    )
    increment_counter(f"webhook_deliveries_total.{outcome}")


def delivery_latency_stats(window_s: int) -> dict[str, float | None]:
    # Summarize delivery latency over the window for ops reporting.
    cutoff = time.time() - window_s
    latencies = sorted(sample.latency_ms for sample in _delivery_samples if sample.ts >= cutoff)
    if not latencies:
        return {"p50": None, "p95": None, "max": None}
    p50_idx = max(0, math.ceil(0.5 * len(latencies)) - 1)
    p95_idx = max(0, math.ceil(0.95 * len(latencies)) - 1)
    return {"p50": latencies[p50_idx], "p95": latencies[p95_idx], "max": latencies[-1]}


def counters_snapshot() -> dict[str, int]:
    # Return a copy of all counters for metrics reporting.
    return dict(_counters)


def gauges_snapshot() -> dict[str, float]:
    return dict(_gauges)


def reset_telemetry() -> None:
    # Tests reset process-local buffers between cases.
    _delivery_samples.clear()
    _counters.clear()
    _gauges.clear()
