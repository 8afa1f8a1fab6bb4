from __future__ import annotations

import asyncio
from collections import deque
import inspect
import logging
import re
from typing import Any, Awaitable, Callable, Deque
from uuid import uuid4

from hookrelay.core.config import Settings, get_settings
from hookrelay.domain.events import (
    CRITICAL_EVENTS,
    EVENT_DESCRIPTIONS,
    EVENT_TITLES,
    HIGH_EVENTS,
    MEDIUM_EVENTS,
    EventType,
    WebhookEvent,
)
from hookrelay.services.telemetry import increment_counter, set_gauge


logger = logging.getLogger(__name__)

# Listener key that receives every event type.
WILDCARD = "*"

EventProcessor = Callable[[WebhookEvent], Awaitable[Any]]
EventListener = Callable[[WebhookEvent], Any]


def default_title(event_type: str) -> str:
    title = EVENT_TITLES.get(event_type)  # type: ignore[call-overload]
    if title:
        return title
    return re.sub(r"[._]+", " ", event_type).title()


def default_description(event_type: str, data: dict[str, Any]) -> str:
    template = EVENT_DESCRIPTIONS.get(event_type)  # type: ignore[call-overload]
    if template is None:
        return f"{event_type} event occurred"
    metrics = data.get("metrics") if isinstance(data.get("metrics"), dict) else {}
    cost = data.get("cost") if isinstance(data.get("cost"), dict) else {}
    return template.format(
        threshold=metrics.get("threshold") or "N/A",
        change_percentage=metrics.get("change_percentage") or 0,
        current=metrics.get("current") or "N/A",
        previous=metrics.get("previous") or "N/A",
        cost_amount=cost.get("amount") or 0,
        cost_currency=cost.get("currency") or "USD",
    )


def determine_severity(event_type: str, data: dict[str, Any]) -> str:
    if event_type in CRITICAL_EVENTS:
        return "critical"
    if event_type in HIGH_EVENTS:
        return "high"
    if event_type in MEDIUM_EVENTS:
        return "medium"
    metrics = data.get("metrics") if isinstance(data.get("metrics"), dict) else {}
    change = metrics.get("change_percentage")
    if isinstance(change, (int, float)) and not isinstance(change, bool) and change:
        magnitude = abs(float(change))
        if magnitude > 100:
            return "high"
        if magnitude > 50:
            return "medium"
    return "low"


def _change_percentage(current: float, baseline: float) -> float | None:
    if not baseline:
        return None
    return ((current - baseline) / baseline) * 100


class WebhookEventEmitter:
    """Enrich domain events and hand them to the webhook service.

    Non-immediate events are buffered and processed in micro-batches by a
    periodic task; immediate events are processed in a background task right
    away. Emitting never raises: enrichment, listener and processing errors
    are logged and absorbed.
    """

    def __init__(self, process_event: EventProcessor, settings: Settings | None = None) -> None:
        self._process_event = process_event
        self._settings = settings or get_settings()
        self._queue: Deque[WebhookEvent] = deque()
        self._listeners: dict[str, list[EventListener]] = {}
        self._inflight: set[asyncio.Task] = set()
        self._batch_lock = asyncio.Lock()
        self._task: asyncio.Task | None = None

    @property
    def batch_size(self) -> int:
        return max(1, int(self._settings.webhook_batch_size))

    @property
    def batch_interval_s(self) -> float:
        return max(1, int(self._settings.webhook_batch_interval_ms)) / 1000.0

    def on(self, event_type: str, listener: EventListener) -> None:
        self._listeners.setdefault(str(event_type), []).append(listener)

    def off(self, event_type: str, listener: EventListener) -> None:
        listeners = self._listeners.get(str(event_type)) or []
        if listener in listeners:
            listeners.remove(listener)

    def emit(
        self,
        event_type: str,
        user_id: str,
        data: dict[str, Any] | None = None,
        *,
        project_id: str | None = None,
        metadata: dict[str, Any] | None = None,
        immediate: bool = False,
    ) -> WebhookEvent | None:
        try:
            event_type = str(event_type.value if isinstance(event_type, EventType) else event_type)
            raw = dict(data or {})
            enriched = {
                **raw,
                "title": raw.get("title") or default_title(event_type),
                "description": raw.get("description") or default_description(event_type, raw),
                "severity": raw.get("severity") or determine_severity(event_type, raw),
            }
            event = WebhookEvent(
                event_id=str(uuid4()),
                event_type=event_type,
                user_id=user_id,
                data=enriched,
                project_id=project_id,
                metadata=metadata,
            )
        except Exception:  # noqa: BLE001 - a bad emit call must not break the caller's business flow.
            logger.exception("webhook_event_emit_failed event_type=%s user_id=%s", event_type, user_id)
            return None

        logger.info(
            "webhook_event_emitted event_id=%s event_type=%s user_id=%s severity=%s",
            event.event_id,
            event.event_type,
            event.user_id,
            event.severity,
        )
        increment_counter(f"webhook_events_emitted_total.{event.event_type}")
        self._notify_listeners(event)
        if not (immediate and self._dispatch_now(event)):
            self._buffer(event)
        return event

    def _dispatch_now(self, event: WebhookEvent) -> bool:
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            # Called from sync code or another thread: the next flush delivers it instead.
            logger.warning("webhook_event_immediate_deferred event_id=%s", event.event_id)
            return False
        self._track(loop.create_task(self._process_safely(event)))
        return True

    def _buffer(self, event: WebhookEvent) -> None:
        limit = max(1, int(self._settings.webhook_batch_max_queue))
        while len(self._queue) >= limit:
            dropped = self._queue.popleft()
            increment_counter("webhook_events_dropped_total")
            logger.warning("webhook_event_dropped_queue_full event_id=%s limit=%s", dropped.event_id, limit)
        self._queue.append(event)
        set_gauge("webhook_event_queue_size", len(self._queue))

    def _track(self, task: asyncio.Task) -> None:
        self._inflight.add(task)
        task.add_done_callback(self._inflight.discard)

    def _notify_listeners(self, event: WebhookEvent) -> None:
        listeners = list(self._listeners.get(event.event_type, [])) + list(self._listeners.get(WILDCARD, []))
        for listener in listeners:
            try:
                result = listener(event)
                if inspect.isawaitable(result):
                    self._track(asyncio.get_running_loop().create_task(self._await_listener(result, event)))
            except Exception:  # noqa: BLE001 - listeners are observers; their failures stay local.
                logger.exception("webhook_event_listener_failed event_id=%s", event.event_id)

    async def _await_listener(self, result: Awaitable[Any], event: WebhookEvent) -> None:
        try:
            await result
        except Exception:  # noqa: BLE001 - listeners are observers; their failures stay local.
            logger.exception("webhook_event_listener_failed event_id=%s", event.event_id)

    async def _process_safely(self, event: WebhookEvent) -> None:
        try:
            await self._process_event(event)
        except Exception:  # noqa: BLE001 - delivery failures are recorded downstream, never raised to emitters.
            logger.exception("webhook_event_processing_failed event_id=%s", event.event_id)

    def queue_size(self) -> int:
        return len(self._queue)

    async def process_batch(self) -> int:
        # Take at most one batch; concurrent callers wait for the running batch instead of overlapping.
        async with self._batch_lock:
            if not self._queue:
                return 0
            batch = [self._queue.popleft() for _ in range(min(self.batch_size, len(self._queue)))]
            set_gauge("webhook_event_queue_size", len(self._queue))
            await asyncio.gather(*(self._process_safely(event) for event in batch))
            return len(batch)

    async def flush(self) -> int:
        processed = 0
        while self._queue:
            processed += await self.process_batch()
        return processed

    async def wait_idle(self) -> None:
        # Await immediate processing and async listeners started by emit().
        while self._inflight:
            await asyncio.gather(*list(self._inflight), return_exceptions=True)

    async def _loop(self) -> None:
        while True:
            await asyncio.sleep(self.batch_interval_s)
            try:
                await self.process_batch()
            except Exception:  # noqa: BLE001 - keep the batch loop alive while surfacing failures in logs.
                logger.exception("webhook_event_batch_failed")

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> None:
        if self.running:
            return
        self._task = asyncio.create_task(self._loop())

    async def stop(self) -> None:
        task, self._task = self._task, None
        if task is not None:
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
        await self.flush()
        await self.wait_idle()

    def emit_cost_alert(
        self,
        user_id: str,
        project_id: str | None,
        cost: float,
        threshold: float,
        currency: str = "USD",
    ) -> WebhookEvent | None:
        data: dict[str, Any] = {
            "cost": {"amount": cost, "currency": currency},
            "metrics": {
                "current": cost,
                "threshold": threshold,
                "change_percentage": _change_percentage(cost, threshold),
                "unit": currency,
            },
        }
        if project_id:
            data["resource"] = {"type": "project", "id": project_id, "name": "Project"}
        return self.emit(EventType.COST_ALERT, user_id, data, project_id=project_id)

    def emit_optimization_completed(
        self,
        user_id: str,
        optimization_id: str,
        savings: float,
        description: str,
        project_id: str | None = None,
    ) -> WebhookEvent | None:
        return self.emit(
            EventType.OPTIMIZATION_COMPLETED,
            user_id,
            {
                "description": description,
                "cost": {"amount": savings, "currency": "USD"},
                "resource": {"type": "optimization", "id": optimization_id, "name": "Optimization"},
            },
            project_id=project_id,
        )

    def emit_model_performance_degraded(
        self,
        user_id: str,
        model: str,
        metric: str,
        current: float,
        previous: float,
        project_id: str | None = None,
    ) -> WebhookEvent | None:
        return self.emit(
            EventType.MODEL_PERFORMANCE_DEGRADED,
            user_id,
            {
                "resource": {"type": "model", "id": model, "name": model},
                "metrics": {
                    "current": current,
                    "previous": previous,
                    "change": current - previous,
                    "change_percentage": _change_percentage(current, previous),
                    "unit": metric,
                },
            },
            project_id=project_id,
        )

    def emit_usage_spike(
        self,
        user_id: str,
        metric: str,
        current: float,
        average: float,
        project_id: str | None = None,
    ) -> WebhookEvent | None:
        return self.emit(
            EventType.USAGE_SPIKE,
            user_id,
            {
                "metrics": {
                    "current": current,
                    "previous": average,
                    "change_percentage": _change_percentage(current, average),
                    "unit": metric,
                }
            },
            project_id=project_id,
        )

    def emit_experiment_completed(
        self,
        user_id: str,
        experiment_id: str,
        experiment_name: str,
        results: dict[str, Any] | None = None,
        project_id: str | None = None,
    ) -> WebhookEvent | None:
        return self.emit(
            EventType.EXPERIMENT_COMPLETED,
            user_id,
            {"resource": {"type": "experiment", "id": experiment_id, "name": experiment_name, "metadata": results}},
            project_id=project_id,
        )

    def emit_workflow_completed(
        self,
        user_id: str,
        workflow_id: str,
        workflow_name: str,
        duration: float,
        project_id: str | None = None,
    ) -> WebhookEvent | None:
        return self.emit(
            EventType.WORKFLOW_COMPLETED,
            user_id,
            {
                "resource": {
                    "type": "workflow",
                    "id": workflow_id,
                    "name": workflow_name,
                    "metadata": {"duration": duration},
                }
            },
            project_id=project_id,
        )

    def emit_security_alert(
        self,
        user_id: str,
        alert_type: str,
        description: str,
        metadata: dict[str, Any] | None = None,
    ) -> WebhookEvent | None:
        # Security alerts skip batching so subscribers hear about them without waiting for a flush.
        return self.emit(
            EventType.SECURITY_ALERT,
            user_id,
            {
                "description": description,
                "severity": "critical",
                "context": {"alert_type": alert_type, **(metadata or {})},
            },
            immediate=True,
        )

    def emit_system_error(
        self,
        user_id: str,
        error_type: str,
        message: str,
        metadata: dict[str, Any] | None = None,
    ) -> WebhookEvent | None:
        return self.emit(
            EventType.SYSTEM_ERROR,
            user_id,
            {
                "description": message,
                "severity": "high",
                "context": {"error_type": error_type, **(metadata or {})},
            },
            immediate=True,
        )
