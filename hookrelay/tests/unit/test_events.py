from __future__ import annotations

import pytest

from hookrelay.domain.events import EventType, WebhookEvent
from hookrelay.services.telemetry import counters_snapshot
from hookrelay.services.webhooks.events import (
    WILDCARD,
    WebhookEventEmitter,
    default_description,
    default_title,
    determine_severity,
)


class Recorder:
    def __init__(self) -> None:
        self.events: list[WebhookEvent] = []

    async def __call__(self, event: WebhookEvent) -> list[str]:
        self.events.append(event)
        return []


def test_default_title_and_description() -> None:
    assert default_title("cost.alert") == "Cost Alert"
    assert default_title("custom.thing_happened") == "Custom Thing Happened"
    assert default_description("unknown.event", {}) == "unknown.event event occurred"
    assert (
        default_description("usage.spike_detected", {"metrics": {"change_percentage": 80}})
        == "Usage spike detected: 80% increase"
    )
    assert default_description("cost.threshold_exceeded", {}) == "Cost has exceeded the threshold of N/A"


@pytest.mark.parametrize(
    ("event_type", "data", "severity"),
    [
        ("security.alert", {}, "critical"),
        ("cost.threshold_exceeded", {}, "high"),
        ("budget.warning", {}, "medium"),
        ("experiment.completed", {}, "low"),
        ("experiment.completed", {"metrics": {"change_percentage": -150}}, "high"),
        ("experiment.completed", {"metrics": {"change_percentage": 60}}, "medium"),
        ("experiment.completed", {"metrics": {"change_percentage": 50}}, "low"),
    ],
)
def test_determine_severity(event_type: str, data: dict, severity: str) -> None:
    assert determine_severity(event_type, data) == severity


@pytest.mark.asyncio
async def test_emit_enriches_and_batches(settings) -> None:
    recorder = Recorder()
    emitter = WebhookEventEmitter(recorder, settings)

    event = emitter.emit(EventType.BUDGET_WARNING, "user-1", {"cost": {"amount": 5}}, project_id="proj-1")

    assert event is not None
    assert event.event_type == "budget.warning"
    assert event.data["title"] == "Budget Warning"
    assert event.data["severity"] == "medium"
    assert event.data["cost"] == {"amount": 5}
    assert event.project_id == "proj-1"
    assert emitter.queue_size() == 1
    assert recorder.events == []

    processed = await emitter.process_batch()

    assert processed == 1
    assert recorder.events == [event]
    assert emitter.queue_size() == 0
    assert counters_snapshot()["webhook_events_emitted_total.budget.warning"] == 1


@pytest.mark.asyncio
async def test_caller_supplied_fields_win(settings) -> None:
    emitter = WebhookEventEmitter(Recorder(), settings)
    event = emitter.emit("cost.alert", "user-1", {"title": "Custom", "severity": "critical"})
    assert event.data["title"] == "Custom"
    assert event.data["severity"] == "critical"


@pytest.mark.asyncio
async def test_batches_respect_batch_size(monkeypatch, settings) -> None:
    monkeypatch.setattr(settings, "webhook_batch_size", 2)
    recorder = Recorder()
    emitter = WebhookEventEmitter(recorder, settings)
    for _ in range(5):
        emitter.emit("cost.alert", "user-1")

    assert await emitter.process_batch() == 2
    assert emitter.queue_size() == 3
    assert await emitter.flush() == 3
    assert len(recorder.events) == 5


@pytest.mark.asyncio
async def test_immediate_events_skip_the_batch(settings) -> None:
    recorder = Recorder()
    emitter = WebhookEventEmitter(recorder, settings)

    event = emitter.emit_security_alert("user-1", "credential_leak", "API key exposed", {"ip": "10.0.0.1"})
    await emitter.wait_idle()

    assert emitter.queue_size() == 0
    assert recorder.events == [event]
    assert event.data["severity"] == "critical"
    assert event.data["context"] == {"alert_type": "credential_leak", "ip": "10.0.0.1"}


@pytest.mark.asyncio
async def test_processing_errors_are_absorbed(settings) -> None:
    async def broken(event: WebhookEvent) -> None:
        raise RuntimeError("store down")

    emitter = WebhookEventEmitter(broken, settings)
    emitter.emit_system_error("user-1", "db", "Database unreachable")
    emitter.emit("cost.alert", "user-1")
    await emitter.wait_idle()
    assert await emitter.process_batch() == 1


@pytest.mark.asyncio
async def test_listeners_receive_events_and_failures_stay_local(settings) -> None:
    emitter = WebhookEventEmitter(Recorder(), settings)
    typed: list[str] = []
    everything: list[str] = []
    async_seen: list[str] = []

    def failing(event: WebhookEvent) -> None:
        raise ValueError("listener bug")

    async def async_listener(event: WebhookEvent) -> None:
        async_seen.append(event.event_id)

    emitter.on("cost.alert", lambda event: typed.append(event.event_id))
    emitter.on("cost.alert", failing)
    emitter.on(WILDCARD, lambda event: everything.append(event.event_type))
    emitter.on(WILDCARD, async_listener)

    first = emitter.emit("cost.alert", "user-1")
    emitter.emit("budget.warning", "user-1")
    emitter.off("cost.alert", failing)
    await emitter.wait_idle()

    assert typed == [first.event_id]
    assert everything == ["cost.alert", "budget.warning"]
    assert len(async_seen) == 2


@pytest.mark.asyncio
async def test_stop_flushes_pending_events(settings) -> None:
    recorder = Recorder()
    emitter = WebhookEventEmitter(recorder, settings)
    emitter.start()
    assert emitter.running
    emitter.emit("cost.alert", "user-1")
    emitter.emit("cost.alert", "user-2")

    await emitter.stop()

    assert not emitter.running
    assert [event.user_id for event in recorder.events] == ["user-1", "user-2"]


@pytest.mark.asyncio
async def test_convenience_emitters_shape_data(settings) -> None:
    emitter = WebhookEventEmitter(Recorder(), settings)

    cost = emitter.emit_cost_alert("user-1", "proj-1", cost=150.0, threshold=100.0)
    assert cost.data["metrics"]["change_percentage"] == 50.0
    assert cost.data["resource"] == {"type": "project", "id": "proj-1", "name": "Project"}
    assert cost.cost_amount == 150.0

    spike = emitter.emit_usage_spike("user-1", "requests", current=300, average=100)
    assert spike.data["description"] == "Usage spike detected: 200.0% increase"
    assert spike.severity == "medium"

    degraded = emitter.emit_model_performance_degraded("user-1", "gpt", "accuracy", current=0.7, previous=0.9)
    assert degraded.data["metrics"]["previous"] == 0.9
    assert degraded.data["resource"]["id"] == "gpt"

    optimization = emitter.emit_optimization_completed("user-1", "opt-1", 12.5, "Switched model")
    assert optimization.data["description"] == "Switched model"

    workflow = emitter.emit_workflow_completed("user-1", "wf-1", "Nightly", duration=42.0)
    assert workflow.data["resource"]["metadata"] == {"duration": 42.0}

    experiment = emitter.emit_experiment_completed("user-1", "exp-1", "A/B", {"winner": "B"})
    assert experiment.data["resource"]["metadata"] == {"winner": "B"}

    assert emitter.emit_cost_alert("user-1", None, cost=1.0, threshold=0.0).data["metrics"]["change_percentage"] is None


def test_immediate_emit_without_running_loop_is_buffered(settings) -> None:
    emitter = WebhookEventEmitter(Recorder(), settings)

    event = emitter.emit("security.alert", "user-1", {"severity": "critical"}, immediate=True)

    assert event is not None
    assert event.severity == "critical"
    # Delivered by the next flush instead of raising into synchronous callers.
    assert emitter.queue_size() == 1


@pytest.mark.asyncio
async def test_buffer_drops_oldest_events_when_full(monkeypatch, settings) -> None:
    monkeypatch.setattr(settings, "webhook_batch_max_queue", 2)
    recorder = Recorder()
    emitter = WebhookEventEmitter(recorder, settings)

    emitted = [emitter.emit(EventType.BUDGET_WARNING, "user-1") for _ in range(3)]

    assert emitter.queue_size() == 2
    await emitter.flush()
    assert [event.event_id for event in recorder.events] == [event.event_id for event in emitted[1:]]
    assert counters_snapshot()["webhook_events_dropped_total"] == 1
