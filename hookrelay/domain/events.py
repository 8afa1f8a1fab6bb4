from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any


class EventType(str, Enum):
    COST_ALERT = "cost.alert"
    COST_THRESHOLD_EXCEEDED = "cost.threshold_exceeded"
    BUDGET_WARNING = "budget.warning"
    BUDGET_EXCEEDED = "budget.exceeded"
    COST_SPIKE_DETECTED = "cost.spike_detected"
    COST_ANOMALY_DETECTED = "cost.anomaly_detected"
    OPTIMIZATION_COMPLETED = "optimization.completed"
    OPTIMIZATION_FAILED = "optimization.failed"
    OPTIMIZATION_SUGGESTED = "optimization.suggested"
    OPTIMIZATION_APPLIED = "optimization.applied"
    SAVINGS_MILESTONE = "savings.milestone_reached"
    MODEL_PERFORMANCE_DEGRADED = "model.performance_degraded"
    MODEL_ERROR_RATE_HIGH = "model.error_rate_high"
    MODEL_LATENCY_HIGH = "model.latency_high"
    MODEL_QUOTA_WARNING = "model.quota_warning"
    MODEL_QUOTA_EXCEEDED = "model.quota_exceeded"
    USAGE_SPIKE = "usage.spike_detected"
    USAGE_PATTERN_CHANGED = "usage.pattern_changed"
    TOKEN_LIMIT_WARNING = "usage.token_limit_warning"
    TOKEN_LIMIT_EXCEEDED = "usage.token_limit_exceeded"
    API_RATE_LIMIT_WARNING = "usage.api_rate_limit_warning"
    EXPERIMENT_STARTED = "experiment.started"
    EXPERIMENT_COMPLETED = "experiment.completed"
    EXPERIMENT_FAILED = "experiment.failed"
    TRAINING_STARTED = "training.started"
    TRAINING_COMPLETED = "training.completed"
    TRAINING_FAILED = "training.failed"
    WORKFLOW_STARTED = "workflow.started"
    WORKFLOW_COMPLETED = "workflow.completed"
    WORKFLOW_FAILED = "workflow.failed"
    WORKFLOW_STEP_COMPLETED = "workflow.step_completed"
    SECURITY_ALERT = "security.alert"
    COMPLIANCE_VIOLATION = "compliance.violation"
    DATA_PRIVACY_ALERT = "data.privacy_alert"
    MODERATION_BLOCKED = "moderation.blocked"
    SYSTEM_ERROR = "system.error"
    SERVICE_DEGRADATION = "service.degradation"
    MAINTENANCE_SCHEDULED = "maintenance.scheduled"
    AGENT_TASK_COMPLETED = "agent.task_completed"
    AGENT_TASK_FAILED = "agent.task_failed"
    AGENT_INSIGHT_GENERATED = "agent.insight_generated"
    QUALITY_DEGRADED = "quality.degraded"
    QUALITY_IMPROVED = "quality.improved"
    QUALITY_THRESHOLD_VIOLATED = "quality.threshold_violated"


SEVERITIES = ("low", "medium", "high", "critical")

EVENT_TITLES: dict[EventType, str] = {
    EventType.COST_ALERT: "Cost Alert",
    EventType.COST_THRESHOLD_EXCEEDED: "Cost Threshold Exceeded",
    EventType.BUDGET_WARNING: "Budget Warning",
    EventType.BUDGET_EXCEEDED: "Budget Exceeded",
    EventType.COST_SPIKE_DETECTED: "Cost Spike Detected",
    EventType.COST_ANOMALY_DETECTED: "Cost Anomaly Detected",
    EventType.OPTIMIZATION_COMPLETED: "Optimization Completed",
    EventType.OPTIMIZATION_FAILED: "Optimization Failed",
    EventType.OPTIMIZATION_SUGGESTED: "New Optimization Suggestion",
    EventType.OPTIMIZATION_APPLIED: "Optimization Applied",
    EventType.SAVINGS_MILESTONE: "Savings Milestone Reached",
    EventType.MODEL_PERFORMANCE_DEGRADED: "Model Performance Degraded",
    EventType.MODEL_ERROR_RATE_HIGH: "High Model Error Rate",
    EventType.MODEL_LATENCY_HIGH: "High Model Latency",
    EventType.MODEL_QUOTA_WARNING: "Model Quota Warning",
    EventType.MODEL_QUOTA_EXCEEDED: "Model Quota Exceeded",
    EventType.USAGE_SPIKE: "Usage Spike Detected",
    EventType.USAGE_PATTERN_CHANGED: "Usage Pattern Changed",
    EventType.TOKEN_LIMIT_WARNING: "Token Limit Warning",
    EventType.TOKEN_LIMIT_EXCEEDED: "Token Limit Exceeded",
    EventType.API_RATE_LIMIT_WARNING: "API Rate Limit Warning",
    EventType.EXPERIMENT_STARTED: "Experiment Started",
    EventType.EXPERIMENT_COMPLETED: "Experiment Completed",
    EventType.EXPERIMENT_FAILED: "Experiment Failed",
    EventType.TRAINING_STARTED: "Training Started",
    EventType.TRAINING_COMPLETED: "Training Completed",
    EventType.TRAINING_FAILED: "Training Failed",
    EventType.WORKFLOW_STARTED: "Workflow Started",
    EventType.WORKFLOW_COMPLETED: "Workflow Completed",
    EventType.WORKFLOW_FAILED: "Workflow Failed",
    EventType.WORKFLOW_STEP_COMPLETED: "Workflow Step Completed",
    EventType.SECURITY_ALERT: "Security Alert",
    EventType.COMPLIANCE_VIOLATION: "Compliance Violation",
    EventType.DATA_PRIVACY_ALERT: "Data Privacy Alert",
    EventType.MODERATION_BLOCKED: "Content Moderation Blocked",
    EventType.SYSTEM_ERROR: "System Error",
    EventType.SERVICE_DEGRADATION: "Service Degradation",
    EventType.MAINTENANCE_SCHEDULED: "Maintenance Scheduled",
    EventType.AGENT_TASK_COMPLETED: "Agent Task Completed",
    EventType.AGENT_TASK_FAILED: "Agent Task Failed",
    EventType.AGENT_INSIGHT_GENERATED: "New Agent Insight",
    EventType.QUALITY_DEGRADED: "Quality Degraded",
    EventType.QUALITY_IMPROVED: "Quality Improved",
    EventType.QUALITY_THRESHOLD_VIOLATED: "Quality Threshold Violated",
}

# Format strings rendered against {"metrics": ..., "cost": ...} with "N/A"/0 defaults filled in.
EVENT_DESCRIPTIONS: dict[EventType, str] = {
    EventType.COST_THRESHOLD_EXCEEDED: "Cost has exceeded the threshold of {threshold}",
    EventType.BUDGET_EXCEEDED: "Budget limit has been exceeded by {change_percentage}%",
    EventType.MODEL_PERFORMANCE_DEGRADED: (
        "Model performance has degraded. Current: {current}, Previous: {previous}"
    ),
    EventType.USAGE_SPIKE: "Usage spike detected: {change_percentage}% increase",
    EventType.OPTIMIZATION_COMPLETED: (
        "Optimization completed successfully. Estimated savings: {cost_amount} {cost_currency}"
    ),
}

CRITICAL_EVENTS = frozenset(
    {
        EventType.BUDGET_EXCEEDED,
        EventType.SECURITY_ALERT,
        EventType.COMPLIANCE_VIOLATION,
        EventType.DATA_PRIVACY_ALERT,
        EventType.SYSTEM_ERROR,
    }
)
HIGH_EVENTS = frozenset(
    {
        EventType.COST_THRESHOLD_EXCEEDED,
        EventType.MODEL_QUOTA_EXCEEDED,
        EventType.TOKEN_LIMIT_EXCEEDED,
        EventType.SERVICE_DEGRADATION,
        EventType.QUALITY_THRESHOLD_VIOLATED,
    }
)
MEDIUM_EVENTS = frozenset(
    {
        EventType.COST_SPIKE_DETECTED,
        EventType.BUDGET_WARNING,
        EventType.MODEL_PERFORMANCE_DEGRADED,
        EventType.MODEL_ERROR_RATE_HIGH,
        EventType.USAGE_SPIKE,
        EventType.API_RATE_LIMIT_WARNING,
    }
)


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class WebhookEvent:
    # Immutable event fact; replays and tests create new instances with new ids.
    event_id: str
    event_type: str
    user_id: str
    data: dict[str, Any]
    occurred_at: datetime = field(default_factory=_utc_now)
    project_id: str | None = None
    metadata: dict[str, Any] | None = None

    @property
    def severity(self) -> str | None:
        value = self.data.get("severity")
        return str(value) if value else None

    @property
    def tags(self) -> list[str]:
        raw = self.data.get("tags") or []
        return [str(tag) for tag in raw] if isinstance(raw, (list, tuple, set)) else []

    @property
    def cost_amount(self) -> float | None:
        cost = self.data.get("cost")
        if not isinstance(cost, dict):
            return None
        amount = cost.get("amount")
        if isinstance(amount, bool) or not isinstance(amount, (int, float)):
            return None
        return float(amount)

    def to_dict(self) -> dict[str, Any]:
        # JSON-safe snapshot stored on deliveries and exposed to payload templates.
        return {
            "event_id": self.event_id,
            "event_type": self.event_type,
            "occurred_at": self.occurred_at.isoformat(),
            "user_id": self.user_id,
            "project_id": self.project_id,
            "data": self.data,
            "metadata": self.metadata,
        }

    @classmethod
    def from_dict(cls, raw: dict[str, Any]) -> "WebhookEvent":
        occurred_raw = raw.get("occurred_at")
        if isinstance(occurred_raw, datetime):
            occurred_at = occurred_raw
        elif isinstance(occurred_raw, str) and occurred_raw:
            occurred_at = datetime.fromisoformat(occurred_raw.replace("Z", "+00:00"))
        else:
            occurred_at = _utc_now()
        if occurred_at.tzinfo is None:
            occurred_at = occurred_at.replace(tzinfo=timezone.utc)
        return cls(
            event_id=str(raw["event_id"]),
            event_type=str(raw["event_type"]),
            user_id=str(raw.get("user_id") or ""),
            data=dict(raw.get("data") or {}),
            occurred_at=occurred_at,
            project_id=raw.get("project_id"),
            metadata=raw.get("metadata"),
        )
