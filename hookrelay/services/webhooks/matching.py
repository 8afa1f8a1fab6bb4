from __future__ import annotations

from dataclasses import dataclass
import json
import logging
from typing import Any, Iterable, Union

from hookrelay.domain.events import WebhookEvent
from hookrelay.domain.models import Webhook
from hookrelay.services.webhooks.cache import BoundedLRU


logger = logging.getLogger(__name__)

_MISSING = object()


@dataclass(frozen=True)
class Equals:
    operand: Any

    def evaluate(self, value: Any) -> bool:
        return value is not _MISSING and value == self.operand


@dataclass(frozen=True)
class NotEqual:
    operand: Any

    def evaluate(self, value: Any) -> bool:
        if value is _MISSING:
            return self.operand is not None
        return value != self.operand


@dataclass(frozen=True)
class GreaterThan:
    operand: Any

    def evaluate(self, value: Any) -> bool:
        return _ordered(value, self.operand) and value > self.operand


@dataclass(frozen=True)
class GreaterThanOrEqual:
    operand: Any

    def evaluate(self, value: Any) -> bool:
        return _ordered(value, self.operand) and value >= self.operand


@dataclass(frozen=True)
class LessThan:
    operand: Any

    def evaluate(self, value: Any) -> bool:
        return _ordered(value, self.operand) and value < self.operand


@dataclass(frozen=True)
class LessThanOrEqual:
    operand: Any

    def evaluate(self, value: Any) -> bool:
        return _ordered(value, self.operand) and value <= self.operand


@dataclass(frozen=True)
class In:
    operand: tuple[Any, ...] | None

    def evaluate(self, value: Any) -> bool:
        # A non-list operand can never contain the value.
        if self.operand is None or value is _MISSING:
            return False
        return value in self.operand


@dataclass(frozen=True)
class UnknownOperator:
    name: str

    def evaluate(self, value: Any) -> bool:
        return False


Comparator = Union[
    Equals, NotEqual, GreaterThan, GreaterThanOrEqual, LessThan, LessThanOrEqual, In, UnknownOperator
]

_OPERATORS: dict[str, type] = {
    "$gt": GreaterThan,
    "$gte": GreaterThanOrEqual,
    "$lt": LessThan,
    "$lte": LessThanOrEqual,
    "$ne": NotEqual,
}


@dataclass(frozen=True)
class FieldCondition:
    path: tuple[str, ...]
    comparators: tuple[Comparator, ...]


@dataclass(frozen=True)
class CompiledQuery:
    conditions: tuple[FieldCondition, ...]

    def evaluate(self, context: dict[str, Any]) -> bool:
        for condition in self.conditions:
            value = resolve_path(context, condition.path)
            for comparator in condition.comparators:
                if not comparator.evaluate(value):
                    return False
        return True


def _ordered(value: Any, operand: Any) -> bool:
    # Only numbers with numbers and strings with strings are ordered; anything else fails the comparison.
    if value is _MISSING or value is None or operand is None:
        return False
    if isinstance(value, bool) or isinstance(operand, bool):
        return False
    numeric = (int, float)
    if isinstance(value, numeric) and isinstance(operand, numeric):
        return True
    return isinstance(value, str) and isinstance(operand, str)


def resolve_path(context: Any, path: tuple[str, ...]) -> Any:
    current = context
    for key in path:
        if isinstance(current, dict) and key in current:
            current = current[key]
            continue
        if isinstance(current, list) and key.isdigit() and int(key) < len(current):
            current = current[int(key)]
            continue
        return _MISSING
    return current


def _compile_comparator(operator: str, operand: Any) -> Comparator:
    if operator == "$in":
        return In(tuple(operand) if isinstance(operand, (list, tuple)) else None)
    comparator_cls = _OPERATORS.get(operator)
    if comparator_cls is None:
        return UnknownOperator(operator)
    return comparator_cls(operand)


def compile_query(query: dict[str, Any]) -> CompiledQuery:
    # Mapping values are operator sets; any other value is literal equality.
    conditions: list[FieldCondition] = []
    for raw_path, expected in query.items():
        path = tuple(part for part in str(raw_path).split(".") if part)
        if isinstance(expected, dict):
            comparators = tuple(_compile_comparator(str(op), operand) for op, operand in expected.items())
        else:
            comparators = (Equals(expected),)
        conditions.append(FieldCondition(path=path, comparators=comparators))
    return CompiledQuery(conditions=tuple(conditions))


def _normalize_values(value: Any) -> list[str]:
    if value is None:
        return []
    if isinstance(value, str):
        cleaned = value.strip()
        return [cleaned] if cleaned else []
    if isinstance(value, (list, tuple, set)):
        return [str(item).strip() for item in value if str(item).strip()]
    return []


def _matches_filter(*, configured: Any, actual: str | None) -> bool:
    # Empty filter is match-all; an event without the attribute is not filtered on it.
    values = _normalize_values(configured)
    if not values or actual is None:
        return True
    return actual in values


def _matches_tags(*, configured: Any, actual: list[str]) -> bool:
    values = _normalize_values(configured)
    if not values or not actual:
        return True
    return bool(set(values) & set(actual))


def _matches_min_cost(*, configured: Any, amount: float | None) -> bool:
    if configured is None or amount is None:
        return True
    if isinstance(configured, bool) or not isinstance(configured, (int, float)):
        return True
    return float(configured) <= amount


class SubscriptionMatcher:
    """Resolve which subscriptions receive an event.

    Static filters (project, severity, tags, minimum cost) are applied first;
    the optional custom query is compiled once per distinct query and cached.
    A subscription whose query cannot be evaluated is dropped, never raised.
    """

    def __init__(self, *, query_cache_size: int = 256) -> None:
        self._query_cache: BoundedLRU[str, CompiledQuery] = BoundedLRU(query_cache_size)

    def _compiled(self, query: dict[str, Any]) -> CompiledQuery:
        key = json.dumps(query, sort_keys=True, default=str)
        compiled = self._query_cache.get(key)
        if compiled is None:
            compiled = compile_query(query)
            self._query_cache.set(key, compiled)
        return compiled

    def matches(self, subscription: Webhook, event: WebhookEvent) -> bool:
        if not subscription.active:
            return False
        if event.event_type not in (subscription.events or []):
            return False
        filters = subscription.filters_json or {}
        if not isinstance(filters, dict):
            return False
        if not _matches_filter(configured=filters.get("projects"), actual=event.project_id):
            return False
        if not _matches_filter(configured=filters.get("severity"), actual=event.severity):
            return False
        if not _matches_tags(configured=filters.get("tags"), actual=event.tags):
            return False
        if not _matches_min_cost(configured=filters.get("min_cost"), amount=event.cost_amount):
            return False
        custom_query = filters.get("custom_query")
        if not custom_query:
            return True
        try:
            if not isinstance(custom_query, dict):
                raise ValueError("custom_query must be an object")
            return self._compiled(custom_query).evaluate(event.to_dict())
        except Exception:  # noqa: BLE001 - a broken query drops one subscription, not the event.
            logger.exception("webhook_custom_query_failed webhook_id=%s", subscription.id)
            return False

    def match(self, event: WebhookEvent, subscriptions: Iterable[Webhook]) -> list[Webhook]:
        return [subscription for subscription in subscriptions if self.matches(subscription, event)]


def subscription_matches(subscription: Webhook, event: WebhookEvent) -> bool:
    # Uncached predicate for one-off checks; services hold a SubscriptionMatcher instead.
    return SubscriptionMatcher(query_cache_size=1).matches(subscription, event)
