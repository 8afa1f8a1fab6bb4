from __future__ import annotations

import pytest

from hookrelay.services.webhooks.matching import (
    SubscriptionMatcher,
    compile_query,
    subscription_matches,
)
from hookrelay.tests.factories import build_event, build_webhook


def test_event_type_membership_required() -> None:
    event = build_event("cost.alert")
    assert subscription_matches(build_webhook(events=["cost.alert"]), event)
    assert not subscription_matches(build_webhook(events=["budget.warning"]), event)
    assert not subscription_matches(build_webhook(events=["cost.alert"], active=False), event)


@pytest.mark.parametrize(
    ("filters", "expected"),
    [
        ({}, True),
        ({"projects": ["proj-1", "proj-2"]}, True),
        ({"projects": ["proj-9"]}, False),
        ({"projects": []}, True),
        ({"severity": ["medium", "high"]}, True),
        ({"severity": ["critical"]}, False),
        ({"tags": ["billing", "ops"]}, True),
        ({"tags": ["ops"]}, False),
        ({"min_cost": 100}, True),
        ({"min_cost": 120.0}, True),
        ({"min_cost": 500}, False),
    ],
)
def test_static_filters(filters: dict, expected: bool) -> None:
    event = build_event()
    assert subscription_matches(build_webhook(filters_json=filters), event) is expected


def test_filters_pass_when_event_lacks_attribute() -> None:
    event = build_event(project_id=None, data={"severity": "low"})
    subscription = build_webhook(filters_json={"projects": ["proj-1"], "tags": ["ops"], "min_cost": 10})
    assert subscription_matches(subscription, event)


@pytest.mark.parametrize(
    ("query", "expected"),
    [
        ({"data.cost.amount": {"$gt": 100}}, True),
        ({"data.cost.amount": {"$gte": 120}}, True),
        ({"data.cost.amount": {"$lt": 100}}, False),
        ({"data.cost.amount": {"$lte": 120, "$gt": 50}}, True),
        ({"data.severity": {"$in": ["medium", "high"]}}, True),
        ({"data.severity": {"$in": "medium"}}, False),
        ({"data.severity": {"$ne": "low"}}, True),
        ({"data.cost.currency": "USD"}, True),
        ({"data.cost.currency": "EUR"}, False),
        ({"data.missing.path": {"$ne": "x"}}, True),
        ({"data.missing.path": "x"}, False),
        ({"data.cost.amount": {"$regex": ".*"}}, False),
        ({"data.severity": {"$gt": 5}}, False),
        ({"data.tags.0": "billing"}, True),
    ],
)
def test_custom_query_operators(query: dict, expected: bool) -> None:
    subscription = build_webhook(filters_json={"custom_query": query})
    assert subscription_matches(subscription, build_event()) is expected


def test_invalid_custom_query_drops_subscription() -> None:
    subscription = build_webhook(filters_json={"custom_query": ["not", "a", "mapping"]})
    assert subscription_matches(subscription, build_event()) is False


def test_match_filters_candidate_list() -> None:
    matcher = SubscriptionMatcher()
    keep = build_webhook(filters_json={"severity": ["medium"]})
    drop = build_webhook(filters_json={"severity": ["critical"]})
    other_type = build_webhook(events=["system.error"])
    assert matcher.match(build_event(), [keep, drop, other_type]) == [keep]


def test_compiled_queries_are_cached() -> None:
    matcher = SubscriptionMatcher(query_cache_size=4)
    query = {"data.cost.amount": {"$gt": 1}}
    first = build_webhook(filters_json={"custom_query": query})
    second = build_webhook(filters_json={"custom_query": dict(query)})
    assert matcher.matches(first, build_event())
    assert matcher.matches(second, build_event())
    assert len(matcher._query_cache) == 1
    assert matcher._query_cache.hits == 1


def test_compile_query_literal_vs_operator() -> None:
    compiled = compile_query({"a.b": 1, "c": {"$gt": 2}})
    assert [condition.path for condition in compiled.conditions] == [("a", "b"), ("c",)]
    assert compiled.evaluate({"a": {"b": 1}, "c": 3})
    assert not compiled.evaluate({"a": {"b": 1}, "c": 2})
