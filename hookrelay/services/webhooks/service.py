from __future__ import annotations

from dataclasses import replace
from datetime import datetime, timedelta, timezone
import logging
import secrets
from typing import Any, Callable
from uuid import uuid4

from pydantic import ValidationError

from hookrelay.core.config import Settings, get_settings
from hookrelay.core.errors import (
    DeliveryNotFoundError,
    IntegrationUnavailableError,
    QueueUnavailableError,
    SubscriptionNotFoundError,
    SubscriptionValidationError,
)
from hookrelay.domain.events import EventType, WebhookEvent
from hookrelay.domain.models import Webhook, WebhookDelivery
from hookrelay.persistence.stores import WebhookStore
from hookrelay.services.resilience import CircuitBreaker
from hookrelay.services.security.credentials import encrypt_auth_fields
from hookrelay.services.telemetry import increment_counter
from hookrelay.services.webhooks.delivery import DeliveryWorker
from hookrelay.services.webhooks.matching import SubscriptionMatcher
from hookrelay.services.webhooks.queue import DeliveryJob, DeliveryQueue
from hookrelay.services.webhooks.schemas import SubscriptionCreate, SubscriptionUpdate


logger = logging.getLogger(__name__)

DEFAULT_VERSION = "1.0.0"
TEST_EVENT_TITLE = "Test Webhook Event"
STATS_WINDOWS = (("last_24h", timedelta(hours=24)), ("last_7d", timedelta(days=7)), ("last_30d", timedelta(days=30)))
# Changing any of these alters what a subscriber receives, so they bump the minor version.
_VERSIONED_FIELDS = ("url", "events", "payload_template")


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def bump_version(version: str | None) -> str:
    parts = (version or DEFAULT_VERSION).split(".")
    try:
        major = int(parts[0])
        minor = int(parts[1]) if len(parts) > 1 else 0
    except ValueError:
        return DEFAULT_VERSION
    return f"{major}.{minor + 1}.0"


def _normalize_headers(headers: dict[str, str] | None, *, vendor: str) -> dict[str, str] | None:
    # Custom headers may not shadow the signed delivery contract headers.
    if headers is None:
        return None
    reserved_prefix = f"x-{vendor.lower()}-"
    normalized: dict[str, str] = {}
    for raw_key, raw_value in headers.items():
        key = str(raw_key).strip()
        if not key:
            raise SubscriptionValidationError("header names must be non-empty")
        if key.lower().startswith(reserved_prefix):
            raise SubscriptionValidationError(f"header '{key}' is reserved")
        normalized[key] = str(raw_value).strip()
    return normalized


class WebhookService:
    """Subscription lifecycle and event fan-out.

    ``process_event`` turns one event into one pending delivery per matching
    subscription and enqueues each; the delivery itself happens in the
    ``DeliveryWorker`` behind the queue.
    """

    def __init__(
        self,
        store: WebhookStore,
        worker: DeliveryWorker,
        queue: DeliveryQueue,
        *,
        matcher: SubscriptionMatcher | None = None,
        breaker: CircuitBreaker | None = None,
        settings: Settings | None = None,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self._store = store
        self._worker = worker
        self._queue = queue
        self._settings = settings or get_settings()
        self._matcher = matcher or SubscriptionMatcher(query_cache_size=self._settings.webhook_query_cache_size)
        self._breaker = breaker or CircuitBreaker("webhook_store")
        self._clock = clock or _utc_now

    async def create_subscription(self, user_id: str, payload: SubscriptionCreate | dict[str, Any]) -> Webhook:
        try:
            data = payload if isinstance(payload, SubscriptionCreate) else SubscriptionCreate.model_validate(payload)
        except ValidationError as exc:
            raise SubscriptionValidationError(str(exc)) from exc
        retry = data.retry_config
        auth = data.auth
        now = self._clock()
        row = Webhook(
            id=uuid4().hex,
            user_id=user_id,
            name=data.name,
            description=data.description,
            url=data.url,
            events=list(data.events),
            active=data.active,
            version=DEFAULT_VERSION,
            auth_type=auth.type if auth else "none",
            auth_json=encrypt_auth_fields(auth.credentials()) if auth else None,
            filters_json=data.filters.model_dump(exclude_none=True) if data.filters else None,
            headers_json=_normalize_headers(data.headers, vendor=self._settings.webhook_vendor),
            secret=data.secret or secrets.token_hex(32),
            use_default_payload=data.use_default_payload,
            payload_template=data.payload_template,
            max_retries=retry.max_retries if retry else self._settings.webhook_default_max_retries,
            backoff_multiplier=retry.backoff_multiplier if retry else self._settings.webhook_default_backoff_multiplier,
            initial_delay_ms=retry.initial_delay_ms if retry else self._settings.webhook_default_initial_delay_ms,
            timeout_ms=data.timeout_ms or self._settings.webhook_default_timeout_ms,
            total_deliveries=0,
            successful_deliveries=0,
            failed_deliveries=0,
            average_response_time_ms=0.0,
            last_delivery_at=None,
            last_success_at=None,
            last_failure_at=None,
            deactivated_at=None,
            deactivation_reason=None,
            created_at=now,
            updated_at=now,
        )
        await self._store.add_webhook(row)
        logger.info("webhook_created webhook_id=%s user_id=%s events=%s", row.id, user_id, len(row.events))
        return row

    async def update_subscription(
        self, user_id: str, webhook_id: str, changes: SubscriptionUpdate | dict[str, Any]
    ) -> Webhook:
        try:
            data = changes if isinstance(changes, SubscriptionUpdate) else SubscriptionUpdate.model_validate(changes)
        except ValidationError as exc:
            raise SubscriptionValidationError(str(exc)) from exc
        row = await self.get_subscription(user_id, webhook_id)
        provided = data.model_fields_set

        bump = any(
            field in provided and getattr(data, field) is not None and getattr(data, field) != getattr(row, field)
            for field in _VERSIONED_FIELDS
        )
        for field in ("name", "description", "url", "use_default_payload", "payload_template", "timeout_ms", "secret"):
            if field in provided and (getattr(data, field) is not None or field in ("description", "payload_template")):
                setattr(row, field, getattr(data, field))
        if "events" in provided and data.events is not None:
            row.events = list(data.events)
        if "auth" in provided:
            row.auth_type = data.auth.type if data.auth else "none"
            row.auth_json = encrypt_auth_fields(data.auth.credentials()) if data.auth else None
        if "filters" in provided:
            row.filters_json = data.filters.model_dump(exclude_none=True) if data.filters else None
        if "headers" in provided:
            row.headers_json = _normalize_headers(data.headers, vendor=self._settings.webhook_vendor)
        if "retry_config" in provided and data.retry_config is not None:
            row.max_retries = data.retry_config.max_retries
            row.backoff_multiplier = data.retry_config.backoff_multiplier
            row.initial_delay_ms = data.retry_config.initial_delay_ms
        if "active" in provided and data.active is not None:
            if data.active and not row.active:
                # Reactivation clears the health-check verdict.
                row.deactivated_at = None
                row.deactivation_reason = None
            row.active = data.active
        if bump:
            row.version = bump_version(row.version)
        row.updated_at = self._clock()
        await self._store.save_webhook(row)
        logger.info("webhook_updated webhook_id=%s version=%s", row.id, row.version)
        return row

    async def delete_subscription(self, user_id: str, webhook_id: str) -> None:
        row = await self.get_subscription(user_id, webhook_id)
        await self._store.delete_webhook(row.id)
        logger.info("webhook_deleted webhook_id=%s user_id=%s", row.id, user_id)

    async def get_subscription(self, user_id: str, webhook_id: str) -> Webhook:
        row = await self._store.get_user_webhook(user_id, webhook_id)
        if row is None:
            raise SubscriptionNotFoundError(f"Webhook {webhook_id} not found")
        return row

    async def list_subscriptions(self, user_id: str, *, active: bool | None = None) -> list[Webhook]:
        return await self._store.list_user_webhooks(user_id, active=active)

    async def process_event(self, event: WebhookEvent) -> list[str]:
        try:
            await self._breaker.before_call()
        except IntegrationUnavailableError:
            logger.warning("webhook_event_skipped_store_unavailable event_id=%s", event.event_id)
            increment_counter("webhook_events_skipped_total")
            return []
        try:
            # Matching is defined over every active subscription; ownership scopes management calls only.
            candidates = await self._store.list_active_webhooks()
        except Exception:  # noqa: BLE001 - store outages trip the breaker instead of failing emitters.
            await self._breaker.record_failure()
            logger.exception("webhook_subscription_lookup_failed event_id=%s", event.event_id)
            return []
        await self._breaker.record_success()

        matched = self._matcher.match(event, candidates)
        delivery_ids: list[str] = []
        for subscription in matched:
            try:
                delivery = await self._worker.create_delivery(subscription, event)
            except Exception:  # noqa: BLE001 - one subscription's failure must not starve the others.
                increment_counter("webhook_delivery_create_failed_total")
                logger.exception(
                    "webhook_delivery_create_failed event_id=%s webhook_id=%s", event.event_id, subscription.id
                )
                continue
            delivery_ids.append(delivery.id)
            await self._enqueue(delivery)
        logger.info(
            "webhook_event_processed event_id=%s event_type=%s candidates=%s deliveries=%s",
            event.event_id,
            event.event_type,
            len(candidates),
            len(delivery_ids),
        )
        return delivery_ids

    async def _enqueue(self, delivery: WebhookDelivery) -> None:
        try:
            await self._queue.enqueue(
                DeliveryJob(delivery_id=delivery.id, webhook_id=delivery.webhook_id, attempt=delivery.attempt)
            )
        except QueueUnavailableError:
            # The row is already pending; the recovery scan will pick it up.
            logger.warning("webhook_delivery_enqueue_failed delivery_id=%s", delivery.id, exc_info=True)

    async def test_webhook(self, user_id: str, webhook_id: str, event_type: str | None = None) -> WebhookDelivery:
        subscription = await self.get_subscription(user_id, webhook_id)
        now = self._clock()
        event = WebhookEvent(
            event_id=f"test_{uuid4()}",
            event_type=event_type or EventType.SYSTEM_ERROR.value,
            user_id=user_id,
            data={
                "title": TEST_EVENT_TITLE,
                "description": f"This is a test event from {self._settings.webhook_vendor}",
                "severity": "low",
                "tags": ["test"],
                "context": {"test": True, "timestamp": now.isoformat()},
            },
            occurred_at=now,
            metadata={"test": True},
        )
        # Test sends are synchronous single attempts; they never schedule retries.
        delivery = await self._worker.create_delivery(subscription, event, retries_left=0, metadata={"test": True})
        return await self._worker.attempt(delivery, subscription)

    async def list_deliveries(
        self,
        user_id: str,
        *,
        webhook_id: str | None = None,
        status: str | None = None,
        event_type: str | None = None,
        start: datetime | None = None,
        end: datetime | None = None,
        limit: int = 50,
        offset: int = 0,
    ) -> tuple[list[WebhookDelivery], int]:
        return await self._store.list_deliveries(
            user_id,
            webhook_id=webhook_id,
            status=status,
            event_type=event_type,
            start=start,
            end=end,
            limit=limit,
            offset=offset,
        )

    async def replay_delivery(self, user_id: str, delivery_id: str) -> WebhookDelivery:
        original = await self._store.get_delivery(delivery_id)
        if original is None or original.user_id != user_id:
            raise DeliveryNotFoundError(f"Delivery {delivery_id} not found")
        subscription = await self.get_subscription(user_id, original.webhook_id)
        source_event = WebhookEvent.from_dict(original.event_json)
        replay_ms = int(self._clock().timestamp() * 1000)
        event = replace(source_event, event_id=f"{source_event.event_id}_replay_{replay_ms}")
        delivery = await self._worker.create_delivery(
            subscription,
            event,
            metadata={"replayed_from": original.id, "original_event_id": original.event_id},
        )
        await self._enqueue(delivery)
        logger.info("webhook_delivery_replayed delivery_id=%s replay_id=%s", original.id, delivery.id)
        return delivery

    async def get_stats(self, user_id: str, webhook_id: str) -> dict[str, Any]:
        subscription = await self.get_subscription(user_id, webhook_id)
        now = self._clock()
        windows: dict[str, dict[str, int]] = {}
        for label, span in STATS_WINDOWS:
            since = now - span
            windows[label] = {
                "total": await self._store.count_deliveries(subscription.id, since=since),
                "success": await self._store.count_deliveries(subscription.id, status="success", since=since),
                "failed": await self._store.count_deliveries(subscription.id, status="failed", since=since),
            }
        total = int(subscription.total_deliveries or 0)
        successful = int(subscription.successful_deliveries or 0)
        return {
            "webhook_id": subscription.id,
            "active": bool(subscription.active),
            "total_deliveries": total,
            "successful_deliveries": successful,
            "failed_deliveries": int(subscription.failed_deliveries or 0),
            "success_rate": (successful / total * 100.0) if total else 0.0,
            "average_response_time_ms": float(subscription.average_response_time_ms or 0.0),
            "last_delivery_at": subscription.last_delivery_at,
            "last_success_at": subscription.last_success_at,
            "last_failure_at": subscription.last_failure_at,
            "deactivated_at": subscription.deactivated_at,
            "deactivation_reason": subscription.deactivation_reason,
            "windows": windows,
        }
