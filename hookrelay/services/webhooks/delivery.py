from __future__ import annotations

from datetime import datetime, timedelta, timezone
import logging
import time
from typing import Any, Callable
from uuid import uuid4

import httpx

from hookrelay.core.config import Settings, get_settings
from hookrelay.core.errors import DeliveryErrorType, QueueUnavailableError
from hookrelay.domain.events import WebhookEvent
from hookrelay.domain.models import Webhook, WebhookDelivery
from hookrelay.persistence.stores import WebhookStore
from hookrelay.services.resilience import exponential_backoff_ms
from hookrelay.services.telemetry import increment_counter, record_delivery
from hookrelay.services.webhooks.dead_letter import DeadLetterEntry, DeadLetterQueue
from hookrelay.services.webhooks.payloads import PayloadBuilder
from hookrelay.services.webhooks.queue import DeliveryJob, DeliveryQueue
from hookrelay.services.webhooks.signing import HeaderBuilder


logger = logging.getLogger(__name__)

TRUNCATION_MARKER = "... [truncated]"
DEACTIVATION_REASON = "Too many failures"
# Dead-letter operation replayed when a statistics write is lost.
STATS_DEAD_LETTER_OPERATION = "webhook.usage_stats"


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def truncate_body(text: str, max_chars: int) -> str:
    if len(text) <= max_chars:
        return text
    return text[:max_chars] + TRUNCATION_MARKER


def _error(error_type: str, message: str, *, code: int | None = None, details: dict[str, Any] | None = None) -> dict[str, Any]:
    return {"type": error_type, "message": message, "code": code, "details": details}


class DeliveryWorker:
    """Execute one delivery attempt and persist its outcome.

    Deliveries are created with a request snapshot (url, headers, body). The
    worker resends the snapshot body with freshly signed headers and records
    what was actually sent. Retries create a new
    pending delivery record linked through ``metadata.previous_attempt_id``;
    the failed record is kept unchanged apart from its status and error.
    """

    def __init__(
        self,
        store: WebhookStore,
        queue: DeliveryQueue,
        *,
        payload_builder: PayloadBuilder,
        header_builder: HeaderBuilder,
        settings: Settings | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
        dead_letters: DeadLetterQueue | None = None,
        rand: Callable[[float, float], float] | None = None,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self._store = store
        self._queue = queue
        self._payloads = payload_builder
        self._headers = header_builder
        self._settings = settings or get_settings()
        self._transport = transport
        self._dead_letters = dead_letters
        self._rand = rand
        self._clock = clock or _utc_now

    async def build_request(self, subscription: Webhook, event: WebhookEvent, *, body: str | None = None) -> dict[str, Any]:
        # Headers are rebuilt per attempt so each request carries a fresh timestamp and signature.
        if body is None:
            body = await self._payloads.build(subscription, event)
        timestamp_ms = int(self._clock().timestamp() * 1000)
        return {
            "url": subscription.url,
            "method": "POST",
            "headers": self._headers.build(subscription, body, timestamp_ms=timestamp_ms),
            "body": body,
        }

    async def create_delivery(
        self,
        subscription: Webhook,
        event: WebhookEvent,
        *,
        attempt: int = 1,
        retries_left: int | None = None,
        next_retry_at: datetime | None = None,
        metadata: dict[str, Any] | None = None,
        body: str | None = None,
    ) -> WebhookDelivery:
        now = self._clock()
        row = WebhookDelivery(
            id=uuid4().hex,
            webhook_id=subscription.id,
            user_id=subscription.user_id,
            event_id=event.event_id,
            event_type=event.event_type,
            event_json=event.to_dict(),
            attempt=attempt,
            status="pending",
            retries_left=int(subscription.max_retries if retries_left is None else retries_left),
            next_retry_at=next_retry_at,
            claimed_at=None,
            request_json=await self.build_request(subscription, event, body=body),
            response_json=None,
            error_json=None,
            metadata_json=metadata,
            created_at=now,
            updated_at=now,
        )
        return await self._store.add_delivery(row)

    async def process(self, job: DeliveryJob | str) -> WebhookDelivery | None:
        delivery_id = job.delivery_id if isinstance(job, DeliveryJob) else str(job)
        delivery = await self._store.get_delivery(delivery_id)
        if delivery is None:
            logger.warning("webhook_delivery_missing delivery_id=%s", delivery_id)
            return None
        if delivery.status != "pending":
            # Terminal and superseded records are never re-sent by a duplicate job.
            logger.debug("webhook_delivery_skipped delivery_id=%s status=%s", delivery.id, delivery.status)
            return delivery
        now = self._clock()
        claimed = await self._store.claim_delivery(
            delivery.id, now=now, stale_before=now - timedelta(seconds=self._settings.webhook_claim_lease_s)
        )
        if not claimed:
            # Another job already holds this row; a duplicate must not send it twice.
            increment_counter("webhook_delivery_claim_conflicts_total")
            logger.info("webhook_delivery_claim_skipped delivery_id=%s", delivery.id)
            return delivery
        delivery.claimed_at = now
        subscription = await self._store.get_webhook(delivery.webhook_id)
        return await self.attempt(delivery, subscription)

    async def attempt(self, delivery: WebhookDelivery, subscription: Webhook | None) -> WebhookDelivery:
        if subscription is None:
            delivery.retries_left = 0
            return await self._mark_failed(
                delivery, None, _error(DeliveryErrorType.WEBHOOK_NOT_FOUND, "Webhook not found")
            )
        if not subscription.active:
            return await self._mark_failed(
                delivery, None, _error(DeliveryErrorType.WEBHOOK_INACTIVE, "Webhook is inactive")
            )

        event = WebhookEvent.from_dict(delivery.event_json)
        stored_body = (delivery.request_json or {}).get("body")
        # Re-sign at send time so a delayed retry stays inside the receiver's timestamp window.
        request = await self.build_request(
            subscription, event, body=stored_body if isinstance(stored_body, str) else None
        )
        request["sent_at"] = self._clock().isoformat()
        delivery.request_json = request

        timeout_s = max(0.001, float(subscription.timeout_ms or self._settings.webhook_default_timeout_ms) / 1000.0)
        started = time.perf_counter()
        try:
            async with httpx.AsyncClient(
                timeout=timeout_s,
                follow_redirects=True,
                max_redirects=self._settings.webhook_max_redirects,
                transport=self._transport,
            ) as client:
                response = await client.post(
                    request["url"],
                    content=str(request.get("body") or "").encode("utf-8"),
                    headers=request.get("headers") or {},
                )
        except httpx.TimeoutException as exc:
            elapsed_ms = (time.perf_counter() - started) * 1000.0
            record_delivery(webhook_id=subscription.id, outcome="timeout", status_code=None, latency_ms=elapsed_ms)
            error = _error(DeliveryErrorType.TIMEOUT, str(exc) or f"Request timed out after {subscription.timeout_ms}ms")
            if int(delivery.retries_left or 0) > 0:
                return await self._schedule_retry(delivery, subscription, error)
            return await self._mark_failed(delivery, subscription, error)
        except httpx.ConnectError as exc:
            record_delivery(webhook_id=subscription.id, outcome="network_error", status_code=None, latency_ms=0.0)
            return await self._mark_failed(
                delivery, subscription, _error(DeliveryErrorType.NETWORK_ERROR, str(exc) or "Connection failed")
            )
        except httpx.HTTPError as exc:
            record_delivery(webhook_id=subscription.id, outcome="request_error", status_code=None, latency_ms=0.0)
            return await self._mark_failed(
                delivery,
                subscription,
                _error(DeliveryErrorType.REQUEST_ERROR, str(exc) or exc.__class__.__name__),
            )
        except Exception as exc:  # noqa: BLE001 - unexpected failures are recorded on the delivery, not raised.
            logger.exception("webhook_delivery_unexpected_error delivery_id=%s", delivery.id)
            record_delivery(webhook_id=subscription.id, outcome="unknown_error", status_code=None, latency_ms=0.0)
            return await self._mark_failed(
                delivery, subscription, _error(DeliveryErrorType.UNKNOWN_ERROR, str(exc) or exc.__class__.__name__)
            )

        elapsed_ms = (time.perf_counter() - started) * 1000.0
        status_code = int(response.status_code)
        delivery.response_json = {
            "status_code": status_code,
            "headers": {str(key): str(value) for key, value in response.headers.items()},
            "body": truncate_body(response.text or "", self._settings.webhook_response_body_max_chars),
            "response_time_ms": round(elapsed_ms, 3),
            "received_at": self._clock().isoformat(),
        }
        if 200 <= status_code < 300:
            record_delivery(webhook_id=subscription.id, outcome="success", status_code=status_code, latency_ms=elapsed_ms)
            return await self._mark_success(delivery, subscription, elapsed_ms)

        record_delivery(webhook_id=subscription.id, outcome="http_error", status_code=status_code, latency_ms=elapsed_ms)
        error = _error(DeliveryErrorType.HTTP_ERROR, f"HTTP {status_code}", code=status_code)
        if status_code >= 500 and int(delivery.retries_left or 0) > 0:
            return await self._schedule_retry(delivery, subscription, error)
        return await self._mark_failed(delivery, subscription, error)

    async def _mark_success(self, delivery: WebhookDelivery, subscription: Webhook, elapsed_ms: float) -> WebhookDelivery:
        now = self._clock()
        delivery.status = "success"
        delivery.error_json = None
        delivery.updated_at = now
        await self._store.save_delivery(delivery)
        await self._record_stats(subscription, success=True, response_time_ms=elapsed_ms, at=now)
        logger.info(
            "webhook_delivery_succeeded delivery_id=%s webhook_id=%s attempt=%s",
            delivery.id,
            subscription.id,
            delivery.attempt,
        )
        return delivery

    async def _schedule_retry(
        self, delivery: WebhookDelivery, subscription: Webhook, cause: dict[str, Any]
    ) -> WebhookDelivery:
        now = self._clock()
        next_attempt = int(delivery.attempt or 1) + 1
        delay_ms = exponential_backoff_ms(
            attempt=next_attempt,
            initial_delay_ms=subscription.initial_delay_ms or self._settings.webhook_default_initial_delay_ms,
            multiplier=subscription.backoff_multiplier or self._settings.webhook_default_backoff_multiplier,
            max_delay_ms=self._settings.webhook_max_retry_delay_ms,
            jitter=self._settings.webhook_retry_jitter,
            rand=self._rand,
        )
        next_retry_at = now + timedelta(milliseconds=delay_ms)
        retries_left = max(0, int(delivery.retries_left or 0) - 1)

        delivery.status = "failed"
        delivery.retries_left = retries_left
        delivery.next_retry_at = next_retry_at
        delivery.error_json = _error(
            DeliveryErrorType.RETRY_SCHEDULED,
            f"Retry scheduled in {delay_ms}ms: {cause.get('message')}",
            code=cause.get("code"),
            details={"cause": cause.get("type"), "delay_ms": delay_ms},
        )
        delivery.updated_at = now
        await self._store.save_delivery(delivery)

        event = WebhookEvent.from_dict(delivery.event_json)
        previous_body = (delivery.request_json or {}).get("body")
        retry = await self.create_delivery(
            subscription,
            event,
            attempt=next_attempt,
            retries_left=retries_left,
            next_retry_at=next_retry_at,
            metadata={**(delivery.metadata_json or {}), "previous_attempt_id": delivery.id},
            body=previous_body if isinstance(previous_body, str) else None,
        )
        await self._record_stats(subscription, success=False, response_time_ms=None, at=now)
        increment_counter("webhook_retries_scheduled_total")
        logger.warning(
            "webhook_delivery_retry_scheduled delivery_id=%s retry_id=%s attempt=%s delay_ms=%s cause=%s",
            delivery.id,
            retry.id,
            next_attempt,
            delay_ms,
            cause.get("type"),
        )
        try:
            await self._queue.enqueue(
                DeliveryJob(delivery_id=retry.id, webhook_id=subscription.id, attempt=next_attempt),
                delay_ms=delay_ms,
            )
        except QueueUnavailableError:
            # The retry row stays pending; the recovery scan enqueues it once due.
            logger.warning("webhook_retry_enqueue_failed retry_id=%s", retry.id, exc_info=True)
        return delivery

    async def _mark_failed(
        self, delivery: WebhookDelivery, subscription: Webhook | None, error: dict[str, Any]
    ) -> WebhookDelivery:
        now = self._clock()
        delivery.status = "failed"
        delivery.error_json = error
        delivery.updated_at = now
        await self._store.save_delivery(delivery)
        logger.warning(
            "webhook_delivery_failed delivery_id=%s webhook_id=%s type=%s code=%s",
            delivery.id,
            delivery.webhook_id,
            error.get("type"),
            error.get("code"),
        )
        if subscription is not None:
            await self._record_stats(subscription, success=False, response_time_ms=None, at=now)
            await self.check_health(subscription)
        return delivery

    async def _record_stats(
        self, subscription: Webhook, *, success: bool, response_time_ms: float | None, at: datetime
    ) -> None:
        try:
            await self._store.record_delivery_outcome(
                subscription.id, success=success, response_time_ms=response_time_ms, at=at
            )
        except Exception as exc:  # noqa: BLE001 - a lost stats write must not undo a completed delivery.
            logger.warning("webhook_stats_update_failed webhook_id=%s", subscription.id, exc_info=True)
            if self._dead_letters is None:
                return
            await self._dead_letters.add(
                DeadLetterEntry(
                    operation=STATS_DEAD_LETTER_OPERATION,
                    request={
                        "webhook_id": subscription.id,
                        "success": success,
                        "response_time_ms": response_time_ms,
                        "at": at.isoformat(),
                    },
                    user_id=subscription.user_id,
                    error=str(exc),
                )
            )

    async def check_health(self, subscription: Webhook) -> bool:
        # Returns True when the subscription was deactivated by this check.
        now = self._clock()
        since = now - timedelta(hours=self._settings.webhook_health_window_hours)
        failures = await self._store.count_deliveries(subscription.id, status="failed", since=since)
        if failures <= self._settings.webhook_health_failure_threshold:
            return False
        changed = await self._store.deactivate_webhook(subscription.id, reason=DEACTIVATION_REASON, at=now)
        if changed:
            increment_counter("webhook_deactivations_total")
            logger.warning(
                "webhook_deactivated webhook_id=%s failures=%s window_hours=%s",
                subscription.id,
                failures,
                self._settings.webhook_health_window_hours,
            )
        return changed

    async def process_pending(self, limit: int | None = None) -> int:
        # Re-enqueue pending deliveries whose own job was lost: overdue by the grace period and unclaimed.
        batch = max(1, int(limit or self._settings.webhook_recovery_batch_size))
        now = self._clock()
        rows = await self._store.list_due_pending_deliveries(
            due_before=now - timedelta(seconds=self._settings.webhook_recovery_grace_s),
            claimed_before=now - timedelta(seconds=self._settings.webhook_claim_lease_s),
            limit=batch,
        )
        enqueued = 0
        for row in rows:
            try:
                await self._queue.enqueue(DeliveryJob(delivery_id=row.id, webhook_id=row.webhook_id, attempt=row.attempt))
            except QueueUnavailableError:
                logger.warning("webhook_recovery_enqueue_failed delivery_id=%s", row.id, exc_info=True)
                break
            enqueued += 1
        if enqueued:
            logger.info("webhook_recovery_enqueued count=%s", enqueued)
        return enqueued
