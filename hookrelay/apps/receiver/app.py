from __future__ import annotations

from collections import deque
from dataclasses import dataclass
from datetime import datetime, timezone
import hashlib
import json
import logging
import os
from threading import Lock
from typing import Any, Deque

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from hookrelay.services.webhooks.signing import HeaderNames, verify_request


logger = logging.getLogger("hookrelay.receiver")


@dataclass(frozen=True)
class ReceiverSettings:
    # Keep receiver knobs explicit so compose and test environments stay deterministic.
    shared_secret: str | None
    require_signature: bool
    max_timestamp_skew_seconds: int
    fail_mode: str
    fail_n: int
    port: int
    vendor: str
    keep_receipts: int


class ReceiverHealth(BaseModel):
    status: str
    require_signature: bool
    max_timestamp_skew_seconds: int
    fail_mode: str
    fail_n: int


class ReceiverError(BaseModel):
    accepted: bool = False
    reason: str


class ReceiverWebhookResponse(BaseModel):
    accepted: bool
    duplicate: bool = False
    event_id: str | None = None
    payload_sha256: str | None = None


class ReceiptItem(BaseModel):
    webhook_id: str | None = None
    event_id: str | None = None
    received_at: str
    payload_sha256: str
    signature_valid: bool
    response_status: int
    failure_reason: str | None = None
    duplicate: bool = False


class ReceivedResponse(BaseModel):
    items: list[ReceiptItem]


class ReceiverStats(BaseModel):
    total_requests: int
    accepted_count: int
    failed_count: int
    invalid_signature_count: int
    missing_signature_count: int
    dedupe_hits: int
    duplicates_ratio: float = Field(ge=0.0, le=1.0)
    forced_failure_count: int
    last_event_at: str | None = None


def _parse_bool(value: str | None, default: bool) -> bool:
    if value is None:
        return default
    return value.strip().lower() in {"1", "true", "yes", "on"}


def _parse_int(value: str | None, default: int, *, minimum: int = 0) -> int:
    try:
        parsed = int(value or str(default))
    except (TypeError, ValueError):
        parsed = default
    return max(minimum, parsed)


def load_receiver_settings() -> ReceiverSettings:
    # Read receiver config from env so compose and local scripts share one config surface.
    fail_mode = (os.getenv("RECEIVER_FAIL_MODE") or "never").strip().lower()
    if fail_mode not in {"never", "always", "first_n"}:
        fail_mode = "never"
    return ReceiverSettings(
        shared_secret=(os.getenv("RECEIVER_SHARED_SECRET") or "").strip() or None,
        require_signature=_parse_bool(os.getenv("RECEIVER_REQUIRE_SIGNATURE"), default=True),
        max_timestamp_skew_seconds=_parse_int(os.getenv("RECEIVER_MAX_TIMESTAMP_SKEW_SECONDS"), default=300, minimum=1),
        fail_mode=fail_mode,
        fail_n=_parse_int(os.getenv("RECEIVER_FAIL_N"), default=0),
        port=_parse_int(os.getenv("RECEIVER_PORT"), default=9001, minimum=1),
        vendor=(os.getenv("RECEIVER_VENDOR") or "HookRelay").strip(),
        keep_receipts=_parse_int(os.getenv("RECEIVER_KEEP_RECEIPTS"), default=500, minimum=1),
    )


def _utc_now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def _log_event(event: str, **fields: Any) -> None:
    # Structured JSON lines so operators can aggregate receiver outcomes.
    payload = {"event": event, **fields, "ts": _utc_now_iso()}
    logger.info(json.dumps(payload, sort_keys=True))


class ReceiverStore:
    # Process-local receipts and dedupe keys; the lock keeps counters coherent under concurrent requests.
    def __init__(self, keep_receipts: int) -> None:
        self._lock = Lock()
        self._seen: set[str] = set()
        self._failures: dict[str, int] = {}
        self._receipts: Deque[dict[str, Any]] = deque(maxlen=keep_receipts)
        self._counters = {
            "total_requests": 0,
            "accepted_count": 0,
            "failed_count": 0,
            "invalid_signature_count": 0,
            "missing_signature_count": 0,
            "dedupe_hits": 0,
            "forced_failure_count": 0,
        }
        self._last_event_at: str | None = None

    def mark_seen(self, key: str) -> bool:
        with self._lock:
            if key in self._seen:
                return False
            self._seen.add(key)
            return True

    def increment_failure_counter(self, key: str) -> int:
        with self._lock:
            self._failures[key] = self._failures.get(key, 0) + 1
            return self._failures[key]

    def record(self, receipt: ReceiptItem) -> None:
        with self._lock:
            self._receipts.append(receipt.model_dump())
            self._last_event_at = receipt.received_at
            self._counters["total_requests"] += 1
            if 200 <= receipt.response_status < 300:
                self._counters["accepted_count"] += 1
            else:
                self._counters["failed_count"] += 1
            if receipt.duplicate:
                self._counters["dedupe_hits"] += 1
            if receipt.failure_reason in {"invalid_signature_format", "signature_mismatch"}:
                self._counters["invalid_signature_count"] += 1
            elif receipt.failure_reason == "missing_signature":
                self._counters["missing_signature_count"] += 1
            elif receipt.failure_reason == "forced_failure":
                self._counters["forced_failure_count"] += 1

    def list_receipts(self, *, limit: int) -> list[dict[str, Any]]:
        with self._lock:
            items = list(self._receipts)
        return list(reversed(items))[: max(1, min(limit, 500))]

    def stats(self) -> dict[str, Any]:
        with self._lock:
            counters = dict(self._counters)
            last_event_at = self._last_event_at
        total = counters["total_requests"]
        return {
            **counters,
            "duplicates_ratio": (counters["dedupe_hits"] / total) if total else 0.0,
            "last_event_at": last_event_at,
        }


def _status_for_reason(reason: str) -> int:
    # Map validation reasons to response classes the sender classifies as terminal or retryable.
    if reason in {"missing_signature", "signature_mismatch", "timestamp_skew"}:
        return 401
    if reason == "secret_missing":
        return 500
    return 400


def create_app(settings: ReceiverSettings | None = None) -> FastAPI:
    # Build the receiver from explicit settings so in-process tests and compose share semantics.
    resolved = settings or load_receiver_settings()
    store = ReceiverStore(resolved.keep_receipts)
    names = HeaderNames.for_vendor(resolved.vendor)
    app = FastAPI(
        title="HookRelay Reference Receiver",
        version="1.0.0",
        description="Reference webhook receiver that verifies HookRelay signatures and de-duplicates deliveries.",
    )

    @app.get("/health", response_model=ReceiverHealth)
    async def health() -> ReceiverHealth:
        return ReceiverHealth(
            status="ok",
            require_signature=resolved.require_signature,
            max_timestamp_skew_seconds=resolved.max_timestamp_skew_seconds,
            fail_mode=resolved.fail_mode,
            fail_n=resolved.fail_n,
        )

    @app.get("/stats", response_model=ReceiverStats)
    async def stats() -> ReceiverStats:
        return ReceiverStats(**store.stats())

    @app.get("/received", response_model=ReceivedResponse)
    async def received(limit: int = 50) -> ReceivedResponse:
        return ReceivedResponse(items=[ReceiptItem(**row) for row in store.list_receipts(limit=limit)])

    @app.post(
        "/webhook",
        response_model=ReceiverWebhookResponse,
        responses={400: {"model": ReceiverError}, 401: {"model": ReceiverError}, 500: {"model": ReceiverError}},
    )
    async def webhook(request: Request) -> JSONResponse:
        # Read the raw body once so signature and digest use identical bytes.
        raw_body = await request.body()
        digest = hashlib.sha256(raw_body).hexdigest()
        webhook_id = request.headers.get(names.webhook_id)
        event_id = request.headers.get(names.event_id)
        signature_present = request.headers.get(names.signature) is not None

        def _receipt(status_code: int, *, valid: bool, reason: str | None = None, duplicate: bool = False) -> None:
            store.record(
                ReceiptItem(
                    webhook_id=webhook_id,
                    event_id=event_id,
                    received_at=_utc_now_iso(),
                    payload_sha256=digest,
                    signature_valid=valid,
                    response_status=status_code,
                    failure_reason=reason,
                    duplicate=duplicate,
                )
            )

        signature_valid = False
        if resolved.require_signature or signature_present:
            verification = verify_request(
                request.headers,
                raw_body,
                resolved.shared_secret,
                vendor=resolved.vendor,
                max_skew_seconds=resolved.max_timestamp_skew_seconds,
            )
            if not verification.ok:
                status_code = _status_for_reason(verification.reason)
                _receipt(status_code, valid=False, reason=verification.reason)
                _log_event("receiver.webhook.rejected", reason=verification.reason, event_id=event_id)
                return JSONResponse(status_code=status_code, content=ReceiverError(reason=verification.reason).model_dump())
            signature_valid = True

        if not event_id:
            _receipt(400, valid=signature_valid, reason="missing_event_id")
            return JSONResponse(status_code=400, content=ReceiverError(reason="missing_event_id").model_dump())

        forced = resolved.fail_mode == "always" or (
            resolved.fail_mode == "first_n"
            and resolved.fail_n > 0
            and store.increment_failure_counter(webhook_id or event_id) <= resolved.fail_n
        )
        if forced:
            # Deterministic 5xx lets operators exercise the sender's retry path.
            _receipt(500, valid=signature_valid, reason="forced_failure")
            _log_event("receiver.webhook.forced_failure", event_id=event_id)
            return JSONResponse(status_code=500, content=ReceiverError(reason="forced_failure").model_dump())

        # Each attempt carries a fresh event id header; the body digest identifies redelivered content.
        first_seen = store.mark_seen(f"{webhook_id}:{event_id}") and store.mark_seen(f"{webhook_id}:{digest}")
        _receipt(200, valid=signature_valid, duplicate=not first_seen)
        _log_event(
            "receiver.webhook.duplicate" if not first_seen else "receiver.webhook.accepted",
            event_id=event_id,
            webhook_id=webhook_id,
        )
        return JSONResponse(
            status_code=200,
            content=ReceiverWebhookResponse(
                accepted=True,
                duplicate=not first_seen,
                event_id=event_id,
                payload_sha256=digest,
            ).model_dump(),
        )

    return app
