from __future__ import annotations

from base64 import b64encode
from dataclasses import dataclass
from datetime import datetime, timezone
import hashlib
import hmac
import logging
import time
from typing import Callable, Mapping
from uuid import uuid4

from hookrelay.core.config import Settings, get_settings
from hookrelay.core.errors import CredentialConfigurationError
from hookrelay.domain.models import Webhook
from hookrelay.services.security.credentials import decrypt_credential
from hookrelay.services.webhooks.cache import BoundedLRU


logger = logging.getLogger(__name__)

SIGNATURE_PREFIX = "sha256="


@dataclass(frozen=True)
class HeaderNames:
    webhook_id: str
    event_id: str
    timestamp: str
    signature: str

    @classmethod
    def for_vendor(cls, vendor: str) -> "HeaderNames":
        return cls(
            webhook_id=f"X-{vendor}-Webhook-Id",
            event_id=f"X-{vendor}-Event-Id",
            timestamp=f"X-{vendor}-Timestamp",
            signature=f"X-{vendor}-Signature",
        )


@dataclass(frozen=True)
class VerificationResult:
    ok: bool
    reason: str


def compute_signature(secret: str, body: str | bytes, timestamp_ms: int | str) -> str:
    # HMAC over "<timestamp>.<raw body>" so a captured body cannot be replayed with a new timestamp.
    raw_body = body.encode("utf-8") if isinstance(body, str) else body
    message = str(timestamp_ms).encode("utf-8") + b"." + raw_body
    digest = hmac.new(secret.encode("utf-8"), message, hashlib.sha256).hexdigest()
    return f"{SIGNATURE_PREFIX}{digest}"


def verify_signature(secret: str, body: str | bytes, timestamp_ms: int | str, signature: str) -> bool:
    # Constant-time compare over the full "sha256=<hex>" value.
    if not secret or not signature:
        return False
    expected = compute_signature(secret, body, timestamp_ms)
    return hmac.compare_digest(expected.encode("utf-8"), signature.strip().encode("utf-8"))


def verify_request(
    headers: Mapping[str, str],
    body: bytes,
    secret: str | None,
    *,
    vendor: str,
    max_skew_seconds: int | None = None,
    now_ms: int | None = None,
) -> VerificationResult:
    # Verify an inbound signed callback with stable reason codes for receivers.
    names = HeaderNames.for_vendor(vendor)
    normalized = {str(key).lower(): str(value).strip() for key, value in headers.items()}
    signature = normalized.get(names.signature.lower())
    timestamp = normalized.get(names.timestamp.lower())
    if not secret:
        return VerificationResult(ok=False, reason="secret_missing")
    if not signature:
        return VerificationResult(ok=False, reason="missing_signature")
    if not timestamp:
        return VerificationResult(ok=False, reason="missing_timestamp")
    if not signature.startswith(SIGNATURE_PREFIX):
        return VerificationResult(ok=False, reason="invalid_signature_format")
    try:
        timestamp_value = int(timestamp)
    except ValueError:
        return VerificationResult(ok=False, reason="invalid_timestamp")
    if not verify_signature(secret, body, timestamp, signature):
        return VerificationResult(ok=False, reason="signature_mismatch")
    if max_skew_seconds is not None and max_skew_seconds > 0:
        reference = now_ms if now_ms is not None else int(time.time() * 1000)
        if abs(reference - timestamp_value) > max_skew_seconds * 1000:
            return VerificationResult(ok=False, reason="timestamp_skew")
    return VerificationResult(ok=True, reason="ok")


class SignatureCache:
    # Bounded cache keyed by digests so raw secrets and bodies are never held as keys.
    def __init__(self, maxsize: int = 1000) -> None:
        self._entries: BoundedLRU[tuple[str, str, str], str] = BoundedLRU(maxsize)

    def sign(self, secret: str, body: str, timestamp_ms: int | str) -> str:
        key = (
            hashlib.sha256(secret.encode("utf-8")).hexdigest(),
            hashlib.sha256(body.encode("utf-8")).hexdigest(),
            str(timestamp_ms),
        )
        cached = self._entries.get(key)
        if cached is not None:
            return cached
        signature = compute_signature(secret, body, timestamp_ms)
        self._entries.set(key, signature)
        return signature

    def __len__(self) -> int:
        return len(self._entries)


class HeaderBuilder:
    def __init__(
        self,
        settings: Settings | None = None,
        *,
        decrypt: Callable[[str], str] | None = None,
        clock_ms: Callable[[], int] | None = None,
    ) -> None:
        self._settings = settings or get_settings()
        self._decrypt = decrypt or decrypt_credential
        self._clock_ms = clock_ms or (lambda: int(datetime.now(timezone.utc).timestamp() * 1000))
        self._signatures = SignatureCache(self._settings.webhook_signature_cache_size)
        self.names = HeaderNames.for_vendor(self._settings.webhook_vendor)

    @property
    def signature_cache(self) -> SignatureCache:
        return self._signatures

    @property
    def user_agent(self) -> str:
        return f"{self._settings.webhook_vendor}-Webhook/1.0"

    def _auth_headers(self, subscription: Webhook) -> dict[str, str]:
        auth_type = (subscription.auth_type or "none").lower()
        creds = subscription.auth_json or {}
        if auth_type == "none" or not creds:
            return {}
        try:
            if auth_type == "basic":
                username = creds.get("username")
                password = creds.get("password")
                if username and password:
                    raw = f"{username}:{self._decrypt(password)}".encode("utf-8")
                    return {"Authorization": f"Basic {b64encode(raw).decode('ascii')}"}
            elif auth_type == "bearer":
                token = creds.get("token")
                if token:
                    return {"Authorization": f"Bearer {self._decrypt(token)}"}
            elif auth_type == "custom_header":
                header_name = creds.get("header_name")
                header_value = creds.get("header_value")
                if header_name and header_value:
                    return {str(header_name): self._decrypt(header_value)}
            elif auth_type == "oauth2":
                # Token exchange is not implemented; deliver without auth rather than fail the build.
                logger.warning("webhook_oauth2_not_implemented webhook_id=%s", subscription.id)
        except CredentialConfigurationError:
            logger.warning("webhook_credentials_unavailable webhook_id=%s", subscription.id, exc_info=True)
        return {}

    def build(self, subscription: Webhook, body: str, *, timestamp_ms: int | None = None) -> dict[str, str]:
        timestamp = str(timestamp_ms if timestamp_ms is not None else self._clock_ms())
        headers: dict[str, str] = {
            "Content-Type": "application/json",
            "User-Agent": self.user_agent,
            self.names.webhook_id: subscription.id,
            self.names.event_id: str(uuid4()),
            self.names.timestamp: timestamp,
        }
        reserved_prefix = f"x-{self._settings.webhook_vendor.lower()}-"
        for key, value in (subscription.headers_json or {}).items():
            if str(key).strip().lower().startswith(reserved_prefix):
                # Contract headers are never taken from stored rows, however the row was written.
                logger.warning("webhook_reserved_header_ignored webhook_id=%s header=%s", subscription.id, key)
                continue
            headers[str(key)] = str(value)
        headers.update(self._auth_headers(subscription))
        # Signature is applied last so custom headers can never override it.
        headers[self.names.signature] = self._signatures.sign(subscription.secret, body, timestamp)
        return headers

    def sign(self, secret: str, body: str, timestamp_ms: int | str) -> str:
        return self._signatures.sign(secret, body, timestamp_ms)

    def verify(self, secret: str, body: str | bytes, timestamp_ms: int | str, signature: str) -> bool:
        return verify_signature(secret, body, timestamp_ms, signature)
