from __future__ import annotations

from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field, field_validator

from hookrelay.domain.events import EventType


AuthType = Literal["none", "basic", "bearer", "custom_header", "oauth2"]

_EVENT_TYPES = frozenset(item.value for item in EventType)


def validate_url(url: str) -> str:
    # Subscribers must be explicit http(s) endpoints.
    normalized = url.strip()
    if normalized.startswith(("http://", "https://")) and len(normalized.split("://", 1)[1]) > 0:
        return normalized
    raise ValueError("url must start with http:// or https://")


def validate_events(events: list[str]) -> list[str]:
    cleaned = [str(item).strip() for item in events if str(item).strip()]
    if not cleaned:
        raise ValueError("events must contain at least one event type")
    unknown = sorted(set(cleaned) - _EVENT_TYPES)
    if unknown:
        raise ValueError(f"unknown event types: {', '.join(unknown)}")
    # Keep first-seen order while dropping duplicates.
    return list(dict.fromkeys(cleaned))


class OAuth2Config(BaseModel):
    client_id: str
    client_secret: str
    token_url: str
    scope: str | None = None


class AuthConfig(BaseModel):
    type: AuthType = "none"
    username: str | None = None
    password: str | None = None
    token: str | None = None
    header_name: str | None = None
    header_value: str | None = None
    oauth2: OAuth2Config | None = None

    def credentials(self) -> dict[str, Any] | None:
        # Persisted auth blob without the discriminator; None when nothing is configured.
        raw = self.model_dump(exclude={"type"}, exclude_none=True)
        return raw or None


class FilterConfig(BaseModel):
    projects: list[str] | None = None
    severity: list[str] | None = None
    tags: list[str] | None = None
    min_cost: float | None = None
    custom_query: dict[str, Any] | None = None


class RetryConfig(BaseModel):
    max_retries: int = Field(default=3, gt=0)
    backoff_multiplier: float = Field(default=2.0, gt=0)
    initial_delay_ms: int = Field(default=5000, gt=0)


class SubscriptionCreate(BaseModel):
    model_config = ConfigDict(extra="forbid")

    name: str = Field(min_length=1)
    description: str | None = None
    url: str
    events: list[str]
    active: bool = True
    auth: AuthConfig | None = None
    filters: FilterConfig | None = None
    headers: dict[str, str] | None = None
    secret: str | None = None
    use_default_payload: bool = True
    payload_template: str | None = None
    retry_config: RetryConfig | None = None
    timeout_ms: int | None = Field(default=None, gt=0)

    @field_validator("url")
    @classmethod
    def _check_url(cls, value: str) -> str:
        return validate_url(value)

    @field_validator("events")
    @classmethod
    def _check_events(cls, value: list[str]) -> list[str]:
        return validate_events(value)


class SubscriptionUpdate(BaseModel):
    model_config = ConfigDict(extra="forbid")

    name: str | None = Field(default=None, min_length=1)
    description: str | None = None
    url: str | None = None
    events: list[str] | None = None
    active: bool | None = None
    auth: AuthConfig | None = None
    filters: FilterConfig | None = None
    headers: dict[str, str] | None = None
    secret: str | None = None
    use_default_payload: bool | None = None
    payload_template: str | None = None
    retry_config: RetryConfig | None = None
    timeout_ms: int | None = Field(default=None, gt=0)

    @field_validator("url")
    @classmethod
    def _check_url(cls, value: str | None) -> str | None:
        return validate_url(value) if value is not None else None

    @field_validator("events")
    @classmethod
    def _check_events(cls, value: list[str] | None) -> list[str] | None:
        return validate_events(value) if value is not None else None
