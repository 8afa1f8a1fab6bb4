from __future__ import annotations

from datetime import datetime, timezone
from typing import Any

from sqlalchemy import (
    JSON,
    Boolean,
    DateTime,
    Float,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


# Use JSONB on Postgres and plain JSON elsewhere so sqlite-backed tests share the schema.
JSONType = JSON().with_variant(JSONB(), "postgresql")


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


class Base(DeclarativeBase):
    pass


class Webhook(Base):
    __tablename__ = "webhooks"
    __table_args__ = (
        Index("ix_webhooks_user_active", "user_id", "active"),
    )

    id: Mapped[str] = mapped_column(String, primary_key=True)
    user_id: Mapped[str] = mapped_column(String, index=True)
    name: Mapped[str] = mapped_column(String)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    url: Mapped[str] = mapped_column(String)
    # Subscribed event types; matching requires membership.
    events: Mapped[list[str]] = mapped_column(JSONType, default=list)
    active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    version: Mapped[str] = mapped_column(String, default="1.0.0")
    # none | basic | bearer | custom_header | oauth2
    auth_type: Mapped[str] = mapped_column(String, default="none")
    # Credential fields are stored encrypted; non-secret fields (username, header name) stay readable.
    auth_json: Mapped[dict[str, Any] | None] = mapped_column(JSONType, nullable=True)
    filters_json: Mapped[dict[str, Any] | None] = mapped_column(JSONType, nullable=True)
    headers_json: Mapped[dict[str, str] | None] = mapped_column(JSONType, nullable=True)
    secret: Mapped[str] = mapped_column(String)
    use_default_payload: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    payload_template: Mapped[str | None] = mapped_column(Text, nullable=True)
    max_retries: Mapped[int] = mapped_column(Integer, default=3)
    backoff_multiplier: Mapped[float] = mapped_column(Float, default=2.0)
    initial_delay_ms: Mapped[int] = mapped_column(Integer, default=5000)
    timeout_ms: Mapped[int] = mapped_column(Integer, default=30000)
    # Rolling delivery statistics maintained by the delivery worker.
    total_deliveries: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    successful_deliveries: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    failed_deliveries: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    average_response_time_ms: Mapped[float] = mapped_column(Float, default=0.0, nullable=False)
    last_delivery_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    last_success_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    last_failure_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    deactivated_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    deactivation_reason: Mapped[str | None] = mapped_column(String, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utc_now)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utc_now, onupdate=_utc_now)


class WebhookDelivery(Base):
    __tablename__ = "webhook_deliveries"
    __table_args__ = (
        Index("ix_webhook_deliveries_webhook_status_created", "webhook_id", "status", "created_at"),
        Index("ix_webhook_deliveries_status_next_retry", "status", "next_retry_at"),
        Index("ix_webhook_deliveries_user_created", "user_id", "created_at"),
    )

    id: Mapped[str] = mapped_column(String, primary_key=True)
    webhook_id: Mapped[str] = mapped_column(String, ForeignKey("webhooks.id", ondelete="CASCADE"))
    user_id: Mapped[str] = mapped_column(String)
    event_id: Mapped[str] = mapped_column(String, index=True)
    event_type: Mapped[str] = mapped_column(String)
    # Event snapshot at delivery creation so retries and replays send the same facts.
    event_json: Mapped[dict[str, Any]] = mapped_column(JSONType)
    attempt: Mapped[int] = mapped_column(Integer, default=1)
    # pending | success | failed
    status: Mapped[str] = mapped_column(String, default="pending")
    retries_left: Mapped[int] = mapped_column(Integer, default=0)
    next_retry_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    # Set by the worker that sends this row; a claim older than the lease counts as abandoned.
    claimed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    request_json: Mapped[dict[str, Any] | None] = mapped_column(JSONType, nullable=True)
    response_json: Mapped[dict[str, Any] | None] = mapped_column(JSONType, nullable=True)
    error_json: Mapped[dict[str, Any] | None] = mapped_column(JSONType, nullable=True)
    metadata_json: Mapped[dict[str, Any] | None] = mapped_column(JSONType, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utc_now)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utc_now, onupdate=_utc_now)


class DeadLetterJob(Base):
    __tablename__ = "dead_letter_jobs"
    __table_args__ = (
        Index("ix_dead_letter_jobs_status_next_attempt", "status", "next_attempt_at"),
    )

    id: Mapped[str] = mapped_column(String, primary_key=True)
    operation: Mapped[str] = mapped_column(String, index=True)
    request_json: Mapped[dict[str, Any] | None] = mapped_column(JSONType, nullable=True)
    response_json: Mapped[dict[str, Any] | None] = mapped_column(JSONType, nullable=True)
    user_id: Mapped[str | None] = mapped_column(String, nullable=True)
    metadata_json: Mapped[dict[str, Any] | None] = mapped_column(JSONType, nullable=True)
    # Original error that exhausted the caller's own retry budget.
    error: Mapped[str | None] = mapped_column(Text, nullable=True)
    raised_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utc_now)
    # pending | processing | completed | failed
    status: Mapped[str] = mapped_column(String, default="pending")
    attempts: Mapped[int] = mapped_column(Integer, default=0)
    priority: Mapped[float] = mapped_column(Float, default=0.0)
    next_attempt_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utc_now)
    last_error: Mapped[str | None] = mapped_column(Text, nullable=True)
    completed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utc_now)
