import uuid
from enum import StrEnum

from sqlalchemy import Boolean, CheckConstraint, DateTime, Index, Integer, String, Text, func
from sqlalchemy.dialects.postgresql import ARRAY, JSONB, UUID
from sqlalchemy.orm import Mapped, mapped_column

from eventhooks.infrastructure.db.base import Base


class SubscriptionStatus(StrEnum):
    ACTIVE = "active"
    PAUSED = "paused"
    FAILED = "failed"


class WebhookSubscription(Base):
    __tablename__ = "webhook_subscriptions"
    __table_args__ = (
        CheckConstraint(
            "status IN ('active', 'paused', 'failed')",
            name="ck_webhook_subscriptions_status_values",
        ),
        CheckConstraint("failure_count >= 0", name="ck_webhook_subscriptions_failure_count_non_negative"),
        CheckConstraint("max_retries >= 0", name="ck_webhook_subscriptions_max_retries_non_negative"),
        CheckConstraint("retry_delay_seconds >= 1", name="ck_webhook_subscriptions_retry_delay_positive"),
        Index("ix_webhook_subscriptions_event_types_gin", "event_types", postgresql_using="gin"),
    )

    id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    tenant_id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), nullable=False, index=True)
    app_id: Mapped[str] = mapped_column(String(128), nullable=False, index=True)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    event_types: Mapped[list[str]] = mapped_column(ARRAY(String(128)), nullable=False, default=list)
    endpoint_url: Mapped[str] = mapped_column(Text, nullable=False)
    secret: Mapped[str] = mapped_column(String(128), nullable=False)
    status: Mapped[str] = mapped_column(String(16), nullable=False, default=SubscriptionStatus.ACTIVE.value)
    max_retries: Mapped[int] = mapped_column(Integer, nullable=False, default=3)
    retry_delay_seconds: Mapped[int] = mapped_column(Integer, nullable=False, default=60)
    exponential_backoff: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    filters_json: Mapped[dict] = mapped_column(JSONB, nullable=False, default=dict)
    failure_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    last_triggered: Mapped[DateTime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    created_by: Mapped[str | None] = mapped_column(String(128), nullable=True)
    created_at: Mapped[DateTime] = mapped_column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    updated_at: Mapped[DateTime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now(), nullable=False
    )

    @property
    def retry_config(self) -> dict:
        return {
            "max_retries": self.max_retries,
            "retry_delay": self.retry_delay_seconds,
            "exponential_backoff": self.exponential_backoff,
        }
