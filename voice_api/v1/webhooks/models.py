"""
Webhook subscription and delivery attempt models.
"""

from datetime import datetime
from enum import Enum
from uuid import UUID, uuid4

from sqlalchemy import (
    JSON,
    TIMESTAMP,
    Boolean,
    CheckConstraint,
    ForeignKey,
    Index,
    Integer,
    Text,
    Uuid,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from voice_api.infra.clock import utcnow
from voice_api.infra.database import Base

RESPONSE_BODY_MAX_LENGTH = 2000


class DeliveryStatus(str, Enum):
    """Webhook delivery attempt status enumeration."""

    PENDING = "pending"
    PROCESSING = "processing"
    DELIVERED = "delivered"
    FAILED = "failed"


class WebhookEvent(str, Enum):
    """Events a subscription can listen to."""

    CONVERSION_COMPLETED = "conversion.completed"
    CONVERSION_FAILED = "conversion.failed"


# Sent by the "test endpoint" action only, never persisted
TEST_EVENT = "webhook.test"

ENTITY_CONVERSION = "conversion"


class WebhookSubscription(Base):
    """A user's HTTPS endpoint and the events it receives."""

    __tablename__ = "webhook_subscriptions"

    id: Mapped[UUID] = mapped_column(Uuid, primary_key=True, default=uuid4)
    user_id: Mapped[UUID] = mapped_column(Uuid, nullable=False, index=True)
    url: Mapped[str] = mapped_column(Text, nullable=False)
    encrypted_secret: Mapped[str] = mapped_column(
        Text, nullable=False, comment="Fernet token of the signing secret"
    )
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    events: Mapped[list[str]] = mapped_column(
        JSON, nullable=False, default=list, comment="Subscribed event names"
    )

    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    consecutive_failures: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    auto_disable_on_failure: Mapped[bool] = mapped_column(
        Boolean, nullable=False, default=True
    )
    max_consecutive_failures: Mapped[int] = mapped_column(
        Integer, nullable=False, default=10
    )
    last_success_at: Mapped[datetime | None] = mapped_column(
        TIMESTAMP(timezone=True), nullable=True
    )
    last_failure_at: Mapped[datetime | None] = mapped_column(
        TIMESTAMP(timezone=True), nullable=True
    )

    created_at: Mapped[datetime] = mapped_column(
        TIMESTAMP(timezone=True), nullable=False, default=utcnow
    )
    updated_at: Mapped[datetime] = mapped_column(
        TIMESTAMP(timezone=True), nullable=False, default=utcnow, onupdate=utcnow
    )
    deleted_at: Mapped[datetime | None] = mapped_column(TIMESTAMP(timezone=True), nullable=True)

    def listens_to(self, event: str) -> bool:
        return event in (self.events or [])


class WebhookDeliveryAttempt(Base):
    """
    Durable record of one event notification to one subscription.

    Retried with exponential backoff until delivered or ``attempt_count``
    reaches the configured maximum. ``version`` guards every status write.
    """

    __tablename__ = "webhook_delivery_attempts"

    id: Mapped[UUID] = mapped_column(Uuid, primary_key=True, default=uuid4)
    subscription_id: Mapped[UUID] = mapped_column(
        Uuid, ForeignKey("webhook_subscriptions.id", ondelete="CASCADE"), nullable=False
    )

    # Event
    event_type: Mapped[str] = mapped_column(Text, nullable=False)
    entity_type: Mapped[str] = mapped_column(Text, nullable=False)
    entity_id: Mapped[UUID] = mapped_column(Uuid, nullable=False)
    payload: Mapped[str] = mapped_column(
        Text, nullable=False, comment="Serialized JSON body sent as-is on every attempt"
    )

    # Delivery state
    status: Mapped[str] = mapped_column(
        Text,
        nullable=False,
        default=DeliveryStatus.PENDING.value,
        comment="pending|processing|delivered|failed",
    )
    attempt_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    next_retry_at: Mapped[datetime | None] = mapped_column(
        TIMESTAMP(timezone=True), nullable=True
    )
    last_attempted_at: Mapped[datetime | None] = mapped_column(
        TIMESTAMP(timezone=True), nullable=True
    )
    delivered_at: Mapped[datetime | None] = mapped_column(
        TIMESTAMP(timezone=True), nullable=True
    )
    version: Mapped[int] = mapped_column(Integer, nullable=False)

    # Last response
    http_status_code: Mapped[int | None] = mapped_column(Integer, nullable=True)
    response_body: Mapped[str | None] = mapped_column(Text, nullable=True)
    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)
    duration_ms: Mapped[int | None] = mapped_column(Integer, nullable=True)

    created_at: Mapped[datetime] = mapped_column(
        TIMESTAMP(timezone=True), nullable=False, default=utcnow
    )
    updated_at: Mapped[datetime] = mapped_column(
        TIMESTAMP(timezone=True), nullable=False, default=utcnow, onupdate=utcnow
    )

    subscription: Mapped[WebhookSubscription] = relationship(lazy="raise")

    __mapper_args__ = {"version_id_col": version}

    __table_args__ = (
        CheckConstraint(
            "status IN ('pending', 'processing', 'delivered', 'failed')",
            name="webhook_delivery_attempts_status_check",
        ),
        Index("ix_webhook_delivery_attempts_poll", "status", "next_retry_at"),
        Index("ix_webhook_delivery_attempts_subscription", "subscription_id"),
    )
