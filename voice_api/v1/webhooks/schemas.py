"""
Webhook subscription Pydantic schemas.
"""

from datetime import datetime
from typing import Any
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field, field_validator

from voice_api.v1.webhooks.models import WebhookEvent
from voice_api.v1.webhooks.validators import validate_webhook_url


def _validate_events(v: list[str] | None) -> list[str] | None:
    if v is None:
        return v
    if not v:
        raise ValueError("At least one event must be subscribed")
    valid = {event.value for event in WebhookEvent}
    unknown = [event for event in v if event not in valid]
    if unknown:
        raise ValueError(f"Unknown events: {', '.join(unknown)}. Valid values are: {', '.join(sorted(valid))}")
    # Keep order, drop duplicates
    return list(dict.fromkeys(v))


class SubscriptionCreate(BaseModel):
    """Schema for creating a webhook subscription."""

    url: str = Field(..., description="HTTPS endpoint receiving events")
    description: str | None = Field(default=None, max_length=500)
    events: list[str] = Field(..., description="Events to receive")

    @field_validator("url")
    @classmethod
    def validate_url(cls, v: str) -> str:
        return validate_webhook_url(v)

    @field_validator("events")
    @classmethod
    def validate_events(cls, v: list[str]) -> list[str]:
        return _validate_events(v)


class SubscriptionUpdate(BaseModel):
    """Partial update; ``is_active=true`` reactivates a disabled subscription."""

    url: str | None = None
    description: str | None = Field(default=None, max_length=500)
    events: list[str] | None = None
    is_active: bool | None = None

    @field_validator("url")
    @classmethod
    def validate_url(cls, v: str | None) -> str | None:
        return validate_webhook_url(v) if v is not None else v

    @field_validator("events")
    @classmethod
    def validate_events(cls, v: list[str] | None) -> list[str] | None:
        return _validate_events(v)


class SubscriptionResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    url: str
    description: str | None = None
    events: list[str]
    is_active: bool
    consecutive_failures: int
    auto_disable_on_failure: bool
    max_consecutive_failures: int
    last_success_at: datetime | None = None
    last_failure_at: datetime | None = None
    created_at: datetime


class SubscriptionCreatedResponse(SubscriptionResponse):
    """Returned once at creation: the only time the plain secret is shown."""

    secret: str


class DeliveryAttemptResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    event_type: str
    entity_type: str
    entity_id: UUID
    status: str
    attempt_count: int
    next_retry_at: datetime | None = None
    last_attempted_at: datetime | None = None
    delivered_at: datetime | None = None
    http_status_code: int | None = None
    error_message: str | None = None
    duration_ms: int | None = None
    created_at: datetime


class TestWebhookResponse(BaseModel):
    message: str
    url: str
    test_payload: dict[str, Any]
