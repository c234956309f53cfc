"""
Webhook event payloads and fan-out into delivery attempt rows.

Payloads are persisted and replayed verbatim on every retry, so they carry
identifiers and state only. Download URLs are time-limited and clients fetch
a fresh one through the read API instead.
"""

import json
from typing import Any
from uuid import uuid4

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from voice_api.config.logging import get_logger
from voice_api.infra.clock import as_utc, utcnow
from voice_api.v1.conversions.models import ConversionJob
from voice_api.v1.conversions.pitch_shift import to_pitch_shift
from voice_api.v1.webhooks.models import (
    ENTITY_CONVERSION,
    TEST_EVENT,
    DeliveryStatus,
    WebhookDeliveryAttempt,
    WebhookEvent,
    WebhookSubscription,
)

logger = get_logger(__name__)


def _isoformat(value) -> str | None:
    value = as_utc(value)
    return value.isoformat() if value else None


def build_conversion_payload(job: ConversionJob, event: WebhookEvent) -> dict[str, Any]:
    """Build the event body for a conversion reaching a terminal state."""
    conversion: dict[str, Any] = {
        "id": str(job.id),
        "status": job.status,
        "audio_file_id": str(job.audio_file_id),
        "voice_model_id": str(job.voice_model_id),
        "pitch_shift": to_pitch_shift(job.transposition),
        "use_preview": job.use_preview,
        "queued_at": _isoformat(job.queued_at),
        "processing_started_at": _isoformat(job.processing_started_at),
        "completed_at": _isoformat(job.completed_at),
    }

    if event == WebhookEvent.CONVERSION_COMPLETED:
        started = as_utc(job.processing_started_at)
        completed = as_utc(job.completed_at)
        if started and completed:
            conversion["processing_duration_seconds"] = int(
                (completed - started).total_seconds()
            )
    elif event == WebhookEvent.CONVERSION_FAILED:
        conversion["error_message"] = job.error_message
        conversion["retry_count"] = job.retry_count

    return {
        "event": event.value,
        "id": str(uuid4()),
        "timestamp": utcnow().isoformat(),
        "data": {"conversion": conversion},
    }


def build_test_payload(subscription: WebhookSubscription) -> dict[str, Any]:
    return {
        "event": TEST_EVENT,
        "id": str(uuid4()),
        "timestamp": utcnow().isoformat(),
        "data": {
            "message": "This is a test webhook from the Voice Conversion API",
            "subscription_id": str(subscription.id),
        },
    }


def serialize_payload(payload: dict[str, Any]) -> str:
    return json.dumps(payload, separators=(",", ":"))


async def publish_conversion_event(
    session: AsyncSession, job: ConversionJob, event: WebhookEvent
) -> list[WebhookDeliveryAttempt]:
    """
    Stage one pending delivery attempt per matching subscription.

    Rows are added to ``session`` but not committed, so they land in the same
    transaction as the job transition that raised the event.
    """
    result = await session.execute(
        select(WebhookSubscription).where(
            WebhookSubscription.user_id == job.user_id,
            WebhookSubscription.is_active.is_(True),
            WebhookSubscription.deleted_at.is_(None),
        )
    )
    subscriptions = [s for s in result.scalars().all() if s.listens_to(event.value)]

    if not subscriptions:
        logger.debug(
            "No active subscriptions for event",
            event_type=event.value,
            user_id=str(job.user_id),
            conversion_id=str(job.id),
        )
        return []

    attempts = []
    for subscription in subscriptions:
        attempt = WebhookDeliveryAttempt(
            subscription_id=subscription.id,
            event_type=event.value,
            entity_type=ENTITY_CONVERSION,
            entity_id=job.id,
            payload=serialize_payload(build_conversion_payload(job, event)),
            status=DeliveryStatus.PENDING.value,
            attempt_count=0,
            next_retry_at=None,
        )
        session.add(attempt)
        attempts.append(attempt)

    logger.info(
        "Publishing event",
        event_type=event.value,
        conversion_id=str(job.id),
        subscription_count=len(attempts),
    )
    return attempts
