"""
Webhook subscription management and the fire-and-forget test delivery.
"""

import asyncio
from typing import Any
from uuid import UUID

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from voice_api.config.logging import get_logger
from voice_api.config.settings import Settings
from voice_api.infra.clock import Clock, utcnow
from voice_api.v1.core.exceptions import NotFoundError, ValidationError
from voice_api.v1.webhooks.events import build_test_payload, serialize_payload
from voice_api.v1.webhooks.gateway import DeliveryGateway
from voice_api.v1.webhooks.models import (
    TEST_EVENT,
    WebhookDeliveryAttempt,
    WebhookSubscription,
)
from voice_api.v1.webhooks.schemas import SubscriptionCreate, SubscriptionUpdate
from voice_api.v1.webhooks.signing import SecretBox, generate_secret, get_secret_box

logger = get_logger(__name__)

MAX_DELIVERY_LOGS = 500

# Strong references to detached test deliveries until they finish
_test_tasks: set[asyncio.Task] = set()


class WebhookService:
    """Service for managing a user's webhook subscriptions."""

    def __init__(
        self,
        settings: Settings,
        secret_box: SecretBox | None = None,
        gateway: DeliveryGateway | None = None,
        clock: Clock = utcnow,
    ):
        self.settings = settings
        self.secret_box = secret_box or get_secret_box(settings.encryption_key)
        self.gateway = gateway
        self.clock = clock

    async def create_subscription(
        self, session: AsyncSession, user_id: UUID, request: SubscriptionCreate
    ) -> tuple[WebhookSubscription, str]:
        """Create a subscription and return it with its plain secret."""
        active_count = await session.scalar(
            select(func.count())
            .select_from(WebhookSubscription)
            .where(
                WebhookSubscription.user_id == user_id,
                WebhookSubscription.is_active.is_(True),
                WebhookSubscription.deleted_at.is_(None),
            )
        )
        limit = self.settings.webhook_max_subscriptions_per_user
        if active_count >= limit:
            raise ValidationError(
                f"Maximum number of active webhook subscriptions ({limit}) reached"
            )

        secret = generate_secret()
        subscription = WebhookSubscription(
            user_id=user_id,
            url=request.url,
            description=request.description,
            events=request.events,
            encrypted_secret=self.secret_box.encrypt(secret),
            is_active=True,
            consecutive_failures=0,
            auto_disable_on_failure=True,
            max_consecutive_failures=self.settings.webhook_max_consecutive_failures,
        )
        session.add(subscription)
        await session.commit()

        logger.info(
            "Webhook subscription created",
            subscription_id=str(subscription.id),
            events=subscription.events,
        )
        return subscription, secret

    async def list_subscriptions(
        self, session: AsyncSession, user_id: UUID
    ) -> list[WebhookSubscription]:
        result = await session.execute(
            select(WebhookSubscription)
            .where(
                WebhookSubscription.user_id == user_id,
                WebhookSubscription.deleted_at.is_(None),
            )
            .order_by(WebhookSubscription.created_at.desc())
        )
        return list(result.scalars().all())

    async def get_subscription(
        self, session: AsyncSession, user_id: UUID, subscription_id: UUID
    ) -> WebhookSubscription:
        subscription = await session.scalar(
            select(WebhookSubscription).where(
                WebhookSubscription.id == subscription_id,
                WebhookSubscription.user_id == user_id,
                WebhookSubscription.deleted_at.is_(None),
            )
        )
        if subscription is None:
            raise NotFoundError("Webhook subscription not found")
        return subscription

    async def update_subscription(
        self,
        session: AsyncSession,
        user_id: UUID,
        subscription_id: UUID,
        request: SubscriptionUpdate,
    ) -> WebhookSubscription:
        subscription = await self.get_subscription(session, user_id, subscription_id)

        if request.url is not None:
            subscription.url = request.url
        if request.description is not None:
            subscription.description = request.description
        if request.events is not None:
            subscription.events = request.events
        if request.is_active is not None:
            if request.is_active and not subscription.is_active:
                # Manual reactivation starts the failure streak over
                subscription.consecutive_failures = 0
                logger.info(
                    "Webhook subscription reactivated",
                    subscription_id=str(subscription.id),
                )
            subscription.is_active = request.is_active

        await session.commit()
        return subscription

    async def delete_subscription(
        self, session: AsyncSession, user_id: UUID, subscription_id: UUID
    ) -> None:
        subscription = await self.get_subscription(session, user_id, subscription_id)
        subscription.deleted_at = self.clock()
        subscription.is_active = False
        await session.commit()
        logger.info("Webhook subscription deleted", subscription_id=str(subscription.id))

    async def regenerate_secret(
        self, session: AsyncSession, user_id: UUID, subscription_id: UUID
    ) -> str:
        subscription = await self.get_subscription(session, user_id, subscription_id)
        secret = generate_secret()
        subscription.encrypted_secret = self.secret_box.encrypt(secret)
        subscription.consecutive_failures = 0
        subscription.last_failure_at = None
        await session.commit()

        logger.info("Webhook secret regenerated", subscription_id=str(subscription.id))
        return secret

    async def list_delivery_attempts(
        self,
        session: AsyncSession,
        user_id: UUID,
        subscription_id: UUID,
        limit: int = 100,
    ) -> list[WebhookDeliveryAttempt]:
        await self.get_subscription(session, user_id, subscription_id)
        result = await session.execute(
            select(WebhookDeliveryAttempt)
            .where(WebhookDeliveryAttempt.subscription_id == subscription_id)
            .order_by(WebhookDeliveryAttempt.created_at.desc())
            .limit(min(limit, MAX_DELIVERY_LOGS))
        )
        return list(result.scalars().all())

    async def send_test_webhook(
        self, session: AsyncSession, user_id: UUID, subscription_id: UUID
    ) -> tuple[dict[str, Any], asyncio.Task]:
        """
        Deliver a ``webhook.test`` event on a detached task.

        Nothing is persisted and the outcome never touches the failure
        counters. Returns the payload and the task (awaited only by tests).
        """
        subscription = await self.get_subscription(session, user_id, subscription_id)
        if not subscription.is_active:
            raise ValidationError(
                "Cannot test an inactive webhook subscription. Please activate it first."
            )

        payload = build_test_payload(subscription)
        secret = self.secret_box.decrypt(subscription.encrypted_secret)

        task = asyncio.create_task(
            self._deliver_test(
                subscription.id, subscription.url, serialize_payload(payload), secret, payload["id"]
            )
        )
        _test_tasks.add(task)
        task.add_done_callback(_test_tasks.discard)

        logger.info("Test webhook queued", subscription_id=str(subscription.id))
        return payload, task

    async def _deliver_test(
        self, subscription_id: UUID, url: str, body: str, secret: str, delivery_id: str
    ) -> None:
        gateway = self.gateway or DeliveryGateway(timeout_s=self.settings.webhook_timeout_s)
        try:
            result = await gateway.deliver(
                url=url,
                body=body,
                secret=secret,
                delivery_id=delivery_id,
                event_type=TEST_EVENT,
            )
        except Exception:
            logger.exception("Test webhook delivery crashed", subscription_id=str(subscription_id))
            return
        finally:
            if gateway is not self.gateway:
                await gateway.close()

        if result.success:
            logger.info(
                "Test webhook delivered",
                subscription_id=str(subscription_id),
                status_code=result.status_code,
            )
        else:
            logger.warning(
                "Test webhook delivery failed",
                subscription_id=str(subscription_id),
                status_code=result.status_code,
                error_message=result.error_message,
            )
