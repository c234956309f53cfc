"""Tests for subscription management and test deliveries."""

import httpx
import pytest
from sqlalchemy import func, select

from conftest import DEV_USER_ID, mock_http_client
from voice_api.v1.core.exceptions import NotFoundError, ValidationError
from voice_api.v1.webhooks.gateway import DeliveryGateway
from voice_api.v1.webhooks.models import WebhookDeliveryAttempt, WebhookSubscription
from voice_api.v1.webhooks.schemas import SubscriptionCreate, SubscriptionUpdate
from voice_api.v1.webhooks.service import WebhookService
from voice_api.v1.webhooks.signing import verify_signature


def new_subscription(**overrides) -> SubscriptionCreate:
    values = {"url": "https://hooks.example.com/voice", "events": ["conversion.completed"]}
    values.update(overrides)
    return SubscriptionCreate(**values)


@pytest.fixture
def service(settings, secret_box, clock):
    return WebhookService(settings, secret_box=secret_box, clock=clock)


class TestSubscriptions:
    async def test_create_returns_plain_secret_and_stores_it_encrypted(
        self, service, database, secret_box
    ):
        async with database.session_scope() as session:
            subscription, secret = await service.create_subscription(
                session, DEV_USER_ID, new_subscription()
            )

        assert len(secret) == 64
        assert subscription.encrypted_secret != secret
        assert secret_box.decrypt(subscription.encrypted_secret) == secret
        assert subscription.max_consecutive_failures == 10

    async def test_active_subscription_limit(self, service, database, settings):
        async with database.session_scope() as session:
            for _ in range(settings.webhook_max_subscriptions_per_user):
                await service.create_subscription(session, DEV_USER_ID, new_subscription())

            with pytest.raises(ValidationError, match="Maximum number"):
                await service.create_subscription(session, DEV_USER_ID, new_subscription())

    async def test_deleted_subscriptions_do_not_count_towards_limit(
        self, service, database, factory, clock
    ):
        for _ in range(4):
            await factory.subscription()
        await factory.subscription(deleted_at=clock(), is_active=False)

        async with database.session_scope() as session:
            await service.create_subscription(session, DEV_USER_ID, new_subscription())

    async def test_reactivation_resets_failure_streak(self, service, database, factory):
        subscription = await factory.subscription(is_active=False, consecutive_failures=10)

        async with database.session_scope() as session:
            updated = await service.update_subscription(
                session, DEV_USER_ID, subscription.id, SubscriptionUpdate(is_active=True)
            )

        assert updated.is_active is True
        assert updated.consecutive_failures == 0

    async def test_delete_is_soft_and_hides_subscription(self, service, database, factory):
        subscription = await factory.subscription()

        async with database.session_scope() as session:
            await service.delete_subscription(session, DEV_USER_ID, subscription.id)
            with pytest.raises(NotFoundError):
                await service.get_subscription(session, DEV_USER_ID, subscription.id)

        stored = await factory.reload(WebhookSubscription, subscription.id)
        assert stored.deleted_at is not None
        assert stored.is_active is False

    async def test_regenerated_secret_replaces_old_one(
        self, service, database, factory, secret_box
    ):
        subscription = await factory.subscription(secret="old-secret", consecutive_failures=3)

        async with database.session_scope() as session:
            secret = await service.regenerate_secret(session, DEV_USER_ID, subscription.id)

        stored = await factory.reload(WebhookSubscription, subscription.id)
        assert secret != "old-secret"
        assert secret_box.decrypt(stored.encrypted_secret) == secret
        assert stored.consecutive_failures == 0


class TestTestWebhook:
    async def test_test_delivery_is_signed_and_not_persisted(
        self, settings, secret_box, database, factory
    ):
        received = []

        def handler(request):
            received.append(request)
            return httpx.Response(500)

        gateway = DeliveryGateway(client=mock_http_client(handler))
        service = WebhookService(settings, secret_box=secret_box, gateway=gateway)
        subscription = await factory.subscription(secret="whsec", consecutive_failures=2)

        async with database.session_scope() as session:
            payload, task = await service.send_test_webhook(session, DEV_USER_ID, subscription.id)
        await task
        await gateway.client.aclose()

        assert payload["event"] == "webhook.test"
        [request] = received
        assert request.headers["X-Webhook-Event"] == "webhook.test"
        assert verify_signature("whsec", request.content, request.headers["X-Webhook-Signature"])

        async with database.session_scope() as session:
            count = await session.scalar(select(func.count(WebhookDeliveryAttempt.id)))
        assert count == 0
        stored = await factory.reload(WebhookSubscription, subscription.id)
        assert stored.consecutive_failures == 2
        assert stored.is_active is True

    async def test_inactive_subscription_cannot_be_tested(self, service, database, factory):
        subscription = await factory.subscription(is_active=False)

        async with database.session_scope() as session:
            with pytest.raises(ValidationError, match="inactive"):
                await service.send_test_webhook(session, DEV_USER_ID, subscription.id)


class TestSubscriptionEndpoints:
    async def test_create_and_list(self, async_client):
        response = await async_client.post(
            "/v1/webhooks/subscriptions",
            json={"url": "https://hooks.example.com/voice", "events": ["conversion.failed"]},
        )

        assert response.status_code == 201
        created = response.json()["data"]
        assert len(created["secret"]) == 64

        listing = await async_client.get("/v1/webhooks/subscriptions")
        [subscription] = listing.json()["data"]
        assert subscription["id"] == created["id"]
        assert "secret" not in subscription
        assert "encrypted_secret" not in subscription

    async def test_private_url_is_rejected(self, async_client):
        response = await async_client.post(
            "/v1/webhooks/subscriptions",
            json={"url": "https://192.168.0.10/hook", "events": ["conversion.failed"]},
        )

        assert response.status_code == 422

    async def test_deliveries_listing(self, async_client, factory):
        subscription = await factory.subscription()
        await factory.delivery(subscription)

        response = await async_client.get(
            f"/v1/webhooks/subscriptions/{subscription.id}/deliveries", params={"limit": 10}
        )

        assert response.status_code == 200
        [delivery] = response.json()["data"]
        assert delivery["status"] == "pending"
