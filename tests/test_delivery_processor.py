"""Tests for webhook delivery retries, stuck recovery and auto-disable."""

from datetime import timedelta

import httpx
import pytest

from conftest import mock_http_client
from voice_api.v1.webhooks.gateway import DeliveryGateway
from voice_api.v1.webhooks.models import (
    DeliveryStatus,
    WebhookDeliveryAttempt,
    WebhookSubscription,
)
from voice_api.v1.webhooks.processor import DeliveryProcessor, backoff_delay
from voice_api.v1.webhooks.signing import verify_signature


class Endpoint:
    """Subscriber endpoint answering with a fixed status code."""

    def __init__(self, status_code: int = 200):
        self.status_code = status_code
        self.requests: list[httpx.Request] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        return httpx.Response(self.status_code, text="ok" if self.status_code < 300 else "nope")


@pytest.fixture
def endpoint() -> Endpoint:
    return Endpoint()


@pytest.fixture
async def processor(settings, database, endpoint, secret_box, clock):
    gateway = DeliveryGateway(client=mock_http_client(endpoint))
    yield DeliveryProcessor(settings, database, gateway, secret_box, clock=clock)
    await gateway.client.aclose()


def test_backoff_doubles_per_attempt():
    assert [backoff_delay(n).total_seconds() for n in range(1, 5)] == [2, 4, 8, 16]


class TestDelivery:
    async def test_success_marks_delivered_and_signs_body(
        self, processor, factory, endpoint
    ):
        subscription = await factory.subscription(secret="s3cret")
        delivery = await factory.delivery(subscription, payload='{"event":"conversion.completed","id":"1"}')

        assert await processor.run_once() == (1, 0)

        [request] = endpoint.requests
        assert request.content == b'{"event":"conversion.completed","id":"1"}'
        assert verify_signature("s3cret", request.content, request.headers["X-Webhook-Signature"])
        assert request.headers["X-Webhook-Id"] == str(delivery.id)
        assert request.headers["X-Webhook-Event"] == "conversion.completed"

        stored = await factory.reload(WebhookDeliveryAttempt, delivery.id)
        assert stored.status == DeliveryStatus.DELIVERED.value
        assert stored.http_status_code == 200
        assert stored.delivered_at is not None
        assert stored.attempt_count == 0

    async def test_success_resets_failure_streak(self, processor, factory):
        subscription = await factory.subscription(consecutive_failures=3)
        await factory.delivery(subscription)

        await processor.run_once()

        stored = await factory.reload(WebhookSubscription, subscription.id)
        assert stored.consecutive_failures == 0
        assert stored.last_success_at is not None

    async def test_exponential_backoff_until_permanent_failure(
        self, processor, factory, endpoint, clock
    ):
        endpoint.status_code = 500
        subscription = await factory.subscription()
        delivery = await factory.delivery(subscription)

        for attempt, delay in enumerate([2, 4, 8, 16], start=1):
            started = clock()
            await processor.run_once()
            stored = await factory.reload(WebhookDeliveryAttempt, delivery.id)
            assert stored.status == DeliveryStatus.PENDING.value
            assert stored.attempt_count == attempt
            assert stored.error_message == "HTTP 500"

            # Not due yet
            clock.advance(seconds=delay - 1)
            assert await processor.run_once() == (0, 0)
            clock.advance(seconds=1)
            assert clock() - started == timedelta(seconds=delay)

        await processor.run_once()

        stored = await factory.reload(WebhookDeliveryAttempt, delivery.id)
        assert stored.status == DeliveryStatus.FAILED.value
        assert stored.attempt_count == 5
        assert stored.next_retry_at is None

        clock.advance(hours=1)
        assert await processor.run_once() == (0, 0)
        assert len(endpoint.requests) == 5

    async def test_network_error_counts_as_failed_attempt(
        self, settings, database, secret_box, factory, clock
    ):
        def refuse(request):
            raise httpx.ConnectError("Connection refused", request=request)

        gateway = DeliveryGateway(client=mock_http_client(refuse))
        processor = DeliveryProcessor(settings, database, gateway, secret_box, clock=clock)
        subscription = await factory.subscription()
        delivery = await factory.delivery(subscription)

        await processor.run_once()

        stored = await factory.reload(WebhookDeliveryAttempt, delivery.id)
        assert stored.status == DeliveryStatus.PENDING.value
        assert stored.attempt_count == 1
        assert stored.http_status_code is None
        assert "Connection refused" in stored.error_message
        await gateway.client.aclose()

    async def test_undecryptable_secret_fails_without_request(
        self, processor, factory, endpoint
    ):
        subscription = await factory.subscription(encrypted_secret="not-a-fernet-token")
        delivery = await factory.delivery(subscription)

        await processor.run_once()

        assert endpoint.requests == []
        stored = await factory.reload(WebhookDeliveryAttempt, delivery.id)
        assert stored.attempt_count == 1
        assert stored.error_message == "Webhook secret could not be decrypted"

    async def test_inactive_subscription_is_not_delivered(self, processor, factory, endpoint):
        subscription = await factory.subscription(is_active=False)
        await factory.delivery(subscription)

        assert await processor.run_once() == (0, 0)
        assert endpoint.requests == []


class TestStuckRecovery:
    async def test_recent_processing_row_is_left_alone(
        self, processor, factory, endpoint, clock
    ):
        subscription = await factory.subscription()
        delivery = await factory.delivery(
            subscription,
            status=DeliveryStatus.PROCESSING.value,
            last_attempted_at=clock() - timedelta(seconds=60),
        )

        assert await processor.run_once() == (0, 0)
        assert await processor.process_delivery(delivery.id) is False
        assert endpoint.requests == []

    async def test_abandoned_processing_row_is_recovered(
        self, processor, factory, endpoint, clock, settings
    ):
        subscription = await factory.subscription()
        delivery = await factory.delivery(
            subscription,
            status=DeliveryStatus.PROCESSING.value,
            last_attempted_at=clock() - timedelta(seconds=settings.webhook_stuck_threshold_s + 1),
            attempt_count=2,
        )

        assert await processor.run_once() == (1, 0)

        assert len(endpoint.requests) == 1
        stored = await factory.reload(WebhookDeliveryAttempt, delivery.id)
        assert stored.status == DeliveryStatus.DELIVERED.value

    async def test_processing_row_without_attempt_time_is_recovered(
        self, processor, factory, endpoint
    ):
        subscription = await factory.subscription()
        delivery = await factory.delivery(
            subscription, status=DeliveryStatus.PROCESSING.value, last_attempted_at=None
        )

        assert await processor.fetch_candidate_ids() == [delivery.id]
        assert await processor.run_once() == (1, 0)
        assert len(endpoint.requests) == 1


class TestAutoDisable:
    async def test_subscription_disabled_at_threshold(self, processor, factory, endpoint):
        endpoint.status_code = 503
        subscription = await factory.subscription(
            consecutive_failures=1, max_consecutive_failures=2
        )
        await factory.delivery(subscription)

        await processor.run_once()

        stored = await factory.reload(WebhookSubscription, subscription.id)
        assert stored.is_active is False
        assert stored.consecutive_failures == 2
        assert stored.last_failure_at is not None

    async def test_remaining_deliveries_skipped_once_disabled(
        self, processor, factory, endpoint
    ):
        endpoint.status_code = 503
        subscription = await factory.subscription(max_consecutive_failures=1)
        await factory.delivery(subscription)
        await factory.delivery(subscription)

        assert await processor.run_once() == (1, 1)

        assert len(endpoint.requests) == 1
        stored = await factory.reload(WebhookSubscription, subscription.id)
        assert stored.is_active is False
        assert stored.consecutive_failures == 1

    async def test_opted_out_subscription_stays_active(self, processor, factory, endpoint):
        endpoint.status_code = 500
        subscription = await factory.subscription(
            max_consecutive_failures=1, auto_disable_on_failure=False
        )
        await factory.delivery(subscription)

        await processor.run_once()

        stored = await factory.reload(WebhookSubscription, subscription.id)
        assert stored.is_active is True
        assert stored.consecutive_failures == 1


class TestUnexpectedErrors:
    async def test_unexpected_client_error_counts_as_failed_attempt(
        self, settings, database, secret_box, factory, clock
    ):
        def explode(request):
            raise RuntimeError("signing backend unavailable")

        gateway = DeliveryGateway(client=mock_http_client(explode))
        processor = DeliveryProcessor(settings, database, gateway, secret_box, clock=clock)
        subscription = await factory.subscription()
        delivery = await factory.delivery(subscription)

        assert await processor.run_once() == (1, 0)

        stored = await factory.reload(WebhookDeliveryAttempt, delivery.id)
        assert stored.status == DeliveryStatus.PENDING.value
        assert stored.attempt_count == 1
        assert stored.error_message == "Processing error: signing backend unavailable"
        assert (await factory.reload(WebhookSubscription, subscription.id)).consecutive_failures == 1
        assert processor.total_errors == 0
        await gateway.client.aclose()

    async def test_unsendable_url_reaches_failed(self, processor, factory, endpoint, clock):
        subscription = await factory.subscription(url="https://hooks.exam\tple.com/voice")
        delivery = await factory.delivery(subscription)

        for _ in range(5):
            assert await processor.run_once() == (1, 0)
            clock.advance(minutes=1)

        assert endpoint.requests == []
        stored = await factory.reload(WebhookDeliveryAttempt, delivery.id)
        assert stored.status == DeliveryStatus.FAILED.value
        assert stored.attempt_count == 5
        assert stored.error_message.startswith("Processing error:")
        assert (await factory.reload(WebhookSubscription, subscription.id)).consecutive_failures == 5


class TestStaleOutcome:
    async def test_slow_outcome_is_discarded_after_takeover(
        self, settings, database, secret_box, factory, clock
    ):
        subscription = await factory.subscription()
        delivery = await factory.delivery(subscription)

        fast_endpoint = Endpoint(200)
        fast_gateway = DeliveryGateway(client=mock_http_client(fast_endpoint))
        fast = DeliveryProcessor(settings, database, fast_gateway, secret_box, clock=clock)

        async def slow_endpoint(request):
            # The request hangs long enough for another instance to reclaim the row
            clock.advance(seconds=settings.webhook_stuck_threshold_s + 1)
            assert await fast.process_delivery(delivery.id) is True
            return httpx.Response(500, text="too late")

        slow_gateway = DeliveryGateway(client=mock_http_client(slow_endpoint))
        slow = DeliveryProcessor(settings, database, slow_gateway, secret_box, clock=clock)

        assert await slow.process_delivery(delivery.id) is True

        assert len(fast_endpoint.requests) == 1
        stored = await factory.reload(WebhookDeliveryAttempt, delivery.id)
        assert stored.status == DeliveryStatus.DELIVERED.value
        assert stored.attempt_count == 0
        assert stored.http_status_code == 200
        stored_subscription = await factory.reload(WebhookSubscription, subscription.id)
        assert stored_subscription.consecutive_failures == 0
        assert stored_subscription.last_failure_at is None
        assert stored_subscription.is_active is True

        await fast_gateway.client.aclose()
        await slow_gateway.client.aclose()
