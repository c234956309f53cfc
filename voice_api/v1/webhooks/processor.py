"""
Webhook delivery processor.

A delivery is claimed in three steps: the candidate query leaves out rows
that another instance is still working on, the row is re-checked after it
is fetched, and the ``processing`` write itself is version-guarded. The
claim is committed before the HTTP call so a crash mid-delivery leaves a
``processing`` row that is recovered once it is older than the stuck
threshold.
"""

from datetime import datetime, timedelta
from uuid import UUID

from sqlalchemy import and_, or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import joinedload

from voice_api.config.logging import get_logger
from voice_api.config.settings import Settings
from voice_api.infra.clock import Clock, as_utc, utcnow
from voice_api.infra.database import Database
from voice_api.infra.versioning import (
    VersionConflictError,
    flush_versioned,
    try_commit_versioned,
)
from voice_api.v1.infra.polling import PollingProcessor
from voice_api.v1.webhooks.gateway import DeliveryGateway, DeliveryResult
from voice_api.v1.webhooks.models import (
    DeliveryStatus,
    WebhookDeliveryAttempt,
    WebhookSubscription,
)
from voice_api.v1.webhooks.signing import SecretBox, SecretDecryptionError

logger = get_logger(__name__)


def backoff_delay(attempt_count: int) -> timedelta:
    """Delay before the next attempt after ``attempt_count`` failures (2, 4, 8, ... seconds)."""
    return timedelta(seconds=2**attempt_count)


class DeliveryProcessor(PollingProcessor):
    """Poll due webhook deliveries and POST them to subscriber endpoints."""

    name = "webhook_delivery_processor"

    def __init__(
        self,
        settings: Settings,
        database: Database,
        gateway: DeliveryGateway,
        secret_box: SecretBox,
        clock: Clock = utcnow,
    ):
        super().__init__(
            poll_interval_s=settings.webhook_poll_interval_s,
            startup_delay_s=settings.processor_startup_delay_s,
            clock=clock,
        )
        self.settings = settings
        self.database = database
        self.gateway = gateway
        self.secret_box = secret_box
        self.max_attempts = settings.webhook_max_attempts
        self.stuck_threshold = timedelta(seconds=settings.webhook_stuck_threshold_s)

    async def run_once(self) -> tuple[int, int]:
        delivery_ids = await self.fetch_candidate_ids()
        processed = skipped = 0

        for delivery_id in delivery_ids:
            if self._stop_event.is_set():
                break
            try:
                if await self.process_delivery(delivery_id):
                    processed += 1
                else:
                    skipped += 1
            except Exception:
                self.total_errors += 1
                logger.exception("Error processing webhook delivery", delivery_id=str(delivery_id))

        return processed, skipped

    async def fetch_candidate_ids(self) -> list[UUID]:
        """Unlocked snapshot of due deliveries and deliveries abandoned mid-flight."""
        now = self.clock()
        stuck_cutoff = now - self.stuck_threshold
        query = (
            select(WebhookDeliveryAttempt.id)
            .join(
                WebhookSubscription,
                WebhookSubscription.id == WebhookDeliveryAttempt.subscription_id,
            )
            .where(
                WebhookSubscription.is_active.is_(True),
                WebhookSubscription.deleted_at.is_(None),
                or_(
                    and_(
                        WebhookDeliveryAttempt.status == DeliveryStatus.PENDING.value,
                        or_(
                            WebhookDeliveryAttempt.next_retry_at.is_(None),
                            WebhookDeliveryAttempt.next_retry_at <= now,
                        ),
                    ),
                    and_(
                        WebhookDeliveryAttempt.status == DeliveryStatus.PROCESSING.value,
                        or_(
                            WebhookDeliveryAttempt.last_attempted_at.is_(None),
                            WebhookDeliveryAttempt.last_attempted_at < stuck_cutoff,
                        ),
                    ),
                ),
            )
            .order_by(WebhookDeliveryAttempt.created_at)
            .limit(self.settings.webhook_batch_size)
        )
        async with self.database.session_scope() as session:
            result = await session.execute(query)
            return list(result.scalars().all())

    def _is_claimable(self, attempt: WebhookDeliveryAttempt, now: datetime) -> bool:
        subscription = attempt.subscription
        if not subscription.is_active or subscription.deleted_at is not None:
            return False

        if attempt.status == DeliveryStatus.PENDING.value:
            next_retry_at = as_utc(attempt.next_retry_at)
            return next_retry_at is None or next_retry_at <= now

        if attempt.status == DeliveryStatus.PROCESSING.value:
            last_attempted_at = as_utc(attempt.last_attempted_at)
            if last_attempted_at is not None and last_attempted_at >= now - self.stuck_threshold:
                # Another instance is legitimately working on it
                return False
            logger.warning(
                "Recovering stuck webhook delivery",
                delivery_id=str(attempt.id),
                last_attempted_at=last_attempted_at.isoformat() if last_attempted_at else None,
                attempt_count=attempt.attempt_count,
            )
            return True

        return False

    async def process_delivery(self, delivery_id: UUID) -> bool:
        """
        Claim and deliver a single webhook.

        Returns True when this instance made the attempt and False when the
        row was skipped.
        """
        async with self.database.session_scope() as session:
            attempt = await session.scalar(
                select(WebhookDeliveryAttempt)
                .options(joinedload(WebhookDeliveryAttempt.subscription))
                .where(WebhookDeliveryAttempt.id == delivery_id)
            )
            now = self.clock()
            if attempt is None or not self._is_claimable(attempt, now):
                logger.debug("Webhook delivery no longer claimable", delivery_id=str(delivery_id))
                return False

            attempt.status = DeliveryStatus.PROCESSING.value
            attempt.last_attempted_at = now
            if not await try_commit_versioned(session, "webhook_delivery", attempt.id):
                return False

            result = await self._attempt(attempt)
            if result.success:
                await self._mark_delivered(session, attempt, result)
            else:
                await self._mark_failed(session, attempt, result)
            return True

    async def _attempt(self, attempt: WebhookDeliveryAttempt) -> DeliveryResult:
        """
        Sign and send one delivery.

        Every error is turned into a failed result so the attempt is counted
        and the row leaves ``processing``.
        """
        subscription = attempt.subscription
        try:
            secret = self.secret_box.decrypt(subscription.encrypted_secret)
            return await self.gateway.deliver(
                url=subscription.url,
                body=attempt.payload,
                secret=secret,
                delivery_id=str(attempt.id),
                event_type=attempt.event_type,
            )
        except SecretDecryptionError as exc:
            logger.error(
                "Cannot sign webhook delivery",
                delivery_id=str(attempt.id),
                subscription_id=str(subscription.id),
            )
            return DeliveryResult(success=False, error_message=str(exc))
        except Exception as exc:
            logger.exception(
                "Unexpected error delivering webhook",
                delivery_id=str(attempt.id),
                subscription_id=str(subscription.id),
            )
            return DeliveryResult(success=False, error_message=f"Processing error: {exc}")

    async def _mark_delivered(
        self, session: AsyncSession, attempt: WebhookDeliveryAttempt, result: DeliveryResult
    ) -> None:
        now = self.clock()
        attempt.status = DeliveryStatus.DELIVERED.value
        attempt.delivered_at = now
        attempt.next_retry_at = None
        self._apply_result(attempt, result)

        if not await self._flush(session, attempt):
            return

        await session.execute(
            update(WebhookSubscription)
            .where(WebhookSubscription.id == attempt.subscription_id)
            .values(consecutive_failures=0, last_success_at=now)
            .execution_options(synchronize_session=False)
        )
        await session.commit()

        logger.info(
            "Webhook delivery succeeded",
            delivery_id=str(attempt.id),
            event_type=attempt.event_type,
            status_code=result.status_code,
            attempt_count=attempt.attempt_count + 1,
        )

    async def _mark_failed(
        self, session: AsyncSession, attempt: WebhookDeliveryAttempt, result: DeliveryResult
    ) -> None:
        now = self.clock()
        attempt.attempt_count += 1
        self._apply_result(attempt, result)

        if attempt.attempt_count >= self.max_attempts:
            attempt.status = DeliveryStatus.FAILED.value
            attempt.next_retry_at = None
        else:
            attempt.status = DeliveryStatus.PENDING.value
            attempt.next_retry_at = now + backoff_delay(attempt.attempt_count)

        if not await self._flush(session, attempt):
            return

        subscription_id = attempt.subscription_id
        await session.execute(
            update(WebhookSubscription)
            .where(WebhookSubscription.id == subscription_id)
            .values(
                consecutive_failures=WebhookSubscription.consecutive_failures + 1,
                last_failure_at=now,
            )
            .execution_options(synchronize_session=False)
        )
        # Only the statement that flips the flag sees a matching row
        disabled = await session.execute(
            update(WebhookSubscription)
            .where(
                WebhookSubscription.id == subscription_id,
                WebhookSubscription.is_active.is_(True),
                WebhookSubscription.auto_disable_on_failure.is_(True),
                WebhookSubscription.consecutive_failures
                >= WebhookSubscription.max_consecutive_failures,
            )
            .values(is_active=False)
            .execution_options(synchronize_session=False)
        )
        await session.commit()

        if attempt.status == DeliveryStatus.FAILED.value:
            logger.error(
                "Webhook delivery failed permanently",
                delivery_id=str(attempt.id),
                attempt_count=attempt.attempt_count,
                status_code=result.status_code,
                error_message=result.error_message,
            )
        else:
            logger.warning(
                "Webhook delivery failed, retry scheduled",
                delivery_id=str(attempt.id),
                attempt_count=attempt.attempt_count,
                next_retry_at=attempt.next_retry_at.isoformat(),
                status_code=result.status_code,
                error_message=result.error_message,
            )

        if disabled.rowcount == 1:
            logger.warning(
                "Webhook subscription auto-disabled after consecutive failures",
                subscription_id=str(subscription_id),
            )

    @staticmethod
    def _apply_result(attempt: WebhookDeliveryAttempt, result: DeliveryResult) -> None:
        attempt.http_status_code = result.status_code
        attempt.response_body = result.response_body
        attempt.error_message = result.error_message
        attempt.duration_ms = result.duration_ms

    async def _flush(self, session: AsyncSession, attempt: WebhookDeliveryAttempt) -> bool:
        delivery_id = attempt.id
        try:
            await flush_versioned(session, "webhook_delivery", delivery_id)
        except VersionConflictError:
            # Our claim was taken over as stuck while the request was in flight
            logger.warning(
                "Webhook delivery result discarded after version conflict",
                delivery_id=str(delivery_id),
            )
            return False
        return True
