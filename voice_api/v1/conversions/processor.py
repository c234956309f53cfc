"""
Conversion processor: advances conversion jobs from the job store to the
inference queues.

Any number of instances may run concurrently. Candidate IDs are read from an
unlocked snapshot and every row is then re-fetched and written in its own
session; the row's version token is the only coordination. A job is claimed
as ``processing`` before its message is published, so a lost race can never
publish twice.
"""

import asyncio
from datetime import datetime, timedelta
from uuid import UUID

from sqlalchemy import or_, select
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
from voice_api.v1.conversions.models import (
    ConversionJob,
    ConversionStatus,
    PreprocessingStatus,
)
from voice_api.v1.conversions.schemas import CallbackDescriptor, InferenceMessage
from voice_api.v1.infra.polling import PollingProcessor
from voice_api.v1.infra.queue.gateway import (
    LogicalQueue,
    QueueGateway,
    QueueGatewayError,
)
from voice_api.v1.webhooks.events import publish_conversion_event
from voice_api.v1.webhooks.models import WebhookEvent

logger = get_logger(__name__)

CLAIMABLE_STATUSES = (
    ConversionStatus.PENDING_PREPROCESSING.value,
    ConversionStatus.QUEUED.value,
)


class MalformedJobError(Exception):
    """The job cannot be turned into a valid queue message."""


class ConversionDispatchError(Exception):
    """A transient dispatch failure, raised after the retry was recorded."""

    def __init__(self, job_id: UUID, status: str, retry_count: int, cause: Exception):
        self.job_id = job_id
        self.status = status
        self.retry_count = retry_count
        super().__init__(f"Dispatch of conversion {job_id} failed: {cause}")


def select_queue(job: ConversionJob) -> LogicalQueue:
    """Transposed jobs go to ``alt`` whatever the preview flag; then preview; else main."""
    if job.transposition_semitones != 0:
        return LogicalQueue.ALT
    if job.use_preview:
        return LogicalQueue.PREVIEW
    return LogicalQueue.MAIN


def build_inference_message(
    job: ConversionJob, callback_url: str | None = None
) -> InferenceMessage:
    audio_file = job.audio_file
    voice_model = job.voice_model

    input_location = audio_file.preview_location if job.use_preview else audio_file.inference_location
    if not input_location:
        kind = "preview" if job.use_preview else "inference"
        raise MalformedJobError(f"Audio file {audio_file.id} has no {kind} location")
    if not voice_model.model_path or not voice_model.index_path:
        raise MalformedJobError(f"Voice model {voice_model.id} is missing its model or index path")
    if not job.output_location:
        raise MalformedJobError(f"Conversion {job.id} has no output location")

    return InferenceMessage(
        inference_id=str(job.id),
        voice_model_path=voice_model.model_path,
        voice_model_index_path=voice_model.index_path,
        transposition=job.transposition_semitones,
        input_location=input_location,
        output_location=job.output_location,
        callback=CallbackDescriptor(url=callback_url) if callback_url else None,
    )


class ConversionProcessor(PollingProcessor):
    """Poll pending and queued conversions and dispatch them to inference."""

    name = "conversion_processor"

    def __init__(
        self,
        settings: Settings,
        database: Database,
        queue_gateway: QueueGateway,
        clock: Clock = utcnow,
    ):
        super().__init__(
            poll_interval_s=settings.conversion_poll_interval_s,
            startup_delay_s=settings.processor_startup_delay_s,
            clock=clock,
        )
        self.settings = settings
        self.database = database
        self.queue_gateway = queue_gateway
        self.max_retry_attempts = settings.conversion_max_retry_attempts
        self.retry_delay = timedelta(seconds=settings.conversion_retry_delay_s)

    def queue_name_for(self, job: ConversionJob) -> str:
        return {
            LogicalQueue.MAIN: self.settings.queue_main_name,
            LogicalQueue.ALT: self.settings.queue_alt_name,
            LogicalQueue.PREVIEW: self.settings.queue_preview_name,
        }[select_queue(job)]

    async def run_once(self) -> tuple[int, int]:
        job_ids = await self.fetch_candidate_ids()
        if not job_ids:
            return 0, 0

        processed = skipped = 0
        loop = asyncio.get_running_loop()
        deadline = loop.time() + self.settings.conversion_batch_timeout_s

        for index, job_id in enumerate(job_ids):
            if self._stop_event.is_set():
                break
            if loop.time() > deadline:
                logger.warning(
                    "Batch timeout reached, deferring remaining conversions",
                    remaining=len(job_ids) - index,
                )
                break

            try:
                if await self.process_job(job_id):
                    processed += 1
                else:
                    skipped += 1
            except ConversionDispatchError as exc:
                self.total_errors += 1
                logger.error(
                    "Conversion dispatch failed",
                    conversion_id=str(exc.job_id),
                    status=exc.status,
                    retry_count=exc.retry_count,
                    error=str(exc.__cause__),
                )
            except Exception:
                self.total_errors += 1
                logger.exception("Error processing conversion", conversion_id=str(job_id))

        return processed, skipped

    async def fetch_candidate_ids(self) -> list[UUID]:
        """Unlocked snapshot of conversion IDs that may be ready to advance."""
        cutoff = self.clock() - self.retry_delay
        query = (
            select(ConversionJob.id)
            .where(
                ConversionJob.status.in_(CLAIMABLE_STATUSES),
                ConversionJob.deleted_at.is_(None),
                or_(
                    # Exhausted rows are picked up so they can be failed
                    ConversionJob.retry_count >= self.max_retry_attempts,
                    ConversionJob.last_retry_at.is_(None),
                    ConversionJob.last_retry_at <= cutoff,
                ),
            )
            .order_by(ConversionJob.created_at)
            .limit(self.settings.conversion_batch_size)
        )
        async with self.database.session_scope() as session:
            result = await session.execute(query)
            return list(result.scalars().all())

    async def process_job(self, job_id: UUID) -> bool:
        """
        Advance a single conversion.

        Returns True when this instance wrote the row and False when the row
        was skipped (no longer claimable, not yet due, or lost to another
        instance).
        """
        async with self.database.session_scope() as session:
            job = await session.scalar(
                select(ConversionJob)
                .options(
                    joinedload(ConversionJob.audio_file),
                    joinedload(ConversionJob.voice_model),
                )
                .where(ConversionJob.id == job_id)
            )
            now = self.clock()
            if job is None or not self._is_claimable(job, now):
                logger.debug("Conversion no longer claimable", conversion_id=str(job_id))
                return False

            if job.retries_exhausted(self.max_retry_attempts):
                return await self._fail(
                    session, job, f"Max retry attempts ({self.max_retry_attempts}) exceeded", now
                )

            if job.status == ConversionStatus.PENDING_PREPROCESSING.value:
                outcome = await self._advance_pending(session, job, now)
                if outcome is not None:
                    return outcome

            return await self._dispatch(session, job, self.clock())

    def _is_claimable(self, job: ConversionJob, now: datetime) -> bool:
        if job.deleted_at is not None or job.status not in CLAIMABLE_STATUSES:
            return False
        if job.retries_exhausted(self.max_retry_attempts):
            return True
        last_retry_at = as_utc(job.last_retry_at)
        return last_retry_at is None or last_retry_at <= now - self.retry_delay

    async def _advance_pending(
        self, session: AsyncSession, job: ConversionJob, now: datetime
    ) -> bool | None:
        """
        Check upstream preprocessing for a pending job.

        Returns None when the job was claimed as ``queued`` and should be
        dispatched in this same pass, otherwise the final outcome.
        """
        audio_file = job.audio_file
        preprocessing_status = audio_file.preprocessing_status

        if preprocessing_status == PreprocessingStatus.FAILED.value:
            return await self._fail(
                session,
                job,
                f"Audio preprocessing failed: {audio_file.preprocessing_error or 'Unknown error'}",
                now,
            )

        if preprocessing_status == PreprocessingStatus.COMPLETED.value:
            job.status = ConversionStatus.QUEUED.value
            job.queued_at = now
            if not await try_commit_versioned(session, "conversion", job.id):
                return False
            logger.info("Preprocessing completed, conversion queued", conversion_id=str(job.id))
            return None

        self._record_retry(job, now)
        if job.status == ConversionStatus.FAILED.value:
            return await self._commit_failure(session, job)

        won = await try_commit_versioned(session, "conversion", job.id)
        if won:
            logger.info(
                "Preprocessing not ready, retry scheduled",
                conversion_id=str(job.id),
                preprocessing_status=preprocessing_status,
                retry_count=job.retry_count,
            )
        return won

    async def _dispatch(self, session: AsyncSession, job: ConversionJob, now: datetime) -> bool:
        queue_name = self.queue_name_for(job)
        try:
            message = build_inference_message(job, self.settings.conversion_callback_url)
        except MalformedJobError as exc:
            return await self._fail(session, job, f"Invalid conversion payload: {exc}", now)

        # Claim before publishing so only the winner ever sends the message.
        # A crash between this commit and the publish leaves the job in
        # processing until an operator intervenes: at most one dispatch.
        job.status = ConversionStatus.PROCESSING.value
        job.processing_started_at = now
        if not await try_commit_versioned(session, "conversion", job.id):
            return False

        try:
            await self.queue_gateway.publish(
                queue_name, message.model_dump(exclude_none=True), dedupe_id=str(job.id)
            )
        except QueueGatewayError as exc:
            if not exc.retryable:
                await self._fail(session, job, f"Queue dispatch failed: {exc}", self.clock())
                return True

            job.status = ConversionStatus.QUEUED.value
            job.processing_started_at = None
            self._record_retry(job, self.clock())
            job_id, status, retry_count = job.id, job.status, job.retry_count
            if status == ConversionStatus.FAILED.value:
                await self._commit_failure(session, job)
            else:
                await try_commit_versioned(session, "conversion", job_id)
            raise ConversionDispatchError(job_id, status, retry_count, exc) from exc

        logger.info(
            "Conversion dispatched",
            conversion_id=str(job.id),
            queue_name=queue_name,
            transposition=job.transposition_semitones,
            use_preview=job.use_preview,
        )
        return True

    def _record_retry(self, job: ConversionJob, now: datetime) -> None:
        job.retry_count += 1
        job.last_retry_at = now
        if job.retries_exhausted(self.max_retry_attempts):
            job.status = ConversionStatus.FAILED.value
            job.error_message = f"Max retry attempts ({self.max_retry_attempts}) exceeded"
            job.completed_at = now

    async def _fail(
        self, session: AsyncSession, job: ConversionJob, error_message: str, now: datetime
    ) -> bool:
        job.status = ConversionStatus.FAILED.value
        job.error_message = error_message
        job.completed_at = now
        return await self._commit_failure(session, job)

    async def _commit_failure(self, session: AsyncSession, job: ConversionJob) -> bool:
        """Commit a failed job together with its ``conversion.failed`` deliveries."""
        job_id = job.id
        try:
            await flush_versioned(session, "conversion", job_id)
        except VersionConflictError:
            logger.debug("Version conflict, another instance claimed the row", conversion_id=str(job_id))
            return False

        await publish_conversion_event(session, job, WebhookEvent.CONVERSION_FAILED)
        if not await try_commit_versioned(session, "conversion", job_id):
            return False

        logger.warning(
            "Conversion failed",
            conversion_id=str(job.id),
            retry_count=job.retry_count,
            error_message=job.error_message,
        )
        return True
