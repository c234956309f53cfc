"""
Conversion service: job creation and the inference completion callback.

Both are writers of ``conversion_jobs`` alongside the processor and follow
the same version-token discipline.
"""

import re
from uuid import UUID, uuid4

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from voice_api.config.logging import get_logger
from voice_api.config.settings import Settings
from voice_api.infra.clock import Clock, utcnow
from voice_api.infra.versioning import commit_versioned, flush_versioned
from voice_api.v1.conversions.models import (
    AudioFile,
    ConversionJob,
    ConversionStatus,
    PreprocessingStatus,
    VoiceModel,
)
from voice_api.v1.conversions.pitch_shift import (
    Transposition,
    to_pitch_shift,
    to_semitones,
    to_transposition,
)
from voice_api.v1.conversions.schemas import ConversionCallback, ConversionCreate
from voice_api.v1.core.exceptions import ConflictError, NotFoundError, ValidationError
from voice_api.v1.webhooks.events import publish_conversion_event
from voice_api.v1.webhooks.models import WebhookEvent

logger = get_logger(__name__)

_UNSAFE_FILENAME_CHARS = re.compile(r"[^a-zA-Z0-9._-]")


def sanitize_file_name(file_name: str | None) -> str:
    """Make a user-supplied file name safe for an object storage key."""
    if not file_name or not file_name.strip():
        return "file"
    sanitized = _UNSAFE_FILENAME_CHARS.sub("_", file_name)
    return sanitized or "file"


def build_output_location(
    bucket: str,
    user_id: UUID,
    file_name: str | None,
    transposition: Transposition,
    use_preview: bool,
    job_id: UUID,
) -> str:
    suffix = "_preview" if use_preview else ""
    return (
        f"s3://{bucket}/audio-files/{user_id}/converted/"
        f"{sanitize_file_name(file_name)}_{to_pitch_shift(transposition)}{suffix}_{job_id}.wav"
    )


class ConversionService:
    """Service for creating conversions and applying inference results."""

    def __init__(self, settings: Settings, clock: Clock = utcnow):
        self.settings = settings
        self.clock = clock

    async def create_conversion(
        self, session: AsyncSession, user_id: UUID, request: ConversionCreate
    ) -> ConversionJob:
        """
        Create a conversion job for ``user_id``.

        The job starts ``queued`` when preprocessing already finished, and
        ``pending_preprocessing`` otherwise. Dispatch is left to the processor.
        """
        transposition = to_transposition(request.pitch_shift)

        audio_file = await session.scalar(
            select(AudioFile).where(
                AudioFile.id == request.audio_file_id, AudioFile.user_id == user_id
            )
        )
        if audio_file is None:
            raise NotFoundError(f"Audio file not found: {request.audio_file_id}")
        if not audio_file.uploaded:
            raise ValidationError(
                f"Audio file upload not completed: {request.audio_file_id}"
            )

        voice_model = await session.get(VoiceModel, request.voice_model_id)
        if voice_model is None:
            raise NotFoundError(f"Voice model not found: {request.voice_model_id}")

        if audio_file.preprocessing_status == PreprocessingStatus.FAILED.value:
            raise ValidationError(
                f"Audio file preprocessing failed: {audio_file.preprocessing_error or 'Unknown error'}"
            )

        job_id = uuid4()
        now = self.clock()
        job = ConversionJob(
            id=job_id,
            user_id=user_id,
            audio_file_id=audio_file.id,
            voice_model_id=voice_model.id,
            transposition_semitones=to_semitones(transposition),
            use_preview=request.use_preview,
            retry_count=0,
            output_location=build_output_location(
                self.settings.audio_files_bucket,
                user_id,
                audio_file.file_name,
                transposition,
                request.use_preview,
                job_id,
            ),
            created_at=now,
            updated_at=now,
        )
        if audio_file.preprocessing_status == PreprocessingStatus.COMPLETED.value:
            job.status = ConversionStatus.QUEUED.value
            job.queued_at = now
        else:
            job.status = ConversionStatus.PENDING_PREPROCESSING.value

        session.add(job)
        await session.commit()

        logger.info(
            "Conversion created",
            conversion_id=str(job.id),
            status=job.status,
            pitch_shift=request.pitch_shift,
            use_preview=request.use_preview,
        )
        return job

    async def get_conversion(
        self, session: AsyncSession, user_id: UUID, job_id: UUID
    ) -> ConversionJob:
        job = await session.scalar(
            select(ConversionJob).where(
                ConversionJob.id == job_id,
                ConversionJob.user_id == user_id,
                ConversionJob.deleted_at.is_(None),
            )
        )
        if job is None:
            raise NotFoundError(f"Conversion not found: {job_id}")
        return job

    async def handle_callback(
        self, session: AsyncSession, callback: ConversionCallback
    ) -> tuple[ConversionJob, bool]:
        """
        Apply an inference result to its job.

        Returns the job and whether this call changed it. A job that is
        already terminal is returned unchanged so redelivered callbacks are
        harmless.

        Raises:
            NotFoundError: unknown job
            ConflictError: the job is not processing
            VersionConflictError: a concurrent writer changed the job first
        """
        job = await session.get(ConversionJob, callback.job_id)
        if job is None:
            raise NotFoundError(f"Conversion not found: {callback.job_id}")

        if job.is_terminal():
            logger.info(
                "Duplicate conversion callback ignored",
                conversion_id=str(job.id),
                status=job.status,
            )
            return job, False

        if job.status != ConversionStatus.PROCESSING.value:
            raise ConflictError(
                f"Conversion {job.id} cannot accept a result while {job.status}",
                details={"status": job.status},
            )

        job.completed_at = callback.finished_at or self.clock()
        if callback.status == "SUCCESS":
            job.status = ConversionStatus.COMPLETED.value
            event = WebhookEvent.CONVERSION_COMPLETED
        else:
            job.status = ConversionStatus.FAILED.value
            job.error_message = callback.error_message or "External service reported failure"
            event = WebhookEvent.CONVERSION_FAILED

        # The version check runs before the event rows are staged
        await flush_versioned(session, "conversion", job.id)
        await publish_conversion_event(session, job, event)
        await commit_versioned(session, "conversion", job.id)

        log = logger.info if job.status == ConversionStatus.COMPLETED.value else logger.warning
        log(
            "Conversion result applied",
            conversion_id=str(job.id),
            status=job.status,
            error_message=job.error_message,
        )
        return job, True
