"""
Voice conversion job models.
"""

from datetime import datetime
from enum import Enum
from uuid import UUID, uuid4

from sqlalchemy import (
    TIMESTAMP,
    Boolean,
    CheckConstraint,
    ForeignKey,
    Index,
    Integer,
    SmallInteger,
    Text,
    Uuid,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from voice_api.infra.clock import utcnow
from voice_api.infra.database import Base
from voice_api.v1.conversions.pitch_shift import (
    Transposition,
    from_semitones,
    to_semitones,
)


class ConversionStatus(str, Enum):
    """Conversion job status enumeration."""

    PENDING_PREPROCESSING = "pending_preprocessing"
    QUEUED = "queued"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


TERMINAL_STATUSES = frozenset({ConversionStatus.COMPLETED.value, ConversionStatus.FAILED.value})


class PreprocessingStatus(str, Enum):
    """Upstream audio preprocessing status."""

    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


class VoiceModel(Base):
    """Voice model catalog entry, read-only for the processors."""

    __tablename__ = "voice_models"

    id: Mapped[UUID] = mapped_column(Uuid, primary_key=True, default=uuid4)
    name: Mapped[str] = mapped_column(Text, nullable=False)
    model_path: Mapped[str] = mapped_column(
        Text, nullable=False, comment="Storage path of the model weights"
    )
    index_path: Mapped[str] = mapped_column(
        Text, nullable=False, comment="Storage path of the feature index"
    )
    created_at: Mapped[datetime] = mapped_column(
        TIMESTAMP(timezone=True), nullable=False, default=utcnow
    )


class AudioFile(Base):
    """
    Uploaded audio and the state of its preprocessing.

    Preprocessing columns are written by the upload pipeline; conversion
    processing only reads them.
    """

    __tablename__ = "audio_files"

    id: Mapped[UUID] = mapped_column(Uuid, primary_key=True, default=uuid4)
    user_id: Mapped[UUID] = mapped_column(Uuid, nullable=False, index=True)
    file_name: Mapped[str] = mapped_column(Text, nullable=False)
    uploaded: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)

    preprocessing_status: Mapped[str | None] = mapped_column(
        Text,
        nullable=True,
        comment="pending|processing|completed|failed, null until preprocessing starts",
    )
    inference_location: Mapped[str | None] = mapped_column(
        Text, nullable=True, comment="Full-length preprocessed audio"
    )
    preview_location: Mapped[str | None] = mapped_column(
        Text, nullable=True, comment="Short preview audio"
    )
    preprocessing_error: Mapped[str | None] = mapped_column(Text, nullable=True)

    created_at: Mapped[datetime] = mapped_column(
        TIMESTAMP(timezone=True), nullable=False, default=utcnow
    )


class ConversionJob(Base):
    """
    One request to convert an audio file with a voice model.

    ``version`` is the optimistic concurrency token: every ORM flush of a
    modified job is guarded by the version it was loaded with.
    """

    __tablename__ = "conversion_jobs"

    id: Mapped[UUID] = mapped_column(Uuid, primary_key=True, default=uuid4)
    user_id: Mapped[UUID] = mapped_column(
        Uuid, nullable=False, index=True, comment="Requesting user"
    )
    audio_file_id: Mapped[UUID] = mapped_column(
        Uuid, ForeignKey("audio_files.id"), nullable=False
    )
    voice_model_id: Mapped[UUID] = mapped_column(
        Uuid, ForeignKey("voice_models.id"), nullable=False
    )
    transposition_semitones: Mapped[int] = mapped_column(
        SmallInteger, nullable=False, default=0, comment="Signed semitone shift"
    )
    use_preview: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)

    # Job state
    status: Mapped[str] = mapped_column(
        Text,
        nullable=False,
        default=ConversionStatus.PENDING_PREPROCESSING.value,
        comment="pending_preprocessing|queued|processing|completed|failed",
    )
    retry_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    last_retry_at: Mapped[datetime | None] = mapped_column(
        TIMESTAMP(timezone=True), nullable=True
    )
    version: Mapped[int] = mapped_column(Integer, nullable=False)

    # Results
    output_location: Mapped[str | None] = mapped_column(
        Text, nullable=True, comment="Storage URI of the converted audio"
    )
    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)

    # Timestamps
    created_at: Mapped[datetime] = mapped_column(
        TIMESTAMP(timezone=True), nullable=False, default=utcnow
    )
    updated_at: Mapped[datetime] = mapped_column(
        TIMESTAMP(timezone=True), nullable=False, default=utcnow, onupdate=utcnow
    )
    queued_at: Mapped[datetime | None] = mapped_column(TIMESTAMP(timezone=True), nullable=True)
    processing_started_at: Mapped[datetime | None] = mapped_column(
        TIMESTAMP(timezone=True), nullable=True
    )
    completed_at: Mapped[datetime | None] = mapped_column(TIMESTAMP(timezone=True), nullable=True)
    deleted_at: Mapped[datetime | None] = mapped_column(TIMESTAMP(timezone=True), nullable=True)

    audio_file: Mapped[AudioFile] = relationship(lazy="raise")
    voice_model: Mapped[VoiceModel] = relationship(lazy="raise")

    __mapper_args__ = {"version_id_col": version}

    __table_args__ = (
        CheckConstraint(
            "status IN ('pending_preprocessing', 'queued', 'processing', 'completed', 'failed')",
            name="conversion_jobs_status_check",
        ),
        Index("ix_conversion_jobs_poll", "status", "retry_count", "last_retry_at"),
    )

    @property
    def transposition(self) -> Transposition:
        return from_semitones(self.transposition_semitones)

    @transposition.setter
    def transposition(self, value: Transposition) -> None:
        self.transposition_semitones = to_semitones(value)

    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    def retries_exhausted(self, max_attempts: int) -> bool:
        return self.retry_count >= max_attempts
