"""
Conversion Pydantic schemas.
"""

from datetime import datetime
from typing import Literal
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field, field_validator

from voice_api.v1.conversions.models import ConversionJob, ConversionStatus
from voice_api.v1.conversions.pitch_shift import to_pitch_shift, to_transposition


class ConversionCreate(BaseModel):
    """Schema for requesting a new voice conversion."""

    audio_file_id: UUID = Field(..., description="Uploaded audio file to convert")
    voice_model_id: UUID = Field(..., description="Voice model to apply")
    pitch_shift: str = Field(
        default="same_octave",
        description="One of same_octave, lower_octave, higher_octave, third_down, third_up, fifth_down, fifth_up",
    )
    use_preview: bool = Field(default=False, description="Convert the short preview only")

    @field_validator("pitch_shift")
    @classmethod
    def validate_pitch_shift(cls, v: str) -> str:
        return to_pitch_shift(to_transposition(v))


class ConversionResponse(BaseModel):
    """Conversion as seen by its owner."""

    model_config = ConfigDict(from_attributes=True)

    id: UUID
    audio_file_id: UUID
    voice_model_id: UUID
    pitch_shift: str
    use_preview: bool
    status: str
    retry_count: int
    output_location: str | None = None
    error_message: str | None = None
    created_at: datetime
    queued_at: datetime | None = None
    processing_started_at: datetime | None = None
    completed_at: datetime | None = None

    @classmethod
    def from_job(cls, job: ConversionJob) -> "ConversionResponse":
        return cls(
            id=job.id,
            audio_file_id=job.audio_file_id,
            voice_model_id=job.voice_model_id,
            pitch_shift=to_pitch_shift(job.transposition),
            use_preview=job.use_preview,
            status=job.status,
            retry_count=job.retry_count,
            # Output is only meaningful once the inference service wrote it
            output_location=job.output_location if job.status == ConversionStatus.COMPLETED.value else None,
            error_message=job.error_message,
            created_at=job.created_at,
            queued_at=job.queued_at,
            processing_started_at=job.processing_started_at,
            completed_at=job.completed_at,
        )


class ConversionCallback(BaseModel):
    """Completion notification sent by the inference service."""

    job_id: UUID = Field(..., description="Conversion ID (the queue message inference_id)")
    status: Literal["SUCCESS", "FAILED"]
    finished_at: datetime | None = Field(default=None, description="When inference finished")
    error_message: str | None = Field(default=None, max_length=2000)

    @field_validator("status", mode="before")
    @classmethod
    def normalize_status(cls, v):
        return v.upper() if isinstance(v, str) else v


class CallbackDescriptor(BaseModel):
    url: str
    type: Literal["http"] = "http"


class InferenceMessage(BaseModel):
    """Message consumed by the inference service from its queue."""

    inference_id: str
    voice_model_path: str
    voice_model_index_path: str
    transposition: int = Field(..., description="Signed semitone count")
    input_location: str
    output_location: str
    callback: CallbackDescriptor | None = None
