"""Tests for conversion creation, reads and the inference completion callback."""

from uuid import uuid4

from sqlalchemy import select

from conftest import CALLBACK_API_KEY
from voice_api.v1.conversions.models import ConversionJob, ConversionStatus, PreprocessingStatus
from voice_api.v1.webhooks.models import WebhookDeliveryAttempt

CALLBACK_PATH = "/v1/conversions/callbacks/result"
CALLBACK_HEADERS = {"X-Webhook-Api-Key": CALLBACK_API_KEY}


class TestCreateConversion:
    async def test_preprocessed_audio_starts_queued(self, async_client, factory):
        audio = await factory.audio_file()
        model = await factory.voice_model()

        response = await async_client.post(
            "/v1/conversions",
            json={
                "audio_file_id": str(audio.id),
                "voice_model_id": str(model.id),
                "pitch_shift": "Fifth_Up",
            },
        )

        assert response.status_code == 201
        data = response.json()["data"]
        assert data["status"] == ConversionStatus.QUEUED.value
        assert data["pitch_shift"] == "fifth_up"
        assert data["queued_at"] is not None
        assert data["output_location"] is None

    async def test_output_location_follows_naming_scheme(self, async_client, factory, database):
        audio = await factory.audio_file(file_name="my song (live).mp3")
        model = await factory.voice_model()

        response = await async_client.post(
            "/v1/conversions",
            json={
                "audio_file_id": str(audio.id),
                "voice_model_id": str(model.id),
                "use_preview": True,
            },
        )

        job_id = response.json()["data"]["id"]
        async with database.session_scope() as session:
            job = await session.scalar(select(ConversionJob))
        assert job.output_location == (
            f"s3://voice-audio-files/audio-files/{audio.user_id}/converted/"
            f"my_song__live_.mp3_same_octave_preview_{job_id}.wav"
        )

    async def test_pending_preprocessing_starts_pending(self, async_client, factory):
        audio = await factory.audio_file(preprocessing_status=PreprocessingStatus.PROCESSING.value)
        model = await factory.voice_model()

        response = await async_client.post(
            "/v1/conversions",
            json={"audio_file_id": str(audio.id), "voice_model_id": str(model.id)},
        )

        assert response.json()["data"]["status"] == ConversionStatus.PENDING_PREPROCESSING.value

    async def test_failed_preprocessing_is_rejected(self, async_client, factory):
        audio = await factory.audio_file(
            preprocessing_status=PreprocessingStatus.FAILED.value,
            preprocessing_error="Silent audio",
        )
        model = await factory.voice_model()

        response = await async_client.post(
            "/v1/conversions",
            json={"audio_file_id": str(audio.id), "voice_model_id": str(model.id)},
        )

        assert response.status_code == 422
        assert "Silent audio" in response.json()["error"]["message"]

    async def test_other_users_audio_is_not_found(self, async_client, factory):
        audio = await factory.audio_file(user_id=uuid4())
        model = await factory.voice_model()

        response = await async_client.post(
            "/v1/conversions",
            json={"audio_file_id": str(audio.id), "voice_model_id": str(model.id)},
        )

        assert response.status_code == 404

    async def test_invalid_pitch_shift_is_rejected(self, async_client, factory):
        audio = await factory.audio_file()
        model = await factory.voice_model()

        response = await async_client.post(
            "/v1/conversions",
            json={
                "audio_file_id": str(audio.id),
                "voice_model_id": str(model.id),
                "pitch_shift": "tritone",
            },
        )

        assert response.status_code == 422


class TestGetConversion:
    async def test_owner_reads_completed_output(self, async_client, factory):
        job = await factory.job(status=ConversionStatus.COMPLETED.value)

        response = await async_client.get(f"/v1/conversions/{job.id}")

        assert response.status_code == 200
        assert response.json()["data"]["output_location"] == job.output_location


class TestCompletionCallback:
    async def test_missing_api_key_is_unauthorized(self, async_client, factory):
        job = await factory.job(status=ConversionStatus.PROCESSING.value)

        response = await async_client.post(
            CALLBACK_PATH, json={"job_id": str(job.id), "status": "SUCCESS"}
        )

        assert response.status_code == 401

    async def test_success_completes_job_and_stages_event(self, async_client, factory, database):
        job = await factory.job(status=ConversionStatus.PROCESSING.value)
        subscription = await factory.subscription(user_id=job.user_id)

        response = await async_client.post(
            CALLBACK_PATH,
            json={
                "job_id": str(job.id),
                "status": "success",
                "finished_at": "2025-06-01T12:03:00Z",
            },
            headers=CALLBACK_HEADERS,
        )

        assert response.status_code == 200
        assert response.json()["data"]["changed"] is True

        stored = await factory.reload(ConversionJob, job.id)
        assert stored.status == ConversionStatus.COMPLETED.value
        assert stored.completed_at is not None

        async with database.session_scope() as session:
            [attempt] = (await session.execute(select(WebhookDeliveryAttempt))).scalars().all()
        assert attempt.subscription_id == subscription.id
        assert attempt.event_type == "conversion.completed"

    async def test_failure_records_error(self, async_client, factory):
        job = await factory.job(status=ConversionStatus.PROCESSING.value)

        await async_client.post(
            CALLBACK_PATH,
            json={"job_id": str(job.id), "status": "FAILED", "error_message": "CUDA out of memory"},
            headers=CALLBACK_HEADERS,
        )

        stored = await factory.reload(ConversionJob, job.id)
        assert stored.status == ConversionStatus.FAILED.value
        assert stored.error_message == "CUDA out of memory"

    async def test_duplicate_callback_is_ignored(self, async_client, factory, database):
        job = await factory.job(status=ConversionStatus.PROCESSING.value)
        await factory.subscription(user_id=job.user_id)
        body = {"job_id": str(job.id), "status": "SUCCESS"}

        await async_client.post(CALLBACK_PATH, json=body, headers=CALLBACK_HEADERS)
        response = await async_client.post(CALLBACK_PATH, json=body, headers=CALLBACK_HEADERS)

        assert response.status_code == 200
        assert response.json()["data"]["changed"] is False
        async with database.session_scope() as session:
            attempts = (await session.execute(select(WebhookDeliveryAttempt))).scalars().all()
        assert len(attempts) == 1

    async def test_callback_for_queued_job_conflicts(self, async_client, factory):
        job = await factory.job(status=ConversionStatus.QUEUED.value)

        response = await async_client.post(
            CALLBACK_PATH,
            json={"job_id": str(job.id), "status": "SUCCESS"},
            headers=CALLBACK_HEADERS,
        )

        assert response.status_code == 409
        stored = await factory.reload(ConversionJob, job.id)
        assert stored.status == ConversionStatus.QUEUED.value

    async def test_unknown_job_is_not_found(self, async_client):
        response = await async_client.post(
            CALLBACK_PATH,
            json={"job_id": "00000000-0000-0000-0000-000000000000", "status": "SUCCESS"},
            headers=CALLBACK_HEADERS,
        )

        assert response.status_code == 404
