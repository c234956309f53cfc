from collections.abc import AsyncGenerator
from datetime import UTC, datetime, timedelta
from uuid import UUID, uuid4

import httpx
import pytest
from cryptography.fernet import Fernet
from httpx import ASGITransport, AsyncClient

from voice_api.config.settings import Settings, get_settings
from voice_api.infra.database import Database, get_session
from voice_api.main import create_app
from voice_api.v1.conversions.models import (
    AudioFile,
    ConversionJob,
    ConversionStatus,
    PreprocessingStatus,
    VoiceModel,
)
from voice_api.v1.core.security import string_to_uuid
from voice_api.v1.webhooks.models import (
    DeliveryStatus,
    WebhookDeliveryAttempt,
    WebhookEvent,
    WebhookSubscription,
)
from voice_api.v1.webhooks.signing import SecretBox

TEST_ENCRYPTION_KEY = Fernet.generate_key().decode()
CALLBACK_API_KEY = "test-callback-key"

# Principal of every request in AUTH_MODE=none
DEV_USER_ID = string_to_uuid("DEV_USER")


class FakeClock:
    """Controllable stand-in for ``utcnow``."""

    def __init__(self, start: datetime | None = None):
        self.now = start or datetime(2025, 6, 1, 12, 0, tzinfo=UTC)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now += timedelta(**kwargs)
        return self.now


@pytest.fixture
def settings(tmp_path) -> Settings:
    """Settings pointed at a throwaway SQLite database."""
    return Settings(
        database_url=f"sqlite+aiosqlite:///{tmp_path / 'voice.db'}",
        encryption_key=TEST_ENCRYPTION_KEY,
        conversion_callback_api_key=CALLBACK_API_KEY,
        conversion_callback_url="https://api.example.com/v1/conversions/callbacks/result",
        processor_startup_delay_s=0,
    )


@pytest.fixture
async def database(settings) -> AsyncGenerator[Database, None]:
    database = Database(settings)
    await database.create_all()
    yield database
    await database.close()


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def secret_box() -> SecretBox:
    return SecretBox(TEST_ENCRYPTION_KEY)


class Factory:
    """Insert rows directly, each in its own committed session."""

    def __init__(self, database: Database, secret_box: SecretBox):
        self.database = database
        self.secret_box = secret_box

    async def _save(self, entity):
        async with self.database.session_scope() as session:
            session.add(entity)
            await session.commit()
        return entity

    async def voice_model(self, **overrides) -> VoiceModel:
        values = {
            "name": "Soprano",
            "model_path": "models/soprano/model.pth",
            "index_path": "models/soprano/added.index",
        }
        values.update(overrides)
        return await self._save(VoiceModel(**values))

    async def audio_file(self, user_id: UUID = DEV_USER_ID, **overrides) -> AudioFile:
        values = {
            "user_id": user_id,
            "file_name": "song.mp3",
            "uploaded": True,
            "preprocessing_status": PreprocessingStatus.COMPLETED.value,
            "inference_location": f"s3://voice-audio-files/audio-files/{user_id}/processed/song.wav",
            "preview_location": f"s3://voice-audio-files/audio-files/{user_id}/processed/song_preview.wav",
        }
        values.update(overrides)
        return await self._save(AudioFile(**values))

    async def job(
        self,
        audio_file: AudioFile | None = None,
        voice_model: VoiceModel | None = None,
        **overrides,
    ) -> ConversionJob:
        audio_file = audio_file or await self.audio_file()
        voice_model = voice_model or await self.voice_model()
        job_id = uuid4()
        values = {
            "id": job_id,
            "user_id": audio_file.user_id,
            "audio_file_id": audio_file.id,
            "voice_model_id": voice_model.id,
            "transposition_semitones": 0,
            "use_preview": False,
            "status": ConversionStatus.QUEUED.value,
            "retry_count": 0,
            "output_location": f"s3://voice-audio-files/audio-files/{audio_file.user_id}/converted/song_{job_id}.wav",
        }
        values.update(overrides)
        return await self._save(ConversionJob(**values))

    async def subscription(
        self, user_id: UUID = DEV_USER_ID, secret: str = "whsec-test", **overrides
    ) -> WebhookSubscription:
        values = {
            "user_id": user_id,
            "url": "https://hooks.example.com/voice",
            "encrypted_secret": self.secret_box.encrypt(secret),
            "events": [e.value for e in WebhookEvent],
            "is_active": True,
            "consecutive_failures": 0,
            "auto_disable_on_failure": True,
            "max_consecutive_failures": 10,
        }
        values.update(overrides)
        return await self._save(WebhookSubscription(**values))

    async def delivery(
        self, subscription: WebhookSubscription, **overrides
    ) -> WebhookDeliveryAttempt:
        values = {
            "subscription_id": subscription.id,
            "event_type": WebhookEvent.CONVERSION_COMPLETED.value,
            "entity_type": "conversion",
            "entity_id": uuid4(),
            "payload": '{"event":"conversion.completed"}',
            "status": DeliveryStatus.PENDING.value,
            "attempt_count": 0,
        }
        values.update(overrides)
        return await self._save(WebhookDeliveryAttempt(**values))

    async def reload(self, model, entity_id):
        async with self.database.session_scope() as session:
            return await session.get(model, entity_id)


@pytest.fixture
def factory(database, secret_box) -> Factory:
    return Factory(database, secret_box)


def mock_http_client(handler) -> httpx.AsyncClient:
    """AsyncClient whose requests are answered by ``handler``."""
    return httpx.AsyncClient(transport=httpx.MockTransport(handler))


@pytest.fixture
def app(settings, database):
    """FastAPI application bound to the test database and settings."""
    app = create_app()

    async def override_session():
        async with database.SessionLocal() as session:
            yield session

    app.dependency_overrides[get_session] = override_session
    app.dependency_overrides[get_settings] = lambda: settings

    yield app

    app.dependency_overrides.clear()


@pytest.fixture
async def async_client(app) -> AsyncGenerator[AsyncClient, None]:
    """Create an async test client."""
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac
