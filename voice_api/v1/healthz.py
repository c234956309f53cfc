from datetime import UTC, datetime

from fastapi import APIRouter, Depends
from pydantic import BaseModel
from sqlalchemy import func, select, text
from sqlalchemy.ext.asyncio import AsyncSession

from voice_api.config.settings import Settings, SettingsDep
from voice_api.infra.database import get_session
from voice_api.v1.conversions.models import ConversionJob, ConversionStatus
from voice_api.v1.core.exceptions import create_success_response
from voice_api.v1.infra.background import get_background
from voice_api.v1.webhooks.models import DeliveryStatus, WebhookDeliveryAttempt

router = APIRouter()


class DatabaseHealth(BaseModel):
    """Database health status."""

    connected: bool
    response_time_ms: float | None = None
    error: str | None = None


class ProcessorHealth(BaseModel):
    """Background processor status in this process."""

    name: str
    status: str
    running: bool
    last_success_at: str | None = None
    last_error: str | None = None
    total_processed: int = 0
    total_skipped: int = 0
    total_errors: int = 0


class QueueHealth(BaseModel):
    """Reachability of the inference queue broker from this process."""

    connected: bool


class BacklogHealth(BaseModel):
    """Work waiting in the job store, across all instances."""

    pending_conversions: int = 0
    processing_conversions: int = 0
    pending_deliveries: int = 0


@router.get("/healthz", response_model=dict)
async def health_check(
    settings: Settings = SettingsDep, session: AsyncSession = Depends(get_session)
):
    """Health check with database, processor and backlog status."""

    timestamp = datetime.now(UTC).isoformat()
    overall_ok = True

    db_health = await _check_database_health(session)
    if not db_health.connected:
        overall_ok = False

    processors = _check_processor_health()
    if any(p.status == "degraded" for p in processors):
        overall_ok = False

    queue = await _check_queue_health()
    if queue is not None and not queue.connected:
        overall_ok = False

    backlog = None
    if db_health.connected:
        backlog = await _check_backlog(session)

    health_data = {
        "ok": overall_ok,
        "version": settings.version,
        "environment": settings.environment,
        "timestamp": timestamp,
        "database": db_health.model_dump(),
        "processors": [p.model_dump() for p in processors],
        "queue": queue.model_dump() if queue else None,
        "backlog": backlog.model_dump() if backlog else None,
    }

    return create_success_response(data=health_data)


async def _check_database_health(session: AsyncSession) -> DatabaseHealth:
    """Check database connectivity and response time."""
    start_time = datetime.now(UTC)

    try:
        await session.execute(text("SELECT 1"))

        end_time = datetime.now(UTC)
        response_time_ms = (end_time - start_time).total_seconds() * 1000

        return DatabaseHealth(
            connected=True, response_time_ms=round(response_time_ms, 2)
        )

    except Exception as e:
        return DatabaseHealth(connected=False, error=str(e))


def _check_processor_health() -> list[ProcessorHealth]:
    background = get_background()
    if background is None:
        return []
    return [ProcessorHealth(**status) for status in background.health()]


async def _check_queue_health() -> QueueHealth | None:
    background = get_background()
    gateway = getattr(background, "queue_gateway", None)
    if gateway is None:
        return None
    return QueueHealth(connected=await gateway.ping())


async def _check_backlog(session: AsyncSession) -> BacklogHealth:
    pending_conversions = await session.scalar(
        select(func.count(ConversionJob.id)).where(
            ConversionJob.status.in_(
                [
                    ConversionStatus.PENDING_PREPROCESSING.value,
                    ConversionStatus.QUEUED.value,
                ]
            ),
            ConversionJob.deleted_at.is_(None),
        )
    )
    processing_conversions = await session.scalar(
        select(func.count(ConversionJob.id)).where(
            ConversionJob.status == ConversionStatus.PROCESSING.value
        )
    )
    pending_deliveries = await session.scalar(
        select(func.count(WebhookDeliveryAttempt.id)).where(
            WebhookDeliveryAttempt.status.in_(
                [DeliveryStatus.PENDING.value, DeliveryStatus.PROCESSING.value]
            )
        )
    )
    return BacklogHealth(
        pending_conversions=pending_conversions or 0,
        processing_conversions=processing_conversions or 0,
        pending_deliveries=pending_deliveries or 0,
    )
