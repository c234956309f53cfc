"""
Conversion API endpoints.

Creation and the owner's read path, plus the completion callback used by the
inference service.
"""

from typing import Any
from uuid import UUID

from fastapi import APIRouter, Depends, Request, status
from sqlalchemy.ext.asyncio import AsyncSession

from voice_api.config.settings import Settings, SettingsDep
from voice_api.infra.database import get_session
from voice_api.v1.conversions.schemas import (
    ConversionCallback,
    ConversionCreate,
    ConversionResponse,
)
from voice_api.v1.conversions.service import ConversionService
from voice_api.v1.core.exceptions import create_success_response
from voice_api.v1.core.security import CallbackAuthDep, Principal, PrincipalDep

router = APIRouter(prefix="/conversions", tags=["conversions"])


@router.post("", response_model=dict, status_code=status.HTTP_201_CREATED)
async def create_conversion(
    request: Request,
    body: ConversionCreate,
    principal: Principal = PrincipalDep,
    session: AsyncSession = Depends(get_session),
    settings: Settings = SettingsDep,
) -> dict[str, Any]:
    """Create a conversion job; it is dispatched by the background processor."""
    job = await ConversionService(settings).create_conversion(
        session, principal.user_uuid, body
    )
    return create_success_response(
        data=ConversionResponse.from_job(job).model_dump(mode="json"),
        request_id=getattr(request.state, "request_id", None),
    )


@router.get("/{conversion_id}", response_model=dict)
async def get_conversion(
    request: Request,
    conversion_id: UUID,
    principal: Principal = PrincipalDep,
    session: AsyncSession = Depends(get_session),
    settings: Settings = SettingsDep,
) -> dict[str, Any]:
    job = await ConversionService(settings).get_conversion(
        session, principal.user_uuid, conversion_id
    )
    return create_success_response(
        data=ConversionResponse.from_job(job).model_dump(mode="json"),
        request_id=getattr(request.state, "request_id", None),
    )


@router.post(
    "/callbacks/result",
    response_model=dict,
    dependencies=[CallbackAuthDep],
)
async def conversion_result_callback(
    request: Request,
    body: ConversionCallback,
    session: AsyncSession = Depends(get_session),
    settings: Settings = SettingsDep,
) -> dict[str, Any]:
    """Apply a success or failure reported by the inference service."""
    job, changed = await ConversionService(settings).handle_callback(session, body)
    return create_success_response(
        data={"job_id": str(job.id), "status": job.status, "changed": changed},
        request_id=getattr(request.state, "request_id", None),
    )
