"""
Webhook subscription API endpoints.
"""

from typing import Any
from uuid import UUID

from fastapi import APIRouter, Depends, Query, Request, status
from sqlalchemy.ext.asyncio import AsyncSession

from voice_api.config.settings import Settings, SettingsDep
from voice_api.infra.database import get_session
from voice_api.v1.core.exceptions import create_success_response
from voice_api.v1.core.security import Principal, PrincipalDep
from voice_api.v1.webhooks.schemas import (
    DeliveryAttemptResponse,
    SubscriptionCreate,
    SubscriptionCreatedResponse,
    SubscriptionResponse,
    SubscriptionUpdate,
    TestWebhookResponse,
)
from voice_api.v1.webhooks.service import WebhookService

router = APIRouter(prefix="/webhooks/subscriptions", tags=["webhooks"])


def _request_id(request: Request) -> str | None:
    return getattr(request.state, "request_id", None)


@router.post("", response_model=dict, status_code=status.HTTP_201_CREATED)
async def create_subscription(
    request: Request,
    body: SubscriptionCreate,
    principal: Principal = PrincipalDep,
    session: AsyncSession = Depends(get_session),
    settings: Settings = SettingsDep,
) -> dict[str, Any]:
    """Create a subscription. The secret is returned only in this response."""
    subscription, secret = await WebhookService(settings).create_subscription(
        session, principal.user_uuid, body
    )
    data = SubscriptionCreatedResponse.model_validate(
        {**SubscriptionResponse.model_validate(subscription).model_dump(), "secret": secret}
    )
    return create_success_response(
        data=data.model_dump(mode="json"),
        message="Store this secret now, it will not be shown again.",
        request_id=_request_id(request),
    )


@router.get("", response_model=dict)
async def list_subscriptions(
    request: Request,
    principal: Principal = PrincipalDep,
    session: AsyncSession = Depends(get_session),
    settings: Settings = SettingsDep,
) -> dict[str, Any]:
    subscriptions = await WebhookService(settings).list_subscriptions(
        session, principal.user_uuid
    )
    return create_success_response(
        data=[
            SubscriptionResponse.model_validate(s).model_dump(mode="json")
            for s in subscriptions
        ],
        request_id=_request_id(request),
    )


@router.get("/{subscription_id}", response_model=dict)
async def get_subscription(
    request: Request,
    subscription_id: UUID,
    principal: Principal = PrincipalDep,
    session: AsyncSession = Depends(get_session),
    settings: Settings = SettingsDep,
) -> dict[str, Any]:
    subscription = await WebhookService(settings).get_subscription(
        session, principal.user_uuid, subscription_id
    )
    return create_success_response(
        data=SubscriptionResponse.model_validate(subscription).model_dump(mode="json"),
        request_id=_request_id(request),
    )


@router.patch("/{subscription_id}", response_model=dict)
async def update_subscription(
    request: Request,
    subscription_id: UUID,
    body: SubscriptionUpdate,
    principal: Principal = PrincipalDep,
    session: AsyncSession = Depends(get_session),
    settings: Settings = SettingsDep,
) -> dict[str, Any]:
    """Update a subscription; ``is_active: true`` reactivates it and clears its failure streak."""
    subscription = await WebhookService(settings).update_subscription(
        session, principal.user_uuid, subscription_id, body
    )
    return create_success_response(
        data=SubscriptionResponse.model_validate(subscription).model_dump(mode="json"),
        request_id=_request_id(request),
    )


@router.delete("/{subscription_id}", response_model=dict)
async def delete_subscription(
    request: Request,
    subscription_id: UUID,
    principal: Principal = PrincipalDep,
    session: AsyncSession = Depends(get_session),
    settings: Settings = SettingsDep,
) -> dict[str, Any]:
    await WebhookService(settings).delete_subscription(
        session, principal.user_uuid, subscription_id
    )
    return create_success_response(
        data={"id": str(subscription_id), "deleted": True},
        request_id=_request_id(request),
    )


@router.post("/{subscription_id}/regenerate-secret", response_model=dict)
async def regenerate_secret(
    request: Request,
    subscription_id: UUID,
    principal: Principal = PrincipalDep,
    session: AsyncSession = Depends(get_session),
    settings: Settings = SettingsDep,
) -> dict[str, Any]:
    secret = await WebhookService(settings).regenerate_secret(
        session, principal.user_uuid, subscription_id
    )
    return create_success_response(
        data={"id": str(subscription_id), "secret": secret},
        message="The previous secret is no longer valid. This is the only time the new secret is shown.",
        request_id=_request_id(request),
    )


@router.post(
    "/{subscription_id}/test",
    response_model=dict,
    status_code=status.HTTP_202_ACCEPTED,
)
async def test_subscription(
    request: Request,
    subscription_id: UUID,
    principal: Principal = PrincipalDep,
    session: AsyncSession = Depends(get_session),
    settings: Settings = SettingsDep,
) -> dict[str, Any]:
    """Send a ``webhook.test`` event in the background; the result is only logged."""
    service = WebhookService(settings)
    payload, _ = await service.send_test_webhook(
        session, principal.user_uuid, subscription_id
    )
    subscription = await service.get_subscription(
        session, principal.user_uuid, subscription_id
    )
    data = TestWebhookResponse(
        message="Test webhook queued. Check your endpoint to verify delivery.",
        url=subscription.url,
        test_payload=payload,
    )
    return create_success_response(data=data.model_dump(), request_id=_request_id(request))


@router.get("/{subscription_id}/deliveries", response_model=dict)
async def list_deliveries(
    request: Request,
    subscription_id: UUID,
    limit: int = Query(default=100, ge=1, le=500, description="Maximum results"),
    principal: Principal = PrincipalDep,
    session: AsyncSession = Depends(get_session),
    settings: Settings = SettingsDep,
) -> dict[str, Any]:
    attempts = await WebhookService(settings).list_delivery_attempts(
        session, principal.user_uuid, subscription_id, limit
    )
    return create_success_response(
        data=[
            DeliveryAttemptResponse.model_validate(a).model_dump(mode="json")
            for a in attempts
        ],
        request_id=_request_id(request),
    )
