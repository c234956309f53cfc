"""
Outbound HTTP delivery of signed webhook payloads.
"""

import time
from dataclasses import dataclass
from datetime import UTC, datetime

import httpx

from voice_api.config.logging import get_logger
from voice_api.v1.webhooks.models import RESPONSE_BODY_MAX_LENGTH
from voice_api.v1.webhooks.signing import compute_signature

logger = get_logger(__name__)

USER_AGENT = "VoiceConversion-Webhooks/1.0"


@dataclass
class DeliveryResult:
    """Outcome of a single POST to a subscriber endpoint."""

    success: bool
    status_code: int | None = None
    response_body: str | None = None
    error_message: str | None = None
    duration_ms: int = 0


def truncate_body(body: str | None, limit: int = RESPONSE_BODY_MAX_LENGTH) -> str | None:
    if body is None or len(body) <= limit:
        return body
    return body[:limit]


class DeliveryGateway:
    """
    Sign and POST webhook payloads.

    Network failures and timeouts are reported through ``DeliveryResult``
    rather than raised, so callers only branch on ``success``.
    """

    def __init__(self, timeout_s: float = 30.0, client: httpx.AsyncClient | None = None):
        self._owns_client = client is None
        self.client = client or httpx.AsyncClient(
            timeout=httpx.Timeout(timeout_s),
            headers={"User-Agent": USER_AGENT},
            follow_redirects=False,
        )

    def build_headers(
        self, delivery_id: str, event_type: str, secret: str, body: str
    ) -> dict[str, str]:
        return {
            "Content-Type": "application/json",
            "X-Webhook-Signature": compute_signature(secret, body),
            "X-Webhook-Timestamp": str(int(datetime.now(UTC).timestamp())),
            "X-Webhook-Id": delivery_id,
            "X-Webhook-Event": event_type,
        }

    async def deliver(
        self,
        url: str,
        body: str,
        secret: str,
        delivery_id: str,
        event_type: str,
    ) -> DeliveryResult:
        headers = self.build_headers(delivery_id, event_type, secret, body)
        started = time.perf_counter()

        try:
            response = await self.client.post(url, content=body.encode(), headers=headers)
        except httpx.TimeoutException:
            duration_ms = int((time.perf_counter() - started) * 1000)
            logger.warning(
                "Webhook delivery timed out",
                delivery_id=delivery_id,
                url=url,
                duration_ms=duration_ms,
            )
            return DeliveryResult(
                success=False,
                error_message="Request timeout",
                duration_ms=duration_ms,
            )
        except httpx.HTTPError as exc:
            duration_ms = int((time.perf_counter() - started) * 1000)
            logger.warning(
                "Webhook delivery failed",
                delivery_id=delivery_id,
                url=url,
                error=str(exc),
            )
            return DeliveryResult(
                success=False,
                error_message=f"HTTP error: {exc}",
                duration_ms=duration_ms,
            )

        duration_ms = int((time.perf_counter() - started) * 1000)
        success = response.is_success
        result = DeliveryResult(
            success=success,
            status_code=response.status_code,
            response_body=truncate_body(response.text),
            error_message=None if success else f"HTTP {response.status_code}",
            duration_ms=duration_ms,
        )

        logger.info(
            "Webhook delivered" if success else "Webhook rejected by endpoint",
            delivery_id=delivery_id,
            event_type=event_type,
            status_code=response.status_code,
            duration_ms=duration_ms,
        )
        return result

    async def close(self) -> None:
        if self._owns_client:
            await self.client.aclose()
