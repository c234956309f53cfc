"""API Endpoint Wrappers"""

import os
from typing import Any

from .base import APIClient

DEFAULT_API_URL = "http://localhost:8000"


class VoiceAPIClient:
    """High-level client with one method per endpoint used by the CLI"""

    def __init__(
        self,
        base_url: str | None = None,
        user_id: str | None = None,
        timeout: int = 30,
    ):
        headers = {}
        user_id = user_id or os.getenv("VOICE_USER_ID")
        if user_id:
            headers["X-User-ID"] = user_id

        self.api = APIClient(
            base_url=base_url or os.getenv("VOICE_API_URL", DEFAULT_API_URL),
            timeout=timeout,
            headers=headers,
        )

    def __enter__(self):
        self.api.__enter__()
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.api.__exit__(exc_type, exc_val, exc_tb)

    def health_check(self) -> dict[str, Any]:
        return self.api.get("/healthz")

    # Conversions
    def get_conversion(self, conversion_id: str) -> dict[str, Any]:
        return self.api.get(f"/conversions/{conversion_id}")

    # Webhook subscriptions
    def list_subscriptions(self) -> list[dict[str, Any]]:
        return self.api.get("/webhooks/subscriptions")

    def update_subscription(self, subscription_id: str, **changes: Any) -> dict[str, Any]:
        return self.api.patch(f"/webhooks/subscriptions/{subscription_id}", json=changes)

    def test_subscription(self, subscription_id: str) -> dict[str, Any]:
        return self.api.post(f"/webhooks/subscriptions/{subscription_id}/test")

    def list_deliveries(self, subscription_id: str, limit: int = 20) -> list[dict[str, Any]]:
        return self.api.get(
            f"/webhooks/subscriptions/{subscription_id}/deliveries", {"limit": limit}
        )
