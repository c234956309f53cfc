"""Base HTTP Client for the Voice Conversion API"""

from typing import Any

import httpx
from rich.console import Console
from rich.panel import Panel

console = Console()


class VoiceAPIError(Exception):
    """Raised when the API is unreachable or answers with an error envelope"""


class APIClient:
    """HTTP client for the Voice Conversion API"""

    def __init__(
        self,
        base_url: str = "http://localhost:8000",
        timeout: int = 30,
        headers: dict[str, str] | None = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.default_headers = headers or {}
        self.client = httpx.Client(
            base_url=self.base_url, timeout=timeout, headers=self.default_headers
        )

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.client.close()

    def _handle_response(self, response: httpx.Response) -> Any:
        """Unwrap the response envelope, raising on error envelopes"""
        try:
            data = response.json()
        except ValueError:
            raise VoiceAPIError(
                f"Invalid JSON response: {response.status_code}"
            ) from None

        if response.status_code >= 400 or (isinstance(data, dict) and data.get("ok") is False):
            error = data.get("error", {}) if isinstance(data, dict) else {}
            error_msg = error.get("message") or data.get("detail") or "Unknown error"
            console.print(Panel(f"[red]{error_msg}[/red]", title="API Error"))
            raise VoiceAPIError(f"API Error {response.status_code}: {error_msg}")

        if isinstance(data, dict) and "ok" in data:
            return data.get("data", {})
        return data

    def request(
        self,
        method: str,
        path: str,
        params: dict[str, Any] | None = None,
        json: dict[str, Any] | None = None,
    ) -> Any:
        try:
            response = self.client.request(method, f"/v1{path}", params=params, json=json)
        except httpx.RequestError as e:
            raise VoiceAPIError(f"Connection failed: {e}") from None
        return self._handle_response(response)

    def get(self, path: str, params: dict[str, Any] | None = None) -> Any:
        return self.request("GET", path, params=params)

    def post(self, path: str, json: dict[str, Any] | None = None) -> Any:
        return self.request("POST", path, json=json)

    def patch(self, path: str, json: dict[str, Any] | None = None) -> Any:
        return self.request("PATCH", path, json=json)
