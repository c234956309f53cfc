"""
Redis-backed queue gateway for inference dispatch.

Logical queue names are resolved through a registry hash
(``HGET <registry_key> <name>``) to the list key consumers pop from.
Resolutions are cached for the lifetime of the gateway because dispatch
addresses do not change at runtime.
"""

import json
from enum import Enum
from typing import Any

import redis.asyncio as redis
from redis.exceptions import RedisError

from voice_api.config.logging import get_logger
from voice_api.config.settings import Settings

logger = get_logger(__name__)


class LogicalQueue(str, Enum):
    """Logical inference queues addressed by the conversion processor."""

    MAIN = "main"
    ALT = "alt"
    PREVIEW = "preview"


class QueueGatewayError(Exception):
    """Base class for queue gateway failures."""

    retryable = True


class QueueNotFoundError(QueueGatewayError):
    """The queue is not registered and will not appear by retrying."""

    retryable = False

    def __init__(self, queue_name: str):
        self.queue_name = queue_name
        super().__init__(f"Queue '{queue_name}' does not exist")


class QueueResolutionError(QueueGatewayError):
    """The registry could not be reached."""


class QueuePublishError(QueueGatewayError):
    """The message could not be pushed to the resolved address."""


class QueueGateway:
    """Resolve queue names and publish JSON job messages."""

    def __init__(self, client: redis.Redis, registry_key: str = "queue:registry"):
        self.client = client
        self.registry_key = registry_key
        self._address_cache: dict[str, str] = {}

    @classmethod
    def from_settings(cls, settings: Settings) -> "QueueGateway":
        client = redis.from_url(settings.redis_url, decode_responses=True)
        return cls(client, registry_key=settings.queue_registry_key)

    async def resolve(self, queue_name: str) -> str:
        """Return the dispatch address for ``queue_name``, using the cache when possible."""
        cached = self._address_cache.get(queue_name)
        if cached is not None:
            return cached

        try:
            address = await self.client.hget(self.registry_key, queue_name)
        except RedisError as exc:
            logger.error(
                "Failed to resolve queue address",
                queue_name=queue_name,
                error=str(exc),
            )
            raise QueueResolutionError(
                f"Failed to resolve queue '{queue_name}': {exc}"
            ) from exc

        if not address:
            logger.error("Queue does not exist", queue_name=queue_name)
            raise QueueNotFoundError(queue_name)

        if isinstance(address, bytes):
            address = address.decode()

        self._address_cache[queue_name] = address
        logger.info("Resolved queue address", queue_name=queue_name, address=address)
        return address

    async def publish(
        self,
        queue_name: str,
        message: dict[str, Any],
        dedupe_id: str | None = None,
    ) -> None:
        """
        Publish ``message`` to ``queue_name``.

        Raises:
            QueueNotFoundError: the queue is not registered (permanent)
            QueueResolutionError: the registry lookup failed (transient)
            QueuePublishError: the push failed (transient)
        """
        address = await self.resolve(queue_name)
        body = json.dumps(message)

        try:
            await self.client.lpush(address, body)
        except RedisError as exc:
            logger.error(
                "Failed to publish message",
                queue_name=queue_name,
                dedupe_id=dedupe_id,
                error=str(exc),
            )
            raise QueuePublishError(
                f"Failed to publish to queue '{queue_name}': {exc}"
            ) from exc

        logger.info(
            "Published message",
            queue_name=queue_name,
            address=address,
            dedupe_id=dedupe_id,
        )

    def clear_cache(self) -> None:
        """Forget every resolved address."""
        self._address_cache.clear()

    async def ping(self) -> bool:
        try:
            return bool(await self.client.ping())
        except RedisError:
            return False

    async def close(self) -> None:
        await self.client.aclose()
