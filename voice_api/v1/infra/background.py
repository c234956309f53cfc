"""
Lifecycle of the background processors within one service process.

Started from the FastAPI lifespan when ``PROCESSORS_ENABLED`` is set, or
standalone through ``voice-cli workers run``.
"""

import asyncio
import signal
from typing import Any

from voice_api.config.logging import get_logger
from voice_api.config.settings import Settings
from voice_api.infra.database import Database
from voice_api.v1.conversions.processor import ConversionProcessor
from voice_api.v1.infra.polling import PollingProcessor
from voice_api.v1.infra.queue.gateway import QueueGateway
from voice_api.v1.webhooks.gateway import DeliveryGateway
from voice_api.v1.webhooks.processor import DeliveryProcessor
from voice_api.v1.webhooks.signing import get_secret_box

logger = get_logger(__name__)

SHUTDOWN_TIMEOUT_S = 30.0


class BackgroundProcessors:
    """One asyncio task per processor, drained on shutdown."""

    def __init__(
        self,
        conversion_processor: ConversionProcessor,
        delivery_processor: DeliveryProcessor,
        queue_gateway: QueueGateway | None = None,
        delivery_gateway: DeliveryGateway | None = None,
    ):
        self.conversion_processor = conversion_processor
        self.delivery_processor = delivery_processor
        self.queue_gateway = queue_gateway
        self.delivery_gateway = delivery_gateway
        self._tasks: dict[str, asyncio.Task] = {}
        self._stop_requested = asyncio.Event()

    @classmethod
    def from_settings(cls, settings: Settings, database: Database) -> "BackgroundProcessors":
        queue_gateway = QueueGateway.from_settings(settings)
        delivery_gateway = DeliveryGateway(timeout_s=settings.webhook_timeout_s)
        return cls(
            conversion_processor=ConversionProcessor(settings, database, queue_gateway),
            delivery_processor=DeliveryProcessor(
                settings,
                database,
                delivery_gateway,
                get_secret_box(settings.encryption_key),
            ),
            queue_gateway=queue_gateway,
            delivery_gateway=delivery_gateway,
        )

    @property
    def processors(self) -> list[PollingProcessor]:
        return [self.conversion_processor, self.delivery_processor]

    def start(self) -> None:
        for processor in self.processors:
            if processor.name in self._tasks:
                continue
            self._tasks[processor.name] = asyncio.create_task(
                processor.start(), name=processor.name
            )
        logger.info("Background processors started", processors=list(self._tasks))

    async def stop(self, timeout_s: float = SHUTDOWN_TIMEOUT_S) -> None:
        """Stop polling, let in-flight rows finish, then release gateways."""
        for processor in self.processors:
            await processor.stop()

        if self._tasks:
            done, pending = await asyncio.wait(self._tasks.values(), timeout=timeout_s)
            for task in pending:
                logger.warning("Processor did not drain in time, cancelling", processor=task.get_name())
                task.cancel()
            for task in done:
                if not task.cancelled() and task.exception() is not None:
                    logger.error(
                        "Processor exited with error",
                        processor=task.get_name(),
                        error=str(task.exception()),
                    )
            self._tasks.clear()

        if self.delivery_gateway is not None:
            await self.delivery_gateway.close()
        if self.queue_gateway is not None:
            await self.queue_gateway.close()
        logger.info("Background processors stopped")

    def request_stop(self) -> None:
        """Ask ``run_forever`` to wind down; safe to call from a signal handler."""
        self._stop_requested.set()

    async def run_forever(self, handle_signals: bool = True) -> None:
        """
        Run until SIGINT/SIGTERM, ``request_stop`` or cancellation (standalone worker).

        The processor tasks are never cancelled from here: on every exit path
        polling stops and the cycle in flight is allowed to finish.
        """
        loop = asyncio.get_running_loop()
        installed: list[signal.Signals] = []
        if handle_signals:
            for sig in (signal.SIGINT, signal.SIGTERM):
                try:
                    loop.add_signal_handler(sig, self.request_stop)
                except (NotImplementedError, RuntimeError):
                    # Not supported on this event loop or outside the main thread
                    continue
                installed.append(sig)

        self.start()
        stop_requested = asyncio.create_task(self._stop_requested.wait())
        try:
            await asyncio.wait(
                [*self._tasks.values(), stop_requested],
                return_when=asyncio.FIRST_COMPLETED,
            )
        finally:
            stop_requested.cancel()
            for sig in installed:
                loop.remove_signal_handler(sig)
            await self.stop()

    def health(self) -> list[dict[str, Any]]:
        return [processor.health_status() for processor in self.processors]


# Process-wide instance, owned by the application lifespan
_background: BackgroundProcessors | None = None


def get_background() -> BackgroundProcessors | None:
    return _background


def set_background(background: BackgroundProcessors | None) -> None:
    global _background
    _background = background
