"""
Timer-driven polling loop shared by the background processors.

Each processor instance is one long-lived asyncio task per process. Cycles
never overlap: the next sleep starts only after the current cycle returns.
Stopping cancels the sleep but never the cycle, so a row that is being
written is always finished (graceful drain).
"""

import asyncio
from abc import ABC, abstractmethod
from datetime import datetime, timedelta
from typing import Any

from voice_api.config.logging import get_logger
from voice_api.infra.clock import Clock, utcnow

logger = get_logger(__name__)

DEGRADED_AFTER = timedelta(minutes=5)


class PollingProcessor(ABC):
    """Base class for processors that poll the job store on a fixed interval."""

    name = "processor"

    def __init__(
        self,
        poll_interval_s: float,
        startup_delay_s: float = 0.0,
        clock: Clock = utcnow,
    ):
        self.poll_interval_s = poll_interval_s
        self.startup_delay_s = startup_delay_s
        self.clock = clock
        self.running = False
        self._stop_event = asyncio.Event()

        self.started_at: datetime | None = None
        self.last_success_at: datetime | None = None
        self.last_error: str | None = None
        self.total_processed = 0
        self.total_skipped = 0
        self.total_errors = 0

    @abstractmethod
    async def run_once(self) -> tuple[int, int]:
        """Run one poll cycle and return ``(processed, skipped)``."""

    async def start(self) -> None:
        """Run the polling loop until ``stop`` is called."""
        if self.running:
            raise RuntimeError(f"{self.name} is already running")

        self.running = True
        self._stop_event.clear()
        self.started_at = self.clock()
        logger.info(
            "Starting processor",
            processor=self.name,
            poll_interval_s=self.poll_interval_s,
        )

        try:
            await self._sleep(self.startup_delay_s)
            while self.running:
                await self._run_cycle()
                await self._sleep(self.poll_interval_s)
        finally:
            self.running = False
            logger.info("Processor stopped", processor=self.name)

    async def stop(self) -> None:
        """Stop after the current cycle; no new cycle begins."""
        if self.running:
            logger.info("Stopping processor", processor=self.name)
        self.running = False
        self._stop_event.set()

    async def _run_cycle(self) -> None:
        try:
            processed, skipped = await self.run_once()
        except Exception as exc:
            self.last_error = str(exc)
            logger.exception("Error in poll cycle", processor=self.name)
            return

        self.last_success_at = self.clock()
        self.last_error = None
        self.total_processed += processed
        self.total_skipped += skipped
        if processed or skipped:
            logger.info(
                "Poll cycle finished",
                processor=self.name,
                processed=processed,
                skipped=skipped,
            )

    async def _sleep(self, seconds: float) -> None:
        if seconds <= 0 or not self.running:
            return
        try:
            await asyncio.wait_for(self._stop_event.wait(), timeout=seconds)
        except TimeoutError:
            pass

    def health_status(self) -> dict[str, Any]:
        """Liveness snapshot for the health endpoint."""
        now = self.clock()
        reference = self.last_success_at or self.started_at
        if not self.running:
            status = "stopped"
        elif reference is not None and now - reference > DEGRADED_AFTER:
            status = "degraded"
        else:
            status = "healthy"

        return {
            "name": self.name,
            "status": status,
            "running": self.running,
            "last_success_at": self.last_success_at.isoformat() if self.last_success_at else None,
            "last_error": self.last_error,
            "total_processed": self.total_processed,
            "total_skipped": self.total_skipped,
            "total_errors": self.total_errors,
        }
