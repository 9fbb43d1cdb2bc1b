"""Base class for background loops with an explicit start/stop lifecycle."""

import asyncio
from typing import Optional

from common.logging_config import get_logger

logger = get_logger(__name__)


class PeriodicTask:
    """
    Runs `run_once()` every `interval_seconds` until stopped.

    Errors from a cycle are logged and the loop keeps going.
    """

    name = "periodic task"

    def __init__(self, interval_seconds: float, run_immediately: bool = False):
        self.interval_seconds = interval_seconds
        self.run_immediately = run_immediately
        self._running = False
        self._task: Optional[asyncio.Task] = None

    @property
    def running(self) -> bool:
        return self._running

    async def start(self) -> None:
        if self._running:
            logger.warning(f"{self.name} already running")
            return

        self._running = True
        self._task = asyncio.create_task(self._run())
        logger.info(f"Started {self.name} (interval: {self.interval_seconds}s)")

    async def stop(self) -> None:
        if not self._running:
            return

        self._running = False
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
        logger.info(f"Stopped {self.name}")

    async def run_once(self) -> None:
        raise NotImplementedError

    async def _run(self) -> None:
        first = True
        while self._running:
            try:
                if not (first and self.run_immediately):
                    await asyncio.sleep(self.interval_seconds)
                first = False

                if not self._running:
                    break

                await self.run_once()

            except asyncio.CancelledError:
                break
            except Exception as e:
                logger.error(f"Error in {self.name}: {e}", exc_info=True)
