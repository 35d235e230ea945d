"""Background worker that runs the expiry sweep on a schedule."""

import asyncio
from contextlib import suppress

from app.services.expiry_sweeper import ExpirySweeper
from common.core.request_context import RequestContext
from common.utils.utils import get_logger

logger = get_logger()


class ExpiryWorker:
    """Calls ``ExpirySweeper.sweep`` every ``interval_seconds``; failures wait for the next tick."""

    def __init__(self, sweeper: ExpirySweeper, interval_seconds: int, initial_delay_seconds: int = 0) -> None:
        self.sweeper = sweeper
        self.interval_seconds = interval_seconds
        self.initial_delay_seconds = initial_delay_seconds
        self.task: asyncio.Task[None] | None = None
        self.running = False

    async def start(self) -> None:
        if self.running:
            logger.warning("Expiry worker already running")
            return

        self.running = True
        self.task = asyncio.create_task(self._run())
        logger.info("Expiry worker started", interval_seconds=self.interval_seconds, initial_delay_seconds=self.initial_delay_seconds)

    async def stop(self) -> None:
        if not self.running:
            return

        self.running = False
        if self.task:
            _ = self.task.cancel()
            with suppress(asyncio.CancelledError):
                await self.task
            self.task = None

        logger.info("Expiry worker stopped")

    async def _run(self) -> None:
        await asyncio.sleep(self.initial_delay_seconds)
        while self.running:
            with RequestContext.context(trigger="expiry_sweep"):
                try:
                    await self.sweeper.sweep()
                except Exception as e:
                    logger.exception("Error in expiry worker", exc_info=e)

            await asyncio.sleep(self.interval_seconds)
