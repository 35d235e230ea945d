from abc import ABC, abstractmethod

from common.utils.utils import get_logger

logger = get_logger()


class Lifecycle(ABC):
    """Start/stop protocol for long-lived handles (engine, workers, the service container).
    Both calls are idempotent; a failed start is rolled back with ``stop``.
    """

    _is_running: bool

    def __init__(self) -> None:
        self._is_running = False

    @property
    def is_running(self) -> bool:
        return self._is_running

    async def start(self) -> None:
        if self._is_running:
            return
        self._is_running = True

        logger.info("Starting", component=self._name_for_log)
        try:
            await self._start()
        except Exception:
            logger.exception("Failed to start", component=self._name_for_log)
            await self.stop()
            raise
        logger.info("Started", component=self._name_for_log)

    async def stop(self) -> None:
        if not self._is_running:
            return
        self._is_running = False

        logger.info("Stopping", component=self._name_for_log)
        try:
            await self._stop()
        except Exception:
            # Still holding resources, so a later stop() may retry
            self._is_running = True
            logger.exception("Failed to stop", component=self._name_for_log)
            raise
        logger.info("Stopped", component=self._name_for_log)

    @abstractmethod
    async def _start(self) -> None: ...

    @abstractmethod
    async def _stop(self) -> None: ...

    @property
    def _name_for_log(self) -> str:
        return self.__class__.__name__
