import asyncio
import logging

_logger = logging.getLogger(__name__)


class ShutdownNotifier:
    """Released once: every waiter wakes up when shutdown is requested"""

    def __init__(self) -> None:
        self._event = asyncio.Event()

    def request(self) -> None:
        if not self._event.is_set():
            _logger.info("Shutdown requested")
            self._event.set()

    @property
    def is_requested(self) -> bool:
        return self._event.is_set()

    async def wait(self) -> None:
        await self._event.wait()
