"""Decide when a main process is initialized, i.e. serving"""

import asyncio
import logging
from typing import Protocol

from tenacity import (
    AsyncRetrying,
    RetryError,
    before_sleep_log,
    retry_if_exception_type,
    stop_after_delay,
    wait_fixed,
)

_logger = logging.getLogger(__name__)


class _ProcessExitedError(Exception):
    ...


class ReadinessProbe(Protocol):
    async def wait_ready(self, process: asyncio.subprocess.Process) -> bool:
        """True once the process is initialized, False if it never will be"""


class TcpReadinessProbe:
    """The process is initialized once it accepts connections on host:port"""

    def __init__(
        self,
        host: str,
        port: int,
        *,
        timeout: float = 120,
        interval: float = 2,
    ) -> None:
        self.host = host
        self.port = port
        self.timeout = timeout
        self.interval = interval

    async def _connect(self, process: asyncio.subprocess.Process) -> None:
        if process.returncode is not None:
            raise _ProcessExitedError
        _, writer = await asyncio.wait_for(
            asyncio.open_connection(self.host, self.port), timeout=self.interval
        )
        writer.close()
        await writer.wait_closed()

    async def wait_ready(self, process: asyncio.subprocess.Process) -> bool:
        try:
            async for attempt in AsyncRetrying(
                wait=wait_fixed(self.interval),
                stop=stop_after_delay(self.timeout),
                retry=retry_if_exception_type(OSError),
                before_sleep=before_sleep_log(_logger, logging.DEBUG),
            ):
                with attempt:
                    await self._connect(process)
        except RetryError:
            _logger.error(  # noqa: TRY400
                "Main process did not accept connections on %s:%s within %ss",
                self.host,
                self.port,
                self.timeout,
            )
            return False
        except _ProcessExitedError:
            _logger.error(
                "Main process exited with %s before accepting connections",
                process.returncode,
            )
            return False
        return True


class ProcessAliveProbe:
    """The process is initialized if it is still running after a grace period"""

    def __init__(self, *, grace: float = 2) -> None:
        self.grace = grace

    async def wait_ready(self, process: asyncio.subprocess.Process) -> bool:
        try:
            await asyncio.wait_for(process.wait(), timeout=self.grace)
        except TimeoutError:
            return True
        _logger.error(
            "Main process exited with %s during its first %ss",
            process.returncode,
            self.grace,
        )
        return False
