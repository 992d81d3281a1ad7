import asyncio
import contextlib
import logging
import os
from collections.abc import Awaitable, Callable

from ..models.services import EnvironmentMap
from .models import CommandDescriptor, ProcessState
from .probes import ReadinessProbe

_logger = logging.getLogger(__name__)


class ProcessHandle:
    """One OS process of a process group

    Its stdout/stderr are those of the agent: nothing is captured.
    """

    def __init__(self, descriptor: CommandDescriptor, env: EnvironmentMap) -> None:
        self.descriptor = descriptor
        self.env = env
        self.state = ProcessState.CREATED
        self.initialized = asyncio.Event()
        self._process: asyncio.subprocess.Process | None = None

    def __repr__(self) -> str:
        return f"<ProcessHandle {self.descriptor.description} state={self.state}>"

    @property
    def pid(self) -> int | None:
        return self._process.pid if self._process else None

    @property
    def returncode(self) -> int | None:
        return self._process.returncode if self._process else None

    @property
    def is_running(self) -> bool:
        return self._process is not None and self._process.returncode is None

    async def _spawn(self) -> asyncio.subprocess.Process | None:
        self.state = ProcessState.INITIALIZING
        try:
            self._process = await asyncio.create_subprocess_exec(
                *self.descriptor.args,
                env={**os.environ, **self.env},
            )
        except OSError as err:
            _logger.error(  # noqa: TRY400
                "FAILED to start %s %s: %s",
                self.descriptor.description,
                self.descriptor.args,
                err,
            )
            self.state = ProcessState.FAILED
            return None

        _logger.info(
            "Started %s (pid=%s): %s",
            self.descriptor.description,
            self._process.pid,
            " ".join(self.descriptor.args),
        )
        return self._process

    async def run_to_completion(self, timeout: float) -> bool:
        """Success means exit code 0 within `timeout`"""
        if (process := await self._spawn()) is None:
            return False

        self.state = ProcessState.RUNNING
        try:
            returncode = await asyncio.wait_for(process.wait(), timeout=timeout)
        except TimeoutError:
            _logger.error(  # noqa: TRY400
                "%s timed out after %ss", self.descriptor.description, timeout
            )
            await self.stop()
            self.state = ProcessState.FAILED
            return False

        if returncode != 0:
            _logger.error(
                "%s exited with code %s", self.descriptor.description, returncode
            )
            self.state = ProcessState.FAILED
            return False

        self.state = ProcessState.STOPPED
        return True

    async def start_main(
        self,
        probe: ReadinessProbe,
        *,
        on_started: Callable[[], Awaitable[None]] | None = None,
    ) -> bool:
        """Returns once the process is initialized (True) or will never be (False)"""
        if (process := await self._spawn()) is None:
            return False
        if on_started:
            await on_started()

        if not await probe.wait_ready(process):
            await self.stop()
            self.state = ProcessState.FAILED
            return False

        self.state = ProcessState.RUNNING
        self.initialized.set()
        _logger.info("%s initialized", self.descriptor.description)
        return True

    async def wait(self) -> int | None:
        if self._process is None:
            return None
        return await self._process.wait()

    async def stop(self) -> None:
        """Forcibly terminates the process"""
        if not self.is_running:
            return
        assert self._process is not None  # nosec

        _logger.warning("STOPPING %s", self.descriptor.description)
        with contextlib.suppress(ProcessLookupError):
            self._process.kill()
        await self._process.wait()
        self.state = ProcessState.STOPPED
