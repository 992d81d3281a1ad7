import asyncio
import contextlib
import logging
import os
import sys

from ..errors import ContainerRuntimeError
from ..models.application import ContainerSpec
from ..models.services import EnvironmentMap
from .base import ContainerHandle, ContainerRuntime

_logger = logging.getLogger(__name__)

_STOP_GRACE_S = 5


class LocalProcessRuntime(ContainerRuntime):
    """Every container is an agent subprocess on this host (images are ignored)

    All agents share the host: ports and substituted files must not collide.
    """

    def __init__(self) -> None:
        self._processes: dict[ContainerHandle, asyncio.subprocess.Process] = {}
        self._environments: dict[ContainerHandle, EnvironmentMap] = {}

    async def _spawn(
        self, app_id: str, container_name: str, agent_environment: EnvironmentMap
    ) -> ContainerHandle:
        try:
            process = await asyncio.create_subprocess_exec(
                sys.executable,
                "-m",
                "maestro",
                "agent",
                app_id,
                container_name,
                env={**os.environ, **agent_environment},
            )
        except OSError as err:
            raise ContainerRuntimeError(
                action="start", container_name=container_name, reason=f"{err}"
            ) from err

        handle = ContainerHandle(
            app_id=app_id, container_name=container_name, identifier=f"{process.pid}"
        )
        self._processes[handle] = process
        self._environments[handle] = agent_environment
        _logger.info("Started agent of '%s' (pid=%s)", container_name, process.pid)
        return handle

    async def start(
        self,
        app_id: str,
        container: ContainerSpec,
        agent_environment: EnvironmentMap,
    ) -> ContainerHandle:
        return await self._spawn(app_id, container.name, agent_environment)

    async def restart(self, handle: ContainerHandle) -> ContainerHandle:
        if (agent_environment := self._environments.get(handle)) is None:
            raise ContainerRuntimeError(
                action="restart",
                container_name=handle.container_name,
                reason="not started by this runtime",
            )
        await self.stop(handle)
        return await self._spawn(
            handle.app_id, handle.container_name, agent_environment
        )

    async def stop(self, handle: ContainerHandle) -> None:
        self._environments.pop(handle, None)
        if (process := self._processes.pop(handle, None)) is None:
            return
        if process.returncode is not None:
            return

        with contextlib.suppress(ProcessLookupError):
            process.terminate()
        try:
            await asyncio.wait_for(process.wait(), timeout=_STOP_GRACE_S)
        except TimeoutError:
            _logger.warning("Agent of '%s' did not terminate: killing it", handle.container_name)
            with contextlib.suppress(ProcessLookupError):
                process.kill()
            await process.wait()

    async def is_running(self, handle: ContainerHandle) -> bool:
        process = self._processes.get(handle)
        return process is not None and process.returncode is None

    async def list_containers(self, app_id: str) -> list[ContainerHandle]:
        return [h for h in self._processes if h.app_id == app_id]

    async def close(self) -> None:
        for handle in list(self._processes):
            await self.stop(handle)
