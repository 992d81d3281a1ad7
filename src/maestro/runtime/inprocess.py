"""Every agent runs as an asyncio task of the current process

All agents get their own session on one `InMemoryStoreBackend`, the one used
by the launcher. Processes of the process groups are still real OS processes.
"""

import asyncio
import logging

from ..agent import ContainerAgent
from ..background_task import cancel_wait_task
from ..logging_utils import log_catch
from ..models.application import ContainerSpec
from ..models.services import EnvironmentMap
from ..process.executor import ProbeFactory
from ..settings.application import ApplicationSettings
from ..store import create_coordination_store
from ..store.memory import InMemoryStoreBackend
from ..store.paths import StoreLayout
from .base import ContainerHandle, ContainerRuntime

_logger = logging.getLogger(__name__)


class InProcessRuntime(ContainerRuntime):
    def __init__(
        self,
        settings: ApplicationSettings,
        backend: InMemoryStoreBackend,
        *,
        probe_factory: ProbeFactory | None = None,
    ) -> None:
        self.settings = settings
        self.backend = backend
        self._probe_factory = probe_factory
        self._tasks: dict[ContainerHandle, asyncio.Task] = {}
        self.agents: dict[str, ContainerAgent] = {}

    async def _run_agent(self, agent: ContainerAgent) -> bool:
        try:
            return await agent.run()
        finally:
            with log_catch(_logger, reraise=False):
                await agent.store.close()

    async def _start_agent(self, app_id: str, container_name: str) -> ContainerHandle:
        store = await create_coordination_store(
            self.settings,
            client_name=f"maestro-agent-{container_name}",
            memory_backend=self.backend,
        )
        agent = ContainerAgent(
            self.settings,
            store,
            StoreLayout(app_id),
            container_name,
            probe_factory=self._probe_factory,
        )
        handle = ContainerHandle(
            app_id=app_id,
            container_name=container_name,
            identifier=f"agent_{app_id}_{container_name}",
        )
        self._tasks[handle] = asyncio.create_task(
            self._run_agent(agent), name=handle.identifier
        )
        self.agents[container_name] = agent
        return handle

    async def start(
        self,
        app_id: str,
        container: ContainerSpec,
        agent_environment: EnvironmentMap,  # noqa: ARG002
    ) -> ContainerHandle:
        return await self._start_agent(app_id, container.name)

    async def restart(self, handle: ContainerHandle) -> ContainerHandle:
        await self.stop(handle)
        return await self._start_agent(handle.app_id, handle.container_name)

    async def stop(self, handle: ContainerHandle) -> None:
        if (task := self._tasks.pop(handle, None)) is None:
            return
        if not task.done():
            _logger.warning("Cancelling agent of '%s'", handle.container_name)
        await cancel_wait_task(task)

    async def is_running(self, handle: ContainerHandle) -> bool:
        task = self._tasks.get(handle)
        return task is not None and not task.done()

    async def list_containers(self, app_id: str) -> list[ContainerHandle]:
        return [h for h in self._tasks if h.app_id == app_id]

    async def agent_result(self, handle: ContainerHandle) -> bool:
        """Waits for the agent to finish and returns whether its process group started"""
        return await self._tasks[handle]

    async def close(self) -> None:
        for handle in list(self._tasks):
            await self.stop(handle)
