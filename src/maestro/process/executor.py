"""Runs the process group of a container

    pre-main (in order) -> main (until initialized) -> post-main (in order)

A failing side command stops its phase only if its `abort_on_failure` is set,
otherwise the failure is logged and the phase goes on. The main command always
aborts. A post-main abort forcibly stops the main process.
"""

import logging
from collections.abc import Awaitable, Callable, Sequence

from ..models.application import ContainerSpec
from ..models.services import EnvironmentMap
from .handle import ProcessHandle
from .models import CommandDescriptor
from .probes import ProcessAliveProbe, ReadinessProbe, TcpReadinessProbe

_logger = logging.getLogger(__name__)


MainStateCallback = Callable[[], Awaitable[None]]
ProbeFactory = Callable[[CommandDescriptor], ReadinessProbe]


def _describe(
    container: ContainerSpec, phase: str, specs: Sequence
) -> list[CommandDescriptor]:
    return [
        CommandDescriptor.from_spec(spec, description=f"{container.name}:{phase}[{i}]")
        for i, spec in enumerate(specs)
    ]


class ProcessGroupExecutor:
    def __init__(
        self,
        container: ContainerSpec,
        env: EnvironmentMap,
        *,
        command_timeout: float = 120,
        main_init_timeout: float = 120,
        probe_interval: float = 2,
        probe_factory: ProbeFactory | None = None,
        on_main_running: MainStateCallback | None = None,
        on_main_initialized: MainStateCallback | None = None,
        on_main_failed: MainStateCallback | None = None,
    ) -> None:
        self.container = container
        self.env = env
        self.command_timeout = command_timeout
        self.main_init_timeout = main_init_timeout
        self.probe_interval = probe_interval
        self._probe_factory = probe_factory or self._default_probe
        self._on_main_running = on_main_running
        self._on_main_initialized = on_main_initialized
        self._on_main_failed = on_main_failed

        group = container.process_group
        self.pre_main = [
            ProcessHandle(d, env) for d in _describe(container, "pre_main", group.pre_main)
        ]
        self.main = ProcessHandle(
            CommandDescriptor.from_spec(group.main, description=f"{container.name}:main"),
            env,
        )
        self.post_main = [
            ProcessHandle(d, env)
            for d in _describe(container, "post_main", group.post_main)
        ]
        self.stop_commands = [
            ProcessHandle(d, env) for d in _describe(container, "stop", group.stop)
        ]

    def _default_probe(self, descriptor: CommandDescriptor) -> ReadinessProbe:
        if descriptor.probe_port is None:
            return ProcessAliveProbe(grace=self.probe_interval)
        return TcpReadinessProbe(
            descriptor.probe_host,
            descriptor.probe_port,
            timeout=self.main_init_timeout,
            interval=self.probe_interval,
        )

    async def _run_phase(self, phase: str, handles: Sequence[ProcessHandle]) -> bool:
        for handle in handles:
            if await handle.run_to_completion(self.command_timeout):
                continue
            if handle.descriptor.abort_on_failure:
                _logger.error(
                    "%s FAILED with abort_on_failure=True: ABORTING %s",
                    handle.descriptor.description,
                    phase,
                )
                return False
            _logger.warning(
                "%s FAILED with abort_on_failure=False: continuing %s",
                handle.descriptor.description,
                phase,
            )
        return True

    async def _run_main(self) -> bool:
        initialized = await self.main.start_main(
            self._probe_factory(self.main.descriptor),
            on_started=self._on_main_running,
        )
        if initialized:
            if self._on_main_initialized:
                await self._on_main_initialized()
        elif self._on_main_failed:
            await self._on_main_failed()
        return initialized

    async def run_group(self) -> bool:
        """Returns True if every phase succeeded"""
        if not await self._run_phase("pre-main", self.pre_main):
            _logger.error(
                "Pre-main process execution of '%s' FAILED: main process NOT started",
                self.container.name,
            )
            return False

        if not await self._run_main():
            _logger.error(
                "Main process of '%s' FAILED to initialize: post-main NOT executed",
                self.container.name,
            )
            return False

        if not await self._run_phase("post-main", self.post_main):
            _logger.error(
                "Post-main process execution of '%s' FAILED: stopping main process",
                self.container.name,
            )
            await self.main.stop()
            return False

        return True

    async def run_stop_group(self) -> bool:
        """Runs every stop command, whatever happens, then kills the main process"""
        success = True
        for handle in self.stop_commands:
            if not await handle.run_to_completion(self.command_timeout):
                _logger.warning("%s FAILED", handle.descriptor.description)
                success = False
        await self.main.stop()
        return success

    async def wait_main(self) -> int | None:
        """Waits for the main process to exit and returns its exit code"""
        return await self.main.wait()
