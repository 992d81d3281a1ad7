"""The agent: runs inside every container of a deployment

    1. watches the shutdown node
    2. reads its container spec
    3. publishes its descriptor and its service record (not_running)
    4. waits until the descriptors of all its dependencies were processed
    5. resolves its environment and substitutes its files
    6. waits until all its dependencies are initialized
    7. runs its process group, publishing running/initialized/failed
    8. upon shutdown: runs the stop commands, restores the files and removes its nodes
"""

import asyncio
import contextlib
import logging
from collections.abc import Awaitable

from .background_task import cancel_wait_task
from .environment import EnvironmentResolver
from .errors import DependencyFailedError
from .logging_utils import log_catch, log_context
from .models.application import ContainerSpec
from .models.services import EnvironmentMap, RunStatus, ServiceRecord
from .process.executor import ProbeFactory, ProcessGroupExecutor
from .readiness import ReadinessTracker
from .settings.application import ApplicationSettings
from .shutdown import ShutdownNotifier
from .store.base import CoordinationStore, WatchEvent, WatchEventKind
from .store.errors import NodeDoesNotExistError, NodeExistsError
from .store.paths import StoreLayout
from .substitution import restore_files, substitute_files

_logger = logging.getLogger(__name__)


class ContainerAgent:
    def __init__(
        self,
        settings: ApplicationSettings,
        store: CoordinationStore,
        layout: StoreLayout,
        container_name: str,
        *,
        probe_factory: ProbeFactory | None = None,
    ) -> None:
        self.settings = settings
        self.store = store
        self.layout = layout
        self.container_name = container_name
        self.shutdown = ShutdownNotifier()
        self.tracker = ReadinessTracker(store, layout, container_name)

        self.container: ContainerSpec | None = None
        self.env: EnvironmentMap = {}
        self.executor: ProcessGroupExecutor | None = None
        self.status = RunStatus.NOT_RUNNING

        self._probe_factory = probe_factory
        self._main_monitor: asyncio.Task | None = None

    @property
    def service_path(self) -> str:
        return self.layout.service(self.container_name)

    @property
    def container_path(self) -> str:
        assert self.container is not None  # nosec
        return self.layout.container(self.container.kind, self.container.name)

    #
    # store
    #

    async def _on_shutdown_event(self, event: WatchEvent) -> None:
        if event.kind is WatchEventKind.CREATED:
            self.shutdown.request()

    async def _watch_shutdown(self) -> None:
        await self.store.watch(self.layout.shutdown, self._on_shutdown_event)
        if await self.store.exists(self.layout.shutdown):
            self.shutdown.request()

    async def _read_container_spec(self) -> ContainerSpec:
        data = await self.store.read(self.layout.container_conf(self.container_name))
        return ContainerSpec.model_validate_json(data)

    async def _publish(self) -> None:
        assert self.container is not None  # nosec
        await self.store.create(
            self.container_path,
            self.container.model_dump_json().encode(),
            ephemeral=True,
        )
        record = ServiceRecord(container_path=self.container_path, status=self.status)
        try:
            await self.store.create(self.service_path, record.to_bytes())
        except NodeExistsError:
            # left behind by a previous run of this container
            await self.store.write(self.service_path, record.to_bytes())

    async def publish_status(self, status: RunStatus) -> None:
        self.status = status
        record = ServiceRecord(container_path=self.container_path, status=status)
        await self.store.write(self.service_path, record.to_bytes())
        _logger.info("Published status of '%s': %s", self.container_name, status)

    async def _unpublish(self) -> None:
        for path in (self.service_path, self.container_path):
            with contextlib.suppress(NodeDoesNotExistError):
                await self.store.delete(path)

    #
    # lifecycle
    #

    async def _unless_shutdown(self, awaitable: Awaitable[None]) -> bool:
        """Returns False if shutdown was requested, whether `awaitable` completed or not"""
        task = asyncio.ensure_future(awaitable)
        shutdown = asyncio.ensure_future(self.shutdown.wait())
        try:
            await asyncio.wait({task, shutdown}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            shutdown.cancel()
        if self.shutdown.is_requested:
            await cancel_wait_task(task)
            return False
        task.result()
        return True

    def _create_executor(self) -> ProcessGroupExecutor:
        assert self.container is not None  # nosec
        return ProcessGroupExecutor(
            self.container,
            self.env,
            command_timeout=self.settings.MAESTRO_COMMAND_TIMEOUT_S,
            main_init_timeout=self.settings.MAESTRO_MAIN_INIT_TIMEOUT_S,
            probe_interval=self.settings.MAESTRO_MAIN_PROBE_INTERVAL_S,
            probe_factory=self._probe_factory,
            on_main_running=lambda: self.publish_status(RunStatus.RUNNING),
            on_main_initialized=lambda: self.publish_status(RunStatus.INITIALIZED),
            on_main_failed=lambda: self.publish_status(RunStatus.FAILED),
        )

    async def _monitor_main(self) -> None:
        assert self.executor is not None  # nosec
        returncode = await self.executor.wait_main()
        if not self.shutdown.is_requested:
            _logger.error(
                "Main process of '%s' exited unexpectedly with %s",
                self.container_name,
                returncode,
            )
            await self.publish_status(RunStatus.FAILED)

    async def _start(self) -> bool:
        assert self.container is not None  # nosec

        with log_context(
            _logger, logging.INFO, "waiting for the required services to be processed"
        ):
            await self.tracker.register(self.container.requires)
            if not await self._unless_shutdown(self.tracker.wait_until_processed()):
                return False

        self.env = EnvironmentResolver(self.container).resolve(
            self.tracker.dependencies()
        )
        await substitute_files(
            self.container.substituted_files,
            self.env,
            restore_dir=self.settings.MAESTRO_RESTORE_DIR,
        )

        with log_context(
            _logger, logging.INFO, "waiting for the required services to initialize"
        ):
            if not await self._unless_shutdown(self.tracker.wait_until_initialized()):
                return False

        self.executor = self._create_executor()
        with log_context(
            _logger,
            logging.INFO,
            f"process group of '{self.container_name}'",
            log_duration=True,
        ):
            success = await self.executor.run_group()

        if not success:
            if self.status is not RunStatus.FAILED:
                await self.publish_status(RunStatus.FAILED)
            return False

        self._main_monitor = asyncio.create_task(
            self._monitor_main(), name=f"monitor_main_{self.container_name}"
        )
        return True

    async def _stop(self) -> None:
        assert self.container is not None  # nosec

        if self._main_monitor:
            await cancel_wait_task(self._main_monitor)
            self._main_monitor = None

        if self.executor is not None:
            with log_context(
                _logger, logging.INFO, f"stop sequence of '{self.container_name}'"
            ):
                await self.executor.run_stop_group()

        await restore_files(
            self.container.substituted_files,
            restore_dir=self.settings.MAESTRO_RESTORE_DIR,
        )

    async def run(self) -> bool:
        """Runs the agent until shutdown is requested

        Returns True if the process group started successfully
        """
        success = False
        await self._watch_shutdown()
        self.container = await self._read_container_spec()
        await self._publish()
        try:
            try:
                success = await self._start()
            except DependencyFailedError as err:
                _logger.error("%s: NOT starting '%s'", err, self.container_name)  # noqa: TRY400
                await self.publish_status(RunStatus.FAILED)

            await self.shutdown.wait()

        finally:
            # the main process never outlives its agent
            with log_catch(_logger, reraise=False):
                await self._stop()
            with log_catch(_logger, reraise=False):
                await self.tracker.close()
                await self._unpublish()

        return success
