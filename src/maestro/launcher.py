"""Deploys an application: one agent per container, all coordinated through the store

The launcher only writes the layout of the deployment and the spec of every
container. The start order is decided by the agents themselves.
"""

import asyncio
import contextlib
import logging

from tenacity import (
    AsyncRetrying,
    TryAgain,
    before_sleep_log,
    retry_if_exception_type,
    wait_fixed,
)

from .errors import DeploymentNotFoundError
from .graph_validation import validate_application
from .logging_utils import log_context
from .models.application import ApplicationDescription
from .models.services import EnvironmentMap
from .runtime.base import ContainerHandle, ContainerRuntime
from .settings.application import ApplicationSettings
from .settings.utils_cli import settings_as_envs
from .store.base import CoordinationStore, WatchEvent, WatchEventKind, split_path
from .store.errors import NodeDoesNotExistError, NodeExistsError
from .store.paths import StoreLayout, new_app_id

_logger = logging.getLogger(__name__)

_DEPLOYMENT_POLL_INTERVAL_S = 2


def build_agent_environment(settings: ApplicationSettings) -> EnvironmentMap:
    """Environment passing the launcher's settings on to the agents

    NOTE: the deployment id and the container name are passed as arguments of the agent
    """
    return settings_as_envs(settings, show_secrets=True)


async def _write_layout(
    store: CoordinationStore, layout: StoreLayout, description: ApplicationDescription
) -> None:
    for path in layout.skeleton():
        await store.ensure_path(path)
    await store.create(layout.application, description.model_dump_json().encode())
    for container in description.containers:
        await store.create(
            layout.container_conf(container.name), container.model_dump_json().encode()
        )


async def deploy(
    settings: ApplicationSettings,
    description: ApplicationDescription,
    store: CoordinationStore,
    runtime: ContainerRuntime,
) -> str:
    """Starts all containers of `description` and returns the id of the deployment

    Raises:
        ApplicationValidationError: nothing was started
        ContainerRuntimeError:
    """
    validate_application(description)

    app_id = new_app_id(description.name)
    layout = StoreLayout(app_id)
    with log_context(_logger, logging.INFO, f"layout of deployment '{app_id}'"):
        await _write_layout(store, layout, description)

    with log_context(
        _logger,
        logging.INFO,
        f"{len(description.containers)} containers of '{app_id}'",
        log_duration=True,
    ):
        # agents wait for their dependencies: no need to order the start
        agent_environment = build_agent_environment(settings)
        await asyncio.gather(
            *(
                runtime.start(app_id, container, agent_environment)
                for container in description.containers
            )
        )
    return app_id


async def _wait_services_removed(
    store: CoordinationStore, layout: StoreLayout, *, timeout: float
) -> set[str]:
    """Waits until every agent removed its service record, returns the late ones"""
    remaining = set(await store.children(layout.services))
    all_removed = asyncio.Event()

    async def _on_service_event(event: WatchEvent) -> None:
        if event.kind is WatchEventKind.DELETED:
            remaining.discard(split_path(event.path)[1])
            if not remaining:
                all_removed.set()

    watches = [
        await store.watch(layout.service(name), _on_service_event)
        for name in sorted(remaining)
    ]
    try:
        # removed before the watch was set
        for name in sorted(remaining):
            if not await store.exists(layout.service(name)):
                remaining.discard(name)
        if remaining:
            await asyncio.wait_for(all_removed.wait(), timeout=timeout)
    except TimeoutError:
        _logger.warning(
            "Services %s did not stop within %ss", sorted(remaining), timeout
        )
    finally:
        for watch in watches:
            await watch.cancel()
    return remaining


async def stop_deployment(
    settings: ApplicationSettings,
    app_id: str,
    store: CoordinationStore,
    runtime: ContainerRuntime,
) -> None:
    """Lets every agent run its stop sequence, then removes the whole deployment

    Raises:
        DeploymentNotFoundError:
    """
    layout = StoreLayout(app_id)
    if not await store.exists(layout.root):
        raise DeploymentNotFoundError(app_id=app_id)

    with log_context(_logger, logging.INFO, f"stop of '{app_id}'", log_duration=True):
        with contextlib.suppress(NodeExistsError):
            await store.create(layout.shutdown, b"")

        await _wait_services_removed(
            store, layout, timeout=settings.MAESTRO_SHUTDOWN_TIMEOUT_S
        )

        for handle in await runtime.list_containers(app_id):
            if await runtime.is_running(handle):
                _logger.warning("Forcibly stopping '%s'", handle.container_name)
            await runtime.stop(handle)

        with contextlib.suppress(NodeDoesNotExistError):
            await store.delete(layout.root, recursive=True)


async def restart_deployment(
    settings: ApplicationSettings,
    app_id: str,
    store: CoordinationStore,
    runtime: ContainerRuntime,
) -> list[ContainerHandle]:
    """Lets every agent run its stop sequence, then runs the agents of the same
    containers again. Their container specs are read anew from the deployment.

    Returns the handles of the restarted containers (empty if this runtime knows
    none of them)

    Raises:
        DeploymentNotFoundError:
        ContainerRuntimeError:
    """
    layout = StoreLayout(app_id)
    if not await store.exists(layout.root):
        raise DeploymentNotFoundError(app_id=app_id)

    handles = await runtime.list_containers(app_id)
    if not handles:
        _logger.warning("No container of '%s' is known to this runtime", app_id)
        return []

    with log_context(
        _logger, logging.INFO, f"restart of '{app_id}'", log_duration=True
    ):
        with contextlib.suppress(NodeExistsError):
            await store.create(layout.shutdown, b"")
        await _wait_services_removed(
            store, layout, timeout=settings.MAESTRO_SHUTDOWN_TIMEOUT_S
        )
        with contextlib.suppress(NodeDoesNotExistError):
            await store.delete(layout.shutdown)

        # agents wait for their dependencies: no need to order the restart
        return list(
            await asyncio.gather(*(runtime.restart(handle) for handle in handles))
        )


async def wait_deployment(
    app_id: str,
    runtime: ContainerRuntime,
    *,
    poll_interval: float = _DEPLOYMENT_POLL_INTERVAL_S,
) -> None:
    """Blocks until none of the containers of `app_id` is running"""

    async def _running() -> list[ContainerHandle]:
        return [
            handle
            for handle in await runtime.list_containers(app_id)
            if await runtime.is_running(handle)
        ]

    async for attempt in AsyncRetrying(
        wait=wait_fixed(poll_interval),
        retry=retry_if_exception_type(TryAgain),
        before_sleep=before_sleep_log(_logger, logging.DEBUG),
        reraise=True,
    ):
        with attempt:
            if running := await _running():
                _logger.debug(
                    "Containers of '%s' still running: %s",
                    app_id,
                    [h.container_name for h in running],
                )
                raise TryAgain
