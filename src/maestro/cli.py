import asyncio
import logging
import signal
from enum import StrEnum
from pathlib import Path

import typer
from rich.console import Console
from rich.table import Table

from ._meta import APP_FINISHED_BANNER_MSG, APP_NAME, APP_STARTED_BANNER_MSG, __version__
from .agent import ContainerAgent
from .errors import (
    ApplicationDescriptionError,
    ApplicationValidationError,
    ContainerRuntimeError,
    DeploymentNotFoundError,
)
from .graph_validation import validate_application
from .launcher import deploy, restart_deployment, stop_deployment, wait_deployment
from .logging_utils import get_log_record_extra, setup_loggers
from .models.application import ApplicationDescription, load_application_description
from .runtime import (
    ContainerRuntime,
    DockerContainerRuntime,
    InProcessRuntime,
    LocalProcessRuntime,
)
from .settings.application import ApplicationSettings, StoreBackend
from .settings.utils_cli import create_settings_command, create_version_callback
from .shutdown import ShutdownNotifier
from .store import create_coordination_store
from .store.memory import InMemoryStoreBackend
from .store.paths import StoreLayout

_logger = logging.getLogger(__name__)
_console = Console()
_err_console = Console(stderr=True)


class RuntimeKind(StrEnum):
    DOCKER = "docker"
    LOCAL = "local"
    INPROCESS = "inprocess"


# SEE setup entrypoint 'maestro.cli:main'
main = typer.Typer(name=APP_NAME)
main.command()(
    create_settings_command(settings_cls=ApplicationSettings, logger=_logger)
)
main.callback()(create_version_callback(__version__))


#
# UTILS
#


def _setup_logging(
    settings: ApplicationSettings,
    *,
    container_name: str | None = None,
    app_id: str | None = None,
) -> None:
    setup_loggers(
        log_level=settings.log_level,
        log_format_local_dev_enabled=settings.MAESTRO_LOG_FORMAT_LOCAL_DEV_ENABLED,
        extra=get_log_record_extra(container_name=container_name, app_id=app_id),
    )


def _load_or_exit(description_path: Path) -> ApplicationDescription:
    try:
        description = load_application_description(description_path)
        validate_application(description)
    except (ApplicationDescriptionError, ApplicationValidationError) as err:
        _err_console.print(f"[red]{err}[/red]")
        raise typer.Exit(code=1) from err
    return description


def _exit_if_memory_store(settings: ApplicationSettings, runtime: RuntimeKind) -> None:
    if (
        settings.MAESTRO_STORE_BACKEND is StoreBackend.MEMORY
        and runtime is not RuntimeKind.INPROCESS
    ):
        _err_console.print(
            "[red]MAESTRO_STORE_BACKEND=memory is only reachable with --runtime inprocess[/red]"
        )
        raise typer.Exit(code=1)


def _create_runtime(
    settings: ApplicationSettings,
    kind: RuntimeKind,
    memory_backend: InMemoryStoreBackend | None,
) -> ContainerRuntime:
    match kind:
        case RuntimeKind.DOCKER:
            return DockerContainerRuntime(network=settings.MAESTRO_DOCKER_NETWORK)
        case RuntimeKind.LOCAL:
            return LocalProcessRuntime()
        case RuntimeKind.INPROCESS:
            assert memory_backend is not None  # nosec
            return InProcessRuntime(settings, memory_backend)


def _install_signal_handlers(notifier: ShutdownNotifier) -> None:
    loop = asyncio.get_running_loop()
    for signum in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(signum, notifier.request)


async def _wait_deployment_or_interrupt(
    app_id: str, runtime: ContainerRuntime, interrupted: ShutdownNotifier
) -> None:
    deployment_done = asyncio.create_task(wait_deployment(app_id, runtime))
    interrupt = asyncio.create_task(interrupted.wait())
    try:
        await asyncio.wait(
            {deployment_done, interrupt}, return_when=asyncio.FIRST_COMPLETED
        )
    finally:
        deployment_done.cancel()
        interrupt.cancel()
        await asyncio.gather(deployment_done, interrupt, return_exceptions=True)


async def _start(
    settings: ApplicationSettings,
    description: ApplicationDescription,
    runtime_kind: RuntimeKind,
    *,
    wait: bool,
) -> str:
    memory_backend = (
        InMemoryStoreBackend()
        if settings.MAESTRO_STORE_BACKEND is StoreBackend.MEMORY
        else None
    )
    store = await create_coordination_store(
        settings, client_name="maestro-launcher", memory_backend=memory_backend
    )
    runtime = _create_runtime(settings, runtime_kind, memory_backend)
    try:
        app_id = await deploy(settings, description, store, runtime)
        _console.print(app_id)
        if wait:
            interrupted = ShutdownNotifier()
            _install_signal_handlers(interrupted)
            await _wait_deployment_or_interrupt(app_id, runtime, interrupted)
            await stop_deployment(settings, app_id, store, runtime)
        return app_id
    finally:
        await runtime.close()
        await store.close()


async def _stop(
    settings: ApplicationSettings, app_id: str, runtime_kind: RuntimeKind
) -> None:
    store = await create_coordination_store(settings, client_name="maestro-launcher")
    runtime = _create_runtime(settings, runtime_kind, None)
    try:
        await stop_deployment(settings, app_id, store, runtime)
    finally:
        await runtime.close()
        await store.close()


async def _restart(
    settings: ApplicationSettings, app_id: str, runtime_kind: RuntimeKind
) -> list[str]:
    store = await create_coordination_store(settings, client_name="maestro-launcher")
    runtime = _create_runtime(settings, runtime_kind, None)
    try:
        handles = await restart_deployment(settings, app_id, store, runtime)
        return [handle.container_name for handle in handles]
    finally:
        await runtime.close()
        await store.close()


async def _run_agent(
    settings: ApplicationSettings, app_id: str, container_name: str
) -> bool:
    store = await create_coordination_store(
        settings, client_name=f"maestro-agent-{container_name}"
    )
    agent = ContainerAgent(settings, store, StoreLayout(app_id), container_name)
    _install_signal_handlers(agent.shutdown)
    try:
        return await agent.run()
    finally:
        await store.close()


#
# COMMANDS
#


@main.command()
def validate(
    description_path: Path = typer.Argument(
        ..., exists=True, dir_okay=False, help="application description (YAML or JSON)"
    ),
):
    """Checks an application description without starting anything"""
    description = _load_or_exit(description_path)

    table = Table(title=f"Application '{description.name}'")
    table.add_column("container")
    table.add_column("kind")
    table.add_column("image")
    table.add_column("requires")
    for container in description.containers:
        table.add_row(
            container.name,
            f"{container.kind}",
            container.image,
            ", ".join(container.requires) or "-",
        )
    _console.print(table)


@main.command()
def start(
    description_path: Path = typer.Argument(
        ..., exists=True, dir_okay=False, help="application description (YAML or JSON)"
    ),
    runtime: RuntimeKind = typer.Option(
        RuntimeKind.DOCKER, help="where the containers of the application run"
    ),
    wait: bool = typer.Option(
        False,
        help="keeps running until interrupted, then stops the application. "
        "Always on unless the runtime is docker",
    ),
):
    """Starts an application and prints its deployment id"""
    settings = ApplicationSettings.create_from_envs()
    _setup_logging(settings)
    _exit_if_memory_store(settings, runtime)
    description = _load_or_exit(description_path)

    try:
        asyncio.run(
            _start(
                settings,
                description,
                runtime,
                wait=wait or runtime is not RuntimeKind.DOCKER,
            )
        )
    except ContainerRuntimeError as err:
        _err_console.print(f"[red]{err}[/red]")
        raise typer.Exit(code=1) from err


@main.command()
def stop(
    app_id: str = typer.Argument(..., help="deployment id printed by 'start'"),
    runtime: RuntimeKind = typer.Option(
        RuntimeKind.DOCKER, help="where the containers of the application run"
    ),
):
    """Stops a running application"""
    settings = ApplicationSettings.create_from_envs()
    _setup_logging(settings, app_id=app_id)
    if settings.MAESTRO_STORE_BACKEND is StoreBackend.MEMORY:
        _err_console.print(
            "[red]A deployment in a memory store can only be stopped by its launcher[/red]"
        )
        raise typer.Exit(code=1)

    try:
        asyncio.run(_stop(settings, app_id, runtime))
    except DeploymentNotFoundError as err:
        _err_console.print(f"[red]{err}[/red]")
        raise typer.Exit(code=1) from err


@main.command()
def restart(
    app_id: str = typer.Argument(..., help="deployment id printed by 'start'"),
    runtime: RuntimeKind = typer.Option(
        RuntimeKind.DOCKER, help="where the containers of the application run"
    ),
):
    """Stops every container of a running application, then starts them again"""
    settings = ApplicationSettings.create_from_envs()
    _setup_logging(settings, app_id=app_id)
    if settings.MAESTRO_STORE_BACKEND is StoreBackend.MEMORY:
        _err_console.print(
            "[red]A deployment in a memory store can only be restarted by its launcher[/red]"
        )
        raise typer.Exit(code=1)

    try:
        restarted = asyncio.run(_restart(settings, app_id, runtime))
    except (DeploymentNotFoundError, ContainerRuntimeError) as err:
        _err_console.print(f"[red]{err}[/red]")
        raise typer.Exit(code=1) from err

    if not restarted:
        _err_console.print(
            f"[red]No container of '{app_id}' is known to the '{runtime}' runtime[/red]"
        )
        raise typer.Exit(code=1)
    for container_name in restarted:
        _console.print(container_name)


@main.command()
def agent(
    app_id: str = typer.Argument(..., help="deployment id"),
    container_name: str = typer.Argument(..., help="container run by this agent"),
):
    """Runs the agent of one container (entrypoint of the containers)"""
    settings = ApplicationSettings.create_from_envs()
    _setup_logging(settings, container_name=container_name, app_id=app_id)
    if settings.MAESTRO_STORE_BACKEND is StoreBackend.MEMORY:
        _err_console.print("[red]An agent cannot reach a memory store of another process[/red]")
        raise typer.Exit(code=1)

    print(APP_STARTED_BANNER_MSG, flush=True)  # noqa: T201
    success = asyncio.run(_run_agent(settings, app_id, container_name))
    print(APP_FINISHED_BANNER_MSG, flush=True)  # noqa: T201
    if not success:
        raise typer.Exit(code=1)
