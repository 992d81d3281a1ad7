import contextlib
import logging
from collections.abc import AsyncIterator
from typing import Any

import aiodocker
from aiodocker.exceptions import DockerError

from ..errors import ContainerRuntimeError
from ..models.application import ContainerSpec
from ..models.services import EnvironmentMap
from .base import ContainerHandle, ContainerRuntime

_logger = logging.getLogger(__name__)

_LABEL_APP_ID = "io.maestro.app-id"
_LABEL_CONTAINER_NAME = "io.maestro.container-name"
_AGENT_ENTRYPOINT = ("maestro", "agent")
_RESTART_TIMEOUT_S = 10


@contextlib.asynccontextmanager
async def docker_client() -> AsyncIterator[aiodocker.Docker]:
    client = aiodocker.Docker()
    try:
        yield client
    except DockerError:
        _logger.exception(msg="Unexpected error with docker client")
        raise
    finally:
        await client.close()


def _container_config(
    app_id: str,
    container: ContainerSpec,
    agent_environment: EnvironmentMap,
    network: str | None,
) -> dict[str, Any]:
    host_config: dict[str, Any] = {"Init": True}
    if network:
        host_config["NetworkMode"] = network
    return {
        "Image": container.image,
        "Cmd": [*_AGENT_ENTRYPOINT, app_id, container.name],
        "Env": [f"{key}={value}" for key, value in agent_environment.items()],
        "Hostname": container.name,
        "Labels": {_LABEL_APP_ID: app_id, _LABEL_CONTAINER_NAME: container.name},
        "AttachStdin": False,
        "AttachStdout": False,
        "AttachStderr": False,
        "Tty": False,
        "OpenStdin": False,
        "HostConfig": host_config,
    }


class DockerContainerRuntime(ContainerRuntime):
    """Every container runs its image with the agent as command

    NOTE: the image is expected to ship the `maestro` entrypoint
    """

    def __init__(self, *, network: str | None = None) -> None:
        self.network = network

    async def start(
        self,
        app_id: str,
        container: ContainerSpec,
        agent_environment: EnvironmentMap,
    ) -> ContainerHandle:
        config = _container_config(app_id, container, agent_environment, self.network)
        try:
            async with docker_client() as client:
                docker_container = await client.containers.run(
                    config=config, name=f"{app_id}_{container.name}"
                )
        except DockerError as err:
            raise ContainerRuntimeError(
                action="start", container_name=container.name, reason=f"{err}"
            ) from err

        _logger.info(
            "Started docker container %s for '%s'", docker_container.id, container.name
        )
        return ContainerHandle(
            app_id=app_id, container_name=container.name, identifier=docker_container.id
        )

    async def stop(self, handle: ContainerHandle) -> None:
        async with docker_client() as client:
            try:
                docker_container = await client.containers.get(handle.identifier)
                await docker_container.delete(v=True, force=True)
            except DockerError as err:
                if err.status == 404:  # noqa: PLR2004
                    return
                raise ContainerRuntimeError(
                    action="stop", container_name=handle.container_name, reason=f"{err}"
                ) from err
        _logger.info("Removed docker container of '%s'", handle.container_name)

    async def restart(self, handle: ContainerHandle) -> ContainerHandle:
        async with docker_client() as client:
            try:
                docker_container = await client.containers.get(handle.identifier)
                started_at = (await docker_container.show())["State"]["StartedAt"]
                await docker_container.restart(timeout=_RESTART_TIMEOUT_S)
                restarted_at = (await docker_container.show())["State"]["StartedAt"]
            except DockerError as err:
                raise ContainerRuntimeError(
                    action="restart",
                    container_name=handle.container_name,
                    reason=f"{err}",
                ) from err

        if restarted_at == started_at:
            raise ContainerRuntimeError(
                action="restart",
                container_name=handle.container_name,
                reason=f"container was not started again (started at {started_at})",
            )
        _logger.info(
            "Restarted docker container %s of '%s'",
            handle.identifier,
            handle.container_name,
        )
        return handle

    async def is_running(self, handle: ContainerHandle) -> bool:
        async with docker_client() as client:
            try:
                docker_container = await client.containers.get(handle.identifier)
                inspect = await docker_container.show()
            except DockerError as err:
                if err.status == 404:  # noqa: PLR2004
                    return False
                raise
        return bool(inspect["State"]["Running"])

    async def list_containers(self, app_id: str) -> list[ContainerHandle]:
        async with docker_client() as client:
            docker_containers = await client.containers.list(
                all=True, filters={"label": [f"{_LABEL_APP_ID}={app_id}"]}
            )
        return [
            ContainerHandle(
                app_id=app_id,
                container_name=c["Labels"][_LABEL_CONTAINER_NAME],
                identifier=c.id,
            )
            for c in docker_containers
        ]
