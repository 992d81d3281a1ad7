from abc import ABC, abstractmethod
from dataclasses import dataclass

from ..models.application import ContainerSpec
from ..models.services import EnvironmentMap


@dataclass(frozen=True)
class ContainerHandle:
    app_id: str
    container_name: str
    identifier: str  # docker container id, pid or task name


class ContainerRuntime(ABC):
    """Starts the containers of a deployment, each running its agent"""

    @abstractmethod
    async def start(
        self,
        app_id: str,
        container: ContainerSpec,
        agent_environment: EnvironmentMap,
    ) -> ContainerHandle:
        """
        Raises:
            ContainerRuntimeError:
        """

    @abstractmethod
    async def stop(self, handle: ContainerHandle) -> None:
        """Forcibly stops and removes the container (no-op if already gone)"""

    @abstractmethod
    async def restart(self, handle: ContainerHandle) -> ContainerHandle:
        """Runs the agent of an existing container again, with the same arguments

        Raises:
            ContainerRuntimeError:
        """

    @abstractmethod
    async def is_running(self, handle: ContainerHandle) -> bool:
        ...

    @abstractmethod
    async def list_containers(self, app_id: str) -> list[ContainerHandle]:
        """Containers started by this runtime for `app_id`"""

    async def close(self) -> None:
        ...
