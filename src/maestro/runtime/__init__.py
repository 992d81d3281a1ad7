from .base import ContainerHandle, ContainerRuntime
from .docker import DockerContainerRuntime
from .inprocess import InProcessRuntime
from .local import LocalProcessRuntime

__all__: tuple[str, ...] = (
    "ContainerHandle",
    "ContainerRuntime",
    "DockerContainerRuntime",
    "InProcessRuntime",
    "LocalProcessRuntime",
)
