from dataclasses import dataclass
from enum import StrEnum, auto

from ..models.application import CommandSpec, MainCommandSpec


class ProcessState(StrEnum):
    CREATED = auto()
    INITIALIZING = auto()
    RUNNING = auto()
    STOPPED = auto()
    FAILED = auto()


@dataclass(frozen=True)
class CommandDescriptor:
    args: tuple[str, ...]
    description: str
    abort_on_failure: bool = True
    is_main: bool = False
    probe_host: str = "127.0.0.1"
    probe_port: int | None = None

    @classmethod
    def from_spec(cls, spec: CommandSpec, *, description: str) -> "CommandDescriptor":
        if isinstance(spec, MainCommandSpec):
            # the main command always aborts its group
            return cls(
                args=spec.args,
                description=description,
                abort_on_failure=True,
                is_main=True,
                probe_host=spec.host,
                probe_port=spec.port,
            )
        return cls(
            args=spec.args,
            description=description,
            abort_on_failure=spec.abort_on_failure,
        )
