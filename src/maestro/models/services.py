"""States of the services an agent depends on, as seen through the coordination store"""

import logging
from dataclasses import dataclass, field, replace
from enum import StrEnum, auto
from typing import Final, TypeAlias

from pydantic import BaseModel, ConfigDict

from .application import ContainerSpec

_logger = logging.getLogger(__name__)

EnvironmentMap: TypeAlias = dict[str, str]


class ConfStatus(StrEnum):
    NOT_PROCESSED = auto()
    PROCESSED = auto()


class RunStatus(StrEnum):
    NOT_RUNNING = auto()
    RUNNING = auto()
    INITIALIZED = auto()
    FAILED = auto()

    @classmethod
    def parse(cls, value: str | None) -> "RunStatus":
        """Any value outside the closed set of states is a failure"""
        try:
            return cls(f"{value}".lower())
        except ValueError:
            _logger.warning("Unrecognized run status %r, treated as %s", value, cls.FAILED)
            return cls.FAILED

    @property
    def is_terminal(self) -> bool:
        return self is RunStatus.FAILED


_RUN_STATUS_RANK: Final[dict[RunStatus, int]] = {
    RunStatus.NOT_RUNNING: 0,
    RunStatus.RUNNING: 1,
    RunStatus.INITIALIZED: 2,
}


def is_valid_transition(current: RunStatus, new: RunStatus) -> bool:
    """NOT_RUNNING < RUNNING < INITIALIZED; any state may fail; FAILED is terminal"""
    if current.is_terminal:
        return False
    if new.is_terminal:
        return True
    return _RUN_STATUS_RANK[new] > _RUN_STATUS_RANK[current]


class ServiceRecord(BaseModel):
    """Payload of a service node in the coordination store"""

    container_path: str
    status: str = RunStatus.NOT_RUNNING

    model_config = ConfigDict(frozen=True)

    @property
    def run_status(self) -> RunStatus:
        return RunStatus.parse(self.status)

    def to_bytes(self) -> bytes:
        return self.model_dump_json().encode()

    @classmethod
    def from_bytes(cls, data: bytes) -> "ServiceRecord":
        return cls.model_validate_json(data)


@dataclass(frozen=True, slots=True)
class ServiceNode:
    """Snapshot of one dependency

    Never mutated: every update is a new snapshot that replaces the previous one
    """

    service_name: str
    service_path: str
    container_path: str | None = None
    container: ContainerSpec | None = field(default=None, compare=False)
    conf_status: ConfStatus = ConfStatus.NOT_PROCESSED
    run_status: RunStatus = RunStatus.NOT_RUNNING

    @property
    def is_processed(self) -> bool:
        return self.conf_status is ConfStatus.PROCESSED

    @property
    def is_initialized(self) -> bool:
        return self.run_status is RunStatus.INITIALIZED

    @property
    def has_failed(self) -> bool:
        return self.run_status is RunStatus.FAILED

    def with_container_path(self, container_path: str) -> "ServiceNode":
        return replace(self, container_path=container_path)

    def with_container(self, container: ContainerSpec) -> "ServiceNode":
        return replace(self, container=container, conf_status=ConfStatus.PROCESSED)

    def with_run_status(self, run_status: RunStatus) -> "ServiceNode":
        return replace(self, run_status=run_status)
