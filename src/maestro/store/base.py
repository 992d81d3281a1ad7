"""Hierarchical key-value store with watches, shared by the launcher and all agents

Nodes are addressed by absolute, `/`-separated paths. A node can only be
created below an existing parent. Ephemeral nodes live as long as the session
(i.e. the store client) that created them.
"""

import asyncio
import logging
from abc import ABC, abstractmethod
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from enum import StrEnum, auto
from typing import Final, TypeAlias

from ..logging_utils import log_catch
from .errors import NodeExistsError

_logger = logging.getLogger(__name__)

ROOT_PATH: Final[str] = "/"


class WatchEventKind(StrEnum):
    CREATED = auto()
    CHANGED = auto()
    DELETED = auto()


@dataclass(frozen=True)
class WatchEvent:
    path: str
    kind: WatchEventKind


WatchCallback: TypeAlias = Callable[[WatchEvent], Awaitable[None]]


def join_path(*parts: str) -> str:
    return "/" + "/".join(p.strip("/") for p in parts if p.strip("/"))


def split_path(path: str) -> tuple[str, str]:
    """Returns (parent, name)"""
    parent, _, name = path.rstrip("/").rpartition("/")
    return parent or ROOT_PATH, name


class WatchHandle:
    """Delivers the events of one watched path to its callback, in order

    Notifications are at-least-once: a callback must read the current state of
    the node rather than trust that it saw every single change.
    """

    def __init__(
        self,
        path: str,
        callback: WatchCallback,
        *,
        on_cancel: Callable[["WatchHandle"], Awaitable[None]] | None = None,
    ) -> None:
        self.path = path
        self._callback = callback
        self._on_cancel = on_cancel
        self._queue: asyncio.Queue[WatchEvent] = asyncio.Queue()
        self._task: asyncio.Task | None = asyncio.create_task(
            self._dispatch(), name=f"watch_{path}"
        )

    def notify(self, event: WatchEvent) -> None:
        if self._task is not None:
            self._queue.put_nowait(event)

    async def _dispatch(self) -> None:
        while True:
            event = await self._queue.get()
            with log_catch(_logger, reraise=False):
                await self._callback(event)

    @property
    def is_active(self) -> bool:
        return self._task is not None

    async def cancel(self) -> None:
        if self._task is None:
            return
        task, self._task = self._task, None
        task.cancel()
        await asyncio.gather(task, return_exceptions=True)
        if self._on_cancel is not None:
            # the store stops delivering to this handle
            await self._on_cancel(self)


class CoordinationStore(ABC):
    """
    Raises (all operations):
        StoreConnectionLossError: the outcome of the operation is unknown
        AccessDeniedError:
    """

    @abstractmethod
    async def create(self, path: str, data: bytes, *, ephemeral: bool = False) -> None:
        """
        Raises:
            NodeExistsError:
            NodeDoesNotExistError: the parent node does not exist
        """

    @abstractmethod
    async def read(self, path: str) -> bytes:
        """
        Raises:
            NodeDoesNotExistError:
        """

    @abstractmethod
    async def write(self, path: str, data: bytes) -> None:
        """
        Raises:
            NodeDoesNotExistError:
        """

    @abstractmethod
    async def delete(self, path: str, *, recursive: bool = False) -> None:
        """
        Raises:
            NodeDoesNotExistError:
            NodeNotEmptyError: children exist and recursive is False
        """

    @abstractmethod
    async def exists(self, path: str) -> bool:
        ...

    @abstractmethod
    async def children(self, path: str) -> list[str]:
        """Names (not paths) of the children, sorted

        Raises:
            NodeDoesNotExistError:
        """

    @abstractmethod
    async def watch(self, path: str, callback: WatchCallback) -> WatchHandle:
        """Calls `callback` every time `path` is created, changed or deleted

        The node does not need to exist. The watch lasts until cancelled or
        until the store is closed.
        """

    @abstractmethod
    async def close(self) -> None:
        """Ends the session: cancels its watches and removes its ephemeral nodes"""

    async def ensure_path(self, path: str) -> None:
        """Creates `path` and any missing parent as empty persistent nodes"""
        current = ""
        for part in path.strip("/").split("/"):
            current = f"{current}/{part}"
            if not await self.exists(current):
                try:
                    await self.create(current, b"")
                except NodeExistsError:
                    _logger.debug("%s was created concurrently", current)
