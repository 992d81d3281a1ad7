"""Coordination store living in the memory of a single process

Every `InMemoryCoordinationStore` is a session on a shared `InMemoryStoreBackend`:
the launcher and the agents of a local deployment each get their own session
on the same backend.
"""

import logging
from dataclasses import dataclass, field
from itertools import count

from .base import (
    ROOT_PATH,
    CoordinationStore,
    WatchCallback,
    WatchEvent,
    WatchEventKind,
    WatchHandle,
    split_path,
)
from .errors import NodeDoesNotExistError, NodeExistsError, NodeNotEmptyError

_logger = logging.getLogger(__name__)

_session_ids = count(1)


@dataclass
class _Node:
    data: bytes
    owner: int | None = None  # session owning an ephemeral node
    children: set[str] = field(default_factory=set)


class InMemoryStoreBackend:
    def __init__(self) -> None:
        self.nodes: dict[str, _Node] = {ROOT_PATH: _Node(data=b"")}
        self.watches: dict[str, list[WatchHandle]] = {}

    def notify(self, path: str, kind: WatchEventKind) -> None:
        event = WatchEvent(path=path, kind=kind)
        for handle in self.watches.get(path, []):
            handle.notify(event)

    def create(self, path: str, data: bytes, owner: int | None) -> None:
        if path in self.nodes:
            raise NodeExistsError(path=path)
        parent, name = split_path(path)
        if parent not in self.nodes:
            raise NodeDoesNotExistError(path=parent)

        self.nodes[path] = _Node(data=data, owner=owner)
        self.nodes[parent].children.add(name)
        self.notify(path, WatchEventKind.CREATED)

    def get(self, path: str) -> _Node:
        try:
            return self.nodes[path]
        except KeyError as err:
            raise NodeDoesNotExistError(path=path) from err

    def write(self, path: str, data: bytes) -> None:
        self.get(path).data = data
        self.notify(path, WatchEventKind.CHANGED)

    def delete(self, path: str, *, recursive: bool) -> None:
        node = self.get(path)
        if node.children:
            if not recursive:
                raise NodeNotEmptyError(path=path)
            for child in sorted(node.children):
                self.delete(f"{path.rstrip('/')}/{child}", recursive=True)

        del self.nodes[path]
        parent, name = split_path(path)
        self.nodes[parent].children.discard(name)
        self.notify(path, WatchEventKind.DELETED)

    def owned_by(self, owner: int) -> list[str]:
        return [path for path, node in self.nodes.items() if node.owner == owner]


class InMemoryCoordinationStore(CoordinationStore):
    def __init__(self, backend: InMemoryStoreBackend | None = None) -> None:
        self.backend = backend or InMemoryStoreBackend()
        self.session_id = next(_session_ids)
        self._watches: list[WatchHandle] = []
        self._closed = False

    def new_session(self) -> "InMemoryCoordinationStore":
        """Another client of the same store"""
        return InMemoryCoordinationStore(self.backend)

    async def create(self, path: str, data: bytes, *, ephemeral: bool = False) -> None:
        self.backend.create(path, data, self.session_id if ephemeral else None)

    async def read(self, path: str) -> bytes:
        return self.backend.get(path).data

    async def write(self, path: str, data: bytes) -> None:
        self.backend.write(path, data)

    async def delete(self, path: str, *, recursive: bool = False) -> None:
        self.backend.delete(path, recursive=recursive)

    async def exists(self, path: str) -> bool:
        return path in self.backend.nodes

    async def children(self, path: str) -> list[str]:
        return sorted(self.backend.get(path).children)

    async def watch(self, path: str, callback: WatchCallback) -> WatchHandle:
        handle = WatchHandle(path, callback, on_cancel=self._forget_watch)
        self.backend.watches.setdefault(path, []).append(handle)
        self._watches.append(handle)
        return handle

    async def _forget_watch(self, handle: WatchHandle) -> None:
        handles = self.backend.watches.get(handle.path, [])
        if handle in handles:
            handles.remove(handle)
        if not handles:
            self.backend.watches.pop(handle.path, None)
        if handle in self._watches:
            self._watches.remove(handle)

    async def close(self) -> None:
        if self._closed:
            return
        self._closed = True

        for handle in list(self._watches):
            await handle.cancel()

        # deepest first
        for path in sorted(self.backend.owned_by(self.session_id), reverse=True):
            if path in self.backend.nodes:
                self.backend.delete(path, recursive=True)
        _logger.debug("Session %s closed", self.session_id)
