import logging
from typing import Any

from tenacity import AsyncRetrying

from ..retry_policies import StoreRetryPolicyUponConnectionLoss
from .base import CoordinationStore, WatchCallback, WatchHandle
from .errors import NodeDoesNotExistError, NodeExistsError, StoreConnectionLossError

_logger = logging.getLogger(__name__)


class ResilientStore(CoordinationStore):
    """Retries the operations of `store` for as long as the connection is lost

    An operation interrupted by a connection loss may or may not have been
    applied. Once retried, its outcome is verified:
        - create: an existing node holding the same data means it succeeded
        - delete: a missing node means it succeeded
    """

    def __init__(
        self,
        store: CoordinationStore,
        *,
        wait_secs: float = 1.0,
        attempts: int | None = None,
    ) -> None:
        self.store = store
        self._retry_kwargs: dict[str, Any] = StoreRetryPolicyUponConnectionLoss(
            StoreConnectionLossError,
            wait_secs=wait_secs,
            attempts=attempts,
            logger=_logger,
        ).kwargs

    def _retrying(self) -> AsyncRetrying:
        return AsyncRetrying(**self._retry_kwargs)

    async def create(self, path: str, data: bytes, *, ephemeral: bool = False) -> None:
        connection_lost = False
        async for attempt in self._retrying():
            with attempt:
                try:
                    await self.store.create(path, data, ephemeral=ephemeral)
                except StoreConnectionLossError:
                    connection_lost = True
                    raise
                except NodeExistsError:
                    if not connection_lost:
                        raise
                    if await self.store.read(path) != data:
                        raise
                    _logger.info(
                        "%s was created before the connection was lost", path
                    )

    async def read(self, path: str) -> bytes:
        return await self._retrying()(self.store.read, path)

    async def write(self, path: str, data: bytes) -> None:
        await self._retrying()(self.store.write, path, data)

    async def delete(self, path: str, *, recursive: bool = False) -> None:
        connection_lost = False
        async for attempt in self._retrying():
            with attempt:
                try:
                    await self.store.delete(path, recursive=recursive)
                except StoreConnectionLossError:
                    connection_lost = True
                    raise
                except NodeDoesNotExistError:
                    if not connection_lost:
                        raise
                    _logger.info(
                        "%s was deleted before the connection was lost", path
                    )

    async def exists(self, path: str) -> bool:
        return await self._retrying()(self.store.exists, path)

    async def children(self, path: str) -> list[str]:
        return await self._retrying()(self.store.children, path)

    async def watch(self, path: str, callback: WatchCallback) -> WatchHandle:
        return await self._retrying()(self.store.watch, path, callback)

    async def close(self) -> None:
        await self.store.close()
