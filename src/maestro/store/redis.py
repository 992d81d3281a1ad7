"""Coordination store on top of redis

    - node data: `maestro:node:<path>`
    - children names: set `maestro:children:<path>`
    - notifications: channel `maestro:watch:<path>` (payload: the event kind)

Ephemeral nodes are keys with a TTL that the session keeps refreshing.
NOTE: an ephemeral node that expires (i.e. its session died) is not notified
"""

import asyncio
import contextlib
import datetime
import logging
from collections.abc import Iterator
from typing import Final
from uuid import uuid4

import redis.asyncio as aioredis
import redis.exceptions
from redis.asyncio.client import PubSub
from tenacity import retry

from ..background_task import cancel_wait_task, create_periodic_task
from ..logging_utils import log_catch
from ..retry_policies import RedisRetryPolicyUponInitialization
from .base import (
    ROOT_PATH,
    CoordinationStore,
    WatchCallback,
    WatchEvent,
    WatchEventKind,
    WatchHandle,
    split_path,
)
from .errors import (
    AccessDeniedError,
    NodeDoesNotExistError,
    NodeExistsError,
    NodeNotEmptyError,
    StoreConnectionLossError,
)

_logger = logging.getLogger(__name__)

_NODE_PREFIX: Final[str] = "maestro:node:"
_CHILDREN_PREFIX: Final[str] = "maestro:children:"
_WATCH_PREFIX: Final[str] = "maestro:watch:"

_DEFAULT_SOCKET_TIMEOUT: Final[datetime.timedelta] = datetime.timedelta(seconds=30)
_NOTIFICATIONS_POLL_S: Final[float] = 1.0
_SHUTDOWN_TIMEOUT_S: Final[float] = 5


def _node_key(path: str) -> str:
    return f"{_NODE_PREFIX}{path}"


def _children_key(path: str) -> str:
    return f"{_CHILDREN_PREFIX}{path}"


def _watch_channel(path: str) -> str:
    return f"{_WATCH_PREFIX}{path}"


@contextlib.contextmanager
def _translate_redis_errors(path: str) -> Iterator[None]:
    try:
        yield
    except (
        redis.exceptions.NoPermissionError,
        redis.exceptions.AuthenticationError,
    ) as err:
        raise AccessDeniedError(path=path) from err
    except (redis.exceptions.ConnectionError, redis.exceptions.TimeoutError) as err:
        raise StoreConnectionLossError(path=path) from err


class RedisCoordinationStore(CoordinationStore):
    def __init__(
        self,
        client: aioredis.Redis,
        *,
        ephemeral_ttl: datetime.timedelta = datetime.timedelta(seconds=10),
    ) -> None:
        self._client = client
        self._ephemeral_ttl = ephemeral_ttl
        self._session_id = f"{uuid4()}"

        self._ephemeral_paths: set[str] = set()
        self._refresh_task: asyncio.Task | None = None

        self._pubsub: PubSub | None = None
        self._notifications_task: asyncio.Task | None = None
        self._watches: dict[str, list[WatchHandle]] = {}
        self._closed = False

    @property
    def redis(self) -> aioredis.Redis:
        return self._client

    async def create(self, path: str, data: bytes, *, ephemeral: bool = False) -> None:
        """The node, its entry in the parent's children and its CREATED notification
        are applied in a single transaction"""
        parent, name = split_path(path)
        key = _node_key(path)
        # a retry after a connection loss must keep refreshing what the lost attempt created
        already_tracked = path in self._ephemeral_paths
        if ephemeral:
            self._ephemeral_paths.add(path)
            self._ensure_ephemeral_refresh()

        try:
            with _translate_redis_errors(path):
                async with self._client.pipeline(transaction=True) as pipe:
                    watched = [key] if parent == ROOT_PATH else [key, _node_key(parent)]
                    await pipe.watch(*watched)
                    if parent != ROOT_PATH and not await pipe.exists(_node_key(parent)):
                        raise NodeDoesNotExistError(path=parent)
                    if await pipe.exists(key):
                        raise NodeExistsError(path=path)

                    pipe.multi()
                    pipe.set(key, data, ex=self._ephemeral_ttl if ephemeral else None)
                    pipe.sadd(_children_key(parent), name)
                    pipe.publish(_watch_channel(path), f"{WatchEventKind.CREATED}")
                    await pipe.execute()

        except redis.exceptions.WatchError as err:
            self._untrack_ephemeral(path, keep=already_tracked)
            # the node or its parent changed meanwhile
            if await self.exists(path):
                raise NodeExistsError(path=path) from err
            raise NodeDoesNotExistError(path=parent) from err
        except (NodeExistsError, NodeDoesNotExistError):
            self._untrack_ephemeral(path, keep=already_tracked)
            raise

    def _untrack_ephemeral(self, path: str, *, keep: bool) -> None:
        if not keep:
            self._ephemeral_paths.discard(path)

    async def read(self, path: str) -> bytes:
        with _translate_redis_errors(path):
            data: bytes | None = await self._client.get(_node_key(path))
        if data is None:
            raise NodeDoesNotExistError(path=path)
        return data

    async def write(self, path: str, data: bytes) -> None:
        with _translate_redis_errors(path):
            async with self._client.pipeline(transaction=True) as pipe:
                pipe.set(_node_key(path), data, xx=True, keepttl=True)
                pipe.publish(_watch_channel(path), f"{WatchEventKind.CHANGED}")
                updated, _ = await pipe.execute()
        if not updated:
            raise NodeDoesNotExistError(path=path)

    async def delete(self, path: str, *, recursive: bool = False) -> None:
        if children := await self.children(path):
            if not recursive:
                raise NodeNotEmptyError(path=path)
            for child in children:
                await self.delete(f"{path.rstrip('/')}/{child}", recursive=True)

        parent, name = split_path(path)
        key = _node_key(path)
        with _translate_redis_errors(path):
            async with self._client.pipeline(transaction=True) as pipe:
                while True:
                    await pipe.watch(key)
                    if not await pipe.exists(key):
                        raise NodeDoesNotExistError(path=path)
                    pipe.multi()
                    pipe.delete(key)
                    pipe.srem(_children_key(parent), name)
                    pipe.delete(_children_key(path))
                    pipe.publish(_watch_channel(path), f"{WatchEventKind.DELETED}")
                    try:
                        await pipe.execute()
                        break
                    except redis.exceptions.WatchError:
                        _logger.debug("%s changed while being deleted, retrying", path)
        self._ephemeral_paths.discard(path)

    async def exists(self, path: str) -> bool:
        if path == ROOT_PATH:
            return True
        with _translate_redis_errors(path):
            return bool(await self._client.exists(_node_key(path)))

    async def children(self, path: str) -> list[str]:
        with _translate_redis_errors(path):
            if not await self.exists(path):
                raise NodeDoesNotExistError(path=path)

            names = sorted(
                n.decode() if isinstance(n, bytes) else n
                for n in await self._client.smembers(_children_key(path))
            )
            alive = []
            for name in names:
                if await self._client.exists(_node_key(f"{path.rstrip('/')}/{name}")):
                    alive.append(name)
                else:
                    # left behind by an expired ephemeral node
                    await self._client.srem(_children_key(path), name)
            return alive

    #
    # watches
    #

    async def watch(self, path: str, callback: WatchCallback) -> WatchHandle:
        with _translate_redis_errors(path):
            if self._pubsub is None:
                self._pubsub = self._client.pubsub()
            if path not in self._watches:
                await self._pubsub.subscribe(_watch_channel(path))

        handle = WatchHandle(path, callback, on_cancel=self._forget_watch)
        self._watches.setdefault(path, []).append(handle)

        if self._notifications_task is None:
            self._notifications_task = asyncio.create_task(
                self._dispatch_notifications(),
                name=f"store_notifications_{self._session_id}",
            )
        return handle

    async def _forget_watch(self, handle: WatchHandle) -> None:
        handles = self._watches.get(handle.path, [])
        if handle in handles:
            handles.remove(handle)
        if handles or handle.path not in self._watches:
            return
        del self._watches[handle.path]
        if self._pubsub is not None:
            with log_catch(_logger, reraise=False):
                await self._pubsub.unsubscribe(_watch_channel(handle.path))

    async def _dispatch_notifications(self) -> None:
        assert self._pubsub is not None  # nosec
        while True:
            try:
                message = await self._pubsub.get_message(
                    ignore_subscribe_messages=True, timeout=_NOTIFICATIONS_POLL_S
                )
            except (redis.exceptions.ConnectionError, redis.exceptions.TimeoutError):
                _logger.warning(
                    "Lost connection while waiting for notifications, retrying",
                    exc_info=True,
                )
                await asyncio.sleep(_NOTIFICATIONS_POLL_S)
                continue

            if message is None or message.get("type") != "message":
                continue

            with log_catch(_logger, reraise=False):
                channel = message["channel"]
                if isinstance(channel, bytes):
                    channel = channel.decode()
                payload = message["data"]
                if isinstance(payload, bytes):
                    payload = payload.decode()

                path = channel.removeprefix(_WATCH_PREFIX)
                event = WatchEvent(path=path, kind=WatchEventKind(payload))
                for handle in self._watches.get(path, []):
                    handle.notify(event)

    #
    # ephemeral nodes
    #

    def _ensure_ephemeral_refresh(self) -> None:
        if self._refresh_task is not None:
            return
        self._refresh_task = create_periodic_task(
            self._refresh_ephemeral_nodes,
            interval=self._ephemeral_ttl / 3,
            task_name=f"store_ephemeral_refresh_{self._session_id}",
        )

    async def _refresh_ephemeral_nodes(self) -> None:
        for path in list(self._ephemeral_paths):
            with _translate_redis_errors(path):
                if not await self._client.expire(_node_key(path), self._ephemeral_ttl):
                    _logger.warning("Ephemeral node %s expired", path)
                    self._ephemeral_paths.discard(path)

    async def close(self) -> None:
        if self._closed:
            return
        self._closed = True

        for path in sorted(self._ephemeral_paths, reverse=True):
            with log_catch(_logger, reraise=False):
                await self.delete(path, recursive=True)
        self._ephemeral_paths.clear()

        if self._refresh_task:
            await cancel_wait_task(self._refresh_task, max_delay=_SHUTDOWN_TIMEOUT_S)
            self._refresh_task = None

        for handle in [h for handles in self._watches.values() for h in handles]:
            await handle.cancel()

        if self._notifications_task:
            await cancel_wait_task(
                self._notifications_task, max_delay=_SHUTDOWN_TIMEOUT_S
            )
            self._notifications_task = None
        if self._pubsub is not None:
            with log_catch(_logger, reraise=False):
                await self._pubsub.aclose()
            self._pubsub = None

        await self._client.aclose()


@retry(**RedisRetryPolicyUponInitialization(_logger).kwargs)
async def _ping(client: aioredis.Redis) -> None:
    await client.ping()


async def create_redis_store(
    redis_dsn: str,
    *,
    client_name: str,
    ephemeral_ttl: datetime.timedelta,
) -> RedisCoordinationStore:
    client = aioredis.from_url(
        redis_dsn,
        socket_timeout=_DEFAULT_SOCKET_TIMEOUT.total_seconds(),
        socket_connect_timeout=_DEFAULT_SOCKET_TIMEOUT.total_seconds(),
        decode_responses=False,
        client_name=client_name,
    )
    await _ping(client)
    _logger.info("Connection to redis at %s succeeded", redis_dsn)
    return RedisCoordinationStore(client, ephemeral_ttl=ephemeral_ttl)
