# pylint: disable=redefined-outer-name
# pylint: disable=unused-argument

import asyncio
import datetime
from collections.abc import AsyncIterator, Awaitable, Callable

import pytest
import redis.exceptions
from fakeredis import FakeServer
from fakeredis.aioredis import FakeRedis
from maestro.store.base import WatchEvent, WatchEventKind
from maestro.store.errors import (
    NodeDoesNotExistError,
    NodeExistsError,
    NodeNotEmptyError,
    StoreConnectionLossError,
)
from maestro.store.redis import RedisCoordinationStore, create_redis_store
from maestro.store.resilient import ResilientStore
from pytest_mock import MockerFixture
from redis.asyncio.client import Pipeline

_EPHEMERAL_TTL = datetime.timedelta(seconds=1)

#
# FIXTURES
#


@pytest.fixture
def fake_redis_server() -> FakeServer:
    return FakeServer()


@pytest.fixture
async def create_session(
    fake_redis_server: FakeServer,
) -> AsyncIterator[Callable[[], Awaitable[RedisCoordinationStore]]]:
    sessions: list[RedisCoordinationStore] = []

    async def _creator() -> RedisCoordinationStore:
        store = RedisCoordinationStore(
            FakeRedis(server=fake_redis_server), ephemeral_ttl=_EPHEMERAL_TTL
        )
        sessions.append(store)
        return store

    yield _creator

    for store in sessions:
        await store.close()


@pytest.fixture
async def redis_store(
    create_session: Callable[[], Awaitable[RedisCoordinationStore]],
) -> RedisCoordinationStore:
    return await create_session()


#
# TESTS
#


async def test_create_redis_store(mocker: MockerFixture):
    fake_redis = FakeRedis()
    mock_from_url = mocker.patch("redis.asyncio.from_url", return_value=fake_redis)

    store = await create_redis_store(
        "redis://localhost:6379/0",
        client_name="maestro-test",
        ephemeral_ttl=_EPHEMERAL_TTL,
    )
    assert store.redis is fake_redis
    mock_from_url.assert_called_once()
    await store.close()


async def test_nodes_lifecycle(redis_store: RedisCoordinationStore):
    await redis_store.create("/app", b"")
    await redis_store.create("/app/a", b"1")
    await redis_store.create("/app/b", b"2")

    with pytest.raises(NodeExistsError):
        await redis_store.create("/app/a", b"1")
    with pytest.raises(NodeDoesNotExistError):
        await redis_store.create("/missing/a", b"")

    assert await redis_store.read("/app/a") == b"1"
    await redis_store.write("/app/a", b"3")
    assert await redis_store.read("/app/a") == b"3"
    with pytest.raises(NodeDoesNotExistError):
        await redis_store.write("/app/c", b"3")

    assert await redis_store.children("/app") == ["a", "b"]
    with pytest.raises(NodeDoesNotExistError):
        await redis_store.children("/missing")

    with pytest.raises(NodeNotEmptyError):
        await redis_store.delete("/app")
    await redis_store.delete("/app", recursive=True)
    assert not await redis_store.exists("/app")
    assert not await redis_store.exists("/app/a")
    with pytest.raises(NodeDoesNotExistError):
        await redis_store.read("/app/a")


async def test_watches_across_sessions(
    create_session: Callable[[], Awaitable[RedisCoordinationStore]],
):
    watcher = await create_session()
    writer = await create_session()

    events: asyncio.Queue[WatchEvent] = asyncio.Queue()

    async def _on_event(event: WatchEvent) -> None:
        await events.put(event)

    await watcher.watch("/node", _on_event)

    await writer.create("/node", b"")
    await writer.write("/node", b"1")
    await writer.delete("/node")

    received = [await asyncio.wait_for(events.get(), timeout=5) for _ in range(3)]
    assert [e.kind for e in received] == [
        WatchEventKind.CREATED,
        WatchEventKind.CHANGED,
        WatchEventKind.DELETED,
    ]
    assert all(e.path == "/node" for e in received)


async def test_ephemeral_nodes_are_kept_alive_by_their_session(
    create_session: Callable[[], Awaitable[RedisCoordinationStore]],
):
    owner = await create_session()
    other = await create_session()

    await owner.create("/app", b"")
    await owner.create("/app/ephemeral", b"", ephemeral=True)

    await asyncio.sleep(2 * _EPHEMERAL_TTL.total_seconds())
    assert await other.exists("/app/ephemeral")

    await owner.close()
    assert not await other.exists("/app/ephemeral")
    assert await other.children("/app") == []


async def test_connection_errors_are_translated(
    redis_store: RedisCoordinationStore, mocker: MockerFixture
):
    mocker.patch.object(
        redis_store.redis,
        "get",
        side_effect=redis.exceptions.ConnectionError("connection reset"),
    )
    with pytest.raises(StoreConnectionLossError):
        await redis_store.read("/app")


@pytest.fixture
def lose_connection_once(mocker: MockerFixture) -> Callable[[bool], None]:
    """The next transaction fails with a connection loss, before or after being applied"""

    def _setup(applied: bool) -> None:  # noqa: FBT001
        original_execute = Pipeline.execute
        calls = 0

        async def _execute(self, *args, **kwargs):
            nonlocal calls
            calls += 1
            if calls > 1:
                return await original_execute(self, *args, **kwargs)
            if applied:
                await original_execute(self, *args, **kwargs)
            else:
                await self.reset()
            raise redis.exceptions.ConnectionError("connection reset by peer")

        mocker.patch.object(Pipeline, "execute", _execute)

    return _setup


@pytest.mark.parametrize("applied", [True, False], ids=["after-exec", "before-exec"])
async def test_create_survives_connection_loss(
    create_session: Callable[[], Awaitable[RedisCoordinationStore]],
    lose_connection_once: Callable[[bool], None],
    applied: bool,  # noqa: FBT001
):
    owner = await create_session()
    watcher = await create_session()
    await owner.create("/app", b"")

    events: asyncio.Queue[WatchEvent] = asyncio.Queue()

    async def _on_event(event: WatchEvent) -> None:
        await events.put(event)

    await watcher.watch("/app/descriptor", _on_event)

    lose_connection_once(applied)
    await ResilientStore(owner, wait_secs=0.1, attempts=3).create(
        "/app/descriptor", b"data", ephemeral=True
    )

    event = await asyncio.wait_for(events.get(), timeout=5)
    assert event.kind is WatchEventKind.CREATED

    # the parent knows it and the session keeps it alive
    assert await watcher.children("/app") == ["descriptor"]
    await asyncio.sleep(2 * _EPHEMERAL_TTL.total_seconds())
    assert await watcher.read("/app/descriptor") == b"data"


async def test_cancelled_watches_are_unsubscribed(redis_store: RedisCoordinationStore):
    async def _on_event(event: WatchEvent) -> None:
        ...

    first = await redis_store.watch("/node", _on_event)
    second = await redis_store.watch("/node", _on_event)

    await first.cancel()
    assert redis_store._watches == {"/node": [second]}  # noqa: SLF001

    await second.cancel()
    assert redis_store._watches == {}  # noqa: SLF001
