import datetime

from ..settings.application import ApplicationSettings, StoreBackend
from .base import CoordinationStore
from .memory import InMemoryCoordinationStore, InMemoryStoreBackend
from .redis import create_redis_store
from .resilient import ResilientStore


async def create_coordination_store(
    settings: ApplicationSettings,
    *,
    client_name: str,
    memory_backend: InMemoryStoreBackend | None = None,
) -> ResilientStore:
    """Opens a new session on the store selected in the settings"""
    store: CoordinationStore
    match settings.MAESTRO_STORE_BACKEND:
        case StoreBackend.REDIS:
            assert settings.MAESTRO_REDIS is not None  # nosec
            store = await create_redis_store(
                settings.MAESTRO_REDIS.build_redis_dsn(),
                client_name=client_name,
                ephemeral_ttl=datetime.timedelta(
                    seconds=settings.MAESTRO_EPHEMERAL_TTL_S
                ),
            )
        case StoreBackend.MEMORY:
            store = InMemoryCoordinationStore(memory_backend)

    return ResilientStore(
        store,
        wait_secs=settings.MAESTRO_STORE_RETRY_WAIT_S,
        attempts=settings.MAESTRO_STORE_RETRY_ATTEMPTS,
    )
