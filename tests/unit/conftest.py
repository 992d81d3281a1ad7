# pylint: disable=redefined-outer-name
# pylint: disable=unused-argument

from collections.abc import AsyncIterator, Callable
from pathlib import Path
from typing import Any

import pytest
from faker import Faker
from maestro.models.application import ContainerSpec
from maestro.settings.application import ApplicationSettings
from maestro.store.memory import InMemoryCoordinationStore, InMemoryStoreBackend
from maestro.store.paths import StoreLayout, new_app_id
from utils import EnvVarsDict, setenvs_from_dict

#
# FIXTURES
#


@pytest.fixture
def restore_dir(tmp_path: Path) -> Path:
    path = tmp_path / "restore"
    path.mkdir()
    return path


@pytest.fixture
def app_environment(
    monkeypatch: pytest.MonkeyPatch, restore_dir: Path
) -> EnvVarsDict:
    return setenvs_from_dict(
        monkeypatch,
        {
            "MAESTRO_LOGLEVEL": "DEBUG",
            "MAESTRO_STORE_BACKEND": "memory",
            "MAESTRO_STORE_RETRY_WAIT_S": "0.1",
            "MAESTRO_STORE_RETRY_ATTEMPTS": "3",
            "MAESTRO_COMMAND_TIMEOUT_S": "10",
            "MAESTRO_MAIN_INIT_TIMEOUT_S": "10",
            "MAESTRO_MAIN_PROBE_INTERVAL_S": "0.2",
            "MAESTRO_SHUTDOWN_TIMEOUT_S": "10",
            "MAESTRO_RESTORE_DIR": f"{restore_dir}",
            "REDIS_HOST": "localhost",
        },
    )


@pytest.fixture
def app_settings(app_environment: EnvVarsDict) -> ApplicationSettings:
    return ApplicationSettings.create_from_envs()


@pytest.fixture
def memory_backend() -> InMemoryStoreBackend:
    return InMemoryStoreBackend()


@pytest.fixture
async def memory_store(
    memory_backend: InMemoryStoreBackend,
) -> AsyncIterator[InMemoryCoordinationStore]:
    store = InMemoryCoordinationStore(memory_backend)
    yield store
    await store.close()


@pytest.fixture
def app_id(faker: Faker) -> str:
    return new_app_id(faker.word())


@pytest.fixture
def layout(app_id: str) -> StoreLayout:
    return StoreLayout(app_id)


@pytest.fixture
async def store_skeleton(
    memory_store: InMemoryCoordinationStore, layout: StoreLayout
) -> StoreLayout:
    for path in layout.skeleton():
        await memory_store.ensure_path(path)
    return layout


@pytest.fixture
def create_container() -> Callable[..., ContainerSpec]:
    def _creator(
        name: str,
        *,
        kind: str = "business",
        requires: list[str] | None = None,
        variables: dict[str, str] | None = None,
        aliases: dict[str, str] | None = None,
        main: str | dict[str, Any] = "sleep 30",
        **overrides: Any,
    ) -> ContainerSpec:
        return ContainerSpec.model_validate(
            {
                "name": name,
                "kind": kind,
                "image": f"local/{name}:latest",
                "requires": requires or [],
                "environment": {
                    "variables": variables or {},
                    "aliases": aliases or {},
                },
                "process_group": {"main": main, **overrides.pop("process_group", {})},
                **overrides,
            }
        )

    return _creator
