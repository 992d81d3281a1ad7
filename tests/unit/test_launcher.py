# pylint: disable=redefined-outer-name
# pylint: disable=unused-argument

from collections.abc import AsyncIterator, Callable
from pathlib import Path
from typing import Any

import pytest
from maestro.errors import CircularDependencyError, DeploymentNotFoundError
from maestro.launcher import (
    build_agent_environment,
    deploy,
    restart_deployment,
    stop_deployment,
    wait_deployment,
)
from maestro.models.application import ApplicationDescription, ContainerSpec
from maestro.models.services import RunStatus, ServiceRecord
from maestro.runtime import InProcessRuntime
from maestro.settings.application import ApplicationSettings
from maestro.store.base import ROOT_PATH
from maestro.store.memory import InMemoryCoordinationStore, InMemoryStoreBackend
from maestro.store.paths import StoreLayout
from pydantic import SecretStr
from tenacity import AsyncRetrying, retry_if_exception_type, stop_after_delay, wait_fixed
from utils import EnvVarsDict, delenvs_from_dict, setenvs_from_dict

#
# UTILS
#


def _read_env_file(path: Path) -> dict[str, str]:
    return dict(
        line.split("=", 1) for line in path.read_text().splitlines() if "=" in line
    )


async def _assert_statuses(
    store: InMemoryCoordinationStore, app_id: str, expected: dict[str, RunStatus]
) -> None:
    layout = StoreLayout(app_id)
    async for attempt in AsyncRetrying(
        wait=wait_fixed(0.1),
        stop=stop_after_delay(10),
        retry=retry_if_exception_type(AssertionError),
        reraise=True,
    ):
        with attempt:
            statuses = {}
            for name in expected:
                assert await store.exists(layout.service(name)), f"{name} not published"
                record = ServiceRecord.from_bytes(
                    await store.read(layout.service(name))
                )
                statuses[name] = record.run_status
            assert statuses == expected


#
# FIXTURES
#


@pytest.fixture
async def runtime(
    app_settings: ApplicationSettings, memory_backend: InMemoryStoreBackend
) -> AsyncIterator[InProcessRuntime]:
    in_process_runtime = InProcessRuntime(app_settings, memory_backend)
    yield in_process_runtime
    await in_process_runtime.close()


@pytest.fixture
def shop_application(
    create_container: Callable[..., ContainerSpec], tmp_path: Path
) -> ApplicationDescription:
    conf_file = tmp_path / "business.conf"
    conf_file.write_text("db=${DATA_DB_NAME}")

    def _dump_env(name: str) -> str:
        return f"sh -c 'env > {tmp_path / name}.env'"

    return ApplicationDescription(
        name="shop",
        containers=[
            create_container(
                "web",
                kind="web",
                requires=["business"],
                variables={"host_port": "8080"},
                process_group={"pre_main": [_dump_env("web")]},
            ),
            create_container(
                "business",
                requires=["data"],
                variables={"app_name": "shop"},
                aliases={"DATABASE": "DATA_DB_NAME"},
                process_group={"pre_main": [_dump_env("business")]},
                substituted_files=[{"path": f"{conf_file}", "restore_on_exit": True}],
            ),
            create_container(
                "data",
                kind="data",
                variables={"db_name": "shop"},
                process_group={"pre_main": [_dump_env("data")]},
            ),
        ],
    )


#
# TESTS
#


def test_build_agent_environment(
    app_environment: EnvVarsDict,
    app_settings: ApplicationSettings,
    monkeypatch: pytest.MonkeyPatch,
):
    environment = build_agent_environment(app_settings)
    assert environment["MAESTRO_STORE_BACKEND"] == "memory"
    assert environment["REDIS_HOST"] == "localhost"
    assert "MAESTRO_STORE_RETRY_ATTEMPTS" in environment
    assert all(isinstance(value, str) for value in environment.values())

    # the agents rebuild the same settings out of it
    delenvs_from_dict(monkeypatch, app_environment)
    setenvs_from_dict(monkeypatch, environment)
    assert ApplicationSettings.create_from_envs() == app_settings


def test_build_agent_environment_passes_redis_password(
    app_settings: ApplicationSettings,
):
    assert app_settings.MAESTRO_REDIS
    settings = app_settings.model_copy(
        update={
            "MAESTRO_REDIS": app_settings.MAESTRO_REDIS.model_copy(
                update={"REDIS_PASSWORD": SecretStr("secret")}
            )
        }
    )
    assert build_agent_environment(settings)["REDIS_PASSWORD"] == "secret"


async def test_deploy_and_stop_application(
    app_settings: ApplicationSettings,
    memory_store: InMemoryCoordinationStore,
    runtime: InProcessRuntime,
    shop_application: ApplicationDescription,
    tmp_path: Path,
):
    app_id = await deploy(app_settings, shop_application, memory_store, runtime)
    layout = StoreLayout(app_id)
    assert app_id.startswith("shop-")
    assert len(await runtime.list_containers(app_id)) == 3

    await _assert_statuses(
        memory_store,
        app_id,
        {
            "data": RunStatus.INITIALIZED,
            "business": RunStatus.INITIALIZED,
            "web": RunStatus.INITIALIZED,
        },
    )

    business_env = _read_env_file(tmp_path / "business.env")
    assert business_env["APP_NAME"] == "shop"
    assert business_env["DATA_DB_NAME"] == "shop"
    assert business_env["DATABASE"] == "shop"

    web_env = _read_env_file(tmp_path / "web.env")
    assert web_env["HOST_PORT"] == "8080"
    assert web_env["BUSINESS_APP_NAME"] == "shop"
    assert not any(key.startswith("DATA_") for key in web_env)

    data_env = _read_env_file(tmp_path / "data.env")
    assert data_env["DB_NAME"] == "shop"

    assert (tmp_path / "business.conf").read_text() == "db=shop"
    assert await memory_store.read(layout.application) == (
        shop_application.model_dump_json().encode()
    )

    await stop_deployment(app_settings, app_id, memory_store, runtime)

    assert not await memory_store.exists(layout.root)
    assert (tmp_path / "business.conf").read_text() == "db=${DATA_DB_NAME}"
    for handle in await runtime.list_containers(app_id):
        assert not await runtime.is_running(handle)
    for agent in runtime.agents.values():
        assert agent.executor is not None
        assert not agent.executor.main.is_running

    # the agents are gone
    await wait_deployment(app_id, runtime, poll_interval=0.1)


async def test_failing_dependency_blocks_dependants(
    app_settings: ApplicationSettings,
    memory_store: InMemoryCoordinationStore,
    runtime: InProcessRuntime,
    create_container: Callable[..., ContainerSpec],
    tmp_path: Path,
):
    description = ApplicationDescription(
        name="broken",
        containers=[
            create_container("data", kind="data", main="sh -c 'exit 1'"),
            create_container(
                "business",
                requires=["data"],
                process_group={"pre_main": [f"touch {tmp_path / 'never'}"]},
            ),
        ],
    )
    app_id = await deploy(app_settings, description, memory_store, runtime)

    await _assert_statuses(
        memory_store,
        app_id,
        {"data": RunStatus.FAILED, "business": RunStatus.FAILED},
    )
    assert not (tmp_path / "never").exists()
    assert runtime.agents["business"].executor is None

    await stop_deployment(app_settings, app_id, memory_store, runtime)
    assert not await memory_store.exists(StoreLayout(app_id).root)


async def test_invalid_application_starts_nothing(
    app_settings: ApplicationSettings,
    memory_store: InMemoryCoordinationStore,
    runtime: InProcessRuntime,
    create_container: Callable[..., ContainerSpec],
):
    description = ApplicationDescription(
        name="cyclic",
        containers=[
            create_container("a", requires=["b"]),
            create_container("b", requires=["a"]),
        ],
    )
    with pytest.raises(CircularDependencyError):
        await deploy(app_settings, description, memory_store, runtime)

    assert await memory_store.children(ROOT_PATH) == []
    assert runtime.agents == {}


async def test_stop_unknown_deployment(
    app_settings: ApplicationSettings,
    memory_store: InMemoryCoordinationStore,
    runtime: InProcessRuntime,
):
    with pytest.raises(DeploymentNotFoundError):
        await stop_deployment(app_settings, "unknown-00000000", memory_store, runtime)


async def test_restart_application(
    app_settings: ApplicationSettings,
    memory_store: InMemoryCoordinationStore,
    runtime: InProcessRuntime,
    create_container: Callable[..., ContainerSpec],
    tmp_path: Path,
):
    def _count_runs(name: str) -> dict[str, Any]:
        return {"pre_main": [f"sh -c 'echo run >> {tmp_path / name}.runs'"]}

    description = ApplicationDescription(
        name="shop",
        containers=[
            create_container("data", kind="data", process_group=_count_runs("data")),
            create_container(
                "business", requires=["data"], process_group=_count_runs("business")
            ),
        ],
    )
    app_id = await deploy(app_settings, description, memory_store, runtime)
    layout = StoreLayout(app_id)
    expected = {"data": RunStatus.INITIALIZED, "business": RunStatus.INITIALIZED}
    await _assert_statuses(memory_store, app_id, expected)
    first_agents = dict(runtime.agents)

    restarted = await restart_deployment(app_settings, app_id, memory_store, runtime)

    assert sorted(h.container_name for h in restarted) == ["business", "data"]
    assert not await memory_store.exists(layout.shutdown)
    for name, agent in runtime.agents.items():
        assert agent is not first_agents[name]
    await _assert_statuses(memory_store, app_id, expected)
    for name in expected:
        assert (tmp_path / f"{name}.runs").read_text().splitlines() == ["run", "run"]

    await stop_deployment(app_settings, app_id, memory_store, runtime)
    assert not await memory_store.exists(layout.root)


async def test_restart_unknown_deployment(
    app_settings: ApplicationSettings,
    memory_store: InMemoryCoordinationStore,
    runtime: InProcessRuntime,
):
    with pytest.raises(DeploymentNotFoundError):
        await restart_deployment(
            app_settings, "unknown-00000000", memory_store, runtime
        )
