# pylint: disable=redefined-outer-name
# pylint: disable=unused-argument

import socket
import sys
from collections.abc import AsyncIterator, Callable
from pathlib import Path
from typing import Any

import pytest
from maestro.models.application import ContainerSpec
from maestro.process.executor import ProcessGroupExecutor
from maestro.process.models import ProcessState
from pytest_mock import MockerFixture

#
# UTILS
#


def _touch(path: Path) -> str:
    return f"touch {path}"


def _get_unused_port() -> int:
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as s:
        s.bind(("127.0.0.1", 0))
        return s.getsockname()[1]


#
# FIXTURES
#


@pytest.fixture
def callbacks(mocker: MockerFixture) -> dict[str, Any]:
    return {
        "on_main_running": mocker.AsyncMock(),
        "on_main_initialized": mocker.AsyncMock(),
        "on_main_failed": mocker.AsyncMock(),
    }


@pytest.fixture
async def create_executor(
    create_container: Callable[..., ContainerSpec],
    callbacks: dict[str, Any],
) -> AsyncIterator[Callable[..., ProcessGroupExecutor]]:
    executors: list[ProcessGroupExecutor] = []

    def _creator(**process_group: Any) -> ProcessGroupExecutor:
        main = process_group.pop("main", "sleep 30")
        container = create_container(
            "business", main=main, process_group=process_group
        )
        executor = ProcessGroupExecutor(
            container,
            {"APP_NAME": "shop"},
            command_timeout=5,
            main_init_timeout=5,
            probe_interval=0.2,
            **callbacks,
        )
        executors.append(executor)
        return executor

    yield _creator

    # no process outlives a test
    for executor in executors:
        await executor.main.stop()


#
# TESTS
#


async def test_process_group_in_order(
    create_executor: Callable[..., ProcessGroupExecutor],
    callbacks: dict[str, Any],
    tmp_path: Path,
):
    executor = create_executor(
        pre_main=[_touch(tmp_path / "pre")],
        post_main=[f"sh -c 'test -f {tmp_path / 'pre'} && touch {tmp_path / 'post'}'"],
    )
    assert await executor.run_group() is True

    assert (tmp_path / "pre").exists()
    assert (tmp_path / "post").exists()
    assert executor.main.is_running
    assert executor.main.state is ProcessState.RUNNING
    assert executor.main.initialized.is_set()
    callbacks["on_main_running"].assert_awaited_once()
    callbacks["on_main_initialized"].assert_awaited_once()
    callbacks["on_main_failed"].assert_not_awaited()

    assert await executor.run_stop_group() is True
    assert not executor.main.is_running


async def test_pre_main_abort_prevents_main(
    create_executor: Callable[..., ProcessGroupExecutor],
    callbacks: dict[str, Any],
    tmp_path: Path,
):
    executor = create_executor(
        pre_main=["sh -c 'exit 1'", _touch(tmp_path / "never")],
        post_main=[_touch(tmp_path / "never-post")],
    )
    assert await executor.run_group() is False

    assert executor.pre_main[0].state is ProcessState.FAILED
    assert executor.pre_main[1].state is ProcessState.CREATED
    assert executor.main.pid is None
    assert not (tmp_path / "never").exists()
    assert not (tmp_path / "never-post").exists()
    callbacks["on_main_running"].assert_not_awaited()


async def test_failure_without_abort_continues(
    create_executor: Callable[..., ProcessGroupExecutor],
    tmp_path: Path,
):
    executor = create_executor(
        pre_main=[
            {"cmd": "sh -c 'exit 1'", "abort_on_failure": False},
            _touch(tmp_path / "pre"),
        ],
        post_main=[
            {"cmd": "this-command-does-not-exist", "abort_on_failure": False},
            _touch(tmp_path / "post"),
        ],
    )
    assert await executor.run_group() is True
    assert (tmp_path / "pre").exists()
    assert (tmp_path / "post").exists()
    assert executor.main.is_running


async def test_post_main_abort_stops_main(
    create_executor: Callable[..., ProcessGroupExecutor],
    callbacks: dict[str, Any],
    tmp_path: Path,
):
    executor = create_executor(
        post_main=["false", _touch(tmp_path / "never")],
    )
    assert await executor.run_group() is False

    callbacks["on_main_initialized"].assert_awaited_once()
    assert not executor.main.is_running
    assert not (tmp_path / "never").exists()


async def test_main_failing_to_initialize(
    create_executor: Callable[..., ProcessGroupExecutor],
    callbacks: dict[str, Any],
    tmp_path: Path,
):
    executor = create_executor(
        main="sh -c 'exit 3'",
        post_main=[_touch(tmp_path / "never")],
    )
    assert await executor.run_group() is False

    assert executor.main.state is ProcessState.FAILED
    callbacks["on_main_running"].assert_awaited_once()
    callbacks["on_main_failed"].assert_awaited_once()
    callbacks["on_main_initialized"].assert_not_awaited()
    assert not (tmp_path / "never").exists()


async def test_main_not_found(
    create_executor: Callable[..., ProcessGroupExecutor],
    callbacks: dict[str, Any],
):
    executor = create_executor(main="this-command-does-not-exist")
    assert await executor.run_group() is False
    callbacks["on_main_running"].assert_not_awaited()
    callbacks["on_main_failed"].assert_awaited_once()


async def test_main_initialized_once_it_accepts_connections(
    create_executor: Callable[..., ProcessGroupExecutor],
    callbacks: dict[str, Any],
    tmp_path: Path,
):
    port = _get_unused_port()
    executor = create_executor(
        main={
            "cmd": f"{sys.executable} -m http.server {port} --bind 127.0.0.1 --directory {tmp_path}",
            "port": port,
        },
    )
    assert await executor.run_group() is True
    callbacks["on_main_initialized"].assert_awaited_once()

    assert await executor.run_stop_group() is True
    assert not executor.main.is_running


async def test_side_command_timeout(
    create_container: Callable[..., ContainerSpec],
):
    container = create_container(
        "business", process_group={"pre_main": ["sleep 30"]}
    )
    executor = ProcessGroupExecutor(container, {}, command_timeout=0.5)
    assert await executor.run_group() is False
    assert executor.pre_main[0].state is ProcessState.FAILED
    assert not executor.pre_main[0].is_running


async def test_environment_is_passed_to_processes(
    create_executor: Callable[..., ProcessGroupExecutor],
    tmp_path: Path,
):
    executor = create_executor(
        pre_main=[f"sh -c 'echo $APP_NAME > {tmp_path / 'env'}'"],
    )
    assert await executor.run_group() is True
    assert (tmp_path / "env").read_text().strip() == "shop"


async def test_stop_group_runs_every_command(
    create_executor: Callable[..., ProcessGroupExecutor],
    tmp_path: Path,
):
    executor = create_executor(
        stop=["false", _touch(tmp_path / "stopped"), "sh -c 'exit 2'"],
    )
    assert await executor.run_group() is True

    assert await executor.run_stop_group() is False
    assert (tmp_path / "stopped").exists()
    assert not executor.main.is_running


async def test_wait_main(
    create_executor: Callable[..., ProcessGroupExecutor],
):
    executor = create_executor(main="sleep 30")
    assert await executor.wait_main() is None

    assert await executor.run_group() is True
    await executor.main.stop()
    assert await executor.wait_main() is not None
