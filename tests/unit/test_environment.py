# pylint: disable=redefined-outer-name
# pylint: disable=unused-argument

from collections.abc import Callable

import pytest
from maestro.environment import (
    EnvironmentResolver,
    format_environment_for_log,
    resolve_environment,
)
from maestro.models.application import ContainerSpec
from pytest_mock import MockerFixture


def test_own_and_dependency_variables(
    create_container: Callable[..., ContainerSpec],
):
    own = create_container("c1", variables={"a": "1"}, aliases={"C": "D_B"})
    dependency = create_container("d", variables={"b": "2"})

    assert resolve_environment(own, [dependency]) == {
        "A": "1",
        "D_B": "2",
        "C": "2",
    }


def test_alias_to_missing_variable_is_dropped(
    create_container: Callable[..., ContainerSpec],
    caplog: pytest.LogCaptureFixture,
):
    own = create_container("c1", variables={"a": "1"}, aliases={"E": "MISSING"})

    assert resolve_environment(own, []) == {"A": "1"}
    assert "CANNOT map E to MISSING" in caplog.text


def test_only_direct_dependencies_are_visible(
    create_container: Callable[..., ContainerSpec],
):
    data = create_container("data", kind="data", variables={"db_name": "shop"})
    business = create_container(
        "business", requires=["data"], variables={"app_name": "shop"}
    )
    web = create_container(
        "web", kind="web", requires=["business"], variables={"host_port": "80"}
    )

    assert resolve_environment(business, [data]) == {
        "APP_NAME": "shop",
        "DATA_DB_NAME": "shop",
    }
    web_env = resolve_environment(web, [business])
    assert web_env == {"HOST_PORT": "80", "BUSINESS_APP_NAME": "shop"}
    assert not any(key.startswith("DATA_") for key in web_env)


def test_collisions_last_dependency_wins(
    create_container: Callable[..., ContainerSpec],
):
    # "x" with variable "y_z" and "x_y" with variable "z" both produce X_Y_Z
    first = create_container("x", variables={"y_z": "from-x"})
    second = create_container("x_y", variables={"z": "from-x_y"})
    own = create_container("own", requires=["x", "x_y"])

    assert resolve_environment(own, [first, second])["X_Y_Z"] == "from-x_y"
    assert resolve_environment(own, [second, first])["X_Y_Z"] == "from-x"


def test_aliases_override_variables(
    create_container: Callable[..., ContainerSpec],
):
    own = create_container(
        "own", variables={"port": "80", "target": "8080"}, aliases={"PORT": "TARGET"}
    )
    assert resolve_environment(own, [])["PORT"] == "8080"


def test_dependency_overrides_own_variable(
    create_container: Callable[..., ContainerSpec],
):
    own = create_container("own", variables={"db_name": "mine"})
    dependency = create_container("db", variables={"name": "theirs"})

    assert resolve_environment(own, [dependency])["DB_NAME"] == "theirs"


def test_resolver_recomputes_only_on_new_dependencies(
    create_container: Callable[..., ContainerSpec],
    mocker: MockerFixture,
):
    own = create_container("own", variables={"a": "1"})
    dependency = create_container("dep", variables={"b": "2"})
    spy_resolve = mocker.patch(
        "maestro.environment.resolve_environment", wraps=resolve_environment
    )

    resolver = EnvironmentResolver(own)
    env = resolver.resolve([dependency])
    assert env == {"A": "1", "DEP_B": "2"}

    # callers get their own copy
    env["A"] = "changed"
    assert resolver.resolve([dependency]) == {"A": "1", "DEP_B": "2"}
    assert spy_resolve.call_count == 1

    assert resolver.resolve([]) == {"A": "1"}
    assert spy_resolve.call_count == 2


def test_format_environment_for_log():
    assert format_environment_for_log({"B": "2", "A": "1"}) == "A=1, B=2"
