from typing import Any, TypeAlias

import pytest

EnvVarsDict: TypeAlias = dict[str, str]


def setenvs_from_dict(
    monkeypatch: pytest.MonkeyPatch, envs: dict[str, Any]
) -> EnvVarsDict:
    env_vars: EnvVarsDict = {}
    for key, value in envs.items():
        assert isinstance(key, str)
        assert value is not None, f"{key=} cannot be None"
        monkeypatch.setenv(key, f"{value}")
        env_vars[key] = f"{value}"
    return env_vars


def delenvs_from_dict(monkeypatch: pytest.MonkeyPatch, envs: EnvVarsDict) -> None:
    for key in envs:
        monkeypatch.delenv(key, raising=False)
