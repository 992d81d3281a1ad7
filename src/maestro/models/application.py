"""Application description: the containers of an application and how to start them

An application description is loaded once by the launcher, validated and then
handed out to the agents one `ContainerSpec` at a time.
"""

import shlex
from enum import StrEnum, auto
from pathlib import Path
from typing import Annotated, Any, TypeAlias

import yaml
from pydantic import (
    BaseModel,
    ConfigDict,
    Field,
    StringConstraints,
    ValidationError,
    field_validator,
)

from ..errors import ApplicationDescriptionError

# also the prefix of its variables seen by its dependants: a valid variable name
ContainerName: TypeAlias = Annotated[
    str, StringConstraints(pattern=r"^[A-Za-z][A-Za-z0-9_]*$", max_length=63)
]
ApplicationName: TypeAlias = Annotated[
    str, StringConstraints(pattern=r"^[A-Za-z0-9][A-Za-z0-9_.-]*$", max_length=63)
]
EnvVarKey: TypeAlias = Annotated[str, StringConstraints(pattern=r"^[A-Za-z_]\w*$")]


def tokenize_command(cmd: str) -> tuple[str, ...]:
    """Splits a command line the way a POSIX shell does (quotes, escapes)

    >>> tokenize_command("psql --command='select 1'")
    ('psql', '--command=select 1')

    Raises:
        ValueError: unbalanced quotes or trailing escape
    """
    return tuple(shlex.split(cmd))


class ContainerKind(StrEnum):
    WEB = auto()
    BUSINESS = auto()
    DATA = auto()

    @property
    def store_subtree(self) -> str:
        match self:
            case ContainerKind.WEB:
                return "web"
            case ContainerKind.BUSINESS:
                return "business"
            case ContainerKind.DATA:
                return "data"


class CommandSpec(BaseModel):
    cmd: Annotated[str, StringConstraints(strip_whitespace=True, min_length=1)]
    abort_on_failure: Annotated[
        bool,
        Field(description="a failure of this command stops its phase"),
    ] = True

    model_config = ConfigDict(
        frozen=True,
        extra="forbid",
        json_schema_extra={
            "examples": [
                {"cmd": "sh -c 'echo preparing'"},
                {"cmd": "mkdir -p /var/run/app", "abort_on_failure": False},
            ]
        },
    )

    @field_validator("cmd")
    @classmethod
    def _check_cmd_is_tokenizable(cls, v: str) -> str:
        # unbalanced quotes fail at load time, not when the command is started
        tokenize_command(v)
        return v

    @property
    def args(self) -> tuple[str, ...]:
        return tokenize_command(self.cmd)


def _command_from_str(value: Any) -> Any:
    if isinstance(value, str):
        return {"cmd": value}
    return value


class MainCommandSpec(CommandSpec):
    host: str = "127.0.0.1"
    port: Annotated[
        int | None,
        Field(
            gt=0,
            lt=65535,
            description="the main command is initialized once it accepts connections here. "
            "If None, it is initialized as soon as it runs",
        ),
    ] = None

    model_config = ConfigDict(
        json_schema_extra={
            "examples": [
                {"cmd": "python -m http.server 8080", "port": 8080},
                {"cmd": "sleep infinity"},
            ]
        },
    )


class ProcessGroupSpec(BaseModel):
    pre_main: list[CommandSpec] = Field(default_factory=list)
    main: MainCommandSpec
    post_main: list[CommandSpec] = Field(default_factory=list)
    stop: list[CommandSpec] = Field(default_factory=list)

    model_config = ConfigDict(frozen=True, extra="forbid")

    @field_validator("pre_main", "post_main", "stop", mode="before")
    @classmethod
    def _commands_from_str(cls, v):
        if isinstance(v, list):
            return [_command_from_str(item) for item in v]
        return v

    @field_validator("main", mode="before")
    @classmethod
    def _main_from_str(cls, v):
        return _command_from_str(v)


class SubstitutedFile(BaseModel):
    path: Path
    restore_on_exit: Annotated[
        bool,
        Field(description="the original content is put back when the agent stops"),
    ] = False

    model_config = ConfigDict(frozen=True, extra="forbid")


class ContainerEnvironmentSpec(BaseModel):
    variables: dict[EnvVarKey, str] = Field(default_factory=dict)
    aliases: Annotated[
        dict[EnvVarKey, EnvVarKey],
        Field(
            default_factory=dict,
            description="new variable name -> name of an existing variable (own or prefixed with the dependency name)",
        ),
    ]

    model_config = ConfigDict(frozen=True, extra="forbid")

    @field_validator("variables", mode="before")
    @classmethod
    def _stringify_values(cls, v):
        # yaml happily turns `port: 5432` into an int
        if isinstance(v, dict):
            return {key: f"{value}" for key, value in v.items()}
        return v


class ContainerSpec(BaseModel):
    name: ContainerName
    kind: ContainerKind
    image: str
    requires: list[ContainerName] = Field(default_factory=list)
    process_group: ProcessGroupSpec
    environment: ContainerEnvironmentSpec = Field(
        default_factory=ContainerEnvironmentSpec
    )
    substituted_files: list[SubstitutedFile] = Field(default_factory=list)

    model_config = ConfigDict(
        frozen=True,
        extra="forbid",
        json_schema_extra={
            "examples": [
                {
                    "name": "data",
                    "kind": "data",
                    "image": "postgres:16",
                    "environment": {"variables": {"db_name": "shop"}},
                    "process_group": {"main": {"cmd": "postgres", "port": 5432}},
                },
                {
                    "name": "business",
                    "kind": "business",
                    "image": "shop/business:latest",
                    "requires": ["data"],
                    "environment": {
                        "variables": {"app_name": "shop"},
                        "aliases": {"DATABASE": "DATA_DB_NAME"},
                    },
                    "process_group": {
                        "pre_main": ["sh -c 'echo migrating'"],
                        "main": {"cmd": "shop-server", "port": 8000},
                        "stop": ["sh -c 'echo bye'"],
                    },
                    "substituted_files": [
                        {"path": "/etc/shop/shop.conf", "restore_on_exit": True}
                    ],
                },
            ]
        },
    )

    @property
    def env_prefix(self) -> str:
        """Prefix of the variables of this container seen by its dependants"""
        return f"{self.name.upper()}_"


class ApplicationDescription(BaseModel):
    name: ApplicationName
    containers: list[ContainerSpec]

    model_config = ConfigDict(frozen=True, extra="forbid")

    def get_container(self, name: str) -> ContainerSpec:
        for container in self.containers:
            if container.name == name:
                return container
        raise KeyError(name)


def load_application_description(path: Path) -> ApplicationDescription:
    """Loads a description from a YAML (or JSON) file

    Raises:
        ApplicationDescriptionError: unreadable file or invalid content
    """
    try:
        content = yaml.safe_load(path.read_text())
    except (OSError, yaml.YAMLError) as err:
        raise ApplicationDescriptionError(path=path, reason=f"{err}") from err

    try:
        return ApplicationDescription.model_validate(content)
    except ValidationError as err:
        raise ApplicationDescriptionError(path=path, reason=f"{err}") from err
