import logging
from enum import StrEnum
from pathlib import Path
from typing import Annotated

from pydantic import AliasChoices, Field, PositiveFloat, PositiveInt, field_validator
from pydantic_settings import SettingsConfigDict

from .base import BaseCustomSettings
from .redis import RedisSettings


class LogLevel(StrEnum):
    DEBUG = "DEBUG"
    INFO = "INFO"
    WARNING = "WARNING"
    ERROR = "ERROR"


class StoreBackend(StrEnum):
    REDIS = "redis"
    MEMORY = "memory"


class ApplicationSettings(BaseCustomSettings):
    MAESTRO_LOGLEVEL: Annotated[
        LogLevel,
        Field(
            validation_alias=AliasChoices("MAESTRO_LOGLEVEL", "LOG_LEVEL", "LOGLEVEL"),
        ),
    ] = LogLevel.INFO

    MAESTRO_LOG_FORMAT_LOCAL_DEV_ENABLED: Annotated[
        bool,
        Field(
            validation_alias=AliasChoices(
                "MAESTRO_LOG_FORMAT_LOCAL_DEV_ENABLED", "LOG_FORMAT_LOCAL_DEV_ENABLED"
            ),
            description="Enables local development log format. WARNING: make sure it is disabled if you want to have structured logs!",
        ),
    ] = False

    MAESTRO_STORE_BACKEND: Annotated[
        StoreBackend,
        Field(
            description="coordination store shared by the launcher and all agents of a deployment",
        ),
    ] = StoreBackend.REDIS

    MAESTRO_REDIS: Annotated[
        RedisSettings | None,
        Field(json_schema_extra={"auto_default_from_env": True}),
    ]

    MAESTRO_STORE_RETRY_WAIT_S: Annotated[
        PositiveFloat,
        Field(description="pause between two attempts after a connection loss"),
    ] = 1.0

    MAESTRO_STORE_RETRY_ATTEMPTS: Annotated[
        PositiveInt | None,
        Field(
            description="attempts upon connection loss before giving up (None retries forever)",
        ),
    ] = None

    MAESTRO_EPHEMERAL_TTL_S: Annotated[
        PositiveInt,
        Field(
            description="ephemeral nodes vanish this long after their owner stopped refreshing them",
        ),
    ] = 10

    MAESTRO_COMMAND_TIMEOUT_S: Annotated[
        PositiveFloat,
        Field(description="pre-main, post-main and stop commands are killed after this"),
    ] = 120.0

    MAESTRO_MAIN_INIT_TIMEOUT_S: Annotated[
        PositiveFloat,
        Field(description="time granted to the main command to start serving"),
    ] = 120.0

    MAESTRO_MAIN_PROBE_INTERVAL_S: Annotated[
        PositiveFloat,
        Field(description="pause between two readiness probes of the main command"),
    ] = 2.0

    MAESTRO_RESTORE_DIR: Annotated[
        Path,
        Field(description="backups of substituted files that are restored on exit"),
    ] = Path("/tmp/maestro/restore")  # noqa: S108

    MAESTRO_SHUTDOWN_TIMEOUT_S: Annotated[
        PositiveFloat,
        Field(
            description="time granted to the agents to run their stop sequence before their containers are removed",
        ),
    ] = 180.0

    MAESTRO_DOCKER_NETWORK: Annotated[
        str | None,
        Field(description="docker network joined by all the containers of a deployment"),
    ] = None

    model_config = SettingsConfigDict(
        json_schema_extra={
            "examples": [
                {
                    "MAESTRO_STORE_BACKEND": "memory",
                    "MAESTRO_LOGLEVEL": "DEBUG",
                },
            ]
        }
    )

    @field_validator("MAESTRO_LOGLEVEL", mode="before")
    @classmethod
    def _validate_loglevel(cls, value: str) -> str:
        return f"{value}".upper()

    @property
    def log_level(self) -> int:
        level: int = getattr(logging, self.MAESTRO_LOGLEVEL.upper())
        return level
