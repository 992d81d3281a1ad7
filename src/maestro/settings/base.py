"""Settings read from environment variables

Sub-settings (e.g. `ApplicationSettings.MAESTRO_REDIS`) are NOT read from a single
json-encoded variable but from their own flat variables (`REDIS_HOST`, ...). A
field opts in with `Field(json_schema_extra={"auto_default_from_env": True})`.
"""

import logging
from collections.abc import Callable
from functools import cached_property
from types import UnionType
from typing import Any, Final, Union, get_args, get_origin

from pydantic import ValidationInfo, field_validator
from pydantic.fields import FieldInfo
from pydantic_core import ValidationError
from pydantic_settings import (
    BaseSettings,
    EnvSettingsSource,
    PydanticBaseSettingsSource,
    SettingsConfigDict,
)

_logger = logging.getLogger(__name__)

NoneType: type = type(None)

# what the env source yields for a sub-settings field with no variable of its own
_MARKED_AS_UNSET: Final[dict] = {}


def _field_types(info: FieldInfo) -> tuple[Any, ...]:
    if get_origin(info.annotation) in (Union, UnionType):
        return get_args(info.annotation)
    return (info.annotation,)


def is_nullable(info: FieldInfo) -> bool:
    return NoneType in _field_types(info)


def _sub_settings_cls(info: FieldInfo) -> type["BaseCustomSettings"] | None:
    for field_type in _field_types(info):
        if isinstance(field_type, type) and issubclass(field_type, BaseCustomSettings):
            return field_type
    return None


def _is_auto_default_from_env_enabled(info: FieldInfo) -> bool:
    return bool(
        isinstance(info.json_schema_extra, dict)
        and info.json_schema_extra.get("auto_default_from_env", False)
    )


class DefaultFromEnvFactoryError(ValueError):
    def __init__(self, errors):
        super().__init__("Default could not be constructed")
        self.errors = errors


def _create_settings_from_env(
    field_name: str, info: FieldInfo, settings_cls: type["BaseCustomSettings"]
) -> Callable[[], "BaseCustomSettings | None"]:
    def _default_factory():
        try:
            return settings_cls()
        except ValidationError as err:
            if is_nullable(info):
                _logger.warning(
                    "%s auto_default_from_env unresolved, defaulting to None", field_name
                )
                return None
            _logger.warning("Validation errors=%s", err.errors())
            raise DefaultFromEnvFactoryError(errors=err.errors()) from err

    return _default_factory


class EnvSettingsWithAutoDefaultSource(EnvSettingsSource):
    def __init__(
        self, settings_cls: type[BaseSettings], env_settings: EnvSettingsSource
    ):
        super().__init__(
            settings_cls,
            case_sensitive=env_settings.case_sensitive,
            env_prefix=env_settings.env_prefix,
            env_nested_delimiter=env_settings.env_nested_delimiter,
            env_ignore_empty=env_settings.env_ignore_empty,
            env_parse_none_str=env_settings.env_parse_none_str,
            env_parse_enums=env_settings.env_parse_enums,
        )

    def prepare_field_value(
        self,
        field_name: str,
        field: FieldInfo,
        value: Any,
        value_is_complex: bool,  # noqa: FBT001
    ) -> Any:
        prepared_value = super().prepare_field_value(
            field_name, field, value, value_is_complex
        )
        if (
            _is_auto_default_from_env_enabled(field)
            and field.default_factory
            and prepared_value == _MARKED_AS_UNSET
        ):
            prepared_value = field.default_factory()  # type: ignore[call-arg]
        return prepared_value


class BaseCustomSettings(BaseSettings):
    """Frozen, case-sensitive settings that forbid unknown fields

    SEE tests/unit/test_settings.py
    """

    @field_validator("*", mode="before")
    @classmethod
    def _parse_none(cls, v, info: ValidationInfo):
        # e.g. MAESTRO_STORE_RETRY_ATTEMPTS=none
        if (
            info.field_name
            and is_nullable(cls.model_fields[info.field_name])
            and isinstance(v, str)
            and v.lower() == "none"
        ):
            return None
        return v

    model_config = SettingsConfigDict(
        case_sensitive=True,
        extra="forbid",
        frozen=True,
        validate_default=True,
        ignored_types=(cached_property,),
        env_parse_none_str="null",
    )

    @classmethod
    def __pydantic_init_subclass__(cls, **kwargs: Any):
        super().__pydantic_init_subclass__(**kwargs)

        for name, field in cls.model_fields.items():
            if not _is_auto_default_from_env_enabled(field):
                continue
            settings_cls = _sub_settings_cls(field)
            if settings_cls is None:
                msg = f"auto_default_from_env=True requires a BaseCustomSettings field but {cls}.{name} is {field.annotation}"
                raise ValueError(msg)
            field.default_factory = _create_settings_from_env(name, field, settings_cls)
            field.default = None

        cls.model_rebuild(force=True)

    @classmethod
    def create_from_envs(cls, **overrides):
        return cls(**overrides)

    @classmethod
    def settings_customise_sources(
        cls,
        settings_cls: type[BaseSettings],
        init_settings: PydanticBaseSettingsSource,
        env_settings: PydanticBaseSettingsSource,
        dotenv_settings: PydanticBaseSettingsSource,
        file_secret_settings: PydanticBaseSettingsSource,
    ) -> tuple[PydanticBaseSettingsSource, ...]:
        assert isinstance(env_settings, EnvSettingsSource)  # nosec
        return (
            init_settings,
            EnvSettingsWithAutoDefaultSource(settings_cls, env_settings=env_settings),
            dotenv_settings,
            file_secret_settings,
        )
