import json
import logging
import os
from collections.abc import Callable
from pprint import pformat

import rich
import typer
from pydantic import SecretStr, ValidationError
from pydantic_settings import BaseSettings

from .base import BaseCustomSettings

HEADER_STR: str = "{:-^50}\n"


def settings_as_envs(
    settings_obj: BaseSettings, *, show_secrets: bool
) -> dict[str, str]:
    """Flattens settings back into the environment variables they were read from

    Nested settings (e.g. `MAESTRO_REDIS`) contribute their own fields. Unset
    values are left out so that the defaults apply when read back.
    """
    envs: dict[str, str] = {}
    for name in type(settings_obj).model_fields:
        value = getattr(settings_obj, name)
        if value is None:
            continue
        if isinstance(value, BaseSettings):
            envs.update(settings_as_envs(value, show_secrets=show_secrets))
        elif isinstance(value, SecretStr):
            envs[name] = value.get_secret_value() if show_secrets else f"{value}"
        else:
            envs[name] = f"{settings_obj.model_dump(mode='json', include={name})[name]}"
    return envs


def _print_as_envfile(
    settings_obj: BaseSettings, *, verbose: bool, show_secrets: bool
) -> None:
    fields = type(settings_obj).model_fields
    for name, value in settings_as_envs(settings_obj, show_secrets=show_secrets).items():
        description = fields[name].description if name in fields else None
        if verbose and description:
            typer.echo(f"# {description}")
        typer.echo(f"{name}={value}")


def _log_invalid_settings(logger: logging.Logger, err: ValidationError) -> None:
    logger.error(  # noqa: TRY400
        "Invalid settings. "
        "Typically this is due to an environment variable missing or misspelled :\n%s",
        "\n".join(
            [
                HEADER_STR.format("detail"),
                str(err),
                HEADER_STR.format("environment variables"),
                pformat(
                    {
                        k: v
                        for k, v in os.environ.items()
                        if k.startswith(("MAESTRO_", "REDIS_"))
                    }
                ),
            ]
        ),
    )


def create_settings_command(
    settings_cls: type[BaseCustomSettings],
    logger: logging.Logger | None = None,
) -> Callable:
    """Creates typer command function for settings"""

    assert issubclass(settings_cls, BaseCustomSettings)  # nosec
    assert settings_cls != BaseCustomSettings  # nosec

    _log = logger or logging.getLogger(__name__)

    def settings(
        as_json: bool = typer.Option(False, help="Print as a flat json object"),
        verbose: bool = typer.Option(False, help="Print the description of each field"),
        show_secrets: bool = False,
    ):
        """Resolves settings and prints envfile"""
        try:
            settings_obj = settings_cls.create_from_envs()
        except ValidationError as err:
            _log_invalid_settings(_log, err)
            raise

        if as_json:
            typer.echo(
                json.dumps(
                    settings_as_envs(settings_obj, show_secrets=show_secrets), indent=2
                )
            )
        else:
            _print_as_envfile(settings_obj, verbose=verbose, show_secrets=show_secrets)

    return settings


def create_version_callback(application_version: str) -> Callable:
    def _version_callback(value: bool):  # noqa: FBT001
        if value:
            rich.print(application_version)
            raise typer.Exit

    def version(
        ctx: typer.Context,
        *,
        version: bool = (  # noqa: ARG001 # pylint: disable=unused-argument
            typer.Option(
                None,
                "--version",
                callback=_version_callback,
                is_eager=True,
            )
        ),
    ):
        """current version"""
        assert ctx  # nosec

    return version
