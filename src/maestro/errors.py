from typing import Any

from pydantic.errors import PydanticErrorMixin


class _MissingKeysAsPlaceholders(dict):
    def __missing__(self, key):
        return f"'{key}=?'"


class MaestroErrorMixin(PydanticErrorMixin):
    """Errors whose message is `msg_template` formatted with their keyword context

    e.g. `NodeExistsError(path="/app/services/web")`. The context stays
    accessible as attributes (`err.path`).
    """

    msg_template: str

    def __init__(self, **ctx: Any) -> None:
        self.__dict__ = ctx
        super().__init__(message=f"{self}", code=type(self).__name__)  # type: ignore[arg-type]

    def __str__(self) -> str:
        # never raises KeyError on a missing context value
        return self.msg_template.format_map(_MissingKeysAsPlaceholders(self.__dict__))

    def error_context(self) -> dict[str, Any]:
        return dict(self.__dict__)


class MaestroBaseError(MaestroErrorMixin, Exception):
    msg_template = "Unexpected error in maestro"


#
# application description
#


class ApplicationDescriptionError(MaestroBaseError):
    msg_template = "Invalid application description '{path}': {reason}"


class ApplicationValidationError(MaestroBaseError):
    """Structural errors: fatal to the whole deployment"""


class DuplicateContainerNameError(ApplicationValidationError):
    msg_template = "Duplicate container name '{container_name}' found in application description"


class CircularDependencyError(ApplicationValidationError):
    msg_template = "Container '{container_name}' is declared as a circular dependency (chain: {chain})"


class UnknownDependencyError(ApplicationValidationError):
    msg_template = "Container '{container_name}' requires '{dependency}' which is not declared"


#
# runtime
#


class DependencyFailedError(MaestroBaseError):
    msg_template = "Required service '{service_name}' reported FAILED while {waiting_for}"


class DeploymentNotFoundError(MaestroBaseError):
    msg_template = "Application '{app_id}' does NOT exist"


class ContainerRuntimeError(MaestroBaseError):
    msg_template = "Container runtime failed to {action} '{container_name}': {reason}"
