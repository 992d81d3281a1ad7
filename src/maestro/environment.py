"""Process environment of a container

    - own variables: `<VAR>`
    - variables of every direct dependency: `<DEPENDENCY_NAME>_<VAR>`
    - aliases: `<NEW_VAR>` -> any of the above

e.g. for `data <- business <- web` with data declaring `db_name`, business
`app_name` and web `host_port`:

    - data: DB_NAME
    - business: APP_NAME, DATA_DB_NAME
    - web: HOST_PORT, BUSINESS_APP_NAME
"""

import logging
from collections.abc import Sequence

from .models.application import ContainerSpec
from .models.services import EnvironmentMap

_logger = logging.getLogger(__name__)


def _prefixed_variables(container: ContainerSpec, prefix: str) -> EnvironmentMap:
    return {
        f"{prefix}{key}".upper(): value
        for key, value in container.environment.variables.items()
    }


def resolve_environment(
    own_spec: ContainerSpec, dependencies: Sequence[ContainerSpec]
) -> EnvironmentMap:
    """Builds the environment of the processes of `own_spec`

    `dependencies` are merged in the given order: on a name collision the last
    one wins. An alias pointing to a variable that does not exist is dropped.
    """
    env: EnvironmentMap = _prefixed_variables(own_spec, prefix="")

    for dependency in dependencies:
        dependency_env = _prefixed_variables(dependency, prefix=dependency.env_prefix)
        _logger.debug(
            "Environment of dependency '%s': %s",
            dependency.name,
            format_environment_for_log(dependency_env),
        )
        env.update(dependency_env)

    aliases: EnvironmentMap = {}
    for new_key, target_key in own_spec.environment.aliases.items():
        target = target_key.upper()
        if target not in env:
            _logger.warning(
                "CANNOT map %s to %s: %s does NOT exist", new_key, target, target
            )
            continue
        aliases[new_key.upper()] = env[target]
        _logger.debug("Mapped %s to %s", new_key, target)
    env.update(aliases)

    return env


def format_environment_for_log(env: EnvironmentMap) -> str:
    return ", ".join(f"{key}={value}" for key, value in sorted(env.items()))


class EnvironmentResolver:
    """Remembers the last environment of a container

    The environment is only ever recomputed from scratch, and only when the
    set of dependency descriptors differs from the one it was computed with.
    """

    def __init__(self, own_spec: ContainerSpec) -> None:
        self._own_spec = own_spec
        self._snapshot: tuple[ContainerSpec, ...] | None = None
        self._env: EnvironmentMap = {}

    def resolve(self, dependencies: Sequence[ContainerSpec]) -> EnvironmentMap:
        snapshot = tuple(dependencies)
        if snapshot != self._snapshot:
            self._env = resolve_environment(self._own_spec, snapshot)
            self._snapshot = snapshot
            _logger.info(
                "Environment of '%s' resolved: %s",
                self._own_spec.name,
                format_environment_for_log(self._env),
            )
        # callers get their own copy
        return dict(self._env)
