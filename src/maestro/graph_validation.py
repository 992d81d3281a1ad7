"""Static checks of the application description run once, before any agent starts

Any failure here aborts the whole deployment: no container is started.
"""

import logging
from collections.abc import Iterable, Mapping, Sequence

from .errors import (
    CircularDependencyError,
    DuplicateContainerNameError,
    UnknownDependencyError,
)
from .models.application import ApplicationDescription, ContainerSpec

_logger = logging.getLogger(__name__)


DependencyGraph = Mapping[str, Sequence[str]]


def build_dependency_graph(containers: Iterable[ContainerSpec]) -> dict[str, list[str]]:
    return {container.name: list(container.requires) for container in containers}


def detect_duplicate_names(containers: Iterable[ContainerSpec]) -> str | None:
    """Returns the first name declared twice or None"""
    seen: set[str] = set()
    for container in containers:
        if container.name in seen:
            _logger.error(
                "Container name '%s' is declared more than once", container.name
            )
            return container.name
        seen.add(container.name)
    return None


def detect_unknown_dependency(
    graph: DependencyGraph,
) -> tuple[str, str] | None:
    """Returns the first (container, dependency) pair whose dependency is not declared"""
    for name, requires in graph.items():
        for dependency in requires:
            if dependency not in graph:
                return name, dependency
    return None


def _find_cycle(
    node: str, chain: list[str], graph: DependencyGraph
) -> list[str] | None:
    if node in chain:
        return [*chain, node]

    chain.append(node)
    for dependency in graph.get(node, ()):
        # each branch walks with its own copy: a dependency shared by two
        # siblings is visited twice but does not close a cycle
        if cycle := _find_cycle(dependency, list(chain), graph):
            return cycle
    return None


def find_circular_chain(graph: DependencyGraph) -> list[str] | None:
    """Returns the dependency chain closing a cycle, the repeated node last"""
    for name, requires in graph.items():
        if not requires:
            continue
        if cycle := _find_cycle(name, [], graph):
            return cycle
    return None


def detect_circular_dependency(containers: Iterable[ContainerSpec]) -> str | None:
    """Returns the name of the container closing a cycle or None"""
    if cycle := find_circular_chain(build_dependency_graph(containers)):
        _logger.error(
            "Container '%s' is declared as a CIRCULAR DEPENDENCY: %s",
            cycle[-1],
            " -> ".join(cycle),
        )
        return cycle[-1]
    return None


def validate_application(description: ApplicationDescription) -> None:
    """
    Raises:
        DuplicateContainerNameError:
        UnknownDependencyError:
        CircularDependencyError:
    """
    if duplicate := detect_duplicate_names(description.containers):
        raise DuplicateContainerNameError(container_name=duplicate)

    graph = build_dependency_graph(description.containers)
    if unknown := detect_unknown_dependency(graph):
        container_name, dependency = unknown
        raise UnknownDependencyError(
            container_name=container_name, dependency=dependency
        )

    if cycle := find_circular_chain(graph):
        raise CircularDependencyError(
            container_name=cycle[-1], chain=" -> ".join(cycle)
        )

    _logger.info(
        "Application '%s' is valid: %d containers, no circular dependency",
        description.name,
        len(description.containers),
    )
