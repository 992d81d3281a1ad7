"""Tracks the state of the services a container depends on

Each dependency publishes a service record in the coordination store. The
tracker watches these records and answers two questions:

    - are_services_processed: were all the dependency descriptors fetched?
      (required to resolve the environment)
    - are_services_initialized: are all dependencies serving?
      (required to start the main process)

Both hold immediately when there are no dependencies.
"""

import asyncio
import logging
from collections.abc import Mapping, Sequence
from types import MappingProxyType

from pydantic import ValidationError

from .errors import DependencyFailedError
from .models.application import ContainerSpec
from .models.services import (
    RunStatus,
    ServiceNode,
    ServiceRecord,
    is_valid_transition,
)
from .store.base import CoordinationStore, WatchEvent, WatchHandle
from .store.errors import NodeDoesNotExistError
from .store.paths import StoreLayout

_logger = logging.getLogger(__name__)


class ReadinessTracker:
    def __init__(
        self, store: CoordinationStore, layout: StoreLayout, container_name: str
    ) -> None:
        self._store = store
        self._layout = layout
        self._container_name = container_name

        # replaced as a whole, never mutated in place
        self._nodes: Mapping[str, ServiceNode] = MappingProxyType({})
        self._order: tuple[str, ...] = ()

        self._condition = asyncio.Condition()
        self._refresh_lock = asyncio.Lock()
        self._watches: list[WatchHandle] = []

    @property
    def nodes(self) -> Mapping[str, ServiceNode]:
        """Consistent snapshot of all dependencies keyed by service path"""
        return self._nodes

    async def register(self, dependencies: Sequence[str]) -> None:
        """Starts tracking the services in `dependencies` (declaration order is kept)"""
        nodes = dict(self._nodes)
        for name in dependencies:
            path = self._layout.service(name)
            nodes[path] = ServiceNode(service_name=name, service_path=path)
        self._nodes = MappingProxyType(nodes)
        self._order = (*self._order, *(self._layout.service(n) for n in dependencies))

        for path in (self._layout.service(n) for n in dependencies):
            self._watches.append(await self._store.watch(path, self._on_service_event))
            # the dependency might have published before the watch was set
            await self._refresh(path)

    async def close(self) -> None:
        for handle in self._watches:
            await handle.cancel()
        self._watches.clear()

    #
    # predicates
    #

    def are_services_processed(self) -> bool:
        if waiting := [n.service_name for n in self._nodes.values() if not n.is_processed]:
            _logger.debug("Waiting to process services: %s", waiting)
            return False
        return True

    def are_services_initialized(self) -> bool:
        if waiting := [
            n.service_name for n in self._nodes.values() if not n.is_initialized
        ]:
            _logger.debug("Waiting for services to initialize: %s", waiting)
            return False
        return True

    def failed_services(self) -> list[str]:
        return [n.service_name for n in self._nodes.values() if n.has_failed]

    def dependencies(self) -> list[ContainerSpec]:
        """Descriptors of the processed dependencies in declaration order"""
        return [
            node.container
            for path in self._order
            if (node := self._nodes[path]).container is not None
        ]

    #
    # waiting
    #

    def _raise_if_failed(self, waiting_for: str) -> None:
        if failed := self.failed_services():
            raise DependencyFailedError(
                service_name=", ".join(failed), waiting_for=waiting_for
            )

    async def wait_until_processed(self) -> None:
        """
        Raises:
            DependencyFailedError:
        """
        async with self._condition:
            await self._condition.wait_for(
                lambda: self.are_services_processed() or bool(self.failed_services())
            )
        self._raise_if_failed("waiting for its descriptor")
        _logger.info(
            "All required services of '%s' PROCESSED", self._container_name
        )

    async def wait_until_initialized(self) -> None:
        """
        Raises:
            DependencyFailedError:
        """
        async with self._condition:
            await self._condition.wait_for(
                lambda: self.are_services_initialized()
                or bool(self.failed_services())
            )
        self._raise_if_failed("waiting for it to initialize")
        _logger.info(
            "All required services of '%s' INITIALIZED", self._container_name
        )

    #
    # notifications
    #

    async def _on_service_event(self, event: WatchEvent) -> None:
        _logger.debug("Service %s %s", event.path, event.kind)
        await self._refresh(event.path)

    async def _publish(self, node: ServiceNode) -> None:
        self._nodes = MappingProxyType({**self._nodes, node.service_path: node})
        async with self._condition:
            self._condition.notify_all()

    async def _refresh(self, path: str) -> None:
        async with self._refresh_lock:
            node = self._nodes[path]
            if node.has_failed:
                return

            try:
                record = ServiceRecord.from_bytes(await self._store.read(path))
            except NodeDoesNotExistError:
                if node.container_path is not None:
                    _logger.error("Service %s disappeared", node.service_name)
                    await self._publish(node.with_run_status(RunStatus.FAILED))
                return
            except ValidationError:
                _logger.exception("Service %s published an invalid record", node.service_name)
                await self._publish(node.with_run_status(RunStatus.FAILED))
                return

            if node.container_path is None:
                node = node.with_container_path(record.container_path)
            if not node.is_processed:
                node = await self._process_descriptor(node)
                if node.has_failed:
                    await self._publish(node)
                    return

            new_status = record.run_status
            if new_status != node.run_status:
                if is_valid_transition(node.run_status, new_status):
                    _logger.info(
                        "Status of service %s is %s", node.service_name, new_status
                    )
                    node = node.with_run_status(new_status)
                else:
                    _logger.warning(
                        "Ignoring status of service %s going from %s to %s",
                        node.service_name,
                        node.run_status,
                        new_status,
                    )

            if node != self._nodes[path]:
                await self._publish(node)

    async def _process_descriptor(self, node: ServiceNode) -> ServiceNode:
        assert node.container_path is not None  # nosec
        try:
            data = await self._store.read(node.container_path)
        except NodeDoesNotExistError:
            _logger.warning(
                "Descriptor of service %s not found at %s yet",
                node.service_name,
                node.container_path,
            )
            return node

        try:
            container = ContainerSpec.model_validate_json(data)
        except ValidationError:
            _logger.exception(
                "Service %s published an invalid descriptor", node.service_name
            )
            return node.with_run_status(RunStatus.FAILED)
        _logger.info("Configuration of service %s PROCESSED", node.service_name)
        return node.with_container(container)
