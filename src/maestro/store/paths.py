import random
from dataclasses import dataclass

from ..models.application import ContainerKind
from .base import join_path


def new_app_id(app_name: str) -> str:
    """Identifies one deployment of an application e.g. `shop-04211337`"""
    return f"{app_name}-{random.randint(0, 99_999_999):08d}"  # noqa: S311 # nosec


@dataclass(frozen=True)
class StoreLayout:
    """Paths of the nodes of one deployment

        /<app_id>
            /services/<name>               service record (owned by the agent)
            /conf/<name>                   container spec (written by the launcher)
            /containers/<kind>/<name>      descriptor (ephemeral, owned by the agent)
            /shutdown                      exists once shutdown was requested
            /master/app                    application description
    """

    app_id: str

    @property
    def root(self) -> str:
        return join_path(self.app_id)

    @property
    def services(self) -> str:
        return join_path(self.root, "services")

    @property
    def conf(self) -> str:
        return join_path(self.root, "conf")

    @property
    def containers(self) -> str:
        return join_path(self.root, "containers")

    @property
    def shutdown(self) -> str:
        return join_path(self.root, "shutdown")

    @property
    def master(self) -> str:
        return join_path(self.root, "master")

    @property
    def application(self) -> str:
        return join_path(self.master, "app")

    def service(self, name: str) -> str:
        return join_path(self.services, name)

    def container_conf(self, name: str) -> str:
        return join_path(self.conf, name)

    def kind_subtree(self, kind: ContainerKind) -> str:
        return join_path(self.containers, kind.store_subtree)

    def container(self, kind: ContainerKind, name: str) -> str:
        return join_path(self.kind_subtree(kind), name)

    def skeleton(self) -> list[str]:
        """Persistent nodes to create, parents first"""
        return [
            self.root,
            self.services,
            self.conf,
            self.containers,
            *(self.kind_subtree(kind) for kind in ContainerKind),
            self.master,
        ]
