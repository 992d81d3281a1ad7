from ..errors import MaestroBaseError


class StoreError(MaestroBaseError):
    msg_template = "Coordination store failed on '{path}'"


class StoreConnectionLossError(StoreError):
    """Outcome of the operation is unknown: it may be retried"""

    msg_template = "Lost connection to the coordination store while accessing '{path}'"


class NodeDoesNotExistError(StoreError):
    msg_template = "Node '{path}' does NOT exist"


class NodeExistsError(StoreError):
    msg_template = "Node '{path}' already exists"


class NodeNotEmptyError(StoreError):
    msg_template = "Node '{path}' still has children"


class AccessDeniedError(StoreError):
    msg_template = "Access to node '{path}' was denied"
