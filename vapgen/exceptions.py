"""Error taxonomy for the controller."""


class ControllerError(Exception):
    """Base exception for controller errors"""


class StoreError(ControllerError):
    """Error reading or writing the backing object store"""

    def __init__(self, message: str = "", status: int = 0):
        super().__init__(message)
        self.status = status


class NotFoundError(StoreError):
    """Requested object does not exist"""

    def __init__(self, kind: str, name: str, namespace: str = ""):
        qualified = f"{namespace}/{name}" if namespace else name
        super().__init__(f'{kind} "{qualified}" not found', status=404)
        self.kind = kind
        self.name = name
        self.namespace = namespace


class ConflictError(StoreError):
    """Optimistic concurrency conflict on write"""

    def __init__(self, message: str = ""):
        super().__init__(message or "the object has been modified", status=409)


class GenerationError(ControllerError):
    """A policy could not be translated into admission objects"""
