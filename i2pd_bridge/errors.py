"""Error taxonomy shared by the controller, the provisioner and the command channel."""

from typing import Dict


class BridgeError(Exception):
    code = "BRIDGE_ERROR"

    def __init__(self, message: str = ""):
        super().__init__(message)
        self.message = message or self.__class__.__name__

    def to_wire(self) -> Dict[str, str]:
        return {"code": self.code, "message": self.message}


class InvalidArgumentError(BridgeError):
    """Bad command arguments; retrying without correcting them will fail again."""

    code = "INVALID_ARGUMENT"


class NotInitializedError(BridgeError):
    """Operation issued before ``initialize``."""

    code = "NOT_INITIALIZED"


class WorkspaceIOError(BridgeError, OSError):
    """Workspace provisioning failed (permission denied, disk full, ...)."""

    code = "IO_ERROR"


class EngineError(BridgeError):
    """Opaque failure reported by the router engine, surfaced verbatim."""

    code = "ENGINE_ERROR"


class UnsupportedOperationError(BridgeError):
    code = "UNSUPPORTED_OPERATION"
