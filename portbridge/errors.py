class PortBridgeError(Exception):
    pass


class ConfigError(PortBridgeError, ValueError):
    pass


class FatalError(PortBridgeError):
    """Terminates a pair listener and is surfaced as the process result."""


class BindError(FatalError):
    def __init__(self, address: str, cause: OSError):
        super().__init__(f"failed to bind {address}: {cause}")
        self.address = address
        self.cause = cause
