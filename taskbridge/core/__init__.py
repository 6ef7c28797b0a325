from taskbridge.core.exceptions import (
    BridgeAlreadyInstalledError,
    BridgeInitError,
    ConfigurationError,
    RuntimeInitError,
    TaskBridgeError,
    TransportError,
    UnknownTaskError,
)

__all__ = [
    "BridgeAlreadyInstalledError",
    "BridgeInitError",
    "ConfigurationError",
    "RuntimeInitError",
    "TaskBridgeError",
    "TransportError",
    "UnknownTaskError",
]
