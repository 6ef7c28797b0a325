"""Custom exception hierarchy for taskbridge.

All bridge-specific exceptions inherit from TaskBridgeError, enabling
callers to catch all bridge exceptions with a single except clause.
Errors raised by user operations are never wrapped: they reach the
script exactly as the operation raised them.
"""

from __future__ import annotations


class TaskBridgeError(Exception):
    """Base exception for all taskbridge errors."""


class ConfigurationError(TaskBridgeError):
    """Raised for invalid configuration values or unknown config keys."""


class BridgeInitError(TaskBridgeError):
    """Raised when the bridge cannot be set up. Fatal, there is no degraded mode."""


class RuntimeInitError(BridgeInitError):
    """Raised when the background worker runtime cannot be started."""


class BridgeAlreadyInstalledError(TaskBridgeError):
    """Raised when a second yield override is installed while one is active."""

    def __init__(self) -> None:
        super().__init__(
            "A yield override is already installed. Only one bridge installation "
            "may be active at a time."
        )


class TransportError(TaskBridgeError):
    """Raised by the notification client on any connect/send/receive failure.

    Recovered locally by the bridged yield: the connection is discarded and
    the coroutine is retried on the next scheduler tick.
    """


class UnknownTaskError(TransportError):
    """Raised when the notification server replies ERR for a task id."""

    def __init__(self, task_id: int) -> None:
        self.task_id = task_id
        super().__init__(f"Notification server does not know task {task_id}")
