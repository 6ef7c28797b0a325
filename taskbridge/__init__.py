"""taskbridge - run long-latency work off a single-threaded cooperative host.

A cooperative host can only suspend a script coroutine at its own yield
point. taskbridge runs the actual work on a process-wide, multi-threaded
worker runtime and wakes the waiting coroutine through a loopback socket
that the host's scheduler polls like any other.

Example:

    import asyncio
    from taskbridge import AsyncioHost, TaskBridge

    def read_file(path: str) -> bytes:
        with open(path, "rb") as f:
            return f.read()

    async def main():
        host = AsyncioHost()
        with TaskBridge(host) as bridge:
            get_file = bridge.create_async_function(read_file)
            content = await host.spawn(get_file("/etc/hostname"))

    asyncio.run(main())
"""

from taskbridge.bridge import TaskBridge, create_async_function, get_bridge
from taskbridge.config import BridgeConfig, load_config
from taskbridge.core.exceptions import (
    BridgeAlreadyInstalledError,
    BridgeInitError,
    ConfigurationError,
    RuntimeInitError,
    TaskBridgeError,
    TransportError,
    UnknownTaskError,
)
from taskbridge.future import PENDING, Ready, TaskFuture, TaskState
from taskbridge.host import AsyncioHost, CoroutineTable, Host, HostQueue, HostSocket
from taskbridge.logging import LogConfig
from taskbridge.pool import ResourcePool
from taskbridge.registry import CompletionSignal, TaskId, TaskRegistry
from taskbridge.runtime import WorkerRuntime, runtime
from taskbridge.yield_override import YieldOverride

__all__ = [
    "PENDING",
    "AsyncioHost",
    "BridgeAlreadyInstalledError",
    "BridgeConfig",
    "BridgeInitError",
    "CompletionSignal",
    "ConfigurationError",
    "CoroutineTable",
    "Host",
    "HostQueue",
    "HostSocket",
    "LogConfig",
    "Ready",
    "ResourcePool",
    "RuntimeInitError",
    "TaskBridge",
    "TaskBridgeError",
    "TaskFuture",
    "TaskId",
    "TaskRegistry",
    "TaskState",
    "TransportError",
    "UnknownTaskError",
    "WorkerRuntime",
    "YieldOverride",
    "create_async_function",
    "get_bridge",
    "load_config",
    "runtime",
]
