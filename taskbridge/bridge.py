"""Async task bridge: script-callable functions backed by the worker runtime.

Example:

    from taskbridge import AsyncioHost, TaskBridge

    async def main():
        host = AsyncioHost()
        bridge = TaskBridge(host)

        async def fetch(url: str) -> bytes:
            ...

        get = bridge.create_async_function(fetch)
        body = await host.spawn(get("https://example.com"))
"""

from __future__ import annotations

import functools
import threading
import weakref
from collections.abc import Callable, Coroutine
from types import TracebackType
from typing import Any, TypeVar

from loguru import logger

from taskbridge.config import BridgeConfig
from taskbridge.core.exceptions import TransportError
from taskbridge.future import TaskFuture
from taskbridge.host import Host, HostQueue
from taskbridge.pool import ResourcePool
from taskbridge.registry import CompletionSignal, TaskId, TaskRegistry
from taskbridge.runtime import WorkerRuntime, runtime
from taskbridge.transport.client import NotificationClient, NotificationWatcher
from taskbridge.transport.server import NotificationServer
from taskbridge.yield_override import YieldOverride, bridged_yield

T = TypeVar("T")

_FDS_PER_CONNECTION = 2  # Both loopback ends live in this process
_FD_BASE_OVERHEAD = 64


def _check_fd_budget(connections: int) -> None:
    import resource

    estimated = connections * _FDS_PER_CONNECTION + _FD_BASE_OVERHEAD
    soft, hard = resource.getrlimit(resource.RLIMIT_NOFILE)
    if soft >= estimated:
        return

    target = estimated if hard == resource.RLIM_INFINITY else min(estimated, hard)
    try:
        resource.setrlimit(resource.RLIMIT_NOFILE, (target, hard))
        logger.info(
            "Raised file descriptor limit from {old} to {new}",
            old=soft, new=target,
        )
    except (ValueError, OSError):
        logger.warning(
            "File descriptor limit ({soft}) may be insufficient for {n} pooled connections "
            "(estimated need: {estimated}). Consider running: ulimit -n {estimated}",
            soft=soft, n=connections, estimated=estimated,
        )


class TaskBridge:
    """Connects one host to the process-wide worker runtime.

    Owns the task registry, the notification server, and the host-side
    pools. Setup is lazy: the runtime, the listener and (in push mode) the
    watcher task come up on the first spawned task, or on ``start()``.
    """

    def __init__(self, host: Host, config: BridgeConfig | None = None) -> None:
        self.host = host
        self.config = config or BridgeConfig()
        self.registry = TaskRegistry(
            id_bits=self.config.id_bits, shards=self.config.registry_shards
        )
        self.connections: ResourcePool[NotificationClient] = ResourcePool(
            self.config.pool_capacity, close=NotificationClient.close
        )
        self.wake_queues: ResourcePool[HostQueue] = ResourcePool(self.config.pool_capacity)

        # Host thread only
        self._queues: dict[TaskId, HostQueue] = {}

        self._runtime: WorkerRuntime | None = None
        self._server: NotificationServer | None = None
        self._watcher: NotificationWatcher | None = None
        self._start_lock = threading.Lock()
        self._log = logger.bind(component="bridge", mode=self.config.mode)

    @property
    def started(self) -> bool:
        return self._server is not None

    @property
    def runtime(self) -> WorkerRuntime:
        if self._runtime is None:
            self.start()
        assert self._runtime is not None
        return self._runtime

    @property
    def server(self) -> NotificationServer:
        """The running listener.

        Raises:
            TransportError: The bridge is not started, or was closed.
        """
        server = self._server
        if server is None:
            raise TransportError("Bridge is not started")
        return server

    @property
    def address(self) -> tuple[str, int]:
        return self.server.address

    @property
    def watcher(self) -> NotificationWatcher | None:
        return self._watcher

    def start(self) -> None:
        """Bring up the runtime, the listener, and the push watcher. Idempotent.

        Raises:
            BridgeInitError: The runtime or the listener cannot be started.
        """
        with self._start_lock:
            if self._server is not None:
                return

            config = self.config
            self._runtime = runtime(config.worker_threads, config.startup_timeout)
            server = NotificationServer(
                self.registry,
                self._runtime,
                host=config.host,
                port=config.port,
                startup_timeout=config.startup_timeout,
            )
            server.start()
            self._server = server

            if config.mode == "request":
                _check_fd_budget(config.pool_capacity)
            else:
                self._watcher = NotificationWatcher(
                    self.host,
                    lambda: server.address,
                    self._wake,
                    cooldown=config.retry_cooldown,
                    reconnect_attempts=config.reconnect_attempts,
                    reconnect_max_delay=config.reconnect_max_delay,
                )
                self.host.register_task(self._watcher.run)

            self._log.debug("Bridge started", address="{}:{}".format(*server.address))

    def close(self) -> None:
        """Stop the listener and the watcher and drop pooled resources.

        The worker runtime is process wide and keeps running.
        """
        with self._start_lock:
            server, self._server = self._server, None
            watcher, self._watcher = self._watcher, None

        if watcher is not None:
            watcher.stop()
        if server is not None:
            server.stop()
        self.connections.close_all()
        self.wake_queues.close_all()
        # Waiters still parked on a wake queue re-poll and fall back to the cooldown
        for queue in self._queues.values():
            queue.push(True)
        self._queues.clear()
        self.registry.clear()
        self._log.debug("Bridge closed")

    def __enter__(self) -> TaskBridge:
        self.start()
        return self

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc_val: BaseException | None,
        exc_tb: TracebackType | None,
    ) -> None:
        self.close()

    # Task lifecycle hooks, called by TaskFuture

    def attach(self, task_id: TaskId) -> HostQueue | None:
        """Reserve host-side wait resources for a freshly spawned task."""
        if self.config.mode != "push":
            return None
        queue = self.wake_queues.checkout()
        if queue is None:
            queue = self.host.queue()
        self._queues[task_id] = queue
        return queue

    def detach(self, task_id: TaskId, queue: HostQueue | None = None) -> None:
        """Release what ``attach`` reserved for this task."""
        if queue is None:
            return
        if self._queues.get(task_id) is queue:
            del self._queues[task_id]
        # Leftover wake tokens (replays, spurious pushes) must not leak to the next task
        while queue.pop() is not None:
            pass
        self.wake_queues.checkin(queue)

    def wake_queue(self, task_id: TaskId) -> HostQueue | None:
        return self._queues.get(task_id)

    def notify_complete(self, task_id: TaskId, signal: CompletionSignal | None = None) -> None:
        """Mark a task resolved. Called on the worker side when the operation ends."""
        if self.registry.complete(task_id, signal) and self.config.mode == "push":
            server = self._server
            if server is not None:
                server.notify(task_id)

    def _wake(self, task_id: TaskId) -> None:
        queue = self._queues.get(task_id)
        if queue is not None:
            queue.push(True)

    # Script surface

    async def bridged_yield(self) -> None:
        """Suspension primitive installed on the host while the override is active."""
        await bridged_yield(self)

    def install(self) -> YieldOverride:
        """Override the host's yield primitive; use as a context manager."""
        return YieldOverride(self)

    def spawn(self, operation: Any, *args: Any, **kwargs: Any) -> TaskFuture[T]:
        """Create an unpolled future for ``operation``. Nothing runs until the first poll."""
        return TaskFuture(self, operation, *args, **kwargs)

    def create_async_function(
        self, operation: Callable[..., Any]
    ) -> Callable[..., Coroutine[Any, Any, T]]:
        """Expose ``operation`` to scripts as a host function.

        The function is created while the yield override is installed, so
        it suspends through the bridge for as long as it lives. Errors raised
        by ``operation`` propagate to the calling script unchanged.
        """

        @functools.wraps(operation)
        def factory(*args: Any, **kwargs: Any) -> TaskFuture[T]:
            return TaskFuture(self, operation, *args, **kwargs)

        with YieldOverride(self):
            return self.host.create_async_function(factory)


_bridges: weakref.WeakKeyDictionary[Any, TaskBridge] = weakref.WeakKeyDictionary()
_bridges_lock = threading.Lock()


def get_bridge(host: Host, config: BridgeConfig | None = None) -> TaskBridge:
    """Per-host default bridge, created on first use. ``config`` only applies then."""
    with _bridges_lock:
        bridge = _bridges.get(host)
        if bridge is None:
            bridge = TaskBridge(host, config)
            _bridges[host] = bridge
        return bridge


def create_async_function(
    host: Host,
    operation: Callable[..., Any],
    config: BridgeConfig | None = None,
) -> Callable[..., Coroutine[Any, Any, T]]:
    """Create a script-callable async function on the host's default bridge."""
    return get_bridge(host, config).create_async_function(operation)
