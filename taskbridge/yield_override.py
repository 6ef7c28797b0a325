"""Scoped replacement of the host's coroutine suspension primitive.

While a ``YieldOverride`` is installed, ``host.coroutine.yield_`` is the
bridged yield: instead of a generic suspend it waits, through host
primitives only, for the specific task the calling coroutine is blocked on.
The override is a single process-wide slot, so installations cannot nest.
"""

from __future__ import annotations

import threading
from types import TracebackType
from typing import TYPE_CHECKING

from loguru import logger

from taskbridge.core.exceptions import BridgeAlreadyInstalledError, TransportError
from taskbridge.future import get_active_task
from taskbridge.transport.client import NotificationClient

if TYPE_CHECKING:
    from taskbridge.bridge import TaskBridge
    from taskbridge.host import YieldPrimitive
    from taskbridge.registry import TaskId

log = logger.bind(component="yield")

_install_lock = threading.Lock()
_installed: YieldOverride | None = None


def installed() -> YieldOverride | None:
    """The currently installed override, if any."""
    return _installed


class YieldOverride:
    """Context manager installing the bridged yield on a bridge's host."""

    def __init__(self, bridge: TaskBridge) -> None:
        self._bridge = bridge
        self._original: YieldPrimitive | None = None
        self._restored = False

    def __enter__(self) -> YieldOverride:
        global _installed

        with _install_lock:
            if _installed is not None:
                raise BridgeAlreadyInstalledError()
            _installed = self

        host = self._bridge.host
        self._original = host.coroutine.yield_
        host.coroutine.yield_ = self._bridge.bridged_yield
        log.debug("Yield primitive overridden")
        return self

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc_val: BaseException | None,
        exc_tb: TracebackType | None,
    ) -> None:
        self.restore()

    def restore(self) -> None:
        """Put the original primitive back. Runs once; failures are only logged."""
        global _installed

        if self._restored:
            return
        self._restored = True

        try:
            if self._original is not None:
                self._bridge.host.coroutine.yield_ = self._original
                log.debug("Yield primitive restored")
        except Exception as e:
            log.error("Error restoring yield primitive: {err}", err=e)
        finally:
            with _install_lock:
                if _installed is self:
                    _installed = None


async def request_yield(bridge: TaskBridge, task_id: TaskId) -> None:
    """Round trip on a pooled connection until the server reports ``task_id`` READY.

    Any transport failure discards the connection, pauses for the cooldown
    and returns, so the coroutine re-polls and the next yield retries.
    """
    client: NotificationClient | None = None
    try:
        client = await _checkout(bridge)
        await client.wait(task_id)
    except TransportError as e:
        if client is not None:
            client.close()
        log.debug("Transport failure while waiting for task {task_id}: {err}", task_id=task_id, err=e)
        await bridge.host.sleep(bridge.config.retry_cooldown)
        return
    except BaseException:
        # Cancelled mid round trip: the reply would desync a pooled connection
        if client is not None:
            client.close()
        raise

    if not bridge.connections.checkin(client):
        client.close()


async def _checkout(bridge: TaskBridge) -> NotificationClient:
    address = bridge.address
    validate_idle = bridge.config.validate_idle

    while (client := bridge.connections.checkout()) is not None:
        if client.closed or client.address != address:
            client.close()
            continue
        try:
            if client.idle_for < validate_idle or await client.ping():
                return client
        except BaseException:
            # Cancelled mid PING: the PONG would desync the connection
            client.close()
            raise
        log.debug("Discarding stale pooled connection")
        client.close()

    return await NotificationClient.open(bridge.host, address)


async def push_yield(bridge: TaskBridge, task_id: TaskId) -> None:
    """Wait on the task's wake queue for a token pushed by the watcher."""
    queue = bridge.wake_queue(task_id)
    if queue is None:
        await bridge.host.sleep(bridge.config.retry_cooldown)
        return
    await queue.pop_wait()


async def bridged_yield(bridge: TaskBridge) -> None:
    task_id = get_active_task()
    if task_id is None:
        await bridge.host.sleep(bridge.config.retry_cooldown)
        return

    if bridge.config.mode == "push":
        await push_yield(bridge, task_id)
    else:
        await request_yield(bridge, task_id)
