"""Host-side notification clients.

Both clients only use host primitives (host sockets, host sleep, host
background tasks), so from the host's point of view waiting for a task is an
ordinary blocking socket read that suspends just the calling coroutine.
"""

from __future__ import annotations

import time
from collections.abc import Callable
from typing import TypeAlias

from loguru import logger
from tenacity import (
    AsyncRetrying,
    RetryError,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from taskbridge.core.exceptions import TransportError, UnknownTaskError
from taskbridge.host import Host, HostSocket
from taskbridge.registry import TaskId
from taskbridge.transport.protocol import ERR, PING, PONG, READY, WATCH, encode, parse_task_id

log = logger.bind(component="notification-client")

AddressFn: TypeAlias = Callable[[], tuple[str, int]]


class NotificationClient:
    """One persistent connection to the notification server."""

    __slots__ = ("_socket", "_address", "_last_used")

    def __init__(self, socket: HostSocket, address: tuple[str, int]) -> None:
        self._socket = socket
        self._address = address
        self._last_used = time.monotonic()

    @classmethod
    async def open(cls, host: Host, address: tuple[str, int]) -> NotificationClient:
        client = cls(host.tcp(), address)
        await client.connect()
        return client

    @property
    def address(self) -> tuple[str, int]:
        return self._address

    @property
    def closed(self) -> bool:
        return self._socket.closed

    @property
    def idle_for(self) -> float:
        return time.monotonic() - self._last_used

    async def connect(self) -> None:
        try:
            await self._socket.connect(*self._address)
        except OSError as e:
            self.close()
            raise TransportError(f"Cannot connect to {self._address[0]}:{self._address[1]}: {e}") from e

    async def _request(self, token: bytes | int) -> bytes:
        try:
            await self._socket.send(encode(token))
            line = await self._socket.receive_line()
        except (OSError, ValueError) as e:
            raise TransportError(f"Notification round trip failed: {e}") from e
        if not line:
            raise TransportError("Notification server closed the connection")
        self._last_used = time.monotonic()
        return line.strip()

    async def ping(self) -> bool:
        """Keep-alive check. False means the connection is unusable."""
        try:
            return await self._request(PING) == PONG
        except TransportError as e:
            log.debug("PING failed: {err}", err=e)
            return False

    async def wait(self, task_id: TaskId) -> None:
        """Block the calling coroutine until the server reports ``task_id`` resolved."""
        reply = await self._request(task_id)
        if reply == READY:
            return
        if reply == ERR:
            raise UnknownTaskError(task_id)
        raise TransportError(f"Unexpected reply {reply!r} for task {task_id}")

    def close(self) -> None:
        self._socket.close()


class NotificationWatcher:
    """Host background task that receives pushed task ids.

    Subscribes with WATCH and hands every received id to ``on_ready``. When
    the connection is lost it reconnects with exponential backoff; a cycle
    that exhausts its attempts pauses for the cooldown and starts over, so
    the watcher outlives server restarts.
    """

    def __init__(
        self,
        host: Host,
        address: AddressFn,
        on_ready: Callable[[TaskId], None],
        *,
        cooldown: float = 0.001,
        reconnect_attempts: int = 10,
        reconnect_max_delay: float = 1.0,
    ) -> None:
        self._host = host
        self._address = address
        self._on_ready = on_ready
        self._cooldown = cooldown
        self._reconnect_attempts = reconnect_attempts
        self._reconnect_max_delay = reconnect_max_delay
        self._stopped = False
        self._socket: HostSocket | None = None
        self.connections = 0

    def stop(self) -> None:
        self._stopped = True
        if self._socket is not None:
            self._socket.close()

    async def _subscribe(self) -> HostSocket:
        socket = self._host.tcp()
        host, port = self._address()
        try:
            await socket.connect(host, port)
            await socket.send(encode(WATCH))
        except OSError as e:
            socket.close()
            raise TransportError(f"Cannot subscribe to {host}:{port}: {e}") from e
        return socket

    async def _connect(self) -> HostSocket:
        async for attempt in AsyncRetrying(
            retry=retry_if_exception_type(TransportError),
            stop=stop_after_attempt(self._reconnect_attempts),
            wait=wait_exponential(multiplier=self._cooldown, max=self._reconnect_max_delay),
            sleep=self._host.sleep,
            reraise=False,
        ):
            with attempt:
                return await self._subscribe()
        raise AssertionError("unreachable")

    async def run(self) -> None:
        while not self._stopped:
            try:
                socket = await self._connect()
            except RetryError as e:
                log.warning("Watcher could not reconnect: {err}", err=e.last_attempt.exception())
                await self._host.sleep(self._reconnect_max_delay)
                continue

            self._socket = socket
            self.connections += 1
            log.debug("Watcher connected (connection #{n})", n=self.connections)
            try:
                await self._read(socket)
            except (OSError, ValueError) as e:
                log.debug("Watcher connection lost: {err}", err=e)
            finally:
                socket.close()
                self._socket = None

            if not self._stopped:
                await self._host.sleep(self._cooldown)

    async def _read(self, socket: HostSocket) -> None:
        while not self._stopped:
            line = await socket.receive_line()
            if not line:
                return
            task_id = parse_task_id(line)
            if task_id is None:
                log.debug("Ignoring unexpected watcher line {line!r}", line=line)
                continue
            self._on_ready(task_id)
