"""Worker-side loopback notification server.

Runs on the worker runtime loop. A client asking for a task id gets a
deferred reply: the handler awaits the task's completion signal, which is set
from whatever thread finished the task, and only then answers READY. The
server never consumes registry entries; that is the waiting side's job.
"""

from __future__ import annotations

import asyncio
from contextlib import suppress

from loguru import logger

from taskbridge.core.exceptions import BridgeInitError
from taskbridge.registry import TaskId, TaskRegistry
from taskbridge.runtime import WorkerRuntime
from taskbridge.transport.protocol import (
    ERR,
    PONG,
    READY,
    Invalid,
    Ping,
    WaitFor,
    Watch,
    encode,
    parse_request,
)

log = logger.bind(component="notification-server")

# One connection per concurrently waiting coroutine can arrive at once
_BACKLOG = 1024


class NotificationServer:
    def __init__(
        self,
        registry: TaskRegistry,
        runtime: WorkerRuntime,
        host: str = "127.0.0.1",
        port: int = 0,
        startup_timeout: float = 10.0,
    ) -> None:
        self._registry = registry
        self._runtime = runtime
        self._host = host
        self._port = port
        self._startup_timeout = startup_timeout
        # Touched only on the runtime loop
        self._server: asyncio.Server | None = None
        self._handlers: set[asyncio.Task[None]] = set()
        self._watchers: set[asyncio.StreamWriter] = set()

    @property
    def address(self) -> tuple[str, int]:
        return self._host, self._port

    @property
    def running(self) -> bool:
        return self._server is not None and self._server.is_serving()

    def start(self) -> tuple[str, int]:
        """Bind and start serving. Blocks the calling thread until bound."""
        try:
            self._runtime.run_sync(self._start(), timeout=self._startup_timeout)
        except (OSError, TimeoutError) as e:
            raise BridgeInitError(
                f"Cannot bind notification listener on {self._host}:{self._port}: {e}"
            ) from e
        log.debug("Notification server listening", address=f"{self._host}:{self._port}")
        return self.address

    def stop(self) -> None:
        """Close the listener and drop every open connection."""
        self._runtime.run_sync(self._stop(), timeout=self._startup_timeout)
        log.debug("Notification server stopped", address=f"{self._host}:{self._port}")

    def restart(self) -> tuple[str, int]:
        """Stop, then rebind on the same port."""
        self.stop()
        return self.start()

    def notify(self, task_id: TaskId) -> None:
        """Push a resolved task id to connected watchers. Safe from any thread."""
        self._runtime.call_soon(self._push, task_id)

    async def _start(self) -> None:
        if self._server is not None:
            return
        self._server = await asyncio.start_server(
            self._handle, self._host, self._port, reuse_address=True, backlog=_BACKLOG
        )
        self._port = self._server.sockets[0].getsockname()[1]

    async def _stop(self) -> None:
        server, self._server = self._server, None
        if server is None:
            return

        server.close()
        for writer in list(self._watchers):
            writer.close()
        self._watchers.clear()

        handlers = list(self._handlers)
        for task in handlers:
            task.cancel()
        if handlers:
            await asyncio.gather(*handlers, return_exceptions=True)

        with suppress(TimeoutError):
            await asyncio.wait_for(server.wait_closed(), timeout=1.0)

    def _push(self, task_id: TaskId) -> None:
        line = encode(task_id)
        for writer in list(self._watchers):
            if writer.is_closing():
                self._watchers.discard(writer)
                continue
            writer.write(line)

    async def _handle(self, reader: asyncio.StreamReader, writer: asyncio.StreamWriter) -> None:
        task = asyncio.current_task()
        if task is not None:
            self._handlers.add(task)  # type: ignore[arg-type]

        try:
            while True:
                line = await reader.readline()
                if not line:
                    break
                await self._dispatch(line, writer)
                await writer.drain()
        except (ConnectionError, OSError) as e:
            log.debug("Notification connection dropped: {err}", err=e)
        except ValueError as e:
            # Line longer than the stream limit
            log.debug("Malformed request, closing connection: {err}", err=e)
        except asyncio.CancelledError:
            # Cancelled by _stop(); finish normally
            log.debug("Notification connection closed by server stop")
        finally:
            self._watchers.discard(writer)
            writer.close()
            if task is not None:
                self._handlers.discard(task)  # type: ignore[arg-type]

    async def _dispatch(self, line: bytes, writer: asyncio.StreamWriter) -> None:
        match parse_request(line):
            case Ping():
                writer.write(encode(PONG))
            case WaitFor(task_id=task_id):
                signal = self._registry.get(task_id)
                if signal is None:
                    writer.write(encode(ERR))
                    return
                await signal.wait_async()
                writer.write(encode(READY))
            case Watch():
                self._watchers.add(writer)
                replay = self._registry.resolved_ids()
                for task_id in replay:
                    writer.write(encode(task_id))
                log.debug("Watcher subscribed, replayed {n} resolved ids", n=len(replay))
            case Invalid(raw=raw):
                log.debug("Unknown request {raw!r}", raw=raw)
                writer.write(encode(ERR))
