"""Host collaborator surface.

The bridge only talks to the host through the ``Host`` protocol: a
``coroutine`` table holding the suspension primitive, host-managed TCP
sockets, wake queues, background tasks, a sleep primitive, and the glue that
turns a pollable future into a script-callable function.

``AsyncioHost`` is the reference host: a single asyncio event loop where
script coroutines are tasks, sockets are asyncio streams and the scheduler
is asyncio's. Blocking host-socket operations suspend only the calling
coroutine; the loop keeps running the others.
"""

from __future__ import annotations

import asyncio
import functools
from collections.abc import Awaitable, Callable, Coroutine
from dataclasses import dataclass
from typing import Any, Protocol, TypeAlias, TypeVar, runtime_checkable

from loguru import logger

from taskbridge.future import Pollable, Ready

T = TypeVar("T")

log = logger.bind(component="host")

YieldPrimitive: TypeAlias = Callable[[], Awaitable[None]]


async def _default_yield() -> None:
    await asyncio.sleep(0)


@dataclass(slots=True)
class CoroutineTable:
    """Mutable namespace holding the host's coroutine primitives."""

    yield_: YieldPrimitive = _default_yield


@runtime_checkable
class HostSocket(Protocol):
    async def connect(self, host: str, port: int) -> None: ...

    async def send(self, data: bytes) -> None: ...

    async def receive_line(self) -> bytes: ...

    def close(self) -> None: ...

    @property
    def closed(self) -> bool: ...


@runtime_checkable
class HostQueue(Protocol):
    def push(self, item: object) -> None: ...

    def pop(self) -> object | None: ...

    async def pop_wait(self) -> object: ...

    def size(self) -> int: ...


@runtime_checkable
class Host(Protocol):
    coroutine: CoroutineTable

    def tcp(self) -> HostSocket: ...

    def queue(self) -> HostQueue: ...

    def register_task(self, fn: Callable[[], Awaitable[None]]) -> None: ...

    async def sleep(self, seconds: float) -> None: ...

    def create_async_function(
        self, factory: Callable[..., Pollable[T]]
    ) -> Callable[..., Coroutine[Any, Any, T]]: ...


class AsyncioSocket:
    """Host socket backed by asyncio streams."""

    __slots__ = ("_reader", "_writer")

    def __init__(self) -> None:
        self._reader: asyncio.StreamReader | None = None
        self._writer: asyncio.StreamWriter | None = None

    async def connect(self, host: str, port: int) -> None:
        self._reader, self._writer = await asyncio.open_connection(host, port)

    async def send(self, data: bytes) -> None:
        if self._writer is None:
            raise ConnectionError("Socket is not connected")
        self._writer.write(data)
        await self._writer.drain()

    async def receive_line(self) -> bytes:
        """Read one line including its terminator. Returns b"" at EOF."""
        if self._reader is None:
            raise ConnectionError("Socket is not connected")
        return await self._reader.readline()

    def close(self) -> None:
        if self._writer is not None:
            self._writer.close()
        self._reader = None
        self._writer = None

    @property
    def closed(self) -> bool:
        if self._writer is None or self._reader is None:
            return True
        # Peer hung up: nothing more will ever be readable
        return self._writer.is_closing() or self._reader.at_eof()


class AsyncioQueue:
    """Host wake queue backed by an unbounded asyncio.Queue."""

    __slots__ = ("_queue",)

    def __init__(self) -> None:
        self._queue: asyncio.Queue[object] = asyncio.Queue()

    def push(self, item: object) -> None:
        self._queue.put_nowait(item)

    def pop(self) -> object | None:
        try:
            return self._queue.get_nowait()
        except asyncio.QueueEmpty:
            return None

    async def pop_wait(self) -> object:
        return await self._queue.get()

    def size(self) -> int:
        return self._queue.qsize()


class AsyncioHost:
    """Single-threaded cooperative host on an asyncio event loop.

    Must be created and used on the loop's own thread.
    """

    def __init__(self, loop: asyncio.AbstractEventLoop | None = None) -> None:
        self.coroutine = CoroutineTable()
        self._loop = loop
        self._tasks: set[asyncio.Task[Any]] = set()

    @property
    def loop(self) -> asyncio.AbstractEventLoop:
        if self._loop is None:
            self._loop = asyncio.get_running_loop()
        return self._loop

    def tcp(self) -> AsyncioSocket:
        return AsyncioSocket()

    def queue(self) -> AsyncioQueue:
        return AsyncioQueue()

    async def sleep(self, seconds: float) -> None:
        await asyncio.sleep(seconds)

    def register_task(self, fn: Callable[[], Awaitable[None]]) -> None:
        """Run ``fn`` as a background task for the lifetime of the host."""
        task = self.loop.create_task(_as_coroutine(fn), name=getattr(fn, "__name__", None))
        self._tasks.add(task)
        task.add_done_callback(self._task_done)

    def _task_done(self, task: asyncio.Task[Any]) -> None:
        self._tasks.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            log.error("Host task {name} failed: {err}", name=task.get_name(), err=exc)

    def spawn(self, script: Coroutine[Any, Any, T]) -> asyncio.Task[T]:
        """Start a script coroutine on the host scheduler."""
        return self.loop.create_task(script)

    def create_async_function(
        self, factory: Callable[..., Pollable[T]]
    ) -> Callable[..., Coroutine[Any, Any, T]]:
        """Wrap a pollable future factory as a script-callable function.

        The yield primitive is captured now, at creation time: functions made
        while a yield override is installed keep the bridged yield.
        """
        yield_ = self.coroutine.yield_

        @functools.wraps(factory)
        async def call(*args: Any, **kwargs: Any) -> T:
            future = factory(*args, **kwargs)
            while True:
                state = future.poll()
                if isinstance(state, Ready):
                    return state.unwrap()
                await yield_()

        return call

    async def close(self) -> None:
        """Cancel background tasks registered on this host."""
        tasks = list(self._tasks)
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        self._tasks.clear()


async def _as_coroutine(fn: Callable[[], Awaitable[None]]) -> None:
    await fn()
