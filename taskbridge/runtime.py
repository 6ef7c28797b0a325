"""Process-wide background worker runtime.

The runtime is an asyncio event loop running forever on a daemon thread,
plus a ThreadPoolExecutor for blocking callables. It is built lazily by the
first caller of ``runtime()`` and then lives for the rest of the process.
Everything submitted here runs independently of the host thread.
"""

from __future__ import annotations

import asyncio
import contextvars
import functools
import inspect
import threading
from collections.abc import Awaitable, Callable, Coroutine
from concurrent.futures import Future, ThreadPoolExecutor
from typing import Any, TypeVar

from loguru import logger

from taskbridge.core.exceptions import RuntimeInitError

R = TypeVar("R")
T = TypeVar("T")

log = logger.bind(component="runtime")


class WorkerRuntime:
    """Background event loop thread with an executor for blocking work."""

    def __init__(self, workers: int | None = None, startup_timeout: float = 10.0) -> None:
        self.workers = workers
        self._executor = ThreadPoolExecutor(
            max_workers=workers, thread_name_prefix="taskbridge-worker"
        )
        self._loop = asyncio.new_event_loop()
        self._loop.set_default_executor(self._executor)
        self._started = threading.Event()
        self._thread = threading.Thread(
            target=self._run_loop,
            daemon=True,
            name="taskbridge-runtime",
        )

        try:
            self._thread.start()
        except RuntimeError as e:
            self._loop.close()
            self._executor.shutdown(wait=False)
            raise RuntimeInitError(f"Cannot start runtime thread: {e}") from e

        if not self._started.wait(startup_timeout):
            raise RuntimeInitError(f"Runtime loop did not start within {startup_timeout}s")

        log.debug("Worker runtime started (workers={workers})", workers=workers or "auto")

    def _run_loop(self) -> None:
        """Run event loop in background thread."""
        asyncio.set_event_loop(self._loop)
        self._loop.call_soon(self._started.set)
        self._loop.run_forever()

    @property
    def loop(self) -> asyncio.AbstractEventLoop:
        return self._loop

    @property
    def running(self) -> bool:
        return self._thread.is_alive() and self._loop.is_running()

    def submit(
        self,
        operation: Callable[..., Awaitable[R]] | Callable[..., R] | Awaitable[R],
        *args: Any,
        **kwargs: Any,
    ) -> Future[R]:
        """Run ``operation`` to completion on the runtime.

        Coroutine functions and awaitables run on the runtime loop; plain
        callables run on the executor with the caller's context variables.
        The returned future can be observed from any thread.
        """
        return asyncio.run_coroutine_threadsafe(
            self.execute(operation, *args, **kwargs), self._loop
        )

    async def execute(self, operation: Any, *args: Any, **kwargs: Any) -> Any:
        """Await ``operation`` on the runtime loop, offloading plain callables to the executor."""
        if inspect.isawaitable(operation):
            return await operation
        if inspect.iscoroutinefunction(operation):
            return await operation(*args, **kwargs)

        ctx = contextvars.copy_context()
        call = functools.partial(ctx.run, operation, *args, **kwargs)
        result = await self._loop.run_in_executor(self._executor, call)
        # Callables returning awaitables (e.g. lambdas around coroutines)
        if inspect.isawaitable(result):
            return await result
        return result

    def call_soon(self, callback: Callable[..., object], *args: Any) -> None:
        """Schedule ``callback`` on the runtime loop from any thread."""
        self._loop.call_soon_threadsafe(callback, *args)

    def run_sync(self, coro: Coroutine[Any, Any, T], timeout: float = 30.0) -> T:
        """Run coroutine on the runtime loop and block the calling thread for it."""
        try:
            current = asyncio.get_running_loop()
        except RuntimeError:
            current = None
        if current is self._loop:
            raise RuntimeError("Cannot block on the runtime loop from inside it")

        future: Future[T] = asyncio.run_coroutine_threadsafe(coro, self._loop)
        return future.result(timeout=timeout)

    def shutdown(self) -> None:
        """Stop the loop thread. Only used to reset the process-wide runtime in tests."""
        self._loop.call_soon_threadsafe(self._loop.stop)
        self._thread.join(timeout=10)
        self._executor.shutdown(wait=False, cancel_futures=True)


_runtime: WorkerRuntime | None = None
_runtime_lock = threading.Lock()


def runtime(workers: int | None = None, startup_timeout: float = 10.0) -> WorkerRuntime:
    """Return the process-wide worker runtime, building it on first use.

    Arguments only apply to the call that builds the runtime; later callers
    get the existing instance whatever they pass.
    """
    global _runtime

    current = _runtime
    if current is not None:
        return current

    with _runtime_lock:
        if _runtime is None:
            _runtime = WorkerRuntime(workers=workers, startup_timeout=startup_timeout)
        return _runtime


def reset_runtime() -> None:
    """Tear down the process-wide runtime so the next ``runtime()`` builds a new one."""
    global _runtime

    with _runtime_lock:
        current, _runtime = _runtime, None

    if current is not None:
        current.shutdown()
        log.debug("Worker runtime reset")
