"""Task id allocation and per-task completion signals.

The registry is the only structure written from both scheduling domains:
worker-side completion callbacks call ``complete`` while the host thread
registers, polls and consumes. The map is split into lock-striped shards so
the two sides only contend when they touch the same stripe.

Ids are drawn from a counter modulo ``2 ** id_bits``. When the counter wraps
onto an id whose entry was never collected, the stale entry is overwritten:
memory is bounded by the id space, not by the number of tasks.
"""

from __future__ import annotations

import asyncio
import threading
from typing import TypeAlias

from loguru import logger

log = logger.bind(component="registry")

TaskId: TypeAlias = int


class CompletionSignal:
    """One-shot slot: empty until set, after which exactly one consume succeeds.

    ``set`` may be called from any thread. Waiters may block a thread with
    ``wait`` or await it from any event loop with ``wait_async``; async
    waiters are resumed through their own loop's ``call_soon_threadsafe``.
    """

    __slots__ = ("_event", "_lock", "_consumed", "_waiters")

    def __init__(self) -> None:
        self._event = threading.Event()
        self._lock = threading.Lock()
        self._consumed = False
        self._waiters: list[tuple[asyncio.AbstractEventLoop, asyncio.Future[None]]] = []

    def set(self) -> None:
        with self._lock:
            if self._event.is_set():
                return
            self._event.set()
            waiters, self._waiters = self._waiters, []

        for loop, fut in waiters:
            try:
                loop.call_soon_threadsafe(_resolve, fut)
            except RuntimeError:
                # Waiter's loop is closed; nobody is left to wake
                pass

    def is_set(self) -> bool:
        return self._event.is_set()

    @property
    def consumed(self) -> bool:
        return self._consumed

    def wait(self, timeout: float | None = None) -> bool:
        return self._event.wait(timeout)

    async def wait_async(self) -> None:
        if self._event.is_set():
            return

        loop = asyncio.get_running_loop()
        fut: asyncio.Future[None] = loop.create_future()
        with self._lock:
            if self._event.is_set():
                return
            self._waiters.append((loop, fut))

        try:
            await fut
        finally:
            # Gone already if set() took the list
            with self._lock:
                try:
                    self._waiters.remove((loop, fut))
                except ValueError:
                    pass

    def try_consume(self) -> bool:
        """Claim the resolved value. Only the first call after ``set`` returns True."""
        with self._lock:
            if not self._event.is_set() or self._consumed:
                return False
            self._consumed = True
            return True


def _resolve(fut: asyncio.Future[None]) -> None:
    if not fut.done():
        fut.set_result(None)


class TaskRegistry:
    """Thread-safe TaskId -> CompletionSignal map with id allocation."""

    def __init__(self, id_bits: int = 32, shards: int = 16) -> None:
        self._modulus = 1 << id_bits
        self._next_id = 1
        self._id_lock = threading.Lock()
        self._shards: list[dict[TaskId, CompletionSignal]] = [{} for _ in range(shards)]
        self._locks = [threading.Lock() for _ in range(shards)]

    def _stripe(self, task_id: TaskId) -> int:
        return task_id % len(self._shards)

    def allocate(self) -> TaskId:
        """Return the next task id, wrapping around the id space and skipping 0."""
        with self._id_lock:
            task_id = self._next_id
            self._next_id = (self._next_id + 1) % self._modulus or 1
        return task_id

    def register(self, task_id: TaskId) -> CompletionSignal:
        """Create a fresh completion signal for ``task_id``.

        A live entry under the same id (wraparound before collection) is
        replaced, with a warning.
        """
        signal = CompletionSignal()
        idx = self._stripe(task_id)
        with self._locks[idx]:
            stale = self._shards[idx].get(task_id)
            self._shards[idx][task_id] = signal

        if stale is not None:
            log.warning(
                "Task id {task_id} reused before its previous task was collected; "
                "overwriting stale entry",
                task_id=task_id,
            )
        return signal

    def get(self, task_id: TaskId) -> CompletionSignal | None:
        idx = self._stripe(task_id)
        with self._locks[idx]:
            return self._shards[idx].get(task_id)

    def complete(self, task_id: TaskId, expected: CompletionSignal | None = None) -> bool:
        """Mark ``task_id`` resolved.

        With ``expected``, only that signal is resolved, so a task whose id
        was meanwhile reused cannot wake the newer task. Returns False when
        the id is no longer registered (already collected or overwritten).
        """
        signal = self.get(task_id)
        if expected is not None:
            expected.set()
            if signal is not expected:
                return False
        if signal is None:
            log.debug("Completion for unknown task {task_id} ignored", task_id=task_id)
            return False
        signal.set()
        return True

    def consume(self, task_id: TaskId, expected: CompletionSignal | None = None) -> bool:
        """Atomically claim a resolved id and drop its entry.

        Returns False when the id is unknown, not resolved yet, already
        consumed, or (with ``expected``) now belongs to another task.
        """
        idx = self._stripe(task_id)
        with self._locks[idx]:
            signal = self._shards[idx].get(task_id)
            if signal is None or (expected is not None and signal is not expected):
                return False
            if not signal.try_consume():
                return False
            del self._shards[idx][task_id]
            return True

    def discard(self, task_id: TaskId, expected: CompletionSignal | None = None) -> None:
        """Drop the entry for ``task_id``; with ``expected``, only if it is that signal."""
        idx = self._stripe(task_id)
        with self._locks[idx]:
            shard = self._shards[idx]
            if expected is None or shard.get(task_id) is expected:
                shard.pop(task_id, None)

    def resolved_ids(self) -> list[TaskId]:
        """Ids that are resolved but not yet consumed."""
        ids: list[TaskId] = []
        for lock, shard in zip(self._locks, self._shards, strict=True):
            with lock:
                ids.extend(tid for tid, sig in shard.items() if sig.is_set() and not sig.consumed)
        return ids

    def clear(self) -> None:
        for lock, shard in zip(self._locks, self._shards, strict=True):
            with lock:
                shard.clear()

    def __contains__(self, task_id: object) -> bool:
        if not isinstance(task_id, int):
            return False
        return self.get(task_id) is not None

    def __len__(self) -> int:
        total = 0
        for lock, shard in zip(self._locks, self._shards, strict=True):
            with lock:
                total += len(shard)
        return total
