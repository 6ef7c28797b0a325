"""Pollable future wrapping a user operation run on the worker runtime.

State machine::

    CREATED --first poll--> SPAWNED --handle done--> READY

The first poll allocates a task id, registers its completion signal and
submits the operation; every poll that returns ``PENDING`` records the task
id as the calling coroutine's active task so the bridged yield knows what to
wait for. Once the operation has finished the registry entry is consumed and
the result (or the operation's own exception) is delivered as ``Ready``.
"""

from __future__ import annotations

import functools
from concurrent.futures import Future
from contextvars import ContextVar
from dataclasses import dataclass
from enum import Enum
from typing import TYPE_CHECKING, Any, Generic, Protocol, TypeAlias, TypeVar

from loguru import logger

T = TypeVar("T")

if TYPE_CHECKING:
    from taskbridge.bridge import TaskBridge
    from taskbridge.host import HostQueue
    from taskbridge.registry import CompletionSignal, TaskId

log = logger.bind(component="future")

# One slot per host coroutine: every asyncio task runs in its own context
_active_task: ContextVar[int | None] = ContextVar("taskbridge_active_task", default=None)


def get_active_task() -> int | None:
    """Task id the current coroutine is waiting on, if any."""
    return _active_task.get()


def set_active_task(task_id: int) -> None:
    _active_task.set(task_id)


def clear_active_task() -> None:
    _active_task.set(None)


class TaskState(Enum):
    CREATED = "created"
    SPAWNED = "spawned"
    READY = "ready"


class _Pending:
    __slots__ = ()

    def __repr__(self) -> str:
        return "PENDING"


PENDING = _Pending()
Pending: TypeAlias = _Pending


@dataclass(frozen=True, slots=True)
class Ready(Generic[T]):
    """Resolved outcome: either a value or the exception the operation raised."""

    value: T | None = None
    error: BaseException | None = None

    @property
    def ok(self) -> bool:
        return self.error is None

    def unwrap(self) -> T:
        if self.error is not None:
            raise self.error
        return self.value  # type: ignore[return-value]


class Pollable(Protocol[T]):
    def poll(self) -> Ready[T] | Pending: ...


class TaskFuture(Generic[T]):
    """Future driven by host polls; the operation itself runs on the worker runtime."""

    __slots__ = (
        "_bridge", "_operation", "_args", "_kwargs",
        "_state", "_task_id", "_signal", "_queue", "_handle", "_ready",
    )

    def __init__(self, bridge: TaskBridge, operation: Any, *args: Any, **kwargs: Any) -> None:
        self._bridge = bridge
        self._operation = operation
        self._args = args
        self._kwargs = kwargs
        self._state = TaskState.CREATED
        self._task_id: TaskId | None = None
        self._signal: CompletionSignal | None = None
        self._queue: HostQueue | None = None
        self._handle: Future[T] | None = None
        self._ready: Ready[T] | None = None

    @property
    def state(self) -> TaskState:
        return self._state

    @property
    def task_id(self) -> TaskId | None:
        return self._task_id

    def poll(self) -> Ready[T] | Pending:
        match self._state:
            case TaskState.READY:
                assert self._ready is not None
                return self._ready
            case TaskState.CREATED:
                self._spawn()
                assert self._task_id is not None
                set_active_task(self._task_id)
                return PENDING

        assert self._handle is not None and self._task_id is not None
        if not self._handle.done():
            # Woken for something else; keep waiting on the same task
            set_active_task(self._task_id)
            return PENDING

        return self._finish(self._handle, self._task_id)

    def _spawn(self) -> None:
        bridge = self._bridge
        bridge.start()

        task_id = bridge.registry.allocate()
        self._signal = bridge.registry.register(task_id)
        self._queue = bridge.attach(task_id)

        self._task_id = task_id
        handle: Future[T] = bridge.runtime.submit(self._operation, *self._args, **self._kwargs)
        # Runs after the handle is done, so READY on the wire implies a done handle
        handle.add_done_callback(functools.partial(_on_done, bridge, task_id, self._signal))
        self._handle = handle
        self._state = TaskState.SPAWNED
        log.debug("Spawned task {task_id}", task_id=task_id)

    def _finish(self, handle: Future[T], task_id: TaskId) -> Ready[T]:
        bridge = self._bridge
        if not bridge.registry.consume(task_id, self._signal):
            # Completion callback has not run yet, or the id was overwritten
            bridge.registry.discard(task_id, self._signal)
            log.debug("Task {task_id} collected before its completion signal", task_id=task_id)
        bridge.detach(task_id, self._queue)
        self._queue = None
        clear_active_task()

        try:
            ready: Ready[T] = Ready(value=handle.result())
        except Exception as e:
            ready = Ready(error=e)

        self._ready = ready
        self._state = TaskState.READY
        self._operation = None
        self._args = ()
        self._kwargs = {}
        log.debug("Task {task_id} ready (ok={ok})", task_id=task_id, ok=ready.ok)
        return ready


def _on_done(
    bridge: TaskBridge, task_id: TaskId, signal: CompletionSignal, _handle: Future[Any]
) -> None:
    bridge.notify_complete(task_id, signal)
