"""Bounded, thread-safe pool of reusable resources."""

from __future__ import annotations

import threading
from collections import deque
from collections.abc import Callable
from contextlib import suppress
from typing import Generic, TypeVar

from loguru import logger

T = TypeVar("T")

log = logger.bind(component="pool")


class ResourcePool(Generic[T]):
    """Bounded pool of idle resources.

    The pool never creates anything: callers check out an idle resource (or
    get None and create their own) and check it back in after use. A checkin
    at capacity is rejected and the caller must close the resource itself.
    Resources are reused LIFO so the most recently validated one goes first.
    """

    def __init__(
        self,
        capacity: int = 512,
        close: Callable[[T], object] | None = None,
    ) -> None:
        """Create pool.

        Args:
            capacity: Maximum number of idle resources held.
            close: Cleanup function applied to idle resources by ``close_all``.
        """
        self._capacity = capacity
        self._close = close
        self._idle: deque[T] = deque()
        self._lock = threading.Lock()

    def checkout(self) -> T | None:
        """Take an idle resource, or None if the pool is empty."""
        with self._lock:
            if not self._idle:
                return None
            return self._idle.pop()

    def checkin(self, obj: T) -> bool:
        """Return a resource to the pool.

        Returns:
            False if the pool is at capacity; the caller must then close ``obj``.
        """
        with self._lock:
            if len(self._idle) >= self._capacity:
                return False
            self._idle.append(obj)
            return True

    def close_all(self) -> None:
        """Close and drop every idle resource."""
        with self._lock:
            idle = list(self._idle)
            self._idle.clear()

        if self._close is not None:
            for obj in idle:
                with suppress(Exception):
                    self._close(obj)

        if idle:
            log.debug("Closed {n} idle pooled resources", n=len(idle))

    @property
    def available(self) -> int:
        """Number of idle resources held."""
        with self._lock:
            return len(self._idle)

    @property
    def capacity(self) -> int:
        """Maximum pool capacity."""
        return self._capacity

    def __len__(self) -> int:
        return self.available
