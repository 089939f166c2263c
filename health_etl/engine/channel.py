"""Bounded hand-off primitives connecting the pipeline stages.

Blocking ``send``/``recv`` are the only suspension points of a worker. They
wake up periodically to observe the run-wide cancellation event.
"""

from __future__ import annotations

import queue
from threading import Condition, Event, Lock
from typing import Generic, Iterator, TypeVar

from ..errors import PipelineCancelled

T = TypeVar("T")

POLL_INTERVAL = 0.05


class ChannelClosed(Exception):
    """Raised by ``recv`` once the channel is closed and drained."""


class BoundedChannel(Generic[T]):
    """Multi-producer/multi-consumer queue with a hard capacity."""

    def __init__(self, capacity: int, cancel: Event | None = None, name: str = "channel") -> None:
        if capacity < 1:
            raise ValueError("Channel capacity must be >= 1")
        self.capacity = capacity
        self.name = name
        self._queue: queue.Queue[T] = queue.Queue(maxsize=capacity)
        self._cancel = cancel or Event()
        self._closed = Event()
        self._lock = Lock()
        self.blocked_sends = 0

    @property
    def closed(self) -> bool:
        return self._closed.is_set()

    def send(self, item: T) -> None:
        """Put ``item``, blocking while the channel is full (backpressure)."""

        if self._closed.is_set():
            raise RuntimeError(f"send on closed {self.name}")
        blocked = False
        while True:
            if self._cancel.is_set():
                raise PipelineCancelled(f"{self.name} cancelled")
            try:
                self._queue.put(item, timeout=POLL_INTERVAL)
                break
            except queue.Full:
                if not blocked:
                    blocked = True
                    with self._lock:
                        self.blocked_sends += 1

    def recv(self) -> T:
        """Take the next item; raise ``ChannelClosed`` once closed and empty."""

        while True:
            if self._cancel.is_set():
                raise PipelineCancelled(f"{self.name} cancelled")
            try:
                return self._queue.get(timeout=POLL_INTERVAL)
            except queue.Empty:
                if self._closed.is_set() and self._queue.empty():
                    raise ChannelClosed(self.name) from None

    def close(self) -> None:
        """Signal that no producer will send again."""

        self._closed.set()

    def __iter__(self) -> Iterator[T]:
        while True:
            try:
                yield self.recv()
            except ChannelClosed:
                return


class CountdownLatch:
    """Barrier released once ``count`` parties have called ``count_down``."""

    def __init__(self, count: int) -> None:
        if count < 0:
            raise ValueError("Latch count must be >= 0")
        self._count = count
        self._condition = Condition()

    @property
    def count(self) -> int:
        with self._condition:
            return self._count

    def count_down(self) -> None:
        with self._condition:
            if self._count > 0:
                self._count -= 1
                if self._count == 0:
                    self._condition.notify_all()

    def wait(self, cancel: Event | None = None) -> None:
        with self._condition:
            while self._count > 0:
                if cancel is not None and cancel.is_set():
                    raise PipelineCancelled("latch wait cancelled")
                self._condition.wait(timeout=POLL_INTERVAL)


class OrderedHandoff(Generic[T]):
    """Reorder buffer turning out-of-order completions into a strict sequence.

    Producers ``put(index, item)`` in any order; the single consumer takes
    items with ``take()`` in increasing index order. A producer whose index
    is ``window`` or more ahead of the next expected index waits, which
    bounds the buffer.
    """

    def __init__(self, total: int, window: int, cancel: Event | None = None) -> None:
        if window < 1:
            raise ValueError("Reorder window must be >= 1")
        self.total = total
        self.window = window
        self._cancel = cancel or Event()
        self._pending: dict[int, T] = {}
        self._next = 0
        self._condition = Condition()

    def put(self, index: int, item: T) -> None:
        with self._condition:
            while index >= self._next + self.window:
                if self._cancel.is_set():
                    raise PipelineCancelled("reorder buffer cancelled")
                self._condition.wait(timeout=POLL_INTERVAL)
            self._pending[index] = item
            self._condition.notify_all()

    def take(self) -> T:
        with self._condition:
            while self._next not in self._pending:
                if self._cancel.is_set():
                    raise PipelineCancelled("reorder buffer cancelled")
                self._condition.wait(timeout=POLL_INTERVAL)
            item = self._pending.pop(self._next)
            self._next += 1
            self._condition.notify_all()
            return item

    def __iter__(self) -> Iterator[T]:
        while self._next < self.total:
            yield self.take()


__all__ = [
    "BoundedChannel",
    "ChannelClosed",
    "CountdownLatch",
    "OrderedHandoff",
    "POLL_INTERVAL",
]
