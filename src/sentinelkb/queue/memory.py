"""In-process work queue with optional backpressure."""

from __future__ import annotations

import threading
from collections import deque
from typing import Deque, Generic, List, Optional, Protocol, TypeVar

from sentinelkb.errors import QueueClosedError, QueueFullError
from sentinelkb.metrics.observability import PipelineMetrics

T = TypeVar("T")


class WorkQueue(Protocol[T]):
    """Queue contract shared by the in-memory and durable queues."""

    def enqueue(self, item, timeout: float | None = None):
        """Add work; raises :class:`QueueClosedError` after shutdown."""

    def dequeue(self, timeout: float | None = None) -> Optional[T]:
        """Block for the next item; ``None`` on timeout or once closed and drained."""

    def shutdown(self, drain: bool = True) -> list:
        """Stop accepting work and return whatever was abandoned."""

    @property
    def closed(self) -> bool:
        ...

    def __len__(self) -> int:
        ...


class InMemoryWorkQueue(Generic[T]):
    """FIFO queue handing every item to exactly one consumer.

    Pending items live only in process memory; ``shutdown(drain=False)``
    returns them to the caller instead of processing them. No retries.
    """

    def __init__(self, maxsize: int = 0, *, name: str = "captures") -> None:
        self._maxsize = maxsize
        self._name = name
        self._items: Deque[T] = deque()
        self._lock = threading.Lock()
        self._not_empty = threading.Condition(self._lock)
        self._not_full = threading.Condition(self._lock)
        self._closed = False

    @property
    def name(self) -> str:
        return self._name

    @property
    def closed(self) -> bool:
        return self._closed

    def __len__(self) -> int:
        with self._lock:
            return len(self._items)

    def enqueue(self, item: T, timeout: float | None = None) -> T:
        with self._not_full:
            if self._closed:
                raise QueueClosedError(f"Queue {self._name} is shut down")
            if self._maxsize > 0:
                has_room = self._not_full.wait_for(
                    lambda: self._closed or len(self._items) < self._maxsize, timeout
                )
                if self._closed:
                    raise QueueClosedError(f"Queue {self._name} is shut down")
                if not has_room:
                    raise QueueFullError(f"Queue {self._name} is full ({self._maxsize} items)")
            self._items.append(item)
            self._publish_depth()
            self._not_empty.notify()
        return item

    def dequeue(self, timeout: float | None = None) -> Optional[T]:
        with self._not_empty:
            self._not_empty.wait_for(lambda: self._items or self._closed, timeout)
            if not self._items:
                return None
            item = self._items.popleft()
            self._publish_depth()
            self._not_full.notify()
            return item

    def shutdown(self, drain: bool = True) -> List[T]:
        with self._lock:
            self._closed = True
            abandoned: List[T] = []
            if not drain:
                abandoned = list(self._items)
                self._items.clear()
                self._publish_depth()
            self._not_empty.notify_all()
            self._not_full.notify_all()
            return abandoned

    def _publish_depth(self) -> None:
        PipelineMetrics.set_queue_depth(self._name, len(self._items))
