"""Background worker threads and queue health."""

from __future__ import annotations

import threading
from dataclasses import dataclass
from typing import Callable, Generic, List, TypeVar

from sentinelkb.metrics.observability import get_logger
from sentinelkb.queue.memory import WorkQueue

T = TypeVar("T")

DEFAULT_MAX_QUEUE_LENGTH = 100


@dataclass(frozen=True)
class QueueHealth:
    healthy: bool
    depth: int
    max_length: int


def queue_health(queue: WorkQueue, max_length: int = DEFAULT_MAX_QUEUE_LENGTH) -> QueueHealth:
    depth = len(queue)
    return QueueHealth(healthy=depth <= max_length, depth=depth, max_length=max_length)


class WorkerPool(Generic[T]):
    """Fixed set of daemon threads feeding queue items to ``handler``.

    A failing item is logged and counted; the worker moves on to the next
    one. Workers exit once the queue is closed and has nothing ready.
    """

    def __init__(
        self,
        queue: WorkQueue[T],
        handler: Callable[[T], object],
        *,
        workers: int = 1,
        name: str = "capture-worker",
        poll_interval: float = 0.5,
    ) -> None:
        if workers < 1:
            raise ValueError("workers must be >= 1")
        self._queue = queue
        self._handler = handler
        self._workers = workers
        self._name = name
        self._poll_interval = poll_interval
        self._threads: List[threading.Thread] = []
        self._stop = threading.Event()
        self._counter_lock = threading.Lock()
        self._processed = 0
        self._failed = 0
        self._logger = get_logger("worker")

    @property
    def is_running(self) -> bool:
        return any(thread.is_alive() for thread in self._threads)

    @property
    def processed_count(self) -> int:
        with self._counter_lock:
            return self._processed

    @property
    def failed_count(self) -> int:
        with self._counter_lock:
            return self._failed

    def start(self) -> None:
        if self.is_running:
            return
        self._stop.clear()
        self._threads = [
            threading.Thread(target=self._run, name=f"{self._name}-{index}", daemon=True)
            for index in range(self._workers)
        ]
        for thread in self._threads:
            thread.start()
        self._logger.info("worker.started", name=self._name, workers=self._workers)

    def stop(self, drain: bool = True, timeout: float | None = None) -> list:
        """Close the queue and wait for the workers to exit.

        With ``drain`` the backlog is processed first; otherwise pending items
        are abandoned and returned. Workers still busy after ``timeout`` are
        told to exit after their current item.
        """

        abandoned = self._queue.shutdown(drain=drain)
        if abandoned:
            self._logger.warning("worker.abandoned", name=self._name, count=len(abandoned))
        for thread in self._threads:
            thread.join(timeout)
        if self.is_running:
            self._stop.set()
            self._logger.warning("worker.stop_timeout", name=self._name, timeout=timeout)
        else:
            self._logger.info(
                "worker.stopped",
                name=self._name,
                processed=self.processed_count,
                failed=self.failed_count,
            )
        return abandoned

    def _run(self) -> None:
        while not self._stop.is_set():
            try:
                item = self._queue.dequeue(timeout=self._poll_interval)
            except Exception as exc:
                self._logger.error("worker.dequeue_failed", name=self._name, exc_info=exc)
                self._stop.wait(self._poll_interval)
                continue
            if item is None:
                # A closed queue only returns None once nothing is ready
                if self._queue.closed:
                    return
                continue
            try:
                self._handler(item)
            except Exception as exc:
                with self._counter_lock:
                    self._failed += 1
                self._logger.error("worker.item_failed", name=self._name, item=str(item), exc_info=exc)
            else:
                with self._counter_lock:
                    self._processed += 1
