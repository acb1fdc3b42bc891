from __future__ import annotations

import threading
import time

import pytest

from sentinelkb.errors import QueueClosedError, QueueFullError
from sentinelkb.queue import InMemoryWorkQueue, WorkerPool, queue_health


def _wait_for(predicate, timeout: float = 5.0) -> bool:
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(0.01)
    return predicate()


def test_fifo_for_single_consumer():
    queue = InMemoryWorkQueue()
    for item in ("a", "b", "c"):
        queue.enqueue(item)
    assert len(queue) == 3
    assert [queue.dequeue(timeout=0) for _ in range(3)] == ["a", "b", "c"]
    assert queue.dequeue(timeout=0) is None


def test_dequeue_blocks_until_item_arrives():
    queue = InMemoryWorkQueue()
    received = []
    consumer = threading.Thread(target=lambda: received.append(queue.dequeue(timeout=5)))
    consumer.start()
    time.sleep(0.05)
    queue.enqueue("late")
    consumer.join(timeout=5)
    assert received == ["late"]


def test_bounded_queue_raises_when_full():
    queue = InMemoryWorkQueue(maxsize=1)
    queue.enqueue("a")
    with pytest.raises(QueueFullError):
        queue.enqueue("b", timeout=0.01)


def test_bounded_queue_applies_backpressure():
    queue = InMemoryWorkQueue(maxsize=1)
    queue.enqueue("a")
    threading.Timer(0.05, queue.dequeue).start()
    queue.enqueue("b", timeout=5)
    assert queue.dequeue(timeout=0) == "b"


def test_enqueue_after_shutdown_raises():
    queue = InMemoryWorkQueue()
    queue.shutdown()
    assert queue.closed
    with pytest.raises(QueueClosedError):
        queue.enqueue("x")


def test_shutdown_wakes_blocked_consumer():
    queue = InMemoryWorkQueue()
    received = []
    consumer = threading.Thread(target=lambda: received.append(queue.dequeue()))
    consumer.start()
    time.sleep(0.05)
    queue.shutdown()
    consumer.join(timeout=5)
    assert received == [None]


def test_shutdown_without_drain_returns_abandoned_items():
    queue = InMemoryWorkQueue()
    queue.enqueue("a")
    queue.enqueue("b")
    assert queue.shutdown(drain=False) == ["a", "b"]
    assert len(queue) == 0


def test_shutdown_with_drain_keeps_backlog_for_consumers():
    queue = InMemoryWorkQueue()
    queue.enqueue("a")
    assert queue.shutdown(drain=True) == []
    assert queue.dequeue(timeout=0) == "a"
    assert queue.dequeue(timeout=0) is None


def test_each_item_handed_to_exactly_one_worker():
    queue = InMemoryWorkQueue()
    seen = []
    lock = threading.Lock()

    def handler(item):
        with lock:
            seen.append(item)

    pool = WorkerPool(queue, handler, workers=4, poll_interval=0.01)
    pool.start()
    for index in range(200):
        queue.enqueue(index)
    pool.stop(drain=True, timeout=5)
    assert sorted(seen) == list(range(200))
    assert pool.processed_count == 200
    assert not pool.is_running


def test_worker_survives_failing_items():
    queue = InMemoryWorkQueue()
    handled = []

    def handler(item):
        if item == "bad":
            raise RuntimeError("boom")
        handled.append(item)

    pool = WorkerPool(queue, handler, workers=1, poll_interval=0.01)
    pool.start()
    for item in ("ok-1", "bad", "ok-2"):
        queue.enqueue(item)
    assert _wait_for(lambda: pool.processed_count + pool.failed_count == 3)
    pool.stop(timeout=5)
    assert handled == ["ok-1", "ok-2"]
    assert pool.failed_count == 1


def test_stop_without_drain_abandons_backlog():
    queue = InMemoryWorkQueue()
    release = threading.Event()
    started = threading.Event()

    def handler(item):
        started.set()
        release.wait(5)

    pool = WorkerPool(queue, handler, workers=1, poll_interval=0.01)
    pool.start()
    queue.enqueue("in-flight")
    assert started.wait(5)
    queue.enqueue("pending-1")
    queue.enqueue("pending-2")
    threading.Timer(0.1, release.set).start()
    abandoned = pool.stop(drain=False, timeout=5)
    assert abandoned == ["pending-1", "pending-2"]
    assert pool.processed_count == 1


def test_worker_pool_rejects_zero_workers():
    with pytest.raises(ValueError):
        WorkerPool(InMemoryWorkQueue(), lambda item: None, workers=0)


def test_queue_health_threshold():
    queue = InMemoryWorkQueue()
    for index in range(3):
        queue.enqueue(index)
    assert queue_health(queue, max_length=3).healthy
    unhealthy = queue_health(queue, max_length=2)
    assert not unhealthy.healthy
    assert unhealthy.depth == 3


class FlakyQueue(InMemoryWorkQueue):
    def __init__(self) -> None:
        super().__init__()
        self.failures = 1

    def dequeue(self, timeout=None):
        if self.failures:
            self.failures -= 1
            raise RuntimeError("database unavailable")
        return super().dequeue(timeout)


def test_worker_survives_dequeue_errors():
    queue = FlakyQueue()
    handled = []
    pool = WorkerPool(queue, handled.append, workers=1, poll_interval=0.01)
    pool.start()
    queue.enqueue("a")
    assert _wait_for(lambda: handled == ["a"])
    assert pool.is_running
    pool.stop(timeout=5)
    assert queue.failures == 0
