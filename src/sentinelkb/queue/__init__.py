"""Background processing queues and worker threads."""

from .durable import DEFAULT_RETRY_DELAYS, Job, JobState, SqlJobQueue
from .memory import InMemoryWorkQueue, WorkQueue
from .worker import QueueHealth, WorkerPool, queue_health

__all__ = [
    "DEFAULT_RETRY_DELAYS",
    "InMemoryWorkQueue",
    "Job",
    "JobState",
    "QueueHealth",
    "SqlJobQueue",
    "WorkQueue",
    "WorkerPool",
    "queue_health",
]
