"""Job queue, job store and worker loop for the render pipeline."""

from ..models import QueueSettings
from .backends import (
    JobNotFoundError,
    JobQueue,
    JobStore,
    MalformedDescriptorError,
    QueueUnavailableError,
    decode_descriptor,
)
from .redis_backend import RedisJobQueue
from .sqlite_backend import SQLiteJobQueue
from .store import SQLAlchemyJobStore
from .worker import JobOutcome, RenderWorker, WorkerPool, build_worker_pool


def open_queue(settings: QueueSettings) -> JobQueue:
    """Build and connect the queue named by settings.url."""
    if settings.url.startswith("sqlite"):
        queue = SQLiteJobQueue.from_url(
            settings.url, queue_name=settings.name, poll_interval_s=settings.poll_interval_s
        )
    else:
        queue = RedisJobQueue(settings.url, queue_name=settings.name)
    queue.connect()
    return queue


__all__ = [
    "JobNotFoundError",
    "JobQueue",
    "JobStore",
    "MalformedDescriptorError",
    "QueueUnavailableError",
    "decode_descriptor",
    "RedisJobQueue",
    "SQLiteJobQueue",
    "SQLAlchemyJobStore",
    "JobOutcome",
    "RenderWorker",
    "WorkerPool",
    "build_worker_pool",
    "open_queue",
]
