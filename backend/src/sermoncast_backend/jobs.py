"""Job queue helpers for scheduled maintenance tasks."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import timedelta
from typing import Any, Protocol

from redis import Redis
from rq import Queue
from rq.job import Job

from .settings import Settings

logger = logging.getLogger(__name__)

_JOB_QUEUE: JobQueueProtocol | None = None

STALL_SCAN_FUNC = "sermoncast_backend.tasks.stall.scan_stalled_transcriptions"


class JobQueueProtocol(Protocol):
    """Protocol describing the methods used for enqueuing work."""

    def enqueue(
        self, func: str, *args: Any, **kwargs: Any
    ) -> Any:  # pragma: no cover - Protocol stub
        ...

    def enqueue_in(
        self, time_delta: timedelta, func: str, *args: Any, **kwargs: Any
    ) -> Any:  # pragma: no cover - Protocol stub
        ...

    def has_pending(self, func: str) -> bool:  # pragma: no cover - Protocol stub
        ...


@dataclass(slots=True)
class RedisJobQueue:
    """Thin wrapper around RQ's Queue with configuration helpers."""

    queue: Queue

    @classmethod
    def from_settings(cls, settings: Settings) -> "RedisJobQueue":
        connection = Redis.from_url(settings.redis_url)
        queue = Queue(
            settings.job_queue_name,
            connection=connection,
            default_timeout=settings.job_timeout_seconds,
        )
        return cls(queue=queue)

    def enqueue(self, func: str, *args: Any, **kwargs: Any) -> Any:
        return self.queue.enqueue(func, *args, **kwargs)

    def enqueue_in(
        self, time_delta: timedelta, func: str, *args: Any, **kwargs: Any
    ) -> Any:
        return self.queue.enqueue_in(time_delta, func, *args, **kwargs)

    def has_pending(self, func: str) -> bool:
        """Return True when ``func`` is queued or scheduled but not yet running."""
        job_ids = list(self.queue.job_ids)
        job_ids.extend(self.queue.scheduled_job_registry.get_job_ids())
        jobs = Job.fetch_many(job_ids, connection=self.queue.connection)
        return any(job is not None and job.func_name == func for job in jobs)


def get_job_queue(settings: Settings) -> JobQueueProtocol:
    """Return a cached job queue instance built from the provided settings."""
    global _JOB_QUEUE

    if _JOB_QUEUE is None:
        _JOB_QUEUE = RedisJobQueue.from_settings(settings)

    return _JOB_QUEUE


def set_job_queue(queue: JobQueueProtocol | None) -> None:
    """Override the cached queue instance, mainly for testing."""
    global _JOB_QUEUE
    _JOB_QUEUE = queue


def schedule_stall_scan(*, queue: JobQueueProtocol, delay_seconds: float) -> Any:
    """Schedule the next stalled-transcription scan unless one is already pending.

    Worker restarts, extra workers and the failure handler all call this, so
    at most one scan waits in the queue or scheduler at a time. A scan that
    is currently running does not count as pending, which lets it queue its
    own successor.
    """
    if queue.has_pending(STALL_SCAN_FUNC):
        logger.info("Stall scan already pending; not scheduling another")
        return None
    if delay_seconds <= 0:
        return queue.enqueue(STALL_SCAN_FUNC)
    return queue.enqueue_in(timedelta(seconds=delay_seconds), STALL_SCAN_FUNC)


__all__ = [
    "JobQueueProtocol",
    "RedisJobQueue",
    "STALL_SCAN_FUNC",
    "get_job_queue",
    "schedule_stall_scan",
    "set_job_queue",
]
