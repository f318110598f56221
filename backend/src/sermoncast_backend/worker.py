"""RQ worker entrypoint for the periodic stall scan."""

from __future__ import annotations

import logging
from types import TracebackType
from typing import Any

from redis import Redis
from rq import Queue, Worker

from .jobs import (
    STALL_SCAN_FUNC,
    RedisJobQueue,
    get_job_queue,
    schedule_stall_scan,
)
from .settings import Settings, get_settings

logger = logging.getLogger(__name__)


def _validate_settings(settings: Settings) -> None:
    """Fail fast on configuration that would break the scan chain."""
    if not settings.redis_url:
        raise RuntimeError("SERMONCAST_REDIS_URL is not configured.")
    if settings.stall_scan_interval_seconds <= 0:
        raise RuntimeError(
            "SERMONCAST_STALL_SCAN_INTERVAL_SECONDS must be positive."
        )
    if settings.stall_threshold_seconds < 0:
        raise RuntimeError(
            "SERMONCAST_STALL_THRESHOLD_SECONDS must not be negative."
        )


def _on_job_failure(
    job: Any,
    exc_type: type[BaseException],
    exc_value: BaseException,
    tb: TracebackType | None,
) -> bool:
    """Log failed jobs and keep the periodic stall scan alive.

    A failing scan never reaches its own re-enqueue step, so the next one is
    queued here instead.
    """
    logger.error(
        "Job %s (%s) failed: %s",
        getattr(job, "id", "?"),
        getattr(job, "func_name", "?"),
        exc_value,
    )

    if getattr(job, "func_name", None) == STALL_SCAN_FUNC:
        settings = get_settings()
        try:
            schedule_stall_scan(
                queue=get_job_queue(settings),
                delay_seconds=settings.stall_scan_interval_seconds,
            )
        except Exception:
            logger.exception("Failed to re-seed stall scan after failure")

    return True


def run_worker() -> None:
    """Start an RQ worker listening on the configured queue."""
    settings = get_settings()
    _validate_settings(settings)

    connection = Redis.from_url(settings.redis_url)
    queue = Queue(
        settings.job_queue_name,
        connection=connection,
        default_timeout=settings.job_timeout_seconds,
    )

    schedule_stall_scan(
        queue=RedisJobQueue(queue=queue),
        delay_seconds=0,
    )

    logger.info(
        "Starting worker; queue=%s redis=%s stall_interval=%ss",
        settings.job_queue_name,
        settings.redis_url,
        settings.stall_scan_interval_seconds,
    )

    worker = Worker(
        queues=[queue],
        connection=connection,
        name="sermoncast-worker",
        exception_handlers=[_on_job_failure],
    )
    worker.work(with_scheduler=True)


__all__ = ["run_worker"]


if __name__ == "__main__":
    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s %(message)s",
    )
    run_worker()
