"""Process-local registry of background transcription jobs.

Jobs move ``started -> processing -> completed | failed``. A job that fails
before it reaches ``processing`` may also go straight from ``started`` to
``failed``. Terminal jobs are evicted ``retention_seconds`` after they finish,
whether or not anyone polled them. Error details live on the media record,
never on the job.
"""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass, replace
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Callable, Protocol

logger = logging.getLogger(__name__)

DEFAULT_RETENTION_SECONDS = 60.0
# Rough wall-clock duration used only to animate progress while processing.
_EXPECTED_PROCESSING_SECONDS = 30.0


class JobState(str, Enum):
    STARTED = "started"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (JobState.COMPLETED, JobState.FAILED)


_ALLOWED_TRANSITIONS: dict[JobState, frozenset[JobState]] = {
    JobState.STARTED: frozenset({JobState.PROCESSING, JobState.FAILED}),
    JobState.PROCESSING: frozenset({JobState.COMPLETED, JobState.FAILED}),
    JobState.COMPLETED: frozenset(),
    JobState.FAILED: frozenset(),
}


class InvalidJobTransition(RuntimeError):
    """Raised when a job is asked to move to a state it cannot reach."""

    def __init__(self, job_id: str, current: JobState, requested: JobState) -> None:
        super().__init__(
            f"job {job_id} cannot move from {current.value} to {requested.value}"
        )
        self.job_id = job_id
        self.current = current
        self.requested = requested


class JobNotFound(KeyError):
    """Raised when a job id is not (or no longer) tracked."""


@dataclass(slots=True, frozen=True)
class TranscriptionJob:
    """Immutable snapshot of a tracked job."""

    job_id: str
    record_id: str
    state: JobState
    started_at: datetime
    last_updated_at: datetime
    finished_at: datetime | None = None

    def duration_seconds(self, now: datetime | None = None) -> float:
        end = self.finished_at or now or datetime.now(timezone.utc)
        return max(0.0, (end - self.started_at).total_seconds())

    def progress(self, now: datetime | None = None) -> float:
        """Approximate completion ratio for status displays."""
        if self.state.is_terminal:
            return 1.0
        if self.state is JobState.STARTED:
            return 0.05
        elapsed = self.duration_seconds(now)
        return round(min(0.95, 0.1 + elapsed / _EXPECTED_PROCESSING_SECONDS), 3)

    def to_dict(self, now: datetime | None = None) -> dict[str, Any]:
        return {
            "job_id": self.job_id,
            "record_id": self.record_id,
            "state": self.state.value,
            "started_at": self.started_at.isoformat(),
            "last_updated_at": self.last_updated_at.isoformat(),
            "finished_at": self.finished_at.isoformat() if self.finished_at else None,
            "duration_seconds": round(self.duration_seconds(now), 3),
            "progress": self.progress(now),
        }


class TimerProtocol(Protocol):
    daemon: bool

    def start(self) -> None: ...

    def cancel(self) -> None: ...


TimerFactory = Callable[..., TimerProtocol]


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class TranscriptionJobTracker:
    """Thread-safe job registry shared by the dispatcher and status endpoints."""

    def __init__(
        self,
        *,
        retention_seconds: float = DEFAULT_RETENTION_SECONDS,
        clock: Callable[[], datetime] = _utcnow,
        timer_factory: TimerFactory = threading.Timer,
    ) -> None:
        if retention_seconds < 0:
            raise ValueError("retention_seconds must not be negative.")
        self._retention_seconds = retention_seconds
        self._clock = clock
        self._timer_factory = timer_factory
        self._jobs: dict[str, TranscriptionJob] = {}
        self._timers: dict[str, TimerProtocol] = {}
        self._lock = threading.Lock()

    def register(self, job_id: str, record_id: str) -> TranscriptionJob:
        """Track a new job in ``started`` state.

        Reusing the id of a job that is still running is rejected; the id of a
        finished job awaiting eviction may be reused.
        """
        if not job_id:
            raise ValueError("job_id must not be empty.")
        now = self._clock()
        job = TranscriptionJob(
            job_id=job_id,
            record_id=record_id,
            state=JobState.STARTED,
            started_at=now,
            last_updated_at=now,
        )
        with self._lock:
            existing = self._jobs.get(job_id)
            if existing is not None and not existing.state.is_terminal:
                raise ValueError(f"job {job_id} is already {existing.state.value}")
            timer = self._timers.pop(job_id, None)
            if timer is not None:
                timer.cancel()
            self._jobs[job_id] = job
        logger.info("Registered transcription job %s for record %s", job_id, record_id)
        return job

    def mark_processing(self, job_id: str) -> TranscriptionJob:
        return self._transition(job_id, JobState.PROCESSING)

    def mark_completed(self, job_id: str) -> TranscriptionJob:
        return self._transition(job_id, JobState.COMPLETED)

    def mark_failed(self, job_id: str) -> TranscriptionJob:
        return self._transition(job_id, JobState.FAILED)

    def get(self, job_id: str) -> TranscriptionJob | None:
        with self._lock:
            return self._jobs.get(job_id)

    def list_jobs(self) -> list[TranscriptionJob]:
        with self._lock:
            jobs = list(self._jobs.values())
        return sorted(jobs, key=lambda job: job.started_at)

    def evict(self, job_id: str) -> bool:
        """Drop a finished job immediately. Running jobs are left alone."""
        with self._lock:
            job = self._jobs.get(job_id)
            if job is None or not job.state.is_terminal:
                return False
            del self._jobs[job_id]
            timer = self._timers.pop(job_id, None)
        if timer is not None:
            timer.cancel()
        logger.info("Removed finished job %s from tracking", job_id)
        return True

    def shutdown(self) -> None:
        """Cancel pending eviction timers."""
        with self._lock:
            timers = list(self._timers.values())
            self._timers.clear()
        for timer in timers:
            timer.cancel()

    def __len__(self) -> int:
        with self._lock:
            return len(self._jobs)

    def _transition(self, job_id: str, target: JobState) -> TranscriptionJob:
        now = self._clock()
        with self._lock:
            current = self._jobs.get(job_id)
            if current is None:
                raise JobNotFound(job_id)
            if target not in _ALLOWED_TRANSITIONS[current.state]:
                raise InvalidJobTransition(job_id, current.state, target)

            updated = replace(
                current,
                state=target,
                last_updated_at=now,
                finished_at=now if target.is_terminal else None,
            )
            self._jobs[job_id] = updated
            if target.is_terminal:
                self._schedule_eviction(updated)

        logger.info(
            "Job %s %s -> %s after %.1fs",
            job_id,
            current.state.value,
            target.value,
            updated.duration_seconds(now),
        )
        return updated

    def _schedule_eviction(self, job: TranscriptionJob) -> None:
        # Caller holds self._lock.
        timer = self._timer_factory(
            self._retention_seconds, self._evict_snapshot, args=(job,)
        )
        timer.daemon = True
        self._timers[job.job_id] = timer
        timer.start()

    def _evict_snapshot(self, job: TranscriptionJob) -> None:
        with self._lock:
            if self._jobs.get(job.job_id) is not job:
                return
            del self._jobs[job.job_id]
            self._timers.pop(job.job_id, None)
        logger.info("Removed finished job %s from tracking", job.job_id)


__all__ = [
    "DEFAULT_RETENTION_SECONDS",
    "InvalidJobTransition",
    "JobNotFound",
    "JobState",
    "TranscriptionJob",
    "TranscriptionJobTracker",
]
