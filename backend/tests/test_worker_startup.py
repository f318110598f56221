"""Worker startup validation and failure handling."""

from __future__ import annotations

from datetime import timedelta
from pathlib import Path
from typing import Any, Iterator
from unittest.mock import MagicMock

import pytest

from sermoncast_backend.jobs import STALL_SCAN_FUNC, schedule_stall_scan, set_job_queue
from sermoncast_backend.settings import Settings, set_settings
from sermoncast_backend.worker import _on_job_failure, _validate_settings


class _StubQueue:
    def __init__(self) -> None:
        self.calls: list[tuple[str, Any, str]] = []

    def enqueue(self, func: str, *args: Any, **kwargs: Any) -> None:
        self.calls.append(("enqueue", None, func))

    def enqueue_in(self, time_delta, func: str, *args: Any, **kwargs: Any) -> None:
        self.calls.append(("enqueue_in", time_delta, func))

    def has_pending(self, func: str) -> bool:
        return any(call[2] == func for call in self.calls)


@pytest.fixture(autouse=True)
def _reset_state() -> Iterator[None]:
    set_settings(None)
    set_job_queue(None)
    yield
    set_settings(None)
    set_job_queue(None)


def _make_settings(**overrides: object) -> Settings:
    """Build Settings with test defaults for required fields."""
    defaults: dict[str, object] = {
        "storage_root": Path("/tmp/test-sermoncast"),
        "redis_url": "redis://localhost:6379/0",
        "job_queue_name": "test:jobs",
        "job_timeout_seconds": 60,
        "ffmpeg_path": "ffmpeg",
    }
    defaults.update(overrides)
    return Settings(**defaults)  # type: ignore[arg-type]


class TestValidateSettings:
    def test_passes_with_valid_settings(self) -> None:
        _validate_settings(_make_settings())

    def test_does_not_require_openai_key(self) -> None:
        _validate_settings(_make_settings(openai_api_key=None))

    def test_fails_without_redis_url(self) -> None:
        with pytest.raises(RuntimeError, match="REDIS_URL"):
            _validate_settings(_make_settings(redis_url=""))

    def test_fails_with_non_positive_interval(self) -> None:
        with pytest.raises(RuntimeError, match="INTERVAL"):
            _validate_settings(_make_settings(stall_scan_interval_seconds=0))


class TestScheduleStallScan:
    def test_zero_delay_enqueues_immediately(self) -> None:
        queue = _StubQueue()

        schedule_stall_scan(queue=queue, delay_seconds=0)

        assert queue.calls == [("enqueue", None, STALL_SCAN_FUNC)]

    def test_positive_delay_uses_enqueue_in(self) -> None:
        queue = _StubQueue()

        schedule_stall_scan(queue=queue, delay_seconds=30)

        assert queue.calls == [("enqueue_in", timedelta(seconds=30), STALL_SCAN_FUNC)]

    def test_second_seed_does_not_duplicate(self) -> None:
        queue = _StubQueue()

        schedule_stall_scan(queue=queue, delay_seconds=0)
        schedule_stall_scan(queue=queue, delay_seconds=0)
        schedule_stall_scan(queue=queue, delay_seconds=30)

        assert queue.calls == [("enqueue", None, STALL_SCAN_FUNC)]


class TestOnJobFailure:
    def test_failed_stall_scan_is_rescheduled(self) -> None:
        set_settings(_make_settings(stall_scan_interval_seconds=15))
        queue = _StubQueue()
        set_job_queue(queue)
        job = MagicMock(id="rq-1", func_name=STALL_SCAN_FUNC)

        result = _on_job_failure(job, RuntimeError, RuntimeError("disk full"), None)

        assert result is True
        assert queue.calls == [("enqueue_in", timedelta(seconds=15), STALL_SCAN_FUNC)]

    def test_failed_stall_scan_does_not_duplicate_pending_scan(self) -> None:
        set_settings(_make_settings(stall_scan_interval_seconds=15))
        queue = _StubQueue()
        schedule_stall_scan(queue=queue, delay_seconds=15)
        set_job_queue(queue)
        job = MagicMock(id="rq-3", func_name=STALL_SCAN_FUNC)

        _on_job_failure(job, RuntimeError, RuntimeError("disk full"), None)

        assert len(queue.calls) == 1

    def test_other_failures_are_only_logged(self) -> None:
        set_settings(_make_settings())
        queue = _StubQueue()
        set_job_queue(queue)
        job = MagicMock(id="rq-2", func_name="something.else")

        assert _on_job_failure(job, ValueError, ValueError("bad"), None) is True
        assert queue.calls == []


class TestSettingsFromEnv:
    def test_reads_openai_api_key(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setenv("OPENAI_API_KEY", "sk-test-from-env")
        settings = Settings.from_env()
        assert settings.openai_api_key == "sk-test-from-env"

    def test_reads_stall_settings(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setenv("SERMONCAST_STALL_THRESHOLD_SECONDS", "300")
        monkeypatch.setenv("SERMONCAST_STALL_SCAN_INTERVAL_SECONDS", "30")
        settings = Settings.from_env()
        assert settings.stall_threshold_seconds == 300
        assert settings.stall_scan_interval_seconds == 30

    def test_rejects_non_numeric_values(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setenv("SERMONCAST_TRANSCRIBE_WORKERS", "many")
        with pytest.raises(ValueError):
            Settings.from_env()


class TestWorkerCanStart:
    def test_worker_connects_to_redis_and_starts(self) -> None:
        """Requires a reachable Redis; skipped otherwise."""
        from redis import ConnectionError as RedisConnectionError
        from redis import Redis
        from rq import Queue, Worker

        settings = Settings.from_env()
        try:
            connection = Redis.from_url(settings.redis_url)
            connection.ping()
        except (RedisConnectionError, OSError):
            pytest.skip("Redis is not available")

        queue = Queue("test:startup-check", connection=connection, default_timeout=10)
        worker = Worker(
            queues=[queue],
            connection=connection,
            name="test-sermoncast-worker",
            exception_handlers=[_on_job_failure],
        )
        assert worker.name == "test-sermoncast-worker"

        worker.register_death()

    def test_restart_skips_seeding_when_scan_already_scheduled(self) -> None:
        """Requires a reachable Redis; skipped otherwise."""
        from redis import ConnectionError as RedisConnectionError
        from redis import Redis
        from rq import Queue

        from sermoncast_backend.jobs import RedisJobQueue

        settings = Settings.from_env()
        try:
            connection = Redis.from_url(settings.redis_url)
            connection.ping()
        except (RedisConnectionError, OSError):
            pytest.skip("Redis is not available")

        queue = Queue("test:stall-seed", connection=connection)
        queue.empty()
        for job_id in queue.scheduled_job_registry.get_job_ids():
            queue.scheduled_job_registry.remove(job_id, delete_job=True)
        jobs = RedisJobQueue(queue=queue)

        try:
            schedule_stall_scan(queue=jobs, delay_seconds=60)
            schedule_stall_scan(queue=jobs, delay_seconds=0)
            schedule_stall_scan(queue=jobs, delay_seconds=60)

            assert queue.count == 0
            assert len(queue.scheduled_job_registry.get_job_ids()) == 1
        finally:
            for job_id in queue.scheduled_job_registry.get_job_ids():
                queue.scheduled_job_registry.remove(job_id, delete_job=True)
            queue.empty()
