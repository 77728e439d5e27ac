"""
Tests for content_pipeline.scheduling.job_scheduler -- recurring jobs and health.

Covers:
    - Registration rules
    - Inline and queued execution with RecurringJobRecord bookkeeping
    - Timers enqueueing executions
    - Health monitor: stale warning, single restart, auto-retry, backlog
    - Shutdown: bounded drain of critical jobs, queued executions cancelled
"""

import asyncio
import logging
import time

import pytest

from content_pipeline.config import JobsConfig
from content_pipeline.exceptions import ConfigurationError
from content_pipeline.models import JobStatus, RecurringJobRecord
from content_pipeline.scheduling import JobScheduler
from content_pipeline.scheduling.job_scheduler import CRITICAL_QUEUE

CRITICAL_JOB = "publish-scheduled-posts"
RETRY_JOB = "retry-failed-posts"
PLAIN_JOB = "cleanup-old-records"


async def _noop():
    return None


async def _wait_until(predicate, timeout=2.0):
    """Poll *predicate* until it holds or *timeout* seconds pass."""
    deadline = time.monotonic() + timeout
    while not predicate():
        if time.monotonic() > deadline:
            raise AssertionError("condition not reached in time")
        await asyncio.sleep(0.01)


def _records(store, job_id, status=None):
    return [
        r for r in store.job_records.values()
        if r.job_id == job_id and (status is None or r.status is status)
    ]


@pytest.fixture
def scheduler(store, clock):
    return JobScheduler(store, JobsConfig(), clock=clock)


# =========================================================================
# Registration
# =========================================================================


class TestRegistration:
    def test_register_records_metadata(self, scheduler, clock):
        registration = scheduler.register(PLAIN_JOB, 60, _noop)

        assert registration.registered_at == clock()
        assert registration.queue == "default"
        assert scheduler.job_ids == [PLAIN_JOB]

    def test_duplicate_id_rejected(self, scheduler):
        scheduler.register(PLAIN_JOB, 60, _noop)
        with pytest.raises(ConfigurationError, match="already registered"):
            scheduler.register(PLAIN_JOB, 30, _noop)

    @pytest.mark.parametrize("interval", [0, -5])
    def test_non_positive_interval_rejected(self, scheduler, interval):
        with pytest.raises(ConfigurationError, match="must be positive"):
            scheduler.register(PLAIN_JOB, interval, _noop)

    def test_deregister_unknown_returns_none(self, scheduler):
        assert scheduler.deregister("ghost") is None

    @pytest.mark.asyncio
    async def test_trigger_unknown_job_raises(self, scheduler):
        with pytest.raises(ConfigurationError, match="not registered"):
            await scheduler.trigger("ghost")


# =========================================================================
# Execution
# =========================================================================


class TestExecution:
    @pytest.mark.asyncio
    async def test_run_once_completes_record(self, scheduler, store, clock):
        scheduler.register(PLAIN_JOB, 60, _noop)

        record = await scheduler.run_once(PLAIN_JOB)

        assert record.status is JobStatus.COMPLETED
        assert record.progress == 100
        assert record.started_at == clock()
        assert record.duration_ms is not None
        assert store.job_records[record.id] == record
        assert await scheduler.last_execution(PLAIN_JOB) == clock()

    @pytest.mark.asyncio
    async def test_handler_failure_is_recorded_not_raised(self, scheduler, store, caplog):
        async def _boom():
            raise RuntimeError("database unreachable")

        scheduler.register(PLAIN_JOB, 60, _boom)
        with caplog.at_level(logging.ERROR):
            record = await scheduler.run_once(PLAIN_JOB)

        assert record.status is JobStatus.FAILED
        assert record.error == "database unreachable"
        assert scheduler.in_flight(PLAIN_JOB) == 0
        assert "[SCHEDULER] Job cleanup-old-records failed" in caplog.text

    @pytest.mark.asyncio
    async def test_trigger_runs_on_worker(self, scheduler, store):
        calls = []

        async def _handler():
            calls.append("ran")

        scheduler.register(PLAIN_JOB, 3600, _handler)
        await scheduler.start()
        try:
            queued = await scheduler.trigger(PLAIN_JOB)
            assert queued.status is JobStatus.QUEUED
            assert queued.job_type == "manual"

            await _wait_until(lambda: store.job_records[queued.id].status is JobStatus.COMPLETED)
        finally:
            await scheduler.stop()

        assert calls == ["ran"]
        assert scheduler.queued(PLAIN_JOB) == 0

    @pytest.mark.asyncio
    async def test_timer_enqueues_executions(self, store):
        scheduler = JobScheduler(store, JobsConfig(workers={"default": 1}))
        scheduler.register(PLAIN_JOB, 0.02, _noop)

        await scheduler.start()
        try:
            await _wait_until(lambda: len(_records(store, PLAIN_JOB, JobStatus.COMPLETED)) >= 2)
        finally:
            await scheduler.stop()

        assert all(r.job_type == "scheduled" for r in _records(store, PLAIN_JOB))

    @pytest.mark.asyncio
    async def test_deregistered_job_queued_execution_is_cancelled(self, scheduler, store):
        scheduler.register(PLAIN_JOB, 60, _noop)
        record = await scheduler.trigger(PLAIN_JOB)
        scheduler.deregister(PLAIN_JOB)

        settled = await scheduler._execute(PLAIN_JOB, record)

        assert settled.status is JobStatus.CANCELLED
        assert store.job_records[record.id].error == "job deregistered"

    @pytest.mark.asyncio
    async def test_last_execution_falls_back_to_store(self, store, clock):
        started = clock()
        await store.save_job_record(
            RecurringJobRecord(
                id="job-1",
                job_id=PLAIN_JOB,
                job_type="scheduled",
                status=JobStatus.COMPLETED,
                queued_at=started,
                started_at=started,
            )
        )
        scheduler = JobScheduler(store, clock=clock)

        assert await scheduler.last_execution(PLAIN_JOB) == started
        assert await scheduler.last_execution("never-ran") is None


# =========================================================================
# Health monitor
# =========================================================================


class TestHealthMonitor:
    @pytest.mark.asyncio
    async def test_healthy_jobs_raise_no_signals(self, scheduler, clock):
        scheduler.register(PLAIN_JOB, 60, _noop)
        await scheduler.run_once(PLAIN_JOB)
        clock.advance(seconds=100)

        assert await scheduler.check_health() == []

    @pytest.mark.asyncio
    async def test_stale_job_warns(self, scheduler, clock):
        scheduler.register(PLAIN_JOB, 60, _noop)
        clock.advance(seconds=121)

        signals = await scheduler.check_health()

        assert [(s.kind, s.job_id) for s in signals] == [("stale", PLAIN_JOB)]
        assert scheduler.restart_count(PLAIN_JOB) == 0

    @pytest.mark.asyncio
    async def test_stalled_critical_job_restarts_exactly_once(self, scheduler, clock):
        scheduler.register(CRITICAL_JOB, 60, _noop, queue=CRITICAL_QUEUE)
        await scheduler.run_once(CRITICAL_JOB)
        clock.advance(seconds=181)

        first = await scheduler.check_health()
        second = await scheduler.check_health()

        restarted = [s for s in first if s.kind == "restarted"]
        assert len(restarted) == 1
        assert restarted[0].level == "ERROR"
        assert "stalled" in restarted[0].message
        assert [s for s in second if s.kind == "restarted"] == []
        assert scheduler.restart_count(CRITICAL_JOB) == 1
        registration = scheduler.get_registration(CRITICAL_JOB)
        assert registration.queue == CRITICAL_QUEUE
        assert registration.registered_at == clock()

    @pytest.mark.asyncio
    async def test_non_critical_job_restarts_after_hard_limit(self, scheduler, clock):
        scheduler.register(PLAIN_JOB, 90000, _noop)
        clock.advance(hours=24, seconds=1)

        signals = await scheduler.check_health()

        assert [s.kind for s in signals] == ["restarted"]

    @pytest.mark.asyncio
    async def test_failed_allow_listed_job_is_retried_once(self, scheduler, store):
        async def _boom():
            raise RuntimeError("upstream down")

        scheduler.register(RETRY_JOB, 3600, _boom)
        await scheduler.run_once(RETRY_JOB)

        first = await scheduler.check_health()
        second = await scheduler.check_health()

        assert [s.kind for s in first] == ["retried"]
        assert "upstream down" in first[0].message
        assert second == []
        assert scheduler.queued(RETRY_JOB) == 1
        assert [r.job_type for r in _records(store, RETRY_JOB, JobStatus.QUEUED)] == ["auto_retry"]

    @pytest.mark.asyncio
    async def test_failed_job_outside_allow_list_is_left_alone(self, scheduler):
        async def _boom():
            raise RuntimeError("nope")

        scheduler.register(PLAIN_JOB, 3600, _boom)
        await scheduler.run_once(PLAIN_JOB)

        assert await scheduler.check_health() == []
        assert scheduler.queued(PLAIN_JOB) == 0

    @pytest.mark.asyncio
    async def test_critical_backlog_and_failed_records(self, store, clock):
        config = JobsConfig(critical_queue_threshold=2, failed_jobs_threshold=1)
        scheduler = JobScheduler(store, config, clock=clock)
        scheduler.register(CRITICAL_JOB, 300, _noop, queue=CRITICAL_QUEUE)
        for _ in range(3):
            await scheduler.trigger(CRITICAL_JOB)
        for index in range(2):
            await store.save_job_record(
                RecurringJobRecord(
                    id=f"old-{index}", job_id=PLAIN_JOB, job_type="scheduled",
                    status=JobStatus.FAILED, queued_at=clock(),
                )
            )

        signals = await scheduler.check_health()

        kinds = {s.kind for s in signals}
        assert kinds == {"queue_backlog", "failed_jobs"}
        assert scheduler.queue_depth(CRITICAL_QUEUE) == 3


# =========================================================================
# Shutdown
# =========================================================================


class TestShutdown:
    @pytest.mark.asyncio
    async def test_stop_waits_for_critical_job(self, store):
        scheduler = JobScheduler(store, JobsConfig())

        async def _publish():
            await asyncio.sleep(0.05)

        scheduler.register(CRITICAL_JOB, 3600, _publish, queue=CRITICAL_QUEUE)
        await scheduler.start()
        record = await scheduler.trigger(CRITICAL_JOB)
        await _wait_until(lambda: scheduler.in_flight(CRITICAL_JOB) == 1)

        drained = await scheduler.stop(timeout=2)

        assert drained is True
        assert store.job_records[record.id].status is JobStatus.COMPLETED
        assert not scheduler.running

    @pytest.mark.asyncio
    async def test_stop_is_bounded_by_timeout(self, store, caplog):
        scheduler = JobScheduler(store, JobsConfig())
        never = asyncio.Event()

        async def _hang():
            await never.wait()

        scheduler.register(CRITICAL_JOB, 3600, _hang, queue=CRITICAL_QUEUE)
        await scheduler.start()
        await scheduler.trigger(CRITICAL_JOB)
        await _wait_until(lambda: scheduler.in_flight(CRITICAL_JOB) == 1)

        started = time.monotonic()
        with caplog.at_level(logging.WARNING):
            drained = await scheduler.stop(timeout=0.1)

        assert drained is False
        assert time.monotonic() - started < 1.0
        assert "Shutdown drain timed out" in caplog.text

    @pytest.mark.asyncio
    async def test_queued_executions_cancelled_on_stop(self, store):
        scheduler = JobScheduler(store, JobsConfig(workers={"default": 1}))
        release = asyncio.Event()

        async def _slow():
            await release.wait()

        scheduler.register(PLAIN_JOB, 3600, _slow)
        await scheduler.start()
        await scheduler.trigger(PLAIN_JOB)
        await _wait_until(lambda: scheduler.in_flight(PLAIN_JOB) == 1)
        waiting = await scheduler.trigger(PLAIN_JOB)

        await scheduler.stop(timeout=0.1)

        cancelled = store.job_records[waiting.id]
        assert cancelled.status is JobStatus.CANCELLED
        assert cancelled.error == "scheduler stopped"

    @pytest.mark.asyncio
    async def test_stop_without_start_is_a_noop(self, scheduler):
        assert await scheduler.stop() is True
