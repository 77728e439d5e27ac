"""
Recurring job scheduler with a health monitor.

``JobScheduler`` runs recurring pipeline work as asyncio tasks:

- one timer task per registered job, enqueueing an execution every interval
- a worker pool per named queue (``"critical"`` for publishing, ``"default"``
  for everything else)
- a health loop on its own cadence that warns about stale jobs, restarts
  stalled critical jobs, retries allow-listed jobs whose last run failed and
  watches the backlog

Every execution is tracked as a ``RecurringJobRecord`` in the store
(Queued -> Processing -> Completed / Failed).  Records are bookkeeping for
the health monitor, never business state.
"""

import asyncio
import logging
import time
from dataclasses import dataclass, field, replace
from datetime import datetime, timedelta
from typing import Awaitable, Callable, Dict, List, Optional

from content_pipeline.config import JobsConfig
from content_pipeline.exceptions import ConfigurationError, DatabaseError, StalledJobError
from content_pipeline.models import JobStatus, RecurringJobRecord
from content_pipeline.utils import generate_id, utc_now

logger = logging.getLogger(__name__)

JobHandler = Callable[[], Awaitable[object]]

CRITICAL_QUEUE = "critical"
DEFAULT_QUEUE = "default"

# How often stop() re-checks the in-flight count while draining
DRAIN_POLL_SECONDS = 0.05


@dataclass
class JobRegistration:
    job_id: str
    interval_seconds: float
    handler: JobHandler
    queue: str = DEFAULT_QUEUE
    registered_at: datetime = field(default_factory=utc_now)


@dataclass(frozen=True)
class HealthSignal:
    """One finding of a health tick.

    Attributes:
        kind: ``"stale"``, ``"restarted"``, ``"retried"``, ``"queue_backlog"``
            or ``"failed_jobs"``.
        message: Human-readable description (also logged).
        job_id: The job concerned, if any.
        level: ``logging`` level name the signal was logged at.
    """

    kind: str
    message: str
    job_id: Optional[str] = None
    level: str = "WARNING"


class JobScheduler:
    """Registers, triggers and supervises recurring jobs.

    Usage::

        scheduler = JobScheduler(store, settings.jobs)
        scheduler.register("publish-scheduled-posts", 300, jobs.publish_scheduled_posts,
                           queue="critical")
        await scheduler.start()
        ...
        await scheduler.stop()

    Args:
        store: ``PipelineStore`` receiving ``RecurringJobRecord`` writes.
        config: Scheduler and health-monitor settings.
        clock: Returns the current UTC time.
    """

    def __init__(
        self,
        store,
        config: Optional[JobsConfig] = None,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self.store = store
        self.config = config or JobsConfig()
        self._clock = clock

        self._jobs: Dict[str, JobRegistration] = {}
        self._queues: Dict[str, asyncio.Queue] = {}
        self._timers: Dict[str, asyncio.Task] = {}
        self._workers: List[asyncio.Task] = []
        self._health_task: Optional[asyncio.Task] = None

        self._in_flight: Dict[str, int] = {}
        self._queued: Dict[str, int] = {}
        self._last_execution: Dict[str, datetime] = {}
        self._restart_counts: Dict[str, int] = {}
        self._running = False

    # ================================================================
    # REGISTRATION
    # ================================================================

    def register(
        self,
        job_id: str,
        interval_seconds: float,
        handler: JobHandler,
        queue: str = DEFAULT_QUEUE,
    ) -> JobRegistration:
        """Register a recurring job.

        Raises:
            ConfigurationError: Duplicate id or non-positive interval.
        """
        if job_id in self._jobs:
            raise ConfigurationError(f"Job '{job_id}' is already registered")
        if interval_seconds <= 0:
            raise ConfigurationError(
                f"Interval for job '{job_id}' must be positive, got {interval_seconds}"
            )

        registration = JobRegistration(
            job_id=job_id,
            interval_seconds=interval_seconds,
            handler=handler,
            queue=queue,
            registered_at=self._clock(),
        )
        self._jobs[job_id] = registration
        self._queue(queue)
        if self._running:
            self._start_timer(registration)

        logger.info(
            "[SCHEDULER] Registered job %s (every %ss, queue=%s)",
            job_id,
            f"{interval_seconds:g}",
            queue,
        )
        return registration

    def deregister(self, job_id: str) -> Optional[JobRegistration]:
        """Remove a job and stop its timer.  Executions already queued still run."""
        registration = self._jobs.pop(job_id, None)
        timer = self._timers.pop(job_id, None)
        if timer is not None:
            timer.cancel()
        if registration is not None:
            logger.info("[SCHEDULER] Deregistered job %s", job_id)
        return registration

    @property
    def job_ids(self) -> List[str]:
        return sorted(self._jobs)

    def get_registration(self, job_id: str) -> Optional[JobRegistration]:
        return self._jobs.get(job_id)

    def restart_count(self, job_id: str) -> int:
        return self._restart_counts.get(job_id, 0)

    # ================================================================
    # EXECUTION
    # ================================================================

    async def trigger(self, job_id: str, reason: str = "manual") -> RecurringJobRecord:
        """Enqueue one execution of *job_id* out of cycle.

        Raises:
            ConfigurationError: Unknown job id.
        """
        registration = self._require(job_id)
        record = await self._new_record(job_id, reason)
        self._queued[job_id] = self._queued.get(job_id, 0) + 1
        await self._queue(registration.queue).put((job_id, record))
        logger.debug("[SCHEDULER] Queued %s (%s, record %s)", job_id, reason, record.id)
        return record

    async def run_once(self, job_id: str) -> RecurringJobRecord:
        """Execute *job_id* inline, bypassing the queues.

        Returns:
            The settled ``RecurringJobRecord``.
        """
        self._require(job_id)
        record = await self._new_record(job_id, "inline")
        return await self._execute(job_id, record)

    async def _execute(self, job_id: str, record: RecurringJobRecord) -> RecurringJobRecord:
        registration = self._jobs.get(job_id)
        if registration is None:
            cancelled = _settle(record, JobStatus.CANCELLED, self._clock(), "job deregistered")
            await self._save_record(cancelled)
            return cancelled

        started = time.monotonic()
        self._in_flight[job_id] = self._in_flight.get(job_id, 0) + 1
        self._last_execution[job_id] = self._clock()
        record = replace(
            record, status=JobStatus.PROCESSING, started_at=self._last_execution[job_id]
        )
        await self._save_record(record)

        try:
            await registration.handler()
        except Exception as exc:
            duration_ms = int((time.monotonic() - started) * 1000)
            logger.exception("[SCHEDULER] Job %s failed after %dms", job_id, duration_ms)
            settled = _settle(record, JobStatus.FAILED, self._clock(), str(exc), duration_ms)
        else:
            duration_ms = int((time.monotonic() - started) * 1000)
            logger.info("[SCHEDULER] Job %s completed in %dms", job_id, duration_ms)
            settled = _settle(record, JobStatus.COMPLETED, self._clock(), None, duration_ms)
        finally:
            self._in_flight[job_id] -= 1

        await self._save_record(settled)
        return settled

    def _require(self, job_id: str) -> JobRegistration:
        registration = self._jobs.get(job_id)
        if registration is None:
            raise ConfigurationError(f"Job '{job_id}' is not registered")
        return registration

    async def _new_record(self, job_id: str, reason: str) -> RecurringJobRecord:
        record = RecurringJobRecord(
            id=generate_id(),
            job_id=job_id,
            job_type=reason,
            status=JobStatus.QUEUED,
            queued_at=self._clock(),
        )
        await self._save_record(record)
        return record

    def in_flight(self, job_id: str) -> int:
        """Executions of *job_id* currently running."""
        return self._in_flight.get(job_id, 0)

    def queued(self, job_id: str) -> int:
        """Executions of *job_id* waiting in a queue."""
        return self._queued.get(job_id, 0)

    def queue_depth(self, queue: str) -> int:
        q = self._queues.get(queue)
        return q.qsize() if q is not None else 0

    async def last_execution(self, job_id: str) -> Optional[datetime]:
        """When *job_id* last started, from memory or the store."""
        if job_id in self._last_execution:
            return self._last_execution[job_id]
        try:
            record = await self.store.get_last_job_record(job_id)
        except DatabaseError as exc:
            logger.warning("[SCHEDULER] Could not read last run of %s: %s", job_id, exc)
            return None
        if record is None or record.started_at is None:
            return None
        return record.started_at

    # ================================================================
    # LIFECYCLE
    # ================================================================

    async def start(self) -> None:
        """Start worker pools, job timers and the health loop."""
        if self._running:
            return
        self._running = True

        for queue_name in set(self.config.workers) | {r.queue for r in self._jobs.values()}:
            queue = self._queue(queue_name)
            for index in range(self.config.workers.get(queue_name, 1)):
                self._workers.append(
                    asyncio.create_task(
                        self._worker_loop(queue_name, queue),
                        name=f"worker-{queue_name}-{index}",
                    )
                )
        for registration in self._jobs.values():
            self._start_timer(registration)
        self._health_task = asyncio.create_task(self._health_loop(), name="job-health")

        logger.info(
            "[SCHEDULER] Started: %d jobs, %d workers, health check every %ds",
            len(self._jobs),
            len(self._workers),
            self.config.health_check_seconds,
        )

    async def stop(self, timeout: Optional[float] = None) -> bool:
        """Stop timers, drain critical jobs, then stop the workers.

        Waits up to *timeout* (default ``shutdown_timeout_seconds``) for
        in-flight critical jobs to finish.  Never blocks longer than that.

        Returns:
            True if every critical job drained in time.
        """
        if not self._running:
            return True
        self._running = False
        timeout = self.config.shutdown_timeout_seconds if timeout is None else timeout

        for timer in self._timers.values():
            timer.cancel()
        self._timers.clear()
        if self._health_task is not None:
            self._health_task.cancel()

        drained = await self._drain(timeout)

        tasks = list(self._workers)
        if self._health_task is not None:
            tasks.append(self._health_task)
        for worker in self._workers:
            worker.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        self._workers.clear()
        self._health_task = None
        await self._cancel_queued()

        logger.info("[SCHEDULER] Stopped (drained=%s)", drained)
        return drained

    @property
    def running(self) -> bool:
        return self._running

    async def _drain(self, timeout: float) -> bool:
        critical = [j for j in self.config.critical_jobs if j in self._jobs]
        deadline = time.monotonic() + timeout
        while True:
            busy = {j: self.in_flight(j) for j in critical if self.in_flight(j) > 0}
            if not busy:
                return True
            if time.monotonic() >= deadline:
                logger.warning(
                    "[SCHEDULER] Shutdown drain timed out after %ss; still in flight: %s",
                    f"{timeout:g}",
                    busy,
                )
                return False
            await asyncio.sleep(DRAIN_POLL_SECONDS)

    async def _cancel_queued(self) -> None:
        """Mark executions that never started as Cancelled."""
        for queue in self._queues.values():
            while not queue.empty():
                job_id, record = queue.get_nowait()
                queue.task_done()
                self._queued[job_id] = max(self._queued.get(job_id, 1) - 1, 0)
                await self._save_record(
                    _settle(record, JobStatus.CANCELLED, self._clock(), "scheduler stopped")
                )

    # ================================================================
    # HEALTH MONITOR
    # ================================================================

    async def check_health(self, now: Optional[datetime] = None) -> List[HealthSignal]:
        """Run one health tick.

        Returns:
            The signals raised this tick (each one is also logged).
        """
        now = now or self._clock()
        signals: List[HealthSignal] = []

        for registration in list(self._jobs.values()):
            signal = await self._check_staleness(registration, now)
            if signal is not None:
                signals.append(signal)
            signal = await self._check_last_failure(registration.job_id)
            if signal is not None:
                signals.append(signal)

        signals.extend(await self._check_backlog())
        return signals

    async def _check_staleness(
        self, registration: JobRegistration, now: datetime
    ) -> Optional[HealthSignal]:
        job_id = registration.job_id
        last = await self.last_execution(job_id)
        reference = max(last, registration.registered_at) if last else registration.registered_at
        elapsed = (now - reference).total_seconds()
        expected = registration.interval_seconds

        is_critical = job_id in self.config.critical_jobs
        hard_limit = timedelta(hours=self.config.max_stall_hours).total_seconds()
        if (is_critical and elapsed > expected * self.config.restart_factor) or elapsed > hard_limit:
            stalled = StalledJobError(job_id, last)
            self.restart(job_id)
            message = f"{stalled}; restarted after {elapsed:.0f}s without a run"
            logger.error("[HEALTH] %s", message)
            return HealthSignal("restarted", message, job_id=job_id, level="ERROR")

        if elapsed > expected * self.config.warn_factor:
            message = (
                f"Job '{job_id}' has not run for {elapsed:.0f}s "
                f"(expected every {expected:g}s)"
            )
            logger.warning("[HEALTH] %s", message)
            return HealthSignal("stale", message, job_id=job_id)
        return None

    def restart(self, job_id: str) -> JobRegistration:
        """Deregister and re-register *job_id* with its handler and queue."""
        registration = self.deregister(job_id)
        if registration is None:
            raise ConfigurationError(f"Job '{job_id}' is not registered")
        self._restart_counts[job_id] = self._restart_counts.get(job_id, 0) + 1
        return self.register(
            job_id, registration.interval_seconds, registration.handler, registration.queue
        )

    async def _check_last_failure(self, job_id: str) -> Optional[HealthSignal]:
        if job_id not in self.config.auto_retry_jobs:
            return None
        if self.in_flight(job_id) or self.queued(job_id):
            return None
        try:
            record = await self.store.get_last_job_record(job_id)
        except DatabaseError as exc:
            logger.warning("[HEALTH] Could not read last run of %s: %s", job_id, exc)
            return None
        if record is None or record.status is not JobStatus.FAILED:
            return None

        await self.trigger(job_id, reason="auto_retry")
        message = f"Job '{job_id}' failed last run ({record.error}); retrying now"
        logger.warning("[HEALTH] %s", message)
        return HealthSignal("retried", message, job_id=job_id)

    async def _check_backlog(self) -> List[HealthSignal]:
        signals: List[HealthSignal] = []
        depth = self.queue_depth(CRITICAL_QUEUE)
        if depth > self.config.critical_queue_threshold:
            message = (
                f"Critical queue backlog: {depth} waiting "
                f"(threshold {self.config.critical_queue_threshold})"
            )
            logger.warning("[HEALTH] %s", message)
            signals.append(HealthSignal("queue_backlog", message))

        try:
            failed = await self.store.count_job_records(JobStatus.FAILED)
        except DatabaseError as exc:
            logger.warning("[HEALTH] Could not count failed job records: %s", exc)
            return signals
        if failed > self.config.failed_jobs_threshold:
            message = (
                f"{failed} failed job records "
                f"(threshold {self.config.failed_jobs_threshold})"
            )
            logger.warning("[HEALTH] %s", message)
            signals.append(HealthSignal("failed_jobs", message))
        return signals

    # ================================================================
    # LOOPS
    # ================================================================

    def _queue(self, name: str) -> asyncio.Queue:
        if name not in self._queues:
            self._queues[name] = asyncio.Queue()
        return self._queues[name]

    def _start_timer(self, registration: JobRegistration) -> None:
        self._timers[registration.job_id] = asyncio.create_task(
            self._timer_loop(registration), name=f"timer-{registration.job_id}"
        )

    async def _timer_loop(self, registration: JobRegistration) -> None:
        while True:
            try:
                await asyncio.sleep(registration.interval_seconds)
            except asyncio.CancelledError:
                logger.debug("[SCHEDULER] Timer for %s cancelled", registration.job_id)
                break
            try:
                await self.trigger(registration.job_id, reason="scheduled")
            except ConfigurationError:
                # Deregistered between the sleep and the trigger
                break
            except Exception:
                logger.exception("[SCHEDULER] Could not enqueue %s", registration.job_id)

    async def _worker_loop(self, queue_name: str, queue: asyncio.Queue) -> None:
        while True:
            job_id, record = await queue.get()
            self._queued[job_id] = max(self._queued.get(job_id, 1) - 1, 0)
            try:
                await self._execute(job_id, record)
            except Exception:
                logger.exception("[SCHEDULER] Worker %s crashed running %s", queue_name, job_id)
            finally:
                queue.task_done()

    async def _health_loop(self) -> None:
        while self._running:
            try:
                await asyncio.sleep(self.config.health_check_seconds)
            except asyncio.CancelledError:
                break
            try:
                await self.check_health()
            except Exception:
                logger.exception("[HEALTH] Health check failed")

    async def _save_record(self, record: RecurringJobRecord) -> None:
        try:
            await self.store.save_job_record(record)
        except DatabaseError as exc:
            logger.warning(
                "[SCHEDULER] Could not save job record %s (%s): %s",
                record.id,
                record.status.value,
                exc,
            )


def _settle(
    record: RecurringJobRecord,
    status: JobStatus,
    now: datetime,
    error: Optional[str],
    duration_ms: Optional[int] = None,
) -> RecurringJobRecord:
    return replace(
        record,
        status=status,
        progress=100 if status is JobStatus.COMPLETED else record.progress,
        finished_at=now,
        duration_ms=duration_ms,
        error=error,
    )


__all__ = [
    "CRITICAL_QUEUE",
    "DEFAULT_QUEUE",
    "HealthSignal",
    "JobRegistration",
    "JobScheduler",
]
