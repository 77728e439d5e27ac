"""Tests for content_pipeline.scheduling.jobs -- the recurring job handlers."""

from datetime import timedelta
from unittest.mock import AsyncMock, MagicMock

import pytest

from content_pipeline.config import JobsConfig, RetentionConfig
from content_pipeline.database import SupabaseDB
from content_pipeline.exceptions import DatabaseError
from content_pipeline.models import (
    JobStatus,
    ProjectMetrics,
    ProjectStage,
    RecurringJobRecord,
    ScheduledPost,
    ScheduledPostStatus,
)
from content_pipeline.publishing import DispatchResult, PublisherRegistry
from content_pipeline.scheduling import JobScheduler
from content_pipeline.scheduling.job_scheduler import CRITICAL_QUEUE, DEFAULT_QUEUE
from content_pipeline.scheduling.jobs import (
    CLEANUP_OLD_RECORDS,
    HEALTH_CHECK,
    PUBLISH_SCHEDULED_POSTS,
    RETRY_FAILED_POSTS,
    UPDATE_ANALYTICS,
    PipelineJobs,
)


def _record(project, status, when, platform="linkedin", **overrides):
    return ScheduledPost(
        id=overrides.pop("id", f"{platform}-{status.value}-{when.isoformat()}"),
        post_id="post-1",
        project_id=project.id,
        platform=platform,
        content="Small releases beat big launches.",
        scheduled_time=when,
        status=status,
        created_at=when,
        updated_at=when,
        **overrides,
    )


@pytest.fixture
def engine():
    engine = MagicMock()
    engine.recover_stuck_posts = AsyncMock(return_value=[])
    engine.requeue_retry_candidates = AsyncMock(return_value=[])
    return engine


@pytest.fixture
def dispatcher():
    dispatcher = MagicMock()
    dispatcher.dispatch_due = AsyncMock(return_value=[])
    dispatcher.registry = PublisherRegistry()
    return dispatcher


@pytest.fixture
def jobs(store, engine, dispatcher, clock):
    return PipelineJobs(store, engine, dispatcher, RetentionConfig(), clock=clock)


class TestRegisterAll:
    def test_every_canonical_job_is_registered(self, jobs, store, clock):
        scheduler = JobScheduler(store, JobsConfig(), clock=clock)

        jobs.register_all(scheduler, JobsConfig())

        assert scheduler.job_ids == sorted([
            PUBLISH_SCHEDULED_POSTS,
            RETRY_FAILED_POSTS,
            CLEANUP_OLD_RECORDS,
            UPDATE_ANALYTICS,
            HEALTH_CHECK,
        ])
        assert scheduler.get_registration(PUBLISH_SCHEDULED_POSTS).queue == CRITICAL_QUEUE
        assert scheduler.get_registration(CLEANUP_OLD_RECORDS).queue == DEFAULT_QUEUE
        assert scheduler.get_registration(PUBLISH_SCHEDULED_POSTS).interval_seconds == 300
        assert scheduler.get_registration(CLEANUP_OLD_RECORDS).interval_seconds == 86400

    @pytest.mark.asyncio
    async def test_handler_failure_marks_job_record_failed(self, jobs, store, clock, engine):
        engine.requeue_retry_candidates.side_effect = DatabaseError("store down")
        scheduler = JobScheduler(store, JobsConfig(), clock=clock)
        jobs.register_all(scheduler, JobsConfig())

        record = await scheduler.run_once(RETRY_FAILED_POSTS)

        assert record.status is JobStatus.FAILED
        assert "store down" in record.error


class TestPublishScheduledPosts:
    @pytest.mark.asyncio
    async def test_recovers_then_dispatches(self, jobs, engine, dispatcher, clock):
        dispatcher.dispatch_due.return_value = [
            DispatchResult(platform="linkedin", success=True),
            DispatchResult(platform="x", success=False, error="boom"),
            DispatchResult(platform="x", success=False, skipped=True),
        ]

        published = await jobs.publish_scheduled_posts()

        assert published == 1
        engine.recover_stuck_posts.assert_awaited_once_with(clock())
        dispatcher.dispatch_due.assert_awaited_once_with(clock())

    @pytest.mark.asyncio
    async def test_nothing_due(self, jobs):
        assert await jobs.publish_scheduled_posts() == 0


class TestRetryFailedPosts:
    @pytest.mark.asyncio
    async def test_returns_requeued_count(self, jobs, engine, clock):
        engine.requeue_retry_candidates.return_value = ["a", "b"]

        assert await jobs.retry_failed_posts() == 2
        engine.requeue_retry_candidates.assert_awaited_once_with(clock())


class TestCleanupOldRecords:
    @pytest.mark.asyncio
    async def test_deletes_only_old_terminal_records(self, jobs, store, seed, sample_utc_now):
        project = seed.project()
        old = sample_utc_now - timedelta(days=31)
        recent = sample_utc_now - timedelta(days=1)
        for record in (
            _record(project, ScheduledPostStatus.PUBLISHED, old, id="old-published"),
            _record(project, ScheduledPostStatus.CANCELLED, old, id="old-cancelled"),
            _record(project, ScheduledPostStatus.FAILED, old, id="old-failed"),
            _record(project, ScheduledPostStatus.PUBLISHED, recent, id="new-published"),
        ):
            store.scheduled_posts[record.id] = record
        for job_id, when in (("a", sample_utc_now - timedelta(days=8)), ("b", recent)):
            store.job_records[job_id] = RecurringJobRecord(
                id=job_id, job_id=HEALTH_CHECK, job_type="scheduled", queued_at=when
            )

        deleted = await jobs.cleanup_old_records()

        assert deleted == {"scheduled_posts": 2, "job_records": 1}
        assert sorted(store.scheduled_posts) == ["new-published", "old-failed"]
        assert list(store.job_records) == ["b"]


class TestUpdateAnalytics:
    @pytest.mark.asyncio
    async def test_recomputes_metrics(self, jobs, store, seed, sample_utc_now):
        project = seed.project(stage=ProjectStage.PUBLISHING)
        published_at = sample_utc_now - timedelta(hours=2)
        for record in (
            _record(project, ScheduledPostStatus.PUBLISHED, published_at,
                    id="p1", published_at=published_at),
            _record(project, ScheduledPostStatus.FAILED, published_at, platform="x", id="f1"),
        ):
            store.scheduled_posts[record.id] = record

        assert await jobs.update_analytics() == 1
        assert store.projects[project.id].metrics == ProjectMetrics(
            published_post_count=1,
            failed_post_count=1,
            last_published_at=published_at,
        )

        # Unchanged metrics are not rewritten
        assert await jobs.update_analytics() == 0


class TestHealthCheck:
    @pytest.mark.asyncio
    async def test_reports_store_and_publishers(self, jobs, dispatcher):
        publisher = MagicMock()
        publisher.ping = AsyncMock(return_value=False)
        dispatcher.registry.register("x", publisher)

        status = await jobs.health_check()

        assert status == {"store": True, "x": False}

    @pytest.mark.asyncio
    async def test_unreachable_store_raises(self, jobs, store):
        store.ping = AsyncMock(return_value=False)

        with pytest.raises(DatabaseError, match="Store health check failed"):
            await jobs.health_check()

    @pytest.mark.asyncio
    async def test_supabase_query_failure_fails_health_check(
        self, engine, dispatcher, clock, mock_supabase_client
    ):
        mock_supabase_client.table.return_value.execute.side_effect = ConnectionError("refused")
        jobs = PipelineJobs(
            SupabaseDB(mock_supabase_client), engine, dispatcher, RetentionConfig(), clock=clock
        )

        with pytest.raises(DatabaseError, match="Store health check failed"):
            await jobs.health_check()
