"""
Canonical recurring jobs of the publishing pipeline.

===========================  ==========  ========  ==========================================
Job id                       Interval    Queue     What it does
===========================  ==========  ========  ==========================================
publish-scheduled-posts      5 min       critical  recover stuck posts, dispatch due posts
retry-failed-posts           1 h         default   put retryable failures back to Pending
cleanup-old-records          24 h        default   delete old terminal records
update-analytics             6 h         default   recompute project publishing metrics
health-check                 30 min      default   store and publisher reachability
===========================  ==========  ========  ==========================================

Content-stage work (processing transcripts, generating posts) is not
recurring; it is started on demand with ``JobScheduler.trigger``.
"""

import logging
from dataclasses import replace
from datetime import datetime, timedelta
from typing import Awaitable, Callable, Dict, Optional

from content_pipeline.config import JobsConfig, RetentionConfig
from content_pipeline.exceptions import DatabaseError
from content_pipeline.models import ProjectMetrics, ScheduledPostStatus
from content_pipeline.scheduling.job_scheduler import CRITICAL_QUEUE, DEFAULT_QUEUE
from content_pipeline.utils import utc_now

logger = logging.getLogger(__name__)

PUBLISH_SCHEDULED_POSTS = "publish-scheduled-posts"
RETRY_FAILED_POSTS = "retry-failed-posts"
CLEANUP_OLD_RECORDS = "cleanup-old-records"
UPDATE_ANALYTICS = "update-analytics"
HEALTH_CHECK = "health-check"

# Scheduled posts that will never change again
_TERMINAL_STATUSES = [s for s in ScheduledPostStatus if s.is_terminal]


class PipelineJobs:
    """Handlers for the recurring pipeline jobs.

    Args:
        store: Persistence store.
        engine: ``ScheduledPostEngine``.
        dispatcher: ``PublishingDispatcher``.
        retention: How long terminal records are kept.
        clock: Returns the current UTC time.
    """

    def __init__(
        self,
        store,
        engine,
        dispatcher,
        retention: Optional[RetentionConfig] = None,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self.store = store
        self.engine = engine
        self.dispatcher = dispatcher
        self.retention = retention or RetentionConfig()
        self._clock = clock

    def handlers(self) -> Dict[str, Callable[[], Awaitable[object]]]:
        return {
            PUBLISH_SCHEDULED_POSTS: self.publish_scheduled_posts,
            RETRY_FAILED_POSTS: self.retry_failed_posts,
            CLEANUP_OLD_RECORDS: self.cleanup_old_records,
            UPDATE_ANALYTICS: self.update_analytics,
            HEALTH_CHECK: self.health_check,
        }

    def register_all(self, scheduler, config: JobsConfig) -> None:
        """Register every canonical job; critical jobs go on the critical queue."""
        for job_id, handler in self.handlers().items():
            queue = CRITICAL_QUEUE if job_id in config.critical_jobs else DEFAULT_QUEUE
            scheduler.register(job_id, config.interval_for(job_id), handler, queue=queue)

    # ================================================================
    # HANDLERS
    # ================================================================

    async def publish_scheduled_posts(self) -> int:
        """Returns the number of posts published this run."""
        now = self._clock()
        await self.engine.recover_stuck_posts(now)
        results = await self.dispatcher.dispatch_due(now)
        published = sum(1 for r in results if r.success)
        failed = sum(1 for r in results if not r.success and not r.skipped)
        if results:
            logger.info(
                "[SCHEDULER] Publish run: %d published, %d failed, %d skipped",
                published,
                failed,
                len(results) - published - failed,
            )
        return published

    async def retry_failed_posts(self) -> int:
        requeued = await self.engine.requeue_retry_candidates(self._clock())
        return len(requeued)

    async def cleanup_old_records(self) -> Dict[str, int]:
        now = self._clock()
        posts_cutoff = now - timedelta(days=self.retention.scheduled_posts_days)
        jobs_cutoff = now - timedelta(days=self.retention.job_records_days)

        deleted = {
            "scheduled_posts": await self.store.delete_scheduled_posts_before(
                _TERMINAL_STATUSES, posts_cutoff
            ),
            "job_records": await self.store.delete_job_records_before(jobs_cutoff),
        }
        logger.info(
            "[SCHEDULER] Cleanup removed %d scheduled posts and %d job records",
            deleted["scheduled_posts"],
            deleted["job_records"],
        )
        return deleted

    async def update_analytics(self) -> int:
        """Recompute per-project publish counts.

        Returns:
            Number of projects whose metrics changed.
        """
        updated = 0
        for project in await self.store.list_projects():
            records = await self.store.list_scheduled_posts(project_id=project.id)
            published = [r for r in records if r.status is ScheduledPostStatus.PUBLISHED]
            metrics = ProjectMetrics(
                published_post_count=len(published),
                failed_post_count=sum(
                    1 for r in records if r.status is ScheduledPostStatus.FAILED
                ),
                last_published_at=max(
                    (r.published_at for r in published if r.published_at), default=None
                ),
            )
            if metrics == project.metrics:
                continue
            changed = replace(project, metrics=metrics, updated_at=self._clock())
            # A concurrent stage change wins; metrics are recomputed next run
            if await self.store.compare_and_set_project(changed, project.stage):
                updated += 1
        logger.info("[SCHEDULER] Analytics updated for %d projects", updated)
        return updated

    async def health_check(self) -> Dict[str, bool]:
        """
        Raises:
            DatabaseError: The store did not answer, so the run is
                recorded as Failed.
        """
        status = {"store": await self.store.ping()}
        for platform in self.dispatcher.registry.platforms:
            publisher = self.dispatcher.registry.get(platform)
            ping = getattr(publisher, "ping", None)
            if ping is not None:
                status[platform] = await ping()

        unreachable = sorted(name for name, ok in status.items() if not ok)
        if not status["store"]:
            raise DatabaseError("Store health check failed")
        if unreachable:
            logger.warning("[HEALTH] Unreachable: %s", ", ".join(unreachable))
        else:
            logger.info("[HEALTH] Store and %d publishers reachable", len(status) - 1)
        return status


__all__ = [
    "PipelineJobs",
    "PUBLISH_SCHEDULED_POSTS",
    "RETRY_FAILED_POSTS",
    "CLEANUP_OLD_RECORDS",
    "UPDATE_ANALYTICS",
    "HEALTH_CHECK",
]
