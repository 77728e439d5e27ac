"""
Operations exposed to upstream layers (API handlers, CLI, bots).

``PipelineService`` is a thin facade: every operation delegates to the
engine, the approval workflow or the scheduler, and batch operations report
per-item outcomes instead of failing on the first bad item.

``build_service`` wires the whole publishing core from ``Settings``.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, Iterable, List, Mapping, Optional

from content_pipeline.activity import ActivityRecorder
from content_pipeline.config import Settings
from content_pipeline.credentials import StoreCredentialProvider
from content_pipeline.database import PipelineStore
from content_pipeline.exceptions import NotFoundError, ValidationError
from content_pipeline.models import BatchResult, Post, ProjectStage, ScheduledPost
from content_pipeline.publishing.dispatcher import PublishingDispatcher
from content_pipeline.publishing.publishers import PublisherRegistry
from content_pipeline.scheduling.engine import ScheduledPostEngine
from content_pipeline.scheduling.job_scheduler import JobScheduler
from content_pipeline.scheduling.jobs import PUBLISH_SCHEDULED_POSTS, PipelineJobs
from content_pipeline.utils import localize, utc_now
from content_pipeline.workflow import state_guards as guards
from content_pipeline.workflow.approval import BATCH_ITEM_ERRORS, ApprovalWorkflow
from content_pipeline.workflow.project_stage import load_project

logger = logging.getLogger(__name__)


@dataclass
class PublishNowResult:
    """Outcome of ``publish_now``.

    Attributes:
        queued: Post id -> id of the due-now scheduled post.
        failed: Post id -> error message.
        job_record_id: The publish job execution that will pick them up.
    """

    queued: Dict[str, str] = field(default_factory=dict)
    failed: Dict[str, str] = field(default_factory=dict)
    job_record_id: Optional[str] = None

    @property
    def queued_count(self) -> int:
        return len(self.queued)

    @property
    def scheduled_post_ids(self) -> List[str]:
        return list(self.queued.values())


@dataclass(frozen=True)
class PipelineStatus:
    project_id: str
    stage: ProjectStage
    progress: int
    allowed_transitions: List[ProjectStage]
    scheduled_posts: Dict[str, int] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "project_id": self.project_id,
            "stage": self.stage.value,
            "progress": self.progress,
            "allowed_transitions": [s.value for s in self.allowed_transitions],
            "scheduled_posts": dict(self.scheduled_posts),
        }


class PipelineService:
    """Facade over the publishing core.

    Args:
        store: Persistence store.
        engine: ``ScheduledPostEngine``.
        approval: ``ApprovalWorkflow``.
        scheduler: ``JobScheduler`` running the publish job.
        recorder: Activity sink, or ``None``.
        default_timezone: Timezone for schedule items that name none.
        clock: Returns the current UTC time.
    """

    def __init__(
        self,
        store: PipelineStore,
        engine: ScheduledPostEngine,
        approval: ApprovalWorkflow,
        scheduler: JobScheduler,
        recorder=None,
        default_timezone: str = "UTC",
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self.store = store
        self.engine = engine
        self.approval = approval
        self.scheduler = scheduler
        self.recorder = recorder
        self.default_timezone = default_timezone
        self._clock = clock

    # ================================================================
    # SCHEDULING
    # ================================================================

    async def schedule_batch(
        self, project_id: str, items: Iterable[Mapping[str, Any]]
    ) -> BatchResult:
        """Schedule several posts of a project.

        Each item is ``{"post_id", "scheduled_time", "timezone"?, "platform"?}``;
        the platform defaults to the post's own.  ``scheduled_time`` may be
        a datetime or an ISO-8601 string; naive values are read in the
        item's timezone.

        Returns:
            ``BatchResult`` keyed by ``"<post_id>/<platform>"`` with the new
            scheduled-post id on success.
        """
        await load_project(self.store, project_id)
        result = BatchResult()
        for index, item in enumerate(items):
            post_id = item.get("post_id") or f"item-{index}"
            key = post_id
            try:
                post = await self._load_post(post_id)
                if post.project_id != project_id:
                    raise ValidationError(f"Post {post_id} does not belong to project {project_id}")
                platform = item.get("platform") or post.platform
                key = f"{post_id}/{platform}"
                timezone = item.get("timezone") or self.default_timezone
                when = _resolve_time(item.get("scheduled_time"), timezone)
                record = await self.engine.schedule(post_id, platform, when, timezone)
            except BATCH_ITEM_ERRORS as exc:
                logger.warning("[ENGINE] Batch schedule of %s failed: %s", key, exc)
                result.add_failure(key, str(exc))
            else:
                result.add_success(key, record.id)

        logger.info(
            "[ENGINE] Batch schedule for project %s: %d scheduled, %d failed",
            project_id,
            result.success_count,
            result.failure_count,
        )
        return result

    async def publish_now(self, project_id: str, post_ids: Iterable[str]) -> PublishNowResult:
        """Queue posts for immediate publishing on the critical queue.

        Creates a due-now scheduled post per post (on the post's platform)
        and triggers one run of the publish job; the job's dispatcher does
        the actual publishing.
        """
        await load_project(self.store, project_id)
        result = PublishNowResult()
        for post_id in post_ids:
            try:
                post = await self._load_post(post_id)
                if post.project_id != project_id:
                    raise ValidationError(f"Post {post_id} does not belong to project {project_id}")
                record = await self.engine.schedule_immediate(post_id, post.platform)
            except BATCH_ITEM_ERRORS as exc:
                logger.warning("[DISPATCH] Publish-now of post %s rejected: %s", post_id, exc)
                result.failed[post_id] = str(exc)
            else:
                result.queued[post_id] = record.id

        if not result.queued:
            return result

        job = await self.scheduler.trigger(PUBLISH_SCHEDULED_POSTS, reason="publish_now")
        result.job_record_id = job.id
        logger.info(
            "[DISPATCH] Publish-now for project %s: %d queued (job %s), %d rejected",
            project_id,
            result.queued_count,
            job.id,
            len(result.failed),
        )
        return result

    async def schedule_bulk(
        self,
        project_id: str,
        platform: str,
        start: Any,
        interval: timedelta,
        timezone: Optional[str] = None,
    ) -> BatchResult:
        """Space every approved post of the project on *platform* by *interval*.

        *start* takes the same forms as a batch item's ``scheduled_time``.
        """
        await load_project(self.store, project_id)
        timezone = timezone or self.default_timezone
        return await self.engine.schedule_bulk(
            project_id, platform, _resolve_time(start, timezone), interval, timezone
        )

    async def get_available_slots(
        self,
        platform: str,
        end: datetime,
        start: Optional[datetime] = None,
        step: timedelta = timedelta(hours=1),
    ) -> List[datetime]:
        """Free publish times on *platform* between *start* (default now) and *end*."""
        return await self.engine.get_available_slots(
            platform, start or self._clock(), end, step
        )

    async def republish(self, post_id: str, platform: str, reason: str) -> PublishNowResult:
        """Re-send a published post to *platform* through the critical publish job."""
        record = await self.engine.republish(post_id, platform, reason)
        job = await self.scheduler.trigger(PUBLISH_SCHEDULED_POSTS, reason="republish")
        logger.info(
            "[DISPATCH] Republish of post %s on %s queued as %s (job %s)",
            post_id,
            platform,
            record.id,
            job.id,
        )
        return PublishNowResult(queued={post_id: record.id}, job_record_id=job.id)

    async def cancel_scheduled(self, scheduled_post_id: str, reason: str) -> ScheduledPost:
        return await self.engine.cancel(scheduled_post_id, reason)

    async def retry_failed(self, scheduled_post_id: str) -> ScheduledPost:
        """Put a Failed record back to Pending.

        Raises:
            StateConflictError: The record is not Failed or has no retries left.
        """
        return await self.engine.reset_for_retry(scheduled_post_id)

    async def get_pipeline_status(self, project_id: str) -> PipelineStatus:
        project = await load_project(self.store, project_id)
        counts: Dict[str, int] = {}
        for record in await self.store.list_scheduled_posts(project_id=project_id):
            counts[record.status.value] = counts.get(record.status.value, 0) + 1
        return PipelineStatus(
            project_id=project.id,
            stage=project.stage,
            progress=project.progress,
            allowed_transitions=list(guards.allowed_transitions(project.stage)),
            scheduled_posts=counts,
        )

    # ================================================================
    # REVIEW (passthrough)
    # ================================================================

    async def approve_insights(self, insight_ids: Iterable[str], by: str) -> BatchResult:
        return await self.approval.approve_insights(insight_ids, by)

    async def reject_insights(self, insight_ids: Iterable[str], by: str, reason: str) -> BatchResult:
        return await self.approval.reject_insights(insight_ids, by, reason)

    async def approve_posts(self, post_ids: Iterable[str], by: str) -> BatchResult:
        return await self.approval.approve_posts(post_ids, by)

    async def reject_posts(self, post_ids: Iterable[str], by: str, reason: str) -> BatchResult:
        return await self.approval.reject_posts(post_ids, by, reason)

    async def _load_post(self, post_id: str) -> Post:
        post = await self.store.get_post(post_id)
        if post is None:
            raise NotFoundError(f"Post {post_id} not found")
        return post


def _resolve_time(value: Any, timezone: str) -> datetime:
    if value is None or value == "":
        raise ValidationError("scheduled_time is required")
    if isinstance(value, datetime):
        when = value
    else:
        text = str(value)
        try:
            when = datetime.fromisoformat(text[:-1] + "+00:00" if text.endswith("Z") else text)
        except ValueError as exc:
            raise ValidationError(f"Invalid scheduled_time '{value}'") from exc
    return localize(when, timezone)


# =============================================================================
# WIRING
# =============================================================================


@dataclass
class PipelineComponents:
    service: PipelineService
    scheduler: JobScheduler
    dispatcher: PublishingDispatcher
    jobs: PipelineJobs
    recorder: ActivityRecorder


def build_service(
    settings: Settings,
    store: PipelineStore,
    registry: Optional[PublisherRegistry] = None,
    recorder: Optional[ActivityRecorder] = None,
    clock: Callable[[], datetime] = utc_now,
) -> PipelineComponents:
    """Assemble engine, dispatcher, scheduler and facade from *settings*.

    Every canonical job is registered on the returned scheduler; call
    ``await components.scheduler.start()`` to run it.
    """
    if recorder is None:
        recorder = ActivityRecorder(
            path=settings.activity_path,
            store=store if settings.activity_table_enabled else None,
            buffer_size=settings.retention.activity_buffer_size,
            clock=clock,
        )
    registry = registry or PublisherRegistry.default(
        settings.api_base_urls, timeout=settings.publishing.publish_timeout_seconds
    )
    credentials = StoreCredentialProvider(
        store, cache_seconds=settings.credential_cache_seconds, clock=clock
    )
    engine = ScheduledPostEngine(store, recorder, settings.publishing, clock=clock)
    dispatcher = PublishingDispatcher(
        store, engine, registry, credentials, recorder, settings.publishing, clock=clock
    )
    scheduler = JobScheduler(store, settings.jobs, clock=clock)
    jobs = PipelineJobs(store, engine, dispatcher, settings.retention, clock=clock)
    jobs.register_all(scheduler, settings.jobs)

    service = PipelineService(
        store,
        engine,
        ApprovalWorkflow(store, recorder, clock=clock),
        scheduler,
        recorder=recorder,
        default_timezone=settings.timezone,
        clock=clock,
    )
    return PipelineComponents(service, scheduler, dispatcher, jobs, recorder)


__all__ = [
    "PipelineService",
    "PipelineStatus",
    "PublishNowResult",
    "PipelineComponents",
    "build_service",
]
