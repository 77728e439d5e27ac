"""
Publishing dispatcher.

Turns a due ``ScheduledPost`` into an external publish call and settles the
outcome:

1. Claim the record through the engine (losers skip quietly)
2. Adapt the content to the platform rules
3. Look up the owner's credential and call the platform publisher under a
   per-call timeout
4. Record Published / Failed on the record, then move the parent post and
   the project stage through their guards

Every failure is classified into an ``ErrorKind`` and recorded on the
record; the dispatcher never raises a publish failure to its caller.  The
retry-failed-posts job decides whether a failed record goes back to
Pending.
"""

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Callable, Dict, List, Optional, Sequence, Tuple

from content_pipeline.config import PublishingConfig
from content_pipeline.database import PipelineStore
from content_pipeline.exceptions import PipelineBaseError, StateConflictError, ValidationError
from content_pipeline.models import (
    ErrorKind,
    PostStatus,
    ProjectStage,
    ScheduledPost,
    ScheduledPostStatus,
)
from content_pipeline.publishing.adaptation import adapt_content
from content_pipeline.publishing.classification import classify_error
from content_pipeline.publishing.publishers import PublisherRegistry, PublishReceipt
from content_pipeline.scheduling.engine import ScheduledPostEngine
from content_pipeline.utils import utc_now
from content_pipeline.workflow import state_guards as guards
from content_pipeline.workflow.project_stage import apply_project_transition, load_project

logger = logging.getLogger(__name__)

# Records that may still publish the post without human action
_IN_FLIGHT_STATUSES = frozenset({
    ScheduledPostStatus.PENDING,
    ScheduledPostStatus.PROCESSING,
    ScheduledPostStatus.RETRY,
    ScheduledPostStatus.REPUBLISHING,
})

# Post statuses that take part in publishing a project
_PUBLISHABLE_POST_STATUSES = frozenset({
    PostStatus.APPROVED,
    PostStatus.SCHEDULED,
    PostStatus.PUBLISHED,
    PostStatus.FAILED,
})


@dataclass(frozen=True)
class DispatchResult:
    """Outcome of one dispatch attempt.

    Attributes:
        platform: Target platform.
        success: True when the platform accepted the post.
        scheduled_post: Record snapshot after the attempt (``None`` when no
            record could be created).
        skipped: True when another worker had already claimed the record.
        error: Error message of a failed attempt.
        error_kind: Classified failure.
        warnings: Non-fatal adaptation warnings.
    """

    platform: str
    success: bool
    scheduled_post: Optional[ScheduledPost] = None
    skipped: bool = False
    error: Optional[str] = None
    error_kind: Optional[ErrorKind] = None
    warnings: Tuple[str, ...] = field(default_factory=tuple)

    @property
    def retryable(self) -> bool:
        return self.error_kind is not None and self.error_kind.is_retryable

    def to_dict(self) -> Dict[str, object]:
        record = self.scheduled_post
        return {
            "platform": self.platform,
            "success": self.success,
            "skipped": self.skipped,
            "scheduled_post_id": record.id if record else None,
            "external_post_id": record.external_post_id if record else None,
            "publish_url": record.publish_url if record else None,
            "error": self.error,
            "error_kind": self.error_kind.value if self.error_kind else None,
            "warnings": list(self.warnings),
        }


class PublishingDispatcher:
    """Dispatches scheduled posts to their platforms.

    Args:
        store: Persistence store.
        engine: Owner of all ``ScheduledPost`` writes.
        registry: Platform publishers.
        credentials: ``CredentialProvider`` for the owners' OAuth tokens.
        recorder: Activity sink, or ``None``.
        config: Publishing settings (timeout, concurrency).
        clock: Returns the current UTC time.
    """

    def __init__(
        self,
        store: PipelineStore,
        engine: ScheduledPostEngine,
        registry: PublisherRegistry,
        credentials,
        recorder=None,
        config: Optional[PublishingConfig] = None,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self.store = store
        self.engine = engine
        self.registry = registry
        self.credentials = credentials
        self.recorder = recorder
        self.config = config or engine.config
        self._clock = clock
        self._semaphore = asyncio.Semaphore(self.config.max_concurrent_publishes)

    # ================================================================
    # DISPATCH
    # ================================================================

    async def dispatch(self, scheduled_post_id: str) -> DispatchResult:
        """Claim and publish one record.

        Returns:
            A ``DispatchResult``; ``skipped`` when the claim was lost.

        Raises:
            NotFoundError: Unknown record id.
            StateConflictError: The record can never be claimed (Cancelled,
                Failed awaiting retry, ...).
        """
        claimed = await self.engine.start_processing(scheduled_post_id)
        if claimed is None:
            record = await self.store.get_scheduled_post(scheduled_post_id)
            platform = record.platform if record else ""
            return DispatchResult(
                platform=platform, success=False, scheduled_post=record, skipped=True
            )

        async with self._semaphore:
            return await self._publish_claimed(claimed)

    async def dispatch_due(self, now: Optional[datetime] = None, limit: int = 100) -> List[DispatchResult]:
        """Dispatch every due Pending record concurrently."""
        due = await self.engine.get_due_posts(now, limit)
        if not due:
            logger.debug("[DISPATCH] No posts due")
            return []

        logger.info("[DISPATCH] Dispatching %d due posts", len(due))
        outcomes = await asyncio.gather(
            *(self.dispatch(record.id) for record in due), return_exceptions=True
        )
        results: List[DispatchResult] = []
        for record, outcome in zip(due, outcomes):
            if isinstance(outcome, BaseException):
                if not isinstance(outcome, (PipelineBaseError, ValidationError)):
                    raise outcome
                logger.warning("[DISPATCH] Could not dispatch %s: %s", record.id, outcome)
                continue
            results.append(outcome)
        return results

    async def publish_to_platforms(
        self, post_id: str, platforms: Sequence[str]
    ) -> Dict[str, DispatchResult]:
        """Publish a post on several platforms right away.

        Each platform gets its own due-now record and is dispatched
        independently; one platform failing never stops the others.

        Returns:
            Platform -> ``DispatchResult``.
        """
        results: Dict[str, DispatchResult] = {}
        records: List[ScheduledPost] = []
        for platform in dict.fromkeys(platforms):
            try:
                records.append(await self.engine.schedule_immediate(post_id, platform))
            except (PipelineBaseError, ValidationError) as exc:
                logger.warning("[DISPATCH] Cannot queue post %s on %s: %s", post_id, platform, exc)
                results[platform] = DispatchResult(
                    platform=platform, success=False, error=str(exc)
                )

        outcomes = await asyncio.gather(
            *(self.dispatch(record.id) for record in records), return_exceptions=True
        )
        for record, outcome in zip(records, outcomes):
            if isinstance(outcome, BaseException):
                if not isinstance(outcome, (PipelineBaseError, ValidationError)):
                    raise outcome
                results[record.platform] = DispatchResult(
                    platform=record.platform,
                    success=False,
                    scheduled_post=record,
                    error=str(outcome),
                )
            else:
                results[record.platform] = outcome

        succeeded = sum(1 for r in results.values() if r.success)
        logger.info(
            "[DISPATCH] Post %s: %d/%d platforms published",
            post_id,
            succeeded,
            len(results),
        )
        return results

    # ================================================================
    # SINGLE ATTEMPT
    # ================================================================

    async def _publish_claimed(self, record: ScheduledPost) -> DispatchResult:
        adapted = adapt_content(record.content, record.platform)
        try:
            receipt = await self._call_platform(record, adapted.text)
        except Exception as exc:
            return await self._settle_failure(record, exc, tuple(adapted.warnings))

        published = await self.engine.mark_published(
            record.id,
            receipt.external_id,
            published_at=receipt.published_at,
            publish_url=receipt.url,
        )
        await self.engine.settle_republished(record.post_id, record.platform)
        await self._after_success(published)
        return DispatchResult(
            platform=record.platform,
            success=True,
            scheduled_post=published,
            warnings=tuple(adapted.warnings),
        )

    async def _call_platform(self, record: ScheduledPost, text: str) -> PublishReceipt:
        project = await load_project(self.store, record.project_id)
        credential = await self.credentials.get_valid_credential(project.user_id, record.platform)
        publisher = self.registry.get(record.platform)
        timeout = self.config.publish_timeout_seconds
        try:
            return await asyncio.wait_for(publisher.publish(text, credential), timeout=timeout)
        except asyncio.TimeoutError as exc:
            raise asyncio.TimeoutError(
                f"Publishing to {record.platform} timed out after {timeout:g}s"
            ) from exc

    async def _settle_failure(
        self, record: ScheduledPost, exc: Exception, warnings: Tuple[str, ...]
    ) -> DispatchResult:
        kind = classify_error(exc)
        message = str(exc) or exc.__class__.__name__
        if kind is ErrorKind.UNAUTHORIZED and hasattr(self.credentials, "invalidate"):
            project = await self.store.get_project(record.project_id)
            if project is not None:
                self.credentials.invalidate(project.user_id, record.platform)

        failed = await self.engine.mark_failed(record.id, message, kind)
        if failed.next_attempt_at is None:
            await self.engine.settle_republished(record.post_id, record.platform)
        await self._after_failure(failed, message)
        return DispatchResult(
            platform=record.platform,
            success=False,
            scheduled_post=failed,
            error=message,
            error_kind=kind,
            warnings=warnings,
        )

    # ================================================================
    # POST AND PROJECT STAGE
    # ================================================================

    async def _after_success(self, record: ScheduledPost) -> None:
        now = self._clock()
        post = await self.store.get_post(record.post_id)
        if post is not None and post.status is not PostStatus.PUBLISHED:
            try:
                transition = guards.mark_post_published(
                    post, record.published_at or now, now
                )
            except StateConflictError as exc:
                logger.debug("[DISPATCH] Post %s not marked published: %s", post.id, exc)
            else:
                await self.store.save_post(transition.entity)
                await self._record_event(transition, "Post published", post.project_id)

        project = await self._start_publishing(record.project_id)
        if project is None or project.stage is not ProjectStage.PUBLISHING:
            return

        posts = [
            p
            for p in await self.store.list_posts(project.id)
            if p.archived_at is None and p.status in _PUBLISHABLE_POST_STATUSES
        ]
        if posts and all(p.status is PostStatus.PUBLISHED for p in posts):
            await apply_project_transition(
                self.store, self.recorder, project, guards.complete_publishing, now, strict=False
            )

    async def _after_failure(self, record: ScheduledPost, message: str) -> None:
        now = self._clock()
        if record.next_attempt_at is None:
            await self._fail_post_if_settled(record, message, now)

        project = await self.store.get_project(record.project_id)
        if project is None or project.stage is not ProjectStage.PUBLISHING:
            return
        # Any success keeps the project publishing; otherwise it drops back to
        # Scheduled and the next success re-enters Publishing
        records = await self.store.list_scheduled_posts(project_id=project.id)
        published = (ScheduledPostStatus.PUBLISHED, ScheduledPostStatus.REPUBLISHING)
        if not any(r.status in published for r in records):
            await apply_project_transition(
                self.store, self.recorder, project, guards.fail_publishing, now, strict=False
            )

    async def _fail_post_if_settled(
        self, record: ScheduledPost, message: str, now: datetime
    ) -> None:
        """Mark the post Failed when none of its records can still publish it."""
        siblings = await self.store.list_scheduled_posts(post_id=record.post_id)
        if any(_may_still_publish(r) for r in siblings if r.id != record.id):
            return

        post = await self.store.get_post(record.post_id)
        if post is None or post.status not in {PostStatus.APPROVED, PostStatus.SCHEDULED}:
            return
        transition = guards.mark_post_failed(post, message, now)
        await self.store.save_post(transition.entity)
        logger.warning("[DISPATCH] Post %s failed on every platform: %s", post.id, message)
        await self._record_event(transition, f"Post failed: {message}", post.project_id)

    async def _start_publishing(self, project_id: str):
        project = await self.store.get_project(project_id)
        if project is None:
            return None
        if project.stage in (ProjectStage.POSTS_APPROVED, ProjectStage.SCHEDULED):
            moved = await apply_project_transition(
                self.store,
                self.recorder,
                project,
                guards.start_publishing,
                self._clock(),
                strict=False,
            )
            # Lost the race: another dispatch moved it, so re-read
            return moved or await self.store.get_project(project_id)
        return project

    async def _record_event(self, transition, description: str, project_id: str) -> None:
        if self.recorder is not None:
            await self.recorder.record_event(transition.event, description, project_id=project_id)


def _may_still_publish(record: ScheduledPost) -> bool:
    """Published, in flight, or failed with an automatic retry pending."""
    if record.status is ScheduledPostStatus.PUBLISHED or record.status in _IN_FLIGHT_STATUSES:
        return True
    return record.status is ScheduledPostStatus.FAILED and record.next_attempt_at is not None


__all__ = ["DispatchResult", "PublishingDispatcher"]
