"""
Human review of insights and posts.

``ApprovalWorkflow`` loads an entity, applies the matching guard from
:mod:`content_pipeline.workflow.state_guards`, persists the new snapshot and
records the activity.  Once every insight (or post) of a project has been
reviewed, the project stage moves on: forward when at least one item was
approved, back for rework when all were rejected.
"""

import logging
from datetime import datetime
from typing import Callable, Iterable, List, Optional

from content_pipeline.database import PipelineStore
from content_pipeline.exceptions import (
    DatabaseError,
    NotFoundError,
    PipelineBaseError,
    ValidationError,
)
from content_pipeline.models import (
    BatchResult,
    Insight,
    InsightStatus,
    Post,
    PostStatus,
    ProjectStage,
)
from content_pipeline.workflow import state_guards as guards
from content_pipeline.workflow.project_stage import apply_project_transition
from content_pipeline.utils import utc_now

logger = logging.getLogger(__name__)

# Errors that fail a single batch item without failing the batch
BATCH_ITEM_ERRORS = (PipelineBaseError, ValidationError, DatabaseError)


class ApprovalWorkflow:
    """Approve, reject and archive insights and posts.

    Args:
        store: Persistence store.
        recorder: Activity sink (``ActivityRecorder``), or ``None``.
        clock: Returns the current UTC time.
    """

    def __init__(
        self,
        store: PipelineStore,
        recorder=None,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self.store = store
        self.recorder = recorder
        self._clock = clock

    # ================================================================
    # INSIGHTS
    # ================================================================

    async def approve_insight(self, insight_id: str, by: str) -> Insight:
        insight = await self._load_insight(insight_id)
        transition = guards.approve_insight(insight, by, self._clock())
        await self._save_insight(transition, f"Insight approved by {by}")
        await self._advance_after_insight_review(insight.project_id)
        return transition.entity

    async def reject_insight(self, insight_id: str, by: str, reason: str) -> Insight:
        insight = await self._load_insight(insight_id)
        transition = guards.reject_insight(insight, by, reason, self._clock())
        await self._save_insight(transition, f"Insight rejected by {by}: {reason}")
        await self._advance_after_insight_review(insight.project_id)
        return transition.entity

    async def archive_insight(self, insight_id: str, by: str, reason: str) -> Insight:
        insight = await self._load_insight(insight_id)
        transition = guards.archive_insight(insight, by, reason, self._clock())
        await self._save_insight(transition, f"Insight archived by {by}")
        return transition.entity

    async def approve_insights(self, insight_ids: Iterable[str], by: str) -> BatchResult:
        return await self._batch(insight_ids, lambda i: self.approve_insight(i, by))

    async def reject_insights(
        self, insight_ids: Iterable[str], by: str, reason: str
    ) -> BatchResult:
        return await self._batch(
            insight_ids, lambda i: self.reject_insight(i, by, reason)
        )

    # ================================================================
    # POSTS
    # ================================================================

    async def approve_post(self, post_id: str, by: str) -> Post:
        post = await self._load_post(post_id)
        transition = guards.approve_post(post, by, self._clock())
        await self._save_post(transition, f"Post approved by {by}")
        await self._advance_after_post_review(post.project_id)
        return transition.entity

    async def reject_post(self, post_id: str, by: str, reason: str) -> Post:
        post = await self._load_post(post_id)
        transition = guards.reject_post(post, by, reason, self._clock())
        await self._save_post(transition, f"Post rejected by {by}: {reason}")
        await self._advance_after_post_review(post.project_id)
        return transition.entity

    async def archive_post(self, post_id: str, by: str, reason: str) -> Post:
        post = await self._load_post(post_id)
        transition = guards.archive_post(post, by, reason, self._clock())
        await self._save_post(transition, f"Post archived by {by}")
        return transition.entity

    async def approve_posts(self, post_ids: Iterable[str], by: str) -> BatchResult:
        return await self._batch(post_ids, lambda i: self.approve_post(i, by))

    async def reject_posts(self, post_ids: Iterable[str], by: str, reason: str) -> BatchResult:
        return await self._batch(post_ids, lambda i: self.reject_post(i, by, reason))

    # ================================================================
    # PROJECT STAGE
    # ================================================================

    async def _advance_after_insight_review(self, project_id: str) -> None:
        project = await self.store.get_project(project_id)
        if project is None or project.stage is not ProjectStage.INSIGHTS_READY:
            return
        insights = [
            i for i in await self.store.list_insights(project_id) if i.archived_at is None
        ]
        if not insights or any(not i.is_reviewed for i in insights):
            return
        if any(i.status is InsightStatus.APPROVED for i in insights):
            guard = guards.approve_insights_stage
        else:
            guard = guards.reprocess_insights
        await apply_project_transition(
            self.store, self.recorder, project, guard, self._clock()
        )

    async def _advance_after_post_review(self, project_id: str) -> None:
        project = await self.store.get_project(project_id)
        if project is None or project.stage is not ProjectStage.POSTS_GENERATED:
            return
        posts = [p for p in await self.store.list_posts(project_id) if p.archived_at is None]
        if not posts or any(not p.is_reviewed for p in posts):
            return
        if any(p.status is PostStatus.APPROVED for p in posts):
            guard = guards.approve_posts_stage
        else:
            guard = guards.regenerate_posts
        await apply_project_transition(
            self.store, self.recorder, project, guard, self._clock()
        )

    # ================================================================
    # INTERNAL HELPERS
    # ================================================================

    async def _load_insight(self, insight_id: str) -> Insight:
        insight = await self.store.get_insight(insight_id)
        if insight is None:
            raise NotFoundError(f"Insight {insight_id} not found")
        return insight

    async def _load_post(self, post_id: str) -> Post:
        post = await self.store.get_post(post_id)
        if post is None:
            raise NotFoundError(f"Post {post_id} not found")
        return post

    async def _save_insight(self, transition, description: str) -> None:
        insight = transition.entity
        await self.store.save_insight(insight)
        logger.info("[APPROVAL] %s: %s", transition.event.name, insight.id)
        await self._record(transition, description, insight.project_id)

    async def _save_post(self, transition, description: str) -> None:
        post = transition.entity
        await self.store.save_post(post)
        logger.info("[APPROVAL] %s: %s", transition.event.name, post.id)
        await self._record(transition, description, post.project_id)

    async def _record(self, transition, description: str, project_id: Optional[str]) -> None:
        if self.recorder is not None:
            await self.recorder.record_event(
                transition.event, description, project_id=project_id
            )

    async def _batch(self, item_ids: Iterable[str], action) -> BatchResult:
        """Run *action* for every id, collecting per-item outcomes."""
        result = BatchResult()
        ids: List[str] = list(item_ids)
        for item_id in ids:
            try:
                entity = await action(item_id)
            except BATCH_ITEM_ERRORS as exc:
                logger.warning("[APPROVAL] Batch item %s failed: %s", item_id, exc)
                result.add_failure(item_id, str(exc))
            else:
                result.add_success(item_id, entity.status.value)
        logger.info(
            "[APPROVAL] Batch complete: %d succeeded, %d failed",
            result.success_count,
            result.failure_count,
        )
        return result


__all__ = ["ApprovalWorkflow", "BATCH_ITEM_ERRORS"]
