"""
Guarded state transitions for projects, insights, posts and scheduled posts.

Every function here is pure: it takes an immutable snapshot (plus the
current time) and returns a ``Transition`` holding the new snapshot and the
``DomainEvent`` that describes the change.  When the precondition implied
by the operation's name does not hold, ``StateConflictError`` is raised and
nothing changes.  Nothing is persisted here; callers store the new snapshot.
"""

from dataclasses import replace
from datetime import datetime
from typing import Any, Dict, FrozenSet, Optional, Sequence

from content_pipeline.exceptions import StateConflictError, ValidationError
from content_pipeline.models import (
    ContentProject,
    DomainEvent,
    ErrorKind,
    Insight,
    InsightStatus,
    Post,
    PostStatus,
    ProjectStage,
    ScheduledPost,
    ScheduledPostStatus,
    Transition,
)
from content_pipeline.utils import backoff_delay, ensure_utc

DEFAULT_MAX_RETRIES = 3
DEFAULT_RETRY_DELAYS = (30, 60, 300)


def _event(name: str, entity_id: str, now: datetime, **data: Any) -> DomainEvent:
    return DomainEvent(name=name, entity_id=entity_id, occurred_at=now, data=data)


# =============================================================================
# CONTENT PROJECT
# =============================================================================

_S = ProjectStage

PROJECT_TRANSITIONS: Dict[ProjectStage, FrozenSet[ProjectStage]] = {
    _S.RAW_CONTENT: frozenset({_S.PROCESSING_CONTENT, _S.ARCHIVED}),
    _S.PROCESSING_CONTENT: frozenset({_S.INSIGHTS_READY, _S.RAW_CONTENT, _S.ARCHIVED}),
    _S.INSIGHTS_READY: frozenset({_S.INSIGHTS_APPROVED, _S.PROCESSING_CONTENT, _S.ARCHIVED}),
    _S.INSIGHTS_APPROVED: frozenset({_S.POSTS_GENERATED, _S.ARCHIVED}),
    _S.POSTS_GENERATED: frozenset({_S.POSTS_APPROVED, _S.INSIGHTS_APPROVED, _S.ARCHIVED}),
    _S.POSTS_APPROVED: frozenset({_S.SCHEDULED, _S.PUBLISHING, _S.ARCHIVED}),
    _S.SCHEDULED: frozenset({_S.PUBLISHING, _S.ARCHIVED}),
    _S.PUBLISHING: frozenset({_S.PUBLISHED, _S.SCHEDULED, _S.ARCHIVED}),
    _S.PUBLISHED: frozenset({_S.ARCHIVED}),
    _S.ARCHIVED: frozenset({_S.RAW_CONTENT}),
}


def allowed_transitions(stage: ProjectStage) -> Sequence[ProjectStage]:
    """Stages reachable from *stage*, in pipeline order."""
    return sorted(PROJECT_TRANSITIONS[stage], key=lambda s: s.order)


def _move_project(
    project: ContentProject,
    operation: str,
    sources: FrozenSet[ProjectStage],
    target: ProjectStage,
    now: datetime,
) -> Transition[ContentProject]:
    if project.stage not in sources or target not in PROJECT_TRANSITIONS[project.stage]:
        raise StateConflictError(
            f"Cannot {operation.replace('_', ' ')}: project {project.id} is in "
            f"stage '{project.stage.value}'",
            entity="project",
            entity_id=project.id,
            current=project.stage.value,
        )
    progress = target.progress if target.progress is not None else project.progress
    updated = replace(
        project,
        stage=target,
        progress=progress,
        updated_at=now,
        last_activity_at=now,
    )
    return Transition(
        updated,
        _event(
            "project_stage_changed",
            project.id,
            now,
            operation=operation,
            from_stage=project.stage.value,
            to_stage=target.value,
        ),
    )


def start_content_processing(project: ContentProject, now: datetime) -> Transition[ContentProject]:
    return _move_project(
        project, "start_processing", frozenset({_S.RAW_CONTENT}), _S.PROCESSING_CONTENT, now
    )


def complete_content_processing(project: ContentProject, now: datetime) -> Transition[ContentProject]:
    return _move_project(
        project, "complete_processing", frozenset({_S.PROCESSING_CONTENT}), _S.INSIGHTS_READY, now
    )


def fail_content_processing(project: ContentProject, now: datetime) -> Transition[ContentProject]:
    return _move_project(
        project, "fail_processing", frozenset({_S.PROCESSING_CONTENT}), _S.RAW_CONTENT, now
    )


def approve_insights_stage(project: ContentProject, now: datetime) -> Transition[ContentProject]:
    return _move_project(
        project, "approve_insights", frozenset({_S.INSIGHTS_READY}), _S.INSIGHTS_APPROVED, now
    )


def reprocess_insights(project: ContentProject, now: datetime) -> Transition[ContentProject]:
    """All insights were rejected; send the project back to processing."""
    return _move_project(
        project, "reprocess_insights", frozenset({_S.INSIGHTS_READY}), _S.PROCESSING_CONTENT, now
    )


def complete_post_generation(project: ContentProject, now: datetime) -> Transition[ContentProject]:
    return _move_project(
        project, "generate_posts", frozenset({_S.INSIGHTS_APPROVED}), _S.POSTS_GENERATED, now
    )


def approve_posts_stage(project: ContentProject, now: datetime) -> Transition[ContentProject]:
    return _move_project(
        project, "approve_posts", frozenset({_S.POSTS_GENERATED}), _S.POSTS_APPROVED, now
    )


def regenerate_posts(project: ContentProject, now: datetime) -> Transition[ContentProject]:
    """All posts were rejected; go back to the approved-insights stage."""
    return _move_project(
        project, "regenerate_posts", frozenset({_S.POSTS_GENERATED}), _S.INSIGHTS_APPROVED, now
    )


def schedule_posts(project: ContentProject, now: datetime) -> Transition[ContentProject]:
    return _move_project(
        project, "schedule_posts", frozenset({_S.POSTS_APPROVED}), _S.SCHEDULED, now
    )


def start_publishing(project: ContentProject, now: datetime) -> Transition[ContentProject]:
    return _move_project(
        project,
        "start_publishing",
        frozenset({_S.POSTS_APPROVED, _S.SCHEDULED}),
        _S.PUBLISHING,
        now,
    )


def complete_publishing(project: ContentProject, now: datetime) -> Transition[ContentProject]:
    return _move_project(
        project, "complete_publishing", frozenset({_S.PUBLISHING}), _S.PUBLISHED, now
    )


def fail_publishing(project: ContentProject, now: datetime) -> Transition[ContentProject]:
    return _move_project(
        project, "fail_publishing", frozenset({_S.PUBLISHING}), _S.SCHEDULED, now
    )


def archive_project(project: ContentProject, now: datetime) -> Transition[ContentProject]:
    sources = frozenset(s for s in ProjectStage if s is not _S.ARCHIVED)
    return _move_project(project, "archive", sources, _S.ARCHIVED, now)


def restore_project(project: ContentProject, now: datetime) -> Transition[ContentProject]:
    return _move_project(project, "restore", frozenset({_S.ARCHIVED}), _S.RAW_CONTENT, now)


# =============================================================================
# INSIGHT
# =============================================================================


def _insight_conflict(insight: Insight, action: str) -> StateConflictError:
    return StateConflictError(
        f"Cannot {action} insight {insight.id}: status is '{insight.status.value}'",
        entity="insight",
        entity_id=insight.id,
        current=insight.status.value,
    )


def approve_insight(insight: Insight, by: str, now: datetime) -> Transition[Insight]:
    """Approve a draft insight.

    Approving an approved insight is a conflict, and so is approving a
    rejected one: a rejected insight is replaced, not un-rejected.
    """
    if insight.status is not InsightStatus.DRAFT or insight.archived_at is not None:
        raise _insight_conflict(insight, "approve")
    updated = replace(
        insight,
        status=InsightStatus.APPROVED,
        reviewed_by=by,
        reviewed_at=now,
        updated_at=now,
    )
    return Transition(updated, _event("insight_approved", insight.id, now, by=by))


def reject_insight(insight: Insight, by: str, reason: str, now: datetime) -> Transition[Insight]:
    if not reason or not reason.strip():
        raise ValidationError("A rejection reason is required")
    if insight.status is not InsightStatus.DRAFT or insight.archived_at is not None:
        raise _insight_conflict(insight, "reject")
    updated = replace(
        insight,
        status=InsightStatus.REJECTED,
        reviewed_by=by,
        reviewed_at=now,
        rejection_reason=reason,
        updated_at=now,
    )
    return Transition(
        updated, _event("insight_rejected", insight.id, now, by=by, reason=reason)
    )


def archive_insight(insight: Insight, by: str, reason: str, now: datetime) -> Transition[Insight]:
    if insight.archived_at is not None:
        raise StateConflictError(
            f"Insight {insight.id} is already archived",
            entity="insight",
            entity_id=insight.id,
            current="archived",
        )
    updated = replace(insight, archived_at=now, archived_reason=reason, updated_at=now)
    return Transition(
        updated, _event("insight_archived", insight.id, now, by=by, reason=reason)
    )


# =============================================================================
# POST
# =============================================================================


def _post_conflict(post: Post, action: str, detail: str = "") -> StateConflictError:
    message = f"Cannot {action} post {post.id}: status is '{post.status.value}'"
    if detail:
        message = f"{message} ({detail})"
    return StateConflictError(
        message, entity="post", entity_id=post.id, current=post.status.value
    )


def approve_post(post: Post, by: str, now: datetime) -> Transition[Post]:
    """Approve a draft (or previously rejected) post."""
    if post.is_approved:
        raise _post_conflict(post, "approve", "already approved")
    if post.status not in {PostStatus.DRAFT, PostStatus.REJECTED} or post.archived_at:
        raise _post_conflict(post, "approve")
    updated = replace(
        post,
        status=PostStatus.APPROVED,
        approved_by=by,
        approved_at=now,
        rejected_by=None,
        rejected_at=None,
        rejection_reason=None,
        updated_at=now,
    )
    return Transition(updated, _event("post_approved", post.id, now, by=by))


def reject_post(post: Post, by: str, reason: str, now: datetime) -> Transition[Post]:
    if not reason or not reason.strip():
        raise ValidationError("A rejection reason is required")
    if post.status is not PostStatus.DRAFT or post.archived_at is not None:
        raise _post_conflict(post, "reject", "only drafts are under review")
    updated = replace(
        post,
        status=PostStatus.REJECTED,
        rejected_by=by,
        rejected_at=now,
        rejection_reason=reason,
        updated_at=now,
    )
    return Transition(
        updated, _event("post_rejected", post.id, now, by=by, reason=reason)
    )


def archive_post(post: Post, by: str, reason: str, now: datetime) -> Transition[Post]:
    if post.status is PostStatus.SCHEDULED:
        raise _post_conflict(post, "archive", "cancel the schedule first")
    if post.archived_at is not None:
        raise _post_conflict(post, "archive", "already archived")
    updated = replace(post, archived_at=now, archived_reason=reason, updated_at=now)
    return Transition(
        updated, _event("post_archived", post.id, now, by=by, reason=reason)
    )


def mark_post_scheduled(post: Post, now: datetime) -> Transition[Post]:
    """Flip an approved post to Scheduled.

    A post already Scheduled stays approved, so it may be scheduled on a
    further platform.  A Failed post was approved before its publish
    attempt and may be scheduled again.
    """
    if not (post.is_approved or post.status is PostStatus.FAILED):
        raise _post_conflict(post, "schedule", "post must be approved first")
    updated = replace(
        post, status=PostStatus.SCHEDULED, error_message=None, updated_at=now
    )
    return Transition(updated, _event("post_scheduled", post.id, now))


def unschedule_post(post: Post, now: datetime) -> Transition[Post]:
    """Scheduled (or Failed) -> Approved, once no schedule remains."""
    if post.status not in {PostStatus.SCHEDULED, PostStatus.FAILED}:
        raise _post_conflict(post, "unschedule")
    updated = replace(post, status=PostStatus.APPROVED, updated_at=now)
    return Transition(updated, _event("post_unscheduled", post.id, now))


def mark_post_published(post: Post, published_at: datetime, now: datetime) -> Transition[Post]:
    if post.status not in {PostStatus.APPROVED, PostStatus.SCHEDULED, PostStatus.FAILED}:
        raise _post_conflict(post, "mark published")
    updated = replace(
        post,
        status=PostStatus.PUBLISHED,
        published_at=published_at,
        error_message=None,
        updated_at=now,
    )
    return Transition(updated, _event("post_published", post.id, now))


def mark_post_failed(post: Post, error_message: str, now: datetime) -> Transition[Post]:
    if post.status not in {PostStatus.APPROVED, PostStatus.SCHEDULED}:
        raise _post_conflict(post, "mark failed")
    updated = replace(
        post,
        status=PostStatus.FAILED,
        failed_at=now,
        error_message=error_message,
        updated_at=now,
    )
    return Transition(
        updated, _event("post_failed", post.id, now, error=error_message)
    )


# =============================================================================
# SCHEDULED POST
# =============================================================================

CANCELLABLE_STATUSES: FrozenSet[ScheduledPostStatus] = frozenset({
    ScheduledPostStatus.PENDING,
    ScheduledPostStatus.FAILED,
    ScheduledPostStatus.RETRY,
    ScheduledPostStatus.REPUBLISHING,
})

NON_RESCHEDULABLE_STATUSES: FrozenSet[ScheduledPostStatus] = frozenset({
    ScheduledPostStatus.PUBLISHED,
    ScheduledPostStatus.PROCESSING,
    ScheduledPostStatus.CANCELLED,
})


def _scheduled_conflict(record: ScheduledPost, action: str) -> StateConflictError:
    return StateConflictError(
        f"Cannot {action} scheduled post {record.id}: status is "
        f"'{record.status.value}'",
        entity="scheduled_post",
        entity_id=record.id,
        current=record.status.value,
    )


def validate_schedule_time(when: datetime, now: datetime) -> datetime:
    """Return *when* as aware UTC, or raise if it is not strictly in the future."""
    when = ensure_utc(when)
    if when <= now:
        raise ValidationError(
            f"Scheduled time {when.isoformat()} must be in the future "
            f"(now: {now.isoformat()})"
        )
    return when


def start_processing(record: ScheduledPost, now: datetime) -> Transition[ScheduledPost]:
    """Pending -> Processing.  The store performs this as a conditional write."""
    if record.status is not ScheduledPostStatus.PENDING:
        raise _scheduled_conflict(record, "start processing")
    updated = replace(
        record, status=ScheduledPostStatus.PROCESSING, last_attempt=now, updated_at=now
    )
    return Transition(updated, _event("scheduled_post_processing", record.id, now))


def mark_published(
    record: ScheduledPost,
    external_post_id: str,
    published_at: datetime,
    now: datetime,
    publish_url: Optional[str] = None,
) -> Transition[ScheduledPost]:
    if record.status is not ScheduledPostStatus.PROCESSING:
        raise _scheduled_conflict(record, "mark published")
    updated = replace(
        record,
        status=ScheduledPostStatus.PUBLISHED,
        external_post_id=external_post_id,
        publish_url=publish_url,
        published_at=published_at,
        next_attempt_at=None,
        updated_at=now,
    )
    return Transition(
        updated,
        _event(
            "scheduled_post_published",
            record.id,
            now,
            platform=record.platform,
            external_post_id=external_post_id,
        ),
    )


def can_retry(record: ScheduledPost, max_retries: int = DEFAULT_MAX_RETRIES) -> bool:
    """Whether a failed record may go back to Pending."""
    return record.status is ScheduledPostStatus.FAILED and record.retry_count < max_retries


def mark_failed(
    record: ScheduledPost,
    error_message: str,
    failure_reason: ErrorKind,
    now: datetime,
    max_retries: int = DEFAULT_MAX_RETRIES,
    retry_delays: Sequence[int] = DEFAULT_RETRY_DELAYS,
) -> Transition[ScheduledPost]:
    """Processing -> Failed, counting the attempt.

    ``next_attempt_at`` is only set while the failure kind is retryable and
    attempts remain; otherwise the record waits for a human.
    """
    if record.status is not ScheduledPostStatus.PROCESSING:
        raise _scheduled_conflict(record, "mark failed")
    retry_count = record.retry_count + 1
    next_attempt_at = None
    if failure_reason.is_retryable and retry_count < max_retries:
        next_attempt_at = now + backoff_delay(retry_count, retry_delays)
    updated = replace(
        record,
        status=ScheduledPostStatus.FAILED,
        retry_count=retry_count,
        last_attempt=now,
        next_attempt_at=next_attempt_at,
        error_message=error_message,
        failure_reason=failure_reason.value,
        updated_at=now,
    )
    return Transition(
        updated,
        _event(
            "scheduled_post_failed",
            record.id,
            now,
            platform=record.platform,
            reason=failure_reason.value,
            retry_count=retry_count,
            will_retry=next_attempt_at is not None,
        ),
    )


def reset_for_retry(
    record: ScheduledPost, now: datetime, max_retries: int = DEFAULT_MAX_RETRIES
) -> Transition[ScheduledPost]:
    """Failed -> Pending, keeping the attempt count."""
    if not can_retry(record, max_retries):
        if record.status is ScheduledPostStatus.FAILED:
            raise StateConflictError(
                f"Scheduled post {record.id} exhausted its retries "
                f"({record.retry_count}/{max_retries}); reschedule it instead",
                entity="scheduled_post",
                entity_id=record.id,
                current=record.status.value,
            )
        raise _scheduled_conflict(record, "retry")
    updated = replace(
        record,
        status=ScheduledPostStatus.PENDING,
        next_attempt_at=None,
        updated_at=now,
    )
    return Transition(
        updated,
        _event("scheduled_post_retry", record.id, now, retry_count=record.retry_count),
    )


def cancel(record: ScheduledPost, reason: str, now: datetime) -> Transition[ScheduledPost]:
    """Cancel a record that has not been claimed.

    Published and Processing records can never be cancelled.
    """
    if record.status not in CANCELLABLE_STATUSES:
        raise _scheduled_conflict(record, "cancel")
    updated = replace(
        record,
        status=ScheduledPostStatus.CANCELLED,
        cancelled_at=now,
        cancel_reason=reason,
        next_attempt_at=None,
        updated_at=now,
    )
    return Transition(
        updated, _event("scheduled_post_cancelled", record.id, now, reason=reason)
    )


def reschedule(
    record: ScheduledPost, new_time: datetime, now: datetime
) -> Transition[ScheduledPost]:
    """Move a record to a new time, clearing its failure history."""
    if record.status in NON_RESCHEDULABLE_STATUSES:
        raise _scheduled_conflict(record, "reschedule")
    new_time = validate_schedule_time(new_time, now)
    updated = replace(
        record,
        status=ScheduledPostStatus.PENDING,
        scheduled_time=new_time,
        retry_count=0,
        next_attempt_at=None,
        error_message=None,
        failure_reason=None,
        updated_at=now,
    )
    return Transition(
        updated,
        _event(
            "scheduled_post_rescheduled",
            record.id,
            now,
            previous_time=record.scheduled_time.isoformat(),
            new_time=new_time.isoformat(),
        ),
    )


def mark_republishing(
    record: ScheduledPost, reason: str, now: datetime
) -> Transition[ScheduledPost]:
    """Published -> Republishing while a fresh attempt re-sends the post."""
    if record.status is not ScheduledPostStatus.PUBLISHED:
        raise _scheduled_conflict(record, "republish")
    updated = replace(record, status=ScheduledPostStatus.REPUBLISHING, updated_at=now)
    return Transition(
        updated,
        _event(
            "scheduled_post_republishing",
            record.id,
            now,
            platform=record.platform,
            reason=reason,
        ),
    )


def finish_republishing(record: ScheduledPost, now: datetime) -> Transition[ScheduledPost]:
    """Republishing -> Published once the fresh attempt has settled."""
    if record.status is not ScheduledPostStatus.REPUBLISHING:
        raise _scheduled_conflict(record, "finish republishing")
    updated = replace(record, status=ScheduledPostStatus.PUBLISHED, updated_at=now)
    return Transition(
        updated, _event("scheduled_post_republished", record.id, now, platform=record.platform)
    )


__all__ = [
    "DEFAULT_MAX_RETRIES",
    "DEFAULT_RETRY_DELAYS",
    # Project
    "PROJECT_TRANSITIONS",
    "allowed_transitions",
    "start_content_processing",
    "complete_content_processing",
    "fail_content_processing",
    "approve_insights_stage",
    "reprocess_insights",
    "complete_post_generation",
    "approve_posts_stage",
    "regenerate_posts",
    "schedule_posts",
    "start_publishing",
    "complete_publishing",
    "fail_publishing",
    "archive_project",
    "restore_project",
    # Insight
    "approve_insight",
    "reject_insight",
    "archive_insight",
    # Post
    "approve_post",
    "reject_post",
    "archive_post",
    "mark_post_scheduled",
    "unschedule_post",
    "mark_post_published",
    "mark_post_failed",
    # Scheduled post
    "CANCELLABLE_STATUSES",
    "validate_schedule_time",
    "start_processing",
    "mark_published",
    "can_retry",
    "mark_failed",
    "reset_for_retry",
    "cancel",
    "reschedule",
    "mark_republishing",
    "finish_republishing",
]
