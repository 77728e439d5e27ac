"""
Pipeline data models: stages, statuses and entity snapshots.

Every entity is a frozen dataclass.  State never changes in place: the guard
functions in :mod:`content_pipeline.workflow.state_guards` take a snapshot
and return a new one together with a :class:`DomainEvent`.

Defines:
- ``ProjectStage``: ordered lifecycle of a ``ContentProject``.
- ``InsightStatus``, ``PostStatus``, ``ScheduledPostStatus``, ``JobStatus``.
- ``ErrorKind``: classification of external publish failures.
- ``ContentProject``, ``Insight``, ``Post``, ``ScheduledPost``,
  ``RecurringJobRecord``, ``Credential``.
- ``DomainEvent`` and ``Transition``: result of a guarded state change.

Each persisted entity exposes ``to_row()`` / ``from_row()`` for the
``scheduled_posts``, ``posts``, ``insights``, ``content_projects`` and
``job_records`` tables.
"""

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, Generic, Optional, Tuple, TypeVar

from content_pipeline.utils import (
    isoformat_or_none,
    parse_timestamp,
    utc_now,
)

T = TypeVar("T")


# =============================================================================
# PROJECT STAGE
# =============================================================================


class ProjectStage(Enum):
    """Ordered lifecycle position of a content project.

    Regressions only happen through explicit failure or rework transitions
    (``fail_processing``, ``fail_publishing``, ...).
    """

    RAW_CONTENT = "raw_content"
    PROCESSING_CONTENT = "processing_content"
    INSIGHTS_READY = "insights_ready"
    INSIGHTS_APPROVED = "insights_approved"
    POSTS_GENERATED = "posts_generated"
    POSTS_APPROVED = "posts_approved"
    SCHEDULED = "scheduled"
    PUBLISHING = "publishing"
    PUBLISHED = "published"
    ARCHIVED = "archived"

    @property
    def order(self) -> int:
        """Position of the stage in the pipeline (0-based)."""
        return list(ProjectStage).index(self)

    @property
    def progress(self) -> Optional[int]:
        """Default overall progress for the stage.

        ``None`` for ``ARCHIVED``, which keeps the previous progress.
        """
        return _STAGE_PROGRESS.get(self)


_STAGE_PROGRESS: Dict[ProjectStage, int] = {
    ProjectStage.RAW_CONTENT: 0,
    ProjectStage.PROCESSING_CONTENT: 10,
    ProjectStage.INSIGHTS_READY: 30,
    ProjectStage.INSIGHTS_APPROVED: 50,
    ProjectStage.POSTS_GENERATED: 70,
    ProjectStage.POSTS_APPROVED: 80,
    ProjectStage.SCHEDULED: 90,
    ProjectStage.PUBLISHING: 95,
    ProjectStage.PUBLISHED: 100,
}


# =============================================================================
# STATUS ENUMS
# =============================================================================


class InsightStatus(Enum):
    DRAFT = "draft"
    APPROVED = "approved"
    REJECTED = "rejected"


class PostStatus(Enum):
    """Lifecycle status of a generated post.

    Transitions:
        DRAFT -> APPROVED -> SCHEDULED -> PUBLISHED
              -> REJECTED             -> FAILED
        SCHEDULED -> APPROVED (cancelled schedule)
    """

    DRAFT = "draft"
    APPROVED = "approved"
    REJECTED = "rejected"
    SCHEDULED = "scheduled"
    PUBLISHED = "published"
    FAILED = "failed"


class ScheduledPostStatus(Enum):
    """Lifecycle status of a scheduled publish attempt.

    Transitions:
        PENDING -> PROCESSING -> PUBLISHED
                              -> FAILED -> PENDING (reset / reschedule)
        PENDING, FAILED -> CANCELLED
        PUBLISHED -> REPUBLISHING -> PUBLISHED (republish)

    ``RETRY`` is accepted when reading rows but is never produced by the
    engine.
    """

    PENDING = "pending"
    PROCESSING = "processing"
    PUBLISHED = "published"
    FAILED = "failed"
    CANCELLED = "cancelled"
    REPUBLISHING = "republishing"
    RETRY = "retry"

    @property
    def is_active(self) -> bool:
        """Whether the record still occupies its (post, platform) slot.

        Failed records stay active: they can be retried or rescheduled.
        """
        return not self.is_terminal

    @property
    def is_terminal(self) -> bool:
        """Check if no automatic transition can leave this status."""
        return self in {ScheduledPostStatus.PUBLISHED, ScheduledPostStatus.CANCELLED}


class JobStatus(Enum):
    QUEUED = "queued"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


class ErrorKind(Enum):
    """Classification of an external publish failure."""

    RATE_LIMITED = "rate_limited"
    UNAUTHORIZED = "unauthorized"
    TRANSIENT = "transient"
    TERMINAL = "terminal"

    @property
    def is_retryable(self) -> bool:
        """Rate limits and transient failures are retried by the engine."""
        return self in {ErrorKind.RATE_LIMITED, ErrorKind.TRANSIENT}


# =============================================================================
# EVENTS
# =============================================================================


@dataclass(frozen=True)
class DomainEvent:
    """Something that happened to an entity as the result of a transition."""

    name: str
    entity_id: str
    occurred_at: datetime
    data: Dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class Transition(Generic[T]):
    """New entity snapshot plus the event describing the change."""

    entity: T
    event: DomainEvent


# =============================================================================
# CONTENT PROJECT
# =============================================================================


@dataclass(frozen=True)
class ProjectMetrics:
    published_post_count: int = 0
    failed_post_count: int = 0
    last_published_at: Optional[datetime] = None


@dataclass(frozen=True)
class ContentProject:
    """A content project moving through the pipeline stages.

    Attributes:
        id: Unique identifier (UUID).
        user_id: Owner; used to look up publishing credentials.
        title: Human-readable project title.
        stage: Current ``ProjectStage``.
        progress: Overall progress percentage (0-100).
        target_platforms: Platforms posts from this project go to.
        metrics: Aggregate publishing metrics.
    """

    id: str
    user_id: str
    title: str
    stage: ProjectStage = ProjectStage.RAW_CONTENT
    progress: int = 0
    target_platforms: Tuple[str, ...] = ("linkedin",)
    metrics: ProjectMetrics = field(default_factory=ProjectMetrics)
    created_at: datetime = field(default_factory=utc_now)
    updated_at: datetime = field(default_factory=utc_now)
    last_activity_at: Optional[datetime] = None

    def to_row(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "user_id": self.user_id,
            "title": self.title,
            "current_stage": self.stage.value,
            "overall_progress": self.progress,
            "target_platforms": list(self.target_platforms),
            "published_post_count": self.metrics.published_post_count,
            "failed_post_count": self.metrics.failed_post_count,
            "last_published_at": isoformat_or_none(self.metrics.last_published_at),
            "created_at": self.created_at.isoformat(),
            "updated_at": self.updated_at.isoformat(),
            "last_activity_at": isoformat_or_none(self.last_activity_at),
        }

    @classmethod
    def from_row(cls, row: Dict[str, Any]) -> "ContentProject":
        return cls(
            id=row["id"],
            user_id=row.get("user_id", ""),
            title=row.get("title", ""),
            stage=ProjectStage(row.get("current_stage", "raw_content")),
            progress=int(row.get("overall_progress", 0)),
            target_platforms=tuple(row.get("target_platforms") or ("linkedin",)),
            metrics=ProjectMetrics(
                published_post_count=int(row.get("published_post_count", 0)),
                failed_post_count=int(row.get("failed_post_count", 0)),
                last_published_at=parse_timestamp(row.get("last_published_at")),
            ),
            created_at=parse_timestamp(row.get("created_at")) or utc_now(),
            updated_at=parse_timestamp(row.get("updated_at")) or utc_now(),
            last_activity_at=parse_timestamp(row.get("last_activity_at")),
        )


# =============================================================================
# INSIGHT
# =============================================================================


@dataclass(frozen=True)
class Insight:
    """An insight extracted from a transcript, awaiting human review."""

    id: str
    project_id: str
    title: str
    transcript_id: Optional[str] = None
    status: InsightStatus = InsightStatus.DRAFT
    reviewed_by: Optional[str] = None
    reviewed_at: Optional[datetime] = None
    rejection_reason: Optional[str] = None
    archived_at: Optional[datetime] = None
    archived_reason: Optional[str] = None
    created_at: datetime = field(default_factory=utc_now)
    updated_at: datetime = field(default_factory=utc_now)

    @property
    def is_reviewed(self) -> bool:
        return self.status is not InsightStatus.DRAFT

    def to_row(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "project_id": self.project_id,
            "transcript_id": self.transcript_id,
            "title": self.title,
            "status": self.status.value,
            "reviewed_by": self.reviewed_by,
            "reviewed_at": isoformat_or_none(self.reviewed_at),
            "rejection_reason": self.rejection_reason,
            "archived_at": isoformat_or_none(self.archived_at),
            "archived_reason": self.archived_reason,
            "created_at": self.created_at.isoformat(),
            "updated_at": self.updated_at.isoformat(),
        }

    @classmethod
    def from_row(cls, row: Dict[str, Any]) -> "Insight":
        return cls(
            id=row["id"],
            project_id=row.get("project_id", ""),
            title=row.get("title", ""),
            transcript_id=row.get("transcript_id"),
            status=InsightStatus(row.get("status", "draft")),
            reviewed_by=row.get("reviewed_by"),
            reviewed_at=parse_timestamp(row.get("reviewed_at")),
            rejection_reason=row.get("rejection_reason"),
            archived_at=parse_timestamp(row.get("archived_at")),
            archived_reason=row.get("archived_reason"),
            created_at=parse_timestamp(row.get("created_at")) or utc_now(),
            updated_at=parse_timestamp(row.get("updated_at")) or utc_now(),
        )


# =============================================================================
# POST
# =============================================================================


@dataclass(frozen=True)
class Post:
    """A generated social post.

    Attributes:
        id: Unique identifier (UUID).
        project_id: Owning project.
        insight_id: Insight the post was generated from.
        platform: Primary target platform (``"linkedin"``, ``"x"``, ...).
        content: Full post text before platform adaptation.
        status: Current ``PostStatus``.
        error_message: Last publish error, if the post failed.
    """

    id: str
    project_id: str
    insight_id: str
    platform: str
    content: str
    status: PostStatus = PostStatus.DRAFT

    # Review metadata
    approved_by: Optional[str] = None
    approved_at: Optional[datetime] = None
    rejected_by: Optional[str] = None
    rejected_at: Optional[datetime] = None
    rejection_reason: Optional[str] = None
    archived_at: Optional[datetime] = None
    archived_reason: Optional[str] = None

    # Publishing metadata
    published_at: Optional[datetime] = None
    failed_at: Optional[datetime] = None
    error_message: Optional[str] = None

    created_at: datetime = field(default_factory=utc_now)
    updated_at: datetime = field(default_factory=utc_now)

    @property
    def is_approved(self) -> bool:
        """Approved posts stay approved once scheduled."""
        return self.status in {PostStatus.APPROVED, PostStatus.SCHEDULED}

    @property
    def is_reviewed(self) -> bool:
        return self.status is not PostStatus.DRAFT

    def to_row(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "project_id": self.project_id,
            "insight_id": self.insight_id,
            "platform": self.platform,
            "content": self.content,
            "status": self.status.value,
            "approved_by": self.approved_by,
            "approved_at": isoformat_or_none(self.approved_at),
            "rejected_by": self.rejected_by,
            "rejected_at": isoformat_or_none(self.rejected_at),
            "rejection_reason": self.rejection_reason,
            "archived_at": isoformat_or_none(self.archived_at),
            "archived_reason": self.archived_reason,
            "published_at": isoformat_or_none(self.published_at),
            "failed_at": isoformat_or_none(self.failed_at),
            "error_message": self.error_message,
            "created_at": self.created_at.isoformat(),
            "updated_at": self.updated_at.isoformat(),
        }

    @classmethod
    def from_row(cls, row: Dict[str, Any]) -> "Post":
        return cls(
            id=row["id"],
            project_id=row.get("project_id", ""),
            insight_id=row.get("insight_id", ""),
            platform=row.get("platform", "linkedin"),
            content=row.get("content", ""),
            status=PostStatus(row.get("status", "draft")),
            approved_by=row.get("approved_by"),
            approved_at=parse_timestamp(row.get("approved_at")),
            rejected_by=row.get("rejected_by"),
            rejected_at=parse_timestamp(row.get("rejected_at")),
            rejection_reason=row.get("rejection_reason"),
            archived_at=parse_timestamp(row.get("archived_at")),
            archived_reason=row.get("archived_reason"),
            published_at=parse_timestamp(row.get("published_at")),
            failed_at=parse_timestamp(row.get("failed_at")),
            error_message=row.get("error_message"),
            created_at=parse_timestamp(row.get("created_at")) or utc_now(),
            updated_at=parse_timestamp(row.get("updated_at")) or utc_now(),
        )


# =============================================================================
# SCHEDULED POST
# =============================================================================


@dataclass(frozen=True)
class ScheduledPost:
    """A single publish attempt of a post on one platform at a chosen time.

    Attributes:
        id: Unique identifier (UUID).
        post_id: The post being published.
        project_id: Owning project.
        platform: Target platform.
        content: Post text captured when the record was created.
        scheduled_time: When to publish (timezone-aware UTC).
        timezone: IANA timezone the user scheduled in (display only).
        status: Current ``ScheduledPostStatus``.
        retry_count: Number of failed attempts since the last reset.
        last_attempt: When the record was last claimed or failed.
        next_attempt_at: Earliest automatic retry time after a failure.
        error_message: Last error message.
        failure_reason: ``ErrorKind`` value of the last failure.
        external_post_id: Platform identifier of the published post.
        publish_url: Public URL of the published post.
    """

    id: str
    post_id: str
    project_id: str
    platform: str
    content: str
    scheduled_time: datetime
    timezone: str = "UTC"
    status: ScheduledPostStatus = ScheduledPostStatus.PENDING

    # Attempt tracking
    retry_count: int = 0
    last_attempt: Optional[datetime] = None
    next_attempt_at: Optional[datetime] = None
    error_message: Optional[str] = None
    failure_reason: Optional[str] = None

    # Outcome
    external_post_id: Optional[str] = None
    publish_url: Optional[str] = None
    published_at: Optional[datetime] = None
    cancelled_at: Optional[datetime] = None
    cancel_reason: Optional[str] = None

    created_at: datetime = field(default_factory=utc_now)
    updated_at: datetime = field(default_factory=utc_now)

    def to_row(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "post_id": self.post_id,
            "project_id": self.project_id,
            "platform": self.platform,
            "content": self.content,
            "scheduled_time": self.scheduled_time.isoformat(),
            "timezone": self.timezone,
            "status": self.status.value,
            "retry_count": self.retry_count,
            "last_attempt": isoformat_or_none(self.last_attempt),
            "next_attempt_at": isoformat_or_none(self.next_attempt_at),
            "error_message": self.error_message,
            "failure_reason": self.failure_reason,
            "external_post_id": self.external_post_id,
            "publish_url": self.publish_url,
            "published_at": isoformat_or_none(self.published_at),
            "cancelled_at": isoformat_or_none(self.cancelled_at),
            "cancel_reason": self.cancel_reason,
            "created_at": self.created_at.isoformat(),
            "updated_at": self.updated_at.isoformat(),
        }

    @classmethod
    def from_row(cls, row: Dict[str, Any]) -> "ScheduledPost":
        return cls(
            id=row["id"],
            post_id=row.get("post_id", ""),
            project_id=row.get("project_id", ""),
            platform=row.get("platform", "linkedin"),
            content=row.get("content", ""),
            scheduled_time=parse_timestamp(row["scheduled_time"]),  # type: ignore[arg-type]
            timezone=row.get("timezone") or "UTC",
            status=ScheduledPostStatus(row.get("status", "pending")),
            retry_count=int(row.get("retry_count", 0)),
            last_attempt=parse_timestamp(row.get("last_attempt")),
            next_attempt_at=parse_timestamp(row.get("next_attempt_at")),
            error_message=row.get("error_message"),
            failure_reason=row.get("failure_reason"),
            external_post_id=row.get("external_post_id"),
            publish_url=row.get("publish_url"),
            published_at=parse_timestamp(row.get("published_at")),
            cancelled_at=parse_timestamp(row.get("cancelled_at")),
            cancel_reason=row.get("cancel_reason"),
            created_at=parse_timestamp(row.get("created_at")) or utc_now(),
            updated_at=parse_timestamp(row.get("updated_at")) or utc_now(),
        )


# =============================================================================
# RECURRING JOB RECORD
# =============================================================================


@dataclass(frozen=True)
class RecurringJobRecord:
    """Bookkeeping for one execution of a recurring job.

    Used for health evaluation only, never for business state.
    """

    id: str
    job_id: str
    job_type: str
    status: JobStatus = JobStatus.QUEUED
    progress: int = 0
    queued_at: datetime = field(default_factory=utc_now)
    started_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None
    duration_ms: Optional[int] = None
    error: Optional[str] = None

    def to_row(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "job_id": self.job_id,
            "job_type": self.job_type,
            "status": self.status.value,
            "progress": self.progress,
            "queued_at": self.queued_at.isoformat(),
            "started_at": isoformat_or_none(self.started_at),
            "finished_at": isoformat_or_none(self.finished_at),
            "duration_ms": self.duration_ms,
            "error": self.error,
        }

    @classmethod
    def from_row(cls, row: Dict[str, Any]) -> "RecurringJobRecord":
        return cls(
            id=row["id"],
            job_id=row["job_id"],
            job_type=row.get("job_type", "recurring"),
            status=JobStatus(row.get("status", "queued")),
            progress=int(row.get("progress", 0)),
            queued_at=parse_timestamp(row.get("queued_at")) or utc_now(),
            started_at=parse_timestamp(row.get("started_at")),
            finished_at=parse_timestamp(row.get("finished_at")),
            duration_ms=row.get("duration_ms"),
            error=row.get("error"),
        )


# =============================================================================
# CREDENTIAL
# =============================================================================


@dataclass(frozen=True)
class Credential:
    """A valid OAuth access token for one user on one platform."""

    user_id: str
    platform: str
    access_token: str
    expires_at: Optional[datetime] = None

    def is_expired(self, now: Optional[datetime] = None) -> bool:
        if self.expires_at is None:
            return False
        return (now or utc_now()) >= self.expires_at

    def __repr__(self) -> str:
        # Never leak the token into logs
        return (
            f"Credential(user_id={self.user_id!r}, platform={self.platform!r}, "
            f"expires_at={self.expires_at!r})"
        )


# =============================================================================
# BATCH RESULT
# =============================================================================


@dataclass
class BatchResult:
    """Per-item outcome of a batch operation.

    A bad item never fails the whole batch: it lands in ``failed`` with its
    error message while the rest proceed.

    Attributes:
        succeeded: Item id -> operation result (e.g. the new record id).
        failed: Item id -> error message.
    """

    succeeded: Dict[str, Any] = field(default_factory=dict)
    failed: Dict[str, str] = field(default_factory=dict)

    def add_success(self, item_id: str, result: Any = None) -> None:
        self.succeeded[item_id] = result

    def add_failure(self, item_id: str, error: str) -> None:
        self.failed[item_id] = error

    @property
    def success_count(self) -> int:
        return len(self.succeeded)

    @property
    def failure_count(self) -> int:
        return len(self.failed)

    @property
    def all_succeeded(self) -> bool:
        return not self.failed


# =============================================================================
# PUBLIC API
# =============================================================================

__all__ = [
    "BatchResult",
    "ProjectStage",
    "InsightStatus",
    "PostStatus",
    "ScheduledPostStatus",
    "JobStatus",
    "ErrorKind",
    "DomainEvent",
    "Transition",
    "ProjectMetrics",
    "ContentProject",
    "Insight",
    "Post",
    "ScheduledPost",
    "RecurringJobRecord",
    "Credential",
]
