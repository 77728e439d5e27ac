"""
Unified async persistence layer for the publishing core.

ALL database operations go through a ``PipelineStore``.  Two
implementations are provided:

- ``SupabaseDB``: production store backed by the Supabase async client.
- ``InMemoryStore``: dict-backed store for tests and local runs.

Both implement the claim (and every other guarded write) as a conditional
update: the write only lands if the row is still in the expected status,
so two workers can never both move a record out of Pending.

Usage::

    from content_pipeline.database import get_db

    # In async context:
    db = await get_db()
    claimed = await db.compare_and_set_scheduled_post(record, "pending")
"""

import asyncio
import logging
import os
import threading
from dataclasses import dataclass
from datetime import datetime
from typing import (
    Any,
    Dict,
    Iterable,
    List,
    Optional,
    Protocol,
    Sequence,
    Union,
    runtime_checkable,
)

from supabase import AsyncClient, create_async_client

from content_pipeline.exceptions import DatabaseError, ValidationError
from content_pipeline.models import (
    ContentProject,
    Insight,
    JobStatus,
    Post,
    ProjectStage,
    RecurringJobRecord,
    ScheduledPost,
    ScheduledPostStatus,
)

logger = logging.getLogger(__name__)


# =============================================================================
# VALIDATION HELPERS
# =============================================================================


def validate_not_empty(value: Any, name: str) -> None:
    """Validate that *value* is not ``None`` or an empty string.

    Raises:
        ValidationError: If *value* is ``None`` or a blank string.
    """
    if value is None:
        raise ValidationError(f"{name} cannot be None")
    if isinstance(value, str) and not value.strip():
        raise ValidationError(f"{name} cannot be empty string")


def validate_positive(value: Union[int, float], name: str) -> None:
    """Validate that *value* is strictly positive (> 0).

    Raises:
        ValidationError: If *value* is ``None`` or not positive.
    """
    if value is None:
        raise ValidationError(f"{name} cannot be None")
    if value <= 0:
        raise ValidationError(f"{name} must be positive, got {value}")


def _status_value(status: Union[str, ScheduledPostStatus, ProjectStage, JobStatus]) -> str:
    return status if isinstance(status, str) else status.value


# =============================================================================
# STORE INTERFACE
# =============================================================================


@runtime_checkable
class PipelineStore(Protocol):
    """Persistence operations the publishing core depends on."""

    # Projects
    async def get_project(self, project_id: str) -> Optional[ContentProject]: ...
    async def save_project(self, project: ContentProject) -> None: ...
    async def compare_and_set_project(
        self, project: ContentProject, expected_stage: ProjectStage
    ) -> bool: ...
    async def list_projects(self) -> List[ContentProject]: ...

    # Insights
    async def get_insight(self, insight_id: str) -> Optional[Insight]: ...
    async def save_insight(self, insight: Insight) -> None: ...
    async def list_insights(self, project_id: str) -> List[Insight]: ...

    # Posts
    async def get_post(self, post_id: str) -> Optional[Post]: ...
    async def save_post(self, post: Post) -> None: ...
    async def list_posts(self, project_id: str) -> List[Post]: ...

    # Scheduled posts
    async def get_scheduled_post(self, scheduled_post_id: str) -> Optional[ScheduledPost]: ...
    async def insert_scheduled_post(self, record: ScheduledPost) -> None: ...
    async def compare_and_set_scheduled_post(
        self,
        record: ScheduledPost,
        expected_status: Union[str, ScheduledPostStatus],
    ) -> bool: ...
    async def list_scheduled_posts(
        self,
        project_id: Optional[str] = None,
        post_id: Optional[str] = None,
        statuses: Optional[Iterable[ScheduledPostStatus]] = None,
        platform: Optional[str] = None,
    ) -> List[ScheduledPost]: ...
    async def get_due_scheduled_posts(
        self, now: datetime, limit: int = 100
    ) -> List[ScheduledPost]: ...
    async def delete_scheduled_posts_before(
        self, statuses: Iterable[ScheduledPostStatus], before: datetime
    ) -> int: ...

    # Job records
    async def save_job_record(self, record: RecurringJobRecord) -> None: ...
    async def get_last_job_record(self, job_id: str) -> Optional[RecurringJobRecord]: ...
    async def count_job_records(self, status: JobStatus) -> int: ...
    async def delete_job_records_before(self, before: datetime) -> int: ...

    # Activities
    async def save_activity(self, activity: Dict[str, Any]) -> None: ...

    # OAuth tokens (read-only)
    async def get_oauth_token(self, user_id: str, platform: str) -> Optional[Dict[str, Any]]: ...

    async def ping(self) -> bool: ...


# =============================================================================
# CONFIGURATION
# =============================================================================


@dataclass
class SupabaseConfig:
    """Supabase configuration loaded from environment variables.

    Attributes:
        url: The Supabase project URL (``SUPABASE_URL``).
        key: The service-role key for full server-side access
            (``SUPABASE_SERVICE_KEY``).
    """

    url: str
    key: str  # service_role key for full server-side access

    @classmethod
    def from_env(cls) -> "SupabaseConfig":
        """Create a config instance from environment variables.

        Raises:
            ValueError: If either variable is missing or empty.
        """
        url = os.environ.get("SUPABASE_URL")
        key = os.environ.get("SUPABASE_SERVICE_KEY")

        if not url or not key:
            raise ValueError(
                "SUPABASE_URL and SUPABASE_SERVICE_KEY must be set"
            )

        return cls(url=url, key=key)


# =============================================================================
# SUPABASE DATABASE CLIENT
# =============================================================================


class SupabaseDB:
    """Async Supabase-backed ``PipelineStore``.

    **Important:** Use the :meth:`create` factory method instead of
    ``__init__`` directly -- the underlying async client requires an
    ``await`` during initialisation.
    """

    def __init__(self, client: AsyncClient) -> None:
        """Private constructor.  Use :meth:`create` factory method."""
        self.client = client

    @classmethod
    async def create(
        cls, config: Optional[SupabaseConfig] = None
    ) -> "SupabaseDB":
        """Factory method to create an async :class:`SupabaseDB` instance.

        Args:
            config: Optional configuration.  When ``None``,
                :meth:`SupabaseConfig.from_env` is used.
        """
        config = config or SupabaseConfig.from_env()
        client = await create_async_client(config.url, config.key)
        return cls(client)

    # -----------------------------------------------------------------
    # CONTENT PROJECTS
    # -----------------------------------------------------------------

    async def get_project(self, project_id: str) -> Optional[ContentProject]:
        validate_not_empty(project_id, "project_id")
        result = await (
            self.client.table("content_projects")
            .select("*")
            .eq("id", project_id)
            .execute()
        )
        return ContentProject.from_row(result.data[0]) if result.data else None

    async def save_project(self, project: ContentProject) -> None:
        result = await (
            self.client.table("content_projects")
            .upsert(project.to_row())
            .execute()
        )
        if not result.data:
            raise DatabaseError("Upsert succeeded but returned no data")

    async def compare_and_set_project(
        self, project: ContentProject, expected_stage: ProjectStage
    ) -> bool:
        """Write *project* only if the stored stage is still *expected_stage*.

        Returns:
            ``True`` if the row was updated, ``False`` if another writer
            moved the project first.
        """
        result = await (
            self.client.table("content_projects")
            .update(project.to_row())
            .eq("id", project.id)
            .eq("current_stage", expected_stage.value)
            .execute()
        )
        return bool(result.data)

    async def list_projects(self) -> List[ContentProject]:
        result = await (
            self.client.table("content_projects")
            .select("*")
            .neq("current_stage", ProjectStage.ARCHIVED.value)
            .execute()
        )
        return [ContentProject.from_row(row) for row in result.data]

    # -----------------------------------------------------------------
    # INSIGHTS
    # -----------------------------------------------------------------

    async def get_insight(self, insight_id: str) -> Optional[Insight]:
        validate_not_empty(insight_id, "insight_id")
        result = await (
            self.client.table("insights")
            .select("*")
            .eq("id", insight_id)
            .execute()
        )
        return Insight.from_row(result.data[0]) if result.data else None

    async def save_insight(self, insight: Insight) -> None:
        result = await self.client.table("insights").upsert(insight.to_row()).execute()
        if not result.data:
            raise DatabaseError("Upsert succeeded but returned no data")

    async def list_insights(self, project_id: str) -> List[Insight]:
        validate_not_empty(project_id, "project_id")
        result = await (
            self.client.table("insights")
            .select("*")
            .eq("project_id", project_id)
            .order("created_at", desc=False)
            .execute()
        )
        return [Insight.from_row(row) for row in result.data]

    # -----------------------------------------------------------------
    # POSTS
    # -----------------------------------------------------------------

    async def get_post(self, post_id: str) -> Optional[Post]:
        """Get a post by ID, or ``None`` if not found."""
        validate_not_empty(post_id, "post_id")
        result = await (
            self.client.table("posts")
            .select("*")
            .eq("id", post_id)
            .execute()
        )
        return Post.from_row(result.data[0]) if result.data else None

    async def save_post(self, post: Post) -> None:
        """Insert or update a post.

        Raises:
            ValidationError: If the post has no content.
            DatabaseError: When the upsert returns no data.
        """
        if not post.content or not post.content.strip():
            raise ValidationError("post must have content")
        result = await self.client.table("posts").upsert(post.to_row()).execute()
        if not result.data:
            raise DatabaseError("Upsert succeeded but returned no data")

    async def list_posts(self, project_id: str) -> List[Post]:
        validate_not_empty(project_id, "project_id")
        result = await (
            self.client.table("posts")
            .select("*")
            .eq("project_id", project_id)
            .order("created_at", desc=False)
            .execute()
        )
        return [Post.from_row(row) for row in result.data]

    # -----------------------------------------------------------------
    # SCHEDULED POSTS
    # -----------------------------------------------------------------

    async def get_scheduled_post(self, scheduled_post_id: str) -> Optional[ScheduledPost]:
        validate_not_empty(scheduled_post_id, "scheduled_post_id")
        result = await (
            self.client.table("scheduled_posts")
            .select("*")
            .eq("id", scheduled_post_id)
            .execute()
        )
        return ScheduledPost.from_row(result.data[0]) if result.data else None

    async def insert_scheduled_post(self, record: ScheduledPost) -> None:
        """Insert a new scheduled post.

        Raises:
            ValidationError: If the record has no content.
            DatabaseError: When the insert returns no data.
        """
        if not record.content or not record.content.strip():
            raise ValidationError("scheduled post must have content")
        result = await (
            self.client.table("scheduled_posts")
            .insert(record.to_row())
            .execute()
        )
        if not result.data:
            raise DatabaseError("Insert succeeded but returned no data")

    async def compare_and_set_scheduled_post(
        self,
        record: ScheduledPost,
        expected_status: Union[str, ScheduledPostStatus],
    ) -> bool:
        """Atomically replace a scheduled post if its status still matches.

        This is the claim primitive: ``UPDATE ... WHERE id = :id AND
        status = :expected``.  Only one concurrent caller can match.

        Returns:
            ``True`` if the update matched, ``False`` if the record was
            already moved by someone else (or does not exist).
        """
        result = await (
            self.client.table("scheduled_posts")
            .update(record.to_row())
            .eq("id", record.id)
            .eq("status", _status_value(expected_status))
            .execute()
        )
        # If data is returned, the update matched and the write succeeded
        return bool(result.data)

    async def list_scheduled_posts(
        self,
        project_id: Optional[str] = None,
        post_id: Optional[str] = None,
        statuses: Optional[Iterable[ScheduledPostStatus]] = None,
        platform: Optional[str] = None,
    ) -> List[ScheduledPost]:
        query = self.client.table("scheduled_posts").select("*")
        if project_id is not None:
            query = query.eq("project_id", project_id)
        if post_id is not None:
            query = query.eq("post_id", post_id)
        if platform is not None:
            query = query.eq("platform", platform)
        if statuses is not None:
            query = query.in_("status", [s.value for s in statuses])
        result = await query.order("scheduled_time", desc=False).execute()
        return [ScheduledPost.from_row(row) for row in result.data]

    async def get_due_scheduled_posts(
        self, now: datetime, limit: int = 100
    ) -> List[ScheduledPost]:
        """Pending posts whose ``scheduled_time`` is at or before *now*.

        Ordered by ``scheduled_time`` ascending.
        """
        validate_positive(limit, "limit")
        result = await (
            self.client.table("scheduled_posts")
            .select("*")
            .eq("status", ScheduledPostStatus.PENDING.value)
            .lte("scheduled_time", now.isoformat())
            .order("scheduled_time", desc=False)
            .limit(limit)
            .execute()
        )
        return [ScheduledPost.from_row(row) for row in result.data]

    async def delete_scheduled_posts_before(
        self, statuses: Iterable[ScheduledPostStatus], before: datetime
    ) -> int:
        result = await (
            self.client.table("scheduled_posts")
            .delete()
            .in_("status", [s.value for s in statuses])
            .lt("updated_at", before.isoformat())
            .execute()
        )
        return len(result.data) if result.data else 0

    # -----------------------------------------------------------------
    # JOB RECORDS
    # -----------------------------------------------------------------

    async def save_job_record(self, record: RecurringJobRecord) -> None:
        result = await self.client.table("job_records").upsert(record.to_row()).execute()
        if not result.data:
            raise DatabaseError("Upsert succeeded but returned no data")

    async def get_last_job_record(self, job_id: str) -> Optional[RecurringJobRecord]:
        validate_not_empty(job_id, "job_id")
        result = await (
            self.client.table("job_records")
            .select("*")
            .eq("job_id", job_id)
            .order("queued_at", desc=True)
            .limit(1)
            .execute()
        )
        return RecurringJobRecord.from_row(result.data[0]) if result.data else None

    async def count_job_records(self, status: JobStatus) -> int:
        result = await (
            self.client.table("job_records")
            .select("id", count="exact")
            .eq("status", status.value)
            .execute()
        )
        return result.count or 0

    async def delete_job_records_before(self, before: datetime) -> int:
        result = await (
            self.client.table("job_records")
            .delete()
            .lt("queued_at", before.isoformat())
            .execute()
        )
        return len(result.data) if result.data else 0

    # -----------------------------------------------------------------
    # ACTIVITIES
    # -----------------------------------------------------------------

    async def save_activity(self, activity: Dict[str, Any]) -> None:
        validate_not_empty(activity.get("entity_id"), "entity_id")
        await self.client.table("project_activities").insert(activity).execute()

    # -----------------------------------------------------------------
    # OAUTH TOKENS
    # -----------------------------------------------------------------

    async def get_oauth_token(self, user_id: str, platform: str) -> Optional[Dict[str, Any]]:
        validate_not_empty(user_id, "user_id")
        validate_not_empty(platform, "platform")
        result = await (
            self.client.table("oauth_tokens")
            .select("*")
            .eq("user_id", user_id)
            .eq("platform", platform)
            .limit(1)
            .execute()
        )
        return result.data[0] if result.data else None

    async def ping(self) -> bool:
        """True if a trivial query round-trips; connection errors are logged."""
        try:
            await self.client.table("job_records").select("id").limit(1).execute()
        except Exception as exc:
            logger.warning("[HEALTH] Supabase unreachable: %s", exc)
            return False
        return True


# =============================================================================
# IN-MEMORY STORE
# =============================================================================


class InMemoryStore:
    """Dict-backed ``PipelineStore``.

    Conditional writes run under a single ``asyncio.Lock`` so the
    check and the write cannot interleave with another coroutine.
    """

    def __init__(self) -> None:
        self.projects: Dict[str, ContentProject] = {}
        self.insights: Dict[str, Insight] = {}
        self.posts: Dict[str, Post] = {}
        self.scheduled_posts: Dict[str, ScheduledPost] = {}
        self.job_records: Dict[str, RecurringJobRecord] = {}
        self.activities: List[Dict[str, Any]] = []
        self.oauth_tokens: Dict[tuple, Dict[str, Any]] = {}
        self._lock = asyncio.Lock()

    # Projects

    async def get_project(self, project_id: str) -> Optional[ContentProject]:
        return self.projects.get(project_id)

    async def save_project(self, project: ContentProject) -> None:
        self.projects[project.id] = project

    async def compare_and_set_project(
        self, project: ContentProject, expected_stage: ProjectStage
    ) -> bool:
        async with self._lock:
            current = self.projects.get(project.id)
            if current is None or current.stage is not expected_stage:
                return False
            self.projects[project.id] = project
            return True

    async def list_projects(self) -> List[ContentProject]:
        return [p for p in self.projects.values() if p.stage is not ProjectStage.ARCHIVED]

    # Insights

    async def get_insight(self, insight_id: str) -> Optional[Insight]:
        return self.insights.get(insight_id)

    async def save_insight(self, insight: Insight) -> None:
        self.insights[insight.id] = insight

    async def list_insights(self, project_id: str) -> List[Insight]:
        return sorted(
            (i for i in self.insights.values() if i.project_id == project_id),
            key=lambda i: i.created_at,
        )

    # Posts

    async def get_post(self, post_id: str) -> Optional[Post]:
        return self.posts.get(post_id)

    async def save_post(self, post: Post) -> None:
        if not post.content or not post.content.strip():
            raise ValidationError("post must have content")
        self.posts[post.id] = post

    async def list_posts(self, project_id: str) -> List[Post]:
        return sorted(
            (p for p in self.posts.values() if p.project_id == project_id),
            key=lambda p: p.created_at,
        )

    # Scheduled posts

    async def get_scheduled_post(self, scheduled_post_id: str) -> Optional[ScheduledPost]:
        return self.scheduled_posts.get(scheduled_post_id)

    async def insert_scheduled_post(self, record: ScheduledPost) -> None:
        if not record.content or not record.content.strip():
            raise ValidationError("scheduled post must have content")
        async with self._lock:
            if record.id in self.scheduled_posts:
                raise DatabaseError(f"Scheduled post {record.id} already exists")
            self.scheduled_posts[record.id] = record

    async def compare_and_set_scheduled_post(
        self,
        record: ScheduledPost,
        expected_status: Union[str, ScheduledPostStatus],
    ) -> bool:
        expected = _status_value(expected_status)
        async with self._lock:
            current = self.scheduled_posts.get(record.id)
            if current is None or current.status.value != expected:
                return False
            self.scheduled_posts[record.id] = record
            return True

    async def list_scheduled_posts(
        self,
        project_id: Optional[str] = None,
        post_id: Optional[str] = None,
        statuses: Optional[Iterable[ScheduledPostStatus]] = None,
        platform: Optional[str] = None,
    ) -> List[ScheduledPost]:
        wanted = set(statuses) if statuses is not None else None
        records = [
            r
            for r in self.scheduled_posts.values()
            if (project_id is None or r.project_id == project_id)
            and (post_id is None or r.post_id == post_id)
            and (platform is None or r.platform == platform)
            and (wanted is None or r.status in wanted)
        ]
        return sorted(records, key=lambda r: r.scheduled_time)

    async def get_due_scheduled_posts(
        self, now: datetime, limit: int = 100
    ) -> List[ScheduledPost]:
        validate_positive(limit, "limit")
        due = [
            r
            for r in self.scheduled_posts.values()
            if r.status is ScheduledPostStatus.PENDING and r.scheduled_time <= now
        ]
        return sorted(due, key=lambda r: r.scheduled_time)[:limit]

    async def delete_scheduled_posts_before(
        self, statuses: Iterable[ScheduledPostStatus], before: datetime
    ) -> int:
        wanted = set(statuses)
        stale = [
            r.id
            for r in self.scheduled_posts.values()
            if r.status in wanted and r.updated_at < before
        ]
        for record_id in stale:
            del self.scheduled_posts[record_id]
        return len(stale)

    # Job records

    async def save_job_record(self, record: RecurringJobRecord) -> None:
        self.job_records[record.id] = record

    async def get_last_job_record(self, job_id: str) -> Optional[RecurringJobRecord]:
        records = [r for r in self.job_records.values() if r.job_id == job_id]
        return max(records, key=lambda r: r.queued_at) if records else None

    async def count_job_records(self, status: JobStatus) -> int:
        return sum(1 for r in self.job_records.values() if r.status is status)

    async def delete_job_records_before(self, before: datetime) -> int:
        stale = [r.id for r in self.job_records.values() if r.queued_at < before]
        for record_id in stale:
            del self.job_records[record_id]
        return len(stale)

    # Activities

    async def save_activity(self, activity: Dict[str, Any]) -> None:
        validate_not_empty(activity.get("entity_id"), "entity_id")
        self.activities.append(activity)

    # OAuth tokens

    def add_oauth_token(self, user_id: str, platform: str, token: Dict[str, Any]) -> None:
        self.oauth_tokens[(user_id, platform)] = token

    async def get_oauth_token(self, user_id: str, platform: str) -> Optional[Dict[str, Any]]:
        return self.oauth_tokens.get((user_id, platform))

    async def ping(self) -> bool:
        return True


def active_statuses() -> Sequence[ScheduledPostStatus]:
    """Statuses of records that still occupy their (post, platform) slot."""
    return [s for s in ScheduledPostStatus if s.is_active]


# =============================================================================
# GLOBAL DATABASE INSTANCE (Singleton)
# =============================================================================

# One async connection for the entire application.
_db_instance: Optional[SupabaseDB] = None
_db_lock: Optional[asyncio.Lock] = None

# Thread lock for safe initialisation of the async lock itself.
_init_lock = threading.Lock()


async def get_db() -> SupabaseDB:
    """Get the global async database instance.

    Thread-safe **and** async-safe.  The first call creates the
    :class:`SupabaseDB` singleton; subsequent calls return the same
    instance.
    """
    global _db_instance, _db_lock

    # Thread-safe lazy initialisation of the async lock.
    if _db_lock is None:
        with _init_lock:
            # Double-check after acquiring thread lock.
            if _db_lock is None:
                _db_lock = asyncio.Lock()

    if _db_instance is None:
        async with _db_lock:
            # Double-check after acquiring async lock.
            if _db_instance is None:
                _db_instance = await SupabaseDB.create()

    return _db_instance


__all__ = [
    "validate_not_empty",
    "validate_positive",
    "PipelineStore",
    "SupabaseConfig",
    "SupabaseDB",
    "InMemoryStore",
    "active_statuses",
    "get_db",
]
