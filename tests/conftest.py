"""Shared fixtures for the content pipeline publishing test suite."""

from datetime import datetime, timedelta, timezone
from typing import Optional
from unittest.mock import AsyncMock, MagicMock

import pytest

from content_pipeline.activity import ActivityRecorder
from content_pipeline.database import InMemoryStore
from content_pipeline.models import (
    ContentProject,
    Insight,
    InsightStatus,
    Post,
    PostStatus,
    ProjectStage,
)
from content_pipeline.utils import generate_id


# ---------------------------------------------------------------------------
# Ensure we don't hit real services during tests
# ---------------------------------------------------------------------------
@pytest.fixture(autouse=True)
def _block_env_keys(monkeypatch):
    """Clear credentials and overrides so tests never hit real services."""
    keys = [
        "SUPABASE_URL",
        "SUPABASE_SERVICE_KEY",
        "LOG_LEVEL",
        "PUBLISH_MAX_RETRIES",
        "PUBLISH_TIMEOUT_SECONDS",
        "PUBLISH_MAX_CONCURRENT",
        "JOBS_HEALTH_CHECK_SECONDS",
        "JOBS_SHUTDOWN_TIMEOUT_SECONDS",
    ]
    for key in keys:
        monkeypatch.delenv(key, raising=False)


# ---------------------------------------------------------------------------
# Time
# ---------------------------------------------------------------------------
class FakeClock:
    """Callable clock that only moves when told to."""

    def __init__(self, now: datetime) -> None:
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **delta) -> datetime:
        self.now += timedelta(**delta)
        return self.now


@pytest.fixture
def sample_utc_now():
    """A fixed UTC datetime for deterministic tests."""
    return datetime(2025, 6, 15, 12, 0, 0, tzinfo=timezone.utc)


@pytest.fixture
def clock(sample_utc_now):
    return FakeClock(sample_utc_now)


# ---------------------------------------------------------------------------
# Store, recorder and seed data
# ---------------------------------------------------------------------------
@pytest.fixture
def store():
    return InMemoryStore()


@pytest.fixture
def recorder(clock):
    """In-memory recorder (no file, no store sink)."""
    return ActivityRecorder(path=None, store=None, buffer_size=100, clock=clock)


class Seeder:
    """Puts projects, insights, posts and tokens straight into an InMemoryStore."""

    def __init__(self, store: InMemoryStore, now: datetime) -> None:
        self.store = store
        self.now = now

    def project(
        self,
        stage: ProjectStage = ProjectStage.POSTS_APPROVED,
        user_id: str = "user-1",
        **overrides,
    ) -> ContentProject:
        project = ContentProject(
            id=overrides.pop("id", generate_id()),
            user_id=user_id,
            title=overrides.pop("title", "Quarterly roadmap talk"),
            stage=stage,
            progress=stage.progress or 0,
            created_at=self.now,
            updated_at=self.now,
            **overrides,
        )
        self.store.projects[project.id] = project
        return project

    def insight(
        self, project: ContentProject, status: InsightStatus = InsightStatus.DRAFT, **overrides
    ) -> Insight:
        insight = Insight(
            id=overrides.pop("id", generate_id()),
            project_id=project.id,
            title=overrides.pop("title", "Ship smaller releases"),
            status=status,
            created_at=self.now,
            updated_at=self.now,
            **overrides,
        )
        self.store.insights[insight.id] = insight
        return insight

    def post(
        self,
        project: ContentProject,
        status: PostStatus = PostStatus.APPROVED,
        platform: str = "linkedin",
        content: str = "Small releases beat big launches. Here is why.",
        **overrides,
    ) -> Post:
        post = Post(
            id=overrides.pop("id", generate_id()),
            project_id=project.id,
            insight_id=overrides.pop("insight_id", "insight-1"),
            platform=platform,
            content=content,
            status=status,
            created_at=self.now,
            updated_at=self.now,
            **overrides,
        )
        self.store.posts[post.id] = post
        return post

    def token(
        self,
        platform: str,
        user_id: str = "user-1",
        access_token: str = "token-abc",
        expires_at: Optional[datetime] = None,
    ) -> None:
        expires_at = expires_at or self.now + timedelta(days=30)
        self.store.add_oauth_token(user_id, platform, {
            "access_token": access_token,
            "expires_at": expires_at.isoformat(),
        })


@pytest.fixture
def seed(store, sample_utc_now):
    return Seeder(store, sample_utc_now)


# ---------------------------------------------------------------------------
# Mock Supabase client
# ---------------------------------------------------------------------------
@pytest.fixture
def mock_supabase_client():
    """A mock Supabase async client whose query chain returns ``table_mock``."""
    client = AsyncMock()
    # table().select().eq()...execute() chain
    table_mock = MagicMock()
    table_mock.select.return_value = table_mock
    table_mock.insert.return_value = table_mock
    table_mock.upsert.return_value = table_mock
    table_mock.update.return_value = table_mock
    table_mock.delete.return_value = table_mock
    table_mock.eq.return_value = table_mock
    table_mock.in_.return_value = table_mock
    table_mock.gte.return_value = table_mock
    table_mock.lte.return_value = table_mock
    table_mock.lt.return_value = table_mock
    table_mock.neq.return_value = table_mock
    table_mock.order.return_value = table_mock
    table_mock.limit.return_value = table_mock
    table_mock.range.return_value = table_mock
    table_mock.single.return_value = table_mock
    table_mock.execute = AsyncMock(return_value=MagicMock(data=[], count=0))

    client.table = MagicMock(return_value=table_mock)
    return client
