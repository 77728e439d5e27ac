"""Tests for the content_pipeline.database module.

Covers:
- SupabaseConfig construction and environment-based creation.
- SupabaseDB query chains against a mocked async client.
- InMemoryStore conditional writes and queries.
- validate_not_empty and validate_positive helper functions.
"""

from datetime import timedelta
from unittest.mock import MagicMock

import pytest

from content_pipeline.database import (
    InMemoryStore,
    PipelineStore,
    SupabaseConfig,
    SupabaseDB,
    active_statuses,
    validate_not_empty,
    validate_positive,
)
from content_pipeline.exceptions import DatabaseError, ValidationError
from content_pipeline.models import (
    JobStatus,
    ProjectStage,
    ScheduledPost,
    ScheduledPostStatus,
)


def _scheduled(now, status=ScheduledPostStatus.PENDING, **overrides):
    defaults = dict(
        id="sp-1",
        post_id="post-1",
        project_id="project-1",
        platform="linkedin",
        content="Small releases beat big launches.",
        scheduled_time=now,
        status=status,
        created_at=now,
        updated_at=now,
    )
    defaults.update(overrides)
    return ScheduledPost(**defaults)


# =============================================================================
# SupabaseConfig tests
# =============================================================================


class TestSupabaseConfig:
    """Tests for the SupabaseConfig dataclass."""

    def test_from_env_raises_when_vars_missing(self):
        """The conftest autouse fixture clears both variables."""
        with pytest.raises(ValueError, match="SUPABASE_URL and SUPABASE_SERVICE_KEY must be set"):
            SupabaseConfig.from_env()

    def test_from_env_raises_when_key_missing(self, monkeypatch):
        monkeypatch.setenv("SUPABASE_URL", "https://example.supabase.co")

        with pytest.raises(ValueError):
            SupabaseConfig.from_env()

    def test_from_env_succeeds_when_vars_set(self, monkeypatch):
        monkeypatch.setenv("SUPABASE_URL", "https://test-project.supabase.co")
        monkeypatch.setenv("SUPABASE_SERVICE_KEY", "sk-test")

        config = SupabaseConfig.from_env()

        assert config.url == "https://test-project.supabase.co"
        assert config.key == "sk-test"


# =============================================================================
# SupabaseDB tests
# =============================================================================


class TestSupabaseDB:
    """Query chains issued by SupabaseDB against the mocked client."""

    @pytest.fixture
    def db(self, mock_supabase_client):
        return SupabaseDB(mock_supabase_client)

    @pytest.fixture
    def table(self, mock_supabase_client):
        return mock_supabase_client.table.return_value

    def test_satisfies_store_protocol(self, db):
        assert isinstance(db, PipelineStore)

    @pytest.mark.asyncio
    async def test_claim_is_conditional_update(self, db, table, mock_supabase_client, sample_utc_now):
        table.execute.return_value = MagicMock(data=[{"id": "sp-1"}])
        record = _scheduled(sample_utc_now, status=ScheduledPostStatus.PROCESSING)

        claimed = await db.compare_and_set_scheduled_post(record, ScheduledPostStatus.PENDING)

        assert claimed is True
        mock_supabase_client.table.assert_called_with("scheduled_posts")
        table.update.assert_called_once_with(record.to_row())
        assert [c.args for c in table.eq.call_args_list] == [("id", "sp-1"), ("status", "pending")]

    @pytest.mark.asyncio
    async def test_lost_claim_returns_false(self, db, table, sample_utc_now):
        table.execute.return_value = MagicMock(data=[])

        assert await db.compare_and_set_scheduled_post(_scheduled(sample_utc_now), "pending") is False

    @pytest.mark.asyncio
    async def test_project_compare_and_set_matches_stage(self, db, table, seed):
        project = seed.project(stage=ProjectStage.SCHEDULED)
        table.execute.return_value = MagicMock(data=[{"id": project.id}])

        assert await db.compare_and_set_project(project, ProjectStage.POSTS_APPROVED)
        table.eq.assert_any_call("current_stage", "posts_approved")

    @pytest.mark.asyncio
    async def test_get_scheduled_post_parses_row(self, db, table, sample_utc_now):
        record = _scheduled(sample_utc_now)
        table.execute.return_value = MagicMock(data=[record.to_row()])

        loaded = await db.get_scheduled_post("sp-1")

        assert loaded == record

    @pytest.mark.asyncio
    async def test_get_scheduled_post_missing(self, db):
        assert await db.get_scheduled_post("nope") is None

    @pytest.mark.asyncio
    async def test_get_scheduled_post_rejects_blank_id(self, db):
        with pytest.raises(ValidationError):
            await db.get_scheduled_post("  ")

    @pytest.mark.asyncio
    async def test_due_query_filters_pending_by_time(self, db, table, sample_utc_now):
        await db.get_due_scheduled_posts(sample_utc_now, limit=10)

        table.eq.assert_called_once_with("status", "pending")
        table.lte.assert_called_once_with("scheduled_time", sample_utc_now.isoformat())
        table.order.assert_called_once_with("scheduled_time", desc=False)
        table.limit.assert_called_once_with(10)

    @pytest.mark.asyncio
    async def test_due_query_rejects_non_positive_limit(self, db, sample_utc_now):
        with pytest.raises(ValidationError, match="limit must be positive"):
            await db.get_due_scheduled_posts(sample_utc_now, limit=0)

    @pytest.mark.asyncio
    async def test_list_scheduled_posts_applies_filters(self, db, table):
        await db.list_scheduled_posts(
            project_id="project-1",
            statuses=[ScheduledPostStatus.PENDING, ScheduledPostStatus.FAILED],
        )

        table.eq.assert_called_once_with("project_id", "project-1")
        table.in_.assert_called_once_with("status", ["pending", "failed"])

    @pytest.mark.asyncio
    async def test_insert_without_content_is_rejected(self, db, table, sample_utc_now):
        with pytest.raises(ValidationError):
            await db.insert_scheduled_post(_scheduled(sample_utc_now, content="   "))
        table.insert.assert_not_called()

    @pytest.mark.asyncio
    async def test_save_project_without_returned_data_raises(self, db, seed):
        with pytest.raises(DatabaseError, match="returned no data"):
            await db.save_project(seed.project())

    @pytest.mark.asyncio
    async def test_count_job_records_uses_exact_count(self, db, table):
        table.execute.return_value = MagicMock(data=[], count=7)

        assert await db.count_job_records(JobStatus.FAILED) == 7
        table.select.assert_called_once_with("id", count="exact")
        table.eq.assert_called_once_with("status", "failed")

    @pytest.mark.asyncio
    async def test_delete_job_records_counts_rows(self, db, table, sample_utc_now):
        table.execute.return_value = MagicMock(data=[{"id": "a"}, {"id": "b"}])

        assert await db.delete_job_records_before(sample_utc_now) == 2
        table.lt.assert_called_once_with("queued_at", sample_utc_now.isoformat())

    @pytest.mark.asyncio
    async def test_ping(self, db, mock_supabase_client):
        assert await db.ping() is True
        mock_supabase_client.table.assert_called_with("job_records")

    @pytest.mark.asyncio
    async def test_ping_reports_unreachable_database(self, db, table, caplog):
        table.execute.side_effect = ConnectionError("connection refused")

        assert await db.ping() is False
        assert "[HEALTH] Supabase unreachable: connection refused" in caplog.text


# =============================================================================
# InMemoryStore tests
# =============================================================================


class TestInMemoryStore:
    def test_satisfies_store_protocol(self, store):
        assert isinstance(store, PipelineStore)

    @pytest.mark.asyncio
    async def test_duplicate_insert_raises(self, store, sample_utc_now):
        await store.insert_scheduled_post(_scheduled(sample_utc_now))

        with pytest.raises(DatabaseError, match="already exists"):
            await store.insert_scheduled_post(_scheduled(sample_utc_now))

    @pytest.mark.asyncio
    async def test_compare_and_set_only_matches_expected_status(self, store, sample_utc_now):
        await store.insert_scheduled_post(_scheduled(sample_utc_now))
        processing = _scheduled(sample_utc_now, status=ScheduledPostStatus.PROCESSING)

        assert await store.compare_and_set_scheduled_post(processing, "pending") is True
        assert await store.compare_and_set_scheduled_post(processing, "pending") is False
        assert store.scheduled_posts["sp-1"].status is ScheduledPostStatus.PROCESSING

    @pytest.mark.asyncio
    async def test_compare_and_set_unknown_record(self, store, sample_utc_now):
        assert not await store.compare_and_set_scheduled_post(_scheduled(sample_utc_now), "pending")

    @pytest.mark.asyncio
    async def test_due_posts_ordered_and_limited(self, store, sample_utc_now):
        for index, minutes in enumerate([-5, -30, 10, -1]):
            await store.insert_scheduled_post(
                _scheduled(
                    sample_utc_now,
                    id=f"sp-{index}",
                    scheduled_time=sample_utc_now + timedelta(minutes=minutes),
                )
            )

        due = await store.get_due_scheduled_posts(sample_utc_now, limit=2)

        assert [r.id for r in due] == ["sp-1", "sp-0"]

    @pytest.mark.asyncio
    async def test_list_projects_skips_archived(self, store, seed):
        live = seed.project()
        seed.project(stage=ProjectStage.ARCHIVED)

        assert [p.id for p in await store.list_projects()] == [live.id]

    def test_active_statuses_exclude_terminal(self):
        statuses = active_statuses()
        assert ScheduledPostStatus.FAILED in statuses
        assert ScheduledPostStatus.PUBLISHED not in statuses
        assert ScheduledPostStatus.CANCELLED not in statuses


# =============================================================================
# Validation helper tests
# =============================================================================


class TestValidateNotEmpty:
    def test_accepts_values(self):
        validate_not_empty("hello", "field")
        validate_not_empty(0, "count")

    def test_rejects_none(self):
        with pytest.raises(ValidationError, match="field cannot be None"):
            validate_not_empty(None, "field")

    def test_rejects_blank_string(self):
        with pytest.raises(ValidationError, match="field cannot be empty string"):
            validate_not_empty("  \t", "field")


class TestValidatePositive:
    def test_accepts_positive(self):
        validate_positive(0.5, "delay")

    @pytest.mark.parametrize("value", [0, -1])
    def test_rejects_non_positive(self, value):
        with pytest.raises(ValidationError, match="must be positive"):
            validate_positive(value, "delay")

    def test_rejects_none(self):
        with pytest.raises(ValidationError, match="cannot be None"):
            validate_positive(None, "delay")
