"""Tests for content_pipeline.exceptions -- custom exception hierarchy.

Validates the hierarchy, attribute storage and message formatting of every
exception class in the module.
"""

from datetime import datetime, timezone

import pytest

from content_pipeline.exceptions import (
    ConfigurationError,
    DatabaseError,
    ExternalApiError,
    NotFoundError,
    PipelineBaseError,
    RateLimitedError,
    RetryExhaustedError,
    SchedulingConflictError,
    StalledJobError,
    StateConflictError,
    TerminalApiError,
    TransientApiError,
    UnauthorizedError,
    ValidationError,
)
from content_pipeline.models import ErrorKind


# =========================================================================
# Hierarchy tests -- isinstance checks
# =========================================================================


class TestExceptionHierarchy:
    """Verify that every exception sits in the correct inheritance chain."""

    @pytest.mark.parametrize(
        "exc_cls",
        [
            StateConflictError,
            SchedulingConflictError,
            NotFoundError,
            ExternalApiError,
            RateLimitedError,
            UnauthorizedError,
            TransientApiError,
            TerminalApiError,
            StalledJobError,
        ],
    )
    def test_pipeline_errors_inherit_from_base(self, exc_cls):
        """Workflow, API and job errors are PipelineBaseError subclasses."""
        assert issubclass(exc_cls, PipelineBaseError)

    def test_scheduling_conflict_is_a_state_conflict(self):
        """Callers catching StateConflictError also catch window conflicts."""
        assert issubclass(SchedulingConflictError, StateConflictError)

    def test_validation_error_is_value_error(self):
        """ValidationError stays catchable as ValueError."""
        assert issubclass(ValidationError, ValueError)
        assert not issubclass(ValidationError, PipelineBaseError)

    @pytest.mark.parametrize(
        "exc_cls", [DatabaseError, ConfigurationError, RetryExhaustedError]
    )
    def test_infrastructure_errors_are_standalone(self, exc_cls):
        """Infrastructure errors are not pipeline business errors."""
        assert issubclass(exc_cls, Exception)
        assert not issubclass(exc_cls, PipelineBaseError)


# =========================================================================
# Attribute tests
# =========================================================================


class TestStateConflictError:
    def test_stores_entity_details(self):
        exc = StateConflictError(
            "cannot cancel", entity="scheduled_post", entity_id="sp-1", current="published"
        )
        assert str(exc) == "cannot cancel"
        assert exc.entity == "scheduled_post"
        assert exc.entity_id == "sp-1"
        assert exc.current == "published"

    def test_details_default_to_none(self):
        exc = StateConflictError("nope")
        assert exc.entity is None
        assert exc.entity_id is None
        assert exc.current is None


class TestExternalApiError:
    @pytest.mark.parametrize(
        "exc_cls, kind",
        [
            (RateLimitedError, ErrorKind.RATE_LIMITED),
            (UnauthorizedError, ErrorKind.UNAUTHORIZED),
            (TransientApiError, ErrorKind.TRANSIENT),
            (TerminalApiError, ErrorKind.TERMINAL),
        ],
    )
    def test_kind_matches_error_kind(self, exc_cls, kind):
        """Each subclass carries the ErrorKind value it represents."""
        assert ErrorKind(exc_cls.kind) is kind

    def test_stores_platform_and_status(self):
        exc = RateLimitedError("slow down", platform="x", status_code=429)
        assert exc.platform == "x"
        assert exc.status_code == 429
        assert str(exc) == "slow down"


class TestRetryExhaustedError:
    def test_message_includes_operation_and_last_error(self):
        last = ConnectionError("reset by peer")
        exc = RetryExhaustedError("test_connection", 3, last)
        assert exc.operation == "test_connection"
        assert exc.attempts == 3
        assert exc.last_error is last
        assert "test_connection failed after 3 attempts" in str(exc)
        assert "reset by peer" in str(exc)


class TestStalledJobError:
    def test_message_with_last_execution(self):
        last = datetime(2025, 6, 15, 12, 0, tzinfo=timezone.utc)
        exc = StalledJobError("publish-scheduled-posts", last)
        assert exc.job_id == "publish-scheduled-posts"
        assert exc.last_execution == last
        assert "2025-06-15T12:00:00+00:00" in str(exc)

    def test_message_when_never_run(self):
        exc = StalledJobError("cleanup-old-records")
        assert "never" in str(exc)
