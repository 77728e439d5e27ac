"""
Custom exception classes for the content pipeline publishing core.

Exceptions follow the fail-fast philosophy: state conflicts and validation
failures are surfaced to the caller immediately and are never retried.
External API failures carry an ``ErrorKind`` so the scheduling engine can
decide whether a later attempt makes sense.

Hierarchy:
    Exception
    +-- PipelineBaseError (base for all pipeline-specific errors)
    |   +-- StateConflictError
    |   |   +-- SchedulingConflictError
    |   +-- NotFoundError
    |   +-- ExternalApiError
    |   |   +-- RateLimitedError
    |   |   +-- UnauthorizedError
    |   |   +-- TransientApiError
    |   |   +-- TerminalApiError
    |   +-- StalledJobError
    +-- ValidationError (ValueError)
    +-- DatabaseError
    +-- ConfigurationError
    +-- RetryExhaustedError
"""

from datetime import datetime
from typing import Optional


# =============================================================================
# BASE EXCEPTION
# =============================================================================


class PipelineBaseError(Exception):
    """Base exception for all pipeline-related errors."""

    pass


# =============================================================================
# CORE EXCEPTIONS
# =============================================================================


class ValidationError(ValueError):
    """Raised when input validation fails (past schedule time, empty content)."""

    pass


class DatabaseError(Exception):
    """Raised when database operations fail."""

    pass


class ConfigurationError(Exception):
    """Raised when system configuration is invalid."""

    pass


class RetryExhaustedError(Exception):
    """Raised when all retry attempts have been exhausted.

    Attributes:
        operation: Name of the operation that was retried.
        attempts: Total number of attempts made.
        last_error: The last exception raised before giving up.
    """

    def __init__(self, operation: str, attempts: int, last_error: Exception):
        self.operation = operation
        self.attempts = attempts
        self.last_error = last_error
        super().__init__(
            f"{operation} failed after {attempts} attempts. "
            f"Last error: {last_error}"
        )


# =============================================================================
# WORKFLOW EXCEPTIONS
# =============================================================================


class StateConflictError(PipelineBaseError):
    """Raised when an operation's state precondition does not hold.

    Attributes:
        entity: Entity kind (``"post"``, ``"scheduled_post"``, ...).
        entity_id: Identifier of the entity, when known.
        current: The state the entity was found in.
    """

    def __init__(
        self,
        message: str,
        entity: Optional[str] = None,
        entity_id: Optional[str] = None,
        current: Optional[str] = None,
    ):
        self.entity = entity
        self.entity_id = entity_id
        self.current = current
        super().__init__(message)


class SchedulingConflictError(StateConflictError):
    """Raised when another pending post on the same platform is too close."""

    pass


class NotFoundError(PipelineBaseError):
    """Raised when an entity or credential does not exist."""

    pass


# =============================================================================
# EXTERNAL API EXCEPTIONS
# =============================================================================


class ExternalApiError(PipelineBaseError):
    """Raised when a social platform API call fails.

    Attributes:
        kind: ``ErrorKind`` value string (``"rate_limited"``, ...).
        platform: Platform the call was made against.
        status_code: HTTP status code when the failure came from a response.
    """

    kind: str = "transient"

    def __init__(
        self,
        message: str,
        platform: Optional[str] = None,
        status_code: Optional[int] = None,
    ):
        self.platform = platform
        self.status_code = status_code
        super().__init__(message)


class RateLimitedError(ExternalApiError):
    """Raised when a platform rate-limits the request."""

    kind = "rate_limited"


class UnauthorizedError(ExternalApiError):
    """Raised when the credential is rejected; the user must re-authenticate."""

    kind = "unauthorized"


class TransientApiError(ExternalApiError):
    """Raised for failures that may succeed on a later attempt."""

    kind = "transient"


class TerminalApiError(ExternalApiError):
    """Raised when the platform rejects the content itself."""

    kind = "terminal"


# =============================================================================
# JOB EXCEPTIONS
# =============================================================================


class StalledJobError(PipelineBaseError):
    """Raised (or reported) when a recurring job has not run for too long.

    Attributes:
        job_id: Identifier of the recurring job.
        last_execution: When the job last ran, if ever.
    """

    def __init__(self, job_id: str, last_execution: Optional[datetime] = None):
        self.job_id = job_id
        self.last_execution = last_execution
        since = last_execution.isoformat() if last_execution else "never"
        super().__init__(f"Job '{job_id}' stalled (last execution: {since})")


# =============================================================================
# PUBLIC API
# =============================================================================

__all__ = [
    # Base
    "PipelineBaseError",
    # Core
    "ValidationError",
    "DatabaseError",
    "ConfigurationError",
    "RetryExhaustedError",
    # Workflow
    "StateConflictError",
    "SchedulingConflictError",
    "NotFoundError",
    # External API
    "ExternalApiError",
    "RateLimitedError",
    "UnauthorizedError",
    "TransientApiError",
    "TerminalApiError",
    # Jobs
    "StalledJobError",
]
