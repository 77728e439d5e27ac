"""
Shared utility functions used throughout the publishing core.

Provides:
    - utc_now(): Timezone-aware UTC datetime (for TIMESTAMPTZ columns)
    - generate_id(): UUID4 string generator (for database primary keys)
    - ensure_utc(dt): Convert any datetime to timezone-aware UTC
    - localize(dt, tz): Read a naive datetime as wall-clock time in an IANA zone
    - parse_timestamp(value): ISO-8601 string (or datetime) to aware UTC
    - backoff_delay(attempt, tiers): Fixed-tier retry delay lookup
    - TTLCache: Expire-after-write cache for short-lived credential state
    - @with_retry: Decorator with exponential backoff for transient failures
"""

import asyncio
import logging
import time
import uuid
from datetime import datetime, timedelta, timezone
from functools import wraps
from typing import (
    Any,
    Callable,
    Dict,
    Generic,
    Hashable,
    Optional,
    Sequence,
    Tuple,
    Type,
    TypeVar,
    Union,
)
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from content_pipeline.exceptions import RetryExhaustedError, ValidationError

logger = logging.getLogger(__name__)

T = TypeVar("T")
V = TypeVar("V")


# ===========================================================================
# TIMEZONE UTILITIES
# All timestamps stored in Supabase must be timezone-aware (TIMESTAMPTZ)
# ===========================================================================


def utc_now() -> datetime:
    """
    Get current UTC time as timezone-aware datetime.

    ALWAYS use this instead of ``datetime.now()`` or ``datetime.utcnow()``.

    Returns:
        Timezone-aware datetime in UTC.
    """
    return datetime.now(timezone.utc)


def generate_id() -> str:
    """Generate a UUID4 string for database records."""
    return str(uuid.uuid4())


def ensure_utc(dt: datetime) -> datetime:
    """
    Ensure a datetime is timezone-aware in UTC.

    Args:
        dt: Datetime to convert (naive or aware).

    Returns:
        Timezone-aware datetime in UTC.
    """
    if dt.tzinfo is None:
        # Assume naive datetime is UTC
        return dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def localize(dt: datetime, tz_name: str) -> datetime:
    """
    Return *dt* as aware UTC, reading a naive value in *tz_name*.

    Aware datetimes keep their instant; only naive ones take the zone.

    Raises:
        ValidationError: *tz_name* is not a known IANA timezone.
    """
    try:
        zone = ZoneInfo(tz_name)
    except (ZoneInfoNotFoundError, ValueError) as exc:
        raise ValidationError(f"Unknown timezone '{tz_name}'") from exc
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=zone)
    return dt.astimezone(timezone.utc)


def parse_timestamp(value: Union[str, datetime, None]) -> Optional[datetime]:
    """Parse a database timestamp into an aware UTC datetime.

    Accepts ISO-8601 strings (including a trailing ``Z``), datetimes, or
    ``None``.
    """
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return ensure_utc(value)
    text = value.replace("Z", "+00:00") if value.endswith("Z") else value
    return ensure_utc(datetime.fromisoformat(text))


def isoformat_or_none(value: Optional[datetime]) -> Optional[str]:
    """Serialise an optional datetime for a database row."""
    return value.isoformat() if value is not None else None


# ===========================================================================
# BACKOFF
# ===========================================================================


def backoff_delay(attempt: int, tiers: Sequence[int]) -> timedelta:
    """Return the delay before retry number *attempt* (1-based).

    Attempts beyond the last tier reuse the last tier.

    Raises:
        ValueError: If *tiers* is empty or *attempt* is below 1.
    """
    if not tiers:
        raise ValueError("backoff tiers cannot be empty")
    if attempt < 1:
        raise ValueError(f"attempt must be >= 1, got {attempt}")
    index = min(attempt, len(tiers)) - 1
    return timedelta(seconds=tiers[index])


# ===========================================================================
# TTL CACHE
# ===========================================================================


class TTLCache(Generic[V]):
    """Expire-after-write cache keyed by hashable values.

    Entries disappear ``ttl_seconds`` after they were last written, whether
    or not they were read in between.  ``clock`` is injectable for tests.
    """

    def __init__(
        self,
        ttl_seconds: float,
        max_entries: int = 1024,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        if ttl_seconds <= 0:
            raise ValueError(f"ttl_seconds must be positive, got {ttl_seconds}")
        self.ttl_seconds = ttl_seconds
        self.max_entries = max_entries
        self._clock = clock
        self._entries: Dict[Hashable, Tuple[float, V]] = {}

    def get(self, key: Hashable) -> Optional[V]:
        entry = self._entries.get(key)
        if entry is None:
            return None
        expires_at, value = entry
        if self._clock() >= expires_at:
            del self._entries[key]
            return None
        return value

    def set(self, key: Hashable, value: V) -> None:
        if key not in self._entries and len(self._entries) >= self.max_entries:
            self._evict()
        self._entries[key] = (self._clock() + self.ttl_seconds, value)

    def pop(self, key: Hashable) -> Optional[V]:
        """Remove and return an entry (``None`` if missing or expired)."""
        value = self.get(key)
        self._entries.pop(key, None)
        return value

    def clear(self) -> None:
        self._entries.clear()

    def __len__(self) -> int:
        self._evict()
        return len(self._entries)

    def _evict(self) -> None:
        now = self._clock()
        for key in [k for k, (exp, _) in self._entries.items() if now >= exp]:
            del self._entries[key]
        # Still full: drop the entry closest to expiry
        if len(self._entries) >= self.max_entries:
            oldest = min(self._entries, key=lambda k: self._entries[k][0])
            del self._entries[oldest]


# ===========================================================================
# RETRY DECORATOR WITH EXPONENTIAL BACKOFF
# Retries are for transient failures only. Eventually raises.
# ===========================================================================


def with_retry(
    max_attempts: int = 3,
    base_delay: float = 2.0,
    retryable_exceptions: Tuple[Type[Exception], ...] = (Exception,),
    operation_name: Optional[str] = None,
) -> Callable:
    """
    Decorator for async retry logic with exponential backoff.

    Exceptions not listed in *retryable_exceptions* propagate immediately.
    Delays grow as ``base_delay * 2 ** (attempt - 1)``.

    Raises:
        RetryExhaustedError: When all attempts failed.  The last exception
            is available as ``last_error``.

    Usage::

        @with_retry(max_attempts=3, retryable_exceptions=(httpx.TransportError,))
        async def ping() -> bool:
            ...
    """

    def decorator(func: Callable[..., Any]) -> Callable[..., Any]:
        op_name = operation_name or func.__name__

        @wraps(func)
        async def wrapper(*args: Any, **kwargs: Any) -> Any:
            last_error: Optional[Exception] = None
            for attempt in range(1, max_attempts + 1):
                try:
                    return await func(*args, **kwargs)
                except retryable_exceptions as e:
                    last_error = e
                    if attempt < max_attempts:
                        delay = base_delay * (2 ** (attempt - 1))
                        logger.warning(
                            "[RETRY] %s attempt %d/%d failed: %s. "
                            "Retrying in %.1fs...",
                            op_name,
                            attempt,
                            max_attempts,
                            e,
                            delay,
                        )
                        await asyncio.sleep(delay)
                    else:
                        logger.error(
                            "[RETRY EXHAUSTED] %s failed after %d attempts: %s",
                            op_name,
                            max_attempts,
                            e,
                        )
            raise RetryExhaustedError(
                op_name, max_attempts, last_error  # type: ignore[arg-type]
            ) from last_error

        return wrapper

    return decorator


__all__ = [
    "utc_now",
    "generate_id",
    "ensure_utc",
    "localize",
    "parse_timestamp",
    "isoformat_or_none",
    "backoff_delay",
    "TTLCache",
    "with_retry",
]
