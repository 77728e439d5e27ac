"""
Centralized configuration loader for the content pipeline publishing core.

Loads settings from YAML files and environment variables, providing
sensible defaults when configuration files are absent.

Provides:
    - PublishingConfig: Retry tiers, conflict window, publish timeouts
    - JobsConfig: Recurring job intervals, health-monitor thresholds, workers
    - RetentionConfig: Cleanup windows and activity buffer size
    - Settings: Global application settings loaded from YAML + env vars
    - get_settings(): Singleton accessor for Settings
    - validate_env(): Startup validation of required environment variables
"""

import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Tuple

import yaml
from dotenv import load_dotenv

from content_pipeline.exceptions import ConfigurationError

# ---------------------------------------------------------------------------
# Load .env file (no-op if file does not exist)
# ---------------------------------------------------------------------------
load_dotenv()

# ---------------------------------------------------------------------------
# Project root directory (parent of content_pipeline/)
# ---------------------------------------------------------------------------
PROJECT_ROOT = Path(__file__).resolve().parent.parent

logger = logging.getLogger(__name__)


def _apply_env_overrides(
    target: Any, overrides: Dict[str, Tuple[str, Callable[[str], Any]]]
) -> None:
    """Set dataclass attributes from environment variables, failing fast."""
    for env_key, (attr_name, cast_fn) in overrides.items():
        env_val = os.environ.get(env_key)
        if env_val is not None:
            try:
                setattr(target, attr_name, cast_fn(env_val))
            except (ValueError, TypeError) as exc:
                raise ConfigurationError(
                    f"Invalid value for env var {env_key}='{env_val}': {exc}"
                ) from exc


# ===========================================================================
# PUBLISHING CONFIGURATION
# ===========================================================================


@dataclass
class PublishingConfig:
    """
    Settings for the scheduled-publishing engine and dispatcher.

    ``retry_delays_seconds`` is a tier list: the n-th failure waits the n-th
    tier, later failures reuse the last tier.
    """

    max_retries: int = 3
    retry_delays_seconds: List[int] = field(default_factory=lambda: [30, 60, 300])
    conflict_window_minutes: int = 30
    publish_timeout_seconds: float = 30.0
    max_concurrent_publishes: int = 5
    stuck_timeout_minutes: int = 15

    def __post_init__(self) -> None:
        _apply_env_overrides(self, {
            "PUBLISH_MAX_RETRIES": ("max_retries", int),
            "PUBLISH_TIMEOUT_SECONDS": ("publish_timeout_seconds", float),
            "PUBLISH_MAX_CONCURRENT": ("max_concurrent_publishes", int),
        })
        if self.max_retries < 1:
            raise ConfigurationError(
                f"max_retries must be >= 1, got {self.max_retries}"
            )
        if not self.retry_delays_seconds or any(
            d < 0 for d in self.retry_delays_seconds
        ):
            raise ConfigurationError(
                "retry_delays_seconds must be a non-empty list of "
                f"non-negative integers, got {self.retry_delays_seconds}"
            )
        if self.conflict_window_minutes < 0:
            raise ConfigurationError("conflict_window_minutes cannot be negative")
        if self.publish_timeout_seconds <= 0:
            raise ConfigurationError("publish_timeout_seconds must be positive")
        if self.max_concurrent_publishes < 1:
            raise ConfigurationError("max_concurrent_publishes must be >= 1")


# ===========================================================================
# JOB SCHEDULER CONFIGURATION
# ===========================================================================

DEFAULT_JOB_INTERVALS: Dict[str, int] = {
    "publish-scheduled-posts": 5 * 60,
    "retry-failed-posts": 60 * 60,
    "cleanup-old-records": 24 * 60 * 60,
    "update-analytics": 6 * 60 * 60,
    "health-check": 30 * 60,
}


@dataclass
class JobsConfig:
    """
    Settings for the recurring job scheduler and its health monitor.

    Intervals are in seconds, keyed by job id.
    """

    intervals: Dict[str, int] = field(
        default_factory=lambda: dict(DEFAULT_JOB_INTERVALS)
    )
    health_check_seconds: int = 60

    # Stall detection (multiples of the expected interval)
    warn_factor: float = 2.0
    restart_factor: float = 3.0
    max_stall_hours: int = 24

    critical_jobs: List[str] = field(
        default_factory=lambda: ["publish-scheduled-posts"]
    )
    auto_retry_jobs: List[str] = field(
        default_factory=lambda: ["publish-scheduled-posts", "retry-failed-posts"]
    )

    # Backlog warnings
    critical_queue_threshold: int = 100
    failed_jobs_threshold: int = 50

    shutdown_timeout_seconds: float = 30.0
    workers: Dict[str, int] = field(
        default_factory=lambda: {"critical": 2, "default": 1}
    )

    def __post_init__(self) -> None:
        _apply_env_overrides(self, {
            "JOBS_HEALTH_CHECK_SECONDS": ("health_check_seconds", int),
            "JOBS_SHUTDOWN_TIMEOUT_SECONDS": ("shutdown_timeout_seconds", float),
        })
        for job_id, seconds in self.intervals.items():
            if seconds <= 0:
                raise ConfigurationError(
                    f"Interval for job '{job_id}' must be positive, got {seconds}"
                )
        if self.health_check_seconds <= 0:
            raise ConfigurationError("health_check_seconds must be positive")
        if self.restart_factor < self.warn_factor:
            raise ConfigurationError(
                f"restart_factor ({self.restart_factor}) cannot be below "
                f"warn_factor ({self.warn_factor})"
            )
        for queue, count in self.workers.items():
            if count < 1:
                raise ConfigurationError(
                    f"Queue '{queue}' needs at least one worker, got {count}"
                )

    def interval_for(self, job_id: str) -> int:
        """
        Get the expected interval for a job.

        Raises:
            ConfigurationError: If the job has no configured interval.
        """
        if job_id not in self.intervals:
            raise ConfigurationError(
                f"No interval configured for job '{job_id}'. "
                f"Known jobs: {sorted(self.intervals)}"
            )
        return self.intervals[job_id]


# ===========================================================================
# RETENTION CONFIGURATION
# ===========================================================================


@dataclass
class RetentionConfig:
    scheduled_posts_days: int = 30
    job_records_days: int = 7
    activity_buffer_size: int = 500

    def __post_init__(self) -> None:
        if self.scheduled_posts_days < 1 or self.job_records_days < 1:
            raise ConfigurationError("Retention windows must be at least one day")
        if self.activity_buffer_size < 1:
            raise ConfigurationError("activity_buffer_size must be >= 1")


# ===========================================================================
# GLOBAL SETTINGS
# ===========================================================================


@dataclass
class Settings:
    """
    Global application settings.

    Loaded from ``config/settings.yaml`` when available, falling back to
    sensible defaults. Environment variables override YAML values for
    secrets and deployment-specific configuration.
    """

    # Timezone used when a schedule request omits one
    timezone: str = "UTC"

    # Logging
    log_level: str = "INFO"
    log_dir: str = "logs"
    activity_file: str = "activity.jsonl"
    activity_table_enabled: bool = True

    # Publisher endpoints
    api_base_urls: Dict[str, str] = field(default_factory=lambda: {
        "linkedin": "https://api.linkedin.com",
        "x": "https://api.twitter.com",
    })

    # Credential cache
    credential_cache_seconds: int = 300

    publishing: PublishingConfig = field(default_factory=PublishingConfig)
    jobs: JobsConfig = field(default_factory=JobsConfig)
    retention: RetentionConfig = field(default_factory=RetentionConfig)

    @property
    def activity_path(self) -> Path:
        """Absolute path of the activity JSON-lines file."""
        log_dir = Path(self.log_dir)
        if not log_dir.is_absolute():
            log_dir = PROJECT_ROOT / log_dir
        return log_dir / self.activity_file

    @classmethod
    def from_yaml(cls, path: Optional[Path] = None) -> "Settings":
        """
        Load settings from a YAML file.

        If the file does not exist, returns an instance with all defaults.
        Environment variables override YAML values for specific keys.

        Args:
            path: Path to the YAML file. Defaults to
                ``<PROJECT_ROOT>/config/settings.yaml``.

        Returns:
            Populated Settings instance.

        Raises:
            ConfigurationError: If the YAML file exists but cannot be parsed,
                or contains invalid values.
        """
        path = path or PROJECT_ROOT / "config" / "settings.yaml"

        data: Dict[str, Any] = {}
        if path.exists():
            try:
                with open(path, "r", encoding="utf-8") as fh:
                    data = yaml.safe_load(fh) or {}
            except yaml.YAMLError as exc:
                raise ConfigurationError(
                    f"Failed to parse settings YAML at {path}: {exc}"
                ) from exc

        # -----------------------------------------------------------------
        # Nested sections (unknown keys are ignored)
        # -----------------------------------------------------------------
        publishing = PublishingConfig(**_known_keys(
            PublishingConfig, data.get("publishing", {})
        ))

        jobs_data = dict(data.get("jobs", {}))
        intervals = dict(DEFAULT_JOB_INTERVALS)
        intervals.update(jobs_data.pop("intervals", {}) or {})
        jobs = JobsConfig(intervals=intervals, **_known_keys(JobsConfig, jobs_data))

        retention = RetentionConfig(**_known_keys(
            RetentionConfig, data.get("retention", {})
        ))

        api_base_urls = cls.__dataclass_fields__["api_base_urls"].default_factory()  # type: ignore[misc]
        api_base_urls.update(data.get("api_base_urls", {}) or {})

        # -----------------------------------------------------------------
        # Assemble the Settings object
        # -----------------------------------------------------------------
        return cls(
            timezone=data.get("timezone", "UTC"),
            log_level=os.environ.get("LOG_LEVEL", data.get("log_level", "INFO")),
            log_dir=data.get("log_dir", "logs"),
            activity_file=data.get("activity_file", "activity.jsonl"),
            activity_table_enabled=data.get("activity_table_enabled", True),
            api_base_urls=api_base_urls,
            credential_cache_seconds=data.get("credential_cache_seconds", 300),
            publishing=publishing,
            jobs=jobs,
            retention=retention,
        )


def _known_keys(config_cls: type, section: Optional[Dict[str, Any]]) -> Dict[str, Any]:
    """Keep only the YAML keys the dataclass declares, warning on the rest."""
    section = section or {}
    fields = config_cls.__dataclass_fields__  # type: ignore[attr-defined]
    unknown = [k for k in section if k not in fields]
    if unknown:
        logger.warning(
            "Ignoring unknown %s keys in settings: %s", config_cls.__name__, unknown
        )
    return {k: v for k, v in section.items() if k in fields and k != "intervals"}


# ===========================================================================
# SINGLETON SETTINGS ACCESSOR
# ===========================================================================

_settings_instance: Optional[Settings] = None


def get_settings() -> Settings:
    """
    Get the global Settings singleton.

    On first call, loads from ``config/settings.yaml`` (or defaults).
    Subsequent calls return the cached instance.
    """
    global _settings_instance
    if _settings_instance is None:
        _settings_instance = Settings.from_yaml()
    return _settings_instance


def reset_settings() -> None:
    """
    Reset the cached Settings singleton.

    Useful for testing or when configuration files have been updated
    at runtime.
    """
    global _settings_instance
    _settings_instance = None


# ===========================================================================
# ENVIRONMENT VARIABLE VALIDATION
# ===========================================================================

# Required environment variables for the system to function
REQUIRED_ENV_VARS: List[str] = [
    "SUPABASE_URL",
    "SUPABASE_SERVICE_KEY",
]

# Optional but recommended environment variables
OPTIONAL_ENV_VARS: List[str] = [
    "LOG_LEVEL",
    "PUBLISH_MAX_RETRIES",
    "PUBLISH_TIMEOUT_SECONDS",
]


def validate_env(strict: bool = True) -> Dict[str, bool]:
    """
    Validate that required environment variables are set.

    Args:
        strict: If ``True``, raise ``ConfigurationError`` when any required
            variable is missing. If ``False``, return the status dict
            without raising.

    Returns:
        Dict mapping variable name to presence status (``True`` if set).

    Raises:
        ConfigurationError: If ``strict=True`` and required vars are missing.
    """
    status: Dict[str, bool] = {}
    missing: List[str] = []

    for var in REQUIRED_ENV_VARS:
        present = bool(os.environ.get(var))
        status[var] = present
        if not present:
            missing.append(var)

    for var in OPTIONAL_ENV_VARS:
        status[var] = bool(os.environ.get(var))

    if strict and missing:
        raise ConfigurationError(
            f"Missing required environment variables: {missing}. "
            f"Copy .env.example to .env and fill in the values."
        )

    return status


__all__ = [
    "PROJECT_ROOT",
    "DEFAULT_JOB_INTERVALS",
    "PublishingConfig",
    "JobsConfig",
    "RetentionConfig",
    "Settings",
    "get_settings",
    "reset_settings",
    "REQUIRED_ENV_VARS",
    "OPTIONAL_ENV_VARS",
    "validate_env",
]
