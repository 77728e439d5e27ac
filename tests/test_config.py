"""
Tests for content_pipeline.config module.

Covers:
    - PublishingConfig defaults, env overrides and validation
    - JobsConfig defaults, interval lookup and validation
    - RetentionConfig validation
    - Settings defaults and from_yaml
    - Singleton get_settings / reset_settings behaviour
    - validate_env
"""

import pytest

from content_pipeline.config import (
    DEFAULT_JOB_INTERVALS,
    PROJECT_ROOT,
    JobsConfig,
    PublishingConfig,
    RetentionConfig,
    Settings,
    get_settings,
    reset_settings,
    validate_env,
)
from content_pipeline.exceptions import ConfigurationError


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------


@pytest.fixture(autouse=True)
def _reset_singleton():
    """Ensure the Settings singleton is cleared before and after each test."""
    reset_settings()
    yield
    reset_settings()


# ===========================================================================
# 1. PublishingConfig
# ===========================================================================


class TestPublishingConfig:
    """Tests for PublishingConfig defaults and overrides."""

    def test_defaults(self):
        cfg = PublishingConfig()
        assert cfg.max_retries == 3
        assert cfg.retry_delays_seconds == [30, 60, 300]
        assert cfg.conflict_window_minutes == 30
        assert cfg.publish_timeout_seconds == 30.0
        assert cfg.stuck_timeout_minutes == 15

    def test_env_override_max_retries(self, monkeypatch):
        monkeypatch.setenv("PUBLISH_MAX_RETRIES", "5")
        assert PublishingConfig().max_retries == 5

    def test_env_override_invalid_value_raises(self, monkeypatch):
        monkeypatch.setenv("PUBLISH_TIMEOUT_SECONDS", "soon")
        with pytest.raises(ConfigurationError, match="PUBLISH_TIMEOUT_SECONDS"):
            PublishingConfig()

    def test_zero_retries_rejected(self):
        with pytest.raises(ConfigurationError, match="max_retries"):
            PublishingConfig(max_retries=0)

    def test_empty_delay_tiers_rejected(self):
        with pytest.raises(ConfigurationError, match="retry_delays_seconds"):
            PublishingConfig(retry_delays_seconds=[])

    def test_negative_delay_rejected(self):
        with pytest.raises(ConfigurationError):
            PublishingConfig(retry_delays_seconds=[30, -1])

    def test_non_positive_timeout_rejected(self):
        with pytest.raises(ConfigurationError):
            PublishingConfig(publish_timeout_seconds=0)


# ===========================================================================
# 2. JobsConfig
# ===========================================================================


class TestJobsConfig:
    """Tests for JobsConfig defaults, lookup and validation."""

    def test_default_intervals(self):
        cfg = JobsConfig()
        assert cfg.interval_for("publish-scheduled-posts") == 300
        assert cfg.interval_for("retry-failed-posts") == 3600
        assert cfg.interval_for("cleanup-old-records") == 86400
        assert cfg.interval_for("health-check") == 1800

    def test_default_intervals_are_copied(self):
        """Mutating one config must not leak into the module default."""
        cfg = JobsConfig()
        cfg.intervals["publish-scheduled-posts"] = 1
        assert DEFAULT_JOB_INTERVALS["publish-scheduled-posts"] == 300

    def test_unknown_job_raises(self):
        with pytest.raises(ConfigurationError, match="No interval configured"):
            JobsConfig().interval_for("make-coffee")

    def test_health_thresholds(self):
        cfg = JobsConfig()
        assert cfg.warn_factor == 2.0
        assert cfg.restart_factor == 3.0
        assert cfg.max_stall_hours == 24
        assert cfg.critical_queue_threshold == 100
        assert cfg.failed_jobs_threshold == 50
        assert cfg.shutdown_timeout_seconds == 30.0
        assert cfg.critical_jobs == ["publish-scheduled-posts"]

    def test_non_positive_interval_rejected(self):
        with pytest.raises(ConfigurationError, match="must be positive"):
            JobsConfig(intervals={"publish-scheduled-posts": 0})

    def test_restart_factor_below_warn_factor_rejected(self):
        with pytest.raises(ConfigurationError, match="restart_factor"):
            JobsConfig(warn_factor=3.0, restart_factor=2.0)

    def test_queue_without_workers_rejected(self):
        with pytest.raises(ConfigurationError, match="at least one worker"):
            JobsConfig(workers={"critical": 0})

    def test_env_override_shutdown_timeout(self, monkeypatch):
        monkeypatch.setenv("JOBS_SHUTDOWN_TIMEOUT_SECONDS", "5")
        assert JobsConfig().shutdown_timeout_seconds == 5.0


# ===========================================================================
# 3. RetentionConfig
# ===========================================================================


class TestRetentionConfig:
    def test_defaults(self):
        cfg = RetentionConfig()
        assert cfg.scheduled_posts_days == 30
        assert cfg.job_records_days == 7

    def test_zero_day_window_rejected(self):
        with pytest.raises(ConfigurationError):
            RetentionConfig(job_records_days=0)


# ===========================================================================
# 4. Settings
# ===========================================================================


class TestSettings:
    """Tests for Settings defaults and YAML loading."""

    def test_defaults(self):
        settings = Settings()
        assert settings.timezone == "UTC"
        assert settings.log_level == "INFO"
        assert settings.api_base_urls["linkedin"] == "https://api.linkedin.com"
        assert isinstance(settings.publishing, PublishingConfig)

    def test_activity_path_is_under_project_root(self):
        settings = Settings(log_dir="logs", activity_file="a.jsonl")
        assert settings.activity_path == PROJECT_ROOT / "logs" / "a.jsonl"

    def test_from_yaml_missing_file_returns_defaults(self, tmp_path):
        settings = Settings.from_yaml(tmp_path / "absent.yaml")
        assert settings.publishing.max_retries == 3
        assert settings.jobs.interval_for("update-analytics") == 21600

    def test_from_yaml_reads_nested_sections(self, tmp_path):
        path = tmp_path / "settings.yaml"
        path.write_text(
            "timezone: Europe/Berlin\n"
            "publishing:\n"
            "  max_retries: 4\n"
            "  retry_delays_seconds: [10, 20]\n"
            "jobs:\n"
            "  intervals:\n"
            "    publish-scheduled-posts: 120\n"
            "  critical_jobs: [publish-scheduled-posts, retry-failed-posts]\n"
            "retention:\n"
            "  job_records_days: 3\n"
            "api_base_urls:\n"
            "  x: https://sandbox.example.com\n",
            encoding="utf-8",
        )
        settings = Settings.from_yaml(path)

        assert settings.timezone == "Europe/Berlin"
        assert settings.publishing.max_retries == 4
        assert settings.publishing.retry_delays_seconds == [10, 20]
        assert settings.jobs.interval_for("publish-scheduled-posts") == 120
        # Intervals not named in the file keep their defaults
        assert settings.jobs.interval_for("retry-failed-posts") == 3600
        assert "retry-failed-posts" in settings.jobs.critical_jobs
        assert settings.retention.job_records_days == 3
        assert settings.api_base_urls["x"] == "https://sandbox.example.com"
        assert settings.api_base_urls["linkedin"] == "https://api.linkedin.com"

    def test_from_yaml_ignores_unknown_keys(self, tmp_path):
        path = tmp_path / "settings.yaml"
        path.write_text("publishing:\n  colour: blue\n", encoding="utf-8")
        assert Settings.from_yaml(path).publishing.max_retries == 3

    def test_from_yaml_invalid_yaml_raises(self, tmp_path):
        path = tmp_path / "settings.yaml"
        path.write_text("publishing: [unclosed\n", encoding="utf-8")
        with pytest.raises(ConfigurationError, match="Failed to parse"):
            Settings.from_yaml(path)

    def test_from_yaml_invalid_value_raises(self, tmp_path):
        path = tmp_path / "settings.yaml"
        path.write_text("publishing:\n  max_retries: 0\n", encoding="utf-8")
        with pytest.raises(ConfigurationError):
            Settings.from_yaml(path)

    def test_log_level_env_overrides_yaml(self, tmp_path, monkeypatch):
        path = tmp_path / "settings.yaml"
        path.write_text("log_level: WARNING\n", encoding="utf-8")
        monkeypatch.setenv("LOG_LEVEL", "DEBUG")
        assert Settings.from_yaml(path).log_level == "DEBUG"

    def test_repository_settings_file_loads(self):
        settings = Settings.from_yaml(PROJECT_ROOT / "config" / "settings.yaml")
        assert settings.jobs.workers == {"critical": 2, "default": 1}


# ===========================================================================
# 5. Singleton and environment
# ===========================================================================


class TestSingleton:
    def test_get_settings_returns_same_instance(self):
        assert get_settings() is get_settings()

    def test_reset_settings_creates_new_instance(self):
        first = get_settings()
        reset_settings()
        assert get_settings() is not first


class TestValidateEnv:
    def test_missing_required_vars_raise(self):
        with pytest.raises(ConfigurationError, match="SUPABASE_URL"):
            validate_env()

    def test_non_strict_returns_status(self):
        status = validate_env(strict=False)
        assert status["SUPABASE_URL"] is False
        assert status["SUPABASE_SERVICE_KEY"] is False

    def test_all_required_present(self, monkeypatch):
        monkeypatch.setenv("SUPABASE_URL", "https://example.supabase.co")
        monkeypatch.setenv("SUPABASE_SERVICE_KEY", "service-key")
        status = validate_env()
        assert status["SUPABASE_URL"] is True
