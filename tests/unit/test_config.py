"""
Unit tests for configuration module.

Tests cover Settings defaults, environment variable parsing,
field validation, and the cached get_settings accessor.
"""

import pytest
from _pytest.monkeypatch import MonkeyPatch

from controlfix.config import Settings, get_settings
from controlfix.errors import ConfigurationError


class TestSettingsValidation:
    """Tests for Settings validation."""

    def test_settings_from_env_vars(
        self,
        mock_env_vars: dict[str, str],
    ) -> None:
        """Test that Settings loads from environment variables."""
        _ = mock_env_vars

        settings = Settings()  # pyright: ignore[reportCallIssue]

        assert settings.enable_automated_remediation is True
        assert settings.aws_region == "us-west-2"
        assert settings.script_timeout_seconds == 30
        assert settings.script_max_retries == 2
        assert settings.progress_window_days == 7
        assert settings.log_level == "DEBUG"
        assert settings.redis_url is None

    def test_disable_automation_from_env(
        self,
        mock_env_vars: dict[str, str],
        monkeypatch: MonkeyPatch,
    ) -> None:
        """Test that ENABLE_AUTOMATED_REMEDIATION=false turns automation off."""
        _ = mock_env_vars
        monkeypatch.setenv("ENABLE_AUTOMATED_REMEDIATION", "false")

        settings = Settings()  # pyright: ignore[reportCallIssue]

        assert settings.enable_automated_remediation is False

    def test_invalid_log_level_raises(
        self,
        mock_env_vars: dict[str, str],
        monkeypatch: MonkeyPatch,
    ) -> None:
        """Test that invalid LOG_LEVEL raises error."""
        _ = mock_env_vars
        monkeypatch.setenv("LOG_LEVEL", "INVALID")

        with pytest.raises(ConfigurationError) as exc_info:
            _ = Settings()  # pyright: ignore[reportCallIssue]

        assert "LOG_LEVEL" in str(exc_info.value)

    def test_log_level_is_upper_cased(
        self,
        mock_env_vars: dict[str, str],
        monkeypatch: MonkeyPatch,
    ) -> None:
        """Test that a lower-case LOG_LEVEL is accepted."""
        _ = mock_env_vars
        monkeypatch.setenv("LOG_LEVEL", "warning")

        assert Settings().log_level == "WARNING"  # pyright: ignore[reportCallIssue]

    def test_invalid_aws_region_raises(
        self,
        mock_env_vars: dict[str, str],
        monkeypatch: MonkeyPatch,
    ) -> None:
        """Test that invalid AWS_REGION raises error."""
        _ = mock_env_vars
        monkeypatch.setenv("AWS_REGION", "invalid")

        with pytest.raises(ConfigurationError) as exc_info:
            _ = Settings()  # pyright: ignore[reportCallIssue]

        assert "AWS_REGION" in str(exc_info.value)

    def test_unsupported_script_dialect_raises(
        self,
        mock_env_vars: dict[str, str],
        monkeypatch: MonkeyPatch,
    ) -> None:
        """Test that an unknown SCRIPT_DIALECT is rejected."""
        _ = mock_env_vars
        monkeypatch.setenv("SCRIPT_DIALECT", "cobol")

        with pytest.raises(ConfigurationError) as exc_info:
            _ = Settings()  # pyright: ignore[reportCallIssue]

        assert exc_info.value.config_key == "SCRIPT_DIALECT"

    def test_script_dialect_is_normalized(
        self,
        mock_env_vars: dict[str, str],
        monkeypatch: MonkeyPatch,
    ) -> None:
        """Test that SCRIPT_DIALECT is lower-cased."""
        _ = mock_env_vars
        monkeypatch.setenv("SCRIPT_DIALECT", "PowerShell")

        assert Settings().script_dialect == "powershell"  # pyright: ignore[reportCallIssue]


class TestRedisUrl:
    """Tests for REDIS_URL handling."""

    def test_blank_redis_url_is_none(
        self,
        mock_env_vars: dict[str, str],
        monkeypatch: MonkeyPatch,
    ) -> None:
        """Test that an empty REDIS_URL means in-memory history."""
        _ = mock_env_vars
        monkeypatch.setenv("REDIS_URL", "  ")

        assert Settings().redis_url is None  # pyright: ignore[reportCallIssue]

    def test_valid_redis_url(
        self,
        mock_env_vars: dict[str, str],
        monkeypatch: MonkeyPatch,
    ) -> None:
        """Test that a redis:// URL is kept."""
        _ = mock_env_vars
        monkeypatch.setenv("REDIS_URL", "redis://localhost:6379/1")

        assert Settings().redis_url == "redis://localhost:6379/1"  # pyright: ignore[reportCallIssue]

    def test_invalid_redis_scheme_raises(
        self,
        mock_env_vars: dict[str, str],
        monkeypatch: MonkeyPatch,
    ) -> None:
        """Test that a non-redis URL is rejected."""
        _ = mock_env_vars
        monkeypatch.setenv("REDIS_URL", "http://localhost:6379")

        with pytest.raises(ConfigurationError) as exc_info:
            _ = Settings()  # pyright: ignore[reportCallIssue]

        assert "REDIS_URL" in str(exc_info.value)


class TestGetSettings:
    """Tests for the cached settings accessor."""

    def test_get_settings_is_cached(
        self,
        mock_env_vars: dict[str, str],
    ) -> None:
        """Test that get_settings returns the same instance."""
        _ = mock_env_vars

        assert get_settings() is get_settings()

    def test_get_settings_wraps_validation_errors(
        self,
        mock_env_vars: dict[str, str],
        monkeypatch: MonkeyPatch,
    ) -> None:
        """Test that pydantic range errors surface as ConfigurationError."""
        _ = mock_env_vars
        monkeypatch.setenv("MAX_CONCURRENT_REMEDIATIONS", "0")

        with pytest.raises(ConfigurationError) as exc_info:
            _ = get_settings()

        assert "Failed to load configuration" in str(exc_info.value)
