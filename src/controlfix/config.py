"""
Configuration management for ControlFix.

Settings are loaded from environment variables (and an optional .env file)
through pydantic-settings, with validators that raise ConfigurationError
naming the offending variable.

Environment Variables:
    ENABLE_AUTOMATED_REMEDIATION: Allow automated changes (default: true)
    MAX_CONCURRENT_REMEDIATIONS: Default batch concurrency cap (default: 3)
    SCRIPT_TIMEOUT_SECONDS: Per-attempt script timeout (default: 300)
    SCRIPT_MAX_RETRIES: Script execution attempts (default: 3)
    SCRIPT_DIALECT: Dialect requested for generated scripts (default: aws_cli)
    ENABLE_AI_SCRIPTS: Use Bedrock to generate scripts and guidance (default: false)
    AWS_REGION: AWS region for Bedrock and Cloud Control (default: us-east-1)
    BEDROCK_MODEL_ID: Claude model ID on Bedrock
    REDIS_URL: Redis URL for execution history (optional, in-memory if unset)
    HISTORY_RETENTION_DAYS: Days to keep history records in Redis (default: 90)
    PROGRESS_WINDOW_DAYS: Default look-back window for progress (default: 30)
    LOG_LEVEL: Logging level (default: INFO)

Usage:
    from controlfix.config import get_settings

    settings = get_settings()
    if settings.enable_automated_remediation:
        ...
"""

from functools import lru_cache

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from controlfix.errors import ConfigurationError

SUPPORTED_SCRIPT_DIALECTS = ("aws_cli", "bash", "powershell")


class Settings(BaseSettings):
    """
    ControlFix configuration settings.

    Every field has a default so the engine can run with an empty
    environment; validators reject values that are present but invalid.

    Attributes:
        enable_automated_remediation: Global fail-closed automation switch
        max_concurrent_remediations: Default concurrency cap for batches
        script_timeout_seconds: Timeout applied to each script attempt
        script_max_retries: Attempts made before a script is reported failed
        script_dialect: Dialect requested from the text-generation model
        enable_ai_scripts: Whether to wire the Bedrock collaborator
        aws_region: AWS region for Bedrock and Cloud Control
        bedrock_model_id: Claude model ID
        redis_url: Redis URL for history, None for in-memory history
        history_retention_days: TTL for Redis history records
        progress_window_days: Default window used by progress reports
        log_level: Logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # Automation
    enable_automated_remediation: bool = Field(
        default=True,
        description="Allow the engine to change live resources",
    )
    max_concurrent_remediations: int = Field(
        default=3,
        ge=1,
        le=20,
        description="Default maximum concurrent remediations per batch",
    )

    # Script execution
    script_timeout_seconds: int = Field(
        default=300,
        ge=1,
        description="Timeout for a single script attempt in seconds",
    )
    script_max_retries: int = Field(
        default=3,
        ge=1,
        le=10,
        description="Attempts made before a script is reported failed",
    )
    script_dialect: str = Field(
        default="aws_cli",
        description="Scripting dialect requested for generated scripts",
    )

    # AWS
    enable_ai_scripts: bool = Field(
        default=False,
        description="Generate remediation scripts and guidance with Bedrock",
    )
    aws_region: str = Field(
        default="us-east-1",
        description="AWS region for Bedrock and Cloud Control",
    )
    bedrock_model_id: str = Field(
        default="anthropic.claude-sonnet-4-5-20250929-v1:0",
        description="AWS Bedrock Claude model ID",
    )

    # History
    redis_url: str | None = Field(
        default=None,
        description="Redis URL for execution history (in-memory when unset)",
    )
    history_retention_days: int = Field(
        default=90,
        ge=1,
        description="Days to retain execution history records",
    )
    progress_window_days: int = Field(
        default=30,
        ge=1,
        description="Default look-back window for progress reports",
    )

    log_level: str = Field(
        default="INFO",
        description="Logging level",
    )

    @field_validator("aws_region")
    @classmethod
    def validate_aws_region(cls, v: str) -> str:
        """
        Validate AWS region format.

        Args:
            v: Region value from environment

        Returns:
            Validated region

        Raises:
            ConfigurationError: If region is invalid
        """
        v = v.strip()
        if v.count("-") < 2:
            raise ConfigurationError(
                f"AWS_REGION '{v}' does not appear to be a valid AWS region",
                config_key="AWS_REGION",
                reason="Region format is invalid (expected format: us-west-2)",
            )
        return v

    @field_validator("script_dialect")
    @classmethod
    def validate_script_dialect(cls, v: str) -> str:
        """
        Validate the script dialect is one the executor can run.

        Raises:
            ConfigurationError: If the dialect is unknown
        """
        v_lower = v.strip().lower()
        if v_lower not in SUPPORTED_SCRIPT_DIALECTS:
            raise ConfigurationError(
                f"SCRIPT_DIALECT '{v}' is not supported. Must be one of: "
                f"{', '.join(SUPPORTED_SCRIPT_DIALECTS)}",
                config_key="SCRIPT_DIALECT",
                reason=f"Unsupported dialect: {v}",
            )
        return v_lower

    @field_validator("redis_url")
    @classmethod
    def validate_redis_url(cls, v: str | None) -> str | None:
        """Treat blank values as unset and require a redis scheme otherwise."""
        if v is None or not v.strip():
            return None
        v = v.strip()
        if not v.startswith(("redis://", "rediss://", "unix://")):
            raise ConfigurationError(
                "REDIS_URL must start with redis://, rediss:// or unix://",
                config_key="REDIS_URL",
                reason="Unrecognized URL scheme",
            )
        return v

    @field_validator("log_level")
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        """
        Validate log level is recognized.

        Args:
            v: Log level from environment

        Returns:
            Upper-cased log level

        Raises:
            ConfigurationError: If log level is invalid
        """
        valid_levels = {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}
        v_upper = v.upper()
        if v_upper not in valid_levels:
            raise ConfigurationError(
                f"LOG_LEVEL '{v}' is not valid. Must be one of: {', '.join(sorted(valid_levels))}",
                config_key="LOG_LEVEL",
                reason=f"Invalid log level: {v}",
            )
        return v_upper


@lru_cache
def get_settings() -> Settings:
    """
    Get cached settings instance.

    Returns:
        Validated Settings instance

    Raises:
        ConfigurationError: If configuration is invalid

    Example:
        >>> from controlfix.config import get_settings
        >>> get_settings().max_concurrent_remediations
        3
    """
    try:
        return Settings()
    except ConfigurationError:
        raise
    except Exception as e:
        raise ConfigurationError(
            f"Failed to load configuration: {e}",
            reason=str(e),
        ) from e
