"""
Application configuration using Pydantic Settings.

Loads process-level configuration from environment variables and .env file.
Engine tuning lives in cncstream.streaming.domain.config.StreamingConfig.
"""

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment."""

    model_config = SettingsConfigDict(
        env_prefix="CNCSTREAM_",
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # Application
    app_name: str = Field(default="cncstream", description="Application name")
    app_env: str = Field(default="development", description="Environment (development/production)")
    debug: bool = Field(default=False, description="Debug mode")
    log_level: str = Field(default="INFO", description="Logging level")

    # Streaming engine
    config_file: str | None = Field(
        default=None,
        description="Optional YAML file with StreamingConfig overrides",
    )
    checkpoint_directory: str = Field(
        default=".checkpoints",
        description="Checkpoint directory, relative to the streamed file",
    )

    # Logging / Privacy
    log_redaction_enabled: bool = Field(default=True, description="Redact home paths in logs")

    @field_validator("log_level")
    @classmethod
    def _normalize_log_level(cls, value: str) -> str:
        level = value.upper()
        if level not in {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}:
            raise ValueError(f"Unknown log level: {value}")
        return level

    @property
    def is_development(self) -> bool:
        """Check if running in development mode."""
        return self.app_env.lower() == "development"

    @property
    def is_production(self) -> bool:
        """Check if running in production mode."""
        return self.app_env.lower() == "production"


# Global settings instance
settings = Settings()
