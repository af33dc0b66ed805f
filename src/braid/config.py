"""Configuration management for braid."""

from __future__ import annotations

from typing import Literal

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

from .errors import ConfigurationError
from .logging_utils import configure_logging

MODEL_NOT_CONFIGURED_ERROR = "Model not configured. Set BRAID_MODEL (e.g., 'openai:gpt-4o-mini')."


class Settings(BaseSettings):
    """Engine settings.

    Built once by the caller and passed explicitly into the engine, sources and
    scenarios. Nothing in the package reads the environment on its own.
    """

    model_config = SettingsConfigDict(
        env_prefix="BRAID_",
        case_sensitive=False,
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # Provider Configuration
    model: str | None = Field(None, description="Model in provider:model form (e.g., 'openai:gpt-4o-mini')")
    api_key: str | None = Field(None, description="API key for the LLM provider")
    api_base: str | None = Field(None, description="Optional API base URL")
    max_tokens: int = Field(default=1024, ge=1, description="Maximum tokens for responses")
    model_timeout_seconds: float | None = Field(default=90, description="Timeout for one model call")

    # Retry Configuration
    default_loop_attempts: int = Field(default=10, ge=1, description="Attempt ceiling for loops without one")
    default_validation_attempts: int = Field(default=1, ge=1, description="Local attempt budget for validated leaves")
    goal_tool_name: str = Field(default="check_goal", description="Reserved tool name for model self-reports")

    # Logging Configuration
    log_level: str = Field(default="INFO", description="Log level")
    log_profile: Literal["default", "pretty"] = Field(default="default", description="Log output profile")

    def require_model(self) -> str:
        if not self.model:
            raise ConfigurationError(MODEL_NOT_CONFIGURED_ERROR)
        if ":" not in self.model:
            raise ConfigurationError(f"Invalid model format '{self.model}'. Expected provider:model.")
        return self.model


def get_settings(**overrides: object) -> Settings:
    """Get application settings.

    Args:
        **overrides: Explicit values that take precedence over the environment.

    Returns:
        Settings instance
    """
    settings = Settings(**overrides)  # type: ignore[arg-type]
    configure_logging(profile=settings.log_profile, level=settings.log_level)
    return settings
