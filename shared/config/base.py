"""Base configuration loaded from the environment."""

from datetime import datetime, timezone
from enum import Enum
from typing import Any

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Environment(str, Enum):
    """Supported deployment environments."""

    DEVELOPMENT = "development"
    TESTING = "testing"
    STAGING = "staging"
    PRODUCTION = "production"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class BaseConfiguration(BaseSettings):
    """Base configuration class reading ``.env`` files and environment variables."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # Core metadata
    environment: Environment = Field(
        default=Environment.DEVELOPMENT,
        description="Current deployment environment",
    )
    version: str = Field(default="1.0.0", description="Configuration version")
    last_updated: datetime = Field(
        default_factory=_utcnow,
        description="Last configuration update timestamp",
    )

    def to_dict(self, exclude_sensitive: bool = True) -> dict[str, Any]:
        """Convert configuration to dictionary, optionally excluding sensitive data."""
        data = self.model_dump()

        if exclude_sensitive:
            sensitive_patterns = ["password", "token", "secret"]
            return {
                k: "***REDACTED***"
                if any(pattern in k.lower() for pattern in sensitive_patterns)
                else v
                for k, v in data.items()
            }

        return data

    def validate_configuration(self) -> list[str]:
        """Validate the current configuration and return any issues.

        Override in subclasses for specific validation.
        """
        return []
