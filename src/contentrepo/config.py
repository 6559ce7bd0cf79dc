"""
Configuration management using pydantic-settings.

Loads configuration from environment variables and .env files.
Validates fields and provides typed access to settings.
"""

from __future__ import annotations

from functools import lru_cache
from pathlib import Path
from typing import Literal

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

DEFAULT_OBSOLESCENCE_TIMEOUT_MS = 300_000


class Settings(BaseSettings):
    """Repository settings loaded from environment variables.

    Optional:
        REPO_ROOT: Directory holding the content repository
        OBSOLESCENCE_TIMEOUT_MS: Grace period before unreferenced content is deleted
        DEFER_REMOVAL: Leave released content to the cleanup pass
        BUFFER_SIZE: Chunk size used when streaming content
        LOG_LEVEL: Logging level
        LOG_FILE: JSON lines log file
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    REPO_ROOT: Path = Field(
        default=Path("data/content"), description="Content repository root directory"
    )
    OBSOLESCENCE_TIMEOUT_MS: int = Field(
        default=DEFAULT_OBSOLESCENCE_TIMEOUT_MS,
        ge=0,
        description="Milliseconds unreferenced content is kept before deletion",
    )
    BUFFER_SIZE: int = Field(
        default=8192, ge=512, description="Chunk size for streaming content"
    )
    DEFER_REMOVAL: bool = Field(
        default=False,
        description="Leave content whose last reference was removed for the cleanup pass",
    )

    LOG_LEVEL: Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"] = Field(
        default="INFO", description="Logging level"
    )
    LOG_FILE: Path | None = Field(default=None, description="JSON lines log file")

    @field_validator("REPO_ROOT")
    @classmethod
    def validate_repo_root(cls, v: Path) -> Path:
        """Reject an empty repository root."""
        if not str(v).strip() or str(v) == ".":
            raise ValueError("REPO_ROOT must name a directory")
        return v

    def redacted_display(self) -> dict[str, str | int | bool | None]:
        """Return settings for display."""
        return {
            "REPO_ROOT": str(self.REPO_ROOT),
            "OBSOLESCENCE_TIMEOUT_MS": self.OBSOLESCENCE_TIMEOUT_MS,
            "BUFFER_SIZE": self.BUFFER_SIZE,
            "DEFER_REMOVAL": self.DEFER_REMOVAL,
            "LOG_LEVEL": self.LOG_LEVEL,
            "LOG_FILE": str(self.LOG_FILE) if self.LOG_FILE else None,
        }


@lru_cache
def get_settings() -> Settings:
    """Get cached settings singleton.

    Returns:
        Settings instance loaded from environment.

    Raises:
        ValidationError: If settings are invalid.
    """
    return Settings()


def clear_settings_cache() -> None:
    """Clear the settings cache (useful for testing)."""
    get_settings.cache_clear()
