"""Configuration settings for storebuild.

Uses pydantic-settings for config parsing from environment variables
and defaults. Configuration precedence: CLI flags > env vars > defaults.
"""

import platform
from pathlib import Path
from typing import Literal

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


def _default_store_dir() -> Path:
    """Return the default content store directory."""
    return Path.home() / ".local" / "share" / "storebuild" / "store"


def _default_db_url() -> str:
    """Return the default database URL (SQLite)."""
    db_path = Path.home() / ".local" / "share" / "storebuild" / "db.sqlite"
    return f"sqlite:///{db_path}"


def current_system() -> str:
    """Return the platform identifier for the running host.

    The identifier has the form ``<machine>-<kernel>``, e.g. ``x86_64-linux``.
    """
    machine = platform.machine().lower() or "unknown"
    if machine == "amd64":
        machine = "x86_64"
    elif machine == "arm64":
        machine = "aarch64"
    return f"{machine}-{platform.system().lower() or 'unknown'}"


class Settings(BaseSettings):
    """Application settings.

    Settings are loaded from environment variables with the STOREBUILD_ prefix.
    CLI flags can override these at runtime.
    """

    model_config = SettingsConfigDict(
        env_prefix="STOREBUILD_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # Paths
    store_dir: Path = Field(
        default_factory=_default_store_dir,
        description="Root directory of the content store",
    )
    db_url: str = Field(
        default_factory=_default_db_url,
        description="Database connection URL for build records",
    )

    # Operational modes
    system: str = Field(
        default_factory=current_system,
        description="Platform identifier used when a description omits one",
    )
    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"] = Field(
        default="INFO",
        description="Logging level",
    )
    record_builds: bool = Field(
        default=True,
        description="Persist build records to the database",
    )

    # Concurrency
    max_workers: int = Field(
        default=4,
        ge=1,
        le=64,
        description="Maximum number of builders running at once",
    )

    # Timeouts (in seconds)
    build_timeout: int | None = Field(
        default=None,
        ge=1,
        description="Timeout for a single builder (no timeout if not set)",
    )
    terminate_grace: float = Field(
        default=5.0,
        ge=0,
        description="Seconds between SIGTERM and SIGKILL for stopped builders",
    )


def get_settings() -> Settings:
    """Get the application settings singleton.

    Returns:
        Settings instance loaded from environment.
    """
    return Settings()


def print_settings_json(settings: Settings | None = None) -> str:
    """Render effective settings as JSON.

    Args:
        settings: Optional settings instance; uses default if not provided.

    Returns:
        JSON string of effective settings.
    """
    if settings is None:
        settings = get_settings()
    return settings.model_dump_json(indent=2)


__all__ = ["Settings", "current_system", "get_settings", "print_settings_json"]
