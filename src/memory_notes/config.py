"""Configuration module for the learning-notes store."""

import logging
import os
from pathlib import Path
from typing import Optional

from dotenv import load_dotenv
from pydantic import BaseModel, Field, model_validator

from memory_notes.exceptions import ConfigurationError

# Load environment variables from the project root .env file.
# Anchored to __file__ so it works regardless of the process CWD.
_PROJECT_ROOT = Path(__file__).resolve().parent.parent.parent
load_dotenv(_PROJECT_ROOT / ".env")

# User-level config: lives alongside the database
_USER_ENV = Path.home() / ".memory-notes" / ".env"
load_dotenv(_USER_ENV)


logger = logging.getLogger(__name__)

DEFAULT_DATA_DIR = Path.home() / ".memory-notes"


def _env_flag(name: str, default: str) -> bool:
    return os.getenv(name, default).lower() in ("true", "1", "yes")


class MemoryNotesConfig(BaseModel):
    """Configuration for the learning-notes store."""

    # Base directory that relative paths are resolved against
    base_dir: Path = Field(
        default_factory=lambda: Path(os.getenv("MEMORY_NOTES_BASE_DIR", "."))
    )
    # Database configuration
    database_path: Path = Field(
        default_factory=lambda: Path(
            os.getenv("MEMORY_NOTES_DATABASE_PATH", str(DEFAULT_DATA_DIR / "memory.db"))
        )
    )
    # Milliseconds SQLite waits on a locked database before failing
    sqlite_busy_timeout_ms: int = Field(
        default_factory=lambda: int(os.getenv("MEMORY_NOTES_BUSY_TIMEOUT_MS", "5000"))
    )
    # Search / listing defaults
    default_search_limit: int = Field(
        default_factory=lambda: int(os.getenv("MEMORY_NOTES_SEARCH_LIMIT", "10"))
    )
    default_list_limit: int = Field(
        default_factory=lambda: int(os.getenv("MEMORY_NOTES_LIST_LIMIT", "50"))
    )
    # Logging configuration
    log_dir: Optional[Path] = Field(
        default_factory=lambda: (
            Path(os.getenv("MEMORY_NOTES_LOG_DIR"))
            if os.getenv("MEMORY_NOTES_LOG_DIR")
            else None
        )
    )
    log_level: str = Field(
        default_factory=lambda: os.getenv("MEMORY_NOTES_LOG_LEVEL", "INFO")
    )
    # When False, operation metrics are kept in memory only
    metrics_enabled: bool = Field(
        default_factory=lambda: _env_flag("MEMORY_NOTES_METRICS_ENABLED", "true")
    )

    @model_validator(mode="after")
    def _validate_limits(self) -> "MemoryNotesConfig":
        """Reject limits that would make search or listing return nothing."""
        if self.default_search_limit < 1:
            raise ValueError("default_search_limit must be >= 1")
        if self.default_list_limit < 1:
            raise ValueError("default_list_limit must be >= 1")
        if self.sqlite_busy_timeout_ms < 0:
            raise ValueError("sqlite_busy_timeout_ms must be >= 0")
        return self

    def get_absolute_path(self, path: Path) -> Path:
        """Convert a relative path to an absolute path based on base_dir."""
        path = Path(path).expanduser()
        if path.is_absolute():
            return path
        return self.base_dir / path

    def get_db_url(self, database_path: Optional[Path] = None) -> str:
        """Get the database URL for SQLite.

        Ensures the parent directory of the database file exists.

        Raises:
            ConfigurationError: If the path names an existing directory.
        """
        db_path = self.get_absolute_path(database_path or self.database_path)
        if db_path.is_dir():
            raise ConfigurationError(
                f"Database path is a directory: {db_path}", config_key="database_path"
            )
        db_path.parent.mkdir(parents=True, exist_ok=True)
        return f"sqlite:///{db_path}"


# Create a global config instance
config = MemoryNotesConfig()
