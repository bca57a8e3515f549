"""Configuration module for notekit."""

import os
from pathlib import Path
from typing import Optional

from dotenv import load_dotenv
from pydantic import BaseModel, Field, ValidationError, model_validator

from notekit import __version__
from notekit.exceptions import ConfigurationError

# Load environment variables from the project root .env file.
# Anchored to __file__ so it works regardless of the process CWD.
_PROJECT_ROOT = Path(__file__).resolve().parent.parent.parent
load_dotenv(_PROJECT_ROOT / ".env")

# User-level config, shared by every checkout
_USER_ENV = Path.home() / ".notekit" / ".env"
load_dotenv(_USER_ENV)


def _env_flag(name: str, default: str) -> bool:
    return os.getenv(name, default).lower() in ("true", "1", "yes")


class NotesConfig(BaseModel):
    """Configuration for notekit stores and services."""

    # Base directory for relative paths
    base_dir: Path = Field(
        default_factory=lambda: Path(os.getenv("NOTEKIT_BASE_DIR", "."))
    )
    # Local store configuration
    database_path: Path = Field(
        default_factory=lambda: Path(
            os.getenv("NOTEKIT_DATABASE_PATH", "data/db/notes.db")
        )
    )
    # When True, the local store is volatile (SQLite :memory:)
    in_memory_db: bool = Field(
        default_factory=lambda: _env_flag("NOTEKIT_IN_MEMORY_DB", "false")
    )
    # Remote sync configuration
    use_remote_sync: bool = Field(
        default_factory=lambda: _env_flag("NOTEKIT_USE_REMOTE_SYNC", "false")
    )
    # Directory backing the file record database used by the CLI
    remote_dir: Path = Field(
        default_factory=lambda: Path(os.getenv("NOTEKIT_REMOTE_DIR", "data/remote"))
    )
    # Identifies the account container the remote store belongs to
    container_identifier: str = Field(
        default_factory=lambda: os.getenv(
            "NOTEKIT_CONTAINER_ID", "notekit.default-container"
        )
    )
    zone_name: str = Field(
        default_factory=lambda: os.getenv("NOTEKIT_ZONE_NAME", "NotesZone")
    )
    record_type: str = Field(default="Note")
    # Upper bound on records returned by a remote search (0 = unlimited)
    search_fetch_limit: int = Field(
        default_factory=lambda: int(os.getenv("NOTEKIT_SEARCH_FETCH_LIMIT", "100"))
    )
    # Seconds to wait for a remote operation before failing it
    network_timeout: float = Field(
        default_factory=lambda: float(os.getenv("NOTEKIT_NETWORK_TIMEOUT", "30.0"))
    )
    enable_statistics: bool = Field(
        default_factory=lambda: _env_flag("NOTEKIT_ENABLE_STATISTICS", "true")
    )
    log_dir: Optional[Path] = Field(
        default_factory=lambda: (
            Path(os.getenv("NOTEKIT_LOG_DIR"))
            if os.getenv("NOTEKIT_LOG_DIR")
            else None
        )
    )
    version: str = Field(default=__version__)

    @model_validator(mode="after")
    def _validate_limits(self) -> "NotesConfig":
        """Reject limits that would make remote operations unusable."""
        if self.search_fetch_limit < 0:
            raise ValueError("search_fetch_limit must be >= 0")
        if self.network_timeout <= 0:
            raise ValueError("network_timeout must be > 0")
        if not self.zone_name.strip():
            raise ValueError("zone_name cannot be empty")
        return self

    def get_absolute_path(self, path: Path) -> Path:
        """Convert a relative path to an absolute path based on base_dir."""
        if path.is_absolute():
            return path
        return self.base_dir / path

    def get_db_url(self) -> str:
        """Get the database URL for SQLite."""
        if self.in_memory_db:
            return "sqlite:///:memory:"
        db_path = self.get_absolute_path(self.database_path)
        db_path.parent.mkdir(parents=True, exist_ok=True)
        return f"sqlite:///{db_path}"

    def get_remote_dir(self) -> Path:
        """Get the absolute path of the file record database, creating it."""
        remote_dir = self.get_absolute_path(self.remote_dir)
        remote_dir.mkdir(parents=True, exist_ok=True)
        return remote_dir


def load_config(base: Optional[NotesConfig] = None, **overrides) -> NotesConfig:
    """Build a validated config from `base` (or the environment) plus overrides.

    Raises:
        ConfigurationError: If a value is missing, malformed or out of range.
    """
    try:
        if base is None:
            return NotesConfig(**overrides)
        return NotesConfig(**{**base.model_dump(), **overrides})
    except ValidationError as e:
        error = e.errors()[0]
        key = ".".join(str(part) for part in error["loc"]) or None
        raise ConfigurationError(
            f"Invalid configuration: {error['msg']}", config_key=key
        ) from e
    except ValueError as e:
        # Raised by the env default factories for unparsable numbers
        raise ConfigurationError(f"Invalid configuration: {e}") from e


# Create a global config instance
config = NotesConfig()
