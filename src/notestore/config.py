"""Configuration module for the notestore persistence core."""

import logging
import os
from pathlib import Path

from dotenv import load_dotenv
from pydantic import BaseModel, Field, model_validator

from notestore import __version__

# Load environment variables from the project root .env file.
# Anchored to __file__ so it works regardless of the process CWD.
_PROJECT_ROOT = Path(__file__).resolve().parent.parent.parent
load_dotenv(_PROJECT_ROOT / ".env")

# User-level config lives alongside the data directory
_USER_ENV = Path.home() / ".notestore" / ".env"
load_dotenv(_USER_ENV)


logger = logging.getLogger(__name__)

# Roughly what browsers grant a single origin for localStorage
_DEFAULT_KV_QUOTA_BYTES = 5 * 1024 * 1024


def _env_bool(name: str, default: str) -> bool:
    return os.getenv(name, default).lower() in ("true", "1", "yes")


class NoteStoreConfig(BaseModel):
    """Configuration for the persistence core."""

    # Base directory for relative paths
    base_dir: Path = Field(
        default_factory=lambda: Path(os.getenv("NOTESTORE_BASE_DIR", "."))
    )
    # Root of the host file service (notes/, backups/, *.json)
    data_dir: Path = Field(
        default_factory=lambda: Path(os.getenv("NOTESTORE_DATA_DIR", "data/notestore"))
    )
    # SQLite file backing the key-value store
    kv_database_path: Path = Field(
        default_factory=lambda: Path(
            os.getenv("NOTESTORE_KV_DATABASE_PATH", "data/db/keyvalue.db")
        )
    )
    # Prefix of the four fixed key-value keys (notes, notebooks, ...)
    key_prefix: str = Field(
        default_factory=lambda: os.getenv("NOTESTORE_KEY_PREFIX", "notestore_")
    )
    # When False the host file service is never probed and the key-value
    # store is used for everything.
    host_enabled: bool = Field(
        default_factory=lambda: _env_bool("NOTESTORE_HOST_ENABLED", "true")
    )
    # Debounce window for document writes, in milliseconds
    debounce_ms: int = Field(
        default_factory=lambda: int(os.getenv("NOTESTORE_DEBOUNCE_MS", "100"))
    )
    # Upper bound for a single backend call, in seconds
    backend_timeout: float = Field(
        default_factory=lambda: float(os.getenv("NOTESTORE_BACKEND_TIMEOUT", "10"))
    )
    # Byte quota of the key-value store (0 disables the check)
    kv_quota_bytes: int = Field(
        default_factory=lambda: int(
            os.getenv("NOTESTORE_KV_QUOTA_BYTES", str(_DEFAULT_KV_QUOTA_BYTES))
        )
    )
    # Backup rotation
    backup_max: int = Field(
        default_factory=lambda: int(os.getenv("NOTESTORE_BACKUP_MAX", "10"))
    )
    backup_max_age_days: int = Field(
        default_factory=lambda: int(os.getenv("NOTESTORE_BACKUP_MAX_AGE_DAYS", "30"))
    )
    version: str = Field(default=__version__)

    @model_validator(mode="after")
    def _validate_limits(self) -> "NoteStoreConfig":
        """Reject settings the write path cannot work with."""
        if self.debounce_ms < 0:
            raise ValueError("debounce_ms must be >= 0")
        if self.backend_timeout <= 0:
            raise ValueError("backend_timeout must be > 0")
        if self.kv_quota_bytes < 0:
            raise ValueError("kv_quota_bytes must be >= 0")
        if self.backup_max < 1:
            raise ValueError("backup_max must be >= 1")
        if self.debounce_ms > 5000:
            logger.warning(
                "Debounce window of %dms is unusually long; edits may sit "
                "unsaved for several seconds.",
                self.debounce_ms,
            )
        return self

    @property
    def debounce_seconds(self) -> float:
        return self.debounce_ms / 1000.0

    def get_absolute_path(self, path: Path) -> Path:
        """Convert a relative path to an absolute path based on base_dir."""
        if path.is_absolute():
            return path
        return self.base_dir / path

    def get_db_url(self) -> str:
        """Get the SQLite URL of the key-value store."""
        db_path = self.get_absolute_path(self.kv_database_path)
        db_path.parent.mkdir(parents=True, exist_ok=True)
        return f"sqlite:///{db_path}"

    def get_data_dir(self) -> Path:
        """Get the absolute host data directory."""
        return self.get_absolute_path(self.data_dir)


# Create a global config instance
config = NoteStoreConfig()
