"""Configuration module for the Kol Noter storage layer."""

import logging
import os
from pathlib import Path
from typing import Literal, Optional

from dotenv import load_dotenv
from pydantic import BaseModel, Field, model_validator

from kol_noter_store import __version__

# Load environment variables from the project root .env file.
# Anchored to __file__ so it works regardless of the process CWD.
_PROJECT_ROOT = Path(__file__).resolve().parent.parent.parent
load_dotenv(_PROJECT_ROOT / ".env")

# User-level config, shared by every vault on this machine
_USER_ENV = Path.home() / ".kol-noter" / ".env"
load_dotenv(_USER_ENV)


logger = logging.getLogger(__name__)


def _env_flag(name: str, default: str) -> bool:
    return os.getenv(name, default).lower() in ("true", "1", "yes")


class KolNoterConfig(BaseModel):
    """Configuration for the storage layer."""

    # Backend selected once at startup: volatile embedded store or a vault
    storage_backend: Literal["embedded", "filesystem"] = Field(
        default_factory=lambda: os.getenv("KOL_NOTER_STORAGE", "embedded").lower()
    )
    vault_path: Optional[Path] = Field(
        default_factory=lambda: (
            Path(os.getenv("KOL_NOTER_VAULT_PATH"))
            if os.getenv("KOL_NOTER_VAULT_PATH")
            else None
        )
    )
    # File watcher
    watch_enabled: bool = Field(default_factory=lambda: _env_flag("KOL_NOTER_WATCH", "true"))
    watch_debounce_ms: int = Field(
        default_factory=lambda: int(os.getenv("KOL_NOTER_WATCH_DEBOUNCE_MS", "300"))
    )
    # Rebuild the relational and search indexes when the watcher reports a change
    reindex_on_external_change: bool = Field(
        default_factory=lambda: _env_flag("KOL_NOTER_REINDEX_ON_CHANGE", "true")
    )
    # Search
    search_fuzzy: float = Field(
        default_factory=lambda: float(os.getenv("KOL_NOTER_SEARCH_FUZZY", "0.2"))
    )
    search_limit: int = Field(
        default_factory=lambda: int(os.getenv("KOL_NOTER_SEARCH_LIMIT", "50"))
    )
    suggest_limit: int = Field(
        default_factory=lambda: int(os.getenv("KOL_NOTER_SUGGEST_LIMIT", "5"))
    )
    # Opt-in retry policy for transient I/O failures
    retry_attempts: int = Field(
        default_factory=lambda: int(os.getenv("KOL_NOTER_RETRY_ATTEMPTS", "3"))
    )
    retry_delay_ms: int = Field(
        default_factory=lambda: int(os.getenv("KOL_NOTER_RETRY_DELAY_MS", "1000"))
    )
    retry_backoff: float = Field(
        default_factory=lambda: float(os.getenv("KOL_NOTER_RETRY_BACKOFF", "2"))
    )
    # Logging
    log_level: str = Field(default_factory=lambda: os.getenv("KOL_NOTER_LOG_LEVEL", "INFO"))
    log_dir: Optional[Path] = Field(
        default_factory=lambda: (
            Path(os.getenv("KOL_NOTER_LOG_DIR"))
            if os.getenv("KOL_NOTER_LOG_DIR")
            else None
        )
    )
    version: str = Field(default=__version__)

    @model_validator(mode="after")
    def _validate_settings(self) -> "KolNoterConfig":
        """Reject settings the storage layer cannot run with."""
        if self.watch_debounce_ms < 0:
            raise ValueError("watch_debounce_ms must be >= 0")
        if not 0.0 <= self.search_fuzzy <= 1.0:
            raise ValueError("search_fuzzy must be between 0 and 1")
        if self.search_limit < 1 or self.suggest_limit < 1:
            raise ValueError("search_limit and suggest_limit must be >= 1")
        if self.retry_attempts < 1:
            raise ValueError("retry_attempts must be >= 1")
        if self.storage_backend == "filesystem" and self.vault_path is None:
            raise ValueError("KOL_NOTER_VAULT_PATH is required for the filesystem backend")
        return self

    def get_absolute_path(self, path: Path) -> Path:
        """Resolve a configured path against the current working directory."""
        path = Path(path).expanduser()
        if path.is_absolute():
            return path
        return Path.cwd() / path


config = KolNoterConfig()
