"""
Application Configuration.

Pydantic Settings model for the FinSync core.
All configuration is loaded from environment variables and .env files.
Inject an AppConfig instance via dependency injection where needed.
"""

from __future__ import annotations

import logging
import threading
from pathlib import Path
from typing import Optional

from pydantic import Field, SecretStr, model_validator
from pydantic_settings import BaseSettings


class AppConfig(BaseSettings):
    """Central configuration loaded from environment variables and defaults."""

    # --- Supabase (remote service) ---
    SUPABASE_URL: str = ""
    SUPABASE_ANON_KEY: SecretStr = SecretStr("")
    TRANSACTIONS_TABLE: str = "transactions"
    CATEGORIES_TABLE: str = "categories"

    # --- Local store ---
    SQLITE_PATH: Path = Path("finsync_local.db")

    # --- Session (headless runs) ---
    OWNER_ID: str = ""
    OWNER_EMAIL: str = ""

    # --- Logging ---
    LOG_FILE: str = "finsync.log"  # empty string disables the file handler
    LOG_LEVEL: str = "INFO"
    LOG_MAX_BYTES: int = 5_242_880  # 5 MB
    LOG_BACKUP_COUNT: int = 3

    # --- Sync worker ---
    SYNC_BASE_INTERVAL_S: float = Field(default=30.0, gt=0)
    SYNC_MAX_INTERVAL_S: float = Field(default=300.0, gt=0)
    SYNC_MAX_REQUEUES: int = Field(default=3, ge=0)
    CONNECTIVITY_DEBOUNCE_S: float = Field(default=2.0, ge=0)

    # --- Facade reads ---
    PULL_ON_READ: bool = True
    PULL_TIMEOUT_S: float = Field(default=10.0, gt=0)

    model_config = {"env_file": ".env", "env_file_encoding": "utf-8", "extra": "ignore"}

    @model_validator(mode="after")
    def _warn_missing_env(self) -> "AppConfig":
        """Emit a startup warning when the remote service is unconfigured.

        Pydantic silently falls back to defaults when ``.env`` is missing,
        which leaves the core running offline-only.
        """
        _log = logging.getLogger("finsync.config")

        if not self.SUPABASE_URL:
            _log.warning(
                "SUPABASE_URL is empty; remote sync is disabled. "
                "Changes stay queued locally until a gateway is configured."
            )

        if self.SYNC_MAX_INTERVAL_S < self.SYNC_BASE_INTERVAL_S:
            _log.warning(
                "SYNC_MAX_INTERVAL_S (%s) is below SYNC_BASE_INTERVAL_S (%s); "
                "backoff will be pinned to the maximum.",
                self.SYNC_MAX_INTERVAL_S,
                self.SYNC_BASE_INTERVAL_S,
            )

        return self

    @property
    def log_level(self) -> int:
        """Numeric logging level for ``LOG_LEVEL`` (defaults to INFO)."""
        level = logging.getLevelName(self.LOG_LEVEL.upper())
        return level if isinstance(level, int) else logging.INFO


# ---------------------------------------------------------------------------
# Module-level singleton factory
# ---------------------------------------------------------------------------

_config_instance: Optional[AppConfig] = None
_config_lock: threading.Lock = threading.Lock()


def get_config() -> AppConfig:
    """Return a cached ``AppConfig`` singleton.

    Uses a check-lock-check pattern to avoid the lock overhead on the
    fast path while remaining thread-safe during first initialisation.
    Prefer constructor injection of ``AppConfig`` in new code.
    """
    global _config_instance
    if _config_instance is None:
        with _config_lock:
            if _config_instance is None:
                _config_instance = AppConfig()
    return _config_instance
