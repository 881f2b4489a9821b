"""
core/config.py -- Centralized application configuration via pydantic-settings.

All environment variable reads for CryptIoMT happen here. No module should
call os.getenv() or os.environ.get() directly -- import get_settings() instead.

Design patterns used:
  Singleton via lru_cache: get_settings() instantiates Settings once at first
      call and returns the cached instance on every subsequent call. This is
      the official FastAPI dependency injection pattern for config.

  BaseSettings (pydantic-settings): Reads values from environment variables
      and an optional .env file automatically. Field names map to env var names
      (e.g. nvd_api_key -> NVD_API_KEY). Type coercion and validation are built in.

  @model_validator(mode="after"): Runs cross-field validation after all fields
      are resolved from environment. Dev mode generates a SECRET_KEY with a
      warning, production mode refuses to start without one.

Security notes:
  SECRET_KEY shorter than 32 chars is rejected outright. HMAC-SHA256 and
  JWT signing both rely on key entropy.

Layer rule: core/ is the kernel. This module may not import from api/,
auth/ or cmdb/.
"""

import logging
import secrets
from datetime import datetime, timezone
from functools import lru_cache
from pathlib import Path
from typing import Optional

from pydantic import model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

logger = logging.getLogger("cryptiomt.config")

_PROJECT_ROOT = Path(__file__).resolve().parent.parent


class Settings(BaseSettings):
    """Application settings loaded from environment variables and .env file.

    All fields have defaults so Settings() can be instantiated in test
    environments without a real .env file. The model_validator enforces
    production-safety rules at startup.
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # ------------------------------------------------------------------
    # Core
    # ------------------------------------------------------------------

    debug: bool = False
    # Empty string is the sentinel for "not configured". The model_validator
    # below either generates a dev key or raises, so callers never see "".
    secret_key: str = ""

    # ------------------------------------------------------------------
    # Storage
    # ------------------------------------------------------------------

    database_url: str = f"sqlite:///{_PROJECT_ROOT / 'cmdb' / 'cryptiomt.db'}"
    auth_database_url: str = f"sqlite:///{_PROJECT_ROOT / 'auth' / 'cryptiomt_users.db'}"

    # ------------------------------------------------------------------
    # Auth
    # ------------------------------------------------------------------

    secure_cookies: bool = False
    token_expire_seconds: int = 3600
    login_rate_limit: str = "10/minute"

    # ------------------------------------------------------------------
    # Vulnerability feed (NVD CVE API 2.0)
    # ------------------------------------------------------------------

    nvd_api_url: str = "https://services.nvd.nist.gov/rest/json/cves/2.0"
    # Optional. With a key NVD allows 50 req/30s instead of 5 req/30s.
    nvd_api_key: Optional[str] = None
    nvd_timeout_seconds: int = 10
    nvd_results_per_page: int = 2000

    import_batch_size: int = 50
    daily_sync_days_back: int = 7
    manual_sync_days_back: int = 30

    # ------------------------------------------------------------------
    # Scheduled jobs (all times UTC)
    # ------------------------------------------------------------------

    jobs_enabled: bool = True
    daily_sync_hour_utc: int = 2
    daily_sync_minute_utc: int = 0
    snapshot_hour_utc: int = 23
    snapshot_minute_utc: int = 55
    report_batch_size: int = 10
    report_interval_seconds: int = 3600
    offline_alert_hours: int = 24

    # ------------------------------------------------------------------
    # Validators
    # ------------------------------------------------------------------

    @model_validator(mode="after")
    def validate_secret_key(self) -> "Settings":
        """Enforce the SECRET_KEY policy.

        Dev mode (DEBUG=true): auto-generate a random key with a warning.
        Production mode: refuse to start if SECRET_KEY is missing.
        Both modes: reject keys shorter than 32 characters.
        """
        if not self.secret_key:
            if self.debug:
                self.secret_key = secrets.token_hex(32)
                logger.warning("Using auto-generated SECRET_KEY. Sessions will not persist across restarts.")
            else:
                raise ValueError(
                    "SECRET_KEY is required in production mode. "
                    "Set SECRET_KEY in your environment or .env file. "
                    "To run in development mode, set DEBUG=true."
                )
        if len(self.secret_key) < 32:
            raise ValueError("SECRET_KEY must be at least 32 characters.")
        return self


@lru_cache
def get_settings() -> Settings:
    """Return the application Settings singleton.

    In tests: call get_settings.cache_clear() between test cases if you need
    to inject different environment variables.
    """
    return Settings()


# ---------------------------------------------------------------------------
# Clock helpers
# ---------------------------------------------------------------------------


def now_utc() -> datetime:
    """Timezone-aware current time in UTC."""
    return datetime.now(timezone.utc)


def now_iso() -> str:
    return now_utc().isoformat()
