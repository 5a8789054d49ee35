"""
core/config.py -- Centralized configuration via pydantic-settings.

All environment variable reads for Gatehouse happen here. No module should
call os.getenv() or os.environ.get() directly -- build a Settings instance
(or call get_settings()) and pass the values you need into constructors.

Design patterns used:
  Singleton via lru_cache: get_settings() instantiates Settings once at first
      call and returns the cached instance on every subsequent call.

  BaseSettings (pydantic-settings): Reads values from environment variables
      and an optional .env file automatically. Field names map to env var names
      (e.g. store_api_key -> STORE_API_KEY). Type coercion is built in.

  @model_validator(mode="after"): Cross-field checks run once all fields are
      resolved, so a bad deployment fails at startup rather than mid-request.

Settings are read at the edge only. The executor, store, hasher and service
take their parameters as constructor arguments; nothing below the wiring
layer reaches for get_settings() on its own. Tests build their own objects
with explicit values.

Layer rule: core/ is the kernel. This module may not import from db/ or auth/.
"""

import logging
from functools import lru_cache
from pathlib import Path

from pydantic import model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

logger = logging.getLogger("gatehouse.config")

_DEFAULT_DB_URL = f"sqlite:///{Path(__file__).resolve().parent.parent / 'gatehouse.db'}"

_HASHERS = ("pbkdf2", "argon2id", "bcrypt")


class Settings(BaseSettings):
    """Library settings loaded from environment variables and .env file.

    All fields have defaults so Settings() can be instantiated in test
    environments without a real .env file.
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
    log_level: str = "INFO"

    # ------------------------------------------------------------------
    # Sessions and passwords
    # ------------------------------------------------------------------

    # 30 days
    session_expire_seconds: int = 2_592_000
    password_min_length: int = 8
    # "pbkdf2" runs everywhere (stdlib only); "argon2id" needs argon2-cffi's
    # native extension; "bcrypt" is for hosts migrating existing hashes.
    password_hasher: str = "pbkdf2"

    # ------------------------------------------------------------------
    # Remote relational store (HTTP SQL API)
    # ------------------------------------------------------------------

    # Empty app id means "no remote store" -- the local engine is used.
    store_base_url: str = "https://storage.mechdna.net"
    store_app_id: str = ""
    store_app_schema_id: str = ""
    store_api_key: str = ""
    store_timeout_seconds: float = 30.0
    store_max_retries: int = 2
    store_retry_base_delay: float = 0.1

    # ------------------------------------------------------------------
    # Local relational store (SQLAlchemy URL)
    # ------------------------------------------------------------------

    database_url: str = _DEFAULT_DB_URL

    # ------------------------------------------------------------------
    # OAuth providers (optional -- empty string means provider is disabled)
    # ------------------------------------------------------------------

    github_client_id: str = ""
    github_client_secret: str = ""
    github_redirect_uri: str = ""
    google_client_id: str = ""
    google_client_secret: str = ""
    google_redirect_uri: str = ""

    # Lifetime of the state / PKCE verifier pair between redirect and callback.
    oauth_state_ttl_seconds: int = 600

    # ------------------------------------------------------------------
    # Validators
    # ------------------------------------------------------------------

    @model_validator(mode="after")
    def validate_ranges(self) -> "Settings":
        """Reject values the executor, hasher or session layer cannot honour.

        Mirrors the executor's own eager checks so that a bad .env fails when
        Settings is built, before any connection is attempted.
        """
        if self.session_expire_seconds <= 0:
            raise ValueError("SESSION_EXPIRE_SECONDS must be positive.")
        if self.password_min_length < 1:
            raise ValueError("PASSWORD_MIN_LENGTH must be at least 1.")
        if self.password_hasher not in _HASHERS:
            raise ValueError(f"PASSWORD_HASHER must be one of {', '.join(_HASHERS)}.")
        if self.store_timeout_seconds <= 0:
            raise ValueError("STORE_TIMEOUT_SECONDS must be positive.")
        if not 0 <= self.store_max_retries <= 5:
            raise ValueError("STORE_MAX_RETRIES must be between 0 and 5.")
        if self.store_retry_base_delay < 0:
            raise ValueError("STORE_RETRY_BASE_DELAY cannot be negative.")
        if self.oauth_state_ttl_seconds <= 0:
            raise ValueError("OAUTH_STATE_TTL_SECONDS must be positive.")
        if self.store_app_id and not self.store_api_key:
            logger.warning("STORE_APP_ID is set but STORE_API_KEY is empty; remote store calls will fail.")
        return self


@lru_cache
def get_settings() -> Settings:
    """Return the Settings singleton.

    Uses lru_cache so Settings() is instantiated exactly once -- at first call.
    Intended for the host's wiring code only.

    In tests: call get_settings.cache_clear() between test cases if you need
    to inject different environment variables.
    """
    return Settings()
