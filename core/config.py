"""
core/config.py -- Centralized configuration via pydantic-settings.

All environment variable reads happen here. No module should call os.getenv()
or os.environ.get() directly -- import get_settings() instead.

Design patterns used:
  Singleton via lru_cache: get_settings() instantiates Settings once at first
      call and returns the cached instance on every subsequent call.

  BaseSettings (pydantic-settings): Reads values from environment variables
      and an optional .env file automatically. Field names map to env var names
      (e.g. secret_key -> SECRET_KEY, max_failed_attempts -> MAX_FAILED_ATTEMPTS).

  @model_validator(mode="after"): Cross-field validation after all fields are
      resolved. Dev mode generates a secret key with a warning, production mode
      refuses to start without one.

The identity engine never reads Settings itself. Entry points (api/main.py,
main.py) turn the lockout and token fields into an identity.engine.AuthPolicy
and hand it to the engine constructor.

Layer rule: core/ is the kernel. This module may not import from api/ or identity/.
"""

import logging
import secrets
from functools import lru_cache
from pathlib import Path

from pydantic import model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

logger = logging.getLogger("identitycore.config")

_DEFAULT_DB_URL = f"sqlite:///{Path(__file__).resolve().parent.parent / 'identity' / 'identitycore.db'}"


class Settings(BaseSettings):
    """Application settings loaded from environment variables and .env file.

    Every field has a default so Settings() can be instantiated in tests
    without a .env file.
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
    # Empty string means "not configured"; the validator fills or rejects it.
    secret_key: str = ""
    database_url: str = _DEFAULT_DB_URL
    log_level: str = "INFO"

    # ------------------------------------------------------------------
    # Credentials and lockout
    # ------------------------------------------------------------------

    bcrypt_rounds: int = 12
    max_failed_attempts: int = 5
    lockout_minutes: int = 15
    confirmation_token_ttl_hours: int = 24
    reset_token_ttl_hours: int = 1
    default_role: str = "member"

    # Links in confirmation / reset messages are built from this base.
    public_base_url: str = "http://localhost:8000"

    # ------------------------------------------------------------------
    # Sessions
    # ------------------------------------------------------------------

    token_expire_seconds: int = 3600
    secure_cookies: bool = False
    login_rate_limit: str = "10/minute"
    # Expired sessions are closed by a background sweep at this interval.
    sweep_interval_seconds: int = 3600

    # ------------------------------------------------------------------
    # HTTP
    # ------------------------------------------------------------------

    # JSON list in the environment, e.g. ALLOWED_HOSTS='["auth.example.com"]'
    allowed_hosts: list[str] = ["*"]

    # ------------------------------------------------------------------
    # External identity providers (empty string = provider disabled)
    # ------------------------------------------------------------------

    google_client_id: str = ""
    google_client_secret: str = ""
    github_client_id: str = ""
    github_client_secret: str = ""

    # ------------------------------------------------------------------
    # Validators
    # ------------------------------------------------------------------

    @model_validator(mode="after")
    def validate_settings(self) -> "Settings":
        """Enforce the SECRET_KEY policy and sane credential constants.

        Dev mode (DEBUG=true): auto-generate a random key with a warning.
        Production mode: refuse to start without SECRET_KEY.
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
        if not 4 <= self.bcrypt_rounds <= 31:
            raise ValueError("BCRYPT_ROUNDS must be between 4 and 31.")
        if self.max_failed_attempts < 1:
            raise ValueError("MAX_FAILED_ATTEMPTS must be at least 1.")
        if min(self.lockout_minutes, self.confirmation_token_ttl_hours, self.reset_token_ttl_hours) <= 0:
            raise ValueError("Lockout duration and token TTLs must be positive.")
        return self


@lru_cache
def get_settings() -> Settings:
    """Return the application Settings singleton.

    In tests: call get_settings.cache_clear() between test cases if you need
    to inject different environment variables.
    """
    return Settings()
