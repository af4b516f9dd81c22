"""
core/config.py -- Centralized application configuration via pydantic-settings.

All environment variable reads for Everglass happen here. No module should
call os.getenv() or os.environ.get() directly -- import get_settings() instead.

Design patterns used:
  Singleton via lru_cache: get_settings() instantiates Settings once at first
      call and returns the cached instance on every subsequent call. This is
      the official FastAPI dependency injection pattern for config.

  BaseSettings (pydantic-settings): Reads values from environment variables
      and an optional .env file automatically. Field names map to env var names
      (e.g. session_secret -> SESSION_SECRET). Type coercion and validation are
      built in.

  AuthSecurityConfig: an immutable dataclass derived from Settings once at
      startup (build_auth_config()). The auth workflow, stores, and request
      dependencies receive it explicitly instead of reading globals.

Security notes:
  SESSION_SECRET is mandatory when NODE_ENV=production. In any other
  environment a random secret is generated with a warning -- sessions signed
  with it do not survive a restart.

Layer rule: core/ is the kernel. This module may not import from api/, auth/,
or crm/.
"""

from __future__ import annotations

import logging
import re
import secrets
from dataclasses import dataclass, field
from functools import lru_cache
from pathlib import Path

from pydantic import Field, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

logger = logging.getLogger("everglass.config")

_DEFAULT_DB_URL = f"sqlite:///{Path(__file__).resolve().parent.parent / 'everglass.db'}"

SESSION_COOKIE_NAME = "everglass.sid"


# ---------------------------------------------------------------------------
# Policies
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class PasswordPolicy:
    min_length: int = 8
    require_uppercase: bool = True
    require_lowercase: bool = True
    require_numbers: bool = True
    require_special_chars: bool = False


@dataclass(frozen=True)
class UsernamePolicy:
    min_length: int = 3
    max_length: int = 30
    allowed_pattern: re.Pattern = field(default_factory=lambda: re.compile(r"^[a-zA-Z0-9_.-]+$"))


@dataclass(frozen=True)
class AuthSecurityConfig:
    """Security knobs for login throttling, sessions, and credential policy.

    Built once at startup from Settings and passed by reference to the
    collaborators that need it. Defaults match the production policy so tests
    and scripts can construct one without touching the environment.

    max_sessions_per_user == 0 means no limit on concurrent sessions.
    """

    max_login_attempts: int = 5
    lockout_duration_minutes: int = 15
    session_timeout_minutes: int = 45
    bcrypt_salt_rounds: int = 12
    max_sessions_per_user: int = 0
    password_policy: PasswordPolicy = field(default_factory=PasswordPolicy)
    username_policy: UsernamePolicy = field(default_factory=UsernamePolicy)

    @property
    def session_timeout_seconds(self) -> int:
        return self.session_timeout_minutes * 60


# ---------------------------------------------------------------------------
# Settings
# ---------------------------------------------------------------------------


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
    # Process
    # ------------------------------------------------------------------

    port: int = 3000
    node_env: str = "development"
    database_url: str = _DEFAULT_DB_URL
    cors_origins: list[str] = Field(default_factory=lambda: ["http://localhost:5173"])

    # ------------------------------------------------------------------
    # Sessions
    # ------------------------------------------------------------------

    # Empty string is the sentinel for "not configured". The model_validator
    # below either generates a dev secret or raises, so callers never see "".
    session_secret: str = ""
    session_timeout_minutes: int = Field(default=45, ge=1)
    session_check_period_seconds: int = Field(default=120, ge=1)
    max_sessions_per_user: int = Field(default=0, ge=0)

    # ------------------------------------------------------------------
    # Login throttling
    # ------------------------------------------------------------------

    max_login_attempts: int = Field(default=5, ge=1)
    lockout_duration_minutes: int = Field(default=15, ge=1)
    login_rate_limit: str = "10/minute"

    # ------------------------------------------------------------------
    # Credentials
    # ------------------------------------------------------------------

    bcrypt_salt_rounds: int = Field(default=12, ge=4, le=31)
    password_require_special_chars: bool = False

    @property
    def is_production(self) -> bool:
        return self.node_env.strip().lower() == "production"

    @model_validator(mode="after")
    def validate_session_secret(self) -> "Settings":
        """Require SESSION_SECRET in production; generate one elsewhere."""
        if not self.session_secret:
            if self.is_production:
                raise ValueError("SESSION_SECRET must be defined in production environment.")
            self.session_secret = secrets.token_hex(32)
            logger.warning("WARNING: Using auto-generated SESSION_SECRET. Sessions will not persist across restarts.")
        return self


@lru_cache
def get_settings() -> Settings:
    """Return the application Settings singleton.

    In tests: call get_settings.cache_clear() between test cases if you need
    to inject different environment variables.
    """
    return Settings()


def build_auth_config(settings: Settings) -> AuthSecurityConfig:
    """Derive the immutable auth policy object from loaded settings."""
    return AuthSecurityConfig(
        max_login_attempts=settings.max_login_attempts,
        lockout_duration_minutes=settings.lockout_duration_minutes,
        session_timeout_minutes=settings.session_timeout_minutes,
        bcrypt_salt_rounds=settings.bcrypt_salt_rounds,
        max_sessions_per_user=settings.max_sessions_per_user,
        password_policy=PasswordPolicy(require_special_chars=settings.password_require_special_chars),
    )
