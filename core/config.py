"""
core/config.py -- Centralized application configuration via pydantic-settings.

All environment variable reads for StaffGate happen here. No module should
call os.getenv() or os.environ.get() directly -- import get_settings() instead.

Design patterns used:
  Singleton via lru_cache: get_settings() instantiates Settings once at first
      call and returns the cached instance on every subsequent call. The
      signing key is therefore decoded exactly once per process and never
      mutated afterwards.

  BaseSettings (pydantic-settings): Reads values from environment variables
      and an optional .env file automatically. Field names map to env var names
      (e.g. jwt_secret -> JWT_SECRET). Type coercion and validation are built in.

  @model_validator(mode="after"): Runs cross-field validation after all fields
      are resolved. Used for the DEBUG-conditional JWT_SECRET logic: dev mode
      generates a key with a warning, production mode refuses to start.

Security notes:
  JWT_SECRET is a base64-encoded symmetric key. Tokens are signed with
  HMAC-SHA512, so the decoded key must be at least 64 bytes (512 bits).
  Anything shorter is rejected at startup.

Layer rule: core/ is the kernel. This module may not import from api/ or auth/.
"""

import base64
import binascii
import logging
import secrets
from functools import lru_cache

from pydantic import model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

logger = logging.getLogger("staffgate.config")

# HS512 security level. Shared with auth/tokens.py, which re-checks the key
# it is handed so a TokenService can never be built with a weak key.
MIN_SIGNING_KEY_BYTES = 64


def decode_signing_key(value: str) -> bytes:
    """Decode a base64 signing key. Raises ValueError on bad encoding."""
    try:
        return base64.b64decode(value, validate=True)
    except (binascii.Error, ValueError) as exc:
        raise ValueError("JWT_SECRET must be valid base64.") from exc


def generate_signing_key() -> str:
    """Return a fresh base64-encoded 64-byte key suitable for JWT_SECRET."""
    return base64.b64encode(secrets.token_bytes(MIN_SIGNING_KEY_BYTES)).decode("ascii")


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
    database_url: str = "sqlite:///staffgate.db"

    # ------------------------------------------------------------------
    # Tokens
    # ------------------------------------------------------------------

    # Empty string is the sentinel for "not configured". The model_validator
    # below either generates a dev key or raises, so callers never see "".
    jwt_secret: str = ""
    access_token_validity_seconds: int = 3600
    refresh_token_validity_seconds: int = 86400

    # ------------------------------------------------------------------
    # Credentials and lockout
    # ------------------------------------------------------------------

    bcrypt_rounds: int = 12
    lockout_max_failed_attempts: int = 5
    lockout_duration_seconds: int = 3600
    # Compare-and-set conflicts on the login write path re-run the attempt
    # this many times before surfacing ConcurrentUpdateError.
    login_conflict_retries: int = 3

    # ------------------------------------------------------------------
    # HTTP
    # ------------------------------------------------------------------

    login_rate_limit: str = "10/minute"
    cors_origins: list[str] = ["http://localhost:3000", "http://localhost:8080"]

    # ------------------------------------------------------------------
    # Validators
    # ------------------------------------------------------------------

    @model_validator(mode="after")
    def validate_jwt_secret(self) -> "Settings":
        """Enforce the JWT_SECRET policy.

        Dev mode (DEBUG=true): auto-generate a random key with a warning.
            Issued tokens will not survive a restart.

        Production mode: refuse to start without JWT_SECRET.

        Both modes: the decoded key must be at least 64 bytes.
        """
        if not self.jwt_secret:
            if self.debug:
                self.jwt_secret = generate_signing_key()
                logger.warning("Using auto-generated JWT_SECRET. Tokens will not survive a restart.")
            else:
                raise ValueError(
                    "JWT_SECRET is required in production mode. "
                    "Set JWT_SECRET to a base64-encoded key of at least 64 bytes "
                    "(python main.py generate-key prints one). "
                    "To run in development mode, set DEBUG=true."
                )
        if len(decode_signing_key(self.jwt_secret)) < MIN_SIGNING_KEY_BYTES:
            raise ValueError(f"JWT_SECRET must decode to at least {MIN_SIGNING_KEY_BYTES} bytes.")
        if self.lockout_max_failed_attempts < 1:
            raise ValueError("LOCKOUT_MAX_FAILED_ATTEMPTS must be at least 1.")
        if not 4 <= self.bcrypt_rounds <= 31:
            raise ValueError("BCRYPT_ROUNDS must be between 4 and 31.")
        return self

    @property
    def signing_key(self) -> bytes:
        return decode_signing_key(self.jwt_secret)


@lru_cache
def get_settings() -> Settings:
    """Return the application Settings singleton.

    In tests: call get_settings.cache_clear() between test cases if you need
    to inject different environment variables.
    """
    return Settings()
