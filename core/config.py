"""
core/config.py -- Centralized process configuration via pydantic-settings.

All environment variable reads for Warden happen here. No module should
call os.getenv() or os.environ.get() directly -- import get_settings() instead.

Two layers of configuration exist:
  Process settings (this module): how the process is wired -- database URL,
      signing keys, rate-limit tuning, token lifetimes. Read once at startup
      from WARDEN_* environment variables and an optional .env file.

  Platform settings (core/system.py): what the platform allows -- CLI/API
      toggles, password rules, the sysadmin address restriction. Stored in
      the `config` table and editable at runtime via `system set`.

Design patterns used:
  Singleton via lru_cache: get_settings() instantiates Settings once at first
      call and returns the cached instance on every subsequent call.

  @model_validator(mode="after"): loads the ES512 key pair. Dev mode generates
      an ephemeral P-521 key pair with a warning; production mode refuses to
      start without key files [K1].

Security notes:
  [K1] A missing or unreadable signing key is a hard startup failure outside
       DEBUG. Tokens signed by an ephemeral key do not survive restart, which
       is acceptable in development only.

  [K2] iptrk_expire is a relative-time string ("1 hour", "30 minutes"). It is
       parsed at load time so a typo stops the process instead of silently
       disabling decay.

Layer rule: core/ is the kernel. This module may not import from api/,
auth/, or ratelimit/.
"""

import logging
import re
from datetime import timedelta
from functools import lru_cache
from pathlib import Path

from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric import ec
from pydantic import AliasChoices, Field, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

logger = logging.getLogger("warden.config")

_DEFAULT_DB_URL = f"sqlite:///{Path(__file__).resolve().parent.parent / 'warden.db'}"

# ---------------------------------------------------------------------------
# Interval parsing
# ---------------------------------------------------------------------------

_INTERVAL_UNITS = {
    "s": 1,
    "sec": 1,
    "secs": 1,
    "second": 1,
    "seconds": 1,
    "m": 60,
    "min": 60,
    "mins": 60,
    "minute": 60,
    "minutes": 60,
    "h": 3600,
    "hour": 3600,
    "hours": 3600,
    "d": 86400,
    "day": 86400,
    "days": 86400,
    "w": 604800,
    "week": 604800,
    "weeks": 604800,
}

_INTERVAL_RE = re.compile(r"(\d+)\s*([a-zA-Z]+)")


def parse_interval(value: str) -> timedelta:
    """Parse a relative-time string such as "1 hour" or "2 days 30 minutes".

    Raises ValueError on anything that is not a sequence of <number> <unit>
    pairs, or when the total is zero.
    """
    text = value.strip()
    pairs = _INTERVAL_RE.findall(text)
    if not pairs or _INTERVAL_RE.sub("", text).strip():
        raise ValueError(f"Invalid interval: {value!r}")
    seconds = 0
    for amount, unit in pairs:
        factor = _INTERVAL_UNITS.get(unit.lower())
        if factor is None:
            raise ValueError(f"Invalid interval unit {unit!r} in {value!r}")
        seconds += int(amount) * factor
    if seconds <= 0:
        raise ValueError(f"Interval must be positive: {value!r}")
    return timedelta(seconds=seconds)


def _generate_es512_pair() -> tuple[str, str]:
    key = ec.generate_private_key(ec.SECP521R1())
    private_pem = key.private_bytes(
        encoding=serialization.Encoding.PEM,
        format=serialization.PrivateFormat.PKCS8,
        encryption_algorithm=serialization.NoEncryption(),
    ).decode("ascii")
    public_pem = (
        key.public_key()
        .public_bytes(
            encoding=serialization.Encoding.PEM,
            format=serialization.PublicFormat.SubjectPublicKeyInfo,
        )
        .decode("ascii")
    )
    return private_pem, public_pem


class Settings(BaseSettings):
    """Process settings loaded from WARDEN_* environment variables and .env.

    All fields have defaults so Settings() can be instantiated in test
    environments without a real .env file. The model validators enforce
    production-safety rules at startup.
    """

    model_config = SettingsConfigDict(
        env_prefix="WARDEN_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
        populate_by_name=True,
    )

    # ------------------------------------------------------------------
    # Core
    # ------------------------------------------------------------------

    debug: bool = Field(default=False, validation_alias=AliasChoices("WARDEN_DEBUG", "DEBUG", "debug"))
    app_name: str = "Warden"
    database_url: str = _DEFAULT_DB_URL
    time_format: str = "%Y-%m-%d %H:%M:%S"

    # ------------------------------------------------------------------
    # Tokens
    # ------------------------------------------------------------------

    jwt_key_file: str = ""
    jwt_pub_file: str = ""
    # Filled by load_signing_keys(); never read from the environment directly.
    jwt_private_pem: str = ""
    jwt_public_pem: str = ""
    token_ttl_minutes: int = 20
    token_refresh_minutes: int = 10
    jwt_invalid_interval: float = 300.0

    # ------------------------------------------------------------------
    # Passwords and second factors
    # ------------------------------------------------------------------

    pw_dictionaries: list[str] = []
    # sha512_crypt rounds; 0 keeps the passlib default
    pw_hash_rounds: int = 0
    check_2fa: bool = True
    login_attempts_max: int = 10

    # ------------------------------------------------------------------
    # Rate limiting
    # ------------------------------------------------------------------

    iptrk_max: int = 5
    iptrk_interval: float = 60.0
    iptrk_expire: str = "1 hour"
    # slowapi limit string for POST /api/v1/auth/login
    login_rate_limit: str = "10/minute"

    # ------------------------------------------------------------------
    # Bootstrap
    # ------------------------------------------------------------------

    admin_username: str = ""
    admin_password: str = ""

    # ------------------------------------------------------------------
    # Validators
    # ------------------------------------------------------------------

    @field_validator("iptrk_expire")
    @classmethod
    def validate_iptrk_expire(cls, value: str) -> str:
        """Reject unparsable decay intervals at load time [K2]."""
        parse_interval(value)
        return value

    @model_validator(mode="after")
    def load_signing_keys(self) -> "Settings":
        """Load the ES512 key pair [K1].

        Key files configured: read both; an unreadable file is fatal.
        No key files, DEBUG=true: generate an ephemeral P-521 pair.
        No key files, production: refuse to start.
        """
        if self.jwt_private_pem and self.jwt_public_pem:
            return self
        if self.jwt_key_file and self.jwt_pub_file:
            try:
                self.jwt_private_pem = Path(self.jwt_key_file).read_text()
                self.jwt_public_pem = Path(self.jwt_pub_file).read_text()
            except OSError as exc:
                raise ValueError(f"Could not load JWT key material: {exc}") from exc
            return self
        if self.debug:
            self.jwt_private_pem, self.jwt_public_pem = _generate_es512_pair()
            logger.warning("WARNING: Using an ephemeral JWT signing key. Tokens will not survive a restart.")
            return self
        raise ValueError(
            "WARDEN_JWT_KEY_FILE and WARDEN_JWT_PUB_FILE are required in production mode. "
            "To run in development mode, set DEBUG=true."
        )

    # ------------------------------------------------------------------
    # Derived values
    # ------------------------------------------------------------------

    @property
    def iptrk_expire_delta(self) -> timedelta:
        return parse_interval(self.iptrk_expire)


@lru_cache
def get_settings() -> Settings:
    """Return the process Settings singleton.

    In tests: construct Settings(...) directly with overrides, or call
    get_settings.cache_clear() after changing the environment.
    """
    return Settings()


class ClientSettings(BaseSettings):
    """Settings of the CLI client (main.py); separate so it needs no signing keys."""

    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", extra="ignore", populate_by_name=True)

    server: str = Field(default="http://localhost:8334", validation_alias=AliasChoices("WARDEN_SERVER", "server"))
    token_file: str = Field(
        default=str(Path.home() / ".warden_token"),
        validation_alias=AliasChoices("WARDEN_TOKEN", "token_file"),
    )
    verbose: str = Field(default="off", validation_alias=AliasChoices("WARDEN_VERBOSE", "verbose"))

    @property
    def verbose_enabled(self) -> bool:
        return self.verbose.strip().lower() not in ("", "off", "false", "no", "0")
