"""
core/config.py -- Centralized application configuration via pydantic-settings.

All environment variable reads for FleetProv happen here. No module should
call os.getenv() or os.environ.get() directly -- import get_settings() instead.

Design patterns used:
  Singleton via lru_cache: get_settings() instantiates Settings once at first
      call and returns the cached instance on every subsequent call. This is
      the official FastAPI dependency injection pattern for config.

  BaseSettings (pydantic-settings): Reads values from environment variables
      and an optional .env file automatically. Field names map to env var names
      (e.g. tailscale_api_key -> TAILSCALE_API_KEY). Type coercion and
      validation are built in.

  @model_validator(mode="after"): Runs cross-field validation after all fields
      are resolved from environment. Used for the DEBUG-conditional SECRET_KEY
      logic: dev mode generates a key with warning, production mode refuses to
      start without one.

Provisioning secrets (TAILSCALE_API_KEY, DEVICE_TOKEN_SIGNING_KEY) are NOT
validated at startup. The service must still accept registrations while an
operator fixes credential configuration, so a missing secret surfaces as a
ConfigError on the provisioning request that needs it.

Layer rule: core/ is the kernel. This module may not import from api/,
auth/, registry/, throttle/, credentials/, or provisioning/.
"""

import logging
import secrets
from functools import lru_cache
from pathlib import Path

from pydantic import Field, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

logger = logging.getLogger("fleetprov.config")

_ROOT = Path(__file__).resolve().parent.parent


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
    allowed_hosts: list[str] = Field(default_factory=lambda: ["*"])

    # ------------------------------------------------------------------
    # Storage
    # ------------------------------------------------------------------

    database_url: str = f"sqlite:///{_ROOT / 'registry' / 'fleetprov_devices.db'}"
    throttle_database_url: str = f"sqlite:///{_ROOT / 'throttle' / 'fleetprov_throttle.db'}"
    auth_database_url: str = f"sqlite:///{_ROOT / 'auth' / 'fleetprov_auth.db'}"

    # ------------------------------------------------------------------
    # Operator auth
    # ------------------------------------------------------------------

    cors_origins: list[str] = Field(default_factory=list)
    token_expire_seconds: int = 3600
    login_rate_limit: str = "10/minute"

    # ------------------------------------------------------------------
    # Provisioning rate limits
    # ------------------------------------------------------------------

    ip_rate_limit_seconds: int = Field(default=5, ge=0)
    device_rate_limit_seconds: int = Field(default=60, ge=0)

    # ------------------------------------------------------------------
    # Overlay network (Tailscale control plane)
    # ------------------------------------------------------------------

    tailscale_api_url: str = "https://api.tailscale.com"
    tailscale_api_key: str = ""
    tailscale_tailnet: str = ""
    tailscale_provision_tag: str = "tag:provisioned"
    tailscale_key_expiry_seconds: int = Field(default=600, gt=0)

    # ------------------------------------------------------------------
    # Device auth tokens (identity provider)
    # ------------------------------------------------------------------

    # Shared secret for HS256, or a PEM private key for RS256/ES256.
    device_token_signing_key: str = ""
    # Public PEM for RS256/ES256 verification; unused for HS256.
    device_token_public_key: str = ""
    device_token_algorithm: str = "HS256"
    device_token_issuer: str = "fleetprov"
    device_token_expire_seconds: int = Field(default=3600, gt=0)
    # Static bearer accepted by POST /status in addition to device tokens.
    # Empty disables the shared token entirely.
    device_update_token: str = ""

    # ------------------------------------------------------------------
    # Provisioning script
    # ------------------------------------------------------------------

    device_docker_image: str = ""
    device_container_name: str = "bacnet-service"
    update_status_url: str = ""
    device_api_base_url: str = ""
    public_base_url: str = "http://localhost:8000"
    # Directory of <tag>.sh first-stage scripts served by GET /bootstrap.
    bootstrap_scripts_dir: str = ""

    upstream_timeout_seconds: float = Field(default=10.0, gt=0, le=30)

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
                logger.warning(
                    "WARNING: Using auto-generated SECRET_KEY. " "Operator sessions will not persist across restarts."
                )
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
