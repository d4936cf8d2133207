"""
core/config.py -- Centralized application configuration via pydantic-settings.

All environment variable reads for Cardinal happen here. No module should
call os.getenv() or os.environ.get() directly -- import get_settings() instead.

Design patterns used:
  Singleton via lru_cache: get_settings() instantiates Settings once at first
      call and returns the cached instance on every subsequent call. This is
      the official FastAPI dependency injection pattern for config.

  BaseSettings (pydantic-settings): Reads values from environment variables
      and an optional .env file automatically. Field names map to env var names
      (e.g. proxmox_host -> PROXMOX_HOST). Type coercion and validation are
      built in.

  Explicit config structs: the hypervisor client never sees Settings. It is
      handed a HypervisorConfig built by hypervisor_config(), so tests can
      construct one directly without touching the environment.

Security notes:
  ENCRYPTION_KEY shorter than 32 chars is rejected outright. It keys the
  AES-GCM vault that protects container passwords at rest.

  In production mode (DEBUG not set or false), a missing ENCRYPTION_KEY is a
  hard startup failure. A random key in production would make every stored
  password undecryptable after a restart.

Layer rule: core/ is the kernel. This module may not import from api/,
auth/, inventory/, or provisioning/.
"""

import logging
import secrets
from dataclasses import dataclass
from functools import lru_cache
from typing import Optional

from pydantic import model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

logger = logging.getLogger("cardinal.config")


@dataclass(frozen=True)
class HypervisorConfig:
    """Connection configuration for HypervisorClient.

    token_id is the full API token id ("user@realm!tokenname"); token_secret
    is the UUID secret Proxmox issues with it.
    """

    host: str
    node: str
    token_id: str
    token_secret: str
    port: int = 8006
    verify_ssl: bool = False
    timeout: float = 30.0

    @property
    def base_url(self) -> str:
        return f"https://{self.host}:{self.port}/api2/json"


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
    encryption_key: str = ""
    # Empty means "use the store default" (inventory/cardinal.db).
    database_url: str = ""

    # ------------------------------------------------------------------
    # Webhook
    # ------------------------------------------------------------------

    # Empty means "not configured": every protected route answers 500.
    webhook_secret: str = ""
    webhook_rate_limit: str = "30/minute"

    # ------------------------------------------------------------------
    # Hypervisor connection
    # ------------------------------------------------------------------

    proxmox_host: str = "localhost"
    proxmox_port: int = 8006
    proxmox_node: str = "pve"
    proxmox_token: str = ""
    proxmox_secret: str = ""
    proxmox_verify_ssl: bool = False
    proxmox_timeout: float = 30.0

    # ------------------------------------------------------------------
    # Container defaults (None = unset, fall through to the hardcoded layer
    # in core/container_spec.py)
    # ------------------------------------------------------------------

    ct_default_ostemplate: Optional[str] = None
    ct_default_cores: Optional[int] = None
    ct_default_memory: Optional[int] = None
    ct_default_disk: Optional[int] = None
    ct_default_swap: Optional[int] = None
    ct_default_storage: Optional[str] = None
    ct_default_network: Optional[str] = None
    ct_default_username: str = "root"

    # ------------------------------------------------------------------
    # Address reconciliation
    # ------------------------------------------------------------------

    resolve_delay_seconds: float = 10.0
    reconcile_interval_seconds: float = 60.0
    reconcile_max_attempts: int = 10

    # ------------------------------------------------------------------
    # Validators
    # ------------------------------------------------------------------

    @model_validator(mode="after")
    def validate_encryption_key(self) -> "Settings":
        """Enforce the ENCRYPTION_KEY policy.

        Dev mode (DEBUG=true): auto-generate a random key with a warning.
            Stored passwords will not survive a restart -- acceptable for
            local dev.

        Production mode (DEBUG=false or not set): refuse to start if
            ENCRYPTION_KEY is missing.

        Both modes: reject keys shorter than 32 characters.
        """
        if not self.encryption_key:
            if self.debug:
                self.encryption_key = secrets.token_hex(32)
                logger.warning(
                    "WARNING: Using auto-generated ENCRYPTION_KEY. "
                    "Stored container passwords will not decrypt after a restart."
                )
            else:
                raise ValueError(
                    "ENCRYPTION_KEY is required in production mode. "
                    "Set ENCRYPTION_KEY in your environment or .env file. "
                    "To run in development mode, set DEBUG=true."
                )
        if len(self.encryption_key) < 32:
            raise ValueError("ENCRYPTION_KEY must be at least 32 characters.")
        return self

    def hypervisor_config(self) -> HypervisorConfig:
        """Build the explicit connection struct handed to HypervisorClient."""
        return HypervisorConfig(
            host=self.proxmox_host,
            port=self.proxmox_port,
            node=self.proxmox_node,
            token_id=self.proxmox_token,
            token_secret=self.proxmox_secret,
            verify_ssl=self.proxmox_verify_ssl,
            timeout=self.proxmox_timeout,
        )

    def container_defaults(self) -> dict[str, object]:
        """Return the environment layer of container defaults.

        Unset values stay None so resolve_layers() falls through to the
        hardcoded layer instead of treating them as explicit choices.
        """
        return {
            "ostemplate": self.ct_default_ostemplate,
            "cores": self.ct_default_cores,
            "memory": self.ct_default_memory,
            "disk": self.ct_default_disk,
            "swap": self.ct_default_swap,
            "storage": self.ct_default_storage,
            "network": self.ct_default_network,
        }


@lru_cache
def get_settings() -> Settings:
    """Return the application Settings singleton.

    In tests: call get_settings.cache_clear() between test cases if you need
    to inject different environment variables.
    """
    return Settings()
