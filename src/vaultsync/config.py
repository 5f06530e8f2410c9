"""
Configuration module for vaultsync.

Loads configuration from environment variables. The variable names follow
the Vault CLI where one exists.
"""

import logging
import os
from dataclasses import dataclass, field
from typing import Optional

LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"

_TRUE_VALUES = ("1", "true", "yes")


def _env_bool(name: str, default: str) -> bool:
    return os.getenv(name, default).strip().lower() in _TRUE_VALUES


@dataclass
class VaultConfig:
    """Vault API client configuration."""

    address: str = "http://127.0.0.1:8200"
    token: str = field(default="", repr=False)  # Never log the token
    namespace: Optional[str] = None
    ca_cert_file: Optional[str] = None
    skip_tls_verify: bool = False
    timeout: int = 60  # seconds

    @classmethod
    def from_env(cls):
        """Load from environment variables."""
        token = os.getenv("VAULT_TOKEN", "")
        if not token:
            raise ValueError(
                "VAULT_TOKEN environment variable must be set. "
                "Vault token cannot be empty."
            )

        return cls(
            address=os.getenv("VAULT_ADDR", "http://127.0.0.1:8200"),
            token=token,
            namespace=os.getenv("VAULT_NAMESPACE") or None,
            ca_cert_file=os.getenv("VAULT_CACERT") or None,
            skip_tls_verify=_env_bool("VAULT_SKIP_VERIFY", "false"),
            timeout=int(os.getenv("VAULT_CLIENT_TIMEOUT", "60")),
        )


@dataclass
class ReconcilerConfig:
    """Retry and replacement behaviour of the reconciler."""

    max_attempts: int = 3
    backoff_base_delay: float = 1.0  # seconds, grows linearly per attempt
    backoff_max_delay: float = 10.0
    allow_replace: bool = True

    @classmethod
    def from_env(cls):
        """Load from environment variables."""
        return cls(
            max_attempts=int(os.getenv("RECONCILE_MAX_ATTEMPTS", "3")),
            backoff_base_delay=float(os.getenv("RECONCILE_BACKOFF_BASE_DELAY", "1.0")),
            backoff_max_delay=float(os.getenv("RECONCILE_BACKOFF_MAX_DELAY", "10.0")),
            allow_replace=_env_bool("RECONCILE_ALLOW_REPLACE", "true"),
        )


@dataclass
class LogConfig:
    """Logging configuration."""

    level: str = "INFO"
    format: str = LOG_FORMAT

    @classmethod
    def from_env(cls):
        """Load from environment variables."""
        return cls(level=os.getenv("LOG_LEVEL", "INFO").upper())

    def configure(self) -> None:
        """Apply this configuration to the root logger."""
        logging.basicConfig(
            level=getattr(logging, self.level, logging.INFO), format=self.format
        )


@dataclass
class Config:
    """Main configuration object."""

    vault: VaultConfig
    reconciler: ReconcilerConfig
    logging: LogConfig

    @classmethod
    def from_env(cls):
        """Load all configuration from environment variables."""
        return cls(
            vault=VaultConfig.from_env(),
            reconciler=ReconcilerConfig.from_env(),
            logging=LogConfig.from_env(),
        )

    @classmethod
    def default(cls):
        """Return default configuration."""
        return cls(
            vault=VaultConfig(),
            reconciler=ReconcilerConfig(),
            logging=LogConfig(),
        )


def load_config() -> Config:
    """Build a fresh configuration from the environment."""
    return Config.from_env()
