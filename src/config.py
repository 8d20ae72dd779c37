"""
Configuration module for the permission operator.

Loads configuration from environment variables.
"""

import os
from dataclasses import dataclass, field
from typing import Optional

from providerconfig import DEFAULT_REQUEST_TIMEOUT

DEFAULT_UPBOUND_ENDPOINT = "https://api.upbound.io"


def _env_bool(name: str, default: str = "false") -> bool:
    return os.getenv(name, default).lower() in ("1", "true", "yes")


@dataclass
class DatabaseConfig:
    """PostgreSQL database configuration."""

    host: str = "localhost"
    port: int = 5432
    database: str = "permission_operator"
    user: str = "operator"
    password: str = field(default="", repr=False)  # Never log password
    min_pool_size: int = 5
    max_pool_size: int = 20

    @classmethod
    def from_env(cls):
        """Load from environment variables."""
        password = os.getenv("DB_PASSWORD", "")
        if not password:
            raise ValueError(
                "DB_PASSWORD environment variable must be set. "
                "Database password cannot be empty."
            )

        return cls(
            host=os.getenv("DB_HOST", "localhost"),
            port=int(os.getenv("DB_PORT", "5432")),
            database=os.getenv("DB_NAME", "permission_operator"),
            user=os.getenv("DB_USER", "operator"),
            password=password,
            min_pool_size=int(os.getenv("DB_MIN_POOL_SIZE", "5")),
            max_pool_size=int(os.getenv("DB_MAX_POOL_SIZE", "20")),
        )


@dataclass
class ControllerConfig:
    """Reconciliation loop configuration."""

    poll_interval: int = 60  # seconds between polls and drift checks
    max_concurrent_reconciles: int = 5  # per managed kind
    reconcile_timeout: float = 120.0  # seconds per reconcile cycle

    # Exponential backoff configuration
    backoff_base_delay: int = 60  # base delay in seconds
    backoff_max_delay: int = 3600  # max delay in seconds (1 hour)
    backoff_jitter_factor: float = 0.1  # ±10% jitter

    @classmethod
    def from_env(cls):
        """Load from environment variables."""
        return cls(
            poll_interval=int(os.getenv("POLL_INTERVAL", "60")),
            max_concurrent_reconciles=int(os.getenv("MAX_CONCURRENT_RECONCILES", "5")),
            reconcile_timeout=float(os.getenv("RECONCILE_TIMEOUT", "120")),
            backoff_base_delay=int(os.getenv("BACKOFF_BASE_DELAY", "60")),
            backoff_max_delay=int(os.getenv("BACKOFF_MAX_DELAY", "3600")),
            backoff_jitter_factor=float(os.getenv("BACKOFF_JITTER_FACTOR", "0.1")),
        )


@dataclass
class UpboundConfig:
    """Defaults for talking to the Upbound API."""

    endpoint: str = DEFAULT_UPBOUND_ENDPOINT  # used when a ProviderConfig omits one
    request_timeout: float = DEFAULT_REQUEST_TIMEOUT

    @classmethod
    def from_env(cls):
        """Load from environment variables."""
        return cls(
            endpoint=os.getenv("UPBOUND_ENDPOINT", DEFAULT_UPBOUND_ENDPOINT),
            request_timeout=float(
                os.getenv("UPBOUND_REQUEST_TIMEOUT", str(DEFAULT_REQUEST_TIMEOUT))
            ),
        )


@dataclass
class LoggingConfig:
    """Logging configuration."""

    level: str = "INFO"
    debug: bool = False

    @classmethod
    def from_env(cls):
        """Load from environment variables."""
        return cls(
            level=os.getenv("LOG_LEVEL", "INFO").upper(),
            debug=_env_bool("DEBUG"),
        )

    @property
    def effective_level(self) -> str:
        return "DEBUG" if self.debug else self.level


@dataclass
class Config:
    """Main configuration object."""

    database: DatabaseConfig
    controller: ControllerConfig
    upbound: UpboundConfig
    logging: LoggingConfig

    @classmethod
    def from_env(cls):
        """Load all configuration from environment variables."""
        return cls(
            database=DatabaseConfig.from_env(),
            controller=ControllerConfig.from_env(),
            upbound=UpboundConfig.from_env(),
            logging=LoggingConfig.from_env(),
        )

    @classmethod
    def default(cls):
        """Return default configuration."""
        return cls(
            database=DatabaseConfig(),
            controller=ControllerConfig(),
            upbound=UpboundConfig(),
            logging=LoggingConfig(),
        )


# Global config instance
config: Optional[Config] = None


def load_config() -> Config:
    """Load configuration (singleton pattern)."""
    global config
    if config is None:
        config = Config.from_env()
    return config


def get_config() -> Config:
    """Get the current configuration."""
    if config is None:
        return load_config()
    return config


def reset_config() -> None:
    """Reset configuration (mainly for testing)."""
    global config
    config = None
