"""
Configuration module for the capa operator.

Loads configuration from environment variables.
"""

import os
from dataclasses import dataclass, field
from typing import List, Optional

from session import ServiceEndpoint, parse_endpoints


@dataclass
class DatabaseConfig:
    """PostgreSQL database configuration."""

    host: str = "localhost"
    port: int = 5432
    database: str = "capa_operator"
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
            database=os.getenv("DB_NAME", "capa_operator"),
            user=os.getenv("DB_USER", "operator"),
            password=password,
            min_pool_size=int(os.getenv("DB_MIN_POOL_SIZE", "5")),
            max_pool_size=int(os.getenv("DB_MAX_POOL_SIZE", "20")),
        )


@dataclass
class ControllerConfig:
    """Work queue and reconcile loop configuration."""

    sync_period: int = 600  # seconds between full resyncs
    max_concurrent_reconciles: int = 5
    watch_namespace: Optional[str] = None  # None watches all namespaces
    controller_name: str = "capa-operator"

    # Exponential backoff configuration
    backoff_base_delay: float = 5  # base delay in seconds
    backoff_max_delay: float = 1000  # max delay in seconds
    backoff_jitter_factor: float = 0.1  # ±10% jitter

    @classmethod
    def from_env(cls):
        """Load from environment variables."""
        return cls(
            sync_period=int(os.getenv("SYNC_PERIOD", "600")),
            max_concurrent_reconciles=int(os.getenv("RECONCILE_WORKERS", "5")),
            watch_namespace=os.getenv("WATCH_NAMESPACE") or None,
            controller_name=os.getenv("CONTROLLER_NAME", "capa-operator"),
            backoff_base_delay=float(os.getenv("BACKOFF_BASE_DELAY", "5")),
            backoff_max_delay=float(os.getenv("BACKOFF_MAX_DELAY", "1000")),
            backoff_jitter_factor=float(os.getenv("BACKOFF_JITTER_FACTOR", "0.1")),
        )


@dataclass
class AWSConfig:
    """Cloud session configuration."""

    endpoints: List[ServiceEndpoint] = field(default_factory=list)

    @classmethod
    def from_env(cls):
        """Load from environment variables."""
        return cls(endpoints=parse_endpoints(os.getenv("AWS_ENDPOINTS", "")))


@dataclass
class Config:
    """Main configuration object."""

    database: DatabaseConfig
    controller: ControllerConfig
    aws: AWSConfig
    log_level: str = "INFO"

    @classmethod
    def from_env(cls):
        """Load all configuration from environment variables."""
        return cls(
            database=DatabaseConfig.from_env(),
            controller=ControllerConfig.from_env(),
            aws=AWSConfig.from_env(),
            log_level=os.getenv("LOG_LEVEL", "INFO").upper(),
        )

    @classmethod
    def default(cls):
        """Return default configuration."""
        return cls(
            database=DatabaseConfig(),
            controller=ControllerConfig(),
            aws=AWSConfig(),
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
