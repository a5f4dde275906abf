"""
Configuration module for the cairn engine.

Loads configuration from environment variables. Command-line options
override individual values at the entry point.
"""

import json
import logging
import os
import socket
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

logger = logging.getLogger(__name__)

STATE_BACKENDS = ("local", "postgres")


def _default_holder() -> str:
    return f"{socket.gethostname()}:{os.getpid()}"


@dataclass
class StateConfig:
    """Where state lives and how the single-writer lease behaves."""

    backend: str = "local"
    directory: str = ".cairn"
    lease_ttl: float = 300.0  # seconds
    lease_holder: str = field(default_factory=_default_holder)

    @classmethod
    def from_env(cls):
        """Load from environment variables."""
        backend = os.getenv("CAIRN_STATE_BACKEND", "local").lower()
        if backend not in STATE_BACKENDS:
            raise ValueError(
                f"CAIRN_STATE_BACKEND must be one of {', '.join(STATE_BACKENDS)}, "
                f"got '{backend}'"
            )
        return cls(
            backend=backend,
            directory=os.getenv("CAIRN_STATE_DIR", ".cairn"),
            lease_ttl=float(os.getenv("CAIRN_LEASE_TTL", "300")),
            lease_holder=os.getenv("CAIRN_LEASE_HOLDER") or _default_holder(),
        )


@dataclass
class DatabaseConfig:
    """PostgreSQL database configuration for the postgres state backend."""

    host: str = "localhost"
    port: int = 5432
    database: str = "cairn"
    user: str = "cairn"
    password: str = field(default="", repr=False)  # Never log password
    min_pool_size: int = 1
    max_pool_size: int = 5

    @classmethod
    def from_env(cls, require_password: bool = False):
        """
        Load from environment variables.

        Args:
            require_password: Fail when DB_PASSWORD is unset. Only the
                postgres state backend needs a database.
        """
        password = os.getenv("DB_PASSWORD", "")
        if require_password and not password:
            raise ValueError(
                "DB_PASSWORD environment variable must be set. "
                "Database password cannot be empty."
            )

        return cls(
            host=os.getenv("DB_HOST", "localhost"),
            port=int(os.getenv("DB_PORT", "5432")),
            database=os.getenv("DB_NAME", "cairn"),
            user=os.getenv("DB_USER", "cairn"),
            password=password,
            min_pool_size=int(os.getenv("DB_MIN_POOL_SIZE", "1")),
            max_pool_size=int(os.getenv("DB_MAX_POOL_SIZE", "5")),
        )


@dataclass
class ExecutorConfig:
    """Configuration for plan execution."""

    max_workers: int = 5
    max_attempts: int = 5
    operation_timeout: float = 600.0  # seconds per provider call

    # Exponential backoff between attempts
    backoff_base_delay: float = 1.0
    backoff_max_delay: float = 30.0
    backoff_jitter_factor: float = 0.1  # ±10% jitter

    @classmethod
    def from_env(cls):
        """Load from environment variables."""
        config = cls(
            max_workers=int(os.getenv("MAX_WORKERS", "5")),
            max_attempts=int(os.getenv("MAX_ATTEMPTS", "5")),
            operation_timeout=float(os.getenv("OPERATION_TIMEOUT", "600")),
            backoff_base_delay=float(os.getenv("BACKOFF_BASE_DELAY", "1")),
            backoff_max_delay=float(os.getenv("BACKOFF_MAX_DELAY", "30")),
            backoff_jitter_factor=float(os.getenv("BACKOFF_JITTER_FACTOR", "0.1")),
        )
        if config.max_workers < 1:
            raise ValueError("MAX_WORKERS must be at least 1")
        if config.max_attempts < 1:
            raise ValueError("MAX_ATTEMPTS must be at least 1")
        return config


@dataclass
class ProviderConfig:
    """Provider system configuration."""

    # Enabled provider names (empty = every registered provider)
    enabled_providers: List[str] = field(default_factory=list)

    # Provider-specific configurations keyed by provider name
    provider_configs: Dict[str, Dict[str, Any]] = field(default_factory=dict)

    @classmethod
    def from_env(cls):
        """Load from environment variables."""
        enabled_str = os.getenv("ENABLED_PROVIDERS", "")
        enabled = [p.strip() for p in enabled_str.split(",") if p.strip()]

        provider_configs = {}
        raw = os.getenv("PROVIDER_CONFIGS")
        if raw:
            try:
                provider_configs = json.loads(raw)
            except json.JSONDecodeError as e:
                logger.warning(f"Ignoring PROVIDER_CONFIGS: invalid JSON ({e})")

        return cls(enabled_providers=enabled, provider_configs=provider_configs)

    def get_provider_config(self, provider_name: str) -> Dict[str, Any]:
        """Get configuration for a specific provider."""
        return self.provider_configs.get(provider_name, {})


@dataclass
class Config:
    """Main configuration object."""

    state: StateConfig
    database: DatabaseConfig
    executor: ExecutorConfig
    providers: ProviderConfig
    log_level: str = "INFO"

    @classmethod
    def from_env(cls):
        """Load all configuration from environment variables."""
        state = StateConfig.from_env()
        return cls(
            state=state,
            database=DatabaseConfig.from_env(
                require_password=state.backend == "postgres"
            ),
            executor=ExecutorConfig.from_env(),
            providers=ProviderConfig.from_env(),
            log_level=os.getenv("LOG_LEVEL", "INFO").upper(),
        )

    @classmethod
    def default(cls):
        """Return default configuration."""
        return cls(
            state=StateConfig(),
            database=DatabaseConfig(),
            executor=ExecutorConfig(),
            providers=ProviderConfig(),
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
