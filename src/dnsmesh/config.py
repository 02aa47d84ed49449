"""
Configuration management for dnsmesh.

Handles loading, validation, and access to controller configuration.
"""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import yaml


# Default configuration paths
DEFAULT_CONFIG_PATH = Path("/etc/dnsmesh/dnsmesh.yaml")
DEFAULT_MANIFESTS_PATH = Path("/etc/dnsmesh/policies")
DEFAULT_DB_PATH = Path("/var/lib/dnsmesh/events.db")

DEFAULT_FINALIZER = "dns.dnspolicies.io/finalizer"


@dataclass
class DaemonConfig:
    """Daemon general settings."""

    log_level: str = "info"
    log_file: str | None = None

    def __post_init__(self) -> None:
        env_level = os.environ.get("DNSMESH_LOG_LEVEL")
        if env_level:
            self.log_level = env_level.lower()


@dataclass
class ControllerConfig:
    """Reconciliation loop settings."""

    workers: int = 4
    backoff_base: float = 0.005
    backoff_max: float = 1000.0
    resync_interval: float = 0.0  # 0 disables periodic resync
    finalizer: str = DEFAULT_FINALIZER


@dataclass
class ManifestConfig:
    """Policy manifest source settings."""

    path: str | None = str(DEFAULT_MANIFESTS_PATH)
    hot_reload: bool = False
    poll_interval: float = 5.0


@dataclass
class DatabaseConfig:
    """Event audit database settings."""

    enabled: bool = True
    path: str = str(DEFAULT_DB_PATH)
    wal_mode: bool = True


@dataclass
class APIConfig:
    """Policy query server settings."""

    host: str = "0.0.0.0"
    port: int = 8080
    read_timeout: float = 10.0
    write_timeout: float = 10.0
    idle_timeout: float = 60.0
    shutdown_timeout: float = 5.0

    def __post_init__(self) -> None:
        env_port = os.environ.get("DNSMESH_API_PORT")
        if env_port:
            self.port = int(env_port)

    @property
    def request_timeout(self) -> float:
        """Upper bound on a single request's lifetime."""
        return self.read_timeout + self.write_timeout


@dataclass
class DnsMeshConfig:
    """Main configuration container."""

    daemon: DaemonConfig = field(default_factory=DaemonConfig)
    controller: ControllerConfig = field(default_factory=ControllerConfig)
    manifests: ManifestConfig = field(default_factory=ManifestConfig)
    database: DatabaseConfig = field(default_factory=DatabaseConfig)
    api: APIConfig = field(default_factory=APIConfig)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> DnsMeshConfig:
        """Create configuration from dictionary."""
        return cls(
            daemon=DaemonConfig(**data.get("daemon", {})),
            controller=ControllerConfig(**data.get("controller", {})),
            manifests=ManifestConfig(**data.get("manifests", {})),
            database=DatabaseConfig(**data.get("database", {})),
            api=APIConfig(**data.get("api", {})),
        )


def load_config(path: str | Path | None = None) -> DnsMeshConfig:
    """
    Load configuration from YAML file.

    Args:
        path: Path to configuration file. If None, uses default paths.

    Returns:
        DnsMeshConfig instance with loaded settings.

    Raises:
        FileNotFoundError: If an explicit config file does not exist.
        yaml.YAMLError: If config file is invalid YAML.
    """
    if path is None:
        candidates = [
            DEFAULT_CONFIG_PATH,
            Path("config/dnsmesh.yaml"),
            Path("dnsmesh.yaml"),
        ]
        for candidate in candidates:
            if candidate.exists():
                path = candidate
                break

    if path is None:
        return DnsMeshConfig()

    path = Path(path)
    if not path.exists():
        raise FileNotFoundError(f"Configuration file not found: {path}")

    with open(path) as f:
        data = yaml.safe_load(f) or {}

    return DnsMeshConfig.from_dict(data)


def validate_config(config: DnsMeshConfig) -> list[str]:
    """
    Validate configuration and return list of errors.

    Args:
        config: Configuration to validate.

    Returns:
        List of error messages. Empty list if valid.
    """
    errors: list[str] = []

    valid_log_levels = {"debug", "info", "warning", "error"}
    if config.daemon.log_level not in valid_log_levels:
        errors.append(f"Invalid log_level: {config.daemon.log_level}")

    if config.controller.workers < 1:
        errors.append(f"Invalid worker count: {config.controller.workers}")

    if config.controller.backoff_base <= 0:
        errors.append(f"Invalid backoff_base: {config.controller.backoff_base}")

    if config.controller.backoff_max < config.controller.backoff_base:
        errors.append("backoff_max must be >= backoff_base")

    if config.controller.resync_interval < 0:
        errors.append(f"Invalid resync_interval: {config.controller.resync_interval}")

    if not config.controller.finalizer:
        errors.append("Finalizer name cannot be empty")

    if config.manifests.hot_reload and config.manifests.poll_interval <= 0:
        errors.append(f"Invalid poll_interval: {config.manifests.poll_interval}")

    if not (1 <= config.api.port <= 65535):
        errors.append(f"Invalid API port: {config.api.port}")

    for name in ("read_timeout", "write_timeout", "idle_timeout", "shutdown_timeout"):
        value = getattr(config.api, name)
        if value <= 0:
            errors.append(f"Invalid {name}: {value}")

    return errors
