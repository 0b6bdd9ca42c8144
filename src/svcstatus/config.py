"""Configuration loading and merging for svcstatus."""

import logging
import os
from dataclasses import dataclass, fields
from pathlib import Path
from typing import Optional

import yaml
from dotenv import find_dotenv, load_dotenv

logger = logging.getLogger(__name__)

DEFAULT_DATABASE_URL = "sqlite:///svcstatus.db"

# Environment variables consulted for the connection string, in order.
DATABASE_URL_ENV = ("SVCSTATUS_DATABASE_URL", "DATABASE_URL")

# Recommended minimum ratio between staleness threshold and heartbeat interval,
# so a couple of missed beats do not flip a healthy instance to stale.
RECOMMENDED_THRESHOLD_RATIO = 3


@dataclass
class RegistryConfig:
    # Connection string for the status store (SQLAlchemy URL)
    database_url: Optional[str] = None
    pool_size: int = 5
    pool_timeout: int = 30

    # Create the service_status table on startup (otherwise it must be migrated in)
    create_schema: bool = False

    # Seconds between heartbeats sent by each instance
    heartbeat_interval: float = 10.0

    # Seconds without a heartbeat before a record is considered stale
    staleness_threshold: float = 30.0

    # Read-only HTTP query API
    registry_host: str = "0.0.0.0"
    registry_port: int = 8471

    log_level: str = "INFO"


def load_config(path: str | Path) -> RegistryConfig:
    """Load a RegistryConfig from a YAML file. Unknown keys are ignored."""
    path = Path(path)
    with open(path) as f:
        data = yaml.safe_load(f) or {}
    if not isinstance(data, dict):
        raise ValueError(f"{path}: expected a mapping at the top level")

    valid_fields = {f.name for f in fields(RegistryConfig)}
    unknown = sorted(set(data) - valid_fields)
    if unknown:
        logger.warning("Ignoring unknown config keys in %s: %s", path, ", ".join(unknown))
    filtered = {k: v for k, v in data.items() if k in valid_fields}
    return RegistryConfig(**filtered)


def merge_cli_args(config: RegistryConfig, args) -> RegistryConfig:
    """Overlay CLI arguments onto an existing config. CLI values take precedence."""
    for f in fields(RegistryConfig):
        cli_val = getattr(args, f.name, None)
        if cli_val is not None:
            setattr(config, f.name, cli_val)
    return config


def resolve_database_url(config: RegistryConfig) -> str:
    """Return the configured connection string, falling back to the environment.

    A ``.env`` file in the working directory (or a parent) is read first,
    without overriding variables already set.
    """
    if config.database_url:
        return config.database_url
    load_dotenv(find_dotenv(usecwd=True))
    for name in DATABASE_URL_ENV:
        url = os.environ.get(name)
        if url:
            return url
    logger.warning("No database URL configured, using %s", DEFAULT_DATABASE_URL)
    return DEFAULT_DATABASE_URL


def validate_config(config: RegistryConfig) -> None:
    """Reject heartbeat/staleness settings that would flag healthy instances as stale."""
    if config.heartbeat_interval <= 0:
        raise ValueError("heartbeat_interval must be positive")
    if config.staleness_threshold <= config.heartbeat_interval:
        raise ValueError(
            f"staleness_threshold ({config.staleness_threshold}s) must be longer than"
            f" heartbeat_interval ({config.heartbeat_interval}s)"
        )
    if config.staleness_threshold < RECOMMENDED_THRESHOLD_RATIO * config.heartbeat_interval:
        logger.warning(
            "staleness_threshold %ss is less than %dx heartbeat_interval %ss;"
            " transient network hiccups may mark instances stale",
            config.staleness_threshold, RECOMMENDED_THRESHOLD_RATIO, config.heartbeat_interval,
        )
