"""
Configuration for the sensor node.

Settings come from $DATA_ROOT/config/node.yml, then environment overrides:
- TS_DB_PATH: point store location
- TS_RETENTION: portal-wide retention ("30d", "infinite", ...)
- TS_PRUNE_INTERVAL: seconds between retention passes
- TS_BUSY_TIMEOUT_MS: how long a write waits on a locked database
- TS_QUERY_TIMEOUT_S: default query deadline

Config values are handed to components at construction; nothing reads
module-level state after startup.
"""

from __future__ import annotations

import os
from dataclasses import asdict, dataclass, field, fields
from datetime import timedelta
from pathlib import Path
from typing import Optional

import yaml
from loguru import logger

from .durations import parse_duration


def _data_root() -> Path:
    return Path(os.environ.get("DATA_ROOT", "."))


def _get_config_path() -> Path:
    """Get path to node.yml config file."""
    return _data_root() / "config" / "node.yml"


def default_db_path() -> Path:
    return _data_root() / "data" / "points.sqlite"


@dataclass
class NodeConfig:
    """Node-wide settings."""
    db_path: Path = field(default_factory=default_db_path)
    retention: str = "infinite"
    prune_interval_seconds: int = 3600
    prune_batch_size: int = 5000
    busy_timeout_ms: int = 5000
    query_timeout_seconds: float = 10.0
    synchronous: str = "FULL"            # FULL: commit is durable before append returns
    default_window: str = "1d"           # query window when no bounds are given
    api_host: str = "127.0.0.1"
    api_port: int = 8000

    def __post_init__(self) -> None:
        self.db_path = Path(self.db_path)
        # Fail fast on a bad retention string
        parse_duration(self.retention)
        if self.synchronous.upper() not in ("OFF", "NORMAL", "FULL", "EXTRA"):
            raise ValueError(f"Invalid synchronous mode: {self.synchronous}")

    @property
    def retention_duration(self) -> Optional[timedelta]:
        """Retention as a timedelta; None means keep forever."""
        return parse_duration(self.retention)

    def to_dict(self) -> dict:
        data = asdict(self)
        data["db_path"] = str(self.db_path)
        return data


_ENV_OVERRIDES = {
    "TS_DB_PATH": ("db_path", str),
    "TS_RETENTION": ("retention", str),
    "TS_PRUNE_INTERVAL": ("prune_interval_seconds", int),
    "TS_BUSY_TIMEOUT_MS": ("busy_timeout_ms", int),
    "TS_QUERY_TIMEOUT_S": ("query_timeout_seconds", float),
}


def load_config(config_path: Optional[Path] = None) -> NodeConfig:
    """
    Load node configuration.

    Missing file means defaults. Unknown keys are ignored with a warning.

    Args:
        config_path: Path to node.yml (default: $DATA_ROOT/config/node.yml)

    Returns:
        NodeConfig with file values and environment overrides applied
    """
    config_path = Path(config_path) if config_path else _get_config_path()

    raw: dict = {}
    if config_path.exists():
        with open(config_path) as f:
            raw = yaml.safe_load(f) or {}
        logger.debug(f"Loaded config from {config_path}")
    else:
        logger.info(f"No config at {config_path}, using defaults")

    known = {f.name for f in fields(NodeConfig)}
    values = {}
    for key, val in raw.items():
        if key in known:
            values[key] = val
        else:
            logger.warning(f"Ignoring unknown config key: {key}")

    for env_name, (key, cast) in _ENV_OVERRIDES.items():
        env_val = os.environ.get(env_name)
        if env_val:
            values[key] = cast(env_val)

    return NodeConfig(**values)


def save_config(config: NodeConfig, config_path: Optional[Path] = None) -> None:
    """Persist node configuration to YAML."""
    config_path = Path(config_path) if config_path else _get_config_path()
    config_path.parent.mkdir(parents=True, exist_ok=True)
    with open(config_path, "w") as f:
        yaml.dump(config.to_dict(), f, default_flow_style=False, sort_keys=False)
    logger.info(f"Saved config to {config_path}")
