"""Server configuration.

Loads from config.yaml if present, with environment variable overrides.
Environment variables use the pattern: MESHMAP_<SECTION>_<KEY> (uppercase).
"""

from __future__ import annotations

import os
from dataclasses import dataclass, field, fields
from pathlib import Path

import yaml


@dataclass
class ServerConfig:
    host: str = "0.0.0.0"
    port: int = 8000
    env: str = "dev"  # "dev" or "prod"


@dataclass
class StorageConfig:
    backend: str = "sqlite"
    db_path: str = "data/meshmap.db"


@dataclass
class ConsolidationConfig:
    max_age_days: float = 1.0
    max_tiles_per_run: int = 500
    max_history: int = 15
    merge_concurrency: int = 8


@dataclass
class GraphConfig:
    # Miles of distance credited per sqrt(meter) of repeater elevation.
    elevation_factor: float = 0.5
    top_repeaters: int = 50
    top_senders: int = 50


@dataclass
class ExportConfig:
    time_unit_ms: int = 1000
    page_size: int = 1000


@dataclass
class LoggingConfig:
    level: str = "info"
    format: str = "console"  # "console" or "json"


@dataclass
class AppConfig:
    server: ServerConfig = field(default_factory=ServerConfig)
    storage: StorageConfig = field(default_factory=StorageConfig)
    consolidation: ConsolidationConfig = field(default_factory=ConsolidationConfig)
    graph: GraphConfig = field(default_factory=GraphConfig)
    export: ExportConfig = field(default_factory=ExportConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)


def _apply_env_overrides(config: AppConfig) -> None:
    """Override config values from environment variables."""
    mapping = {
        "MESHMAP_SERVER_HOST": lambda v: setattr(config.server, "host", v),
        "MESHMAP_SERVER_PORT": lambda v: setattr(config.server, "port", int(v)),
        "MESHMAP_SERVER_ENV": lambda v: setattr(config.server, "env", v),
        "MESHMAP_STORAGE_BACKEND": lambda v: setattr(config.storage, "backend", v),
        "MESHMAP_STORAGE_DB_PATH": lambda v: setattr(config.storage, "db_path", v),
        "MESHMAP_CONSOLIDATION_MAX_AGE_DAYS": lambda v: setattr(config.consolidation, "max_age_days", float(v)),
        "MESHMAP_CONSOLIDATION_MAX_TILES": lambda v: setattr(config.consolidation, "max_tiles_per_run", int(v)),
        "MESHMAP_CONSOLIDATION_MAX_HISTORY": lambda v: setattr(config.consolidation, "max_history", int(v)),
        "MESHMAP_CONSOLIDATION_CONCURRENCY": lambda v: setattr(config.consolidation, "merge_concurrency", int(v)),
        "MESHMAP_GRAPH_ELEVATION_FACTOR": lambda v: setattr(config.graph, "elevation_factor", float(v)),
        "MESHMAP_GRAPH_TOP_REPEATERS": lambda v: setattr(config.graph, "top_repeaters", int(v)),
        "MESHMAP_GRAPH_TOP_SENDERS": lambda v: setattr(config.graph, "top_senders", int(v)),
        "MESHMAP_EXPORT_TIME_UNIT_MS": lambda v: setattr(config.export, "time_unit_ms", int(v)),
        "MESHMAP_LOG_LEVEL": lambda v: setattr(config.logging, "level", v),
        "MESHMAP_LOG_FORMAT": lambda v: setattr(config.logging, "format", v),
    }
    for env_key, setter in mapping.items():
        val = os.environ.get(env_key)
        if val is not None:
            setter(val)


def load_config(config_path: str | Path | None = None) -> AppConfig:
    """Load configuration from YAML file + environment overrides."""
    config = AppConfig()

    if config_path is None:
        config_path = Path(os.environ.get("MESHMAP_CONFIG", "config.yaml"))
    else:
        config_path = Path(config_path)

    if config_path.exists():
        with open(config_path) as f:
            raw = yaml.safe_load(f) or {}

        for section in fields(config):
            values = raw.get(section.name) or {}
            target = getattr(config, section.name)
            for k, v in values.items():
                if hasattr(target, k):
                    setattr(target, k, v)

    # Environment overrides always win
    _apply_env_overrides(config)
    return config
