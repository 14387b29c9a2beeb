"""
Loader Configuration
====================

Settings for a loader run, read from a JSON settings file.

Example:
    {
        "deeplynx_url": "http://localhost:8090",
        "api_key": "...",
        "api_secret": "...",
        "db_path": "data/loader.duckdb",
        "data_retention_days": 30,
        "data_sources": [
            {
                "table_name": "sensor_a",
                "container_id": 1,
                "data_source_id": 2,
                "timestamp_column_name": "ts",
                "secondary_index": "seq"
            }
        ]
    }
"""

import json
from dataclasses import dataclass
from typing import Any, Dict, Optional, Tuple

from .errors import ConfigurationError


def _require(raw: Dict, key: str, kind: type, context: str) -> Any:
    if key not in raw or raw[key] is None:
        raise ConfigurationError(f"{context}: '{key}' is required")
    value = raw[key]
    if kind is int and (isinstance(value, bool) or not isinstance(value, int)):
        raise ConfigurationError(f"{context}: '{key}' must be an integer")
    if kind is str and (not isinstance(value, str) or not value.strip()):
        raise ConfigurationError(f"{context}: '{key}' must be a non-empty string")
    return value


def _optional(raw: Dict, key: str, kind: type, context: str) -> Any:
    if raw.get(key) is None:
        return None
    return _require(raw, key, kind, context)


@dataclass(frozen=True)
class DataSourceConfiguration:
    """One remote data source mirrored into one local table."""

    table_name: str
    container_id: int
    data_source_id: int
    timestamp_column_name: str
    secondary_index: Optional[str] = None
    initial_timestamp: Optional[str] = None
    initial_index_start: Optional[int] = None

    @classmethod
    def from_dict(cls, raw: Dict) -> "DataSourceConfiguration":
        if not isinstance(raw, dict):
            raise ConfigurationError("data source entries must be objects")
        context = f"data source {raw.get('table_name', '<unnamed>')}"

        initial_index_start = _optional(raw, "initial_index_start", int, context)
        if initial_index_start is not None and initial_index_start < 0:
            raise ConfigurationError(f"{context}: 'initial_index_start' must not be negative")

        return cls(
            table_name=_require(raw, "table_name", str, context),
            container_id=_require(raw, "container_id", int, context),
            data_source_id=_require(raw, "data_source_id", int, context),
            timestamp_column_name=_require(raw, "timestamp_column_name", str, context),
            secondary_index=_optional(raw, "secondary_index", str, context),
            initial_timestamp=_optional(raw, "initial_timestamp", str, context),
            initial_index_start=initial_index_start,
        )


@dataclass(frozen=True)
class Configuration:
    """Complete loader configuration."""

    deeplynx_url: str
    db_path: str
    data_retention_days: int
    data_sources: Tuple[DataSourceConfiguration, ...]
    api_key: Optional[str] = None
    api_secret: Optional[str] = None
    target_container_id: Optional[int] = None
    target_data_source_id: Optional[int] = None
    staging_dir: Optional[str] = None
    debug: bool = False
    log_file: Optional[str] = None
    json_logs: bool = False

    @classmethod
    def from_dict(cls, raw: Dict) -> "Configuration":
        """
        Build a configuration from a parsed settings document.

        Args:
            raw: Settings dictionary

        Returns:
            Validated Configuration

        Raises:
            ConfigurationError: if a required value is missing or invalid
        """
        if not isinstance(raw, dict):
            raise ConfigurationError("configuration must be a JSON object")
        context = "configuration"

        retention_days = _require(raw, "data_retention_days", int, context)
        if retention_days < 0:
            raise ConfigurationError("configuration: 'data_retention_days' must not be negative")

        entries = raw.get("data_sources")
        if not isinstance(entries, list) or not entries:
            raise ConfigurationError("configuration: at least one data source is required")
        data_sources = tuple(DataSourceConfiguration.from_dict(entry) for entry in entries)

        seen = set()
        for data_source in data_sources:
            if data_source.table_name in seen:
                raise ConfigurationError(
                    f"configuration: table '{data_source.table_name}' is configured twice"
                )
            seen.add(data_source.table_name)

        return cls(
            deeplynx_url=_require(raw, "deeplynx_url", str, context),
            db_path=_require(raw, "db_path", str, context),
            data_retention_days=retention_days,
            data_sources=data_sources,
            api_key=_optional(raw, "api_key", str, context),
            api_secret=_optional(raw, "api_secret", str, context),
            target_container_id=_optional(raw, "target_container_id", int, context),
            target_data_source_id=_optional(raw, "target_data_source_id", int, context),
            staging_dir=_optional(raw, "staging_dir", str, context),
            debug=bool(raw.get("debug", False)),
            log_file=_optional(raw, "log_file", str, context),
            json_logs=bool(raw.get("json_logs", False)),
        )


def load_config(config_path: str) -> Configuration:
    """
    Load configuration from a JSON file.

    Args:
        config_path: Path to the settings file

    Returns:
        Validated Configuration
    """
    try:
        with open(config_path, 'r') as f:
            raw = json.load(f)
    except OSError as e:
        raise ConfigurationError(f"unable to read configuration file {config_path}: {e}") from e
    except json.JSONDecodeError as e:
        raise ConfigurationError(f"configuration file {config_path} is not valid JSON: {e}") from e

    return Configuration.from_dict(raw)
