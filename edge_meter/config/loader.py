"""
Configuration management and loading.

Handles the YAML settings file and the environment variables used by the
scheduled entry points.
"""

import os
from dataclasses import dataclass, field, replace
from enum import Enum
from pathlib import Path
from typing import Any, Dict, Mapping, Optional

import yaml

from edge_meter.core.identity import DEFAULT_IDENTITY_HEADER
from edge_meter.core.pricing import DEFAULT_RATE_CARD, RateCard, rate_card_from_mapping
from edge_meter.core.queries import validate_identifier
from edge_meter.core.rollup import RollupSettings
from edge_meter.core.schema import REALTIME_LOG_SCHEMA, RecordSchema
from edge_meter.logs import LOG_FORMATS, LOG_LEVELS
from edge_meter.storage.db import DEFAULT_DB_PATH

CONFIG_ENV_VAR = "EDGE_METER_CONFIG"


class StorageBackend(Enum):
    """Where usage aggregates are kept."""
    SQLITE = "sqlite"
    DYNAMODB = "dynamodb"


@dataclass(frozen=True)
class TransformConfig:
    """Settings for the batch transform."""
    max_workers: int = 8
    identity_header: str = DEFAULT_IDENTITY_HEADER
    schema: RecordSchema = REALTIME_LOG_SCHEMA

    def __post_init__(self):
        """Validate transform values."""
        if self.max_workers <= 0:
            raise ValueError("max_workers must be > 0")
        if not self.identity_header:
            raise ValueError("identity_header cannot be empty")


@dataclass(frozen=True)
class StorageConfig:
    """External stores and the local fallback."""
    backend: StorageBackend = StorageBackend.SQLITE
    sqlite_path: str = DEFAULT_DB_PATH
    usage_table: Optional[str] = None
    athena_database: Optional[str] = None
    athena_workgroup: Optional[str] = None
    region: Optional[str] = None


@dataclass(frozen=True)
class LoggingConfig:
    level: str = "INFO"
    format: str = "json"

    def __post_init__(self):
        """Validate logging values."""
        if self.level.upper() not in LOG_LEVELS:
            raise ValueError(f"logging level must be one of: {list(LOG_LEVELS)}")
        if self.format not in LOG_FORMATS:
            raise ValueError(f"logging format must be one of: {list(LOG_FORMATS)}")


@dataclass(frozen=True)
class MeterConfig:
    """Complete configuration."""
    transform: TransformConfig = field(default_factory=TransformConfig)
    rollup: RollupSettings = field(default_factory=RollupSettings)
    storage: StorageConfig = field(default_factory=StorageConfig)
    pricing: RateCard = DEFAULT_RATE_CARD
    logging: LoggingConfig = field(default_factory=LoggingConfig)


def load_config(path: str) -> MeterConfig:
    """Load and validate configuration from a YAML file.

    Every section is optional; anything left out keeps its default. Unknown
    keys are rejected so that a typo never silently falls back to a default
    price or table.

    Args:
        path: Path to YAML configuration file

    Returns:
        Validated MeterConfig

    Raises:
        FileNotFoundError: If config file doesn't exist
        yaml.YAMLError: If YAML is invalid
        ValueError: If configuration is invalid
    """
    config_path = Path(path)
    if not config_path.exists():
        raise FileNotFoundError(f"Config file not found: {path}")

    with open(config_path, 'r', encoding='utf-8') as f:
        try:
            raw_config = yaml.safe_load(f)
        except yaml.YAMLError as e:
            raise yaml.YAMLError(f"Invalid YAML in config file {path}: {e}")

    if raw_config is None:
        return MeterConfig()
    if not isinstance(raw_config, dict):
        raise ValueError("Configuration must be a dictionary")

    _check_keys(raw_config, {'transform', 'rollup', 'storage', 'pricing', 'logging'}, "top level")

    return MeterConfig(
        transform=_parse_transform(_section(raw_config, 'transform')),
        rollup=_parse_rollup(_section(raw_config, 'rollup')),
        storage=_parse_storage(_section(raw_config, 'storage')),
        pricing=_parse_pricing(_section(raw_config, 'pricing')),
        logging=_parse_logging(_section(raw_config, 'logging')),
    )


def load_config_from_env(environ: Optional[Mapping[str, str]] = None) -> MeterConfig:
    """Build configuration for the scheduled entry points.

    Reads the YAML file named by EDGE_METER_CONFIG if set, then applies
    ATHENA_DATABASE, ATHENA_OUTPUT_BUCKET and USAGE_METRICS_TABLE on top.
    Setting USAGE_METRICS_TABLE selects the DynamoDB backend.
    """
    environ = os.environ if environ is None else environ

    config_path = environ.get(CONFIG_ENV_VAR)
    config = load_config(config_path) if config_path else MeterConfig()

    storage = config.storage
    if environ.get("ATHENA_DATABASE"):
        storage = replace(storage, athena_database=environ["ATHENA_DATABASE"])
    if environ.get("USAGE_METRICS_TABLE"):
        storage = replace(storage, usage_table=environ["USAGE_METRICS_TABLE"], backend=StorageBackend.DYNAMODB)
    if environ.get("AWS_REGION") and not storage.region:
        storage = replace(storage, region=environ["AWS_REGION"])

    rollup = config.rollup
    if environ.get("ATHENA_OUTPUT_BUCKET"):
        rollup = replace(rollup, output_location=environ["ATHENA_OUTPUT_BUCKET"])

    return replace(config, storage=storage, rollup=rollup)


def _section(raw_config: Dict, name: str) -> Dict:
    data = raw_config.get(name) or {}
    if not isinstance(data, dict):
        raise ValueError(f"'{name}' must be a dictionary")
    return data


def _check_keys(data: Dict, allowed: set, path: str) -> None:
    unknown_keys = set(data.keys()) - allowed
    if unknown_keys:
        raise ValueError(f"Unknown keys in {path}: {unknown_keys}")


def _positive_int(data: Dict, key: str, path: str, default: int) -> int:
    value = data.get(key, default)
    if isinstance(value, bool) or not isinstance(value, int) or value <= 0:
        raise ValueError(f"'{key}' in {path} must be a positive integer")
    return value


def _optional_str(data: Dict, key: str, path: str) -> Optional[str]:
    value = data.get(key)
    if value is None:
        return None
    if not isinstance(value, str) or not value.strip():
        raise ValueError(f"'{key}' in {path} must be a non-empty string")
    return value


def _parse_transform(data: Dict) -> TransformConfig:
    _check_keys(data, {'max_workers', 'identity_header', 'schema'}, "transform")
    defaults = TransformConfig()

    schema = defaults.schema
    if 'schema' in data:
        fields = data['schema']
        if not isinstance(fields, list) or not all(isinstance(f, str) for f in fields):
            raise ValueError("'schema' in transform must be a list of 'name:type' strings")
        schema = RecordSchema.from_declarations(fields)

    return TransformConfig(
        max_workers=_positive_int(data, 'max_workers', "transform", defaults.max_workers),
        identity_header=_optional_str(data, 'identity_header', "transform") or defaults.identity_header,
        schema=schema,
    )


def _parse_rollup(data: Dict) -> RollupSettings:
    _check_keys(
        data,
        {'max_poll_attempts', 'poll_interval_seconds', 'sample_row_limit', 'output_location', 'source_table'},
        "rollup",
    )
    defaults = RollupSettings()

    interval = data.get('poll_interval_seconds', defaults.poll_interval_seconds)
    if isinstance(interval, bool) or not isinstance(interval, (int, float)) or interval < 0:
        raise ValueError("'poll_interval_seconds' in rollup must be a number >= 0")

    sample_limit = data.get('sample_row_limit', defaults.sample_row_limit)
    if isinstance(sample_limit, bool) or not isinstance(sample_limit, int) or sample_limit < 0:
        raise ValueError("'sample_row_limit' in rollup must be an integer >= 0")

    source_table = _optional_str(data, 'source_table', "rollup") or defaults.source_table
    validate_identifier(source_table)

    return RollupSettings(
        max_poll_attempts=_positive_int(data, 'max_poll_attempts', "rollup", defaults.max_poll_attempts),
        poll_interval_seconds=float(interval),
        sample_row_limit=sample_limit,
        output_location=_optional_str(data, 'output_location', "rollup"),
        source_table=source_table,
    )


def _parse_storage(data: Dict) -> StorageConfig:
    _check_keys(
        data,
        {'backend', 'sqlite_path', 'usage_table', 'athena_database', 'athena_workgroup', 'region'},
        "storage",
    )
    backend_str = data.get('backend', StorageBackend.SQLITE.value)
    try:
        backend = StorageBackend(str(backend_str).lower())
    except ValueError:
        valid_backends = [b.value for b in StorageBackend]
        raise ValueError(f"'backend' in storage must be one of: {valid_backends}")

    usage_table = _optional_str(data, 'usage_table', "storage")
    if backend is StorageBackend.DYNAMODB and not usage_table:
        raise ValueError("'usage_table' in storage is required for the dynamodb backend")

    return StorageConfig(
        backend=backend,
        sqlite_path=_optional_str(data, 'sqlite_path', "storage") or DEFAULT_DB_PATH,
        usage_table=usage_table,
        athena_database=_optional_str(data, 'athena_database', "storage"),
        athena_workgroup=_optional_str(data, 'athena_workgroup', "storage"),
        region=_optional_str(data, 'region', "storage"),
    )


def _parse_pricing(data: Dict[str, Any]) -> RateCard:
    _check_keys(
        data,
        {
            'request_unit_price',
            'flat_gb_price',
            'geography_rates',
            'rest_of_world_rate',
            'cache_hit_rate_price',
            'cache_standard_price',
        },
        "pricing",
    )
    if not data:
        return DEFAULT_RATE_CARD
    return rate_card_from_mapping(data)


def _parse_logging(data: Dict) -> LoggingConfig:
    _check_keys(data, {'level', 'format'}, "logging")
    level = data.get('level', "INFO")
    fmt = data.get('format', "json")
    if not isinstance(level, str) or not isinstance(fmt, str):
        raise ValueError("'level' and 'format' in logging must be strings")
    return LoggingConfig(level=level.upper(), format=fmt)
