"""
Unit tests for configuration loading and validation.

Tests strict validation, defaults and environment overrides.
"""

import os
import tempfile
from decimal import Decimal

import pytest
import yaml

from edge_meter.config.loader import (
    MeterConfig,
    StorageBackend,
    load_config,
    load_config_from_env,
)
from edge_meter.core.pricing import DEFAULT_RATE_CARD
from edge_meter.core.schema import REALTIME_LOG_SCHEMA, FieldType


class TestConfigLoading:
    """Test configuration loading and validation."""

    def setup_method(self):
        """Set up test environment."""
        self.temp_dir = tempfile.mkdtemp()

    def teardown_method(self):
        """Clean up test environment."""
        import shutil
        shutil.rmtree(self.temp_dir, ignore_errors=True)

    def _write_config(self, config_data, filename: str = "config.yaml") -> str:
        """Write configuration data to temporary file."""
        config_path = os.path.join(self.temp_dir, filename)
        with open(config_path, 'w', encoding='utf-8') as f:
            yaml.dump(config_data, f)
        return config_path

    def test_valid_config_loads_correctly(self):
        """Test that a valid configuration loads correctly."""
        config_data = {
            "transform": {"max_workers": 4, "identity_header": "X-Client-Key"},
            "rollup": {
                "max_poll_attempts": 30,
                "poll_interval_seconds": 1,
                "sample_row_limit": 5,
                "output_location": "s3://results/",
                "source_table": "cdn_logs.realtime",
            },
            "storage": {
                "backend": "dynamodb",
                "usage_table": "usage-metrics",
                "athena_database": "cdn_logs",
                "region": "us-west-2",
            },
            "pricing": {"flat_gb_price": 0.09},
            "logging": {"level": "debug", "format": "console"},
        }
        config = load_config(self._write_config(config_data))

        assert config.transform.max_workers == 4
        assert config.transform.identity_header == "X-Client-Key"
        assert config.rollup.max_poll_attempts == 30
        assert config.rollup.poll_interval_seconds == 1.0
        assert config.rollup.sample_row_limit == 5
        assert config.rollup.output_location == "s3://results/"
        assert config.rollup.source_table == "cdn_logs.realtime"
        assert config.storage.backend is StorageBackend.DYNAMODB
        assert config.storage.usage_table == "usage-metrics"
        assert config.storage.region == "us-west-2"
        assert config.pricing.flat_gb_price == Decimal("0.09")
        assert config.logging.level == "DEBUG"
        assert config.logging.format == "console"

    def test_empty_file_gives_defaults(self):
        """An empty file is the default configuration."""
        config = load_config(self._write_config(None))
        assert config == MeterConfig()
        assert config.rollup.max_poll_attempts == 60
        assert config.rollup.poll_interval_seconds == 2.0
        assert config.rollup.sample_row_limit == 10
        assert config.storage.backend is StorageBackend.SQLITE
        assert config.pricing is DEFAULT_RATE_CARD
        assert config.transform.schema is REALTIME_LOG_SCHEMA

    def test_schema_override(self):
        """The record schema can be declared in config."""
        config = load_config(self._write_config({
            "transform": {"schema": ["ts:timestamp!", "status:int!", "bytes:int!", "headers"]},
        }))
        schema = config.transform.schema
        assert schema.names == ("ts", "status", "bytes", "headers")
        assert schema.fields[0].type is FieldType.TIMESTAMP
        assert schema.fields[0].load_bearing

    def test_missing_file(self):
        """Test error when config file doesn't exist."""
        with pytest.raises(FileNotFoundError, match="Config file not found"):
            load_config(os.path.join(self.temp_dir, "missing.yaml"))

    def test_invalid_yaml(self):
        """Test error for malformed YAML."""
        path = os.path.join(self.temp_dir, "bad.yaml")
        with open(path, 'w', encoding='utf-8') as f:
            f.write("rollup: [unclosed\n")
        with pytest.raises(yaml.YAMLError):
            load_config(path)

    def test_non_dict_config(self):
        """Test error when top level is not a mapping."""
        with pytest.raises(ValueError, match="must be a dictionary"):
            load_config(self._write_config(["a", "b"]))

    @pytest.mark.parametrize("config_data,message", [
        ({"unknown": {}}, "Unknown keys in top level"),
        ({"rollup": {"max_polls": 3}}, "Unknown keys in rollup"),
        ({"storage": {"table": "x"}}, "Unknown keys in storage"),
        ({"pricing": {"gb_price": 1}}, "Unknown keys in pricing"),
        ({"transform": {"workers": 1}}, "Unknown keys in transform"),
    ])
    def test_unknown_keys_rejected(self, config_data, message):
        """Typos are rejected rather than ignored."""
        with pytest.raises(ValueError, match=message):
            load_config(self._write_config(config_data))

    @pytest.mark.parametrize("config_data,message", [
        ({"transform": {"max_workers": 0}}, "max_workers"),
        ({"transform": {"max_workers": True}}, "max_workers"),
        ({"rollup": {"max_poll_attempts": -1}}, "max_poll_attempts"),
        ({"rollup": {"poll_interval_seconds": "soon"}}, "poll_interval_seconds"),
        ({"rollup": {"sample_row_limit": -5}}, "sample_row_limit"),
        ({"rollup": {"source_table": "logs; DROP"}}, "Invalid table identifier"),
        ({"storage": {"backend": "postgres"}}, "backend"),
        ({"storage": {"backend": "dynamodb"}}, "usage_table"),
        ({"pricing": {"flat_gb_price": "free"}}, "flat_gb_price"),
        ({"logging": {"level": "LOUD"}}, "logging level"),
        ({"logging": {"format": "xml"}}, "logging format"),
        ({"rollup": "fast"}, "'rollup' must be a dictionary"),
    ])
    def test_invalid_values_rejected(self, config_data, message):
        """Out-of-range and mistyped values are rejected."""
        with pytest.raises(ValueError, match=message):
            load_config(self._write_config(config_data))


class TestEnvironmentConfig:
    """Test environment variable overrides."""

    def test_defaults_without_environment(self):
        """No variables means default configuration."""
        assert load_config_from_env({}) == MeterConfig()

    def test_overrides(self):
        """Deployment variables select the tables and result bucket."""
        config = load_config_from_env({
            "ATHENA_DATABASE": "cdn_logs",
            "ATHENA_OUTPUT_BUCKET": "s3://athena-results/",
            "USAGE_METRICS_TABLE": "usage-metrics",
        })
        assert config.storage.athena_database == "cdn_logs"
        assert config.storage.usage_table == "usage-metrics"
        assert config.storage.backend is StorageBackend.DYNAMODB
        assert config.rollup.output_location == "s3://athena-results/"

    def test_config_file_then_overrides(self):
        """The file named in the environment is loaded first."""
        temp_dir = tempfile.mkdtemp()
        try:
            path = os.path.join(temp_dir, "config.yaml")
            with open(path, 'w', encoding='utf-8') as f:
                yaml.dump({"storage": {"athena_database": "from_file", "athena_workgroup": "wg"}}, f)
            config = load_config_from_env({"EDGE_METER_CONFIG": path, "ATHENA_DATABASE": "from_env"})
            assert config.storage.athena_database == "from_env"
            assert config.storage.athena_workgroup == "wg"
        finally:
            import shutil
            shutil.rmtree(temp_dir, ignore_errors=True)
