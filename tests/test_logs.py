"""
Unit tests for logging setup.
"""

import json

import pytest
import structlog

from edge_meter.logs import configure_logging


class TestConfigureLogging:
    """Test renderer and level selection."""

    def teardown_method(self):
        """Restore structlog defaults."""
        structlog.reset_defaults()

    def test_json_to_stderr(self, capsys):
        """JSON format writes one object per event to stderr."""
        configure_logging("INFO", "json")
        structlog.get_logger().info("batch_processed", delivered=3)

        captured = capsys.readouterr()
        assert captured.out == ""
        event = json.loads(captured.err.strip())
        assert event["event"] == "batch_processed"
        assert event["delivered"] == 3
        assert event["level"] == "info"
        assert "timestamp" in event

    def test_level_filters(self, capsys):
        """Events below the level are dropped."""
        configure_logging("warning", "console")
        logger = structlog.get_logger()
        logger.info("quiet")
        logger.warning("loud")
        err = capsys.readouterr().err
        assert "quiet" not in err
        assert "loud" in err

    @pytest.mark.parametrize("level,fmt", [("TRACE", "json"), ("INFO", "xml")])
    def test_rejects_unknown(self, level, fmt):
        with pytest.raises(ValueError):
            configure_logging(level, fmt)
