"""
Unit tests for usage lookups.
"""

import os
import tempfile
from decimal import Decimal

import pytest

from edge_meter.core.usage import MissingParameter, UsageReader, select_buckets, summarize, validate_date_prefix
from edge_meter.storage.models import UsageAggregate
from edge_meter.storage.repository import SqliteCounterStore, initialize_schema


class TestDatePrefix:
    """Test prefix validation."""

    @pytest.mark.parametrize("prefix", ["2025-10", "2025-10-05", "2025-10-05T13", "2025-01-31T00"])
    def test_valid(self, prefix):
        assert validate_date_prefix(prefix) == prefix

    @pytest.mark.parametrize("prefix", ["2025", "2025-13", "2025-10-5", "2025-10-05T24", "2025-10-05 13", "10-2025"])
    def test_invalid(self, prefix):
        with pytest.raises(ValueError, match="Invalid date prefix"):
            validate_date_prefix(prefix)


class TestSummarize:
    """Test folding bucket rows."""

    def test_weighted_average_and_hit_rate(self):
        """Response time is weighted by requests; hit rate uses hits and misses."""
        rows = [
            UsageAggregate("k", "2025-10-01", request_count=100, total_response_time_ms=10000.0,
                           cache_hits=60, cache_misses=40, distinct_countries_served=3,
                           estimated_cost=Decimal("0.0100")),
            UsageAggregate("k", "2025-10-02", request_count=300, total_response_time_ms=60000.0,
                           cache_hits=90, cache_misses=10, distinct_countries_served=5,
                           estimated_cost=Decimal("0.0250")),
        ]
        summary = summarize("k", "2025-10", rows)
        assert summary.request_count == 400
        assert summary.avg_response_time_ms == 175.0
        assert summary.cache_hit_rate == Decimal("75.00")
        assert summary.countries_served == 5
        assert summary.estimated_cost == Decimal("0.0350")
        assert summary.records == 2

    def test_empty(self):
        """No rows gives an all-zero summary."""
        summary = summarize("k", "2025-10", [])
        assert summary.request_count == 0
        assert summary.avg_response_time_ms == 0.0
        assert summary.cache_hit_rate == Decimal("0.00")
        assert summary.records == 0

    def test_response_keys(self):
        """The response uses camelCase keys."""
        response = summarize("k", "2025-10", []).to_response()
        assert response["apiKey"] == "k"
        assert response["datePrefix"] == "2025-10"
        assert response["cacheHitRate"] == "0.00"
        assert response["records"] == 0


class TestSelectBuckets:
    """Test choosing one granularity per identity and day."""

    def test_day_row_hides_its_hours(self):
        rows = [
            UsageAggregate("k", "2025-10-05", request_count=100),
            UsageAggregate("k", "2025-10-05T03", request_count=60),
            UsageAggregate("k", "2025-10-05T04", request_count=40),
            UsageAggregate("k", "2025-10-06T01", request_count=7),
        ]
        assert [row.bucket for row in select_buckets(rows)] == ["2025-10-05", "2025-10-06T01"]

    def test_per_identity(self):
        """A day row of one identity does not hide another identity's hours."""
        rows = [
            UsageAggregate("a", "2025-10-05", request_count=1),
            UsageAggregate("b", "2025-10-05T03", request_count=2),
        ]
        assert len(select_buckets(rows)) == 2


class TestUsageReader:
    """Test reads through the counter store."""

    def setup_method(self):
        """Set up a populated SQLite store."""
        self.temp_dir = tempfile.mkdtemp()
        db_path = os.path.join(self.temp_dir, "test.db")
        initialize_schema(db_path)
        self.store = SqliteCounterStore(db_path)
        for bucket, requests in (("2025-10-04", 10), ("2025-10-05", 20), ("2025-11-01", 40)):
            self.store.merge_add("key-a", bucket, {"request_count": requests, "cache_hits": requests})
        self.store.merge_add("key-b", "2025-10-05", {"request_count": 1000})
        self.reader = UsageReader(self.store)

    def teardown_method(self):
        """Clean up test environment."""
        import shutil
        shutil.rmtree(self.temp_dir, ignore_errors=True)

    def test_month(self):
        """A month prefix covers every day of that month only."""
        summary = self.reader.get_usage("key-a", "2025-10")
        assert summary.request_count == 30
        assert summary.records == 2
        assert summary.cache_hit_rate == Decimal("100.00")

    def test_day(self):
        """A day prefix covers one bucket."""
        assert self.reader.get_usage("key-a", "2025-10-05").request_count == 20

    def test_day_equals_month_with_one_day(self):
        """A month with a single day of data reads the same as that day."""
        self.store.merge_add("key-c", "2025-12-24", {"request_count": 7, "bytes_sent": 99})
        by_day = self.reader.get_usage("key-c", "2025-12-24")
        by_month = self.reader.get_usage("key-c", "2025-12")
        assert by_day.to_response() | {"datePrefix": None} == by_month.to_response() | {"datePrefix": None}

    def test_day_and_hour_rows_not_double_counted(self):
        """Day and month reads count a day once when both granularities were stored."""
        self.store.merge_add("key-d", "2025-12-24", {"request_count": 100})
        self.store.merge_add("key-d", "2025-12-24T03", {"request_count": 100})
        assert self.reader.get_usage("key-d", "2025-12-24").request_count == 100
        assert self.reader.get_usage("key-d", "2025-12").request_count == 100
        assert self.reader.get_usage("key-d", "2025-12-24T03").request_count == 100

    def test_other_identities_excluded(self):
        """Only the requested identity is read."""
        assert self.reader.get_usage("key-b", "2025-10").request_count == 1000

    def test_no_match(self):
        """An unknown identity reads as zero."""
        summary = self.reader.get_usage("key-z", "2025-10")
        assert summary.request_count == 0
        assert summary.records == 0

    @pytest.mark.parametrize("identity,prefix", [(None, "2025-10"), ("", "2025-10"), ("  ", "2025-10"), ("key-a", None), ("key-a", "")])
    def test_missing_parameters(self, identity, prefix):
        """Missing parameters are reported as such."""
        with pytest.raises(MissingParameter):
            self.reader.get_usage(identity, prefix)

    def test_bad_prefix(self):
        """A malformed prefix is a ValueError, not a missing parameter."""
        with pytest.raises(ValueError) as excinfo:
            self.reader.get_usage("key-a", "October")
        assert not isinstance(excinfo.value, MissingParameter)
