"""
Unit tests for the cost model.

Tests the three pricing policies, rounding and rate card overrides.
"""

from decimal import Decimal

import pytest

from edge_meter.core.pricing import (
    BYTES_PER_GB,
    DEFAULT_RATE_CARD,
    CostRow,
    PricingPolicy,
    cache_discount_cost,
    calculate_cost,
    flat_rate_cost,
    geography_tiered_cost,
    rate_card_from_mapping,
    round_money,
)

ONE_GB = 1073741824


class TestPricingPolicy:
    """Test policy name parsing."""

    @pytest.mark.parametrize("name,expected", [
        (None, PricingPolicy.DEFAULT),
        ("", PricingPolicy.DEFAULT),
        ("default", PricingPolicy.DEFAULT),
        ("daily_usage", PricingPolicy.DEFAULT),
        ("geography", PricingPolicy.GEOGRAPHY),
        ("billing", PricingPolicy.GEOGRAPHY),
        ("cacheDiscount", PricingPolicy.CACHE_DISCOUNT),
        ("cache_discount", PricingPolicy.CACHE_DISCOUNT),
    ])
    def test_parse(self, name, expected):
        """Current and legacy names resolve."""
        assert PricingPolicy.parse(name) is expected

    def test_parse_unknown(self):
        """Unknown names are rejected."""
        with pytest.raises(ValueError, match="Unknown pricing policy"):
            PricingPolicy.parse("premium")


class TestRounding:
    """Test monetary rounding."""

    def test_half_up(self):
        """Halves round away from zero at 4 places."""
        assert round_money(Decimal("0.00005")) == Decimal("0.0001")
        assert round_money(Decimal("0.03825")) == Decimal("0.0383")
        assert round_money(Decimal("0.039999")) == Decimal("0.0400")

    def test_subtotals_rounded_before_summing(self):
        """Each row is rounded on its own."""
        rows = [CostRow(requests=0, bytes_sent=ONE_GB // 4000)] * 2
        # each row is ~0.0000212 dollars of bandwidth
        assert flat_rate_cost(rows).bandwidth_cost == Decimal("0.0000")

    def test_gigabytes_are_binary(self):
        """A gigabyte is 1024^3 bytes."""
        assert BYTES_PER_GB == Decimal(ONE_GB)
        assert CostRow(1, ONE_GB).gigabytes == Decimal("1")


class TestFlatRate:
    """Test the default policy."""

    def test_worked_example(self):
        """1000 requests and 1 GB cost 0.1850."""
        breakdown = flat_rate_cost([CostRow(requests=1000, bytes_sent=ONE_GB)])
        assert breakdown.request_cost == Decimal("0.1000")
        assert breakdown.bandwidth_cost == Decimal("0.0850")
        assert breakdown.total_cost == Decimal("0.1850")
        assert breakdown.total_gb == Decimal("1.0000")
        assert breakdown.cache_hit_rate is None

    def test_no_rows(self):
        """Nothing to price costs nothing."""
        breakdown = flat_rate_cost([])
        assert breakdown.total_cost == Decimal("0")
        assert breakdown.total_requests == 0

    def test_deterministic(self):
        """The same rows always price identically."""
        rows = [CostRow(123457, 987654321), CostRow(3, 17)]
        assert flat_rate_cost(rows) == flat_rate_cost(list(rows))


class TestGeographyTiered:
    """Test the geography policy."""

    def test_tiers(self):
        """Each country is priced at its own rate."""
        rows = [
            CostRow(10, 2 * ONE_GB, country="US"),
            CostRow(10, ONE_GB, country="GB"),
            CostRow(10, ONE_GB, country="AU"),
        ]
        breakdown = geography_tiered_cost(rows)
        assert breakdown.bandwidth_cost == Decimal("0.1700") + Decimal("0.0900") + Decimal("0.1100")
        assert breakdown.request_cost == Decimal("0")
        assert breakdown.total_cost == Decimal("0.3700")

    @pytest.mark.parametrize("country", ["FR", "BR", None, ""])
    def test_rest_of_world(self, country):
        """Unlisted or unknown countries pay the rest-of-world rate."""
        breakdown = geography_tiered_cost([CostRow(1, ONE_GB, country=country)])
        assert breakdown.total_cost == Decimal("0.1200")

    def test_country_case(self):
        """Country codes match case-insensitively."""
        assert geography_tiered_cost([CostRow(1, ONE_GB, country="jp")]).total_cost == Decimal("0.1000")


class TestCacheDiscount:
    """Test the cache discount policy."""

    def test_worked_example(self):
        """640 hits and 360 misses over 1.25 GB cost 0.0783 at 64% hit rate."""
        rows = [
            CostRow(640, 858993459, result_type="Hit"),
            CostRow(360, 483183821, result_type="Miss"),
        ]
        breakdown = cache_discount_cost(rows)
        assert breakdown.bandwidth_cost == Decimal("0.0783")
        assert breakdown.total_cost == Decimal("0.0783")
        assert breakdown.cache_hit_rate == Decimal("64.00")
        assert breakdown.total_requests == 1000

    def test_refresh_hit_is_discounted(self):
        """RefreshHit counts as served from cache."""
        breakdown = cache_discount_cost([CostRow(5, ONE_GB, result_type="RefreshHit")])
        assert breakdown.total_cost == Decimal("0.0500")
        assert breakdown.cache_hit_rate == Decimal("100.00")

    def test_errors_pay_standard_rate(self):
        """Errors and unknown result types are not discounted."""
        rows = [CostRow(1, ONE_GB, result_type="Error"), CostRow(1, ONE_GB, result_type=None)]
        assert cache_discount_cost(rows).total_cost == Decimal("0.1700")

    def test_no_requests(self):
        """Hit rate is zero when there is no traffic."""
        assert cache_discount_cost([]).cache_hit_rate == Decimal("0.00")


class TestCalculateCost:
    """Test policy dispatch and rate cards."""

    def test_dispatch(self):
        """Each policy uses its own function."""
        rows = [CostRow(1000, ONE_GB, country="US", result_type="Hit")]
        assert calculate_cost(PricingPolicy.DEFAULT, rows).total_cost == Decimal("0.1850")
        assert calculate_cost(PricingPolicy.GEOGRAPHY, rows).total_cost == Decimal("0.0850")
        assert calculate_cost(PricingPolicy.CACHE_DISCOUNT, rows).total_cost == Decimal("0.0500")

    def test_rate_card_override(self):
        """Config values replace individual prices."""
        rates = rate_card_from_mapping({
            "flat_gb_price": 0.1,
            "geography_rates": {"fr": "0.095"},
        })
        assert rates.flat_gb_price == Decimal("0.1")
        assert rates.request_unit_price == DEFAULT_RATE_CARD.request_unit_price
        assert rates.rate_for_country("FR") == Decimal("0.095")
        assert rates.rate_for_country("US") == rates.rest_of_world_rate

    def test_rate_card_rejects_bad_prices(self):
        """Prices must be non-negative numbers."""
        with pytest.raises(ValueError, match="must be a number"):
            rate_card_from_mapping({"flat_gb_price": "cheap"})
        with pytest.raises(ValueError, match="negative"):
            rate_card_from_mapping({"flat_gb_price": -1})

    def test_rate_card_is_immutable(self):
        """Geography rates cannot be changed after construction."""
        with pytest.raises(TypeError):
            DEFAULT_RATE_CARD.geography_rates["US"] = Decimal("0")

    def test_negative_usage_rejected(self):
        """Usage rows cannot be negative."""
        with pytest.raises(ValueError):
            CostRow(-1, 0)
