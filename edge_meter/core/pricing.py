"""
Pricing calculations and rate management.

Three pricing policies map usage rows to a cost. Every monetary sub-total is
rounded to 4 decimal places before summation so that repeated rollups of the
same input produce identical totals.
"""

from dataclasses import dataclass, field
from decimal import Decimal, ROUND_HALF_UP
from enum import Enum
from types import MappingProxyType
from typing import Dict, Iterable, List, Mapping, Optional

from .schema import CacheResult

BYTES_PER_GB = Decimal(1024 ** 3)
MONEY_QUANTUM = Decimal("0.0001")
RATE_QUANTUM = Decimal("0.01")


class PricingPolicy(Enum):
    """Selectable cost computation strategies."""
    DEFAULT = "default"  # flat rate
    GEOGRAPHY = "geography"
    CACHE_DISCOUNT = "cacheDiscount"

    @classmethod
    def parse(cls, value: Optional[str]) -> "PricingPolicy":
        """Resolve a policy name, accepting the legacy query type names.

        Raises:
            ValueError: If the name is not a known policy
        """
        if value is None or value == "":
            return cls.DEFAULT
        if isinstance(value, cls):
            return value
        resolved = _POLICY_ALIASES.get(value.strip().lower())
        if resolved is None:
            valid = [policy.value for policy in cls]
            raise ValueError(f"Unknown pricing policy: {value} (expected one of: {valid})")
        return resolved


_POLICY_ALIASES = {
    "default": PricingPolicy.DEFAULT,
    "flat": PricingPolicy.DEFAULT,
    "daily_usage": PricingPolicy.DEFAULT,
    "geography": PricingPolicy.GEOGRAPHY,
    "billing": PricingPolicy.GEOGRAPHY,
    "cachediscount": PricingPolicy.CACHE_DISCOUNT,
    "cache_discount": PricingPolicy.CACHE_DISCOUNT,
}


def _frozen(mapping: Mapping[str, Decimal]) -> Mapping[str, Decimal]:
    return MappingProxyType(dict(mapping))


@dataclass(frozen=True)
class RateCard:
    """Prices used by the three policies. All rates are per gigabyte
    except ``request_unit_price``."""
    request_unit_price: Decimal = Decimal("0.0001")
    flat_gb_price: Decimal = Decimal("0.085")
    geography_rates: Mapping[str, Decimal] = field(default_factory=lambda: _frozen({
        "US": Decimal("0.085"),
        "CA": Decimal("0.085"),
        "GB": Decimal("0.090"),
        "DE": Decimal("0.090"),
        "JP": Decimal("0.100"),
        "AU": Decimal("0.110"),
    }))
    rest_of_world_rate: Decimal = Decimal("0.120")
    cache_hit_rate_price: Decimal = Decimal("0.050")
    cache_standard_price: Decimal = Decimal("0.085")

    def __post_init__(self):
        """Validate prices are not negative."""
        prices = [
            self.request_unit_price,
            self.flat_gb_price,
            self.rest_of_world_rate,
            self.cache_hit_rate_price,
            self.cache_standard_price,
            *self.geography_rates.values(),
        ]
        if any(price < 0 for price in prices):
            raise ValueError("prices cannot be negative")

    def rate_for_country(self, country: Optional[str]) -> Decimal:
        if not country:
            return self.rest_of_world_rate
        return self.geography_rates.get(country.upper(), self.rest_of_world_rate)

    def rate_for_result(self, result: CacheResult) -> Decimal:
        if result.served_from_cache:
            return self.cache_hit_rate_price
        return self.cache_standard_price


DEFAULT_RATE_CARD = RateCard()


@dataclass(frozen=True)
class CostRow:
    """Usage of one identity within one geography or cache bucket."""
    requests: int
    bytes_sent: int
    country: Optional[str] = None
    result_type: Optional[str] = None

    def __post_init__(self):
        """Validate usage values."""
        if self.requests < 0:
            raise ValueError("requests cannot be negative")
        if self.bytes_sent < 0:
            raise ValueError("bytes_sent cannot be negative")

    @property
    def gigabytes(self) -> Decimal:
        return Decimal(self.bytes_sent) / BYTES_PER_GB


@dataclass(frozen=True)
class CostBreakdown:
    """Result of pricing a set of rows."""
    policy: PricingPolicy
    total_requests: int
    total_gb: Decimal
    request_cost: Decimal
    bandwidth_cost: Decimal
    total_cost: Decimal
    cache_hit_rate: Optional[Decimal] = None  # reported, never billed


def round_money(amount: Decimal) -> Decimal:
    """Round a monetary amount to 4 decimal places, half away from zero."""
    return amount.quantize(MONEY_QUANTUM, rounding=ROUND_HALF_UP)


def flat_rate_cost(rows: Iterable[CostRow], rates: RateCard = DEFAULT_RATE_CARD) -> CostBreakdown:
    """Price usage at a single request price and a single per-GB price.

    Args:
        rows: Usage rows
        rates: Rate card

    Returns:
        Breakdown where total = request cost + bandwidth cost
    """
    rows = list(rows)
    request_cost = sum(
        (round_money(Decimal(row.requests) * rates.request_unit_price) for row in rows),
        Decimal("0"),
    )
    bandwidth_cost = sum(
        (round_money(row.gigabytes * rates.flat_gb_price) for row in rows),
        Decimal("0"),
    )
    return CostBreakdown(
        policy=PricingPolicy.DEFAULT,
        total_requests=sum(row.requests for row in rows),
        total_gb=_total_gb(rows),
        request_cost=request_cost,
        bandwidth_cost=bandwidth_cost,
        total_cost=round_money(request_cost + bandwidth_cost),
    )


def geography_tiered_cost(rows: Iterable[CostRow], rates: RateCard = DEFAULT_RATE_CARD) -> CostBreakdown:
    """Price bandwidth per row at the rate of the row's country.

    Countries missing from the rate card use the rest-of-world rate.
    """
    rows = list(rows)
    bandwidth_cost = sum(
        (round_money(row.gigabytes * rates.rate_for_country(row.country)) for row in rows),
        Decimal("0"),
    )
    return CostBreakdown(
        policy=PricingPolicy.GEOGRAPHY,
        total_requests=sum(row.requests for row in rows),
        total_gb=_total_gb(rows),
        request_cost=Decimal("0"),
        bandwidth_cost=bandwidth_cost,
        total_cost=round_money(bandwidth_cost),
    )


def cache_discount_cost(rows: Iterable[CostRow], rates: RateCard = DEFAULT_RATE_CARD) -> CostBreakdown:
    """Price bandwidth per row at a discounted rate for cache hits.

    Also reports the cache hit rate as hits / total requests * 100,
    rounded to 2 decimal places.
    """
    rows = list(rows)
    bandwidth_cost = Decimal("0")
    hits = 0
    for row in rows:
        result = CacheResult.from_token(row.result_type)
        bandwidth_cost += round_money(row.gigabytes * rates.rate_for_result(result))
        if result.served_from_cache:
            hits += row.requests

    total_requests = sum(row.requests for row in rows)
    if total_requests:
        hit_rate = (Decimal(hits) * 100 / Decimal(total_requests)).quantize(RATE_QUANTUM, rounding=ROUND_HALF_UP)
    else:
        hit_rate = Decimal("0.00")

    return CostBreakdown(
        policy=PricingPolicy.CACHE_DISCOUNT,
        total_requests=total_requests,
        total_gb=_total_gb(rows),
        request_cost=Decimal("0"),
        bandwidth_cost=bandwidth_cost,
        total_cost=round_money(bandwidth_cost),
        cache_hit_rate=hit_rate,
    )


_POLICY_FUNCTIONS = {
    PricingPolicy.DEFAULT: flat_rate_cost,
    PricingPolicy.GEOGRAPHY: geography_tiered_cost,
    PricingPolicy.CACHE_DISCOUNT: cache_discount_cost,
}


def calculate_cost(
    policy: PricingPolicy,
    rows: Iterable[CostRow],
    rates: RateCard = DEFAULT_RATE_CARD,
) -> CostBreakdown:
    """Price rows under the given policy."""
    return _POLICY_FUNCTIONS[policy](rows, rates)


def rate_card_from_mapping(data: Mapping[str, object]) -> RateCard:
    """Build a RateCard from plain config values, keeping defaults for
    anything not given.

    Raises:
        ValueError: If a price is not a number
    """
    kwargs: Dict[str, object] = {}
    for key in (
        "request_unit_price",
        "flat_gb_price",
        "rest_of_world_rate",
        "cache_hit_rate_price",
        "cache_standard_price",
    ):
        if key in data:
            kwargs[key] = _to_price(data[key], key)
    if "geography_rates" in data:
        rates = data["geography_rates"]
        if not isinstance(rates, dict):
            raise ValueError("'geography_rates' must be a dictionary")
        kwargs["geography_rates"] = _frozen({
            str(country).upper(): _to_price(price, f"geography_rates.{country}")
            for country, price in rates.items()
        })
    return RateCard(**kwargs)


def _to_price(value: object, path: str) -> Decimal:
    if isinstance(value, bool) or not isinstance(value, (int, float, str)):
        raise ValueError(f"'{path}' must be a number")
    try:
        return Decimal(str(value))
    except ArithmeticError:
        raise ValueError(f"'{path}' must be a number")


def _total_gb(rows: List[CostRow]) -> Decimal:
    return round_money(sum((row.gigabytes for row in rows), Decimal("0")))
