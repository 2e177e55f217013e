"""
Usage lookups over the counter store.

Answers "what did identity X use during month, day or hour P" by folding the
stored bucket rows that fall under the prefix.
"""

import re
from dataclasses import dataclass
from decimal import Decimal, ROUND_HALF_UP
from typing import Iterable, List, Optional

import structlog

from edge_meter.storage.models import UsageAggregate
from edge_meter.storage.repository import CounterStore

logger = structlog.get_logger()

# YYYY-MM, YYYY-MM-DD or YYYY-MM-DDTHH
_PREFIX_RE = re.compile(r"^\d{4}-(0[1-9]|1[0-2])(-(0[1-9]|[12]\d|3[01])(T([01]\d|2[0-3]))?)?$")
_DAY_BUCKET_LENGTH = len("YYYY-MM-DD")


class MissingParameter(ValueError):
    """A required lookup parameter was not supplied."""


@dataclass(frozen=True)
class UsageSummary:
    """Totals for one identity over one date prefix."""
    identity: str
    date_prefix: str
    request_count: int = 0
    bytes_sent: int = 0
    bytes_received: int = 0
    successful_requests: int = 0
    error_requests: int = 0
    cache_hits: int = 0
    cache_misses: int = 0
    avg_response_time_ms: float = 0.0
    cache_hit_rate: Decimal = Decimal("0.00")
    countries_served: int = 0
    estimated_cost: Decimal = Decimal("0.0000")
    records: int = 0

    def to_response(self) -> dict:
        return {
            "apiKey": self.identity,
            "datePrefix": self.date_prefix,
            "requestCount": self.request_count,
            "totalBytesSent": self.bytes_sent,
            "totalBytesReceived": self.bytes_received,
            "successfulRequests": self.successful_requests,
            "errorRequests": self.error_requests,
            "cacheHits": self.cache_hits,
            "cacheMisses": self.cache_misses,
            "averageResponseTimeMs": self.avg_response_time_ms,
            "cacheHitRate": str(self.cache_hit_rate),
            "countriesServed": self.countries_served,
            "estimatedCost": str(self.estimated_cost),
            "records": self.records,
        }


def validate_date_prefix(date_prefix: str) -> str:
    """Check a prefix is a month, day or hour.

    Raises:
        ValueError: If it is none of YYYY-MM, YYYY-MM-DD, YYYY-MM-DDTHH
    """
    if not _PREFIX_RE.match(date_prefix):
        raise ValueError(
            f"Invalid date prefix '{date_prefix}' (format: YYYY-MM, YYYY-MM-DD, or YYYY-MM-DDTHH)"
        )
    return date_prefix


def select_buckets(rows: Iterable[UsageAggregate]) -> List[UsageAggregate]:
    """Keep one granularity per identity and day.

    Day and hour rollups of the same traffic share the store. Where a day
    bucket exists its hour buckets are left out; hour buckets are only read
    for days that were rolled up hourly alone.
    """
    rows = list(rows)
    daily = {(row.identity, row.bucket) for row in rows if len(row.bucket) == _DAY_BUCKET_LENGTH}
    return [
        row for row in rows
        if len(row.bucket) == _DAY_BUCKET_LENGTH
        or (row.identity, row.bucket[:_DAY_BUCKET_LENGTH]) not in daily
    ]


def summarize(identity: str, date_prefix: str, rows: Iterable[UsageAggregate]) -> UsageSummary:
    """Fold bucket rows into one summary.

    Counters are summed, response time is averaged weighted by request count,
    and countries served is the largest per-bucket value since distinct
    counts cannot be added across buckets.
    """
    rows = list(rows)
    request_count = sum(row.request_count for row in rows)
    cache_hits = sum(row.cache_hits for row in rows)
    cache_misses = sum(row.cache_misses for row in rows)
    total_response_time = sum(row.total_response_time_ms for row in rows)

    cache_lookups = cache_hits + cache_misses
    if cache_lookups:
        hit_rate = (Decimal(cache_hits) * 100 / Decimal(cache_lookups)).quantize(
            Decimal("0.01"), rounding=ROUND_HALF_UP
        )
    else:
        hit_rate = Decimal("0.00")

    return UsageSummary(
        identity=identity,
        date_prefix=date_prefix,
        request_count=request_count,
        bytes_sent=sum(row.bytes_sent for row in rows),
        bytes_received=sum(row.bytes_received for row in rows),
        successful_requests=sum(row.successful_requests for row in rows),
        error_requests=sum(row.error_requests for row in rows),
        cache_hits=cache_hits,
        cache_misses=cache_misses,
        avg_response_time_ms=total_response_time / request_count if request_count else 0.0,
        cache_hit_rate=hit_rate,
        countries_served=max((row.distinct_countries_served for row in rows), default=0),
        estimated_cost=sum((row.estimated_cost for row in rows), Decimal("0.0000")),
        records=len(rows),
    )


class UsageReader:
    """Read side of the counter store."""

    def __init__(self, store: CounterStore):
        self.store = store

    def get_usage(self, identity: Optional[str], date_prefix: Optional[str]) -> UsageSummary:
        """Summarize usage of one identity over a date prefix.

        Args:
            identity: Identity token
            date_prefix: YYYY-MM, YYYY-MM-DD or YYYY-MM-DDTHH

        Returns:
            UsageSummary, all zero when nothing matches

        Raises:
            MissingParameter: If identity or date_prefix is missing
            ValueError: If date_prefix is malformed
        """
        if not identity or not identity.strip():
            raise MissingParameter("api_key parameter is required")
        if not date_prefix or not date_prefix.strip():
            raise MissingParameter(
                "date or month parameter is required (format: YYYY-MM, YYYY-MM-DD, or YYYY-MM-DDTHH)"
            )
        identity = identity.strip()
        date_prefix = validate_date_prefix(date_prefix.strip())

        rows = select_buckets(self.store.get_by_prefix(identity, date_prefix))
        logger.info("usage_scanned", date_prefix=date_prefix, records=len(rows))
        return summarize(identity, date_prefix, rows)
