"""
Rollup query construction.

Query text is only ever built from a validated QueryDate and a validated
table identifier, never from caller strings directly.
"""

import re
from dataclasses import dataclass
from datetime import date, datetime, timedelta, timezone
from enum import Enum
from typing import Optional

from .pricing import PricingPolicy

DEFAULT_SOURCE_TABLE = "cloudfront_realtime_logs"

_DATE_RE = re.compile(r"^(\d{4})-(\d{2})-(\d{2})$")
_IDENTIFIER_RE = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*(\.[A-Za-z_][A-Za-z0-9_]*)?$")


class Granularity(Enum):
    """Width of the time bucket a usage row covers."""
    DAY = "day"
    HOUR = "hour"


@dataclass(frozen=True)
class QueryDate:
    """A calendar day split into the partition components of the log table."""
    year: str
    month: str
    day: str

    @classmethod
    def parse(cls, value: str) -> "QueryDate":
        """Parse a YYYY-MM-DD string.

        Raises:
            ValueError: If the value is not a real calendar date in that format
        """
        match = _DATE_RE.match(value or "")
        if not match:
            raise ValueError(f"Invalid date '{value}', expected YYYY-MM-DD")
        try:
            date(int(match.group(1)), int(match.group(2)), int(match.group(3)))
        except ValueError as e:
            raise ValueError(f"Invalid date '{value}': {e}")
        return cls(*match.groups())

    @classmethod
    def yesterday(cls, now: Optional[datetime] = None) -> "QueryDate":
        """The previous UTC day."""
        now = now or datetime.now(timezone.utc)
        return cls.parse((now - timedelta(days=1)).strftime("%Y-%m-%d"))

    def isoformat(self) -> str:
        return f"{self.year}-{self.month}-{self.day}"

    def __str__(self) -> str:
        return self.isoformat()


def validate_identifier(table: str) -> str:
    """Check a table name is a plain (optionally database-qualified) identifier.

    Raises:
        ValueError: If the name contains anything else
    """
    if not table or not _IDENTIFIER_RE.match(table):
        raise ValueError(f"Invalid table identifier: {table!r}")
    return table


def _deduplicated_source(query_date: QueryDate, table: str) -> str:
    # At-least-once delivery can repeat a record; keep one row per request id.
    # Rows without a request id cannot be matched, so each one counts.
    partition = f"""FROM {validate_identifier(table)}
      WHERE year = '{query_date.year}'
        AND month = '{query_date.month}'
        AND day = '{query_date.day}'
        AND api_key IS NOT NULL"""
    return f"""
    deduped AS (
      SELECT
        arbitrary(api_key) AS api_key,
        arbitrary("timestamp") AS request_time,
        arbitrary(sc_status) AS sc_status,
        arbitrary(sc_bytes) AS sc_bytes,
        arbitrary(cs_bytes) AS cs_bytes,
        arbitrary(time_taken) AS time_taken,
        arbitrary(c_country) AS c_country,
        arbitrary(x_edge_result_type) AS x_edge_result_type
      {partition}
        AND x_edge_request_id IS NOT NULL
      GROUP BY x_edge_request_id
      UNION ALL
      SELECT
        api_key,
        "timestamp" AS request_time,
        sc_status,
        sc_bytes,
        cs_bytes,
        time_taken,
        c_country,
        x_edge_result_type
      {partition}
        AND x_edge_request_id IS NULL
    )"""


def build_daily_usage_query(
    query_date: QueryDate,
    table: str = DEFAULT_SOURCE_TABLE,
    granularity: Granularity = Granularity.DAY,
) -> str:
    """Usage counters per identity and bucket for one day."""
    if granularity is Granularity.HOUR:
        # Derived from the request time alone; late records can sit in the next
        # day's partition.
        bucket = "date_format(from_unixtime(request_time / 1000), '%Y-%m-%dT%H')"
    else:
        bucket = f"'{query_date.isoformat()}'"
    return f"""
    WITH{_deduplicated_source(query_date, table)}
    SELECT
      api_key,
      {bucket} AS bucket,
      COUNT(*) AS request_count,
      COALESCE(SUM(sc_bytes), 0) AS bytes_sent,
      COALESCE(SUM(cs_bytes), 0) AS bytes_received,
      ROUND(COALESCE(SUM(time_taken), 0) * 1000, 3) AS total_response_time_ms,
      SUM(CASE WHEN sc_status BETWEEN 200 AND 299 THEN 1 ELSE 0 END) AS successful_requests,
      SUM(CASE WHEN sc_status >= 400 THEN 1 ELSE 0 END) AS error_requests,
      SUM(CASE WHEN x_edge_result_type IN ('Hit', 'RefreshHit') THEN 1 ELSE 0 END) AS cache_hits,
      SUM(CASE WHEN x_edge_result_type = 'Miss' THEN 1 ELSE 0 END) AS cache_misses,
      COUNT(DISTINCT c_country) AS distinct_countries_served
    FROM deduped
    GROUP BY 1, 2
    ORDER BY 1, 2
    """


def build_geography_query(query_date: QueryDate, table: str = DEFAULT_SOURCE_TABLE) -> str:
    """Requests and bytes per identity and client country for one day."""
    return f"""
    WITH{_deduplicated_source(query_date, table)}
    SELECT
      api_key,
      c_country,
      COUNT(*) AS requests,
      COALESCE(SUM(sc_bytes), 0) AS bytes_sent
    FROM deduped
    GROUP BY api_key, c_country
    ORDER BY api_key, c_country
    """


def build_cache_discount_query(query_date: QueryDate, table: str = DEFAULT_SOURCE_TABLE) -> str:
    """Requests and bytes per identity and cache result type for one day."""
    return f"""
    WITH{_deduplicated_source(query_date, table)}
    SELECT
      api_key,
      x_edge_result_type,
      COUNT(*) AS requests,
      COALESCE(SUM(sc_bytes), 0) AS bytes_sent
    FROM deduped
    GROUP BY api_key, x_edge_result_type
    ORDER BY api_key, x_edge_result_type
    """


def build_query(
    policy: PricingPolicy,
    query_date: QueryDate,
    table: str = DEFAULT_SOURCE_TABLE,
    granularity: Granularity = Granularity.DAY,
) -> str:
    """Select the rollup query for a pricing policy.

    Granularity only applies to the default policy; the pricing queries
    always cover the whole day.
    """
    if policy is PricingPolicy.GEOGRAPHY:
        return build_geography_query(query_date, table)
    if policy is PricingPolicy.CACHE_DISCOUNT:
        return build_cache_discount_query(query_date, table)
    return build_daily_usage_query(query_date, table, granularity)
