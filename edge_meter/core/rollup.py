"""
Periodic usage rollup.

One run submits one aggregation query for a day, waits for it with a bounded
poll budget, prices the result and, for the default policy, merges the rows
into the counter store.

Run lifecycle:
    PENDING -> QUERYING -> MERGING -> COMPLETE
    QUERYING -> FAILED, MERGING -> FAILED

There is no retry loop here; a failed or timed-out run is reported to the
caller and re-triggering is the scheduler's decision. Re-running a day that
was already merged adds its counters a second time.
"""

import threading
import time
from collections import OrderedDict
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from decimal import Decimal, InvalidOperation
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Tuple, Union

import structlog

from edge_meter.storage.models import UsageAggregate
from edge_meter.storage.repository import CounterStore
from .engine import QueryEngine, QueryState, QueryStatus, Row
from .pricing import (
    DEFAULT_RATE_CARD,
    CostRow,
    PricingPolicy,
    RateCard,
    calculate_cost,
    flat_rate_cost,
)
from .queries import DEFAULT_SOURCE_TABLE, Granularity, QueryDate, build_query

logger = structlog.get_logger()


class RollupError(RuntimeError):
    """Base class for rollup run failures."""


class RollupQueryFailed(RollupError):
    """The query engine reported the query as failed or cancelled."""


class RollupTimeout(RollupError):
    """The query did not finish within the poll budget."""


class RollupInProgress(RollupError):
    """A run for the same policy and date is already outstanding."""


class RollupState(Enum):
    PENDING = "pending"
    QUERYING = "querying"
    MERGING = "merging"
    COMPLETE = "complete"
    FAILED = "failed"


_TRANSITIONS = {
    RollupState.PENDING: {RollupState.QUERYING},
    RollupState.QUERYING: {RollupState.MERGING, RollupState.FAILED},
    RollupState.MERGING: {RollupState.COMPLETE, RollupState.FAILED},
    RollupState.COMPLETE: set(),
    RollupState.FAILED: set(),
}

USAGE_COLUMNS = (
    "api_key",
    "bucket",
    "request_count",
    "bytes_sent",
    "bytes_received",
    "total_response_time_ms",
    "successful_requests",
    "error_requests",
    "cache_hits",
    "cache_misses",
    "distinct_countries_served",
)


@dataclass(frozen=True)
class RollupSettings:
    """Tuning for rollup runs."""
    max_poll_attempts: int = 60
    poll_interval_seconds: float = 2.0
    sample_row_limit: int = 10
    output_location: Optional[str] = None
    source_table: str = DEFAULT_SOURCE_TABLE

    def __post_init__(self):
        """Validate rollup settings."""
        if self.max_poll_attempts <= 0:
            raise ValueError("max_poll_attempts must be > 0")
        if self.poll_interval_seconds < 0:
            raise ValueError("poll_interval_seconds cannot be negative")
        if self.sample_row_limit < 0:
            raise ValueError("sample_row_limit cannot be negative")


@dataclass
class RollupRun:
    """Mutable state of one run."""
    query_date: QueryDate
    policy: PricingPolicy
    granularity: Granularity
    state: RollupState = RollupState.PENDING
    query_id: Optional[str] = None
    error: Optional[str] = None

    def advance(self, new_state: RollupState) -> None:
        """Move to ``new_state``.

        Raises:
            RuntimeError: If the transition is not allowed
        """
        if new_state not in _TRANSITIONS[self.state]:
            raise RuntimeError(f"Illegal rollup transition {self.state.name} -> {new_state.name}")
        logger.info(
            "rollup_state_changed",
            date=self.query_date.isoformat(),
            policy=self.policy.value,
            from_state=self.state.value,
            to_state=new_state.value,
            query_id=self.query_id,
        )
        self.state = new_state

    def fail(self, error: BaseException) -> None:
        self.error = f"{type(error).__name__}: {error}"
        if RollupState.FAILED in _TRANSITIONS[self.state]:
            self.advance(RollupState.FAILED)


@dataclass(frozen=True)
class RollupSummary:
    """Outcome of a completed run."""
    date: str
    policy: PricingPolicy
    granularity: Granularity
    identities_processed: int
    rows_merged: int
    sample_rows: List[Dict[str, Any]] = field(default_factory=list)
    query_id: Optional[str] = None
    statistics: Dict[str, Any] = field(default_factory=dict)

    def to_response(self) -> Dict[str, Any]:
        """Invocation response shape."""
        return {
            "identitiesProcessed": self.identities_processed,
            "date": self.date,
            "pricingPolicy": self.policy.value,
            "granularity": self.granularity.value,
            "rowsMerged": self.rows_merged,
            "queryId": self.query_id,
            "sampleRows": self.sample_rows,
        }


class RollupAggregator:
    """Runs rollups against a query engine and a counter store.

    Runs for different dates may proceed in parallel; a second run for a
    (policy, date) that is still outstanding is refused.
    """

    def __init__(
        self,
        engine: QueryEngine,
        store: CounterStore,
        settings: RollupSettings = RollupSettings(),
        rates: RateCard = DEFAULT_RATE_CARD,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], datetime] = lambda: datetime.now(timezone.utc),
    ):
        self.engine = engine
        self.store = store
        self.settings = settings
        self.rates = rates
        self._sleep = sleep
        self._clock = clock
        self._lock = threading.Lock()
        self._in_flight = set()

    def run(
        self,
        query_date: Union[QueryDate, str, None] = None,
        policy: PricingPolicy = PricingPolicy.DEFAULT,
        granularity: Granularity = Granularity.DAY,
    ) -> RollupSummary:
        """Execute one rollup run.

        Args:
            query_date: Day to roll up (defaults to yesterday, UTC)
            policy: Pricing policy selecting the query and cost model
            granularity: Day or hour buckets (default policy only)

        Returns:
            RollupSummary of the completed run

        Raises:
            ValueError: If the date is malformed
            RollupInProgress: If the same (policy, date) is already running
            RollupQueryFailed: If the engine fails or cancels the query
            RollupTimeout: If the poll budget is exhausted
        """
        if query_date is None:
            query_date = QueryDate.yesterday(self._clock())
        elif isinstance(query_date, str):
            query_date = QueryDate.parse(query_date)

        key = (policy, query_date.isoformat())
        with self._lock:
            if key in self._in_flight:
                raise RollupInProgress(f"Rollup for {policy.value} on {query_date} is already running")
            self._in_flight.add(key)
        try:
            return self._execute(RollupRun(query_date, policy, granularity))
        finally:
            with self._lock:
                self._in_flight.discard(key)

    def _execute(self, run: RollupRun) -> RollupSummary:
        run.advance(RollupState.QUERYING)
        try:
            query = build_query(run.policy, run.query_date, self.settings.source_table, run.granularity)
            run.query_id = self.engine.submit(query, self.settings.output_location)
            logger.info("rollup_query_submitted", query_id=run.query_id, policy=run.policy.value)
            status = self._wait_for_query(run.query_id)
            rows = _rows_to_dicts(self.engine.fetch(run.query_id))
            logger.info("rollup_rows_fetched", query_id=run.query_id, rows=len(rows), statistics=status.statistics)

            run.advance(RollupState.MERGING)
            if run.policy is PricingPolicy.DEFAULT:
                summary = self._merge_usage(run, rows)
            else:
                summary = self._price_rows(run, rows)
            summary = replace(summary, query_id=run.query_id, statistics=dict(status.statistics))
        except Exception as e:
            run.fail(e)
            logger.error("rollup_failed", date=run.query_date.isoformat(), query_id=run.query_id, error=run.error)
            raise

        run.advance(RollupState.COMPLETE)
        logger.info(
            "rollup_completed",
            date=summary.date,
            policy=summary.policy.value,
            identities_processed=summary.identities_processed,
            rows_merged=summary.rows_merged,
        )
        return summary

    def _wait_for_query(self, query_id: str) -> QueryStatus:
        for attempt in range(self.settings.max_poll_attempts):
            status = self.engine.poll(query_id)
            if status.state is QueryState.SUCCEEDED:
                return status
            if status.state in (QueryState.FAILED, QueryState.CANCELLED):
                raise RollupQueryFailed(
                    f"Query {query_id} {status.state.value.lower()}: {status.reason or 'no reason given'}"
                )
            if attempt + 1 < self.settings.max_poll_attempts:
                self._sleep(self.settings.poll_interval_seconds)
        # The engine keeps running the query; this run just stops waiting.
        raise RollupTimeout(
            f"Query {query_id} did not finish after {self.settings.max_poll_attempts} polls"
        )

    def _merge_usage(self, run: RollupRun, rows: List[Dict[str, Optional[str]]]) -> RollupSummary:
        missing = set(USAGE_COLUMNS) - set(rows[0]) if rows else set()
        if missing:
            raise RollupQueryFailed(f"Query result is missing columns: {sorted(missing)}")

        aggregates = [aggregate for aggregate in map(self._to_aggregate, rows) if aggregate is not None]
        stamp = self._clock()
        self.store.merge_add_many(
            [(a.identity, a.bucket, a.counters()) for a in aggregates], updated_at=stamp
        )

        samples = [
            {"api_key": a.identity, "bucket": a.bucket, **_jsonable(a.counters())}
            for a in aggregates[: self.settings.sample_row_limit]
        ]
        return RollupSummary(
            date=run.query_date.isoformat(),
            policy=run.policy,
            granularity=run.granularity,
            identities_processed=len({a.identity for a in aggregates}),
            rows_merged=len(aggregates),
            sample_rows=samples,
        )

    def _to_aggregate(self, row: Dict[str, Optional[str]]) -> Optional[UsageAggregate]:
        identity = row.get("api_key")
        if not identity:
            logger.warning("rollup_row_without_identity", bucket=row.get("bucket"))
            return None
        request_count = _to_int(row["request_count"])
        bytes_sent = _to_int(row["bytes_sent"])
        cost = flat_rate_cost([CostRow(request_count, bytes_sent)], self.rates).total_cost
        return UsageAggregate(
            identity=identity,
            bucket=row["bucket"],
            request_count=request_count,
            bytes_sent=bytes_sent,
            bytes_received=_to_int(row["bytes_received"]),
            total_response_time_ms=float(_to_decimal(row["total_response_time_ms"])),
            successful_requests=_to_int(row["successful_requests"]),
            error_requests=_to_int(row["error_requests"]),
            cache_hits=_to_int(row["cache_hits"]),
            cache_misses=_to_int(row["cache_misses"]),
            distinct_countries_served=_to_int(row["distinct_countries_served"]),
            estimated_cost=cost,
        )

    def _price_rows(self, run: RollupRun, rows: List[Dict[str, Optional[str]]]) -> RollupSummary:
        dimension = "c_country" if run.policy is PricingPolicy.GEOGRAPHY else "x_edge_result_type"
        grouped: "OrderedDict[str, List[CostRow]]" = OrderedDict()
        for row in rows:
            identity = row.get("api_key")
            if not identity:
                continue
            grouped.setdefault(identity, []).append(CostRow(
                requests=_to_int(row.get("requests")),
                bytes_sent=_to_int(row.get("bytes_sent")),
                country=row.get("c_country"),
                result_type=row.get("x_edge_result_type"),
            ))

        priced: List[Tuple[str, Any]] = [
            (identity, calculate_cost(run.policy, cost_rows, self.rates))
            for identity, cost_rows in grouped.items()
        ]
        priced.sort(key=lambda item: (-item[1].total_cost, item[0]))

        samples = []
        for identity, breakdown in priced[: self.settings.sample_row_limit]:
            sample = {
                "api_key": identity,
                "total_requests": breakdown.total_requests,
                "total_gb": str(breakdown.total_gb),
                "request_cost_usd": str(breakdown.request_cost),
                "bandwidth_cost_usd": str(breakdown.bandwidth_cost),
                "total_cost_usd": str(breakdown.total_cost),
            }
            if breakdown.cache_hit_rate is not None:
                sample["cache_hit_rate"] = str(breakdown.cache_hit_rate)
            samples.append(sample)

        logger.debug("rollup_rows_priced", policy=run.policy.value, dimension=dimension, identities=len(priced))
        return RollupSummary(
            date=run.query_date.isoformat(),
            policy=run.policy,
            granularity=Granularity.DAY,
            identities_processed=len(priced),
            rows_merged=0,
            sample_rows=samples,
        )


def _rows_to_dicts(rows: List[Row]) -> List[Dict[str, Optional[str]]]:
    if not rows:
        return []
    header = [str(name) for name in rows[0]]
    return [dict(zip(header, row)) for row in rows[1:]]


def _to_decimal(value: Optional[str]) -> Decimal:
    if value is None or value == "":
        return Decimal("0")
    try:
        return Decimal(value)
    except InvalidOperation:
        raise RollupQueryFailed(f"Non-numeric value in query result: {value!r}")


def _to_int(value: Optional[str]) -> int:
    return int(_to_decimal(value))


def _jsonable(counters: Dict[str, Any]) -> Dict[str, Any]:
    return {name: str(value) if isinstance(value, Decimal) else value for name, value in counters.items()}
