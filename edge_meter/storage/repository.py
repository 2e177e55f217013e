"""
Durable counter store.

Holds one UsageAggregate row per (identity, bucket) and only ever merges
into it additively.
"""

from datetime import datetime, timezone
from decimal import Decimal
from typing import List, Mapping, Optional, Protocol, Sequence, Tuple

import structlog

from .db import DEFAULT_DB_PATH, get_connection
from .models import COUNTER_FIELDS, Number, UsageAggregate

logger = structlog.get_logger()

# (identity, bucket, counters)
MergeEntry = Tuple[str, str, Mapping[str, Number]]

_COST_QUANTUM = Decimal("0.0001")
_INTEGER_COUNTERS = frozenset(COUNTER_FIELDS) - {"total_response_time_ms", "estimated_cost"}


class CounterStore(Protocol):
    """Boundary of the durable counter store."""

    def merge_add(
        self,
        identity: str,
        bucket: str,
        counters: Mapping[str, Number],
        updated_at: Optional[datetime] = None,
    ) -> None:
        ...

    def merge_add_many(
        self,
        entries: Sequence[MergeEntry],
        updated_at: Optional[datetime] = None,
    ) -> None:
        ...

    def get_by_prefix(self, identity: str, prefix: str) -> List[UsageAggregate]:
        ...

    def list_by_prefix(self, prefix: str) -> List[UsageAggregate]:
        ...


def validate_counters(counters: Mapping[str, Number]) -> None:
    """Reject counter names the store does not know.

    Raises:
        ValueError: If an unknown counter is present
    """
    unknown = set(counters) - set(COUNTER_FIELDS)
    if unknown:
        raise ValueError(f"Unknown counters: {sorted(unknown)}")


def validate_entry(identity: str, bucket: str, counters: Mapping[str, Number]) -> None:
    """Check one merge entry before anything is written.

    Raises:
        ValueError: If identity/bucket is empty or a counter is unknown
    """
    if not identity or not bucket:
        raise ValueError("identity and bucket are required")
    validate_counters(counters)


def initialize_schema(db_path: str = DEFAULT_DB_PATH) -> None:
    """Create the usage_aggregate table if it doesn't exist.

    Args:
        db_path: Path to SQLite database file
    """
    conn = get_connection(db_path)
    try:
        conn.execute("""
            CREATE TABLE IF NOT EXISTS usage_aggregate (
                identity TEXT NOT NULL,
                bucket TEXT NOT NULL,
                request_count INTEGER NOT NULL DEFAULT 0,
                bytes_sent INTEGER NOT NULL DEFAULT 0,
                bytes_received INTEGER NOT NULL DEFAULT 0,
                total_response_time_ms REAL NOT NULL DEFAULT 0,
                successful_requests INTEGER NOT NULL DEFAULT 0,
                error_requests INTEGER NOT NULL DEFAULT 0,
                cache_hits INTEGER NOT NULL DEFAULT 0,
                cache_misses INTEGER NOT NULL DEFAULT 0,
                distinct_countries_served INTEGER NOT NULL DEFAULT 0,
                estimated_cost REAL NOT NULL DEFAULT 0,
                last_updated TEXT NOT NULL,
                PRIMARY KEY (identity, bucket)
            )
        """)
        conn.commit()
    finally:
        conn.close()


class SqliteCounterStore:
    """SQLite implementation of the counter store.

    Each entry is a single upsert statement, so the additive update needs no
    read-modify-write; a batch of entries commits as one transaction.
    """

    def __init__(self, db_path: str = DEFAULT_DB_PATH):
        """Initialize the store with a database path.

        Args:
            db_path: Path to SQLite database file
        """
        self.db_path = db_path

    def merge_add(
        self,
        identity: str,
        bucket: str,
        counters: Mapping[str, Number],
        updated_at: Optional[datetime] = None,
    ) -> None:
        """Add counters into the (identity, bucket) row, creating it if needed.

        Args:
            identity: Identity token
            bucket: Day (YYYY-MM-DD) or hour (YYYY-MM-DDTHH) bucket
            counters: Counter increments; missing counters add 0
            updated_at: Timestamp stored as last_updated (defaults to now, UTC)

        Raises:
            ValueError: If identity/bucket is empty or a counter is unknown
        """
        self.merge_add_many([(identity, bucket, counters)], updated_at=updated_at)

    def merge_add_many(
        self,
        entries: Sequence[MergeEntry],
        updated_at: Optional[datetime] = None,
    ) -> None:
        """Add several (identity, bucket, counters) entries in one transaction.

        Either every entry is applied or none is.

        Raises:
            ValueError: If any entry is invalid; nothing is written
        """
        for identity, bucket, counters in entries:
            validate_entry(identity, bucket, counters)
        if not entries:
            return

        stamp = (updated_at or datetime.now(timezone.utc)).isoformat()
        columns = ", ".join(COUNTER_FIELDS)
        placeholders = ", ".join("?" for _ in COUNTER_FIELDS)
        updates = ", ".join(f"{name} = {name} + excluded.{name}" for name in COUNTER_FIELDS)

        conn = get_connection(self.db_path)
        try:
            conn.executemany(
                f"""
                INSERT INTO usage_aggregate (identity, bucket, {columns}, last_updated)
                VALUES (?, ?, {placeholders}, ?)
                ON CONFLICT(identity, bucket) DO UPDATE SET
                    {updates},
                    last_updated = excluded.last_updated
                """,
                [
                    [identity, bucket, *(_to_storage(name, counters.get(name, 0)) for name in COUNTER_FIELDS), stamp]
                    for identity, bucket, counters in entries
                ],
            )
            conn.commit()
        except Exception:
            conn.rollback()
            raise
        finally:
            conn.close()
        logger.debug("counters_merged", entries=len(entries))

    def get_by_prefix(self, identity: str, prefix: str) -> List[UsageAggregate]:
        """Fetch all rows of one identity whose bucket starts with prefix.

        Returns:
            Rows ordered by bucket
        """
        return self._select(
            "WHERE identity = ? AND substr(bucket, 1, ?) = ?",
            [identity, len(prefix), prefix],
        )

    def list_by_prefix(self, prefix: str) -> List[UsageAggregate]:
        """Fetch rows of every identity whose bucket starts with prefix.

        Returns:
            Rows ordered by identity, then bucket
        """
        return self._select("WHERE substr(bucket, 1, ?) = ?", [len(prefix), prefix])

    def _select(self, where: str, params: list) -> List[UsageAggregate]:
        conn = get_connection(self.db_path)
        try:
            cursor = conn.execute(
                f"""
                SELECT identity, bucket, {", ".join(COUNTER_FIELDS)}, last_updated
                FROM usage_aggregate
                {where}
                ORDER BY identity, bucket
                """,
                params,
            )
            return [_row_to_aggregate(row) for row in cursor.fetchall()]
        finally:
            conn.close()


def _to_storage(name: str, value: Number):
    if name in _INTEGER_COUNTERS:
        return int(value)
    return float(value)


def _row_to_aggregate(row) -> UsageAggregate:
    counters = dict(zip(COUNTER_FIELDS, row[2:2 + len(COUNTER_FIELDS)]))
    counters["estimated_cost"] = Decimal(str(counters["estimated_cost"])).quantize(_COST_QUANTUM)
    return UsageAggregate(
        identity=row[0],
        bucket=row[1],
        last_updated=datetime.fromisoformat(row[-1]),
        **counters,
    )
