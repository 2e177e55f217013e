"""
DynamoDB counter store.

One item per (api_key, date) where ``date`` holds the day or hour bucket.
Merges use ADD update expressions; batches go through TransactWriteItems so
each chunk of up to 100 items is applied all or nothing.
"""

from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, Callable, Dict, List, Mapping, Optional, Sequence

import structlog
from boto3.dynamodb.conditions import Attr, Key

from edge_meter.storage.models import COUNTER_FIELDS, Number, UsageAggregate
from edge_meter.storage.repository import MergeEntry, validate_entry

logger = structlog.get_logger()

_COST_QUANTUM = Decimal("0.0001")
# TransactWriteItems limit
MAX_TRANSACTION_ITEMS = 100


class DynamoCounterStore:
    """CounterStore backed by a DynamoDB table resource."""

    def __init__(self, table: Any, partition_key: str = "api_key", sort_key: str = "date"):
        self.table = table
        self.partition_key = partition_key
        self.sort_key = sort_key

    def merge_add(
        self,
        identity: str,
        bucket: str,
        counters: Mapping[str, Number],
        updated_at: Optional[datetime] = None,
    ) -> None:
        validate_entry(identity, bucket, counters)
        self.table.update_item(**self._update(identity, bucket, counters, _stamp(updated_at)))
        logger.debug("counters_merged", bucket=bucket, table=getattr(self.table, "name", None))

    def merge_add_many(
        self,
        entries: Sequence[MergeEntry],
        updated_at: Optional[datetime] = None,
    ) -> None:
        """Merge entries with one transaction per chunk of 100 items.

        Entries for the same key are summed first, since a transaction may
        touch each item only once. A failure leaves earlier chunks applied;
        the error names how many were.

        Raises:
            ValueError: If any entry is invalid; nothing is written
        """
        folded: Dict[tuple, Dict[str, Decimal]] = {}
        for identity, bucket, counters in entries:
            validate_entry(identity, bucket, counters)
            totals = folded.setdefault((identity, bucket), {})
            for name, value in counters.items():
                totals[name] = totals.get(name, Decimal(0)) + Decimal(str(value))

        stamp = _stamp(updated_at)
        keys = list(folded)
        client = self.table.meta.client
        applied = 0
        for start in range(0, len(keys), MAX_TRANSACTION_ITEMS):
            chunk = keys[start:start + MAX_TRANSACTION_ITEMS]
            items = [
                {"Update": {"TableName": self.table.name, **self._update(identity, bucket, folded[(identity, bucket)], stamp)}}
                for identity, bucket in chunk
            ]
            try:
                client.transact_write_items(TransactItems=items)
            except Exception:
                logger.error("counters_partially_merged", applied=applied, total=len(keys))
                raise
            applied += len(chunk)
        logger.debug("counters_merged", entries=applied, table=getattr(self.table, "name", None))

    def get_by_prefix(self, identity: str, prefix: str) -> List[UsageAggregate]:
        condition = Key(self.partition_key).eq(identity) & Key(self.sort_key).begins_with(prefix)
        items = _collect(self.table.query, {"KeyConditionExpression": condition})
        return sorted((self._to_aggregate(item) for item in items), key=lambda a: a.bucket)

    def list_by_prefix(self, prefix: str) -> List[UsageAggregate]:
        items = _collect(self.table.scan, {"FilterExpression": Attr(self.sort_key).begins_with(prefix)})
        return sorted((self._to_aggregate(item) for item in items), key=lambda a: (a.identity, a.bucket))

    def _update(self, identity: str, bucket: str, counters: Mapping[str, Number], stamp: str) -> Dict[str, Any]:
        names = {"#updated": "last_updated"}
        values: Dict[str, Any] = {":updated": stamp}
        additions = []
        for index, name in enumerate(COUNTER_FIELDS):
            names[f"#c{index}"] = name
            values[f":c{index}"] = Decimal(str(counters.get(name, 0)))
            additions.append(f"#c{index} :c{index}")
        return {
            "Key": {self.partition_key: identity, self.sort_key: bucket},
            "UpdateExpression": f"ADD {', '.join(additions)} SET #updated = :updated",
            "ExpressionAttributeNames": names,
            "ExpressionAttributeValues": values,
        }

    def _to_aggregate(self, item: Mapping[str, Any]) -> UsageAggregate:
        def number(name: str) -> Decimal:
            return Decimal(str(item.get(name, 0)))

        last_updated = item.get("last_updated")
        return UsageAggregate(
            identity=item[self.partition_key],
            bucket=item[self.sort_key],
            request_count=int(number("request_count")),
            bytes_sent=int(number("bytes_sent")),
            bytes_received=int(number("bytes_received")),
            total_response_time_ms=float(number("total_response_time_ms")),
            successful_requests=int(number("successful_requests")),
            error_requests=int(number("error_requests")),
            cache_hits=int(number("cache_hits")),
            cache_misses=int(number("cache_misses")),
            distinct_countries_served=int(number("distinct_countries_served")),
            estimated_cost=number("estimated_cost").quantize(_COST_QUANTUM),
            last_updated=datetime.fromisoformat(last_updated) if last_updated else None,
        )


def _stamp(updated_at: Optional[datetime]) -> str:
    return (updated_at or datetime.now(timezone.utc)).isoformat()


def _collect(operation: Callable[..., Dict[str, Any]], kwargs: Dict[str, Any]) -> List[Mapping[str, Any]]:
    items: List[Mapping[str, Any]] = []
    while True:
        response = operation(**kwargs)
        items.extend(response.get("Items", []))
        if "LastEvaluatedKey" not in response:
            return items
        kwargs = dict(kwargs, ExclusiveStartKey=response["LastEvaluatedKey"])
