"""
Data models for the metering pipeline.

Defines the typed telemetry record and the per-bucket usage aggregate.
"""

import json
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, Mapping, Optional, Union

from edge_meter.core.schema import IDENTITY_FIELD

Number = Union[int, float, Decimal]

# Counters merged with ADD semantics, in storage column order.
COUNTER_FIELDS = (
    "request_count",
    "bytes_sent",
    "bytes_received",
    "total_response_time_ms",
    "successful_requests",
    "error_requests",
    "cache_hits",
    "cache_misses",
    "distinct_countries_served",
    "estimated_cost",
)


@dataclass(frozen=True)
class TelemetryRecord:
    """One normalized edge request.

    Every declared schema field is present in ``fields``; absent values are
    None, never "" or 0.
    """
    fields: Mapping[str, Any]
    identity_token: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        data = dict(self.fields)
        data[IDENTITY_FIELD] = self.identity_token
        return data

    def to_json_line(self) -> bytes:
        """Serialize as one newline-terminated JSON object."""
        return (json.dumps(self.to_dict(), separators=(",", ":")) + "\n").encode("utf-8")


@dataclass(frozen=True)
class UsageAggregate:
    """Accumulated usage for one identity in one day or hour bucket.

    Response time is stored as a total so that merges stay additive;
    the average is derived on read.
    """
    identity: str
    bucket: str
    request_count: int = 0
    bytes_sent: int = 0
    bytes_received: int = 0
    total_response_time_ms: float = 0.0
    successful_requests: int = 0
    error_requests: int = 0
    cache_hits: int = 0
    cache_misses: int = 0
    distinct_countries_served: int = 0
    estimated_cost: Decimal = field(default_factory=lambda: Decimal("0"))
    last_updated: Optional[datetime] = None

    def __post_init__(self):
        """Validate counters are not negative."""
        for name in COUNTER_FIELDS:
            if getattr(self, name) < 0:
                raise ValueError(f"{name} cannot be negative")

    @property
    def avg_response_time_ms(self) -> float:
        if self.request_count == 0:
            return 0.0
        return self.total_response_time_ms / self.request_count

    def counters(self) -> Dict[str, Number]:
        return {name: getattr(self, name) for name in COUNTER_FIELDS}
