"""
Query engine boundary.

The rollup submits SQL to an external engine and polls it; this module
defines the shape of that conversation.
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional, Protocol

Row = List[Optional[str]]


class QueryState(Enum):
    """Lifecycle of a submitted query as reported by the engine."""
    RUNNING = "RUNNING"
    SUCCEEDED = "SUCCEEDED"
    FAILED = "FAILED"
    CANCELLED = "CANCELLED"


@dataclass(frozen=True)
class QueryStatus:
    """One poll result."""
    state: QueryState
    reason: Optional[str] = None
    statistics: Dict[str, Any] = field(default_factory=dict)


class QueryEngine(Protocol):
    """SQL-over-object-storage engine."""

    def submit(self, query_text: str, output_location: Optional[str] = None) -> str:
        """Start a query and return its id."""
        ...

    def poll(self, query_id: str) -> QueryStatus:
        ...

    def fetch(self, query_id: str) -> List[Row]:
        """All result rows; the first row holds the column names."""
        ...
