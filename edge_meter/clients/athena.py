"""
Athena query engine adapter.

Wraps a boto3 Athena client in the QueryEngine boundary used by the rollup.
"""

from typing import Any, Dict, List, Optional

import structlog

from edge_meter.core.engine import QueryState, QueryStatus, Row

logger = structlog.get_logger()

_STATES = {
    "QUEUED": QueryState.RUNNING,
    "RUNNING": QueryState.RUNNING,
    "SUCCEEDED": QueryState.SUCCEEDED,
    "FAILED": QueryState.FAILED,
    "CANCELLED": QueryState.CANCELLED,
}

_STATISTICS = {
    "DataScannedInBytes": "data_scanned_bytes",
    "EngineExecutionTimeInMillis": "engine_execution_ms",
    "TotalExecutionTimeInMillis": "total_execution_ms",
    "QueryQueueTimeInMillis": "queue_time_ms",
}


class AthenaQueryEngine:
    """QueryEngine backed by Amazon Athena.

    The boto3 client is injected so callers control region, credentials and
    retries.
    """

    def __init__(
        self,
        client: Any,
        database: str,
        workgroup: Optional[str] = None,
        default_output_location: Optional[str] = None,
    ):
        if not database:
            raise ValueError("database is required")
        self.client = client
        self.database = database
        self.workgroup = workgroup
        self.default_output_location = default_output_location

    def submit(self, query_text: str, output_location: Optional[str] = None) -> str:
        kwargs: Dict[str, Any] = {
            "QueryString": query_text,
            "QueryExecutionContext": {"Database": self.database},
        }
        location = output_location or self.default_output_location
        if location:
            kwargs["ResultConfiguration"] = {"OutputLocation": location}
        if self.workgroup:
            kwargs["WorkGroup"] = self.workgroup

        response = self.client.start_query_execution(**kwargs)
        query_id = response["QueryExecutionId"]
        logger.debug("athena_query_started", query_id=query_id, database=self.database)
        return query_id

    def poll(self, query_id: str) -> QueryStatus:
        execution = self.client.get_query_execution(QueryExecutionId=query_id)["QueryExecution"]
        status = execution.get("Status", {})
        raw_state = status.get("State", "RUNNING")
        state = _STATES.get(raw_state)
        if state is None:
            logger.warning("athena_unknown_state", query_id=query_id, state=raw_state)
            state = QueryState.RUNNING

        raw_stats = execution.get("Statistics", {})
        statistics = {
            name: raw_stats[source]
            for source, name in _STATISTICS.items()
            if source in raw_stats
        }
        return QueryStatus(state=state, reason=status.get("StateChangeReason"), statistics=statistics)

    def fetch(self, query_id: str) -> List[Row]:
        """Read every result page; the header row comes first."""
        paginator = self.client.get_paginator("get_query_results")
        rows: List[Row] = []
        for page in paginator.paginate(QueryExecutionId=query_id):
            for row in page["ResultSet"]["Rows"]:
                rows.append([datum.get("VarCharValue") for datum in row.get("Data", [])])
        return rows
