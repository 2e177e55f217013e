"""
Adapters for the AWS services behind the query engine and counter store.
"""

from .athena import AthenaQueryEngine
from .dynamodb import DynamoCounterStore

__all__ = ["AthenaQueryEngine", "DynamoCounterStore"]
