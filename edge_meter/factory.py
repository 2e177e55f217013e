"""
Component wiring.

Builds stores, engines and services from a MeterConfig. Nothing is cached at
module level; entry points call these once per invocation or hold the result.
"""

from typing import Any, Optional

import boto3
import structlog

from edge_meter.clients.athena import AthenaQueryEngine
from edge_meter.clients.dynamodb import DynamoCounterStore
from edge_meter.config.loader import MeterConfig, StorageBackend
from edge_meter.core.identity import IdentityExtractor
from edge_meter.core.rollup import RollupAggregator
from edge_meter.core.transformer import BatchTransformService, RecordTransformer
from edge_meter.core.usage import UsageReader
from edge_meter.storage.repository import CounterStore, SqliteCounterStore, initialize_schema

logger = structlog.get_logger()


def build_store(config: MeterConfig, resource: Optional[Any] = None) -> CounterStore:
    """Return the configured counter store.

    Args:
        config: Loaded configuration
        resource: Optional boto3 DynamoDB service resource to use

    Returns:
        SqliteCounterStore or DynamoCounterStore
    """
    storage = config.storage
    if storage.backend is StorageBackend.DYNAMODB:
        if not storage.usage_table:
            raise ValueError("usage_table is required for the dynamodb backend")
        resource = resource or boto3.resource("dynamodb", region_name=storage.region)
        logger.debug("store_selected", backend=storage.backend.value, table=storage.usage_table)
        return DynamoCounterStore(resource.Table(storage.usage_table))

    initialize_schema(storage.sqlite_path)
    logger.debug("store_selected", backend=storage.backend.value, path=storage.sqlite_path)
    return SqliteCounterStore(storage.sqlite_path)


def build_query_engine(config: MeterConfig, client: Optional[Any] = None) -> AthenaQueryEngine:
    storage = config.storage
    if not storage.athena_database:
        raise ValueError("athena_database is required to run rollups")
    return AthenaQueryEngine(
        client or boto3.client("athena", region_name=storage.region),
        database=storage.athena_database,
        workgroup=storage.athena_workgroup,
        default_output_location=config.rollup.output_location,
    )


def build_aggregator(
    config: MeterConfig,
    engine: Optional[Any] = None,
    store: Optional[CounterStore] = None,
) -> RollupAggregator:
    return RollupAggregator(
        engine=engine or build_query_engine(config),
        store=store or build_store(config),
        settings=config.rollup,
        rates=config.pricing,
    )


def build_transform_service(config: MeterConfig) -> BatchTransformService:
    transformer = RecordTransformer(
        schema=config.transform.schema,
        extractor=IdentityExtractor(config.transform.identity_header),
    )
    return BatchTransformService(transformer, max_workers=config.transform.max_workers)


def build_usage_reader(config: MeterConfig, store: Optional[CounterStore] = None) -> UsageReader:
    return UsageReader(store or build_store(config))
