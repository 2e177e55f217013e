"""
Invocation entry points.

transform_handler speaks the delivery stream's transformation protocol:

    in:  {"records": [{"recordId": "...", "data": "<base64>"}, ...]}
    out: {"records": [{"recordId": "...", "result": "Ok|Dropped|ProcessingFailed",
                       "data": "<base64>"}, ...]}

rollup_handler is triggered on a schedule (or by hand) with an optional
{"date", "pricingPolicy" or "queryType", "granularity"} event.
"""

import base64
import binascii
from typing import Any, Dict, List, Optional

import structlog

from edge_meter.config.loader import load_config_from_env
from edge_meter.core.pricing import PricingPolicy
from edge_meter.core.queries import Granularity
from edge_meter.core.rollup import RollupAggregator
from edge_meter.core.transformer import BatchTransformService, InboundUnit, Verdict
from edge_meter.factory import build_aggregator, build_transform_service
from edge_meter.logs import configure_logging

logger = structlog.get_logger()


def transform_handler(
    event: Dict[str, Any],
    context: Any = None,
    service: Optional[BatchTransformService] = None,
) -> Dict[str, List[Dict[str, str]]]:
    """Transform one delivery batch.

    A record whose data is not valid base64 is answered ProcessingFailed with
    its data echoed; it does not take part in the batch.
    """
    if service is None:
        config = load_config_from_env()
        configure_logging(config.logging.level, config.logging.format)
        service = build_transform_service(config)

    records = event.get("records") or []
    inbound: List[InboundUnit] = []
    rejected: Dict[int, Dict[str, str]] = {}
    for position, record in enumerate(records):
        record_id = record.get("recordId", "")
        raw = record.get("data") or ""
        try:
            inbound.append(InboundUnit(record_id, base64.b64decode(raw, validate=True)))
        except (binascii.Error, ValueError, TypeError):
            logger.warning("record_not_base64", correlation_id=record_id)
            rejected[position] = {"recordId": record_id, "result": Verdict.FAILED.value, "data": raw}

    processed = iter(service.process(inbound))
    output = []
    for position in range(len(records)):
        if position in rejected:
            output.append(rejected[position])
            continue
        unit = next(processed)
        output.append({
            "recordId": unit.correlation_id,
            "result": unit.verdict.value,
            "data": base64.b64encode(unit.payload).decode("ascii"),
        })
    return {"records": output}


def rollup_handler(
    event: Optional[Dict[str, Any]] = None,
    context: Any = None,
    aggregator: Optional[RollupAggregator] = None,
) -> Dict[str, Any]:
    """Run one rollup and return its summary.

    Failures propagate so the scheduler records the invocation as failed.
    """
    event = event or {}
    if aggregator is None:
        config = load_config_from_env()
        configure_logging(config.logging.level, config.logging.format)
        aggregator = build_aggregator(config)

    policy = PricingPolicy.parse(event.get("pricingPolicy") or event.get("queryType"))
    granularity = Granularity(str(event.get("granularity") or Granularity.DAY.value).lower())
    # An empty date means yesterday, like a missing one.
    query_date = event.get("date") or None
    logger.info("rollup_invoked", date=query_date, policy=policy.value, granularity=granularity.value)

    summary = aggregator.run(query_date, policy=policy, granularity=granularity)
    return summary.to_response()

