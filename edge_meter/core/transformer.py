"""
Record transformation.

Maps raw log units to typed JSON records, one verdict per unit. A unit that
fails never affects the other units of its batch.

Verdicts:
1. DELIVERED - decoded; payload is the JSON record including the identity
2. DROPPED - empty or whitespace-only unit; deliberately skipped
3. FAILED - unit could not be decoded; payload is the original bytes so the
   delivery stream can route it to its error output
"""

from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from enum import Enum
from typing import List, Optional, Sequence, Tuple

import structlog

from edge_meter.storage.models import TelemetryRecord
from .decoder import FieldCoercionError, MalformedRecord, decode_record
from .identity import IdentityExtractor
from .schema import HEADER_BLOB_FIELD, REALTIME_LOG_SCHEMA, RecordSchema

logger = structlog.get_logger()


class Verdict(Enum):
    """Per-unit outcome, valued with the delivery stream's result names."""
    DELIVERED = "Ok"
    DROPPED = "Dropped"
    FAILED = "ProcessingFailed"


@dataclass(frozen=True)
class TransformResult:
    """Outcome of transforming one unit: a record or the reason there is none."""
    verdict: Verdict
    record: Optional[TelemetryRecord] = None
    error: Optional[str] = None
    degraded_fields: Tuple[str, ...] = field(default_factory=tuple)


@dataclass(frozen=True)
class InboundUnit:
    correlation_id: str
    data: bytes


@dataclass(frozen=True)
class OutboundUnit:
    correlation_id: str
    verdict: Verdict
    payload: bytes


@dataclass(frozen=True)
class BatchReport:
    """Verdict counts for one batch."""
    delivered: int
    dropped: int
    failed: int
    identity_decode_failures: int = 0

    @classmethod
    def from_units(cls, units: Sequence[OutboundUnit], identity_decode_failures: int = 0) -> "BatchReport":
        return cls(
            delivered=sum(1 for unit in units if unit.verdict is Verdict.DELIVERED),
            dropped=sum(1 for unit in units if unit.verdict is Verdict.DROPPED),
            failed=sum(1 for unit in units if unit.verdict is Verdict.FAILED),
            identity_decode_failures=identity_decode_failures,
        )


class RecordTransformer:
    """Decoder and identity extractor composed into one unit mapping."""

    def __init__(
        self,
        schema: RecordSchema = REALTIME_LOG_SCHEMA,
        extractor: Optional[IdentityExtractor] = None,
        delimiter: str = "\t",
    ):
        self.schema = schema
        self.extractor = extractor or IdentityExtractor()
        self.delimiter = delimiter

    def transform(self, data: bytes) -> TransformResult:
        """Transform one raw unit.

        Decode problems are returned as a FAILED result rather than raised.

        Args:
            data: Raw bytes of one log line

        Returns:
            TransformResult carrying the verdict and, when delivered, the record
        """
        try:
            text = data.decode("utf-8")
        except UnicodeDecodeError as e:
            return TransformResult(Verdict.FAILED, error=f"Record is not valid UTF-8: {e}")

        if not text.strip():
            return TransformResult(Verdict.DROPPED)

        try:
            decoded = decode_record(text, self.schema, self.delimiter)
        except (MalformedRecord, FieldCoercionError) as e:
            return TransformResult(Verdict.FAILED, error=str(e))

        identity = self.extractor.extract(decoded.values.get(HEADER_BLOB_FIELD))
        return TransformResult(
            Verdict.DELIVERED,
            record=TelemetryRecord(fields=decoded.values, identity_token=identity),
            degraded_fields=tuple(decoded.degraded_fields),
        )


class BatchTransformService:
    """Applies a RecordTransformer to every unit of a delivery batch.

    Units are independent, so they are fanned out over a bounded thread
    pool; the returned list is always in input order.
    """

    def __init__(self, transformer: Optional[RecordTransformer] = None, max_workers: int = 8):
        if max_workers <= 0:
            raise ValueError("max_workers must be > 0")
        self.transformer = transformer or RecordTransformer()
        self.max_workers = max_workers

    def process(self, units: Sequence[InboundUnit]) -> List[OutboundUnit]:
        """Transform a batch.

        Args:
            units: Inbound units with their correlation ids

        Returns:
            One OutboundUnit per input, same order and correlation ids
        """
        if not units:
            return []

        failures_before = self.transformer.extractor.decode_failures
        workers = min(self.max_workers, len(units))
        logger.info("batch_received", units=len(units), workers=workers)
        if workers == 1:
            outbound = [self._process_one(unit) for unit in units]
        else:
            with ThreadPoolExecutor(max_workers=workers) as pool:
                outbound = list(pool.map(self._process_one, units))

        report = BatchReport.from_units(
            outbound,
            identity_decode_failures=self.transformer.extractor.decode_failures - failures_before,
        )
        logger.info(
            "batch_processed",
            delivered=report.delivered,
            dropped=report.dropped,
            failed=report.failed,
            identity_decode_failures=report.identity_decode_failures,
        )
        return outbound

    def _process_one(self, unit: InboundUnit) -> OutboundUnit:
        try:
            result = self.transformer.transform(unit.data)
            if result.verdict is Verdict.DELIVERED:
                if result.degraded_fields:
                    logger.warning(
                        "record_fields_degraded",
                        correlation_id=unit.correlation_id,
                        fields=list(result.degraded_fields),
                    )
                return OutboundUnit(unit.correlation_id, result.verdict, result.record.to_json_line())
        except Exception:
            # Isolate the unit; siblings in the batch keep going.
            logger.exception("record_transform_crashed", correlation_id=unit.correlation_id)
            return OutboundUnit(unit.correlation_id, Verdict.FAILED, unit.data)

        if result.verdict is Verdict.FAILED:
            logger.warning("record_failed", correlation_id=unit.correlation_id, error=result.error)
        return OutboundUnit(unit.correlation_id, result.verdict, unit.data)
