"""
Record decoding.

Turns one tab-delimited real-time log line into a typed field mapping,
driven entirely by a RecordSchema.
"""

import math
import re
from dataclasses import dataclass, field
from decimal import Decimal, InvalidOperation
from typing import Any, Dict, List, Optional, Tuple

from .schema import FieldSpec, FieldType, RecordSchema, REALTIME_LOG_SCHEMA

ABSENT_TOKENS = frozenset({"-", ""})

_INTEGER_RE = re.compile(r"^[+-]?\d+$")
_DECIMAL_RE = re.compile(r"^[+-]?(\d+(\.\d*)?|\.\d+)([eE][+-]?\d+)?$")


class MalformedRecord(ValueError):
    """The raw unit cannot be tokenized into a record."""


class FieldCoercionError(ValueError):
    """A present token is not parseable as its declared type."""

    def __init__(self, field_name: str, token: str, field_type: FieldType):
        super().__init__(
            f"Field '{field_name}' expected {field_type.value}, got {token!r}"
        )
        self.field_name = field_name
        self.token = token
        self.field_type = field_type


@dataclass(frozen=True)
class DecodedRecord:
    """Typed values keyed by field name plus any degraded fields."""
    values: Dict[str, Any]
    received_fields: int
    coercion_errors: Tuple[FieldCoercionError, ...] = field(default_factory=tuple)

    @property
    def degraded_fields(self) -> List[str]:
        return [error.field_name for error in self.coercion_errors]


def coerce_token(spec: FieldSpec, token: str) -> Any:
    """Convert a single raw token according to its field spec.

    Args:
        spec: Field declaration
        token: Raw token from the line

    Returns:
        None for the absence sentinel, otherwise the typed value

    Raises:
        FieldCoercionError: If the token does not parse as the declared type
    """
    if token in ABSENT_TOKENS:
        return None

    if spec.type is FieldType.STRING:
        return token

    if spec.type is FieldType.INTEGER:
        if not _INTEGER_RE.match(token):
            raise FieldCoercionError(spec.name, token, spec.type)
        return int(token, 10)

    if not _DECIMAL_RE.match(token):
        raise FieldCoercionError(spec.name, token, spec.type)
    try:
        seconds = Decimal(token)
    except InvalidOperation:
        raise FieldCoercionError(spec.name, token, spec.type)

    if spec.type is FieldType.TIMESTAMP:
        # int() on a Decimal truncates toward zero
        return int(seconds * 1000)
    value = float(seconds)
    # Overflowing exponents become inf, which has no JSON form.
    if not math.isfinite(value):
        raise FieldCoercionError(spec.name, token, spec.type)
    return value


def decode_record(
    line: Optional[str],
    schema: RecordSchema = REALTIME_LOG_SCHEMA,
    delimiter: str = "\t",
) -> DecodedRecord:
    """Decode one positional log line into typed values.

    Tokens are zipped against the schema up to min(received, declared).
    Declared fields past the received count are None; surplus tokens are
    ignored. Coercion failures on load-bearing fields are raised, failures on
    other fields degrade the value to None and are reported on the result.

    Args:
        line: Raw text of one record
        schema: Positional schema to decode against
        delimiter: Field separator

    Returns:
        DecodedRecord with a value (or None) for every declared field

    Raises:
        MalformedRecord: If the line is empty, whitespace-only or truncated
        FieldCoercionError: If a load-bearing field does not parse
    """
    if line is None or not line.strip():
        raise MalformedRecord("Record is empty")

    tokens = line.rstrip("\r\n").split(delimiter)
    if len(tokens) < schema.min_fields:
        raise MalformedRecord(
            f"Expected at least {schema.min_fields} fields, got {len(tokens)}"
        )

    values: Dict[str, Any] = {}
    errors: List[FieldCoercionError] = []
    for spec, token in zip(schema.fields, tokens):
        try:
            values[spec.name] = coerce_token(spec, token)
        except FieldCoercionError as e:
            if spec.load_bearing:
                raise
            values[spec.name] = None
            errors.append(e)

    for spec in schema.fields[len(tokens):]:
        values[spec.name] = None

    return DecodedRecord(
        values=values,
        received_fields=len(tokens),
        coercion_errors=tuple(errors),
    )
