"""
Positional schema for edge real-time log records.

The schema is a table: adding, removing or retyping a field is a data change
to REALTIME_LOG_SCHEMA, not a change to the decoder.
"""

from dataclasses import dataclass
from enum import Enum
from typing import Iterable, Optional, Tuple


class FieldType(Enum):
    """Type tag controlling how a raw token is coerced."""
    STRING = "string"
    INTEGER = "int"
    FLOAT = "float"
    TIMESTAMP = "timestamp"  # decimal seconds, stored as integer milliseconds


class CacheResult(Enum):
    """Edge cache outcome for a request (x_edge_result_type)."""
    HIT = "Hit"
    REFRESH_HIT = "RefreshHit"
    MISS = "Miss"
    ERROR = "Error"
    OTHER = "Other"

    @classmethod
    def from_token(cls, value: Optional[str]) -> "CacheResult":
        """Classify a raw result type, case-insensitively."""
        if not value:
            return cls.OTHER
        lowered = value.strip().lower()
        for member in cls:
            if member.value.lower() == lowered:
                return member
        return cls.OTHER

    @property
    def served_from_cache(self) -> bool:
        return self in (CacheResult.HIT, CacheResult.REFRESH_HIT)


@dataclass(frozen=True)
class FieldSpec:
    """One positional column of the log line."""
    name: str
    type: FieldType = FieldType.STRING
    load_bearing: bool = False  # coercion failure fails the whole record


@dataclass(frozen=True)
class RecordSchema:
    """Ordered field declarations plus the trailing-field tolerance."""
    fields: Tuple[FieldSpec, ...]
    optional_trailing: int = 1

    def __post_init__(self):
        """Validate the schema is usable."""
        if not self.fields:
            raise ValueError("schema must declare at least one field")
        names = [spec.name for spec in self.fields]
        if len(set(names)) != len(names):
            raise ValueError("schema field names must be unique")
        if self.optional_trailing < 0 or self.optional_trailing >= len(self.fields):
            raise ValueError("optional_trailing must be between 0 and the field count - 1")

    def __len__(self) -> int:
        return len(self.fields)

    @property
    def names(self) -> Tuple[str, ...]:
        return tuple(spec.name for spec in self.fields)

    @property
    def min_fields(self) -> int:
        """Fewest tokens a well-formed line may carry."""
        return len(self.fields) - self.optional_trailing

    @classmethod
    def from_declarations(cls, declarations: Iterable[str], optional_trailing: int = 1) -> "RecordSchema":
        """Build a schema from ``name`` or ``name:type`` strings.

        A trailing ``!`` on the type marks the field load-bearing, e.g.
        ``sc_bytes:int!``.

        Raises:
            ValueError: If a declaration names an unknown type
        """
        fields = []
        for declaration in declarations:
            name, _, type_tag = declaration.partition(":")
            name = name.strip()
            type_tag = type_tag.strip()
            load_bearing = type_tag.endswith("!")
            type_tag = type_tag.rstrip("!") or FieldType.STRING.value
            try:
                field_type = FieldType(type_tag)
            except ValueError:
                valid = [t.value for t in FieldType]
                raise ValueError(f"Unknown type '{type_tag}' for field '{name}', expected one of: {valid}")
            if not name:
                raise ValueError(f"Field declaration '{declaration}' has no name")
            fields.append(FieldSpec(name, field_type, load_bearing))
        return cls(tuple(fields), optional_trailing)


_S = FieldType.STRING
_I = FieldType.INTEGER
_F = FieldType.FLOAT

# Column order as emitted by the CDN real-time log stream.
REALTIME_LOG_SCHEMA = RecordSchema(
    fields=(
        FieldSpec("timestamp", FieldType.TIMESTAMP, load_bearing=True),
        FieldSpec("c_ip"),
        FieldSpec("s_ip"),
        FieldSpec("time_to_first_byte", _F),
        FieldSpec("sc_status", _I, load_bearing=True),
        FieldSpec("sc_bytes", _I, load_bearing=True),
        FieldSpec("cs_method"),
        FieldSpec("cs_protocol"),
        FieldSpec("cs_host"),
        FieldSpec("cs_uri_stem"),
        FieldSpec("cs_bytes", _I),
        FieldSpec("x_edge_location"),
        FieldSpec("x_edge_request_id"),
        FieldSpec("x_host_header"),
        FieldSpec("time_taken", _F),
        FieldSpec("cs_protocol_version"),
        FieldSpec("c_ip_version"),
        FieldSpec("cs_user_agent"),
        FieldSpec("cs_referer"),
        FieldSpec("cs_cookie"),
        FieldSpec("cs_uri_query"),
        FieldSpec("x_edge_response_result_type"),
        FieldSpec("x_forwarded_for"),
        FieldSpec("ssl_protocol"),
        FieldSpec("ssl_cipher"),
        FieldSpec("x_edge_result_type"),
        FieldSpec("fle_encrypted_fields", _I),
        FieldSpec("fle_status"),
        FieldSpec("sc_content_type"),
        FieldSpec("sc_content_len", _I),
        FieldSpec("sc_range_start", _I),
        FieldSpec("sc_range_end", _I),
        FieldSpec("c_port", _I),
        FieldSpec("x_edge_detailed_result_type"),
        FieldSpec("c_country"),
        FieldSpec("cs_accept_encoding"),
        FieldSpec("cs_accept"),
        FieldSpec("cache_behavior_path_pattern"),
        FieldSpec("cs_headers"),
        FieldSpec("cs_header_names"),
        FieldSpec("cs_headers_count", _I),
        FieldSpec("origin_fbl", _F),
        FieldSpec("origin_lbl", _F),
        FieldSpec("asn", _I),
    ),
    optional_trailing=1,
)

HEADER_BLOB_FIELD = "cs_headers"
IDENTITY_FIELD = "api_key"
