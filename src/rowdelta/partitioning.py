"""
Partition transforms.

Transforms turn a source column value into a partition value. Temporal
values are represented as integer ordinals relative to the Unix epoch, and
decimals as strings, so that partition values stay plain JSON/Avro
primitives.

``bucket[N]`` hashes with 32-bit murmur3 over the same byte encodings
Iceberg uses, so bucket numbers agree with other Iceberg writers.
"""

import re
import struct
import uuid
from datetime import date, datetime, time, timezone
from decimal import Decimal
from typing import Any, Dict, Mapping, Optional, Tuple

import mmh3

from .data_structures import PartitionSpec, Schema, decimal_precision_scale, type_family

_EPOCH_DATE = date(1970, 1, 1)
_EPOCH = datetime(1970, 1, 1)
_MICROS_PER_SECOND = 1_000_000
_MICROS_PER_HOUR = 3600 * _MICROS_PER_SECOND
_INT32_MAX = 0x7FFFFFFF

_PARAMETERIZED = re.compile(r"^(bucket|truncate)\[(\d+)\]$")

_TEMPORAL_SOURCES = {
    "year": {"date", "timestamp"},
    "month": {"date", "timestamp"},
    "day": {"date", "timestamp"},
    "hour": {"timestamp"},
}
_TRUNCATE_SOURCES = {"int", "long", "decimal", "string", "binary"}
_BUCKET_SOURCES = {
    "int", "long", "decimal", "date", "time", "timestamp",
    "string", "uuid", "fixed", "binary",
}


def parse_transform(transform: str) -> Tuple[str, Optional[int]]:
    """Split a transform string into its name and optional width.

    Raises:
        ValueError: If the transform is not supported
    """
    match = _PARAMETERIZED.match(transform)
    if match:
        width = int(match.group(2))
        if width <= 0:
            raise ValueError(f"Invalid transform width in {transform!r}")
        return match.group(1), width
    if transform in ("identity", "void") or transform in _TEMPORAL_SOURCES:
        return transform, None
    raise ValueError(f"Unsupported partition transform: {transform!r}")


def can_transform(transform: str, source_type: str) -> bool:
    """Whether ``transform`` can be applied to a column of ``source_type``"""
    name, _ = parse_transform(transform)
    family = type_family(source_type)
    if name in ("identity", "void"):
        return True
    if name == "truncate":
        return family in _TRUNCATE_SOURCES
    if name == "bucket":
        return family in _BUCKET_SOURCES
    return family in _TEMPORAL_SOURCES[name]


def apply_transform(transform: str, value: Any, source_type: Optional[str] = None) -> Any:
    """Apply a transform to one source value. Null maps to null.

    ``source_type`` fixes the scale of decimal values; without it a decimal
    keeps the exponent it was given with.
    """
    name, width = parse_transform(transform)
    if value is None or name == "void":
        return None

    if name == "identity":
        return _to_primitive(value, source_type)

    if name == "bucket":
        return (bucket_hash(value, source_type) & _INT32_MAX) % width

    if name == "truncate":
        if isinstance(value, (str, bytes)):
            return value[:width]
        if isinstance(value, Decimal):
            unscaled, scale = _unscaled(value, source_type)
            return str(Decimal(unscaled - (unscaled % width)).scaleb(-scale))
        # Python's modulo is non-negative for a positive width
        return value - (value % width)

    if name == "year":
        return _as_date(value).year - _EPOCH_DATE.year
    if name == "month":
        d = _as_date(value)
        return (d.year - _EPOCH_DATE.year) * 12 + (d.month - 1)
    if name == "day":
        return (_as_date(value) - _EPOCH_DATE).days
    if name == "hour":
        return _timestamp_micros(value) // _MICROS_PER_HOUR

    raise ValueError(f"Unsupported partition transform: {transform!r}")


def bucket_hash(value: Any, source_type: Optional[str] = None) -> int:
    """Signed 32-bit murmur3 hash of a value's Iceberg byte encoding.

    Integers and temporal ordinals hash as 8-byte little-endian longs,
    strings as UTF-8, uuids as their 16 big-endian bytes and decimals as
    the minimal big-endian two's complement of the unscaled value.
    """
    if isinstance(value, bool):
        raise TypeError("Cannot bucket boolean values")
    if isinstance(value, uuid.UUID) or source_type == "uuid":
        as_uuid = value if isinstance(value, uuid.UUID) else uuid.UUID(str(value))
        return mmh3.hash(as_uuid.bytes)
    if isinstance(value, str):
        return mmh3.hash(value.encode("utf-8"))
    if isinstance(value, (bytes, bytearray)):
        return mmh3.hash(bytes(value))
    if isinstance(value, Decimal):
        unscaled, _ = _unscaled(value, source_type)
        length = (unscaled.bit_length() + 8) // 8
        return mmh3.hash(unscaled.to_bytes(length, byteorder="big", signed=True))
    if isinstance(value, (date, time)):
        value = _to_primitive(value)
    if isinstance(value, int):
        return mmh3.hash(struct.pack("<q", value))
    raise TypeError(f"Cannot bucket values of type {type(value).__name__}")


def partition_values(
    spec: PartitionSpec, schema: Schema, row: Mapping[str, Any]
) -> Dict[str, Any]:
    """Compute the partition values of a row given by column name"""
    fields_by_id = {f["id"]: f for f in schema.fields}
    values: Dict[str, Any] = {}
    for pfield in spec.fields:
        source = fields_by_id.get(pfield.source_id)
        if source is None:
            values[pfield.name] = None
            continue
        values[pfield.name] = apply_transform(
            pfield.transform, row.get(source["name"]), source["type"]
        )
    return values


def _unscaled(value: Decimal, source_type: Optional[str]) -> Tuple[int, int]:
    decimal = decimal_precision_scale(source_type) if source_type else None
    if decimal is not None:
        scale = decimal[1]
    else:
        exponent = value.as_tuple().exponent
        scale = -exponent if isinstance(exponent, int) else 0
    return int(value.scaleb(scale).to_integral_value()), scale


def _as_date(value: Any) -> date:
    if isinstance(value, datetime):
        return _naive_utc(value).date()
    if isinstance(value, date):
        return value
    raise TypeError(f"Expected a date or timestamp, got {type(value).__name__}")


def _naive_utc(value: datetime) -> datetime:
    if value.tzinfo is not None:
        return value.astimezone(timezone.utc).replace(tzinfo=None)
    return value


def _timestamp_micros(value: Any) -> int:
    if not isinstance(value, datetime):
        raise TypeError(f"Expected a timestamp, got {type(value).__name__}")
    delta = _naive_utc(value) - _EPOCH
    return (delta.days * 86400 + delta.seconds) * _MICROS_PER_SECOND + delta.microseconds


def _to_primitive(value: Any, source_type: Optional[str] = None) -> Any:
    """Temporal identity values use the same ordinals as their storage form"""
    if isinstance(value, datetime):
        return _timestamp_micros(value)
    if isinstance(value, date):
        return (value - _EPOCH_DATE).days
    if isinstance(value, time):
        return (
            (value.hour * 3600 + value.minute * 60 + value.second) * _MICROS_PER_SECOND
            + value.microsecond
        )
    if isinstance(value, Decimal):
        unscaled, scale = _unscaled(value, source_type)
        return str(Decimal(unscaled).scaleb(-scale))
    if isinstance(value, uuid.UUID):
        return str(value)
    return value
