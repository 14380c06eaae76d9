"""
Historical snapshot record shapes.

Snapshot files written by different versions of the archiver do not agree on
where non-core attributes live:

- nested: current shape. {id, createdTimestamp, content, metadata?}
- flat:   legacy shape. Extra attributes (reactions, reference, mentions,
          attachments, ...) sit at the top level next to the core fields.

Each shape has exactly one upgrade function producing the current shape.
Anything that matches neither raises UnrecognizedRecordShape rather than
being guessed at.
"""

from enum import Enum
from typing import Any, Optional

from normalizer import CORE_FIELDS, normalize_reactions


class RecordShape(Enum):
    NESTED = "nested"
    FLAT = "flat"


class UnrecognizedRecordShape(ValueError):
    """A snapshot record that matches no known historical shape."""

    def __init__(self, reason: str, record: Any = None):
        self.reason = reason
        self.record_id = record.get("id") if isinstance(record, dict) else None
        super().__init__(f"{reason} (id={self.record_id})")


def _coerce_id(value: Any) -> Optional[str]:
    if isinstance(value, bool):
        return None
    if isinstance(value, int):
        return str(value)
    if isinstance(value, str) and value.isdigit():
        return value
    return None


def _coerce_timestamp(value: Any) -> Optional[int]:
    if isinstance(value, bool):
        return None
    if isinstance(value, int):
        return value
    # Some writers serialized integral milliseconds as floats
    if isinstance(value, float) and value.is_integer():
        return int(value)
    return None


def detect_shape(record: Any) -> RecordShape:
    """Classify a record, raising UnrecognizedRecordShape if it fits no version."""
    if not isinstance(record, dict):
        raise UnrecognizedRecordShape(f"record is {type(record).__name__}, not an object")
    if _coerce_id(record.get("id")) is None:
        raise UnrecognizedRecordShape("missing or non-snowflake id", record)
    if _coerce_timestamp(record.get("createdTimestamp")) is None:
        raise UnrecognizedRecordShape("missing or non-integer createdTimestamp", record)

    if "metadata" in record:
        if record["metadata"] is not None and not isinstance(record["metadata"], dict):
            raise UnrecognizedRecordShape("metadata is not an object", record)
        extra = set(record) - set(CORE_FIELDS) - {"metadata"}
        if extra:
            raise UnrecognizedRecordShape(f"metadata plus top-level extras {sorted(extra)}", record)
        return RecordShape.NESTED

    return RecordShape.FLAT


def _core(record: dict) -> dict:
    return {
        "id": _coerce_id(record["id"]),
        "createdTimestamp": _coerce_timestamp(record["createdTimestamp"]),
        "content": record.get("content"),
    }


def upgrade_nested(record: dict) -> dict:
    upgraded = _core(record)
    metadata = {
        k: v for k, v in (record.get("metadata") or {}).items()
        if k not in CORE_FIELDS
    }
    if metadata:
        upgraded["metadata"] = metadata
    return upgraded


def upgrade_flat(record: dict) -> dict:
    upgraded = _core(record)
    metadata = {}
    for key, value in record.items():
        if key in CORE_FIELDS or value is None:
            continue
        if key == "reactions" and isinstance(value, list) and value:
            value = normalize_reactions(value)
        metadata[key] = value
    if metadata:
        upgraded["metadata"] = metadata
    return upgraded


UPGRADERS = {
    RecordShape.NESTED: upgrade_nested,
    RecordShape.FLAT: upgrade_flat,
}


def upgrade_record(record: Any) -> dict:
    """Any known historical record -> current archived-message shape."""
    return UPGRADERS[detect_shape(record)](record)
