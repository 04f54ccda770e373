"""
Canonical encoding of activity records.

The encoding is the MAC input for sealing, so it must not change for a
logically identical record. Fields are written in a fixed order, each framed
as ``name:length:payload`` where payload is ``<tag><text>``::

    ~        null
    i<int>   integer
    s<text>  string
    t<iso>   UTC timestamp, second precision
    j<json>  properties, keys sorted at every level

Lengths count UTF-8 bytes, so no value can spill into the next field.
"""
import json
from datetime import datetime, timezone
from typing import Any, Tuple

from audit_engine.schemas.activity import ActivityRecord

CANONICAL_FIELDS: Tuple[str, ...] = (
    "id",
    "type",
    "module",
    "description",
    "user_id",
    "subject_type",
    "subject_id",
    "ip_address",
    "user_agent",
    "properties",
    "risk_level",
    "created_at",
)


def _payload(value: Any) -> str:
    if value is None:
        return "~"
    if isinstance(value, bool):
        # bool before int: True must not encode like 1
        return "j" + json.dumps(value)
    if isinstance(value, int):
        return f"i{value}"
    if isinstance(value, str):
        return "s" + value
    if isinstance(value, datetime):
        if value.tzinfo is None:
            value = value.replace(tzinfo=timezone.utc)
        value = value.astimezone(timezone.utc).replace(microsecond=0)
        return "t" + value.strftime("%Y-%m-%dT%H:%M:%SZ")
    return "j" + json.dumps(
        value,
        sort_keys=True,
        separators=(",", ":"),
        ensure_ascii=False,
        allow_nan=False,
    )


def encode_field(name: str, value: Any) -> bytes:
    """Frame one field as ``name:length:payload``."""
    payload = _payload(value).encode("utf-8")
    return name.encode("ascii") + b":" + str(len(payload)).encode("ascii") + b":" + payload


def encode_record(record: ActivityRecord) -> bytes:
    """
    Serialize a record (signature excluded) into its canonical byte string.

    Args:
        record: Activity record

    Returns:
        Canonical bytes, identical for records with equal field values

    Raises:
        ValueError: properties hold values JSON cannot represent
        TypeError: properties hold non-serializable objects
    """
    parts = []
    for name in CANONICAL_FIELDS:
        value = getattr(record, name)
        if name == "properties":
            # Empty and missing properties are the same record
            value = dict(value or {})
        parts.append(encode_field(name, value))
    return b"\n".join(parts)
