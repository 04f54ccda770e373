"""
Condition triples shared by retention policies and notification rules.

A condition is ``{field, operator, value}``. Operators come from a closed enum
and are checked when the condition is loaded; fields are checked against the
declared activity record fields, with ``properties.<path>`` for nested data.
"""
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional, Sequence, Tuple

from pydantic import BaseModel, ConfigDict, ValidationError, field_validator, model_validator

from audit_engine.core.errors import ConfigurationError


class Operator(str, Enum):
    """Supported condition operators."""
    EQ = "="
    NE = "!="
    GT = ">"
    GTE = ">="
    LT = "<"
    LTE = "<="
    LIKE = "like"
    NOT_CONTAINS = "not_contains"
    IN = "in"
    TIME_RANGE = "time_range"
    IP_MATCH = "ip_match"


ORDERING_OPERATORS = {Operator.GT, Operator.GTE, Operator.LT, Operator.LTE}
TEXT_OPERATORS = {Operator.LIKE, Operator.NOT_CONTAINS}

# Declared types of activity record fields
FIELD_TYPES: Dict[str, str] = {
    "id": "int",
    "type": "str",
    "module": "str",
    "description": "str",
    "user_id": "int",
    "subject_type": "str",
    "subject_id": "int",
    "ip_address": "str",
    "user_agent": "str",
    "risk_level": "int",
    "created_at": "datetime",
}

PROPERTIES_PREFIX = "properties."


def field_kind(field: str) -> Optional[str]:
    """Declared kind of a field: int, str, datetime, dynamic (properties path) or None if unknown."""
    if field in FIELD_TYPES:
        return FIELD_TYPES[field]
    if field.startswith(PROPERTIES_PREFIX) and len(field) > len(PROPERTIES_PREFIX):
        return "dynamic"
    return None


def parse_timestamp(value: Any) -> datetime:
    """Parse a datetime or ISO-8601 string into an aware UTC datetime."""
    if isinstance(value, datetime):
        parsed = value
    elif isinstance(value, str):
        parsed = datetime.fromisoformat(value.strip().replace("Z", "+00:00"))
    else:
        raise ValueError(f"not a timestamp: {value!r}")
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc)


def coerce(value: Any, kind: str) -> Any:
    """Coerce a condition value to a field kind. Raises ValueError when impossible."""
    if value is None:
        return None
    if kind == "int":
        if isinstance(value, bool):
            raise ValueError(f"expected an integer, got {value!r}")
        if isinstance(value, int):
            return value
        if isinstance(value, float) and value.is_integer():
            return int(value)
        if isinstance(value, str):
            return int(value.strip())
        raise ValueError(f"expected an integer, got {value!r}")
    if kind == "str":
        return value if isinstance(value, str) else str(value)
    if kind == "datetime":
        return parse_timestamp(value)
    return value


def _parse_hour(value: Any) -> int:
    if isinstance(value, str) and ":" in value:
        value = value.split(":", 1)[0]
    hour = int(value)
    if not 0 <= hour <= 23:
        raise ValueError(f"hour out of range: {value!r}")
    return hour


def _expand_hours(start: int, end: int) -> Tuple[int, ...]:
    """Hours from start (inclusive) to end (exclusive), wrapping past midnight."""
    if start == end:
        return tuple(range(24))
    hours = []
    hour = start
    while hour != end:
        hours.append(hour)
        hour = (hour + 1) % 24
    return tuple(sorted(hours))


def normalize_time_range(value: Any) -> Dict[str, Optional[Tuple[int, ...]]]:
    """
    Normalize a time_range value to ``{"hours": (...), "days": (...) or None}``.

    Accepted forms:
        [22, 23, 0, 1]                        explicit hour set
        {"start": 22, "end": 6}               wraparound range, end exclusive
        "22:00-06:00"                         same, as text
        {"hours": [...], "days": [0, 6]}      hours and/or days (0 = Sunday)
    """
    hours: Optional[Tuple[int, ...]] = None
    days: Optional[Tuple[int, ...]] = None
    if isinstance(value, str):
        if "-" not in value:
            raise ValueError(f"time_range text must look like 22:00-06:00, got {value!r}")
        start, end = value.split("-", 1)
        hours = _expand_hours(_parse_hour(start), _parse_hour(end))
    elif isinstance(value, (list, tuple, set, frozenset)):
        hours = tuple(sorted({_parse_hour(h) for h in value}))
    elif isinstance(value, dict):
        if "start" in value or "end" in value:
            hours = _expand_hours(_parse_hour(value["start"]), _parse_hour(value["end"]))
        elif "hours" in value:
            hours = tuple(sorted({_parse_hour(h) for h in value["hours"]}))
        if "days" in value:
            parsed_days = {int(d) for d in value["days"]}
            if any(not 0 <= d <= 6 for d in parsed_days):
                raise ValueError("days must be between 0 (Sunday) and 6 (Saturday)")
            days = tuple(sorted(parsed_days))
        if hours is None and days is None:
            raise ValueError("time_range mapping needs start/end, hours or days")
    else:
        raise ValueError(f"unsupported time_range value: {value!r}")
    return {"hours": hours, "days": days}


class Condition(BaseModel):
    """A single {field, operator, value} triple."""
    model_config = ConfigDict(frozen=True, validate_default=True)

    field: str
    operator: Operator
    value: Any = None

    @model_validator(mode="before")
    @classmethod
    def accept_triple(cls, data):
        """Allow ["risk_level", ">=", 8] as shorthand."""
        if isinstance(data, (list, tuple)):
            if len(data) != 3:
                raise ValueError(f"condition triple needs 3 items, got {len(data)}")
            return {"field": data[0], "operator": data[1], "value": data[2]}
        return data

    @field_validator("value")
    @classmethod
    def normalize_value(cls, v, info):
        """Shape the value for its operator."""
        operator = info.data.get("operator")
        if operator == Operator.IN:
            if not isinstance(v, (list, tuple, set, frozenset)):
                raise ValueError("'in' needs a list of values")
            return tuple(v)
        if operator == Operator.IP_MATCH:
            if isinstance(v, str):
                return (v,)
            if not isinstance(v, (list, tuple)) or not v:
                raise ValueError("'ip_match' needs a pattern or a list of patterns")
            return tuple(str(p) for p in v)
        if operator == Operator.TIME_RANGE:
            return normalize_time_range(v)
        if operator in TEXT_OPERATORS:
            if v is None:
                raise ValueError(f"'{operator.value}' needs a text value")
            return str(v)
        if operator in ORDERING_OPERATORS and v is None:
            raise ValueError(f"'{operator.value}' needs a value to compare against")
        return v

    @model_validator(mode="after")
    def check_field_compatibility(self):
        """Reject operator/field combinations that can never be evaluated."""
        kind = field_kind(self.field)
        if self.operator == Operator.TIME_RANGE and self.field != "created_at":
            raise ValueError("'time_range' only applies to created_at")
        if self.operator in ORDERING_OPERATORS:
            if kind == "str":
                raise ValueError(f"'{self.operator.value}' needs a numeric field, {self.field} is text")
            if kind in ("int", "datetime"):
                coerce(self.value, kind)
        if self.operator in (Operator.EQ, Operator.NE) and kind in ("int", "datetime"):
            coerce(self.value, kind)
        if self.operator == Operator.IN and kind in ("int", "datetime"):
            for item in self.value:
                coerce(item, kind)
        return self

    def describe(self) -> str:
        return f"{self.field} {self.operator.value} {self.value!r}"


def parse_conditions(raw: Optional[Sequence[Any]]) -> Tuple[Condition, ...]:
    """
    Load a list of raw conditions.

    Raises:
        ConfigurationError: unknown operator or an unusable value
    """
    if raw is None:
        return ()
    if isinstance(raw, dict):
        raise ConfigurationError("conditions must be a list of {field, operator, value} triples")
    conditions: List[Condition] = []
    for index, item in enumerate(raw):
        if isinstance(item, Condition):
            conditions.append(item)
            continue
        try:
            conditions.append(Condition.model_validate(item))
        except (ValidationError, ValueError, TypeError) as e:
            raise ConfigurationError(f"Invalid condition #{index}: {e}") from e
    return tuple(conditions)
