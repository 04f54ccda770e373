"""
Condition matcher shared by retention policies and notification rules.

Conditions are validated when they are loaded (see schemas.conditions); this
module only evaluates them. Evaluation fails closed: a field the record does
not have makes its condition False and is logged, it never matches.
"""
import fnmatch
import ipaddress
import logging
import operator as op
from datetime import datetime, timezone, tzinfo
from typing import Any, Optional, Sequence, Tuple
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from audit_engine.core.config import get_settings
from audit_engine.core.errors import ConfigurationError
from audit_engine.schemas.activity import ActivityRecord
from audit_engine.schemas.conditions import (
    Condition,
    Operator,
    PROPERTIES_PREFIX,
    coerce,
    field_kind,
)

logger = logging.getLogger(__name__)

MISSING = object()

_ORDERING = {
    Operator.GT: op.gt,
    Operator.GTE: op.ge,
    Operator.LT: op.lt,
    Operator.LTE: op.le,
}


def resolve_timezone(name: str) -> tzinfo:
    """
    Look up a reference timezone by IANA name.

    Raises:
        ConfigurationError: Unknown timezone name
    """
    if name.upper() == "UTC":
        return timezone.utc
    try:
        return ZoneInfo(name)
    except (ZoneInfoNotFoundError, ValueError) as e:
        raise ConfigurationError(f"Unknown reference timezone: {name!r}") from e


def resolve_field(record: ActivityRecord, field: str) -> Any:
    """Value of a record field or ``properties.<path>``; MISSING when absent."""
    if field.startswith(PROPERTIES_PREFIX):
        current: Any = record.properties
        for part in field[len(PROPERTIES_PREFIX):].split("."):
            if not isinstance(current, dict) or part not in current:
                return MISSING
            current = current[part]
        return current
    if field_kind(field) is None:
        return MISSING
    return getattr(record, field, MISSING)


def _is_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


def _coerce_dynamic(expected: Any, actual: Any) -> Any:
    """Coerce a condition value to the runtime type of a properties value."""
    if expected is None:
        return None
    if isinstance(actual, bool):
        if isinstance(expected, str):
            return expected.strip().lower() in ("1", "true", "yes")
        return bool(expected)
    if _is_number(actual):
        try:
            return float(expected)
        except (TypeError, ValueError):
            return expected
    if isinstance(actual, str):
        return expected if isinstance(expected, str) else str(expected)
    return expected


def like_matches(value: str, pattern: str) -> bool:
    """
    Case-insensitive substring test with optional leading/trailing ``%``.

    ``abc`` and ``%abc%`` mean contains, ``abc%`` starts with, ``%abc`` ends with.
    """
    value = value.lower()
    pattern = pattern.lower()
    leading = pattern.startswith("%")
    trailing = pattern.endswith("%") and len(pattern) > 1
    needle = pattern[1 if leading else 0:len(pattern) - 1 if trailing else len(pattern)]
    if leading and not trailing:
        return value.endswith(needle)
    if trailing and not leading:
        return value.startswith(needle)
    return needle in value


def ip_matches(value: str, patterns: Sequence[str]) -> bool:
    """True when the address matches any glob (``10.0.*``) or CIDR (``10.0.0.0/8``) pattern."""
    for pattern in patterns:
        if "/" in pattern:
            try:
                if ipaddress.ip_address(value) in ipaddress.ip_network(pattern, strict=False):
                    return True
            except ValueError:
                continue
        elif fnmatch.fnmatchcase(value, pattern):
            return True
    return False


class ConditionMatcher:
    """Evaluates condition lists against activity records."""

    def __init__(self, reference_tz: Optional[str] = None):
        """
        Args:
            reference_tz: IANA timezone for time_range conditions.
                Defaults to REFERENCE_TIMEZONE from settings.
        """
        name = reference_tz or get_settings().REFERENCE_TIMEZONE
        self.reference_tz = resolve_timezone(name)

    def matches(self, record: ActivityRecord, conditions: Sequence[Condition]) -> bool:
        """
        AND all conditions together. An empty list matches everything.

        Raises:
            ConfigurationError: An ordering operator met a non-numeric value
        """
        return all(self.evaluate(record, condition) for condition in conditions)

    def evaluate(self, record: ActivityRecord, condition: Condition) -> bool:
        """Evaluate one condition."""
        actual = resolve_field(record, condition.field)
        if actual is MISSING:
            logger.warning(
                f"Condition '{condition.describe()}' references a field activity {record.id} "
                f"does not have; treating as no match"
            )
            return False

        kind = field_kind(condition.field)
        operator = condition.operator

        if operator in (Operator.EQ, Operator.NE):
            expected = self._coerce(condition.value, kind, actual)
            equal = actual == expected
            return equal if operator == Operator.EQ else not equal

        if operator in _ORDERING:
            return self._compare(condition, kind, actual)

        if operator == Operator.LIKE:
            if actual is None:
                return False
            return like_matches(str(actual), condition.value)

        if operator == Operator.NOT_CONTAINS:
            if actual is None:
                return True
            return condition.value.lower() not in str(actual).lower()

        if operator == Operator.IN:
            members = tuple(self._coerce(item, kind, actual) for item in condition.value)
            return actual in members

        if operator == Operator.TIME_RANGE:
            return self._in_time_range(actual, condition.value)

        if operator == Operator.IP_MATCH:
            if not actual:
                return False
            return ip_matches(str(actual), condition.value)

        logger.warning(f"Unsupported operator in condition '{condition.describe()}'")
        return False

    def _coerce(self, value: Any, kind: Optional[str], actual: Any) -> Any:
        if kind == "dynamic":
            return _coerce_dynamic(value, actual)
        return coerce(value, kind)

    def _compare(self, condition: Condition, kind: Optional[str], actual: Any) -> bool:
        if actual is None:
            return False
        compare = _ORDERING[condition.operator]
        if kind in ("datetime", "int"):
            expected = coerce(condition.value, kind)
            if expected is None:
                raise ConfigurationError(f"Condition '{condition.describe()}' has nothing to compare against")
            return compare(actual, expected)
        # properties values are only known at evaluation time
        if not _is_number(actual):
            raise ConfigurationError(
                f"Condition '{condition.describe()}' compares a non-numeric value ({actual!r})"
            )
        try:
            expected = float(condition.value)
        except (TypeError, ValueError) as e:
            raise ConfigurationError(
                f"Condition '{condition.describe()}' needs a numeric value"
            ) from e
        return compare(actual, expected)

    def local_time(self, value: datetime) -> datetime:
        """Convert a record timestamp to the reference timezone."""
        if value.tzinfo is None:
            value = value.replace(tzinfo=timezone.utc)
        return value.astimezone(self.reference_tz)

    def _in_time_range(self, actual: Any, window: dict) -> bool:
        if not isinstance(actual, datetime):
            return False
        local = self.local_time(actual)
        hours: Optional[Tuple[int, ...]] = window.get("hours")
        days: Optional[Tuple[int, ...]] = window.get("days")
        if hours is not None and local.hour not in hours:
            return False
        # isoweekday: Monday=1 .. Sunday=7, so % 7 gives Sunday=0
        if days is not None and local.isoweekday() % 7 not in days:
            return False
        return True
