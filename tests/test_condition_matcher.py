"""
Tests for condition parsing and evaluation.
"""
from datetime import datetime, timezone

import pytest

from audit_engine.core.errors import ConfigurationError
from audit_engine.schemas.conditions import Condition, Operator, parse_conditions
from audit_engine.services.condition_matcher import ConditionMatcher, ip_matches, like_matches

from helpers import make_record


@pytest.fixture
def matcher():
    return ConditionMatcher("UTC")


def cond(field, operator, value):
    return parse_conditions([[field, operator, value]])[0]


def test_empty_conditions_match_everything(matcher):
    assert matcher.matches(make_record(), [])


def test_conditions_are_anded(matcher):
    record = make_record(risk_level=8, type="delete_user")
    assert matcher.matches(record, parse_conditions([["risk_level", ">=", 8], ["type", "=", "delete_user"]]))
    assert not matcher.matches(record, parse_conditions([["risk_level", ">=", 8], ["type", "=", "login"]]))


@pytest.mark.parametrize("operator,value,expected", [
    ("=", 5, True),
    ("=", "5", True),
    ("!=", 5, False),
    (">", 4, True),
    (">=", 5, True),
    ("<", 5, False),
    ("<=", 5, True),
])
def test_integer_comparisons_coerce_value(matcher, operator, value, expected):
    assert matcher.evaluate(make_record(risk_level=5), cond("risk_level", operator, value)) is expected


def test_datetime_ordering(matcher):
    record = make_record(created_at=datetime(2024, 3, 1, 12, 0, tzinfo=timezone.utc))
    assert matcher.evaluate(record, cond("created_at", "<", "2024-03-02T00:00:00Z"))
    assert not matcher.evaluate(record, cond("created_at", ">", "2024-03-02T00:00:00Z"))


def test_like_patterns():
    assert like_matches("Failed login from host", "%login%")
    assert like_matches("Failed login", "failed%")
    assert like_matches("Failed login", "%LOGIN")
    assert not like_matches("Failed login", "login%")
    assert like_matches("Failed login", "login")


def test_like_and_not_contains_on_null(matcher):
    record = make_record(module=None)
    assert not matcher.evaluate(record, cond("module", "like", "auth"))
    assert matcher.evaluate(record, cond("module", "not_contains", "auth"))


def test_not_contains_is_case_insensitive(matcher):
    record = make_record(description="Password RESET requested")
    assert not matcher.evaluate(record, cond("description", "not_contains", "reset"))
    assert matcher.evaluate(record, cond("description", "not_contains", "delete"))


def test_in_operator(matcher):
    record = make_record(user_id=42)
    assert matcher.evaluate(record, cond("user_id", "in", [1, "42"]))
    assert not matcher.evaluate(record, cond("user_id", "in", [1, 2]))


def test_ip_match_glob_and_cidr():
    assert ip_matches("10.0.0.5", ["10.0.*"])
    assert ip_matches("10.0.0.5", ["192.168.0.0/16", "10.0.0.0/8"])
    assert not ip_matches("172.16.0.1", ["10.0.0.0/8", "192.168.*"])
    assert not ip_matches("not-an-ip", ["10.0.0.0/8"])


def test_ip_match_on_missing_address(matcher):
    assert not matcher.evaluate(make_record(ip_address=None), cond("ip_address", "ip_match", "10.*"))


def test_time_range_wraps_midnight(matcher):
    night = cond("created_at", "time_range", "22:00-06:00")
    assert matcher.evaluate(make_record(created_at=datetime(2024, 3, 1, 23, 30, tzinfo=timezone.utc)), night)
    assert matcher.evaluate(make_record(created_at=datetime(2024, 3, 2, 5, 59, tzinfo=timezone.utc)), night)
    assert not matcher.evaluate(make_record(created_at=datetime(2024, 3, 2, 6, 0, tzinfo=timezone.utc)), night)


def test_time_range_days_use_sunday_as_zero(matcher):
    weekend = cond("created_at", "time_range", {"days": [0, 6]})
    saturday = make_record(created_at=datetime(2024, 3, 2, 12, 0, tzinfo=timezone.utc))
    friday = make_record(created_at=datetime(2024, 3, 1, 12, 0, tzinfo=timezone.utc))
    assert matcher.evaluate(saturday, weekend)
    assert not matcher.evaluate(friday, weekend)


def test_time_range_uses_reference_timezone():
    matcher = ConditionMatcher("America/New_York")
    # 03:00 UTC is 22:00 the previous evening in New York (EST)
    record = make_record(created_at=datetime(2024, 1, 10, 3, 0, tzinfo=timezone.utc))
    assert matcher.evaluate(record, cond("created_at", "time_range", [22]))


def test_unknown_timezone_is_configuration_error():
    with pytest.raises(ConfigurationError):
        ConditionMatcher("Mars/Olympus_Mons")


def test_properties_paths(matcher):
    record = make_record(properties={"target": {"env": "prod"}, "attempts": 7, "admin": True})
    assert matcher.evaluate(record, cond("properties.target.env", "=", "prod"))
    assert matcher.evaluate(record, cond("properties.attempts", ">", "5"))
    assert matcher.evaluate(record, cond("properties.admin", "=", "true"))


def test_missing_field_is_false_and_logged(matcher, caplog):
    record = make_record(properties={})
    with caplog.at_level("WARNING"):
        assert not matcher.evaluate(record, cond("properties.missing", "=", "x"))
        assert not matcher.evaluate(record, cond("properties.missing", "not_contains", "x"))
    assert "does not have" in caplog.text


def test_unknown_top_level_field_is_false(matcher):
    assert not matcher.evaluate(make_record(), Condition(field="hostname", operator="=", value="x"))


def test_ordering_on_non_numeric_property_raises(matcher):
    record = make_record(properties={"level": "high"})
    with pytest.raises(ConfigurationError):
        matcher.evaluate(record, cond("properties.level", ">", 3))


def test_ordering_on_null_is_false(matcher):
    assert not matcher.evaluate(make_record(user_id=None), cond("user_id", ">", 1))


@pytest.mark.parametrize("raw", [
    [["risk_level", "~=", 3]],
    [["risk_level", ">", "high"]],
    [["type", ">", "a"]],
    [["description", "time_range", "22:00-06:00"]],
    [["created_at", "time_range", "late"]],
    [["user_id", "in", 5]],
    [["risk_level", ">"]],
    [["risk_level", ">=", None]],
    [["properties.score", "<", None]],
    [["created_at", ">", None]],
    {"field": "risk_level", "operator": ">", "value": 3},
])
def test_invalid_conditions_rejected_at_load(raw):
    with pytest.raises(ConfigurationError):
        parse_conditions(raw)


def test_unvalidated_threshold_is_configuration_error(matcher):
    condition = Condition.model_construct(field="risk_level", operator=Operator.GTE, value=None)
    with pytest.raises(ConfigurationError):
        matcher.evaluate(make_record(risk_level=5), condition)
