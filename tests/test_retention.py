"""
Tests for retention policy selection and sweep tallies.
"""
import time
from datetime import datetime, timedelta, timezone

import pytest

from audit_engine.core.errors import ConfigurationError, TransientIOError
from audit_engine.schemas.retention import RetentionAction, load_policy
from audit_engine.services.activity_store import InMemoryActivityStore
from audit_engine.services.metrics import SweepMetrics
from audit_engine.services.retention_service import RetentionEvaluator, policy_sort_key

from helpers import make_record

NOW = datetime(2024, 6, 1, 12, 0, 0, tzinfo=timezone.utc)


def aged(record_id, days, **overrides):
    return make_record(record_id, created_at=NOW - timedelta(days=days), **overrides)


def policy(name, **values):
    values.setdefault("retention_days", 30)
    values.setdefault("action", "delete")
    return load_policy({"name": name, **values})


@pytest.fixture
def dashboard_policies():
    return [
        policy("dashboard-short", module="dashboard", retention_days=30, action="delete", priority=2),
        policy(
            "high-risk-long",
            retention_days=1825,
            action="archive",
            priority=15,
            conditions=[{"field": "risk_level", "operator": ">=", "value": 8}],
        ),
    ]


def test_higher_priority_policy_wins(dashboard_policies):
    evaluator = RetentionEvaluator(max_workers=2)
    record = aged(1, 40, type="dashboard_view", module="dashboard", risk_level=9)

    decision, selection = evaluator.decide(record, dashboard_policies, NOW)

    assert selection.policy.name == "high-risk-long"
    # the winner has not expired, so the lower-priority delete never applies
    assert decision.action == RetentionAction.KEEP
    assert decision.reason == "not_expired"


def test_lower_priority_policy_applies_when_winner_does_not_match(dashboard_policies):
    evaluator = RetentionEvaluator(max_workers=2)
    record = aged(1, 40, type="dashboard_view", module="dashboard", risk_level=3)

    decision, _ = evaluator.decide(record, dashboard_policies, NOW)

    assert decision.action == RetentionAction.DELETE
    assert decision.policy_name == "dashboard-short"


def test_expired_high_risk_record_is_archived_not_deleted(dashboard_policies):
    evaluator = RetentionEvaluator(max_workers=2)
    record = aged(1, 2000, type="dashboard_view", module="dashboard", risk_level=9)

    decision, _ = evaluator.decide(record, dashboard_policies, NOW)

    assert decision.action == RetentionAction.ARCHIVE
    assert decision.policy_name == "high-risk-long"


def test_no_matching_policy_keeps_record():
    evaluator = RetentionEvaluator(max_workers=1)
    decision, selection = evaluator.decide(aged(1, 400), [policy("users", module="users")], NOW)
    assert selection.policy is None
    assert decision.action == RetentionAction.KEEP
    assert decision.reason == "no_policy"


def test_tie_break_prefers_specific_scope_then_name():
    broad = policy("a-broad", priority=5)
    scoped = policy("z-scoped", priority=5, module="auth")
    twin = policy("b-broad", priority=5)
    assert sorted([twin, broad, scoped], key=policy_sort_key) == [scoped, broad, twin]


def test_retention_boundary_is_inclusive():
    evaluator = RetentionEvaluator(max_workers=1)
    policies = [policy("thirty", retention_days=30)]
    exactly, _ = evaluator.decide(aged(1, 30), policies, NOW)
    younger, _ = evaluator.decide(make_record(2, created_at=NOW - timedelta(days=30) + timedelta(seconds=1)), policies, NOW)
    assert exactly.action == RetentionAction.DELETE
    assert younger.action == RetentionAction.KEEP


def test_inactive_policy_is_ignored():
    evaluator = RetentionEvaluator(max_workers=1)
    decision, _ = evaluator.decide(aged(1, 100), [policy("off", is_active=False)], NOW)
    assert decision.reason == "no_policy"


def test_keep_action_is_rejected_at_load():
    with pytest.raises(ConfigurationError):
        policy("bad", action="keep")


def test_dry_run_matches_live_run_counts():
    records = [aged(i, 10 * i, module="auth" if i % 2 else "dashboard") for i in range(1, 11)]
    policies = [
        policy("dashboard", module="dashboard", retention_days=30, action="delete", priority=1),
        policy("everything", retention_days=60, action="archive"),
    ]

    store = InMemoryActivityStore(records)
    evaluator = RetentionEvaluator(action_sink=store, max_workers=4)
    dry = evaluator.evaluate(records, policies, dry_run=True, now=NOW)
    assert store.ids() == list(range(1, 11))

    live = evaluator.evaluate(records, policies, dry_run=False, now=NOW)

    assert dry.totals == live.totals
    assert [d.model_dump() for d in dry.decisions] == [d.model_dump() for d in live.decisions]
    assert live.totals.deleted + live.totals.archived == 10 - len(store.ids())
    assert len(store.archived) == live.totals.archived


def test_decisions_are_deterministic_across_runs():
    records = [aged(i, i * 7, risk_level=i % 11) for i in range(1, 30)]
    policies = [
        policy("risky", retention_days=10, action="archive", priority=3,
               conditions=[["risk_level", ">=", 5]]),
        policy("default", retention_days=90, action="delete"),
    ]
    first = RetentionEvaluator(max_workers=1).evaluate(records, policies, now=NOW)
    second = RetentionEvaluator(max_workers=8).evaluate(records, policies, now=NOW)
    assert first.decisions == second.decisions
    assert [d.record_id for d in first.decisions] == [r.id for r in records]


def test_policy_results_are_sorted_by_name():
    policies = [policy("zeta"), policy("alpha"), policy("mid")]
    result = RetentionEvaluator(max_workers=1).evaluate([aged(1, 5)], policies, now=NOW)
    assert [p.policy_name for p in result.policy_results] == ["alpha", "mid", "zeta"]


class FailingSink:
    def __init__(self, failing_ids):
        self.failing_ids = set(failing_ids)
        self.applied = []

    def apply_action(self, record_id, action, policy_name=None):
        if record_id in self.failing_ids:
            raise TransientIOError("archive store unavailable")
        self.applied.append((record_id, action))


def test_apply_failure_is_counted_not_raised():
    records = [aged(i, 100) for i in range(1, 6)]
    sink = FailingSink({2, 4})
    evaluator = RetentionEvaluator(action_sink=sink, max_workers=2)

    result = evaluator.evaluate(records, [policy("old", retention_days=30)], dry_run=False, now=NOW)

    assert result.summary.failed == 2
    assert result.summary.succeeded == 3
    assert result.totals.deleted == 3
    assert sorted(r for r, _ in sink.applied) == [1, 3, 5]
    policy_result = result.policy_results[0]
    assert policy_result.failed == 2
    assert policy_result.status == "failed"
    assert any("activity 2" in s for s in result.summary.failure_samples)


def test_condition_error_skips_policy_for_that_record():
    records = [
        aged(1, 100, properties={"size": "large"}),
        aged(2, 100, properties={"size": 10}),
    ]
    policies = [
        policy("by-size", retention_days=30, action="archive", priority=5,
               conditions=[["properties.size", ">", 5]]),
        policy("fallback", retention_days=30, action="delete"),
    ]
    result = RetentionEvaluator(max_workers=2).evaluate(records, policies, now=NOW)

    by_id = {d.record_id: d for d in result.decisions}
    assert by_id[1].policy_name == "fallback"
    assert by_id[2].policy_name == "by-size"
    by_size = next(p for p in result.policy_results if p.policy_name == "by-size")
    assert by_size.condition_errors == 1
    assert by_size.status == "failed"


def test_live_run_without_sink_is_configuration_error():
    with pytest.raises(ConfigurationError):
        RetentionEvaluator(max_workers=1).evaluate([aged(1, 100)], [policy("old")], dry_run=False, now=NOW)


def test_deadline_reports_remaining_records_as_not_reached():
    records = [aged(i, 100) for i in range(1, 4)]
    metrics = SweepMetrics()
    evaluator = RetentionEvaluator(max_workers=1, metrics=metrics)

    result = evaluator.evaluate(records, [policy("old")], now=NOW, deadline=time.monotonic() - 1)

    assert result.not_reached == 3
    assert result.summary.skipped == 3
    assert result.totals.processed == 0
    assert metrics.get("retention.records_not_reached") == 3


def test_policy_with_unset_threshold_is_rejected_at_load():
    with pytest.raises(ConfigurationError):
        policy("no-threshold", conditions=[{"field": "risk_level", "operator": ">=", "value": None}])


class CrashingSink(FailingSink):
    def apply_action(self, record_id, action, policy_name=None):
        if record_id in self.failing_ids:
            raise RuntimeError("disk full")
        self.applied.append((record_id, action))


def test_records_that_fail_evaluation_still_count_as_processed():
    records = [aged(i, 100) for i in range(1, 4)]
    evaluator = RetentionEvaluator(action_sink=CrashingSink({2}), max_workers=1)

    result = evaluator.evaluate(records, [policy("old")], dry_run=False, now=NOW)

    assert result.summary.processed == 3
    assert result.totals.processed == 3
    assert result.summary.failed == 1
    assert result.totals.deleted == 2
    assert any("disk full" in s for s in result.summary.failure_samples)
