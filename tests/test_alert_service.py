"""
Tests for the per-record alert pipeline.
"""
import time
from datetime import datetime, timedelta, timezone

import pytest

from audit_engine.core.errors import TransientIOError
from audit_engine.services.alert_deduplicator import AlertDeduplicator, InMemoryAlertGroupStore
from audit_engine.services.alert_dispatcher import AlertDispatcher, StaticRecipientDirectory
from audit_engine.services.alert_rule_service import AlertRuleEvaluator
from audit_engine.services.alert_service import AlertService
from audit_engine.services.activity_store import InMemoryActivityStore
from audit_engine.services.condition_matcher import ConditionMatcher
from audit_engine.services.metrics import SweepMetrics
from audit_engine.services.policy_store import StaticPolicyStore

from helpers import RecordingTransport, make_record

T0 = datetime(2024, 3, 1, 12, 0, 0, tzinfo=timezone.utc)

RULES = [
    {
        "id": 1,
        "name": "failed-logins",
        "conditions": {"activity_types": ["login_failed"], "min_risk_level": 5},
        "recipients": ["role:security"],
        "dispatch_channels": ["log"],
        "merge_window_seconds": 300,
        "merged_title_template": "{count}x {activity_type} for user {user_id}",
    },
    {
        "id": 2,
        "name": "everything-risky",
        "conditions": {"min_risk_level": 9},
        "recipients": ["user:oncall"],
        "dispatch_channels": ["log"],
        "merge_similar": False,
    },
]


@pytest.fixture
def transport():
    return RecordingTransport()


@pytest.fixture
def records():
    return InMemoryActivityStore()


@pytest.fixture
def metrics():
    return SweepMetrics()


@pytest.fixture
def service(transport, records, metrics):
    directory = StaticRecipientDirectory(roles={"security": ["alice", "bob"]})
    return AlertService(
        StaticPolicyStore(rules=RULES),
        evaluator=AlertRuleEvaluator(ConditionMatcher("UTC")),
        deduplicator=AlertDeduplicator(InMemoryAlertGroupStore()),
        dispatcher=AlertDispatcher(directory, transports={"log": transport}),
        record_source=records,
        metrics=metrics,
    )


def failed_login(record_id, seconds=0, risk_level=6):
    return make_record(
        record_id, type="login_failed", risk_level=risk_level, created_at=T0 + timedelta(seconds=seconds)
    )


def test_repeats_inside_window_dispatch_once(service, transport, metrics):
    results = [service.process(failed_login(i, 10 * i), T0 + timedelta(seconds=10 * i)) for i in range(1, 4)]

    assert [len(r.dispatched) for r in results] == [1, 0, 0]
    assert [len(r.merged) for r in results] == [0, 1, 1]
    assert results[-1].merged[0].occurrence_count == 3
    assert [recipient for _, recipient, _ in transport.sent] == ["alice", "bob"]
    assert metrics.get("alerts.dispatched") == 1
    assert metrics.get("alerts.merged") == 2


def test_record_can_trigger_several_rules(service, transport):
    result = service.process(failed_login(1, risk_level=9), T0)
    assert result.matched_rules == [1, 2]
    assert len(result.dispatched) == 2
    assert {recipient for _, recipient, _ in transport.sent} == {"alice", "bob", "oncall"}


def test_non_matching_record_does_nothing(service, transport):
    result = service.process(make_record(1, type="login", risk_level=6), T0)
    assert result.matched_rules == []
    assert transport.sent == []


def test_flush_sends_digest_for_merged_groups(service, transport, records):
    for i in range(1, 4):
        record = failed_login(i, 10 * i)
        records.add(record)
        service.process(record, T0 + timedelta(seconds=10 * i))
    transport.sent.clear()

    response = service.flush_digests(T0 + timedelta(seconds=330))

    assert response.evicted == 1
    assert len(response.digests) == 1
    titles = {sent_alert.title for _, _, sent_alert in transport.sent}
    assert titles == {"3x login_failed for user 42"}
    assert all(sent_alert.digest for _, _, sent_alert in transport.sent)


def test_flush_skips_digest_for_single_alerts(service, transport):
    service.process(failed_login(1), T0)
    transport.sent.clear()
    response = service.flush_digests(T0 + timedelta(seconds=301))
    assert response.evicted == 1
    assert response.digests == []
    assert transport.sent == []


def test_flush_keeps_live_groups(service):
    service.process(failed_login(1), T0)
    assert service.flush_digests(T0 + timedelta(seconds=100)).evicted == 0
    assert len(service.deduplicator.groups()) == 1


class BrokenGroupStore(InMemoryAlertGroupStore):
    def get(self, rule_id, merge_key):
        raise TransientIOError("database is locked")


def test_group_store_failure_is_reported_per_rule(transport):
    service = AlertService(
        StaticPolicyStore(rules=RULES),
        deduplicator=AlertDeduplicator(BrokenGroupStore()),
        dispatcher=AlertDispatcher(StaticRecipientDirectory(), transports={"log": transport}),
    )
    result = service.process(failed_login(1), T0)
    assert result.matched_rules == [1]
    assert result.dispatched == []
    assert "database is locked" in result.errors[0]


def test_process_batch_summary(service):
    batch = [failed_login(i, i) for i in range(1, 6)] + [make_record(6, type="logout")]
    outcome = service.process_batch(batch, T0)

    assert outcome.summary.processed == 6
    assert outcome.summary.failed == 0
    assert outcome.dispatched == 1
    assert outcome.merged == 4
    assert [r.record_id for r in outcome.results] == [1, 2, 3, 4, 5, 6]


def test_process_batch_past_deadline(service):
    outcome = service.process_batch([failed_login(1)], T0, deadline=time.monotonic() - 1)
    assert outcome.not_reached == 1
    assert outcome.summary.skipped == 1
    assert outcome.results == []


def test_crashing_channel_does_not_lose_the_alert(transport):
    rules = [{
        "id": 1,
        "name": "webhook-then-log",
        "conditions": {"activity_types": ["login_failed"]},
        "recipients": ["user:alice"],
        "dispatch_channels": [{"type": "webhook", "config": {"url": "http://hooks.local/x"}}, "log"],
    }]
    crashing = RecordingTransport(fail_times=10, error=ValueError("bad header"))
    service = AlertService(
        StaticPolicyStore(rules=rules),
        evaluator=AlertRuleEvaluator(ConditionMatcher("UTC")),
        deduplicator=AlertDeduplicator(InMemoryAlertGroupStore()),
        dispatcher=AlertDispatcher(StaticRecipientDirectory(), transports={"webhook": crashing, "log": transport}),
    )

    result = service.process(failed_login(1), T0)

    assert result.errors == []
    assert [(r.channel_type, r.ok) for r in result.dispatched[0].results] == [("webhook", False), ("log", True)]
    assert [recipient for _, recipient, _ in transport.sent] == ["alice"]


class FlakyDirectory(StaticRecipientDirectory):
    def resolve(self, selector):
        if selector.id == "offline":
            raise RuntimeError("directory offline")
        return super().resolve(selector)


def test_failing_rule_does_not_stop_other_rules(transport):
    rules = [
        {"id": 1, "name": "unreachable", "conditions": {"activity_types": ["login_failed"]},
         "recipients": ["user:offline"], "dispatch_channels": ["log"]},
        {"id": 2, "name": "reachable", "conditions": {"activity_types": ["login_failed"]},
         "recipients": ["user:bob"], "dispatch_channels": ["log"]},
    ]
    service = AlertService(
        StaticPolicyStore(rules=rules),
        deduplicator=AlertDeduplicator(InMemoryAlertGroupStore()),
        dispatcher=AlertDispatcher(FlakyDirectory(), transports={"log": transport}),
    )

    result = service.process(failed_login(1), T0)

    assert result.matched_rules == [1, 2]
    assert [report.rule_id for report in result.dispatched] == [2]
    assert "directory offline" in result.errors[0]
    assert [recipient for _, recipient, _ in transport.sent] == ["bob"]


@pytest.fixture
def limited_service(transport, metrics):
    rules = [{
        "id": 3,
        "name": "throttled",
        "conditions": {"activity_types": ["login_failed", "password_reset"]},
        "recipients": ["user:oncall"],
        "dispatch_channels": ["log"],
        "merge_similar": False,
        "frequency_limit": {"max_count": 2, "window_seconds": 60},
    }]
    return AlertService(
        StaticPolicyStore(rules=rules),
        evaluator=AlertRuleEvaluator(ConditionMatcher("UTC")),
        deduplicator=AlertDeduplicator(InMemoryAlertGroupStore()),
        dispatcher=AlertDispatcher(StaticRecipientDirectory(), transports={"log": transport}),
        metrics=metrics,
    )


def test_frequency_limit_suppresses_dispatches_over_budget(limited_service, transport, metrics):
    results = [limited_service.process(failed_login(i, i), T0 + timedelta(seconds=i)) for i in range(1, 5)]

    assert [len(r.dispatched) for r in results] == [1, 1, 0, 0]
    assert [r.suppressed for r in results] == [[], [], [3], [3]]
    assert len(transport.sent) == 2
    assert metrics.get("alerts.suppressed") == 2

    later = limited_service.process(failed_login(5, 61), T0 + timedelta(seconds=61))
    assert len(later.dispatched) == 1


def test_frequency_limit_applies_per_activity_type(limited_service, transport):
    for i in range(1, 4):
        limited_service.process(failed_login(i, i), T0 + timedelta(seconds=i))
    reset = make_record(4, type="password_reset", created_at=T0 + timedelta(seconds=4))

    result = limited_service.process(reset, T0 + timedelta(seconds=4))

    assert len(result.dispatched) == 1
    assert [sent.record_id for _, _, sent in transport.sent] == [1, 2, 4]


def test_rule_statistics_count_dispatches_only(service):
    for i in range(1, 4):
        service.process(failed_login(i, 10 * i), T0 + timedelta(seconds=10 * i))

    assert service.rule_stats.get(1) == (1, T0 + timedelta(seconds=10))
    assert service.rule_stats.get(2) == (0, None)


def test_batch_reports_suppressed_alerts(limited_service):
    outcome = limited_service.process_batch([failed_login(i, i) for i in range(1, 5)], T0)
    assert outcome.dispatched == 2
    assert outcome.suppressed == 2
    assert outcome.summary.failed == 0
