"""
Tests for the database-backed record store, sweeps and run log.
"""
from datetime import datetime, timedelta, timezone

import pytest
from sqlalchemy import text

from audit_engine.core.errors import ConfigurationError, RecordTamperError
from audit_engine.models.activity_log import ActivityLog
from audit_engine.models.archived_activity import ArchivedActivity
from audit_engine.models.retention_policy import RetentionPolicy
from audit_engine.models.retention_run import RetentionRun
from audit_engine.schemas.activity import ActivityRecord, RecordFilter
from audit_engine.schemas.retention import RetentionAction
from audit_engine.services.activity_service import log_activity
from audit_engine.services.activity_store import SqlActivityStore
from audit_engine.services.integrity_service import IntegrityService
from audit_engine.services.policy_store import SqlPolicyStore
from audit_engine.services.sweep_service import SqlRunLog, SweepService

NOW = datetime.now(timezone.utc).replace(microsecond=0)


def write(db, integrity, days_old=0, **values):
    values.setdefault("activity_type", "login")
    values.setdefault("module", "auth")
    return log_activity(db, integrity, created_at=NOW - timedelta(days=days_old), **values)


@pytest.fixture
def store(session_factory):
    return SqlActivityStore(session_factory)


@pytest.fixture
def sweeps(session_factory, store, integrity):
    return SweepService(
        record_store=store,
        policy_store=SqlPolicyStore(session_factory),
        integrity=integrity,
        run_log=SqlRunLog(session_factory),
    )


def add_policy(db, **values):
    values.setdefault("retention_days", 30)
    values.setdefault("action", "delete")
    policy = RetentionPolicy(**values)
    db.add(policy)
    db.commit()
    return policy


def test_written_activity_is_sealed(db_session, integrity, store):
    row = write(db_session, integrity, properties={"target": "db01"}, risk_level=4)

    assert row.signature is not None
    record = store.get(row.id)
    assert record.created_at == NOW
    assert integrity.verify(record)


def test_write_without_key_is_refused(db_session):
    with pytest.raises(ConfigurationError):
        write(db_session, IntegrityService(""))
    assert db_session.query(ActivityLog).count() == 0


def test_sealed_row_cannot_be_changed_through_the_orm(db_session, integrity):
    row = write(db_session, integrity)
    row.description = "edited"
    with pytest.raises(RecordTamperError) as exc_info:
        db_session.commit()
    assert "description" in exc_info.value.fields
    db_session.rollback()


def test_loading_a_sealed_row_does_not_dirty_it(db_session, integrity):
    row_id = write(db_session, integrity).id
    db_session.expunge_all()
    row = db_session.get(ActivityLog, row_id)
    assert row.created_at.tzinfo is not None
    assert not db_session.is_modified(row)
    db_session.commit()


def test_integrity_sweep_finds_tampered_and_unsealed_rows(db_session, integrity, sweeps):
    rows = [write(db_session, integrity, description=f"event {i}") for i in range(3)]
    db_session.execute(
        text("UPDATE activity_logs SET description = 'rewritten' WHERE id = :id"), {"id": rows[1].id}
    )
    unsealed = ActivityLog(type="login", module="auth", description="", risk_level=0, created_at=NOW)
    db_session.add(unsealed)
    db_session.commit()

    result = sweeps.run_integrity(batch_size=2)

    assert result.verified == 2
    assert result.suspicious == [rows[1].id]
    assert result.unsealed == [unsealed.id]
    assert result.summary.failed == 2
    assert result.not_reached == 0


def test_integrity_sweep_without_key_is_configuration_error(session_factory, store):
    sweeps = SweepService(record_store=store, policy_store=SqlPolicyStore(session_factory), integrity=IntegrityService(""))
    with pytest.raises(ConfigurationError):
        sweeps.run_integrity()


def test_live_retention_sweep_archives_and_deletes(db_session, integrity, sweeps, store):
    add_policy(db_session, name="auth-archive", module="auth", retention_days=30, action="archive", priority=5)
    add_policy(db_session, name="all-delete", retention_days=60, action="delete")
    old_auth = write(db_session, integrity, days_old=45)
    old_other = write(db_session, integrity, days_old=90, module="users")
    fresh = write(db_session, integrity, days_old=1)

    result = sweeps.run_retention(dry_run=False, batch_size=2)

    assert result.totals.archived == 1
    assert result.totals.deleted == 1
    assert result.totals.kept == 1
    assert store.get(old_auth.id) is None
    assert store.get(old_other.id) is None
    assert store.get(fresh.id) is not None

    archived = db_session.query(ArchivedActivity).one()
    assert archived.original_id == old_auth.id
    assert archived.archive_key == f"{old_auth.created_at:%Y/%m/%d}/{old_auth.id}"
    assert archived.policy_name == "auth-archive"

    run = db_session.query(RetentionRun).one()
    assert run.status == "completed"
    assert run.dry_run is False
    assert run.archived == 1
    db_session.expunge_all()
    assert all(p.last_executed_at is not None for p in db_session.query(RetentionPolicy).all())


def test_dry_run_sweep_changes_nothing(db_session, integrity, sweeps, store):
    add_policy(db_session, name="all-delete", retention_days=10)
    rows = [write(db_session, integrity, days_old=20) for _ in range(3)]

    result = sweeps.run_retention(dry_run=True)

    assert result.totals.deleted == 3
    assert [store.get(r.id) is not None for r in rows] == [True, True, True]
    assert db_session.query(RetentionPolicy).one().last_executed_at is None


def test_sweep_pages_through_every_record(db_session, integrity, sweeps, store):
    add_policy(db_session, name="all-delete", retention_days=10)
    for _ in range(7):
        write(db_session, integrity, days_old=20)

    result = sweeps.run_retention(dry_run=False, batch_size=3)

    assert result.totals.processed == 7
    assert result.totals.deleted == 7
    assert store.count() == 0


def test_sweep_filter_limits_records(db_session, integrity, sweeps):
    add_policy(db_session, name="all-delete", retention_days=10)
    write(db_session, integrity, days_old=20, activity_type="login")
    write(db_session, integrity, days_old=20, activity_type="logout")

    result = sweeps.run_retention(dry_run=True, record_filter=RecordFilter(activity_type="logout"))

    assert result.totals.processed == 1


def test_expired_deadline_counts_everything_as_not_reached(db_session, integrity, sweeps):
    add_policy(db_session, name="all-delete", retention_days=10)
    for _ in range(4):
        write(db_session, integrity, days_old=20)

    result = sweeps.run_retention(dry_run=False, timeout_seconds=0)

    assert result.not_reached == 4
    assert result.totals.processed == 0
    assert db_session.query(RetentionRun).one().status == "partial"


def test_restored_archive_still_verifies(db_session, integrity, store):
    row = write(db_session, integrity, days_old=100, properties={"nested": {"b": 2, "a": 1}})
    store.apply_action(row.id, RetentionAction.ARCHIVE, "manual")
    assert store.get(row.id) is None

    restored = store.restore_archived(row.id)

    assert restored.id == row.id
    assert integrity.verify(store.get(row.id))
    assert db_session.query(ArchivedActivity).count() == 0


def test_restore_unknown_archive_raises(store):
    with pytest.raises(LookupError):
        store.restore_archived(12345)


def test_policy_store_skips_invalid_rows(db_session, session_factory):
    add_policy(db_session, name="good", retention_days=30)
    add_policy(db_session, name="bad", retention_days=30, conditions=[{"field": "risk_level", "operator": "~", "value": 1}])

    snapshot = SqlPolicyStore(session_factory).reload()

    assert [p.name for p in snapshot.policies] == ["good"]
    assert len(snapshot.errors) == 1
    assert "bad" in snapshot.errors[0]


def test_policy_snapshot_is_cached_until_reload(db_session, session_factory):
    policy_store = SqlPolicyStore(session_factory)
    add_policy(db_session, name="first")
    assert len(policy_store.snapshot.policies) == 1
    add_policy(db_session, name="second")
    assert len(policy_store.snapshot.policies) == 1
    assert len(policy_store.reload().policies) == 2


def test_activity_record_from_row_matches_store(db_session, integrity, store):
    row = write(db_session, integrity)
    assert ActivityRecord.model_validate(row) == store.get(row.id)
