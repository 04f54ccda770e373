"""
Record sources and retention action sinks.

``fetch_batch`` pulls activity records in id order; ``apply_action`` archives
(copy to cold storage keyed by date and id, then remove) or hard-deletes one
record. Storage failures surface as TransientIOError so a sweep can record
them per record and carry on.
"""
import logging
import threading
from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Callable, Dict, Iterator, List, Optional

from sqlalchemy import func, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from audit_engine.core.errors import TransientIOError
from audit_engine.models.activity_log import ActivityLog
from audit_engine.models.archived_activity import ArchivedActivity
from audit_engine.schemas.activity import ActivityRecord, RecordFilter
from audit_engine.schemas.retention import RetentionAction

logger = logging.getLogger(__name__)


def archive_key(record_id: int, created_at: datetime) -> str:
    """Cold-storage location: ``YYYY/MM/DD/<record id>``."""
    return f"{created_at:%Y/%m/%d}/{record_id}"


def _matches_filter(record: ActivityRecord, record_filter: RecordFilter) -> bool:
    if record_filter.activity_type is not None and record.type != record_filter.activity_type:
        return False
    if record_filter.module is not None and record.module != record_filter.module:
        return False
    if record_filter.created_after is not None and record.created_at < _utc(record_filter.created_after):
        return False
    if record_filter.created_before is not None and record.created_at >= _utc(record_filter.created_before):
        return False
    if record_filter.after_id is not None and record.id <= record_filter.after_id:
        return False
    return True


def _utc(value: datetime) -> datetime:
    return value if value.tzinfo else value.replace(tzinfo=timezone.utc)


class InMemoryActivityStore:
    """Dictionary-backed record source and action sink."""

    def __init__(self, records=()):
        self._records: Dict[int, ActivityRecord] = {r.id: r for r in records}
        self.archived: Dict[str, ActivityRecord] = {}
        self._lock = threading.Lock()

    def add(self, record: ActivityRecord) -> None:
        with self._lock:
            self._records[record.id] = record

    def get(self, record_id: int) -> Optional[ActivityRecord]:
        with self._lock:
            return self._records.get(record_id)

    def ids(self) -> List[int]:
        with self._lock:
            return sorted(self._records)

    def _filtered(self, record_filter: Optional[RecordFilter]) -> List[ActivityRecord]:
        record_filter = record_filter or RecordFilter()
        with self._lock:
            records = sorted(self._records.values(), key=lambda r: r.id)
        return [r for r in records if _matches_filter(r, record_filter)]

    def count(self, record_filter: Optional[RecordFilter] = None) -> int:
        return len(self._filtered(record_filter))

    def fetch_batch(
        self, record_filter: Optional[RecordFilter] = None, limit: int = 100, offset: int = 0
    ) -> List[ActivityRecord]:
        return self._filtered(record_filter)[offset:offset + limit]

    def apply_action(self, record_id: int, action: RetentionAction, policy_name: Optional[str] = None) -> None:
        with self._lock:
            record = self._records.get(record_id)
            if record is None:
                raise TransientIOError(f"activity {record_id} no longer exists")
            if action == RetentionAction.ARCHIVE:
                self.archived[archive_key(record.id, record.created_at)] = record
            if action in (RetentionAction.ARCHIVE, RetentionAction.DELETE):
                del self._records[record_id]

    def restore_archived(self, record_id: int) -> ActivityRecord:
        with self._lock:
            for key, record in list(self.archived.items()):
                if record.id == record_id:
                    del self.archived[key]
                    self._records[record.id] = record
                    return record
        raise LookupError(f"activity {record_id} is not archived")


def record_from_archive(row: ArchivedActivity) -> ActivityRecord:
    return ActivityRecord(
        id=row.original_id,
        type=row.type,
        module=row.module,
        description=row.description,
        user_id=row.user_id,
        subject_type=row.subject_type,
        subject_id=row.subject_id,
        ip_address=row.ip_address,
        user_agent=row.user_agent,
        properties=row.properties,
        risk_level=row.risk_level,
        created_at=row.original_created_at,
        signature=row.signature,
    )


class SqlActivityStore:
    """Record source and action sink over the activity_logs table."""

    def __init__(self, session_factory: Optional[Callable[[], Session]] = None):
        if session_factory is None:
            from audit_engine.core.database import SessionLocal
            session_factory = SessionLocal
        self.session_factory = session_factory

    @contextmanager
    def _session(self) -> Iterator[Session]:
        db = self.session_factory()
        try:
            yield db
        except SQLAlchemyError as e:
            db.rollback()
            raise TransientIOError(f"Activity storage failed: {e}") from e
        finally:
            db.close()

    @staticmethod
    def _apply_filter(query, record_filter: Optional[RecordFilter]):
        if record_filter is None:
            return query
        if record_filter.activity_type is not None:
            query = query.where(ActivityLog.type == record_filter.activity_type)
        if record_filter.module is not None:
            query = query.where(ActivityLog.module == record_filter.module)
        if record_filter.created_after is not None:
            query = query.where(ActivityLog.created_at >= record_filter.created_after)
        if record_filter.created_before is not None:
            query = query.where(ActivityLog.created_at < record_filter.created_before)
        if record_filter.after_id is not None:
            query = query.where(ActivityLog.id > record_filter.after_id)
        return query

    def get(self, record_id: int) -> Optional[ActivityRecord]:
        with self._session() as db:
            row = db.get(ActivityLog, record_id)
            return ActivityRecord.model_validate(row) if row else None

    def count(self, record_filter: Optional[RecordFilter] = None) -> int:
        with self._session() as db:
            query = self._apply_filter(select(func.count(ActivityLog.id)), record_filter)
            return db.scalar(query) or 0

    def fetch_batch(
        self, record_filter: Optional[RecordFilter] = None, limit: int = 100, offset: int = 0
    ) -> List[ActivityRecord]:
        """
        Pull one batch of records ordered by id.

        Args:
            record_filter: Type/module/time filters and an optional id cursor
            limit: Maximum number of records
            offset: Rows to skip (0 when paging with the after_id cursor)

        Returns:
            Activity records as immutable value objects
        """
        with self._session() as db:
            query = self._apply_filter(select(ActivityLog), record_filter)
            rows = db.scalars(query.order_by(ActivityLog.id).offset(offset).limit(limit)).all()
            return [ActivityRecord.model_validate(row) for row in rows]

    def apply_action(self, record_id: int, action: RetentionAction, policy_name: Optional[str] = None) -> None:
        """
        Archive or delete one record.

        Raises:
            TransientIOError: The record is gone or the database write failed
        """
        with self._session() as db:
            row = db.get(ActivityLog, record_id)
            if row is None:
                raise TransientIOError(f"activity {record_id} no longer exists")
            if action == RetentionAction.ARCHIVE:
                db.add(ArchivedActivity(
                    original_id=row.id,
                    archive_key=archive_key(row.id, row.created_at),
                    type=row.type,
                    module=row.module,
                    description=row.description,
                    user_id=row.user_id,
                    subject_type=row.subject_type,
                    subject_id=row.subject_id,
                    ip_address=row.ip_address,
                    user_agent=row.user_agent,
                    properties=row.properties,
                    risk_level=row.risk_level,
                    original_created_at=row.created_at,
                    signature=row.signature,
                    policy_name=policy_name,
                ))
            if action in (RetentionAction.ARCHIVE, RetentionAction.DELETE):
                db.delete(row)
                db.commit()
                logger.debug(f"Activity {record_id}: {action.value} by policy '{policy_name}'")

    def list_archived(self, limit: int = 100, offset: int = 0) -> List[ArchivedActivity]:
        with self._session() as db:
            query = select(ArchivedActivity).order_by(ArchivedActivity.original_id).offset(offset).limit(limit)
            rows = db.scalars(query).all()
            db.expunge_all()
            return list(rows)

    def restore_archived(self, record_id: int) -> ActivityRecord:
        """
        Move an archived record back into activity_logs with its original id and signature.

        Raises:
            LookupError: No archive entry for this record id
            TransientIOError: The database write failed
        """
        with self._session() as db:
            row = db.scalar(select(ArchivedActivity).where(ArchivedActivity.original_id == record_id))
            if row is None:
                raise LookupError(f"activity {record_id} is not archived")
            record = record_from_archive(row)
            db.add(ActivityLog(**record.model_dump()))
            db.delete(row)
            db.commit()
            logger.info(f"Restored archived activity {record_id}")
            return record
