"""
Alert deduplication.

Candidates for the same (rule_id, merge_key) inside the rule's merge window are
folded into one group and dispatched once. Submissions for one key are
serialized by a per-key lock, so each one sees the group left by the previous
one; different keys proceed in parallel.
"""
import logging
import threading
from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Callable, Dict, Iterator, List, Mapping, Optional, Tuple

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from audit_engine.core.config import get_settings
from audit_engine.core.errors import TransientIOError
from audit_engine.models.alert_group import AlertGroup
from audit_engine.schemas.notification import (
    AlertCandidate,
    FrequencyLimit,
    MergedAlertGroup,
    SubmitAction,
    SubmitResult,
)

logger = logging.getLogger(__name__)

GroupKey = Tuple[int, str]


class InMemoryAlertGroupStore:
    """Merge groups held in process memory, with snapshot/restore for persistence."""

    def __init__(self):
        self._groups: Dict[GroupKey, MergedAlertGroup] = {}
        self._lock = threading.Lock()

    def get(self, rule_id: int, merge_key: str) -> Optional[MergedAlertGroup]:
        with self._lock:
            group = self._groups.get((rule_id, merge_key))
            return group.model_copy() if group else None

    def put(self, group: MergedAlertGroup) -> None:
        with self._lock:
            self._groups[group.key] = group.model_copy()

    def delete(self, rule_id: int, merge_key: str) -> None:
        with self._lock:
            self._groups.pop((rule_id, merge_key), None)

    def keys(self) -> List[GroupKey]:
        with self._lock:
            return list(self._groups)

    def all(self) -> List[MergedAlertGroup]:
        with self._lock:
            return [group.model_copy() for group in self._groups.values()]

    def snapshot(self) -> List[dict]:
        """JSON-ready copy of every group."""
        with self._lock:
            return [group.model_dump(mode="json") for group in self._groups.values()]

    def restore(self, groups: List[dict]) -> None:
        """Replace the store contents with a snapshot."""
        loaded = [MergedAlertGroup.model_validate(item) for item in groups]
        with self._lock:
            self._groups = {group.key: group for group in loaded}


class SqlAlertGroupStore:
    """Merge groups in the alert_groups table. Each call uses its own session."""

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
            raise TransientIOError(f"Alert group storage failed: {e}") from e
        finally:
            db.close()

    def get(self, rule_id: int, merge_key: str) -> Optional[MergedAlertGroup]:
        with self._session() as db:
            row = db.get(AlertGroup, (rule_id, merge_key))
            return MergedAlertGroup.model_validate(row) if row else None

    def put(self, group: MergedAlertGroup) -> None:
        with self._session() as db:
            db.merge(AlertGroup(**group.model_dump()))
            db.commit()

    def delete(self, rule_id: int, merge_key: str) -> None:
        with self._session() as db:
            row = db.get(AlertGroup, (rule_id, merge_key))
            if row is not None:
                db.delete(row)
                db.commit()

    def keys(self) -> List[GroupKey]:
        with self._session() as db:
            rows = db.execute(select(AlertGroup.rule_id, AlertGroup.merge_key)).all()
            return [(rule_id, merge_key) for rule_id, merge_key in rows]

    def all(self) -> List[MergedAlertGroup]:
        with self._session() as db:
            rows = db.scalars(select(AlertGroup).order_by(AlertGroup.last_seen.desc())).all()
            return [MergedAlertGroup.model_validate(row) for row in rows]


def create_group_store(backend: Optional[str] = None):
    """Group store selected by ALERT_GROUP_STORE."""
    backend = backend or get_settings().ALERT_GROUP_STORE
    if backend == "database":
        return SqlAlertGroupStore()
    return InMemoryAlertGroupStore()


def _aware(value: Optional[datetime]) -> datetime:
    if value is None:
        return datetime.now(timezone.utc)
    return value if value.tzinfo else value.replace(tzinfo=timezone.utc)


class FrequencyLimiter:
    """
    Dispatch budget per (rule_id, activity_type).

    Each key gets ``max_count`` dispatches per window; the window starts at
    the first dispatch counted in it. Counters live in process memory.
    """

    def __init__(self):
        self._windows: Dict[Tuple[int, str], Tuple[datetime, int]] = {}
        self._lock = threading.Lock()

    def allow(self, rule_id: int, activity_type: str, limit: FrequencyLimit, now: datetime) -> bool:
        """Consume one dispatch from the budget; False when it is used up."""
        key = (rule_id, activity_type)
        with self._lock:
            started, count = self._windows.get(key, (now, 0))
            if (now - started).total_seconds() >= limit.window_seconds:
                started, count = now, 0
            if count >= limit.max_count:
                return False
            self._windows[key] = (started, count + 1)
            return True

    def count(self, rule_id: int, activity_type: str) -> int:
        with self._lock:
            return self._windows.get((rule_id, activity_type), (None, 0))[1]


class AlertDeduplicator:
    """Decides whether an alert candidate is dispatched or merged into an open group."""

    def __init__(self, store=None, limiter: Optional[FrequencyLimiter] = None):
        self.store = store if store is not None else create_group_store()
        self.limiter = limiter or FrequencyLimiter()
        self._locks: Dict[GroupKey, list] = {}  # key -> [lock, holders]
        self._registry_lock = threading.Lock()

    @contextmanager
    def _key_lock(self, key: GroupKey) -> Iterator[None]:
        """Per-key mutual exclusion; the lock entry is dropped once nobody holds or waits for it."""
        with self._registry_lock:
            entry = self._locks.get(key)
            if entry is None:
                entry = [threading.Lock(), 0]
                self._locks[key] = entry
            entry[1] += 1
        try:
            with entry[0]:
                yield
        finally:
            with self._registry_lock:
                entry[1] -= 1
                if entry[1] == 0:
                    del self._locks[key]

    def submit(self, candidate: AlertCandidate, now: Optional[datetime] = None) -> SubmitResult:
        """
        Merge a candidate into its group or open a new one.

        A new group (and a dispatch) happens when no group exists, merging is off
        for the rule, the window is 0, or at least ``merge_window_seconds`` have
        passed since the group was last seen. A dispatch that would exceed the
        rule's frequency limit is suppressed instead and opens no group.

        Args:
            candidate: Alert candidate
            now: Submission time, defaults to the current UTC time

        Returns:
            SubmitResult with the action and a copy of the group after the update
        """
        now = _aware(now)
        key = (candidate.rule_id, candidate.merge_key)
        with self._key_lock(key):
            group = self.store.get(*key)
            window = candidate.merge_window_seconds
            if (
                group is None
                or not candidate.merge_similar
                or window <= 0
                or group.seconds_since_last_seen(now) >= window
            ):
                limit = candidate.frequency_limit
                if limit is not None and not self.limiter.allow(
                    candidate.rule_id, candidate.activity_type, limit, now
                ):
                    logger.info(
                        f"Suppressed alert for activity {candidate.record_id}: rule {candidate.rule_id} "
                        f"reached {limit.max_count} dispatches per {limit.window_seconds}s "
                        f"for '{candidate.activity_type}'"
                    )
                    return SubmitResult(action=SubmitAction.SUPPRESSED)
                group = MergedAlertGroup(
                    rule_id=candidate.rule_id,
                    merge_key=candidate.merge_key,
                    first_seen=now,
                    last_seen=now,
                    occurrence_count=1,
                    representative_record_id=candidate.record_id,
                )
                self.store.put(group)
                return SubmitResult(action=SubmitAction.DISPATCH, group=group)

            group.occurrence_count += 1
            group.last_seen = max(group.last_seen, now)
            self.store.put(group)
            logger.debug(
                f"Merged activity {candidate.record_id} into alert group {candidate.rule_id}/"
                f"{candidate.merge_key[:12]} (count={group.occurrence_count})"
            )
            return SubmitResult(action=SubmitAction.MERGED, group=group)

    def collect_expired(
        self,
        now: Optional[datetime] = None,
        windows: Optional[Mapping[int, int]] = None,
    ) -> List[MergedAlertGroup]:
        """
        Evict groups whose window has elapsed.

        Each key is re-read and evicted under its own lock, so a concurrent
        submit either lands before eviction (and keeps the group alive) or
        after it (and opens a new group).

        Args:
            now: Reference time, defaults to the current UTC time
            windows: Merge window per rule id; rules not listed use
                DEFAULT_MERGE_WINDOW_SECONDS

        Returns:
            The evicted groups
        """
        now = _aware(now)
        windows = windows or {}
        default_window = get_settings().DEFAULT_MERGE_WINDOW_SECONDS
        evicted: List[MergedAlertGroup] = []
        for key in self.store.keys():
            with self._key_lock(key):
                group = self.store.get(*key)
                if group is None:
                    continue
                window = windows.get(group.rule_id, default_window)
                if group.seconds_since_last_seen(now) >= window:
                    self.store.delete(*key)
                    evicted.append(group)
        if evicted:
            logger.info(f"Evicted {len(evicted)} expired alert groups")
        return evicted

    def groups(self) -> List[MergedAlertGroup]:
        return self.store.all()
