"""
Per-rule trigger statistics: how often a notification rule dispatched and when it last did.

Merged repeats do not count; only alerts that went out do.
"""
import logging
import threading
from datetime import datetime
from typing import Callable, Dict, Optional, Tuple

from sqlalchemy import update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from audit_engine.models.notification_rule import NotificationRule

logger = logging.getLogger(__name__)


class InMemoryRuleStatistics:
    """Trigger counts kept in process memory."""

    def __init__(self):
        self._stats: Dict[int, Tuple[int, datetime]] = {}
        self._lock = threading.Lock()

    def record_trigger(self, rule_id: int, at: datetime) -> None:
        with self._lock:
            count, last = self._stats.get(rule_id, (0, at))
            self._stats[rule_id] = (count + 1, max(last, at))

    def get(self, rule_id: int) -> Tuple[int, Optional[datetime]]:
        """(triggered_count, last_triggered_at) for a rule."""
        with self._lock:
            return self._stats.get(rule_id, (0, None))


class SqlRuleStatistics:
    """Bumps triggered_count and last_triggered_at on the notification_rules row."""

    def __init__(self, session_factory: Optional[Callable[[], Session]] = None):
        if session_factory is None:
            from audit_engine.core.database import SessionLocal
            session_factory = SessionLocal
        self.session_factory = session_factory

    def record_trigger(self, rule_id: int, at: datetime) -> None:
        """
        Count one dispatch for a rule. A failed write is logged, not raised,
        so statistics never hold up an alert.
        """
        db = self.session_factory()
        try:
            db.execute(
                update(NotificationRule)
                .where(NotificationRule.id == rule_id)
                .values(
                    triggered_count=NotificationRule.triggered_count + 1,
                    last_triggered_at=at,
                )
            )
            db.commit()
        except SQLAlchemyError as e:
            db.rollback()
            logger.error(f"Failed to update statistics for notification rule {rule_id}: {e}", exc_info=True)
        finally:
            db.close()

    def get(self, rule_id: int) -> Tuple[int, Optional[datetime]]:
        db = self.session_factory()
        try:
            rule = db.get(NotificationRule, rule_id)
            if rule is None:
                return (0, None)
            return (rule.triggered_count, rule.last_triggered_at)
        finally:
            db.close()
