"""
Read-only snapshots of retention policies and notification rules.

A snapshot is loaded once and shared by every sweep until reload() is called,
so a sweep sees one consistent rule set from start to finish. Rows that fail
validation are left out and reported in ``snapshot.errors``.
"""
import logging
import threading
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable, Iterable, List, Optional, Tuple

from sqlalchemy import select
from sqlalchemy.orm import Session

from audit_engine.core.errors import ConfigurationError
from audit_engine.models.notification_rule import NotificationRule
from audit_engine.models.retention_policy import RetentionPolicy
from audit_engine.schemas.notification import NotificationRuleConfig, load_rule
from audit_engine.schemas.retention import RetentionPolicyConfig, load_policy

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class PolicySnapshot:
    policies: Tuple[RetentionPolicyConfig, ...] = ()
    rules: Tuple[NotificationRuleConfig, ...] = ()
    errors: Tuple[str, ...] = ()
    loaded_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def rule_windows(self) -> dict:
        """Merge window per rule id, for alert group garbage collection."""
        return {rule.id: rule.merge_window_seconds for rule in self.rules}


def build_snapshot(raw_policies: Iterable[Any], raw_rules: Iterable[Any]) -> PolicySnapshot:
    policies: List[RetentionPolicyConfig] = []
    rules: List[NotificationRuleConfig] = []
    errors: List[str] = []
    for raw in raw_policies:
        try:
            policies.append(raw if isinstance(raw, RetentionPolicyConfig) else load_policy(raw))
        except ConfigurationError as e:
            logger.warning(f"Skipping retention policy: {e}")
            errors.append(str(e))
    for raw in raw_rules:
        try:
            rules.append(raw if isinstance(raw, NotificationRuleConfig) else load_rule(raw))
        except ConfigurationError as e:
            logger.warning(f"Skipping notification rule: {e}")
            errors.append(str(e))
    return PolicySnapshot(policies=tuple(policies), rules=tuple(rules), errors=tuple(errors))


class PolicyStore:
    """Caches the last loaded snapshot; subclasses implement load()."""

    def __init__(self):
        self._snapshot: Optional[PolicySnapshot] = None
        self._lock = threading.Lock()

    def load(self) -> PolicySnapshot:
        raise NotImplementedError

    @property
    def snapshot(self) -> PolicySnapshot:
        with self._lock:
            if self._snapshot is None:
                self._snapshot = self.load()
            return self._snapshot

    def reload(self) -> PolicySnapshot:
        """Load a fresh snapshot. Sweeps already running keep the old one."""
        snapshot = self.load()
        with self._lock:
            self._snapshot = snapshot
        logger.info(
            f"Reloaded {len(snapshot.policies)} retention policies and {len(snapshot.rules)} "
            f"notification rules ({len(snapshot.errors)} invalid)"
        )
        return snapshot


class StaticPolicyStore(PolicyStore):
    """Policies and rules given in code (mappings or already-built configs)."""

    def __init__(self, policies: Iterable[Any] = (), rules: Iterable[Any] = ()):
        super().__init__()
        self.raw_policies = list(policies)
        self.raw_rules = list(rules)

    def load(self) -> PolicySnapshot:
        return build_snapshot(self.raw_policies, self.raw_rules)


class SqlPolicyStore(PolicyStore):
    """Policies and rules from the retention_policies and notification_rules tables."""

    def __init__(self, session_factory: Optional[Callable[[], Session]] = None):
        super().__init__()
        if session_factory is None:
            from audit_engine.core.database import SessionLocal
            session_factory = SessionLocal
        self.session_factory = session_factory

    def load(self) -> PolicySnapshot:
        db = self.session_factory()
        try:
            policy_rows = db.scalars(select(RetentionPolicy).order_by(RetentionPolicy.name)).all()
            rule_rows = db.scalars(select(NotificationRule).order_by(NotificationRule.id)).all()
            return build_snapshot(policy_rows, rule_rows)
        finally:
            db.close()
