"""
Wiring of the engine's collaborators over one database.
"""
import logging
from typing import Callable, Mapping, Optional

from sqlalchemy.orm import Session

from audit_engine.core.config import get_settings
from audit_engine.services.activity_store import SqlActivityStore
from audit_engine.services.alert_deduplicator import (
    AlertDeduplicator,
    InMemoryAlertGroupStore,
    SqlAlertGroupStore,
)
from audit_engine.services.alert_dispatcher import AlertDispatcher
from audit_engine.services.alert_service import AlertService
from audit_engine.services.integrity_service import IntegrityService
from audit_engine.services.metrics import MetricsSink
from audit_engine.services.policy_store import SqlPolicyStore
from audit_engine.services.rule_statistics import SqlRuleStatistics
from audit_engine.services.sweep_service import SqlRunLog, SweepService

logger = logging.getLogger(__name__)


class AuditEngine:
    """
    Long-lived engine components.

    Holds the signing key, the policy/rule snapshot and the alert merge
    groups, so one instance is shared by every request of a process.
    """

    def __init__(
        self,
        session_factory: Optional[Callable[[], Session]] = None,
        integrity: Optional[IntegrityService] = None,
        transports: Optional[Mapping[str, object]] = None,
        group_store_backend: Optional[str] = None,
    ):
        if session_factory is None:
            from audit_engine.core.database import SessionLocal
            session_factory = SessionLocal
        settings = get_settings()
        self.session_factory = session_factory
        self.integrity = integrity or IntegrityService()
        self.activity_store = SqlActivityStore(session_factory)
        self.policy_store = SqlPolicyStore(session_factory)
        self.run_log = SqlRunLog(session_factory)

        backend = group_store_backend or settings.ALERT_GROUP_STORE
        group_store = SqlAlertGroupStore(session_factory) if backend == "database" else InMemoryAlertGroupStore()
        self.alert_service = AlertService(
            self.policy_store,
            deduplicator=AlertDeduplicator(group_store),
            dispatcher=AlertDispatcher(transports=transports),
            record_source=self.activity_store,
            rule_stats=SqlRuleStatistics(session_factory),
        )
        logger.info(f"Audit engine ready (alert groups: {backend}, signing key: "
                    f"{'configured' if self.integrity.is_configured else 'missing'})")

    def sweep_service(self, metrics: Optional[MetricsSink] = None) -> SweepService:
        """A sweep service scoped to one sweep invocation."""
        return SweepService(
            record_store=self.activity_store,
            policy_store=self.policy_store,
            integrity=self.integrity,
            run_log=self.run_log,
            metrics=metrics,
        )

    def reload(self) -> None:
        """Explicit reload boundary: policies, rules and key material."""
        self.policy_store.reload()
        self.integrity.reload_key()
