"""
Merge-group table owned by the alert deduplicator.
"""
from sqlalchemy import Column, Integer, String, DateTime, event
from sqlalchemy.orm.attributes import set_committed_value

from audit_engine.core.database import Base
from audit_engine.models.activity_log import ensure_utc


class AlertGroup(Base):
    """One row per (rule_id, merge_key) while the merge window is open."""
    __tablename__ = "alert_groups"

    rule_id = Column(Integer, primary_key=True)
    merge_key = Column(String(64), primary_key=True)
    first_seen = Column(DateTime(timezone=True), nullable=False)
    last_seen = Column(DateTime(timezone=True), nullable=False, index=True)
    occurrence_count = Column(Integer, nullable=False, default=1)
    representative_record_id = Column(Integer, nullable=False)


@event.listens_for(AlertGroup, "load")
def _normalize_group_on_load(target: AlertGroup, _context) -> None:
    set_committed_value(target, "first_seen", ensure_utc(target.first_seen))
    set_committed_value(target, "last_seen", ensure_utc(target.last_seen))
