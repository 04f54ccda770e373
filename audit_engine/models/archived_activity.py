"""
Cold-storage copy of activity records moved out by a retention policy.
"""
from sqlalchemy import Column, Integer, String, DateTime, Text, JSON, event
from sqlalchemy.orm.attributes import set_committed_value
from sqlalchemy.sql import func

from audit_engine.core.database import Base
from audit_engine.models.activity_log import ensure_utc


class ArchivedActivity(Base):
    """Archived activity record, keyed by original id + date."""
    __tablename__ = "archived_activities"

    id = Column(Integer, primary_key=True, index=True)
    original_id = Column(Integer, nullable=False, unique=True, index=True)
    archive_key = Column(String(255), nullable=False, unique=True)  # YYYY/MM/DD/<original_id>

    # Copied verbatim, signature included, so a restored record still verifies
    type = Column(String(100), nullable=False, index=True)
    module = Column(String(100), nullable=True, index=True)
    description = Column(Text, nullable=False, default="")
    user_id = Column(Integer, nullable=True, index=True)
    subject_type = Column(String(100), nullable=True)
    subject_id = Column(Integer, nullable=True)
    ip_address = Column(String(45), nullable=True)
    user_agent = Column(String(255), nullable=True)
    properties = Column(JSON, nullable=True)
    risk_level = Column(Integer, nullable=False, default=0)
    original_created_at = Column(DateTime(timezone=True), nullable=False, index=True)
    signature = Column(String(64), nullable=True)

    archived_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    policy_name = Column(String(255), nullable=True)  # Policy that archived the record


@event.listens_for(ArchivedActivity, "load")
def _normalize_archive_on_load(target: ArchivedActivity, _context) -> None:
    set_committed_value(target, "original_created_at", ensure_utc(target.original_created_at))
