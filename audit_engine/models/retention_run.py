"""
Retention run log: one row per executed retention sweep.
"""
from sqlalchemy import Column, Integer, String, DateTime, Boolean, JSON
from sqlalchemy.sql import func

from audit_engine.core.database import Base


class RetentionRun(Base):
    """Outcome of a retention sweep (live or dry run)."""
    __tablename__ = "retention_runs"

    id = Column(Integer, primary_key=True, index=True)
    started_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    finished_at = Column(DateTime(timezone=True), nullable=True)
    dry_run = Column(Boolean, nullable=False, default=False)
    status = Column(String(20), nullable=False, default="running")  # running, completed, partial, failed

    processed = Column(Integer, nullable=False, default=0)
    archived = Column(Integer, nullable=False, default=0)
    deleted = Column(Integer, nullable=False, default=0)
    kept = Column(Integer, nullable=False, default=0)
    failed = Column(Integer, nullable=False, default=0)
    not_reached = Column(Integer, nullable=False, default=0)

    failure_samples = Column(JSON, nullable=True)
    policy_results = Column(JSON, nullable=True)
