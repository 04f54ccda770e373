"""
Retention policy model.
"""
from sqlalchemy import Column, Integer, String, DateTime, Text, Boolean, JSON
from sqlalchemy.sql import func

from audit_engine.core.database import Base


class RetentionPolicy(Base):
    """Retention policy deciding when aged activity is archived or deleted."""
    __tablename__ = "retention_policies"

    id = Column(Integer, primary_key=True, index=True)
    name = Column(String(255), nullable=False, unique=True, index=True)
    description = Column(Text, nullable=True)

    # Scope filters, NULL means "any"
    activity_type = Column(String(100), nullable=True, index=True)
    module = Column(String(100), nullable=True, index=True)

    retention_days = Column(Integer, nullable=False)
    action = Column(String(20), nullable=False)  # "archive" or "delete"
    priority = Column(Integer, nullable=False, default=0, index=True)
    conditions = Column(JSON, nullable=True)  # list of {field, operator, value}
    is_active = Column(Boolean, default=True, nullable=False, index=True)

    last_executed_at = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now(), nullable=False)
