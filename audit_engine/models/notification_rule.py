"""
Notification rule model for security alerting.
"""
from sqlalchemy import Column, Integer, String, DateTime, Text, Boolean, JSON
from sqlalchemy.sql import func

from audit_engine.core.database import Base


class NotificationRule(Base):
    """Alerting rule matched against incoming activity."""
    __tablename__ = "notification_rules"

    id = Column(Integer, primary_key=True, index=True)
    name = Column(String(255), nullable=False, unique=True, index=True)
    description = Column(Text, nullable=True)

    conditions = Column(JSON, nullable=True)  # mapping of recognized keys or list of triples
    recipients = Column(JSON, nullable=True)  # ordered recipient selectors
    dispatch_channels = Column(JSON, nullable=True)  # ordered [{channel_type, config}]

    title_template = Column(String(255), nullable=True)
    message_template = Column(Text, nullable=True)
    merged_title_template = Column(String(255), nullable=True)
    merged_message_template = Column(Text, nullable=True)

    merge_similar = Column(Boolean, default=True, nullable=False)
    merge_window_seconds = Column(Integer, default=300, nullable=False)
    merge_fields = Column(JSON, nullable=True)  # NULL means user_id + ip_address

    priority = Column(Integer, default=2, nullable=False)  # 0-4, labelling only
    frequency_limit = Column(JSON, nullable=True)  # {max_count, window_seconds}
    is_active = Column(Boolean, default=True, nullable=False, index=True)

    triggered_count = Column(Integer, default=0, nullable=False)
    last_triggered_at = Column(DateTime(timezone=True), nullable=True)

    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now(), nullable=False)
