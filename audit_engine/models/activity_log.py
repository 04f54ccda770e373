"""
Activity log model for the audit trail.

Rows are sealed right after insert. Once ``signature`` is set, every other
column is frozen; the before_update listener below enforces that.
"""
from datetime import datetime, timezone

from sqlalchemy import Column, Integer, String, DateTime, Text, JSON, event, inspect
from sqlalchemy.orm.attributes import set_committed_value

from audit_engine.core.database import Base
from audit_engine.core.errors import RecordTamperError


class ActivityLog(Base):
    """Activity log model for tracking all system actions."""
    __tablename__ = "activity_logs"

    id = Column(Integer, primary_key=True, index=True)
    type = Column(String(100), nullable=False, index=True)  # e.g. "login", "delete_user"
    module = Column(String(100), nullable=True, index=True)  # e.g. "auth", "users"
    description = Column(Text, nullable=False, default="")

    # Actor and subject
    user_id = Column(Integer, nullable=True, index=True)
    subject_type = Column(String(100), nullable=True)
    subject_id = Column(Integer, nullable=True)

    # Request metadata
    ip_address = Column(String(45), nullable=True)  # IPv4 or IPv6
    user_agent = Column(String(255), nullable=True)

    properties = Column(JSON, nullable=True)
    risk_level = Column(Integer, nullable=False, default=0, index=True)
    created_at = Column(DateTime(timezone=True), nullable=False, index=True)

    # Hex-encoded HMAC, set once at write time
    signature = Column(String(64), nullable=True)


SEALED_COLUMNS = (
    "type", "module", "description", "user_id", "subject_type", "subject_id",
    "ip_address", "user_agent", "properties", "risk_level", "created_at",
)


def ensure_utc(value):
    """Normalize timestamps to UTC when timezone info is missing (SQLite drops it)."""
    if value is None or not isinstance(value, datetime):
        return value
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


@event.listens_for(ActivityLog, "load")
def _normalize_activity_on_load(target: ActivityLog, _context) -> None:
    # Committed value, so a sealed row is not marked dirty by the normalization
    set_committed_value(target, "created_at", ensure_utc(target.created_at))


@event.listens_for(ActivityLog, "refresh")
def _normalize_activity_on_refresh(target: ActivityLog, context, attrs) -> None:
    if attrs is None or "created_at" in attrs:
        _normalize_activity_on_load(target, context)


@event.listens_for(ActivityLog, "before_update")
def _reject_sealed_changes(mapper, connection, target: ActivityLog) -> None:
    state = inspect(target)
    signature_history = state.attrs.signature.history
    previous_signature = (
        signature_history.deleted[0] if signature_history.deleted else target.signature
    )
    if previous_signature is None:
        # NULL -> value is the sealing step itself
        return
    changed = [
        column for column in SEALED_COLUMNS
        if state.attrs[column].history.has_changes()
    ]
    if signature_history.has_changes():
        changed.append("signature")
    if changed:
        raise RecordTamperError(target.id, changed)
