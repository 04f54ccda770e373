"""
Activity logging service for the audit trail.

Every row is sealed at write time: inserted, flushed to get its id, signed over
its canonical encoding, then committed in the same transaction.
"""
import logging
from datetime import datetime, timezone
from typing import Optional, Dict, Any
from sqlalchemy.orm import Session
from fastapi import Request

from audit_engine.core.auth import APIClient
from audit_engine.core.errors import ConfigurationError
from audit_engine.models.activity_log import ActivityLog
from audit_engine.schemas.activity import ActivityRecord, to_utc_seconds
from audit_engine.services.integrity_service import IntegrityService

logger = logging.getLogger(__name__)


def request_origin(request: Optional[Request]):
    """Client IP (X-Forwarded-For aware) and user agent of a request."""
    if request is None:
        return None, None
    ip_address = request.client.host if request.client else None
    forwarded_for = request.headers.get("X-Forwarded-For")
    if forwarded_for:
        ip_address = forwarded_for.split(",")[0].strip()
    return ip_address, request.headers.get("User-Agent")


def log_activity(
    db: Session,
    integrity: IntegrityService,
    activity_type: str,
    module: Optional[str] = None,
    description: str = "",
    user_id: Optional[int] = None,
    subject_type: Optional[str] = None,
    subject_id: Optional[int] = None,
    properties: Optional[Dict[str, Any]] = None,
    risk_level: int = 0,
    ip_address: Optional[str] = None,
    user_agent: Optional[str] = None,
    request: Optional[Request] = None,
    created_at: Optional[datetime] = None,
) -> ActivityLog:
    """
    Write and seal an activity record.

    Args:
        db: Database session
        integrity: Sealer holding the signing key
        activity_type: Activity type (e.g., "login", "delete_user")
        module: Module that produced the activity
        description: Human-readable description
        user_id: Acting user
        subject_type: Type of the affected object
        subject_id: ID of the affected object
        properties: Additional JSON details
        risk_level: 0-10
        ip_address: Client IP, taken from the request when omitted
        user_agent: Client user agent, taken from the request when omitted
        request: FastAPI request object
        created_at: Event time, defaults to now

    Returns:
        The sealed ActivityLog row

    Raises:
        ConfigurationError: No signing key is configured
    """
    if not integrity.is_configured:
        raise ConfigurationError("Cannot write activity records: AUDIT_SIGNING_KEY is not configured")
    request_ip, request_agent = request_origin(request)

    activity = ActivityLog(
        type=activity_type,
        module=module,
        description=description or "",
        user_id=user_id,
        subject_type=subject_type,
        subject_id=subject_id,
        ip_address=ip_address or request_ip,
        user_agent=user_agent or request_agent,
        properties=properties or {},
        risk_level=risk_level,
        created_at=to_utc_seconds(created_at or datetime.now(timezone.utc)),
    )

    try:
        db.add(activity)
        db.flush()
        activity.signature = integrity.seal(ActivityRecord.model_validate(activity))
        db.commit()
    except Exception:
        db.rollback()
        raise
    db.refresh(activity)

    logger.debug(f"Logged activity {activity.id}: {activity_type} (module={module}, risk={risk_level})")

    return activity


def log_admin_action(
    db: Session,
    integrity: IntegrityService,
    client: APIClient,
    action: str,
    subject_type: Optional[str] = None,
    subject_id: Optional[int] = None,
    details: Optional[Dict[str, Any]] = None,
    request: Optional[Request] = None,
) -> Optional[ActivityLog]:
    """
    Record an action taken through the engine's own API.

    Skipped with a warning when no signing key is configured, so the action
    itself is not blocked.
    """
    if not integrity.is_configured:
        logger.warning(f"Admin action '{action}' not recorded: AUDIT_SIGNING_KEY is not configured")
        return None
    properties = {"actor_role": client.role, "actor_source": client.source}
    if client.api_key_id is not None:
        properties["api_key_id"] = client.api_key_id
    if details:
        properties.update(details)
    return log_activity(
        db,
        integrity,
        activity_type=action,
        module=ActivityModule.AUDIT_ENGINE,
        description=f"{action} by {client.role}",
        subject_type=subject_type,
        subject_id=subject_id,
        properties=properties,
        request=request,
    )


class ActivityModule:
    AUDIT_ENGINE = "audit_engine"


# Common action constants
class ActivityAction:
    """Constants for actions taken through the engine API."""
    RETENTION_SWEEP = "retention_sweep"
    INTEGRITY_SWEEP = "integrity_sweep"
    ARCHIVE_RESTORE = "archive_restore"
    POLICY_CREATE = "retention_policy_create"
    RULE_CREATE = "notification_rule_create"
    API_KEY_CREATE = "api_key_create"
    API_KEY_UPDATE = "api_key_update"
    API_KEY_DEACTIVATE = "api_key_deactivate"


class SubjectType:
    """Constants for subject types."""
    RETENTION_POLICY = "retention_policy"
    NOTIFICATION_RULE = "notification_rule"
    ACTIVITY = "activity"
    API_KEY = "api_key"
