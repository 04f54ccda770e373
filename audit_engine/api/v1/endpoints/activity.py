"""
Activity log endpoints: record, list and verify the audit trail.
"""
import logging
from typing import Optional
from datetime import datetime
from fastapi import APIRouter, Depends, HTTPException, status, Query, Request
from sqlalchemy.orm import Session

from audit_engine.api.deps import get_engine
from audit_engine.core.database import get_db
from audit_engine.core.auth import require_role, APIClient
from audit_engine.core.errors import ConfigurationError, SignatureFormatError
from audit_engine.models.activity_log import ActivityLog
from audit_engine.schemas.activity import (
    ActivityCreateRequest,
    ActivityIngestResponse,
    ActivityLogListResponse,
    ActivityLogResponse,
    ActivityRecord,
)
from audit_engine.schemas.integrity import VerificationResult
from audit_engine.services.activity_service import log_activity
from audit_engine.services.engine import AuditEngine

logger = logging.getLogger(__name__)

router = APIRouter()


@router.post("/", response_model=ActivityIngestResponse, status_code=status.HTTP_201_CREATED)
async def record_activity(
    payload: ActivityCreateRequest,
    request: Request,
    client: APIClient = Depends(require_role("security_analyst")),
    db: Session = Depends(get_db),
    engine: AuditEngine = Depends(get_engine),
):
    """
    Record and seal an activity, then run it through the alert rules.

    The record is committed before alerting starts, so an alerting failure
    never loses the audit entry.
    """
    try:
        activity = log_activity(
            db,
            engine.integrity,
            activity_type=payload.type,
            module=payload.module,
            description=payload.description,
            user_id=payload.user_id,
            subject_type=payload.subject_type,
            subject_id=payload.subject_id,
            properties=payload.properties,
            risk_level=payload.risk_level,
            ip_address=payload.ip_address,
            user_agent=payload.user_agent,
            request=request,
        )
    except ConfigurationError as e:
        logger.error(f"Refusing to record activity: {e}")
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(e))

    alerts = engine.alert_service.process(ActivityRecord.model_validate(activity))
    logger.info(
        f"Recorded activity {activity.id} ({activity.type}): "
        f"{len(alerts.matched_rules)} rules matched, {len(alerts.dispatched)} dispatched, {len(alerts.merged)} merged"
    )
    return ActivityIngestResponse(
        activity=ActivityLogResponse.model_validate(activity),
        matched_rules=alerts.matched_rules,
        dispatched=len(alerts.dispatched),
        merged=len(alerts.merged),
        suppressed=len(alerts.suppressed),
        alert_errors=alerts.errors,
    )


@router.get("/", response_model=ActivityLogListResponse)
async def list_activity_logs(
    limit: int = Query(50, ge=1, le=500, description="Maximum number of logs to return"),
    offset: int = Query(0, ge=0, description="Number of logs to skip"),
    start_date: Optional[datetime] = Query(None, description="Filter logs from this date"),
    end_date: Optional[datetime] = Query(None, description="Filter logs until this date"),
    user_id: Optional[int] = Query(None, description="Filter by acting user"),
    activity_type: Optional[str] = Query(None, description="Filter by activity type"),
    module: Optional[str] = Query(None, description="Filter by module"),
    min_risk_level: Optional[int] = Query(None, ge=0, le=10, description="Minimum risk level"),
    client: APIClient = Depends(require_role("viewer")),
    db: Session = Depends(get_db),
):
    """
    List activity logs with optional filters, newest first.
    """
    query = db.query(ActivityLog)

    if start_date:
        query = query.filter(ActivityLog.created_at >= start_date)
    if end_date:
        query = query.filter(ActivityLog.created_at <= end_date)
    if user_id is not None:
        query = query.filter(ActivityLog.user_id == user_id)
    if activity_type:
        query = query.filter(ActivityLog.type == activity_type)
    if module:
        query = query.filter(ActivityLog.module == module)
    if min_risk_level is not None:
        query = query.filter(ActivityLog.risk_level >= min_risk_level)

    total = query.count()
    logs = query.order_by(ActivityLog.created_at.desc(), ActivityLog.id.desc()).offset(offset).limit(limit).all()

    return ActivityLogListResponse(
        items=[ActivityLogResponse.model_validate(log) for log in logs],
        total=total,
        limit=limit,
        offset=offset,
    )


@router.get("/{log_id}", response_model=ActivityLogResponse)
async def get_activity_log(
    log_id: int,
    client: APIClient = Depends(require_role("viewer")),
    db: Session = Depends(get_db),
):
    """
    Get a specific activity log entry by ID.
    """
    log = db.query(ActivityLog).filter(ActivityLog.id == log_id).first()
    if not log:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"Activity log with id {log_id} not found"
        )
    return ActivityLogResponse.model_validate(log)


@router.get("/{log_id}/verify", response_model=VerificationResult)
async def verify_activity_log(
    log_id: int,
    client: APIClient = Depends(require_role("viewer")),
    db: Session = Depends(get_db),
    engine: AuditEngine = Depends(get_engine),
):
    """
    Recompute the signature of one record and compare it with the stored one.
    """
    log = db.query(ActivityLog).filter(ActivityLog.id == log_id).first()
    if not log:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"Activity log with id {log_id} not found"
        )
    record = ActivityRecord.model_validate(log)
    try:
        return engine.integrity.check(record)
    except SignatureFormatError:
        return VerificationResult(record_id=log_id, valid=False, reason="malformed", actual=record.signature)
    except ConfigurationError as e:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(e))
