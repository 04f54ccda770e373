"""
Alerting endpoints: notification rules, merge groups and dispatch maintenance.
"""
import logging
from typing import List
from fastapi import APIRouter, Depends, HTTPException, status, Request
from sqlalchemy.orm import Session

from audit_engine.api.deps import get_engine
from audit_engine.core.config import settings
from audit_engine.core.database import get_db
from audit_engine.core.auth import require_role, APIClient
from audit_engine.core.errors import ConfigurationError, TransientIOError
from audit_engine.models.notification_rule import NotificationRule
from audit_engine.schemas.notification import (
    ChannelResult,
    GarbageCollectionResponse,
    MergedAlertGroupListResponse,
    NotificationRuleCreateRequest,
    NotificationRuleResponse,
    load_rule,
    split_frequency_limit,
)
from audit_engine.services.activity_service import (
    log_admin_action,
    ActivityAction,
    SubjectType,
)
from audit_engine.services.engine import AuditEngine

logger = logging.getLogger(__name__)

router = APIRouter()


@router.get("/rules", response_model=List[NotificationRuleResponse])
async def list_rules(
    client: APIClient = Depends(require_role("viewer")),
    db: Session = Depends(get_db),
):
    """List notification rules."""
    rules = db.query(NotificationRule).order_by(NotificationRule.id).all()
    return [NotificationRuleResponse.model_validate(r) for r in rules]


@router.post("/rules", response_model=NotificationRuleResponse, status_code=status.HTTP_201_CREATED)
async def create_rule(
    payload: NotificationRuleCreateRequest,
    request: Request,
    client: APIClient = Depends(require_role("admin")),
    db: Session = Depends(get_db),
    engine: AuditEngine = Depends(get_engine),
):
    """
    Create a notification rule.

    Conditions, recipients and channels are validated before the rule is
    stored; the rule applies to activity recorded after this call returns.
    """
    values = split_frequency_limit(payload.model_dump())
    try:
        config = load_rule({"id": 0, **values})
    except ConfigurationError as e:
        raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail=str(e))

    if db.query(NotificationRule).filter(NotificationRule.name == payload.name).first():
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail=f"Notification rule '{payload.name}' already exists"
        )

    if config.frequency_limit is not None:
        values["frequency_limit"] = config.frequency_limit.model_dump()
    if values["merge_window_seconds"] is None:
        values["merge_window_seconds"] = settings.DEFAULT_MERGE_WINDOW_SECONDS
    rule = NotificationRule(**values)
    db.add(rule)
    db.commit()
    db.refresh(rule)
    logger.info(f"Created notification rule {rule.id} '{rule.name}' (priority {rule.priority})")

    engine.policy_store.reload()
    log_admin_action(
        db,
        engine.integrity,
        client,
        ActivityAction.RULE_CREATE,
        subject_type=SubjectType.NOTIFICATION_RULE,
        subject_id=rule.id,
        details={"name": rule.name},
        request=request,
    )
    return NotificationRuleResponse.model_validate(rule)


@router.get("/groups", response_model=MergedAlertGroupListResponse)
async def list_groups(
    client: APIClient = Depends(require_role("viewer")),
    engine: AuditEngine = Depends(get_engine),
):
    """Open merge groups, oldest first."""
    try:
        groups = sorted(engine.alert_service.deduplicator.groups(), key=lambda g: (g.first_seen, g.rule_id))
    except TransientIOError as e:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(e))
    return MergedAlertGroupListResponse(items=groups, total=len(groups))


@router.post("/gc", response_model=GarbageCollectionResponse)
def collect_expired_groups(
    client: APIClient = Depends(require_role("operator")),
    engine: AuditEngine = Depends(get_engine),
):
    """
    Evict merge groups whose window has elapsed and send their digests.
    """
    try:
        return engine.alert_service.flush_digests()
    except TransientIOError as e:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(e))


@router.post("/retries", response_model=List[ChannelResult])
def process_retries(
    client: APIClient = Depends(require_role("operator")),
    engine: AuditEngine = Depends(get_engine),
):
    """Re-attempt failed deliveries that are due."""
    return engine.alert_service.process_retries()
