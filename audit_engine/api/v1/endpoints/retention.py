"""
Retention endpoints: policy management, sweeps, run history and the archive.
"""
import logging
from typing import List
from fastapi import APIRouter, Depends, HTTPException, status, Query, Request
from sqlalchemy.orm import Session

from audit_engine.api.deps import get_engine
from audit_engine.core.database import get_db
from audit_engine.core.auth import require_role, APIClient
from audit_engine.core.errors import ConfigurationError, TransientIOError
from audit_engine.models.retention_policy import RetentionPolicy
from audit_engine.models.retention_run import RetentionRun
from audit_engine.schemas.activity import ActivityLogResponse, RecordFilter
from audit_engine.schemas.retention import (
    ArchivedActivityResponse,
    RetentionPolicyCreateRequest,
    RetentionPolicyResponse,
    RetentionRunResponse,
    RetentionSweepRequest,
    RetentionSweepResult,
    load_policy,
)
from audit_engine.services.activity_service import (
    log_admin_action,
    ActivityAction,
    SubjectType,
)
from audit_engine.services.engine import AuditEngine
from audit_engine.services.metrics import SweepMetrics

logger = logging.getLogger(__name__)

router = APIRouter()


@router.get("/policies", response_model=List[RetentionPolicyResponse])
async def list_policies(
    client: APIClient = Depends(require_role("viewer")),
    db: Session = Depends(get_db),
):
    """List retention policies, highest priority first."""
    policies = db.query(RetentionPolicy).order_by(RetentionPolicy.priority.desc(), RetentionPolicy.name).all()
    return [RetentionPolicyResponse.model_validate(p) for p in policies]


@router.post("/policies", response_model=RetentionPolicyResponse, status_code=status.HTTP_201_CREATED)
async def create_policy(
    payload: RetentionPolicyCreateRequest,
    request: Request,
    client: APIClient = Depends(require_role("admin")),
    db: Session = Depends(get_db),
    engine: AuditEngine = Depends(get_engine),
):
    """
    Create a retention policy.

    Conditions are validated before anything is stored, and the engine's
    policy snapshot is reloaded so the next sweep uses the new policy.
    """
    try:
        load_policy({"id": 0, **payload.model_dump()})
    except ConfigurationError as e:
        raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail=str(e))

    if db.query(RetentionPolicy).filter(RetentionPolicy.name == payload.name).first():
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail=f"Retention policy '{payload.name}' already exists"
        )

    policy = RetentionPolicy(**{**payload.model_dump(), "action": payload.action.value})
    db.add(policy)
    db.commit()
    db.refresh(policy)
    logger.info(f"Created retention policy {policy.id} '{policy.name}' ({policy.action} after {policy.retention_days} days)")

    engine.policy_store.reload()
    log_admin_action(
        db,
        engine.integrity,
        client,
        ActivityAction.POLICY_CREATE,
        subject_type=SubjectType.RETENTION_POLICY,
        subject_id=policy.id,
        details={"name": policy.name, "action": policy.action, "retention_days": policy.retention_days},
        request=request,
    )
    return RetentionPolicyResponse.model_validate(policy)


@router.post("/policies/reload")
async def reload_policies(
    client: APIClient = Depends(require_role("operator")),
    engine: AuditEngine = Depends(get_engine),
):
    """
    Reload policies, notification rules and the signing key.

    Rows that fail validation are skipped and reported here.
    """
    engine.reload()
    snapshot = engine.policy_store.snapshot
    return {
        "policies": len(snapshot.policies),
        "rules": len(snapshot.rules),
        "errors": list(snapshot.errors),
        "signing_key": engine.integrity.is_configured,
    }


@router.post("/sweep", response_model=RetentionSweepResult)
def run_retention_sweep(
    payload: RetentionSweepRequest,
    request: Request,
    client: APIClient = Depends(require_role("operator")),
    db: Session = Depends(get_db),
    engine: AuditEngine = Depends(get_engine),
):
    """
    Run a retention sweep. Operators may dry-run; applying actions requires admin.
    """
    if not payload.dry_run and not client.can("admin"):
        logger.warning(f"Live retention sweep refused for role '{client.role}'")
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Insufficient permissions. Required role: admin"
        )

    record_filter = RecordFilter(
        activity_type=payload.activity_type,
        module=payload.module,
        created_before=payload.created_before,
    )
    metrics = SweepMetrics()
    try:
        result = engine.sweep_service(metrics).run_retention(
            dry_run=payload.dry_run,
            record_filter=record_filter,
            batch_size=payload.batch_size,
            timeout_seconds=payload.timeout_seconds,
        )
    except ConfigurationError as e:
        raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail=str(e))
    logger.debug(f"Retention sweep metrics: {metrics.snapshot()}")

    if not payload.dry_run:
        log_admin_action(
            db,
            engine.integrity,
            client,
            ActivityAction.RETENTION_SWEEP,
            details={
                "archived": result.totals.archived,
                "deleted": result.totals.deleted,
                "failed": result.summary.failed,
                "not_reached": result.not_reached,
            },
            request=request,
        )
    if not payload.include_decisions:
        result = result.model_copy(update={"decisions": []})
    return result


@router.get("/runs", response_model=List[RetentionRunResponse])
async def list_runs(
    limit: int = Query(20, ge=1, le=200),
    client: APIClient = Depends(require_role("viewer")),
    db: Session = Depends(get_db),
):
    """Recent retention sweeps, newest first."""
    runs = db.query(RetentionRun).order_by(RetentionRun.id.desc()).limit(limit).all()
    return [RetentionRunResponse.model_validate(r) for r in runs]


@router.get("/archive", response_model=List[ArchivedActivityResponse])
async def list_archive(
    limit: int = Query(100, ge=1, le=1000),
    offset: int = Query(0, ge=0),
    client: APIClient = Depends(require_role("viewer")),
    engine: AuditEngine = Depends(get_engine),
):
    """Archived activity entries in original id order."""
    try:
        rows = engine.activity_store.list_archived(limit=limit, offset=offset)
    except TransientIOError as e:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(e))
    return [ArchivedActivityResponse.model_validate(r) for r in rows]


@router.post("/archive/{record_id}/restore", response_model=ActivityLogResponse)
async def restore_archived(
    record_id: int,
    request: Request,
    client: APIClient = Depends(require_role("auditor")),
    db: Session = Depends(get_db),
    engine: AuditEngine = Depends(get_engine),
):
    """
    Move an archived record back into the activity log.

    The original id and signature are kept, so the record still verifies.
    """
    try:
        record = engine.activity_store.restore_archived(record_id)
    except LookupError:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"Activity {record_id} is not archived"
        )
    except TransientIOError as e:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(e))

    log_admin_action(
        db,
        engine.integrity,
        client,
        ActivityAction.ARCHIVE_RESTORE,
        subject_type=SubjectType.ACTIVITY,
        subject_id=record_id,
        request=request,
    )
    return ActivityLogResponse.model_validate(record.model_dump())
