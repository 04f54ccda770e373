"""
Integrity endpoints: sweep stored records and verify selected ones.
"""
import logging
from typing import List
from fastapi import APIRouter, Depends, HTTPException, status, Request, Body
from sqlalchemy.orm import Session

from audit_engine.api.deps import get_engine
from audit_engine.core.database import get_db
from audit_engine.core.auth import require_role, APIClient
from audit_engine.core.errors import ConfigurationError
from audit_engine.models.activity_log import ActivityLog
from audit_engine.schemas.activity import ActivityRecord, RecordFilter
from audit_engine.schemas.integrity import (
    IntegritySweepRequest,
    IntegritySweepResult,
    VerifyBatchResponse,
)
from audit_engine.services.activity_service import log_admin_action, ActivityAction
from audit_engine.services.engine import AuditEngine
from audit_engine.services.metrics import SweepMetrics

logger = logging.getLogger(__name__)

router = APIRouter()


@router.post("/sweep", response_model=IntegritySweepResult)
def run_integrity_sweep(
    payload: IntegritySweepRequest,
    request: Request,
    client: APIClient = Depends(require_role("operator")),
    db: Session = Depends(get_db),
    engine: AuditEngine = Depends(get_engine),
):
    """
    Verify every stored record matching the filter and list the suspicious ones.
    """
    record_filter = RecordFilter(
        activity_type=payload.activity_type,
        module=payload.module,
        created_after=payload.created_after,
        created_before=payload.created_before,
    )
    metrics = SweepMetrics()
    try:
        result = engine.sweep_service(metrics).run_integrity(
            record_filter, batch_size=payload.batch_size, timeout_seconds=payload.timeout_seconds
        )
    except ConfigurationError as e:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(e))

    log_admin_action(
        db,
        engine.integrity,
        client,
        ActivityAction.INTEGRITY_SWEEP,
        details={
            "verified": result.verified,
            "suspicious": len(result.suspicious),
            "unsealed": len(result.unsealed),
            "not_reached": result.not_reached,
        },
        request=request,
    )
    return result


@router.post("/verify-batch", response_model=VerifyBatchResponse)
def verify_batch(
    record_ids: List[int] = Body(..., embed=True, min_length=1, max_length=1000),
    client: APIClient = Depends(require_role("viewer")),
    db: Session = Depends(get_db),
    engine: AuditEngine = Depends(get_engine),
):
    """
    Verify the given records. Ids that do not exist are reported as not found.
    """
    rows = db.query(ActivityLog).filter(ActivityLog.id.in_(record_ids)).all()
    found = {row.id for row in rows}
    missing = [record_id for record_id in record_ids if record_id not in found]
    if missing:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"Activity logs not found: {missing}"
        )
    try:
        results = engine.integrity.verify_batch(ActivityRecord.model_validate(row) for row in rows)
    except ConfigurationError as e:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(e))
    return VerifyBatchResponse(results=results)
