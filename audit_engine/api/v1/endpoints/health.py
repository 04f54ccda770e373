"""
Health check for load balancers and the sweep scheduler.
"""
import logging
from fastapi import APIRouter, Depends, HTTPException, status
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from audit_engine.api.deps import get_engine
from audit_engine.core.database import get_db
from audit_engine.core.config import settings
from audit_engine.services.engine import AuditEngine

logger = logging.getLogger(__name__)

router = APIRouter()


@router.get("/health")
async def health_check(db: Session = Depends(get_db), engine: AuditEngine = Depends(get_engine)):
    """
    Liveness plus the engine state a scheduler cares about.

    Only an unreachable database fails the check (503). A missing signing key,
    invalid policy rows or queued dispatch retries are reported but leave the
    service up, since reads and dry runs still work.
    """
    try:
        db.execute(text("SELECT 1")).fetchone()
    except SQLAlchemyError as e:
        logger.error(f"Database health check failed: {e}", exc_info=True)
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Database connection failed"
        )

    snapshot = engine.policy_store.snapshot
    return {
        "ok": True,
        "db": True,
        "signing_key": engine.integrity.is_configured,
        "policies": len(snapshot.policies),
        "rules": len(snapshot.rules),
        "invalid_policy_rows": len(snapshot.errors),
        "pending_retries": engine.alert_service.dispatcher.pending_retries,
        "environment": settings.APP_ENV,
    }
