"""
API v1 router.
"""
from fastapi import APIRouter

from audit_engine.api.v1.endpoints import activity, alerts, api_keys, health, integrity, retention
from audit_engine.api.v1.endpoints.api_keys import auth_router

api_router = APIRouter()

# Health check endpoint (no prefix, so it's /api/v1/health)
api_router.include_router(health.router, tags=["health"])

api_router.include_router(activity.router, prefix="/activity", tags=["activity"])
api_router.include_router(integrity.router, prefix="/integrity", tags=["integrity"])
api_router.include_router(retention.router, prefix="/retention", tags=["retention"])
api_router.include_router(alerts.router, prefix="/alerts", tags=["alerts"])
api_router.include_router(api_keys.router, prefix="/api-keys", tags=["api-keys"])
api_router.include_router(auth_router, prefix="/auth", tags=["auth"])
