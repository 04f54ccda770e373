"""
Shared FastAPI dependencies.
"""
from functools import lru_cache

from audit_engine.services.engine import AuditEngine


@lru_cache
def get_engine() -> AuditEngine:
    """Process-wide engine instance. Tests override this dependency."""
    return AuditEngine()
