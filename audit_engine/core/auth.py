"""
API key authentication and role checks for the engine API.

Callers send ``X-API-Key``. The static key from settings acts as admin; keys
issued through the API are stored as salted hashes with a role. Without a
static key configured, authentication is off and every caller is admin.
"""
import hashlib
import hmac
import logging
import secrets
from dataclasses import dataclass
from typing import Optional

from fastapi import HTTPException, status, Security, Depends
from fastapi.security import APIKeyHeader
from sqlalchemy import select
from sqlalchemy.orm import Session

from audit_engine.core.config import settings
from audit_engine.core.database import get_db
from audit_engine.core.roles import Role, has_permission, normalize_role
from audit_engine.models.api_key import APIKey

logger = logging.getLogger(__name__)

KEY_PREFIX = "ae_"

api_key_header = APIKeyHeader(name="X-API-Key", auto_error=False)


@dataclass(frozen=True)
class APIClient:
    """Authenticated caller."""
    source: str  # "static", "db" or "disabled"
    role: str
    api_key_id: Optional[int] = None
    label: Optional[str] = None

    @property
    def is_admin(self) -> bool:
        return self.role == Role.ADMIN.value

    def can(self, min_role: str) -> bool:
        return has_permission(self.role, min_role)


def generate_api_key() -> str:
    return f"{KEY_PREFIX}{secrets.token_urlsafe(32)}"


def hash_api_key(key: str) -> str:
    """Salted SHA-256 of an API key; only the hash is stored."""
    return hashlib.sha256(f"{settings.API_KEY_SALT}{key}".encode()).hexdigest()


def _unauthorized(detail: str) -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail=detail,
        headers={"WWW-Authenticate": "ApiKey"},
    )


def _active_db_key(db: Session, raw_key: str) -> Optional[APIKey]:
    db_key = db.scalar(select(APIKey).where(APIKey.key_hash == hash_api_key(raw_key)))
    if db_key is None or not db_key.is_active:
        return None
    return db_key


def get_current_api_client(
    api_key: Optional[str] = Security(api_key_header),
    db: Session = Depends(get_db)
) -> APIClient:
    """
    Resolve the caller from the X-API-Key header.

    Raises:
        HTTPException: 401 when the key is missing, unknown or revoked
    """
    static_key = (settings.API_KEY or "").strip()
    if not static_key:
        logger.debug("API_KEY not configured - authentication is disabled")
        return APIClient(source="disabled", role=Role.ADMIN.value)

    if not api_key:
        logger.warning("API key missing from request")
        raise _unauthorized("Missing API key")

    if hmac.compare_digest(api_key, static_key):
        return APIClient(source="static", role=Role.ADMIN.value)

    db_key = _active_db_key(db, api_key)
    if db_key is None:
        logger.warning(f"Invalid API key attempted: {api_key[:4]}...")
        raise _unauthorized("Invalid API key")

    db_key.touch()
    db.commit()
    client = APIClient(
        source="db", role=normalize_role(db_key.role), api_key_id=db_key.id, label=db_key.label
    )
    logger.debug(f"Authenticated with API key {db_key.label or db_key.id} (role: {client.role})")
    return client


def require_role(min_role: str = Role.VIEWER.value):
    """
    Dependency factory for role-based access control.

    Args:
        min_role: Lowest role allowed through

    Returns:
        Dependency returning the APIClient, or raising 403
    """
    required = normalize_role(min_role)

    def check_role(client: APIClient = Depends(get_current_api_client)) -> APIClient:
        if not client.can(required):
            logger.warning(f"Access denied: role '{client.role}' is below '{required}'")
            raise HTTPException(
                status_code=status.HTTP_403_FORBIDDEN,
                detail=f"Insufficient permissions. Required role: {required}",
            )
        return client

    return check_role
