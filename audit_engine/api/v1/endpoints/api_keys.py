"""
API key management endpoints.
"""
import logging
from fastapi import APIRouter, Depends, HTTPException, status, Request
from sqlalchemy.orm import Session

from audit_engine.api.deps import get_engine
from audit_engine.core.database import get_db
from audit_engine.core.auth import (
    require_role,
    get_current_api_client,
    generate_api_key,
    hash_api_key,
    APIClient,
)
from audit_engine.models.api_key import APIKey
from audit_engine.schemas.api_key import (
    APIKeyCreateRequest,
    APIKeyResponse,
    APIKeyCreateResponse,
    APIKeyListResponse,
    APIKeyUpdateRequest,
)
from audit_engine.services.activity_service import log_admin_action, ActivityAction, SubjectType
from audit_engine.services.engine import AuditEngine

logger = logging.getLogger(__name__)

router = APIRouter()


def _to_response(key: APIKey) -> APIKeyResponse:
    return APIKeyResponse(
        id=key.id,
        name=key.label,
        role=key.role,
        is_active=key.is_active,
        created_at=key.created_at,
        last_used_at=key.last_used_at,
        key_masked=key.masked,
    )


def _get_key_or_404(db: Session, key_id: int) -> APIKey:
    db_key = db.query(APIKey).filter(APIKey.id == key_id).first()
    if not db_key:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"API key with id {key_id} not found"
        )
    return db_key


@router.get("/", response_model=APIKeyListResponse)
async def list_api_keys(
    _client=Depends(require_role("admin")),
    db: Session = Depends(get_db),
):
    """
    List all API keys (admin only). Only a masked hash is returned.
    """
    keys = db.query(APIKey).order_by(APIKey.created_at.desc(), APIKey.id.desc()).all()
    items = [_to_response(key) for key in keys]
    logger.info(f"Listed {len(items)} API keys")
    return APIKeyListResponse(items=items, total=len(items))


@router.post("/", response_model=APIKeyCreateResponse, status_code=status.HTTP_201_CREATED)
async def create_api_key(
    payload: APIKeyCreateRequest,
    request: Request,
    client: APIClient = Depends(require_role("admin")),
    db: Session = Depends(get_db),
    engine: AuditEngine = Depends(get_engine),
):
    """
    Create a new API key (admin only).

    The full key is returned once; only its salted hash is stored.
    """
    new_key = generate_api_key()
    db_key = APIKey(
        key_hash=hash_api_key(new_key),
        label=payload.name,
        role=payload.role,
        is_active=True,
    )
    db.add(db_key)
    db.commit()
    db.refresh(db_key)
    logger.info(f"Created API key: id={db_key.id}, label={payload.name}, role={payload.role}")

    log_admin_action(
        db,
        engine.integrity,
        client,
        ActivityAction.API_KEY_CREATE,
        subject_type=SubjectType.API_KEY,
        subject_id=db_key.id,
        details={"label": payload.name, "role": payload.role},
        request=request,
    )

    return APIKeyCreateResponse(
        id=db_key.id,
        name=db_key.label,
        role=db_key.role,
        is_active=db_key.is_active,
        created_at=db_key.created_at,
        key=new_key,
    )


@router.patch("/{key_id}", response_model=APIKeyResponse)
async def update_api_key(
    key_id: int,
    payload: APIKeyUpdateRequest,
    request: Request,
    client: APIClient = Depends(require_role("admin")),
    db: Session = Depends(get_db),
    engine: AuditEngine = Depends(get_engine),
):
    """
    Update an API key's label, role or active flag (admin only).
    """
    db_key = _get_key_or_404(db, key_id)
    changes = payload.model_dump(exclude_none=True)
    for field, value in changes.items():
        setattr(db_key, field, value)
    db.commit()
    db.refresh(db_key)
    logger.info(f"Updated API key: id={key_id} ({', '.join(changes) or 'no changes'})")

    log_admin_action(
        db,
        engine.integrity,
        client,
        ActivityAction.API_KEY_UPDATE,
        subject_type=SubjectType.API_KEY,
        subject_id=key_id,
        details=changes,
        request=request,
    )
    return _to_response(db_key)


@router.delete("/{key_id}")
async def delete_api_key(
    key_id: int,
    request: Request,
    client: APIClient = Depends(require_role("admin")),
    db: Session = Depends(get_db),
    engine: AuditEngine = Depends(get_engine),
):
    """
    Soft-delete an API key (admin only). The key can no longer authenticate.
    """
    db_key = _get_key_or_404(db, key_id)
    db_key.is_active = False
    db.commit()
    logger.info(f"Deactivated API key: id={key_id}")

    log_admin_action(
        db,
        engine.integrity,
        client,
        ActivityAction.API_KEY_DEACTIVATE,
        subject_type=SubjectType.API_KEY,
        subject_id=key_id,
        request=request,
    )
    return {"message": "API key deleted successfully", "id": key_id, "is_active": False}


# Separate router for auth endpoints
auth_router = APIRouter()


@auth_router.get("/me")
async def get_current_user_info(
    client: APIClient = Depends(get_current_api_client),
):
    """
    Current authenticated client info (role, source).
    """
    return {
        "role": client.role,
        "source": client.source,
        "is_admin": client.is_admin,
        "api_key_id": client.api_key_id,
        "label": client.label,
    }
