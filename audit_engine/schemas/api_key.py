"""Schemas for API key management."""
from datetime import datetime
from typing import List, Optional

from pydantic import BaseModel, Field, field_validator

from audit_engine.core.roles import parse_role


def _role_name(v: Optional[str]) -> Optional[str]:
    """Current role name; ValueError for unknown roles."""
    if v is None:
        return None
    return parse_role(v).value


class APIKeyCreateRequest(BaseModel):
    """A new key; legacy role names are accepted and stored under the current name."""
    name: str = Field(..., min_length=1, max_length=255, description="Label shown in listings")
    role: str = Field(..., description="viewer, operator, security_analyst, auditor or admin")

    @field_validator("role")
    @classmethod
    def validate_role(cls, v):
        return _role_name(v)


class APIKeyUpdateRequest(BaseModel):
    """Fields left out are not changed."""
    label: Optional[str] = Field(None, min_length=1, max_length=255)
    role: Optional[str] = None
    is_active: Optional[bool] = None

    @field_validator("role")
    @classmethod
    def validate_role(cls, v):
        return _role_name(v)


class APIKeyBase(BaseModel):
    id: int
    name: Optional[str] = None
    role: str
    is_active: bool
    created_at: datetime


class APIKeyResponse(APIKeyBase):
    """Stored key without secret material."""
    last_used_at: Optional[datetime] = None
    key_masked: Optional[str] = None


class APIKeyCreateResponse(APIKeyBase):
    """Returned once, at creation; the raw key cannot be recovered later."""
    key: str


class APIKeyListResponse(BaseModel):
    items: List[APIKeyResponse]
    total: int
