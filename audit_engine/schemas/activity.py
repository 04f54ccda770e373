"""Schemas for activity records."""
from datetime import datetime, timezone
from typing import Optional, Dict, Any, List
from pydantic import BaseModel, ConfigDict, Field, field_validator


def to_utc_seconds(value: datetime) -> datetime:
    """Interpret naive timestamps as UTC and drop sub-second precision."""
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).replace(microsecond=0)


class ActivityRecord(BaseModel):
    """
    Immutable activity record as seen by the engine.

    Built from an ``ActivityLog`` row (``model_validate(row)``) or directly by
    a record source. Changes after sealing go through ``model_copy(update=...)``
    and are exactly what verification detects.
    """
    model_config = ConfigDict(frozen=True, from_attributes=True)

    id: int
    type: str
    module: Optional[str] = None
    description: str = ""
    user_id: Optional[int] = None
    subject_type: Optional[str] = None
    subject_id: Optional[int] = None
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None
    properties: Dict[str, Any] = Field(default_factory=dict)
    risk_level: int = Field(0, ge=0, le=10)
    created_at: datetime
    signature: Optional[str] = None

    @field_validator("properties", mode="before")
    @classmethod
    def default_properties(cls, v):
        """Treat NULL properties as an empty mapping."""
        return {} if v is None else v

    @field_validator("created_at")
    @classmethod
    def normalize_created_at(cls, v: datetime) -> datetime:
        """Store created_at as UTC with second precision."""
        return to_utc_seconds(v)

    @property
    def is_sealed(self) -> bool:
        return self.signature is not None


class ActivityCreateRequest(BaseModel):
    """Request schema for recording a new activity."""
    type: str = Field(..., min_length=1, max_length=100, description="Activity type, e.g. login")
    module: Optional[str] = Field(None, max_length=100)
    description: str = ""
    user_id: Optional[int] = None
    subject_type: Optional[str] = Field(None, max_length=100)
    subject_id: Optional[int] = None
    ip_address: Optional[str] = Field(None, max_length=45)
    user_agent: Optional[str] = Field(None, max_length=255)
    properties: Dict[str, Any] = Field(default_factory=dict)
    risk_level: int = Field(0, ge=0, le=10)


class ActivityLogResponse(BaseModel):
    """Response schema for activity log entry."""
    id: int
    type: str
    module: Optional[str] = None
    description: str
    user_id: Optional[int] = None
    subject_type: Optional[str] = None
    subject_id: Optional[int] = None
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None
    properties: Optional[Dict[str, Any]] = None
    risk_level: int
    created_at: datetime
    signature: Optional[str] = None

    model_config = {"from_attributes": True}


class ActivityLogListResponse(BaseModel):
    """Response schema for activity log list."""
    items: List[ActivityLogResponse]
    total: int
    limit: int
    offset: int


class RecordFilter(BaseModel):
    """Filter passed to a record source when pulling a batch."""
    activity_type: Optional[str] = None
    module: Optional[str] = None
    created_after: Optional[datetime] = None
    created_before: Optional[datetime] = None
    after_id: Optional[int] = Field(None, description="Keyset cursor: only ids greater than this")

    def with_cursor(self, after_id: int) -> "RecordFilter":
        return self.model_copy(update={"after_id": after_id})


class ActivityIngestResponse(BaseModel):
    """Response for a recorded activity: the sealed row plus what alerting did with it."""
    activity: ActivityLogResponse
    matched_rules: List[int] = Field(default_factory=list)
    dispatched: int = 0
    merged: int = 0
    suppressed: int = 0
    alert_errors: List[str] = Field(default_factory=list)
