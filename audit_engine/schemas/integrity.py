"""Schemas for signature verification."""
from datetime import datetime
from typing import Dict, List, Optional

from pydantic import BaseModel, Field

from audit_engine.schemas.sweep import SweepSummary


class VerificationResult(BaseModel):
    """
    Outcome of verifying one record.

    A mismatch is data, not an error: ``valid`` is False and ``expected`` /
    ``actual`` carry the recomputed and stored signatures for diagnostics.
    """
    record_id: int
    valid: bool
    reason: str  # ok, mismatch, unsealed or malformed
    expected: Optional[str] = None
    actual: Optional[str] = None


class IntegritySweepRequest(BaseModel):
    """Parameters for an integrity sweep."""
    activity_type: Optional[str] = None
    module: Optional[str] = None
    created_after: Optional[datetime] = None
    created_before: Optional[datetime] = None
    batch_size: Optional[int] = Field(None, ge=1, le=10000)
    timeout_seconds: Optional[float] = Field(None, gt=0)


class IntegritySweepResult(BaseModel):
    """Outcome of an integrity sweep over stored records."""
    verified: int = 0
    suspicious: List[int] = Field(default_factory=list)
    unsealed: List[int] = Field(default_factory=list)
    summary: SweepSummary = Field(default_factory=SweepSummary)
    not_reached: int = 0


class VerifyBatchResponse(BaseModel):
    results: Dict[int, bool]
