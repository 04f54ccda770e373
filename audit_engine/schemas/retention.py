"""Schemas for retention policies and retention sweeps."""
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from audit_engine.core.errors import ConfigurationError
from audit_engine.schemas.activity import ActivityRecord
from audit_engine.schemas.conditions import Condition, parse_conditions
from audit_engine.schemas.sweep import SweepSummary


class RetentionAction(str, Enum):
    """Outcome of retention evaluation for one record."""
    KEEP = "keep"
    ARCHIVE = "archive"
    DELETE = "delete"


class RetentionPolicyConfig(BaseModel):
    """Read-only retention policy as evaluated by the engine."""
    model_config = ConfigDict(frozen=True, from_attributes=True)

    id: Optional[int] = None
    name: str = Field(..., min_length=1, max_length=255)
    description: Optional[str] = None
    activity_type: Optional[str] = None
    module: Optional[str] = None
    retention_days: int = Field(..., ge=0)
    action: RetentionAction
    priority: int = 0
    conditions: Tuple[Condition, ...] = ()
    is_active: bool = True

    @field_validator("action")
    @classmethod
    def validate_action(cls, v: RetentionAction) -> RetentionAction:
        """A policy can only archive or delete."""
        if v == RetentionAction.KEEP:
            raise ValueError("action must be 'archive' or 'delete'")
        return v

    @field_validator("conditions", mode="before")
    @classmethod
    def load_conditions(cls, v):
        """Parse raw condition triples."""
        try:
            return parse_conditions(v)
        except ConfigurationError as e:
            raise ValueError(str(e)) from e

    @property
    def specificity(self) -> int:
        """2 when scoped by type and module, 1 when by one of them, 0 when unscoped."""
        return int(self.activity_type is not None) + int(self.module is not None)

    def in_scope(self, record: ActivityRecord) -> bool:
        if self.activity_type is not None and self.activity_type != record.type:
            return False
        if self.module is not None and self.module != record.module:
            return False
        return True


def load_policy(raw: Any) -> RetentionPolicyConfig:
    """
    Build a policy from a mapping or ORM row.

    Raises:
        ConfigurationError: the policy is malformed
    """
    try:
        return RetentionPolicyConfig.model_validate(raw)
    except ValidationError as e:
        name = raw.get("name") if isinstance(raw, dict) else getattr(raw, "name", None)
        raise ConfigurationError(f"Invalid retention policy {name!r}: {e}") from e


class RetentionDecision(BaseModel):
    """Decision for one record. ``policy_name`` is None when no policy matched."""
    record_id: int
    action: RetentionAction
    policy_name: Optional[str] = None
    reason: str  # "no_policy", "not_expired" or "expired"


class PolicyRunResult(BaseModel):
    """Per-policy tally within a sweep."""
    policy_id: Optional[int] = None
    policy_name: str
    action: RetentionAction
    matched: int = 0
    archived: int = 0
    deleted: int = 0
    kept: int = 0
    succeeded: int = 0
    failed: int = 0
    condition_errors: int = 0
    status: str = "completed"  # completed or failed


class RetentionTotals(BaseModel):
    processed: int = 0
    archived: int = 0
    deleted: int = 0
    kept: int = 0


class RetentionSweepResult(BaseModel):
    """Outcome of ``RetentionEvaluator.evaluate``."""
    dry_run: bool
    executed_at: datetime
    policy_results: List[PolicyRunResult] = Field(default_factory=list)
    totals: RetentionTotals = Field(default_factory=RetentionTotals)
    summary: SweepSummary = Field(default_factory=SweepSummary)
    not_reached: int = 0
    decisions: List[RetentionDecision] = Field(default_factory=list)

    def merge(self, other: "RetentionSweepResult", failure_limit: int = 10) -> "RetentionSweepResult":
        """Combine the result of another batch of the same sweep."""
        by_name: Dict[str, PolicyRunResult] = {p.policy_name: p.model_copy() for p in self.policy_results}
        for result in other.policy_results:
            current = by_name.get(result.policy_name)
            if current is None:
                by_name[result.policy_name] = result.model_copy()
                continue
            for counter in ("matched", "archived", "deleted", "kept", "succeeded", "failed", "condition_errors"):
                setattr(current, counter, getattr(current, counter) + getattr(result, counter))
            if result.status == "failed":
                current.status = "failed"
        samples = (self.summary.failure_samples + other.summary.failure_samples)[:failure_limit]
        return RetentionSweepResult(
            dry_run=self.dry_run,
            executed_at=self.executed_at,
            policy_results=list(by_name.values()),
            totals=RetentionTotals(
                processed=self.totals.processed + other.totals.processed,
                archived=self.totals.archived + other.totals.archived,
                deleted=self.totals.deleted + other.totals.deleted,
                kept=self.totals.kept + other.totals.kept,
            ),
            summary=SweepSummary(
                processed=self.summary.processed + other.summary.processed,
                succeeded=self.summary.succeeded + other.summary.succeeded,
                failed=self.summary.failed + other.summary.failed,
                skipped=self.summary.skipped + other.summary.skipped,
                failure_samples=samples,
            ),
            not_reached=self.not_reached + other.not_reached,
            decisions=self.decisions + other.decisions,
        )


class RetentionPolicyCreateRequest(BaseModel):
    """Request schema for creating a retention policy."""
    name: str = Field(..., min_length=1, max_length=255)
    description: Optional[str] = None
    activity_type: Optional[str] = Field(None, max_length=100)
    module: Optional[str] = Field(None, max_length=100)
    retention_days: int = Field(..., ge=0)
    action: RetentionAction
    priority: int = 0
    conditions: List[Dict[str, Any]] = Field(default_factory=list)
    is_active: bool = True


class RetentionPolicyResponse(BaseModel):
    """Response schema for a retention policy."""
    id: int
    name: str
    description: Optional[str] = None
    activity_type: Optional[str] = None
    module: Optional[str] = None
    retention_days: int
    action: str
    priority: int
    conditions: Optional[List[Dict[str, Any]]] = None
    is_active: bool
    last_executed_at: Optional[datetime] = None

    model_config = {"from_attributes": True}


class RetentionSweepRequest(BaseModel):
    """Parameters a scheduler passes when triggering a retention sweep."""
    dry_run: bool = True
    activity_type: Optional[str] = None
    module: Optional[str] = None
    created_before: Optional[datetime] = None
    batch_size: Optional[int] = Field(None, ge=1, le=10000)
    timeout_seconds: Optional[float] = Field(None, gt=0)
    include_decisions: bool = False


class RetentionRunResponse(BaseModel):
    """Response schema for a logged retention sweep."""
    id: int
    started_at: datetime
    finished_at: Optional[datetime] = None
    dry_run: bool
    status: str
    processed: int
    archived: int
    deleted: int
    kept: int
    failed: int
    not_reached: int
    failure_samples: Optional[List[str]] = None

    model_config = {"from_attributes": True}


class ArchivedActivityResponse(BaseModel):
    """Response schema for an archived activity entry."""
    original_id: int
    archive_key: str
    type: str
    module: Optional[str] = None
    risk_level: int
    original_created_at: datetime
    archived_at: Optional[datetime] = None
    policy_name: Optional[str] = None

    model_config = {"from_attributes": True}
