"""Schemas for notification rules, alert candidates and merge groups."""
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Literal, Optional, Tuple

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator, model_validator

from audit_engine.core.config import settings
from audit_engine.core.errors import ConfigurationError
from audit_engine.schemas.conditions import Condition, Operator, parse_conditions
from audit_engine.schemas.sweep import SweepSummary


PRIORITY_LABELS: Dict[int, str] = {
    0: "info",
    1: "low",
    2: "normal",
    3: "high",
    4: "urgent",
}

DEFAULT_TEMPLATES: Dict[str, str] = {
    "title_template": "Activity alert: {activity_type}",
    "message_template": "User {user_id} performed {activity_type} at {time} from {ip_address}: {description}",
    "merged_title_template": "Activity alert: {count} similar events",
    "merged_message_template": "{count} similar events for rule {rule_name} between {first_seen} and {last_seen}",
}

DEFAULT_MERGE_FIELDS: Tuple[str, ...] = ("user_id", "ip_address")


def normalize_rule_conditions(raw: Any) -> Tuple[Condition, ...]:
    """
    Translate rule conditions into condition triples.

    Rules may use the mapping form::

        {"activity_types": ["login"], "min_risk_level": 5,
         "ip_patterns": ["10.0.*", "192.168.0.0/16"], "time_range": [22, 23, 0, 1]}

    or a plain list of {field, operator, value} triples.

    Raises:
        ConfigurationError: unknown mapping key or malformed triple
    """
    if raw is None:
        return ()
    if not isinstance(raw, dict):
        return parse_conditions(raw)

    triples: List[Dict[str, Any]] = []
    for key, value in raw.items():
        if key == "activity_types":
            if value:
                triples.append({"field": "type", "operator": Operator.IN, "value": list(value)})
        elif key == "modules":
            if value:
                triples.append({"field": "module", "operator": Operator.IN, "value": list(value)})
        elif key == "user_ids":
            if value:
                triples.append({"field": "user_id", "operator": Operator.IN, "value": list(value)})
        elif key == "min_risk_level":
            if value is not None:
                triples.append({"field": "risk_level", "operator": Operator.GTE, "value": value})
        elif key == "ip_patterns":
            if value:
                triples.append({"field": "ip_address", "operator": Operator.IP_MATCH, "value": value})
        elif key == "time_range":
            if value:
                triples.append({"field": "created_at", "operator": Operator.TIME_RANGE, "value": value})
        elif key == "conditions":
            triples.extend(value or [])
        elif key == "frequency_limit":
            raise ConfigurationError("frequency_limit is a rule setting, not a condition")
        else:
            raise ConfigurationError(f"Unknown rule condition key: {key!r}")
    return parse_conditions(triples)


class RecipientSelector(BaseModel):
    """Who receives an alert: all administrators, a role, or one user."""
    model_config = ConfigDict(frozen=True)

    type: Literal["all_admins", "role", "user"]
    id: Optional[str] = None

    @model_validator(mode="before")
    @classmethod
    def accept_shorthand(cls, data):
        """Allow "all_admins", "role:security" and "user:42"."""
        if isinstance(data, str):
            if data == "all_admins":
                return {"type": "all_admins"}
            kind, _, ident = data.partition(":")
            return {"type": kind, "id": ident or None}
        if isinstance(data, dict) and data.get("id") is not None:
            return {**data, "id": str(data["id"])}
        return data

    @model_validator(mode="after")
    def require_id(self):
        if self.type in ("role", "user") and not self.id:
            raise ValueError(f"recipient selector '{self.type}' needs an id")
        return self


class DispatchChannel(BaseModel):
    """An outbound channel and its transport configuration."""
    model_config = ConfigDict(frozen=True)

    channel_type: str
    config: Dict[str, Any] = Field(default_factory=dict)

    @model_validator(mode="before")
    @classmethod
    def accept_shorthand(cls, data):
        if isinstance(data, str):
            return {"channel_type": data}
        if isinstance(data, dict) and "type" in data and "channel_type" not in data:
            data = {**data, "channel_type": data["type"]}
            data.pop("type")
        return data

    @field_validator("channel_type")
    @classmethod
    def normalize_type(cls, v: str) -> str:
        return v.strip().lower()


class FrequencyLimit(BaseModel):
    """At most ``max_count`` dispatches per ``window_seconds`` for one rule and activity type."""
    model_config = ConfigDict(frozen=True)

    max_count: int = Field(10, ge=1)
    window_seconds: int = Field(3600, ge=1)

    @model_validator(mode="before")
    @classmethod
    def accept_window(cls, data):
        """Allow ``window`` as the name of the window length."""
        if isinstance(data, dict) and "window" in data and "window_seconds" not in data:
            data = {**data, "window_seconds": data["window"]}
            data.pop("window")
        return data


def split_frequency_limit(values: Dict[str, Any]) -> Dict[str, Any]:
    """
    Move a ``frequency_limit`` found in mapping-form conditions up to the rule.

    An explicit rule-level limit wins over the one in the conditions.
    """
    conditions = values.get("conditions")
    if not isinstance(conditions, dict) or "frequency_limit" not in conditions:
        return values
    conditions = dict(conditions)
    limit = conditions.pop("frequency_limit")
    values = {**values, "conditions": conditions}
    if values.get("frequency_limit") is None:
        values["frequency_limit"] = limit
    return values


class NotificationRuleConfig(BaseModel):
    """Read-only notification rule as evaluated by the engine."""
    model_config = ConfigDict(frozen=True, from_attributes=True)

    id: int
    name: str = Field(..., min_length=1, max_length=255)
    description: Optional[str] = None
    conditions: Tuple[Condition, ...] = ()
    recipients: Tuple[RecipientSelector, ...] = ()
    dispatch_channels: Tuple[DispatchChannel, ...] = ()
    title_template: str = DEFAULT_TEMPLATES["title_template"]
    message_template: str = DEFAULT_TEMPLATES["message_template"]
    merged_title_template: str = DEFAULT_TEMPLATES["merged_title_template"]
    merged_message_template: str = DEFAULT_TEMPLATES["merged_message_template"]
    merge_similar: bool = True
    merge_window_seconds: int = Field(default_factory=lambda: settings.DEFAULT_MERGE_WINDOW_SECONDS, ge=0)
    merge_fields: Tuple[str, ...] = DEFAULT_MERGE_FIELDS
    priority: int = Field(2, ge=0, le=4)
    is_active: bool = True
    frequency_limit: Optional[FrequencyLimit] = None

    @model_validator(mode="before")
    @classmethod
    def lift_frequency_limit(cls, data):
        return split_frequency_limit(data) if isinstance(data, dict) else data

    @field_validator("conditions", mode="before")
    @classmethod
    def load_conditions(cls, v):
        try:
            return normalize_rule_conditions(v)
        except ConfigurationError as e:
            raise ValueError(str(e)) from e

    @field_validator("recipients", "dispatch_channels", mode="before")
    @classmethod
    def default_empty(cls, v):
        return () if v is None else v

    @field_validator(
        "title_template", "message_template", "merged_title_template", "merged_message_template",
        mode="before",
    )
    @classmethod
    def default_template(cls, v, info):
        """NULL template columns fall back to the built-in wording."""
        return DEFAULT_TEMPLATES[info.field_name] if not v else v

    @field_validator("merge_window_seconds", mode="before")
    @classmethod
    def default_window(cls, v):
        return settings.DEFAULT_MERGE_WINDOW_SECONDS if v is None else v

    @field_validator("merge_fields", mode="before")
    @classmethod
    def default_merge_fields(cls, v):
        return DEFAULT_MERGE_FIELDS if not v else v

    @property
    def priority_label(self) -> str:
        return PRIORITY_LABELS.get(self.priority, "unknown")


def load_rule(raw: Any) -> NotificationRuleConfig:
    """
    Build a notification rule from a mapping or ORM row.

    Raises:
        ConfigurationError: the rule is malformed
    """
    try:
        return NotificationRuleConfig.model_validate(raw)
    except ValidationError as e:
        name = raw.get("name") if isinstance(raw, dict) else getattr(raw, "name", None)
        raise ConfigurationError(f"Invalid notification rule {name!r}: {e}") from e


class AlertCandidate(BaseModel):
    """A rendered alert for one (rule, record) match, before deduplication."""
    model_config = ConfigDict(frozen=True)

    rule_id: int
    rule_name: str
    record_id: int
    merge_key: str
    title: str
    message: str
    channels: Tuple[DispatchChannel, ...] = ()
    recipients: Tuple[RecipientSelector, ...] = ()
    merge_similar: bool = True
    merge_window_seconds: int = 0
    priority: int = 2
    activity_type: str = ""
    frequency_limit: Optional[FrequencyLimit] = None
    observed_at: datetime


class MergedAlertGroup(BaseModel):
    """Deduplication state for one (rule_id, merge_key)."""
    model_config = ConfigDict(from_attributes=True)

    rule_id: int
    merge_key: str
    first_seen: datetime
    last_seen: datetime
    occurrence_count: int = 1
    representative_record_id: int

    @property
    def key(self) -> Tuple[int, str]:
        return (self.rule_id, self.merge_key)

    def seconds_since_last_seen(self, now: datetime) -> float:
        return (now - self.last_seen).total_seconds()


class SubmitAction(str, Enum):
    MERGED = "merged"
    DISPATCH = "dispatch"
    SUPPRESSED = "suppressed"


class SubmitResult(BaseModel):
    """What the deduplicator decided for a candidate."""
    action: SubmitAction
    group: Optional[MergedAlertGroup] = None  # None when suppressed

    @property
    def should_dispatch(self) -> bool:
        return self.action == SubmitAction.DISPATCH


class RenderedAlert(BaseModel):
    """Payload handed to a channel transport."""
    rule_id: int
    rule_name: str
    record_id: int
    merge_key: str
    title: str
    message: str
    priority: int
    priority_label: str
    occurrence_count: int = 1
    digest: bool = False


class ChannelResult(BaseModel):
    """Outcome of one (channel, recipient) delivery."""
    channel_type: str
    recipient: str
    ok: bool
    error: Optional[str] = None
    attempt: int = 1


class DispatchReport(BaseModel):
    """Outcome of dispatching one alert across its channels."""
    rule_id: int
    record_id: int
    recipients: List[str] = Field(default_factory=list)
    results: List[ChannelResult] = Field(default_factory=list)

    @property
    def succeeded(self) -> int:
        return sum(1 for r in self.results if r.ok)

    @property
    def failed(self) -> int:
        return sum(1 for r in self.results if not r.ok)


class AlertProcessingResult(BaseModel):
    """Per-record result of the alert pipeline."""
    record_id: int
    matched_rules: List[int] = Field(default_factory=list)
    dispatched: List[DispatchReport] = Field(default_factory=list)
    merged: List[MergedAlertGroup] = Field(default_factory=list)
    suppressed: List[int] = Field(default_factory=list)  # rule ids over their frequency limit
    errors: List[str] = Field(default_factory=list)


class AlertBatchResult(BaseModel):
    """Alert pipeline outcome for a batch of records."""
    results: List[AlertProcessingResult] = Field(default_factory=list)
    summary: SweepSummary = Field(default_factory=SweepSummary)
    not_reached: int = 0

    @property
    def dispatched(self) -> int:
        return sum(len(r.dispatched) for r in self.results)

    @property
    def merged(self) -> int:
        return sum(len(r.merged) for r in self.results)

    @property
    def suppressed(self) -> int:
        return sum(len(r.suppressed) for r in self.results)


class NotificationRuleCreateRequest(BaseModel):
    """Request schema for creating a notification rule."""
    name: str = Field(..., min_length=1, max_length=255)
    description: Optional[str] = None
    conditions: Any = Field(default_factory=dict)
    recipients: List[Any] = Field(default_factory=list)
    dispatch_channels: List[Any] = Field(default_factory=list)
    title_template: Optional[str] = Field(None, max_length=255)
    message_template: Optional[str] = None
    merged_title_template: Optional[str] = Field(None, max_length=255)
    merged_message_template: Optional[str] = None
    merge_similar: bool = True
    merge_window_seconds: Optional[int] = Field(None, ge=0)
    merge_fields: Optional[List[str]] = None
    priority: int = Field(2, ge=0, le=4)
    is_active: bool = True
    frequency_limit: Optional[Dict[str, Any]] = None


class NotificationRuleResponse(BaseModel):
    """Response schema for a notification rule."""
    id: int
    name: str
    description: Optional[str] = None
    conditions: Any = None
    recipients: Optional[List[Any]] = None
    dispatch_channels: Optional[List[Any]] = None
    merge_similar: bool
    merge_window_seconds: int
    priority: int
    is_active: bool
    frequency_limit: Optional[Dict[str, Any]] = None
    triggered_count: int = 0
    last_triggered_at: Optional[datetime] = None

    model_config = {"from_attributes": True}


class MergedAlertGroupListResponse(BaseModel):
    items: List[MergedAlertGroup]
    total: int


class GarbageCollectionResponse(BaseModel):
    evicted: int
    digests: List[DispatchReport] = Field(default_factory=list)
