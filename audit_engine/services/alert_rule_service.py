"""
Alert rule evaluation: every active rule whose conditions match a record
produces one alert candidate.
"""
import hashlib
import json
import logging
import re
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Mapping, Optional, Sequence, Tuple

from audit_engine.core.errors import ConfigurationError
from audit_engine.schemas.activity import ActivityRecord
from audit_engine.schemas.conditions import FIELD_TYPES
from audit_engine.schemas.notification import AlertCandidate, NotificationRuleConfig
from audit_engine.services.condition_matcher import MISSING, ConditionMatcher, resolve_field

logger = logging.getLogger(__name__)

PLACEHOLDER = re.compile(r"\{([A-Za-z_][A-Za-z0-9_.]*)\}")
TIME_FORMAT = "%Y-%m-%d %H:%M:%S"


def risk_level_text(risk_level: Optional[int]) -> str:
    if risk_level is None:
        return "unknown"
    if risk_level <= 2:
        return "low"
    if risk_level <= 5:
        return "medium"
    if risk_level <= 8:
        return "high"
    return "critical"


def render_template(template: str, context: Mapping[str, Any]) -> str:
    """
    Substitute ``{name}`` placeholders. Unknown names and None render as "".

    Never raises for bad placeholders; braces that do not form a placeholder are left alone.
    """
    def substitute(match: "re.Match[str]") -> str:
        value = context.get(match.group(1))
        if value is None:
            return ""
        if isinstance(value, (dict, list)):
            return json.dumps(value, sort_keys=True, ensure_ascii=False, default=str)
        return str(value)

    return PLACEHOLDER.sub(substitute, template or "")


def compute_merge_key(record: ActivityRecord, fields: Sequence[str]) -> str:
    """
    Stable SHA-256 over the values of the merge fields.

    The same field values always give the same key, whatever process computed it.
    """
    values: List[Tuple[str, Any]] = []
    for name in fields:
        value = resolve_field(record, name)
        if value is MISSING:
            value = None
        elif isinstance(value, datetime):
            value = value.isoformat()
        values.append((name, value))
    payload = json.dumps(values, sort_keys=True, separators=(",", ":"), ensure_ascii=False, default=str)
    return hashlib.sha256(payload.encode("utf-8")).hexdigest()


@dataclass
class RuleEvaluation:
    """Candidates for one record plus rules skipped because of bad conditions."""
    candidates: List[AlertCandidate] = field(default_factory=list)
    errors: List[str] = field(default_factory=list)


class AlertRuleEvaluator:
    """Matches records against notification rules and renders candidates."""

    def __init__(self, matcher: Optional[ConditionMatcher] = None):
        self.matcher = matcher or ConditionMatcher()

    def template_context(
        self,
        record: ActivityRecord,
        rule: NotificationRuleConfig,
        extra: Optional[Mapping[str, Any]] = None,
    ) -> Dict[str, Any]:
        """Values available to title/message templates."""
        context: Dict[str, Any] = {name: getattr(record, name) for name in FIELD_TYPES}
        context["properties"] = record.properties
        for key, value in _flatten("properties", record.properties):
            context[key] = value
        context.update(
            activity_type=record.type,
            time=self.matcher.local_time(record.created_at).strftime(TIME_FORMAT),
            created_at=record.created_at.isoformat(),
            risk_level_text=risk_level_text(record.risk_level),
            priority_label=rule.priority_label,
            rule_name=rule.name,
        )
        if extra:
            context.update(extra)
        return context

    def matching_rules(
        self, record: ActivityRecord, rules: Sequence[NotificationRuleConfig]
    ) -> Tuple[List[NotificationRuleConfig], List[str]]:
        """All active rules that match, in the order given, and rules that failed to evaluate."""
        matched: List[NotificationRuleConfig] = []
        errors: List[str] = []
        for rule in rules:
            if not rule.is_active:
                continue
            try:
                if self.matcher.matches(record, rule.conditions):
                    matched.append(rule)
            except ConfigurationError as e:
                logger.warning(f"Notification rule '{rule.name}' skipped for activity {record.id}: {e}")
                errors.append(f"rule '{rule.name}': {e}")
        return matched, errors

    def build_candidate(
        self, record: ActivityRecord, rule: NotificationRuleConfig, observed_at: Optional[datetime] = None
    ) -> AlertCandidate:
        context = self.template_context(record, rule)
        return AlertCandidate(
            rule_id=rule.id,
            rule_name=rule.name,
            record_id=record.id,
            merge_key=compute_merge_key(record, rule.merge_fields),
            title=render_template(rule.title_template, context),
            message=render_template(rule.message_template, context),
            channels=rule.dispatch_channels,
            recipients=rule.recipients,
            merge_similar=rule.merge_similar,
            merge_window_seconds=rule.merge_window_seconds,
            priority=rule.priority,
            activity_type=record.type,
            frequency_limit=rule.frequency_limit,
            observed_at=observed_at or datetime.now(timezone.utc),
        )

    def evaluate(
        self,
        record: ActivityRecord,
        rules: Sequence[NotificationRuleConfig],
        observed_at: Optional[datetime] = None,
    ) -> RuleEvaluation:
        """
        Produce one candidate per matching rule.

        Args:
            record: Activity record
            rules: Rule snapshot
            observed_at: When the record was seen; defaults to now

        Returns:
            RuleEvaluation with candidates in rule order
        """
        matched, errors = self.matching_rules(record, rules)
        evaluation = RuleEvaluation(errors=errors)
        for rule in matched:
            evaluation.candidates.append(self.build_candidate(record, rule, observed_at))
        return evaluation


def _flatten(prefix: str, value: Any):
    if isinstance(value, dict):
        for key, nested in value.items():
            yield from _flatten(f"{prefix}.{key}", nested)
    else:
        yield prefix, value
