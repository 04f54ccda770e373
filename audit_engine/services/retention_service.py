"""
Retention policy evaluation.

Each record is classified independently: the single winning policy is chosen by
priority, then scope specificity, then name. Dry runs go through exactly the
same decision path as live runs; only the apply step is skipped.
"""
import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Dict, List, Optional, Protocol, Sequence, Tuple

from audit_engine.core.config import get_settings
from audit_engine.core.errors import AuditEngineError, ConfigurationError
from audit_engine.schemas.activity import ActivityRecord
from audit_engine.schemas.retention import (
    PolicyRunResult,
    RetentionAction,
    RetentionDecision,
    RetentionPolicyConfig,
    RetentionSweepResult,
    RetentionTotals,
)
from audit_engine.schemas.sweep import FailureSampler, SweepSummary
from audit_engine.services.batch import run_batch
from audit_engine.services.condition_matcher import ConditionMatcher
from audit_engine.services.metrics import MetricsSink

logger = logging.getLogger(__name__)


class ActionSink(Protocol):
    """Applies retention outcomes to the record store."""

    def apply_action(self, record_id: int, action: RetentionAction, policy_name: Optional[str] = None) -> None:
        ...


def _aware(now: Optional[datetime]) -> datetime:
    if now is None:
        return datetime.now(timezone.utc)
    return now if now.tzinfo else now.replace(tzinfo=timezone.utc)


def policy_sort_key(policy: RetentionPolicyConfig) -> Tuple[int, int, str]:
    """Higher priority first, then the more specific scope, then the smaller name."""
    return (-policy.priority, -policy.specificity, policy.name)


@dataclass
class PolicySelection:
    """Winning policy for a record (None when nothing matched) and condition failures."""
    policy: Optional[RetentionPolicyConfig] = None
    condition_errors: List[Tuple[RetentionPolicyConfig, ConfigurationError]] = field(default_factory=list)


@dataclass
class _RecordOutcome:
    decision: RetentionDecision
    policy: Optional[RetentionPolicyConfig]
    condition_errors: List[Tuple[RetentionPolicyConfig, ConfigurationError]]
    apply_error: Optional[str] = None


class RetentionEvaluator:
    """Decides keep / archive / delete for activity records."""

    def __init__(
        self,
        matcher: Optional[ConditionMatcher] = None,
        action_sink: Optional[ActionSink] = None,
        metrics: Optional[MetricsSink] = None,
        max_workers: Optional[int] = None,
        failure_sample_size: Optional[int] = None,
    ):
        settings = get_settings()
        self.matcher = matcher or ConditionMatcher()
        self.action_sink = action_sink
        self.metrics = metrics or MetricsSink()
        self.max_workers = max_workers or settings.sweep_workers()
        self.failure_sample_size = (
            settings.FAILURE_SAMPLE_SIZE if failure_sample_size is None else failure_sample_size
        )

    def select_policy(
        self, record: ActivityRecord, policies: Sequence[RetentionPolicyConfig]
    ) -> PolicySelection:
        """
        Pick the winning policy for a record.

        A policy whose conditions raise ConfigurationError is skipped for this
        record and reported in ``condition_errors``.
        """
        selection = PolicySelection()
        candidates: List[RetentionPolicyConfig] = []
        for policy in policies:
            if not policy.is_active or not policy.in_scope(record):
                continue
            try:
                if self.matcher.matches(record, policy.conditions):
                    candidates.append(policy)
            except ConfigurationError as e:
                logger.warning(f"Retention policy '{policy.name}' skipped for activity {record.id}: {e}")
                selection.condition_errors.append((policy, e))
        if candidates:
            selection.policy = min(candidates, key=policy_sort_key)
        return selection

    def decide(
        self,
        record: ActivityRecord,
        policies: Sequence[RetentionPolicyConfig],
        now: Optional[datetime] = None,
    ) -> Tuple[RetentionDecision, PolicySelection]:
        """
        Classify one record.

        Returns:
            The decision and the policy selection it was based on
        """
        now = _aware(now)
        selection = self.select_policy(record, policies)
        policy = selection.policy
        if policy is None:
            return RetentionDecision(record_id=record.id, action=RetentionAction.KEEP, reason="no_policy"), selection
        if now - record.created_at < timedelta(days=policy.retention_days):
            decision = RetentionDecision(
                record_id=record.id, action=RetentionAction.KEEP, policy_name=policy.name, reason="not_expired"
            )
        else:
            decision = RetentionDecision(
                record_id=record.id, action=policy.action, policy_name=policy.name, reason="expired"
            )
        return decision, selection

    def evaluate(
        self,
        records: Sequence[ActivityRecord],
        policies: Sequence[RetentionPolicyConfig],
        dry_run: bool = True,
        now: Optional[datetime] = None,
        deadline: Optional[float] = None,
    ) -> RetentionSweepResult:
        """
        Classify a batch of records and, unless dry_run, apply the outcomes.

        Args:
            records: Records to classify
            policies: Policy snapshot, read-only for the whole batch
            dry_run: Tally only, never call the action sink
            now: Reference time for ages, defaults to the current UTC time
            deadline: time.monotonic() value after which no new record starts

        Returns:
            RetentionSweepResult with per-policy and overall counts

        Raises:
            ConfigurationError: live run without an action sink
        """
        if not dry_run and self.action_sink is None:
            raise ConfigurationError("A live retention run needs an action sink")
        now = _aware(now)

        def classify(record: ActivityRecord) -> _RecordOutcome:
            decision, selection = self.decide(record, policies, now)
            outcome = _RecordOutcome(decision, selection.policy, selection.condition_errors)
            if not dry_run and decision.action != RetentionAction.KEEP:
                try:
                    self.action_sink.apply_action(record.id, decision.action, decision.policy_name)
                except AuditEngineError as e:
                    outcome.apply_error = f"activity {record.id}: {decision.action.value} failed: {e}"
                    logger.error(f"Retention {decision.action.value} failed for activity {record.id}: {e}")
            return outcome

        batch = run_batch(classify, records, max_workers=self.max_workers, deadline=deadline)
        result = self._tally(policies, batch.completed, batch.errors, dry_run, now)
        result.not_reached = len(batch.not_reached)
        result.summary.skipped = len(batch.not_reached)
        self.metrics.increment("retention.records_processed", result.totals.processed)
        self.metrics.increment("retention.records_failed", result.summary.failed)
        self.metrics.increment("retention.records_not_reached", result.not_reached)
        return result

    def _tally(self, policies, completed, errors, dry_run: bool, now: datetime) -> RetentionSweepResult:
        results: Dict[str, PolicyRunResult] = {}
        for policy in sorted(policies, key=lambda p: p.name):
            if policy.is_active:
                results[policy.name] = PolicyRunResult(
                    policy_id=policy.id, policy_name=policy.name, action=policy.action
                )
        totals = RetentionTotals()
        summary = SweepSummary()
        sampler = FailureSampler(self.failure_sample_size)
        decisions: List[RetentionDecision] = []

        for _record, outcome in completed:
            decision = outcome.decision
            decisions.append(decision)
            summary.processed += 1
            totals.processed += 1

            for policy, error in outcome.condition_errors:
                policy_result = results[policy.name]
                policy_result.condition_errors += 1
                policy_result.failed += 1
                policy_result.status = "failed"
                sampler.add(f"policy '{policy.name}' on activity {decision.record_id}: {error}")

            policy_result = results.get(decision.policy_name) if decision.policy_name else None
            if policy_result is not None:
                policy_result.matched += 1

            if outcome.apply_error:
                summary.failed += 1
                sampler.add(outcome.apply_error)
                if policy_result is not None:
                    policy_result.failed += 1
                    policy_result.status = "failed"
                continue

            summary.succeeded += 1
            if decision.action == RetentionAction.ARCHIVE:
                totals.archived += 1
            elif decision.action == RetentionAction.DELETE:
                totals.deleted += 1
            else:
                totals.kept += 1
            if policy_result is not None:
                policy_result.succeeded += 1
                if decision.action == RetentionAction.ARCHIVE:
                    policy_result.archived += 1
                elif decision.action == RetentionAction.DELETE:
                    policy_result.deleted += 1
                else:
                    policy_result.kept += 1

        for record, error in errors:
            summary.processed += 1
            totals.processed += 1
            summary.failed += 1
            sampler.add(f"activity {record.id}: {error}")
            logger.error(f"Retention evaluation failed for activity {record.id}: {error}")

        summary.failure_samples = sampler.samples
        mode = "dry run" if dry_run else "live run"
        logger.info(
            f"Retention {mode}: processed={totals.processed} archived={totals.archived} "
            f"deleted={totals.deleted} kept={totals.kept} failed={summary.failed}"
        )
        return RetentionSweepResult(
            dry_run=dry_run,
            executed_at=now,
            policy_results=list(results.values()),
            totals=totals,
            summary=summary,
            decisions=decisions,
        )
