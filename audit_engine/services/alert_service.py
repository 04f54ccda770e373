"""
Per-record alerting pipeline: rule evaluation, deduplication, dispatch.

A record yields at most one outbound alert per matching rule; repeats inside a
rule's merge window only bump the group count. When a group with repeats
expires, flush_digests() sends one summary alert for it.
"""
import logging
from datetime import datetime, timezone
from typing import List, Optional, Sequence

from audit_engine.core.config import get_settings
from audit_engine.core.errors import TransientIOError
from audit_engine.schemas.activity import ActivityRecord
from audit_engine.schemas.notification import (
    AlertBatchResult,
    AlertCandidate,
    AlertProcessingResult,
    DispatchReport,
    GarbageCollectionResponse,
    MergedAlertGroup,
    NotificationRuleConfig,
    PRIORITY_LABELS,
    RenderedAlert,
    SubmitAction,
)
from audit_engine.schemas.sweep import FailureSampler
from audit_engine.services.alert_deduplicator import AlertDeduplicator
from audit_engine.services.alert_dispatcher import AlertDispatcher
from audit_engine.services.alert_rule_service import AlertRuleEvaluator, render_template
from audit_engine.services.batch import run_batch
from audit_engine.services.metrics import MetricsSink
from audit_engine.services.rule_statistics import InMemoryRuleStatistics

logger = logging.getLogger(__name__)


def _aware(value: Optional[datetime]) -> datetime:
    if value is None:
        return datetime.now(timezone.utc)
    return value if value.tzinfo else value.replace(tzinfo=timezone.utc)


class AlertService:
    """Runs the alert pipeline against a policy store's current rule snapshot."""

    def __init__(
        self,
        policy_store,
        evaluator: Optional[AlertRuleEvaluator] = None,
        deduplicator: Optional[AlertDeduplicator] = None,
        dispatcher: Optional[AlertDispatcher] = None,
        record_source=None,
        metrics: Optional[MetricsSink] = None,
        rule_stats=None,
    ):
        """
        Args:
            policy_store: Provides ``snapshot.rules``
            evaluator: Rule evaluator, defaults to one using REFERENCE_TIMEZONE
            deduplicator: Merge-group owner, defaults to ALERT_GROUP_STORE backend
            dispatcher: Channel delivery, defaults to the built-in transports
            record_source: Optional ``get(record_id)`` used to render digests
            metrics: Counter sink
            rule_stats: Trigger statistics per rule, defaults to in-memory counts
        """
        self.policy_store = policy_store
        self.evaluator = evaluator or AlertRuleEvaluator()
        self.deduplicator = deduplicator or AlertDeduplicator()
        self.dispatcher = dispatcher or AlertDispatcher()
        self.record_source = record_source
        self.metrics = metrics or MetricsSink()
        self.rule_stats = rule_stats or InMemoryRuleStatistics()

    def _rules(self) -> Sequence[NotificationRuleConfig]:
        return self.policy_store.snapshot.rules

    def _rule(self, rule_id: int) -> Optional[NotificationRuleConfig]:
        for rule in self._rules():
            if rule.id == rule_id:
                return rule
        return None

    def process(self, record: ActivityRecord, now: Optional[datetime] = None) -> AlertProcessingResult:
        """
        Evaluate one record against every active rule and dispatch what is not merged.

        Args:
            record: Newly written activity record
            now: Submission time for merge windows, defaults to the current UTC time

        Returns:
            AlertProcessingResult with dispatch reports, merged groups and suppressed rules
        """
        now = _aware(now)
        evaluation = self.evaluator.evaluate(record, self._rules(), observed_at=now)
        result = AlertProcessingResult(record_id=record.id, errors=list(evaluation.errors))
        for candidate in evaluation.candidates:
            result.matched_rules.append(candidate.rule_id)
            try:
                self._submit(candidate, result, now)
            except TransientIOError as e:
                logger.error(f"Alert group update failed for rule {candidate.rule_id}: {e}")
                result.errors.append(f"rule {candidate.rule_id}: {e}")
            except Exception as e:
                logger.error(
                    f"Alert processing failed for rule {candidate.rule_id}, activity {record.id}: {e}",
                    exc_info=True,
                )
                result.errors.append(f"rule {candidate.rule_id}: {e}")
        return result

    def _submit(self, candidate: AlertCandidate, result: AlertProcessingResult, now: datetime) -> None:
        submitted = self.deduplicator.submit(candidate, now)
        if submitted.action == SubmitAction.SUPPRESSED:
            result.suppressed.append(candidate.rule_id)
            self.metrics.increment("alerts.suppressed")
        elif submitted.should_dispatch:
            report = self.dispatcher.dispatch(
                self._render(candidate), candidate.channels, candidate.recipients, now
            )
            result.dispatched.append(report)
            self.metrics.increment("alerts.dispatched")
            self.rule_stats.record_trigger(candidate.rule_id, now)
        else:
            result.merged.append(submitted.group)
            self.metrics.increment("alerts.merged")

    def process_batch(
        self,
        records: Sequence[ActivityRecord],
        now: Optional[datetime] = None,
        deadline: Optional[float] = None,
    ) -> AlertBatchResult:
        """Run the pipeline over a batch on the sweep worker pool."""
        now = _aware(now)
        sampler = FailureSampler(get_settings().FAILURE_SAMPLE_SIZE)
        batch = run_batch(lambda record: self.process(record, now), records, deadline=deadline)
        outcome = AlertBatchResult(not_reached=len(batch.not_reached))
        for _record, processed in batch.completed:
            outcome.results.append(processed)
            outcome.summary.processed += 1
            failed_deliveries = sum(report.failed for report in processed.dispatched)
            if processed.errors or failed_deliveries:
                outcome.summary.failed += 1
                for error in processed.errors:
                    sampler.add(f"activity {processed.record_id}: {error}")
                if failed_deliveries:
                    sampler.add(f"activity {processed.record_id}: {failed_deliveries} deliveries failed")
            else:
                outcome.summary.succeeded += 1
        for record, error in batch.errors:
            outcome.summary.processed += 1
            outcome.summary.failed += 1
            sampler.add(f"activity {record.id}: {error}")
            logger.error(f"Alert processing failed for activity {record.id}: {error}")
        outcome.summary.skipped = len(batch.not_reached)
        outcome.summary.failure_samples = sampler.samples
        return outcome

    def _render(self, candidate: AlertCandidate) -> RenderedAlert:
        return RenderedAlert(
            rule_id=candidate.rule_id,
            rule_name=candidate.rule_name,
            record_id=candidate.record_id,
            merge_key=candidate.merge_key,
            title=candidate.title,
            message=candidate.message,
            priority=candidate.priority,
            priority_label=PRIORITY_LABELS.get(candidate.priority, "unknown"),
        )

    def _render_digest(self, rule: NotificationRuleConfig, group: MergedAlertGroup) -> RenderedAlert:
        extra = {
            "count": group.occurrence_count,
            "first_seen": group.first_seen.isoformat(),
            "last_seen": group.last_seen.isoformat(),
            "rule_name": rule.name,
            "priority_label": rule.priority_label,
            "record_id": group.representative_record_id,
        }
        record = None
        if self.record_source is not None:
            try:
                record = self.record_source.get(group.representative_record_id)
            except TransientIOError as e:
                logger.warning(f"Digest for rule {rule.id} rendered without its record: {e}")
        context = self.evaluator.template_context(record, rule, extra) if record else extra
        return RenderedAlert(
            rule_id=rule.id,
            rule_name=rule.name,
            record_id=group.representative_record_id,
            merge_key=group.merge_key,
            title=render_template(rule.merged_title_template, context),
            message=render_template(rule.merged_message_template, context),
            priority=rule.priority,
            priority_label=rule.priority_label,
            occurrence_count=group.occurrence_count,
            digest=True,
        )

    def flush_digests(self, now: Optional[datetime] = None) -> GarbageCollectionResponse:
        """
        Evict expired merge groups and send a digest for each one that merged repeats.
        """
        now = _aware(now)
        snapshot = self.policy_store.snapshot
        evicted = self.deduplicator.collect_expired(now, snapshot.rule_windows())
        digests: List[DispatchReport] = []
        for group in evicted:
            if group.occurrence_count <= 1:
                continue
            rule = self._rule(group.rule_id)
            if rule is None or not rule.is_active:
                continue
            digests.append(
                self.dispatcher.dispatch(self._render_digest(rule, group), rule.dispatch_channels, rule.recipients, now)
            )
        self.metrics.increment("alerts.groups_evicted", len(evicted))
        return GarbageCollectionResponse(evicted=len(evicted), digests=digests)

    def process_retries(self, now: Optional[datetime] = None):
        return self.dispatcher.process_retries(now)
