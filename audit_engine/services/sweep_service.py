"""
Sweep service: pulls record batches from a record source and drives the
retention evaluator or the integrity verifier over them.

The scheduler calls these entry points; the engine owns no scheduling loop.
"""
import logging
from datetime import datetime, timezone
from typing import Callable, Optional

from sqlalchemy import update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from audit_engine.core.config import get_settings
from audit_engine.core.errors import ConfigurationError, SignatureFormatError, TransientIOError
from audit_engine.models.retention_policy import RetentionPolicy
from audit_engine.models.retention_run import RetentionRun
from audit_engine.schemas.activity import RecordFilter
from audit_engine.schemas.integrity import IntegritySweepResult
from audit_engine.schemas.retention import RetentionSweepResult
from audit_engine.schemas.sweep import FailureSampler
from audit_engine.services.batch import deadline_in, deadline_passed, run_batch
from audit_engine.services.integrity_service import IntegrityService
from audit_engine.services.metrics import MetricsSink
from audit_engine.services.retention_service import RetentionEvaluator

logger = logging.getLogger(__name__)


def sweep_status(result: RetentionSweepResult) -> str:
    if result.summary.failed == 0 and result.not_reached == 0:
        return "completed"
    if result.summary.succeeded == 0 and result.summary.processed > 0:
        return "failed"
    return "partial"


class SqlRunLog:
    """Writes one retention_runs row per sweep."""

    def __init__(self, session_factory: Optional[Callable[[], Session]] = None):
        if session_factory is None:
            from audit_engine.core.database import SessionLocal
            session_factory = SessionLocal
        self.session_factory = session_factory

    def record(self, result: RetentionSweepResult, started_at: datetime) -> Optional[int]:
        """
        Persist the outcome of a sweep. A failure to write the log is logged, not raised.

        Returns:
            The retention_runs row id, or None when it could not be written
        """
        db = self.session_factory()
        try:
            run = RetentionRun(
                started_at=started_at,
                finished_at=datetime.now(timezone.utc),
                dry_run=result.dry_run,
                status=sweep_status(result),
                processed=result.totals.processed,
                archived=result.totals.archived,
                deleted=result.totals.deleted,
                kept=result.totals.kept,
                failed=result.summary.failed,
                not_reached=result.not_reached,
                failure_samples=result.summary.failure_samples,
                policy_results=[p.model_dump(mode="json") for p in result.policy_results],
            )
            db.add(run)
            if not result.dry_run:
                executed = [p.policy_name for p in result.policy_results]
                if executed:
                    db.execute(
                        update(RetentionPolicy)
                        .where(RetentionPolicy.name.in_(executed))
                        .values(last_executed_at=result.executed_at)
                    )
            db.commit()
            return run.id
        except SQLAlchemyError as e:
            db.rollback()
            logger.error(f"Failed to record retention run: {e}", exc_info=True)
            return None
        finally:
            db.close()


class SweepService:
    """Entry points for scheduled retention and integrity sweeps."""

    def __init__(
        self,
        record_store,
        policy_store,
        evaluator: Optional[RetentionEvaluator] = None,
        integrity: Optional[IntegrityService] = None,
        run_log: Optional[SqlRunLog] = None,
        metrics: Optional[MetricsSink] = None,
    ):
        self.record_store = record_store
        self.policy_store = policy_store
        self.metrics = metrics or MetricsSink()
        self.evaluator = evaluator or RetentionEvaluator(action_sink=record_store, metrics=self.metrics)
        self.integrity = integrity
        self.run_log = run_log

    def run_retention(
        self,
        dry_run: bool = True,
        record_filter: Optional[RecordFilter] = None,
        batch_size: Optional[int] = None,
        timeout_seconds: Optional[float] = None,
        now: Optional[datetime] = None,
    ) -> RetentionSweepResult:
        """
        Classify every record matching the filter, batch by batch.

        Batches are paged by id cursor, so records removed by a live run never
        shift later pages. On deadline the remaining records are counted as
        not reached.

        Args:
            dry_run: Tally only, apply nothing
            record_filter: Which records to consider
            batch_size: Records per batch, defaults to RETENTION_BATCH_SIZE
            timeout_seconds: Sweep deadline, defaults to SWEEP_TIMEOUT_SECONDS
            now: Reference time for record ages

        Returns:
            Combined RetentionSweepResult for the whole sweep
        """
        settings = get_settings()
        started_at = datetime.now(timezone.utc)
        now = now or started_at
        batch_size = batch_size or settings.RETENTION_BATCH_SIZE
        deadline = deadline_in(timeout_seconds if timeout_seconds is not None else settings.SWEEP_TIMEOUT_SECONDS)
        record_filter = record_filter or RecordFilter()
        policies = self.policy_store.snapshot.policies

        result = RetentionSweepResult(dry_run=dry_run, executed_at=now)
        cursor = record_filter
        while True:
            if deadline_passed(deadline):
                remaining = self.record_store.count(cursor)
                result.not_reached += remaining
                result.summary.skipped += remaining
                break
            try:
                batch = self.record_store.fetch_batch(cursor, limit=batch_size, offset=0)
            except TransientIOError as e:
                logger.error(f"Retention sweep stopped, could not fetch records: {e}")
                result.summary.failed += 1
                if len(result.summary.failure_samples) < settings.FAILURE_SAMPLE_SIZE:
                    result.summary.failure_samples.append(f"fetch failed: {e}")
                break
            if not batch:
                break
            batch_result = self.evaluator.evaluate(batch, policies, dry_run=dry_run, now=now, deadline=deadline)
            result = result.merge(batch_result, failure_limit=settings.FAILURE_SAMPLE_SIZE)
            cursor = record_filter.with_cursor(batch[-1].id)
            if batch_result.not_reached:
                remaining = self.record_store.count(cursor)
                result.not_reached += remaining
                result.summary.skipped += remaining
                break
            if len(batch) < batch_size:
                break

        logger.info(
            f"Retention sweep finished ({'dry run' if dry_run else 'live'}): "
            f"processed={result.summary.processed} failed={result.summary.failed} "
            f"not_reached={result.not_reached}"
        )
        if self.run_log is not None:
            self.run_log.record(result, started_at)
        return result

    def run_integrity(
        self,
        record_filter: Optional[RecordFilter] = None,
        batch_size: Optional[int] = None,
        timeout_seconds: Optional[float] = None,
    ) -> IntegritySweepResult:
        """
        Verify stored records and report the suspicious ones.

        Raises:
            ConfigurationError: No signing key is configured
        """
        if self.integrity is None or not self.integrity.is_configured:
            raise ConfigurationError("Integrity sweep needs AUDIT_SIGNING_KEY")
        settings = get_settings()
        batch_size = batch_size or settings.RETENTION_BATCH_SIZE
        deadline = deadline_in(timeout_seconds if timeout_seconds is not None else settings.SWEEP_TIMEOUT_SECONDS)
        record_filter = record_filter or RecordFilter()
        sampler = FailureSampler(settings.FAILURE_SAMPLE_SIZE)
        result = IntegritySweepResult()

        cursor = record_filter
        while True:
            if deadline_passed(deadline):
                result.not_reached += self.record_store.count(cursor)
                break
            batch = self.record_store.fetch_batch(cursor, limit=batch_size, offset=0)
            if not batch:
                break
            outcome = run_batch(self.integrity.check, batch, max_workers=settings.sweep_workers(), deadline=deadline)
            for record, check in outcome.completed:
                result.summary.processed += 1
                if check.valid:
                    result.verified += 1
                    result.summary.succeeded += 1
                elif check.reason == "unsealed":
                    result.unsealed.append(record.id)
                    result.summary.failed += 1
                    sampler.add(f"activity {record.id}: unsealed")
                else:
                    result.suspicious.append(record.id)
                    result.summary.failed += 1
                    sampler.add(f"activity {record.id}: signature mismatch")
            for record, error in outcome.errors:
                if isinstance(error, ConfigurationError):
                    raise error
                result.summary.processed += 1
                result.summary.failed += 1
                result.suspicious.append(record.id)
                reason = "malformed signature" if isinstance(error, SignatureFormatError) else "unencodable record"
                sampler.add(f"activity {record.id}: {reason}: {error}")
            cursor = record_filter.with_cursor(batch[-1].id)
            if outcome.not_reached:
                result.not_reached += len(outcome.not_reached) + self.record_store.count(cursor)
                break
            if len(batch) < batch_size:
                break

        result.suspicious.sort()
        result.summary.skipped = result.not_reached
        result.summary.failure_samples = sampler.samples
        self.metrics.increment("integrity.records_verified", result.verified)
        self.metrics.increment("integrity.records_suspicious", len(result.suspicious))
        logger.info(
            f"Integrity sweep finished: verified={result.verified} suspicious={len(result.suspicious)} "
            f"unsealed={len(result.unsealed)} not_reached={result.not_reached}"
        )
        return result
