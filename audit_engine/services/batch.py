"""
Bounded worker pool for per-record sweep work.

Items are independent. A deadline stops new items from starting; items already
decided keep their outcome and the rest are reported as not reached.
"""
import logging
import time
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass, field
from typing import Callable, Generic, List, Optional, Sequence, Tuple, TypeVar

from audit_engine.core.config import get_settings

logger = logging.getLogger(__name__)

T = TypeVar("T")
R = TypeVar("R")

_NOT_REACHED = object()


def deadline_in(seconds: Optional[float]) -> Optional[float]:
    """Deadline on the monotonic clock, or None for no deadline."""
    if seconds is None:
        return None
    return time.monotonic() + seconds


def deadline_passed(deadline: Optional[float]) -> bool:
    return deadline is not None and time.monotonic() >= deadline


@dataclass
class BatchOutcome(Generic[T, R]):
    """Per-item outcome of run_batch, in input order."""
    completed: List[Tuple[T, R]] = field(default_factory=list)
    errors: List[Tuple[T, Exception]] = field(default_factory=list)
    not_reached: List[T] = field(default_factory=list)


def run_batch(
    fn: Callable[[T], R],
    items: Sequence[T],
    max_workers: Optional[int] = None,
    deadline: Optional[float] = None,
) -> BatchOutcome[T, R]:
    """
    Apply fn to every item on a bounded thread pool.

    Args:
        fn: Work for one item. Exceptions are captured per item.
        items: Items to process
        max_workers: Pool size, defaults to min(cpu_count, SWEEP_CONCURRENCY_LIMIT)
        deadline: time.monotonic() value after which no new item starts

    Returns:
        BatchOutcome with completed items, failed items and items never started
    """
    outcome: BatchOutcome[T, R] = BatchOutcome()
    if not items:
        return outcome
    workers = max_workers or get_settings().sweep_workers()

    def guarded(item: T):
        if deadline_passed(deadline):
            return _NOT_REACHED
        return fn(item)

    slots: List[Optional[Tuple[str, object]]] = [None] * len(items)
    with ThreadPoolExecutor(max_workers=workers) as executor:
        future_to_index = {executor.submit(guarded, item): index for index, item in enumerate(items)}
        for future in as_completed(future_to_index):
            index = future_to_index[future]
            try:
                result = future.result()
            except Exception as e:
                slots[index] = ("error", e)
                continue
            if result is _NOT_REACHED:
                slots[index] = ("not_reached", None)
            else:
                slots[index] = ("ok", result)

    for item, (state, value) in zip(items, slots):
        if state == "ok":
            outcome.completed.append((item, value))
        elif state == "error":
            outcome.errors.append((item, value))
        else:
            outcome.not_reached.append(item)

    if outcome.not_reached:
        logger.warning(f"Deadline reached: {len(outcome.not_reached)} of {len(items)} items not processed")
    return outcome
