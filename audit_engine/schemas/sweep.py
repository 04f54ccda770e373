"""Shared result types for batch sweeps."""
from typing import List
from pydantic import BaseModel, Field


class SweepSummary(BaseModel):
    """
    Operator-facing outcome of a sweep.

    Partial failures are reported here, never raised: ``failed`` counts items
    that were reached but could not be completed, ``skipped`` counts items the
    sweep never reached before its deadline.
    """
    processed: int = 0
    succeeded: int = 0
    failed: int = 0
    skipped: int = 0
    failure_samples: List[str] = Field(default_factory=list)

    @property
    def ok(self) -> bool:
        return self.failed == 0 and self.skipped == 0


class FailureSampler:
    """Collects the first N failure reasons of a sweep."""

    def __init__(self, limit: int = 10):
        self.limit = limit
        self.samples: List[str] = []

    def add(self, reason: str) -> None:
        if len(self.samples) < self.limit:
            self.samples.append(reason)
