"""
Shared test helpers.
"""
from datetime import datetime, timezone

from audit_engine.schemas.activity import ActivityRecord

UTC = timezone.utc


class RecordingTransport:
    """Dispatch transport that keeps every delivery in memory."""

    def __init__(self, fail_times: int = 0, error=None):
        self.sent = []
        self.fail_times = fail_times
        self.error = error

    def send(self, channel, recipient, alert):
        if self.fail_times > 0:
            self.fail_times -= 1
            raise self.error
        self.sent.append((channel.channel_type, recipient, alert))


def make_record(record_id: int = 1, **overrides) -> ActivityRecord:
    """Unsealed activity record with sensible defaults."""
    values = {
        "id": record_id,
        "type": "login",
        "module": "auth",
        "description": "User logged in",
        "user_id": 42,
        "ip_address": "10.0.0.5",
        "user_agent": "pytest",
        "properties": {},
        "risk_level": 1,
        "created_at": datetime(2024, 3, 1, 12, 0, 0, tzinfo=UTC),
    }
    values.update(overrides)
    return ActivityRecord(**values)
