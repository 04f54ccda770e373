"""Database models."""
from audit_engine.models.activity_log import ActivityLog
from audit_engine.models.archived_activity import ArchivedActivity
from audit_engine.models.retention_policy import RetentionPolicy
from audit_engine.models.retention_run import RetentionRun
from audit_engine.models.notification_rule import NotificationRule
from audit_engine.models.alert_group import AlertGroup
from audit_engine.models.api_key import APIKey

__all__ = [
    "ActivityLog",
    "ArchivedActivity",
    "RetentionPolicy",
    "RetentionRun",
    "NotificationRule",
    "AlertGroup",
    "APIKey",
]
