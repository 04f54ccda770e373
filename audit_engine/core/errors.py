"""
Exception taxonomy for the audit engine.

Only structural problems are raised. Data-quality findings (signature mismatch,
no matching policy, partial batch failure) are returned as results.
"""


class AuditEngineError(Exception):
    """Base class for engine errors."""


class ConfigurationError(AuditEngineError):
    """Missing key material or a malformed policy, rule or condition."""


class SignatureFormatError(AuditEngineError):
    """A stored signature is not a valid hex-encoded MAC."""


class TransientIOError(AuditEngineError):
    """Archive, delete or dispatch failed; the caller may retry."""


class RecordTamperError(AuditEngineError):
    """Attempt to modify a sealed activity record."""

    def __init__(self, record_id, fields):
        self.record_id = record_id
        self.fields = list(fields)
        super().__init__(
            f"Activity record {record_id} is sealed; refusing to change {', '.join(self.fields)}"
        )
