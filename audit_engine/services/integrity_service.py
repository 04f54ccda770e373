"""
Integrity sealing and verification of activity records.

Signatures are HMAC-SHA256 over the canonical encoding, stored hex-encoded.
"""
import hashlib
import hmac
import logging
import string
from typing import Dict, Iterable, Optional

from audit_engine.core.config import get_settings
from audit_engine.core.errors import ConfigurationError, SignatureFormatError
from audit_engine.schemas.activity import ActivityRecord
from audit_engine.schemas.integrity import VerificationResult
from audit_engine.services.canonical import encode_record

logger = logging.getLogger(__name__)

SIGNATURE_HEX_LENGTH = hashlib.sha256().digest_size * 2
_HEX_DIGITS = frozenset(string.hexdigits)


def check_signature_format(signature: str) -> None:
    """
    Raise SignatureFormatError unless the signature is a hex-encoded SHA-256 MAC.
    """
    if not isinstance(signature, str) or len(signature) != SIGNATURE_HEX_LENGTH:
        raise SignatureFormatError(
            f"Signature must be {SIGNATURE_HEX_LENGTH} hex characters"
        )
    if not _HEX_DIGITS.issuperset(signature):
        raise SignatureFormatError("Signature contains non-hex characters")


class IntegrityService:
    """Seals records at write time and verifies them on read or during sweeps."""

    def __init__(self, secret_key: Optional[str] = None):
        """
        Initialize the service.

        Args:
            secret_key: MAC key. Defaults to AUDIT_SIGNING_KEY from settings.
                The key is read once; call reload_key() to rotate it.
        """
        self._explicit_key = secret_key
        self._key: Optional[bytes] = None
        self.reload_key()

    def reload_key(self) -> None:
        """Re-read key material. The only point where the key may change."""
        key = self._explicit_key
        if key is None:
            settings = get_settings()
            key = settings.AUDIT_SIGNING_KEY if settings.is_signing_key_configured() else None
        self._key = key.encode("utf-8") if key else None
        if self._key is None:
            logger.warning("No audit signing key configured; sealing and verification are disabled")

    @property
    def is_configured(self) -> bool:
        return self._key is not None

    def _require_key(self) -> bytes:
        if self._key is None:
            raise ConfigurationError("AUDIT_SIGNING_KEY is not configured")
        return self._key

    def compute(self, record: ActivityRecord) -> str:
        """HMAC of the record's current field values (signature ignored)."""
        key = self._require_key()
        return hmac.new(key, encode_record(record), hashlib.sha256).hexdigest()

    def seal(self, record: ActivityRecord) -> str:
        """
        Compute the signature for a record.

        Args:
            record: Record as it will be persisted (id assigned)

        Returns:
            Hex-encoded signature

        Raises:
            ConfigurationError: No key is provisioned
        """
        return self.compute(record)

    def sealed(self, record: ActivityRecord) -> ActivityRecord:
        """Return a copy of the record carrying its signature."""
        return record.model_copy(update={"signature": self.seal(record)})

    def check(self, record: ActivityRecord) -> VerificationResult:
        """
        Verify one record and explain the outcome.

        Raises:
            ConfigurationError: No key is provisioned
            SignatureFormatError: The stored signature is not valid hex
        """
        if record.signature is None:
            return VerificationResult(record_id=record.id, valid=False, reason="unsealed")
        check_signature_format(record.signature)
        expected = self.compute(record)
        actual = record.signature.lower()
        if hmac.compare_digest(expected, actual):
            return VerificationResult(
                record_id=record.id, valid=True, reason="ok", expected=expected, actual=actual
            )
        logger.warning(
            f"Signature mismatch for activity {record.id}: expected {expected}, stored {actual}"
        )
        return VerificationResult(
            record_id=record.id, valid=False, reason="mismatch", expected=expected, actual=actual
        )

    def verify(self, record: ActivityRecord) -> bool:
        """True when the stored signature matches the record's current fields."""
        return self.check(record).valid

    def verify_batch(self, records: Iterable[ActivityRecord]) -> Dict[int, bool]:
        """
        Verify records independently.

        A record with a corrupt signature or an unencodable field reports
        False instead of aborting the batch. A missing key still raises.

        Returns:
            Mapping of record id to verification outcome
        """
        self._require_key()
        results: Dict[int, bool] = {}
        for record in records:
            try:
                results[record.id] = self.verify(record)
            except SignatureFormatError as e:
                logger.warning(f"Activity {record.id} has a malformed signature: {e}")
                results[record.id] = False
            except (ValueError, TypeError) as e:
                logger.warning(f"Activity {record.id} could not be encoded: {e}")
                results[record.id] = False
        return results
