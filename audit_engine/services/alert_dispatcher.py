"""
Alert dispatch: recipient expansion, per-channel delivery and the retry queue.

Every (channel, recipient) delivery is independent. A failing channel is
reported in the DispatchReport and queued for retry; it never blocks the
channels after it.
"""
import logging
import threading
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Dict, Iterable, List, Mapping, Optional, Sequence

import requests

from audit_engine.core.config import get_settings
from audit_engine.core.errors import ConfigurationError, TransientIOError
from audit_engine.schemas.notification import (
    ChannelResult,
    DispatchChannel,
    DispatchReport,
    RecipientSelector,
    RenderedAlert,
)

logger = logging.getLogger(__name__)


class StaticRecipientDirectory:
    """Recipient lookup backed by configuration."""

    def __init__(
        self,
        admins: Sequence[str] = (),
        roles: Optional[Mapping[str, Sequence[str]]] = None,
        inactive: Iterable[str] = (),
    ):
        self.admins = [str(a) for a in admins]
        self.roles = {role: [str(m) for m in members] for role, members in (roles or {}).items()}
        self.inactive = {str(i) for i in inactive}

    @classmethod
    def from_settings(cls) -> "StaticRecipientDirectory":
        settings = get_settings()
        return cls(admins=settings.ALERT_ADMIN_RECIPIENTS, roles=settings.ALERT_ROLE_RECIPIENTS)

    def resolve(self, selector: RecipientSelector) -> List[str]:
        if selector.type == "all_admins":
            return list(self.admins)
        if selector.type == "role":
            return list(self.roles.get(selector.id, []))
        return [selector.id]

    def is_active(self, recipient: str) -> bool:
        return recipient not in self.inactive


def expand_recipients(selectors: Sequence[RecipientSelector], directory) -> List[str]:
    """Resolve selectors in order, dropping duplicates and inactive recipients."""
    seen = set()
    recipients: List[str] = []
    for selector in selectors:
        for recipient in directory.resolve(selector):
            if recipient in seen or not directory.is_active(recipient):
                continue
            seen.add(recipient)
            recipients.append(recipient)
    return recipients


class LoggingTransport:
    """Writes the alert as a structured log line (log, browser and security_alert channels)."""

    def __init__(self, channel_name: str = "log"):
        self.channel_name = channel_name
        self.logger = logging.getLogger(f"{__name__}.{channel_name}")

    def send(self, channel: DispatchChannel, recipient: str, alert: RenderedAlert) -> None:
        level = logging.WARNING if alert.priority >= 3 or channel.channel_type == "security_alert" else logging.INFO
        self.logger.log(
            level,
            f"[{alert.priority_label}] {alert.title} -> {recipient}: {alert.message}",
            extra={
                "rule_id": alert.rule_id,
                "record_id": alert.record_id,
                "occurrence_count": alert.occurrence_count,
            },
        )


class WebhookTransport:
    """POSTs the alert as JSON to ``config.url``."""

    def __init__(self, timeout: Optional[float] = None, session: Optional[requests.Session] = None):
        self.timeout = timeout or get_settings().WEBHOOK_TIMEOUT_SECONDS
        self.session = session or requests.Session()

    def send(self, channel: DispatchChannel, recipient: str, alert: RenderedAlert) -> None:
        url = channel.config.get("url")
        if not url:
            raise ConfigurationError("webhook channel has no url")
        extra_headers = channel.config.get("headers") or {}
        if not isinstance(extra_headers, dict):
            raise ConfigurationError("webhook headers must be a mapping")
        headers = {"Content-Type": "application/json", **extra_headers}
        payload = alert.model_dump(mode="json")
        payload["recipient"] = recipient
        try:
            r = self.session.post(url, json=payload, headers=headers, timeout=self.timeout)
        except requests.RequestException as e:
            raise TransientIOError(f"webhook {url} unreachable: {e}") from e
        if not 200 <= r.status_code < 300:
            raise TransientIOError(f"webhook {url} returned {r.status_code}")


def default_transports() -> Dict[str, object]:
    return {
        "log": LoggingTransport("log"),
        "browser": LoggingTransport("browser"),
        "security_alert": LoggingTransport("security_alert"),
        "webhook": WebhookTransport(),
    }


@dataclass
class RetryEntry:
    channel: DispatchChannel
    recipient: str
    alert: RenderedAlert
    attempt: int
    due_at: datetime


def _aware(value: Optional[datetime]) -> datetime:
    if value is None:
        return datetime.now(timezone.utc)
    return value if value.tzinfo else value.replace(tzinfo=timezone.utc)


class AlertDispatcher:
    """Delivers rendered alerts to every recipient over every configured channel."""

    def __init__(
        self,
        directory=None,
        transports: Optional[Mapping[str, object]] = None,
        max_attempts: Optional[int] = None,
        retry_delay_seconds: Optional[int] = None,
    ):
        settings = get_settings()
        self.directory = directory or StaticRecipientDirectory.from_settings()
        self.transports = dict(transports) if transports is not None else default_transports()
        self.max_attempts = max_attempts or settings.DISPATCH_MAX_ATTEMPTS
        self.retry_delay_seconds = (
            settings.DISPATCH_RETRY_DELAY_SECONDS if retry_delay_seconds is None else retry_delay_seconds
        )
        self._retries: List[RetryEntry] = []
        self._retry_lock = threading.Lock()

    @property
    def pending_retries(self) -> int:
        with self._retry_lock:
            return len(self._retries)

    def dispatch(
        self,
        alert: RenderedAlert,
        channels: Sequence[DispatchChannel],
        selectors: Sequence[RecipientSelector],
        now: Optional[datetime] = None,
    ) -> DispatchReport:
        """
        Deliver an alert over each channel, in order, to each expanded recipient.

        Returns:
            DispatchReport with one ChannelResult per (channel, recipient)
        """
        now = _aware(now)
        recipients = expand_recipients(selectors, self.directory)
        report = DispatchReport(rule_id=alert.rule_id, record_id=alert.record_id, recipients=recipients)
        if not recipients:
            logger.warning(f"Alert for rule {alert.rule_id} has no active recipients")
        for channel in channels:
            for recipient in recipients:
                report.results.append(self._deliver(channel, recipient, alert, 1, now))
        return report

    def _deliver(
        self, channel: DispatchChannel, recipient: str, alert: RenderedAlert, attempt: int, now: datetime
    ) -> ChannelResult:
        transport = self.transports.get(channel.channel_type)
        if transport is None:
            logger.error(f"Unknown dispatch channel '{channel.channel_type}' for rule {alert.rule_id}")
            return ChannelResult(
                channel_type=channel.channel_type,
                recipient=recipient,
                ok=False,
                error="unknown channel",
                attempt=attempt,
            )
        try:
            transport.send(channel, recipient, alert)
        except TransientIOError as e:
            logger.warning(
                f"Dispatch via {channel.channel_type} to {recipient} failed (attempt {attempt}): {e}"
            )
            self._schedule_retry(channel, recipient, alert, attempt, now)
            return ChannelResult(
                channel_type=channel.channel_type, recipient=recipient, ok=False, error=str(e), attempt=attempt
            )
        except ConfigurationError as e:
            logger.error(f"Dispatch via {channel.channel_type} misconfigured for rule {alert.rule_id}: {e}")
            return ChannelResult(
                channel_type=channel.channel_type, recipient=recipient, ok=False, error=str(e), attempt=attempt
            )
        except Exception as e:
            logger.error(
                f"Dispatch via {channel.channel_type} to {recipient} crashed for rule {alert.rule_id}: {e}",
                exc_info=True,
            )
            return ChannelResult(
                channel_type=channel.channel_type, recipient=recipient, ok=False, error=str(e), attempt=attempt
            )
        return ChannelResult(channel_type=channel.channel_type, recipient=recipient, ok=True, attempt=attempt)

    def _schedule_retry(
        self, channel: DispatchChannel, recipient: str, alert: RenderedAlert, attempt: int, now: datetime
    ) -> None:
        if attempt >= self.max_attempts:
            logger.error(
                f"Giving up on {channel.channel_type} delivery to {recipient} for rule {alert.rule_id} "
                f"after {attempt} attempts"
            )
            return
        due_at = now + timedelta(seconds=attempt * self.retry_delay_seconds)
        with self._retry_lock:
            self._retries.append(RetryEntry(channel, recipient, alert, attempt + 1, due_at))

    def process_retries(self, now: Optional[datetime] = None) -> List[ChannelResult]:
        """
        Re-attempt deliveries whose retry time has come.

        Failures are re-queued with a longer delay until DISPATCH_MAX_ATTEMPTS
        is reached, then dropped with an ERROR log.
        """
        now = _aware(now)
        with self._retry_lock:
            due = [entry for entry in self._retries if entry.due_at <= now]
            self._retries = [entry for entry in self._retries if entry.due_at > now]
        results = [
            self._deliver(entry.channel, entry.recipient, entry.alert, entry.attempt, now)
            for entry in due
        ]
        if due:
            ok = sum(1 for r in results if r.ok)
            logger.info(f"Processed {len(due)} dispatch retries: {ok} delivered")
        return results
