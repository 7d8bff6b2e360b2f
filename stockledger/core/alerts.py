"""
Tamper Alerting

Notifies an operator when a verification run finds tampering.

Alerting is best-effort:
- No channel configured -> dispatch() is a silent no-op
- Delivery failure -> logged and swallowed
- Neither ever changes the verification result already computed

CONFIGURATION:
- EMAIL_USER / EMAIL_PASS: SMTP credentials (also the sender address)
- ALERT_EMAIL: Recipient of tamper alerts
- STOCKLEDGER_SMTP_HOST: SMTP server (default: smtp.gmail.com)
- STOCKLEDGER_SMTP_PORT: SMTP port (default: 465, implicit TLS)
- STOCKLEDGER_SMTP_TIMEOUT_SECONDS: Connection timeout (default: 10)
"""

import logging
import os
import smtplib
from dataclasses import dataclass
from datetime import datetime, timezone
from email.message import EmailMessage
from typing import Optional, Protocol, Sequence

from ..observability import get_metrics
from ..schemas import TamperRecord

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class AlertSummary:
    """Human-readable tamper alert."""
    subject: str
    body: str
    tampered_count: int
    detected_at: datetime


class Notifier(Protocol):
    """An operator notification channel."""

    def notify(self, summary: AlertSummary) -> None:
        """Deliver the alert. Raise on failure."""
        ...


@dataclass
class AlertConfig:
    """Configuration for the email alert channel."""
    user: str = ""
    password: str = ""
    recipient: str = ""
    smtp_host: str = "smtp.gmail.com"
    smtp_port: int = 465
    timeout_seconds: float = 10.0

    @classmethod
    def from_env(cls) -> "AlertConfig":
        """Load configuration from environment variables."""
        return cls(
            user=os.environ.get("EMAIL_USER", ""),
            password=os.environ.get("EMAIL_PASS", ""),
            recipient=os.environ.get("ALERT_EMAIL", ""),
            smtp_host=os.environ.get("STOCKLEDGER_SMTP_HOST", "smtp.gmail.com"),
            smtp_port=int(os.environ.get("STOCKLEDGER_SMTP_PORT", "465")),
            timeout_seconds=float(os.environ.get("STOCKLEDGER_SMTP_TIMEOUT_SECONDS", "10")),
        )

    @property
    def is_complete(self) -> bool:
        return bool(self.user and self.password and self.recipient)


class EmailNotifier:
    """Sends tamper alerts as email over SMTP (implicit TLS on 465, STARTTLS otherwise)."""

    def __init__(self, config: AlertConfig):
        self._config = config

    @property
    def recipient(self) -> str:
        return self._config.recipient

    def _build_message(self, summary: AlertSummary) -> EmailMessage:
        message = EmailMessage()
        message["From"] = self._config.user
        message["To"] = self._config.recipient
        message["Subject"] = summary.subject
        message.set_content(summary.body)
        return message

    def notify(self, summary: AlertSummary) -> None:
        config = self._config
        message = self._build_message(summary)

        if config.smtp_port == 465:
            with smtplib.SMTP_SSL(config.smtp_host, config.smtp_port, timeout=config.timeout_seconds) as smtp:
                smtp.login(config.user, config.password)
                smtp.send_message(message)
        else:
            with smtplib.SMTP(config.smtp_host, config.smtp_port, timeout=config.timeout_seconds) as smtp:
                smtp.starttls()
                smtp.login(config.user, config.password)
                smtp.send_message(message)


def build_summary(
    tampered_entries: Sequence[TamperRecord],
    detected_at: Optional[datetime] = None,
) -> AlertSummary:
    """Compose the alert text: one line per finding."""
    detected_at = detected_at or datetime.now(timezone.utc)
    count = len({t.index for t in tampered_entries})

    lines = [
        "Ledger integrity violation detected.",
        "",
        f"Time: {detected_at.isoformat()}",
        f"Tampered entries: {count}",
        "",
    ]
    lines.extend(f"Entry #{t.index}: {t.reason}" for t in tampered_entries)
    lines.extend([
        "",
        "This is an automated alert from the inventory audit ledger.",
        "Please investigate immediately.",
    ])

    return AlertSummary(
        subject=f"LEDGER TAMPER ALERT - {count} entries affected",
        body="\n".join(lines),
        tampered_count=count,
        detected_at=detected_at,
    )


class AlertDispatcher:
    """
    Routes tamper reports to the configured notifier.

    A dispatcher without a notifier is valid: every dispatch is a no-op.
    """

    def __init__(self, notifier: Optional[Notifier] = None):
        self._notifier = notifier

    @classmethod
    def from_env(cls) -> "AlertDispatcher":
        """Build a dispatcher with email alerts if fully configured, else a no-op one."""
        config = AlertConfig.from_env()
        if not config.is_complete:
            logger.warning("Missing email configuration (EMAIL_USER, EMAIL_PASS, ALERT_EMAIL) - alerts disabled")
            return cls(notifier=None)
        return cls(notifier=EmailNotifier(config))

    @property
    def is_configured(self) -> bool:
        return self._notifier is not None

    def dispatch(self, tampered_entries: Sequence[TamperRecord]) -> bool:
        """
        Alert on a non-empty tamper list.

        Returns:
            True if the notifier accepted the alert
        """
        if self._notifier is None or not tampered_entries:
            return False

        summary = build_summary(tampered_entries)
        try:
            self._notifier.notify(summary)
        except Exception:
            get_metrics().record_alert(delivered=False)
            logger.exception("Error sending tamper alert")
            return False

        get_metrics().record_alert(delivered=True)
        logger.info(f"Tamper alert sent ({summary.tampered_count} entries)")
        return True
