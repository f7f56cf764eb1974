"""
TAPS — Notification delivery.

Hands ``NotificationIntent`` values to a ``MailSender`` one at a time.  Each
send is isolated: an exception or timeout from one intent is recorded in the
``DeliveryReport`` and the loop moves on.  Nothing is retried here; retry
policy belongs to the sender's transport.

When no mail transport is configured the ``LoggingMailSender`` is used and
intents are logged but not sent (dev/test mode).
"""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Iterable

from taps.services.notification_rules import NotificationIntent

logger = logging.getLogger(__name__)


class MailSender(ABC):
    """Outbound collaborator: owns transport, templating and retries."""

    @abstractmethod
    def send(self, intent: NotificationIntent):
        """Deliver one intent.  Raise on failure."""


class LoggingMailSender(MailSender):
    """Log-only sender used when no mail transport is configured."""

    def send(self, intent: NotificationIntent):
        logger.info(
            "Email (log-only) to=%s kind=%s",
            intent.to, intent.template_kind,
            extra={
                "request_id": intent.context.get("request_id"),
                "request_code": intent.context.get("request_code"),
                "effect": "notify",
            },
        )
        return {"status": "logged", "to": intent.to}


@dataclass
class DeliveryFailure:
    intent: NotificationIntent
    error: str

    def to_dict(self) -> dict:
        return {"intent": self.intent.to_dict(), "error": self.error}


@dataclass
class DeliveryReport:
    """Outcome of one delivery loop."""
    sent: int = 0
    failures: list[DeliveryFailure] = field(default_factory=list)

    @property
    def failed(self) -> int:
        return len(self.failures)

    def to_dict(self) -> dict:
        return {
            "sent": self.sent,
            "failed": self.failed,
            "failures": [f.to_dict() for f in self.failures],
        }


def deliver_intents(intents: Iterable[NotificationIntent], sender: MailSender) -> DeliveryReport:
    """Send every intent independently and report what happened."""
    report = DeliveryReport()
    for intent in intents:
        try:
            sender.send(intent)
            report.sent += 1
        except Exception as exc:  # timeouts included
            report.failures.append(DeliveryFailure(intent=intent, error=f"{type(exc).__name__}: {exc}"))
            logger.warning(
                "Notification delivery failed to=%s kind=%s: %s",
                intent.to, intent.template_kind, exc,
                extra={"request_id": intent.context.get("request_id"), "effect": "notify"},
            )
    return report
