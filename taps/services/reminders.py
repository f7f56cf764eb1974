"""
TAPS — Department reminder scan.

Re-sends a department's queue notification for requests that have waited on
it longer than the configured threshold.  An audit entry
``<DEPT>_REMINDER_SENT`` records each reminder and doubles as the dedup key:
a request is reminded at most once per department per 24 hours.

Waiting time:
  - Library / Bursar: since the request was created
  - Academic:         since its Academic SLA timer opened (i.e. since both
                      Library and Bursar answered)

Usage:
    from taps.services.reminders import ReminderService
    counts = ReminderService(reminder_cfg, notification_cfg).send_reminders(now)
    # -> {"library": 2, "bursar": 0, "academic": 1}
"""

from __future__ import annotations

import logging
from datetime import UTC, datetime, timedelta

from taps.config import NotificationConfig, ReminderConfig
from taps.models import db
from taps.models.audit import AuditLog
from taps.models.request import (
    ACADEMIC_TRACK,
    BURSAR_TRACK,
    LIBRARY_TRACK,
    PENDING,
    TERMINAL_STATUSES,
    Request,
)
from taps.models.sla import OPEN_SLA_STATUSES, SlaMetric
from taps.services.audit_logger import AuditDiffLogger
from taps.services.notification_delivery import LoggingMailSender, MailSender, deliver_intents
from taps.services.notification_rules import (
    ACADEMIC_QUEUE,
    BURSAR_QUEUE,
    LIBRARY_QUEUE,
    NotificationIntent,
    request_context,
)
from taps.services.sla_tracker import as_utc, hours_between

logger = logging.getLogger(__name__)

DEDUP_WINDOW = timedelta(hours=24)

REMINDER_ACTIONS = {
    LIBRARY_TRACK.name: "LIBRARY_REMINDER_SENT",
    BURSAR_TRACK.name: "BURSAR_REMINDER_SENT",
    ACADEMIC_TRACK.name: "ACADEMIC_REMINDER_SENT",
}

QUEUE_KINDS = {
    LIBRARY_TRACK.name: LIBRARY_QUEUE,
    BURSAR_TRACK.name: BURSAR_QUEUE,
    ACADEMIC_TRACK.name: ACADEMIC_QUEUE,
}


def _utcnow() -> datetime:
    return datetime.now(UTC)


class ReminderService:
    """Scans waiting requests and nudges the department that owes an answer."""

    def __init__(
        self,
        config: ReminderConfig | None = None,
        notifications: NotificationConfig | None = None,
        audit: AuditDiffLogger | None = None,
        sender: MailSender | None = None,
    ):
        self.config = config or ReminderConfig()
        self.notifications = notifications or NotificationConfig()
        self.audit = audit or AuditDiffLogger()
        self.sender = sender or LoggingMailSender()

    # ── Settings per department ──────────────────────────────────────────

    def _department_settings(self):
        """(track, enabled, threshold hours, recipient) per department."""
        cfg, mail = self.config, self.notifications
        return (
            (LIBRARY_TRACK, cfg.library, cfg.library_hours, mail.library_email),
            (BURSAR_TRACK, cfg.bursar, cfg.bursar_hours, mail.bursar_email),
            (ACADEMIC_TRACK, cfg.academic, cfg.academic_hours, mail.academic_email),
        )

    # ── Scan ─────────────────────────────────────────────────────────────

    def send_reminders(self, now: datetime | None = None) -> dict[str, int]:
        """Send due reminders.  Returns the number sent per department."""
        now = as_utc(now) if now else _utcnow()
        counts = {track.name: 0 for track in (LIBRARY_TRACK, BURSAR_TRACK, ACADEMIC_TRACK)}
        if not self.config.enabled:
            logger.debug("Reminders disabled")
            return counts

        for track, enabled, threshold, recipient in self._department_settings():
            if not enabled or not recipient:
                continue
            for request, waiting_since in self._due(track, threshold, now):
                try:
                    if self._recently_reminded(track, request.id, now):
                        continue
                    intent = NotificationIntent(
                        to=recipient,
                        template_kind=QUEUE_KINDS[track.name],
                        context={
                            **request_context(request.snapshot()),
                            "reminder": True,
                            "waiting_hours": round(hours_between(waiting_since, now), 1),
                        },
                    )
                    report = deliver_intents([intent], self.sender)
                    if report.failures:
                        continue
                    self.audit.record_event(
                        REMINDER_ACTIONS[track.name],
                        {"recipient": recipient, "waiting_since": waiting_since.isoformat()},
                        request_id=request.id,
                        timestamp=now,
                    )
                    counts[track.name] += 1
                except Exception:
                    db.session.rollback()
                    logger.error(
                        "Reminder failed for request %s", request.id,
                        exc_info=True, extra={"department": track.department, "effect": "reminder"},
                    )

        logger.info("Reminder scan: %s", counts)
        return counts

    def _due(self, track, threshold_hours: float, now: datetime):
        """``(request, waiting_since)`` pairs for requests overdue on *track*."""
        q = Request.query.filter(
            Request.status.notin_(tuple(TERMINAL_STATUSES)),
            getattr(Request, track.status_field) == PENDING,
        )
        if track is ACADEMIC_TRACK:
            q = q.filter(
                Request.library_status != PENDING,
                Request.bursar_status != PENDING,
            )

        due = []
        for request in q.order_by(Request.created_at).all():
            if track is ACADEMIC_TRACK:
                timer = (
                    SlaMetric.query
                    .filter(
                        SlaMetric.request_id == request.id,
                        SlaMetric.department == ACADEMIC_TRACK.department,
                        SlaMetric.status.in_(OPEN_SLA_STATUSES),
                    )
                    .first()
                )
                if timer is None:
                    continue
                waiting_since = as_utc(timer.start_time)
            else:
                waiting_since = as_utc(request.created_at)
            if hours_between(waiting_since, now) >= threshold_hours:
                due.append((request, waiting_since))
        return due

    @staticmethod
    def _recently_reminded(track, request_id: str, now: datetime) -> bool:
        stamps = (
            db.session.query(AuditLog.timestamp)
            .filter(
                AuditLog.request_id == request_id,
                AuditLog.action == REMINDER_ACTIONS[track.name],
            )
            .all()
        )
        cutoff = now - DEDUP_WINDOW
        return any(as_utc(ts) > cutoff for (ts,) in stamps)
