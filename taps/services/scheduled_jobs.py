"""
TAPS — Scheduled Jobs.

Concrete job implementations triggered by the external scheduler.

Jobs:
    - sla_sweep: flags SLA timers approaching or past their target
    - reminder_scan: re-notifies departments sitting on pending requests
"""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Any

from flask import current_app

from taps.config import NotificationConfig, ReminderConfig, SlaConfig
from taps.services.reminders import ReminderService
from taps.services.scheduler_service import register_job
from taps.services.sla_tracker import SlaTracker
from taps.services.workflow import MAIL_SENDER_EXTENSION

logger = logging.getLogger(__name__)


# ═══════════════════════════════════════════════════════════════════════════
#  Entry point used by the scheduler
# ═══════════════════════════════════════════════════════════════════════════

def run_sla_sweep(now: datetime | None = None) -> dict[str, int]:
    """Sweep every open SLA timer.  Returns ``{"checked", "updated"}``."""
    tracker = SlaTracker(SlaConfig.from_app_config(current_app.config))
    return tracker.sweep(now)


def run_reminder_scan(now: datetime | None = None) -> dict[str, int]:
    """Send due department reminders.  Returns counts per department."""
    cfg = current_app.config
    service = ReminderService(
        ReminderConfig.from_app_config(cfg),
        NotificationConfig.from_app_config(cfg),
        sender=current_app.extensions.get(MAIL_SENDER_EXTENSION),
    )
    return service.send_reminders(now)


# ═══════════════════════════════════════════════════════════════════════════
#  Job 1: SLA Sweep
# ═══════════════════════════════════════════════════════════════════════════

@register_job("sla_sweep")
def sla_sweep(app, now: datetime | None = None) -> dict[str, Any]:
    """Flag SLA warnings and breaches."""
    return run_sla_sweep(now)


# ═══════════════════════════════════════════════════════════════════════════
#  Job 2: Reminder Scan
# ═══════════════════════════════════════════════════════════════════════════

@register_job("reminder_scan")
def reminder_scan(app, now: datetime | None = None) -> dict[str, Any]:
    """Remind departments about requests waiting on them."""
    return run_reminder_scan(now)
