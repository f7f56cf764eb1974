"""
TAPS — Notification Rule Dispatcher.

Decides, from an (old, new) request snapshot pair, which parties must be
told about a change.  ``evaluate`` is pure: it returns ``NotificationIntent``
values and never sends anything.  Delivery lives in
``taps.services.notification_delivery``.

Rules, evaluated in this order:
    1. creation fan-out            → library_queue + bursar_queue
    2. library left PENDING        → library_status_update to Bursar
    3. status/track changed        → system_notice per field to operations
    4. library & bursar answered,
       academic still PENDING      → academic_queue (repeats while true)
    5. academic became COMPLETED   → ready_for_processing
       or CORRECTIONS_REQUIRED     → corrections_needed

Usage:
    from taps.services.notification_rules import NotificationRuleDispatcher

    dispatcher = NotificationRuleDispatcher(NotificationConfig.from_app_config(app.config))
    intents = dispatcher.evaluate(old_snapshot, new_snapshot)
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Mapping

from taps.config import NotificationConfig
from taps.models.request import PENDING, AcademicStatus


# ═════════════════════════════════════════════════════════════════════════════
# Intent
# ═════════════════════════════════════════════════════════════════════════════

LIBRARY_QUEUE = "library_queue"
BURSAR_QUEUE = "bursar_queue"
LIBRARY_STATUS_UPDATE = "library_status_update"
SYSTEM_NOTICE = "system_notice"
ACADEMIC_QUEUE = "academic_queue"
READY_FOR_PROCESSING = "ready_for_processing"
CORRECTIONS_NEEDED = "corrections_needed"

TEMPLATE_KINDS = (
    LIBRARY_QUEUE,
    BURSAR_QUEUE,
    LIBRARY_STATUS_UPDATE,
    SYSTEM_NOTICE,
    ACADEMIC_QUEUE,
    READY_FOR_PROCESSING,
    CORRECTIONS_NEEDED,
)

# Fields reported to the operations mailbox, with their notice label.
NOTICE_FIELDS = (
    ("status", "status"),
    ("library", "library_status"),
    ("bursar", "bursar_status"),
    ("academic", "academic_status"),
)


@dataclass(frozen=True)
class NotificationIntent:
    """Data-only description of one message to send."""
    to: str
    template_kind: str
    context: dict = field(default_factory=dict, hash=False)

    def to_dict(self) -> dict:
        return {
            "to": self.to,
            "template_kind": self.template_kind,
            "context": dict(self.context),
        }


def request_context(state: Mapping[str, Any]) -> dict:
    return {
        "request_id": state.get("id"),
        "request_code": state.get("request_code"),
        "student_id": state.get("student_id"),
        "student_name": state.get("student_name"),
        "student_email": state.get("student_email"),
        "program": state.get("program"),
    }


# ═════════════════════════════════════════════════════════════════════════════
# Dispatcher
# ═════════════════════════════════════════════════════════════════════════════

class NotificationRuleDispatcher:
    """Pure rule engine over request snapshots.

    Snapshots are plain mappings carrying at least the workflow fields plus
    ``id`` and ``request_code``.  A rule whose recipient mailbox is not
    configured emits nothing.
    """

    def __init__(self, config: NotificationConfig | None = None):
        self.config = config or NotificationConfig()

    def evaluate(
        self,
        old: Mapping[str, Any] | None,
        new: Mapping[str, Any],
    ) -> list[NotificationIntent]:
        """Return the intents triggered by moving from *old* to *new*.

        ``old is None`` marks the first persistence of the record.
        """
        if not self.config.alerts_enabled:
            return []

        intents: list[NotificationIntent] = []
        base = request_context(new)

        if old is None:
            intents.extend(self._creation_fan_out(base))
        else:
            intents.extend(self._library_resolved(old, new, base))
            intents.extend(self._system_notices(old, new, base))

        intents.extend(self._academic_ready(new, base))

        if old is not None:
            intents.extend(self._academic_resolved(old, new, base))

        return intents

    # ── Rules ────────────────────────────────────────────────────────────

    def _emit(self, to: str | None, kind: str, context: dict) -> list[NotificationIntent]:
        if not to:
            return []
        return [NotificationIntent(to=to, template_kind=kind, context=context)]

    def _creation_fan_out(self, base):
        return (
            self._emit(self.config.library_email, LIBRARY_QUEUE, dict(base))
            + self._emit(self.config.bursar_email, BURSAR_QUEUE, dict(base))
        )

    def _library_resolved(self, old, new, base):
        if old.get("library_status") == PENDING and new.get("library_status") != PENDING:
            return self._emit(
                self.config.bursar_email,
                LIBRARY_STATUS_UPDATE,
                {
                    **base,
                    "library_status": new.get("library_status"),
                    "library_note": new.get("library_note"),
                },
            )
        return []

    def _system_notices(self, old, new, base):
        intents = []
        for label, key in NOTICE_FIELDS:
            before, after = old.get(key), new.get(key)
            if before != after:
                intents.extend(self._emit(
                    self.config.operations_email,
                    SYSTEM_NOTICE,
                    {**base, "field": label, "old": before, "new": after},
                ))
        return intents

    def _academic_ready(self, new, base):
        if (
            new.get("library_status") != PENDING
            and new.get("bursar_status") != PENDING
            and new.get("academic_status") == PENDING
        ):
            return self._emit(
                self.config.academic_email,
                ACADEMIC_QUEUE,
                {
                    **base,
                    "library_status": new.get("library_status"),
                    "bursar_status": new.get("bursar_status"),
                },
            )
        return []

    def _academic_resolved(self, old, new, base):
        before, after = old.get("academic_status"), new.get("academic_status")
        if before == after:
            return []
        context = {**base, "academic_status": after, "academic_note": new.get("academic_note")}
        if after == AcademicStatus.COMPLETED:
            return self._emit(self.config.processor_email, READY_FOR_PROCESSING, context)
        if after == AcademicStatus.CORRECTIONS_REQUIRED:
            return self._emit(self.config.processor_email, CORRECTIONS_NEEDED, context)
        return []
