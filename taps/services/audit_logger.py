"""
TAPS — Audit Diff Logger.

Computes field-level before/after deltas over an explicit field list and
appends immutable ``AuditLog`` rows.  Writes never raise to the caller: a
storage failure is rolled back, logged and reported as ``None`` so the
business flow that triggered the audit is unaffected.

Also exposes the read-only query surface consumed by reporting.

Usage:
    from taps.services.audit_logger import AuditDiffLogger

    audit = AuditDiffLogger()
    audit.record("REQUEST_UPDATED", old, new, actor_id="u-7", request_id=req.id)
    audit.record_event("USER_LOGIN", {"ip": "10.0.0.4"}, actor_id="u-7")
"""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Any, Iterable, Mapping

from sqlalchemy import func

from taps.models import db
from taps.models.audit import AuditLog, write_audit
from taps.models.request import REQUEST_AUDIT_FIELDS

logger = logging.getLogger(__name__)

_MISSING = object()


def compute_diff(
    old: Mapping[str, Any] | None,
    new: Mapping[str, Any] | None,
    fields: Iterable[str] = REQUEST_AUDIT_FIELDS,
) -> dict[str, dict[str, Any]]:
    """Return ``{field: {"old": ..., "new": ...}}`` for changed fields.

    Only keys present in *new* and listed in *fields* are considered.  A key
    missing from *old* counts as changed, with ``old`` reported as ``None``.
    """
    old = old or {}
    new = new or {}
    diff = {}
    for field in fields:
        if field not in new:
            continue
        before = old.get(field, _MISSING)
        after = new[field]
        if before is _MISSING or before != after:
            diff[field] = {
                "old": None if before is _MISSING else before,
                "new": after,
            }
    return diff


class AuditDiffLogger:
    """Append-only audit writer plus read-only query helpers."""

    def __init__(self, fields: Iterable[str] = REQUEST_AUDIT_FIELDS):
        self.fields = tuple(fields)

    # ── Write ─────────────────────────────────────────────────────────────

    def record(
        self,
        action: str,
        old_state: Mapping[str, Any] | None,
        new_state: Mapping[str, Any] | None,
        actor_id: str | None = None,
        request_id: str | None = None,
    ) -> AuditLog | None:
        """Write one entry carrying the diff between *old_state* and *new_state*.

        An empty diff still produces an entry.  Creation events pass
        ``old_state=None``.
        """
        payload = compute_diff(old_state, new_state, self.fields)
        return self._write(action, payload, actor_id, request_id)

    def record_event(
        self,
        action: str,
        details: Mapping[str, Any] | None = None,
        actor_id: str | None = None,
        request_id: str | None = None,
        timestamp: datetime | None = None,
    ) -> AuditLog | None:
        """Write one entry for an event without a field diff (login, role change)."""
        return self._write(action, dict(details or {}), actor_id, request_id, timestamp)

    def _write(self, action, payload, actor_id, request_id, timestamp=None) -> AuditLog | None:
        try:
            log = write_audit(
                action=action,
                actor_id=actor_id,
                request_id=request_id,
                details=payload,
                timestamp=timestamp,
            )
            db.session.commit()
            return log
        except Exception:
            db.session.rollback()
            logger.warning(
                "Audit write failed for %s; main flow unaffected", action,
                exc_info=True,
                extra={"request_id": request_id, "effect": "audit"},
            )
            return None

    # ── Query ─────────────────────────────────────────────────────────────

    @staticmethod
    def list_entries(
        *,
        request_id: str | None = None,
        actor_id: str | None = None,
        action: str | None = None,
        start: datetime | None = None,
        end: datetime | None = None,
        page: int = 1,
        per_page: int = 50,
    ) -> tuple[list[AuditLog], int]:
        """Filter audit entries, newest first.

        ``action`` matches as a substring so ``REMINDER`` returns every
        reminder entry.  Returns ``(items, total)``.
        """
        q = AuditLog.query
        if request_id:
            q = q.filter(AuditLog.request_id == request_id)
        if actor_id:
            q = q.filter(AuditLog.actor_id == actor_id)
        if action:
            q = q.filter(AuditLog.action.contains(action))
        if start:
            q = q.filter(AuditLog.timestamp >= start)
        if end:
            q = q.filter(AuditLog.timestamp <= end)
        total = q.count()
        page = max(page, 1)
        items = (
            q.order_by(AuditLog.timestamp.desc(), AuditLog.id.desc())
            .offset((page - 1) * per_page)
            .limit(per_page)
            .all()
        )
        return items, total

    @staticmethod
    def entries_for_request(request_id: str) -> list[AuditLog]:
        """Full trail for one request, newest first."""
        return (
            AuditLog.query
            .filter(AuditLog.request_id == request_id)
            .order_by(AuditLog.timestamp.desc(), AuditLog.id.desc())
            .all()
        )

    @staticmethod
    def action_counts(start: datetime | None = None, end: datetime | None = None) -> dict[str, int]:
        """Number of entries per action in the optional time window."""
        q = db.session.query(AuditLog.action, func.count(AuditLog.id))
        if start:
            q = q.filter(AuditLog.timestamp >= start)
        if end:
            q = q.filter(AuditLog.timestamp <= end)
        return {action: count for action, count in q.group_by(AuditLog.action).all()}
