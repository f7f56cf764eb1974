"""
TAPS — Transcript Automation and Processing Service
Audit domain model.

Models:
    - AuditLog: immutable, append-only audit trail for request and user events.
"""

import json
from datetime import UTC, datetime

from taps.models import db


# ── Constants ────────────────────────────────────────────────────────────────

AUDIT_ACTIONS = {
    # Request lifecycle
    "REQUEST_CREATED",
    "REQUEST_UPDATED",
    # Users (written by the auth layer)
    "USER_ROLE_UPDATED",
    "USER_LOGIN",
    "USER_LOGOUT",
    # Reminder scan
    "LIBRARY_REMINDER_SENT",
    "BURSAR_REMINDER_SENT",
    "ACADEMIC_REMINDER_SENT",
}


class AuditLog(db.Model):
    """
    Immutable audit trail entry.

    One row per action.  ``details_json`` carries ``{field: {old, new}}``
    for request mutations and a free-form descriptive map for events that
    have no field diff (login, role change, reminders).
    """

    __tablename__ = "audit_logs"
    __table_args__ = (
        db.Index("idx_audit_request_ts", "request_id", "timestamp"),
        db.Index("idx_audit_actor", "actor_id"),
        db.Index("idx_audit_action", "action"),
        db.Index("idx_audit_ts", "timestamp"),
    )

    id = db.Column(db.Integer, primary_key=True)
    request_id = db.Column(
        db.String(36),
        db.ForeignKey("requests.id", ondelete="SET NULL"),
        nullable=True,
        comment="Affected request; NULL for events not scoped to a request",
    )
    actor_id = db.Column(
        db.String(150), nullable=True,
        comment="Acting user id from the auth layer; NULL for system actions",
    )
    action = db.Column(
        db.String(60), nullable=False,
        comment="REQUEST_CREATED | REQUEST_UPDATED | USER_ROLE_UPDATED | …",
    )
    details_json = db.Column(
        db.Text, default="{}",
        comment="JSON: {field: {old, new}} for mutations, descriptive map otherwise",
    )
    timestamp = db.Column(
        db.DateTime(timezone=True), nullable=False,
        default=lambda: datetime.now(UTC),
    )

    # ── Helpers ──────────────────────────────────────────────────────────

    @property
    def details(self) -> dict:
        """Deserialise *details_json* to a Python dict."""
        try:
            return json.loads(self.details_json or "{}")
        except (json.JSONDecodeError, TypeError):
            return {}

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "request_id": self.request_id,
            "actor_id": self.actor_id,
            "action": self.action,
            "details": self.details,
            "timestamp": self.timestamp.isoformat() if self.timestamp else None,
        }

    def __repr__(self):
        return f"<AuditLog {self.id}: {self.action} on request/{self.request_id}>"


# ── Convenience writer ───────────────────────────────────────────────────────

def write_audit(
    *,
    action: str,
    actor_id: str | None = None,
    request_id: str | None = None,
    details: dict | None = None,
    timestamp: datetime | None = None,
) -> AuditLog:
    """
    Append a single audit row.  Uses ``flush`` so callers keep
    transaction control.  ``timestamp`` defaults to now; scheduled scans
    pass their own clock.

    Returns the (flushed) AuditLog instance.
    """
    log = AuditLog(
        request_id=request_id,
        actor_id=str(actor_id) if actor_id is not None else None,
        action=action,
        details_json=json.dumps(details or {}, default=str),
        timestamp=timestamp or datetime.now(UTC),
    )
    db.session.add(log)
    db.session.flush()
    return log
