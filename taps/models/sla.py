"""
TAPS — Transcript Automation and Processing Service
SLA domain model.

Models:
    - SlaMetric: one timer per (request, department) review period.
"""

from datetime import UTC, datetime

from taps.models import db


# ── Constants ────────────────────────────────────────────────────────────────

DEPARTMENTS = ("LIBRARY", "BURSAR", "ACADEMIC", "PROCESSOR")

SLA_PENDING = "PENDING"
SLA_WARNING = "WARNING"
SLA_BREACHED = "BREACHED"
SLA_MET = "MET"

SLA_STATUSES = {SLA_PENDING, SLA_WARNING, SLA_BREACHED, SLA_MET}
OPEN_SLA_STATUSES = (SLA_PENDING, SLA_WARNING)

DEFAULT_TARGET_HOURS = 48.0


class SlaMetric(db.Model):
    """
    Review timer for a single department on a single request.

    Business rules:
    - At most one PENDING/WARNING row per (request_id, department).
    - ``warning_sent`` and ``breached`` only ever flip False → True; the sweep
      relies on them to fire each transition once.
    - ``actual_hours`` is fractional and set on close, or on breach by sweep.
    """

    __tablename__ = "sla_metrics"
    __table_args__ = (
        db.Index("idx_sla_request_dept_status", "request_id", "department", "status"),
        db.Index("idx_sla_status", "status"),
    )

    id = db.Column(db.Integer, primary_key=True)
    request_id = db.Column(
        db.String(36),
        db.ForeignKey("requests.id", ondelete="CASCADE"),
        nullable=False,
    )
    department = db.Column(db.String(20), nullable=False, comment="LIBRARY | BURSAR | ACADEMIC | PROCESSOR")
    target_hours = db.Column(db.Float, nullable=False, default=DEFAULT_TARGET_HOURS)
    start_time = db.Column(db.DateTime(timezone=True), nullable=False)
    completed_at = db.Column(db.DateTime(timezone=True), nullable=True)
    actual_hours = db.Column(db.Float, nullable=True)

    status = db.Column(db.String(20), nullable=False, default=SLA_PENDING)
    warning_sent = db.Column(db.Boolean, nullable=False, default=False)
    breached = db.Column(db.Boolean, nullable=False, default=False)

    created_at = db.Column(db.DateTime(timezone=True), default=lambda: datetime.now(UTC))
    updated_at = db.Column(db.DateTime(timezone=True), default=lambda: datetime.now(UTC),
                           onupdate=lambda: datetime.now(UTC))

    @property
    def is_open(self) -> bool:
        return self.status in OPEN_SLA_STATUSES

    def to_dict(self):
        return {
            "id": self.id,
            "request_id": self.request_id,
            "department": self.department,
            "target_hours": self.target_hours,
            "start_time": self.start_time.isoformat() if self.start_time else None,
            "completed_at": self.completed_at.isoformat() if self.completed_at else None,
            "actual_hours": self.actual_hours,
            "status": self.status,
            "warning_sent": self.warning_sent,
            "breached": self.breached,
        }

    def __repr__(self):
        return f"<SlaMetric {self.id}: {self.department} {self.status}>"
