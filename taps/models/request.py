"""
TAPS — Transcript Automation and Processing Service
Request domain model.

Models:
    - Request: one transcript request moving through the Library, Bursar and
      Academic review tracks towards an overall completion state.

The department vocabularies live here as closed enums together with the
static track table used by the workflow, SLA and notification services.
"""

import uuid
from dataclasses import dataclass
from datetime import UTC, datetime
from enum import StrEnum

from taps.models import db


def _uuid() -> str:
    return str(uuid.uuid4())


def _as_utc(value):
    """SQLite returns naive datetimes; treat them as UTC."""
    if isinstance(value, datetime):
        return value.replace(tzinfo=UTC) if value.tzinfo is None else value.astimezone(UTC)
    return value


# ── Vocabularies ─────────────────────────────────────────────────────────────

PENDING = "PENDING"


class RequestStatus(StrEnum):
    NEW = "NEW"
    PENDING = "PENDING"
    IN_REVIEW = "IN_REVIEW"
    APPROVED = "APPROVED"
    REJECTED = "REJECTED"
    COMPLETED = "COMPLETED"
    CANCELLED = "CANCELLED"


TERMINAL_STATUSES = frozenset({
    RequestStatus.REJECTED.value,
    RequestStatus.CANCELLED.value,
    RequestStatus.COMPLETED.value,
})


class LibraryStatus(StrEnum):
    PENDING = "PENDING"
    CLEAR = "Clear"
    HOLD = "Hold"
    ISSUE = "Issue"


class BursarStatus(StrEnum):
    PENDING = "PENDING"
    PAID = "Paid"
    WAIVED = "Waived"
    OWING = "Owing"
    HOLD = "Hold"


class AcademicStatus(StrEnum):
    PENDING = "PENDING"
    GOOD_STANDING = "Good Standing"
    COMPLETED = "COMPLETED"
    CORRECTIONS_REQUIRED = "CORRECTIONS_REQUIRED"
    OUTSTANDING = "Outstanding"
    HOLD = "Hold"


# ── Department tracks ────────────────────────────────────────────────────────

@dataclass(frozen=True)
class Track:
    """Static description of one department review lane."""

    name: str
    department: str
    status_field: str
    note_field: str
    vocabulary: type[StrEnum]
    blocking: frozenset

    def is_valid(self, value) -> bool:
        return isinstance(value, str) and value in {member.value for member in self.vocabulary}

    def is_blocking(self, value) -> bool:
        return isinstance(value, str) and value in self.blocking

    def is_open(self, value) -> bool:
        """Pending or blocked: the department still owes an answer."""
        return value == PENDING or self.is_blocking(value)


LIBRARY_TRACK = Track(
    name="library",
    department="LIBRARY",
    status_field="library_status",
    note_field="library_note",
    vocabulary=LibraryStatus,
    blocking=frozenset({LibraryStatus.HOLD.value, LibraryStatus.ISSUE.value}),
)
BURSAR_TRACK = Track(
    name="bursar",
    department="BURSAR",
    status_field="bursar_status",
    note_field="bursar_note",
    vocabulary=BursarStatus,
    blocking=frozenset({BursarStatus.OWING.value, BursarStatus.HOLD.value}),
)
ACADEMIC_TRACK = Track(
    name="academic",
    department="ACADEMIC",
    status_field="academic_status",
    note_field="academic_note",
    vocabulary=AcademicStatus,
    blocking=frozenset({AcademicStatus.OUTSTANDING.value, AcademicStatus.HOLD.value}),
)

TRACKS = (LIBRARY_TRACK, BURSAR_TRACK, ACADEMIC_TRACK)
TRACKS_BY_STATUS_FIELD = {t.status_field: t for t in TRACKS}
TRACKS_BY_NOTE_FIELD = {t.note_field: t for t in TRACKS}

# Subject attributes: fixed at creation, ADMIN override only.
SUBJECT_FIELDS = ("student_id", "student_email", "student_name", "program", "submitted_at")

WORKFLOW_FIELDS = (
    "status",
    "library_status", "library_note",
    "bursar_status", "bursar_note",
    "academic_status", "academic_note",
    "verifier_notes", "processor_notes",
)

# Explicit field list for audit diffs and state snapshots.
REQUEST_AUDIT_FIELDS = SUBJECT_FIELDS + WORKFLOW_FIELDS


class Request(db.Model):
    """
    Transcript request record.

    Holds only current state; previous values are recoverable solely from
    the audit trail.  ``updated_at`` is maintained by the workflow service
    and never accepted from callers.
    """

    __tablename__ = "requests"
    __table_args__ = (
        db.Index("idx_request_status", "status"),
        db.Index("idx_request_student", "student_id"),
        db.Index("idx_request_tracks", "library_status", "bursar_status", "academic_status"),
    )

    id = db.Column(db.String(36), primary_key=True, default=_uuid)
    request_code = db.Column(
        db.String(32), nullable=False, unique=True,
        comment="Public-facing code, e.g. TR-20260301-0007",
    )

    # Subject
    student_id = db.Column(db.String(64), nullable=False)
    student_email = db.Column(db.String(255), nullable=False)
    student_name = db.Column(db.String(255), nullable=True)
    program = db.Column(db.String(255), nullable=False)
    submitted_at = db.Column(
        db.DateTime(timezone=True), nullable=False,
        default=lambda: datetime.now(UTC),
    )

    # Overall status
    status = db.Column(db.String(20), nullable=False, default=RequestStatus.PENDING.value)

    # Department tracks
    library_status = db.Column(db.String(30), nullable=False, default=PENDING)
    library_note = db.Column(db.Text, nullable=True)
    bursar_status = db.Column(db.String(30), nullable=False, default=PENDING)
    bursar_note = db.Column(db.Text, nullable=True)
    academic_status = db.Column(db.String(30), nullable=False, default=PENDING)
    academic_note = db.Column(db.Text, nullable=True)

    # Role-scoped notes
    verifier_notes = db.Column(db.Text, nullable=True)
    processor_notes = db.Column(db.Text, nullable=True)

    created_at = db.Column(
        db.DateTime(timezone=True), nullable=False,
        default=lambda: datetime.now(UTC),
    )
    updated_at = db.Column(
        db.DateTime(timezone=True), nullable=False,
        default=lambda: datetime.now(UTC),
    )

    sla_metrics = db.relationship(
        "SlaMetric", backref="request", lazy="dynamic",
        cascade="all, delete-orphan",
    )

    # ── Helpers ──────────────────────────────────────────────────────────

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    def snapshot(self) -> dict:
        """Detached copy of every audited field plus the record identity.

        Datetimes are normalised to UTC.
        """
        state = {field: _as_utc(getattr(self, field)) for field in REQUEST_AUDIT_FIELDS}
        state["id"] = self.id
        state["request_code"] = self.request_code
        return state

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "request_code": self.request_code,
            "student_id": self.student_id,
            "student_email": self.student_email,
            "student_name": self.student_name,
            "program": self.program,
            "submitted_at": self.submitted_at.isoformat() if self.submitted_at else None,
            "status": self.status,
            "library_status": self.library_status,
            "library_note": self.library_note,
            "bursar_status": self.bursar_status,
            "bursar_note": self.bursar_note,
            "academic_status": self.academic_status,
            "academic_note": self.academic_note,
            "verifier_notes": self.verifier_notes,
            "processor_notes": self.processor_notes,
            "created_at": self.created_at.isoformat() if self.created_at else None,
            "updated_at": self.updated_at.isoformat() if self.updated_at else None,
        }

    def __repr__(self):
        return f"<Request {self.request_code}: {self.status}>"
