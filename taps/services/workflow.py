"""
TAPS — Workflow Coordinator.

Applies a role-scoped mutation to a transcript request:

    load → validate (one snapshot) → apply → commit
         → (1) audit  (2) SLA timers  (3) notification rules + delivery

Validation failures raise a ``WorkflowError`` subclass before anything is
written.  The three downstream effects run after the commit; each catches and
logs its own failure so the caller always gets the updated record back.

Usage:
    from taps.services.workflow import apply_workflow_mutation

    req = apply_workflow_mutation(
        request_id,
        role="LIBRARY",
        changes={"library_status": "Hold", "library_note": "Overdue books"},
        actor_id="u-17",
    )
"""

from __future__ import annotations

import logging
from datetime import UTC, datetime
from enum import StrEnum
from typing import Any, Callable, Mapping

from flask import current_app
from sqlalchemy.exc import IntegrityError

from taps.config import NotificationConfig, SlaConfig
from taps.core.exceptions import (
    ConflictingTransitionError,
    ForbiddenError,
    NotFoundError,
    ValidationFailedError,
    WorkflowError,
)
from taps.models import db
from taps.models.request import (
    SUBJECT_FIELDS,
    TERMINAL_STATUSES,
    TRACKS,
    TRACKS_BY_STATUS_FIELD,
    WORKFLOW_FIELDS,
    Request,
    RequestStatus,
)
from taps.services.audit_logger import AuditDiffLogger
from taps.services.code_generator import generate_request_code
from taps.services.notification_delivery import LoggingMailSender, MailSender, deliver_intents
from taps.services.notification_rules import NotificationRuleDispatcher
from taps.services.sla_tracker import SlaTracker, as_utc

logger = logging.getLogger(__name__)

MAIL_SENDER_EXTENSION = "taps_mail_sender"
CODE_RETRIES = 3


def _utcnow() -> datetime:
    return datetime.now(UTC)


# ═════════════════════════════════════════════════════════════════════════════
# Role allow-list
# ═════════════════════════════════════════════════════════════════════════════

class Role(StrEnum):
    LIBRARY = "LIBRARY"
    BURSAR = "BURSAR"
    ACADEMIC = "ACADEMIC"
    VERIFIER = "VERIFIER"
    PROCESSOR = "PROCESSOR"
    ADMIN = "ADMIN"
    STUDENT = "STUDENT"


ROLE_FIELD_ALLOWLIST: dict[str, frozenset[str]] = {
    Role.LIBRARY: frozenset({"library_status", "library_note"}),
    Role.BURSAR: frozenset({"bursar_status", "bursar_note"}),
    Role.ACADEMIC: frozenset({"academic_status", "academic_note"}),
    Role.VERIFIER: frozenset({"verifier_notes", "status"}),
    Role.PROCESSOR: frozenset({"processor_notes", "status"}),
    Role.ADMIN: frozenset(SUBJECT_FIELDS + WORKFLOW_FIELDS),
    Role.STUDENT: frozenset(),
}

REQUIRED_SUBJECT_FIELDS = ("student_id", "student_email", "program")


def allowed_fields(role: str) -> frozenset[str]:
    """Fields *role* may set.  Unknown roles may set nothing."""
    return ROLE_FIELD_ALLOWLIST.get(role, frozenset())


def _has_text(value: Any) -> bool:
    return isinstance(value, str) and bool(value.strip())


def blocking_tracks(state: Mapping[str, Any]) -> dict[str, str]:
    """``{track name: value}`` for every track currently in a blocking value."""
    return {
        track.name: state.get(track.status_field)
        for track in TRACKS
        if track.is_blocking(state.get(track.status_field))
    }


# ═════════════════════════════════════════════════════════════════════════════
# Coordinator
# ═════════════════════════════════════════════════════════════════════════════

class WorkflowCoordinator:
    """Owns the mutate-then-notify sequence for transcript requests."""

    def __init__(
        self,
        audit: AuditDiffLogger | None = None,
        sla: SlaTracker | None = None,
        dispatcher: NotificationRuleDispatcher | None = None,
        sender: MailSender | None = None,
        clock: Callable[[], datetime] | None = None,
    ):
        self.audit = audit or AuditDiffLogger()
        self.sla = sla or SlaTracker()
        self.dispatcher = dispatcher or NotificationRuleDispatcher()
        self.sender = sender or LoggingMailSender()
        self.clock = clock or _utcnow

    # ── Create ────────────────────────────────────────────────────────────

    def create(
        self,
        *,
        student_id: str,
        student_email: str,
        program: str,
        student_name: str | None = None,
        submitted_at: datetime | None = None,
        actor_id: str | None = None,
    ) -> Request:
        """Persist a new request with every track PENDING, then run effects."""
        subject = {
            "student_id": student_id,
            "student_email": student_email,
            "program": program,
        }
        missing = [name for name, value in subject.items() if not _has_text(value)]
        if missing:
            raise ValidationFailedError(
                "Missing required request fields",
                details={name: "required" for name in missing},
            )

        now = self.clock()
        submitted_at = as_utc(submitted_at) if submitted_at else now
        request = None
        for attempt in range(CODE_RETRIES):
            request = Request(
                request_code=generate_request_code(submitted_at, offset=attempt),
                student_id=student_id.strip(),
                student_email=student_email.strip(),
                student_name=student_name,
                program=program.strip(),
                submitted_at=submitted_at,
                status=RequestStatus.PENDING.value,
                created_at=now,
                updated_at=now,
            )
            db.session.add(request)
            try:
                db.session.commit()
                break
            except IntegrityError:
                db.session.rollback()
                if attempt == CODE_RETRIES - 1:
                    raise
                logger.info("Request code collision, retrying (attempt %d)", attempt + 1)

        new_state = request.snapshot()
        logger.info(
            "Request created",
            extra={"request_id": new_state["id"], "request_code": new_state["request_code"]},
        )
        self._run_effects("REQUEST_CREATED", None, new_state, actor_id, now)
        return request

    # ── Apply ─────────────────────────────────────────────────────────────

    def apply(
        self,
        request_id: str,
        role: str,
        changes: Mapping[str, Any],
        actor_id: str | None = None,
    ) -> Request:
        """Apply *changes* on behalf of *role* and return the updated request.

        Raises:
            NotFoundError, ForbiddenError, ValidationFailedError,
            ConflictingTransitionError
        """
        request = db.session.get(Request, request_id)
        if request is None:
            raise NotFoundError(resource="Request", resource_id=request_id)

        old_state = request.snapshot()
        previous = as_utc(request.updated_at)
        changes = dict(changes or {})
        try:
            self._validate(old_state, role, changes)
        except WorkflowError:
            db.session.rollback()
            raise

        for field, value in changes.items():
            setattr(request, field, value)

        now = self.clock()
        request.updated_at = max(now, previous) if previous else now
        new_state = request.snapshot()

        try:
            db.session.commit()
        except Exception:
            db.session.rollback()
            logger.error(
                "Request update failed", exc_info=True,
                extra={"request_id": request_id, "role": role},
            )
            raise

        logger.info(
            "Request updated by %s: %s", role, sorted(changes),
            extra={"request_id": request_id, "request_code": new_state["request_code"], "role": role},
        )
        self._run_effects("REQUEST_UPDATED", old_state, new_state, actor_id, now)
        return request

    # ── Validation ────────────────────────────────────────────────────────

    def _validate(self, current: Mapping[str, Any], role: str, changes: dict) -> None:
        forbidden = set(changes) - allowed_fields(role)
        if forbidden:
            raise ForbiddenError(role=role, fields=forbidden)

        if not changes:
            raise ValidationFailedError("No changes supplied")

        if current.get("status") in TERMINAL_STATUSES and role != Role.ADMIN:
            raise ConflictingTransitionError(
                f"Request is {current.get('status')}; only an administrator may change it"
            )

        errors = {}
        status = changes.get("status")
        if "status" in changes and (
            not isinstance(status, str) or status not in {s.value for s in RequestStatus}
        ):
            errors["status"] = f"unknown value {changes['status']!r}"

        for field, value in changes.items():
            track = TRACKS_BY_STATUS_FIELD.get(field)
            if track is None:
                continue
            if not track.is_valid(value):
                errors[field] = f"unknown {track.name} value {value!r}"
            elif track.is_blocking(value) and not _has_text(changes.get(track.note_field)):
                errors[track.note_field] = f"a note is required when {track.name} is {value}"

        for field in REQUIRED_SUBJECT_FIELDS:
            if field in changes and not _has_text(changes[field]):
                errors[field] = "required"
        if "submitted_at" in changes:
            value = changes["submitted_at"]
            if isinstance(value, str):
                try:
                    changes["submitted_at"] = datetime.fromisoformat(value)
                except ValueError:
                    errors["submitted_at"] = "invalid datetime"
            elif not isinstance(value, datetime):
                errors["submitted_at"] = "invalid datetime"

        if errors:
            raise ValidationFailedError("Invalid request update", details=errors)

        merged = {**current, **changes}
        if merged.get("status") == RequestStatus.APPROVED:
            blocked = blocking_tracks(merged)
            if blocked:
                raise ConflictingTransitionError(
                    "Request cannot be APPROVED while a department track is blocking",
                    blocking=blocked,
                )

    # ── Downstream effects ────────────────────────────────────────────────

    def _run_effects(self, action, old_state, new_state, actor_id, now) -> None:
        request_id = new_state["id"]
        self._effect("audit", request_id, self.audit.record, action, old_state, new_state, actor_id, request_id)
        self._effect("sla", request_id, self.sla.on_transition, request_id, old_state, new_state, now)
        self._effect("notify", request_id, self._notify, old_state, new_state)

    def _effect(self, name: str, request_id: str, fn, *args) -> None:
        try:
            fn(*args)
        except Exception:
            db.session.rollback()
            logger.warning(
                "%s effect failed; mutation kept", name,
                exc_info=True, extra={"request_id": request_id, "effect": name},
            )

    def _notify(self, old_state, new_state) -> None:
        intents = self.dispatcher.evaluate(old_state, new_state)
        if not intents:
            return
        report = deliver_intents(intents, self.sender)
        if report.failures:
            logger.warning(
                "%d of %d notifications failed", report.failed, len(intents),
                extra={"request_id": new_state["id"], "effect": "notify"},
            )


# ═════════════════════════════════════════════════════════════════════════════
# Entry points
# ═════════════════════════════════════════════════════════════════════════════

def build_coordinator(app=None) -> WorkflowCoordinator:
    """Wire a coordinator from the Flask config of *app* (default: current app)."""
    app = app or current_app
    cfg = app.config
    return WorkflowCoordinator(
        audit=AuditDiffLogger(),
        sla=SlaTracker(SlaConfig.from_app_config(cfg)),
        dispatcher=NotificationRuleDispatcher(NotificationConfig.from_app_config(cfg)),
        sender=app.extensions.get(MAIL_SENDER_EXTENSION) or LoggingMailSender(),
    )


def create_request(**fields) -> Request:
    """Create a request with the current app's wiring."""
    return build_coordinator().create(**fields)


def apply_workflow_mutation(request_id: str, role: str, changes: Mapping[str, Any], actor_id: str | None = None) -> Request:
    """Inbound entry point used by the API layer."""
    return build_coordinator().apply(request_id, role, changes, actor_id=actor_id)
