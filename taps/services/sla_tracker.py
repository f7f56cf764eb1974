"""
TAPS — SLA Tracker.

One timer per (request, department) review period:

  - open:   idempotent; an existing PENDING/WARNING timer is returned as is
  - close:  MET or BREACHED depending on fractional elapsed hours
  - sweep:  periodic pass flagging WARNING (once) and BREACHED (once)

Every state change on an existing timer is a single conditional UPDATE
(``WHERE id = :id AND status IN (...)``), so a sweep racing a close can only
lose the race cleanly: the loser's UPDATE matches zero rows.

Usage:
    from taps.services.sla_tracker import SlaTracker

    tracker = SlaTracker(SlaConfig(target_hours=48, warning_ratio=0.75))
    tracker.open(request_id, "LIBRARY")
    tracker.close(request_id, "LIBRARY", completed_at=now)
    tracker.sweep(now)   # {"checked": 12, "updated": 3}
"""

from __future__ import annotations

import logging
from datetime import UTC, datetime
from typing import Any, Callable, Mapping

from taps.config import SlaConfig
from taps.models import db
from taps.models.request import (
    ACADEMIC_TRACK,
    BURSAR_TRACK,
    LIBRARY_TRACK,
    PENDING,
    TERMINAL_STATUSES,
    AcademicStatus,
)
from taps.models.sla import (
    DEPARTMENTS,
    OPEN_SLA_STATUSES,
    SLA_BREACHED,
    SLA_MET,
    SLA_PENDING,
    SLA_WARNING,
    SlaMetric,
)

logger = logging.getLogger(__name__)


def _utcnow() -> datetime:
    return datetime.now(UTC)


def as_utc(dt: datetime | None) -> datetime | None:
    """SQLite hands back naive datetimes; treat them as UTC."""
    if dt is None:
        return None
    if dt.tzinfo is None:
        return dt.replace(tzinfo=UTC)
    return dt.astimezone(UTC)


def hours_between(start: datetime, end: datetime) -> float:
    """Fractional hours from *start* to *end*; never rounded."""
    return (as_utc(end) - as_utc(start)).total_seconds() / 3600


def _academic_actionable(state: Mapping[str, Any]) -> bool:
    """Academic review starts once Library and Bursar have both answered."""
    if not state:
        return False
    return (
        state.get("library_status") != PENDING
        and state.get("bursar_status") != PENDING
        and ACADEMIC_TRACK.is_open(state.get("academic_status"))
    )


class SlaTracker:
    """Opens, closes and sweeps SLA timers."""

    def __init__(self, config: SlaConfig | None = None, clock: Callable[[], datetime] | None = None):
        self.config = config or SlaConfig()
        self.clock = clock or _utcnow

    # ── Lookup ────────────────────────────────────────────────────────────

    @staticmethod
    def find_open(request_id: str, department: str) -> SlaMetric | None:
        return (
            SlaMetric.query
            .filter(
                SlaMetric.request_id == request_id,
                SlaMetric.department == department,
                SlaMetric.status.in_(OPEN_SLA_STATUSES),
            )
            .order_by(SlaMetric.start_time.desc())
            .first()
        )

    # ── Open / close ──────────────────────────────────────────────────────

    def open(
        self,
        request_id: str,
        department: str,
        target_hours: float | None = None,
        now: datetime | None = None,
    ) -> SlaMetric:
        """Start a timer unless one is already running for this pair."""
        if department not in DEPARTMENTS:
            raise ValueError(f"Unknown SLA department: {department}")

        existing = self.find_open(request_id, department)
        if existing:
            return existing

        metric = SlaMetric(
            request_id=request_id,
            department=department,
            target_hours=float(target_hours if target_hours is not None else self.config.target_hours),
            start_time=as_utc(now) if now else self.clock(),
            status=SLA_PENDING,
            warning_sent=False,
            breached=False,
        )
        db.session.add(metric)
        db.session.commit()
        logger.debug("SLA timer opened", extra={"request_id": request_id, "department": department})
        return metric

    def close(
        self,
        request_id: str,
        department: str,
        completed_at: datetime | None = None,
    ) -> SlaMetric | None:
        """Stop the running timer for this pair.  No-op when none is running."""
        metric = self.find_open(request_id, department)
        if not metric:
            return None

        completed_at = as_utc(completed_at) if completed_at else self.clock()
        actual_hours = hours_between(metric.start_time, completed_at)
        breached = actual_hours > metric.target_hours

        rows = (
            SlaMetric.query
            .filter(
                SlaMetric.id == metric.id,
                SlaMetric.status.in_(OPEN_SLA_STATUSES),
            )
            .update(
                {
                    "status": SLA_BREACHED if breached else SLA_MET,
                    "breached": breached,
                    "actual_hours": actual_hours,
                    "completed_at": completed_at,
                    "updated_at": completed_at,
                },
                synchronize_session=False,
            )
        )
        db.session.commit()

        if not rows:
            logger.info(
                "SLA timer already closed by a concurrent update",
                extra={"request_id": request_id, "department": department},
            )
            return None
        return db.session.get(SlaMetric, metric.id)

    def close_all(self, request_id: str, completed_at: datetime | None = None) -> int:
        """Close every running timer of a request.  Returns how many closed."""
        departments = [
            dept for (dept,) in (
                db.session.query(SlaMetric.department)
                .filter(
                    SlaMetric.request_id == request_id,
                    SlaMetric.status.in_(OPEN_SLA_STATUSES),
                )
                .distinct()
                .all()
            )
        ]
        closed = 0
        for dept in departments:
            if self.close(request_id, dept, completed_at):
                closed += 1
        return closed

    # ── Workflow hook ─────────────────────────────────────────────────────

    def on_transition(
        self,
        request_id: str,
        old: Mapping[str, Any] | None,
        new: Mapping[str, Any],
        now: datetime | None = None,
    ) -> None:
        """Translate a request state change into timer opens/closes.

        *old* is ``None`` for a freshly created request.
        """
        now = as_utc(now) if now else self.clock()
        old = old or {}

        for track in (LIBRARY_TRACK, BURSAR_TRACK):
            was_open = track.status_field in old and track.is_open(old[track.status_field])
            is_open = track.is_open(new.get(track.status_field))
            if is_open and not was_open:
                self.open(request_id, track.department, now=now)
            elif was_open and not is_open:
                self.close(request_id, track.department, completed_at=now)

        old_academic = old.get(ACADEMIC_TRACK.status_field)
        new_academic = new.get(ACADEMIC_TRACK.status_field)
        if (
            old_academic is not None
            and ACADEMIC_TRACK.is_open(old_academic)
            and not ACADEMIC_TRACK.is_open(new_academic)
        ):
            self.close(request_id, ACADEMIC_TRACK.department, completed_at=now)
        elif _academic_actionable(new) and not _academic_actionable(old):
            self.open(request_id, ACADEMIC_TRACK.department, now=now)

        if new_academic == AcademicStatus.COMPLETED and old_academic != AcademicStatus.COMPLETED:
            self.open(request_id, "PROCESSOR", now=now)

        if new.get("status") in TERMINAL_STATUSES and old.get("status") not in TERMINAL_STATUSES:
            self.close_all(request_id, completed_at=now)

    # ── Sweep ─────────────────────────────────────────────────────────────

    def sweep(self, now: datetime | None = None) -> dict[str, int]:
        """Flag PENDING timers that crossed the warning ratio or the target.

        A timer warns at most once (``warning_sent``) and breaches at most
        once (``breached``); a WARNING timer is left for ``close`` to settle.
        A failure on one timer is logged and the sweep moves on.

        Returns:
            {"checked": int, "updated": int}
        """
        now = as_utc(now) if now else self.clock()
        ratio = self.config.warning_ratio

        metric_ids = [
            mid for (mid,) in (
                db.session.query(SlaMetric.id)
                .filter(SlaMetric.status == SLA_PENDING)
                .order_by(SlaMetric.id)
                .all()
            )
        ]

        updated = 0
        for metric_id in metric_ids:
            try:
                metric = db.session.get(SlaMetric, metric_id)
                if metric is None or metric.status != SLA_PENDING:
                    continue
                elapsed = hours_between(metric.start_time, now)
                target = metric.target_hours

                if (
                    not metric.warning_sent
                    and ratio * target <= elapsed < target
                ):
                    rows = (
                        SlaMetric.query
                        .filter(
                            SlaMetric.id == metric_id,
                            SlaMetric.status == SLA_PENDING,
                            SlaMetric.warning_sent.is_(False),
                        )
                        .update(
                            {"status": SLA_WARNING, "warning_sent": True, "updated_at": now},
                            synchronize_session=False,
                        )
                    )
                elif elapsed > target and not metric.breached:
                    rows = (
                        SlaMetric.query
                        .filter(
                            SlaMetric.id == metric_id,
                            SlaMetric.status == SLA_PENDING,
                            SlaMetric.breached.is_(False),
                        )
                        .update(
                            {
                                "status": SLA_BREACHED,
                                "breached": True,
                                "actual_hours": elapsed,
                                "updated_at": now,
                            },
                            synchronize_session=False,
                        )
                    )
                else:
                    continue

                db.session.commit()
                updated += rows
            except Exception:
                db.session.rollback()
                logger.error(
                    "SLA sweep failed for metric %s", metric_id,
                    exc_info=True, extra={"effect": "sla_sweep"},
                )

        result = {"checked": len(metric_ids), "updated": updated}
        logger.info("SLA sweep: %s", result)
        return result

    # ── Reporting ─────────────────────────────────────────────────────────

    def compliance_report(self, now: datetime | None = None) -> dict:
        """Per-department compliance over closed timers plus running-timer risk."""
        now = as_utc(now) if now else self.clock()
        ratio = self.config.warning_ratio

        closed = SlaMetric.query.filter(SlaMetric.status.in_((SLA_MET, SLA_BREACHED))).all()
        by_department = {}
        for dept in DEPARTMENTS:
            rows = [m for m in closed if m.department == dept]
            met = sum(1 for m in rows if m.status == SLA_MET)
            total = len(rows)
            by_department[dept] = {
                "total": total,
                "met": met,
                "breached": total - met,
                "compliance_rate": round(met / total * 100, 2) if total else 0.0,
                "avg_processing_hours": (
                    sum(m.actual_hours or 0 for m in rows) / total if total else 0.0
                ),
            }

        running = SlaMetric.query.filter(SlaMetric.status.in_(OPEN_SLA_STATUSES)).all()
        approaching = 0
        overdue = 0
        for m in running:
            elapsed = hours_between(m.start_time, now)
            if elapsed > m.target_hours:
                overdue += 1
            elif elapsed >= ratio * m.target_hours:
                approaching += 1

        return {
            "by_department": by_department,
            "pending": {
                "total": len(running),
                "approaching_breach": approaching,
                "breached": overdue,
            },
        }
