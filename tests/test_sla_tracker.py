"""
Tests — SLA Tracker.

Covers:
    1. open / close (idempotency, MET vs BREACHED, fractional hours)
    2. sweep (warning once, breach once, per-metric isolation)
    3. on_transition mapping of request state changes to timers
    4. compliance report
"""

from datetime import timedelta

import pytest

from taps.config import SlaConfig
from taps.models import db
from taps.models.sla import SLA_BREACHED, SLA_MET, SLA_PENDING, SLA_WARNING, SlaMetric
from taps.services import sla_tracker as sla_module
from taps.services.sla_tracker import SlaTracker, as_utc, hours_between


def _metrics(request_id, department=None):
    q = SlaMetric.query.filter_by(request_id=request_id)
    if department:
        q = q.filter_by(department=department)
    return q.order_by(SlaMetric.id).all()


# ═══════════════════════════════════════════════════════════════════════════
#  open / close
# ═══════════════════════════════════════════════════════════════════════════

class TestOpenClose:

    def test_open_creates_pending_timer(self, sla_tracker, insert_request, clock):
        req = insert_request()
        metric = sla_tracker.open(req.id, "LIBRARY")
        assert metric.status == SLA_PENDING
        assert metric.target_hours == 48.0
        assert as_utc(metric.start_time) == clock.now
        assert metric.warning_sent is False
        assert metric.breached is False

    def test_open_twice_returns_existing(self, sla_tracker, insert_request, clock):
        req = insert_request()
        first = sla_tracker.open(req.id, "LIBRARY")
        clock.advance(hours=3)
        second = sla_tracker.open(req.id, "LIBRARY")
        assert second.id == first.id
        assert len(_metrics(req.id, "LIBRARY")) == 1

    def test_open_is_per_department(self, sla_tracker, insert_request):
        req = insert_request()
        sla_tracker.open(req.id, "LIBRARY")
        sla_tracker.open(req.id, "BURSAR")
        assert len(_metrics(req.id)) == 2

    def test_open_with_custom_target(self, sla_tracker, insert_request):
        req = insert_request()
        metric = sla_tracker.open(req.id, "ACADEMIC", target_hours=72)
        assert metric.target_hours == 72.0

    def test_open_unknown_department(self, sla_tracker, insert_request):
        req = insert_request()
        with pytest.raises(ValueError):
            sla_tracker.open(req.id, "CAFETERIA")

    def test_close_within_target_is_met(self, sla_tracker, insert_request, clock):
        req = insert_request()
        sla_tracker.open(req.id, "LIBRARY")
        closed = sla_tracker.close(req.id, "LIBRARY", completed_at=clock.now + timedelta(hours=10))
        assert closed.status == SLA_MET
        assert closed.breached is False
        assert closed.actual_hours == pytest.approx(10.0)
        assert as_utc(closed.completed_at) == clock.now + timedelta(hours=10)

    def test_close_exactly_on_target_is_met(self, sla_tracker, insert_request, clock):
        req = insert_request()
        sla_tracker.open(req.id, "LIBRARY")
        closed = sla_tracker.close(req.id, "LIBRARY", completed_at=clock.now + timedelta(hours=48))
        assert closed.status == SLA_MET

    def test_close_past_target_is_breached(self, sla_tracker, insert_request, clock):
        req = insert_request()
        sla_tracker.open(req.id, "BURSAR")
        closed = sla_tracker.close(
            req.id, "BURSAR", completed_at=clock.now + timedelta(hours=48, seconds=1),
        )
        assert closed.status == SLA_BREACHED
        assert closed.breached is True

    def test_fractional_hours_not_rounded(self, sla_tracker, insert_request, clock):
        req = insert_request()
        sla_tracker.open(req.id, "LIBRARY", target_hours=1)
        closed = sla_tracker.close(req.id, "LIBRARY", completed_at=clock.now + timedelta(seconds=3601))
        assert closed.status == SLA_BREACHED
        assert closed.actual_hours == pytest.approx(3601 / 3600)

    def test_close_defaults_to_clock(self, sla_tracker, insert_request, clock):
        req = insert_request()
        sla_tracker.open(req.id, "LIBRARY")
        clock.advance(hours=2, minutes=30)
        closed = sla_tracker.close(req.id, "LIBRARY")
        assert closed.actual_hours == pytest.approx(2.5)

    def test_close_without_open_timer_is_noop(self, sla_tracker, insert_request):
        req = insert_request()
        assert sla_tracker.close(req.id, "LIBRARY") is None
        assert _metrics(req.id) == []

    def test_reopen_after_close_creates_fresh_timer(self, sla_tracker, insert_request, clock):
        req = insert_request()
        first = sla_tracker.open(req.id, "LIBRARY")
        first_id = first.id
        sla_tracker.close(req.id, "LIBRARY", completed_at=clock.advance(hours=1))
        second = sla_tracker.open(req.id, "LIBRARY")
        assert second.id != first_id
        assert len(_metrics(req.id, "LIBRARY")) == 2

    def test_close_loses_race_cleanly(self, sla_tracker, insert_request, clock, monkeypatch):
        """A stale read of an already-closed timer does not overwrite it."""
        req = insert_request()
        metric = sla_tracker.open(req.id, "LIBRARY")
        sla_tracker.close(req.id, "LIBRARY", completed_at=clock.now + timedelta(hours=5))
        stale = db.session.get(SlaMetric, metric.id)

        monkeypatch.setattr(sla_tracker, "find_open", lambda *a, **kw: stale)
        assert sla_tracker.close(req.id, "LIBRARY", completed_at=clock.now + timedelta(hours=90)) is None

        db.session.expire_all()
        kept = db.session.get(SlaMetric, metric.id)
        assert kept.status == SLA_MET
        assert kept.actual_hours == pytest.approx(5.0)


# ═══════════════════════════════════════════════════════════════════════════
#  sweep
# ═══════════════════════════════════════════════════════════════════════════

class TestSweep:

    def test_below_warning_threshold(self, sla_tracker, insert_request, clock):
        req = insert_request()
        sla_tracker.open(req.id, "LIBRARY")
        result = sla_tracker.sweep(clock.now + timedelta(hours=10))
        assert result == {"checked": 1, "updated": 0}
        assert _metrics(req.id)[0].status == SLA_PENDING

    def test_warning_at_75_percent(self, sla_tracker, insert_request, clock):
        req = insert_request()
        sla_tracker.open(req.id, "LIBRARY")
        result = sla_tracker.sweep(clock.now + timedelta(hours=36))
        assert result == {"checked": 1, "updated": 1}
        metric = _metrics(req.id)[0]
        assert metric.status == SLA_WARNING
        assert metric.warning_sent is True
        assert metric.breached is False

    def test_warning_fires_once(self, sla_tracker, insert_request, clock):
        req = insert_request()
        sla_tracker.open(req.id, "LIBRARY")
        sla_tracker.sweep(clock.now + timedelta(hours=36))
        for hours in (37, 40, 47):
            result = sla_tracker.sweep(clock.now + timedelta(hours=hours))
            assert result["updated"] == 0
        metric = _metrics(req.id)[0]
        assert metric.status == SLA_WARNING
        assert metric.warning_sent is True

    def test_breach_past_target(self, sla_tracker, insert_request, clock):
        req = insert_request()
        sla_tracker.open(req.id, "BURSAR")
        result = sla_tracker.sweep(clock.now + timedelta(hours=49))
        assert result == {"checked": 1, "updated": 1}
        metric = _metrics(req.id)[0]
        assert metric.status == SLA_BREACHED
        assert metric.breached is True
        assert metric.actual_hours == pytest.approx(49.0)

    def test_breach_fires_once(self, sla_tracker, insert_request, clock):
        req = insert_request()
        sla_tracker.open(req.id, "BURSAR")
        sla_tracker.sweep(clock.now + timedelta(hours=49))
        result = sla_tracker.sweep(clock.now + timedelta(hours=60))
        assert result == {"checked": 0, "updated": 0}

    def test_exactly_on_target_neither_warns_nor_breaches(self, sla_tracker, insert_request, clock):
        req = insert_request()
        sla_tracker.open(req.id, "BURSAR")
        result = sla_tracker.sweep(clock.now + timedelta(hours=48))
        assert result["updated"] == 0

    def test_custom_warning_ratio(self, insert_request, clock):
        tracker = SlaTracker(SlaConfig(target_hours=10, warning_ratio=0.5), clock=clock)
        req = insert_request()
        tracker.open(req.id, "LIBRARY")
        assert tracker.sweep(clock.now + timedelta(hours=4))["updated"] == 0
        assert tracker.sweep(clock.now + timedelta(hours=5))["updated"] == 1

    def test_closed_timers_not_checked(self, sla_tracker, insert_request, clock):
        req = insert_request()
        sla_tracker.open(req.id, "LIBRARY")
        sla_tracker.close(req.id, "LIBRARY", completed_at=clock.now + timedelta(hours=1))
        assert sla_tracker.sweep(clock.now + timedelta(hours=100)) == {"checked": 0, "updated": 0}

    def test_close_after_breach_is_noop(self, sla_tracker, insert_request, clock):
        req = insert_request()
        sla_tracker.open(req.id, "LIBRARY")
        sla_tracker.sweep(clock.now + timedelta(hours=50))
        assert sla_tracker.close(req.id, "LIBRARY", completed_at=clock.now + timedelta(hours=51)) is None

    def test_failure_on_one_metric_does_not_abort(self, sla_tracker, insert_request, clock, monkeypatch):
        first = insert_request()
        second = insert_request()
        sla_tracker.open(first.id, "LIBRARY")
        sla_tracker.open(second.id, "LIBRARY")

        calls = {"n": 0}
        real = sla_module.hours_between

        def flaky(start, end):
            calls["n"] += 1
            if calls["n"] == 1:
                raise RuntimeError("boom")
            return real(start, end)

        monkeypatch.setattr(sla_module, "hours_between", flaky)
        result = sla_tracker.sweep(clock.now + timedelta(hours=49))
        assert result == {"checked": 2, "updated": 1}
        statuses = sorted(m.status for m in SlaMetric.query.all())
        assert statuses == [SLA_BREACHED, SLA_PENDING]


# ═══════════════════════════════════════════════════════════════════════════
#  on_transition
# ═══════════════════════════════════════════════════════════════════════════

def _state(**kw):
    state = {
        "status": "PENDING",
        "library_status": "PENDING",
        "bursar_status": "PENDING",
        "academic_status": "PENDING",
    }
    state.update(kw)
    return state


class TestOnTransition:

    def test_creation_opens_library_and_bursar(self, sla_tracker, insert_request):
        req = insert_request()
        sla_tracker.on_transition(req.id, None, _state())
        assert sorted(m.department for m in _metrics(req.id)) == ["BURSAR", "LIBRARY"]

    def test_library_resolution_closes_timer(self, sla_tracker, insert_request, clock):
        req = insert_request()
        sla_tracker.on_transition(req.id, None, _state())
        clock.advance(hours=4)
        sla_tracker.on_transition(req.id, _state(), _state(library_status="Clear"))
        lib = _metrics(req.id, "LIBRARY")[0]
        assert lib.status == SLA_MET
        assert lib.actual_hours == pytest.approx(4.0)
        assert _metrics(req.id, "BURSAR")[0].status == SLA_PENDING

    def test_pending_to_blocking_keeps_timer_running(self, sla_tracker, insert_request):
        req = insert_request()
        sla_tracker.on_transition(req.id, None, _state())
        sla_tracker.on_transition(req.id, _state(), _state(library_status="Hold"))
        lib = _metrics(req.id, "LIBRARY")
        assert len(lib) == 1
        assert lib[0].status == SLA_PENDING

    def test_cleared_to_blocking_reopens(self, sla_tracker, insert_request):
        req = insert_request()
        sla_tracker.on_transition(req.id, None, _state())
        sla_tracker.on_transition(req.id, _state(), _state(library_status="Clear"))
        sla_tracker.on_transition(
            req.id, _state(library_status="Clear"), _state(library_status="Issue"),
        )
        lib = _metrics(req.id, "LIBRARY")
        assert [m.status for m in lib] == [SLA_MET, SLA_PENDING]

    def test_academic_opens_once_both_clear(self, sla_tracker, insert_request):
        req = insert_request()
        sla_tracker.on_transition(req.id, None, _state())
        sla_tracker.on_transition(req.id, _state(), _state(library_status="Clear"))
        assert _metrics(req.id, "ACADEMIC") == []
        sla_tracker.on_transition(
            req.id,
            _state(library_status="Clear"),
            _state(library_status="Clear", bursar_status="Paid"),
        )
        academic = _metrics(req.id, "ACADEMIC")
        assert len(academic) == 1
        assert academic[0].status == SLA_PENDING

    def test_academic_completed_closes_and_opens_processor(self, sla_tracker, insert_request):
        req = insert_request()
        before = _state(library_status="Clear", bursar_status="Paid")
        sla_tracker.on_transition(req.id, _state(library_status="Clear"), before)
        sla_tracker.on_transition(req.id, before, {**before, "academic_status": "COMPLETED"})
        assert _metrics(req.id, "ACADEMIC")[0].status == SLA_MET
        assert _metrics(req.id, "PROCESSOR")[0].status == SLA_PENDING

    def test_terminal_status_closes_everything(self, sla_tracker, insert_request):
        req = insert_request()
        sla_tracker.on_transition(req.id, None, _state())
        sla_tracker.on_transition(req.id, _state(), _state(status="CANCELLED"))
        assert all(not m.is_open for m in _metrics(req.id))


# ═══════════════════════════════════════════════════════════════════════════
#  Reporting
# ═══════════════════════════════════════════════════════════════════════════

class TestComplianceReport:

    def test_report_counts(self, sla_tracker, insert_request, clock):
        a, b, c = insert_request(), insert_request(), insert_request()
        for req in (a, b, c):
            sla_tracker.open(req.id, "LIBRARY")
        sla_tracker.close(a.id, "LIBRARY", completed_at=clock.now + timedelta(hours=10))
        sla_tracker.close(b.id, "LIBRARY", completed_at=clock.now + timedelta(hours=50))

        report = sla_tracker.compliance_report(clock.now + timedelta(hours=40))
        lib = report["by_department"]["LIBRARY"]
        assert lib["total"] == 2
        assert lib["met"] == 1
        assert lib["breached"] == 1
        assert lib["compliance_rate"] == 50.0
        assert lib["avg_processing_hours"] == pytest.approx(30.0)
        assert report["pending"] == {"total": 1, "approaching_breach": 1, "breached": 0}

    def test_empty_report(self, sla_tracker):
        report = sla_tracker.compliance_report()
        assert report["by_department"]["BURSAR"]["compliance_rate"] == 0.0
        assert report["pending"]["total"] == 0


def test_hours_between_handles_naive_values(clock):
    naive = clock.now.replace(tzinfo=None)
    assert hours_between(naive, clock.now + timedelta(minutes=90)) == pytest.approx(1.5)
