"""
Shared pytest fixtures for the TAPS test suite.

Provides:
    - app: Flask application (session-scoped)
    - _setup_db: Database table creation/teardown (session-scoped)
    - session: Per-test DB cleanup w/ rollback + recreate (autouse)
    - clock: Fixed, manually advanced clock
    - sender: Recording mail sender
    - sla_tracker / dispatcher / coordinator: services wired from TestingConfig
    - make_request: Factory creating requests through the coordinator
"""

from datetime import UTC, datetime, timedelta

import pytest

from taps import create_app
from taps.config import NotificationConfig, SlaConfig
from taps.models import db as _db
from taps.models.request import Request
from taps.services.audit_logger import AuditDiffLogger
from taps.services.notification_delivery import MailSender
from taps.services.notification_rules import NotificationRuleDispatcher
from taps.services.sla_tracker import SlaTracker
from taps.services.workflow import WorkflowCoordinator

T0 = datetime(2026, 3, 2, 9, 0, tzinfo=UTC)


class FixedClock:
    """Callable clock that only moves when told to."""

    def __init__(self, now: datetime = T0):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **delta) -> datetime:
        self.now = self.now + timedelta(**delta)
        return self.now


class RecordingSender(MailSender):
    """Keeps every intent; raises for template kinds listed in ``fail_on``."""

    def __init__(self, fail_on=()):
        self.sent = []
        self.fail_on = set(fail_on)

    def send(self, intent):
        if intent.template_kind in self.fail_on:
            raise TimeoutError(f"mail transport timed out for {intent.template_kind}")
        self.sent.append(intent)
        return {"status": "sent"}

    def kinds(self) -> list[str]:
        return [i.template_kind for i in self.sent]


# ── App & DB fixtures ────────────────────────────────────────────────────


@pytest.fixture(scope="session")
def app():
    """Create the Flask application once per test session."""
    application = create_app("testing")
    return application


@pytest.fixture(scope="session")
def _setup_db(app):
    """Create all tables at session start, drop at end."""
    with app.app_context():
        _db.create_all()
    yield
    with app.app_context():
        _db.drop_all()


@pytest.fixture(autouse=True)
def session(app, _setup_db):
    """Per-test: open app context, rollback after test, recreate tables."""
    with app.app_context():
        yield
        _db.session.rollback()
        _db.drop_all()
        _db.create_all()


# ── Service fixtures ─────────────────────────────────────────────────────


@pytest.fixture()
def clock():
    return FixedClock()


@pytest.fixture()
def sender():
    return RecordingSender()


@pytest.fixture()
def sla_tracker(app, clock):
    return SlaTracker(SlaConfig.from_app_config(app.config), clock=clock)


@pytest.fixture()
def dispatcher(app):
    return NotificationRuleDispatcher(NotificationConfig.from_app_config(app.config))


@pytest.fixture()
def coordinator(sla_tracker, dispatcher, sender, clock):
    return WorkflowCoordinator(
        audit=AuditDiffLogger(),
        sla=sla_tracker,
        dispatcher=dispatcher,
        sender=sender,
        clock=clock,
    )


@pytest.fixture()
def make_request(coordinator):
    """Factory: create a request through the coordinator (effects included)."""
    counter = {"n": 0}

    def _make(**overrides):
        counter["n"] += 1
        fields = {
            "student_id": f"S{1000 + counter['n']}",
            "student_email": f"student{counter['n']}@uni.test",
            "student_name": "Ada Lovelace",
            "program": "BSc Mathematics",
        }
        fields.update(overrides)
        return coordinator.create(**fields)

    return _make


# ── Row factories ────────────────────────────────────────────────────────


def _insert_request(**kw) -> Request:
    seq = Request.query.count() + 1
    fields = {
        "request_code": f"TR-20260302-{seq:04d}",
        "student_id": f"S{seq:04d}",
        "student_email": f"s{seq}@uni.test",
        "program": "BA History",
        "submitted_at": T0,
        "created_at": T0,
        "updated_at": T0,
    }
    fields.update(kw)
    req = Request(**fields)
    _db.session.add(req)
    _db.session.commit()
    return req


@pytest.fixture()
def insert_request():
    """Factory: insert a Request row directly, bypassing workflow effects."""
    return _insert_request
