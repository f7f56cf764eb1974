"""
TAPS — Scheduler Service.

Registry and runner for periodic jobs (SLA sweep, reminder scan).  Scheduling
itself is external (cron, a platform scheduler, or the Flask CLI commands);
this module only names the jobs and runs one inside the app context with
timing and failure capture.

Architecture:
    - Job functions register via the ``register_job`` decorator
    - ``SchedulerService.run_job`` executes a job within the Flask app context
"""

from __future__ import annotations

import logging
import time
from datetime import datetime
from typing import Callable

from flask import Flask

logger = logging.getLogger(__name__)


# ═══════════════════════════════════════════════════════════════════════════
#  Job Registry
# ═══════════════════════════════════════════════════════════════════════════

_job_registry: dict[str, Callable] = {}


def register_job(name: str):
    """Decorator to register a job function.

    Usage:
        @register_job("sla_sweep")
        def sla_sweep(app, now=None):
            ...
    """
    def decorator(fn: Callable) -> Callable:
        _job_registry[name] = fn
        return fn
    return decorator


def get_registered_jobs() -> dict[str, Callable]:
    """Return all registered job functions."""
    return dict(_job_registry)


class SchedulerService:
    """Runs registered jobs within the Flask app context."""

    _app: Flask | None = None

    @classmethod
    def init_app(cls, app: Flask) -> None:
        """Bind the scheduler to *app*."""
        cls._app = app
        app.extensions["scheduler"] = cls
        logger.debug("SchedulerService initialized with %d registered jobs",
                     len(_job_registry))

    @classmethod
    def run_job(cls, job_name: str, now: datetime | None = None) -> dict:
        """
        Execute a single job by name.

        Returns:
            Dict with status, duration_ms, result or error.
        """
        fn = _job_registry.get(job_name)
        if not fn:
            return {"status": "error", "error": f"Unknown job: {job_name}"}

        if not cls._app:
            return {"status": "error", "error": "Scheduler not initialized"}

        start = time.monotonic()
        result = None
        error = None
        status = "success"

        try:
            with cls._app.app_context():
                result = fn(cls._app, now=now)
        except Exception as exc:
            status = "failed"
            error = str(exc)
            logger.exception("Job %s failed: %s", job_name, exc, extra={"job": job_name})

        duration_ms = int((time.monotonic() - start) * 1000)
        logger.info("Job %s finished: %s", job_name, status,
                    extra={"job": job_name, "duration_ms": duration_ms})

        response = {"status": status, "duration_ms": duration_ms}
        if error:
            response["error"] = error
        else:
            response["result"] = result
        return response


def run_job(job_name: str, now: datetime | None = None) -> dict:
    """Module-level shortcut for ``SchedulerService.run_job``."""
    return SchedulerService.run_job(job_name, now=now)
