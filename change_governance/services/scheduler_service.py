"""
QMS Change Governance Engine
Scheduler Service.

Lightweight interval scheduler for governance background jobs, implemented
with a single daemon thread so no broker is required. The only built-in job
is the overdue approval sweep.

Architecture:
    - Job functions are registered via the ``@register_job`` decorator
    - Each job has a ScheduledJob row recording run history
    - ``SchedulerService.start()`` runs every enabled job each interval
    - ``SchedulerService.run_job(name)`` runs one job on demand (CLI, tests)
"""

from __future__ import annotations

import logging
import threading
import time
from contextlib import nullcontext
from typing import Callable

from flask import Flask, has_app_context

from change_governance.models import db
from change_governance.models.scheduling import ScheduledJob

logger = logging.getLogger(__name__)


# ═══════════════════════════════════════════════════════════════════════════
#  Job Registry
# ═══════════════════════════════════════════════════════════════════════════

_job_registry: dict[str, Callable] = {}


def register_job(name: str):
    """Decorator to register a job function.

    Usage:
        @register_job("overdue_approval_sweep")
        def sweep_overdue_approvals(app):
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
    """
    Interval scheduler.

    Manages job registration, persistence, and execution.
    Jobs are executed within Flask app context.
    """

    _app: Flask | None = None
    _thread: threading.Thread | None = None
    _stop: threading.Event | None = None

    @classmethod
    def init_app(cls, app: Flask) -> None:
        """Initialize scheduler with the Flask app; start the loop if enabled."""
        cls._app = app
        app.extensions["scheduler"] = cls
        logger.info("SchedulerService initialized with %d registered jobs",
                    len(_job_registry))
        if app.config.get("SCHEDULER_ENABLED") and not app.config.get("TESTING"):
            cls.start()

    @classmethod
    def _context(cls):
        return nullcontext() if has_app_context() else cls._app.app_context()

    @classmethod
    def ensure_jobs_registered(cls) -> list[ScheduledJob]:
        """
        Ensure all registered jobs have a corresponding DB record.
        Creates missing records with the configured interval.
        """
        if not cls._app:
            return []

        created = []
        interval = cls._app.config.get("OVERDUE_SWEEP_INTERVAL_SECONDS", 300)
        with cls._context():
            for name, fn in _job_registry.items():
                existing = ScheduledJob.query.filter_by(job_name=name).first()
                if not existing:
                    job = ScheduledJob(
                        job_name=name,
                        description=(fn.__doc__ or f"Scheduled job: {name}").strip(),
                        schedule_type="interval",
                        schedule_config={"seconds": interval},
                        status="active",
                        is_enabled=True,
                    )
                    db.session.add(job)
                    created.append(job)
            if created:
                db.session.commit()
                logger.info("Created %d scheduled job records", len(created))
        return created

    @classmethod
    def run_job(cls, job_name: str) -> dict:
        """
        Execute a single job by name.

        Returns:
            Dict with status, duration_ms, result or error.
        """
        fn = _job_registry.get(job_name)
        if not fn:
            return {"job_name": job_name, "status": "error", "error": f"Unknown job: {job_name}"}

        if not cls._app:
            return {"job_name": job_name, "status": "error", "error": "Scheduler not initialized"}

        start = time.monotonic()
        result = None
        error = None
        status = "success"

        try:
            with cls._context():
                result = fn(cls._app)
        except Exception as exc:
            status = "failed"
            error = str(exc)
            logger.exception("Job %s failed: %s", job_name, exc, extra={"job_name": job_name})

        duration_ms = int((time.monotonic() - start) * 1000)

        try:
            with cls._context():
                job_record = ScheduledJob.query.filter_by(job_name=job_name).first()
                if job_record:
                    job_record.record_run(
                        status=status,
                        duration_ms=duration_ms,
                        result=result if isinstance(result, dict) else {"output": str(result)},
                        error=error,
                    )
                    db.session.commit()
        except Exception:
            db.session.rollback()
            logger.exception("Failed to update job record for %s", job_name,
                             extra={"job_name": job_name})

        return {
            "job_name": job_name,
            "status": status,
            "duration_ms": duration_ms,
            "result": result,
            "error": error,
        }

    @classmethod
    def list_jobs(cls) -> list[dict]:
        """List all registered jobs with their DB status."""
        jobs = []
        for name in _job_registry:
            job_record = ScheduledJob.query.filter_by(job_name=name).first()
            jobs.append({
                "job_name": name,
                "registered": True,
                "db_record": job_record.to_dict() if job_record else None,
            })
        return jobs

    # ── Background loop ──────────────────────────────────────────────────

    @classmethod
    def start(cls) -> None:
        """Start the daemon thread that runs enabled jobs every interval."""
        if cls._thread and cls._thread.is_alive():
            return
        cls.ensure_jobs_registered()
        cls._stop = threading.Event()
        cls._thread = threading.Thread(target=cls._loop, name="governance-scheduler", daemon=True)
        cls._thread.start()
        logger.info("Scheduler started: every %ss",
                    cls._app.config.get("OVERDUE_SWEEP_INTERVAL_SECONDS", 300))

    @classmethod
    def stop(cls, timeout: float = 5.0) -> None:
        if cls._stop:
            cls._stop.set()
        if cls._thread:
            cls._thread.join(timeout)
        cls._thread = None
        logger.info("Scheduler stopped")

    @classmethod
    def _loop(cls) -> None:
        interval = cls._app.config.get("OVERDUE_SWEEP_INTERVAL_SECONDS", 300)
        while not cls._stop.wait(interval):
            for name in list(_job_registry):
                with cls._app.app_context():
                    record = ScheduledJob.query.filter_by(job_name=name).first()
                    enabled = record is None or record.is_enabled
                if enabled:
                    cls.run_job(name)
