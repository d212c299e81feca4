"""
Legal Workflow Engine
Scheduler Service.

A lightweight background job scheduler: one daemon thread per process that
wakes every ``SCHEDULER_INTERVAL_SECONDS`` and runs the registered jobs that
are due.  Jobs can also be triggered manually via API.

Architecture:
    - SchedulerService: Manages job registration and execution
    - Jobs are stored in ScheduledJob model for persistence
    - Pluggable job functions registered via decorator
    - Injectable clock so tests drive time explicitly

Jobs are best effort: each one marks what it handled ("already notified"
flags), so a crashed or repeated run converges on the next tick.
"""

from __future__ import annotations

import contextlib
import logging
import threading
import time
from datetime import datetime, timezone
from typing import Callable

from flask import Flask, current_app, has_app_context

from app.models import db
from app.models.scheduling import ScheduledJob

logger = logging.getLogger(__name__)

Clock = Callable[[], datetime]


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


# ═══════════════════════════════════════════════════════════════════════════
#  Job Registry
# ═══════════════════════════════════════════════════════════════════════════

_job_registry: dict[str, Callable] = {}
_job_intervals: dict[str, int] = {}


def register_job(name: str, *, interval_seconds: int | None = None):
    """Decorator to register a job function.

    The function receives ``(app, now)`` where ``now`` comes from the
    scheduler clock.

    Usage:
        @register_job("task_reminder_scanner")
        def scan_task_reminders(app, now):
            ...
    """
    def decorator(fn: Callable) -> Callable:
        _job_registry[name] = fn
        if interval_seconds is not None:
            _job_intervals[name] = interval_seconds
        return fn
    return decorator


def get_registered_jobs() -> dict[str, Callable]:
    """Return all registered job functions."""
    return dict(_job_registry)


class SchedulerService:
    """
    Lightweight scheduler service.

    Manages job registration, persistence, and execution.
    Jobs are executed within Flask app context.
    """

    _app: Flask | None = None
    _clock: Clock = staticmethod(_utc_now)
    _running: bool = False
    _thread: threading.Thread | None = None
    _stop_event: threading.Event | None = None
    _lock = threading.Lock()

    @classmethod
    def init_app(cls, app: Flask, clock: Clock | None = None) -> None:
        """Bind the scheduler to *app*; starts the loop when SCHEDULER_ENABLED."""
        cls._app = app
        cls._clock = staticmethod(clock or _utc_now)
        app.extensions["scheduler"] = cls
        logger.info("SchedulerService initialized with %d registered jobs",
                    len(_job_registry))

        if app.config.get("SCHEDULER_ENABLED") and not app.config.get("TESTING"):
            cls.ensure_jobs_registered()
            cls.start(app.config.get("SCHEDULER_INTERVAL_SECONDS", 60))

    @classmethod
    def set_clock(cls, clock: Clock | None) -> None:
        cls._clock = staticmethod(clock or _utc_now)

    @classmethod
    def now(cls) -> datetime:
        return cls._clock()

    @classmethod
    def _app_context(cls):
        # Reuse the caller's context (and session) when already inside our app
        if has_app_context() and current_app._get_current_object() is cls._app:
            return contextlib.nullcontext()
        return cls._app.app_context()

    # ── Loop control ─────────────────────────────────────────────────────

    @classmethod
    def start(cls, interval_seconds: float = 60) -> bool:
        """Start the background loop. Returns False when already running."""
        if not cls._app:
            raise RuntimeError("SchedulerService.init_app() must be called first")

        with cls._lock:
            if cls._running:
                return False
            cls._stop_event = threading.Event()
            cls._thread = threading.Thread(
                target=cls._loop,
                args=(interval_seconds, cls._stop_event),
                name="workflow-scheduler",
                daemon=True,
            )
            cls._running = True
            cls._thread.start()

        logger.info("Scheduler started (interval=%ss)", interval_seconds)
        return True

    @classmethod
    def stop(cls, timeout: float = 5.0) -> None:
        """Signal the loop to exit and wait for the thread."""
        with cls._lock:
            if not cls._running:
                return
            cls._stop_event.set()
            thread = cls._thread
            cls._running = False
            cls._thread = None

        if thread is not None and thread is not threading.current_thread():
            thread.join(timeout)
        logger.info("Scheduler stopped")

    @classmethod
    def is_running(cls) -> bool:
        return cls._running

    @classmethod
    def _loop(cls, interval_seconds: float, stop_event: threading.Event) -> None:
        while not stop_event.is_set():
            try:
                cls.run_due_jobs()
            except Exception:
                logger.exception("Scheduler tick failed")
            stop_event.wait(interval_seconds)

    # ── Registry persistence ─────────────────────────────────────────────

    @classmethod
    def ensure_jobs_registered(cls) -> list[ScheduledJob]:
        """
        Ensure all registered jobs have a corresponding DB record.
        Creates missing records with default config.
        """
        if not cls._app:
            return []

        created = []
        with cls._app_context():
            default_interval = cls._app.config.get("SCHEDULER_INTERVAL_SECONDS", 60)
            for name, fn in _job_registry.items():
                existing = ScheduledJob.query.filter_by(job_name=name).first()
                if not existing:
                    job = ScheduledJob(
                        job_name=name,
                        description=(fn.__doc__ or f"Scheduled job: {name}").strip().splitlines()[0],
                        interval_seconds=_job_intervals.get(name, default_interval),
                        status="active",
                        is_enabled=True,
                    )
                    db.session.add(job)
                    created.append(job)
            if created:
                db.session.commit()
                logger.info("Created %d scheduled job records", len(created))
        return created

    # ── Execution ────────────────────────────────────────────────────────

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

        now = cls.now()
        start = time.monotonic()
        result = None
        error = None
        status = "success"

        with cls._app_context():
            try:
                result = fn(cls._app, now)
            except Exception as exc:
                db.session.rollback()
                status = "failed"
                error = str(exc)
                logger.exception("Job %s failed: %s", job_name, exc, extra={"job_name": job_name})

            duration_ms = int((time.monotonic() - start) * 1000)

            # Update DB record
            try:
                job_record = ScheduledJob.query.filter_by(job_name=job_name).first()
                if job_record is None:
                    job_record = ScheduledJob(
                        job_name=job_name,
                        interval_seconds=_job_intervals.get(
                            job_name, cls._app.config.get("SCHEDULER_INTERVAL_SECONDS", 60)),
                    )
                    db.session.add(job_record)
                job_record.record_run(
                    ran_at=now,
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
            "ran_at": now.isoformat(),
        }

    @classmethod
    def run_due_jobs(cls) -> list[dict]:
        """Run every enabled job whose interval has elapsed on the scheduler clock."""
        if not cls._app:
            return []
        cls.ensure_jobs_registered()
        with cls._app_context():
            now = cls.now()
            due = [
                job.job_name
                for job in ScheduledJob.query.order_by(ScheduledJob.job_name).all()
                if job.job_name in _job_registry and job.is_due(now)
            ]
        return [cls.run_job(name) for name in due]

    # ── Queries ──────────────────────────────────────────────────────────

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

    @classmethod
    def get_job_status(cls, job_name: str) -> dict | None:
        """Get status of a specific job."""
        job_record = ScheduledJob.query.filter_by(job_name=job_name).first()
        if job_record:
            return job_record.to_dict()
        return None

    @classmethod
    def toggle_job(cls, job_name: str, enabled: bool) -> dict | None:
        """Enable or disable a scheduled job."""
        if job_name not in _job_registry:
            return None
        cls.ensure_jobs_registered()
        job_record = ScheduledJob.query.filter_by(job_name=job_name).first()
        if not job_record:
            return None
        job_record.is_enabled = enabled
        job_record.status = "active" if enabled else "paused"
        db.session.commit()
        logger.info("Scheduled job %s %s", job_name, "enabled" if enabled else "paused",
                    extra={"job_name": job_name})
        return job_record.to_dict()
