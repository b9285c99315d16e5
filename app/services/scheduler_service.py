"""
Test Forecast Engine
Scheduler Service — periodic triggers for the forecast worker.

Scheduled jobs only enqueue work; the forecast worker does the processing.
Each ScheduledJob row carries a cron-style ``schedule_config`` with ``minute``
and ``hour`` fields (UTC). Each field is ``*``, ``*/N``, a number, or a comma
separated list of numbers. An external cron calls ``flask scheduler tick``
every minute; the tick runs every enabled job whose latest slot has not been
served yet.

Usage:
    flask scheduler tick                 # run due jobs
    flask scheduler run forecast_full_sweep
    flask scheduler pause milestone_auto_complete
"""

from __future__ import annotations

import logging
import time
from datetime import datetime, timedelta, timezone
from typing import Callable

from flask import Flask

from app.models import db
from app.models.scheduling import ScheduledJob

logger = logging.getLogger(__name__)

# Slots are whole minutes; hour/minute schedules repeat within a day.
_LOOKAHEAD_MINUTES = 24 * 60

DEFAULT_SCHEDULES = {
    "forecast_full_sweep": {"hour": "3", "minute": "0", "description": "Daily at 03:00"},
    "milestone_auto_complete": {"hour": "*", "minute": "0", "description": "Every hour"},
    "milestone_due_notifications": {"hour": "6", "minute": "0", "description": "Daily at 06:00"},
}
FALLBACK_SCHEDULE = {"hour": "0", "minute": "0", "description": "Daily at midnight"}


# ═══════════════════════════════════════════════════════════════════════════
#  Job Registry
# ═══════════════════════════════════════════════════════════════════════════

_job_registry: dict[str, Callable] = {}


def register_job(name: str):
    """Decorator registering a scheduled job function ``fn(app) -> dict``."""
    def decorator(fn: Callable) -> Callable:
        _job_registry[name] = fn
        return fn
    return decorator


def get_registered_jobs() -> dict[str, Callable]:
    return dict(_job_registry)


# ═══════════════════════════════════════════════════════════════════════════
#  Schedule evaluation
# ═══════════════════════════════════════════════════════════════════════════

def _parse_field(raw, upper: int) -> set[int]:
    """Expand one cron field into the values it allows in ``range(upper)``."""
    text = str(raw if raw is not None else "*").strip()
    if text == "*":
        return set(range(upper))
    if text.startswith("*/"):
        step = int(text[2:])
        if step <= 0:
            raise ValueError(f"step must be positive: {text!r}")
        return set(range(0, upper, step))
    values = {int(part) for part in text.split(",")}
    if not all(0 <= v < upper for v in values):
        raise ValueError(f"value out of range 0..{upper - 1}: {text!r}")
    return values


def _as_utc(value: datetime) -> datetime:
    # SQLite hands back naive datetimes for timezone-aware columns.
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def _floor_minute(value: datetime) -> datetime:
    return _as_utc(value).replace(second=0, microsecond=0)


def _matcher(schedule: dict) -> Callable[[datetime], bool]:
    minutes = _parse_field(schedule.get("minute"), 60)
    hours = _parse_field(schedule.get("hour"), 24)
    return lambda slot: slot.minute in minutes and slot.hour in hours


def latest_slot(schedule: dict, now: datetime) -> datetime | None:
    """Most recent slot at or before *now* within the last day."""
    matches = _matcher(schedule)
    slot = _floor_minute(now)
    for _ in range(_LOOKAHEAD_MINUTES):
        if matches(slot):
            return slot
        slot -= timedelta(minutes=1)
    return None


def next_slot(schedule: dict, now: datetime) -> datetime | None:
    """First slot strictly after *now*."""
    matches = _matcher(schedule)
    slot = _floor_minute(now) + timedelta(minutes=1)
    for _ in range(_LOOKAHEAD_MINUTES):
        if matches(slot):
            return slot
        slot += timedelta(minutes=1)
    return None


def is_due(job_record: ScheduledJob, now: datetime) -> bool:
    """
    True when *job_record* has a slot at or before *now* it has not served.

    A job that never ran only catches up on slots from its creation minute on.
    """
    slot = latest_slot(job_record.schedule_config or FALLBACK_SCHEDULE, now)
    if slot is None:
        return False
    if job_record.last_run_at is not None:
        return slot > _as_utc(job_record.last_run_at)
    if job_record.created_at is not None:
        return slot >= _floor_minute(job_record.created_at)
    return True


# ═══════════════════════════════════════════════════════════════════════════
#  Service
# ═══════════════════════════════════════════════════════════════════════════

class SchedulerService:
    """Scheduled job persistence, execution and due-job dispatch."""

    _app: Flask | None = None

    @classmethod
    def init_app(cls, app: Flask) -> None:
        cls._app = app
        app.extensions["scheduler"] = cls
        logger.info("SchedulerService initialized with %d registered jobs", len(_job_registry))

    @classmethod
    def ensure_jobs_registered(cls) -> list[ScheduledJob]:
        """Create a ScheduledJob row with the default schedule for each new job."""
        if not cls._app:
            return []

        created = []
        with cls._app.app_context():
            known = {row.job_name for row in ScheduledJob.query.all()}
            for name, fn in _job_registry.items():
                if name in known:
                    continue
                record = ScheduledJob(
                    job_name=name,
                    description=(fn.__doc__ or f"Scheduled job: {name}").strip().splitlines()[0],
                    schedule_config=dict(DEFAULT_SCHEDULES.get(name, FALLBACK_SCHEDULE)),
                    status="active",
                    is_enabled=True,
                )
                db.session.add(record)
                created.append(record)
            if created:
                db.session.commit()
                logger.info("Created %d scheduled job records", len(created))
        return created

    @classmethod
    def run_job(cls, job_name: str, *, now: datetime | None = None) -> dict:
        """
        Execute one job and record the run.

        Paused jobs are skipped. *now* is stored as the run time.

        Returns:
            Dict with job_name, status (success | failed | skipped | error),
            duration_ms, result and error.
        """
        fn = _job_registry.get(job_name)
        if not fn:
            return {"status": "error", "error": f"Unknown job: {job_name}"}
        if not cls._app:
            return {"status": "error", "error": "Scheduler not initialized"}

        outcome = {"job_name": job_name, "status": "success", "duration_ms": 0,
                   "result": None, "error": None}
        with cls._app.app_context():
            record = ScheduledJob.query.filter_by(job_name=job_name).first()
            if record is not None and not record.is_enabled:
                logger.info("Job %s is paused, skipping", job_name)
                outcome["status"] = "skipped"
                return outcome

            start = time.monotonic()
            try:
                outcome["result"] = fn(cls._app)
            except Exception as exc:
                outcome["status"] = "failed"
                outcome["error"] = str(exc)
                logger.exception("Job %s failed: %s", job_name, exc)
            outcome["duration_ms"] = int((time.monotonic() - start) * 1000)

            if record is not None:
                result = outcome["result"]
                try:
                    record.record_run(
                        status=outcome["status"],
                        duration_ms=outcome["duration_ms"],
                        result=result if isinstance(result, dict) else {"output": str(result)},
                        error=outcome["error"],
                        ran_at=now,
                    )
                    db.session.commit()
                except Exception:
                    db.session.rollback()
                    logger.exception("Failed to update job record for %s", job_name)
        return outcome

    @classmethod
    def run_due_jobs(cls, now: datetime | None = None) -> list[dict]:
        """Run every enabled job whose schedule has an unserved slot at *now*."""
        if not cls._app:
            return []
        now = _as_utc(now or datetime.now(timezone.utc))
        cls.ensure_jobs_registered()

        with cls._app.app_context():
            due = []
            for record in ScheduledJob.query.filter_by(is_enabled=True).order_by(ScheduledJob.id):
                if record.job_name not in _job_registry:
                    continue
                try:
                    if is_due(record, now):
                        due.append(record.job_name)
                except ValueError as exc:
                    logger.error("Job %s has an invalid schedule %s: %s",
                                 record.job_name, record.schedule_config, exc)

        results = [cls.run_job(name, now=now) for name in due]
        logger.info("Scheduler tick at %s: ran %d job(s)", now.isoformat(), len(results))
        return results

    @classmethod
    def list_jobs(cls, now: datetime | None = None) -> list[dict]:
        """Registered jobs with their DB record and next run time."""
        now = _as_utc(now or datetime.now(timezone.utc))
        jobs = []
        for name in _job_registry:
            record = ScheduledJob.query.filter_by(job_name=name).first()
            next_run = None
            if record is not None and record.is_enabled:
                try:
                    slot = next_slot(record.schedule_config or FALLBACK_SCHEDULE, now)
                except ValueError:
                    slot = None
                next_run = slot.isoformat() if slot else None
            jobs.append({
                "job_name": name,
                "registered": True,
                "db_record": record.to_dict() if record else None,
                "next_run_at": next_run,
            })
        return jobs

    @classmethod
    def toggle_job(cls, job_name: str, enabled: bool) -> dict | None:
        """Pause or resume a scheduled job; None when it has no record."""
        record = ScheduledJob.query.filter_by(job_name=job_name).first()
        if not record:
            return None
        record.is_enabled = enabled
        record.status = "active" if enabled else "paused"
        db.session.commit()
        return record.to_dict()
