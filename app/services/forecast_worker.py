"""
Test Forecast Engine
Forecast worker — dequeues forecast jobs and drives the forecast service.

Jobs:
    - update-single-case-forecast: {"repositoryCaseId": int}
          refresh one link group, then every open run containing it
    - update-all-cases-forecast:   {}
          refresh every group once, then every affected open run once
    - auto-complete-milestones:    {}
    - milestone-due-notifications: {}

Concurrency:
    A ThreadPoolExecutor runs up to FORECAST_WORKER_CONCURRENCY jobs at a
    time, each in its own app context and SQLAlchemy session. Job starts are
    throttled to FORECAST_RATE_LIMIT_MAX per FORECAST_RATE_LIMIT_DURATION_MS
    with a moving-window limiter. SIGTERM/SIGINT stop dequeuing and drain
    in-flight jobs before exit.

Usage:
    from app import create_app
    from app.services.forecast_worker import start_worker

    raise SystemExit(start_worker(create_app()))
"""

from __future__ import annotations

import logging
import math
import signal
import threading
import time
from concurrent.futures import Future, ThreadPoolExecutor
from typing import Any, Callable

import redis
from flask import Flask
from limits import RateLimitItemPerSecond
from limits.storage import storage_from_string
from limits.strategies import MovingWindowRateLimiter

from app.core.exceptions import (
    InvalidJobPayloadError,
    QueueUnavailableError,
    UnknownJobError,
    UnrecoverableJobError,
)
from app.middleware.diagnostics import run_startup_diagnostics
from app.models import db
from app.services.forecast_queue import (
    JOB_AUTO_COMPLETE_MILESTONES,
    JOB_MILESTONE_DUE_NOTIFICATIONS,
    JOB_UPDATE_ALL_CASES,
    JOB_UPDATE_SINGLE_CASE,
    ForecastQueue,
    QueuedJob,
    close_forecast_queue,
    get_forecast_queue,
)
from app.services.forecast_service import (
    get_active_test_run_ids,
    get_unique_case_group_ids,
    update_repository_case_forecast,
    update_test_run_forecast,
)
from app.services.milestone_service import auto_complete_milestones, send_milestone_due_notifications

logger = logging.getLogger(__name__)


# ═══════════════════════════════════════════════════════════════════════════
#  Job handlers
# ═══════════════════════════════════════════════════════════════════════════

_job_handlers: dict[str, Callable[[QueuedJob], dict]] = {}


def job_handler(name: str):
    """Decorator registering the handler for one job name."""
    def decorator(fn):
        _job_handlers[name] = fn
        return fn
    return decorator


def get_job_handlers() -> dict[str, Callable[[QueuedJob], dict]]:
    return dict(_job_handlers)


def process_job(job: QueuedJob) -> dict:
    """
    Run the handler for *job* (inside an app context) and return its summary.

    Raises:
        UnknownJobError: no handler for ``job.name``.
        InvalidJobPayloadError: payload fails validation.
        Exception: anything else the handler lets through; retried by the queue.
    """
    tenant = (job.data or {}).get("tenantId")
    logger.info("Processing job %s of type %s%s", job.id, job.name,
                f" for tenant {tenant}" if tenant else "",
                extra={"job_id": job.id, "job_name": job.name, "attempt": job.attempts_made})
    handler = _job_handlers.get(job.name)
    if handler is None:
        raise UnknownJobError(f"Unknown job type: {job.name}", job_id=job.id)
    return handler(job)


def _validated_case_id(job: QueuedJob) -> int:
    case_id = (job.data or {}).get("repositoryCaseId")
    if isinstance(case_id, float) and case_id.is_integer():
        case_id = int(case_id)
    if isinstance(case_id, bool) or not isinstance(case_id, int):
        raise InvalidJobPayloadError(
            f"Invalid data for job {job.id}: repositoryCaseId missing or not a number.",
            job_id=job.id,
            details={"repositoryCaseId": repr(case_id)},
        )
    return case_id


@job_handler(JOB_UPDATE_SINGLE_CASE)
def process_single_case(job: QueuedJob) -> dict:
    case_id = _validated_case_id(job)
    try:
        result = update_repository_case_forecast(case_id)
    except Exception:
        logger.exception("Job %s failed for case %s", job.id, case_id,
                         extra={"job_id": job.id, "case_id": case_id})
        raise
    logger.info("Job %s completed: updated forecast for case %s", job.id, case_id,
                extra={"job_id": job.id, "case_id": case_id})
    return {
        "status": "completed",
        "successCount": 1,
        "failCount": 0,
        "updatedCaseIds": result["updated_case_ids"],
    }


@job_handler(JOB_UPDATE_ALL_CASES)
def process_all_cases(job: QueuedJob) -> dict:
    """Refresh every link group once, then each affected open run once."""
    logger.info("Job %s: starting update for all active cases", job.id, extra={"job_id": job.id})
    success_count = 0
    fail_count = 0

    case_ids = get_unique_case_group_ids()
    affected_run_ids: set[int] = set()
    refreshed_case_ids: set[int] = set()

    for case_id in case_ids:
        try:
            result = update_repository_case_forecast(case_id, skip_test_run_update=True)
        except Exception:
            fail_count += 1
            logger.exception("Job %s: failed to update forecast for case %s", job.id, case_id,
                             extra={"job_id": job.id, "case_id": case_id})
            continue
        affected_run_ids.update(result["affected_test_run_ids"])
        refreshed_case_ids.update(result["updated_case_ids"])
        success_count += 1

    logger.info("Job %s: processed %d unique case groups. Success: %d, Failed: %d",
                job.id, len(case_ids), success_count, fail_count, extra={"job_id": job.id})

    active_run_ids = get_active_test_run_ids(affected_run_ids)
    skipped_completed = len(affected_run_ids) - len(active_run_ids)
    logger.info("Job %s: updating %d active test runs (skipped %d completed)",
                job.id, len(active_run_ids), skipped_completed, extra={"job_id": job.id})

    run_success_count = 0
    run_fail_count = 0
    for test_run_id in active_run_ids:
        try:
            update_test_run_forecast(test_run_id, already_refreshed_case_ids=refreshed_case_ids)
            run_success_count += 1
        except Exception:
            run_fail_count += 1
            logger.exception("Job %s: failed to update forecast for test run %s", job.id, test_run_id,
                             extra={"job_id": job.id, "test_run_id": test_run_id})

    if fail_count or run_fail_count:
        logger.warning("Job %s finished with %d case failures and %d test run failures",
                       job.id, fail_count, run_fail_count, extra={"job_id": job.id})

    return {
        "status": "completed",
        "successCount": success_count,
        "failCount": fail_count,
        "testRunSuccessCount": run_success_count,
        "testRunFailCount": run_fail_count,
        "skippedCompletedCount": skipped_completed,
    }


@job_handler(JOB_AUTO_COMPLETE_MILESTONES)
def process_auto_complete_milestones(job: QueuedJob) -> dict:
    results = auto_complete_milestones()
    logger.info("Job %s completed: auto-completed %d milestones. Failed: %d",
                job.id, results["success_count"], results["fail_count"], extra={"job_id": job.id})
    return {"status": "completed", "successCount": results["success_count"],
            "failCount": results["fail_count"]}


@job_handler(JOB_MILESTONE_DUE_NOTIFICATIONS)
def process_milestone_due_notifications(job: QueuedJob) -> dict:
    results = send_milestone_due_notifications()
    logger.info("Job %s completed: sent %d milestone notifications. Failed: %d",
                job.id, results["success_count"], results["fail_count"], extra={"job_id": job.id})
    return {"status": "completed", "successCount": results["success_count"],
            "failCount": results["fail_count"]}


# ═══════════════════════════════════════════════════════════════════════════
#  Worker
# ═══════════════════════════════════════════════════════════════════════════

class ForecastWorker:
    """Pulls jobs from a ForecastQueue and runs them on a bounded thread pool."""

    def __init__(
        self,
        app: Flask,
        queue: ForecastQueue,
        *,
        concurrency: int | None = None,
        rate_limit_max: int | None = None,
        rate_limit_duration_ms: int | None = None,
        rate_limit_storage_uri: str | None = None,
        poll_timeout: int | None = None,
    ) -> None:
        cfg = app.config
        self.app = app
        self.queue = queue
        self.concurrency = max(1, concurrency or cfg.get("FORECAST_WORKER_CONCURRENCY", 5))
        self.poll_timeout = poll_timeout if poll_timeout is not None else cfg.get("FORECAST_POLL_TIMEOUT_SECONDS", 5)

        max_starts = rate_limit_max or cfg.get("FORECAST_RATE_LIMIT_MAX", 100)
        window_ms = rate_limit_duration_ms or cfg.get("FORECAST_RATE_LIMIT_DURATION_MS", 1000)
        self._rate_item = RateLimitItemPerSecond(max_starts, max(1, math.ceil(window_ms / 1000)))
        self._limiter = MovingWindowRateLimiter(storage_from_string(
            rate_limit_storage_uri or cfg.get("FORECAST_RATE_LIMIT_STORAGE_URI", "memory://")
        ))

        self._executor = ThreadPoolExecutor(max_workers=self.concurrency,
                                            thread_name_prefix="forecast-job")
        self._slots = threading.BoundedSemaphore(self.concurrency)
        self._stopping = threading.Event()

    # ── Lifecycle ────────────────────────────────────────────────────────

    def install_signal_handlers(self) -> None:
        """Stop on SIGTERM/SIGINT. Must be called from the main thread."""
        signal.signal(signal.SIGTERM, self._handle_signal)
        signal.signal(signal.SIGINT, self._handle_signal)

    def _handle_signal(self, signum, _frame) -> None:
        logger.info("Received signal %s, shutting down forecast worker", signum)
        self.stop()

    def stop(self) -> None:
        self._stopping.set()

    @property
    def stopping(self) -> bool:
        return self._stopping.is_set()

    def run(self) -> None:
        """Dequeue and dispatch jobs until stopped, then drain in-flight jobs."""
        logger.info("Forecast worker listening on %s (concurrency=%d)",
                    self.queue.name, self.concurrency, extra={"queue": self.queue.name})
        clean_exit = False
        try:
            while not self._stopping.is_set():
                if not self._slots.acquire(timeout=1):
                    continue
                try:
                    job = self._next_job()
                except redis.RedisError as exc:
                    self._slots.release()
                    logger.error("Queue %s unavailable: %s", self.queue.name, exc,
                                 extra={"queue": self.queue.name})
                    self.queue.emit("error", exc)
                    self._stopping.wait(max(1, self.poll_timeout))
                    continue
                if job is None:
                    self._slots.release()
                    continue
                future = self._executor.submit(self.process, job)
                future.add_done_callback(self._on_job_done)
            clean_exit = True
        finally:
            logger.info("Shutting down forecast worker, waiting for in-flight jobs")
            self._executor.shutdown(wait=True)
            if clean_exit:
                logger.info("Forecast worker shut down gracefully")
            else:
                logger.error("Forecast worker stopped after an unexpected error",
                             extra={"queue": self.queue.name})

    def run_until_empty(self) -> int:
        """Process queued jobs one by one on the calling thread; return how many ran."""
        processed = 0
        while True:
            job = self.queue.fetch_next(timeout=0)
            if job is None:
                return processed
            self.process(job)
            processed += 1

    # ── Rate limiting ────────────────────────────────────────────────────

    def _wait_for_start_slot(self) -> bool:
        while not self._stopping.is_set():
            if self._limiter.test(self._rate_item, self.queue.name):
                return True
            reset_time, _remaining = self._limiter.get_window_stats(self._rate_item, self.queue.name)
            self._stopping.wait(min(1.0, max(0.01, reset_time - time.time())))
        return False

    def _next_job(self) -> QueuedJob | None:
        if not self._wait_for_start_slot():
            return None
        job = self.queue.fetch_next(timeout=self.poll_timeout)
        if job is not None:
            self._limiter.hit(self._rate_item, self.queue.name)
        return job

    # ── Job execution ────────────────────────────────────────────────────

    def process(self, job: QueuedJob) -> Any:
        """Run one job to completion and record the outcome on the queue."""
        start = time.monotonic()
        with self.app.app_context():
            try:
                result = process_job(job)
            except UnrecoverableJobError as exc:
                logger.error("Job %s (%s) rejected: %s", job.id, job.name, exc,
                             extra={"job_id": job.id, "job_name": job.name})
                self.queue.fail(job, exc, retry=False)
                self.queue.emit("failed", job, exc)
                return None
            except Exception as exc:
                self.queue.fail(job, exc)
                self.queue.emit("failed", job, exc)
                return None
            finally:
                db.session.remove()

        self.queue.complete(job, result)
        self.queue.emit("completed", job, result)
        logger.debug("Job %s finished", job.id,
                     extra={"job_id": job.id, "duration_ms": (time.monotonic() - start) * 1000})
        return result

    def _on_job_done(self, future: Future) -> None:
        self._slots.release()
        exc = future.exception()
        if exc is not None:
            logger.error("Forecast worker could not record job outcome: %s", exc, exc_info=exc)
            self.queue.emit("error", exc)


# ═══════════════════════════════════════════════════════════════════════════
#  Entry point
# ═══════════════════════════════════════════════════════════════════════════

def _log_completed(job: QueuedJob, result) -> None:
    logger.info("Worker: job %s (%s) completed successfully. Result: %s", job.id, job.name, result,
                extra={"job_id": job.id, "job_name": job.name})


def _log_failed(job: QueuedJob, error: BaseException) -> None:
    logger.error("Worker: job %s (%s) failed (attempt %d/%d, now %s): %s",
                 job.id, job.name, job.attempts_made, job.max_attempts, job.state, error,
                 extra={"job_id": job.id, "job_name": job.name, "attempt": job.attempts_made})


def _log_error(error: BaseException) -> None:
    logger.error("Worker encountered an error: %s", error)


def attach_logging_hooks(queue: ForecastQueue) -> None:
    queue.on("completed", _log_completed)
    queue.on("failed", _log_failed)
    queue.on("error", _log_error)


def start_worker(app: Flask) -> int:
    """
    Start the forecast worker and block until it is stopped.

    Returns:
        Process exit code: 0 after a graceful shutdown, 1 when the queue is
        not configured or unreachable.
    """
    try:
        queue = get_forecast_queue(app)
    except QueueUnavailableError as exc:
        logger.error("Forecast worker cannot start: %s", exc)
        return 1

    issues = run_startup_diagnostics(app, queue)
    if any(issue.startswith("Queue unreachable") for issue in issues):
        logger.error("Forecast worker cannot start: queue %s unreachable", queue.name)
        close_forecast_queue(app)
        return 1

    attach_logging_hooks(queue)
    worker = ForecastWorker(app, queue)
    worker.install_signal_handlers()
    try:
        worker.run()
    finally:
        close_forecast_queue(app)
    return 0
