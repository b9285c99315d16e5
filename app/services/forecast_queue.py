"""
Test Forecast Engine
Forecast job queue — Redis/Valkey backed.

Keys (``{prefix}:{queue}:...``):
    id          INCR counter for job ids
    job:<id>    hash with name, data (JSON), state, attempts, timestamps
    wait        list of queued job ids (LPUSH in, RPOPLPUSH out)
    active      list of job ids currently running
    delayed     sorted set of job ids waiting for a retry (score = due ms)
    completed   list of finished job ids, newest first, trimmed
    failed      list of failed job ids, newest first, trimmed

Job lifecycle: queued → running → completed | failed, with
running → delayed → queued while retry attempts remain.

Usage:
    from app.services.forecast_queue import get_forecast_queue, enqueue_single_case_forecast

    enqueue_single_case_forecast(42)
    queue = get_forecast_queue()
    queue.counts()
"""

from __future__ import annotations

import json
import logging
import time
from collections import defaultdict
from dataclasses import dataclass, field
from typing import Any, Callable

import redis
from flask import Flask, current_app

from app.core.exceptions import QueueUnavailableError

logger = logging.getLogger(__name__)


# ── Job names (payload contract) ─────────────────────────────────────────────

JOB_UPDATE_SINGLE_CASE = "update-single-case-forecast"
JOB_UPDATE_ALL_CASES = "update-all-cases-forecast"
JOB_AUTO_COMPLETE_MILESTONES = "auto-complete-milestones"
JOB_MILESTONE_DUE_NOTIFICATIONS = "milestone-due-notifications"

JOB_STATES = {"queued", "running", "delayed", "completed", "failed"}


def _now_ms() -> int:
    return int(time.time() * 1000)


@dataclass
class QueuedJob:
    """In-memory view of one job hash."""

    id: str
    name: str
    data: dict = field(default_factory=dict)
    state: str = "queued"
    attempts_made: int = 0
    max_attempts: int = 1
    backoff_ms: int = 0
    failed_reason: str | None = None
    return_value: Any = None
    created_at: int = field(default_factory=_now_ms)
    processed_on: int | None = None
    finished_on: int | None = None

    def to_hash(self) -> dict[str, str]:
        raw = {
            "name": self.name,
            "data": json.dumps(self.data, default=str),
            "state": self.state,
            "attempts_made": str(self.attempts_made),
            "max_attempts": str(self.max_attempts),
            "backoff_ms": str(self.backoff_ms),
            "created_at": str(self.created_at),
        }
        if self.failed_reason is not None:
            raw["failed_reason"] = self.failed_reason
        if self.return_value is not None:
            raw["return_value"] = json.dumps(self.return_value, default=str)
        if self.processed_on is not None:
            raw["processed_on"] = str(self.processed_on)
        if self.finished_on is not None:
            raw["finished_on"] = str(self.finished_on)
        return raw

    @classmethod
    def from_hash(cls, job_id: str, raw: dict[str, str]) -> QueuedJob:
        def _opt_int(key):
            val = raw.get(key)
            return int(val) if val not in (None, "") else None

        data = json.loads(raw.get("data") or "{}")
        if not isinstance(data, dict):
            raise ValueError(f"job data must be a JSON object, got {type(data).__name__}")
        return_value = raw.get("return_value")
        return cls(
            id=str(job_id),
            name=raw.get("name", ""),
            data=data,
            state=raw.get("state", "queued"),
            attempts_made=int(raw.get("attempts_made", 0)),
            max_attempts=int(raw.get("max_attempts", 1)),
            backoff_ms=int(raw.get("backoff_ms", 0)),
            failed_reason=raw.get("failed_reason"),
            return_value=json.loads(return_value) if return_value else None,
            created_at=int(raw.get("created_at", 0)),
            processed_on=_opt_int("processed_on"),
            finished_on=_opt_int("finished_on"),
        )

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "name": self.name,
            "data": self.data,
            "state": self.state,
            "attempts_made": self.attempts_made,
            "max_attempts": self.max_attempts,
            "failed_reason": self.failed_reason,
            "return_value": self.return_value,
            "created_at": self.created_at,
            "processed_on": self.processed_on,
            "finished_on": self.finished_on,
        }


class ForecastQueue:
    """
    Persistent job queue on a Redis-compatible server.

    Every public method is safe to call from several worker threads: each
    step is a single Redis command or a MULTI/EXEC pipeline.
    """

    def __init__(
        self,
        client: redis.Redis,
        name: str = "forecast-updates",
        *,
        prefix: str = "queue",
        default_attempts: int = 3,
        default_backoff_ms: int = 5000,
        keep_finished: int = 1000,
    ) -> None:
        self.redis = client
        self.name = name
        self.prefix = prefix
        self.default_attempts = max(1, default_attempts)
        self.default_backoff_ms = max(0, default_backoff_ms)
        self.keep_finished = max(1, keep_finished)
        self._handlers: dict[str, list[Callable]] = defaultdict(list)

    # ── Keys ─────────────────────────────────────────────────────────────

    def _key(self, suffix: str) -> str:
        return f"{self.prefix}:{self.name}:{suffix}"

    def _job_key(self, job_id: str) -> str:
        return self._key(f"job:{job_id}")

    # ── Events ───────────────────────────────────────────────────────────

    def on(self, event: str, callback: Callable) -> None:
        """Register a callback for ``completed``, ``failed`` or ``error``."""
        self._handlers[event].append(callback)

    def emit(self, event: str, *args) -> None:
        for callback in self._handlers.get(event, []):
            try:
                callback(*args)
            except Exception:
                logger.exception("Queue %s: %s handler raised", self.name, event)

    # ── Producer side ────────────────────────────────────────────────────

    def add(self, name: str, data: dict | None = None, *,
            attempts: int | None = None, backoff_ms: int | None = None) -> QueuedJob:
        """Enqueue a job and return it in state ``queued``."""
        job_id = str(self.redis.incr(self._key("id")))
        job = QueuedJob(
            id=job_id,
            name=name,
            data=dict(data or {}),
            max_attempts=max(1, attempts if attempts is not None else self.default_attempts),
            backoff_ms=max(0, backoff_ms if backoff_ms is not None else self.default_backoff_ms),
        )
        pipe = self.redis.pipeline()
        pipe.hset(self._job_key(job_id), mapping=job.to_hash())
        pipe.lpush(self._key("wait"), job_id)
        pipe.execute()
        logger.debug("Queue %s: added job %s (%s)", self.name, job_id, name,
                     extra={"job_id": job_id, "job_name": name, "queue": self.name})
        return job

    # ── Consumer side ────────────────────────────────────────────────────

    def promote_delayed(self) -> int:
        """Move delayed jobs whose retry time has come back onto the wait list."""
        due = self.redis.zrangebyscore(self._key("delayed"), 0, _now_ms())
        promoted = 0
        for job_id in due:
            # ZREM decides which worker promotes when several race.
            if self.redis.zrem(self._key("delayed"), job_id):
                pipe = self.redis.pipeline()
                pipe.hset(self._job_key(job_id), "state", "queued")
                pipe.lpush(self._key("wait"), job_id)
                pipe.execute()
                promoted += 1
        return promoted

    def fetch_next(self, timeout: int = 0) -> QueuedJob | None:
        """
        Take the oldest queued job and mark it running.

        Blocks up to *timeout* seconds when > 0; returns None when the queue
        stays empty.
        """
        self.promote_delayed()
        if timeout > 0:
            job_id = self.redis.brpoplpush(self._key("wait"), self._key("active"), timeout=timeout)
        else:
            job_id = self.redis.rpoplpush(self._key("wait"), self._key("active"))
        if job_id is None:
            return None

        raw = self.redis.hgetall(self._job_key(job_id))
        if not raw:
            logger.warning("Queue %s: job %s has no data, dropping", self.name, job_id)
            self.redis.lrem(self._key("active"), 1, job_id)
            return None

        try:
            job = QueuedJob.from_hash(job_id, raw)
        except (ValueError, TypeError) as exc:
            logger.error("Queue %s: job %s has malformed data, failing it: %s", self.name, job_id, exc,
                         extra={"job_id": job_id, "queue": self.name})
            self._discard_malformed(job_id, exc)
            return None
        job.state = "running"
        job.attempts_made += 1
        job.processed_on = _now_ms()
        self.redis.hset(self._job_key(job_id), mapping={
            "state": job.state,
            "attempts_made": str(job.attempts_made),
            "processed_on": str(job.processed_on),
        })
        return job

    def _discard_malformed(self, job_id: str, error: Exception) -> None:
        pipe = self.redis.pipeline()
        pipe.lrem(self._key("active"), 1, job_id)
        pipe.hset(self._job_key(job_id), mapping={
            "state": "failed",
            "failed_reason": f"Malformed job data: {error}",
            "finished_on": str(_now_ms()),
        })
        pipe.lpush(self._key("failed"), job_id)
        pipe.execute()
        self._trim_finished("failed")

    def complete(self, job: QueuedJob, result: Any = None) -> None:
        job.state = "completed"
        job.return_value = result
        job.finished_on = _now_ms()
        pipe = self.redis.pipeline()
        pipe.hset(self._job_key(job.id), mapping={
            "state": job.state,
            "return_value": json.dumps(result, default=str),
            "finished_on": str(job.finished_on),
        })
        pipe.lrem(self._key("active"), 1, job.id)
        pipe.lpush(self._key("completed"), job.id)
        pipe.execute()
        self._trim_finished("completed")

    def fail(self, job: QueuedJob, error: BaseException | str, *, retry: bool = True) -> str:
        """
        Record a failed attempt.

        Schedules another attempt with exponential backoff while attempts
        remain and *retry* is set; otherwise the job ends ``failed``.

        Returns:
            The job's new state: "queued", "delayed" or "failed".
        """
        job.failed_reason = str(error)
        pipe = self.redis.pipeline()
        pipe.lrem(self._key("active"), 1, job.id)

        if retry and job.attempts_made < job.max_attempts:
            delay_ms = job.backoff_ms * (2 ** (job.attempts_made - 1))
            if delay_ms > 0:
                job.state = "delayed"
                pipe.zadd(self._key("delayed"), {job.id: _now_ms() + delay_ms})
            else:
                job.state = "queued"
                pipe.lpush(self._key("wait"), job.id)
            pipe.hset(self._job_key(job.id), mapping={
                "state": job.state,
                "failed_reason": job.failed_reason,
            })
            pipe.execute()
            logger.info("Queue %s: job %s attempt %d/%d failed, retry in %dms",
                        self.name, job.id, job.attempts_made, job.max_attempts, delay_ms,
                        extra={"job_id": job.id, "job_name": job.name, "attempt": job.attempts_made})
            return job.state

        job.state = "failed"
        job.finished_on = _now_ms()
        pipe.hset(self._job_key(job.id), mapping={
            "state": job.state,
            "failed_reason": job.failed_reason,
            "finished_on": str(job.finished_on),
        })
        pipe.lpush(self._key("failed"), job.id)
        pipe.execute()
        self._trim_finished("failed")
        return job.state

    def _trim_finished(self, list_name: str) -> None:
        key = self._key(list_name)
        while self.redis.llen(key) > self.keep_finished:
            old_id = self.redis.rpop(key)
            if old_id is None:
                break
            self.redis.delete(self._job_key(old_id))

    # ── Introspection ────────────────────────────────────────────────────

    def get_job(self, job_id: str) -> QueuedJob | None:
        raw = self.redis.hgetall(self._job_key(str(job_id)))
        if not raw:
            return None
        return QueuedJob.from_hash(str(job_id), raw)

    def counts(self) -> dict[str, int]:
        return {
            "queued": self.redis.llen(self._key("wait")),
            "running": self.redis.llen(self._key("active")),
            "delayed": self.redis.zcard(self._key("delayed")),
            "completed": self.redis.llen(self._key("completed")),
            "failed": self.redis.llen(self._key("failed")),
        }

    def ping(self) -> bool:
        return bool(self.redis.ping())

    def close(self) -> None:
        self.redis.close()


# ── Process-scoped queue ─────────────────────────────────────────────────────

def create_forecast_queue(app: Flask, client: redis.Redis | None = None) -> ForecastQueue:
    """
    Build a ForecastQueue from app config.

    Raises:
        QueueUnavailableError: no REDIS_URL / VALKEY_URL configured.
    """
    if client is None:
        url = app.config.get("REDIS_URL")
        if not url:
            raise QueueUnavailableError(
                "REDIS_URL (or VALKEY_URL) is not set; the forecast queue is unavailable"
            )
        client = redis.Redis.from_url(url, decode_responses=True)
    return ForecastQueue(
        client,
        app.config.get("FORECAST_QUEUE_NAME", "forecast-updates"),
        prefix=app.config.get("FORECAST_QUEUE_PREFIX", "queue"),
        default_attempts=app.config.get("FORECAST_JOB_ATTEMPTS", 3),
        default_backoff_ms=app.config.get("FORECAST_JOB_BACKOFF_MS", 5000),
        keep_finished=app.config.get("FORECAST_KEEP_FINISHED_JOBS", 1000),
    )


def get_forecast_queue(app: Flask | None = None) -> ForecastQueue:
    """Return the app's queue, creating it on first use."""
    app = app or current_app._get_current_object()
    queue = app.extensions.get("forecast_queue")
    if queue is None:
        queue = create_forecast_queue(app)
        app.extensions["forecast_queue"] = queue
    return queue


def close_forecast_queue(app: Flask) -> None:
    queue = app.extensions.pop("forecast_queue", None)
    if queue is not None:
        queue.close()


# ── Enqueue helpers ──────────────────────────────────────────────────────────

def enqueue_single_case_forecast(repository_case_id: int, queue: ForecastQueue | None = None) -> QueuedJob:
    """Queue a forecast refresh for one case's link group."""
    queue = queue or get_forecast_queue()
    return queue.add(JOB_UPDATE_SINGLE_CASE, {"repositoryCaseId": repository_case_id})


def enqueue_full_forecast(queue: ForecastQueue | None = None) -> QueuedJob:
    """Queue a forecast refresh of the whole active corpus."""
    queue = queue or get_forecast_queue()
    return queue.add(JOB_UPDATE_ALL_CASES, {})
