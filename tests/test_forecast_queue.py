"""
Tests — forecast job queue (fakeredis).

Covers:
    1. Producer side (add, enqueue helpers)
    2. Consumer side (fetch, complete, fail, retry with backoff)
    3. Retention and events
    4. App wiring (create / get / close)
"""

from unittest.mock import MagicMock

import pytest

from app.core.exceptions import QueueUnavailableError
from app.services import forecast_queue as fq
from app.services.forecast_queue import ForecastQueue


# ═══════════════════════════════════════════════════════════════════════════
#  TEST CLASS 1: Producer side
# ═══════════════════════════════════════════════════════════════════════════

class TestQueueProducer:
    """Tests for ForecastQueue.add and the enqueue helpers."""

    def test_add_stores_queued_job(self, queue):
        job = queue.add(fq.JOB_UPDATE_SINGLE_CASE, {"repositoryCaseId": 7})

        stored = queue.get_job(job.id)
        assert stored.name == fq.JOB_UPDATE_SINGLE_CASE
        assert stored.data == {"repositoryCaseId": 7}
        assert stored.state == "queued"
        assert stored.max_attempts == 3
        assert queue.counts()["queued"] == 1

    def test_job_ids_increase(self, queue):
        first = queue.add(fq.JOB_UPDATE_ALL_CASES)
        second = queue.add(fq.JOB_UPDATE_ALL_CASES)
        assert int(second.id) == int(first.id) + 1

    def test_enqueue_single_case_payload(self, queue):
        job = fq.enqueue_single_case_forecast(42)
        assert job.name == "update-single-case-forecast"
        assert queue.get_job(job.id).data == {"repositoryCaseId": 42}

    def test_enqueue_full_forecast(self, queue):
        job = fq.enqueue_full_forecast()
        assert job.name == "update-all-cases-forecast"
        assert queue.get_job(job.id).data == {}

    def test_keys_use_prefix_and_name(self, queue, redis_client):
        job = queue.add(fq.JOB_UPDATE_ALL_CASES)
        assert redis_client.exists(f"queue:forecast-updates:job:{job.id}")
        assert redis_client.llen("queue:forecast-updates:wait") == 1


# ═══════════════════════════════════════════════════════════════════════════
#  TEST CLASS 2: Consumer side
# ═══════════════════════════════════════════════════════════════════════════

class TestQueueConsumer:
    """Tests for fetch_next / complete / fail."""

    def test_fetch_is_fifo_and_marks_running(self, queue):
        first = queue.add(fq.JOB_UPDATE_SINGLE_CASE, {"repositoryCaseId": 1})
        queue.add(fq.JOB_UPDATE_SINGLE_CASE, {"repositoryCaseId": 2})

        job = queue.fetch_next()

        assert job.id == first.id
        assert job.state == "running"
        assert job.attempts_made == 1
        assert job.processed_on is not None
        assert queue.counts()["running"] == 1
        assert queue.counts()["queued"] == 1

    def test_fetch_empty_returns_none(self, queue):
        assert queue.fetch_next() is None

    @pytest.mark.parametrize("raw_data", ["{not json", "[1, 2]"])
    def test_malformed_job_data_fails_job(self, queue, redis_client, raw_data):
        bad = queue.add(fq.JOB_UPDATE_SINGLE_CASE, {"repositoryCaseId": 1})
        redis_client.hset(queue._job_key(bad.id), "data", raw_data)

        assert queue.fetch_next() is None

        stored = redis_client.hgetall(queue._job_key(bad.id))
        assert stored["state"] == "failed"
        assert stored["failed_reason"].startswith("Malformed job data")
        assert queue.counts() == {"queued": 0, "running": 0, "delayed": 0,
                                  "completed": 0, "failed": 1}

    def test_malformed_job_does_not_block_next(self, queue, redis_client):
        bad = queue.add(fq.JOB_UPDATE_SINGLE_CASE, {"repositoryCaseId": 1})
        good = queue.add(fq.JOB_UPDATE_SINGLE_CASE, {"repositoryCaseId": 2})
        redis_client.hset(queue._job_key(bad.id), "data", "{not json")

        assert queue.fetch_next() is None
        job = queue.fetch_next()
        assert job.id == good.id
        assert job.data == {"repositoryCaseId": 2}

    def test_complete_records_result(self, queue):
        queue.add(fq.JOB_UPDATE_ALL_CASES)
        job = queue.fetch_next()

        queue.complete(job, {"status": "completed", "successCount": 3, "failCount": 0})

        stored = queue.get_job(job.id)
        assert stored.state == "completed"
        assert stored.return_value["successCount"] == 3
        assert stored.finished_on is not None
        assert queue.counts() == {"queued": 0, "running": 0, "delayed": 0,
                                  "completed": 1, "failed": 0}

    def test_fail_without_backoff_requeues(self, queue):
        queue.add(fq.JOB_UPDATE_ALL_CASES)
        job = queue.fetch_next()

        state = queue.fail(job, RuntimeError("db down"))

        assert state == "queued"
        retried = queue.fetch_next()
        assert retried.id == job.id
        assert retried.attempts_made == 2
        assert retried.failed_reason == "db down"

    def test_fail_with_backoff_delays_exponentially(self, redis_client, monkeypatch):
        q = ForecastQueue(redis_client, "backoff", default_attempts=3, default_backoff_ms=5000)
        monkeypatch.setattr(fq, "_now_ms", lambda: 1_000_000)
        q.add(fq.JOB_UPDATE_ALL_CASES)

        job = q.fetch_next()
        assert q.fail(job, "boom") == "delayed"
        assert redis_client.zscore("queue:backoff:delayed", job.id) == 1_005_000
        assert q.fetch_next() is None

        monkeypatch.setattr(fq, "_now_ms", lambda: 1_005_000)
        job = q.fetch_next()
        assert job.attempts_made == 2
        assert q.fail(job, "boom") == "delayed"
        assert redis_client.zscore("queue:backoff:delayed", job.id) == 1_015_000

    def test_attempts_exhausted_ends_failed(self, queue):
        queue.add(fq.JOB_UPDATE_ALL_CASES, attempts=2)
        job = queue.fetch_next()
        queue.fail(job, "first")
        job = queue.fetch_next()

        assert queue.fail(job, "second") == "failed"
        assert queue.get_job(job.id).state == "failed"
        assert queue.counts()["failed"] == 1
        assert queue.fetch_next() is None

    def test_fail_without_retry(self, queue):
        queue.add(fq.JOB_UPDATE_SINGLE_CASE, {})
        job = queue.fetch_next()

        assert queue.fail(job, "bad payload", retry=False) == "failed"
        assert queue.counts()["queued"] == 0


# ═══════════════════════════════════════════════════════════════════════════
#  TEST CLASS 3: Retention and events
# ═══════════════════════════════════════════════════════════════════════════

class TestQueueHousekeeping:
    """Tests for finished-job trimming and event callbacks."""

    def test_completed_jobs_trimmed(self, redis_client):
        q = ForecastQueue(redis_client, "trim", keep_finished=2)
        ids = []
        for _ in range(3):
            q.add(fq.JOB_UPDATE_ALL_CASES)
            job = q.fetch_next()
            q.complete(job, {})
            ids.append(job.id)

        assert q.counts()["completed"] == 2
        assert q.get_job(ids[0]) is None
        assert q.get_job(ids[2]) is not None

    def test_emit_calls_handlers(self, queue):
        handler = MagicMock()
        queue.on("completed", handler)
        queue.emit("completed", "job", {"ok": True})
        handler.assert_called_once_with("job", {"ok": True})

    def test_failing_handler_does_not_propagate(self, queue):
        after = MagicMock()
        queue.on("failed", MagicMock(side_effect=RuntimeError("handler bug")))
        queue.on("failed", after)

        queue.emit("failed", "job", "err")

        after.assert_called_once()

    def test_ping(self, queue):
        assert queue.ping() is True


# ═══════════════════════════════════════════════════════════════════════════
#  TEST CLASS 4: App wiring
# ═══════════════════════════════════════════════════════════════════════════

class TestQueueWiring:
    """Tests for create_forecast_queue / get_forecast_queue / close_forecast_queue."""

    def test_missing_redis_url_raises(self, app):
        assert app.config["REDIS_URL"] is None
        with pytest.raises(QueueUnavailableError):
            fq.create_forecast_queue(app)

    def test_create_with_client_uses_config(self, app, redis_client):
        q = fq.create_forecast_queue(app, client=redis_client)
        assert q.name == "forecast-updates"
        assert q.prefix == "queue"
        assert q.default_attempts == 3

    def test_get_returns_installed_queue(self, app, queue):
        assert fq.get_forecast_queue(app) is queue
        assert fq.get_forecast_queue() is queue

    def test_close_drops_queue(self, app, redis_client):
        q = fq.create_forecast_queue(app, client=redis_client)
        app.extensions["forecast_queue"] = q
        fq.close_forecast_queue(app)
        assert "forecast_queue" not in app.extensions
