"""
Tests — forecast worker.

Covers:
    1. Job dispatch and payload validation
    2. Full sweep counters
    3. Worker outcome recording (complete / retry / reject)
    4. Worker loop, rate limit and shutdown
    5. Startup refusal without a queue
"""

import logging
import signal
import threading
import time
from unittest.mock import MagicMock, patch

import pytest

from app.core.exceptions import InvalidJobPayloadError, UnknownJobError
from app.models import db
from app.models import testing as tm
from app.services import forecast_queue as fq
from app.services import forecast_worker as fw
from app.services.forecast_queue import QueuedJob


def _job(name, data=None, job_id="1"):
    return QueuedJob(id=job_id, name=name, data=data if data is not None else {})


def _create_case(name="Case", source=tm.CASE_SOURCE_MANUAL, **kwargs):
    case = tm.RepositoryCase(name=name, source=source, **kwargs)
    db.session.add(case)
    db.session.flush()
    return case


def _create_run(name="Run", is_completed=False):
    run = tm.TestRun(name=name, is_completed=is_completed)
    db.session.add(run)
    db.session.flush()
    return run


def _add_run_case(run, case, elapsed=None):
    run_case = tm.TestRunCase(test_run_id=run.id, repository_case_id=case.id)
    db.session.add(run_case)
    db.session.flush()
    if elapsed is not None:
        db.session.add(tm.TestRunResult(test_run_case_id=run_case.id, elapsed=elapsed))
        db.session.flush()
    return run_case


def _wait_for(predicate, timeout=5.0):
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(0.02)
    return False


# ═══════════════════════════════════════════════════════════════════════════
#  TEST CLASS 1: Dispatch and validation
# ═══════════════════════════════════════════════════════════════════════════

class TestProcessJob:
    """Tests for process_job dispatch."""

    def test_handlers_registered_for_every_job_name(self):
        assert set(fw.get_job_handlers()) == {
            fq.JOB_UPDATE_SINGLE_CASE, fq.JOB_UPDATE_ALL_CASES,
            fq.JOB_AUTO_COMPLETE_MILESTONES, fq.JOB_MILESTONE_DUE_NOTIFICATIONS,
        }

    def test_empty_payload_rejected_before_store_access(self):
        case = _create_case(forecast_manual=5)
        db.session.commit()

        with patch.object(fw, "update_repository_case_forecast") as update:
            with pytest.raises(InvalidJobPayloadError) as exc_info:
                fw.process_job(_job(fq.JOB_UPDATE_SINGLE_CASE, {}, job_id="17"))

        update.assert_not_called()
        assert exc_info.value.job_id == "17"
        assert db.session.get(tm.RepositoryCase, case.id).forecast_manual == 5

    @pytest.mark.parametrize("bad_id", ["42", None, True, 4.5, [1]])
    def test_non_numeric_case_id_rejected(self, bad_id):
        with pytest.raises(InvalidJobPayloadError):
            fw.process_job(_job(fq.JOB_UPDATE_SINGLE_CASE, {"repositoryCaseId": bad_id}))

    def test_single_case_job_runs_group_update(self):
        with patch.object(fw, "update_repository_case_forecast",
                          return_value={"updated_case_ids": [3, 4], "affected_test_run_ids": []}) as update:
            result = fw.process_job(_job(fq.JOB_UPDATE_SINGLE_CASE, {"repositoryCaseId": 3.0}))

        update.assert_called_once_with(3)
        assert result == {"status": "completed", "successCount": 1, "failCount": 0,
                          "updatedCaseIds": [3, 4]}

    def test_single_case_failure_propagates(self):
        with patch.object(fw, "update_repository_case_forecast", side_effect=RuntimeError("db gone")):
            with pytest.raises(RuntimeError, match="db gone"):
                fw.process_job(_job(fq.JOB_UPDATE_SINGLE_CASE, {"repositoryCaseId": 1}))

    def test_unknown_job_name(self):
        with pytest.raises(UnknownJobError):
            fw.process_job(_job("rebuild-everything"))

    def test_milestone_jobs_dispatch(self):
        with patch.object(fw, "auto_complete_milestones",
                          return_value={"milestones_found": 2, "success_count": 2, "fail_count": 0}):
            result = fw.process_job(_job(fq.JOB_AUTO_COMPLETE_MILESTONES))
        assert result == {"status": "completed", "successCount": 2, "failCount": 0}

        with patch.object(fw, "send_milestone_due_notifications",
                          return_value={"milestones_checked": 1, "success_count": 3, "fail_count": 1}):
            result = fw.process_job(_job(fq.JOB_MILESTONE_DUE_NOTIFICATIONS))
        assert result == {"status": "completed", "successCount": 3, "failCount": 1}


# ═══════════════════════════════════════════════════════════════════════════
#  TEST CLASS 2: Full sweep
# ═══════════════════════════════════════════════════════════════════════════

class TestFullSweep:
    """Tests for the update-all-cases-forecast handler."""

    def _corpus(self):
        manual = _create_case("Login")
        junit = _create_case("test_login", tm.CASE_SOURCE_JUNIT)
        db.session.add(tm.RepositoryCaseLink(case_a_id=manual.id, case_b_id=junit.id))
        db.session.add(tm.JUnitTestResult(repository_case_id=junit.id, time=2.5))
        lonely = _create_case("Logout")

        history = _create_run("History", is_completed=True)
        _add_run_case(history, manual, elapsed=30)
        _add_run_case(history, lonely, elapsed=10)
        open_run = _create_run("Open")
        _add_run_case(open_run, manual)
        _add_run_case(open_run, lonely)
        db.session.commit()
        return manual, junit, lonely, history, open_run

    def test_sweep_updates_cases_and_open_runs(self):
        manual, junit, lonely, history, open_run = self._corpus()

        result = fw.process_job(_job(fq.JOB_UPDATE_ALL_CASES))

        assert result == {
            "status": "completed",
            "successCount": 2,
            "failCount": 0,
            "testRunSuccessCount": 1,
            "testRunFailCount": 0,
            "skippedCompletedCount": 1,
        }
        assert db.session.get(tm.RepositoryCase, junit.id).forecast_manual == 30
        assert db.session.get(tm.RepositoryCase, manual.id).forecast_automated == 2.5
        run = db.session.get(tm.TestRun, open_run.id)
        assert run.forecast_manual == 40
        assert run.forecast_automated == 2.5
        assert db.session.get(tm.TestRun, history.id).forecast_manual is None

    def test_each_group_refreshed_once(self):
        self._corpus()
        with patch.object(fw, "update_repository_case_forecast",
                          wraps=fw.update_repository_case_forecast) as update:
            fw.process_job(_job(fq.JOB_UPDATE_ALL_CASES))
        assert update.call_count == 2

    def test_case_failure_counted_not_raised(self):
        manual, _junit, lonely, _history, _open_run = self._corpus()
        real_update = fw.update_repository_case_forecast

        def flaky(case_id, **kwargs):
            if case_id == lonely.id:
                raise RuntimeError("bad row")
            return real_update(case_id, **kwargs)

        with patch.object(fw, "update_repository_case_forecast", side_effect=flaky):
            result = fw.process_job(_job(fq.JOB_UPDATE_ALL_CASES))

        assert result["successCount"] == 1
        assert result["failCount"] == 1
        assert result["testRunSuccessCount"] == 1

    def test_run_failure_counted_not_raised(self):
        self._corpus()
        with patch.object(fw, "update_test_run_forecast", side_effect=RuntimeError("locked")):
            result = fw.process_job(_job(fq.JOB_UPDATE_ALL_CASES))
        assert result["testRunSuccessCount"] == 0
        assert result["testRunFailCount"] == 1

    def test_empty_corpus(self):
        result = fw.process_job(_job(fq.JOB_UPDATE_ALL_CASES))
        assert result["successCount"] == 0
        assert result["failCount"] == 0
        assert result["skippedCompletedCount"] == 0

    def test_enumeration_failure_fails_job(self):
        with patch.object(fw, "get_unique_case_group_ids", side_effect=ConnectionError("store down")):
            with pytest.raises(ConnectionError):
                fw.process_job(_job(fq.JOB_UPDATE_ALL_CASES))


# ═══════════════════════════════════════════════════════════════════════════
#  TEST CLASS 3: Outcome recording
# ═══════════════════════════════════════════════════════════════════════════

class TestWorkerOutcomes:
    """Tests for ForecastWorker.process via run_until_empty."""

    def test_successful_job_completed(self, app, queue):
        case = _create_case()
        db.session.commit()
        job = fq.enqueue_single_case_forecast(case.id)
        completed = MagicMock()
        queue.on("completed", completed)

        processed = fw.ForecastWorker(app, queue).run_until_empty()

        assert processed == 1
        stored = queue.get_job(job.id)
        assert stored.state == "completed"
        assert stored.return_value["successCount"] == 1
        completed.assert_called_once()

    def test_invalid_payload_not_retried(self, app, queue):
        job = queue.add(fq.JOB_UPDATE_SINGLE_CASE, {})

        processed = fw.ForecastWorker(app, queue).run_until_empty()

        assert processed == 1
        stored = queue.get_job(job.id)
        assert stored.state == "failed"
        assert stored.attempts_made == 1
        assert "repositoryCaseId" in stored.failed_reason

    def test_unknown_job_not_retried(self, app, queue):
        job = queue.add("no-such-job", {})
        fw.ForecastWorker(app, queue).run_until_empty()
        assert queue.get_job(job.id).state == "failed"
        assert queue.get_job(job.id).attempts_made == 1

    def test_transient_failure_retried_until_attempts_exhausted(self, app, queue, monkeypatch):
        failed = MagicMock()
        queue.on("failed", failed)
        monkeypatch.setattr(fw, "process_job", MagicMock(side_effect=RuntimeError("db gone")))
        job = fq.enqueue_full_forecast()

        processed = fw.ForecastWorker(app, queue).run_until_empty()

        assert processed == 3
        stored = queue.get_job(job.id)
        assert stored.state == "failed"
        assert stored.attempts_made == 3
        assert failed.call_count == 3


# ═══════════════════════════════════════════════════════════════════════════
#  TEST CLASS 4: Loop, rate limit, shutdown
# ═══════════════════════════════════════════════════════════════════════════

class TestWorkerLoop:
    """Tests for ForecastWorker.run and its limits."""

    def test_concurrency_and_rate_limit_from_config(self, app, queue):
        worker = fw.ForecastWorker(app, queue)
        assert worker.concurrency == 5
        assert worker._rate_item.amount == 100

    def test_rate_limit_blocks_extra_starts(self, app, queue):
        for case_id in range(3):
            fq.enqueue_single_case_forecast(case_id + 1)
        worker = fw.ForecastWorker(app, queue, rate_limit_max=2, poll_timeout=0)

        assert worker._next_job() is not None
        assert worker._next_job() is not None
        assert worker._limiter.test(worker._rate_item, queue.name) is False

    def test_run_processes_jobs_and_drains_on_stop(self, app, queue, monkeypatch):
        monkeypatch.setattr(fw, "process_job", lambda job: {"status": "completed"})
        for case_id in range(4):
            fq.enqueue_single_case_forecast(case_id + 1)
        worker = fw.ForecastWorker(app, queue, concurrency=2, poll_timeout=0)

        thread = threading.Thread(target=worker.run)
        thread.start()
        try:
            assert _wait_for(lambda: queue.counts()["completed"] == 4)
        finally:
            worker.stop()
            thread.join(timeout=5)

        assert not thread.is_alive()
        assert queue.counts()["running"] == 0

    def test_run_skips_malformed_job(self, app, queue, redis_client, monkeypatch):
        monkeypatch.setattr(fw, "process_job", lambda job: {"status": "completed"})
        bad = fq.enqueue_single_case_forecast(1)
        fq.enqueue_single_case_forecast(2)
        redis_client.hset(queue._job_key(bad.id), "data", "{not json")
        worker = fw.ForecastWorker(app, queue, concurrency=1, poll_timeout=0)

        thread = threading.Thread(target=worker.run)
        thread.start()
        try:
            assert _wait_for(lambda: queue.counts()["completed"] == 1)
        finally:
            worker.stop()
            thread.join(timeout=5)

        assert not thread.is_alive()
        assert queue.counts()["failed"] == 1
        assert queue.counts()["running"] == 0

    def test_unexpected_error_is_not_logged_as_graceful(self, app, queue, caplog):
        worker = fw.ForecastWorker(app, queue, poll_timeout=0)
        queue.fetch_next = MagicMock(side_effect=KeyError("state"))

        with caplog.at_level(logging.INFO, logger=fw.logger.name):
            with pytest.raises(KeyError):
                worker.run()

        messages = [record.getMessage() for record in caplog.records]
        assert "Forecast worker shut down gracefully" not in messages
        assert "Forecast worker stopped after an unexpected error" in messages

    def test_stop_is_logged_as_graceful(self, app, queue, caplog):
        worker = fw.ForecastWorker(app, queue, poll_timeout=0)
        worker.stop()

        with caplog.at_level(logging.INFO, logger=fw.logger.name):
            worker.run()

        assert "Forecast worker shut down gracefully" in [r.getMessage() for r in caplog.records]

    def test_signal_stops_worker(self, app, queue):
        worker = fw.ForecastWorker(app, queue)
        worker._handle_signal(signal.SIGTERM, None)
        assert worker.stopping is True


# ═══════════════════════════════════════════════════════════════════════════
#  TEST CLASS 5: Startup
# ═══════════════════════════════════════════════════════════════════════════

class TestStartWorker:
    """Tests for start_worker."""

    def test_refuses_to_start_without_queue_url(self, app):
        assert "forecast_queue" not in app.extensions
        assert fw.start_worker(app) == 1

    def test_refuses_to_start_when_queue_unreachable(self, app):
        broken = MagicMock()
        broken.name = "forecast-updates"
        broken.ping.side_effect = ConnectionError("refused")
        app.extensions["forecast_queue"] = broken
        try:
            assert fw.start_worker(app) == 1
        finally:
            app.extensions.pop("forecast_queue", None)
        broken.close.assert_called_once()

    def test_runs_until_stopped(self, app, queue, monkeypatch):
        monkeypatch.setattr(fw.ForecastWorker, "install_signal_handlers", lambda self: None)
        monkeypatch.setattr(fw.ForecastWorker, "run", lambda self: None)

        assert fw.start_worker(app) == 0
        assert "forecast_queue" not in app.extensions
