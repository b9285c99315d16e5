"""
Flask CLI commands.

    flask forecast worker              run the forecast worker until SIGTERM/SIGINT
    flask forecast enqueue-case ID     queue a refresh for one case's link group
    flask forecast enqueue-all         queue a full sweep
    flask forecast recompute-case ID   refresh one link group inline (no queue)
    flask forecast recompute-run ID    recompute one test run inline (no queue)
    flask forecast queue-status        print job counts per state
    flask scheduler list               list scheduled jobs and their last run
    flask scheduler run NAME           run one scheduled job now
    flask scheduler tick               run every job whose schedule is due (call each minute)
    flask scheduler pause NAME         stop the tick from running NAME
    flask scheduler resume NAME        let the tick run NAME again
"""

import json
import sys

import click
from flask import Flask

from app.core.exceptions import NotFoundError, QueueUnavailableError


def _echo_json(payload) -> None:
    click.echo(json.dumps(payload, indent=2, default=str))


def register_cli(app: Flask) -> None:
    """Attach the ``forecast`` and ``scheduler`` command groups to *app*."""

    # ── forecast ─────────────────────────────────────────────────────────
    @app.cli.group("forecast")
    def forecast_cli():
        """Forecast queue and worker commands."""

    @forecast_cli.command("worker")
    def worker_cmd():
        """Run the forecast worker."""
        from app.services.forecast_worker import start_worker
        sys.exit(start_worker(app))

    @forecast_cli.command("enqueue-case")
    @click.argument("case_id", type=int)
    def enqueue_case_cmd(case_id):
        """Queue a forecast refresh for CASE_ID."""
        from app.services.forecast_queue import enqueue_single_case_forecast
        try:
            job = enqueue_single_case_forecast(case_id)
        except QueueUnavailableError as exc:
            raise click.ClickException(str(exc))
        click.echo(f"Queued job {job.id} ({job.name}) for case {case_id}")

    @forecast_cli.command("enqueue-all")
    def enqueue_all_cmd():
        """Queue a refresh of every active case."""
        from app.services.forecast_queue import enqueue_full_forecast
        try:
            job = enqueue_full_forecast()
        except QueueUnavailableError as exc:
            raise click.ClickException(str(exc))
        click.echo(f"Queued job {job.id} ({job.name})")

    @forecast_cli.command("recompute-case")
    @click.argument("case_id", type=int)
    def recompute_case_cmd(case_id):
        """Refresh CASE_ID's link group and its open runs now."""
        from app.services.forecast_service import update_repository_case_forecast
        _echo_json(update_repository_case_forecast(case_id))

    @forecast_cli.command("recompute-run")
    @click.argument("test_run_id", type=int)
    def recompute_run_cmd(test_run_id):
        """Recompute TEST_RUN_ID's forecast now."""
        from app.services.forecast_service import update_test_run_forecast
        try:
            _echo_json(update_test_run_forecast(test_run_id))
        except NotFoundError as exc:
            raise click.ClickException(str(exc))

    @forecast_cli.command("queue-status")
    def queue_status_cmd():
        """Print job counts per state."""
        from app.services.forecast_queue import get_forecast_queue
        try:
            queue = get_forecast_queue(app)
        except QueueUnavailableError as exc:
            raise click.ClickException(str(exc))
        _echo_json({"queue": queue.name, "counts": queue.counts()})

    # ── scheduler ────────────────────────────────────────────────────────
    @app.cli.group("scheduler")
    def scheduler_cli():
        """Scheduled job commands."""

    @scheduler_cli.command("list")
    def scheduler_list_cmd():
        """List scheduled jobs."""
        from app.services.scheduler_service import SchedulerService
        SchedulerService.ensure_jobs_registered()
        _echo_json(SchedulerService.list_jobs())

    @scheduler_cli.command("run")
    @click.argument("job_name")
    def scheduler_run_cmd(job_name):
        """Run JOB_NAME now."""
        from app.services.scheduler_service import SchedulerService
        SchedulerService.ensure_jobs_registered()
        result = SchedulerService.run_job(job_name)
        _echo_json(result)
        if result["status"] in ("error", "failed"):
            sys.exit(1)

    @scheduler_cli.command("tick")
    def scheduler_tick_cmd():
        """Run every job whose schedule is due."""
        from app.services.scheduler_service import SchedulerService
        results = SchedulerService.run_due_jobs()
        _echo_json(results)
        if any(r["status"] in ("error", "failed") for r in results):
            sys.exit(1)

    @scheduler_cli.command("pause")
    @click.argument("job_name")
    def scheduler_pause_cmd(job_name):
        """Pause JOB_NAME."""
        _toggle(job_name, False)

    @scheduler_cli.command("resume")
    @click.argument("job_name")
    def scheduler_resume_cmd(job_name):
        """Resume JOB_NAME."""
        _toggle(job_name, True)

    def _toggle(job_name, enabled):
        from app.services.scheduler_service import SchedulerService
        SchedulerService.ensure_jobs_registered()
        record = SchedulerService.toggle_job(job_name, enabled)
        if record is None:
            raise click.ClickException(f"Unknown scheduled job: {job_name}")
        _echo_json(record)
