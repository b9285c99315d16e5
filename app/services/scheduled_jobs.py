"""
Test Forecast Engine
Scheduled Jobs — periodic enqueues for the forecast worker.

Jobs:
    - forecast_full_sweep: queues a refresh of every active case and open run
    - milestone_auto_complete: queues the milestone auto-completion job
    - milestone_due_notifications: queues the milestone due-date reminder job
"""

from __future__ import annotations

import logging
from typing import Any

from app.services.forecast_queue import (
    JOB_AUTO_COMPLETE_MILESTONES,
    JOB_MILESTONE_DUE_NOTIFICATIONS,
    enqueue_full_forecast,
    get_forecast_queue,
)
from app.services.scheduler_service import register_job

logger = logging.getLogger(__name__)


# ═══════════════════════════════════════════════════════════════════════════
#  Job 1: Full forecast sweep
# ═══════════════════════════════════════════════════════════════════════════

@register_job("forecast_full_sweep")
def schedule_full_sweep(app) -> dict[str, Any]:
    """Queue a forecast refresh for every active case and open test run."""
    job = enqueue_full_forecast(get_forecast_queue(app))
    results = {"queued_job_id": job.id, "job_name": job.name}
    logger.info("Forecast full sweep: %s", results)
    return results


# ═══════════════════════════════════════════════════════════════════════════
#  Job 2: Milestone auto-completion
# ═══════════════════════════════════════════════════════════════════════════

@register_job("milestone_auto_complete")
def schedule_milestone_auto_complete(app) -> dict[str, Any]:
    """Queue auto-completion of milestones past their due date."""
    job = get_forecast_queue(app).add(JOB_AUTO_COMPLETE_MILESTONES, {})
    results = {"queued_job_id": job.id, "job_name": job.name}
    logger.info("Milestone auto-complete: %s", results)
    return results


# ═══════════════════════════════════════════════════════════════════════════
#  Job 3: Milestone due notifications
# ═══════════════════════════════════════════════════════════════════════════

@register_job("milestone_due_notifications")
def schedule_milestone_due_notifications(app) -> dict[str, Any]:
    """Queue reminders for milestones that are due soon or overdue."""
    job = get_forecast_queue(app).add(JOB_MILESTONE_DUE_NOTIFICATIONS, {})
    results = {"queued_job_id": job.id, "job_name": job.name}
    logger.info("Milestone due notifications: %s", results)
    return results
