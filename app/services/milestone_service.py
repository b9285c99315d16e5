"""
Test Forecast Engine
Milestone housekeeping jobs, processed by the forecast worker.

Jobs:
    - auto_complete_milestones:    closes automatic-completion milestones
                                   whose due date has passed
    - send_milestone_due_notifications: notifies everyone who worked on a
                                   milestone that is due soon or overdue

Due date: a milestone keeps its planned due date in ``completed_at``.
"""

from __future__ import annotations

import logging
import math
from datetime import datetime, timezone

from app.models import db
from app.models.notification import Notification
from app.models.testing import Milestone, TestRun, TestRunCase, TestRunResult

logger = logging.getLogger(__name__)

_SECONDS_PER_DAY = 24 * 60 * 60


def _as_aware(dt: datetime) -> datetime:
    """SQLite returns naive datetimes; treat them as UTC."""
    return dt if dt.tzinfo else dt.replace(tzinfo=timezone.utc)


# ═══════════════════════════════════════════════════════════════════════════
#  Auto-complete
# ═══════════════════════════════════════════════════════════════════════════

def auto_complete_milestones(now: datetime | None = None) -> dict:
    """Mark due automatic-completion milestones as completed."""
    now = now or datetime.now(timezone.utc)
    results = {"milestones_found": 0, "success_count": 0, "fail_count": 0}

    milestones = Milestone.query.filter(
        Milestone.is_completed.is_(False),
        Milestone.not_deleted(),
        Milestone.automatic_completion.is_(True),
        Milestone.completed_at.isnot(None),
    ).all()
    due = [m for m in milestones if _as_aware(m.completed_at) <= now]
    results["milestones_found"] = len(due)

    for milestone in due:
        try:
            milestone.is_completed = True
            db.session.commit()
            results["success_count"] += 1
            logger.info("Auto-completed milestone %r (id=%s)", milestone.name, milestone.id)
        except Exception:
            db.session.rollback()
            results["fail_count"] += 1
            logger.exception("Failed to auto-complete milestone %s", milestone.id)

    return results


# ═══════════════════════════════════════════════════════════════════════════
#  Due-date notifications
# ═══════════════════════════════════════════════════════════════════════════

def _days_until(due: datetime, now: datetime) -> int:
    return math.ceil((_as_aware(due) - now).total_seconds() / _SECONDS_PER_DAY)


def collect_milestone_participants(milestone: Milestone) -> set[str]:
    """
    Everyone who took part in a milestone: its creator, creators of its
    runs, users assigned to run cases and users who recorded results.
    """
    participants: set[str] = set()
    if milestone.created_by:
        participants.add(milestone.created_by)

    runs = TestRun.query.filter(
        TestRun.milestone_id == milestone.id,
        TestRun.not_deleted(),
    ).all()
    run_ids = [r.id for r in runs]
    participants.update(r.created_by for r in runs if r.created_by)
    if not run_ids:
        return participants

    assignees = db.session.query(TestRunCase.assigned_to).filter(
        TestRunCase.test_run_id.in_(run_ids),
        TestRunCase.assigned_to.isnot(None),
    ).distinct()
    participants.update(a for (a,) in assignees if a)

    executors = db.session.query(TestRunResult.executed_by).join(
        TestRunCase, TestRunResult.test_run_case_id == TestRunCase.id,
    ).filter(
        TestRunCase.test_run_id.in_(run_ids),
        TestRunResult.executed_by.isnot(None),
    ).distinct()
    participants.update(e for (e,) in executors if e)
    return participants


def create_milestone_due_notification(user_id: str, milestone: Milestone, due: datetime,
                                      is_overdue: bool) -> Notification:
    when = due.date().isoformat()
    if is_overdue:
        title = f"Milestone {milestone.name} is overdue"
        message = f"{milestone.name} in {milestone.project_name or 'your project'} was due on {when}."
    else:
        title = f"Milestone {milestone.name} is due soon"
        message = f"{milestone.name} in {milestone.project_name or 'your project'} is due on {when}."
    notification = Notification(
        recipient=user_id,
        title=title,
        message=message,
        category="milestone",
        severity="warning" if is_overdue else "info",
        entity_type="milestone",
        entity_id=milestone.id,
    )
    db.session.add(notification)
    db.session.flush()
    return notification


def send_milestone_due_notifications(now: datetime | None = None) -> dict:
    """
    Notify participants of open milestones that are overdue or within
    ``notify_days_before`` days of their due date.
    """
    now = now or datetime.now(timezone.utc)
    results = {"milestones_checked": 0, "success_count": 0, "fail_count": 0}

    milestones = Milestone.query.filter(
        Milestone.is_completed.is_(False),
        Milestone.not_deleted(),
        Milestone.notify_days_before > 0,
        Milestone.completed_at.isnot(None),
    ).all()

    for milestone in milestones:
        results["milestones_checked"] += 1
        days_diff = _days_until(milestone.completed_at, now)
        is_overdue = days_diff < 0
        if not is_overdue and days_diff > milestone.notify_days_before:
            continue

        participants = collect_milestone_participants(milestone)
        if not participants:
            logger.info("Milestone %s: no participants, skipping notifications", milestone.id)
            continue

        for user_id in sorted(participants):
            try:
                create_milestone_due_notification(
                    user_id, milestone, _as_aware(milestone.completed_at), is_overdue,
                )
                db.session.commit()
                results["success_count"] += 1
            except Exception:
                db.session.rollback()
                results["fail_count"] += 1
                logger.exception("Failed to notify %s about milestone %s", user_id, milestone.id)

    logger.info("Milestone due notifications: %s", results)
    return results
