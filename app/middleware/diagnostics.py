"""
Startup diagnostics — runs once before the forecast worker starts.

Checks the store and the queue and logs a summary banner.
"""

import logging
import sys

from flask import Flask

from app.models import db

logger = logging.getLogger(__name__)


def run_startup_diagnostics(app: Flask, queue=None) -> list[str]:
    """Check database and queue reachability; return the list of issues found."""
    issues: list[str] = []

    with app.app_context():
        py = f"{sys.version_info.major}.{sys.version_info.minor}.{sys.version_info.micro}"

        # ── Database connectivity ────────────────────────────────────
        db_status = "ok"
        db_uri = str(app.config.get("SQLALCHEMY_DATABASE_URI", ""))
        db_type = "PostgreSQL" if "postgresql" in db_uri else "SQLite" if "sqlite" in db_uri else "unknown"
        try:
            db.session.execute(db.text("SELECT 1"))
        except Exception as exc:
            db_status = f"FAILED ({exc})"
            issues.append(f"Database unreachable: {exc}")

        # ── Queue connectivity ───────────────────────────────────────
        queue_status = "not configured"
        if queue is not None:
            try:
                queue.ping()
                queue_status = f"ok ({queue.name})"
            except Exception as exc:
                queue_status = f"FAILED ({exc})"
                issues.append(f"Queue unreachable: {exc}")

    logger.info(
        "Startup diagnostics: python=%s db=%s/%s queue=%s concurrency=%s",
        py, db_type, db_status, queue_status,
        app.config.get("FORECAST_WORKER_CONCURRENCY"),
    )
    for issue in issues:
        logger.warning("Startup issue: %s", issue)
    return issues
