"""
Shared pytest fixtures for the forecast engine test suite.

Provides:
    - app: Flask application (session-scoped)
    - _setup_db: Database table creation/teardown (session-scoped)
    - session: Per-test DB cleanup w/ rollback + recreate (autouse)
    - queue: ForecastQueue on an in-process fake Redis, installed on the app
    - statuses: the workflow status catalogue keyed by system name
"""

import fakeredis
import pytest

from app import create_app
from app.models import db as _db
from app.services.forecast_queue import ForecastQueue


# ── App & DB fixtures ────────────────────────────────────────────────────


@pytest.fixture(scope="session")
def app():
    """Create the Flask application once per test session."""
    application = create_app("testing")
    return application


@pytest.fixture(scope="session")
def _setup_db(app):
    """Create all tables at session start, drop at end."""
    with app.app_context():
        _db.create_all()
    yield
    with app.app_context():
        _db.drop_all()


@pytest.fixture(autouse=True)
def session(app, _setup_db):
    """Per-test: open app context, rollback after test, recreate tables."""
    with app.app_context():
        yield
        _db.session.rollback()
        _db.drop_all()
        _db.create_all()


# ── Queue fixtures ───────────────────────────────────────────────────────


@pytest.fixture()
def redis_client():
    client = fakeredis.FakeRedis(decode_responses=True)
    yield client
    client.flushall()


@pytest.fixture()
def queue(app, redis_client):
    """ForecastQueue backed by fakeredis, returned by get_forecast_queue()."""
    q = ForecastQueue(
        redis_client,
        app.config["FORECAST_QUEUE_NAME"],
        prefix=app.config["FORECAST_QUEUE_PREFIX"],
        default_attempts=app.config["FORECAST_JOB_ATTEMPTS"],
        default_backoff_ms=app.config["FORECAST_JOB_BACKOFF_MS"],
    )
    app.extensions["forecast_queue"] = q
    yield q
    app.extensions.pop("forecast_queue", None)


# ── Convenience fixtures ─────────────────────────────────────────────────


@pytest.fixture()
def statuses():
    """Create the status catalogue and return it keyed by system name."""
    from app.models.testing import WorkflowStatus

    catalogue = {}
    for system_name, is_success in (("UNTESTED", False), ("PASSED", True),
                                    ("FAILED", False), ("BLOCKED", False)):
        status = WorkflowStatus(name=system_name.title(), system_name=system_name,
                                is_success=is_success)
        _db.session.add(status)
        catalogue[system_name] = status
    _db.session.flush()
    return catalogue
