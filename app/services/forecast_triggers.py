"""
Enqueue-on-write: queue a forecast refresh whenever duration data changes.

Watched writes:
    - TestRunResult      insert / delete / change of elapsed, soft-delete flag
    - JUnitTestResult    insert / delete / change of time or case
    - RepositoryCaseLink insert / delete / change of type, ends, soft-delete flag
    - RepositoryCase     change of source

Affected case ids are collected in ``session.info`` during flush and one
``update-single-case-forecast`` job per distinct id is enqueued after the
transaction commits. A rollback discards them. Enqueue failures are logged
and never reach the writer.
"""

import logging

from sqlalchemy import event, inspect, select
from sqlalchemy.orm import Session

from app.core.exceptions import QueueUnavailableError
from app.models.testing import (
    JUnitTestResult,
    RepositoryCase,
    RepositoryCaseLink,
    TestRunCase,
    TestRunResult,
)
from app.services.forecast_queue import enqueue_single_case_forecast, get_forecast_queue

logger = logging.getLogger(__name__)

_PENDING_KEY = "forecast_pending_case_ids"

# attributes whose change alters a case's duration samples or link group
_WATCHED_ATTRS = {
    TestRunResult: ("elapsed", "is_deleted", "test_run_case_id"),
    JUnitTestResult: ("time", "repository_case_id"),
    RepositoryCaseLink: ("type", "is_deleted", "case_a_id", "case_b_id"),
    RepositoryCase: ("source",),
}
_CASE_FK_ATTRS = {
    JUnitTestResult: ("repository_case_id",),
    RepositoryCaseLink: ("case_a_id", "case_b_id"),
}


def _changed(obj) -> bool:
    state = inspect(obj)
    return any(state.attrs[attr].history.has_changes() for attr in _WATCHED_ATTRS[type(obj)])


def _previous_case_ids(obj) -> set[int]:
    state = inspect(obj)
    ids = set()
    for attr in _CASE_FK_ATTRS.get(type(obj), ()):
        ids.update(v for v in state.attrs[attr].history.deleted if v is not None)
    return ids


def _case_ids_for(session: Session, obj) -> set[int]:
    if isinstance(obj, TestRunResult):
        if obj.test_run_case_id is None:
            return set()
        case_id = session.execute(
            select(TestRunCase.repository_case_id).where(TestRunCase.id == obj.test_run_case_id)
        ).scalar()
        return {case_id} if case_id is not None else set()
    if isinstance(obj, JUnitTestResult):
        return {obj.repository_case_id}
    if isinstance(obj, RepositoryCaseLink):
        return {obj.case_a_id, obj.case_b_id}
    if isinstance(obj, RepositoryCase):
        return {obj.id}
    return set()


# ── Session listeners ────────────────────────────────────────────────────────

def _collect_after_flush(session, flush_context):
    pending = session.info.setdefault(_PENDING_KEY, set())
    for obj in session.new:
        if type(obj) in _WATCHED_ATTRS and not isinstance(obj, RepositoryCase):
            pending.update(_case_ids_for(session, obj))
    for obj in session.dirty:
        if type(obj) in _WATCHED_ATTRS and _changed(obj):
            pending.update(_case_ids_for(session, obj))
            pending.update(_previous_case_ids(obj))
    for obj in session.deleted:
        if type(obj) in _WATCHED_ATTRS and not isinstance(obj, RepositoryCase):
            pending.update(_case_ids_for(session, obj))
    pending.discard(None)


def _enqueue_after_commit(session):
    case_ids = session.info.pop(_PENDING_KEY, None)
    if not case_ids:
        return
    try:
        queue = get_forecast_queue()
    except QueueUnavailableError as exc:
        logger.warning("Forecast refresh for cases %s not queued: %s", sorted(case_ids), exc)
        return

    for case_id in sorted(case_ids):
        try:
            enqueue_single_case_forecast(case_id, queue)
        except Exception:
            logger.exception("Failed to queue forecast refresh for case %s", case_id,
                             extra={"case_id": case_id})


def _discard_after_rollback(session):
    session.info.pop(_PENDING_KEY, None)


_LISTENERS = (
    ("after_flush", _collect_after_flush),
    ("after_commit", _enqueue_after_commit),
    ("after_rollback", _discard_after_rollback),
)


def register_forecast_triggers():
    """Attach the enqueue-on-write listeners to every ORM session (idempotent)."""
    for identifier, fn in _LISTENERS:
        if not event.contains(Session, identifier, fn):
            event.listen(Session, identifier, fn)
    logger.debug("Forecast enqueue-on-write listeners registered")


def unregister_forecast_triggers():
    for identifier, fn in _LISTENERS:
        if event.contains(Session, identifier, fn):
            event.remove(Session, identifier, fn)
