"""
Test Forecast Engine
Forecast propagation service.

Recomputes expected execution durations ("forecasts") for repository cases
and test runs.

Rules:
  - Cases joined by a non-deleted SAME_TEST_DIFFERENT_SOURCE link form one
    group; every case of a group carries the same forecast pair.
  - forecast_manual    = mean of manual result ``elapsed`` values > 0,
                         rounded to whole seconds (None without samples)
  - forecast_automated = mean of JUnit ``time`` values > 0, 3 decimals
                         (None without samples)
  - A run forecast is the sum over its pending cases (no status or
    UNTESTED). A channel is None when no pending case has a value for it;
    a run with nothing pending is cleared.

Usage:
    from app.services.forecast_service import (
        update_repository_case_forecast,
        update_test_run_forecast,
        get_unique_case_group_ids,
    )
"""

import logging
import math
from decimal import ROUND_HALF_UP, Decimal

from flask import current_app
from sqlalchemy import or_, select

from app.core.exceptions import NotFoundError
from app.models import db
from app.models.testing import (
    CASE_SOURCE_JUNIT,
    CASE_SOURCE_MANUAL,
    LINK_SAME_TEST_DIFFERENT_SOURCE,
    STATUS_UNTESTED,
    JUnitTestResult,
    RepositoryCase,
    RepositoryCaseLink,
    TestRun,
    TestRunCase,
    TestRunResult,
    WorkflowStatus,
)

logger = logging.getLogger(__name__)

DEFAULT_BATCH_SIZE = 1000

# Keeps IN (...) lists below the bind-parameter limit of every backend
_IN_CLAUSE_CHUNK = 500

_THOUSANDTH = Decimal("0.001")


def _chunked(ids, size=_IN_CLAUSE_CHUNK):
    ids = list(ids)
    for start in range(0, len(ids), size):
        yield ids[start:start + size]


# ── Case Link Graph ──────────────────────────────────────────────────────────

def _linked_case_ids(case_ids) -> dict[int, set[int]]:
    """Map each id in *case_ids* to the ids linked to it, in either direction."""
    linked: dict[int, set[int]] = {case_id: set() for case_id in case_ids}
    for chunk in _chunked(linked):
        rows = db.session.execute(
            select(RepositoryCaseLink.case_a_id, RepositoryCaseLink.case_b_id).where(
                RepositoryCaseLink.type == LINK_SAME_TEST_DIFFERENT_SOURCE,
                RepositoryCaseLink.not_deleted(),
                or_(
                    RepositoryCaseLink.case_a_id.in_(chunk),
                    RepositoryCaseLink.case_b_id.in_(chunk),
                ),
            )
        ).all()
        for case_a_id, case_b_id in rows:
            if case_a_id in linked:
                linked[case_a_id].add(case_b_id)
            if case_b_id in linked:
                linked[case_b_id].add(case_a_id)
    return linked


def resolve_case_group(repository_case_id: int) -> set[int]:
    """
    Return the case plus every case directly linked to it as
    SAME_TEST_DIFFERENT_SOURCE (both link directions).

    Does not recurse: groups are single-hop stars. An unknown case id
    yields an empty set.
    """
    case = db.session.get(RepositoryCase, repository_case_id)
    if case is None:
        return set()
    return {case.id} | _linked_case_ids([case.id])[case.id]


# ── Duration Samples ─────────────────────────────────────────────────────────

def _mean_whole_seconds(samples) -> int | None:
    if not samples:
        return None
    # Half-seconds round up, never to even.
    return int(math.floor(sum(samples) / len(samples) + 0.5))


def _round_three_decimals(value: float) -> float:
    # Exact binary value, ties away from zero; round() would pick the even digit.
    return float(Decimal(value).quantize(_THOUSANDTH, rounding=ROUND_HALF_UP))


def _mean_three_decimals(samples) -> float | None:
    if not samples:
        return None
    return _round_three_decimals(sum(samples) / len(samples))


def collect_duration_estimates(group_case_ids) -> dict:
    """
    Reduce the duration samples of a case group to one estimate per source.

    Manual cases contribute non-deleted run results with ``elapsed > 0``;
    JUnit cases contribute import results with ``time > 0``.

    Returns:
        {"manual": int | None, "automated": float | None}
    """
    case_ids = list(group_case_ids)
    if not case_ids:
        return {"manual": None, "automated": None}

    sources = db.session.execute(
        select(RepositoryCase.id, RepositoryCase.source).where(RepositoryCase.id.in_(case_ids))
    ).all()
    manual_case_ids = [case_id for case_id, source in sources if source == CASE_SOURCE_MANUAL]
    junit_case_ids = [case_id for case_id, source in sources if source == CASE_SOURCE_JUNIT]

    manual_durations = []
    if manual_case_ids:
        manual_durations = db.session.scalars(
            select(TestRunResult.elapsed)
            .join(TestRunCase, TestRunResult.test_run_case_id == TestRunCase.id)
            .where(
                TestRunCase.repository_case_id.in_(manual_case_ids),
                TestRunResult.not_deleted(),
                TestRunResult.elapsed > 0,
            )
        ).all()

    junit_durations = []
    if junit_case_ids:
        junit_durations = db.session.scalars(
            select(JUnitTestResult.time).where(
                JUnitTestResult.repository_case_id.in_(junit_case_ids),
                JUnitTestResult.time > 0,
            )
        ).all()

    estimates = {
        "manual": _mean_whole_seconds([d for d in manual_durations if d is not None]),
        "automated": _mean_three_decimals([d for d in junit_durations if d is not None]),
    }
    logger.debug(
        "Group %s: %d manual samples, %d automated samples → %s",
        sorted(case_ids), len(manual_durations), len(junit_durations), estimates,
    )
    return estimates


# ── Case Forecast Writer ─────────────────────────────────────────────────────

def apply_forecast_to_group(group_case_ids, manual: int | None, automated: float | None) -> None:
    """
    Write the same forecast pair onto every case of the group.

    None values are written too, clearing stale forecasts. Every case is
    assigned; SQLAlchemy skips the UPDATE for rows whose values did not
    change, so a repeated call writes nothing.
    The caller commits.
    """
    case_ids = list(group_case_ids)
    if not case_ids:
        return
    cases = RepositoryCase.query.filter(RepositoryCase.id.in_(case_ids)).all()
    for case in cases:
        case.forecast_manual = manual
        case.forecast_automated = automated
    db.session.flush()


# ── Case Forecast (group) ────────────────────────────────────────────────────

def get_test_run_ids_for_cases(case_ids) -> list[int]:
    """Return the distinct ids of every test run containing one of *case_ids*."""
    run_ids: set[int] = set()
    for chunk in _chunked(case_ids):
        run_ids.update(db.session.scalars(
            select(TestRunCase.test_run_id)
            .where(TestRunCase.repository_case_id.in_(chunk))
            .distinct()
        ).all())
    return sorted(run_ids)


def get_active_test_run_ids(test_run_ids) -> list[int]:
    """Return the subset of *test_run_ids* whose run is not completed."""
    active: list[int] = []
    for chunk in _chunked(test_run_ids):
        active.extend(db.session.scalars(
            select(TestRun.id).where(TestRun.id.in_(chunk), TestRun.is_completed.is_(False))
        ).all())
    return sorted(active)


def update_repository_case_forecast(repository_case_id: int, *, skip_test_run_update: bool = False) -> dict:
    """
    Recompute the forecast of a case's whole link group.

    Args:
        repository_case_id: Any member of the group.
        skip_test_run_update: If True, only collect the affected run ids
            instead of re-aggregating those runs.

    Returns:
        dict with keys: updated_case_ids, affected_test_run_ids
    """
    group = resolve_case_group(repository_case_id)
    if not group:
        logger.debug("Repository case %s not found, nothing to forecast", repository_case_id,
                     extra={"case_id": repository_case_id})
        return {"updated_case_ids": [], "affected_test_run_ids": []}

    try:
        estimates = collect_duration_estimates(group)
        apply_forecast_to_group(group, estimates["manual"], estimates["automated"])
        affected_run_ids = get_test_run_ids_for_cases(group)
        db.session.commit()
    except Exception:
        db.session.rollback()
        raise

    logger.debug(
        "Updated forecast_manual=%s forecast_automated=%s for cases %s",
        estimates["manual"], estimates["automated"], sorted(group),
        extra={"case_id": repository_case_id},
    )

    if not skip_test_run_update:
        refreshed = set(group)
        for test_run_id in get_active_test_run_ids(affected_run_ids):
            update_test_run_forecast(test_run_id, already_refreshed_case_ids=refreshed)

    return {"updated_case_ids": sorted(group), "affected_test_run_ids": affected_run_ids}


# ── Run Forecast Aggregator ──────────────────────────────────────────────────

def _load_run_cases(test_run_id: int) -> list[tuple[int, str | None]]:
    """(repository_case_id, status system_name) for every case of the run."""
    return [
        (case_id, system_name)
        for case_id, system_name in db.session.execute(
            select(TestRunCase.repository_case_id, WorkflowStatus.system_name)
            .outerjoin(WorkflowStatus, TestRunCase.status_id == WorkflowStatus.id)
            .where(TestRunCase.test_run_id == test_run_id)
            .order_by(TestRunCase.id)
        ).all()
    ]


def update_test_run_forecast(test_run_id: int, already_refreshed_case_ids: set[int] | None = None) -> dict:
    """
    Recalculate a run's forecast from its pending cases.

    Case forecasts of the run are refreshed first, except for ids in
    *already_refreshed_case_ids*; that set is extended in place with every
    id refreshed here, so one set can be shared across a batch of runs.

    Raises:
        NotFoundError: the run does not exist.

    Returns:
        dict with keys: test_run_id, pending_cases, forecast_manual, forecast_automated
    """
    test_run = db.session.get(TestRun, test_run_id)
    if test_run is None:
        raise NotFoundError(resource="TestRun", resource_id=test_run_id)

    run_cases = _load_run_cases(test_run_id)

    if run_cases:
        processed = already_refreshed_case_ids if already_refreshed_case_ids is not None else set()
        refreshed_any = False
        for case_id in dict.fromkeys(case_id for case_id, _status in run_cases):
            if case_id in processed:
                continue
            result = update_repository_case_forecast(case_id, skip_test_run_update=True)
            if result["updated_case_ids"]:
                refreshed_any = True
                processed.update(result["updated_case_ids"])
        if refreshed_any:
            run_cases = _load_run_cases(test_run_id)

    pending_case_ids = [
        case_id for case_id, system_name in run_cases
        if system_name is None or system_name == STATUS_UNTESTED
    ]

    total_manual = 0
    total_automated = 0.0
    has_manual = False
    has_automated = False
    for chunk in _chunked(dict.fromkeys(pending_case_ids)):
        rows = db.session.execute(
            select(RepositoryCase.forecast_manual, RepositoryCase.forecast_automated)
            .where(RepositoryCase.id.in_(chunk))
        ).all()
        for forecast_manual, forecast_automated in rows:
            if forecast_manual is not None:
                total_manual += forecast_manual
                has_manual = True
            if forecast_automated is not None:
                total_automated += forecast_automated
                has_automated = True

    try:
        test_run = db.session.get(TestRun, test_run_id)
        if test_run is None:
            raise NotFoundError(resource="TestRun", resource_id=test_run_id)
        test_run.forecast_manual = total_manual if has_manual else None
        test_run.forecast_automated = _round_three_decimals(total_automated) if has_automated else None
        db.session.commit()
    except Exception:
        db.session.rollback()
        raise

    if not pending_case_ids:
        logger.debug("Cleared forecast for test run %s: no pending cases", test_run_id,
                     extra={"test_run_id": test_run_id})

    return {
        "test_run_id": test_run_id,
        "pending_cases": len(pending_case_ids),
        "forecast_manual": test_run.forecast_manual,
        "forecast_automated": test_run.forecast_automated,
    }


# ── Corpus Enumerator ────────────────────────────────────────────────────────

def get_active_repository_case_ids() -> list[int]:
    """Ids of every repository case that is neither deleted nor archived."""
    return list(db.session.scalars(
        select(RepositoryCase.id)
        .where(RepositoryCase.not_deleted(), RepositoryCase.is_archived.is_(False))
        .order_by(RepositoryCase.id)
    ).all())


def get_unique_case_group_ids(batch_size: int | None = None) -> list[int]:
    """
    Return one representative case id per link group of the active corpus.

    Cases are walked in id order in batches of *batch_size*; the first
    unseen case of a group becomes its representative and every member of
    its group is marked seen.
    """
    if batch_size is None:
        batch_size = current_app.config.get("FORECAST_BATCH_SIZE", DEFAULT_BATCH_SIZE)
    batch_size = max(1, int(batch_size))

    all_case_ids = get_active_repository_case_ids()
    seen: set[int] = set()
    representatives: list[int] = []
    total_batches = math.ceil(len(all_case_ids) / batch_size)

    for batch_no, start in enumerate(range(0, len(all_case_ids), batch_size), start=1):
        batch = all_case_ids[start:start + batch_size]
        linked = _linked_case_ids(batch)
        for case_id in batch:
            if case_id in seen:
                continue
            representatives.append(case_id)
            seen.add(case_id)
            seen.update(linked[case_id])
        logger.debug("Processed batch %d/%d: %d unique groups so far",
                     batch_no, total_batches, len(representatives))

    logger.info("Found %d unique case groups (from %d active cases)",
                len(representatives), len(all_case_ids))
    return representatives
