"""
Test Forecast Engine
Testing domain models.

Models:
    - WorkflowStatus:     execution status catalogue (UNTESTED, PASSED, ...)
    - RepositoryCase:     test case definition, manual or imported from JUnit
    - RepositoryCaseLink: directed typed link between two repository cases
    - TestRun:            a run of many cases, carries the aggregate forecast
    - TestRunCase:        occurrence of a repository case within a run
    - TestRunResult:      manually recorded execution result (elapsed seconds)
    - JUnitTestResult:    automated-suite import result (time in seconds)
    - Milestone:          release milestone grouping test runs

Architecture ref:
    RepositoryCase ──N:M──▶ RepositoryCase  (links, SAME_TEST_DIFFERENT_SOURCE)
    TestRun ──1:N──▶ TestRunCase ──1:N──▶ TestRunResult
    RepositoryCase ──1:N──▶ TestRunCase
    RepositoryCase ──1:N──▶ JUnitTestResult
    Milestone ──1:N──▶ TestRun

Forecast fields (seconds):
    RepositoryCase.forecast_manual     Integer, mean of manual elapsed times
    RepositoryCase.forecast_automated  Float,   mean of JUnit times (3 dp)
    TestRun.forecast_*                 sums over the run's pending cases
"""

from datetime import datetime, timezone

from app.models import db
from app.models.soft_delete import SoftDeleteMixin


# ── Constants ────────────────────────────────────────────────────────────

CASE_SOURCE_MANUAL = "MANUAL"
CASE_SOURCE_JUNIT = "JUNIT"
CASE_SOURCES = {CASE_SOURCE_MANUAL, CASE_SOURCE_JUNIT, "TESTMO_IMPORT", "API"}

LINK_SAME_TEST_DIFFERENT_SOURCE = "SAME_TEST_DIFFERENT_SOURCE"
LINK_TYPES = {LINK_SAME_TEST_DIFFERENT_SOURCE, "DEPENDS_ON", "RELATED"}

STATUS_UNTESTED = "UNTESTED"
SYSTEM_STATUSES = {STATUS_UNTESTED, "PASSED", "FAILED", "BLOCKED", "RETEST", "SKIPPED"}


def _utcnow():
    return datetime.now(timezone.utc)


# ═════════════════════════════════════════════════════════════════════════════
# WORKFLOW STATUS
# ═════════════════════════════════════════════════════════════════════════════

class WorkflowStatus(db.Model):
    """
    Execution status catalogue entry.

    ``system_name`` is the stable key the engine relies on; ``name`` is the
    display label admins may rename.
    """

    __tablename__ = "statuses"

    id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(100), nullable=False)
    system_name = db.Column(
        db.String(50), nullable=False, unique=True,
        comment="UNTESTED | PASSED | FAILED | BLOCKED | RETEST | SKIPPED",
    )
    is_success = db.Column(db.Boolean, default=False)

    def to_dict(self):
        return {
            "id": self.id,
            "name": self.name,
            "system_name": self.system_name,
            "is_success": self.is_success,
        }

    def __repr__(self):
        return f"<WorkflowStatus {self.id}: {self.system_name}>"


# ═════════════════════════════════════════════════════════════════════════════
# REPOSITORY CASE
# ═════════════════════════════════════════════════════════════════════════════

class RepositoryCase(SoftDeleteMixin, db.Model):
    """
    A test case definition in the repository.

    ``source`` tells which duration samples feed its forecast: MANUAL cases
    learn from recorded run results, JUNIT cases from automated imports.
    """

    __tablename__ = "repository_cases"

    id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(500), nullable=False)
    class_name = db.Column(db.String(500), nullable=True, comment="JUnit classname for imported cases")
    source = db.Column(
        db.String(30), nullable=False, default=CASE_SOURCE_MANUAL, index=True,
        comment="MANUAL | JUNIT | TESTMO_IMPORT | API",
    )
    is_archived = db.Column(db.Boolean, nullable=False, default=False, index=True)
    estimate = db.Column(db.Integer, nullable=True, comment="Author's own estimate in seconds")

    forecast_manual = db.Column(db.Integer, nullable=True, comment="Seconds; mean of manual results")
    forecast_automated = db.Column(db.Float, nullable=True, comment="Seconds; mean of JUnit results")

    created_at = db.Column(db.DateTime(timezone=True), default=_utcnow)
    updated_at = db.Column(db.DateTime(timezone=True), default=_utcnow, onupdate=_utcnow)

    # ── Relationships
    links_from = db.relationship(
        "RepositoryCaseLink", foreign_keys="RepositoryCaseLink.case_a_id",
        back_populates="case_a", lazy="select",
    )
    links_to = db.relationship(
        "RepositoryCaseLink", foreign_keys="RepositoryCaseLink.case_b_id",
        back_populates="case_b", lazy="select",
    )
    run_cases = db.relationship("TestRunCase", back_populates="repository_case", lazy="dynamic")
    junit_results = db.relationship("JUnitTestResult", backref="repository_case", lazy="dynamic")

    def to_dict(self):
        return {
            "id": self.id,
            "name": self.name,
            "class_name": self.class_name,
            "source": self.source,
            "is_deleted": self.is_deleted,
            "is_archived": self.is_archived,
            "estimate": self.estimate,
            "forecast_manual": self.forecast_manual,
            "forecast_automated": self.forecast_automated,
            "created_at": self.created_at.isoformat() if self.created_at else None,
            "updated_at": self.updated_at.isoformat() if self.updated_at else None,
        }

    def __repr__(self):
        return f"<RepositoryCase {self.id}: {self.name} [{self.source}]>"


class RepositoryCaseLink(SoftDeleteMixin, db.Model):
    """
    Directed link between two repository cases.

    Stored once (A → B) but read in both directions. A
    SAME_TEST_DIFFERENT_SOURCE link ties a manual case to its automated
    twin so both share one forecast.
    """

    __tablename__ = "repository_case_links"

    id = db.Column(db.Integer, primary_key=True)
    case_a_id = db.Column(
        db.Integer, db.ForeignKey("repository_cases.id", ondelete="CASCADE"),
        nullable=False, index=True,
    )
    case_b_id = db.Column(
        db.Integer, db.ForeignKey("repository_cases.id", ondelete="CASCADE"),
        nullable=False, index=True,
    )
    type = db.Column(
        db.String(40), nullable=False, default=LINK_SAME_TEST_DIFFERENT_SOURCE, index=True,
        comment="SAME_TEST_DIFFERENT_SOURCE | DEPENDS_ON | RELATED",
    )
    created_at = db.Column(db.DateTime(timezone=True), default=_utcnow)

    case_a = db.relationship("RepositoryCase", foreign_keys=[case_a_id], back_populates="links_from")
    case_b = db.relationship("RepositoryCase", foreign_keys=[case_b_id], back_populates="links_to")

    __table_args__ = (
        db.UniqueConstraint("case_a_id", "case_b_id", "type", name="uq_case_link_pair_type"),
    )

    def to_dict(self):
        return {
            "id": self.id,
            "case_a_id": self.case_a_id,
            "case_b_id": self.case_b_id,
            "type": self.type,
            "is_deleted": self.is_deleted,
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }

    def __repr__(self):
        return f"<RepositoryCaseLink {self.id}: #{self.case_a_id} → #{self.case_b_id} ({self.type})>"


# ═════════════════════════════════════════════════════════════════════════════
# MILESTONE
# ═════════════════════════════════════════════════════════════════════════════

class Milestone(SoftDeleteMixin, db.Model):
    """
    Release milestone.

    ``completed_at`` holds the planned due date until the milestone is
    completed; ``automatic_completion`` milestones close themselves once
    that date has passed.
    """

    __tablename__ = "milestones"

    id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(200), nullable=False)
    project_name = db.Column(db.String(200), default="")
    is_completed = db.Column(db.Boolean, nullable=False, default=False, index=True)
    automatic_completion = db.Column(db.Boolean, nullable=False, default=False)
    completed_at = db.Column(db.DateTime(timezone=True), nullable=True, comment="Due date")
    notify_days_before = db.Column(db.Integer, nullable=False, default=0)
    created_by = db.Column(db.String(150), nullable=True)

    created_at = db.Column(db.DateTime(timezone=True), default=_utcnow)

    test_runs = db.relationship("TestRun", backref="milestone", lazy="dynamic")

    def to_dict(self):
        return {
            "id": self.id,
            "name": self.name,
            "project_name": self.project_name,
            "is_completed": self.is_completed,
            "is_deleted": self.is_deleted,
            "automatic_completion": self.automatic_completion,
            "completed_at": self.completed_at.isoformat() if self.completed_at else None,
            "notify_days_before": self.notify_days_before,
            "created_by": self.created_by,
        }

    def __repr__(self):
        return f"<Milestone {self.id}: {self.name}>"


# ═════════════════════════════════════════════════════════════════════════════
# TEST RUN
# ═════════════════════════════════════════════════════════════════════════════

class TestRun(SoftDeleteMixin, db.Model):
    """
    A test run: a set of repository cases scheduled for execution.

    The run forecast covers only the cases still pending. Once
    ``is_completed`` is set the run is locked and its forecast is left alone.
    """

    __tablename__ = "test_runs"

    id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(300), nullable=False)
    milestone_id = db.Column(
        db.Integer, db.ForeignKey("milestones.id", ondelete="SET NULL"),
        nullable=True, index=True,
    )
    is_completed = db.Column(db.Boolean, nullable=False, default=False, index=True)
    created_by = db.Column(db.String(150), nullable=True)

    forecast_manual = db.Column(db.Integer, nullable=True, comment="Seconds; sum over pending cases")
    forecast_automated = db.Column(db.Float, nullable=True, comment="Seconds; sum over pending cases")

    created_at = db.Column(db.DateTime(timezone=True), default=_utcnow)
    updated_at = db.Column(db.DateTime(timezone=True), default=_utcnow, onupdate=_utcnow)

    run_cases = db.relationship(
        "TestRunCase", back_populates="test_run", lazy="dynamic",
        cascade="all, delete-orphan",
    )

    def to_dict(self):
        return {
            "id": self.id,
            "name": self.name,
            "milestone_id": self.milestone_id,
            "is_completed": self.is_completed,
            "is_deleted": self.is_deleted,
            "created_by": self.created_by,
            "forecast_manual": self.forecast_manual,
            "forecast_automated": self.forecast_automated,
            "created_at": self.created_at.isoformat() if self.created_at else None,
            "updated_at": self.updated_at.isoformat() if self.updated_at else None,
        }

    def __repr__(self):
        return f"<TestRun {self.id}: {self.name}>"


class TestRunCase(db.Model):
    """
    Occurrence of a repository case within a test run.

    ``status_id`` stays NULL (or points at UNTESTED) until a result is
    recorded.
    """

    __tablename__ = "test_run_cases"

    id = db.Column(db.Integer, primary_key=True)
    test_run_id = db.Column(
        db.Integer, db.ForeignKey("test_runs.id", ondelete="CASCADE"),
        nullable=False, index=True,
    )
    repository_case_id = db.Column(
        db.Integer, db.ForeignKey("repository_cases.id", ondelete="CASCADE"),
        nullable=False, index=True,
    )
    status_id = db.Column(
        db.Integer, db.ForeignKey("statuses.id", ondelete="SET NULL"),
        nullable=True,
    )
    assigned_to = db.Column(db.String(150), nullable=True)
    order = db.Column(db.Integer, default=0)

    test_run = db.relationship("TestRun", back_populates="run_cases")
    repository_case = db.relationship("RepositoryCase", back_populates="run_cases")
    status = db.relationship("WorkflowStatus")
    results = db.relationship(
        "TestRunResult", backref="test_run_case", lazy="dynamic",
        cascade="all, delete-orphan",
    )

    __table_args__ = (
        db.UniqueConstraint("test_run_id", "repository_case_id", name="uq_test_run_case"),
    )

    def to_dict(self):
        return {
            "id": self.id,
            "test_run_id": self.test_run_id,
            "repository_case_id": self.repository_case_id,
            "status_id": self.status_id,
            "assigned_to": self.assigned_to,
            "order": self.order,
        }

    def __repr__(self):
        return f"<TestRunCase {self.id}: run#{self.test_run_id} case#{self.repository_case_id}>"


class TestRunResult(SoftDeleteMixin, db.Model):
    """Manually recorded execution result; ``elapsed`` is in whole seconds."""

    __tablename__ = "test_run_results"

    id = db.Column(db.Integer, primary_key=True)
    test_run_case_id = db.Column(
        db.Integer, db.ForeignKey("test_run_cases.id", ondelete="CASCADE"),
        nullable=False, index=True,
    )
    status_id = db.Column(
        db.Integer, db.ForeignKey("statuses.id", ondelete="SET NULL"),
        nullable=True,
    )
    elapsed = db.Column(db.Integer, nullable=True, comment="Seconds")
    executed_by = db.Column(db.String(150), nullable=True)
    executed_at = db.Column(db.DateTime(timezone=True), default=_utcnow)

    def to_dict(self):
        return {
            "id": self.id,
            "test_run_case_id": self.test_run_case_id,
            "status_id": self.status_id,
            "elapsed": self.elapsed,
            "executed_by": self.executed_by,
            "is_deleted": self.is_deleted,
            "executed_at": self.executed_at.isoformat() if self.executed_at else None,
        }

    def __repr__(self):
        return f"<TestRunResult {self.id}: trc#{self.test_run_case_id} {self.elapsed}s>"


class JUnitTestResult(db.Model):
    """Result imported from an automated suite; ``time`` keeps sub-second precision."""

    __tablename__ = "junit_test_results"

    id = db.Column(db.Integer, primary_key=True)
    repository_case_id = db.Column(
        db.Integer, db.ForeignKey("repository_cases.id", ondelete="CASCADE"),
        nullable=False, index=True,
    )
    test_run_id = db.Column(
        db.Integer, db.ForeignKey("test_runs.id", ondelete="SET NULL"),
        nullable=True, index=True,
    )
    status_id = db.Column(
        db.Integer, db.ForeignKey("statuses.id", ondelete="SET NULL"),
        nullable=True,
    )
    time = db.Column(db.Float, nullable=True, comment="Seconds")
    executed_at = db.Column(db.DateTime(timezone=True), default=_utcnow)

    def to_dict(self):
        return {
            "id": self.id,
            "repository_case_id": self.repository_case_id,
            "test_run_id": self.test_run_id,
            "status_id": self.status_id,
            "time": self.time,
            "executed_at": self.executed_at.isoformat() if self.executed_at else None,
        }

    def __repr__(self):
        return f"<JUnitTestResult {self.id}: case#{self.repository_case_id} {self.time}s>"
