"""
Soft delete flag mixin.

Repository cases, links, runs, results and milestones are never removed
physically; they carry an ``is_deleted`` flag plus the time it was set.
Forecast queries only ever look at rows where the flag is false.

Usage:
    class RepositoryCase(SoftDeleteMixin, db.Model):
        ...

    case.soft_delete()
    db.session.commit()

    RepositoryCase.query_active().all()
"""

from datetime import datetime, timezone

from app.models import db


class SoftDeleteMixin:
    """Adds ``is_deleted`` / ``deleted_at`` and query helpers."""

    is_deleted = db.Column(db.Boolean, nullable=False, default=False, index=True)
    deleted_at = db.Column(db.DateTime(timezone=True), nullable=True, default=None)

    def soft_delete(self):
        self.is_deleted = True
        self.deleted_at = datetime.now(timezone.utc)

    def restore(self):
        self.is_deleted = False
        self.deleted_at = None

    @classmethod
    def not_deleted(cls):
        """Filter clause usable in joins and ``select()`` statements."""
        return cls.is_deleted.is_(False)

    @classmethod
    def query_active(cls):
        """Return a query that excludes soft-deleted records."""
        return cls.query.filter(cls.not_deleted())
