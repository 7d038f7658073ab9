"""
Soft Delete Mixin.

Adds a `deleted_at` tombstone column and query helpers.  Models that include
this mixin are marked as deleted rather than physically removed; list reads
go through ``query_active()`` unless history is explicitly requested.

Usage:
    class Project(SoftDeleteMixin, TenantModel):
        ...

    project.soft_delete()
    db.session.commit()

    Project.query_active().filter_by(tenant_id=tid).all()
    Project.query_deleted().all()

    project.restore()
    db.session.commit()
"""

from datetime import datetime, timezone

from app.models import db


class SoftDeleteMixin:
    """Mixin that adds soft delete support to any SQLAlchemy model."""

    deleted_at = db.Column(db.DateTime(timezone=True), nullable=True, default=None, index=True)

    def soft_delete(self):
        """Mark this record as deleted (idempotent: keeps the first timestamp)."""
        if self.deleted_at is None:
            self.deleted_at = datetime.now(timezone.utc)

    def restore(self):
        """Restore a soft-deleted record."""
        self.deleted_at = None

    @property
    def is_deleted(self):
        return self.deleted_at is not None

    @classmethod
    def query_active(cls):
        """Return a query that excludes soft-deleted records."""
        return cls.query.filter(cls.deleted_at.is_(None))

    @classmethod
    def query_deleted(cls):
        """Return only soft-deleted records."""
        return cls.query.filter(cls.deleted_at.isnot(None))

    @classmethod
    def query_visible(cls, include_deleted=False):
        """``query_active()`` unless the caller asked for tombstones too."""
        return cls.query if include_deleted else cls.query_active()
