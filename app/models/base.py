"""
TenantModel — Abstract base class for tenant-scoped models.

All models that need tenant isolation inherit from TenantModel instead of
db.Model directly. This adds:
  - ULID ``id`` primary key (26-char, lexicographically sortable)
  - tenant_id FK column with index (ON DELETE CASCADE)
  - query_for_tenant(tenant_id) classmethod
"""

from app.models import db
from app.utils.ids import ULID_LENGTH, new_ulid


def ulid_pk():
    """Primary-key column used by every table."""
    return db.Column(db.String(ULID_LENGTH), primary_key=True, default=new_ulid)


def ulid_fk(target, *, ondelete, nullable=False, index=True, **kwargs):
    """Foreign-key column referencing a ULID primary key."""
    return db.Column(
        db.String(ULID_LENGTH),
        db.ForeignKey(target, ondelete=ondelete),
        nullable=nullable,
        index=index,
        **kwargs,
    )


class TenantModel(db.Model):
    """Abstract base for tenant-scoped tables."""
    __abstract__ = True

    id = db.Column(db.String(ULID_LENGTH), primary_key=True, default=new_ulid)
    tenant_id = db.Column(
        db.String(ULID_LENGTH),
        db.ForeignKey("tenants.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )

    @classmethod
    def query_for_tenant(cls, tenant_id):
        """Return a query filtered by tenant_id."""
        return cls.query.filter_by(tenant_id=tenant_id)
