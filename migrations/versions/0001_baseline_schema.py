"""Baseline schema: tenants, access control, projects, tasks, documents,
change requests, templates, audit, reliability and the supporting tables.

Tables are created conditionally (IF NOT EXISTS semantics) so the revision
can be stamped onto a database that was built with db.create_all() in a
development environment.  The table definitions are taken from the mapped
models so the baseline never drifts from them.

Revision ID: 0001_baseline
Revises:
Create Date: 2026-10-19 09:00:00.000000
"""
import importlib

from alembic import op
from sqlalchemy import inspect as sa_inspect


# revision identifiers, used by Alembic.
revision = "0001_baseline"
down_revision = None
branch_labels = None
depends_on = None


def _metadata():
    from app import MODEL_MODULES
    from app.models import db

    for name in MODEL_MODULES:
        importlib.import_module(f"app.models.{name}")
    return db.metadata


def upgrade():
    bind = op.get_bind()
    existing = set(sa_inspect(bind).get_table_names())
    metadata = _metadata()

    # sorted_tables is parent-first, so FKs always resolve
    for table in metadata.sorted_tables:
        if table.name in existing:
            continue
        table.create(bind=bind)


def downgrade():
    bind = op.get_bind()
    existing = set(sa_inspect(bind).get_table_names())
    metadata = _metadata()

    for table in reversed(metadata.sorted_tables):
        if table.name in existing:
            table.drop(bind=bind)
