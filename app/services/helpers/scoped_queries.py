"""
Tenant-scoped query helpers.

Every get-by-id in the service layer MUST use these helpers instead of
Model.query.get(pk) or db.session.get(Model, pk). Direct .get() calls
bypass tenant isolation.

Usage:
    # Scope by tenant_id (most common: TenantModel subclasses)
    project = get_scoped(Project, project_id, tenant_id=tenant_id)

    # Scope by project_id as well (child entities)
    task = get_scoped(Task, task_id, tenant_id=tenant_id, project_id=project_id)

    # Tombstoned rows are treated as missing unless asked for
    doc = get_scoped(Document, doc_id, tenant_id=tid, include_deleted=True)

    # When None is an acceptable outcome (optional FK lookups)
    team = get_scoped_or_none(Team, team_id, tenant_id=tenant_id)

Scope field resolution:
    Each keyword argument maps directly to a column name on the model.
    If the model does not have that column, a ValueError is raised at
    call time so the bug surfaces immediately during development/testing
    rather than silently allowing unscoped access in production.
"""

import logging

from sqlalchemy import select

from app.core.exceptions import NotFoundError
from app.models import db

logger = logging.getLogger(__name__)


def get_scoped(
    model,
    pk: str,
    *,
    tenant_id: str | None = None,
    project_id: str | None = None,
    change_request_id: str | None = None,
    document_id: str | None = None,
    template_id: str | None = None,
    include_deleted: bool = False,
):
    """Fetch a single entity by PK with mandatory scope filter.

    Cross-tenant access is indistinguishable from a missing record: both
    raise NotFoundError → HTTP 404.

    Args:
        model: SQLAlchemy model class with an ``id`` PK and scope columns.
        pk: Primary key value to look up.
        tenant_id / project_id / change_request_id / document_id / template_id:
            Scope filters; at least one is required.
        include_deleted: Return soft-deleted rows too (models with
            ``deleted_at`` only).

    Raises:
        ValueError: If no scope parameter is provided, or a provided scope
                    names a column the model lacks.
        NotFoundError: If the entity does not exist OR belongs to a different
                       scope. The two cases are intentionally indistinguishable.
    """
    provided_scopes = {
        "tenant_id": tenant_id,
        "project_id": project_id,
        "change_request_id": change_request_id,
        "document_id": document_id,
        "template_id": template_id,
    }
    provided_scopes = {k: v for k, v in provided_scopes.items() if v is not None}

    if not provided_scopes:
        raise ValueError(
            f"{model.__name__} id={pk} requires at least one scope filter. "
            "Unscoped lookups are forbidden — they bypass tenant isolation."
        )

    missing_fields = sorted(f for f in provided_scopes if not hasattr(model, f))
    if missing_fields:
        raise ValueError(
            f"{model.__name__} has no scope column(s) {missing_fields}; "
            "refusing to perform a partially scoped lookup."
        )

    stmt = select(model).where(model.id == pk)
    for field, value in provided_scopes.items():
        stmt = stmt.where(getattr(model, field) == value)
    if not include_deleted and hasattr(model, "deleted_at"):
        stmt = stmt.where(model.deleted_at.is_(None))

    result = db.session.execute(stmt).scalar_one_or_none()

    if result is None:
        logger.debug(
            "get_scoped: %s id=%s not found in scope %s",
            model.__name__,
            pk,
            provided_scopes,
        )
        raise NotFoundError(resource=model.__name__, resource_id=pk)

    return result


def get_scoped_or_none(model, pk: str, **scopes):
    """Same as get_scoped but returns None instead of raising NotFoundError.

    Still enforces the scope parameter requirement (raises ValueError if no
    scope is provided), because silent unscoped lookups are never acceptable.
    """
    if pk is None:
        return None
    try:
        return get_scoped(model, pk, **scopes)
    except NotFoundError:
        return None
