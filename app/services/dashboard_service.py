"""
Dashboard service — saved user dashboards and project metrics.

``capture_project_snapshot`` keeps exactly one ``ProjectSnapshot`` per project
per day: a second capture on the same day overwrites the first.
"""

import logging
from datetime import date, datetime, timezone
from decimal import Decimal

from sqlalchemy import func
from sqlalchemy.exc import IntegrityError

from app.core.exceptions import ConflictError, NotFoundError, ValidationError
from app.models import db
from app.models.change_request import ChangeRequest
from app.models.dashboard import Dashboard, ProjectSnapshot
from app.models.project import Project
from app.models.task import Task
from app.services.helpers.scoped_queries import get_scoped
from app.services.project_service import project_progress

logger = logging.getLogger(__name__)


# ═══════════════════════════════════════════════════════════════
# Dashboards
# ═══════════════════════════════════════════════════════════════

def save_dashboard(*, tenant_id: str, user_id: str, name: str, layout=None, filters=None,
                   is_default: bool = False) -> Dashboard:
    """Create or replace the user's dashboard called *name*."""
    name = (name or "").strip()
    if not name:
        raise ValidationError("name is required", details={"name": "required"})
    if layout is not None and not isinstance(layout, list):
        raise ValidationError("layout must be a list of widgets", details={"layout": "list required"})
    if filters is not None and not isinstance(filters, dict):
        raise ValidationError("filters must be an object", details={"filters": "object required"})

    dashboard = Dashboard.query.filter_by(tenant_id=tenant_id, user_id=user_id, name=name).first()
    if dashboard is None:
        dashboard = Dashboard(tenant_id=tenant_id, user_id=user_id, name=name)
        db.session.add(dashboard)
    if layout is not None:
        dashboard.layout = layout
    if filters is not None:
        dashboard.filters = filters
    if is_default:
        Dashboard.query.filter(
            Dashboard.user_id == user_id, Dashboard.tenant_id == tenant_id, Dashboard.name != name
        ).update({"is_default": False}, synchronize_session="fetch")
    dashboard.is_default = bool(is_default) or bool(dashboard.is_default)
    try:
        db.session.commit()
    except IntegrityError as exc:
        db.session.rollback()
        raise ConflictError("Dashboard", "name", name) from exc
    return dashboard


def list_dashboards(*, tenant_id: str, user_id: str) -> list[Dashboard]:
    return (
        Dashboard.query_for_tenant(tenant_id).filter_by(user_id=user_id)
        .order_by(Dashboard.is_default.desc(), Dashboard.name)
        .all()
    )


def delete_dashboard(dashboard_id: str, *, tenant_id: str, user_id: str) -> None:
    dashboard = get_scoped(Dashboard, dashboard_id, tenant_id=tenant_id)
    if dashboard.user_id != user_id:
        raise NotFoundError(resource="Dashboard", resource_id=dashboard_id)
    db.session.delete(dashboard)
    db.session.commit()


# ═══════════════════════════════════════════════════════════════
# Project snapshots
# ═══════════════════════════════════════════════════════════════

def _cr_figures(project_id: str) -> tuple[int, Decimal]:
    open_count = ChangeRequest.query_active().filter(
        ChangeRequest.project_id == project_id,
        ChangeRequest.status.in_(("draft", "awaiting_approval")),
    ).count()
    approved = db.session.query(func.coalesce(func.sum(ChangeRequest.cost_impact), 0)).filter(
        ChangeRequest.project_id == project_id,
        ChangeRequest.deleted_at.is_(None),
        ChangeRequest.status.in_(("approved", "implemented")),
    ).scalar()
    return open_count, Decimal(approved or 0)


def capture_project_snapshot(project_id: str, *, tenant_id: str, day: date | None = None) -> ProjectSnapshot:
    """Upsert today's (or *day*'s) metrics snapshot for a project."""
    project = get_scoped(Project, project_id, tenant_id=tenant_id)
    day = day or date.today()
    progress = project_progress(project.id, tenant_id=tenant_id, persist=False)
    open_crs, approved_cost = _cr_figures(project.id)

    snapshot = ProjectSnapshot.query.filter_by(project_id=project.id, snapshot_date=day).first()
    if snapshot is None:
        snapshot = ProjectSnapshot(tenant_id=tenant_id, project_id=project.id, snapshot_date=day)
        db.session.add(snapshot)

    snapshot.status = project.status
    snapshot.progress = progress["progress"]
    snapshot.tasks_total = progress["total"]
    snapshot.tasks_completed = progress["completed"]
    snapshot.tasks_overdue = progress["overdue"]
    snapshot.open_change_requests = open_crs
    snapshot.approved_cost_impact = approved_cost
    snapshot.budget = project.budget or 0
    snapshot.actual_cost = project.actual_cost or 0
    snapshot.metrics = {"by_status": progress["by_status"], "cancelled": progress["cancelled"]}
    snapshot.captured_at = datetime.now(timezone.utc)
    db.session.commit()
    return snapshot


def snapshot_history(project_id: str, *, tenant_id: str, since: date | None = None) -> list[ProjectSnapshot]:
    project = get_scoped(Project, project_id, tenant_id=tenant_id)
    q = ProjectSnapshot.query.filter(ProjectSnapshot.project_id == project.id)
    if since:
        q = q.filter(ProjectSnapshot.snapshot_date >= since)
    return q.order_by(ProjectSnapshot.snapshot_date).all()


def capture_all_snapshots(day: date | None = None) -> int:
    """Snapshot every active project of every tenant.  Used by the daily job."""
    count = 0
    projects = Project.query_active().filter(Project.status.in_(("draft", "active", "on_hold"))).all()
    for project in projects:
        capture_project_snapshot(project.id, tenant_id=project.tenant_id, day=day)
        count += 1
    return count


def tenant_overview(tenant_id: str) -> dict:
    """Headline numbers for the tenant home dashboard."""
    by_status = dict(
        db.session.query(Project.status, func.count(Project.id))
        .filter(Project.tenant_id == tenant_id, Project.deleted_at.is_(None))
        .group_by(Project.status)
        .all()
    )
    task_counts = dict(
        db.session.query(Task.status, func.count(Task.id))
        .filter(Task.tenant_id == tenant_id, Task.deleted_at.is_(None))
        .group_by(Task.status)
        .all()
    )
    budget, actual = db.session.query(
        func.coalesce(func.sum(Project.budget), 0), func.coalesce(func.sum(Project.actual_cost), 0)
    ).filter(Project.tenant_id == tenant_id, Project.deleted_at.is_(None)).one()
    pending_crs = ChangeRequest.query_active().filter(
        ChangeRequest.tenant_id == tenant_id, ChangeRequest.status == "awaiting_approval"
    ).count()

    return {
        "tenant_id": tenant_id,
        "projects": {"total": sum(by_status.values()), "by_status": by_status},
        "tasks": {"total": sum(task_counts.values()), "by_status": task_counts},
        "budget": str(Decimal(budget).quantize(Decimal("0.01"))),
        "actual_cost": str(Decimal(actual).quantize(Decimal("0.01"))),
        "change_requests_awaiting_approval": pending_crs,
    }
