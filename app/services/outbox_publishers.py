"""
Outbox publishers: turn delivered domain events into in-app notifications.

Publishers run inside the dispatcher's transaction for one event; they must
not commit.  The dispatcher commits together with ``mark_completed`` or
rolls everything back when a publisher raises.

Importing this module registers the publishers (done in ``create_app``).
"""

import logging

from app.models.auth import TeamMember
from app.models.project import Project
from app.services.notification import NotificationService
from app.services.outbox_service import register_publisher

logger = logging.getLogger(__name__)


def _notify(event, user_ids, *, title, message="", category, severity="info", project_id=None):
    recipients = [u for u in user_ids if u]
    if not recipients:
        return []
    return NotificationService.broadcast(
        tenant_id=event.tenant_id,
        user_ids=recipients,
        title=title,
        message=message,
        category=category,
        severity=severity,
        project_id=project_id,
        entity_type=event.aggregate_type,
        entity_id=event.aggregate_id,
        source_event_id=event.id,
        commit=False,
    )


def _project_owner(project_id):
    if not project_id:
        return None
    project = Project.query.filter_by(id=project_id).first()
    return project.owner_id if project else None


def _team_user_ids(team_id):
    return [m.user_id for m in TeamMember.query.filter_by(team_id=team_id).all()] if team_id else []


@register_publisher("task.assigned")
def notify_task_assignee(event):
    p = event.payload or {}
    user_ids = [p.get("user_id")] if p.get("user_id") else _team_user_ids(p.get("team_id"))
    _notify(event, user_ids, title=f"Task assigned: {p.get('title', '')}",
            category="task", project_id=p.get("project_id"))


@register_publisher("task.status_changed")
def notify_task_status(event):
    p = event.payload or {}
    if p.get("new") not in ("completed", "blocked"):
        return
    severity = "warning" if p["new"] == "blocked" else "info"
    _notify(event, [_project_owner(p.get("project_id"))],
            title=f"Task {p['new']}: {p.get('title', '')}",
            category="task", severity=severity, project_id=p.get("project_id"))


@register_publisher("project.status_changed")
def notify_project_owner(event):
    p = event.payload or {}
    _notify(event, [p.get("owner_id")],
            title=f"Project {p.get('code', '')} is now {p.get('new')}",
            category="project", project_id=event.aggregate_id)


@register_publisher("change_request.submitted")
def notify_change_request_submitted(event):
    p = event.payload or {}
    _notify(event, [_project_owner(p.get("project_id"))],
            title=f"{p.get('code', 'Change request')} awaits approval",
            message=p.get("title", ""), category="change_request", project_id=p.get("project_id"))


@register_publisher("change_request.approved")
@register_publisher("change_request.rejected")
def notify_change_request_decided(event):
    p = event.payload or {}
    decision = event.event_type.rsplit(".", 1)[-1]
    _notify(event, [p.get("requested_by")],
            title=f"{p.get('code', 'Change request')} {decision}",
            message=p.get("title", ""), category="change_request",
            severity="warning" if decision == "rejected" else "info",
            project_id=p.get("project_id"))


@register_publisher("change_request.commented")
def notify_change_request_comment(event):
    p = event.payload or {}
    if p.get("requested_by") == p.get("author_id"):
        return
    _notify(event, [p.get("requested_by")],
            title=f"New comment on {p.get('code', 'change request')}",
            category="change_request", project_id=p.get("project_id"))


@register_publisher("inspection.failed")
def notify_inspection_failed(event):
    p = event.payload or {}
    _notify(event, [_project_owner(p.get("project_id"))],
            title=f"Inspection failed: {p.get('title', '')}",
            message=f"{p.get('failed_count', 0)} checklist item(s) failed",
            category="inspection", severity="warning", project_id=p.get("project_id"))


@register_publisher("document.version_uploaded")
def notify_document_upload(event):
    p = event.payload or {}
    if p.get("version_number", 1) <= 1:
        return
    _notify(event, [_project_owner(p.get("project_id"))],
            title=f"New version v{p.get('version_number')} of {p.get('title', '')}",
            category="document", project_id=p.get("project_id"))

