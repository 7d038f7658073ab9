"""
Template service — versioned project blueprints.

Metadata edits (name, description, category, active flag) change the
``Template`` row in place.  Every content edit publishes a new immutable
``TemplateVersion`` numbered ``latest_version + 1``.

``apply_template`` stamps a version onto a project: phases first, then tasks
in topological order of their ``depends_on`` keys, so each dependency edge
points at a task that already exists.
"""

import logging
from collections import deque

from sqlalchemy.exc import IntegrityError

from app.core.exceptions import ConflictError, NotFoundError, ValidationError
from app.models import db
from app.models.audit import write_audit
from app.models.project import Project
from app.models.template import TEMPLATE_CATEGORIES, Template, TemplateVersion
from app.services import project_service, task_service
from app.services.helpers.scoped_queries import get_scoped
from app.services.outbox_service import enqueue_event

logger = logging.getLogger(__name__)

METADATA_FIELDS = ("name", "description", "category", "is_active")


# ═══════════════════════════════════════════════════════════════
# Content validation
# ═══════════════════════════════════════════════════════════════

def topological_order(tasks: list[dict]) -> list[dict]:
    """Order task specs so every task follows the tasks it depends on (Kahn).

    Ties keep the template's own order.

    Raises:
        ValidationError: a ``depends_on`` key is unknown, or the graph has a cycle.
    """
    by_key = {t["key"]: t for t in tasks}
    indegree = {key: 0 for key in by_key}
    dependents = {key: [] for key in by_key}
    for t in tasks:
        for dep in t.get("depends_on") or []:
            if dep not in by_key:
                raise ValidationError(f"Task '{t['key']}' depends on unknown task '{dep}'",
                                      details={"depends_on": dep})
            if dep == t["key"]:
                raise ValidationError(f"Task '{dep}' depends on itself", details={"depends_on": dep})
            indegree[t["key"]] += 1
            dependents[dep].append(t["key"])

    ready = deque(key for key in by_key if indegree[key] == 0)
    ordered = []
    while ready:
        key = ready.popleft()
        ordered.append(by_key[key])
        for child in dependents[key]:
            indegree[child] -= 1
            if indegree[child] == 0:
                ready.append(child)

    if len(ordered) != len(tasks):
        stuck = sorted(key for key, n in indegree.items() if n > 0)
        raise ValidationError("Template task dependencies contain a cycle", details={"tasks": stuck})
    return ordered


def validate_content(content) -> dict:
    """Normalise and validate a template content payload."""
    if not isinstance(content, dict):
        raise ValidationError("content must be an object with 'phases' and 'tasks'")
    phases = content.get("phases") or []
    tasks = content.get("tasks") or []
    if not isinstance(phases, list) or not isinstance(tasks, list):
        raise ValidationError("phases and tasks must be lists")

    phase_keys = set()
    for phase in phases:
        if not isinstance(phase, dict) or not phase.get("key") or not phase.get("name"):
            raise ValidationError("Each phase needs a key and a name", details={"phase": phase})
        if phase["key"] in phase_keys:
            raise ValidationError(f"Duplicate phase key '{phase['key']}'", details={"key": phase["key"]})
        phase_keys.add(phase["key"])

    task_keys = set()
    for task in tasks:
        if not isinstance(task, dict) or not task.get("key") or not task.get("title"):
            raise ValidationError("Each task needs a key and a title", details={"task": task})
        if task["key"] in task_keys:
            raise ValidationError(f"Duplicate task key '{task['key']}'", details={"key": task["key"]})
        task_keys.add(task["key"])
        if task.get("phase") and task["phase"] not in phase_keys:
            raise ValidationError(f"Task '{task['key']}' references unknown phase '{task['phase']}'",
                                  details={"phase": task["phase"]})

    topological_order(tasks)
    return {"phases": phases, "tasks": tasks}


# ═══════════════════════════════════════════════════════════════
# Templates
# ═══════════════════════════════════════════════════════════════

def create_template(*, tenant_id: str, name: str, category: str = "general", description: str = "",
                    content: dict | None = None, actor_user_id: str | None = None) -> Template:
    """Create a template; when *content* is given it is published as version 1."""
    name = (name or "").strip()
    if not name:
        raise ValidationError("name is required", details={"name": "required"})
    if category not in TEMPLATE_CATEGORIES:
        raise ValidationError(f"Invalid category '{category}'",
                              details={"category": sorted(TEMPLATE_CATEGORIES)})
    if Template.query.filter_by(tenant_id=tenant_id, name=name).first():
        raise ConflictError("Template", "name", name)
    normalised = validate_content(content) if content is not None else None

    template = Template(tenant_id=tenant_id, name=name, category=category,
                        description=description or "", latest_version=0, created_by=actor_user_id)
    db.session.add(template)
    db.session.flush()
    if normalised is not None:
        _append_version(template, normalised, "Initial version", actor_user_id)

    write_audit(entity_type="template", entity_id=template.id, action="create",
                tenant_id=tenant_id, actor_user_id=actor_user_id, diff={"name": name})
    db.session.commit()
    return template


def get_template(template_id: str, *, tenant_id: str, include_deleted: bool = False) -> Template:
    return get_scoped(Template, template_id, tenant_id=tenant_id, include_deleted=include_deleted)


def list_templates(*, tenant_id: str, category: str | None = None, active_only: bool = False):
    q = Template.query_active().filter(Template.tenant_id == tenant_id)
    if category:
        q = q.filter(Template.category == category)
    if active_only:
        q = q.filter(Template.is_active.is_(True))
    return q.order_by(Template.name)


def update_template_metadata(template_id: str, *, tenant_id: str, data: dict,
                             actor_user_id: str | None = None) -> Template:
    """Edit metadata in place.  No version is created."""
    template = get_template(template_id, tenant_id=tenant_id)
    diff = {}
    for field in METADATA_FIELDS:
        if field not in data:
            continue
        value = data[field]
        if field == "name":
            value = (value or "").strip()
            if not value:
                raise ValidationError("name cannot be empty", details={"name": "required"})
            if value != template.name and Template.query.filter_by(tenant_id=tenant_id, name=value).first():
                raise ConflictError("Template", "name", value)
        elif field == "category" and value not in TEMPLATE_CATEGORIES:
            raise ValidationError(f"Invalid category '{value}'",
                                  details={"category": sorted(TEMPLATE_CATEGORIES)})
        elif field == "is_active":
            value = bool(value)
        if getattr(template, field) != value:
            diff[field] = {"old": getattr(template, field), "new": value}
            setattr(template, field, value)
    if diff:
        write_audit(entity_type="template", entity_id=template.id, action="update",
                    tenant_id=tenant_id, actor_user_id=actor_user_id, diff=diff)
    db.session.commit()
    return template


def soft_delete_template(template_id: str, *, tenant_id: str,
                         actor_user_id: str | None = None) -> Template:
    template = get_template(template_id, tenant_id=tenant_id)
    template.soft_delete()
    template.is_active = False
    write_audit(entity_type="template", entity_id=template.id, action="delete",
                tenant_id=tenant_id, actor_user_id=actor_user_id)
    db.session.commit()
    return template


# ═══════════════════════════════════════════════════════════════
# Versions
# ═══════════════════════════════════════════════════════════════

def _append_version(template: Template, content: dict, change_note: str,
                    actor_user_id: str | None) -> TemplateVersion:
    version = TemplateVersion(
        tenant_id=template.tenant_id,
        template_id=template.id,
        version=template.latest_version + 1,
        content=content,
        change_note=change_note or "",
        created_by=actor_user_id,
    )
    db.session.add(version)
    db.session.flush()
    template.latest_version = version.version
    return version


def publish_version(template_id: str, *, tenant_id: str, content: dict, change_note: str = "",
                    actor_user_id: str | None = None) -> TemplateVersion:
    """Append version ``latest_version + 1`` with *content*."""
    normalised = validate_content(content)
    template = get_template(template_id, tenant_id=tenant_id)
    try:
        version = _append_version(template, normalised, change_note, actor_user_id)
    except IntegrityError as exc:
        db.session.rollback()
        raise ConflictError("TemplateVersion", "version", str(template.latest_version + 1)) from exc

    write_audit(entity_type="template", entity_id=template.id, action="template.version_published",
                tenant_id=tenant_id, actor_user_id=actor_user_id, diff={"version": version.version})
    enqueue_event(tenant_id=tenant_id, event_type="template.version_published",
                  aggregate_type="template", aggregate_id=template.id,
                  payload={"name": template.name, "version": version.version})
    db.session.commit()
    return version


def get_version(template_id: str, version: int | None = None, *, tenant_id: str) -> TemplateVersion:
    """Fetch a version (latest when *version* is None)."""
    template = get_template(template_id, tenant_id=tenant_id, include_deleted=True)
    number = version if version is not None else template.latest_version
    row = template.versions.filter(TemplateVersion.version == number).first()
    if row is None:
        raise NotFoundError(resource="TemplateVersion", resource_id=f"{template_id}@v{number}")
    return row


def list_versions(template_id: str, *, tenant_id: str) -> list[TemplateVersion]:
    template = get_template(template_id, tenant_id=tenant_id, include_deleted=True)
    return template.versions.all()


def apply_template(project_id: str, *, tenant_id: str, template_id: str, version: int | None = None,
                   actor_user_id: str | None = None) -> dict:
    """Create the phases, tasks and dependencies of a template version in a project.

    Everything is added in one transaction.  Returns a summary with the
    created ids keyed by template key.
    """
    project = get_scoped(Project, project_id, tenant_id=tenant_id)
    project_service.require_editable(project)
    template = get_template(template_id, tenant_id=tenant_id)
    if not template.is_active:
        raise ValidationError(f"Template '{template.name}' is inactive", details={"template_id": template.id})
    tv = get_version(template.id, version, tenant_id=tenant_id)
    content = tv.content or {}

    phase_ids = {}
    for phase in content.get("phases", []):
        created = project_service.add_phase(project.id, tenant_id=tenant_id, name=phase["name"],
                                            commit=False)
        phase_ids[phase["key"]] = created.id

    task_ids = {}
    for item in topological_order(content.get("tasks", [])):
        task = task_service.create_task(
            project.id,
            tenant_id=tenant_id,
            data={
                "title": item["title"],
                "description": item.get("description") or "",
                "priority": item.get("priority") or "medium",
                "estimated_hours": item.get("estimated_hours"),
                "phase_id": phase_ids.get(item.get("phase")),
                "sort_order": len(task_ids),
                "depends_on": [task_ids[key] for key in item.get("depends_on") or []],
            },
            actor_user_id=actor_user_id,
            commit=False,
        )
        task_ids[item["key"]] = task.id

    project.template_version_id = tv.id
    summary = {
        "project_id": project.id,
        "template_id": template.id,
        "version": tv.version,
        "phases": phase_ids,
        "tasks": task_ids,
    }
    write_audit(entity_type="project", entity_id=project.id, action="template.applied",
                tenant_id=tenant_id, project_id=project.id, actor_user_id=actor_user_id,
                diff={"template_id": template.id, "version": tv.version,
                      "phases": len(phase_ids), "tasks": len(task_ids)})
    enqueue_event(tenant_id=tenant_id, event_type="template.applied",
                  aggregate_type="project", aggregate_id=project.id,
                  payload={"template_id": template.id, "version": tv.version, "tasks": len(task_ids)})
    db.session.commit()
    logger.info("Applied template %s v%s to project %s (%d tasks)",
                template.name, tv.version, project.code, len(task_ids))
    return summary
