"""QC inspection service.

An inspection is scheduled, started, then closed by recording the checklist.
The result status follows from the checklist: every item passed → ``passed``,
otherwise ``failed``.  A failed inspection can be rescheduled, which bumps
``attempt`` and clears the previous results.
"""

from datetime import datetime, timezone

from app.core.exceptions import InvalidTransitionError, ValidationError
from app.models import db
from app.models.audit import write_audit
from app.models.auth import User
from app.models.inspection import INSPECTION_STATUSES, QCInspection, validate_inspection_transition
from app.models.project import Project
from app.models.task import Task
from app.services.helpers.scoped_queries import get_scoped, get_scoped_or_none
from app.services.outbox_service import enqueue_event
from app.utils.helpers import parse_date


def _checklist(items) -> list[dict]:
    if not isinstance(items, list):
        raise ValidationError("checklist must be a list", details={"checklist": "list required"})
    out = []
    for item in items:
        if isinstance(item, str):
            item = {"item": item}
        if not isinstance(item, dict) or not str(item.get("item") or "").strip():
            raise ValidationError("Each checklist entry needs an 'item'", details={"entry": item})
        passed = item.get("passed")
        if passed is not None and not isinstance(passed, bool):
            raise ValidationError("'passed' must be true, false or null", details={"entry": item})
        out.append({"item": str(item["item"]).strip(), "passed": passed, "note": item.get("note") or ""})
    return out


def _transition(inspection: QCInspection, new_status: str) -> str:
    old = inspection.status
    if not validate_inspection_transition(old, new_status):
        raise InvalidTransitionError("QCInspection", old, new_status)
    inspection.status = new_status
    return old


def schedule_inspection(project_id: str, *, tenant_id: str, data: dict,
                        actor_user_id: str | None = None) -> QCInspection:
    project = get_scoped(Project, project_id, tenant_id=tenant_id)
    title = str(data.get("title") or "").strip()
    if not title:
        raise ValidationError("title is required", details={"title": "required"})
    scheduled = parse_date(data.get("scheduled_date"))
    if scheduled is None:
        raise ValidationError("scheduled_date is required (YYYY-MM-DD)",
                              details={"scheduled_date": data.get("scheduled_date")})
    task_id = data.get("task_id")
    if task_id is not None and get_scoped_or_none(Task, task_id, tenant_id=tenant_id,
                                                  project_id=project.id) is None:
        raise ValidationError("task_id must reference a task of this project", details={"task_id": task_id})
    inspector_id = data.get("inspector_id")
    if inspector_id is not None and get_scoped_or_none(User, inspector_id, tenant_id=tenant_id) is None:
        raise ValidationError("inspector_id must reference a user of this tenant",
                              details={"inspector_id": inspector_id})

    inspection = QCInspection(
        tenant_id=tenant_id,
        project_id=project.id,
        task_id=task_id,
        inspector_id=inspector_id,
        title=title,
        status="scheduled",
        scheduled_date=scheduled,
        checklist=_checklist(data.get("checklist") or []),
    )
    db.session.add(inspection)
    db.session.flush()
    write_audit(entity_type="qc_inspection", entity_id=inspection.id, action="create",
                tenant_id=tenant_id, project_id=project.id, actor_user_id=actor_user_id,
                diff={"title": title, "scheduled_date": scheduled.isoformat()})
    db.session.commit()
    return inspection


def get_inspection(inspection_id: str, *, tenant_id: str) -> QCInspection:
    return get_scoped(QCInspection, inspection_id, tenant_id=tenant_id)


def start_inspection(inspection_id: str, *, tenant_id: str,
                     actor_user_id: str | None = None) -> QCInspection:
    inspection = get_inspection(inspection_id, tenant_id=tenant_id)
    _transition(inspection, "in_progress")
    inspection.started_at = datetime.now(timezone.utc)
    if inspection.inspector_id is None:
        inspection.inspector_id = actor_user_id
    write_audit(entity_type="qc_inspection", entity_id=inspection.id, action="inspection.started",
                tenant_id=tenant_id, project_id=inspection.project_id, actor_user_id=actor_user_id)
    db.session.commit()
    return inspection


def record_result(inspection_id: str, *, tenant_id: str, checklist: list, findings: str = "",
                  actor_user_id: str | None = None) -> QCInspection:
    """Close an in-progress inspection.  Every item must carry a verdict."""
    inspection = get_inspection(inspection_id, tenant_id=tenant_id)
    items = _checklist(checklist)
    if not items:
        raise ValidationError("checklist cannot be empty", details={"checklist": "required"})
    undecided = [i["item"] for i in items if i["passed"] is None]
    if undecided:
        raise ValidationError("Every checklist item needs a passed/failed verdict",
                              details={"undecided": undecided})

    outcome = "passed" if all(i["passed"] for i in items) else "failed"
    _transition(inspection, outcome)
    inspection.checklist = items
    inspection.findings = findings or ""
    inspection.completed_at = datetime.now(timezone.utc)

    write_audit(entity_type="qc_inspection", entity_id=inspection.id, action=f"inspection.{outcome}",
                tenant_id=tenant_id, project_id=inspection.project_id, actor_user_id=actor_user_id,
                diff={"failed_items": [i["item"] for i in inspection.failed_items]})
    enqueue_event(tenant_id=tenant_id, event_type=f"inspection.{outcome}",
                  aggregate_type="qc_inspection", aggregate_id=inspection.id,
                  payload={"project_id": inspection.project_id, "title": inspection.title,
                           "inspector_id": inspection.inspector_id,
                           "failed_count": len(inspection.failed_items)})
    db.session.commit()
    return inspection


def reschedule_inspection(inspection_id: str, *, tenant_id: str, scheduled_date,
                          actor_user_id: str | None = None) -> QCInspection:
    """Book a re-inspection after a failure."""
    inspection = get_inspection(inspection_id, tenant_id=tenant_id)
    new_date = parse_date(scheduled_date)
    if new_date is None:
        raise ValidationError("scheduled_date is required (YYYY-MM-DD)",
                              details={"scheduled_date": scheduled_date})
    _transition(inspection, "scheduled")
    inspection.scheduled_date = new_date
    inspection.attempt += 1
    inspection.started_at = None
    inspection.completed_at = None
    inspection.checklist = [{**i, "passed": None} for i in (inspection.checklist or [])]
    write_audit(entity_type="qc_inspection", entity_id=inspection.id, action="inspection.rescheduled",
                tenant_id=tenant_id, project_id=inspection.project_id, actor_user_id=actor_user_id,
                diff={"attempt": inspection.attempt, "scheduled_date": new_date.isoformat()})
    db.session.commit()
    return inspection


def list_inspections(project_id: str, *, tenant_id: str, status: str | None = None):
    project = get_scoped(Project, project_id, tenant_id=tenant_id)
    q = QCInspection.query_active().filter(QCInspection.project_id == project.id)
    if status:
        if status not in INSPECTION_STATUSES:
            raise ValidationError(f"Unknown status '{status}'", details={"status": sorted(INSPECTION_STATUSES)})
        q = q.filter(QCInspection.status == status)
    return q.order_by(QCInspection.scheduled_date, QCInspection.id)
