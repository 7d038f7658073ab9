"""
Data integrity guard.

Read-only sweep over the whole database for states the write paths are meant
to make impossible.  Each check returns the offending ids (capped at
``SAMPLE_LIMIT``) so an operator can inspect them; nothing is repaired here.

Checks:
    orphan_tenant_refs      tenant_id pointing at a missing tenant
    document_heads          current_version_id missing, foreign, or not the max version
    template_heads          latest_version not equal to the highest stored version
    self_dependencies       task depending on itself
    cross_project_deps      dependency edge between tasks of different projects
    outbox_dead_letters     failed outbox event with no dead-letter row
    cross_tenant_children   child row whose tenant differs from its parent's
"""

import logging

from sqlalchemy import func
from sqlalchemy.orm import aliased

from app.models import db
from app.models.auth import Tenant
from app.models.change_request import ChangeRequest, ChangeRequestApproval
from app.models.document import Document, DocumentVersion
from app.models.project import Project
from app.models.reliability import DeadLetterJob, OutboxEvent
from app.models.task import Task, TaskDependency
from app.models.template import Template, TemplateVersion

logger = logging.getLogger(__name__)

SAMPLE_LIMIT = 50


def _ids(query) -> list[str]:
    return [row[0] for row in query.limit(SAMPLE_LIMIT).all()]


def _tenant_models():
    for mapper in db.Model.registry.mappers:
        if "tenant_id" in mapper.columns:
            yield mapper.class_


def check_orphan_tenant_refs() -> list[str]:
    found = []
    tenant_ids = db.select(Tenant.id)
    for model in sorted(_tenant_models(), key=lambda m: m.__tablename__):
        rows = _ids(db.session.query(model.id).filter(
            model.tenant_id.isnot(None), model.tenant_id.notin_(tenant_ids)
        ))
        found.extend(f"{model.__tablename__}:{row_id}" for row_id in rows)
    return found[:SAMPLE_LIMIT]


def check_document_heads() -> list[str]:
    max_versions = (
        db.session.query(DocumentVersion.document_id, func.max(DocumentVersion.version_number).label("top"))
        .group_by(DocumentVersion.document_id)
        .subquery()
    )
    head = aliased(DocumentVersion)
    missing_head = db.session.query(Document.id).join(
        max_versions, max_versions.c.document_id == Document.id
    ).filter(Document.current_version_id.is_(None))
    wrong_head = (
        db.session.query(Document.id)
        .join(head, head.id == Document.current_version_id)
        .join(max_versions, max_versions.c.document_id == Document.id)
        .filter((head.document_id != Document.id) | (head.version_number != max_versions.c.top))
    )
    return _ids(missing_head) + _ids(wrong_head)


def check_template_heads() -> list[str]:
    top = func.coalesce(
        db.select(func.max(TemplateVersion.version))
        .where(TemplateVersion.template_id == Template.id)
        .scalar_subquery(),
        0,
    )
    return _ids(db.session.query(Template.id).filter(Template.latest_version != top))


def check_self_dependencies() -> list[str]:
    return _ids(db.session.query(TaskDependency.id).filter(
        TaskDependency.task_id == TaskDependency.depends_on_task_id
    ))


def check_cross_project_dependencies() -> list[str]:
    dependent = aliased(Task)
    prereq = aliased(Task)
    return _ids(
        db.session.query(TaskDependency.id)
        .join(dependent, dependent.id == TaskDependency.task_id)
        .join(prereq, prereq.id == TaskDependency.depends_on_task_id)
        .filter(dependent.project_id != prereq.project_id)
    )


def check_outbox_dead_letters() -> list[str]:
    # processed_at vs status is enforced by ck_outbox_processed_at_only_when_completed
    dead_lettered = db.select(DeadLetterJob.reference_id).where(
        DeadLetterJob.source == "outbox", DeadLetterJob.reference_id.isnot(None)
    )
    return _ids(db.session.query(OutboxEvent.id).filter(
        OutboxEvent.status == "failed", OutboxEvent.id.notin_(dead_lettered)
    ))


def check_cross_tenant_children() -> list[str]:
    pairs = (
        (Task, Project, Task.project_id),
        (Document, Project, Document.project_id),
        (ChangeRequest, Project, ChangeRequest.project_id),
        (ChangeRequestApproval, ChangeRequest, ChangeRequestApproval.change_request_id),
        (DocumentVersion, Document, DocumentVersion.document_id),
        (TemplateVersion, Template, TemplateVersion.template_id),
    )
    found = []
    for child, parent, fk in pairs:
        rows = _ids(
            db.session.query(child.id).join(parent, parent.id == fk)
            .filter(child.tenant_id != parent.tenant_id)
        )
        found.extend(f"{child.__tablename__}:{row_id}" for row_id in rows)
    return found[:SAMPLE_LIMIT]


CHECKS = {
    "orphan_tenant_refs": check_orphan_tenant_refs,
    "document_heads": check_document_heads,
    "template_heads": check_template_heads,
    "self_dependencies": check_self_dependencies,
    "cross_project_deps": check_cross_project_dependencies,
    "outbox_dead_letters": check_outbox_dead_letters,
    "cross_tenant_children": check_cross_tenant_children,
}


def run_integrity_checks() -> dict:
    """Run every check.

    Returns:
        {"ok": bool, "violations": {check_name: [ids...]}}  (only failing checks listed)
    """
    violations = {}
    for name, check in CHECKS.items():
        rows = check()
        if rows:
            violations[name] = rows
            logger.error("Integrity check %s: %d violation(s), e.g. %s", name, len(rows), rows[:5])
    return {"ok": not violations, "violations": violations}
