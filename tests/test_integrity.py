"""
Integrity guard.  Violations are planted with raw UPDATEs / inserts that
bypass the service layer, the way a bad migration or manual fix would.
"""

import pytest
from sqlalchemy import update
from sqlalchemy.exc import IntegrityError

from app.models import db as _db
from app.models.document import Document
from app.models.reliability import OutboxEvent
from app.models.task import TaskDependency
from app.models.template import Template
from app.services import document_service, project_service, task_service, template_service
from app.services.integrity_service import CHECKS, run_integrity_checks
from app.services.outbox_service import enqueue_event


@pytest.fixture()
def populated(project, default_tenant, pm_user):
    tid = default_tenant.id
    a = task_service.create_task(project.id, tenant_id=tid, data={"title": "A"})
    b = task_service.create_task(project.id, tenant_id=tid, data={"title": "B", "depends_on": [a.id]})
    doc = document_service.create_document(
        project.id, tenant_id=tid,
        data={"title": "Brief", "file_name": "brief.txt", "file_path": "/brief.txt", "content": "v1"},
    )
    document_service.upload_version(doc.id, tenant_id=tid,
                                    data={"file_name": "brief-v2.txt", "file_path": "/brief-v2.txt", "content": "v2"})
    tpl = template_service.create_template(tenant_id=tid, name="Basic",
                                           content={"tasks": [{"key": "k", "title": "K"}]})
    return {"tasks": (a, b), "document": doc, "template": tpl}


class TestIntegrityChecks:
    def test_check_catalogue(self):
        assert set(CHECKS) == {
            "orphan_tenant_refs", "document_heads", "template_heads", "self_dependencies",
            "cross_project_deps", "outbox_dead_letters", "cross_tenant_children",
        }

    def test_clean_database(self, populated):
        assert run_integrity_checks() == {"ok": True, "violations": {}}

    def test_document_head_behind(self, populated):
        doc = populated["document"]
        v1 = document_service.get_version(doc.id, 1, tenant_id=doc.tenant_id)
        _db.session.execute(update(Document).where(Document.id == doc.id).values(current_version_id=v1.id))
        _db.session.commit()
        report = run_integrity_checks()
        assert report["ok"] is False
        assert report["violations"]["document_heads"] == [doc.id]

    def test_template_head_mismatch(self, populated):
        tpl = populated["template"]
        _db.session.execute(update(Template).where(Template.id == tpl.id).values(latest_version=7))
        _db.session.commit()
        assert run_integrity_checks()["violations"] == {"template_heads": [tpl.id]}

    def test_self_dependency(self, populated):
        a, _ = populated["tasks"]
        _db.session.add(TaskDependency(tenant_id=a.tenant_id, task_id=a.id, depends_on_task_id=a.id))
        _db.session.commit()
        assert "self_dependencies" in run_integrity_checks()["violations"]

    def test_cross_project_dependency(self, populated, default_tenant, pm_user):
        a, _ = populated["tasks"]
        other = project_service.create_project(tenant_id=default_tenant.id, data={"name": "Other"},
                                               actor_user_id=pm_user.id)
        foreign = task_service.create_task(other.id, tenant_id=default_tenant.id, data={"title": "F"})
        edge = TaskDependency(tenant_id=a.tenant_id, task_id=a.id, depends_on_task_id=foreign.id)
        _db.session.add(edge)
        _db.session.commit()
        assert run_integrity_checks()["violations"]["cross_project_deps"] == [edge.id]

    def test_failed_outbox_event_without_dead_letter(self, default_tenant):
        event = enqueue_event(tenant_id=default_tenant.id, event_type="x.y",
                              aggregate_type="x", aggregate_id="1")
        _db.session.commit()
        _db.session.execute(update(OutboxEvent).where(OutboxEvent.id == event.id).values(status="failed"))
        _db.session.commit()
        assert run_integrity_checks()["violations"] == {"outbox_dead_letters": [event.id]}

    def test_processed_at_on_pending_row_is_refused_by_the_schema(self, default_tenant):
        event = enqueue_event(tenant_id=default_tenant.id, event_type="x.y",
                              aggregate_type="x", aggregate_id="1")
        _db.session.commit()
        with pytest.raises(IntegrityError):
            _db.session.execute(
                update(OutboxEvent).where(OutboxEvent.id == event.id).values(processed_at=event.created_at)
            )
            _db.session.flush()
        _db.session.rollback()
        assert run_integrity_checks()["ok"] is True
