"""
Template versioning and apply_template.
"""

import pytest

from app.core.exceptions import ConflictError, NotFoundError, ValidationError
from app.models import db as _db
from app.models.document import ImmutableRowError
from app.models.project import Project, ProjectPhase
from app.models.task import Task, TaskDependency
from app.models.template import TemplateVersion
from app.services import project_service, template_service, task_service

FIT_OUT = {
    "phases": [
        {"key": "design", "name": "Design"},
        {"key": "build", "name": "Build"},
    ],
    "tasks": [
        # Listed out of dependency order on purpose
        {"key": "paint", "title": "Paint walls", "phase": "build", "depends_on": ["drywall"]},
        {"key": "survey", "title": "Site survey", "phase": "design"},
        {"key": "drywall", "title": "Hang drywall", "phase": "build", "depends_on": ["survey"]},
        {"key": "signage", "title": "Order signage"},
    ],
}


@pytest.fixture()
def tid(default_tenant):
    return default_tenant.id


@pytest.fixture()
def template(tid, pm_user):
    return template_service.create_template(
        tenant_id=tid, name="Office fit-out", category="renovation",
        content=FIT_OUT, actor_user_id=pm_user.id,
    )


class TestContentValidation:
    def test_topological_order(self):
        ordered = [t["key"] for t in template_service.topological_order(FIT_OUT["tasks"])]
        assert ordered.index("survey") < ordered.index("drywall") < ordered.index("paint")
        assert set(ordered) == {"paint", "survey", "drywall", "signage"}

    def test_cycle(self):
        tasks = [
            {"key": "a", "title": "A", "depends_on": ["b"]},
            {"key": "b", "title": "B", "depends_on": ["a"]},
            {"key": "c", "title": "C"},
        ]
        with pytest.raises(ValidationError) as exc:
            template_service.topological_order(tasks)
        assert exc.value.details == {"tasks": ["a", "b"]}

    @pytest.mark.parametrize("content", [
        None,
        {"phases": "design"},
        {"phases": [{"key": "x"}]},
        {"phases": [{"key": "x", "name": "X"}, {"key": "x", "name": "Y"}]},
        {"tasks": [{"key": "t"}]},
        {"tasks": [{"key": "t", "title": "T", "phase": "nope"}]},
        {"tasks": [{"key": "t", "title": "T", "depends_on": ["ghost"]}]},
        {"tasks": [{"key": "t", "title": "T", "depends_on": ["t"]}]},
    ])
    def test_invalid_content(self, content):
        with pytest.raises(ValidationError):
            template_service.validate_content(content)


class TestTemplateVersions:
    def test_create_publishes_v1(self, template, tid):
        assert template.latest_version == 1
        v1 = template_service.get_version(template.id, tenant_id=tid)
        assert v1.version == 1
        assert v1.content["phases"][0]["key"] == "design"

    def test_create_without_content(self, tid):
        empty = template_service.create_template(tenant_id=tid, name="Blank")
        assert empty.latest_version == 0
        with pytest.raises(NotFoundError):
            template_service.get_version(empty.id, tenant_id=tid)

    def test_duplicate_name(self, template, tid):
        with pytest.raises(ConflictError):
            template_service.create_template(tenant_id=tid, name="Office fit-out")

    def test_publish_appends(self, template, tid):
        content = {"phases": [], "tasks": [{"key": "only", "title": "Only task"}]}
        v2 = template_service.publish_version(template.id, tenant_id=tid, content=content,
                                              change_note="Slimmed down")
        assert v2.version == 2
        assert [v.version for v in template_service.list_versions(template.id, tenant_id=tid)] == [1, 2]
        assert template_service.get_version(template.id, 1, tenant_id=tid).content == FIT_OUT
        assert template_service.get_version(template.id, tenant_id=tid).id == v2.id

    def test_metadata_edit_creates_no_version(self, template, tid):
        updated = template_service.update_template_metadata(
            template.id, tenant_id=tid, data={"name": "Fit-out v2", "is_active": False}
        )
        assert updated.name == "Fit-out v2"
        assert updated.latest_version == 1
        assert TemplateVersion.query.filter_by(template_id=template.id).count() == 1

    def test_versions_are_immutable(self, template):
        row = TemplateVersion.query.filter_by(template_id=template.id).one()
        row.change_note = "edited"
        with pytest.raises(ImmutableRowError):
            _db.session.flush()
        _db.session.rollback()

    def test_soft_delete(self, template, tid):
        template_service.soft_delete_template(template.id, tenant_id=tid)
        assert template_service.list_templates(tenant_id=tid).count() == 0
        # History stays readable
        assert len(template_service.list_versions(template.id, tenant_id=tid)) == 1


class TestApplyTemplate:
    def test_apply_creates_graph(self, template, project, tid, pm_user):
        summary = template_service.apply_template(project.id, tenant_id=tid, template_id=template.id,
                                                  actor_user_id=pm_user.id)
        assert summary["version"] == 1
        assert set(summary["phases"]) == {"design", "build"}
        assert set(summary["tasks"]) == {"paint", "survey", "drywall", "signage"}

        assert ProjectPhase.query.filter_by(project_id=project.id).count() == 2
        assert Task.query.filter_by(project_id=project.id).count() == 4
        assert TaskDependency.query.count() == 2

        paint = _db.session.get(Task, summary["tasks"]["paint"])
        assert paint.phase_id == summary["phases"]["build"]
        deps = task_service.list_dependencies(paint.id, tenant_id=tid)["depends_on"]
        assert [d["depends_on_task_id"] for d in deps] == [summary["tasks"]["drywall"]]

        _db.session.expire_all()
        applied = _db.session.get(Project, project.id)
        assert applied.template_version_id == template_service.get_version(template.id, tenant_id=tid).id

    def test_apply_specific_version(self, template, project, tid):
        template_service.publish_version(template.id, tenant_id=tid,
                                         content={"tasks": [{"key": "x", "title": "X"}]})
        summary = template_service.apply_template(project.id, tenant_id=tid, template_id=template.id,
                                                  version=1)
        assert summary["version"] == 1
        assert len(summary["tasks"]) == 4

    def test_inactive_template_rejected(self, template, project, tid):
        template_service.update_template_metadata(template.id, tenant_id=tid, data={"is_active": False})
        with pytest.raises(ValidationError):
            template_service.apply_template(project.id, tenant_id=tid, template_id=template.id)

    def test_frozen_project_rejected(self, template, project, tid):
        project_service.transition_project(project.id, tenant_id=tid, new_status="cancelled")
        with pytest.raises(ValidationError):
            template_service.apply_template(project.id, tenant_id=tid, template_id=template.id)
