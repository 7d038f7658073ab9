"""
Project lifecycle: CRUD, workflow transitions, phases, component tree
and the progress roll-up.
"""

import pytest

from app.core.exceptions import ConflictError, InvalidTransitionError, NotFoundError, ValidationError
from app.models import db as _db
from app.models.project import Project
from app.models.reliability import OutboxEvent
from app.services import project_service, task_service, tenant_service


class TestCreateProject:
    def test_defaults(self, project, pm_user):
        assert project.status == "draft"
        assert project.code == "PRJ-0001"
        assert project.owner_id == pm_user.id
        assert float(project.budget) == 100000
        assert project.currency == "USD"

    def test_codes_increment(self, project, default_tenant, pm_user):
        second = project_service.create_project(
            tenant_id=default_tenant.id, data={"name": "Second"}, actor_user_id=pm_user.id
        )
        assert second.code == "PRJ-0002"

    def test_enqueues_created_event(self, project):
        event = OutboxEvent.query.filter_by(aggregate_id=project.id, event_type="project.created").one()
        assert event.status == "pending"
        assert event.payload["code"] == project.code

    def test_name_required(self, default_tenant):
        with pytest.raises(ValidationError):
            project_service.create_project(tenant_id=default_tenant.id, data={"name": "  "})

    def test_duplicate_code(self, project, default_tenant):
        with pytest.raises(ConflictError):
            project_service.create_project(
                tenant_id=default_tenant.id, data={"name": "Copy", "code": project.code}
            )

    def test_negative_budget(self, default_tenant):
        with pytest.raises(ValidationError):
            project_service.create_project(tenant_id=default_tenant.id, data={"name": "X", "budget": -5})

    def test_project_limit(self, make_user):
        small = tenant_service.create_tenant(name="Small Shop", max_projects=1)
        project_service.create_project(tenant_id=small.id, data={"name": "Only One"})
        with pytest.raises(ValidationError):
            project_service.create_project(tenant_id=small.id, data={"name": "One Too Many"})

    def test_owner_from_other_tenant_rejected(self, default_tenant, make_user):
        other = tenant_service.create_tenant(name="Elsewhere")
        stranger = make_user("stranger@elsewhere.example", tenant_id=other.id)
        with pytest.raises(ValidationError):
            project_service.create_project(
                tenant_id=default_tenant.id, data={"name": "X", "owner_id": stranger.id}
            )


class TestProjectScoping:
    def test_other_tenant_sees_not_found(self, project):
        other = tenant_service.create_tenant(name="Nosy Neighbours")
        with pytest.raises(NotFoundError):
            project_service.get_project(project.id, tenant_id=other.id)

    def test_update_rejects_status(self, project, default_tenant):
        with pytest.raises(ValidationError):
            project_service.update_project(project.id, tenant_id=default_tenant.id,
                                           data={"status": "active"})

    def test_update_fields(self, project, default_tenant):
        updated = project_service.update_project(
            project.id, tenant_id=default_tenant.id,
            data={"name": "Harbour Office Phase 2", "start_date": "2026-01-10", "end_date": "2026-06-30"},
        )
        assert updated.name == "Harbour Office Phase 2"
        assert updated.end_date.isoformat() == "2026-06-30"

    def test_end_before_start(self, project, default_tenant):
        with pytest.raises(ValidationError):
            project_service.update_project(
                project.id, tenant_id=default_tenant.id,
                data={"start_date": "2026-06-30", "end_date": "2026-01-10"},
            )
        _db.session.rollback()


class TestProjectWorkflow:
    def test_happy_path(self, project, default_tenant):
        tid = default_tenant.id
        for status in ("active", "on_hold", "active", "completed", "archived"):
            project = project_service.transition_project(project.id, tenant_id=tid, new_status=status)
            assert project.status == status

    def test_illegal_transition(self, project, default_tenant):
        with pytest.raises(InvalidTransitionError):
            project_service.transition_project(project.id, tenant_id=default_tenant.id,
                                               new_status="completed")

    def test_completion_blocked_by_open_tasks(self, project, default_tenant):
        tid = default_tenant.id
        project_service.transition_project(project.id, tenant_id=tid, new_status="active")
        task = task_service.create_task(project.id, tenant_id=tid, data={"title": "Snag list"})
        with pytest.raises(ValidationError) as exc:
            project_service.transition_project(project.id, tenant_id=tid, new_status="completed")
        assert exc.value.details == {"open_tasks": 1}

        task_service.transition_task(task.id, tenant_id=tid, new_status="cancelled")
        assert project_service.transition_project(project.id, tenant_id=tid,
                                                  new_status="completed").status == "completed"

    def test_status_event_carries_owner(self, project, default_tenant, pm_user):
        project_service.transition_project(project.id, tenant_id=default_tenant.id, new_status="active")
        event = OutboxEvent.query.filter_by(aggregate_id=project.id,
                                            event_type="project.status_changed").one()
        assert event.payload == {"code": "PRJ-0001", "old": "draft", "new": "active",
                                 "owner_id": pm_user.id}

    def test_soft_delete_and_restore(self, project, default_tenant):
        tid = default_tenant.id
        project_service.soft_delete_project(project.id, tenant_id=tid)
        with pytest.raises(NotFoundError):
            project_service.get_project(project.id, tenant_id=tid)
        assert project_service.list_projects(tenant_id=tid).count() == 0
        assert project_service.list_projects(tenant_id=tid, include_deleted=True).count() == 1

        restored = project_service.restore_project(project.id, tenant_id=tid)
        assert restored.deleted_at is None
        assert _db.session.get(Project, project.id).deleted_at is None

    def test_list_filters(self, project, default_tenant):
        tid = default_tenant.id
        assert project_service.list_projects(tenant_id=tid, search="harbour").count() == 1
        assert project_service.list_projects(tenant_id=tid, status="active").count() == 0
        with pytest.raises(ValidationError):
            project_service.list_projects(tenant_id=tid, status="sleeping")


class TestPhasesAndComponents:
    def test_phase_sequences(self, project, default_tenant):
        tid = default_tenant.id
        first = project_service.add_phase(project.id, tenant_id=tid, name="Design")
        second = project_service.add_phase(project.id, tenant_id=tid, name="Build")
        assert (first.sequence, second.sequence) == (1, 2)
        with pytest.raises(ConflictError):
            project_service.add_phase(project.id, tenant_id=tid, name="Again", sequence=2)
        assert [p.name for p in project_service.list_phases(project.id, tenant_id=tid)] == ["Design", "Build"]

    def test_cancelled_project_is_frozen(self, project, default_tenant):
        tid = default_tenant.id
        project_service.transition_project(project.id, tenant_id=tid, new_status="cancelled")
        with pytest.raises(ValidationError):
            project_service.add_phase(project.id, tenant_id=tid, name="Too Late")

    def test_component_tree_and_cycle(self, project, default_tenant):
        tid = default_tenant.id
        building = project_service.create_component(project.id, tenant_id=tid, name="Building A")
        floor = project_service.create_component(project.id, tenant_id=tid, name="Floor 1",
                                                 parent_id=building.id)
        room = project_service.create_component(project.id, tenant_id=tid, name="Room 101",
                                                parent_id=floor.id)

        tree = project_service.component_tree(project.id, tenant_id=tid)
        assert len(tree) == 1
        assert tree[0]["children"][0]["children"][0]["name"] == "Room 101"

        with pytest.raises(ValidationError):
            project_service.move_component(building.id, tenant_id=tid, new_parent_id=room.id)

        moved = project_service.move_component(room.id, tenant_id=tid, new_parent_id=None)
        assert moved.parent_id is None
        assert len(project_service.component_tree(project.id, tenant_id=tid)) == 2

    def test_component_parent_must_share_project(self, project, default_tenant, pm_user):
        tid = default_tenant.id
        other = project_service.create_project(tenant_id=tid, data={"name": "Other"},
                                               actor_user_id=pm_user.id)
        foreign = project_service.create_component(other.id, tenant_id=tid, name="Elsewhere")
        mine = project_service.create_component(project.id, tenant_id=tid, name="Mine")
        with pytest.raises(ValidationError):
            project_service.move_component(mine.id, tenant_id=tid, new_parent_id=foreign.id)


class TestProgress:
    def test_progress_ignores_cancelled(self, project, default_tenant):
        tid = default_tenant.id
        project_service.transition_project(project.id, tenant_id=tid, new_status="active")
        done = task_service.create_task(project.id, tenant_id=tid, data={"title": "Survey"})
        task_service.create_task(project.id, tenant_id=tid, data={"title": "Demolition"})
        dropped = task_service.create_task(project.id, tenant_id=tid, data={"title": "Skylight"})

        task_service.transition_task(done.id, tenant_id=tid, new_status="in_progress")
        task_service.transition_task(done.id, tenant_id=tid, new_status="completed")
        task_service.transition_task(dropped.id, tenant_id=tid, new_status="cancelled")

        summary = project_service.project_progress(project.id, tenant_id=tid)
        assert summary["total"] == 3
        assert summary["completed"] == 1
        assert summary["cancelled"] == 1
        assert summary["progress"] == 50
        assert summary["by_status"] == {"completed": 1, "pending": 1, "cancelled": 1}
        assert _db.session.get(Project, project.id).progress == 50

    def test_overdue_count(self, project, default_tenant):
        tid = default_tenant.id
        task_service.create_task(project.id, tenant_id=tid,
                                 data={"title": "Late", "start_date": "2020-01-01", "due_date": "2020-02-01"})
        assert project_service.project_progress(project.id, tenant_id=tid)["overdue"] == 1
