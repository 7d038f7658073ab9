"""
Task workflow, dependency graph and assignments.
"""

import pytest

from app.core.exceptions import ConflictError, InvalidTransitionError, ValidationError
from app.models import db as _db
from app.models.reliability import OutboxEvent
from app.models.task import TaskDependency
from app.services import project_service, task_service, tenant_service
from app.services.user_service import add_team_member, create_team


@pytest.fixture()
def tid(default_tenant):
    return default_tenant.id


@pytest.fixture()
def active_project(project, tid):
    return project_service.transition_project(project.id, tenant_id=tid, new_status="active")


def _task(project, tid, title, **extra):
    return task_service.create_task(project.id, tenant_id=tid, data={"title": title, **extra})


class TestTaskWorkflow:
    def test_new_task_is_pending(self, active_project, tid):
        task = _task(active_project, tid, "Pour foundations", priority="high")
        assert task.status == "pending"
        assert task.progress == 0
        assert task.priority == "high"

    def test_complete_sets_progress(self, active_project, tid):
        task = _task(active_project, tid, "Frame walls")
        task_service.transition_task(task.id, tenant_id=tid, new_status="in_progress")
        done = task_service.transition_task(task.id, tenant_id=tid, new_status="completed")
        assert done.progress == 100
        assert done.completed_at is not None

        reopened = task_service.transition_task(task.id, tenant_id=tid, new_status="in_progress")
        assert reopened.completed_at is None

    def test_illegal_transition(self, active_project, tid):
        task = _task(active_project, tid, "Roofing")
        with pytest.raises(InvalidTransitionError):
            task_service.transition_task(task.id, tenant_id=tid, new_status="completed")

    def test_status_event(self, active_project, tid):
        task = _task(active_project, tid, "Roofing")
        task_service.transition_task(task.id, tenant_id=tid, new_status="in_progress")
        event = OutboxEvent.query.filter_by(aggregate_id=task.id, event_type="task.status_changed").one()
        assert event.payload == {"project_id": active_project.id, "title": "Roofing",
                                 "old": "pending", "new": "in_progress"}

    def test_update_rejects_status(self, active_project, tid):
        task = _task(active_project, tid, "Roofing")
        with pytest.raises(ValidationError):
            task_service.update_task(task.id, tenant_id=tid, data={"status": "completed"})

    def test_title_required(self, active_project, tid):
        with pytest.raises(ValidationError):
            _task(active_project, tid, " ")

    def test_frozen_project_rejects_new_tasks(self, project, tid):
        project_service.transition_project(project.id, tenant_id=tid, new_status="cancelled")
        with pytest.raises(ValidationError):
            _task(project, tid, "Too late")


class TestDependencies:
    def test_prerequisite_blocks_start(self, active_project, tid):
        survey = _task(active_project, tid, "Survey")
        dig = _task(active_project, tid, "Excavate", depends_on=[survey.id])

        with pytest.raises(ValidationError) as exc:
            task_service.transition_task(dig.id, tenant_id=tid, new_status="in_progress")
        assert exc.value.details == {"depends_on": [survey.id]}

        task_service.transition_task(survey.id, tenant_id=tid, new_status="in_progress")
        task_service.transition_task(survey.id, tenant_id=tid, new_status="completed")
        assert task_service.transition_task(dig.id, tenant_id=tid,
                                            new_status="in_progress").status == "in_progress"

    def test_start_to_start_does_not_block(self, active_project, tid):
        a = _task(active_project, tid, "Scaffold")
        b = _task(active_project, tid, "Paint facade")
        task_service.add_dependency(b.id, tenant_id=tid, depends_on_task_id=a.id,
                                    dependency_type="start_to_start")
        assert task_service.transition_task(b.id, tenant_id=tid,
                                            new_status="in_progress").status == "in_progress"

    def test_self_dependency(self, active_project, tid):
        a = _task(active_project, tid, "Loop")
        with pytest.raises(ValidationError):
            task_service.add_dependency(a.id, tenant_id=tid, depends_on_task_id=a.id)

    def test_cycle_rejected(self, active_project, tid):
        a = _task(active_project, tid, "A")
        b = _task(active_project, tid, "B", depends_on=[a.id])
        c = _task(active_project, tid, "C", depends_on=[b.id])
        with pytest.raises(ValidationError) as exc:
            task_service.add_dependency(a.id, tenant_id=tid, depends_on_task_id=c.id)
        assert "cycle" in str(exc.value)

    def test_duplicate_dependency(self, active_project, tid):
        a = _task(active_project, tid, "A")
        b = _task(active_project, tid, "B", depends_on=[a.id])
        with pytest.raises(ConflictError):
            task_service.add_dependency(b.id, tenant_id=tid, depends_on_task_id=a.id)

    def test_cross_project_dependency(self, active_project, tid, pm_user):
        other = project_service.create_project(tenant_id=tid, data={"name": "Other"},
                                               actor_user_id=pm_user.id)
        foreign = _task(other, tid, "Foreign")
        local = _task(active_project, tid, "Local")
        with pytest.raises(ValidationError):
            task_service.add_dependency(local.id, tenant_id=tid, depends_on_task_id=foreign.id)

    def test_list_and_remove(self, active_project, tid):
        a = _task(active_project, tid, "A")
        b = _task(active_project, tid, "B", depends_on=[a.id])

        graph = task_service.list_dependencies(a.id, tenant_id=tid)
        assert graph["depends_on"] == []
        assert [d["task_id"] for d in graph["dependents"]] == [b.id]

        task_service.remove_dependency(b.id, tenant_id=tid, depends_on_task_id=a.id)
        assert TaskDependency.query.count() == 0
        with pytest.raises(ValidationError):
            task_service.remove_dependency(b.id, tenant_id=tid, depends_on_task_id=a.id)


class TestAssignments:
    def test_assign_user(self, active_project, tid, make_user, pm_user):
        worker = make_user("worker@example.com", ["member"])
        task = _task(active_project, tid, "Tile bathrooms")
        assignment = task_service.assign_task(task.id, tenant_id=tid, user_id=worker.id,
                                              allocation_percent=50, actor_user_id=pm_user.id)
        assert assignment.assignment_type == "user"
        assert assignment.allocation_percent == 50

        event = OutboxEvent.query.filter_by(aggregate_id=task.id, event_type="task.assigned").one()
        assert event.payload["user_id"] == worker.id

        with pytest.raises(ConflictError):
            task_service.assign_task(task.id, tenant_id=tid, user_id=worker.id)

    def test_assign_team(self, active_project, tid, make_user):
        crew = create_team(tid, "Electricians")
        sparky = make_user("sparky@example.com")
        add_team_member(tid, crew.id, sparky.id)
        task = _task(active_project, tid, "Wire lighting")
        assignment = task_service.assign_task(task.id, tenant_id=tid, team_id=crew.id)
        assert assignment.assignment_type == "team"
        assert [a.id for a in task_service.list_assignments(task.id, tenant_id=tid)] == [assignment.id]

        task_service.unassign_task(assignment.id, tenant_id=tid)
        assert task_service.list_assignments(task.id, tenant_id=tid) == []

    @pytest.mark.parametrize("kwargs", [{}, {"user_id": "u", "team_id": "t"}])
    def test_exactly_one_target(self, active_project, tid, kwargs):
        task = _task(active_project, tid, "Ambiguous")
        with pytest.raises(ValidationError):
            task_service.assign_task(task.id, tenant_id=tid, **kwargs)

    def test_bad_allocation(self, active_project, tid, pm_user):
        task = _task(active_project, tid, "Overbooked")
        with pytest.raises(ValidationError):
            task_service.assign_task(task.id, tenant_id=tid, user_id=pm_user.id, allocation_percent=150)

    def test_user_of_other_tenant(self, active_project, tid, make_user):
        other = tenant_service.create_tenant(name="Subcontractor")
        outsider = make_user("outsider@sub.example", tenant_id=other.id)
        task = _task(active_project, tid, "Cladding")
        with pytest.raises(ValidationError):
            task_service.assign_task(task.id, tenant_id=tid, user_id=outsider.id)
        _db.session.rollback()
