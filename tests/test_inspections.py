import pytest

from app.core.exceptions import InvalidTransitionError, NotFoundError, ValidationError
from app.models.reliability import OutboxEvent
from app.services import inspection_service, task_service

CHECKLIST = ["Fire doors self-close", {"item": "Sprinkler heads uncovered"}]


@pytest.fixture()
def tid(default_tenant):
    return default_tenant.id


@pytest.fixture()
def inspection(project, tid, pm_user):
    return inspection_service.schedule_inspection(
        project.id, tenant_id=tid, actor_user_id=pm_user.id,
        data={"title": "Fire safety walk-through", "scheduled_date": "2025-06-02", "checklist": CHECKLIST},
    )


def _verdicts(*passed):
    items = ["Fire doors self-close", "Sprinkler heads uncovered"]
    return [{"item": item, "passed": verdict} for item, verdict in zip(items, passed)]


class TestSchedule:
    def test_schedule(self, inspection):
        assert inspection.status == "scheduled"
        assert inspection.attempt == 1
        assert inspection.checklist == [
            {"item": "Fire doors self-close", "passed": None, "note": ""},
            {"item": "Sprinkler heads uncovered", "passed": None, "note": ""},
        ]

    @pytest.mark.parametrize("data", [
        {"scheduled_date": "2025-06-02"},
        {"title": "Walk-through"},
        {"title": "Walk-through", "scheduled_date": "someday"},
        {"title": "Walk-through", "scheduled_date": "2025-06-02", "checklist": "doors"},
        {"title": "Walk-through", "scheduled_date": "2025-06-02", "checklist": [{"note": "no item"}]},
        {"title": "Walk-through", "scheduled_date": "2025-06-02", "inspector_id": "nobody"},
    ])
    def test_invalid(self, project, tid, data):
        with pytest.raises(ValidationError):
            inspection_service.schedule_inspection(project.id, tenant_id=tid, data=data)

    def test_task_must_belong_to_project(self, project, tid, pm_user):
        from app.services import project_service
        other = project_service.create_project(tenant_id=tid, data={"name": "Other"}, actor_user_id=pm_user.id)
        foreign = task_service.create_task(other.id, tenant_id=tid, data={"title": "Foreign"})
        with pytest.raises(ValidationError):
            inspection_service.schedule_inspection(
                project.id, tenant_id=tid,
                data={"title": "T", "scheduled_date": "2025-06-02", "task_id": foreign.id},
            )

    def test_list_by_status(self, inspection, project, tid):
        assert inspection_service.list_inspections(project.id, tenant_id=tid, status="scheduled").count() == 1
        assert inspection_service.list_inspections(project.id, tenant_id=tid, status="passed").count() == 0
        with pytest.raises(ValidationError):
            inspection_service.list_inspections(project.id, tenant_id=tid, status="done")

    def test_other_tenant(self, inspection):
        with pytest.raises(NotFoundError):
            inspection_service.get_inspection(inspection.id, tenant_id="01ARZ3NDEKTSV4RRFFQ69G5FAV")


class TestResults:
    def test_start_defaults_inspector(self, inspection, tid, pm_user):
        started = inspection_service.start_inspection(inspection.id, tenant_id=tid, actor_user_id=pm_user.id)
        assert started.status == "in_progress"
        assert started.started_at is not None
        assert started.inspector_id == pm_user.id

    def test_result_requires_start(self, inspection, tid):
        with pytest.raises(InvalidTransitionError):
            inspection_service.record_result(inspection.id, tenant_id=tid, checklist=_verdicts(True, True))

    def test_all_passed(self, inspection, tid):
        inspection_service.start_inspection(inspection.id, tenant_id=tid)
        done = inspection_service.record_result(inspection.id, tenant_id=tid,
                                                checklist=_verdicts(True, True))
        assert done.status == "passed"
        assert done.completed_at is not None
        assert OutboxEvent.query.filter_by(event_type="inspection.passed").count() == 1

    def test_failure_enqueues_event(self, inspection, tid):
        inspection_service.start_inspection(inspection.id, tenant_id=tid)
        done = inspection_service.record_result(inspection.id, tenant_id=tid,
                                                checklist=_verdicts(True, False), findings="Door 3 sticks")
        assert done.status == "failed"
        assert done.findings == "Door 3 sticks"
        assert [i["item"] for i in done.failed_items] == ["Sprinkler heads uncovered"]
        event = OutboxEvent.query.filter_by(event_type="inspection.failed").one()
        assert event.payload["failed_count"] == 1
        assert event.aggregate_id == inspection.id

    def test_undecided_item(self, inspection, tid):
        inspection_service.start_inspection(inspection.id, tenant_id=tid)
        with pytest.raises(ValidationError) as exc:
            inspection_service.record_result(inspection.id, tenant_id=tid, checklist=_verdicts(True, None))
        assert exc.value.details == {"undecided": ["Sprinkler heads uncovered"]}

    def test_empty_checklist(self, inspection, tid):
        inspection_service.start_inspection(inspection.id, tenant_id=tid)
        with pytest.raises(ValidationError):
            inspection_service.record_result(inspection.id, tenant_id=tid, checklist=[])

    def test_reschedule_after_failure(self, inspection, tid):
        inspection_service.start_inspection(inspection.id, tenant_id=tid)
        inspection_service.record_result(inspection.id, tenant_id=tid, checklist=_verdicts(False, False))

        again = inspection_service.reschedule_inspection(inspection.id, tenant_id=tid,
                                                         scheduled_date="2025-06-09")
        assert again.status == "scheduled"
        assert again.attempt == 2
        assert again.completed_at is None
        assert {i["passed"] for i in again.checklist} == {None}

    def test_passed_cannot_be_rescheduled(self, inspection, tid):
        inspection_service.start_inspection(inspection.id, tenant_id=tid)
        inspection_service.record_result(inspection.id, tenant_id=tid, checklist=_verdicts(True, True))
        with pytest.raises(InvalidTransitionError):
            inspection_service.reschedule_inspection(inspection.id, tenant_id=tid,
                                                     scheduled_date="2025-06-09")
