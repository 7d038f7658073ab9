"""
Saved dashboards, daily project snapshots and the tenant overview.
"""

from datetime import date, timedelta
from decimal import Decimal

import pytest

from app.core.exceptions import NotFoundError, ValidationError
from app.models.dashboard import Dashboard, ProjectSnapshot
from app.services import change_request_service, dashboard_service, project_service, task_service


@pytest.fixture()
def tid(default_tenant):
    return default_tenant.id


class TestDashboards:
    def test_save_is_upsert(self, tid, pm_user):
        first = dashboard_service.save_dashboard(tenant_id=tid, user_id=pm_user.id, name="Ops",
                                                 layout=[{"widget": "progress"}])
        again = dashboard_service.save_dashboard(tenant_id=tid, user_id=pm_user.id, name="Ops",
                                                 filters={"status": "active"})
        assert again.id == first.id
        assert again.layout == [{"widget": "progress"}]
        assert again.filters == {"status": "active"}
        assert Dashboard.query.count() == 1

    def test_single_default(self, tid, pm_user):
        dashboard_service.save_dashboard(tenant_id=tid, user_id=pm_user.id, name="Ops", is_default=True)
        dashboard_service.save_dashboard(tenant_id=tid, user_id=pm_user.id, name="Money", is_default=True)
        boards = dashboard_service.list_dashboards(tenant_id=tid, user_id=pm_user.id)
        assert [(b.name, b.is_default) for b in boards] == [("Money", True), ("Ops", False)]

    @pytest.mark.parametrize("kwargs", [
        {"name": " "},
        {"name": "Ops", "layout": {"widget": "x"}},
        {"name": "Ops", "filters": ["status"]},
    ])
    def test_invalid(self, tid, pm_user, kwargs):
        with pytest.raises(ValidationError):
            dashboard_service.save_dashboard(tenant_id=tid, user_id=pm_user.id, **kwargs)

    def test_delete_only_own(self, tid, pm_user, make_user):
        other = make_user("other@example.com", ["member"])
        board = dashboard_service.save_dashboard(tenant_id=tid, user_id=pm_user.id, name="Ops")
        with pytest.raises(NotFoundError):
            dashboard_service.delete_dashboard(board.id, tenant_id=tid, user_id=other.id)
        dashboard_service.delete_dashboard(board.id, tenant_id=tid, user_id=pm_user.id)
        assert Dashboard.query.count() == 0


class TestSnapshots:
    @pytest.fixture()
    def busy_project(self, project, tid, pm_user):
        project_service.transition_project(project.id, tenant_id=tid, new_status="active")
        done = task_service.create_task(project.id, tenant_id=tid, data={"title": "Strip out"})
        task_service.transition_task(done.id, tenant_id=tid, new_status="in_progress")
        task_service.transition_task(done.id, tenant_id=tid, new_status="completed")
        task_service.create_task(project.id, tenant_id=tid, data={"title": "Rewire"})
        change_request_service.create_change_request(
            project.id, tenant_id=tid, data={"title": "Extra sockets", "cost_impact": "1200"},
            actor_user_id=pm_user.id,
        )
        return project

    def test_capture(self, busy_project, tid):
        snap = dashboard_service.capture_project_snapshot(busy_project.id, tenant_id=tid)
        assert snap.snapshot_date == date.today()
        assert snap.status == "active"
        assert snap.tasks_total == 2
        assert snap.tasks_completed == 1
        assert snap.progress == 50
        assert snap.open_change_requests == 1
        assert snap.approved_cost_impact == Decimal("0")
        assert snap.budget == Decimal("100000.00")
        assert snap.metrics["by_status"]["completed"] == 1

    def test_one_snapshot_per_day(self, busy_project, tid):
        first = dashboard_service.capture_project_snapshot(busy_project.id, tenant_id=tid)
        task_service.create_task(busy_project.id, tenant_id=tid, data={"title": "Paint"})
        second = dashboard_service.capture_project_snapshot(busy_project.id, tenant_id=tid)
        assert second.id == first.id
        assert second.tasks_total == 3
        assert ProjectSnapshot.query.count() == 1

    def test_history(self, busy_project, tid):
        today = date.today()
        for offset in (2, 1, 0):
            dashboard_service.capture_project_snapshot(busy_project.id, tenant_id=tid,
                                                       day=today - timedelta(days=offset))
        history = dashboard_service.snapshot_history(busy_project.id, tenant_id=tid)
        assert [s.snapshot_date for s in history] == [today - timedelta(days=2), today - timedelta(days=1), today]
        recent = dashboard_service.snapshot_history(busy_project.id, tenant_id=tid,
                                                    since=today - timedelta(days=1))
        assert len(recent) == 2

    def test_capture_all_skips_closed_projects(self, busy_project, tid, pm_user):
        closed = project_service.create_project(tenant_id=tid, data={"name": "Old job"},
                                                actor_user_id=pm_user.id)
        project_service.transition_project(closed.id, tenant_id=tid, new_status="cancelled")
        assert dashboard_service.capture_all_snapshots() == 1
        assert ProjectSnapshot.query.one().project_id == busy_project.id


class TestTenantOverview:
    def test_overview(self, project, tid, pm_user):
        project_service.create_project(tenant_id=tid, data={"name": "Second", "budget": "2500.50"},
                                       actor_user_id=pm_user.id)
        task_service.create_task(project.id, tenant_id=tid, data={"title": "Survey"})

        overview = dashboard_service.tenant_overview(tid)
        assert overview["projects"] == {"total": 2, "by_status": {"draft": 2}}
        assert overview["tasks"] == {"total": 1, "by_status": {"pending": 1}}
        assert overview["budget"] == "102500.50"
        assert overview["actual_cost"] == "0.00"
        assert overview["change_requests_awaiting_approval"] == 0
