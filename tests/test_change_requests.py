"""
Change request lifecycle and the budget-driven approval chain.
"""

from datetime import date
from decimal import Decimal

import pytest

from app.core.exceptions import InvalidTransitionError, PermissionDeniedError, ValidationError
from app.models import db as _db
from app.models.change_request import ChangeRequestApproval, required_approval_roles
from app.models.project import Project
from app.models.reliability import OutboxEvent
from app.services import change_request_service as crs


@pytest.fixture()
def tid(default_tenant):
    return default_tenant.id


@pytest.fixture()
def requester(make_user):
    return make_user("site.lead@example.com", ["member"])


@pytest.fixture()
def client_rep(make_user):
    return make_user("rep@client.example", ["client_representative"])


@pytest.fixture()
def client_director(make_user):
    return make_user("director@client.example", ["client_director"])


def _cr(project, tid, requester, cost, **extra):
    return crs.create_change_request(
        project.id, tenant_id=tid,
        data={"title": "Upgrade glazing", "cost_impact": cost, "schedule_impact_days": 4, **extra},
        actor_user_id=requester.id,
    )


class TestRequiredApprovalRoles:
    @pytest.mark.parametrize("cost, budget, expected", [
        (0, 100000, ["project_manager"]),
        (4999, 100000, ["project_manager"]),
        (5000, 100000, ["project_manager", "client_representative"]),
        (9999, 100000, ["project_manager", "client_representative"]),
        (10000, 100000, ["project_manager", "client_representative", "client_director"]),
        (-20000, 100000, ["project_manager", "client_representative", "client_director"]),
        (10, 0, ["project_manager", "client_representative", "client_director"]),
        (None, None, ["project_manager"]),
    ])
    def test_thresholds(self, cost, budget, expected):
        assert required_approval_roles(cost, budget) == expected


class TestChangeRequestCrud:
    def test_create(self, project, tid, requester):
        cr = _cr(project, tid, requester, "2500.50")
        assert cr.code == "CR-0001"
        assert cr.status == "draft"
        assert cr.cost_impact == Decimal("2500.50")
        assert cr.requested_by == requester.id
        assert _cr(project, tid, requester, 1).code == "CR-0002"

    def test_schedule_impact_must_be_int(self, project, tid, requester):
        with pytest.raises(ValidationError):
            _cr(project, tid, requester, 10, schedule_impact_days="four")

    def test_only_drafts_editable(self, project, tid, requester):
        cr = _cr(project, tid, requester, 100)
        crs.update_change_request(cr.id, tenant_id=tid, data={"title": "Triple glazing"})
        crs.submit_change_request(cr.id, tenant_id=tid)
        with pytest.raises(ValidationError):
            crs.update_change_request(cr.id, tenant_id=tid, data={"title": "Quadruple"})

    def test_delete_rules(self, project, tid, requester):
        cr = _cr(project, tid, requester, 100)
        crs.submit_change_request(cr.id, tenant_id=tid)
        with pytest.raises(ValidationError):
            crs.soft_delete_change_request(cr.id, tenant_id=tid)
        crs.cancel_change_request(cr.id, tenant_id=tid, reason="Client withdrew")
        approvals = ChangeRequestApproval.query.filter_by(change_request_id=cr.id).all()
        assert [a.status for a in approvals] == ["skipped"]
        crs.soft_delete_change_request(cr.id, tenant_id=tid)
        assert crs.list_change_requests(tenant_id=tid).count() == 0


class TestApprovalChain:
    def test_single_level_by_project_owner(self, project, tid, requester, pm_user):
        cr = _cr(project, tid, requester, 2000)
        crs.submit_change_request(cr.id, tenant_id=tid, actor_user_id=requester.id)
        assert [a.approver_role for a in cr.approvals.all()] == ["project_manager"]

        cr = crs.decide_approval(cr.id, tenant_id=tid, level=1, decision="approved",
                                 actor_user_id=pm_user.id, comment="Fine")
        assert cr.status == "approved"
        assert cr.decided_at is not None
        assert OutboxEvent.query.filter_by(aggregate_id=cr.id,
                                           event_type="change_request.approved").count() == 1

    def test_three_levels_in_order(self, project, tid, requester, pm_user, client_rep, client_director):
        cr = _cr(project, tid, requester, 25000)
        crs.submit_change_request(cr.id, tenant_id=tid)
        assert cr.approvals.count() == 3

        with pytest.raises(ValidationError):
            crs.decide_approval(cr.id, tenant_id=tid, level=2, decision="approved",
                                actor_user_id=client_rep.id)

        crs.decide_approval(cr.id, tenant_id=tid, level=1, decision="approved", actor_user_id=pm_user.id)
        assert crs.get_change_request(cr.id, tenant_id=tid).status == "awaiting_approval"
        crs.decide_approval(cr.id, tenant_id=tid, level=2, decision="approved", actor_user_id=client_rep.id)
        cr = crs.decide_approval(cr.id, tenant_id=tid, level=3, decision="approved",
                                 actor_user_id=client_director.id)
        assert cr.status == "approved"
        assert [a.status for a in cr.approvals.all()] == ["approved"] * 3

    def test_wrong_role_cannot_decide(self, project, tid, requester, pm_user, client_rep):
        cr = _cr(project, tid, requester, 25000)
        crs.submit_change_request(cr.id, tenant_id=tid)
        crs.decide_approval(cr.id, tenant_id=tid, level=1, decision="approved", actor_user_id=pm_user.id)
        with pytest.raises(PermissionDeniedError) as exc:
            crs.decide_approval(cr.id, tenant_id=tid, level=2, decision="approved",
                                actor_user_id=requester.id)
        assert exc.value.permission == "change_requests.approve:client_representative"

    def test_tenant_admin_can_decide_any_level(self, project, tid, requester, make_user):
        admin = make_user("admin@example.com", ["tenant_admin"])
        cr = _cr(project, tid, requester, 6000)
        crs.submit_change_request(cr.id, tenant_id=tid)
        crs.decide_approval(cr.id, tenant_id=tid, level=1, decision="approved", actor_user_id=admin.id)
        cr = crs.decide_approval(cr.id, tenant_id=tid, level=2, decision="approved", actor_user_id=admin.id)
        assert cr.status == "approved"

    def test_rejection_skips_remaining_levels(self, project, tid, requester, pm_user):
        cr = _cr(project, tid, requester, 25000)
        crs.submit_change_request(cr.id, tenant_id=tid)
        cr = crs.decide_approval(cr.id, tenant_id=tid, level=1, decision="rejected",
                                 actor_user_id=pm_user.id, comment="Too expensive")
        assert cr.status == "rejected"
        statuses = [a.status for a in ChangeRequestApproval.query.filter_by(change_request_id=cr.id)
                    .order_by(ChangeRequestApproval.level)]
        assert statuses == ["rejected", "skipped", "skipped"]

    def test_rework_and_resubmit_builds_fresh_chain(self, project, tid, requester, pm_user):
        cr = _cr(project, tid, requester, 25000)
        crs.submit_change_request(cr.id, tenant_id=tid)
        crs.decide_approval(cr.id, tenant_id=tid, level=1, decision="rejected", actor_user_id=pm_user.id)

        crs.rework_change_request(cr.id, tenant_id=tid)
        crs.update_change_request(cr.id, tenant_id=tid, data={"cost_impact": 1000})
        cr = crs.submit_change_request(cr.id, tenant_id=tid)
        approvals = cr.approvals.all()
        assert [(a.level, a.approver_role, a.status) for a in approvals] == [(1, "project_manager", "pending")]

    def test_invalid_decision(self, project, tid, requester, pm_user):
        cr = _cr(project, tid, requester, 100)
        crs.submit_change_request(cr.id, tenant_id=tid)
        with pytest.raises(ValidationError):
            crs.decide_approval(cr.id, tenant_id=tid, level=1, decision="maybe", actor_user_id=pm_user.id)

    def test_cannot_decide_draft(self, project, tid, requester, pm_user):
        cr = _cr(project, tid, requester, 100)
        with pytest.raises(ValidationError):
            crs.decide_approval(cr.id, tenant_id=tid, level=1, decision="approved", actor_user_id=pm_user.id)


class TestImplementation:
    def test_implement_rolls_cost_into_budget(self, project, tid, requester, pm_user):
        cr = _cr(project, tid, requester, 2000)
        crs.submit_change_request(cr.id, tenant_id=tid)
        crs.decide_approval(cr.id, tenant_id=tid, level=1, decision="approved", actor_user_id=pm_user.id)
        cr = crs.implement_change_request(cr.id, tenant_id=tid, actor_user_id=pm_user.id)
        assert cr.status == "implemented"
        assert cr.implemented_at is not None
        _db.session.expire_all()
        refreshed = _db.session.get(Project, project.id)
        assert refreshed.budget == Decimal("102000")
        assert refreshed.end_date is None

    def test_implement_shifts_end_date(self, project, tid, requester, pm_user):
        project.end_date = date(2026, 6, 30)
        _db.session.commit()
        cr = _cr(project, tid, requester, 100)
        crs.submit_change_request(cr.id, tenant_id=tid)
        crs.decide_approval(cr.id, tenant_id=tid, level=1, decision="approved", actor_user_id=pm_user.id)
        crs.implement_change_request(cr.id, tenant_id=tid, actor_user_id=pm_user.id)

        _db.session.expire_all()
        refreshed = _db.session.get(Project, project.id)
        assert refreshed.end_date == date(2026, 7, 4)
        assert refreshed.budget == Decimal("100100")
        event = OutboxEvent.query.filter_by(aggregate_id=cr.id, event_type="change_request.implemented").one()
        assert event.payload["project_end_date"] == {"old": "2026-06-30", "new": "2026-07-04"}

    def test_cannot_implement_unapproved(self, project, tid, requester):
        cr = _cr(project, tid, requester, 2000)
        with pytest.raises(InvalidTransitionError):
            crs.implement_change_request(cr.id, tenant_id=tid)


class TestComments:
    def test_threaded_comments(self, project, tid, requester, pm_user):
        cr = _cr(project, tid, requester, 100)
        root = crs.add_comment(cr.id, tenant_id=tid, body="Which supplier?", actor_user_id=pm_user.id)
        crs.add_comment(cr.id, tenant_id=tid, body="Same as phase 1", parent_id=root.id,
                        actor_user_id=requester.id)

        thread = crs.comment_thread(cr.id, tenant_id=tid)
        assert len(thread) == 1
        assert thread[0]["body"] == "Which supplier?"
        assert [r["body"] for r in thread[0]["replies"]] == ["Same as phase 1"]

        event = OutboxEvent.query.filter_by(aggregate_id=cr.id, event_type="change_request.commented") \
            .order_by(OutboxEvent.id).first()
        assert event.payload["author_id"] == pm_user.id

    def test_reply_parent_must_match(self, project, tid, requester):
        first = _cr(project, tid, requester, 100)
        second = _cr(project, tid, requester, 200)
        comment = crs.add_comment(first.id, tenant_id=tid, body="Hello", actor_user_id=requester.id)
        with pytest.raises(ValidationError):
            crs.add_comment(second.id, tenant_id=tid, body="Wrong thread", parent_id=comment.id)

    def test_empty_body(self, project, tid, requester):
        cr = _cr(project, tid, requester, 100)
        with pytest.raises(ValidationError):
            crs.add_comment(cr.id, tenant_id=tid, body="   ")
