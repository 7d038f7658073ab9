"""
Tenant Blueprint — platform tenant management plus the tenant's own
settings, billing and dashboards.

Platform admin (no tenant context):
    GET    /api/v1/platform/tenants
    POST   /api/v1/platform/tenants
    GET    /api/v1/platform/tenants/<id>
    PUT    /api/v1/platform/tenants/<id>
    PUT    /api/v1/platform/tenants/<id>/settings
    POST   /api/v1/platform/tenants/<id>/suspend
    POST   /api/v1/platform/tenants/<id>/activate
    DELETE /api/v1/platform/tenants/<id>               (soft delete)
    POST   /api/v1/platform/tenants/<id>/purge         (hard delete, cascades)
    POST   /api/v1/platform/tenants/<id>/subscription
    PUT    /api/v1/platform/tenants/<id>/subscription
    DELETE /api/v1/platform/tenants/<id>/subscription
    POST   /api/v1/platform/tenants/<id>/invoices
    POST   /api/v1/platform/tenants/<id>/invoices/<inv>/<issue|pay|void>

Tenant scoped:
    GET    /api/v1/tenant                 — current tenant + typed settings
    PATCH  /api/v1/tenant/settings        — users.manage
    GET    /api/v1/tenant/overview
    GET    /api/v1/billing/subscription   — billing.view
    GET    /api/v1/billing/invoices       — billing.view
    GET    /api/v1/dashboards             — caller's saved dashboards
    PUT    /api/v1/dashboards/<name>
    DELETE /api/v1/dashboards/<id>
"""

import logging

from flask import Blueprint, g, jsonify, request

from app.blueprints import actor_label, arg_flag, json_body, paginate_query
from app.middleware.permission_required import require_permission, require_platform_admin
from app.services import billing_service, dashboard_service, tenant_service
from app.utils.errors import E, api_error
from app.utils.helpers import parse_date, parse_decimal

logger = logging.getLogger(__name__)

tenants_bp = Blueprint("tenants", __name__, url_prefix="/api/v1")


def _int_field(data, field, default=None):
    value = data.get(field, default)
    if value is None:
        return None, None
    try:
        return int(value), None
    except (TypeError, ValueError):
        return None, api_error(E.VALIDATION_INVALID, f"{field} must be an integer")


# ═══════════════════════════════════════════════════════════════
# Platform: tenant lifecycle
# ═══════════════════════════════════════════════════════════════

@tenants_bp.route("/platform/tenants", methods=["GET"])
@require_platform_admin
def list_tenants():
    q = tenant_service.list_tenants(
        search=request.args.get("q"),
        status=request.args.get("status"),
        include_deleted=arg_flag("include_deleted"),
    )
    tenants, total = paginate_query(q)
    return jsonify({"items": [t.to_dict() for t in tenants], "total": total})


@tenants_bp.route("/platform/tenants", methods=["POST"])
@require_platform_admin
def create_tenant():
    data, err = json_body()
    if err:
        return err
    if not data.get("name"):
        return api_error(E.VALIDATION_REQUIRED, "name is required")
    max_users, err = _int_field(data, "max_users")
    if err:
        return err
    max_projects, err = _int_field(data, "max_projects")
    if err:
        return err
    settings = data.get("settings")
    if settings is not None and not isinstance(settings, dict):
        return api_error(E.VALIDATION_INVALID, "settings must be an object")

    tenant = tenant_service.create_tenant(
        name=data["name"],
        slug=data.get("slug"),
        domain=data.get("domain"),
        plan=data.get("plan", "trial"),
        max_users=max_users,
        max_projects=max_projects,
        settings=settings,
        actor=actor_label(),
    )
    return jsonify(tenant.to_dict()), 201


@tenants_bp.route("/platform/tenants/<tenant_id>", methods=["GET"])
@require_platform_admin
def get_tenant(tenant_id):
    tenant = tenant_service.get_tenant(tenant_id, include_deleted=True)
    d = tenant.to_dict()
    sub = billing_service.get_live_subscription(tenant.id)
    d["subscription"] = sub.to_dict() if sub else None
    return jsonify(d)


@tenants_bp.route("/platform/tenants/<tenant_id>", methods=["PUT"])
@require_platform_admin
def update_tenant(tenant_id):
    data, err = json_body()
    if err:
        return err
    tenant = tenant_service.update_tenant(tenant_id, data, actor=actor_label())
    return jsonify(tenant.to_dict())


@tenants_bp.route("/platform/tenants/<tenant_id>/settings", methods=["PUT"])
@require_platform_admin
def update_tenant_settings(tenant_id):
    data, err = json_body()
    if err:
        return err
    settings = tenant_service.update_settings(tenant_id, data, actor=actor_label())
    return jsonify(settings.to_dict())


@tenants_bp.route("/platform/tenants/<tenant_id>/suspend", methods=["POST"])
@require_platform_admin
def suspend_tenant(tenant_id):
    data, err = json_body()
    if err:
        return err
    tenant = tenant_service.suspend_tenant(tenant_id, reason=data.get("reason", ""), actor=actor_label())
    return jsonify(tenant.to_dict())


@tenants_bp.route("/platform/tenants/<tenant_id>/activate", methods=["POST"])
@require_platform_admin
def activate_tenant(tenant_id):
    return jsonify(tenant_service.activate_tenant(tenant_id, actor=actor_label()).to_dict())


@tenants_bp.route("/platform/tenants/<tenant_id>", methods=["DELETE"])
@require_platform_admin
def delete_tenant(tenant_id):
    tenant = tenant_service.soft_delete_tenant(tenant_id, actor=actor_label())
    return jsonify(tenant.to_dict())


@tenants_bp.route("/platform/tenants/<tenant_id>/purge", methods=["POST"])
@require_platform_admin
def purge_tenant(tenant_id):
    data, err = json_body()
    if err:
        return err
    if data.get("confirm") != tenant_id:
        return api_error(E.VALIDATION_REQUIRED, "Pass the tenant id as 'confirm' to purge",
                         details={"confirm": "required"})
    return jsonify(tenant_service.purge_tenant(tenant_id, actor=actor_label()))


# ═══════════════════════════════════════════════════════════════
# Platform: subscriptions & invoices
# ═══════════════════════════════════════════════════════════════

@tenants_bp.route("/platform/tenants/<tenant_id>/subscription", methods=["POST"])
@require_platform_admin
def start_subscription(tenant_id):
    data, err = json_body()
    if err:
        return err
    if not data.get("plan"):
        return api_error(E.VALIDATION_REQUIRED, "plan is required")
    seats, err = _int_field(data, "seats", 5)
    if err:
        return err
    trial_days, err = _int_field(data, "trial_days", 0)
    if err:
        return err
    tenant_service.get_tenant(tenant_id)
    sub = billing_service.start_subscription(
        tenant_id,
        plan=data["plan"],
        billing_cycle=data.get("billing_cycle", "monthly"),
        seats=seats,
        trial_days=trial_days,
        start=parse_date(data.get("start")),
        actor_user_id=g.jwt_user_id,
    )
    return jsonify(sub.to_dict()), 201


@tenants_bp.route("/platform/tenants/<tenant_id>/subscription", methods=["PUT"])
@require_platform_admin
def change_subscription(tenant_id):
    data, err = json_body()
    if err:
        return err
    seats, err = _int_field(data, "seats")
    if err:
        return err
    if data.get("activate"):
        billing_service.activate_subscription(tenant_id, actor_user_id=g.jwt_user_id)
    sub = billing_service.get_live_subscription(tenant_id)
    if data.get("plan") or seats is not None or data.get("billing_cycle"):
        sub = billing_service.change_plan(
            tenant_id,
            plan=data.get("plan") or (sub.plan if sub else ""),
            billing_cycle=data.get("billing_cycle"),
            seats=seats,
            actor_user_id=g.jwt_user_id,
        )
    if sub is None:
        return api_error(E.NOT_FOUND, "No live subscription")
    return jsonify(sub.to_dict())


@tenants_bp.route("/platform/tenants/<tenant_id>/subscription", methods=["DELETE"])
@require_platform_admin
def cancel_subscription(tenant_id):
    sub = billing_service.cancel_subscription(tenant_id, reason=request.args.get("reason", ""),
                                              actor_user_id=g.jwt_user_id)
    return jsonify(sub.to_dict())


@tenants_bp.route("/platform/tenants/<tenant_id>/invoices", methods=["POST"])
@require_platform_admin
def create_invoice(tenant_id):
    data, err = json_body()
    if err:
        return err
    try:
        amount = parse_decimal(data.get("amount"), "amount")
        tax = parse_decimal(data.get("tax_amount"), "tax_amount")
    except ValueError as exc:
        return api_error(E.VALIDATION_INVALID, str(exc))
    invoice = billing_service.create_invoice(
        tenant_id,
        amount=amount,
        tax_amount=tax,
        period_start=parse_date(data.get("period_start")),
        period_end=parse_date(data.get("period_end")),
        actor_user_id=g.jwt_user_id,
    )
    return jsonify(invoice.to_dict()), 201


_INVOICE_ACTIONS = {
    "issue": billing_service.issue_invoice,
    "pay": billing_service.mark_invoice_paid,
    "void": billing_service.void_invoice,
}


@tenants_bp.route("/platform/tenants/<tenant_id>/invoices/<invoice_id>/<action>", methods=["POST"])
@require_platform_admin
def invoice_action(tenant_id, invoice_id, action):
    fn = _INVOICE_ACTIONS.get(action)
    if fn is None:
        return api_error(E.VALIDATION_INVALID, f"Unknown invoice action '{action}'",
                         details={"action": sorted(_INVOICE_ACTIONS)})
    invoice = fn(invoice_id, tenant_id=tenant_id, actor_user_id=g.jwt_user_id)
    return jsonify(invoice.to_dict())


# ═══════════════════════════════════════════════════════════════
# Current tenant
# ═══════════════════════════════════════════════════════════════

@tenants_bp.route("/tenant", methods=["GET"])
def current_tenant():
    if getattr(g, "tenant", None) is None:
        return api_error(E.FORBIDDEN, "No tenant selected")
    d = g.tenant.to_dict()
    d["settings"] = g.tenant.typed_settings.to_dict()
    return jsonify(d)


@tenants_bp.route("/tenant/settings", methods=["PATCH"])
@require_permission("users.manage")
def patch_tenant_settings():
    data, err = json_body()
    if err:
        return err
    settings = tenant_service.update_settings(g.tenant_id, data, actor=actor_label())
    return jsonify(settings.to_dict())


@tenants_bp.route("/tenant/overview", methods=["GET"])
@require_permission("projects.view")
def tenant_overview():
    return jsonify(dashboard_service.tenant_overview(g.tenant_id))


@tenants_bp.route("/billing/subscription", methods=["GET"])
@require_permission("billing.view")
def my_subscription():
    sub = billing_service.get_live_subscription(g.tenant_id)
    return jsonify({"subscription": sub.to_dict() if sub else None})


@tenants_bp.route("/billing/invoices", methods=["GET"])
@require_permission("billing.view")
def my_invoices():
    q = billing_service.list_invoices(g.tenant_id, status=request.args.get("status"))
    invoices, total = paginate_query(q)
    return jsonify({"items": [i.to_dict() for i in invoices], "total": total})


# ═══════════════════════════════════════════════════════════════
# Dashboards
# ═══════════════════════════════════════════════════════════════

@tenants_bp.route("/dashboards", methods=["GET"])
def list_dashboards():
    if g.tenant_id is None:
        return api_error(E.FORBIDDEN, "No tenant selected")
    items = dashboard_service.list_dashboards(tenant_id=g.tenant_id, user_id=g.jwt_user_id)
    return jsonify({"items": [d.to_dict() for d in items], "total": len(items)})


@tenants_bp.route("/dashboards/<name>", methods=["PUT"])
def save_dashboard(name):
    if g.tenant_id is None:
        return api_error(E.FORBIDDEN, "No tenant selected")
    data, err = json_body()
    if err:
        return err
    dashboard = dashboard_service.save_dashboard(
        tenant_id=g.tenant_id,
        user_id=g.jwt_user_id,
        name=name,
        layout=data.get("layout"),
        filters=data.get("filters"),
        is_default=bool(data.get("is_default")),
    )
    return jsonify(dashboard.to_dict())


@tenants_bp.route("/dashboards/<dashboard_id>", methods=["DELETE"])
def delete_dashboard(dashboard_id):
    if g.tenant_id is None:
        return api_error(E.FORBIDDEN, "No tenant selected")
    dashboard_service.delete_dashboard(dashboard_id, tenant_id=g.tenant_id, user_id=g.jwt_user_id)
    return jsonify({"deleted": True, "id": dashboard_id})
