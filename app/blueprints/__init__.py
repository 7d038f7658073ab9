"""
Project Workspace Platform
Blueprint registry and shared request helpers.
"""

from flask import g, request

from app.utils.errors import E, api_error


def paginate_query(query, default_limit=200, max_limit=1000):
    """Apply limit/offset pagination to a SQLAlchemy query.

    Query params:
        limit  — max items (default 200, capped at max_limit)
        offset — starting position (default 0)

    Returns:
        (items_list, total_count)
    """
    total = query.count()
    try:
        limit = min(int(request.args.get("limit", default_limit)), max_limit)
    except (ValueError, TypeError):
        limit = default_limit
    try:
        offset = max(int(request.args.get("offset", 0)), 0)
    except (ValueError, TypeError):
        offset = 0
    items = query.limit(limit).offset(offset).all()
    return items, total


def json_body():
    """Return ``(data, None)`` for a JSON object body, else ``(None, error_response)``."""
    data = request.get_json(silent=True)
    if data is None:
        data = {}
    if not isinstance(data, dict):
        return None, api_error(E.VALIDATION_INVALID, "Request body must be a JSON object")
    return data, None


def arg_flag(name: str) -> bool:
    return request.args.get(name, "").lower() in ("1", "true", "yes")


def current_user_id():
    return getattr(g, "jwt_user_id", None)


def actor_label():
    user_id = current_user_id()
    return f"user:{user_id}" if user_id else "system"
