"""
Legal Workflow Engine
Blueprint helpers shared by the API blueprints.
"""

from flask import g, request


def current_actor():
    """The active User resolved by the auth hook (always set under /api/v1)."""
    return g.current_user


def json_body() -> dict:
    """Request JSON as a dict; anything else reads as an empty body."""
    data = request.get_json(silent=True)
    return data if isinstance(data, dict) else {}


def pagination_args(default_limit=50, max_limit=200):
    """Read limit/offset query params.

    Query params:
        limit  — max items (default 50, capped at max_limit)
        offset — starting position (default 0)

    Returns:
        (limit, offset)
    """
    try:
        limit = min(int(request.args.get("limit", default_limit)), max_limit)
    except (ValueError, TypeError):
        limit = default_limit
    try:
        offset = max(int(request.args.get("offset", 0)), 0)
    except (ValueError, TypeError):
        offset = 0
    return max(limit, 1), offset


def bool_arg(name: str):
    """``?name=true|false`` → bool, absent → None."""
    raw = request.args.get(name)
    if raw is None:
        return None
    return raw.strip().lower() in ("1", "true", "yes", "on")
