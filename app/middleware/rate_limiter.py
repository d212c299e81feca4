"""
Rate limiting configuration.

Applies per-blueprint rate limits using Flask-Limiter.
The Limiter instance is created in app/__init__.py with no default limits;
this module applies granular limits per route category.

Usage:
    from app.middleware.rate_limiter import init_rate_limits
    init_rate_limits(app, limiter)
"""

import logging

from flask import g, request as flask_request

logger = logging.getLogger(__name__)

WRITE_LIMIT = "60/minute"
ADMIN_LIMIT = "20/minute"


def rate_limit_key():
    """Acting user when known, else remote IP.

    The limiter runs before the auth hook, so the raw header is used as fallback.
    """
    user = getattr(g, "current_user", None)
    if user is not None:
        return f"user:{user.id}"
    raw = flask_request.headers.get("X-User-Id", "").strip()
    if raw.isdigit():
        return f"user:{raw}"
    return flask_request.remote_addr or "unknown"


def init_rate_limits(app, limiter):
    """
    Apply rate limits to API blueprints.

    Limits (per acting user):
        - Workflow endpoints:   RATELIMIT_DEFAULT (reads) / 60/minute (writes)
        - Scheduler endpoints:  20/minute (manual job runs hit SMTP)

    Rate limiting is disabled in testing mode.
    """
    if app.config.get("TESTING") or not app.config.get("RATELIMIT_ENABLED", True):
        app.logger.info("Rate limiter disabled (TESTING=True)")
        return

    bp = app.blueprints.get("workflow")
    if bp:
        limiter.limit(app.config.get("RATELIMIT_DEFAULT", "300 per minute"), key_func=rate_limit_key)(bp)
        limiter.limit(
            WRITE_LIMIT,
            key_func=rate_limit_key,
            methods=["POST", "PATCH", "PUT", "DELETE"],
            per_method=False,
        )(bp)

    bp = app.blueprints.get("scheduler")
    if bp:
        limiter.limit(ADMIN_LIMIT, key_func=rate_limit_key)(bp)

    app.logger.info("Rate limiter configured: workflow write %s, scheduler %s", WRITE_LIMIT, ADMIN_LIMIT)
