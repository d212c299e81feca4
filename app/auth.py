"""
Legal Workflow Engine
Authentication Middleware.

Provides:
    - Acting-user resolution from the X-User-Id header into g.current_user
    - Role decorator for endpoints restricted to certain user roles
    - CSRF protection for state-changing requests (non-GET/HEAD/OPTIONS)

Session handling and credential checks belong to the identity provider in
front of this service; it forwards the authenticated user id.

Security model:
    - All /api/v1/* endpoints require a known, active user (except /api/v1/health)
    - Record-level access (matter / contact) is enforced in the services
"""

import functools
import logging

from flask import g, jsonify, request

from app.models import db
from app.models.auth import User

logger = logging.getLogger(__name__)


def _get_user_from_request():
    """Resolve the X-User-Id header to an active User (or None)."""
    raw = request.headers.get("X-User-Id", "").strip()
    if not raw.isdigit():
        return None
    user = db.session.get(User, int(raw))
    if user is None or not user.is_active:
        return None
    return user


# ── Role decorator ───────────────────────────────────────────────────────────

def require_role(*roles: str):
    """
    Decorator: restrict an endpoint to the given user roles.

    Usage:
        @bp.route("/scheduler/jobs/<name>/run", methods=["POST"])
        @require_role("ADMIN")
        def run_job(name): ...
    """
    def decorator(f):
        @functools.wraps(f)
        def decorated(*args, **kwargs):
            user = getattr(g, "current_user", None)
            if user is None:
                return jsonify({"error": "Authentication required"}), 401
            if user.role not in roles:
                logger.warning(
                    "Access denied: role '%s' tried to access %s",
                    user.role, request.path,
                    extra={"actor_id": user.id},
                )
                return jsonify({"error": "Insufficient permissions"}), 403
            return f(*args, **kwargs)
        return decorated
    return decorator


# ── CSRF protection for API ──────────────────────────────────────────────────

def _check_content_type():
    """
    For state-changing requests (POST/PUT/PATCH/DELETE), require
    Content-Type: application/json. This acts as a lightweight CSRF mitigation
    because HTML forms cannot send application/json content type.
    """
    if request.method in ("POST", "PUT", "PATCH", "DELETE"):
        ct = request.content_type or ""
        if "application/json" not in ct and request.content_length and request.content_length > 0:
            return jsonify({
                "error": "Content-Type must be application/json for state-changing requests"
            }), 415
    return None


# ── App-level before_request hook installer ──────────────────────────────────

def init_auth(app):
    """
    Install authentication middleware on the Flask app.

    - Attaches a before_request hook for API routes
    - Skips health check and pre-flight requests
    """
    @app.before_request
    def _before_request_auth():
        if not request.path.startswith("/api/v1/"):
            return None
        if request.path == "/api/v1/health" or request.method == "OPTIONS":
            return None

        csrf_error = _check_content_type()
        if csrf_error:
            return csrf_error

        user = _get_user_from_request()
        if user is None:
            return jsonify({"error": "Authentication required. Provide a valid X-User-Id header."}), 401

        g.current_user = user
        return None

    logger.info("Auth middleware installed")
