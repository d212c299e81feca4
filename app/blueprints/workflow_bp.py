"""
Workflow engine blueprint.

Routes (all under /api/v1):
  GET    /workflows/templates                       – list templates
  POST   /workflows/templates                       – create template (admin/lawyer)
  GET    /workflows/templates/<id>                  – template with steps + dependencies
  POST   /workflows/templates/<id>/versions         – new version from an edit
  POST   /workflows/templates/<id>/publish          – publish (admin)
  DELETE /workflows/templates/<id>                  – soft delete (admin)
  POST   /workflows/templates/<id>/instantiate      – run against a matter or contact
  GET    /workflows/instances                       – list (matter_id, contact_id, status)
  GET    /workflows/instances/<id>                  – instance with steps
  POST   /workflows/instances/<id>/cancel           – cancel
  GET    /workflows/instances/<id>/context          – read context
  PATCH  /workflows/instances/<id>/context          – clear / replace / merge context
  POST   /workflows/steps/<id>/start                – claim a READY step
  POST   /workflows/steps/<id>/complete             – complete with payload
  POST   /workflows/steps/<id>/fail                 – fail with reason
  POST   /workflows/steps/<id>/skip                 – skip optional step (admin)
  POST   /workflows/steps/<id>/events               – external provider event
  POST   /workflows/validate-condition              – check a condition tree
  GET    /workflows/metrics                         – engine counters (admin)
  GET    /notifications                             – caller's in-app notifications

Service layer owns all business logic and commits; the error handlers
below roll the session back and translate exceptions to HTTP codes.
"""

from __future__ import annotations

import logging

from flask import Blueprint, jsonify, request
from werkzeug.exceptions import HTTPException

import app.services.workflow_runtime as runtime
import app.services.workflow_service as workflows
import app.services.workflow_template_service as templates
from app.blueprints import bool_arg, current_actor, json_body, pagination_args
from app.core.exceptions import (
    ConflictError,
    ForbiddenError,
    InvalidStateError,
    NotFoundError,
    ValidationError,
)
from app.models import db
from app.services.notification import NotificationService
from app.services.workflow_conditions import build_runtime_context, evaluate_condition, validate_condition
from app.services.workflow_metrics import summarize as summarize_metrics

logger = logging.getLogger(__name__)

workflow_bp = Blueprint("workflow", __name__, url_prefix="/api/v1")


# ── Error handlers ────────────────────────────────────────────────────────────


@workflow_bp.errorhandler(NotFoundError)
def _handle_not_found(error: NotFoundError):
    db.session.rollback()
    return jsonify({"error": str(error)}), 404


@workflow_bp.errorhandler(ForbiddenError)
def _handle_forbidden(error: ForbiddenError):
    db.session.rollback()
    return jsonify({"error": str(error)}), 403


@workflow_bp.errorhandler(ConflictError)
def _handle_conflict(error: ConflictError):
    db.session.rollback()
    return jsonify({"error": str(error)}), 409


@workflow_bp.errorhandler(InvalidStateError)
def _handle_invalid_state(error: InvalidStateError):
    db.session.rollback()
    body = {"error": str(error)}
    if error.code:
        body["code"] = error.code
    return jsonify(body), 400


@workflow_bp.errorhandler(ValidationError)
def _handle_validation(error: ValidationError):
    db.session.rollback()
    return jsonify({"error": str(error), "details": error.details}), 422


@workflow_bp.errorhandler(Exception)
def _handle_unexpected(error: Exception):
    if isinstance(error, HTTPException):
        return error
    db.session.rollback()
    logger.exception("Unexpected error in workflow_bp endpoint=%s", request.endpoint)
    return jsonify({"error": "Internal server error"}), 500


def _int_arg(name: str) -> int | None:
    raw = request.args.get(name)
    if raw in (None, ""):
        return None
    try:
        return int(raw)
    except ValueError:
        raise ValidationError(f"{name} must be an integer", details={name: raw})


# ═════════════════════════════════════════════════════════════════════════
# Templates
# ═════════════════════════════════════════════════════════════════════════


@workflow_bp.route("/workflows/templates", methods=["GET"])
def list_templates():
    """List templates.

    Query params: all_versions (bool), active (bool), name
    Default: latest version of each name.
    """
    rows = templates.list_templates(
        all_versions=bool(bool_arg("all_versions")),
        active=bool_arg("active"),
        name=request.args.get("name") or None,
    )
    return jsonify([t.to_dict() for t in rows]), 200


@workflow_bp.route("/workflows/templates", methods=["POST"])
def create_template():
    """Create a new (inactive) template version from a draft."""
    template = templates.create_template(json_body(), current_actor())
    return jsonify(template.to_dict(include_steps=True)), 201


@workflow_bp.route("/workflows/templates/<int:template_id>", methods=["GET"])
def get_template(template_id):
    template = templates.get_template(template_id)
    return jsonify(template.to_dict(include_steps=True)), 200


@workflow_bp.route("/workflows/templates/<int:template_id>/versions", methods=["POST"])
def create_template_version(template_id):
    """Edit = new version. Body: partial draft; missing keys come from the source."""
    template = templates.create_template_version(template_id, json_body(), current_actor())
    return jsonify(template.to_dict(include_steps=True)), 201


@workflow_bp.route("/workflows/templates/<int:template_id>/publish", methods=["POST"])
def publish_template(template_id):
    template = templates.publish(template_id, current_actor())
    return jsonify(template.to_dict()), 200


@workflow_bp.route("/workflows/templates/<int:template_id>", methods=["DELETE"])
def delete_template(template_id):
    templates.delete_template(template_id, current_actor())
    return "", 204


@workflow_bp.route("/workflows/templates/<int:template_id>/instantiate", methods=["POST"])
def instantiate_template(template_id):
    """Start a workflow run.

    Body: { matter_id } or { contact_id } (exactly one)
    """
    data = json_body()
    instance = workflows.instantiate(
        template_id,
        actor=current_actor(),
        matter_id=data.get("matter_id"),
        contact_id=data.get("contact_id"),
    )
    return jsonify(instance.to_dict(include_steps=True)), 201


# ═════════════════════════════════════════════════════════════════════════
# Instances
# ═════════════════════════════════════════════════════════════════════════


@workflow_bp.route("/workflows/instances", methods=["GET"])
def list_instances():
    rows = workflows.list_instances(
        current_actor(),
        matter_id=_int_arg("matter_id"),
        contact_id=_int_arg("contact_id"),
        status=request.args.get("status") or None,
    )
    return jsonify([i.to_dict() for i in rows]), 200


@workflow_bp.route("/workflows/instances/<int:instance_id>", methods=["GET"])
def get_instance(instance_id):
    instance = workflows.get_instance(instance_id, current_actor())
    return jsonify(instance.to_dict(include_steps=True)), 200


@workflow_bp.route("/workflows/instances/<int:instance_id>/cancel", methods=["POST"])
def cancel_instance(instance_id):
    """Cancel a run. Body: { reason? }

    Returns the canceled instance, or ``{"deleted": true}`` when nothing had
    started and the run was removed.
    """
    instance = workflows.cancel_instance(instance_id, current_actor(), json_body().get("reason"))
    if instance is None:
        return jsonify({"deleted": True, "id": instance_id}), 200
    return jsonify(instance.to_dict(include_steps=True)), 200


@workflow_bp.route("/workflows/instances/<int:instance_id>/context", methods=["GET"])
def get_context(instance_id):
    context = workflows.read_context(instance_id, current_actor())
    return jsonify({"instance_id": instance_id, "context": context}), 200


@workflow_bp.route("/workflows/instances/<int:instance_id>/context", methods=["PATCH"])
def patch_context(instance_id):
    """Body: {"clear": true} | {"context": {...}} | {"updates": {...}}"""
    context = workflows.patch_context(instance_id, current_actor(), json_body())
    return jsonify({"instance_id": instance_id, "context": context}), 200


# ═════════════════════════════════════════════════════════════════════════
# Step actions
# ═════════════════════════════════════════════════════════════════════════


@workflow_bp.route("/workflows/steps/<int:step_id>/start", methods=["POST"])
def start_step(step_id):
    step = runtime.start_step(step_id, current_actor())
    return jsonify(step.to_dict()), 200


@workflow_bp.route("/workflows/steps/<int:step_id>/complete", methods=["POST"])
def complete_step(step_id):
    """Body: { payload: {...} } (a bare object is accepted as the payload)."""
    data = json_body()
    payload = data.get("payload") if isinstance(data.get("payload"), dict) else data
    step = runtime.complete_step(step_id, current_actor(), payload)
    return jsonify(step.to_dict()), 200


@workflow_bp.route("/workflows/steps/<int:step_id>/fail", methods=["POST"])
def fail_step(step_id):
    step = runtime.fail_step(step_id, current_actor(), json_body().get("reason"))
    return jsonify(step.to_dict()), 200


@workflow_bp.route("/workflows/steps/<int:step_id>/skip", methods=["POST"])
def skip_step(step_id):
    step = runtime.skip_step(step_id, current_actor(), json_body().get("reason"))
    return jsonify(step.to_dict()), 200


@workflow_bp.route("/workflows/steps/<int:step_id>/events", methods=["POST"])
def apply_event(step_id):
    """Body: { type: "SIGNATURE_COMPLETED", payload: {...} }"""
    data = json_body()
    event_type = data.get("type") or data.get("event_type")
    if not isinstance(event_type, str) or not event_type:
        raise ValidationError("type is required", details={"type": "required"})
    payload = data.get("payload") if isinstance(data.get("payload"), dict) else {}
    step = runtime.apply_event(step_id, current_actor(), event_type, payload)
    return jsonify(step.to_dict()), 200


# ═════════════════════════════════════════════════════════════════════════
# Authoring helpers
# ═════════════════════════════════════════════════════════════════════════


@workflow_bp.route("/workflows/validate-condition", methods=["POST"])
def validate_condition_endpoint():
    """Check a condition tree, optionally evaluating it against sample context.

    Body: { condition: {...}, test_context?: {...} }
    Returns: { valid, errors, result? }
    """
    data = json_body()
    if "condition" not in data:
        raise ValidationError("condition is required", details={"condition": "required"})
    test_context = data.get("test_context")
    if test_context is not None and not isinstance(test_context, dict):
        raise ValidationError("test_context must be an object", details={"test_context": "object"})

    errors = validate_condition(data["condition"])
    body = {"valid": not errors, "errors": errors}
    if not errors and test_context is not None:
        runtime_context = build_runtime_context(actor=current_actor(), context_data=test_context)
        body["result"] = evaluate_condition(data["condition"], runtime_context).to_dict()
    return jsonify(body), 200


@workflow_bp.route("/workflows/metrics", methods=["GET"])
def workflow_metrics():
    """Step, transition, handler, instance and notification counters (admin only)."""
    if not current_actor().is_admin:
        raise ForbiddenError("Only administrators can view workflow metrics")
    return jsonify(summarize_metrics()), 200


# ═════════════════════════════════════════════════════════════════════════
# In-app notifications
# ═════════════════════════════════════════════════════════════════════════


@workflow_bp.route("/notifications", methods=["GET"])
def list_notifications():
    """Query params: unread_only (bool), limit, offset"""
    actor = current_actor()
    limit, offset = pagination_args()
    items, total = NotificationService.list_for_recipient(
        actor.id, unread_only=bool(bool_arg("unread_only")), limit=limit, offset=offset,
    )
    return jsonify({
        "items": [n.to_dict() for n in items],
        "total": total,
        "unread_count": NotificationService.unread_count(actor.id),
    }), 200
