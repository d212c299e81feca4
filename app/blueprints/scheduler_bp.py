"""
Scheduler blueprint.

Routes (all under /api/v1):
  GET    /scheduler/jobs              – registered jobs with run history
  POST   /scheduler/jobs/<name>/run   – run a job now (admin)
  PATCH  /scheduler/jobs/<name>       – enable / disable a job (admin)
"""

from flask import Blueprint, jsonify

from app.auth import require_role
from app.blueprints import json_body
from app.services.scheduler_service import SchedulerService, get_registered_jobs

scheduler_bp = Blueprint("scheduler", __name__, url_prefix="/api/v1")


@scheduler_bp.route("/scheduler/jobs", methods=["GET"])
def list_jobs():
    return jsonify({
        "running": SchedulerService.is_running(),
        "jobs": SchedulerService.list_jobs(),
    }), 200


@scheduler_bp.route("/scheduler/jobs/<string:name>/run", methods=["POST"])
@require_role("ADMIN")
def run_job(name):
    if name not in get_registered_jobs():
        return jsonify({"error": f"Unknown job: {name}"}), 404
    result = SchedulerService.run_job(name)
    status = 200 if result["status"] == "success" else 500
    return jsonify(result), status


@scheduler_bp.route("/scheduler/jobs/<string:name>", methods=["PATCH"])
@require_role("ADMIN")
def toggle_job(name):
    """Body: { is_enabled: bool }"""
    enabled = json_body().get("is_enabled")
    if not isinstance(enabled, bool):
        return jsonify({"error": "is_enabled (boolean) is required"}), 400
    job = SchedulerService.toggle_job(name, enabled)
    if job is None:
        return jsonify({"error": f"Unknown job: {name}"}), 404
    return jsonify(job), 200
