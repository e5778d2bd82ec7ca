"""
Project Package Blueprint — the three-stage project activation handoff.

Routes:
  GET    /projects/<project_id>/package             – status, stage, timeline, can_edit
  POST   /projects/<project_id>/package/submit      – PM stage → PJM_REVIEW
  POST   /projects/<project_id>/package/accept      – PJM stage → PM_ACTIVATE
  POST   /projects/<project_id>/package/activate    – PM_FINAL stage → ACTIVE
  POST   /projects/<project_id>/package/send-back   – { targetStage: PM|PJM|ENG, reason }
"""

from flask import Blueprint, jsonify

from delivery.auth import get_current_actor
from delivery.blueprints import json_body
from delivery.services import package_gate

package_bp = Blueprint("package", __name__, url_prefix="/api/v1/projects")


def _respond(project, actor):
    return jsonify({"project": project.to_dict(), "package": package_gate.package_summary(project, actor)})


@package_bp.route("/<int:project_id>/package", methods=["GET"])
def get_package(project_id):
    actor = get_current_actor()
    return jsonify(package_gate.get_package(project_id, actor))


@package_bp.route("/<int:project_id>/package/submit", methods=["POST"])
def submit_package(project_id):
    actor = get_current_actor()
    return _respond(package_gate.submit(project_id, actor), actor)


@package_bp.route("/<int:project_id>/package/accept", methods=["POST"])
def accept_package(project_id):
    actor = get_current_actor()
    return _respond(package_gate.accept(project_id, actor), actor)


@package_bp.route("/<int:project_id>/package/activate", methods=["POST"])
def activate_package(project_id):
    actor = get_current_actor()
    return _respond(package_gate.activate(project_id, actor), actor)


@package_bp.route("/<int:project_id>/package/send-back", methods=["POST"])
def send_back_package(project_id):
    actor = get_current_actor()
    data = json_body()
    project = package_gate.send_back(project_id, actor, data.get("target_stage"), data.get("reason"))
    return _respond(project, actor)
