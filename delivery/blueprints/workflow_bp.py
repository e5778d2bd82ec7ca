"""
Workflow Blueprint — definitions admin and task approval actions.

Routes:
  GET    /workflows/definitions                 – list definitions (?entityType=TASK&active=true)
  POST   /workflows/definitions                 – create definition          [PM, SUPER_ADMIN]
  GET    /workflows/definitions/<id>            – definition detail
  PATCH  /workflows/definitions/<id>            – partial update             [PM, SUPER_ADMIN]
  DELETE /workflows/definitions/<id>            – delete / retire (?force=true) [PM, SUPER_ADMIN]
  POST   /tasks/<task_id>/workflow              – start the task's approval workflow [PM, SUPER_ADMIN]
  GET    /tasks/<task_id>/workflow              – workflow status projection
  GET    /tasks/<task_id>/workflow/approvers    – approver preview for the active step
  POST   /tasks/<task_id>/actions               – APPROVE | REJECT | SEND_BACK | REQUEST_CHANGE

Service exceptions propagate to the app-level handlers in
``delivery.utils.errors``.
"""

from flask import Blueprint, jsonify, request

from delivery.auth import get_current_actor, require_roles
from delivery.blueprints import json_body, query_flag
from delivery.services import approver_resolver, task_workflow_service, workflow_engine
from delivery.services import workflow_definition_service as definitions

workflow_bp = Blueprint("workflow", __name__, url_prefix="/api/v1")


# ═════════════════════════════════════════════════════════════════════════════
# DEFINITIONS
# ═════════════════════════════════════════════════════════════════════════════

@workflow_bp.route("/workflows/definitions", methods=["GET"])
def list_definitions():
    get_current_actor()
    entity_type = request.args.get("entityType") or request.args.get("entity_type")
    items = definitions.list_definitions(entity_type, active_only=query_flag("active"))
    return jsonify({"items": [d.to_dict() for d in items], "total": len(items)})


@workflow_bp.route("/workflows/definitions", methods=["POST"])
@require_roles("PM")
def create_definition():
    """Create a definition.

    Body: { entityType, name, description?, isActive?, steps: [{name, order?,
    approverType, approverRole | dynamicApproverType, requiresCommentOnReject?,
    requiresCommentOnSendBack?, actions?}] }
    """
    actor = get_current_actor()
    definition = definitions.create_definition(json_body(), actor_id=actor.id)
    return jsonify(definition.to_dict()), 201


@workflow_bp.route("/workflows/definitions/<int:definition_id>", methods=["GET"])
def get_definition(definition_id):
    get_current_actor()
    return jsonify(definitions.get_definition(definition_id).to_dict())


@workflow_bp.route("/workflows/definitions/<int:definition_id>", methods=["PATCH"])
@require_roles("PM")
def update_definition(definition_id):
    actor = get_current_actor()
    definition = definitions.update_definition(definition_id, json_body(), actor_id=actor.id)
    return jsonify(definition.to_dict())


@workflow_bp.route("/workflows/definitions/<int:definition_id>", methods=["DELETE"])
@require_roles("PM")
def delete_definition(definition_id):
    actor = get_current_actor()
    result = definitions.delete_definition(definition_id, force=query_flag("force"), actor_id=actor.id)
    return jsonify(result)


# ═════════════════════════════════════════════════════════════════════════════
# TASK WORKFLOW
# ═════════════════════════════════════════════════════════════════════════════

@workflow_bp.route("/tasks/<int:task_id>/workflow", methods=["POST"])
@require_roles("PM")
def start_task_workflow(task_id):
    """Start the approval workflow; an optional body submits the estimate under
    review (``{quantity, unit, confidence?, notes?}``)."""
    actor = get_current_actor()
    data = json_body()
    instance = workflow_engine.start_for_task(task_id, actor, estimate=data or None)
    payload = instance.to_dict()
    payload["estimation"] = workflow_engine.get_task(task_id).estimation_dict()
    return jsonify(payload), 201


@workflow_bp.route("/tasks/<int:task_id>/workflow", methods=["GET"])
def task_workflow_status(task_id):
    get_current_actor()
    workflow_engine.get_task(task_id)
    return jsonify(workflow_engine.get_status("TASK", task_id))


@workflow_bp.route("/tasks/<int:task_id>/workflow/approvers", methods=["GET"])
def task_workflow_approvers(task_id):
    get_current_actor()
    return jsonify(approver_resolver.preview_approvers(task_id))


@workflow_bp.route("/tasks/<int:task_id>/actions", methods=["POST"])
def perform_task_action(task_id):
    """Apply an action to the task's active step.

    Body: { action: APPROVE|REJECT|SEND_BACK|REQUEST_CHANGE, comment?, metadata? }
    """
    actor = get_current_actor()
    data = json_body()
    result = task_workflow_service.perform_action(
        task_id,
        actor,
        data.get("action"),
        comment=data.get("comment"),
        metadata=data.get("metadata"),
    )
    return jsonify(result)
