"""
Workflow Definition Store — admin-authored approval templates.

Rules enforced here:
    - Steps are validated, sorted by ``order`` (list position when absent)
      and renumbered 1..N. Duplicate explicit orders are rejected.
    - One active definition per entity type: creating or activating a
      definition deactivates its siblings.
    - Editing a definition never touches running instances; they carry
      their own step snapshots.
    - A definition that was ever bound to an instance is retired, not
      deleted, so the action history keeps its reference.
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone

from sqlalchemy import func, select

from delivery.core.exceptions import ConflictError, NotFoundError, ValidationError
from delivery.models import db
from delivery.models.audit import write_audit
from delivery.models.project import Project
from delivery.models.task import Task
from delivery.models.workflow import (
    WORKFLOW_ACTIONS,
    WORKFLOW_ENTITY_TYPES,
    WorkflowDefinition,
    WorkflowInstance,
    WorkflowStepDefinition,
)
from delivery.services.approver_resolver import approver_from_fields

logger = logging.getLogger(__name__)

_UPDATABLE_FIELDS = ("name", "description", "is_active", "entity_type")


# ── Validation helpers ───────────────────────────────────────────────────────


def _entity_type(value) -> str:
    entity_type = str(value or "TASK").upper()
    if entity_type not in WORKFLOW_ENTITY_TYPES:
        raise ValidationError(
            f"Unsupported entity_type '{value}'. Must be one of: {', '.join(sorted(WORKFLOW_ENTITY_TYPES))}",
            details={"entity_type": value},
        )
    return entity_type


def _flag(value, field: str, default: bool) -> bool:
    if value is None:
        return default
    if not isinstance(value, bool):
        raise ValidationError(f"{field} must be true or false", details={field: value})
    return value


def _name(value, field="name") -> str:
    name = (value or "").strip() if isinstance(value, str) else ""
    if not name:
        raise ValidationError(f"{field} is required", details={field: "required"})
    if len(name) > 200:
        raise ValidationError(f"{field} must be 200 characters or fewer", details={field: "too_long"})
    return name


def _actions(value) -> list[str]:
    if value is None:
        return list(WORKFLOW_ACTIONS)
    if not isinstance(value, list):
        raise ValidationError("actions must be a list", details={"actions": value})
    unknown = [a for a in value if a not in WORKFLOW_ACTIONS]
    if unknown:
        raise ValidationError(
            f"Unknown workflow action(s): {', '.join(map(str, unknown))}",
            details={"actions": unknown},
        )
    if not value:
        raise ValidationError("A step must permit at least one action", details={"actions": "empty"})
    # Keep vocabulary order, drop duplicates
    return [a for a in WORKFLOW_ACTIONS if a in value]


def normalize_steps(step_inputs) -> list[dict]:
    """Validate raw step payloads; return them sorted and renumbered 1..N."""
    if not isinstance(step_inputs, list) or not step_inputs:
        raise ValidationError("A workflow definition requires at least one step", details={"steps": "required"})

    explicit_orders = [s.get("order") for s in step_inputs if isinstance(s, dict) and s.get("order") is not None]
    if len(explicit_orders) != len(set(explicit_orders)):
        raise ValidationError("Step order values must be unique", details={"order": explicit_orders})

    normalized = []
    for index, raw in enumerate(step_inputs):
        if not isinstance(raw, dict):
            raise ValidationError(f"Step {index + 1} must be an object")
        order = raw.get("order")
        if order is not None and (isinstance(order, bool) or not isinstance(order, int)):
            raise ValidationError(f"Step {index + 1}: order must be an integer", details={"order": order})
        normalized.append({
            "name": _name(raw.get("name"), field="step name"),
            "description": (raw.get("description") or "").strip() or None,
            "order": order if order is not None else index + 1,
            "approver": approver_from_fields(
                raw.get("approver_type"),
                raw.get("approver_role"),
                raw.get("dynamic_approver_type"),
            ),
            "requires_comment_on_reject": _flag(
                raw.get("requires_comment_on_reject"), "requires_comment_on_reject", False,
            ),
            "requires_comment_on_send_back": _flag(
                raw.get("requires_comment_on_send_back"), "requires_comment_on_send_back", False,
            ),
            "actions": _actions(raw.get("actions")),
        })

    normalized.sort(key=lambda s: s["order"])
    for position, step in enumerate(normalized, start=1):
        step["order"] = position
    return normalized


def _build_steps(definition: WorkflowDefinition, steps: list[dict]) -> None:
    definition.steps = []
    db.session.flush()
    for data in steps:
        step = WorkflowStepDefinition(
            name=data["name"],
            description=data["description"],
            order=data["order"],
            requires_comment_on_reject=data["requires_comment_on_reject"],
            requires_comment_on_send_back=data["requires_comment_on_send_back"],
            actions=data["actions"],
        )
        step.approver = data["approver"]
        definition.steps.append(step)


def _deactivate_siblings(definition: WorkflowDefinition) -> int:
    siblings = db.session.execute(
        select(WorkflowDefinition).where(
            WorkflowDefinition.entity_type == definition.entity_type,
            WorkflowDefinition.is_active.is_(True),
            WorkflowDefinition.id != definition.id,
        )
    ).scalars().all()
    for sibling in siblings:
        sibling.is_active = False
    if siblings:
        logger.info(
            "Deactivated sibling workflow definitions",
            extra={"definition_id": definition.id, "deactivated": [s.id for s in siblings]},
        )
    return len(siblings)


# ── Queries ──────────────────────────────────────────────────────────────────


def list_definitions(entity_type: str | None = None, active_only: bool = False) -> list[WorkflowDefinition]:
    stmt = select(WorkflowDefinition).order_by(WorkflowDefinition.id)
    if entity_type:
        stmt = stmt.where(WorkflowDefinition.entity_type == _entity_type(entity_type))
    if active_only:
        stmt = stmt.where(WorkflowDefinition.is_active.is_(True))
    return list(db.session.execute(stmt).scalars())


def get_definition(definition_id: int) -> WorkflowDefinition:
    definition = db.session.get(WorkflowDefinition, definition_id)
    if definition is None:
        raise NotFoundError(resource="WorkflowDefinition", resource_id=definition_id)
    return definition


def get_active_definition(entity_type: str = "TASK") -> WorkflowDefinition | None:
    """Most recently updated active definition for ``entity_type``."""
    return db.session.execute(
        select(WorkflowDefinition)
        .where(WorkflowDefinition.entity_type == entity_type, WorkflowDefinition.is_active.is_(True))
        .order_by(WorkflowDefinition.updated_at.desc(), WorkflowDefinition.id.desc())
        .limit(1)
    ).scalar_one_or_none()


def resolve_definition_for_task(task: Task) -> WorkflowDefinition:
    """The project's pinned TASK definition, else the active TASK definition."""
    project = db.session.get(Project, task.project_id)
    if project is not None and project.task_workflow_definition_id:
        definition = db.session.get(WorkflowDefinition, project.task_workflow_definition_id)
        if definition is None:
            raise NotFoundError(resource="WorkflowDefinition", resource_id=project.task_workflow_definition_id)
        if definition.entity_type != "TASK":
            raise ValidationError(
                f"Project workflow definition {definition.id} is not a TASK definition",
                details={"entity_type": definition.entity_type},
            )
        if not definition.is_active:
            raise ValidationError(
                f"Project workflow definition {definition.id} is inactive",
                details={"definition_id": definition.id},
            )
        return definition

    definition = get_active_definition("TASK")
    if definition is None:
        raise NotFoundError(resource="WorkflowDefinition", message="No active TASK workflow definition")
    return definition


# ── Mutations ────────────────────────────────────────────────────────────────


def create_definition(payload: dict, actor_id: int | None = None) -> WorkflowDefinition:
    """Validate and persist a new definition. Commits."""
    entity_type = _entity_type(payload.get("entity_type"))
    name = _name(payload.get("name"))
    steps = normalize_steps(payload.get("steps"))

    definition = WorkflowDefinition(
        entity_type=entity_type,
        name=name,
        description=(payload.get("description") or "").strip() or None,
        is_active=_flag(payload.get("is_active"), "is_active", True),
        created_by_id=actor_id,
    )
    db.session.add(definition)
    _build_steps(definition, steps)
    db.session.flush()

    if definition.is_active:
        _deactivate_siblings(definition)

    write_audit(
        entity_type="workflow_definition",
        entity_id=definition.id,
        action="workflow_definition.create",
        actor_user_id=actor_id,
        diff={"name": name, "entity_type": entity_type, "steps": len(steps), "is_active": definition.is_active},
    )
    db.session.commit()
    logger.info("Workflow definition created", extra={"definition_id": definition.id, "actor_id": actor_id})
    return definition


def update_definition(definition_id: int, partial: dict, actor_id: int | None = None) -> WorkflowDefinition:
    """Partial update; ``steps`` replaces the whole chain. Commits."""
    definition = get_definition(definition_id)
    if definition.retired_at is not None:
        raise ConflictError("Retired workflow definitions cannot be edited", current_status="RETIRED")

    diff = {}
    for field in _UPDATABLE_FIELDS:
        if field not in partial:
            continue
        value = partial[field]
        if field == "name":
            value = _name(value)
        elif field == "entity_type":
            value = _entity_type(value)
        elif field == "description":
            value = (value or "").strip() or None
        elif field == "is_active":
            value = _flag(value, "is_active", definition.is_active)
        old = getattr(definition, field)
        if old != value:
            diff[field] = {"old": old, "new": value}
            setattr(definition, field, value)

    if "steps" in partial:
        steps = normalize_steps(partial["steps"])
        _build_steps(definition, steps)
        diff["steps"] = {"new": len(steps)}

    definition.updated_at = datetime.now(timezone.utc)
    db.session.flush()
    if definition.is_active and ("is_active" in diff or "entity_type" in diff):
        _deactivate_siblings(definition)

    write_audit(
        entity_type="workflow_definition",
        entity_id=definition.id,
        action="workflow_definition.update",
        actor_user_id=actor_id,
        diff=diff,
    )
    db.session.commit()
    logger.info(
        "Workflow definition updated",
        extra={"definition_id": definition.id, "fields": sorted(diff), "actor_id": actor_id},
    )
    return definition


def delete_definition(definition_id: int, force: bool = False, actor_id: int | None = None) -> dict:
    """Delete, or retire, a definition. Commits.

    Returns ``{"deleted": bool, "retired": bool, "warning": str | None,
    "live_instances": int}``.

    Raises:
        ConflictError: live (IN_PROGRESS) instances exist and ``force`` is False.
    """
    definition = get_definition(definition_id)

    counts = dict(
        db.session.execute(
            select(WorkflowInstance.status, func.count(WorkflowInstance.id))
            .where(WorkflowInstance.definition_id == definition.id)
            .group_by(WorkflowInstance.status)
        ).all()
    )
    live = counts.get("IN_PROGRESS", 0)
    total = sum(counts.values())

    warning = None
    if live:
        warning = f"{live} workflow instance(s) are still in progress on this definition"
        if not force:
            raise ConflictError(
                f"{warning}; pass force=true to retire it instead",
                details={"live_instances": live, "warning": warning},
            )

    if total:
        definition.is_active = False
        definition.retired_at = datetime.now(timezone.utc)
        write_audit(
            entity_type="workflow_definition",
            entity_id=definition.id,
            action="workflow_definition.retire",
            actor_user_id=actor_id,
            diff={"instances": total, "live_instances": live, "forced": bool(force and live)},
        )
        db.session.commit()
        logger.info(
            "Workflow definition retired",
            extra={"definition_id": definition.id, "instances": total, "live_instances": live, "actor_id": actor_id},
        )
        return {"deleted": False, "retired": True, "warning": warning, "live_instances": live}

    # Unpin from projects before removal
    db.session.execute(
        Project.__table__.update()
        .where(Project.task_workflow_definition_id == definition.id)
        .values(task_workflow_definition_id=None)
    )
    write_audit(
        entity_type="workflow_definition",
        entity_id=definition.id,
        action="workflow_definition.delete",
        actor_user_id=actor_id,
        diff={"name": definition.name},
    )
    db.session.delete(definition)
    db.session.commit()
    logger.info("Workflow definition deleted", extra={"definition_id": definition_id, "actor_id": actor_id})
    return {"deleted": True, "retired": False, "warning": None, "live_instances": 0}


# ── Seed ─────────────────────────────────────────────────────────────────────

DEFAULT_TASK_WORKFLOW = {
    "entity_type": "TASK",
    "name": "Task estimate approval",
    "description": "Default approval chain for task estimates.",
    "is_active": True,
    "steps": [
        {"name": "PM review", "approver_type": "ROLE", "approver_role": "PM",
         "requires_comment_on_reject": True},
        {"name": "Engineering estimate", "approver_type": "DYNAMIC",
         "dynamic_approver_type": "ENGINEERING_TEAM", "requires_comment_on_send_back": True},
        {"name": "Delivery manager review", "approver_type": "DYNAMIC",
         "dynamic_approver_type": "TASK_PROJECT_MANAGER", "requires_comment_on_reject": True},
        {"name": "Final PM approval", "approver_type": "DYNAMIC", "dynamic_approver_type": "TASK_PM",
         "actions": ["APPROVE", "REJECT", "SEND_BACK"]},
    ],
}


def seed_default_definition() -> WorkflowDefinition | None:
    """Create the default TASK definition unless one already exists. Commits."""
    existing = db.session.execute(
        select(WorkflowDefinition.id).where(WorkflowDefinition.entity_type == "TASK").limit(1)
    ).first()
    if existing is not None:
        return None
    return create_definition(DEFAULT_TASK_WORKFLOW)
