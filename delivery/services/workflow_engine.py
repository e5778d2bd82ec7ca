"""
Workflow Instance Engine — binds a definition to an entity and moves the
per-instance step snapshots through their states.

Step state machine (per pass):

    PENDING ──activate──▶ ACTIVE ──close──▶ APPROVED | REJECTED
                                            | CHANGES_REQUESTED | SENT_BACK

Step 0 may be re-activated by a SEND_BACK; activation clears its runtime
fields. Starting a task's workflow may also put its estimate under review
(estimation_status UNDER_REVIEW); the action processor settles it.
Everything here only flushes; the caller owns the transaction.
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm.exc import StaleDataError

from delivery.core.exceptions import (
    AuthorizationError,
    ConflictError,
    DeliveryError,
    NotFoundError,
    ValidationError,
)
from delivery.models import db
from delivery.models.audit import write_audit
from delivery.models.auth import User
from delivery.models.project import Project
from delivery.models.task import ESTIMATE_CONFIDENCE_LEVELS, ESTIMATE_UNITS, Task
from delivery.models.workflow import (
    STEP_OPEN_STATUSES,
    WorkflowAction,
    WorkflowDefinition,
    WorkflowInstance,
    WorkflowStepInstance,
)
from delivery.services import approver_resolver
from delivery.services.notification import NotificationService
from delivery.services.workflow_definition_service import resolve_definition_for_task

logger = logging.getLogger(__name__)

WORKFLOW_STARTER_ROLES = frozenset({"PM"})
ESTIMATE_NOTES_MAX_LENGTH = 1024


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


# ── Lookups ──────────────────────────────────────────────────────────────────


def latest_instance(entity_type: str, entity_id: int, *, for_update: bool = False) -> WorkflowInstance | None:
    """Latest instance (highest id) bound to the entity.

    With ``for_update`` the row is locked (``SELECT … FOR UPDATE``; a no-op on
    SQLite) and the identity map is refreshed from the database so the
    version column reflects what this transaction will compare against.
    """
    stmt = (
        select(WorkflowInstance)
        .where(WorkflowInstance.entity_type == entity_type, WorkflowInstance.entity_id == entity_id)
        .order_by(WorkflowInstance.id.desc())
        .limit(1)
    )
    if for_update:
        stmt = stmt.with_for_update().execution_options(populate_existing=True)
    return db.session.execute(stmt).scalar_one_or_none()


def get_task(task_id: int, *, for_update: bool = False) -> Task:
    if for_update:
        stmt = (
            select(Task)
            .where(Task.id == task_id)
            .with_for_update()
            .execution_options(populate_existing=True)
        )
        task = db.session.execute(stmt).scalar_one_or_none()
    else:
        task = db.session.get(Task, task_id)
    if task is None:
        raise NotFoundError(resource="Task", resource_id=task_id)
    return task


# ── Step helpers ─────────────────────────────────────────────────────────────


def activate_step(instance: WorkflowInstance, step: WorkflowStepInstance) -> None:
    """Make ``step`` the single ACTIVE step of ``instance``."""
    step.status = "ACTIVE"
    step.acted_by_id = None
    step.acted_at = None
    step.action = None
    step.comment = None
    instance.current_step_id = step.id


def close_step(
    step: WorkflowStepInstance,
    status: str,
    *,
    actor_id: int | None,
    action: str,
    comment: str | None = None,
) -> None:
    """Record the outcome of ``step``. A step leaves PENDING/ACTIVE only once per pass."""
    if step.status not in STEP_OPEN_STATUSES:
        raise ConflictError(
            f"Step '{step.name}' has already been acted on",
            current_status=step.status,
        )
    step.status = status
    step.acted_by_id = actor_id
    step.acted_at = _utcnow()
    step.action = action
    step.comment = comment


def notify_step_approvers(instance: WorkflowInstance, step: WorkflowStepInstance, task: Task,
                          project: Project | None, exclude: int | None = None) -> int:
    """Tell the users able to act on ``step`` that it is waiting for them."""
    candidates = approver_resolver.load_candidates(step.approver, task, project)
    recipients = approver_resolver.resolve_approvers(step.approver, task, project, candidates)
    if not recipients:
        logger.warning(
            "No approver to notify for active step",
            extra={"instance_id": instance.id, "step_id": step.id, "approver": step.approver.to_dict()},
        )
        return 0
    sent = NotificationService.broadcast(
        recipients=recipients,
        title=f"Approval needed: {task.title}",
        message=f"Step '{step.name}' is waiting for your decision.",
        category="workflow_action_required",
        entity_type="task",
        entity_id=task.id,
        exclude=exclude,
    )
    return len(sent)


# ── Start ────────────────────────────────────────────────────────────────────


def ensure_can_start(actor: User, task: Task, project: Project | None) -> None:
    """Only a product manager who owns the project or created the task may
    put the task into review. SUPER_ADMIN always may."""
    if actor.is_super_admin:
        return
    if actor.role not in WORKFLOW_STARTER_ROLES:
        raise AuthorizationError(
            "Only product managers can submit a task for approval.",
            details={"required_roles": sorted(WORKFLOW_STARTER_ROLES), "actor_role": actor.role},
        )
    owners = project.owner_user_ids() if project else set()
    if actor.id not in owners and actor.id != task.created_by_id:
        raise AuthorizationError(
            "Only the project owner or the task's creator can submit it for approval.",
            details={"task_id": task.id},
        )


def normalize_estimate(payload) -> dict:
    """Validate an estimate body: ``quantity`` > 0, ``unit`` HOURS|DAYS,
    optional ``confidence`` LOW|MEDIUM|HIGH and ``notes``."""
    if not isinstance(payload, dict):
        raise ValidationError("estimate must be an object", details={"estimate": "invalid"})

    quantity = payload.get("quantity")
    if isinstance(quantity, bool) or not isinstance(quantity, (int, float)) or quantity <= 0:
        raise ValidationError("estimate quantity must be a positive number", details={"quantity": quantity})

    unit = payload.get("unit")
    unit = unit.strip().upper() if isinstance(unit, str) else None
    if unit not in ESTIMATE_UNITS:
        raise ValidationError(
            f"estimate unit must be one of: {', '.join(ESTIMATE_UNITS)}",
            details={"unit": payload.get("unit")},
        )

    confidence = payload.get("confidence")
    if confidence is not None:
        confidence = confidence.strip().upper() if isinstance(confidence, str) else None
        if confidence not in ESTIMATE_CONFIDENCE_LEVELS:
            raise ValidationError(
                f"estimate confidence must be one of: {', '.join(ESTIMATE_CONFIDENCE_LEVELS)}",
                details={"confidence": payload.get("confidence")},
            )

    notes = payload.get("notes")
    if notes is not None and not isinstance(notes, str):
        raise ValidationError("estimate notes must be a string", details={"notes": "invalid"})
    notes = (notes or "").strip() or None
    if notes and len(notes) > ESTIMATE_NOTES_MAX_LENGTH:
        raise ValidationError(
            f"estimate notes must be {ESTIMATE_NOTES_MAX_LENGTH} characters or fewer",
            details={"notes": "too_long", "max_length": ESTIMATE_NOTES_MAX_LENGTH},
        )

    return {"quantity": float(quantity), "unit": unit, "confidence": confidence, "notes": notes}


def _put_estimate_under_review(task: Task, estimate: dict | None, actor: User | None) -> dict | None:
    """Record ``estimate`` on the task (or re-open the one it has) as UNDER_REVIEW.

    Returns the audit diff, or None when the task carries no estimate.
    """
    if task.estimation_status == "APPROVED":
        raise ConflictError("Task estimate is already approved", current_status="APPROVED")
    if estimate is None and task.estimation_status == "NOT_SUBMITTED":
        return None

    now = _utcnow()
    old_status = task.estimation_status
    if estimate is not None:
        task.estimate_quantity = estimate["quantity"]
        task.estimate_unit = estimate["unit"]
        task.estimate_confidence = estimate["confidence"]
        task.estimate_notes = estimate["notes"]
        task.estimate_submitted_by_id = actor.id if actor else None
        task.estimate_submitted_at = now
    task.estimation_status = "UNDER_REVIEW"
    task.estimate_updated_at = now
    return {
        "status": {"old": old_status, "new": "UNDER_REVIEW"},
        "quantity": task.estimate_quantity,
        "unit": task.estimate_unit,
    }


def start_instance(definition: WorkflowDefinition, task: Task, actor: User | None = None,
                   estimate: dict | None = None) -> WorkflowInstance:
    """Snapshot ``definition`` onto a new IN_PROGRESS instance for ``task``. Flushes only.

    ``estimate`` is a normalized estimate (see ``normalize_estimate``) put
    under review alongside the instance.
    """
    if definition.entity_type != "TASK":
        raise ValidationError(
            f"Workflow definition {definition.id} is for {definition.entity_type}, not TASK",
            details={"entity_type": definition.entity_type},
        )
    if not definition.is_active:
        raise ValidationError(
            f"Workflow definition {definition.id} is inactive",
            details={"definition_id": definition.id},
        )
    if not definition.steps:
        raise ValidationError(f"Workflow definition {definition.id} has no steps")

    running = db.session.execute(
        select(WorkflowInstance.id).where(
            WorkflowInstance.entity_type == "TASK",
            WorkflowInstance.entity_id == task.id,
            WorkflowInstance.status == "IN_PROGRESS",
        )
    ).first()
    if running is not None:
        raise ConflictError(
            f"Task {task.id} already has a workflow in progress",
            current_status="IN_PROGRESS",
            details={"instance_id": running[0]},
        )
    estimation_diff = _put_estimate_under_review(task, estimate, actor)

    instance = WorkflowInstance(
        definition_id=definition.id,
        entity_type="TASK",
        entity_id=task.id,
        status="IN_PROGRESS",
        started_by_id=actor.id if actor else None,
    )
    for position, source in enumerate(definition.steps):
        step = WorkflowStepInstance(
            position=position,
            step_definition_id=source.id,
            name=source.name,
            requires_comment_on_reject=source.requires_comment_on_reject,
            requires_comment_on_send_back=source.requires_comment_on_send_back,
            actions=list(source.actions or []),
            status="PENDING",
        )
        step.approver = source.approver
        instance.steps.append(step)
    db.session.add(instance)
    db.session.flush()

    activate_step(instance, instance.steps[0])
    task.workflow_instance_id = instance.id
    db.session.flush()

    project = db.session.get(Project, task.project_id)
    write_audit(
        entity_type="task",
        entity_id=task.id,
        action="task.workflow_start",
        actor_user_id=actor.id if actor else None,
        project_id=task.project_id,
        diff={
            "instance_id": instance.id,
            "definition_id": definition.id,
            "status": {"old": None, "new": "IN_PROGRESS"},
            "steps": len(instance.steps),
            "estimation": estimation_diff,
        },
    )
    notify_step_approvers(instance, instance.steps[0], task, project, exclude=actor.id if actor else None)

    logger.info(
        "Workflow started",
        extra={
            "instance_id": instance.id,
            "task_id": task.id,
            "definition_id": definition.id,
            "actor_id": actor.id if actor else None,
        },
    )
    return instance


def start_for_task(task_id: int, actor: User | None = None, estimate=None) -> WorkflowInstance:
    """Resolve the task's definition and start an instance. Commits.

    The task row is locked first so concurrent starts for one task queue up;
    the partial unique index on live instances catches whatever slips past.
    """
    task = get_task(task_id, for_update=True)
    try:
        if actor is not None:
            ensure_can_start(actor, task, db.session.get(Project, task.project_id))
        normalized = normalize_estimate(estimate) if estimate is not None else None
        definition = resolve_definition_for_task(task)
        instance = start_instance(definition, task, actor, normalized)
        db.session.commit()
    except (StaleDataError, IntegrityError) as exc:
        db.session.rollback()
        raise ConflictError(
            f"Task {task_id} already has a workflow in progress",
            current_status="IN_PROGRESS",
        ) from exc
    except DeliveryError:
        db.session.rollback()
        raise
    return instance


# ── Read ─────────────────────────────────────────────────────────────────────


def get_status(entity_type: str, entity_id: int) -> dict:
    """Status projection: latest instance, its steps and action log, and a
    summary of the definition it was started from."""
    instance = latest_instance(entity_type, entity_id)
    if instance is None:
        raise NotFoundError(
            resource="WorkflowInstance",
            message=f"{entity_type.title()} id={entity_id} has no workflow",
        )
    definition = db.session.get(WorkflowDefinition, instance.definition_id)
    actions = db.session.execute(
        select(WorkflowAction).where(WorkflowAction.instance_id == instance.id).order_by(WorkflowAction.id)
    ).scalars().all()
    current = instance.current_step
    task = db.session.get(Task, entity_id) if entity_type == "TASK" else None
    return {
        "instance": instance.to_dict(),
        "estimation": task.estimation_dict() if task else None,
        "current_step": current.to_dict() if current else None,
        "actions": [a.to_dict() for a in actions],
        "definition": {
            "id": instance.definition_id,
            "name": definition.name if definition else None,
            "is_active": definition.is_active if definition else False,
            "retired": bool(definition is None or definition.retired_at),
        },
    }
