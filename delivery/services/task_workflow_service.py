"""
Task Workflow Action Processor.

Applies APPROVE / REJECT / SEND_BACK / REQUEST_CHANGE to the ACTIVE step of
the workflow instance bound to a task.

Transition table (action on the ACTIVE step S at position k):

    APPROVE         S → APPROVED; last step ⇒ instance COMPLETED,
                    otherwise step k+1 → ACTIVE
    REJECT          S → REJECTED;  instance REJECTED (terminal)
    SEND_BACK       S → SENT_BACK; step 0 → ACTIVE, instance stays
                    IN_PROGRESS, steps 1..k keep their outcome
                    (k = 0: no earlier step exists, resolved as a change
                    request: S → CHANGES_REQUESTED, instance CHANGES_REQUESTED)
    REQUEST_CHANGE  S → CHANGES_REQUESTED; instance CHANGES_REQUESTED (terminal)

Guarantees:
    - Checks run before any mutation; a refused action writes nothing.
    - One accepted action writes exactly one WorkflowAction, one AuditLog
      row and its notifications, committed together.
    - The instance row is read ``FOR UPDATE`` and flushed under its
      ``version`` column; a lost race rolls back and raises ConflictError.
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone

from flask import current_app, has_app_context
from sqlalchemy import select
from sqlalchemy.orm.exc import StaleDataError

from delivery.core.exceptions import ConflictError, DeliveryError, NotFoundError, ValidationError
from delivery.models import db
from delivery.models.audit import write_audit
from delivery.models.auth import User
from delivery.models.project import Project
from delivery.models.task import ESTIMATION_OUTCOMES, Task
from delivery.models.workflow import (
    WORKFLOW_ACTIONS,
    WorkflowAction,
    WorkflowInstance,
    WorkflowStepInstance,
)
from delivery.services import approver_resolver
from delivery.services.notification import NotificationService
from delivery.services.workflow_engine import (
    activate_step,
    close_step,
    get_task,
    latest_instance,
    notify_step_approvers,
)

logger = logging.getLogger(__name__)

_DEFAULT_COMMENT_MAX_LENGTH = 1024


def _comment_max_length() -> int:
    if has_app_context():
        return int(current_app.config.get("WORKFLOW_COMMENT_MAX_LENGTH", _DEFAULT_COMMENT_MAX_LENGTH))
    return _DEFAULT_COMMENT_MAX_LENGTH


def _load_instance(task: Task) -> WorkflowInstance:
    instance = latest_instance("TASK", task.id, for_update=True)
    if instance is None:
        raise NotFoundError(resource="WorkflowInstance", message=f"Task id={task.id} has no workflow")
    return instance


def _normalize_action(action) -> str:
    value = (action or "").strip().upper() if isinstance(action, str) else ""
    if value not in WORKFLOW_ACTIONS:
        raise ValidationError(
            f"Unknown workflow action '{action}'. Must be one of: {', '.join(WORKFLOW_ACTIONS)}",
            details={"action": action},
        )
    return value


def _normalize_comment(comment, action: str, step: WorkflowStepInstance) -> str | None:
    if comment is not None and not isinstance(comment, str):
        raise ValidationError("comment must be a string", details={"comment": "invalid"})
    text = (comment or "").strip() or None
    max_length = _comment_max_length()
    if text and len(text) > max_length:
        raise ValidationError(
            f"comment must be {max_length} characters or fewer",
            details={"comment": "too_long", "max_length": max_length},
        )
    required = (
        (action == "REJECT" and step.requires_comment_on_reject)
        or (action == "SEND_BACK" and step.requires_comment_on_send_back)
    )
    if required and not text:
        raise ValidationError("Comment is required for this action.", details={"comment": "required"})
    return text


def _notify_task_people(task: Task, actor: User, title: str, message: str) -> None:
    NotificationService.broadcast(
        recipients=[task.created_by_id, task.planned_assignee_id(), task.estimate_submitted_by_id],
        title=title,
        message=message,
        category="workflow_action",
        entity_type="task",
        entity_id=task.id,
        exclude=actor.id,
    )


def _settle_estimation(task: Task, instance_status: str) -> dict | None:
    """Carry a terminal workflow outcome onto the task's estimate, if it has one."""
    new_status = ESTIMATION_OUTCOMES.get(instance_status)
    if new_status is None or task.estimation_status == "NOT_SUBMITTED":
        return None
    old_status = task.estimation_status
    task.estimation_status = new_status
    task.estimate_updated_at = datetime.now(timezone.utc)
    return {"old": old_status, "new": new_status}


def _apply(instance: WorkflowInstance, step: WorkflowStepInstance, action: str,
           actor: User, comment: str | None, task: Task, project: Project | None) -> dict:
    """Mutate step/instance state for an authorized action. Returns extra metadata."""
    extra: dict = {}
    position = step.position
    is_last = position == len(instance.steps) - 1

    if action == "APPROVE":
        close_step(step, "APPROVED", actor_id=actor.id, action=action, comment=comment)
        if is_last:
            instance.status = "COMPLETED"
            instance.current_step_id = None
            _notify_task_people(task, actor, f"Approved: {task.title}", "All approval steps are complete.")
        else:
            nxt = instance.steps[position + 1]
            activate_step(instance, nxt)
            notify_step_approvers(instance, nxt, task, project, exclude=actor.id)

    elif action == "REJECT":
        close_step(step, "REJECTED", actor_id=actor.id, action=action, comment=comment)
        instance.status = "REJECTED"
        instance.current_step_id = None
        _notify_task_people(task, actor, f"Rejected: {task.title}", comment or f"Rejected at step '{step.name}'.")

    elif action == "SEND_BACK" and position > 0:
        close_step(step, "SENT_BACK", actor_id=actor.id, action=action, comment=comment)
        first = instance.steps[0]
        activate_step(instance, first)
        instance.status = "IN_PROGRESS"
        extra["returned_to_step_id"] = first.id
        notify_step_approvers(instance, first, task, project, exclude=actor.id)

    else:
        # REQUEST_CHANGE, or SEND_BACK on the first step
        close_step(step, "CHANGES_REQUESTED", actor_id=actor.id, action=action, comment=comment)
        instance.status = "CHANGES_REQUESTED"
        instance.current_step_id = None
        if action == "SEND_BACK":
            extra["converted_to"] = "REQUEST_CHANGE"
        _notify_task_people(
            task, actor, f"Changes requested: {task.title}", comment or f"Changes requested at step '{step.name}'.",
        )

    instance.updated_at = datetime.now(timezone.utc)
    return extra


def perform_action(
    task_id: int,
    actor: User,
    action: str,
    comment: str | None = None,
    metadata: dict | None = None,
) -> dict:
    """Apply ``action`` to the task's current step. Commits on success.

    Returns:
        ``{"instance": {...}, "actions": [...]}``

    Raises:
        NotFoundError: unknown task, or the task has no workflow.
        ValidationError: unknown/forbidden action, missing or oversized comment.
        ConflictError: instance not IN_PROGRESS, no ACTIVE step, or a
            concurrent writer got there first.
        AuthorizationError / ResolutionError: from the approver resolver.
    """
    try:
        task = get_task(task_id)
        instance = _load_instance(task)
        action = _normalize_action(action)
        if metadata is not None and not isinstance(metadata, dict):
            raise ValidationError("metadata must be an object", details={"metadata": "invalid"})

        if instance.status != "IN_PROGRESS":
            raise ConflictError(
                f"Workflow is {instance.status}; no further actions are accepted",
                current_status=instance.status,
            )
        step = instance.current_step
        if step is None or step.status != "ACTIVE":
            raise ConflictError("Workflow has no active step", current_status=instance.status)
        if not step.permits(action):
            raise ValidationError(
                f"Action {action} is not permitted at step '{step.name}'",
                details={"action": action, "allowed": list(step.actions or [])},
            )

        project = db.session.get(Project, task.project_id)
        candidates = approver_resolver.load_candidates(step.approver, task, project)
        approver_resolver.authorize(actor, step.approver, task, project, candidates)

        text = _normalize_comment(comment, action, step)
        from_status = instance.status
        extra = _apply(instance, step, action, actor, text, task, project)
        estimation = _settle_estimation(task, instance.status)

        record = WorkflowAction(
            instance_id=instance.id,
            step_instance_id=step.id,
            actor_id=actor.id,
            action=action,
            comment=text,
            action_metadata={**(metadata or {}), **extra, "step_name": step.name, "step_position": step.position},
        )
        db.session.add(record)
        write_audit(
            entity_type="task",
            entity_id=task.id,
            action=f"task.workflow_{action.lower()}",
            actor_user_id=actor.id,
            project_id=task.project_id,
            diff={
                "instance_id": instance.id,
                "step": step.name,
                "status": {"old": from_status, "new": instance.status},
                "step_status": step.status,
                **extra,
                **({"estimation_status": estimation} if estimation else {}),
            },
        )
        db.session.commit()
    except StaleDataError as exc:
        db.session.rollback()
        logger.warning(
            "Concurrent workflow action lost the race",
            extra={"task_id": task_id, "action": action, "actor_id": actor.id},
        )
        raise ConflictError("Workflow was changed by another request; reload and retry") from exc
    except DeliveryError as exc:
        db.session.rollback()
        logger.info(
            "Workflow action refused: %s",
            exc.message,
            extra={"task_id": task_id, "action": action, "actor_id": actor.id},
        )
        raise

    logger.info(
        "Workflow action applied",
        extra={
            "instance_id": instance.id,
            "task_id": task.id,
            "action": action,
            "actor_id": actor.id,
            "status": instance.status,
        },
    )
    actions = db.session.execute(
        select(WorkflowAction).where(WorkflowAction.instance_id == instance.id).order_by(WorkflowAction.id)
    ).scalars().all()
    return {"instance": instance.to_dict(), "actions": [a.to_dict() for a in actions]}
