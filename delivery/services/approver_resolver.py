"""
Approver Resolver — who may act on a workflow step.

A step names its approver either by role (``RoleApprover``) or by a rule
evaluated against the task/project graph (``DynamicApprover``):

    ENGINEERING_TEAM          active ENGINEER/DEVELOPER users of the project's
                              vendor companies, plus the task's assignee and
                              assignment-plan users when they hold such a role
    TASK_PROJECT_MANAGER      the project's delivery manager(s)
    TASK_PM                   the project's owning Product Manager(s)
    TASK_ASSIGNED_DEVELOPER   the task assignee, else the first plan entry

``resolve_approvers`` and ``authorize`` are pure: callers pass the candidate
users in (``load_candidates`` fetches them). Nothing here writes.

Usage:
    from delivery.services.approver_resolver import authorize, load_candidates

    users = load_candidates(step.approver, task, project)
    authorize(actor, step.approver, task, project, users)
"""

from __future__ import annotations

import logging
from collections.abc import Iterable

from sqlalchemy import or_, select

from delivery.core.exceptions import (
    AuthorizationError,
    NotFoundError,
    ResolutionError,
    ValidationError,
)
from delivery.models import db
from delivery.models.auth import ENGINEERING_ROLES, User
from delivery.models.project import Project
from delivery.models.task import Task
from delivery.models.workflow import (
    APPROVER_TYPES,
    DynamicApprover,
    RoleApprover,
    WorkflowInstance,
)

logger = logging.getLogger(__name__)


def approver_from_fields(
    approver_type: str | None,
    approver_role: str | None = None,
    dynamic_approver_type: str | None = None,
) -> RoleApprover | DynamicApprover:
    """Build the approver value object from its three persisted fields.

    ``approver_type`` may be omitted; it is inferred from whichever of the
    other two fields is present. Supplying both a role and a rule is an error.
    """
    if approver_type is None:
        approver_type = "DYNAMIC" if dynamic_approver_type else "ROLE"
    approver_type = str(approver_type).upper()
    if approver_type not in APPROVER_TYPES:
        raise ValidationError(
            f"approver_type must be one of: {', '.join(sorted(APPROVER_TYPES))}",
            details={"approver_type": approver_type},
        )
    if approver_role and dynamic_approver_type:
        raise ValidationError(
            "A step takes either an approver role or a dynamic approver rule, not both.",
            details={"approver_role": approver_role, "dynamic_approver_type": dynamic_approver_type},
        )
    try:
        if approver_type == "ROLE":
            if not approver_role:
                raise ValidationError("ROLE steps require approver_role.")
            return RoleApprover(approver_role)
        if not dynamic_approver_type:
            raise ValidationError("DYNAMIC steps require dynamic_approver_type.")
        return DynamicApprover(dynamic_approver_type)
    except ValueError as exc:
        raise ValidationError(str(exc)) from exc


def _plan_user_ids(task: Task | None) -> set[int]:
    ids = set()
    for entry in (task.assignment_plan if task else None) or []:
        if isinstance(entry, dict) and entry.get("user_id"):
            ids.add(int(entry["user_id"]))
    return ids


def resolve_approvers(
    approver: RoleApprover | DynamicApprover,
    task: Task | None,
    project: Project | None,
    users: Iterable[User],
) -> frozenset[int]:
    """Return the ids of the users allowed to act for ``approver``.

    For ROLE approvers the result is informational (every active user with
    that role). Inactive users never appear in the result.
    """
    active = {u.id: u for u in users if u.is_active}

    if isinstance(approver, RoleApprover):
        return frozenset(uid for uid, u in active.items() if u.role == approver.role)

    rule = approver.rule
    if rule == "TASK_PM":
        ids = project.owner_user_ids() if project else set()
    elif rule == "TASK_PROJECT_MANAGER":
        ids = project.delivery_manager_ids() if project else set()
    elif rule == "TASK_ASSIGNED_DEVELOPER":
        assignee = task.planned_assignee_id() if task else None
        ids = {assignee} if assignee else set()
    elif rule == "ENGINEERING_TEAM":
        vendor_ids = set(project.vendor_company_ids or []) if project else set()
        ids = {
            uid for uid, u in active.items()
            if u.role in ENGINEERING_ROLES and u.company_id in vendor_ids
        }
        task_people = _plan_user_ids(task)
        if task and task.assignee_user_id:
            task_people.add(task.assignee_user_id)
        ids |= {uid for uid in task_people if uid in active and active[uid].role in ENGINEERING_ROLES}
    else:
        raise ValidationError(f"Unsupported dynamic approver rule: {rule}")

    return frozenset(uid for uid in ids if uid in active)


def load_candidates(
    approver: RoleApprover | DynamicApprover,
    task: Task | None,
    project: Project | None,
) -> list[User]:
    """Fetch the users ``resolve_approvers`` needs to see for ``approver``."""
    stmt = select(User).where(User.is_active.is_(True))

    if isinstance(approver, RoleApprover):
        stmt = stmt.where(User.role == approver.role)
        return list(db.session.execute(stmt).scalars())

    explicit: set[int] = set()
    if project:
        explicit |= project.owner_user_ids() | project.delivery_manager_ids()
    if task:
        explicit |= _plan_user_ids(task)
        if task.assignee_user_id:
            explicit.add(task.assignee_user_id)

    clauses = []
    if explicit:
        clauses.append(User.id.in_(explicit))
    if approver.rule == "ENGINEERING_TEAM" and project and project.vendor_company_ids:
        clauses.append(
            User.role.in_(ENGINEERING_ROLES) & User.company_id.in_(project.vendor_company_ids)
        )
    if not clauses:
        return []
    return list(db.session.execute(stmt.where(or_(*clauses))).scalars())


def authorize(
    actor: User,
    approver: RoleApprover | DynamicApprover,
    task: Task | None,
    project: Project | None,
    users: Iterable[User],
) -> None:
    """Raise unless ``actor`` may act for ``approver``.

    Raises:
        AuthorizationError: actor is not an eligible approver.
        ResolutionError: a dynamic rule resolved to nobody; no one but a
            SUPER_ADMIN can move the step until the project data is fixed.
    """
    if actor.is_super_admin:
        return

    if isinstance(approver, RoleApprover):
        if actor.role != approver.role:
            raise AuthorizationError(
                f"This step requires role {approver.role}.",
                details={"required_role": approver.role, "actor_role": actor.role},
            )
        return

    eligible = resolve_approvers(approver, task, project, users)
    if not eligible:
        logger.warning(
            "Dynamic approver rule resolved to nobody",
            extra={"rule": approver.rule, "task_id": task.id if task else None},
        )
        raise ResolutionError(approver.rule)
    if actor.id not in eligible:
        raise AuthorizationError(
            f"You are not an eligible approver for this step ({approver.rule}).",
            details={"rule": approver.rule},
        )


def preview_approvers(task_id: int) -> dict:
    """Resolved approver set for the task's active step, for UI previews.

    Never raises for an empty dynamic set; ``unresolved`` flags it instead.
    """
    task = db.session.get(Task, task_id)
    if task is None:
        raise NotFoundError(resource="Task", resource_id=task_id)

    instance = db.session.execute(
        select(WorkflowInstance)
        .where(WorkflowInstance.entity_type == "TASK", WorkflowInstance.entity_id == task.id)
        .order_by(WorkflowInstance.id.desc())
        .limit(1)
    ).scalar_one_or_none()
    if instance is None:
        raise NotFoundError(resource="WorkflowInstance", message=f"Task id={task_id} has no workflow")

    step = instance.current_step
    if step is None:
        return {
            "instance_id": instance.id,
            "instance_status": instance.status,
            "step": None,
            "approver": None,
            "users": [],
            "unresolved": False,
        }

    project = db.session.get(Project, task.project_id)
    candidates = load_candidates(step.approver, task, project)
    eligible = resolve_approvers(step.approver, task, project, candidates)
    users = sorted((u for u in candidates if u.id in eligible), key=lambda u: u.id)
    return {
        "instance_id": instance.id,
        "instance_status": instance.status,
        "step": {"id": step.id, "name": step.name, "position": step.position},
        "approver": step.approver.to_dict(),
        "users": [{"id": u.id, "full_name": u.full_name, "email": u.email, "role": u.role} for u in users],
        "unresolved": isinstance(step.approver, DynamicApprover) and not eligible,
    }
