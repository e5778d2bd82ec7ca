"""
Project Package Stage Gate.

A fixed three-stage handoff that takes a newly created project from the
Product Manager's draft to an ACTIVE project. It lives on the Project row
itself and does not go through the generic workflow engine.

    PM        (PM_DRAFT)     roles {PM}               submit   → PJM_REVIEW
    PJM       (PJM_REVIEW)   roles {PROJECT_MANAGER}  accept   → PM_ACTIVATE
    PM_FINAL  (PM_ACTIVATE)  roles {PM}               activate → ACTIVE

``send_back`` parks the package in SENT_BACK with a return target; while
parked, the effective stage is the target's stage (ENG returns to the PJM
stage) and the forward flow resumes from there. SUPER_ADMIN may act at any
stage.

Every accepted call writes one AuditLog row and commits under the
project's ``version`` column; a refused call changes nothing.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass

from flask import current_app, has_app_context
from sqlalchemy import select
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
from delivery.models.project import PACKAGE_RETURN_TARGETS, Project
from delivery.models.task import Task
from delivery.services.notification import NotificationService

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class PackageStage:
    id: str
    status: str
    label: str
    description: str
    next: str
    roles: frozenset[str]


PACKAGE_STAGE_FLOW = (
    PackageStage("PM", "PM_DRAFT", "Product Manager Prep",
                 "Create tasks then start the project", "PJM_REVIEW", frozenset({"PM"})),
    PackageStage("PJM", "PJM_REVIEW", "Project Manager",
                 "Project manager completion", "PM_ACTIVATE", frozenset({"PROJECT_MANAGER"})),
    PackageStage("PM_FINAL", "PM_ACTIVATE", "Product Manager Approval",
                 "Final PM approval and activation", "ACTIVE", frozenset({"PM"})),
)

_STAGE_BY_ID = {s.id: s for s in PACKAGE_STAGE_FLOW}
_STAGE_BY_STATUS = {s.status: s for s in PACKAGE_STAGE_FLOW}
_STAGE_BY_STATUS["ENG_REVIEW"] = _STAGE_BY_ID["PJM"]
_STAGE_INDEX = {s.id: i for i, s in enumerate(PACKAGE_STAGE_FLOW)}

RETURN_TARGET_STAGES = {
    "PM": _STAGE_BY_ID["PM"],
    "PJM": _STAGE_BY_ID["PJM"],
    "ENG": _STAGE_BY_ID["PJM"],
}

PACKAGE_SUPERVISOR_ROLES = frozenset({"SUPER_ADMIN"})


def _config(key: str, default):
    if has_app_context():
        return current_app.config.get(key, default)
    return default


# ── Stage resolution ─────────────────────────────────────────────────────────


def resolve_active_stage(project: Project) -> PackageStage | None:
    """Effective stage of the package; None once ACTIVE."""
    status = project.package_status or "PM_DRAFT"
    if status == "ACTIVE":
        return None
    if status == "SENT_BACK":
        return RETURN_TARGET_STAGES.get(project.package_sent_back_to or "", PACKAGE_STAGE_FLOW[0])
    return _STAGE_BY_STATUS.get(status, PACKAGE_STAGE_FLOW[0])


def ensure_stage_access(actor: User, stage: PackageStage, project: Project) -> None:
    """Raise AuthorizationError unless ``actor`` may act on ``stage``."""
    if actor.role in PACKAGE_SUPERVISOR_ROLES:
        return
    if actor.role not in stage.roles:
        raise AuthorizationError(
            "You cannot act on this package stage.",
            details={"stage": stage.id, "required_roles": sorted(stage.roles)},
        )
    if stage.id in ("PM", "PM_FINAL") and actor.id not in project.owner_user_ids():
        raise AuthorizationError("Only the project owner can act on this stage.", details={"stage": stage.id})
    if stage.id == "PJM":
        is_assigned = actor.id in project.delivery_manager_ids()
        is_vendor = actor.company_id is not None and actor.company_id in (project.vendor_company_ids or [])
        if not (is_assigned or is_vendor):
            raise AuthorizationError(
                "Only the assigned project manager or a vendor colleague can act on this stage.",
                details={"stage": stage.id},
            )


def can_edit_package(actor: User, project: Project) -> bool:
    if actor.role in PACKAGE_SUPERVISOR_ROLES:
        return True
    stage = resolve_active_stage(project)
    if stage is None:
        return True
    try:
        ensure_stage_access(actor, stage, project)
    except AuthorizationError:
        return False
    return True


def package_badge(project: Project) -> str:
    status = project.package_status or "PM_DRAFT"
    if status == "SENT_BACK":
        target = RETURN_TARGET_STAGES.get(project.package_sent_back_to or "", PACKAGE_STAGE_FLOW[0])
        return f"Sent back to {target.label}"
    if status == "ACTIVE":
        return "Activated"
    stage = _STAGE_BY_STATUS.get(status)
    return stage.label if stage else "Unknown"


def package_timeline(project: Project) -> dict:
    """Per-stage progress for the review bar, plus the badge label."""
    stage = resolve_active_stage(project)
    status = project.package_status or "PM_DRAFT"
    current_index = PACKAGE_STAGE_FLOW.index(stage) if stage else len(PACKAGE_STAGE_FLOW)

    entries = []
    for index, entry in enumerate(PACKAGE_STAGE_FLOW):
        item = {"id": entry.id, "label": entry.label, "description": entry.description}
        if index < current_index:
            item["status"] = "done"
        elif index == current_index:
            item.update(status="active", is_current=True, is_sent_back=status == "SENT_BACK")
        else:
            item["status"] = "upcoming"
        entries.append(item)
    return {"stages": entries, "badge": package_badge(project)}


def package_summary(project: Project, actor: User) -> dict:
    stage = resolve_active_stage(project)
    return {
        "project_id": project.id,
        "package_status": project.package_status,
        "package_sent_back_to": project.package_sent_back_to,
        "package_sent_back_reason": project.package_sent_back_reason,
        "is_draft": project.is_draft,
        "stage": stage.id if stage else None,
        "can_edit": can_edit_package(actor, project),
        **package_timeline(project),
    }


# ── Transitions ──────────────────────────────────────────────────────────────


def _load_project(project_id: int) -> Project:
    project = db.session.execute(
        select(Project)
        .where(Project.id == project_id)
        .with_for_update()
        .execution_options(populate_existing=True)
    ).scalar_one_or_none()
    if project is None:
        raise NotFoundError(resource="Project", resource_id=project_id)
    return project


def _require_stage(project: Project, expected: str, operation: str) -> PackageStage:
    stage = resolve_active_stage(project)
    if stage is None or stage.id != expected:
        raise ConflictError(
            f"Cannot {operation} the package while it is {project.package_status}",
            current_status=project.package_status,
            details={"stage": stage.id if stage else None},
        )
    return stage


def _require_tasks(project: Project) -> None:
    if not _config("PACKAGE_REQUIRE_TASKS", True):
        return
    has_task = db.session.execute(select(Task.id).where(Task.project_id == project.id).limit(1)).first()
    if has_task is None:
        raise ValidationError(
            "Add at least one task before starting the project.",
            details={"tasks": "required"},
        )


def _set_status(project: Project, status: str, *, sent_back_to: str | None = None,
                reason: str | None = None) -> dict:
    diff = {"package_status": {"old": project.package_status, "new": status}}
    if project.package_sent_back_to != sent_back_to:
        diff["package_sent_back_to"] = {"old": project.package_sent_back_to, "new": sent_back_to}
    project.package_status = status
    project.package_sent_back_to = sent_back_to
    project.package_sent_back_reason = reason
    return diff


def _commit_transition(project_id: int, operation: str, actor: User, mutate) -> Project:
    """Run ``mutate(project)`` under the version guard, audit and commit."""
    try:
        project = _load_project(project_id)
        diff = mutate(project)
        db.session.flush()
        write_audit(
            entity_type="project",
            entity_id=project.id,
            action=f"project.package_{operation}",
            actor_user_id=actor.id,
            project_id=project.id,
            diff=diff,
        )
        db.session.commit()
    except StaleDataError as exc:
        db.session.rollback()
        logger.warning(
            "Concurrent package transition lost the race",
            extra={"project_id": project_id, "operation": operation, "actor_id": actor.id},
        )
        raise ConflictError("Project was changed by another request; reload and retry") from exc
    except DeliveryError as exc:
        db.session.rollback()
        logger.info(
            "Package %s refused: %s", operation, exc.message,
            extra={"project_id": project_id, "actor_id": actor.id},
        )
        raise

    logger.info(
        "Package %s applied",
        operation,
        extra={"project_id": project.id, "package_status": project.package_status, "actor_id": actor.id},
    )
    return project


def submit(project_id: int, actor: User) -> Project:
    """PM stage → PJM_REVIEW; notifies the delivery managers."""

    def mutate(project: Project) -> dict:
        stage = _require_stage(project, "PM", "submit")
        ensure_stage_access(actor, stage, project)
        _require_tasks(project)
        diff = _set_status(project, stage.next)
        project.is_draft = False
        NotificationService.broadcast(
            recipients=project.delivery_manager_ids(),
            title=f"New project assigned: {project.name}",
            message="The project package is ready for your review.",
            category="package_assigned",
            entity_type="project",
            entity_id=project.id,
            exclude=actor.id,
        )
        return diff

    return _commit_transition(project_id, "submit", actor, mutate)


def accept(project_id: int, actor: User) -> Project:
    """PJM stage → PM_ACTIVATE; notifies the owners."""

    def mutate(project: Project) -> dict:
        stage = _require_stage(project, "PJM", "accept")
        ensure_stage_access(actor, stage, project)
        diff = _set_status(project, stage.next)
        NotificationService.broadcast(
            recipients=project.owner_user_ids(),
            title=f"Project ready for activation: {project.name}",
            message="The project manager accepted the package.",
            category="package_assigned",
            entity_type="project",
            entity_id=project.id,
            exclude=actor.id,
        )
        return diff

    return _commit_transition(project_id, "accept", actor, mutate)


def activate(project_id: int, actor: User) -> Project:
    """PM_FINAL stage → ACTIVE; the project goes live and NEW tasks become PLANNED."""

    def mutate(project: Project) -> dict:
        stage = _require_stage(project, "PM_FINAL", "activate")
        ensure_stage_access(actor, stage, project)
        _require_tasks(project)
        diff = _set_status(project, stage.next)
        diff["status"] = {"old": project.status, "new": "ACTIVE"}
        project.status = "ACTIVE"
        project.is_draft = False
        promoted = db.session.execute(
            select(Task).where(Task.project_id == project.id, Task.status == "NEW")
        ).scalars().all()
        for task in promoted:
            task.status = "PLANNED"
        diff["tasks_planned"] = [t.id for t in promoted]
        NotificationService.broadcast(
            recipients=project.owner_user_ids() | project.delivery_manager_ids(),
            title=f"Project activated: {project.name}",
            category="package_activated",
            severity="success",
            entity_type="project",
            entity_id=project.id,
            exclude=actor.id,
        )
        return diff

    return _commit_transition(project_id, "activate", actor, mutate)


def send_back(project_id: int, actor: User, target_stage: str, reason: str) -> Project:
    """Park the package at ``target_stage`` (PM, PJM or ENG) with a reason."""
    target = (target_stage or "").strip().upper() if isinstance(target_stage, str) else ""
    text = (reason or "").strip() if isinstance(reason, str) else ""
    min_length = int(_config("PACKAGE_SEND_BACK_MIN_REASON", 3))

    def mutate(project: Project) -> dict:
        stage = resolve_active_stage(project)
        if stage is None:
            raise ConflictError("Project package is already active.", current_status=project.package_status)
        ensure_stage_access(actor, stage, project)
        if target not in PACKAGE_RETURN_TARGETS:
            raise ValidationError(
                f"targetStage must be one of: {', '.join(sorted(PACKAGE_RETURN_TARGETS))}",
                details={"target_stage": target_stage},
            )
        target_def = RETURN_TARGET_STAGES[target]
        # send-back only moves the package backwards (or re-opens the current stage)
        if _STAGE_INDEX[target_def.id] > _STAGE_INDEX[stage.id]:
            raise ValidationError(
                f"Cannot send the package forward from {stage.label} to {target_def.label}.",
                details={"target_stage": target, "current_stage": stage.id},
            )
        if len(text) < min_length:
            raise ValidationError(
                f"A reason of at least {min_length} characters is required to send the package back.",
                details={"reason": "too_short", "min_length": min_length},
            )
        diff = _set_status(project, "SENT_BACK", sent_back_to=target, reason=text)
        diff["reason"] = text
        if target == "PM":
            project.is_draft = True
        recipients = project.owner_user_ids() if target_def.id == "PM" else project.delivery_manager_ids()
        NotificationService.broadcast(
            recipients=recipients,
            title=f"Project sent back: {project.name}",
            message=text,
            category="package_sent_back",
            severity="warning",
            entity_type="project",
            entity_id=project.id,
            exclude=actor.id,
        )
        return diff

    return _commit_transition(project_id, "send_back", actor, mutate)


def get_package(project_id: int, actor: User) -> dict:
    project = db.session.get(Project, project_id)
    if project is None:
        raise NotFoundError(resource="Project", resource_id=project_id)
    return package_summary(project, actor)
