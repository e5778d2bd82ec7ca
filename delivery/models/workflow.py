"""
Workflow & Approval Engine — definitions, instances and the action log.

Models:
    - WorkflowDefinition: admin-authored template (ordered steps).
    - WorkflowStepDefinition: one step of a template.
    - WorkflowInstance: a definition bound to one entity, with its own copy
      of the steps and a version guard for concurrent actions.
    - WorkflowStepInstance: immutable snapshot of a definition step plus
      runtime status.
    - WorkflowAction: append-only log, one row per accepted action.

Approver value objects:
    A step is approved either by a fixed role (``RoleApprover``) or by a
    rule evaluated against the task/project graph (``DynamicApprover``).
    The two persisted columns ``approver_role`` / ``dynamic_approver_type``
    are only ever written through ``step.approver = ...`` so exactly one of
    them is set; a CHECK constraint guards the table as well.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone

from delivery.core.exceptions import ConflictError
from delivery.models import db
from delivery.models.auth import ROLES

# ── Constants ────────────────────────────────────────────────────────────────

WORKFLOW_ENTITY_TYPES = frozenset({"TASK"})

WORKFLOW_ACTIONS = ("APPROVE", "REJECT", "SEND_BACK", "REQUEST_CHANGE")

APPROVER_TYPES = frozenset({"ROLE", "DYNAMIC"})

DYNAMIC_APPROVER_RULES = frozenset({
    "ENGINEERING_TEAM",
    "TASK_PROJECT_MANAGER",
    "TASK_PM",
    "TASK_ASSIGNED_DEVELOPER",
})

STEP_STATUSES = frozenset({
    "PENDING", "ACTIVE", "APPROVED", "REJECTED", "CHANGES_REQUESTED", "SENT_BACK",
})
STEP_OPEN_STATUSES = frozenset({"PENDING", "ACTIVE"})

INSTANCE_STATUSES = frozenset({
    "NOT_STARTED", "IN_PROGRESS", "COMPLETED", "REJECTED", "CHANGES_REQUESTED",
})
INSTANCE_TERMINAL_STATUSES = frozenset({"COMPLETED", "REJECTED", "CHANGES_REQUESTED"})


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


# ── Approver value objects ───────────────────────────────────────────────────


@dataclass(frozen=True)
class RoleApprover:
    """Any user holding ``role`` may act on the step."""

    role: str
    approver_type = "ROLE"

    def __post_init__(self):
        if self.role not in ROLES:
            raise ValueError(f"Unknown approver role: {self.role!r}")

    def to_dict(self) -> dict:
        return {"approver_type": "ROLE", "approver_role": self.role, "dynamic_approver_type": None}


@dataclass(frozen=True)
class DynamicApprover:
    """The approver set is computed from the entity graph by ``rule``."""

    rule: str
    approver_type = "DYNAMIC"

    def __post_init__(self):
        if self.rule not in DYNAMIC_APPROVER_RULES:
            raise ValueError(f"Unknown dynamic approver rule: {self.rule!r}")

    def to_dict(self) -> dict:
        return {"approver_type": "DYNAMIC", "approver_role": None, "dynamic_approver_type": self.rule}


Approver = RoleApprover | DynamicApprover


class _StepShapeMixin:
    """Columns shared by a step definition and its per-instance snapshot."""

    name = db.Column(db.String(200), nullable=False)
    approver_type = db.Column(db.String(10), nullable=False, comment="ROLE | DYNAMIC")
    approver_role = db.Column(db.String(30), nullable=True)
    dynamic_approver_type = db.Column(db.String(40), nullable=True)
    requires_comment_on_reject = db.Column(db.Boolean, nullable=False, default=False)
    requires_comment_on_send_back = db.Column(db.Boolean, nullable=False, default=False)
    actions = db.Column(db.JSON, nullable=False, default=lambda: list(WORKFLOW_ACTIONS))

    @property
    def approver(self) -> Approver:
        """Raises ConflictError when the stored role/rule is no longer known."""
        try:
            if self.approver_type == "ROLE":
                return RoleApprover(self.approver_role)
            return DynamicApprover(self.dynamic_approver_type)
        except ValueError as exc:
            raise ConflictError(
                f"Step '{self.name}' has an approver that is no longer supported: {exc}",
                details={
                    "approver_type": self.approver_type,
                    "approver_role": self.approver_role,
                    "dynamic_approver_type": self.dynamic_approver_type,
                },
            ) from exc

    @approver.setter
    def approver(self, value: Approver) -> None:
        if isinstance(value, RoleApprover):
            self.approver_type = "ROLE"
            self.approver_role = value.role
            self.dynamic_approver_type = None
        elif isinstance(value, DynamicApprover):
            self.approver_type = "DYNAMIC"
            self.approver_role = None
            self.dynamic_approver_type = value.rule
        else:
            raise TypeError(f"Expected RoleApprover or DynamicApprover, got {type(value).__name__}")

    def permits(self, action: str) -> bool:
        return action in (self.actions or [])


_APPROVER_CHECK = (
    "(approver_type = 'ROLE' AND approver_role IS NOT NULL AND dynamic_approver_type IS NULL) OR "
    "(approver_type = 'DYNAMIC' AND dynamic_approver_type IS NOT NULL AND approver_role IS NULL)"
)


# ═════════════════════════════════════════════════════════════════════════════
# DEFINITIONS
# ═════════════════════════════════════════════════════════════════════════════


class WorkflowDefinition(db.Model):
    """Reusable approval chain for one entity type.

    At most one definition per entity type is active; activating one
    deactivates its siblings (enforced in the service layer). A definition
    that has ever been bound to an instance is retired, never hard-deleted.
    """

    __tablename__ = "workflow_definitions"

    id = db.Column(db.Integer, primary_key=True)
    entity_type = db.Column(db.String(20), nullable=False, default="TASK", index=True)
    name = db.Column(db.String(200), nullable=False)
    description = db.Column(db.Text, nullable=True)
    is_active = db.Column(db.Boolean, nullable=False, default=True)
    retired_at = db.Column(db.DateTime(timezone=True), nullable=True)
    created_by_id = db.Column(db.Integer, db.ForeignKey("users.id", ondelete="SET NULL"), nullable=True)
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, default=_utcnow)
    updated_at = db.Column(db.DateTime(timezone=True), nullable=False, default=_utcnow, onupdate=_utcnow)

    steps = db.relationship(
        "WorkflowStepDefinition",
        back_populates="definition",
        order_by="WorkflowStepDefinition.order",
        cascade="all, delete-orphan",
    )

    def to_dict(self, include_steps: bool = True) -> dict:
        d = {
            "id": self.id,
            "entity_type": self.entity_type,
            "name": self.name,
            "description": self.description,
            "is_active": self.is_active,
            "retired_at": self.retired_at.isoformat() if self.retired_at else None,
            "created_by_id": self.created_by_id,
            "created_at": self.created_at.isoformat() if self.created_at else None,
            "updated_at": self.updated_at.isoformat() if self.updated_at else None,
        }
        if include_steps:
            d["steps"] = [s.to_dict() for s in self.steps]
        return d

    def __repr__(self) -> str:
        return f"<WorkflowDefinition {self.id}: {self.name} ({self.entity_type})>"


class WorkflowStepDefinition(_StepShapeMixin, db.Model):
    __tablename__ = "workflow_step_definitions"
    __table_args__ = (
        db.UniqueConstraint("definition_id", "order", name="uq_workflow_step_order"),
        db.CheckConstraint(_APPROVER_CHECK, name="ck_workflow_step_def_approver"),
    )

    id = db.Column(db.Integer, primary_key=True)
    definition_id = db.Column(
        db.Integer, db.ForeignKey("workflow_definitions.id", ondelete="CASCADE"), nullable=False, index=True,
    )
    order = db.Column(db.Integer, nullable=False, comment="1-based traversal order")
    description = db.Column(db.Text, nullable=True)

    definition = db.relationship("WorkflowDefinition", back_populates="steps")

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "definition_id": self.definition_id,
            "name": self.name,
            "description": self.description,
            "order": self.order,
            "approver_type": self.approver_type,
            "approver_role": self.approver_role,
            "dynamic_approver_type": self.dynamic_approver_type,
            "requires_comment_on_reject": self.requires_comment_on_reject,
            "requires_comment_on_send_back": self.requires_comment_on_send_back,
            "actions": list(self.actions or []),
        }


# ═════════════════════════════════════════════════════════════════════════════
# INSTANCES
# ═════════════════════════════════════════════════════════════════════════════


class WorkflowInstance(db.Model):
    """A definition bound to one entity.

    ``definition_id`` is kept for traceability only — behaviour comes from
    the step snapshots taken at start. ``version`` is the mapper version
    column: every flush of a changed instance is a compare-and-set, so two
    requests that both read the same ACTIVE step cannot both commit.
    """

    __tablename__ = "workflow_instances"
    __table_args__ = (
        db.Index("ix_workflow_instance_entity", "entity_type", "entity_id"),
        # at most one live instance per entity
        db.Index(
            "uq_workflow_instance_live_entity", "entity_type", "entity_id",
            unique=True,
            sqlite_where=db.text("status = 'IN_PROGRESS'"),
            postgresql_where=db.text("status = 'IN_PROGRESS'"),
        ),
    )

    id = db.Column(db.Integer, primary_key=True)
    definition_id = db.Column(db.Integer, nullable=False, index=True, comment="workflow_definitions.id (reference only)")
    entity_type = db.Column(db.String(20), nullable=False, default="TASK")
    entity_id = db.Column(db.Integer, nullable=False)
    status = db.Column(
        db.String(20), nullable=False, default="NOT_STARTED",
        comment="NOT_STARTED | IN_PROGRESS | COMPLETED | REJECTED | CHANGES_REQUESTED",
    )
    current_step_id = db.Column(db.Integer, nullable=True, comment="workflow_step_instances.id of the ACTIVE step")
    started_by_id = db.Column(db.Integer, db.ForeignKey("users.id", ondelete="SET NULL"), nullable=True)
    version = db.Column(db.Integer, nullable=False)
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, default=_utcnow)
    updated_at = db.Column(db.DateTime(timezone=True), nullable=False, default=_utcnow, onupdate=_utcnow)

    steps = db.relationship(
        "WorkflowStepInstance",
        back_populates="instance",
        order_by="WorkflowStepInstance.position",
        cascade="all, delete-orphan",
    )
    actions = db.relationship(
        "WorkflowAction",
        back_populates="instance",
        order_by="WorkflowAction.id",
        lazy="dynamic",
    )

    __mapper_args__ = {"version_id_col": version}

    @property
    def current_step(self) -> WorkflowStepInstance | None:
        for step in self.steps:
            if step.id == self.current_step_id:
                return step
        return None

    @property
    def is_terminal(self) -> bool:
        return self.status in INSTANCE_TERMINAL_STATUSES

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "definition_id": self.definition_id,
            "entity_type": self.entity_type,
            "entity_id": self.entity_id,
            "status": self.status,
            "current_step_id": self.current_step_id,
            "started_by_id": self.started_by_id,
            "version": self.version,
            "steps": [s.to_dict() for s in self.steps],
            "created_at": self.created_at.isoformat() if self.created_at else None,
            "updated_at": self.updated_at.isoformat() if self.updated_at else None,
        }

    def __repr__(self) -> str:
        return f"<WorkflowInstance {self.id}: {self.entity_type}/{self.entity_id} {self.status}>"


class WorkflowStepInstance(_StepShapeMixin, db.Model):
    __tablename__ = "workflow_step_instances"
    __table_args__ = (
        db.UniqueConstraint("instance_id", "position", name="uq_workflow_step_instance_position"),
        db.CheckConstraint(_APPROVER_CHECK, name="ck_workflow_step_inst_approver"),
    )

    id = db.Column(db.Integer, primary_key=True)
    instance_id = db.Column(
        db.Integer, db.ForeignKey("workflow_instances.id", ondelete="CASCADE"), nullable=False, index=True,
    )
    position = db.Column(db.Integer, nullable=False, comment="0-based order within the instance")
    step_definition_id = db.Column(db.Integer, nullable=True, comment="Source step (traceability only)")

    # Runtime
    status = db.Column(db.String(20), nullable=False, default="PENDING")
    acted_by_id = db.Column(db.Integer, db.ForeignKey("users.id", ondelete="SET NULL"), nullable=True)
    acted_at = db.Column(db.DateTime(timezone=True), nullable=True)
    action = db.Column(db.String(20), nullable=True)
    comment = db.Column(db.Text, nullable=True)

    instance = db.relationship("WorkflowInstance", back_populates="steps")

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "position": self.position,
            "step_definition_id": self.step_definition_id,
            "name": self.name,
            "approver_type": self.approver_type,
            "approver_role": self.approver_role,
            "dynamic_approver_type": self.dynamic_approver_type,
            "requires_comment_on_reject": self.requires_comment_on_reject,
            "requires_comment_on_send_back": self.requires_comment_on_send_back,
            "actions": list(self.actions or []),
            "status": self.status,
            "acted_by_id": self.acted_by_id,
            "acted_at": self.acted_at.isoformat() if self.acted_at else None,
            "action": self.action,
            "comment": self.comment,
        }


# ═════════════════════════════════════════════════════════════════════════════
# ACTION LOG
# ═════════════════════════════════════════════════════════════════════════════


class WorkflowAction(db.Model):
    """Append-only record of one accepted action. Never updated or deleted."""

    __tablename__ = "workflow_actions"

    id = db.Column(db.Integer, primary_key=True)
    instance_id = db.Column(
        db.Integer, db.ForeignKey("workflow_instances.id", ondelete="CASCADE"), nullable=False, index=True,
    )
    step_instance_id = db.Column(
        db.Integer, db.ForeignKey("workflow_step_instances.id", ondelete="CASCADE"), nullable=False,
    )
    actor_id = db.Column(db.Integer, db.ForeignKey("users.id", ondelete="SET NULL"), nullable=True, index=True)
    action = db.Column(db.String(20), nullable=False)
    comment = db.Column(db.Text, nullable=True)
    action_metadata = db.Column("metadata", db.JSON, nullable=False, default=dict)
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, default=_utcnow)

    instance = db.relationship("WorkflowInstance", back_populates="actions")

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "instance_id": self.instance_id,
            "step_instance_id": self.step_instance_id,
            "actor_id": self.actor_id,
            "action": self.action,
            "comment": self.comment,
            "metadata": self.action_metadata or {},
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }

    def __repr__(self) -> str:
        return f"<WorkflowAction {self.id}: {self.action} on instance {self.instance_id}>"
