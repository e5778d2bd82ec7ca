"""
Audit domain model.

Models:
    - AuditLog: immutable, append-only activity trail for workflow and
      package transitions.
"""

import json
from datetime import datetime, timezone

from delivery.models import db

# ── Constants ────────────────────────────────────────────────────────────────

AUDIT_ENTITY_TYPES = {"task", "project", "workflow_definition", "workflow_instance"}

AUDIT_ACTIONS = {
    # Task approval workflow
    "task.workflow_start",
    "task.workflow_approve",
    "task.workflow_reject",
    "task.workflow_send_back",
    "task.workflow_request_change",
    # Project package staging
    "project.package_submit",
    "project.package_accept",
    "project.package_activate",
    "project.package_send_back",
    # Definition admin
    "workflow_definition.create",
    "workflow_definition.update",
    "workflow_definition.retire",
    "workflow_definition.delete",
}


class AuditLog(db.Model):
    """
    Immutable audit trail for every accepted transition.

    One row per action.  ``diff_json`` carries the old→new snapshot of the
    fields the transition touched.
    """

    __tablename__ = "audit_logs"
    __table_args__ = (
        db.Index("idx_audit_entity", "entity_type", "entity_id"),
        db.Index("idx_audit_action", "action"),
        db.Index("idx_audit_ts", "timestamp"),
    )

    id = db.Column(db.Integer, primary_key=True)
    project_id = db.Column(
        db.Integer,
        db.ForeignKey("projects.id", ondelete="SET NULL"),
        nullable=True,
        index=True,
    )

    # Polymorphic entity reference
    entity_type = db.Column(
        db.String(30), nullable=False,
        comment="task | project | workflow_definition | …",
    )
    entity_id = db.Column(
        db.String(36), nullable=False,
        comment="PK of the referenced entity (int-as-string)",
    )

    action = db.Column(
        db.String(60), nullable=False,
        comment="task.workflow_approve | project.package_submit | …",
    )
    actor_user_id = db.Column(
        db.Integer,
        db.ForeignKey("users.id", ondelete="SET NULL"),
        nullable=True,
        index=True,
        comment="Null for system entries",
    )

    diff_json = db.Column(db.Text, default="{}", comment="JSON: {field: {old, new}} plus context keys")

    timestamp = db.Column(
        db.DateTime(timezone=True), nullable=False,
        default=lambda: datetime.now(timezone.utc),
    )

    @property
    def diff(self) -> dict:
        """Deserialise *diff_json* to a Python dict."""
        try:
            return json.loads(self.diff_json or "{}")
        except (json.JSONDecodeError, TypeError):
            return {}

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "project_id": self.project_id,
            "entity_type": self.entity_type,
            "entity_id": self.entity_id,
            "action": self.action,
            "actor_user_id": self.actor_user_id,
            "diff": self.diff,
            "timestamp": self.timestamp.isoformat() if self.timestamp else None,
        }

    def __repr__(self):
        return f"<AuditLog {self.id}: {self.action} on {self.entity_type}/{self.entity_id}>"


# ── Convenience writer ───────────────────────────────────────────────────────

def write_audit(
    *,
    entity_type: str,
    entity_id,
    action: str,
    actor_user_id: int | None = None,
    project_id: int | None = None,
    diff: dict | None = None,
) -> AuditLog:
    """
    Append a single audit row.  Uses ``flush`` so callers keep
    transaction control: a transition that later fails rolls its audit row
    back with it.

    Returns the (flushed) AuditLog instance.
    """
    log = AuditLog(
        project_id=project_id,
        entity_type=entity_type,
        entity_id=str(entity_id),
        action=action,
        actor_user_id=actor_user_id,
        diff_json=json.dumps(diff or {}, default=str),
    )
    db.session.add(log)
    db.session.flush()
    return log
