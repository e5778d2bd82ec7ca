"""Task domain model — the work item gated by the approval workflow."""

from datetime import datetime, timezone

from delivery.models import db


# ── Constants ────────────────────────────────────────────────────────────────

TASK_STATUSES = frozenset({"NEW", "PLANNED", "SELECTED", "IN_PROGRESS", "DONE"})

ESTIMATE_UNITS = ("HOURS", "DAYS")
ESTIMATE_CONFIDENCE_LEVELS = ("LOW", "MEDIUM", "HIGH")
ESTIMATION_STATUSES = ("NOT_SUBMITTED", "UNDER_REVIEW", "CHANGES_REQUESTED", "APPROVED", "REJECTED")

# terminal workflow status → estimation status
ESTIMATION_OUTCOMES = {
    "COMPLETED": "APPROVED",
    "REJECTED": "REJECTED",
    "CHANGES_REQUESTED": "CHANGES_REQUESTED",
}


class Task(db.Model):
    """Work item inside a project.

    ``assignment_plan`` is a JSON list of ``{"user_id": int, "hours": float}``
    entries; the first entry stands in for the assignee while the task has
    no ``assignee_user_id``.
    """

    __tablename__ = "tasks"

    id = db.Column(db.Integer, primary_key=True)
    project_id = db.Column(
        db.Integer, db.ForeignKey("projects.id", ondelete="CASCADE"), nullable=False, index=True,
    )
    title = db.Column(db.String(300), nullable=False)
    description = db.Column(db.Text, nullable=True)
    status = db.Column(
        db.String(30), nullable=False, default="NEW",
        comment="NEW | PLANNED | SELECTED | IN_PROGRESS | DONE",
    )
    created_by_id = db.Column(db.Integer, db.ForeignKey("users.id", ondelete="SET NULL"), nullable=True)
    assignee_user_id = db.Column(
        db.Integer, db.ForeignKey("users.id", ondelete="SET NULL"), nullable=True, index=True,
    )
    assignment_plan = db.Column(db.JSON, nullable=False, default=list)
    workflow_instance_id = db.Column(
        db.Integer,
        db.ForeignKey("workflow_instances.id", ondelete="SET NULL"),
        nullable=True,
        comment="Latest workflow instance bound to this task",
    )

    # Estimate under review; the workflow's outcome decides estimation_status
    estimation_status = db.Column(
        db.String(20), nullable=False, default="NOT_SUBMITTED",
        comment="NOT_SUBMITTED | UNDER_REVIEW | CHANGES_REQUESTED | APPROVED | REJECTED",
    )
    estimate_quantity = db.Column(db.Float, nullable=True)
    estimate_unit = db.Column(db.String(10), nullable=True, comment="HOURS | DAYS")
    estimate_confidence = db.Column(db.String(10), nullable=True, comment="LOW | MEDIUM | HIGH")
    estimate_notes = db.Column(db.Text, nullable=True)
    estimate_submitted_by_id = db.Column(
        db.Integer, db.ForeignKey("users.id", ondelete="SET NULL"), nullable=True,
    )
    estimate_submitted_at = db.Column(db.DateTime(timezone=True), nullable=True)
    estimate_updated_at = db.Column(db.DateTime(timezone=True), nullable=True)

    created_at = db.Column(
        db.DateTime(timezone=True),
        nullable=False,
        default=lambda: datetime.now(timezone.utc),
    )
    updated_at = db.Column(
        db.DateTime(timezone=True),
        nullable=False,
        default=lambda: datetime.now(timezone.utc),
        onupdate=lambda: datetime.now(timezone.utc),
    )

    def planned_assignee_id(self) -> int | None:
        """Current assignee, else the first user of the assignment plan."""
        if self.assignee_user_id:
            return self.assignee_user_id
        for entry in self.assignment_plan or []:
            user_id = entry.get("user_id") if isinstance(entry, dict) else None
            if user_id:
                return int(user_id)
        return None

    def estimation_dict(self) -> dict | None:
        if self.estimation_status == "NOT_SUBMITTED":
            return None
        return {
            "status": self.estimation_status,
            "quantity": self.estimate_quantity,
            "unit": self.estimate_unit,
            "confidence": self.estimate_confidence,
            "notes": self.estimate_notes,
            "submitted_by_id": self.estimate_submitted_by_id,
            "submitted_at": self.estimate_submitted_at.isoformat() if self.estimate_submitted_at else None,
            "updated_at": self.estimate_updated_at.isoformat() if self.estimate_updated_at else None,
        }

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "project_id": self.project_id,
            "title": self.title,
            "description": self.description,
            "status": self.status,
            "created_by_id": self.created_by_id,
            "assignee_user_id": self.assignee_user_id,
            "assignment_plan": list(self.assignment_plan or []),
            "workflow_instance_id": self.workflow_instance_id,
            "estimation": self.estimation_dict(),
            "created_at": self.created_at.isoformat() if self.created_at else None,
            "updated_at": self.updated_at.isoformat() if self.updated_at else None,
        }

    def __repr__(self) -> str:
        return f"<Task {self.id}: {self.title[:30]}>"
