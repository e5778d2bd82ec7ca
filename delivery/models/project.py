"""Project domain model — the fields the package stage gate and the task
workflow engine depend on."""

from datetime import datetime, timezone

from delivery.models import db


# ── Constants ────────────────────────────────────────────────────────────────

PROJECT_STATUSES = frozenset({
    "PROPOSED", "IN_PLANNING", "ACTIVE", "ON_HOLD", "COMPLETED", "CANCELLED",
})

PACKAGE_STATUSES = frozenset({
    "PM_DRAFT",
    "PJM_REVIEW",
    "ENG_REVIEW",   # legacy; resolved to the PJM stage
    "PM_ACTIVATE",
    "SENT_BACK",
    "ACTIVE",
})

PACKAGE_RETURN_TARGETS = frozenset({"PM", "PJM", "ENG"})


class Project(db.Model):
    """Delivery project owned by a Product Manager and delivered by a vendor."""

    __tablename__ = "projects"

    id = db.Column(db.Integer, primary_key=True)
    code = db.Column(db.String(50), nullable=False, unique=True)
    name = db.Column(db.String(200), nullable=False)
    description = db.Column(db.Text, nullable=True)
    status = db.Column(
        db.String(30), nullable=False, default="PROPOSED",
        comment="PROPOSED | IN_PLANNING | ACTIVE | ON_HOLD | COMPLETED | CANCELLED",
    )

    # ── Ownership (client side) ──
    owner_id = db.Column(
        db.Integer, db.ForeignKey("users.id", ondelete="SET NULL"), nullable=True, index=True,
        comment="Owning Product Manager",
    )
    owner_ids = db.Column(db.JSON, nullable=False, default=list, comment="Co-owning Product Managers")

    # ── Delivery (vendor side) ──
    delivery_manager_user_id = db.Column(
        db.Integer, db.ForeignKey("users.id", ondelete="SET NULL"), nullable=True, index=True,
        comment="Vendor-side delivery manager",
    )
    delivery_manager_user_ids = db.Column(db.JSON, nullable=False, default=list)
    vendor_company_ids = db.Column(db.JSON, nullable=False, default=list)

    task_workflow_definition_id = db.Column(
        db.Integer,
        db.ForeignKey("workflow_definitions.id", ondelete="SET NULL"),
        nullable=True,
        comment="Approval chain used for this project's tasks; falls back to the active TASK definition",
    )

    # ── Package staging ──
    is_draft = db.Column(db.Boolean, nullable=False, default=True)
    package_status = db.Column(
        db.String(20), nullable=False, default="PM_DRAFT",
        comment="PM_DRAFT | PJM_REVIEW | ENG_REVIEW | PM_ACTIVATE | SENT_BACK | ACTIVE",
    )
    package_sent_back_to = db.Column(
        db.String(10), nullable=True,
        comment="PM | PJM | ENG — only set while package_status = SENT_BACK",
    )
    package_sent_back_reason = db.Column(db.Text, nullable=True)

    # Compare-and-set guard for package transitions
    version = db.Column(db.Integer, nullable=False)

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

    tasks = db.relationship("Task", backref="project", lazy="dynamic", foreign_keys="Task.project_id")

    __mapper_args__ = {"version_id_col": version}

    # ── Relationship helpers ──

    def owner_user_ids(self) -> set[int]:
        ids = set(self.owner_ids or [])
        if self.owner_id:
            ids.add(self.owner_id)
        return ids

    def delivery_manager_ids(self) -> set[int]:
        ids = set(self.delivery_manager_user_ids or [])
        if self.delivery_manager_user_id:
            ids.add(self.delivery_manager_user_id)
        return ids

    def to_dict(self) -> dict:
        """Serialize core project fields for API responses."""
        return {
            "id": self.id,
            "code": self.code,
            "name": self.name,
            "description": self.description,
            "status": self.status,
            "owner_id": self.owner_id,
            "owner_ids": list(self.owner_ids or []),
            "delivery_manager_user_id": self.delivery_manager_user_id,
            "delivery_manager_user_ids": list(self.delivery_manager_user_ids or []),
            "vendor_company_ids": list(self.vendor_company_ids or []),
            "task_workflow_definition_id": self.task_workflow_definition_id,
            "is_draft": self.is_draft,
            "package_status": self.package_status,
            "package_sent_back_to": self.package_sent_back_to,
            "package_sent_back_reason": self.package_sent_back_reason,
            "created_at": self.created_at.isoformat() if self.created_at else None,
            "updated_at": self.updated_at.isoformat() if self.updated_at else None,
        }

    def __repr__(self) -> str:
        return f"<Project {self.id}: {self.code} [{self.package_status}]>"
