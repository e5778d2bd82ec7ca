"""
Auth Models — companies and users.

Role is a single value per user (the console's role model); it drives both
ROLE-type workflow steps and the package stage gate.
"""

from datetime import datetime, timezone

from delivery.models import db


# ── Constants ────────────────────────────────────────────────────────────────

ROLES = frozenset({
    "SUPER_ADMIN",
    "VP",
    "PM",
    "ENGINEER",
    "PROJECT_MANAGER",
    "DEVELOPER",
    "VIEWER",
})

# Roles that may act on any workflow step or package stage.
OVERRIDE_ROLES = frozenset({"SUPER_ADMIN"})

ENGINEERING_ROLES = frozenset({"ENGINEER", "DEVELOPER"})

COMPANY_KINDS = frozenset({"CLIENT", "VENDOR"})


# ═══════════════════════════════════════════════════════════════
# 1. COMPANIES
# ═══════════════════════════════════════════════════════════════
class Company(db.Model):
    __tablename__ = "companies"

    id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(200), nullable=False)
    kind = db.Column(db.String(20), nullable=False, default="VENDOR", comment="CLIENT | VENDOR")
    created_at = db.Column(db.DateTime(timezone=True), default=lambda: datetime.now(timezone.utc))

    users = db.relationship("User", back_populates="company", lazy="dynamic")

    def to_dict(self):
        return {
            "id": self.id,
            "name": self.name,
            "kind": self.kind,
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }


# ═══════════════════════════════════════════════════════════════
# 2. USERS
# ═══════════════════════════════════════════════════════════════
class User(db.Model):
    __tablename__ = "users"

    id = db.Column(db.Integer, primary_key=True)
    email = db.Column(db.String(200), nullable=False, unique=True)
    full_name = db.Column(db.String(200))
    role = db.Column(db.String(30), nullable=False, default="VIEWER", index=True)
    company_id = db.Column(
        db.Integer, db.ForeignKey("companies.id", ondelete="SET NULL"), nullable=True, index=True,
    )
    is_active = db.Column(db.Boolean, nullable=False, default=True)
    created_at = db.Column(db.DateTime(timezone=True), default=lambda: datetime.now(timezone.utc))
    updated_at = db.Column(
        db.DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        onupdate=lambda: datetime.now(timezone.utc),
    )

    company = db.relationship("Company", back_populates="users")

    @property
    def is_super_admin(self) -> bool:
        return self.role in OVERRIDE_ROLES

    def to_dict(self):
        return {
            "id": self.id,
            "email": self.email,
            "full_name": self.full_name,
            "role": self.role,
            "company_id": self.company_id,
            "is_active": self.is_active,
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }

    def __repr__(self):
        return f"<User {self.id}: {self.email} ({self.role})>"
