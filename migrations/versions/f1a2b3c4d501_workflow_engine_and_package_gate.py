"""workflow_engine_and_package_gate

Create the delivery console schema: companies, users, projects (with the
package staging columns), tasks, workflow definitions / instances / actions,
audit logs and notifications.

Revision ID: f1a2b3c4d501
Revises:
Create Date: 2026-10-18 09:00:00.000000
"""

from alembic import op
import sqlalchemy as sa
from sqlalchemy import inspect as sa_inspect


# revision identifiers, used by Alembic.
revision = "f1a2b3c4d501"
down_revision = None
branch_labels = None
depends_on = None


_APPROVER_CHECK = (
    "(approver_type = 'ROLE' AND approver_role IS NOT NULL AND dynamic_approver_type IS NULL) OR "
    "(approver_type = 'DYNAMIC' AND dynamic_approver_type IS NOT NULL AND approver_role IS NULL)"
)


def _step_shape_columns():
    return [
        sa.Column("name", sa.String(length=200), nullable=False),
        sa.Column("approver_type", sa.String(length=10), nullable=False),
        sa.Column("approver_role", sa.String(length=30), nullable=True),
        sa.Column("dynamic_approver_type", sa.String(length=40), nullable=True),
        sa.Column("requires_comment_on_reject", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("requires_comment_on_send_back", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("actions", sa.JSON(), nullable=False),
    ]


def upgrade():
    bind = op.get_bind()
    inspector = sa_inspect(bind)
    existing_tables = set(inspector.get_table_names())

    if "companies" not in existing_tables:
        op.create_table(
            "companies",
            sa.Column("id", sa.Integer(), nullable=False),
            sa.Column("name", sa.String(length=200), nullable=False),
            sa.Column("kind", sa.String(length=20), nullable=False, server_default="VENDOR"),
            sa.Column("created_at", sa.DateTime(timezone=True), nullable=True),
            sa.PrimaryKeyConstraint("id"),
        )

    if "users" not in existing_tables:
        op.create_table(
            "users",
            sa.Column("id", sa.Integer(), nullable=False),
            sa.Column("email", sa.String(length=200), nullable=False),
            sa.Column("full_name", sa.String(length=200), nullable=True),
            sa.Column("role", sa.String(length=30), nullable=False, server_default="VIEWER"),
            sa.Column("company_id", sa.Integer(), nullable=True),
            sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
            sa.Column("created_at", sa.DateTime(timezone=True), nullable=True),
            sa.Column("updated_at", sa.DateTime(timezone=True), nullable=True),
            sa.ForeignKeyConstraint(["company_id"], ["companies.id"], ondelete="SET NULL"),
            sa.PrimaryKeyConstraint("id"),
            sa.UniqueConstraint("email"),
        )
        op.create_index("ix_users_role", "users", ["role"])
        op.create_index("ix_users_company_id", "users", ["company_id"])

    if "workflow_definitions" not in existing_tables:
        op.create_table(
            "workflow_definitions",
            sa.Column("id", sa.Integer(), nullable=False),
            sa.Column("entity_type", sa.String(length=20), nullable=False, server_default="TASK"),
            sa.Column("name", sa.String(length=200), nullable=False),
            sa.Column("description", sa.Text(), nullable=True),
            sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
            sa.Column("retired_at", sa.DateTime(timezone=True), nullable=True),
            sa.Column("created_by_id", sa.Integer(), nullable=True),
            sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
            sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
            sa.ForeignKeyConstraint(["created_by_id"], ["users.id"], ondelete="SET NULL"),
            sa.PrimaryKeyConstraint("id"),
        )
        op.create_index("ix_workflow_definitions_entity_type", "workflow_definitions", ["entity_type"])

    if "workflow_step_definitions" not in existing_tables:
        op.create_table(
            "workflow_step_definitions",
            sa.Column("id", sa.Integer(), nullable=False),
            sa.Column("definition_id", sa.Integer(), nullable=False),
            sa.Column("order", sa.Integer(), nullable=False),
            sa.Column("description", sa.Text(), nullable=True),
            *_step_shape_columns(),
            sa.ForeignKeyConstraint(["definition_id"], ["workflow_definitions.id"], ondelete="CASCADE"),
            sa.PrimaryKeyConstraint("id"),
            sa.UniqueConstraint("definition_id", "order", name="uq_workflow_step_order"),
            sa.CheckConstraint(_APPROVER_CHECK, name="ck_workflow_step_def_approver"),
        )
        op.create_index(
            "ix_workflow_step_definitions_definition_id", "workflow_step_definitions", ["definition_id"],
        )

    if "workflow_instances" not in existing_tables:
        op.create_table(
            "workflow_instances",
            sa.Column("id", sa.Integer(), nullable=False),
            sa.Column("definition_id", sa.Integer(), nullable=False),
            sa.Column("entity_type", sa.String(length=20), nullable=False, server_default="TASK"),
            sa.Column("entity_id", sa.Integer(), nullable=False),
            sa.Column("status", sa.String(length=20), nullable=False, server_default="NOT_STARTED"),
            sa.Column("current_step_id", sa.Integer(), nullable=True),
            sa.Column("started_by_id", sa.Integer(), nullable=True),
            sa.Column("version", sa.Integer(), nullable=False),
            sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
            sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
            sa.ForeignKeyConstraint(["started_by_id"], ["users.id"], ondelete="SET NULL"),
            sa.PrimaryKeyConstraint("id"),
        )
        op.create_index("ix_workflow_instances_definition_id", "workflow_instances", ["definition_id"])
        op.create_index("ix_workflow_instance_entity", "workflow_instances", ["entity_type", "entity_id"])
        op.create_index(
            "uq_workflow_instance_live_entity", "workflow_instances", ["entity_type", "entity_id"],
            unique=True,
            sqlite_where=sa.text("status = 'IN_PROGRESS'"),
            postgresql_where=sa.text("status = 'IN_PROGRESS'"),
        )

    if "workflow_step_instances" not in existing_tables:
        op.create_table(
            "workflow_step_instances",
            sa.Column("id", sa.Integer(), nullable=False),
            sa.Column("instance_id", sa.Integer(), nullable=False),
            sa.Column("position", sa.Integer(), nullable=False),
            sa.Column("step_definition_id", sa.Integer(), nullable=True),
            *_step_shape_columns(),
            sa.Column("status", sa.String(length=20), nullable=False, server_default="PENDING"),
            sa.Column("acted_by_id", sa.Integer(), nullable=True),
            sa.Column("acted_at", sa.DateTime(timezone=True), nullable=True),
            sa.Column("action", sa.String(length=20), nullable=True),
            sa.Column("comment", sa.Text(), nullable=True),
            sa.ForeignKeyConstraint(["instance_id"], ["workflow_instances.id"], ondelete="CASCADE"),
            sa.ForeignKeyConstraint(["acted_by_id"], ["users.id"], ondelete="SET NULL"),
            sa.PrimaryKeyConstraint("id"),
            sa.UniqueConstraint("instance_id", "position", name="uq_workflow_step_instance_position"),
            sa.CheckConstraint(_APPROVER_CHECK, name="ck_workflow_step_inst_approver"),
        )
        op.create_index("ix_workflow_step_instances_instance_id", "workflow_step_instances", ["instance_id"])

    if "workflow_actions" not in existing_tables:
        op.create_table(
            "workflow_actions",
            sa.Column("id", sa.Integer(), nullable=False),
            sa.Column("instance_id", sa.Integer(), nullable=False),
            sa.Column("step_instance_id", sa.Integer(), nullable=False),
            sa.Column("actor_id", sa.Integer(), nullable=True),
            sa.Column("action", sa.String(length=20), nullable=False),
            sa.Column("comment", sa.Text(), nullable=True),
            sa.Column("metadata", sa.JSON(), nullable=False),
            sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
            sa.ForeignKeyConstraint(["instance_id"], ["workflow_instances.id"], ondelete="CASCADE"),
            sa.ForeignKeyConstraint(["step_instance_id"], ["workflow_step_instances.id"], ondelete="CASCADE"),
            sa.ForeignKeyConstraint(["actor_id"], ["users.id"], ondelete="SET NULL"),
            sa.PrimaryKeyConstraint("id"),
        )
        op.create_index("ix_workflow_actions_instance_id", "workflow_actions", ["instance_id"])
        op.create_index("ix_workflow_actions_actor_id", "workflow_actions", ["actor_id"])

    if "projects" not in existing_tables:
        op.create_table(
            "projects",
            sa.Column("id", sa.Integer(), nullable=False),
            sa.Column("code", sa.String(length=50), nullable=False),
            sa.Column("name", sa.String(length=200), nullable=False),
            sa.Column("description", sa.Text(), nullable=True),
            sa.Column("status", sa.String(length=30), nullable=False, server_default="PROPOSED"),
            sa.Column("owner_id", sa.Integer(), nullable=True),
            sa.Column("owner_ids", sa.JSON(), nullable=False),
            sa.Column("delivery_manager_user_id", sa.Integer(), nullable=True),
            sa.Column("delivery_manager_user_ids", sa.JSON(), nullable=False),
            sa.Column("vendor_company_ids", sa.JSON(), nullable=False),
            sa.Column("task_workflow_definition_id", sa.Integer(), nullable=True),
            sa.Column("is_draft", sa.Boolean(), nullable=False, server_default=sa.true()),
            sa.Column("package_status", sa.String(length=20), nullable=False, server_default="PM_DRAFT"),
            sa.Column("package_sent_back_to", sa.String(length=10), nullable=True),
            sa.Column("package_sent_back_reason", sa.Text(), nullable=True),
            sa.Column("version", sa.Integer(), nullable=False),
            sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
            sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
            sa.ForeignKeyConstraint(["owner_id"], ["users.id"], ondelete="SET NULL"),
            sa.ForeignKeyConstraint(["delivery_manager_user_id"], ["users.id"], ondelete="SET NULL"),
            sa.ForeignKeyConstraint(
                ["task_workflow_definition_id"], ["workflow_definitions.id"], ondelete="SET NULL",
            ),
            sa.PrimaryKeyConstraint("id"),
            sa.UniqueConstraint("code"),
        )
        op.create_index("ix_projects_owner_id", "projects", ["owner_id"])
        op.create_index("ix_projects_delivery_manager_user_id", "projects", ["delivery_manager_user_id"])

    if "tasks" not in existing_tables:
        op.create_table(
            "tasks",
            sa.Column("id", sa.Integer(), nullable=False),
            sa.Column("project_id", sa.Integer(), nullable=False),
            sa.Column("title", sa.String(length=300), nullable=False),
            sa.Column("description", sa.Text(), nullable=True),
            sa.Column("status", sa.String(length=30), nullable=False, server_default="NEW"),
            sa.Column("created_by_id", sa.Integer(), nullable=True),
            sa.Column("assignee_user_id", sa.Integer(), nullable=True),
            sa.Column("assignment_plan", sa.JSON(), nullable=False),
            sa.Column("workflow_instance_id", sa.Integer(), nullable=True),
            sa.Column("estimation_status", sa.String(length=20), nullable=False, server_default="NOT_SUBMITTED"),
            sa.Column("estimate_quantity", sa.Float(), nullable=True),
            sa.Column("estimate_unit", sa.String(length=10), nullable=True),
            sa.Column("estimate_confidence", sa.String(length=10), nullable=True),
            sa.Column("estimate_notes", sa.Text(), nullable=True),
            sa.Column("estimate_submitted_by_id", sa.Integer(), nullable=True),
            sa.Column("estimate_submitted_at", sa.DateTime(timezone=True), nullable=True),
            sa.Column("estimate_updated_at", sa.DateTime(timezone=True), nullable=True),
            sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
            sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
            sa.ForeignKeyConstraint(["project_id"], ["projects.id"], ondelete="CASCADE"),
            sa.ForeignKeyConstraint(["created_by_id"], ["users.id"], ondelete="SET NULL"),
            sa.ForeignKeyConstraint(["assignee_user_id"], ["users.id"], ondelete="SET NULL"),
            sa.ForeignKeyConstraint(["estimate_submitted_by_id"], ["users.id"], ondelete="SET NULL"),
            sa.ForeignKeyConstraint(["workflow_instance_id"], ["workflow_instances.id"], ondelete="SET NULL"),
            sa.PrimaryKeyConstraint("id"),
        )
        op.create_index("ix_tasks_project_id", "tasks", ["project_id"])
        op.create_index("ix_tasks_assignee_user_id", "tasks", ["assignee_user_id"])

    if "audit_logs" not in existing_tables:
        op.create_table(
            "audit_logs",
            sa.Column("id", sa.Integer(), nullable=False),
            sa.Column("project_id", sa.Integer(), nullable=True),
            sa.Column("entity_type", sa.String(length=30), nullable=False),
            sa.Column("entity_id", sa.String(length=36), nullable=False),
            sa.Column("action", sa.String(length=60), nullable=False),
            sa.Column("actor_user_id", sa.Integer(), nullable=True),
            sa.Column("diff_json", sa.Text(), nullable=True),
            sa.Column("timestamp", sa.DateTime(timezone=True), nullable=False),
            sa.ForeignKeyConstraint(["project_id"], ["projects.id"], ondelete="SET NULL"),
            sa.ForeignKeyConstraint(["actor_user_id"], ["users.id"], ondelete="SET NULL"),
            sa.PrimaryKeyConstraint("id"),
        )
        op.create_index("idx_audit_entity", "audit_logs", ["entity_type", "entity_id"])
        op.create_index("idx_audit_action", "audit_logs", ["action"])
        op.create_index("idx_audit_ts", "audit_logs", ["timestamp"])
        op.create_index("ix_audit_logs_project_id", "audit_logs", ["project_id"])
        op.create_index("ix_audit_logs_actor_user_id", "audit_logs", ["actor_user_id"])

    if "notifications" not in existing_tables:
        op.create_table(
            "notifications",
            sa.Column("id", sa.Integer(), nullable=False),
            sa.Column("recipient_user_id", sa.Integer(), nullable=False),
            sa.Column("title", sa.String(length=300), nullable=False),
            sa.Column("message", sa.Text(), nullable=True),
            sa.Column("category", sa.String(length=40), nullable=True),
            sa.Column("severity", sa.String(length=20), nullable=True),
            sa.Column("entity_type", sa.String(length=30), nullable=True),
            sa.Column("entity_id", sa.Integer(), nullable=True),
            sa.Column("is_read", sa.Boolean(), nullable=True, server_default=sa.false()),
            sa.Column("read_at", sa.DateTime(timezone=True), nullable=True),
            sa.Column("created_at", sa.DateTime(timezone=True), nullable=True),
            sa.ForeignKeyConstraint(["recipient_user_id"], ["users.id"], ondelete="CASCADE"),
            sa.PrimaryKeyConstraint("id"),
        )
        op.create_index("ix_notifications_recipient_user_id", "notifications", ["recipient_user_id"])


def downgrade():
    bind = op.get_bind()
    inspector = sa_inspect(bind)
    existing_tables = set(inspector.get_table_names())

    for table in (
        "notifications",
        "audit_logs",
        "tasks",
        "projects",
        "workflow_actions",
        "workflow_step_instances",
        "workflow_instances",
        "workflow_step_definitions",
        "workflow_definitions",
        "users",
        "companies",
    ):
        if table in existing_tables:
            op.drop_table(table)
