"""workflow_engine_tables

Creates the workflow engine schema:
  - tenants, users                     — caller identity for permission checks
  - workflow_templates                 — authored scripts (tenant_id NULL = global set)
  - workflow_nodes                     — diagram nodes
  - workflow_answer_options            — labelled edges inside one template
  - workflow_node_links                — hand-offs to another template
  - workflow_node_style_defaults       — per-type colour defaults
  - workflow_instances                 — runs of a template
  - workflow_instance_steps            — append-only run history
  - audit_logs                         — lifecycle audit trail

Tables created conditionally (IF NOT EXISTS semantics) to support idempotent
execution against databases that already received these tables via db.create_all()
in a development environment.

Revision ID: a1c3e5f7b901
Revises:
Create Date: 2026-10-16 09:12:44.318201
"""
from alembic import op
import sqlalchemy as sa
from sqlalchemy import inspect as sa_inspect


# revision identifiers, used by Alembic.
revision = 'a1c3e5f7b901'
down_revision = None
branch_labels = None
depends_on = None


def upgrade():
    bind = op.get_bind()
    inspector = sa_inspect(bind)
    existing = set(inspector.get_table_names())

    # ── Tenant / User ─────────────────────────────────────────────────────
    if "tenants" not in existing:
        op.create_table(
            "tenants",
            sa.Column("id", sa.Integer(), nullable=False),
            sa.Column("name", sa.String(length=200), nullable=False),
            sa.Column("slug", sa.String(length=100), nullable=False),
            sa.Column("is_active", sa.Boolean(), nullable=True),
            sa.Column("created_at", sa.DateTime(), nullable=True),
            sa.Column("updated_at", sa.DateTime(), nullable=True),
            sa.PrimaryKeyConstraint("id"),
            sa.UniqueConstraint("slug"),
        )

    if "users" not in existing:
        op.create_table(
            "users",
            sa.Column("id", sa.Integer(), nullable=False),
            sa.Column(
                "tenant_id", sa.Integer(), nullable=True,
                comment="NULL for platform-level superusers.",
            ),
            sa.Column("email", sa.String(length=200), nullable=False),
            sa.Column("full_name", sa.String(length=200), nullable=True),
            sa.Column(
                "role", sa.String(length=20), nullable=False, server_default="staff",
                comment="staff | admin",
            ),
            sa.Column("is_superuser", sa.Boolean(), nullable=False, server_default=sa.false()),
            sa.Column("status", sa.String(length=20), nullable=True, server_default="active"),
            sa.Column("created_at", sa.DateTime(), nullable=True),
            sa.ForeignKeyConstraint(["tenant_id"], ["tenants.id"], ondelete="CASCADE"),
            sa.PrimaryKeyConstraint("id"),
            sa.UniqueConstraint("tenant_id", "email", name="uq_user_tenant_email"),
        )
        op.create_index("ix_users_tenant_id", "users", ["tenant_id"])

    # ── WorkflowTemplate ──────────────────────────────────────────────────
    if "workflow_templates" not in existing:
        op.create_table(
            "workflow_templates",
            sa.Column("id", sa.Integer(), nullable=False),
            sa.Column(
                "tenant_id", sa.Integer(), nullable=True,
                comment="NULL = global default set",
            ),
            sa.Column("name", sa.String(length=200), nullable=False),
            sa.Column("description", sa.Text(), nullable=True),
            sa.Column("icon_key", sa.String(length=40), nullable=True),
            sa.Column("colour_hex", sa.String(length=9), nullable=True),
            sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
            sa.Column(
                "workflow_type", sa.String(length=20), nullable=False,
                server_default="SUPPORTING",
                comment="PRIMARY | SUPPORTING | MODULE",
            ),
            sa.Column(
                "approval_status", sa.String(length=30), nullable=False,
                server_default="DRAFT",
                comment="DRAFT | PENDING_REVIEW | APPROVED | CHANGES_REQUIRED",
            ),
            sa.Column("approved_by_id", sa.Integer(), nullable=True),
            sa.Column("approved_at", sa.DateTime(timezone=True), nullable=True),
            sa.Column(
                "review_note", sa.Text(), nullable=True,
                comment="Reviewer note stored by request_changes",
            ),
            sa.Column("last_edited_by_id", sa.Integer(), nullable=True),
            sa.Column("last_edited_at", sa.DateTime(timezone=True), nullable=True),
            sa.Column("source_template_id", sa.Integer(), nullable=True),
            sa.Column("override_of_id", sa.Integer(), nullable=True),
            sa.Column("version", sa.Integer(), nullable=False, server_default="1"),
            sa.Column("created_at", sa.DateTime(timezone=True), nullable=True),
            sa.Column("updated_at", sa.DateTime(timezone=True), nullable=True),
            sa.ForeignKeyConstraint(["tenant_id"], ["tenants.id"], ondelete="CASCADE"),
            sa.ForeignKeyConstraint(["approved_by_id"], ["users.id"], ondelete="SET NULL"),
            sa.ForeignKeyConstraint(["last_edited_by_id"], ["users.id"], ondelete="SET NULL"),
            sa.ForeignKeyConstraint(
                ["source_template_id"], ["workflow_templates.id"], ondelete="SET NULL",
            ),
            sa.ForeignKeyConstraint(
                ["override_of_id"], ["workflow_templates.id"], ondelete="SET NULL",
            ),
            sa.PrimaryKeyConstraint("id"),
            sa.UniqueConstraint("tenant_id", "name", name="uq_workflow_template_scope_name"),
            sa.UniqueConstraint("tenant_id", "override_of_id", name="uq_workflow_template_override"),
            sa.CheckConstraint(
                "approval_status IN ('DRAFT','PENDING_REVIEW','APPROVED','CHANGES_REQUIRED')",
                name="ck_workflow_template_approval_status",
            ),
        )
        op.create_index("ix_workflow_templates_tenant_id", "workflow_templates", ["tenant_id"])
        op.create_index(
            "ix_workflow_templates_source_template_id", "workflow_templates", ["source_template_id"],
        )

    # ── WorkflowNode ──────────────────────────────────────────────────────
    if "workflow_nodes" not in existing:
        op.create_table(
            "workflow_nodes",
            sa.Column("id", sa.Integer(), nullable=False),
            sa.Column("template_id", sa.Integer(), nullable=False),
            sa.Column(
                "node_type", sa.String(length=20), nullable=False,
                comment="INSTRUCTION | QUESTION | END | PANEL | REFERENCE",
            ),
            sa.Column("title", sa.String(length=300), nullable=False),
            sa.Column("body", sa.Text(), nullable=True),
            sa.Column("sort_order", sa.Integer(), nullable=False),
            sa.Column("is_start", sa.Boolean(), nullable=False, server_default=sa.false()),
            sa.Column("action_key", sa.String(length=40), nullable=True),
            sa.Column("position_x", sa.Integer(), nullable=True),
            sa.Column("position_y", sa.Integer(), nullable=True),
            sa.Column("style", sa.JSON(), nullable=True, comment="Per-node style override"),
            sa.Column("badges", sa.JSON(), nullable=False),
            sa.Column("created_at", sa.DateTime(timezone=True), nullable=True),
            sa.Column("updated_at", sa.DateTime(timezone=True), nullable=True),
            sa.ForeignKeyConstraint(["template_id"], ["workflow_templates.id"], ondelete="CASCADE"),
            sa.PrimaryKeyConstraint("id"),
        )
        op.create_index("ix_workflow_nodes_template_id", "workflow_nodes", ["template_id"])
        op.create_index(
            "ix_workflow_nodes_template_sort", "workflow_nodes", ["template_id", "sort_order"],
        )

    # ── WorkflowAnswerOption ──────────────────────────────────────────────
    if "workflow_answer_options" not in existing:
        op.create_table(
            "workflow_answer_options",
            sa.Column("id", sa.Integer(), nullable=False),
            sa.Column("source_node_id", sa.Integer(), nullable=False),
            sa.Column("label", sa.String(length=300), nullable=False),
            sa.Column(
                "value_key", sa.String(length=120), nullable=False,
                comment="Slug of label, unique per source node",
            ),
            sa.Column("description", sa.Text(), nullable=True),
            sa.Column("target_node_id", sa.Integer(), nullable=True),
            sa.Column("action_key", sa.String(length=40), nullable=True),
            sa.Column(
                "source_handle", sa.String(length=40), nullable=False,
                server_default="source-bottom",
            ),
            sa.Column(
                "target_handle", sa.String(length=40), nullable=False,
                server_default="target-top",
            ),
            sa.Column("created_at", sa.DateTime(timezone=True), nullable=True),
            sa.ForeignKeyConstraint(["source_node_id"], ["workflow_nodes.id"], ondelete="CASCADE"),
            sa.ForeignKeyConstraint(["target_node_id"], ["workflow_nodes.id"], ondelete="SET NULL"),
            sa.PrimaryKeyConstraint("id"),
        )
        op.create_index(
            "ix_workflow_answer_options_source_node_id", "workflow_answer_options", ["source_node_id"],
        )
        op.create_index(
            "ix_workflow_answer_options_target_node_id", "workflow_answer_options", ["target_node_id"],
        )

    # ── WorkflowNodeLink ──────────────────────────────────────────────────
    if "workflow_node_links" not in existing:
        op.create_table(
            "workflow_node_links",
            sa.Column("id", sa.Integer(), nullable=False),
            sa.Column("source_node_id", sa.Integer(), nullable=False),
            sa.Column("target_template_id", sa.Integer(), nullable=False),
            sa.Column("label", sa.String(length=300), nullable=False),
            sa.Column("sort_order", sa.Integer(), nullable=False, server_default="0"),
            sa.Column("created_at", sa.DateTime(timezone=True), nullable=True),
            sa.ForeignKeyConstraint(["source_node_id"], ["workflow_nodes.id"], ondelete="CASCADE"),
            sa.ForeignKeyConstraint(
                ["target_template_id"], ["workflow_templates.id"], ondelete="CASCADE",
            ),
            sa.PrimaryKeyConstraint("id"),
            sa.UniqueConstraint(
                "source_node_id", "target_template_id", name="uq_workflow_node_link_target",
            ),
        )
        op.create_index(
            "ix_workflow_node_links_source_node_id", "workflow_node_links", ["source_node_id"],
        )
        op.create_index(
            "ix_workflow_node_links_target_template_id", "workflow_node_links", ["target_template_id"],
        )

    # ── WorkflowNodeStyleDefault ──────────────────────────────────────────
    if "workflow_node_style_defaults" not in existing:
        op.create_table(
            "workflow_node_style_defaults",
            sa.Column("id", sa.Integer(), nullable=False),
            sa.Column("template_id", sa.Integer(), nullable=False),
            sa.Column("node_type", sa.String(length=20), nullable=False),
            sa.Column("bg_color", sa.String(length=20), nullable=True),
            sa.Column("text_color", sa.String(length=20), nullable=True),
            sa.Column("border_color", sa.String(length=20), nullable=True),
            sa.Column("updated_at", sa.DateTime(timezone=True), nullable=True),
            sa.ForeignKeyConstraint(["template_id"], ["workflow_templates.id"], ondelete="CASCADE"),
            sa.PrimaryKeyConstraint("id"),
            sa.UniqueConstraint("template_id", "node_type", name="uq_workflow_style_default_type"),
        )
        op.create_index(
            "ix_workflow_node_style_defaults_template_id", "workflow_node_style_defaults", ["template_id"],
        )

    # ── WorkflowInstance ──────────────────────────────────────────────────
    if "workflow_instances" not in existing:
        op.create_table(
            "workflow_instances",
            sa.Column("id", sa.Integer(), nullable=False),
            sa.Column("tenant_id", sa.Integer(), nullable=False),
            sa.Column("template_id", sa.Integer(), nullable=False),
            sa.Column("origin_template_id", sa.Integer(), nullable=False),
            sa.Column("current_node_id", sa.Integer(), nullable=True),
            sa.Column("reference", sa.String(length=200), nullable=True),
            sa.Column("category", sa.String(length=100), nullable=True),
            sa.Column(
                "status", sa.String(length=20), nullable=False,
                server_default="IN_PROGRESS",
                comment="IN_PROGRESS | COMPLETED | ABANDONED",
            ),
            sa.Column("started_by_id", sa.Integer(), nullable=True),
            sa.Column("version", sa.Integer(), nullable=False),
            sa.Column("created_at", sa.DateTime(timezone=True), nullable=True),
            sa.Column("updated_at", sa.DateTime(timezone=True), nullable=True),
            sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
            sa.Column("abandoned_at", sa.DateTime(timezone=True), nullable=True),
            sa.ForeignKeyConstraint(["tenant_id"], ["tenants.id"], ondelete="CASCADE"),
            sa.ForeignKeyConstraint(["template_id"], ["workflow_templates.id"], ondelete="CASCADE"),
            sa.ForeignKeyConstraint(
                ["origin_template_id"], ["workflow_templates.id"], ondelete="CASCADE",
            ),
            sa.ForeignKeyConstraint(["started_by_id"], ["users.id"], ondelete="SET NULL"),
            sa.PrimaryKeyConstraint("id"),
            sa.CheckConstraint(
                "status IN ('IN_PROGRESS','COMPLETED','ABANDONED')",
                name="ck_workflow_instance_status",
            ),
        )
        op.create_index("ix_workflow_instances_tenant_id", "workflow_instances", ["tenant_id"])
        op.create_index("ix_workflow_instances_template_id", "workflow_instances", ["template_id"])
        op.create_index(
            "ix_workflow_instances_origin_template_id", "workflow_instances", ["origin_template_id"],
        )
        op.create_index(
            "ix_workflow_instances_tenant_status", "workflow_instances", ["tenant_id", "status"],
        )

    # ── WorkflowInstanceStep ──────────────────────────────────────────────
    if "workflow_instance_steps" not in existing:
        op.create_table(
            "workflow_instance_steps",
            sa.Column("id", sa.Integer(), nullable=False),
            sa.Column("instance_id", sa.Integer(), nullable=False),
            sa.Column("sequence", sa.Integer(), nullable=False),
            sa.Column("from_template_id", sa.Integer(), nullable=False),
            sa.Column("from_node_id", sa.Integer(), nullable=False),
            sa.Column(
                "choice_kind", sa.String(length=20), nullable=False,
                comment="edge | link | continue",
            ),
            sa.Column("choice_ref_id", sa.Integer(), nullable=True, comment="Answer option or link id"),
            sa.Column("choice_label", sa.String(length=300), nullable=True, comment="Label snapshot"),
            sa.Column("action_key", sa.String(length=40), nullable=True),
            sa.Column("to_template_id", sa.Integer(), nullable=False),
            sa.Column(
                "to_node_id", sa.Integer(), nullable=True,
                comment="NULL when the run ended with no next node",
            ),
            sa.Column("template_switched", sa.Boolean(), nullable=False, server_default=sa.false()),
            sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
            sa.ForeignKeyConstraint(["instance_id"], ["workflow_instances.id"], ondelete="CASCADE"),
            sa.PrimaryKeyConstraint("id"),
            sa.UniqueConstraint("instance_id", "sequence", name="uq_workflow_step_sequence"),
        )
        op.create_index(
            "ix_workflow_instance_steps_instance_id", "workflow_instance_steps", ["instance_id"],
        )

    # ── AuditLog ──────────────────────────────────────────────────────────
    if "audit_logs" not in existing:
        op.create_table(
            "audit_logs",
            sa.Column("id", sa.Integer(), nullable=False),
            sa.Column(
                "tenant_id", sa.Integer(), nullable=True,
                comment="NULL for global-scope template events",
            ),
            sa.Column(
                "entity_type", sa.String(length=30), nullable=False,
                comment="workflow_template | workflow_instance",
            ),
            sa.Column("entity_id", sa.String(length=36), nullable=False),
            sa.Column("action", sa.String(length=60), nullable=False),
            sa.Column("actor_user_id", sa.Integer(), nullable=True),
            sa.Column("diff_json", sa.Text(), nullable=True, comment="JSON: {field: {old, new}}"),
            sa.Column("timestamp", sa.DateTime(timezone=True), nullable=False),
            sa.ForeignKeyConstraint(["tenant_id"], ["tenants.id"], ondelete="SET NULL"),
            sa.ForeignKeyConstraint(["actor_user_id"], ["users.id"], ondelete="SET NULL"),
            sa.PrimaryKeyConstraint("id"),
        )
        op.create_index("ix_audit_logs_tenant_id", "audit_logs", ["tenant_id"])
        op.create_index("ix_audit_logs_actor_user_id", "audit_logs", ["actor_user_id"])
        op.create_index("idx_audit_entity", "audit_logs", ["entity_type", "entity_id"])
        op.create_index("idx_audit_action", "audit_logs", ["action"])
        op.create_index("idx_audit_ts", "audit_logs", ["timestamp"])


def downgrade():
    op.drop_table("audit_logs")
    op.drop_table("workflow_instance_steps")
    op.drop_table("workflow_instances")
    op.drop_table("workflow_node_style_defaults")
    op.drop_table("workflow_node_links")
    op.drop_table("workflow_answer_options")
    op.drop_table("workflow_nodes")
    op.drop_table("workflow_templates")
    op.drop_table("users")
    op.drop_table("tenants")
