"""lead_pipeline_tables

Creates the lead pipeline tables:
  - leads - tracked entities with custom_fields JSON
  - pipelines - named stage containers
  - pipeline_stages - ordered stages with SLA deadline and WIP limit
  - stage_criteria - checklist | automatic | manual | conditional criteria
  - pipeline_entries - lead enrollments; one active entry per (lead, pipeline)
  - criterion_states - checklist done / manual approved flags per lead
  - audit_logs - append-only transition and configuration trail

Tables created conditionally (IF NOT EXISTS semantics) to support idempotent
execution against databases that already received these tables via db.create_all()
in a development environment.

Revision ID: 7c1e2a9d4b10
Revises:
Create Date: 2026-10-19 09:12:41.518230
"""
from alembic import op
import sqlalchemy as sa
from sqlalchemy import inspect as sa_inspect


# revision identifiers, used by Alembic.
revision = '7c1e2a9d4b10'
down_revision = None
branch_labels = None
depends_on = None

_ACTIVE_ONLY = sa.text("status = 'active'")


def upgrade():
    bind = op.get_bind()
    existing = set(sa_inspect(bind).get_table_names())

    # ── Lead ──────────────────────────────────────────────────────────────
    if "leads" not in existing:
        op.create_table(
            "leads",
            sa.Column("id", sa.Integer(), nullable=False),
            sa.Column("name", sa.String(length=200), nullable=False),
            sa.Column("email", sa.String(length=200), nullable=True),
            sa.Column("phone", sa.String(length=50), nullable=True),
            sa.Column("company", sa.String(length=200), nullable=True),
            sa.Column("source", sa.String(length=50), nullable=True),
            sa.Column("lead_score", sa.Integer(), nullable=True),
            sa.Column("custom_fields", sa.JSON(), nullable=True),
            sa.Column("created_at", sa.DateTime(timezone=True), nullable=True),
            sa.Column("updated_at", sa.DateTime(timezone=True), nullable=True),
            sa.PrimaryKeyConstraint("id"),
        )

    # ── Pipeline ──────────────────────────────────────────────────────────
    if "pipelines" not in existing:
        op.create_table(
            "pipelines",
            sa.Column("id", sa.Integer(), nullable=False),
            sa.Column("name", sa.String(length=100), nullable=False),
            sa.Column("description", sa.Text(), nullable=True),
            sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
            sa.Column("is_primary", sa.Boolean(), nullable=False, server_default=sa.false()),
            sa.Column("allow_stage_jumps", sa.Boolean(), nullable=False, server_default=sa.false()),
            sa.Column("allow_regression", sa.Boolean(), nullable=False, server_default=sa.false()),
            sa.Column("created_at", sa.DateTime(timezone=True), nullable=True),
            sa.Column("updated_at", sa.DateTime(timezone=True), nullable=True),
            sa.PrimaryKeyConstraint("id"),
        )

    # ── PipelineStage ─────────────────────────────────────────────────────
    if "pipeline_stages" not in existing:
        op.create_table(
            "pipeline_stages",
            sa.Column("id", sa.Integer(), nullable=False),
            sa.Column("pipeline_id", sa.Integer(), nullable=False),
            sa.Column("name", sa.String(length=100), nullable=False),
            sa.Column("order", sa.Integer(), nullable=False),
            sa.Column("sla_deadline_days", sa.Integer(), nullable=False, server_default="0"),
            sa.Column("entry_criteria", sa.Text(), nullable=True),
            sa.Column("exit_criteria", sa.Text(), nullable=True),
            sa.Column("is_terminal", sa.Boolean(), nullable=False, server_default=sa.false()),
            sa.Column("wip_limit", sa.Integer(), nullable=True),
            sa.Column("created_at", sa.DateTime(timezone=True), nullable=True),
            sa.Column("updated_at", sa.DateTime(timezone=True), nullable=True),
            sa.ForeignKeyConstraint(["pipeline_id"], ["pipelines.id"], ondelete="CASCADE"),
            sa.PrimaryKeyConstraint("id"),
            sa.UniqueConstraint("pipeline_id", "order", name="uq_stage_pipeline_order"),
        )
        op.create_index("ix_pipeline_stages_pipeline_id", "pipeline_stages", ["pipeline_id"])

    # ── StageCriterion ────────────────────────────────────────────────────
    if "stage_criteria" not in existing:
        op.create_table(
            "stage_criteria",
            sa.Column("id", sa.Integer(), nullable=False),
            sa.Column("stage_id", sa.Integer(), nullable=False),
            sa.Column("name", sa.String(length=100), nullable=False),
            sa.Column("description", sa.Text(), nullable=True),
            sa.Column(
                "kind", sa.String(length=20), nullable=False,
                comment="checklist | automatic | manual | conditional",
            ),
            sa.Column("mandatory", sa.Boolean(), nullable=False, server_default=sa.true()),
            sa.Column("rule", sa.JSON(), nullable=True, comment="Rule tree for automatic / conditional"),
            sa.Column("sort_order", sa.Integer(), nullable=False, server_default="0"),
            sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
            sa.Column("created_at", sa.DateTime(timezone=True), nullable=True),
            sa.Column("updated_at", sa.DateTime(timezone=True), nullable=True),
            sa.ForeignKeyConstraint(["stage_id"], ["pipeline_stages.id"], ondelete="CASCADE"),
            sa.PrimaryKeyConstraint("id"),
        )
        op.create_index("ix_stage_criteria_stage_id", "stage_criteria", ["stage_id"])

    # ── PipelineEntry ─────────────────────────────────────────────────────
    if "pipeline_entries" not in existing:
        op.create_table(
            "pipeline_entries",
            sa.Column("id", sa.Integer(), nullable=False),
            sa.Column("lead_id", sa.Integer(), nullable=False),
            sa.Column("pipeline_id", sa.Integer(), nullable=False),
            sa.Column("stage_id", sa.Integer(), nullable=False),
            sa.Column("status", sa.String(length=20), nullable=False, server_default="active"),
            sa.Column("enrolled_at", sa.DateTime(timezone=True), nullable=False),
            sa.Column("entered_stage_at", sa.DateTime(timezone=True), nullable=False),
            sa.Column("closed_at", sa.DateTime(timezone=True), nullable=True),
            sa.Column("archive_reason", sa.String(length=500), nullable=True),
            sa.Column("stage_note", sa.Text(), nullable=True),
            sa.Column(
                "health_cache", sa.String(length=10), nullable=True,
                comment="green | yellow | red (cache, not authoritative)",
            ),
            sa.Column("transferred_from_id", sa.Integer(), nullable=True),
            sa.ForeignKeyConstraint(["lead_id"], ["leads.id"], ondelete="CASCADE"),
            sa.ForeignKeyConstraint(["pipeline_id"], ["pipelines.id"], ondelete="CASCADE"),
            sa.ForeignKeyConstraint(["stage_id"], ["pipeline_stages.id"]),
            sa.ForeignKeyConstraint(["transferred_from_id"], ["pipeline_entries.id"], ondelete="SET NULL"),
            sa.PrimaryKeyConstraint("id"),
        )
        op.create_index("idx_entry_lead_pipeline", "pipeline_entries", ["lead_id", "pipeline_id"])
        op.create_index("idx_entry_stage_status", "pipeline_entries", ["stage_id", "status"])
        op.create_index(
            "uq_entry_one_active", "pipeline_entries", ["lead_id", "pipeline_id"],
            unique=True, sqlite_where=_ACTIVE_ONLY, postgresql_where=_ACTIVE_ONLY,
        )

    # ── CriterionState ────────────────────────────────────────────────────
    if "criterion_states" not in existing:
        op.create_table(
            "criterion_states",
            sa.Column("id", sa.Integer(), nullable=False),
            sa.Column("lead_id", sa.Integer(), nullable=False),
            sa.Column("criterion_id", sa.Integer(), nullable=False),
            sa.Column("done", sa.Boolean(), nullable=False, server_default=sa.false()),
            sa.Column("approved", sa.Boolean(), nullable=False, server_default=sa.false()),
            sa.Column("validated_by", sa.String(length=150), nullable=True),
            sa.Column("validated_at", sa.DateTime(timezone=True), nullable=True),
            sa.Column("notes", sa.Text(), nullable=True),
            sa.ForeignKeyConstraint(["lead_id"], ["leads.id"], ondelete="CASCADE"),
            sa.ForeignKeyConstraint(["criterion_id"], ["stage_criteria.id"], ondelete="CASCADE"),
            sa.PrimaryKeyConstraint("id"),
            sa.UniqueConstraint("lead_id", "criterion_id", name="uq_criterion_state_lead"),
        )
        op.create_index("ix_criterion_states_lead_id", "criterion_states", ["lead_id"])
        op.create_index("ix_criterion_states_criterion_id", "criterion_states", ["criterion_id"])

    # ── AuditLog ──────────────────────────────────────────────────────────
    if "audit_logs" not in existing:
        op.create_table(
            "audit_logs",
            sa.Column("id", sa.Integer(), nullable=False),
            sa.Column("entity_type", sa.String(length=30), nullable=False),
            sa.Column("entity_id", sa.String(length=36), nullable=False),
            sa.Column("lead_id", sa.Integer(), nullable=True),
            sa.Column("pipeline_id", sa.Integer(), nullable=True),
            sa.Column("action", sa.String(length=60), nullable=False),
            sa.Column("actor", sa.String(length=150), nullable=False, server_default="system"),
            sa.Column("diff_json", sa.Text(), nullable=True),
            sa.Column("timestamp", sa.DateTime(timezone=True), nullable=False),
            sa.PrimaryKeyConstraint("id"),
        )
        op.create_index("idx_audit_entity", "audit_logs", ["entity_type", "entity_id"])
        op.create_index("idx_audit_lead", "audit_logs", ["lead_id"])
        op.create_index("idx_audit_pipeline", "audit_logs", ["pipeline_id"])
        op.create_index("idx_audit_action", "audit_logs", ["action"])
        op.create_index("idx_audit_ts", "audit_logs", ["timestamp"])


def downgrade():
    for table in (
        "audit_logs",
        "criterion_states",
        "pipeline_entries",
        "stage_criteria",
        "pipeline_stages",
        "pipelines",
        "leads",
    ):
        op.drop_table(table)
