"""create commercial pipeline tables

Revision ID: 202610190001
Revises:
Create Date: 2026-10-19 00:01:00
"""

from collections.abc import Sequence

from alembic import op
import sqlalchemy as sa


revision: str = "202610190001"
down_revision: str | None = None
branch_labels: Sequence[str] | None = None
depends_on: Sequence[str] | None = None


def upgrade() -> None:
    op.create_table(
        "crm_staff_user",
        sa.Column("id", sa.String(length=64), nullable=False),
        sa.Column("name", sa.Text(), nullable=False),
        sa.Column("email", sa.Text(), nullable=True),
        sa.Column("role", sa.String(length=48), nullable=False),
        sa.Column("community_id", sa.String(length=64), nullable=True),
        sa.Column("supervisor_id", sa.String(length=64), nullable=True),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default="true"),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(["supervisor_id"], ["crm_staff_user.id"], ondelete="SET NULL"),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_crm_staff_user_supervisor", "crm_staff_user", ["supervisor_id"], unique=False)

    op.create_table(
        "crm_pipeline_lead",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("company_name", sa.Text(), nullable=False),
        sa.Column("contact_name", sa.Text(), nullable=True),
        sa.Column("email", sa.Text(), nullable=True),
        sa.Column("phone", sa.Text(), nullable=True),
        sa.Column("sector", sa.Text(), nullable=True),
        sa.Column("stage", sa.String(length=32), nullable=False),
        sa.Column("status", sa.String(length=32), nullable=False, server_default="open"),
        sa.Column("priority", sa.String(length=16), nullable=False, server_default="MEDIUM"),
        sa.Column("estimated_value", sa.Numeric(14, 2), nullable=False),
        sa.Column("score", sa.Integer(), nullable=True),
        sa.Column("assigned_to_id", sa.String(length=64), nullable=True),
        sa.Column("community_id", sa.String(length=64), nullable=True),
        sa.Column("stage_entered_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("assigned_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("verified_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("verified_by_id", sa.String(length=64), nullable=True),
        sa.Column("pre_contract_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("contracted_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("converted_company_id", sa.Uuid(), nullable=True),
        sa.Column("converted_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("archived_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("row_version", sa.Integer(), nullable=False, server_default="1"),
        sa.CheckConstraint("estimated_value >= 0", name="ck_crm_pipeline_lead_value_non_negative"),
        sa.CheckConstraint("score IS NULL OR (score >= 0 AND score <= 100)", name="ck_crm_pipeline_lead_score_range"),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(
        "ix_crm_pipeline_lead_board",
        "crm_pipeline_lead",
        ["community_id", "stage", "assigned_to_id"],
        unique=False,
    )

    op.create_table(
        "crm_pipeline_company",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("name", sa.Text(), nullable=False),
        sa.Column("email", sa.Text(), nullable=False),
        sa.Column("phone", sa.Text(), nullable=True),
        sa.Column("sector", sa.Text(), nullable=True),
        sa.Column("stage", sa.String(length=32), nullable=False),
        sa.Column("status", sa.String(length=32), nullable=False, server_default="pending"),
        sa.Column("account_manager_id", sa.String(length=64), nullable=True),
        sa.Column("from_lead_id", sa.Uuid(), nullable=True),
        sa.Column("community_id", sa.String(length=64), nullable=True),
        sa.Column("stage_entered_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("assigned_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("onboarding_completed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("row_version", sa.Integer(), nullable=False, server_default="1"),
        sa.ForeignKeyConstraint(["from_lead_id"], ["crm_pipeline_lead.id"], ondelete="RESTRICT"),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("from_lead_id"),
    )
    op.create_index(
        "ix_crm_pipeline_company_board",
        "crm_pipeline_company",
        ["community_id", "stage", "account_manager_id"],
        unique=False,
    )

    op.create_table(
        "crm_pipeline_stage_history",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("entity_kind", sa.String(length=16), nullable=False),
        sa.Column("entity_id", sa.Uuid(), nullable=False),
        sa.Column("from_stage", sa.String(length=32), nullable=True),
        sa.Column("to_stage", sa.String(length=32), nullable=False),
        sa.Column("actor_user_id", sa.String(length=64), nullable=False),
        sa.Column("assigned_to_id", sa.String(length=64), nullable=True),
        sa.Column("community_id", sa.String(length=64), nullable=True),
        sa.Column("occurred_at", sa.DateTime(timezone=True), nullable=False),
    )
    op.create_index(
        "ix_crm_pipeline_stage_history_entity",
        "crm_pipeline_stage_history",
        ["entity_kind", "entity_id", "occurred_at"],
        unique=False,
    )


def downgrade() -> None:
    op.drop_index("ix_crm_pipeline_stage_history_entity", table_name="crm_pipeline_stage_history")
    op.drop_table("crm_pipeline_stage_history")
    op.drop_index("ix_crm_pipeline_company_board", table_name="crm_pipeline_company")
    op.drop_table("crm_pipeline_company")
    op.drop_index("ix_crm_pipeline_lead_board", table_name="crm_pipeline_lead")
    op.drop_table("crm_pipeline_lead")
    op.drop_index("ix_crm_staff_user_supervisor", table_name="crm_staff_user")
    op.drop_table("crm_staff_user")
