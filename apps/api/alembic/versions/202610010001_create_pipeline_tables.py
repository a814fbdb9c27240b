"""create pipeline tables

Revision ID: 202610010001
Revises:
Create Date: 2026-10-01 00:01:00
"""

from collections.abc import Sequence

from alembic import op
import sqlalchemy as sa


revision: str = "202610010001"
down_revision: str | None = None
branch_labels: Sequence[str] | None = None
depends_on: Sequence[str] | None = None


def _timestamps() -> list[sa.Column]:
    return [
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
    ]


def upgrade() -> None:
    op.create_table(
        "pipeline_user",
        sa.Column("id", sa.String(length=64), nullable=False),
        sa.Column("organization_id", sa.Integer(), nullable=False),
        sa.Column("email", sa.String(length=255), nullable=False),
        sa.Column("first_name", sa.Text(), nullable=True),
        sa.Column("last_name", sa.Text(), nullable=True),
        sa.Column("role", sa.String(length=16), nullable=False),
        sa.Column("partner_id", sa.String(length=64), nullable=True),
        sa.Column("analyst_id", sa.String(length=64), nullable=True),
        *_timestamps(),
        sa.ForeignKeyConstraint(["partner_id"], ["pipeline_user.id"], ondelete="SET NULL"),
        sa.ForeignKeyConstraint(["analyst_id"], ["pipeline_user.id"], ondelete="SET NULL"),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_pipeline_user_organization_id", "pipeline_user", ["organization_id"], unique=False)

    op.create_table(
        "pipeline_company",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("organization_id", sa.Integer(), nullable=False),
        sa.Column("name", sa.Text(), nullable=False),
        sa.Column("sector", sa.Text(), nullable=True),
        sa.Column("location", sa.Text(), nullable=True),
        sa.Column("website", sa.Text(), nullable=True),
        *_timestamps(),
    )
    op.create_index("ix_pipeline_company_organization_id", "pipeline_company", ["organization_id"], unique=False)

    op.create_table(
        "pipeline_contact",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("organization_id", sa.Integer(), nullable=False),
        sa.Column("company_id", sa.Integer(), nullable=False),
        sa.Column("name", sa.Text(), nullable=True),
        sa.Column("designation", sa.Text(), nullable=True),
        sa.Column("email", sa.Text(), nullable=True),
        sa.Column("phone", sa.Text(), nullable=True),
        sa.Column("linkedin_profile", sa.Text(), nullable=True),
        sa.Column("is_primary", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("is_complete", sa.Boolean(), nullable=False, server_default=sa.false()),
        *_timestamps(),
        sa.ForeignKeyConstraint(["company_id"], ["pipeline_company.id"], ondelete="CASCADE"),
    )
    op.create_index("ix_pipeline_contact_org_company", "pipeline_contact", ["organization_id", "company_id"], unique=False)

    op.create_table(
        "pipeline_lead",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("organization_id", sa.Integer(), nullable=False),
        sa.Column("company_id", sa.Integer(), nullable=False),
        sa.Column("stage", sa.String(length=16), nullable=False, server_default="universe"),
        sa.Column("universe_status", sa.String(length=16), nullable=False, server_default="open"),
        sa.Column("owner_analyst_id", sa.String(length=64), nullable=True),
        sa.Column("poc_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("poc_completion_status", sa.String(length=8), nullable=False, server_default="red"),
        sa.Column("default_poc_id", sa.Integer(), nullable=True),
        sa.Column("backup_poc_id", sa.Integer(), nullable=True),
        sa.Column("pipeline_value", sa.Numeric(18, 2), nullable=True),
        sa.Column("probability", sa.Integer(), nullable=True),
        sa.Column("notes", sa.Text(), nullable=True),
        sa.Column("created_by", sa.String(length=64), nullable=True),
        *_timestamps(),
        sa.ForeignKeyConstraint(["company_id"], ["pipeline_company.id"], ondelete="RESTRICT"),
        sa.ForeignKeyConstraint(["owner_analyst_id"], ["pipeline_user.id"], ondelete="SET NULL"),
        sa.ForeignKeyConstraint(["default_poc_id"], ["pipeline_contact.id"], ondelete="SET NULL"),
        sa.ForeignKeyConstraint(["backup_poc_id"], ["pipeline_contact.id"], ondelete="SET NULL"),
        sa.CheckConstraint(
            "stage IN ('universe', 'qualified', 'outreach', 'pitching', 'mandates', 'won', 'lost', 'rejected')",
            name="ck_pipeline_lead_stage",
        ),
    )
    op.create_index("ix_pipeline_lead_org_stage", "pipeline_lead", ["organization_id", "stage"], unique=False)
    op.create_index("ix_pipeline_lead_org_company", "pipeline_lead", ["organization_id", "company_id"], unique=False)
    op.create_index("ix_pipeline_lead_owner", "pipeline_lead", ["organization_id", "owner_analyst_id"], unique=False)

    op.create_table(
        "pipeline_lead_assignee",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("lead_id", sa.Integer(), nullable=False),
        sa.Column("user_id", sa.String(length=64), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(["lead_id"], ["pipeline_lead.id"], ondelete="CASCADE"),
        sa.ForeignKeyConstraint(["user_id"], ["pipeline_user.id"], ondelete="CASCADE"),
        sa.UniqueConstraint("lead_id", "user_id", name="uq_pipeline_lead_assignee_pair"),
    )
    op.create_index("ix_pipeline_lead_assignee_user", "pipeline_lead_assignee", ["user_id"], unique=False)

    op.create_table(
        "pipeline_lead_assignment",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("organization_id", sa.Integer(), nullable=False),
        sa.Column("lead_id", sa.Integer(), nullable=False),
        sa.Column("assigned_by", sa.String(length=64), nullable=False),
        sa.Column("assigned_to", sa.String(length=64), nullable=True),
        sa.Column("notes", sa.Text(), nullable=True),
        sa.Column("assigned_at", sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(["lead_id"], ["pipeline_lead.id"], ondelete="CASCADE"),
    )
    op.create_index(
        "ix_pipeline_lead_assignment_lead",
        "pipeline_lead_assignment",
        ["organization_id", "lead_id", "assigned_at"],
        unique=False,
    )

    op.create_table(
        "pipeline_outreach_activity",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("organization_id", sa.Integer(), nullable=False),
        sa.Column("lead_id", sa.Integer(), nullable=False),
        sa.Column("user_id", sa.String(length=64), nullable=False),
        sa.Column("activity_type", sa.String(length=32), nullable=False),
        sa.Column("status", sa.String(length=16), nullable=False),
        sa.Column("contact_id", sa.Integer(), nullable=True),
        sa.Column("notes", sa.Text(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(["lead_id"], ["pipeline_lead.id"], ondelete="CASCADE"),
        sa.ForeignKeyConstraint(["contact_id"], ["pipeline_contact.id"], ondelete="SET NULL"),
    )

    op.create_table(
        "pipeline_intervention",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("organization_id", sa.Integer(), nullable=False),
        sa.Column("lead_id", sa.Integer(), nullable=False),
        sa.Column("user_id", sa.String(length=64), nullable=False),
        sa.Column("type", sa.String(length=32), nullable=False),
        sa.Column("scheduled_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("document_name", sa.Text(), nullable=True),
        sa.Column("notes", sa.Text(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(["lead_id"], ["pipeline_lead.id"], ondelete="CASCADE"),
    )

    op.create_table(
        "pipeline_activity_log",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("organization_id", sa.Integer(), nullable=False),
        sa.Column("user_id", sa.String(length=64), nullable=True),
        sa.Column("action", sa.String(length=64), nullable=False),
        sa.Column("entity_type", sa.String(length=32), nullable=False),
        sa.Column("entity_id", sa.String(length=64), nullable=True),
        sa.Column("lead_id", sa.Integer(), nullable=True),
        sa.Column("company_id", sa.Integer(), nullable=True),
        sa.Column("old_value", sa.Text(), nullable=True),
        sa.Column("new_value", sa.Text(), nullable=True),
        sa.Column("description", sa.Text(), nullable=False),
        sa.Column("correlation_id", sa.String(length=128), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
    )
    op.create_index("ix_pipeline_activity_log_lead", "pipeline_activity_log", ["organization_id", "lead_id"], unique=False)


def downgrade() -> None:
    op.drop_index("ix_pipeline_activity_log_lead", table_name="pipeline_activity_log")
    op.drop_table("pipeline_activity_log")
    op.drop_table("pipeline_intervention")
    op.drop_table("pipeline_outreach_activity")
    op.drop_index("ix_pipeline_lead_assignment_lead", table_name="pipeline_lead_assignment")
    op.drop_table("pipeline_lead_assignment")
    op.drop_index("ix_pipeline_lead_assignee_user", table_name="pipeline_lead_assignee")
    op.drop_table("pipeline_lead_assignee")
    op.drop_index("ix_pipeline_lead_owner", table_name="pipeline_lead")
    op.drop_index("ix_pipeline_lead_org_company", table_name="pipeline_lead")
    op.drop_index("ix_pipeline_lead_org_stage", table_name="pipeline_lead")
    op.drop_table("pipeline_lead")
    op.drop_index("ix_pipeline_contact_org_company", table_name="pipeline_contact")
    op.drop_table("pipeline_contact")
    op.drop_index("ix_pipeline_company_organization_id", table_name="pipeline_company")
    op.drop_table("pipeline_company")
    op.drop_index("ix_pipeline_user_organization_id", table_name="pipeline_user")
    op.drop_table("pipeline_user")
