"""Milestones, wave links and pre-flight baselines."""

from __future__ import annotations

import sqlalchemy as sa

from alembic import op

revision = "20261019_0002"
down_revision = "20261019_0001"
branch_labels = None
depends_on = None


def upgrade() -> None:
    existing = set(sa.inspect(op.get_bind()).get_table_names())

    if "milestones" not in existing:
        op.create_table(
            "milestones",
            sa.Column("id", sa.String(), nullable=False),
            sa.Column("name", sa.String(), nullable=False),
            sa.Column("tracker_milestone_number", sa.Integer(), nullable=True),
            sa.Column("phase", sa.String(), nullable=False),
            sa.Column("status", sa.String(), nullable=False),
            sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
            sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
            sa.PrimaryKeyConstraint("id"),
        )
        op.create_index("idx_milestones_name", "milestones", ["name"])

    if "milestone_workflows" not in existing:
        op.create_table(
            "milestone_workflows",
            sa.Column("milestone_id", sa.String(), nullable=False),
            sa.Column("workflow_id", sa.String(), nullable=False),
            sa.Column("wave_number", sa.Integer(), nullable=True),
            sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
            sa.ForeignKeyConstraint(["milestone_id"], ["milestones.id"], ondelete="CASCADE"),
            sa.ForeignKeyConstraint(["workflow_id"], ["workflows.id"], ondelete="CASCADE"),
            sa.PrimaryKeyConstraint("milestone_id", "workflow_id"),
        )
        op.create_index(
            "uq_milestone_workflows_workflow",
            "milestone_workflows",
            ["workflow_id"],
            unique=True,
        )

    if "baselines" not in existing:
        op.create_table(
            "baselines",
            sa.Column("id", sa.Integer(), nullable=False),
            sa.Column("milestone_id", sa.String(), nullable=False),
            sa.Column("captured_at", sa.DateTime(timezone=True), nullable=False),
            sa.Column("lint_exit_code", sa.Integer(), nullable=True),
            sa.Column("lint_warnings", sa.Integer(), nullable=False, server_default="0"),
            sa.Column("lint_errors", sa.Integer(), nullable=False, server_default="0"),
            sa.Column("typecheck_exit_code", sa.Integer(), nullable=True),
            sa.Column("typecheck_errors", sa.Integer(), nullable=False, server_default="0"),
            sa.ForeignKeyConstraint(["milestone_id"], ["milestones.id"], ondelete="CASCADE"),
            sa.PrimaryKeyConstraint("id"),
            sa.UniqueConstraint("milestone_id", name="uq_baselines_milestone"),
        )


def downgrade() -> None:
    op.drop_table("baselines")
    op.drop_table("milestone_workflows")
    op.drop_table("milestones")
