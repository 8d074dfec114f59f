"""Workflow checkpoints with action and commit logs."""

from __future__ import annotations

import sqlalchemy as sa

from alembic import op

revision = "20261019_0001"
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    existing = set(sa.inspect(op.get_bind()).get_table_names())

    if "workflows" not in existing:
        op.create_table(
            "workflows",
            sa.Column("id", sa.String(), nullable=False),
            sa.Column("item_number", sa.Integer(), nullable=False),
            sa.Column("branch", sa.String(), nullable=False),
            sa.Column("worktree", sa.String(), nullable=True),
            sa.Column("phase", sa.String(), nullable=False),
            sa.Column("status", sa.String(), nullable=False),
            sa.Column("retry_count", sa.Integer(), nullable=False, server_default="0"),
            sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
            sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
            sa.PrimaryKeyConstraint("id"),
        )
        op.create_index("idx_workflows_item", "workflows", ["item_number"])
        op.create_index("idx_workflows_status", "workflows", ["status"])

    if "actions" not in existing:
        op.create_table(
            "actions",
            sa.Column("id", sa.Integer(), nullable=False),
            sa.Column("workflow_id", sa.String(), nullable=False),
            sa.Column("action", sa.String(), nullable=False),
            sa.Column("result", sa.String(), nullable=False),
            sa.Column("metadata_json", sa.Text(), nullable=True),
            sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
            sa.ForeignKeyConstraint(["workflow_id"], ["workflows.id"], ondelete="CASCADE"),
            sa.PrimaryKeyConstraint("id"),
        )
        op.create_index("idx_actions_workflow", "actions", ["workflow_id", "action"])

    if "commits" not in existing:
        op.create_table(
            "commits",
            sa.Column("id", sa.Integer(), nullable=False),
            sa.Column("workflow_id", sa.String(), nullable=False),
            sa.Column("sha", sa.String(), nullable=False),
            sa.Column("message", sa.Text(), nullable=False),
            sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
            sa.ForeignKeyConstraint(["workflow_id"], ["workflows.id"], ondelete="CASCADE"),
            sa.PrimaryKeyConstraint("id"),
        )
        op.create_index("idx_commits_workflow", "commits", ["workflow_id"])


def downgrade() -> None:
    op.drop_table("commits")
    op.drop_table("actions")
    op.drop_table("workflows")
