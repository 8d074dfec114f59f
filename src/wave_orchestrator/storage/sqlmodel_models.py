"""SQLModel ORM tables for the checkpoint store."""

from __future__ import annotations

from datetime import datetime

from sqlalchemy import Column, DateTime, ForeignKey, Index, Text, UniqueConstraint
from sqlmodel import Field, SQLModel


class Workflow(SQLModel, table=True):
    __tablename__ = "workflows"  # type: ignore[bad-override]
    __table_args__ = (
        Index("idx_workflows_item", "item_number"),
        Index("idx_workflows_status", "status"),
    )

    id: str = Field(primary_key=True)
    item_number: int
    branch: str
    worktree: str | None = None
    phase: str
    status: str
    retry_count: int = 0
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    updated_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))


class Action(SQLModel, table=True):
    __tablename__ = "actions"  # type: ignore[bad-override]
    __table_args__ = (Index("idx_actions_workflow", "workflow_id", "action"),)

    id: int | None = Field(default=None, primary_key=True)
    workflow_id: str = Field(
        sa_column=Column(ForeignKey("workflows.id", ondelete="CASCADE"), nullable=False),
    )
    action: str
    result: str
    metadata_json: str | None = Field(default=None, sa_column=Column(Text, nullable=True))
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))


class Commit(SQLModel, table=True):
    __tablename__ = "commits"  # type: ignore[bad-override]
    __table_args__ = (Index("idx_commits_workflow", "workflow_id"),)

    id: int | None = Field(default=None, primary_key=True)
    workflow_id: str = Field(
        sa_column=Column(ForeignKey("workflows.id", ondelete="CASCADE"), nullable=False),
    )
    sha: str
    message: str = Field(sa_column=Column(Text, nullable=False))
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))


class Milestone(SQLModel, table=True):
    __tablename__ = "milestones"  # type: ignore[bad-override]
    __table_args__ = (Index("idx_milestones_name", "name"),)

    id: str = Field(primary_key=True)
    name: str
    tracker_milestone_number: int | None = None
    phase: str
    status: str
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    updated_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))


class MilestoneWorkflow(SQLModel, table=True):
    __tablename__ = "milestone_workflows"  # type: ignore[bad-override]
    __table_args__ = (
        Index("uq_milestone_workflows_workflow", "workflow_id", unique=True),
    )

    milestone_id: str = Field(
        sa_column=Column(
            ForeignKey("milestones.id", ondelete="CASCADE"),
            primary_key=True,
            nullable=False,
        ),
    )
    workflow_id: str = Field(
        sa_column=Column(
            ForeignKey("workflows.id", ondelete="CASCADE"),
            primary_key=True,
            nullable=False,
        ),
    )
    wave_number: int | None = None
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))


class Baseline(SQLModel, table=True):
    __tablename__ = "baselines"  # type: ignore[bad-override]
    __table_args__ = (UniqueConstraint("milestone_id", name="uq_baselines_milestone"),)

    id: int | None = Field(default=None, primary_key=True)
    milestone_id: str = Field(
        sa_column=Column(ForeignKey("milestones.id", ondelete="CASCADE"), nullable=False),
    )
    captured_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    lint_exit_code: int | None = None
    lint_warnings: int = 0
    lint_errors: int = 0
    typecheck_exit_code: int | None = None
    typecheck_errors: int = 0
