"""Domain models for checkpointed orchestration state."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any

from wave_orchestrator.errors import InvalidTransitionError


class WorkflowPhase(str, Enum):
    """Pipeline phase of one work item."""

    RESEARCH = "research"
    IMPLEMENT = "implement"
    REVIEW = "review"
    FINALIZE = "finalize"
    PLANNING = "planning"
    EXECUTE = "execute"
    MERGE = "merge"
    CLEANUP = "cleanup"


class WorkflowStatus(str, Enum):
    """Durable lifecycle states shared by workflows and milestones."""

    RUNNING = "running"
    PAUSED = "paused"
    COMPLETED = "completed"
    FAILED = "failed"


class MilestonePhase(str, Enum):
    """Phase of one orchestration run."""

    PLANNING = "planning"
    EXECUTE = "execute"
    REVIEW = "review"
    MERGE = "merge"
    CLEANUP = "cleanup"


class ActionResult(str, Enum):
    """Outcome recorded on an audit action."""

    SUCCESS = "success"
    FAILED = "failed"
    PENDING = "pending"


class ReviewDecision(str, Enum):
    """Aggregate review decision reported by the tracker."""

    APPROVED = "approved"
    CHANGES_REQUESTED = "changes_requested"
    REVIEW_REQUIRED = "review_required"
    NONE = "none"


class CiState(str, Enum):
    """Aggregate CI state for one pull request."""

    PENDING = "pending"
    PASSED = "passed"
    FAILED = "failed"


class GateOutcome(str, Enum):
    """Result of the review/CI gate for one item."""

    READY = "ready"
    FAILED = "failed"


_WORKFLOW_TRANSITIONS: dict[WorkflowStatus, frozenset[WorkflowStatus]] = {
    WorkflowStatus.RUNNING: frozenset(
        {WorkflowStatus.PAUSED, WorkflowStatus.COMPLETED, WorkflowStatus.FAILED},
    ),
    WorkflowStatus.PAUSED: frozenset(
        {WorkflowStatus.RUNNING, WorkflowStatus.COMPLETED, WorkflowStatus.FAILED},
    ),
    WorkflowStatus.COMPLETED: frozenset({WorkflowStatus.FAILED}),
    WorkflowStatus.FAILED: frozenset({WorkflowStatus.COMPLETED}),
}

_MILESTONE_TRANSITIONS: dict[WorkflowStatus, frozenset[WorkflowStatus]] = {
    **_WORKFLOW_TRANSITIONS,
    WorkflowStatus.COMPLETED: frozenset({WorkflowStatus.FAILED, WorkflowStatus.RUNNING}),
    WorkflowStatus.FAILED: frozenset({WorkflowStatus.COMPLETED, WorkflowStatus.RUNNING}),
}


def check_workflow_transition(current: WorkflowStatus, target: WorkflowStatus) -> None:
    """Raise ``InvalidTransitionError`` unless ``current -> target`` is allowed.

    ``failed -> running`` is intentionally absent: it is reachable only through
    an explicit retry, which also bumps the retry counter.
    """

    if current == target:
        return
    if target not in _WORKFLOW_TRANSITIONS[current]:
        raise InvalidTransitionError(
            f"Workflow status cannot change from {current.value} to {target.value}.",
        )


def check_milestone_transition(current: WorkflowStatus, target: WorkflowStatus) -> None:
    """Milestones may additionally return to running when a run resumes."""

    if current == target:
        return
    if target not in _MILESTONE_TRANSITIONS[current]:
        raise InvalidTransitionError(
            f"Milestone status cannot change from {current.value} to {target.value}.",
        )


@dataclass(slots=True)
class WorkflowView:
    """Readable workflow state."""

    workflow_id: str
    item_number: int
    branch: str
    worktree: str | None
    phase: WorkflowPhase
    status: WorkflowStatus
    retry_count: int
    created_at: datetime
    updated_at: datetime


@dataclass(slots=True)
class ActionView:
    """Audit trail entry."""

    action_id: int
    workflow_id: str
    action: str
    result: ActionResult
    created_at: datetime
    metadata: dict[str, Any] | None = None


@dataclass(slots=True)
class CommitView:
    commit_id: int
    workflow_id: str
    sha: str
    message: str
    created_at: datetime


@dataclass(slots=True)
class CheckpointData:
    """Workflow with its audit trail."""

    workflow: WorkflowView
    actions: list[ActionView] = field(default_factory=list)
    commits: list[CommitView] = field(default_factory=list)


@dataclass(slots=True)
class MilestoneView:
    milestone_id: str
    name: str
    tracker_milestone_number: int | None
    phase: MilestonePhase
    status: WorkflowStatus
    created_at: datetime
    updated_at: datetime


@dataclass(slots=True)
class BaselineWrite:
    """Pre-flight lint/typecheck snapshot payload."""

    lint_exit_code: int | None = None
    lint_warnings: int = 0
    lint_errors: int = 0
    typecheck_exit_code: int | None = None
    typecheck_errors: int = 0


@dataclass(slots=True)
class BaselineView:
    milestone_id: str
    captured_at: datetime
    lint_exit_code: int | None
    lint_warnings: int
    lint_errors: int
    typecheck_exit_code: int | None
    typecheck_errors: int


@dataclass(slots=True)
class WorkflowLinkView:
    """Workflow together with the wave it was assigned to."""

    workflow: WorkflowView
    wave_number: int | None


@dataclass(slots=True)
class MilestoneCheckpointData:
    """Milestone with its baseline and wave-ordered workflows."""

    milestone: MilestoneView
    baseline: BaselineView | None = None
    links: list[WorkflowLinkView] = field(default_factory=list)


@dataclass(slots=True)
class PlannedWorkflow:
    """One item of a freshly computed plan, ready to be persisted."""

    item_number: int
    branch: str
    wave_number: int


@dataclass(slots=True)
class StatusCounts:
    """Aggregate workflow statuses of one milestone."""

    completed: int = 0
    failed: int = 0
    running: int = 0
    paused: int = 0

    @property
    def total(self) -> int:
        return self.completed + self.failed + self.running + self.paused
