from __future__ import annotations

import itertools
from pathlib import Path

import allure
import pytest
from fakes import FakeRunner, FakeTracker, FakeWorkspaces

from wave_orchestrator.checkpoint.models import (
    ActionResult,
    CiState,
    GateOutcome,
    PlannedWorkflow,
    ReviewDecision,
    WorkflowPhase,
    WorkflowStatus,
    WorkflowView,
)
from wave_orchestrator.checkpoint.repository import CheckpointRepository
from wave_orchestrator.config import GateSettings
from wave_orchestrator.tracker.base import ReviewFeedback
from wave_orchestrator.validation.ci import CiWatcher
from wave_orchestrator.validation.gate import GateOptions, ReviewCiGate, render_review_prompt

pytestmark = [
    allure.epic("Validation"),
    allure.feature("Review/CI Gate"),
]

PR = 101


@pytest.fixture()
def workflow(repository: CheckpointRepository, tracker: FakeTracker) -> WorkflowView:
    plan = repository.record_plan(
        "gate-test",
        [PlannedWorkflow(item_number=1, branch="feat/issue-1", wave_number=1)],
    )
    tracker.open_pull_request(1)
    return repository.set_workflow_status(
        plan.links[0].workflow.workflow_id,
        WorkflowStatus.COMPLETED,
    )


def _gate(  # noqa: PLR0913
    repository: CheckpointRepository,
    tracker: FakeTracker,
    workspaces: FakeWorkspaces,
    runner: FakeRunner,
    tmp_path: Path,
    **options,
) -> ReviewCiGate:
    return ReviewCiGate(
        repository=repository,
        tracker=tracker,
        workspaces=workspaces,
        runner=runner,
        ci_watcher=CiWatcher(tracker, GateSettings(), sleep=lambda _seconds: None),
        options=GateOptions(output_dir=tmp_path / "output", **options),
    )


def test_green_ci_and_approval_are_ready_without_fixes(  # noqa: PLR0913
    repository: CheckpointRepository,
    tracker: FakeTracker,
    workspaces: FakeWorkspaces,
    runner: FakeRunner,
    workflow: WorkflowView,
    tmp_path: Path,
) -> None:
    outcome = _gate(repository, tracker, workspaces, runner, tmp_path).evaluate(workflow, PR)

    assert outcome == GateOutcome.READY
    assert runner.requests == []
    checkpoint = repository.load_workflow(workflow.workflow_id)
    assert checkpoint is not None
    assert checkpoint.workflow.phase == WorkflowPhase.REVIEW
    assert [action.action for action in checkpoint.actions] == ["ci-passed", "review-ready"]


def test_ci_failure_is_fixed_within_budget(  # noqa: PLR0913
    repository: CheckpointRepository,
    tracker: FakeTracker,
    workspaces: FakeWorkspaces,
    runner: FakeRunner,
    workflow: WorkflowView,
    tmp_path: Path,
) -> None:
    tracker.ci_sequences[PR] = [CiState.FAILED, CiState.PASSED]

    outcome = _gate(repository, tracker, workspaces, runner, tmp_path).evaluate(workflow, PR)

    assert outcome == GateOutcome.READY
    assert runner.prompts == [
        "Fix CI failures for PR #101. Run the failing checks, fix the issues, commit and push.",
    ]
    assert runner.requests[0].budget_usd == 2.0
    assert runner.requests[0].log_path.name == "issue-1-ci-fix-1.log"
    assert workspaces.checkouts == ["feat/issue-1"]


@pytest.mark.parametrize("max_ci_attempts", [0, 1, 3])
def test_ci_fix_loop_runs_at_most_max_ci_attempts(  # noqa: PLR0913
    repository: CheckpointRepository,
    tracker: FakeTracker,
    workspaces: FakeWorkspaces,
    runner: FakeRunner,
    workflow: WorkflowView,
    tmp_path: Path,
    max_ci_attempts: int,
) -> None:
    tracker.ci_sequences[PR] = [CiState.FAILED]

    outcome = _gate(
        repository,
        tracker,
        workspaces,
        runner,
        tmp_path,
        max_ci_attempts=max_ci_attempts,
    ).evaluate(workflow, PR)

    assert outcome == GateOutcome.FAILED
    assert len(runner.requests) == max_ci_attempts
    checkpoint = repository.load_workflow(workflow.workflow_id)
    assert checkpoint is not None
    assert checkpoint.workflow.status == WorkflowStatus.FAILED
    failure = repository.latest_action(workflow.workflow_id, "ci-failed", ActionResult.FAILED)
    assert failure is not None and failure.metadata is not None
    assert failure.metadata["attempts"] == max_ci_attempts


def test_ci_that_never_settles_counts_as_failure(  # noqa: PLR0913
    repository: CheckpointRepository,
    tracker: FakeTracker,
    workspaces: FakeWorkspaces,
    runner: FakeRunner,
    workflow: WorkflowView,
    tmp_path: Path,
) -> None:
    tracker.ci_sequences[PR] = [CiState.PENDING]
    ticks = itertools.count(0, 600)
    gate = _gate(repository, tracker, workspaces, runner, tmp_path, max_ci_attempts=1)
    gate.ci_watcher = CiWatcher(
        tracker,
        GateSettings(),
        sleep=lambda _seconds: None,
        clock=lambda: next(ticks),
    )

    assert gate.evaluate(workflow, PR) == GateOutcome.FAILED
    assert len(runner.requests) == 1


@pytest.mark.parametrize("max_review_fixes", [1, 2])
def test_review_loop_runs_at_most_max_review_fixes_then_fails(  # noqa: PLR0913
    repository: CheckpointRepository,
    tracker: FakeTracker,
    workspaces: FakeWorkspaces,
    runner: FakeRunner,
    workflow: WorkflowView,
    tmp_path: Path,
    max_review_fixes: int,
) -> None:
    tracker.review_sequences[PR] = [ReviewDecision.CHANGES_REQUESTED]

    outcome = _gate(
        repository,
        tracker,
        workspaces,
        runner,
        tmp_path,
        max_review_fixes=max_review_fixes,
    ).evaluate(workflow, PR)

    assert outcome == GateOutcome.FAILED
    assert len(runner.requests) == max_review_fixes
    assert all(request.budget_usd == 3.0 for request in runner.requests)
    failure = repository.latest_action(workflow.workflow_id, "review-fix-failed")
    assert failure is not None and failure.metadata is not None
    assert failure.metadata["cycle"] == max_review_fixes
    checkpoint = repository.load_workflow(workflow.workflow_id)
    assert checkpoint is not None
    assert checkpoint.workflow.status == WorkflowStatus.FAILED


def test_review_fix_that_satisfies_reviewer_is_ready(  # noqa: PLR0913
    repository: CheckpointRepository,
    tracker: FakeTracker,
    workspaces: FakeWorkspaces,
    runner: FakeRunner,
    workflow: WorkflowView,
    tmp_path: Path,
) -> None:
    tracker.review_sequences[PR] = [ReviewDecision.CHANGES_REQUESTED, ReviewDecision.APPROVED]
    tracker.feedback[PR] = ReviewFeedback(reviews=["- alice (CHANGES_REQUESTED): rename foo"])

    outcome = _gate(
        repository,
        tracker,
        workspaces,
        runner,
        tmp_path,
        max_review_fixes=3,
    ).evaluate(workflow, PR)

    assert outcome == GateOutcome.READY
    assert len(runner.requests) == 1
    assert "rename foo" in runner.prompts[0]
    assert runner.prompts[0].startswith("Address these review comments on PR #101:")
    assert tracker.ci_calls[PR] == 2


def test_zero_review_fixes_skips_the_review_stage(  # noqa: PLR0913
    repository: CheckpointRepository,
    tracker: FakeTracker,
    workspaces: FakeWorkspaces,
    runner: FakeRunner,
    workflow: WorkflowView,
    tmp_path: Path,
) -> None:
    tracker.review_sequences[PR] = [ReviewDecision.CHANGES_REQUESTED]

    outcome = _gate(
        repository,
        tracker,
        workspaces,
        runner,
        tmp_path,
        max_review_fixes=0,
    ).evaluate(workflow, PR)

    assert outcome == GateOutcome.READY
    assert runner.requests == []


def test_skip_ci_never_polls_checks(  # noqa: PLR0913
    repository: CheckpointRepository,
    tracker: FakeTracker,
    workspaces: FakeWorkspaces,
    runner: FakeRunner,
    workflow: WorkflowView,
    tmp_path: Path,
) -> None:
    tracker.ci_sequences[PR] = [CiState.FAILED]

    outcome = _gate(repository, tracker, workspaces, runner, tmp_path, skip_ci=True).evaluate(
        workflow,
        PR,
    )

    assert outcome == GateOutcome.READY
    assert PR not in tracker.ci_calls


def test_fix_runs_inside_existing_worktree(  # noqa: PLR0913
    repository: CheckpointRepository,
    tracker: FakeTracker,
    workspaces: FakeWorkspaces,
    runner: FakeRunner,
    workflow: WorkflowView,
    tmp_path: Path,
) -> None:
    worktree = workspaces.ensure_worktree(1)
    with_worktree = repository.set_workflow_worktree(workflow.workflow_id, str(worktree))
    tracker.ci_sequences[PR] = [CiState.FAILED, CiState.PASSED]

    _gate(repository, tracker, workspaces, runner, tmp_path).evaluate(with_worktree, PR)

    assert runner.requests[0].cwd == worktree
    assert workspaces.checkouts == []


def test_render_review_prompt_without_comments() -> None:
    prompt = render_review_prompt(5, ReviewFeedback())

    assert prompt == (
        "Address these review comments on PR #5:\nNo review comments found.\n"
        "Fix the issues, commit and push."
    )


def test_render_review_prompt_asks_to_push_once() -> None:
    feedback = ReviewFeedback(reviews=["- rev (CHANGES_REQUESTED): rename it"])

    prompt = render_review_prompt(5, feedback)

    assert "## Reviews\n- rev (CHANGES_REQUESTED): rename it" in prompt
    assert prompt.count("commit and push") == 1
