from __future__ import annotations

from pathlib import Path

import allure
from fakes import FakeRunner, FakeTracker, FakeWorkspaces, opens_pull_requests

from wave_orchestrator.checkpoint.models import (
    ActionResult,
    PlannedWorkflow,
    WorkflowPhase,
    WorkflowStatus,
    WorkflowView,
)
from wave_orchestrator.checkpoint.repository import CheckpointRepository
from wave_orchestrator.errors import ExecutionError
from wave_orchestrator.execution.executor import ExecutionOptions, WaveExecutor
from wave_orchestrator.runner.base import TaskRunRequest, TaskRunResult

pytestmark = [
    allure.epic("Wave Execution"),
    allure.feature("Wave Executor"),
]


def _plan(repository: CheckpointRepository, *items: int) -> dict[int, WorkflowView]:
    plan = repository.record_plan(
        "executor-test",
        [
            PlannedWorkflow(item_number=item, branch=f"feat/issue-{item}", wave_number=1)
            for item in items
        ],
    )
    return {link.workflow.item_number: link.workflow for link in plan.links}


def _executor(  # noqa: PLR0913
    repository: CheckpointRepository,
    tracker: FakeTracker,
    workspaces: FakeWorkspaces,
    runner,
    tmp_path: Path,
    *,
    parallel: int = 1,
) -> WaveExecutor:
    return WaveExecutor(
        repository=repository,
        tracker=tracker,
        workspaces=workspaces,
        runner=runner,
        options=ExecutionOptions(parallel=parallel, output_dir=tmp_path / "output"),
    )


def test_successful_item_is_completed_with_pr_recorded(
    repository: CheckpointRepository,
    tracker: FakeTracker,
    workspaces: FakeWorkspaces,
    tmp_path: Path,
) -> None:
    workflows = _plan(repository, 7)
    runner = FakeRunner(on_success=opens_pull_requests(tracker))

    result = _executor(repository, tracker, workspaces, runner, tmp_path).execute_wave(
        1,
        list(workflows.values()),
    )

    assert result.completed == [7]
    assert result.outcomes[7].pr_number == 107
    assert runner.prompts == ["/auto-issue 7"]
    assert runner.requests[0].cwd == workspaces.repo_root
    assert runner.requests[0].log_path == tmp_path / "output" / "issue-7.log"
    assert workspaces.sync_calls == 1
    checkpoint = repository.load_workflow(workflows[7].workflow_id)
    assert checkpoint is not None
    assert checkpoint.workflow.status == WorkflowStatus.COMPLETED
    assert checkpoint.workflow.phase == WorkflowPhase.EXECUTE
    action = repository.latest_action(workflows[7].workflow_id, "pr-created", ActionResult.SUCCESS)
    assert action is not None
    assert action.metadata is not None
    assert action.metadata["pr"] == 107
    assert action.metadata["source"] == "task-runner"


def test_pre_existing_pull_request_skips_the_runner(
    repository: CheckpointRepository,
    tracker: FakeTracker,
    workspaces: FakeWorkspaces,
    runner: FakeRunner,
    tmp_path: Path,
) -> None:
    workflows = _plan(repository, 3)
    tracker.open_pull_request(3)

    result = _executor(repository, tracker, workspaces, runner, tmp_path).execute_wave(
        1,
        list(workflows.values()),
    )

    assert result.completed == [3]
    assert result.outcomes[3].reused_existing is True
    assert runner.requests == []
    action = repository.latest_action(workflows[3].workflow_id, "pr-created")
    assert action is not None and action.metadata is not None
    assert action.metadata["source"] == "pre-existing"


def test_failed_runner_marks_item_failed_with_log_tail(
    repository: CheckpointRepository,
    tracker: FakeTracker,
    workspaces: FakeWorkspaces,
    tmp_path: Path,
) -> None:
    workflows = _plan(repository, 1, 2)
    runner = FakeRunner(exit_codes={"/auto-issue 1": 2}, on_success=opens_pull_requests(tracker))

    result = _executor(repository, tracker, workspaces, runner, tmp_path).execute_wave(
        1,
        list(workflows.values()),
    )

    assert result.failed == [1]
    assert result.completed == [2]
    checkpoint = repository.load_workflow(workflows[1].workflow_id)
    assert checkpoint is not None
    assert checkpoint.workflow.status == WorkflowStatus.FAILED
    failure = repository.latest_action(workflows[1].workflow_id, "auto-issue-failed")
    assert failure is not None and failure.metadata is not None
    assert failure.result == ActionResult.FAILED
    assert "exited with code 2" in failure.metadata["error"]
    assert "ran: /auto-issue 1" in failure.metadata["last_output"]


def test_runner_exception_is_isolated_to_its_item(
    repository: CheckpointRepository,
    tracker: FakeTracker,
    workspaces: FakeWorkspaces,
    tmp_path: Path,
) -> None:
    class _ExplodingRunner:
        def run(self, request: TaskRunRequest) -> TaskRunResult:
            if request.prompt.endswith(" 1"):
                raise ExecutionError("Task runner command not found: claude")
            tracker.open_pull_request(2)
            return TaskRunResult(exit_code=0, timed_out=False, log_path=request.log_path)

    workflows = _plan(repository, 1, 2)

    result = _executor(repository, tracker, workspaces, _ExplodingRunner(), tmp_path).execute_wave(
        1,
        list(workflows.values()),
    )

    assert result.failed == [1]
    assert result.outcomes[1].error == "Task runner command not found: claude"
    assert result.completed == [2]


def test_completed_workflows_are_skipped(
    repository: CheckpointRepository,
    tracker: FakeTracker,
    workspaces: FakeWorkspaces,
    runner: FakeRunner,
    tmp_path: Path,
) -> None:
    workflows = _plan(repository, 4)
    done = repository.set_workflow_status(workflows[4].workflow_id, WorkflowStatus.COMPLETED)

    result = _executor(repository, tracker, workspaces, runner, tmp_path).execute_wave(1, [done])

    assert result.completed == [4]
    assert runner.requests == []


def test_previously_failed_workflow_is_retried(
    repository: CheckpointRepository,
    tracker: FakeTracker,
    workspaces: FakeWorkspaces,
    tmp_path: Path,
) -> None:
    workflows = _plan(repository, 5)
    failed = repository.set_workflow_status(workflows[5].workflow_id, WorkflowStatus.FAILED)
    runner = FakeRunner(on_success=opens_pull_requests(tracker))

    _executor(repository, tracker, workspaces, runner, tmp_path).execute_wave(1, [failed])

    checkpoint = repository.load_workflow(failed.workflow_id)
    assert checkpoint is not None
    assert checkpoint.workflow.retry_count == 1
    assert checkpoint.workflow.status == WorkflowStatus.COMPLETED


def test_missing_pr_after_success_is_recorded_as_pending(
    repository: CheckpointRepository,
    tracker: FakeTracker,
    workspaces: FakeWorkspaces,
    runner: FakeRunner,
    tmp_path: Path,
) -> None:
    workflows = _plan(repository, 6)

    result = _executor(repository, tracker, workspaces, runner, tmp_path).execute_wave(
        1,
        list(workflows.values()),
    )

    assert result.completed == [6]
    assert result.outcomes[6].pr_number is None
    action = repository.latest_action(workflows[6].workflow_id, "no-pr-detected")
    assert action is not None
    assert action.result == ActionResult.PENDING


def test_parallel_execution_is_bounded_and_uses_worktrees(
    repository: CheckpointRepository,
    tracker: FakeTracker,
    workspaces: FakeWorkspaces,
    tmp_path: Path,
) -> None:
    workflows = _plan(repository, 1, 2, 3, 4, 5)
    runner = FakeRunner(on_success=opens_pull_requests(tracker), delay_seconds=0.05)

    result = _executor(
        repository,
        tracker,
        workspaces,
        runner,
        tmp_path,
        parallel=2,
    ).execute_wave(1, list(workflows.values()))

    assert result.completed == [1, 2, 3, 4, 5]
    assert runner.max_active <= 2
    assert len(runner.requests) == 5
    assert {request.cwd for request in runner.requests} == {
        workspaces.worktree_base / f"issue-{item}" for item in range(1, 6)
    }
    checkpoint = repository.load_workflow(workflows[3].workflow_id)
    assert checkpoint is not None
    assert checkpoint.workflow.worktree == str(workspaces.worktree_base / "issue-3")
