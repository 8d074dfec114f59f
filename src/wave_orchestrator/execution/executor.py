"""Wave executor: run pending items of one wave with bounded concurrency."""

from __future__ import annotations

import logging
from collections.abc import Sequence
from dataclasses import dataclass, field
from functools import partial
from pathlib import Path

from wave_orchestrator.checkpoint.models import (
    ActionResult,
    WorkflowPhase,
    WorkflowStatus,
    WorkflowView,
)
from wave_orchestrator.checkpoint.repository import CheckpointRepository
from wave_orchestrator.errors import CommandError, ExecutionError, PersistenceError
from wave_orchestrator.runner.base import TaskRunner, TaskRunRequest, tail_lines
from wave_orchestrator.runner.pool import BoundedWorkerPool
from wave_orchestrator.tracker.base import IssueTracker, PullRequestRef
from wave_orchestrator.vcs import Workspaces

logger = logging.getLogger(__name__)

FAILURE_LOG_LINES = 20


@dataclass(slots=True)
class ExecutionOptions:
    """Per-run execution knobs."""

    parallel: int = 1
    max_budget_usd: float = 5.0
    model: str = "sonnet"
    timeout_seconds: int = 7_200
    output_dir: Path = Path(".claude/output")


@dataclass(slots=True)
class ItemOutcome:
    item_number: int
    workflow_id: str
    completed: bool
    pr_number: int | None = None
    reused_existing: bool = False
    error: str | None = None


@dataclass(slots=True)
class WaveExecutionResult:
    """Outcome of the execution phase of one wave."""

    wave_number: int
    outcomes: dict[int, ItemOutcome] = field(default_factory=dict)

    @property
    def completed(self) -> list[int]:
        return sorted(item for item, outcome in self.outcomes.items() if outcome.completed)

    @property
    def failed(self) -> list[int]:
        return sorted(item for item, outcome in self.outcomes.items() if not outcome.completed)


class WaveExecutor:
    """Delegate each pending item of a wave to the task runner.

    A failing item is recorded and isolated; only ``PersistenceError`` escapes
    and aborts the run.
    """

    def __init__(  # noqa: PLR0913
        self,
        *,
        repository: CheckpointRepository,
        tracker: IssueTracker,
        workspaces: Workspaces,
        runner: TaskRunner,
        options: ExecutionOptions,
    ) -> None:
        self.repository = repository
        self.tracker = tracker
        self.workspaces = workspaces
        self.runner = runner
        self.options = options

    def execute_wave(
        self,
        wave_number: int,
        workflows: Sequence[WorkflowView],
    ) -> WaveExecutionResult:
        result = WaveExecutionResult(wave_number=wave_number)
        pending: list[WorkflowView] = []
        for workflow in workflows:
            if workflow.status == WorkflowStatus.COMPLETED:
                result.outcomes[workflow.item_number] = ItemOutcome(
                    item_number=workflow.item_number,
                    workflow_id=workflow.workflow_id,
                    completed=True,
                )
            else:
                pending.append(workflow)

        if not pending:
            logger.info("Wave %d: all items already completed, skipping", wave_number)
            return result

        logger.info(
            "Wave %d: %d item(s) [parallel=%d]",
            wave_number,
            len(pending),
            self.options.parallel,
        )
        self.options.output_dir.mkdir(parents=True, exist_ok=True)
        pool = BoundedWorkerPool(max(1, self.options.parallel))
        outcomes = pool.run(
            {
                workflow.item_number: partial(self._execute_item, workflow, wave_number)
                for workflow in pending
            },
        )
        result.outcomes.update(outcomes)

        if result.failed:
            logger.warning(
                "Wave %d: %d item(s) failed: %s",
                wave_number,
                len(result.failed),
                ", ".join(f"#{item}" for item in result.failed),
            )
        return result

    def _execute_item(self, workflow: WorkflowView, wave_number: int) -> ItemOutcome:
        try:
            return self._run_item(workflow, wave_number)
        except PersistenceError:
            raise
        except Exception as error:  # noqa: BLE001
            logger.error("[Wave %d] Item #%d failed: %s", wave_number, workflow.item_number, error)
            self._mark_failed(workflow, wave_number, {"error": str(error)})
            return ItemOutcome(
                item_number=workflow.item_number,
                workflow_id=workflow.workflow_id,
                completed=False,
                error=str(error),
            )

    def _run_item(self, workflow: WorkflowView, wave_number: int) -> ItemOutcome:
        item = workflow.item_number
        checkpoint = self.repository.load_workflow(workflow.workflow_id)
        current = checkpoint.workflow if checkpoint is not None else workflow
        if current.status == WorkflowStatus.COMPLETED:
            return ItemOutcome(item_number=item, workflow_id=current.workflow_id, completed=True)

        existing = self._find_pull_request(current)
        if existing is not None:
            logger.info(
                "[Wave %d] Item #%d already has PR #%d (branch: %s), skipping",
                wave_number,
                item,
                existing.number,
                existing.head_branch,
            )
            self._mark_completed(current, wave_number, existing, source="pre-existing")
            return ItemOutcome(
                item_number=item,
                workflow_id=current.workflow_id,
                completed=True,
                pr_number=existing.number,
                reused_existing=True,
            )

        if current.status in {WorkflowStatus.FAILED, WorkflowStatus.PAUSED}:
            current = self.repository.retry_workflow(current.workflow_id)
        self.repository.set_workflow_phase(current.workflow_id, WorkflowPhase.EXECUTE)

        cwd = self._resolve_workspace(current)
        log_path = self.options.output_dir / f"issue-{item}.log"
        logger.info("[Wave %d] Starting item #%d -> %s", wave_number, item, log_path)
        run = self.runner.run(
            TaskRunRequest(
                prompt=f"/auto-issue {item}",
                cwd=cwd,
                log_path=log_path,
                budget_usd=self.options.max_budget_usd,
                model=self.options.model,
                timeout_seconds=self.options.timeout_seconds,
            ),
        )
        if not run.succeeded:
            last_output = tail_lines(log_path, FAILURE_LOG_LINES)
            logger.error(
                "[Wave %d] Task runner exited with code %d for #%d%s\nLast output:\n%s",
                wave_number,
                run.exit_code,
                item,
                " (timed out)" if run.timed_out else "",
                last_output,
            )
            raise ExecutionError(
                f"Task runner exited with code {run.exit_code}"
                + (" after timeout" if run.timed_out else ""),
            )

        pr = self._find_pull_request(current)
        self._mark_completed(current, wave_number, pr, source="task-runner")
        if pr is None:
            logger.warning("[Wave %d] Item #%d completed but no PR detected", wave_number, item)
        else:
            logger.info("[Wave %d] Item #%d completed -> PR #%d", wave_number, item, pr.number)
        return ItemOutcome(
            item_number=item,
            workflow_id=current.workflow_id,
            completed=True,
            pr_number=pr.number if pr is not None else None,
        )

    def _resolve_workspace(self, workflow: WorkflowView) -> Path:
        if self.options.parallel <= 1:
            try:
                self.workspaces.sync_primary()
            except CommandError as error:
                logger.warning(
                    "Could not reset to primary branch before #%d: %s",
                    workflow.item_number,
                    error,
                )
            return self.workspaces.repo_root

        path = self.workspaces.ensure_worktree(workflow.item_number)
        if workflow.worktree != str(path):
            self.repository.set_workflow_worktree(workflow.workflow_id, str(path))
        return path

    def _find_pull_request(self, workflow: WorkflowView) -> PullRequestRef | None:
        try:
            return self.tracker.find_pull_request(workflow.branch)
        except CommandError as error:
            logger.warning("PR lookup failed for #%d: %s", workflow.item_number, error)
            return None

    def _mark_completed(
        self,
        workflow: WorkflowView,
        wave_number: int,
        pr: PullRequestRef | None,
        *,
        source: str,
    ) -> None:
        self.repository.set_workflow_status(workflow.workflow_id, WorkflowStatus.COMPLETED)
        if pr is None:
            self.repository.log_action_safe(
                workflow.workflow_id,
                "no-pr-detected",
                ActionResult.PENDING,
                {"wave": wave_number},
            )
            return
        self.repository.log_action_safe(
            workflow.workflow_id,
            "pr-created",
            ActionResult.SUCCESS,
            {"pr": pr.number, "wave": wave_number, "source": source, "url": pr.url},
        )

    def _mark_failed(
        self,
        workflow: WorkflowView,
        wave_number: int,
        metadata: dict[str, object],
    ) -> None:
        log_path = self.options.output_dir / f"issue-{workflow.item_number}.log"
        current = self.repository.load_workflow(workflow.workflow_id)
        if current is not None and current.workflow.status != WorkflowStatus.FAILED:
            self.repository.set_workflow_status(workflow.workflow_id, WorkflowStatus.FAILED)
        self.repository.log_action_safe(
            workflow.workflow_id,
            "auto-issue-failed",
            ActionResult.FAILED,
            {
                **metadata,
                "wave": wave_number,
                "log_path": str(log_path),
                "last_output": tail_lines(log_path, FAILURE_LOG_LINES),
            },
        )
