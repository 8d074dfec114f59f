"""Per-item review/CI gate with bounded automatic remediation."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from pathlib import Path

from wave_orchestrator.checkpoint.models import (
    ActionResult,
    CiState,
    GateOutcome,
    ReviewDecision,
    WorkflowPhase,
    WorkflowStatus,
    WorkflowView,
)
from wave_orchestrator.checkpoint.repository import CheckpointRepository
from wave_orchestrator.errors import CommandError, ExecutionError, ValidationError
from wave_orchestrator.runner.base import TaskRunner, TaskRunRequest
from wave_orchestrator.tracker.base import IssueTracker, ReviewFeedback
from wave_orchestrator.validation.ci import CiWatcher
from wave_orchestrator.vcs import Workspaces

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class GateOptions:
    """Per-run gate knobs."""

    skip_ci: bool = False
    max_ci_attempts: int = 2
    max_review_fixes: int = 1
    ci_fix_budget_usd: float = 2.0
    review_fix_budget_usd: float = 3.0
    model: str = "sonnet"
    timeout_seconds: int = 7_200
    output_dir: Path = Path(".claude/output")


def render_review_prompt(pr_number: int, feedback: ReviewFeedback) -> str:
    """Consolidate review feedback into one remediation prompt."""

    if feedback.is_empty():
        comments = "No review comments found."
    else:
        comments = f"Review comments for PR #{pr_number}:\n\n" + "\n\n".join(_sections(feedback))
    return (
        f"Address these review comments on PR #{pr_number}:\n{comments}\n"
        "Fix the issues, commit and push."
    )


def _sections(feedback: ReviewFeedback) -> list[str]:
    sections: list[str] = []
    if feedback.reviews:
        sections.append("## Reviews\n" + "\n".join(feedback.reviews))
    if feedback.conversation_comments:
        sections.append("## Conversation Comments\n" + "\n".join(feedback.conversation_comments))
    if feedback.inline_comments:
        sections.append("## Inline Comments\n" + "\n".join(feedback.inline_comments))
    return sections


class ReviewCiGate:
    """CI wait with bounded fixes, then review decision with bounded fixes.

    ``evaluate`` never raises for validation problems: the item is recorded as
    failed and ``GateOutcome.FAILED`` is returned.
    """

    def __init__(  # noqa: PLR0913
        self,
        *,
        repository: CheckpointRepository,
        tracker: IssueTracker,
        workspaces: Workspaces,
        runner: TaskRunner,
        ci_watcher: CiWatcher,
        options: GateOptions,
    ) -> None:
        self.repository = repository
        self.tracker = tracker
        self.workspaces = workspaces
        self.runner = runner
        self.ci_watcher = ci_watcher
        self.options = options

    def evaluate(self, workflow: WorkflowView, pr_number: int) -> GateOutcome:
        self.repository.set_workflow_phase(workflow.workflow_id, WorkflowPhase.REVIEW)
        try:
            if not self.options.skip_ci:
                logger.info("PR #%d: waiting for CI...", pr_number)
                self._ci_stage(workflow, pr_number)
                self.repository.log_action_safe(
                    workflow.workflow_id,
                    "ci-passed",
                    ActionResult.SUCCESS,
                    {"pr": pr_number},
                )
                logger.info("PR #%d: CI passed", pr_number)
            if self.options.max_review_fixes > 0:
                self._review_stage(workflow, pr_number)
        except ValidationError as error:
            logger.error("PR #%d: %s", pr_number, error)
            self.repository.set_workflow_status(workflow.workflow_id, WorkflowStatus.FAILED)
            return GateOutcome.FAILED

        self.repository.log_action_safe(
            workflow.workflow_id,
            "review-ready",
            ActionResult.SUCCESS,
            {"pr": pr_number},
        )
        return GateOutcome.READY

    def _ci_stage(self, workflow: WorkflowView, pr_number: int) -> None:
        if self.ci_watcher.wait(pr_number) == CiState.PASSED:
            return
        logger.warning("PR #%d: CI failed, attempting fix...", pr_number)

        for attempt in range(1, self.options.max_ci_attempts + 1):
            self.repository.log_action_safe(
                workflow.workflow_id,
                "ci-fix-attempt",
                ActionResult.PENDING,
                {"pr": pr_number, "attempt": attempt},
            )
            try:
                self._run_fix(
                    workflow,
                    pr_number,
                    prompt=(
                        f"Fix CI failures for PR #{pr_number}. "
                        "Run the failing checks, fix the issues, commit and push."
                    ),
                    budget_usd=self.options.ci_fix_budget_usd,
                    log_name=f"issue-{workflow.item_number}-ci-fix-{attempt}.log",
                )
            except (CommandError, ExecutionError) as error:
                logger.warning("PR #%d: CI fix attempt %d failed: %s", pr_number, attempt, error)
                continue
            if self.ci_watcher.wait(pr_number) == CiState.PASSED:
                logger.info("PR #%d: CI fixed on attempt %d", pr_number, attempt)
                return
            logger.warning("PR #%d: CI fix attempt %d failed", pr_number, attempt)

        self.repository.log_action_safe(
            workflow.workflow_id,
            "ci-failed",
            ActionResult.FAILED,
            {"pr": pr_number, "attempts": self.options.max_ci_attempts},
        )
        raise ValidationError(
            f"CI still failing after {self.options.max_ci_attempts} fix attempt(s)",
        )

    def _review_stage(self, workflow: WorkflowView, pr_number: int) -> None:
        decision = self._decision(pr_number)
        if decision != ReviewDecision.CHANGES_REQUESTED:
            logger.info("PR #%d: review decision %r, ready", pr_number, decision.value)
            return

        max_cycles = self.options.max_review_fixes
        for cycle in range(1, max_cycles + 1):
            logger.info("PR #%d: review-fix cycle %d/%d", pr_number, cycle, max_cycles)
            self.repository.log_action_safe(
                workflow.workflow_id,
                "review-fix-attempt",
                ActionResult.PENDING,
                {"pr": pr_number, "cycle": cycle},
            )
            feedback = self.tracker.review_feedback(pr_number)
            try:
                self._run_fix(
                    workflow,
                    pr_number,
                    prompt=render_review_prompt(pr_number, feedback),
                    budget_usd=self.options.review_fix_budget_usd,
                    log_name=f"issue-{workflow.item_number}-review-fix-{cycle}.log",
                )
            except (CommandError, ExecutionError) as error:
                self._record_review_failure(workflow, pr_number, cycle, str(error))
                raise ValidationError(f"review fix agent failed: {error}") from error

            if not self.options.skip_ci:
                logger.info("PR #%d: re-checking CI after review fix...", pr_number)
                self._ci_stage(workflow, pr_number)

            decision = self._decision(pr_number)
            if decision != ReviewDecision.CHANGES_REQUESTED:
                logger.info("PR #%d: review status now %r", pr_number, decision.value)
                return

        self._record_review_failure(workflow, pr_number, max_cycles, "changes still requested")
        raise ValidationError(
            f"still CHANGES_REQUESTED after {max_cycles} fix cycle(s)",
        )

    def _record_review_failure(
        self,
        workflow: WorkflowView,
        pr_number: int,
        cycle: int,
        reason: str,
    ) -> None:
        self.repository.log_action_safe(
            workflow.workflow_id,
            "review-fix-failed",
            ActionResult.FAILED,
            {"pr": pr_number, "cycle": cycle, "reason": reason},
        )

    def _decision(self, pr_number: int) -> ReviewDecision:
        try:
            return self.tracker.review_decision(pr_number)
        except CommandError as error:
            logger.warning("Could not fetch review decision for PR #%d: %s", pr_number, error)
            return ReviewDecision.NONE

    def _run_fix(  # noqa: PLR0913
        self,
        workflow: WorkflowView,
        pr_number: int,
        *,
        prompt: str,
        budget_usd: float,
        log_name: str,
    ) -> None:
        worktree = Path(workflow.worktree) if workflow.worktree else None
        if worktree is not None and worktree.exists():
            cwd = worktree
        else:
            try:
                branch = self.tracker.pull_request_branch(pr_number) or workflow.branch
            except CommandError:
                branch = workflow.branch
            self.workspaces.checkout_branch(branch, pull=True)
            cwd = self.workspaces.repo_root

        result = self.runner.run(
            TaskRunRequest(
                prompt=prompt,
                cwd=cwd,
                log_path=self.options.output_dir / log_name,
                budget_usd=budget_usd,
                model=self.options.model,
                timeout_seconds=self.options.timeout_seconds,
            ),
        )
        if not result.succeeded:
            logger.warning(
                "PR #%d: fix agent exited with code %d (see %s)",
                pr_number,
                result.exit_code,
                result.log_path,
            )
