"""Top-level control flow: plan, gate, execute, validate and merge wave by wave."""

from __future__ import annotations

import logging
import re
from collections.abc import Sequence
from dataclasses import dataclass, field
from enum import Enum

from wave_orchestrator.baseline import BaselineCapture
from wave_orchestrator.checkpoint.models import (
    ActionResult,
    GateOutcome,
    MilestonePhase,
    MilestoneView,
    PlannedWorkflow,
    WorkflowStatus,
    WorkflowView,
)
from wave_orchestrator.checkpoint.repository import CheckpointRepository
from wave_orchestrator.config import Settings
from wave_orchestrator.errors import CommandError, PersistenceError, SetupError
from wave_orchestrator.execution.executor import (
    ExecutionOptions,
    WaveExecutionResult,
    WaveExecutor,
)
from wave_orchestrator.merge import MergeCoordinator, ReadyItem
from wave_orchestrator.notify import Notifier
from wave_orchestrator.planning.graph import DependencyGraphBuilder, WorkItem
from wave_orchestrator.planning.scheduler import (
    DependencyMap,
    Wave,
    dependency_map,
    gate_wave,
    toposort_waves,
)
from wave_orchestrator.recovery import ResumeManager, milestone_name_for
from wave_orchestrator.runner.base import TaskRunner
from wave_orchestrator.tracker.base import IssueTracker
from wave_orchestrator.validation.ci import CiWatcher
from wave_orchestrator.validation.gate import GateOptions, ReviewCiGate
from wave_orchestrator.vcs import Workspaces

logger = logging.getLogger(__name__)


class RunMode(str, Enum):
    EPIC = "epic"
    MILESTONE = "milestone"


@dataclass(slots=True)
class RunOptions:
    """One ``orchestrate`` invocation."""

    mode: RunMode
    target: str
    parallel: int = 1
    max_budget_usd: float = 5.0
    model: str = "sonnet"
    dry_run: bool = False
    wave: int | None = None
    skip_ci: bool = False
    skip_merge: bool = False
    resume: bool = False
    max_review_fixes: int = 1
    auto_merge: bool = False


@dataclass(slots=True)
class RunReport:
    milestone_name: str
    completed: int = 0
    failed: int = 0
    total: int = 0
    dry_run: bool = False
    lines: list[str] = field(default_factory=list)


@dataclass(slots=True)
class _Plan:
    waves: list[Wave]
    graph: DependencyMap
    titles: dict[int, str] = field(default_factory=dict)
    completed: set[int] = field(default_factory=set)
    workflows: dict[int, WorkflowView] = field(default_factory=dict)
    milestone: MilestoneView | None = None


class WaveOrchestrator:
    """Drive one run from dependency graph to merged pull requests.

    Collaborators are injected so the flow can be exercised against fakes.
    ``SetupError`` aborts before any store write; ``PersistenceError`` aborts
    mid-run; everything else is isolated per item.
    """

    def __init__(  # noqa: PLR0913
        self,
        *,
        settings: Settings,
        repository: CheckpointRepository,
        tracker: IssueTracker,
        workspaces: Workspaces,
        runner: TaskRunner,
        notifier: Notifier,
        ci_watcher: CiWatcher | None = None,
    ) -> None:
        self.settings = settings
        self.repository = repository
        self.tracker = tracker
        self.workspaces = workspaces
        self.runner = runner
        self.notifier = notifier
        self.ci_watcher = ci_watcher or CiWatcher(tracker, settings.gate)

    def run(self, options: RunOptions) -> RunReport:
        _validate_options(options)
        name = milestone_name_for(RunMode(options.mode).value, options.target)
        plan = self._load_plan(name, options)

        if options.wave is not None:
            selected = [wave for wave in plan.waves if wave.number == options.wave]
            if not selected:
                raise SetupError(
                    f"Wave {options.wave} not found (plan has {len(plan.waves)} wave(s))",
                )
            plan.waves = selected

        report = RunReport(milestone_name=name, dry_run=options.dry_run)
        report.lines.extend(_format_plan(name, plan))
        if options.dry_run:
            report.total = sum(len(wave.items) for wave in plan.waves)
            report.completed = len(plan.completed)
            report.lines.append("Dry run: no changes made.")
            return report

        if plan.milestone is None:
            recorded = self.repository.record_plan(
                name,
                [
                    PlannedWorkflow(
                        item_number=item,
                        branch=self.workspaces.branch_for(item),
                        wave_number=wave.number,
                    )
                    for wave in plan.waves
                    for item in wave.items
                ],
            )
            plan.milestone = recorded.milestone
            plan.workflows = {link.workflow.item_number: link.workflow for link in recorded.links}
            logger.info("Recorded milestone %s (%s)", name, plan.milestone.milestone_id)
            BaselineCapture(
                self.settings.baseline,
                cwd=self.workspaces.repo_root,
            ).capture_and_save(self.repository, plan.milestone.milestone_id)

        milestone_id = plan.milestone.milestone_id
        self._run_waves(plan, options, milestone_id)
        return self._finish(plan, options, report, milestone_id)

    def _load_plan(self, name: str, options: RunOptions) -> _Plan:
        if options.resume:
            state = ResumeManager(
                repository=self.repository,
                tracker=self.tracker,
                workspaces=self.workspaces,
            ).load(name, reconcile=not options.dry_run)
            return _Plan(
                waves=state.waves,
                graph=state.graph,
                completed=state.completed,
                workflows=state.workflows,
                milestone=state.milestone,
            )

        builder = DependencyGraphBuilder(self.tracker)
        if options.mode == RunMode.EPIC:
            items = builder.build_for_epic(int(options.target))
        else:
            items = builder.build_for_milestone(options.target)
        waves = toposort_waves(items)

        if not options.dry_run and self.repository.find_milestone_by_name(name) is not None:
            raise SetupError(f"Milestone {name!r} already exists. Use --resume to continue it.")
        return _Plan(waves=waves, graph=dependency_map(items), titles=_titles(items))

    def _run_waves(self, plan: _Plan, options: RunOptions, milestone_id: str) -> None:
        executor = WaveExecutor(
            repository=self.repository,
            tracker=self.tracker,
            workspaces=self.workspaces,
            runner=self.runner,
            options=ExecutionOptions(
                parallel=options.parallel,
                max_budget_usd=options.max_budget_usd,
                model=options.model,
                timeout_seconds=self.settings.runner.timeout_seconds,
                output_dir=self.settings.workspace.output_dir,
            ),
        )
        failed: set[int] = set()

        for wave in plan.waves:
            eligible, blocked = gate_wave(
                Wave(
                    number=wave.number,
                    items=tuple(item for item in wave.items if item not in plan.completed),
                ),
                failed,
                plan.graph,
            )
            eligible = sorted({*eligible, *(item for item in wave.items if item in plan.completed)})
            for item in blocked:
                self._mark_blocked(plan.workflows[item], failed, plan.graph, wave.number)
            failed.update(blocked)

            logger.info("=== Wave %d/%d ===", wave.number, len(plan.waves))
            self.repository.set_milestone_phase(milestone_id, MilestonePhase.EXECUTE)
            result = executor.execute_wave(
                wave.number,
                [plan.workflows[item] for item in eligible],
            )
            failed.update(result.failed)

            if result.completed and not (options.skip_ci and options.skip_merge):
                failed.update(self._review_and_merge(wave, result, options, milestone_id))

    def _mark_blocked(
        self,
        workflow: WorkflowView,
        failed: set[int],
        graph: DependencyMap,
        wave_number: int,
    ) -> None:
        blockers = sorted(graph.get(workflow.item_number, frozenset()) & failed)
        logger.warning(
            "Skipping #%d: blocked by failed dependencies %s",
            workflow.item_number,
            ", ".join(f"#{blocker}" for blocker in blockers),
        )
        self.repository.set_workflow_status(workflow.workflow_id, WorkflowStatus.FAILED)
        self.repository.log_action_safe(
            workflow.workflow_id,
            "blocked-by-dependency",
            ActionResult.FAILED,
            {"wave": wave_number, "blocked_by": blockers},
        )

    def _review_and_merge(
        self,
        wave: Wave,
        result: WaveExecutionResult,
        options: RunOptions,
        milestone_id: str,
    ) -> set[int]:
        """Gate the wave's completed items and merge the ready ones; returns failed items.

        With ``skip_merge`` ready items stay open for the operator.
        """

        self.repository.set_milestone_phase(milestone_id, MilestonePhase.REVIEW)
        gate = ReviewCiGate(
            repository=self.repository,
            tracker=self.tracker,
            workspaces=self.workspaces,
            runner=self.runner,
            ci_watcher=self.ci_watcher,
            options=GateOptions(
                skip_ci=options.skip_ci,
                max_ci_attempts=self.settings.gate.max_ci_attempts,
                max_review_fixes=options.max_review_fixes,
                ci_fix_budget_usd=self.settings.runner.ci_fix_budget,
                review_fix_budget_usd=self.settings.runner.review_fix_budget,
                model=options.model,
                timeout_seconds=self.settings.runner.timeout_seconds,
                output_dir=self.settings.workspace.output_dir,
            ),
        )
        failed: set[int] = set()
        ready: list[ReadyItem] = []
        for item in result.completed:
            outcome = result.outcomes[item]
            try:
                passed = self._gate_item(gate, item, outcome.workflow_id, outcome.pr_number, ready)
            except PersistenceError:
                raise
            except Exception as error:  # noqa: BLE001
                logger.error("[Wave %d] Review gate for #%d failed: %s", wave.number, item, error)
                self._fail_item(
                    outcome.workflow_id,
                    "review-gate-error",
                    {"wave": wave.number, "error": str(error)},
                )
                passed = False
            if not passed:
                failed.add(item)

        if ready and options.skip_merge:
            logger.info(
                "Wave %d: %d PR(s) ready, merge skipped",
                wave.number,
                len(ready),
            )
        elif ready:
            self.repository.set_milestone_phase(milestone_id, MilestonePhase.MERGE)
            merged = MergeCoordinator(
                repository=self.repository,
                tracker=self.tracker,
                workspaces=self.workspaces,
                notifier=self.notifier,
            ).merge_wave(wave.number, ready, auto_merge=options.auto_merge)
            failed.update(merged.failed)
        return failed

    def _gate_item(
        self,
        gate: ReviewCiGate,
        item: int,
        workflow_id: str,
        pr_number: int | None,
        ready: list[ReadyItem],
    ) -> bool:
        """Run one item through the gate; ready items are appended to ``ready``."""

        checkpoint = self.repository.load_workflow(workflow_id)
        if checkpoint is None or checkpoint.workflow.status != WorkflowStatus.COMPLETED:
            return False
        workflow = checkpoint.workflow
        pr_number = pr_number or self._recorded_pr(workflow)
        if pr_number is None:
            logger.warning("#%d: no PR found, cannot review or merge", item)
            self._fail_item(workflow_id, "pr-merge-failed", {"reason": "no pull request"})
            return False

        try:
            state = self.tracker.pull_request_state(pr_number)
        except CommandError as error:
            logger.warning("PR #%d: state lookup failed: %s", pr_number, error)
            self._fail_item(workflow_id, "pr-merge-failed", {"pr": pr_number, "error": str(error)})
            return False
        if state == "MERGED":
            logger.info("PR #%d (issue #%d) already merged", pr_number, item)
            return True
        if state != "OPEN":
            logger.warning("PR #%d (issue #%d) is %s, skipping", pr_number, item, state)
            self._fail_item(workflow_id, "pr-merge-failed", {"pr": pr_number, "state": state})
            return False

        if gate.evaluate(workflow, pr_number) != GateOutcome.READY:
            return False
        ready.append(ReadyItem(item_number=item, workflow_id=workflow_id, pr_number=pr_number))
        return True

    def _recorded_pr(self, workflow: WorkflowView) -> int | None:
        action = self.repository.latest_action(
            workflow.workflow_id,
            "pr-created",
            ActionResult.SUCCESS,
        )
        pr = (action.metadata or {}).get("pr") if action is not None else None
        return int(pr) if pr else None

    def _fail_item(self, workflow_id: str, action: str, metadata: dict[str, object]) -> None:
        checkpoint = self.repository.load_workflow(workflow_id)
        if checkpoint is not None and checkpoint.workflow.status != WorkflowStatus.FAILED:
            self.repository.set_workflow_status(workflow_id, WorkflowStatus.FAILED)
        self.repository.log_action_safe(workflow_id, action, ActionResult.FAILED, metadata)

    def _finish(
        self,
        plan: _Plan,
        options: RunOptions,
        report: RunReport,
        milestone_id: str,
    ) -> RunReport:
        self.repository.set_milestone_phase(milestone_id, MilestonePhase.CLEANUP)

        if options.parallel > 1:
            leftovers = self.workspaces.cleanup_worktrees(
                [item for wave in plan.waves for item in wave.items],
            )
            if leftovers:
                logger.warning(
                    "Could not remove worktrees for %s",
                    ", ".join(f"#{item}" for item in leftovers),
                )
        try:
            self.workspaces.sync_primary()
        except CommandError as error:
            logger.warning("Could not return to the primary branch: %s", error)

        if options.mode == RunMode.EPIC:
            self._update_epic(int(options.target))

        counts = self.repository.milestone_status_counts(milestone_id)
        if counts.failed:
            final_status = WorkflowStatus.FAILED
        elif counts.running or counts.paused:
            final_status = WorkflowStatus.RUNNING
        else:
            final_status = WorkflowStatus.COMPLETED
        self.repository.set_milestone_status(milestone_id, final_status)

        report.completed = counts.completed
        report.failed = counts.failed
        report.total = counts.total
        report.lines.append(
            f"Done: {counts.completed} completed, {counts.failed} failed of {counts.total}",
        )
        if counts.failed:
            report.lines.append(
                f"Resume with: orchestrate {RunMode(options.mode).value} {options.target} --resume",
            )
        return report

    def _update_epic(self, epic_number: int) -> None:
        """Tick checkboxes of closed sub-issues; close the epic once all are closed."""

        try:
            epic = self.tracker.get_issue(epic_number)
            sub_issues = self.tracker.list_sub_issues(epic_number)
        except CommandError as error:
            logger.warning("Could not refresh epic #%d: %s", epic_number, error)
            return

        closed = [issue.number for issue in sub_issues if not issue.is_open]
        body = tick_checkboxes(epic.body, closed)
        try:
            if body != epic.body:
                self.tracker.update_issue_body(epic_number, body)
                logger.info("Updated checkboxes in epic #%d", epic_number)
            if sub_issues and len(closed) == len(sub_issues):
                self.tracker.close_issue(epic_number)
                logger.info("All sub-issues closed, closed epic #%d", epic_number)
        except CommandError as error:
            logger.warning("Could not update epic #%d: %s", epic_number, error)


def tick_checkboxes(body: str, closed: Sequence[int]) -> str:
    """Mark ``- [ ] ... #N`` task-list lines as done for every closed item."""

    for number in closed:
        body = re.sub(
            rf"^(\s*)- \[ \](?=.*#{number}\b)",
            r"\1- [x]",
            body,
            flags=re.MULTILINE,
        )
    return body


def _validate_options(options: RunOptions) -> None:
    if options.mode == RunMode.EPIC and not options.target.strip().isdigit():
        raise SetupError(f"Epic target must be an issue number: {options.target!r}")
    if options.parallel < 1:
        raise SetupError("--parallel must be >= 1")
    if options.max_budget_usd <= 0:
        raise SetupError("--max-budget must be > 0")
    if options.max_review_fixes < 0:
        raise SetupError("--max-review-fixes must be >= 0")
    if options.wave is not None and options.wave < 1:
        raise SetupError("--wave must be >= 1")


def _titles(items: Sequence[WorkItem]) -> dict[int, str]:
    return {item.number: item.title for item in items}


def _format_plan(name: str, plan: _Plan) -> list[str]:
    total = sum(len(wave.items) for wave in plan.waves)
    lines = [f"Plan for {name}: {total} item(s) in {len(plan.waves)} wave(s)"]
    for wave in plan.waves:
        lines.append(f"Wave {wave.number}:")
        for item in wave.items:
            marker = "✓" if item in plan.completed else "○"
            title = plan.titles.get(item, "")
            deps = sorted(plan.graph.get(item, frozenset()))
            suffix = f" (after {', '.join(f'#{dep}' for dep in deps)})" if deps else ""
            lines.append(f"  {marker} #{item} {title}".rstrip() + suffix)
    return lines
