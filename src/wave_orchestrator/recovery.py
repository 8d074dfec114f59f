"""Resume an interrupted run from the checkpoint store."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field

from wave_orchestrator.checkpoint.models import (
    ActionResult,
    MilestonePhase,
    MilestoneView,
    WorkflowStatus,
    WorkflowView,
)
from wave_orchestrator.checkpoint.repository import CheckpointRepository
from wave_orchestrator.errors import CommandError, SetupError
from wave_orchestrator.planning.scheduler import Wave, infer_graph_from_waves
from wave_orchestrator.tracker.base import IssueTracker
from wave_orchestrator.vcs import Workspaces

logger = logging.getLogger(__name__)


def milestone_name_for(mode: str, target: str) -> str:
    """Name under which a run is checkpointed: ``epic-<n>`` or the milestone target."""

    return f"epic-{target}" if mode == "epic" else target


@dataclass(slots=True)
class ResumeState:
    """Plan reconstructed from the store."""

    milestone: MilestoneView
    waves: list[Wave]
    workflows: dict[int, WorkflowView] = field(default_factory=dict)
    completed: set[int] = field(default_factory=set)
    graph: dict[int, frozenset[int]] = field(default_factory=dict)


class ResumeManager:
    """Reload a stored plan and reconcile it with tracker and workspace reality."""

    def __init__(
        self,
        *,
        repository: CheckpointRepository,
        tracker: IssueTracker,
        workspaces: Workspaces,
    ) -> None:
        self.repository = repository
        self.tracker = tracker
        self.workspaces = workspaces

    def load(self, name: str, *, reconcile: bool = True) -> ResumeState:
        """Load the milestone called ``name``.

        With ``reconcile`` the workflows are brought up to date (items with an
        existing pull request become completed, interrupted items become
        failed) and the milestone is reset to running/execute. Without it the
        store is only read.
        """

        milestone = self.repository.find_milestone_by_name(name)
        if milestone is None:
            raise SetupError(f"No existing milestone {name!r} to resume. Run without --resume.")
        links = self.repository.list_milestone_links(milestone.milestone_id)
        if not links:
            raise SetupError(f"Milestone {name!r} has no linked workflows to resume")
        logger.info(
            "Resuming milestone %s (%s): %d workflow(s)",
            name,
            milestone.milestone_id,
            len(links),
        )

        by_wave: dict[int, list[int]] = {}
        workflows: dict[int, WorkflowView] = {}
        for link in links:
            workflow = self._reconcile(link.workflow) if reconcile else link.workflow
            workflows[workflow.item_number] = workflow
            by_wave.setdefault(link.wave_number or 1, []).append(workflow.item_number)

        waves = [
            Wave(number=number, items=tuple(sorted(items)))
            for number, items in sorted(by_wave.items())
        ]
        completed = {
            item
            for item, workflow in workflows.items()
            if workflow.status == WorkflowStatus.COMPLETED
        }
        if reconcile:
            milestone = self.repository.set_milestone_status(
                milestone.milestone_id,
                WorkflowStatus.RUNNING,
            )
            milestone = self.repository.set_milestone_phase(
                milestone.milestone_id,
                MilestonePhase.EXECUTE,
            )
        logger.info("Resume: %d/%d item(s) already completed", len(completed), len(workflows))
        return ResumeState(
            milestone=milestone,
            waves=waves,
            workflows=workflows,
            completed=completed,
            graph=infer_graph_from_waves(waves),
        )

    def _reconcile(self, workflow: WorkflowView) -> WorkflowView:
        if workflow.status == WorkflowStatus.COMPLETED:
            return workflow
        item = workflow.item_number

        recorded = self.repository.latest_action(
            workflow.workflow_id,
            "pr-created",
            ActionResult.SUCCESS,
        )
        recorded_pr = (recorded.metadata or {}).get("pr") if recorded is not None else None
        if recorded_pr:
            logger.info("#%d: PR #%s already recorded, marking completed", item, recorded_pr)
            return self.repository.set_workflow_status(
                workflow.workflow_id,
                WorkflowStatus.COMPLETED,
            )

        try:
            pr = self.tracker.find_pull_request(workflow.branch)
        except CommandError as error:
            logger.warning("#%d: PR lookup failed during resume: %s", item, error)
            pr = None
        if pr is not None:
            logger.info(
                "#%d: found PR #%d on %s, marking completed",
                item,
                pr.number,
                pr.head_branch,
            )
            updated = self.repository.set_workflow_status(
                workflow.workflow_id,
                WorkflowStatus.COMPLETED,
            )
            self.repository.log_action_safe(
                workflow.workflow_id,
                "pr-created",
                ActionResult.SUCCESS,
                {"pr": pr.number, "source": "pre-existing", "url": pr.url},
            )
            return updated

        if self.workspaces.find_worktree(item) is not None:
            logger.warning("#%d: worktree exists but no PR, will re-execute", item)

        if workflow.status == WorkflowStatus.RUNNING:
            logger.info("#%d: interrupted while running, marking failed for retry", item)
            updated = self.repository.set_workflow_status(
                workflow.workflow_id,
                WorkflowStatus.FAILED,
            )
            self.repository.log_action_safe(
                workflow.workflow_id,
                "resume-interrupted",
                ActionResult.FAILED,
                {"phase": workflow.phase.value},
            )
            return updated
        return workflow
