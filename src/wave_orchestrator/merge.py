"""Merge coordinator: auto-merge or notify-and-wait, then re-sync the primary branch."""

from __future__ import annotations

import logging
from collections.abc import Sequence
from dataclasses import dataclass, field

from wave_orchestrator.checkpoint.models import ActionResult, WorkflowPhase, WorkflowStatus
from wave_orchestrator.checkpoint.repository import CheckpointRepository
from wave_orchestrator.errors import CommandError, MergeError
from wave_orchestrator.notify import Notifier
from wave_orchestrator.tracker.base import IssueTracker
from wave_orchestrator.vcs import Workspaces

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class ReadyItem:
    """Item that passed the gate and awaits merging."""

    item_number: int
    workflow_id: str
    pr_number: int


@dataclass(slots=True)
class MergeResult:
    merged: set[int] = field(default_factory=set)
    failed: set[int] = field(default_factory=set)


def render_merge_notification(wave_number: int, ready: Sequence[ReadyItem]) -> str:
    lines = "\n".join(f"• PR #{item.pr_number} — issue #{item.item_number}" for item in ready)
    plural = "s" if len(ready) > 1 else ""
    return (
        f"Wave {wave_number} ready for review ({len(ready)} PR{plural}):\n"
        f"{lines}\n"
        "Reply when merged and ready to continue."
    )


class MergeCoordinator:
    """Merge ready items of one wave; each item succeeds or fails independently."""

    def __init__(
        self,
        *,
        repository: CheckpointRepository,
        tracker: IssueTracker,
        workspaces: Workspaces,
        notifier: Notifier,
    ) -> None:
        self.repository = repository
        self.tracker = tracker
        self.workspaces = workspaces
        self.notifier = notifier

    def merge_wave(
        self,
        wave_number: int,
        ready: Sequence[ReadyItem],
        *,
        auto_merge: bool,
    ) -> MergeResult:
        result = MergeResult()
        if not ready:
            return result

        for item in ready:
            self.repository.set_workflow_phase(item.workflow_id, WorkflowPhase.MERGE)
        if auto_merge:
            for item in ready:
                try:
                    self._merge_with_rebase_retry(item)
                except MergeError as error:
                    logger.error("PR #%d: merge failed: %s", item.pr_number, error)
                    self._record_failure(item, {"error": str(error)})
                    result.failed.add(item.item_number)
                else:
                    self._record_merged(item, mode="auto")
                    result.merged.add(item.item_number)
        else:
            self._notify_and_wait(wave_number, ready)
            for item in ready:
                if self._verify_merged(item):
                    self._record_merged(item, mode="manual")
                    result.merged.add(item.item_number)
                else:
                    result.failed.add(item.item_number)

        if result.merged:
            try:
                self.workspaces.sync_primary()
            except CommandError as error:
                logger.warning("Failed to pull the primary branch after merging: %s", error)
        return result

    def _merge_with_rebase_retry(self, item: ReadyItem) -> None:
        try:
            self.tracker.merge_pull_request(item.pr_number)
            return
        except CommandError as error:
            logger.warning(
                "PR #%d: merge failed (%s), rebasing and retrying once",
                item.pr_number,
                error,
            )
        try:
            self.tracker.update_branch(item.pr_number)
            self.tracker.merge_pull_request(item.pr_number)
        except CommandError as error:
            raise MergeError(f"PR #{item.pr_number} did not merge after rebase: {error}") from error

    def _notify_and_wait(self, wave_number: int, ready: Sequence[ReadyItem]) -> None:
        logger.info("Sending merge notification for wave %d...", wave_number)
        try:
            self.notifier.send(render_merge_notification(wave_number, ready))
        except CommandError as error:
            logger.error("Failed to send notification: %s", error)
        logger.info("Waiting for operator reply...")
        try:
            self.notifier.wait_for_reply()
        except CommandError as error:
            logger.warning("Notification wait error: %s", error)

    def _verify_merged(self, item: ReadyItem) -> bool:
        try:
            state = self.tracker.pull_request_state(item.pr_number)
        except CommandError as error:
            logger.warning("PR #%d: could not verify state: %s", item.pr_number, error)
            self._record_failure(item, {"error": str(error)})
            return False
        if state == "MERGED":
            logger.info("PR #%d: confirmed merged", item.pr_number)
            return True
        logger.warning("PR #%d: state is %s, not merged", item.pr_number, state)
        self._record_failure(item, {"state": state})
        return False

    def _record_merged(self, item: ReadyItem, *, mode: str) -> None:
        self.repository.log_action_safe(
            item.workflow_id,
            "pr-merged",
            ActionResult.SUCCESS,
            {"pr": item.pr_number, "mode": mode},
        )

    def _record_failure(self, item: ReadyItem, metadata: dict[str, object]) -> None:
        self.repository.set_workflow_status(item.workflow_id, WorkflowStatus.FAILED)
        self.repository.log_action_safe(
            item.workflow_id,
            "pr-merge-failed",
            ActionResult.FAILED,
            {"pr": item.pr_number, **metadata},
        )
