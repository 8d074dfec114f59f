"""Git collaborator: primary checkout sync and per-item isolated worktrees."""

from __future__ import annotations

import logging
from collections.abc import Iterable
from pathlib import Path
from typing import Protocol

from wave_orchestrator.config import WorkspaceSettings
from wave_orchestrator.errors import CommandError
from wave_orchestrator.shell import run_command

logger = logging.getLogger(__name__)

_GIT_TIMEOUT_SECONDS = 300.0


class Workspaces(Protocol):
    """Workspace operations the orchestrator relies on."""

    repo_root: Path

    def branch_for(self, item_number: int) -> str: ...

    def find_worktree(self, item_number: int) -> Path | None: ...

    def sync_primary(self) -> None: ...

    def checkout_branch(self, branch: str, *, pull: bool = False) -> None: ...

    def ensure_worktree(self, item_number: int) -> Path: ...

    def cleanup_worktrees(self, item_numbers: Iterable[int]) -> list[int]: ...


class GitWorkspaces:
    """Workspaces for task runners, rooted at the primary checkout."""

    def __init__(self, settings: WorkspaceSettings) -> None:
        self.settings = settings
        self.repo_root = settings.repo_root.resolve()

    @property
    def primary_branch(self) -> str:
        return self.settings.primary_branch

    def branch_for(self, item_number: int) -> str:
        return self.settings.branch_template.format(item=item_number)

    def worktree_path(self, item_number: int) -> Path:
        return self.settings.worktree_base / f"{self.repo_root.name}-issue-{item_number}"

    def find_worktree(self, item_number: int) -> Path | None:
        path = self.worktree_path(item_number)
        return path if path.exists() else None

    def sync_primary(self) -> None:
        """Switch the primary checkout to the primary branch and pull it."""

        self._git("checkout", self.primary_branch, "--quiet")
        self._git("pull", "origin", self.primary_branch, "--quiet")

    def checkout_branch(self, branch: str, *, pull: bool = False) -> None:
        self._git("checkout", branch, "--quiet")
        if pull:
            self._git("pull", "origin", branch, "--quiet")

    def ensure_worktree(self, item_number: int) -> Path:
        """Create (or reuse) the isolated worktree owned by one item."""

        path = self.worktree_path(item_number)
        if path.exists():
            logger.warning("Reusing existing worktree for #%d at %s", item_number, path)
            return path

        branch = self.branch_for(item_number)
        path.parent.mkdir(parents=True, exist_ok=True)
        if self._branch_exists(branch):
            self._git("worktree", "add", str(path), branch)
        else:
            self._git("worktree", "add", "-b", branch, str(path), self.primary_branch)
        logger.info("Created worktree for #%d at %s", item_number, path)
        return path

    def cleanup_worktrees(self, item_numbers: Iterable[int]) -> list[int]:
        """Remove worktrees of the given items; returns items that failed to clean."""

        failed: list[int] = []
        for item_number in item_numbers:
            path = self.find_worktree(item_number)
            if path is None:
                continue
            try:
                self._git("worktree", "remove", "--force", str(path))
            except CommandError as error:
                logger.warning("Could not remove worktree %s: %s", path, error)
                failed.append(item_number)
        try:
            self._git("worktree", "prune")
        except CommandError as error:
            logger.warning("git worktree prune failed: %s", error)
        return failed

    def _branch_exists(self, branch: str) -> bool:
        completed = run_command(
            ["git", "-C", str(self.repo_root), "rev-parse", "--verify", "--quiet", branch],
            timeout=_GIT_TIMEOUT_SECONDS,
            check=False,
        )
        return completed.returncode == 0

    def _git(self, *args: str) -> str:
        return run_command(
            ["git", "-C", str(self.repo_root), *args],
            timeout=_GIT_TIMEOUT_SECONDS,
        ).stdout
