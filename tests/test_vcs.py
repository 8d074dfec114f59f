from __future__ import annotations

import subprocess
from pathlib import Path

import allure
import pytest

from wave_orchestrator.config import NotifySettings, WorkspaceSettings
from wave_orchestrator.errors import CommandError
from wave_orchestrator.notify import CommandNotifier
from wave_orchestrator.vcs import GitWorkspaces

pytestmark = [
    allure.epic("Workspaces"),
    allure.feature("Git Worktrees & Notifications"),
]


class _RecordingRun:
    def __init__(self, *, fail_on: str | None = None, missing_branches: bool = True) -> None:
        self.calls: list[list[str]] = []
        self.fail_on = fail_on
        self.missing_branches = missing_branches

    def __call__(self, argv, *, cwd=None, timeout=None, check=True):
        argv = list(argv)
        self.calls.append(argv)
        if self.fail_on is not None and self.fail_on in argv and check:
            raise CommandError(f"{self.fail_on} failed")
        code = 1 if "rev-parse" in argv and self.missing_branches else 0
        return subprocess.CompletedProcess(argv, code, "", "")


@pytest.fixture()
def settings(tmp_path: Path) -> WorkspaceSettings:
    root = tmp_path / "widgets"
    root.mkdir()
    return WorkspaceSettings(repo_root=root, worktree_base=tmp_path / "worktrees")


def test_branch_and_worktree_naming(settings: WorkspaceSettings) -> None:
    workspaces = GitWorkspaces(settings)

    assert workspaces.branch_for(12) == "feat/issue-12"
    assert workspaces.worktree_path(12) == settings.worktree_base / "widgets-issue-12"
    assert workspaces.find_worktree(12) is None


def test_ensure_worktree_creates_branch_from_primary(
    settings: WorkspaceSettings,
    monkeypatch,
) -> None:
    run = _RecordingRun()
    monkeypatch.setattr("wave_orchestrator.vcs.run_command", run)
    workspaces = GitWorkspaces(settings)

    path = workspaces.ensure_worktree(3)

    root = str(workspaces.repo_root)
    assert run.calls[-1] == [
        "git",
        "-C",
        root,
        "worktree",
        "add",
        "-b",
        "feat/issue-3",
        str(path),
        "main",
    ]


def test_ensure_worktree_reuses_existing_branch_and_path(
    settings: WorkspaceSettings,
    monkeypatch,
) -> None:
    run = _RecordingRun(missing_branches=False)
    monkeypatch.setattr("wave_orchestrator.vcs.run_command", run)
    workspaces = GitWorkspaces(settings)

    path = workspaces.ensure_worktree(4)
    assert run.calls[-1][-3:] == ["add", str(path), "feat/issue-4"]

    path.mkdir(parents=True)
    calls_before = len(run.calls)
    assert workspaces.ensure_worktree(4) == path
    assert len(run.calls) == calls_before


def test_cleanup_reports_worktrees_that_could_not_be_removed(
    settings: WorkspaceSettings,
    monkeypatch,
) -> None:
    run = _RecordingRun(fail_on="remove")
    monkeypatch.setattr("wave_orchestrator.vcs.run_command", run)
    workspaces = GitWorkspaces(settings)
    workspaces.worktree_path(1).mkdir(parents=True)

    leftovers = workspaces.cleanup_worktrees([1, 2])

    assert leftovers == [1]
    assert run.calls[-1][-2:] == ["worktree", "prune"]


def test_sync_primary_checks_out_and_pulls(settings: WorkspaceSettings, monkeypatch) -> None:
    run = _RecordingRun()
    monkeypatch.setattr("wave_orchestrator.vcs.run_command", run)

    GitWorkspaces(settings).sync_primary()

    assert [call[3:] for call in run.calls] == [
        ["checkout", "main", "--quiet"],
        ["pull", "origin", "main", "--quiet"],
    ]


def test_notifier_quotes_message_into_send_template(monkeypatch) -> None:
    run = _RecordingRun()
    monkeypatch.setattr("wave_orchestrator.notify.run_command", run)
    notifier = CommandNotifier(NotifySettings())

    notifier.send("Wave 1 ready\n• PR #5")
    notifier.wait_for_reply()

    assert run.calls == [["tg-send", "Wave 1 ready\n• PR #5"], ["tg-wait", "-q"]]
