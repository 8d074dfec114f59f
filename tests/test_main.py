from __future__ import annotations

import json
from pathlib import Path

import allure
import pytest
from click.testing import CliRunner
from fakes import FakeNotifier, FakeRunner, FakeTracker, FakeWorkspaces, opens_pull_requests

from wave_orchestrator.controllers import Collaborators, OrchestrateCliController
from wave_orchestrator.main import orchestrate

pytestmark = [
    allure.epic("CLI"),
    allure.feature("orchestrate Commands"),
]


@pytest.fixture()
def cli_tracker(tmp_path: Path, monkeypatch) -> FakeTracker:
    """Point the CLI at fake collaborators rooted in ``tmp_path``."""

    monkeypatch.setenv("WAVE_ORCHESTRATOR_REPO_ROOT", str(tmp_path))
    tracker = FakeTracker()
    tracker.add_issue(1, title="schema")
    tracker.add_issue(2, title="api", blocked_by=[1])
    tracker.add_epic(7, [1, 2], body="- [ ] #1\n- [ ] #2\n")
    workspaces = FakeWorkspaces(tmp_path)
    runner = FakeRunner(on_success=opens_pull_requests(tracker))

    def _collaborators(_settings) -> Collaborators:
        return Collaborators(
            tracker=tracker,
            workspaces=workspaces,
            runner=runner,
            notifier=FakeNotifier(),
        )

    monkeypatch.setattr(
        "wave_orchestrator.main.CONTROLLER",
        OrchestrateCliController(collaborators_factory=_collaborators),
    )
    return tracker


def test_epic_dry_run_prints_plan(cli_tracker: FakeTracker, tmp_path: Path) -> None:
    db_path = tmp_path / "state.db"

    result = CliRunner().invoke(orchestrate, ["epic", "7", "--dry-run", "--db-path", str(db_path)])

    assert result.exit_code == 0, result.output
    assert "Plan for epic-7: 2 item(s) in 2 wave(s)" in result.output
    assert "#2 api (after #1)" in result.output
    assert "Dry run: no changes made." in result.output


def test_dry_run_leaves_no_store_behind(cli_tracker: FakeTracker, tmp_path: Path) -> None:
    db_path = tmp_path / "dry" / "state.db"

    result = CliRunner().invoke(orchestrate, ["epic", "7", "--dry-run", "--db-path", str(db_path)])

    assert result.exit_code == 0, result.output
    assert not db_path.exists()


def test_resume_dry_run_without_store_fails(cli_tracker: FakeTracker, tmp_path: Path) -> None:
    db_path = tmp_path / "state.db"

    result = CliRunner().invoke(
        orchestrate,
        ["epic", "7", "--resume", "--dry-run", "--db-path", str(db_path)],
    )

    assert result.exit_code == 1
    assert "nothing to resume" in result.output
    assert not db_path.exists()


def test_epic_run_then_status(cli_tracker: FakeTracker, tmp_path: Path) -> None:
    db_path = tmp_path / "state.db"
    runner = CliRunner()

    run = runner.invoke(orchestrate, ["epic", "7", "--skip-merge", "--db-path", str(db_path)])
    status = runner.invoke(orchestrate, ["status", "epic", "7", "--db-path", str(db_path)])

    assert run.exit_code == 0, run.output
    assert "Done: 2 completed, 0 failed of 2" in run.output
    assert status.exit_code == 0, status.output
    assert "Status: completed" in status.output
    assert "Wave 2:" in status.output
    assert "#2 completed" in status.output


def test_repeated_run_without_resume_fails(cli_tracker: FakeTracker, tmp_path: Path) -> None:
    db_path = tmp_path / "state.db"
    runner = CliRunner()
    runner.invoke(orchestrate, ["epic", "7", "--skip-merge", "--db-path", str(db_path)])

    again = runner.invoke(orchestrate, ["epic", "7", "--skip-merge", "--db-path", str(db_path)])

    assert again.exit_code == 1
    assert "--resume" in again.output


def test_status_for_unknown_run(cli_tracker: FakeTracker, tmp_path: Path) -> None:
    result = CliRunner().invoke(
        orchestrate,
        ["status", "milestone", "Sprint 9", "--db-path", str(tmp_path / "state.db")],
    )

    assert result.exit_code == 0
    assert "No stored run for 'Sprint 9'." in result.output


def test_db_health_reports_healthy_store(tmp_path: Path) -> None:
    result = CliRunner().invoke(orchestrate, ["db-health", "--db-path", str(tmp_path / "h.db")])

    assert result.exit_code == 0, result.output
    assert "Healthy: yes" in result.output


def test_invalid_parallel_is_rejected_by_cli(cli_tracker: FakeTracker) -> None:
    result = CliRunner().invoke(orchestrate, ["epic", "7", "--parallel", "0"])

    assert result.exit_code == 2


def _checkpoint(db_path: Path, *args: str) -> str:
    result = CliRunner().invoke(orchestrate, ["checkpoint", *args, "--db-path", str(db_path)])
    assert result.exit_code == 0, result.output
    return result.output


def test_checkpoint_commands_record_a_workflow(tmp_path: Path) -> None:
    db_path = tmp_path / "state.db"
    created = json.loads(_checkpoint(db_path, "create", "12", "feat/issue-12", "/wt/12"))
    workflow_id = created["id"]

    assert created["status"] == "running"
    assert "Phase set to: implement" in _checkpoint(db_path, "set-phase", workflow_id, "implement")
    assert "Action logged: pr-created (success)" in _checkpoint(
        db_path, "log-action", workflow_id, "pr-created", "success", '{"pr": 112}'
    )
    assert "Commit logged: abcdef1" in _checkpoint(
        db_path, "log-commit", workflow_id, "abcdef1234", "add endpoint"
    )
    assert "Retry count: 1" in _checkpoint(db_path, "increment-retry", workflow_id)
    completed = _checkpoint(db_path, "set-status", workflow_id, "completed")
    assert "Status set to: completed" in completed

    found = json.loads(_checkpoint(db_path, "find", "12"))
    assert found["workflow"]["id"] == workflow_id
    assert found["workflow"]["phase"] == "implement"
    assert found["workflow"]["retry_count"] == 1
    assert found["actions"][0]["metadata"] == {"pr": 112}
    assert [commit["sha"] for commit in found["commits"]] == ["abcdef1234"]
    assert json.loads(_checkpoint(db_path, "list-active")) == []
    assert _checkpoint(db_path, "find", "99").strip() == "null"


def test_checkpoint_cleanup_stale_uses_default_threshold(tmp_path: Path) -> None:
    db_path = tmp_path / "state.db"
    _checkpoint(db_path, "create", "5", "feat/issue-5")

    assert len(json.loads(_checkpoint(db_path, "list-active"))) == 1
    output = _checkpoint(db_path, "cleanup-stale")

    assert "Stale workflows marked failed: 0 (threshold=24h)" in output


def test_checkpoint_rejects_unknown_workflow_and_bad_metadata(tmp_path: Path) -> None:
    db_path = tmp_path / "state.db"
    workflow_id = json.loads(_checkpoint(db_path, "create", "3", "feat/issue-3"))["id"]
    runner = CliRunner()

    unknown = runner.invoke(
        orchestrate,
        ["checkpoint", "increment-retry", "workflow-missing", "--db-path", str(db_path)],
    )
    bad_metadata = runner.invoke(
        orchestrate,
        [
            "checkpoint",
            "log-action",
            workflow_id,
            "pr-created",
            "success",
            "{not json",
            "--db-path",
            str(db_path),
        ],
    )

    assert unknown.exit_code == 1
    assert "Workflow not found" in unknown.output
    assert bad_metadata.exit_code == 1
    assert "Invalid JSON metadata" in bad_metadata.output
