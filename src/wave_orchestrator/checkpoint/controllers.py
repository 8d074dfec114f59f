"""Controller for the `orchestrate checkpoint` commands used by delegated task runners.

Every command opens the shared store, performs one operation and closes it, so
task-runner processes can write alongside a running orchestrator.
"""

from __future__ import annotations

import json
from collections.abc import Callable, Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path
from typing import Any

from wave_orchestrator.checkpoint.models import (
    ActionResult,
    WorkflowPhase,
    WorkflowStatus,
    WorkflowView,
)
from wave_orchestrator.checkpoint.repository import CheckpointRepository
from wave_orchestrator.config import Settings
from wave_orchestrator.controllers import CommandResult
from wave_orchestrator.errors import InvalidTransitionError, PersistenceError


@dataclass(slots=True)
class CheckpointCreateCommand:
    item_number: int
    branch: str
    worktree: str | None = None
    db_path: Path | None = None


@dataclass(slots=True)
class CheckpointFindCommand:
    item_number: int
    db_path: Path | None = None


@dataclass(slots=True)
class CheckpointUpdateCommand:
    """Phase or status change for one workflow."""

    workflow_id: str
    phase: str | None = None
    status: str | None = None
    db_path: Path | None = None


@dataclass(slots=True)
class CheckpointLogActionCommand:
    workflow_id: str
    action: str
    result: str
    metadata_json: str | None = None
    db_path: Path | None = None


@dataclass(slots=True)
class CheckpointLogCommitCommand:
    workflow_id: str
    sha: str
    message: str
    db_path: Path | None = None


@dataclass(slots=True)
class CheckpointWorkflowCommand:
    workflow_id: str
    db_path: Path | None = None


@dataclass(slots=True)
class CheckpointStoreCommand:
    """Store-wide command; ``hours`` overrides the stale threshold."""

    db_path: Path | None = None
    hours: int | None = None


class CheckpointCliController:
    """Thin CLI surface over `CheckpointRepository` with JSON output for reads."""

    def create(self, command: CheckpointCreateCommand) -> CommandResult:
        def _create(repository: CheckpointRepository) -> list[str]:
            workflow = repository.create_workflow(
                item_number=command.item_number,
                branch=command.branch,
                worktree=command.worktree,
            )
            return [json.dumps(workflow_payload(workflow))]

        return _execute(command.db_path, _create)

    def find(self, command: CheckpointFindCommand) -> CommandResult:
        """Most recent workflow for an item with its audit trail, or `null`."""

        def _find(repository: CheckpointRepository) -> list[str]:
            workflow = repository.find_workflow_by_item(command.item_number)
            checkpoint = (
                repository.load_workflow(workflow.workflow_id) if workflow is not None else None
            )
            if checkpoint is None:
                return ["null"]
            payload = {
                "workflow": workflow_payload(checkpoint.workflow),
                "actions": [
                    {
                        "action": action.action,
                        "result": action.result.value,
                        "metadata": action.metadata,
                        "created_at": action.created_at.isoformat(),
                    }
                    for action in checkpoint.actions
                ],
                "commits": [
                    {
                        "sha": commit.sha,
                        "message": commit.message,
                        "created_at": commit.created_at.isoformat(),
                    }
                    for commit in checkpoint.commits
                ],
            }
            return [json.dumps(payload, indent=2, ensure_ascii=False)]

        return _execute(command.db_path, _find)

    def set_phase(self, command: CheckpointUpdateCommand) -> CommandResult:
        phase = WorkflowPhase(command.phase)

        def _set_phase(repository: CheckpointRepository) -> list[str]:
            repository.set_workflow_phase(command.workflow_id, phase)
            return [f"Phase set to: {phase.value}"]

        return _execute(command.db_path, _set_phase)

    def set_status(self, command: CheckpointUpdateCommand) -> CommandResult:
        status = WorkflowStatus(command.status)

        def _set_status(repository: CheckpointRepository) -> list[str]:
            repository.set_workflow_status(command.workflow_id, status)
            return [f"Status set to: {status.value}"]

        return _execute(command.db_path, _set_status)

    def log_action(self, command: CheckpointLogActionCommand) -> CommandResult:
        result = ActionResult(command.result)
        metadata: dict[str, Any] | None = None
        if command.metadata_json:
            try:
                metadata = json.loads(command.metadata_json)
            except json.JSONDecodeError as error:
                return CommandResult(
                    success=False,
                    error=f"Invalid JSON metadata: {error}",
                )
            if not isinstance(metadata, dict):
                return CommandResult(
                    success=False,
                    error="Metadata must be a JSON object.",
                )

        def _log_action(repository: CheckpointRepository) -> list[str]:
            repository.log_action(command.workflow_id, command.action, result, metadata)
            return [f"Action logged: {command.action} ({result.value})"]

        return _execute(command.db_path, _log_action)

    def log_commit(self, command: CheckpointLogCommitCommand) -> CommandResult:
        def _log_commit(repository: CheckpointRepository) -> list[str]:
            repository.log_commit(command.workflow_id, command.sha, command.message)
            return [f"Commit logged: {command.sha[:7]}"]

        return _execute(command.db_path, _log_commit)

    def increment_retry(self, command: CheckpointWorkflowCommand) -> CommandResult:
        def _increment(repository: CheckpointRepository) -> list[str]:
            return [f"Retry count: {repository.increment_retry(command.workflow_id)}"]

        return _execute(command.db_path, _increment)

    def list_active(self, command: CheckpointStoreCommand) -> CommandResult:
        def _list(repository: CheckpointRepository) -> list[str]:
            workflows = repository.list_active_workflows()
            return [json.dumps([workflow_payload(w) for w in workflows], indent=2)]

        return _execute(command.db_path, _list)

    def cleanup_stale(self, command: CheckpointStoreCommand) -> CommandResult:
        """Fail running workflows idle past the threshold (default from settings)."""

        def _cleanup(repository: CheckpointRepository, settings: Settings) -> list[str]:
            hours = command.hours or settings.store.stale_workflow_hours
            cleaned = repository.cleanup_stale_workflows(threshold_hours=hours)
            return [f"Stale workflows marked failed: {cleaned} (threshold={hours}h)"]

        return _execute(command.db_path, _cleanup, with_settings=True)


def workflow_payload(workflow: WorkflowView) -> dict[str, Any]:
    return {
        "id": workflow.workflow_id,
        "issue_number": workflow.item_number,
        "branch": workflow.branch,
        "worktree": workflow.worktree,
        "phase": workflow.phase.value,
        "status": workflow.status.value,
        "retry_count": workflow.retry_count,
        "created_at": workflow.created_at.isoformat(),
        "updated_at": workflow.updated_at.isoformat(),
    }


def _execute(
    db_path: Path | None,
    operation: Callable[..., list[str]],
    *,
    with_settings: bool = False,
) -> CommandResult:
    settings = Settings.from_env(db_path=db_path)
    try:
        with _store(settings) as repository:
            args = (repository, settings) if with_settings else (repository,)
            return CommandResult(lines=operation(*args))
    except (PersistenceError, InvalidTransitionError) as error:
        return CommandResult(success=False, error=str(error))


@contextmanager
def _store(settings: Settings) -> Iterator[CheckpointRepository]:
    repository = CheckpointRepository(
        settings.store.db_path,
        busy_timeout_ms=settings.store.busy_timeout_ms,
    )
    repository.init_schema()
    try:
        yield repository
    finally:
        repository.close()
