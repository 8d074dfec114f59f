"""CLI entrypoint for orchestrate."""

from collections.abc import Callable
from pathlib import Path
from typing import Any

import rich_click as click

from wave_orchestrator import __version__
from wave_orchestrator.checkpoint.controllers import (
    CheckpointCliController,
    CheckpointCreateCommand,
    CheckpointFindCommand,
    CheckpointLogActionCommand,
    CheckpointLogCommitCommand,
    CheckpointStoreCommand,
    CheckpointUpdateCommand,
    CheckpointWorkflowCommand,
)
from wave_orchestrator.checkpoint.models import ActionResult, WorkflowPhase, WorkflowStatus
from wave_orchestrator.config import LOG_LEVELS
from wave_orchestrator.controllers import (
    CommandResult,
    DbHealthCommand,
    OrchestrateCliController,
    OrchestrateCommand,
    StatusCommand,
)
from wave_orchestrator.orchestrator import RunMode

click.rich_click.USE_MARKDOWN = True
CONTROLLER = OrchestrateCliController()
CHECKPOINT_CONTROLLER = CheckpointCliController()

_RUN_OPTIONS: list[Callable[[Callable[..., Any]], Callable[..., Any]]] = [
    click.option(
        "--db-path",
        type=click.Path(path_type=Path),
        default=None,
        help="SQLite DB path.",
    ),
    click.option(
        "--log-level",
        type=click.Choice(LOG_LEVELS, case_sensitive=False),
        default=None,
        help="Log level (default from WAVE_ORCHESTRATOR_LOG_LEVEL or INFO).",
    ),
    click.option(
        "--parallel",
        type=click.IntRange(min=1),
        default=1,
        show_default=True,
        help="Concurrent items per wave. Values above 1 use isolated git worktrees.",
    ),
    click.option(
        "--max-budget",
        type=click.FloatRange(min=0, min_open=True),
        default=5.0,
        show_default=True,
        help="Per-item budget in USD passed to the task runner.",
    ),
    click.option("--model", default="sonnet", show_default=True, help="Task runner model."),
    click.option("--dry-run", is_flag=True, help="Print the wave plan and exit without changes."),
    click.option(
        "--wave",
        type=click.IntRange(min=1),
        default=None,
        help="Execute only this wave number.",
    ),
    click.option("--skip-ci", is_flag=True, help="Do not wait for CI before review."),
    click.option(
        "--skip-merge",
        is_flag=True,
        help="Gate PRs on CI and review but leave them unmerged. With --skip-ci, no gate runs.",
    ),
    click.option("--resume", is_flag=True, help="Continue the stored run for this target."),
    click.option(
        "--max-review-fixes",
        type=click.IntRange(min=0),
        default=1,
        show_default=True,
        help="Review remediation cycles before an item fails (0 skips the review stage).",
    ),
    click.option(
        "--auto-merge",
        is_flag=True,
        help="Merge ready PRs without waiting for the operator.",
    ),
]


def _run_options(func: Callable[..., Any]) -> Callable[..., Any]:
    for option in reversed(_RUN_OPTIONS):
        func = option(func)
    return func


@click.group()
@click.version_option(version=__version__, prog_name="orchestrate")
def orchestrate() -> None:
    """Deliver dependent tracker issues wave by wave."""


@orchestrate.command("epic")
@click.argument("number", type=click.IntRange(min=1))
@_run_options
def orchestrate_epic(number: int, **options: Any) -> None:
    """Run every open sub-issue of an epic."""

    _run(RunMode.EPIC, str(number), options)


@orchestrate.command("milestone")
@click.argument("target")
@_run_options
def orchestrate_milestone(target: str, **options: Any) -> None:
    """Run a tracker milestone by title, or an explicit `n,n,n` issue list."""

    _run(RunMode.MILESTONE, target, options)


@orchestrate.command("status")
@click.argument("mode", type=click.Choice([mode.value for mode in RunMode]))
@click.argument("target")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
def orchestrate_status(mode: str, target: str, db_path: Path | None) -> None:
    """Show the stored state of a run."""

    _finish(CONTROLLER.status(StatusCommand(mode=RunMode(mode), target=target, db_path=db_path)))


@orchestrate.command("db-health")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
def orchestrate_db_health(db_path: Path | None) -> None:
    """Probe checkpoint store responsiveness and file sizes."""

    _finish(CONTROLLER.db_health(DbHealthCommand(db_path=db_path)))


_DB_PATH_OPTION = click.option(
    "--db-path",
    type=click.Path(path_type=Path),
    default=None,
    help="SQLite DB path.",
)


@orchestrate.group("checkpoint")
def checkpoint_group() -> None:
    """Read and write workflow checkpoints (used by delegated task runners)."""


@checkpoint_group.command("create")
@click.argument("item_number", type=click.IntRange(min=1))
@click.argument("branch")
@click.argument("worktree", required=False)
@_DB_PATH_OPTION
def checkpoint_create(
    item_number: int,
    branch: str,
    worktree: str | None,
    db_path: Path | None,
) -> None:
    """Create a running workflow and print it as JSON."""

    _finish(
        CHECKPOINT_CONTROLLER.create(
            CheckpointCreateCommand(
                item_number=item_number,
                branch=branch,
                worktree=worktree,
                db_path=db_path,
            ),
        ),
    )


@checkpoint_group.command("find")
@click.argument("item_number", type=click.IntRange(min=1))
@_DB_PATH_OPTION
def checkpoint_find(item_number: int, db_path: Path | None) -> None:
    """Print the latest workflow for an item with its actions and commits."""

    _finish(
        CHECKPOINT_CONTROLLER.find(
            CheckpointFindCommand(item_number=item_number, db_path=db_path),
        ),
    )


@checkpoint_group.command("set-phase")
@click.argument("workflow_id")
@click.argument("phase", type=click.Choice([phase.value for phase in WorkflowPhase]))
@_DB_PATH_OPTION
def checkpoint_set_phase(workflow_id: str, phase: str, db_path: Path | None) -> None:
    _finish(
        CHECKPOINT_CONTROLLER.set_phase(
            CheckpointUpdateCommand(workflow_id=workflow_id, phase=phase, db_path=db_path),
        ),
    )


@checkpoint_group.command("set-status")
@click.argument("workflow_id")
@click.argument("status", type=click.Choice([status.value for status in WorkflowStatus]))
@_DB_PATH_OPTION
def checkpoint_set_status(workflow_id: str, status: str, db_path: Path | None) -> None:
    _finish(
        CHECKPOINT_CONTROLLER.set_status(
            CheckpointUpdateCommand(workflow_id=workflow_id, status=status, db_path=db_path),
        ),
    )


@checkpoint_group.command("log-action")
@click.argument("workflow_id")
@click.argument("action")
@click.argument("result", type=click.Choice([result.value for result in ActionResult]))
@click.argument("metadata", required=False)
@_DB_PATH_OPTION
def checkpoint_log_action(
    workflow_id: str,
    action: str,
    result: str,
    metadata: str | None,
    db_path: Path | None,
) -> None:
    """Append an audit action; METADATA is an optional JSON object."""

    _finish(
        CHECKPOINT_CONTROLLER.log_action(
            CheckpointLogActionCommand(
                workflow_id=workflow_id,
                action=action,
                result=result,
                metadata_json=metadata,
                db_path=db_path,
            ),
        ),
    )


@checkpoint_group.command("log-commit")
@click.argument("workflow_id")
@click.argument("sha")
@click.argument("message")
@_DB_PATH_OPTION
def checkpoint_log_commit(workflow_id: str, sha: str, message: str, db_path: Path | None) -> None:
    _finish(
        CHECKPOINT_CONTROLLER.log_commit(
            CheckpointLogCommitCommand(
                workflow_id=workflow_id,
                sha=sha,
                message=message,
                db_path=db_path,
            ),
        ),
    )


@checkpoint_group.command("increment-retry")
@click.argument("workflow_id")
@_DB_PATH_OPTION
def checkpoint_increment_retry(workflow_id: str, db_path: Path | None) -> None:
    _finish(
        CHECKPOINT_CONTROLLER.increment_retry(
            CheckpointWorkflowCommand(workflow_id=workflow_id, db_path=db_path),
        ),
    )


@checkpoint_group.command("list-active")
@_DB_PATH_OPTION
def checkpoint_list_active(db_path: Path | None) -> None:
    """Print running and paused workflows as JSON."""

    _finish(CHECKPOINT_CONTROLLER.list_active(CheckpointStoreCommand(db_path=db_path)))


@checkpoint_group.command("cleanup-stale")
@click.option(
    "--hours",
    type=click.IntRange(min=1),
    default=None,
    help="Idle threshold (default from WAVE_ORCHESTRATOR_STALE_WORKFLOW_HOURS or 24).",
)
@_DB_PATH_OPTION
def checkpoint_cleanup_stale(hours: int | None, db_path: Path | None) -> None:
    """Mark running workflows idle past the threshold as failed."""

    _finish(
        CHECKPOINT_CONTROLLER.cleanup_stale(CheckpointStoreCommand(db_path=db_path, hours=hours)),
    )


def _run(mode: RunMode, target: str, options: dict[str, Any]) -> None:
    _finish(CONTROLLER.run(OrchestrateCommand(mode=mode, target=target, **options)))


def _finish(result: CommandResult) -> None:
    _emit_lines(result.lines)
    if not result.success:
        raise click.ClickException(result.error or "Command failed.")


def _emit_lines(lines: list[str]) -> None:
    for line in lines:
        click.echo(line)


if __name__ == "__main__":  # pragma: no cover
    orchestrate()
