"""Controllers for orchestrate CLI commands."""

from __future__ import annotations

import logging
from collections.abc import Callable, Iterator
from contextlib import contextmanager
from dataclasses import dataclass, field
from pathlib import Path

from wave_orchestrator.checkpoint.health import check_store_health, format_size_kb
from wave_orchestrator.checkpoint.repository import CheckpointRepository
from wave_orchestrator.config import Settings
from wave_orchestrator.errors import PersistenceError, SetupError
from wave_orchestrator.logging_config import setup_logging
from wave_orchestrator.notify import CommandNotifier, Notifier
from wave_orchestrator.orchestrator import RunMode, RunOptions, WaveOrchestrator
from wave_orchestrator.recovery import milestone_name_for
from wave_orchestrator.runner.base import TaskRunner
from wave_orchestrator.runner.cli_runner import CliTaskRunner
from wave_orchestrator.tracker.base import IssueTracker
from wave_orchestrator.tracker.github import GitHubTracker
from wave_orchestrator.vcs import GitWorkspaces, Workspaces

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class OrchestrateCommand:
    """CLI input for one orchestration run."""

    mode: RunMode
    target: str
    db_path: Path | None = None
    log_level: str | None = None
    parallel: int = 1
    max_budget: float = 5.0
    model: str = "sonnet"
    dry_run: bool = False
    wave: int | None = None
    skip_ci: bool = False
    skip_merge: bool = False
    resume: bool = False
    max_review_fixes: int = 1
    auto_merge: bool = False


@dataclass(slots=True)
class StatusCommand:
    """CLI input for stored run status."""

    mode: RunMode
    target: str
    db_path: Path | None = None


@dataclass(slots=True)
class DbHealthCommand:
    db_path: Path | None = None


@dataclass(slots=True)
class CommandResult:
    lines: list[str] = field(default_factory=list)
    success: bool = True
    error: str | None = None


@dataclass(slots=True)
class Collaborators:
    """External-world adapters used by a run."""

    tracker: IssueTracker
    workspaces: Workspaces
    runner: TaskRunner
    notifier: Notifier


def build_collaborators(settings: Settings) -> Collaborators:
    return Collaborators(
        tracker=GitHubTracker(
            settings.tracker,
            cwd=settings.workspace.repo_root,
            feedback_entry_max_chars=settings.gate.feedback_entry_max_chars,
        ),
        workspaces=GitWorkspaces(settings.workspace),
        runner=CliTaskRunner(settings.runner.command_template),
        notifier=CommandNotifier(settings.notify),
    )


class OrchestrateCliController:
    """CLI controller for orchestration runs and store inspection."""

    def __init__(
        self,
        collaborators_factory: Callable[[Settings], Collaborators] = build_collaborators,
    ) -> None:
        self.collaborators_factory = collaborators_factory

    def run(self, command: OrchestrateCommand) -> CommandResult:
        """Execute (or preview) a run; setup and persistence failures become an error result."""

        try:
            settings = _load_settings(command.db_path, command.log_level)
        except ValueError as error:
            return CommandResult(success=False, error=f"Invalid configuration: {error}")

        options = RunOptions(
            mode=command.mode,
            target=command.target,
            parallel=command.parallel,
            max_budget_usd=command.max_budget,
            model=command.model,
            dry_run=command.dry_run,
            wave=command.wave,
            skip_ci=command.skip_ci,
            skip_merge=command.skip_merge,
            resume=command.resume,
            max_review_fixes=command.max_review_fixes,
            auto_merge=command.auto_merge,
        )
        if command.dry_run and command.resume and not settings.store.db_path.exists():
            return CommandResult(
                success=False,
                error=f"No checkpoint store at {settings.store.db_path}; nothing to resume.",
            )
        collaborators = self.collaborators_factory(settings)
        try:
            with _repository(settings, migrate=not command.dry_run) as repository:
                report = WaveOrchestrator(
                    settings=settings,
                    repository=repository,
                    tracker=collaborators.tracker,
                    workspaces=collaborators.workspaces,
                    runner=collaborators.runner,
                    notifier=collaborators.notifier,
                ).run(options)
        except SetupError as error:
            return CommandResult(success=False, error=str(error))
        except PersistenceError as error:
            logger.error("Checkpoint store failure: %s", error)
            return CommandResult(success=False, error=f"Checkpoint store failure: {error}")
        return CommandResult(lines=report.lines)

    def status(self, command: StatusCommand) -> CommandResult:
        """Show stored milestone, per-wave workflow states and baseline."""

        settings = Settings.from_env(db_path=command.db_path)
        name = milestone_name_for(RunMode(command.mode).value, command.target)
        try:
            with _repository(settings) as repository:
                milestone = repository.find_milestone_by_name(name)
                if milestone is None:
                    return CommandResult(lines=[f"No stored run for {name!r}."])
                data = repository.get_milestone(milestone.milestone_id)
                counts = repository.milestone_status_counts(milestone.milestone_id)
        except PersistenceError as error:
            return CommandResult(success=False, error=f"Checkpoint store failure: {error}")

        lines = [
            f"Milestone {milestone.name} ({milestone.milestone_id})",
            f"Status: {milestone.status.value}, phase: {milestone.phase.value}",
        ]
        current_wave: int | None = None
        for link in data.links if data is not None else []:
            if link.wave_number != current_wave:
                current_wave = link.wave_number
                lines.append(f"Wave {current_wave or 1}:")
            workflow = link.workflow
            retries = f", retries={workflow.retry_count}" if workflow.retry_count else ""
            lines.append(
                f"  #{workflow.item_number} {workflow.status.value} "
                f"[{workflow.phase.value}{retries}] {workflow.branch}",
            )
        lines.append(
            f"Completed: {counts.completed}, failed: {counts.failed}, "
            f"running: {counts.running}, paused: {counts.paused}, total: {counts.total}",
        )
        if data is not None and data.baseline is not None:
            baseline = data.baseline
            lines.append(
                f"Baseline: lint exit={baseline.lint_exit_code} "
                f"({baseline.lint_warnings} warnings, {baseline.lint_errors} errors), "
                f"typecheck exit={baseline.typecheck_exit_code} "
                f"({baseline.typecheck_errors} errors)",
            )
        return CommandResult(lines=lines)

    def db_health(self, command: DbHealthCommand) -> CommandResult:
        settings = Settings.from_env(db_path=command.db_path)
        health = check_store_health(
            settings.store.db_path,
            busy_timeout_ms=settings.store.busy_timeout_ms,
            slow_response_ms=settings.store.slow_response_ms,
        )
        lines = [
            f"Database: {settings.store.db_path}",
            f"Healthy: {'yes' if health.healthy else 'no'}",
            f"Response: {health.responsive_ms} ms",
            f"DB size: {format_size_kb(health.db_size_kb)}",
            f"WAL size: {format_size_kb(health.wal_size_kb)}",
            f"SHM size: {format_size_kb(health.shm_size_kb)}",
        ]
        lines.extend(f"Warning: {warning}" for warning in health.warnings)
        if health.error:
            lines.append(f"Error: {health.error}")
        return CommandResult(
            lines=lines,
            success=health.healthy,
            error=None if health.healthy else "Checkpoint store is unhealthy.",
        )


def _load_settings(db_path: Path | None, log_level: str | None) -> Settings:
    settings = Settings.from_env(db_path=db_path)
    if log_level:
        settings.log_level = log_level.upper()
    settings.validate()
    setup_logging(settings.log_level)
    return settings


@contextmanager
def _repository(settings: Settings, *, migrate: bool = True) -> Iterator[CheckpointRepository]:
    """Open the store; without ``migrate`` nothing is created until a query runs."""

    repository = CheckpointRepository(
        settings.store.db_path,
        busy_timeout_ms=settings.store.busy_timeout_ms,
    )
    if migrate:
        repository.init_schema()
    try:
        yield repository
    finally:
        repository.close()
