"""Runtime configuration for wave orchestration."""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path

DEFAULT_TASK_COMMAND_TEMPLATE = (
    "claude -p {prompt} --max-budget-usd {budget} --model {model} "
    "--output-format text --dangerously-skip-permissions"
)
DEFAULT_NOTIFY_SEND_TEMPLATE = "tg-send {message}"
DEFAULT_NOTIFY_WAIT_COMMAND = "tg-wait -q"
LOG_LEVELS = ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL")


@dataclass(slots=True)
class StoreSettings:
    """Checkpoint store settings."""

    db_path: Path = Path(".claude/execution-state.db")
    busy_timeout_ms: int = 5_000
    slow_response_ms: int = 500
    stale_workflow_hours: int = 24


@dataclass(slots=True)
class WorkspaceSettings:
    """Primary checkout and isolated worktree layout."""

    repo_root: Path = Path(".")
    output_dir: Path = Path(".claude/output")
    worktree_base: Path = Path.home() / "Code" / "worktrees"
    primary_branch: str = "main"
    branch_template: str = "feat/issue-{item}"


@dataclass(slots=True)
class TrackerSettings:
    """Issue tracker (GitHub CLI) settings."""

    repo: str = ""
    command_timeout_seconds: float = 120.0


@dataclass(slots=True)
class RunnerSettings:
    """Delegated task runner settings."""

    command_template: str = DEFAULT_TASK_COMMAND_TEMPLATE
    timeout_seconds: int = 7_200
    ci_fix_budget: float = 2.0
    review_fix_budget: float = 3.0


@dataclass(slots=True)
class GateSettings:
    """CI and review gate settings."""

    ci_poll_initial_seconds: float = 15.0
    ci_poll_max_seconds: float = 120.0
    ci_timeout_seconds: float = 1_800.0
    max_ci_attempts: int = 2
    feedback_entry_max_chars: int = 500


@dataclass(slots=True)
class NotifySettings:
    """Operator notification settings."""

    send_template: str = DEFAULT_NOTIFY_SEND_TEMPLATE
    wait_command: str = DEFAULT_NOTIFY_WAIT_COMMAND


@dataclass(slots=True)
class BaselineSettings:
    """Optional pre-flight lint/typecheck snapshot."""

    lint_command: str = ""
    typecheck_command: str = ""


@dataclass(slots=True)
class Settings:
    """Application settings grouped by domain concerns."""

    store: StoreSettings = field(default_factory=StoreSettings)
    workspace: WorkspaceSettings = field(default_factory=WorkspaceSettings)
    tracker: TrackerSettings = field(default_factory=TrackerSettings)
    runner: RunnerSettings = field(default_factory=RunnerSettings)
    gate: GateSettings = field(default_factory=GateSettings)
    notify: NotifySettings = field(default_factory=NotifySettings)
    baseline: BaselineSettings = field(default_factory=BaselineSettings)
    log_level: str = "INFO"

    @classmethod
    def from_env(cls, db_path: Path | None = None) -> Settings:
        """Load settings from environment with defaults for a local checkout."""

        repo_root = Path(os.getenv("WAVE_ORCHESTRATOR_REPO_ROOT", "."))
        return cls(
            store=StoreSettings(
                db_path=db_path
                or Path(
                    os.getenv(
                        "WAVE_ORCHESTRATOR_DB_PATH",
                        str(repo_root / ".claude" / "execution-state.db"),
                    ),
                ),
                busy_timeout_ms=int(os.getenv("WAVE_ORCHESTRATOR_BUSY_TIMEOUT_MS", "5000")),
                slow_response_ms=int(os.getenv("WAVE_ORCHESTRATOR_SLOW_RESPONSE_MS", "500")),
                stale_workflow_hours=int(
                    os.getenv("WAVE_ORCHESTRATOR_STALE_WORKFLOW_HOURS", "24"),
                ),
            ),
            workspace=WorkspaceSettings(
                repo_root=repo_root,
                output_dir=Path(
                    os.getenv(
                        "WAVE_ORCHESTRATOR_OUTPUT_DIR",
                        str(repo_root / ".claude" / "output"),
                    ),
                ),
                worktree_base=Path(
                    os.getenv(
                        "WAVE_ORCHESTRATOR_WORKTREE_BASE",
                        str(Path.home() / "Code" / "worktrees"),
                    ),
                ),
                primary_branch=os.getenv("WAVE_ORCHESTRATOR_PRIMARY_BRANCH", "main"),
                branch_template=os.getenv(
                    "WAVE_ORCHESTRATOR_BRANCH_TEMPLATE",
                    "feat/issue-{item}",
                ),
            ),
            tracker=TrackerSettings(
                repo=os.getenv("WAVE_ORCHESTRATOR_GITHUB_REPO", "").strip(),
                command_timeout_seconds=float(
                    os.getenv("WAVE_ORCHESTRATOR_TRACKER_TIMEOUT_SECONDS", "120"),
                ),
            ),
            runner=RunnerSettings(
                command_template=os.getenv(
                    "WAVE_ORCHESTRATOR_TASK_COMMAND",
                    DEFAULT_TASK_COMMAND_TEMPLATE,
                ),
                timeout_seconds=int(os.getenv("WAVE_ORCHESTRATOR_TASK_TIMEOUT_SECONDS", "7200")),
                ci_fix_budget=float(os.getenv("WAVE_ORCHESTRATOR_CI_FIX_BUDGET", "2")),
                review_fix_budget=float(os.getenv("WAVE_ORCHESTRATOR_REVIEW_FIX_BUDGET", "3")),
            ),
            gate=GateSettings(
                ci_poll_initial_seconds=float(
                    os.getenv("WAVE_ORCHESTRATOR_CI_POLL_INITIAL_SECONDS", "15"),
                ),
                ci_poll_max_seconds=float(
                    os.getenv("WAVE_ORCHESTRATOR_CI_POLL_MAX_SECONDS", "120"),
                ),
                ci_timeout_seconds=float(
                    os.getenv("WAVE_ORCHESTRATOR_CI_TIMEOUT_SECONDS", "1800"),
                ),
                max_ci_attempts=int(os.getenv("WAVE_ORCHESTRATOR_MAX_CI_ATTEMPTS", "2")),
                feedback_entry_max_chars=int(
                    os.getenv("WAVE_ORCHESTRATOR_FEEDBACK_ENTRY_MAX_CHARS", "500"),
                ),
            ),
            notify=NotifySettings(
                send_template=os.getenv(
                    "WAVE_ORCHESTRATOR_NOTIFY_SEND",
                    DEFAULT_NOTIFY_SEND_TEMPLATE,
                ),
                wait_command=os.getenv(
                    "WAVE_ORCHESTRATOR_NOTIFY_WAIT",
                    DEFAULT_NOTIFY_WAIT_COMMAND,
                ),
            ),
            baseline=BaselineSettings(
                lint_command=os.getenv("WAVE_ORCHESTRATOR_BASELINE_LINT_COMMAND", "").strip(),
                typecheck_command=os.getenv(
                    "WAVE_ORCHESTRATOR_BASELINE_TYPECHECK_COMMAND",
                    "",
                ).strip(),
            ),
            log_level=os.getenv("WAVE_ORCHESTRATOR_LOG_LEVEL", "INFO").strip().upper(),
        )

    def validate(self) -> None:
        """Raise configuration error for values the orchestrator cannot run with."""

        if self.store.busy_timeout_ms <= 0:
            raise ValueError("WAVE_ORCHESTRATOR_BUSY_TIMEOUT_MS must be > 0.")
        if self.store.stale_workflow_hours <= 0:
            raise ValueError("WAVE_ORCHESTRATOR_STALE_WORKFLOW_HOURS must be > 0.")
        if "{item}" not in self.workspace.branch_template:
            raise ValueError("WAVE_ORCHESTRATOR_BRANCH_TEMPLATE must include {item}.")
        if not self.workspace.primary_branch.strip():
            raise ValueError("WAVE_ORCHESTRATOR_PRIMARY_BRANCH must not be empty.")
        if self.tracker.repo and self.tracker.repo.count("/") != 1:
            raise ValueError(
                f"Invalid WAVE_ORCHESTRATOR_GITHUB_REPO: {self.tracker.repo!r}. "
                "Expected '<owner>/<name>'.",
            )
        if "{prompt}" not in self.runner.command_template:
            raise ValueError("WAVE_ORCHESTRATOR_TASK_COMMAND must include {prompt}.")
        if self.runner.timeout_seconds <= 0:
            raise ValueError("WAVE_ORCHESTRATOR_TASK_TIMEOUT_SECONDS must be > 0.")
        if self.gate.ci_poll_initial_seconds <= 0:
            raise ValueError("WAVE_ORCHESTRATOR_CI_POLL_INITIAL_SECONDS must be > 0.")
        if self.gate.ci_poll_max_seconds < self.gate.ci_poll_initial_seconds:
            raise ValueError(
                "WAVE_ORCHESTRATOR_CI_POLL_MAX_SECONDS must be >= the initial poll interval.",
            )
        if self.gate.ci_timeout_seconds <= 0:
            raise ValueError("WAVE_ORCHESTRATOR_CI_TIMEOUT_SECONDS must be > 0.")
        if self.gate.max_ci_attempts < 0:
            raise ValueError("WAVE_ORCHESTRATOR_MAX_CI_ATTEMPTS must be >= 0.")
        if "{message}" not in self.notify.send_template:
            raise ValueError("WAVE_ORCHESTRATOR_NOTIFY_SEND must include {message}.")
        if self.log_level not in LOG_LEVELS:
            raise ValueError(
                f"Invalid WAVE_ORCHESTRATOR_LOG_LEVEL: {self.log_level!r}. "
                f"Expected one of {', '.join(LOG_LEVELS)}.",
            )
