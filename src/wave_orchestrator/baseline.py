"""Pre-flight lint/typecheck snapshot stored alongside a milestone."""

from __future__ import annotations

import logging
import shlex
from dataclasses import dataclass
from pathlib import Path

from wave_orchestrator.checkpoint.models import BaselineView, BaselineWrite
from wave_orchestrator.checkpoint.repository import CheckpointRepository
from wave_orchestrator.config import BaselineSettings
from wave_orchestrator.errors import CommandError
from wave_orchestrator.shell import run_command

logger = logging.getLogger(__name__)

_BASELINE_TIMEOUT_SECONDS = 600.0


@dataclass(slots=True)
class DiagnosticCounts:
    exit_code: int | None = None
    warnings: int = 0
    errors: int = 0


def count_diagnostics(output: str) -> tuple[int, int]:
    """Count (warning, error) lines in tool output, case-insensitively."""

    warnings = errors = 0
    for line in output.splitlines():
        lowered = line.lower()
        if "error" in lowered:
            errors += 1
        elif "warning" in lowered:
            warnings += 1
    return warnings, errors


class BaselineCapture:
    """Run the configured lint and typecheck commands once before wave 1."""

    def __init__(self, settings: BaselineSettings, *, cwd: Path) -> None:
        self.settings = settings
        self.cwd = cwd

    @property
    def enabled(self) -> bool:
        return bool(self.settings.lint_command or self.settings.typecheck_command)

    def capture(self) -> BaselineWrite:
        lint = self._run(self.settings.lint_command)
        typecheck = self._run(self.settings.typecheck_command)
        return BaselineWrite(
            lint_exit_code=lint.exit_code,
            lint_warnings=lint.warnings,
            lint_errors=lint.errors,
            typecheck_exit_code=typecheck.exit_code,
            typecheck_errors=typecheck.errors,
        )

    def capture_and_save(
        self,
        repository: CheckpointRepository,
        milestone_id: str,
    ) -> BaselineView | None:
        if not self.enabled:
            return None
        snapshot = self.capture()
        view = repository.save_baseline(milestone_id, snapshot)
        logger.info(
            "Baseline: lint exit=%s (%d warnings, %d errors), typecheck exit=%s (%d errors)",
            view.lint_exit_code,
            view.lint_warnings,
            view.lint_errors,
            view.typecheck_exit_code,
            view.typecheck_errors,
        )
        return view

    def _run(self, command: str) -> DiagnosticCounts:
        if not command:
            return DiagnosticCounts()
        try:
            completed = run_command(
                shlex.split(command),
                cwd=self.cwd,
                timeout=_BASELINE_TIMEOUT_SECONDS,
                check=False,
            )
        except CommandError as error:
            logger.warning("Baseline command %r could not run: %s", command, error)
            return DiagnosticCounts()
        warnings, errors = count_diagnostics(f"{completed.stdout}\n{completed.stderr}")
        return DiagnosticCounts(exit_code=completed.returncode, warnings=warnings, errors=errors)
