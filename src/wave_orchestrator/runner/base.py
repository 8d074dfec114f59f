"""Task runner interface for delegated item execution."""

from __future__ import annotations

from collections import deque
from dataclasses import dataclass
from pathlib import Path
from typing import Protocol


@dataclass(slots=True)
class TaskRunRequest:
    """Inputs required to run one delegated task."""

    prompt: str
    cwd: Path
    log_path: Path
    budget_usd: float
    model: str
    timeout_seconds: int


@dataclass(slots=True)
class TaskRunResult:
    """Exit status of one delegated task; combined output lives in ``log_path``."""

    exit_code: int
    timed_out: bool
    log_path: Path

    @property
    def succeeded(self) -> bool:
        return self.exit_code == 0 and not self.timed_out


class TaskRunner(Protocol):
    """Protocol implemented by task runners."""

    def run(self, request: TaskRunRequest) -> TaskRunResult:
        """Run a task to completion and return its exit status."""


def tail_lines(path: Path, count: int = 20) -> str:
    """Last ``count`` lines of a log file, empty when it does not exist."""

    try:
        with path.open("r", encoding="utf-8", errors="replace") as handle:
            return "".join(deque(handle, maxlen=count)).rstrip("\n")
    except FileNotFoundError:
        return ""
