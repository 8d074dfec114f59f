"""Error taxonomy shared by every orchestration component."""

from __future__ import annotations

from collections.abc import Sequence


class OrchestratorError(RuntimeError):
    """Base class for orchestration failures."""


class SetupError(OrchestratorError):
    """Fatal pre-execution problem; the run aborts before any side effect."""


class CycleDetectedError(SetupError):
    """Dependency graph contains a cycle."""

    def __init__(self, members: Sequence[int]) -> None:
        self.members = tuple(sorted(members))
        listed = ", ".join(f"#{member}" for member in self.members)
        super().__init__(f"Circular dependency detected among: {listed}")


class PersistenceError(OrchestratorError):
    """Checkpoint store is unavailable or corrupt; correctness cannot be guaranteed."""


class RecordNotFoundError(PersistenceError):
    """Referenced workflow or milestone does not exist."""


class InvalidTransitionError(OrchestratorError, ValueError):
    """Requested status change is not allowed by the lifecycle."""


class ExecutionError(OrchestratorError):
    """Task runner failed for one item."""


class ValidationError(OrchestratorError):
    """CI or review gate rejected one item."""


class MergeError(OrchestratorError):
    """Merging one item failed."""


class CommandError(OrchestratorError):
    """External command exited non-zero or could not be started."""

    def __init__(
        self,
        message: str,
        *,
        argv: Sequence[str] = (),
        exit_code: int | None = None,
        stderr: str = "",
    ) -> None:
        super().__init__(message)
        self.argv = tuple(argv)
        self.exit_code = exit_code
        self.stderr = stderr
