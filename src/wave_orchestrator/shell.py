"""Thin wrapper for running external CLI collaborators (gh, git, notifiers)."""

from __future__ import annotations

import logging
import subprocess
from collections.abc import Sequence
from pathlib import Path

from wave_orchestrator.errors import CommandError

logger = logging.getLogger(__name__)

_STDERR_TAIL_CHARS = 2_000


def run_command(
    argv: Sequence[str],
    *,
    cwd: Path | None = None,
    timeout: float | None = None,
    check: bool = True,
) -> subprocess.CompletedProcess[str]:
    """Run a command to completion with captured text output.

    Raises ``CommandError`` when the executable is missing, the command times
    out, or (with ``check``) it exits non-zero.
    """

    logger.debug("Running %s (cwd=%s)", " ".join(argv), cwd or ".")
    try:
        completed = subprocess.run(  # noqa: S603
            list(argv),
            cwd=cwd,
            capture_output=True,
            text=True,
            timeout=timeout,
            check=False,
        )
    except FileNotFoundError as error:
        raise CommandError(f"Command not found: {argv[0]}", argv=argv) from error
    except subprocess.TimeoutExpired as error:
        raise CommandError(
            f"Command timed out after {timeout}s: {' '.join(argv[:3])}",
            argv=argv,
        ) from error
    except OSError as error:
        raise CommandError(f"Command failed to start: {error}", argv=argv) from error

    if check and completed.returncode != 0:
        stderr_tail = (completed.stderr or "")[-_STDERR_TAIL_CHARS:].strip()
        raise CommandError(
            f"{' '.join(argv[:3])} exited with code {completed.returncode}: {stderr_tail}",
            argv=argv,
            exit_code=completed.returncode,
            stderr=stderr_tail,
        )
    return completed
