"""Subprocess-based task runner for CLI agents."""

from __future__ import annotations

import logging
import shlex
import subprocess
import time

from wave_orchestrator.errors import ExecutionError
from wave_orchestrator.runner.base import TaskRunRequest, TaskRunResult

logger = logging.getLogger(__name__)

TIMEOUT_EXIT_CODE = 124
_POLL_INTERVAL_SECONDS = 0.1


class CliTaskRunner:
    """Execute a shell-style command template with ``{prompt}``, ``{model}`` and ``{budget}``."""

    def __init__(self, command_template: str) -> None:
        self.command_template = command_template

    def run(self, request: TaskRunRequest) -> TaskRunResult:
        argv = build_run_args(
            command_template=self.command_template,
            prompt=request.prompt,
            model=request.model,
            budget_usd=request.budget_usd,
        )
        request.log_path.parent.mkdir(parents=True, exist_ok=True)
        logger.debug("Starting %s in %s (log: %s)", argv[0], request.cwd, request.log_path)
        try:
            with request.log_path.open("w", encoding="utf-8") as log_handle:
                return _run_subprocess(
                    argv=argv,
                    request=request,
                    log_handle=log_handle,
                )
        except FileNotFoundError as error:
            raise ExecutionError(f"Task runner command not found: {argv[0]}") from error
        except OSError as error:
            raise ExecutionError(f"Task runner failed to start: {error}") from error


def build_run_args(
    *,
    command_template: str,
    prompt: str,
    model: str,
    budget_usd: float,
) -> list[str]:
    stripped = command_template.strip()
    if not stripped:
        raise ExecutionError("Task runner command template is empty.")
    if "{prompt}" not in stripped:
        raise ExecutionError("Task runner command template must include {prompt}.")
    try:
        rendered = stripped.format(
            prompt=shlex.quote(prompt),
            model=shlex.quote(model),
            budget=shlex.quote(f"{budget_usd:g}"),
        )
    except KeyError as error:
        raise ExecutionError(f"Unsupported command template placeholder: {error}") from error

    argv = shlex.split(rendered)
    if not argv:
        raise ExecutionError("Task runner command template rendered empty command.")
    return argv


def _run_subprocess(*, argv: list[str], request: TaskRunRequest, log_handle) -> TaskRunResult:
    process = subprocess.Popen(  # noqa: S603
        argv,
        cwd=request.cwd,
        stdout=log_handle,
        stderr=subprocess.STDOUT,
        stdin=subprocess.DEVNULL,
        text=True,
    )
    start_monotonic = time.monotonic()
    while True:
        returncode = process.poll()
        if returncode is not None:
            return TaskRunResult(
                exit_code=returncode,
                timed_out=False,
                log_path=request.log_path,
            )
        if time.monotonic() - start_monotonic >= request.timeout_seconds:
            logger.warning(
                "Task runner exceeded %ss in %s; terminating",
                request.timeout_seconds,
                request.cwd,
            )
            _terminate_process(process)
            return TaskRunResult(
                exit_code=TIMEOUT_EXIT_CODE,
                timed_out=True,
                log_path=request.log_path,
            )
        time.sleep(_POLL_INTERVAL_SECONDS)


def _terminate_process(process: subprocess.Popen[str]) -> None:
    try:
        process.terminate()
    except OSError:
        return
    try:
        process.wait(timeout=2)
    except subprocess.TimeoutExpired:
        try:
            process.kill()
        except OSError:
            return
        process.wait(timeout=2)
