"""Delegated task runner abstraction and bounded worker pool."""

from wave_orchestrator.runner.base import TaskRunner, TaskRunRequest, TaskRunResult
from wave_orchestrator.runner.cli_runner import CliTaskRunner
from wave_orchestrator.runner.pool import BoundedWorkerPool

__all__ = [
    "BoundedWorkerPool",
    "CliTaskRunner",
    "TaskRunRequest",
    "TaskRunResult",
    "TaskRunner",
]
