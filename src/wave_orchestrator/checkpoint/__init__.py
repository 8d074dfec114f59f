"""Durable orchestration state: workflows, audit actions, milestones and baselines."""

from wave_orchestrator.checkpoint.models import (
    ActionResult,
    MilestonePhase,
    WorkflowPhase,
    WorkflowStatus,
)
from wave_orchestrator.checkpoint.repository import CheckpointRepository

__all__ = [
    "ActionResult",
    "CheckpointRepository",
    "MilestonePhase",
    "WorkflowPhase",
    "WorkflowStatus",
]
