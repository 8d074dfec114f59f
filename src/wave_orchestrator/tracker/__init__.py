"""Issue tracker collaborator: protocol plus the GitHub CLI client."""

from wave_orchestrator.tracker.base import (
    IssueTracker,
    PullRequestRef,
    ReviewFeedback,
    TrackerIssue,
)
from wave_orchestrator.tracker.github import GitHubTracker

__all__ = [
    "GitHubTracker",
    "IssueTracker",
    "PullRequestRef",
    "ReviewFeedback",
    "TrackerIssue",
]
