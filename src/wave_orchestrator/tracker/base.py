"""Issue tracker interface consumed by planning, gating and merging."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Protocol

from wave_orchestrator.checkpoint.models import CiState, ReviewDecision


@dataclass(slots=True)
class TrackerIssue:
    """Issue as reported by the tracker."""

    number: int
    title: str = ""
    state: str = "OPEN"
    body: str = ""

    @property
    def is_open(self) -> bool:
        return self.state.upper() != "CLOSED"


@dataclass(slots=True)
class PullRequestRef:
    """Pull request produced for one work item."""

    number: int
    state: str
    head_branch: str
    url: str = ""


@dataclass(slots=True)
class ReviewFeedback:
    """Consolidated review surface of one pull request."""

    reviews: list[str] = field(default_factory=list)
    conversation_comments: list[str] = field(default_factory=list)
    inline_comments: list[str] = field(default_factory=list)

    def is_empty(self) -> bool:
        return not (self.reviews or self.conversation_comments or self.inline_comments)


class IssueTracker(Protocol):
    """Protocol implemented by tracker clients."""

    def list_sub_issues(self, epic_number: int) -> list[TrackerIssue]:
        """Sub-issues of an epic, open and closed."""

    def list_blockers(self, item_number: int) -> list[TrackerIssue]:
        """Structured blocking relationships of one item."""

    def get_issue(self, item_number: int) -> TrackerIssue:
        """Issue with title, state and body."""

    def list_milestone_issues(self, milestone_title: str) -> list[TrackerIssue]:
        """Open issues assigned to a tracker milestone."""

    def find_pull_request(self, branch: str) -> PullRequestRef | None:
        """Open or merged pull request whose head is ``branch``."""

    def pull_request_state(self, pr_number: int) -> str:
        """OPEN, CLOSED or MERGED."""

    def pull_request_branch(self, pr_number: int) -> str:
        """Head branch name of a pull request."""

    def ci_state(self, pr_number: int) -> CiState:
        """Aggregate state of the checks reported for a pull request."""

    def review_decision(self, pr_number: int) -> ReviewDecision:
        """Aggregate review decision."""

    def review_feedback(self, pr_number: int) -> ReviewFeedback:
        """Review bodies, conversation comments and inline comments."""

    def merge_pull_request(self, pr_number: int) -> None:
        """Squash-merge and delete the source branch."""

    def update_branch(self, pr_number: int) -> None:
        """Rebase the pull request branch onto its base."""

    def update_issue_body(self, item_number: int, body: str) -> None:
        """Replace an issue's body."""

    def close_issue(self, item_number: int) -> None:
        """Close an issue."""
