"""GitHub issue tracker client built on the ``gh`` CLI."""

from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import Any

from wave_orchestrator.checkpoint.models import CiState, ReviewDecision
from wave_orchestrator.config import TrackerSettings
from wave_orchestrator.errors import CommandError
from wave_orchestrator.shell import run_command
from wave_orchestrator.tracker.base import PullRequestRef, ReviewFeedback, TrackerIssue

logger = logging.getLogger(__name__)

_SUB_ISSUES_QUERY = """
query($owner: String!, $name: String!, $number: Int!) {
  repository(owner: $owner, name: $name) {
    issue(number: $number) {
      subIssues(first: 50) {
        nodes { number title state body }
      }
    }
  }
}
"""

_TRACKED_IN_QUERY = """
query($owner: String!, $name: String!, $number: Int!) {
  repository(owner: $owner, name: $name) {
    issue(number: $number) {
      trackedInIssues(first: 10) {
        nodes { number title state }
      }
    }
  }
}
"""

_FAILED_BUCKETS = frozenset({"fail", "cancel"})
_NO_CHECKS_MARKER = "no checks reported"
# gh exits 8 while checks are still pending.
_CHECKS_PENDING_EXIT_CODE = 8

_DECISIONS = {
    "APPROVED": ReviewDecision.APPROVED,
    "CHANGES_REQUESTED": ReviewDecision.CHANGES_REQUESTED,
    "REVIEW_REQUIRED": ReviewDecision.REVIEW_REQUIRED,
}


class GitHubTracker:
    """Issue tracker backed by ``gh`` subprocess calls."""

    def __init__(
        self,
        settings: TrackerSettings,
        *,
        cwd: Path | None = None,
        feedback_entry_max_chars: int = 500,
    ) -> None:
        self.settings = settings
        self.cwd = cwd
        self.feedback_entry_max_chars = feedback_entry_max_chars
        self._repo = settings.repo

    # Issues

    def list_sub_issues(self, epic_number: int) -> list[TrackerIssue]:
        data = self._graphql(_SUB_ISSUES_QUERY, number=epic_number)
        nodes = _dig(data, "data", "repository", "issue", "subIssues", "nodes") or []
        return [_to_issue(node) for node in nodes]

    def list_blockers(self, item_number: int) -> list[TrackerIssue]:
        data = self._graphql(_TRACKED_IN_QUERY, number=item_number)
        nodes = _dig(data, "data", "repository", "issue", "trackedInIssues", "nodes")
        if nodes is None:
            raise CommandError(f"No tracked-in data returned for #{item_number}")
        return [_to_issue(node) for node in nodes]

    def get_issue(self, item_number: int) -> TrackerIssue:
        data = self._gh_json(
            "issue",
            "view",
            str(item_number),
            "--json",
            "number,title,state,body",
            *self._repo_flag(),
        )
        return _to_issue(data)

    def list_milestone_issues(self, milestone_title: str) -> list[TrackerIssue]:
        data = self._gh_json(
            "issue",
            "list",
            "--milestone",
            milestone_title,
            "--state",
            "open",
            "--json",
            "number,title,state,body",
            "--limit",
            "100",
            *self._repo_flag(),
        )
        return [_to_issue(node) for node in data or []]

    def update_issue_body(self, item_number: int, body: str) -> None:
        self._gh("issue", "edit", str(item_number), "--body", body, *self._repo_flag())

    def close_issue(self, item_number: int) -> None:
        self._gh("issue", "close", str(item_number), *self._repo_flag())

    # Pull requests

    def find_pull_request(self, branch: str) -> PullRequestRef | None:
        """Open pull request for ``branch``, else the most recent merged one."""

        data = self._gh_json(
            "pr",
            "list",
            "--head",
            branch,
            "--state",
            "all",
            "--json",
            "number,state,headRefName,url",
            "--limit",
            "10",
            *self._repo_flag(),
        )
        refs = [
            PullRequestRef(
                number=int(node["number"]),
                state=str(node.get("state", "")).upper(),
                head_branch=str(node.get("headRefName", branch)),
                url=str(node.get("url", "")),
            )
            for node in data or []
        ]
        for wanted in ("OPEN", "MERGED"):
            matching = [ref for ref in refs if ref.state == wanted]
            if matching:
                return max(matching, key=lambda ref: ref.number)
        return None

    def pull_request_state(self, pr_number: int) -> str:
        return self._pr_field(pr_number, "state").upper()

    def pull_request_branch(self, pr_number: int) -> str:
        return self._pr_field(pr_number, "headRefName")

    def ci_state(self, pr_number: int) -> CiState:
        completed = run_command(
            ["gh", "pr", "checks", str(pr_number), "--json", "bucket", *self._repo_flag()],
            cwd=self.cwd,
            timeout=self.settings.command_timeout_seconds,
            check=False,
        )
        if _NO_CHECKS_MARKER in (completed.stderr or "").lower():
            return CiState.PASSED
        stdout = (completed.stdout or "").strip()
        if not stdout:
            if completed.returncode == _CHECKS_PENDING_EXIT_CODE:
                return CiState.PENDING
            raise CommandError(
                f"gh pr checks {pr_number} exited with code {completed.returncode}: "
                f"{(completed.stderr or '').strip()[-500:]}",
                argv=("gh", "pr", "checks", str(pr_number)),
                exit_code=completed.returncode,
                stderr=completed.stderr or "",
            )
        try:
            buckets = {str(check.get("bucket", "")).lower() for check in json.loads(stdout)}
        except (json.JSONDecodeError, TypeError, AttributeError) as error:
            raise CommandError(
                f"gh pr checks {pr_number} returned unreadable output: {stdout[:200]}",
                argv=("gh", "pr", "checks", str(pr_number)),
                exit_code=completed.returncode,
            ) from error
        if buckets & _FAILED_BUCKETS:
            return CiState.FAILED
        if "pending" in buckets:
            return CiState.PENDING
        return CiState.PASSED

    def review_decision(self, pr_number: int) -> ReviewDecision:
        raw = self._pr_field(pr_number, "reviewDecision").upper()
        return _DECISIONS.get(raw, ReviewDecision.NONE)

    def review_feedback(self, pr_number: int) -> ReviewFeedback:
        """Collect reviews, conversation comments and inline comments.

        Each source is fetched independently; a failing source is logged and
        left empty.
        """

        limit = self.feedback_entry_max_chars
        feedback = ReviewFeedback()
        try:
            data = self._gh_json(
                "pr",
                "view",
                str(pr_number),
                "--json",
                "reviews,comments",
                *self._repo_flag(),
            )
        except CommandError as error:
            logger.warning("Could not fetch PR comments for PR #%d: %s", pr_number, error)
        else:
            data = data or {}
            for review in data.get("reviews") or []:
                body = (review.get("body") or "").strip()
                if body:
                    feedback.reviews.append(
                        f"- {_login(review)} ({review.get('state', '')}): {body[:limit]}",
                    )
            for comment in data.get("comments") or []:
                body = (comment.get("body") or "").strip()
                if body:
                    feedback.conversation_comments.append(f"- {_login(comment)}: {body[:limit]}")

        try:
            inline = self._gh_json("api", f"repos/{self._repo_slug()}/pulls/{pr_number}/comments")
        except CommandError as error:
            logger.warning("Could not fetch inline comments for PR #%d: %s", pr_number, error)
        else:
            for comment in inline or []:
                location = comment.get("path", "")
                if comment.get("line"):
                    location = f"{location}:{comment['line']}"
                user = (comment.get("user") or {}).get("login", "unknown")
                body = (comment.get("body") or "").strip()
                feedback.inline_comments.append(f"- {location} ({user}): {body[:limit]}")
        return feedback

    def merge_pull_request(self, pr_number: int) -> None:
        self._gh(
            "pr",
            "merge",
            str(pr_number),
            "--squash",
            "--delete-branch",
            *self._repo_flag(),
        )

    def update_branch(self, pr_number: int) -> None:
        self._gh("pr", "update-branch", str(pr_number), "--rebase", *self._repo_flag())

    # Plumbing

    def _pr_field(self, pr_number: int, field_name: str) -> str:
        return self._gh(
            "pr",
            "view",
            str(pr_number),
            "--json",
            field_name,
            "-q",
            f".{field_name}",
            *self._repo_flag(),
        ).strip()

    def _graphql(self, query: str, *, number: int) -> dict[str, Any]:
        owner, name = self._repo_slug().split("/", 1)
        return self._gh_json(
            "api",
            "graphql",
            "-f",
            f"query={query}",
            "-f",
            f"owner={owner}",
            "-f",
            f"name={name}",
            "-F",
            f"number={number}",
        )

    def _repo_slug(self) -> str:
        if not self._repo:
            self._repo = self._gh(
                "repo",
                "view",
                "--json",
                "nameWithOwner",
                "-q",
                ".nameWithOwner",
            ).strip()
            logger.debug("Resolved tracker repository %s", self._repo)
        return self._repo

    def _repo_flag(self) -> tuple[str, ...]:
        return ("--repo", self.settings.repo) if self.settings.repo else ()

    def _gh(self, *args: str) -> str:
        completed = run_command(
            ["gh", *args],
            cwd=self.cwd,
            timeout=self.settings.command_timeout_seconds,
        )
        return completed.stdout

    def _gh_json(self, *args: str) -> Any:
        stdout = self._gh(*args)
        try:
            return json.loads(stdout) if stdout.strip() else None
        except json.JSONDecodeError as error:
            raise CommandError(f"gh {' '.join(args[:2])} returned invalid JSON") from error


def _to_issue(node: dict[str, Any]) -> TrackerIssue:
    return TrackerIssue(
        number=int(node["number"]),
        title=str(node.get("title") or ""),
        state=str(node.get("state") or "OPEN").upper(),
        body=str(node.get("body") or ""),
    )


def _login(node: dict[str, Any]) -> str:
    return (node.get("author") or {}).get("login", "unknown")


def _dig(data: Any, *path: str) -> Any:
    for key in path:
        if not isinstance(data, dict):
            return None
        data = data.get(key)
    return data
