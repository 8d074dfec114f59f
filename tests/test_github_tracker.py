from __future__ import annotations

import json
import subprocess
from collections.abc import Sequence

import allure
import pytest

from wave_orchestrator.checkpoint.models import CiState, ReviewDecision
from wave_orchestrator.config import TrackerSettings
from wave_orchestrator.errors import CommandError
from wave_orchestrator.tracker.github import GitHubTracker

pytestmark = [
    allure.epic("Tracker"),
    allure.feature("GitHub CLI Client"),
]


class _ScriptedGh:
    """Replays canned ``gh`` results keyed by the leading arguments."""

    def __init__(self) -> None:
        self.calls: list[list[str]] = []
        self.responses: list[tuple[tuple[str, ...], int, str, str]] = []

    def add(self, prefix: Sequence[str], stdout: object = "", *, code: int = 0, stderr: str = ""):
        text = stdout if isinstance(stdout, str) else json.dumps(stdout)
        self.responses.append((tuple(prefix), code, text, stderr))

    def __call__(self, argv, *, cwd=None, timeout=None, check=True):
        argv = list(argv)
        self.calls.append(argv)
        for prefix, code, stdout, stderr in self.responses:
            if tuple(argv[: len(prefix)]) == prefix:
                if check and code != 0:
                    raise CommandError(f"{' '.join(argv[:3])} exited with code {code}")
                return subprocess.CompletedProcess(argv, code, stdout, stderr)
        raise AssertionError(f"unexpected command: {argv}")


@pytest.fixture()
def gh(monkeypatch) -> _ScriptedGh:
    scripted = _ScriptedGh()
    monkeypatch.setattr("wave_orchestrator.tracker.github.run_command", scripted)
    return scripted


def test_find_pull_request_prefers_open_over_merged(gh: _ScriptedGh) -> None:
    gh.add(
        ["gh", "pr", "list"],
        [
            {"number": 5, "state": "MERGED", "headRefName": "feat/issue-1", "url": "u5"},
            {"number": 9, "state": "OPEN", "headRefName": "feat/issue-1", "url": "u9"},
            {"number": 7, "state": "CLOSED", "headRefName": "feat/issue-1", "url": "u7"},
        ],
    )
    tracker = GitHubTracker(TrackerSettings(repo="acme/widgets"))

    pr = tracker.find_pull_request("feat/issue-1")

    assert pr is not None and (pr.number, pr.state, pr.url) == (9, "OPEN", "u9")
    assert gh.calls[0][-2:] == ["--repo", "acme/widgets"]


def test_find_pull_request_ignores_closed_only(gh: _ScriptedGh) -> None:
    gh.add(["gh", "pr", "list"], [{"number": 7, "state": "CLOSED", "headRefName": "b"}])

    assert GitHubTracker(TrackerSettings()).find_pull_request("b") is None


def test_sub_issues_use_graphql_with_resolved_repo(gh: _ScriptedGh) -> None:
    gh.add(["gh", "repo", "view"], "acme/widgets\n")
    gh.add(
        ["gh", "api", "graphql"],
        {
            "data": {
                "repository": {
                    "issue": {
                        "subIssues": {
                            "nodes": [
                                {"number": 2, "title": "api", "state": "OPEN", "body": None},
                                {"number": 3, "title": "ui", "state": "CLOSED", "body": "x"},
                            ],
                        },
                    },
                },
            },
        },
    )
    tracker = GitHubTracker(TrackerSettings())

    issues = tracker.list_sub_issues(1)

    assert [(issue.number, issue.is_open) for issue in issues] == [(2, True), (3, False)]
    graphql = gh.calls[1]
    assert "owner=acme" in graphql
    assert "name=widgets" in graphql
    assert "number=1" in graphql


def test_missing_tracked_in_data_raises(gh: _ScriptedGh) -> None:
    gh.add(["gh", "api", "graphql"], {"data": {"repository": {"issue": None}}})
    tracker = GitHubTracker(TrackerSettings(repo="acme/widgets"))

    with pytest.raises(CommandError):
        tracker.list_blockers(4)


@pytest.mark.parametrize(
    ("stdout", "code", "stderr", "expected"),
    [
        ([{"bucket": "pass"}, {"bucket": "skipping"}], 0, "", CiState.PASSED),
        ([{"bucket": "pass"}, {"bucket": "pending"}], 8, "", CiState.PENDING),
        ([{"bucket": "pending"}, {"bucket": "fail"}], 1, "", CiState.FAILED),
        ("", 1, "no checks reported on the 'feat' branch", CiState.PASSED),
        ("", 8, "", CiState.PENDING),
    ],
)
def test_ci_state_maps_check_buckets(
    gh: _ScriptedGh,
    stdout: object,
    code: int,
    stderr: str,
    expected: CiState,
) -> None:
    gh.add(["gh", "pr", "checks"], stdout, code=code, stderr=stderr)

    assert GitHubTracker(TrackerSettings(repo="a/b")).ci_state(12) == expected


def test_ci_state_without_output_is_an_error(gh: _ScriptedGh) -> None:
    gh.add(["gh", "pr", "checks"], "", code=1, stderr="HTTP 502")

    with pytest.raises(CommandError, match="HTTP 502"):
        GitHubTracker(TrackerSettings(repo="a/b")).ci_state(12)


def test_review_decision_defaults_to_none(gh: _ScriptedGh) -> None:
    gh.add(["gh", "pr", "view"], "\n")

    assert GitHubTracker(TrackerSettings(repo="a/b")).review_decision(3) == ReviewDecision.NONE


def test_review_feedback_tolerates_failing_sources(gh: _ScriptedGh) -> None:
    gh.add(
        ["gh", "pr", "view"],
        {
            "reviews": [
                {"author": {"login": "rev"}, "state": "CHANGES_REQUESTED", "body": "Fix " * 10},
                {"author": {"login": "bot"}, "state": "COMMENTED", "body": "  "},
            ],
            "comments": [{"author": {"login": "pm"}, "body": "ship it"}],
        },
    )
    gh.add(["gh", "api", "repos/a/b/pulls/3/comments"], "", code=1)
    tracker = GitHubTracker(TrackerSettings(repo="a/b"), feedback_entry_max_chars=8)

    feedback = tracker.review_feedback(3)

    assert feedback.reviews == ["- rev (CHANGES_REQUESTED): Fix Fix "]
    assert feedback.conversation_comments == ["- pm: ship it"]
    assert feedback.inline_comments == []


def test_merge_uses_squash_and_deletes_branch(gh: _ScriptedGh) -> None:
    gh.add(["gh", "pr", "merge"])

    GitHubTracker(TrackerSettings(repo="a/b")).merge_pull_request(14)

    assert gh.calls == [
        ["gh", "pr", "merge", "14", "--squash", "--delete-branch", "--repo", "a/b"],
    ]


def test_ci_state_with_unreadable_output_is_a_command_error(gh: _ScriptedGh) -> None:
    gh.add(["gh", "pr", "checks"], "<html>502 Bad Gateway</html>", code=1)

    with pytest.raises(CommandError, match="unreadable output"):
        GitHubTracker(TrackerSettings(repo="a/b")).ci_state(12)
