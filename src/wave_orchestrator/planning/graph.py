"""Work-item dependency graph construction from the issue tracker."""

from __future__ import annotations

import logging
import re
from collections.abc import Collection, Iterable
from dataclasses import dataclass

from wave_orchestrator.errors import CommandError, SetupError
from wave_orchestrator.tracker.base import IssueTracker, TrackerIssue

logger = logging.getLogger(__name__)

_BLOCKER_PATTERN = re.compile(r"(?:blocked by|depends on|after)\s+#(\d+)", re.IGNORECASE)
_ITEM_LIST_PATTERN = re.compile(r"^\s*\d+(\s*,\s*\d+)*\s*,?\s*$")


@dataclass(slots=True)
class WorkItem:
    """Schedulable unit with its unresolved dependencies."""

    number: int
    title: str = ""
    is_open: bool = True
    dependencies: frozenset[int] = frozenset()


def parse_blockers_from_text(text: str, candidates: Collection[int]) -> frozenset[int]:
    """Best-effort extraction of ``blocked by #N`` style references.

    Only references to items in ``candidates`` are kept.
    """

    found = {int(match.group(1)) for match in _BLOCKER_PATTERN.finditer(text or "")}
    return frozenset(number for number in found if number in candidates)


def parse_item_list(target: str) -> list[int] | None:
    """Parse ``"12,13, 14"``; returns None when the target is a milestone title."""

    if not _ITEM_LIST_PATTERN.match(target):
        return None
    return [int(part) for part in target.split(",") if part.strip()]


class DependencyGraphBuilder:
    """Fetch candidate items and their blocking edges from the tracker."""

    def __init__(self, tracker: IssueTracker) -> None:
        self.tracker = tracker

    def build_for_epic(self, epic_number: int) -> list[WorkItem]:
        logger.info("Fetching sub-issues for epic #%d", epic_number)
        try:
            issues = self.tracker.list_sub_issues(epic_number)
        except CommandError as error:
            raise SetupError(f"Cannot fetch sub-issues of epic #{epic_number}: {error}") from error
        if not issues:
            raise SetupError(f"No sub-issues found for epic #{epic_number}")
        if not any(issue.is_open for issue in issues):
            raise SetupError(f"Epic #{epic_number} has no open sub-issues")
        logger.info("Found %d sub-issues, fetching dependencies", len(issues))
        return self._with_dependencies(issues)

    def build_for_milestone(self, target: str) -> list[WorkItem]:
        """Items from an explicit ``n,n,n`` list or from a tracker milestone title."""

        numbers = parse_item_list(target)
        try:
            if numbers is not None:
                issues = [self.tracker.get_issue(number) for number in dict.fromkeys(numbers)]
            else:
                logger.info("Fetching issues for milestone %r", target)
                issues = self.tracker.list_milestone_issues(target)
        except CommandError as error:
            raise SetupError(f"Cannot fetch issues for {target!r}: {error}") from error
        if not any(issue.is_open for issue in issues):
            raise SetupError(f"No open issues found for milestone {target!r}")
        logger.info("Found %d issues, fetching dependencies", len(issues))
        return self._with_dependencies(issues)

    def _with_dependencies(self, issues: Iterable[TrackerIssue]) -> list[WorkItem]:
        issues = list(issues)
        candidates = {issue.number for issue in issues if issue.is_open}
        items: list[WorkItem] = []
        for issue in issues:
            dependencies: frozenset[int] = frozenset()
            if issue.is_open:
                dependencies = self._dependencies_of(issue, candidates) - {issue.number}
            items.append(
                WorkItem(
                    number=issue.number,
                    title=issue.title,
                    is_open=issue.is_open,
                    dependencies=dependencies,
                ),
            )
        return items

    def _dependencies_of(self, issue: TrackerIssue, candidates: set[int]) -> frozenset[int]:
        try:
            blockers = self.tracker.list_blockers(issue.number)
        except CommandError as error:
            logger.debug("Structured blockers unavailable for #%d: %s", issue.number, error)
        else:
            return frozenset(
                blocker.number
                for blocker in blockers
                if blocker.is_open and blocker.number in candidates
            )

        try:
            body = issue.body or self.tracker.get_issue(issue.number).body
        except CommandError as error:
            logger.warning("Could not fetch dependencies for #%d: %s", issue.number, error)
            return frozenset()
        return parse_blockers_from_text(body, candidates)
