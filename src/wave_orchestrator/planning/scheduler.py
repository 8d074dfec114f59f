"""Wave scheduling: Kahn topological layering with cycle rejection."""

from __future__ import annotations

from collections.abc import Iterable, Mapping, Sequence
from dataclasses import dataclass

from wave_orchestrator.errors import CycleDetectedError
from wave_orchestrator.planning.graph import WorkItem


@dataclass(slots=True)
class Wave:
    """Ordinal batch of items with no outstanding dependencies among them."""

    number: int
    items: tuple[int, ...]


DependencyMap = Mapping[int, frozenset[int]]


def toposort_waves(items: Iterable[WorkItem]) -> list[Wave]:
    """Layer open items into waves using Kahn's algorithm.

    Only open items are scheduled, and only dependencies on other open items
    in the candidate set count towards an item's in-degree. Items inside a wave
    are ordered by ascending number.

    Raises ``CycleDetectedError`` naming every item that could not be assigned.
    """

    candidates = {item.number: item for item in items if item.is_open}
    if not candidates:
        return []

    in_degree: dict[int, int] = {}
    dependents: dict[int, list[int]] = {number: [] for number in candidates}
    for number, item in candidates.items():
        blockers = {dep for dep in item.dependencies if dep in candidates and dep != number}
        in_degree[number] = len(blockers)
        for blocker in blockers:
            dependents[blocker].append(number)

    waves: list[Wave] = []
    current = sorted(number for number, degree in in_degree.items() if degree == 0)
    assigned: set[int] = set()
    while current:
        waves.append(Wave(number=len(waves) + 1, items=tuple(current)))
        assigned.update(current)
        ready: list[int] = []
        for number in current:
            for dependent in dependents[number]:
                in_degree[dependent] -= 1
                if in_degree[dependent] == 0:
                    ready.append(dependent)
        current = sorted(ready)

    unassigned = set(candidates) - assigned
    if unassigned:
        raise CycleDetectedError(unassigned)
    return waves


def infer_graph_from_waves(waves: Sequence[Wave]) -> dict[int, frozenset[int]]:
    """Rebuild a conservative graph: every item depends on the whole previous wave."""

    by_number = {wave.number: wave.items for wave in waves}
    return {
        item: frozenset(by_number.get(wave.number - 1, ()))
        for wave in waves
        for item in wave.items
    }


def dependency_map(items: Iterable[WorkItem]) -> dict[int, frozenset[int]]:
    return {item.number: item.dependencies for item in items}


def gate_wave(
    wave: Wave,
    failed: set[int],
    graph: DependencyMap,
) -> tuple[list[int], list[int]]:
    """Split a wave into (eligible, blocked) by failed dependencies.

    The caller adds blocked items to ``failed`` so later waves see the skip
    transitively.
    """

    eligible: list[int] = []
    blocked: list[int] = []
    for item in wave.items:
        if graph.get(item, frozenset()) & failed:
            blocked.append(item)
        else:
            eligible.append(item)
    return eligible, blocked
