from __future__ import annotations

import allure
import pytest

from wave_orchestrator.errors import CycleDetectedError, SetupError
from wave_orchestrator.planning.graph import WorkItem
from wave_orchestrator.planning.scheduler import (
    Wave,
    dependency_map,
    gate_wave,
    infer_graph_from_waves,
    toposort_waves,
)

pytestmark = [
    allure.epic("Planning"),
    allure.feature("Wave Scheduling"),
]


def _item(number: int, *deps: int, is_open: bool = True) -> WorkItem:
    return WorkItem(number=number, is_open=is_open, dependencies=frozenset(deps))


def test_diamond_dependencies_produce_three_waves() -> None:
    waves = toposort_waves([_item(4, 2, 3), _item(3, 1), _item(2, 1), _item(1)])

    assert [list(wave.items) for wave in waves] == [[1], [2, 3], [4]]
    assert [wave.number for wave in waves] == [1, 2, 3]


def test_every_item_waits_for_all_of_its_dependencies() -> None:
    items = [
        _item(10),
        _item(11, 10),
        _item(12),
        _item(13, 11, 12),
        _item(14, 10),
        _item(15, 13, 14),
    ]

    waves = toposort_waves(items)

    wave_of = {item: wave.number for wave in waves for item in wave.items}
    for item in items:
        for dep in item.dependencies:
            assert wave_of[item.number] > wave_of[dep]
    assert sorted(wave_of) == [10, 11, 12, 13, 14, 15]


def test_closed_items_and_external_dependencies_are_ignored() -> None:
    waves = toposort_waves([_item(1, is_open=False), _item(2, 1), _item(3, 99), _item(4, 4)])

    assert [list(wave.items) for wave in waves] == [[2, 3, 4]]


def test_cycle_is_rejected_naming_every_unassigned_item() -> None:
    with pytest.raises(CycleDetectedError) as caught:
        toposort_waves([_item(1), _item(2, 3), _item(3, 2), _item(4, 3)])

    assert caught.value.members == (2, 3, 4)
    assert isinstance(caught.value, SetupError)
    assert "#2" in str(caught.value)


def test_no_open_items_yields_no_waves() -> None:
    assert toposort_waves([_item(1, is_open=False)]) == []


def test_gate_wave_blocks_items_with_failed_dependencies() -> None:
    graph = dependency_map([_item(1), _item(2, 1), _item(3, 1), _item(4, 2, 3), _item(5)])
    failed = {1}

    eligible, blocked = gate_wave(Wave(number=2, items=(2, 3, 5)), failed, graph)
    failed.update(blocked)
    next_eligible, next_blocked = gate_wave(Wave(number=3, items=(4,)), failed, graph)

    assert (eligible, blocked) == ([5], [2, 3])
    assert (next_eligible, next_blocked) == ([], [4])


def test_infer_graph_from_waves_links_each_item_to_previous_wave() -> None:
    graph = infer_graph_from_waves(
        [Wave(number=1, items=(1,)), Wave(number=2, items=(2, 3)), Wave(number=3, items=(4,))],
    )

    assert graph == {
        1: frozenset(),
        2: frozenset({1}),
        3: frozenset({1}),
        4: frozenset({2, 3}),
    }
