"""Shared test fixtures."""

from __future__ import annotations

import logging
from collections.abc import Iterator
from pathlib import Path

import pytest
from fakes import FakeNotifier, FakeRunner, FakeTracker, FakeWorkspaces

from wave_orchestrator.checkpoint.repository import CheckpointRepository
from wave_orchestrator.logging_config import _HANDLER_NAME


@pytest.fixture(autouse=True)
def _reset_root_logging() -> Iterator[None]:
    """Undo the CLI's ``setup_logging`` so its handler does not leak between tests."""

    root = logging.getLogger()
    level = root.level
    try:
        yield
    finally:
        for handler in list(root.handlers):
            if handler.get_name() == _HANDLER_NAME:
                root.removeHandler(handler)
        root.setLevel(level)


@pytest.fixture()
def repository(tmp_path: Path) -> Iterator[CheckpointRepository]:
    repo = CheckpointRepository(tmp_path / "state" / "execution-state.db")
    repo.init_schema()
    try:
        yield repo
    finally:
        repo.close()


@pytest.fixture()
def tracker() -> FakeTracker:
    return FakeTracker()


@pytest.fixture()
def workspaces(tmp_path: Path) -> FakeWorkspaces:
    root = tmp_path / "repo"
    root.mkdir()
    return FakeWorkspaces(root)


@pytest.fixture()
def runner() -> FakeRunner:
    return FakeRunner()


@pytest.fixture()
def notifier() -> FakeNotifier:
    return FakeNotifier()
