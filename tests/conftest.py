"""Shared test fixtures: in-process events, a recording runner, a temp store."""

from __future__ import annotations

from pathlib import Path
from unittest.mock import MagicMock, patch

import pytest

from foreman.events import EventRecorder
from foreman.models import Dag, DagNode
from foreman.store import KeyedStore


@pytest.fixture(autouse=True)
def _no_redis():
    """Keep the default publisher off the network."""
    with patch("foreman.events.get_redis", return_value=MagicMock()) as mock:
        yield mock


@pytest.fixture()
def recorder() -> EventRecorder:
    return EventRecorder()


@pytest.fixture()
def store(tmp_path: Path) -> KeyedStore:
    """Per-test SQLite keyed store."""
    keyed = KeyedStore(tmp_path / "test.db")
    try:
        yield keyed
    finally:
        keyed.close()


class RecordingRunner:
    """ProcessRunner that only records what it was asked to start."""

    def __init__(self, fail_on: set[str] | None = None) -> None:
        self.dispatched: list[tuple[str, str]] = []
        self.briefings: dict[str, str] = {}
        self.fail_on = fail_on or set()

    def dispatch(self, dag: Dag, node: DagNode) -> None:
        if node.id in self.fail_on:
            raise RuntimeError(f"cannot start {node.id}")
        self.dispatched.append((dag.id, node.id))
        self.briefings[node.id] = node.briefing

    def node_ids(self) -> list[str]:
        return [node_id for _dag_id, node_id in self.dispatched]


@pytest.fixture()
def runner() -> RecordingRunner:
    return RecordingRunner()


@pytest.fixture()
def failing_runner() -> RecordingRunner:
    """Runner whose dispatch of node ``a`` raises."""
    return RecordingRunner(fail_on={"a"})
