"""Tests for the dependency-gated priority queue."""

from __future__ import annotations

import time

from foreman.models import TaskDefinition
from foreman.task_queue import TaskQueue


def _task(task_id: str, priority: str = "medium", deps: list[str] | None = None, **kw) -> TaskDefinition:
    return TaskDefinition(
        id=task_id,
        title=task_id,
        briefing=f"do {task_id}",
        project="proj",
        priority=priority,
        dependencies=deps or [],
        **kw,
    )


def test_dequeue_returns_highest_priority_first():
    queue = TaskQueue()
    queue.enqueue(_task("low", "low"))
    queue.enqueue(_task("crit", "critical"))
    queue.enqueue(_task("med", "medium"))
    queue.enqueue(_task("high", "high"))

    assert [queue.dequeue().id for _ in range(4)] == ["crit", "high", "med", "low"]
    assert queue.dequeue() is None


def test_equal_priority_is_fifo():
    queue = TaskQueue()
    for name in ("first", "second", "third", "fourth"):
        queue.enqueue(_task(name, "high"))
        time.sleep(0.001)

    assert [queue.dequeue().id for _ in range(4)] == ["first", "second", "third", "fourth"]


def test_fifo_falls_back_to_insertion_order_on_equal_timestamps():
    queue = TaskQueue()
    stamp = "2026-01-01T00:00:00+00:00"
    for name in ("a", "b", "c"):
        queue.enqueue(_task(name, created_at=stamp))

    assert [queue.dequeue().id for _ in range(3)] == ["a", "b", "c"]


def test_unmet_dependency_is_skipped_even_at_top_priority():
    queue = TaskQueue()
    blocker = _task("blocker", "low")
    queue.enqueue(blocker)
    queue.enqueue(_task("blocked", "critical", deps=["blocker"]))

    assert queue.peek().id == "blocker"
    assert queue.dequeue().id == "blocker"
    assert queue.dequeue() is None
    assert queue.size() == 1


def test_dependency_resolves_after_update_task():
    """T2 (critical) waits on T1 (high) until T1 is pushed back as done."""
    queue = TaskQueue()
    t1 = _task("t1", "high")
    t2 = _task("t2", "critical", deps=["t1"])
    queue.enqueue(t1)
    queue.enqueue(t2)

    first = queue.dequeue()
    assert first.id == "t1"

    t1.status = "done"
    assert queue.dequeue() is None  # external mutation is not observed
    queue.update_task(t1)
    assert queue.dequeue().id == "t2"


def test_unknown_dependency_is_unmet():
    queue = TaskQueue()
    queue.enqueue(_task("orphan", deps=["never-existed"]))
    assert queue.dequeue() is None


def test_forgotten_dependency_stays_unmet():
    queue = TaskQueue()
    dep = _task("dep", status="done")
    queue.update_task(dep)
    queue.enqueue(_task("child", deps=["dep"]))
    queue.forget("dep")

    assert queue.dequeue() is None
    assert queue.get_task("dep") is None


def test_remove_keeps_tracking_for_dependents():
    queue = TaskQueue()
    queue.enqueue(_task("a"))
    queue.enqueue(_task("b"))

    assert queue.remove("a") is True
    assert queue.remove("a") is False
    assert "a" not in queue
    assert queue.get_task("a") is not None
    assert [t.id for t in queue.get_all()] == ["b"]


def test_re_enqueue_does_not_duplicate():
    queue = TaskQueue()
    task = _task("a", "low")
    queue.enqueue(task)
    task.priority = "critical"
    queue.enqueue(task)

    assert len(queue) == 1
    assert queue.peek().priority == "critical"


def test_clear_empties_queue_and_tracking():
    queue = TaskQueue()
    queue.enqueue(_task("a"))
    queue.clear()

    assert queue.size() == 0
    assert queue.get_task("a") is None
    assert list(queue) == []
