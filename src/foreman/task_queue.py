"""Priority queue of task records gated on dependency completion.

Ordering is by priority rank (critical first), then creation time, then
insertion sequence, kept in a sorted index so inserts are a bisect rather
than a full re-sort. Dependency resolution consults a separate id -> task
tracking map that only changes through ``enqueue``, ``update_task``,
``forget`` and ``clear``: the queue stores snapshots and never observes
external mutation, so callers must push status changes via ``update_task``.
"""

from __future__ import annotations

import bisect
import copy
import itertools
from collections.abc import Iterator

from foreman.models import TaskDefinition, priority_rank


_SortKey = tuple[int, str, int]


class TaskQueue:
    def __init__(self) -> None:
        self._index: list[tuple[_SortKey, str]] = []
        self._queued: dict[str, tuple[_SortKey, str]] = {}
        self._tracked: dict[str, TaskDefinition] = {}
        self._seq = itertools.count()

    def enqueue(self, task: TaskDefinition) -> None:
        """Insert (or re-insert) a task at its priority/FIFO position."""
        if task.id in self._queued:
            self.remove(task.id)
        snapshot = copy.deepcopy(task)
        self._tracked[task.id] = snapshot
        entry = ((priority_rank(task.priority), task.created_at, next(self._seq)), task.id)
        bisect.insort(self._index, entry)
        self._queued[task.id] = entry

    def dequeue(self) -> TaskDefinition | None:
        """Remove and return the first queued task whose dependencies are met.

        Returns None when nothing qualifies; that is "nothing to do now",
        not an error.
        """
        for position, (_key, task_id) in enumerate(self._index):
            task = self._tracked[task_id]
            if self.is_eligible(task):
                del self._index[position]
                del self._queued[task_id]
                return task
        return None

    def peek(self) -> TaskDefinition | None:
        for _key, task_id in self._index:
            task = self._tracked[task_id]
            if self.is_eligible(task):
                return task
        return None

    def is_eligible(self, task: TaskDefinition) -> bool:
        """True iff every dependency resolves to a tracked task with status done.

        An id that resolves to nothing (never known, or forgotten after a
        delete) is unmet, permanently.
        """
        for dep_id in task.dependencies or ():
            dep = self._tracked.get(dep_id)
            if dep is None or dep.status != "done":
                return False
        return True

    def get_task(self, task_id: str) -> TaskDefinition | None:
        return self._tracked.get(task_id)

    def update_task(self, task: TaskDefinition) -> None:
        """Refresh the tracking map without touching queue order."""
        self._tracked[task.id] = copy.deepcopy(task)

    def remove(self, task_id: str) -> bool:
        """Drop a task from the queue (it stays tracked for dependency checks)."""
        entry = self._queued.pop(task_id, None)
        if entry is None:
            return False
        position = bisect.bisect_left(self._index, entry)
        if position < len(self._index) and self._index[position] == entry:
            del self._index[position]
        else:
            self._index.remove(entry)
        return True

    def forget(self, task_id: str) -> None:
        """Remove a task from the queue and the tracking map."""
        self.remove(task_id)
        self._tracked.pop(task_id, None)

    def size(self) -> int:
        return len(self._index)

    def get_all(self) -> list[TaskDefinition]:
        return [self._tracked[task_id] for _key, task_id in self._index]

    def clear(self) -> None:
        self._index.clear()
        self._queued.clear()
        self._tracked.clear()

    def __len__(self) -> int:
        return self.size()

    def __contains__(self, task_id: object) -> bool:
        return task_id in self._queued

    def __iter__(self) -> Iterator[TaskDefinition]:
        return iter(self.get_all())
