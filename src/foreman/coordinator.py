"""Task lifecycle coordinator.

Decides what gets worked on next, enforces the agent concurrency cap and
drives the QC retry loop. It does not spawn agents: the external Process
Runner asks ``process_backlog`` for work and reports back through
``on_task_complete``; the Pipeline (or any caller) runs verification and
reports through ``on_qc_complete``.

All mutations run under one re-entrant lock per coordinator, so each task
has a single writer. Callbacks that find a task outside the expected prior
status are stale (late, duplicated, or overtaken by an override) and are
dropped.
"""

from __future__ import annotations

import copy
import logging
import threading
import uuid
from concurrent.futures import Future
from typing import Any

from foreman.config import CoordinatorConfig
from foreman.errors import (
    ForemanError,
    InvalidStateTransitionError,
    NotFoundError,
)
from foreman.events import EventEmitter, publish_event
from foreman.models import (
    SUB_AGENT_KINDS,
    VALID_TASK_STATUSES,
    CoordinatorState,
    QCResult,
    SubAgentDispatch,
    TaskDefinition,
    can_transition,
    normalize_task_priority,
    utcnow,
)
from foreman.store import KIND_TASK, KeyedStore
from foreman.task_queue import TaskQueue

log = logging.getLogger(__name__)


def _new_task_id() -> str:
    return f"task_{uuid.uuid4().hex[:12]}"


def _qc_feedback_section(qc_result: QCResult) -> str:
    failed = "\n".join(f"- {c.name}: {c.message}" for c in qc_result.failures)
    return (
        f"\n\n## QC Feedback ({qc_result.timestamp})\n{qc_result.summary}\n\n"
        f"Failed checks:\n{failed}"
    )


def _review_feedback_section(reason: str) -> str:
    return f"\n\n## Review Feedback ({utcnow()})\n{reason}"


class Coordinator:
    def __init__(
        self,
        config: CoordinatorConfig | dict[str, Any] | None = None,
        *,
        store: KeyedStore | None = None,
        emit: EventEmitter | None = publish_event,
    ) -> None:
        if isinstance(config, CoordinatorConfig):
            config.validate()
            self._config = copy.copy(config)
        else:
            self._config = CoordinatorConfig().merged(config or {})
        self._tasks: dict[str, TaskDefinition] = {}
        self._queue = TaskQueue()
        self._qc_waiters: dict[str, Future[QCResult]] = {}
        self._lock = threading.RLock()
        self._store = store
        self._emit = emit

    # -- internals --

    def _require(self, task_id: str) -> TaskDefinition:
        task = self._tasks.get(task_id)
        if task is None:
            raise NotFoundError("task", task_id)
        return task

    def _persist(self, task: TaskDefinition) -> None:
        if self._store is not None:
            self._store.put(KIND_TASK, task.id, task.to_dict())

    def _publish(self, task: TaskDefinition) -> None:
        if self._emit is not None:
            self._emit(
                "task:status",
                task.id,
                task.status,
                project=task.project,
                extra={"task": task.to_dict()},
            )

    def _transition(self, task: TaskDefinition, target: str) -> None:
        if not can_transition(task.status, target):
            raise InvalidStateTransitionError("task", task.id, task.status, target)
        log.info("Task %s: %s -> %s", task.id, task.status, target)
        task.status = target
        self._sync(task)

    def _sync(self, task: TaskDefinition) -> None:
        self._queue.update_task(task)
        self._persist(task)
        self._publish(task)

    def _clear_attempt(self, task: TaskDefinition) -> None:
        task.started_at = None
        task.completed_at = None
        task.assigned_agent = None

    def _requeue(self, task: TaskDefinition) -> None:
        self._transition(task, "backlog")
        self._queue.enqueue(task)

    def _resolve_waiter(self, task_id: str, result: QCResult) -> None:
        waiter = self._qc_waiters.pop(task_id, None)
        if waiter is not None and not waiter.done():
            waiter.set_result(result)

    def _abandon_waiter(self, task_id: str, exc: BaseException | None = None) -> None:
        waiter = self._qc_waiters.pop(task_id, None)
        if waiter is None or waiter.done():
            return
        if exc is None:
            waiter.cancel()
        else:
            waiter.set_exception(exc)

    # -- task creation --

    def add_task(
        self,
        title: str,
        briefing: str,
        project: str,
        *,
        priority: str | None = None,
        allowed_files: list[str] | None = None,
        blocked_files: list[str] | None = None,
        dependencies: list[str] | None = None,
        branch: str | None = None,
        token_usage: int | None = None,
    ) -> str:
        """Create a backlog task and enqueue it. Returns the new id."""
        task = TaskDefinition(
            id=_new_task_id(),
            title=title,
            briefing=briefing,
            project=project,
            priority=normalize_task_priority(priority),
            allowed_files=list(allowed_files or []),
            blocked_files=list(blocked_files or []),
            dependencies=list(dependencies or []),
            branch=branch,
            token_usage=token_usage,
        )
        with self._lock:
            self._tasks[task.id] = task
            self._queue.enqueue(task)
            self._persist(task)
            self._publish(task)
        log.info("Task %s added (%s, priority=%s)", task.id, title, task.priority)
        return task.id

    # -- scheduling --

    @property
    def active_agents(self) -> int:
        with self._lock:
            return sum(1 for task in self._tasks.values() if task.status == "in_progress")

    def is_at_capacity(self) -> bool:
        return self.active_agents >= self._config.max_concurrent_agents

    def process_backlog(self) -> str | None:
        """Start the next eligible task, or return None.

        None means either the agent cap is reached or no queued task has all
        of its dependencies done; both are "try again later".
        """
        with self._lock:
            if self.is_at_capacity():
                log.debug(
                    "At capacity (%d/%d); not dispatching",
                    self.active_agents,
                    self._config.max_concurrent_agents,
                )
                return None
            while True:
                queued = self._queue.dequeue()
                if queued is None:
                    return None
                task = self._tasks.get(queued.id)
                if task is None or task.status != "backlog":
                    log.debug("Skipping stale queue entry %s", queued.id)
                    continue
                task.started_at = utcnow()
                task.assigned_agent = task.assigned_agent or self._config.default_agent
                self._transition(task, "in_progress")
                return task.id

    # -- agent / QC callbacks --

    def on_task_complete(self, task_id: str, agent_output: str = "") -> Future[QCResult] | None:
        """Move a running task to review and hand verification to the caller.

        Returns a future that resolves with the QCResult once
        ``on_qc_complete`` runs for this task. A repeated report for a task
        already in review returns the same future; any other stale report
        returns None.
        """
        with self._lock:
            task = self._require(task_id)
            if task.status != "in_progress":
                if task.status == "review" and task_id in self._qc_waiters:
                    return self._qc_waiters[task_id]
                log.debug("Dropping completion for task %s in status %s", task_id, task.status)
                return None
            task.completed_at = utcnow()
            task.output = agent_output
            waiter: Future[QCResult] = Future()
            self._qc_waiters[task_id] = waiter
            self._transition(task, "review")
            return waiter

    def on_qc_complete(self, task_id: str, qc_result: QCResult) -> bool:
        """Advance a reviewed task on pass, or send it back with feedback on fail."""
        with self._lock:
            task = self._require(task_id)
            if task.status != "review":
                log.debug("Dropping QC result for task %s in status %s", task_id, task.status)
                return False
            task.qc_result = qc_result
            if qc_result.passed:
                target = "done" if self._config.auto_merge_on_qc_pass else "commit_review"
                self._transition(task, target)
                log.info("Task %s passed QC", task_id)
            else:
                task.briefing = f"{task.briefing}{_qc_feedback_section(qc_result)}"
                self._clear_attempt(task)
                self._requeue(task)
                log.info(
                    "Task %s failed QC (%d failing checks); re-queued",
                    task_id,
                    len(qc_result.failures),
                )
            self._resolve_waiter(task_id, qc_result)
            return True

    # -- human approval --

    def approve_task(self, task_id: str) -> None:
        with self._lock:
            task = self._require(task_id)
            if task.status != "commit_review":
                raise InvalidStateTransitionError("task", task_id, task.status, "done")
            self._transition(task, "done")

    def reject_task(self, task_id: str, reason: str, *, retry: bool = True) -> None:
        """Reject work awaiting commit review: retry with feedback, or fail it."""
        with self._lock:
            task = self._require(task_id)
            target = "backlog" if retry else "failed"
            if task.status != "commit_review":
                raise InvalidStateTransitionError("task", task_id, task.status, target)
            if retry:
                task.briefing = f"{task.briefing}{_review_feedback_section(reason)}"
                self._clear_attempt(task)
                self._requeue(task)
            else:
                task.error = reason
                self._transition(task, "failed")

    def fail_task(self, task_id: str, error: str, *, cause: BaseException | None = None) -> bool:
        """Mark a task failed. Returns False when it already is."""
        with self._lock:
            task = self._require(task_id)
            if task.status == "failed":
                return False
            if not can_transition(task.status, "failed"):
                raise InvalidStateTransitionError("task", task_id, task.status, "failed")
            task.error = error
            self._queue.remove(task_id)
            self._transition(task, "failed")
            self._abandon_waiter(task_id, cause or ForemanError(error))
            log.warning("Task %s failed: %s", task_id, error)
            return True

    def retry_task(self, task_id: str) -> bool:
        """Send a failed task back to the backlog. Returns False if already queued."""
        with self._lock:
            task = self._require(task_id)
            if task.status == "backlog":
                return False
            if task.status != "failed":
                raise InvalidStateTransitionError("task", task_id, task.status, "backlog")
            task.error = None
            self._clear_attempt(task)
            self._requeue(task)
            return True

    # -- sub-agents --

    def handle_sub_agent_request(self, parent_id: str, kind: str, query: str) -> SubAgentDispatch:
        """Spawn a child task for a running agent and try to start it right away.

        The immediate dispatch is best-effort: another eligible task of equal
        or higher priority may win, in which case the child stays queued.
        """
        if kind not in SUB_AGENT_KINDS:
            raise ValueError(f"Invalid sub-agent kind '{kind}'. Must be one of: {SUB_AGENT_KINDS}")
        with self._lock:
            if self.is_at_capacity():
                return SubAgentDispatch(accepted=False)
            parent = self._require(parent_id)
            label = "Scrape" if kind == "scrape" else "Knowledge"
            child_id = self.add_task(
                f"{label}: {query}",
                f"Sub-agent request from task {parent_id}\nType: {kind}\nQuery: {query}",
                parent.project,
                priority=parent.priority,
            )
            dispatched = self.process_backlog()
            if dispatched != child_id:
                log.info("Sub-agent task %s queued (dispatched %s instead)", child_id, dispatched)
            return SubAgentDispatch(accepted=True, task_id=child_id, dispatched_task_id=dispatched)

    # -- config / state --

    def update_config(self, partial: dict[str, Any] | None = None, **kwargs: Any) -> None:
        with self._lock:
            self._config = self._config.merged({**(partial or {}), **kwargs})

    def get_config(self) -> CoordinatorConfig:
        return copy.copy(self._config)

    def get_state(self) -> CoordinatorState:
        with self._lock:
            return CoordinatorState(
                tasks=[copy.deepcopy(task) for task in self._tasks.values()],
                active_agents=self.active_agents,
                max_agents=self._config.max_concurrent_agents,
                queue_depth=self._queue.size(),
            )

    def get_task(self, task_id: str) -> TaskDefinition | None:
        with self._lock:
            task = self._tasks.get(task_id)
            return copy.deepcopy(task) if task else None

    def list_tasks(
        self, *, status: str | None = None, project: str | None = None
    ) -> list[TaskDefinition]:
        with self._lock:
            tasks = [
                copy.deepcopy(task)
                for task in self._tasks.values()
                if (status is None or task.status == status)
                and (project is None or task.project == project)
            ]
        return sorted(tasks, key=lambda t: t.created_at)

    def update_task_status(self, task_id: str, status: str) -> bool:
        """Force a status from outside the lifecycle (external control).

        Bypasses the transition table but keeps the queue consistent: the
        task is queued iff it ends up in backlog. Returns False when the
        task already has that status.
        """
        if status not in VALID_TASK_STATUSES:
            raise ValueError(f"Invalid task status '{status}'. Must be one of: {VALID_TASK_STATUSES}")
        with self._lock:
            task = self._require(task_id)
            if task.status == status:
                return False
            log.info("Task %s: %s -> %s (override)", task_id, task.status, status)
            task.status = status
            if status == "backlog":
                self._queue.enqueue(task)
            else:
                self._queue.remove(task_id)
            if status != "review":
                self._abandon_waiter(task_id)
            self._sync(task)
            return True

    def delete_task(self, task_id: str) -> None:
        """Remove a task for good; tasks depending on it stay unmet."""
        with self._lock:
            self._require(task_id)
            del self._tasks[task_id]
            self._queue.forget(task_id)
            self._abandon_waiter(task_id)
            if self._store is not None:
                self._store.delete(KIND_TASK, task_id)

    def restore(self, tasks: list[TaskDefinition]) -> None:
        """Load previously persisted tasks (e.g. from the keyed store)."""
        with self._lock:
            for task in sorted(tasks, key=lambda t: t.created_at):
                restored = copy.deepcopy(task)
                self._tasks[restored.id] = restored
                self._queue.update_task(restored)
                if restored.status == "backlog":
                    self._queue.enqueue(restored)

    def clear(self) -> None:
        with self._lock:
            for task_id in list(self._qc_waiters):
                self._abandon_waiter(task_id)
            self._tasks.clear()
            self._queue.clear()
