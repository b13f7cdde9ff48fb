"""Prepare -> run -> verify -> advance cycle for single tasks.

The Pipeline owns a Coordinator and wires it to the Verifier, the briefing
builder and (optionally) the VCS scope check. The Process Runner calls
``tick`` to get work, ``prepare_task`` for the agent's instructions and
``on_agent_complete`` when the agent exits.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from foreman.briefing import build_agent_briefing, read_optional_text
from foreman.config import CoordinatorConfig
from foreman.coordinator import Coordinator
from foreman.errors import NotFoundError, VerifierUnavailableError
from foreman.events import EventEmitter, publish_event
from foreman.models import CoordinatorState, QCCheck, QCResult, TaskDefinition
from foreman.paths import MANIFEST_FILENAME, SYSTEM_PROMPT_FILENAME
from foreman.scope import ScopeEnforcer
from foreman.store import KeyedStore
from foreman.vcs import VCS, GitVCS
from foreman.verifier import CommandVerifier, Verifier

log = logging.getLogger(__name__)


@dataclass
class PreparedTask:
    """Everything the Process Runner needs to start an agent."""

    briefing: str
    branch: str
    allowed_files: list[str] = field(default_factory=list)
    blocked_files: list[str] = field(default_factory=list)


@dataclass
class PipelineOutcome:
    qc_passed: bool
    qc_result: QCResult | None
    next_action: str


def task_branch(task: TaskDefinition) -> str:
    return task.branch or f"foreman/{task.id}"


class Pipeline:
    def __init__(
        self,
        project_dir: str | Path,
        config: CoordinatorConfig | dict[str, Any] | None = None,
        *,
        coordinator: Coordinator | None = None,
        verifier: Verifier | None = None,
        vcs: VCS | None = None,
        base_branch: str | None = None,
        store: KeyedStore | None = None,
        emit: EventEmitter | None = publish_event,
    ) -> None:
        self.project_dir = Path(project_dir)
        self._coordinator = coordinator or Coordinator(config, store=store, emit=emit)
        self._verifier: Verifier = verifier or CommandVerifier()
        self._vcs: VCS = vcs or GitVCS()
        self.base_branch = base_branch

    def _require_task(self, task_id: str) -> TaskDefinition:
        task = self._coordinator.get_task(task_id)
        if task is None:
            raise NotFoundError("task", task_id)
        return task

    def prepare_task(self, task_id: str) -> PreparedTask | None:
        task = self._coordinator.get_task(task_id)
        if task is None:
            return None
        system_prompt = read_optional_text(self.project_dir / SYSTEM_PROMPT_FILENAME) or ""
        manifest = read_optional_text(self.project_dir / MANIFEST_FILENAME)
        branch = task_branch(task)
        briefing = build_agent_briefing(
            system_prompt=system_prompt,
            task_briefing=task.briefing,
            project_manifest=manifest,
            branch=branch,
            allowed_files=task.allowed_files,
            blocked_files=task.blocked_files,
        )
        return PreparedTask(
            briefing=briefing,
            branch=branch,
            allowed_files=list(task.allowed_files),
            blocked_files=list(task.blocked_files),
        )

    def _scope_check(self, task: TaskDefinition, branch: str) -> QCCheck | None:
        if not self.base_branch:
            return None
        try:
            touched = self._vcs.changed_files(str(self.project_dir), branch, self.base_branch)
        except RuntimeError:
            log.warning("Scope check skipped for %s: cannot list changed files", task.id)
            return None
        violations = ScopeEnforcer(task.allowed_files, task.blocked_files).violations(touched)
        if violations:
            return QCCheck(
                name="scope_check",
                passed=False,
                message="Out-of-scope files modified: " + ", ".join(violations),
            )
        return QCCheck(
            name="scope_check",
            passed=True,
            message=f"{len(touched)} changed files within scope",
        )

    def _verify(self, task: TaskDefinition, branch: str) -> QCResult:
        result = self._verifier(str(self.project_dir), branch)
        scope = self._scope_check(task, branch)
        if scope is None:
            return result
        summary = result.summary
        if not scope.passed:
            summary = f"{summary}\n{scope.message}" if summary else scope.message
        return QCResult(
            passed=result.passed and scope.passed,
            checks=[*result.checks, scope],
            summary=summary,
            timestamp=result.timestamp,
        )

    def on_agent_complete(self, task_id: str, output: str = "") -> PipelineOutcome | None:
        """Verify a finished agent's work and advance the task.

        Returns None when the completion report is stale (the task is no
        longer running). With auto_qc disabled the task is left in review
        and verification is up to the caller.
        """
        waiter = self._coordinator.on_task_complete(task_id, output)
        if waiter is None:
            return None
        task = self._require_task(task_id)
        branch = task_branch(task)
        config = self._coordinator.get_config()
        if not config.auto_qc:
            return PipelineOutcome(qc_passed=False, qc_result=None, next_action="review")

        try:
            qc_result = self._verify(task, branch)
        except Exception as exc:
            log.exception("Verifier failed for task %s", task_id)
            cause = (
                exc
                if isinstance(exc, VerifierUnavailableError)
                else VerifierUnavailableError(str(exc))
            )
            self._coordinator.fail_task(task_id, f"Verifier unavailable: {exc}", cause=cause)
            return PipelineOutcome(qc_passed=False, qc_result=None, next_action="failed")

        self._coordinator.on_qc_complete(task_id, qc_result)
        if not qc_result.passed:
            next_action = "retry"
        elif config.auto_merge_on_qc_pass:
            next_action = "done"
        else:
            next_action = "commit_review"
        return PipelineOutcome(
            qc_passed=qc_result.passed, qc_result=qc_result, next_action=next_action
        )

    async def on_agent_complete_async(
        self, task_id: str, output: str = ""
    ) -> PipelineOutcome | None:
        return await asyncio.to_thread(self.on_agent_complete, task_id, output)

    def get_task_diff(self, task_id: str) -> str:
        task = self._require_task(task_id)
        return self._vcs.diff(str(self.project_dir), task_branch(task), self.base_branch or "main")

    def tick(self) -> str | None:
        return self._coordinator.process_backlog()

    def get_state(self) -> CoordinatorState:
        return self._coordinator.get_state()

    def get_coordinator(self) -> Coordinator:
        return self._coordinator
