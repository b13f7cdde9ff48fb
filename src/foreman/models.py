"""Task, QC and DAG records shared across the engine."""

from __future__ import annotations

import dataclasses
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any

# -- tasks --

TASK_PRIORITIES = ("critical", "high", "medium", "low")
_TASK_PRIORITY_RANK = {priority: rank for rank, priority in enumerate(TASK_PRIORITIES)}
DEFAULT_TASK_PRIORITY = "medium"

VALID_TASK_STATUSES = {"backlog", "in_progress", "review", "commit_review", "done", "failed"}
TASK_ACTIVE_STATUSES = {"in_progress", "review", "commit_review"}

# Legal coordinator transitions; update_task_status is the only path around them.
TASK_TRANSITIONS: dict[str, set[str]] = {
    "backlog": {"in_progress", "failed"},
    "in_progress": {"review", "failed"},
    "review": {"commit_review", "done", "backlog", "failed"},
    "commit_review": {"done", "backlog", "failed"},
    "failed": {"backlog"},
    "done": set(),
}

SUB_AGENT_KINDS = {"scrape", "knowledge"}


def utcnow() -> str:
    """ISO 8601 UTC timestamp with microseconds (FIFO ordering relies on it)."""
    return datetime.now(UTC).isoformat()


def normalize_task_priority(priority: str | None) -> str:
    if priority is None:
        return DEFAULT_TASK_PRIORITY
    if not isinstance(priority, str) or not priority.strip():
        raise ValueError(f"Invalid task priority '{priority}'. Must be one of: {TASK_PRIORITIES}")
    normalized = priority.strip().lower()
    if normalized not in _TASK_PRIORITY_RANK:
        raise ValueError(f"Invalid task priority '{priority}'. Must be one of: {TASK_PRIORITIES}")
    return normalized


def priority_rank(priority: str) -> int:
    return _TASK_PRIORITY_RANK[priority]


def can_transition(current: str, target: str) -> bool:
    return target in TASK_TRANSITIONS.get(current, set())


def _from_fields(cls: type, data: dict[str, Any]) -> dict[str, Any]:
    names = {f.name for f in dataclasses.fields(cls)}
    return {k: v for k, v in data.items() if k in names}


@dataclass
class QCCheck:
    """Result of a single verification check."""

    name: str
    passed: bool
    message: str = ""
    duration_ms: int = 0


@dataclass
class QCResult:
    """Full verification result for one branch."""

    passed: bool
    checks: list[QCCheck] = field(default_factory=list)
    summary: str = ""
    timestamp: str = field(default_factory=utcnow)

    @property
    def failures(self) -> list[QCCheck]:
        return [c for c in self.checks if not c.passed]

    @classmethod
    def from_checks(cls, checks: list[QCCheck], branch: str) -> QCResult:
        passed = all(c.passed for c in checks)
        if passed:
            summary = f"✓ All {len(checks)} QC checks passed on branch {branch}"
        else:
            failed = sum(1 for c in checks if not c.passed)
            summary = f"✗ {failed} of {len(checks)} QC checks failed on branch {branch}"
        return cls(passed=passed, checks=list(checks), summary=summary)

    def to_dict(self) -> dict[str, Any]:
        return dataclasses.asdict(self)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> QCResult:
        checks = [QCCheck(**_from_fields(QCCheck, c)) for c in data.get("checks") or []]
        values = _from_fields(cls, data)
        values["checks"] = checks
        return cls(**values)


@dataclass
class TaskDefinition:
    """A unit of agent work tracked by the coordinator."""

    id: str
    title: str
    briefing: str
    project: str
    priority: str = DEFAULT_TASK_PRIORITY
    allowed_files: list[str] = field(default_factory=list)
    blocked_files: list[str] = field(default_factory=list)
    dependencies: list[str] = field(default_factory=list)
    status: str = "backlog"
    assigned_agent: str | None = None
    branch: str | None = None
    qc_result: QCResult | None = None
    created_at: str = field(default_factory=utcnow)
    started_at: str | None = None
    completed_at: str | None = None
    token_usage: int | None = None
    output: str | None = None
    error: str | None = None

    def to_dict(self) -> dict[str, Any]:
        data = dataclasses.asdict(self)
        data["qc_result"] = self.qc_result.to_dict() if self.qc_result else None
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> TaskDefinition:
        values = _from_fields(cls, data)
        qc = values.get("qc_result")
        if isinstance(qc, dict):
            values["qc_result"] = QCResult.from_dict(qc)
        return cls(**values)


@dataclass
class SubAgentDispatch:
    """Outcome of a sub-agent request.

    Truthy iff the request was accepted. ``dispatched`` tells whether the
    immediate ``process_backlog`` attempt picked up the new task, or merely
    left it queued behind other eligible work.
    """

    accepted: bool
    task_id: str | None = None
    dispatched_task_id: str | None = None

    @property
    def dispatched(self) -> bool:
        return self.task_id is not None and self.dispatched_task_id == self.task_id

    def __bool__(self) -> bool:
        return self.accepted


@dataclass
class CoordinatorState:
    tasks: list[TaskDefinition]
    active_agents: int
    max_agents: int
    queue_depth: int


# -- DAGs --

VALID_DAG_STATUSES = {"created", "running", "completed", "failed", "paused"}
DAG_TERMINAL_STATUSES = {"completed", "failed", "paused"}
VALID_NODE_TYPES = {"task", "gate", "fan_out", "fan_in"}
STRUCTURAL_NODE_TYPES = {"fan_out", "fan_in"}
VALID_NODE_STATUSES = {"pending", "running", "completed", "failed", "skipped", "waiting_approval"}
NODE_TERMINAL_STATUSES = {"completed", "failed", "skipped"}
VALID_GATE_CONDITIONS = {"all_pass", "any_pass", "manual"}
DEFAULT_GATE_CONDITION = "all_pass"
VALID_EDGE_TYPES = {"dependency", "data_flow", "gate"}
VALID_APPROVAL_MODES = {"gate_configured", "per_task", "end_only"}
VALID_DAG_CREATORS = {"planner", "manual"}


@dataclass
class DagNode:
    id: str
    type: str = "task"
    title: str = ""
    briefing: str = ""
    role: str | None = None
    agent: str | None = None
    status: str = "pending"
    gate_condition: str | None = None
    error: str | None = None
    started_at: str | None = None
    completed_at: str | None = None
    output: list[str] = field(default_factory=list)
    artifacts: dict[str, Any] = field(default_factory=dict)
    allowed_files: list[str] = field(default_factory=list)
    blocked_files: list[str] = field(default_factory=list)

    @property
    def is_terminal(self) -> bool:
        return self.status in NODE_TERMINAL_STATUSES

    def to_dict(self) -> dict[str, Any]:
        return dataclasses.asdict(self)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> DagNode:
        return cls(**_from_fields(cls, data))


@dataclass
class DagEdge:
    source: str
    target: str
    type: str = "dependency"
    label: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {"from": self.source, "to": self.target, "type": self.type, "label": self.label}

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> DagEdge:
        return cls(
            source=data["from"],
            target=data["to"],
            type=data.get("type") or "dependency",
            label=data.get("label"),
        )


@dataclass
class Dag:
    id: str
    name: str
    project: str
    nodes: list[DagNode] = field(default_factory=list)
    edges: list[DagEdge] = field(default_factory=list)
    description: str = ""
    created_by: str = "manual"
    approval_mode: str = "gate_configured"
    status: str = "created"
    created_at: str = field(default_factory=utcnow)
    started_at: str | None = None
    completed_at: str | None = None
    updated_at: str = field(default_factory=utcnow)

    def node(self, node_id: str) -> DagNode | None:
        for node in self.nodes:
            if node.id == node_id:
                return node
        return None

    def predecessors(self, node_id: str) -> list[str]:
        return [e.source for e in self.edges if e.target == node_id]

    def successors(self, node_id: str) -> list[str]:
        return [e.target for e in self.edges if e.source == node_id]

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "project": self.project,
            "description": self.description,
            "created_by": self.created_by,
            "approval_mode": self.approval_mode,
            "status": self.status,
            "nodes": [n.to_dict() for n in self.nodes],
            "edges": [e.to_dict() for e in self.edges],
            "created_at": self.created_at,
            "started_at": self.started_at,
            "completed_at": self.completed_at,
            "updated_at": self.updated_at,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Dag:
        values = _from_fields(cls, data)
        values["nodes"] = [DagNode.from_dict(n) for n in data.get("nodes") or []]
        values["edges"] = [DagEdge.from_dict(e) for e in data.get("edges") or []]
        return cls(**values)
