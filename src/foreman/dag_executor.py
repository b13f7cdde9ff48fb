"""DAG workflow executor.

Drives graphs of task, gate and structural nodes. The executor never runs
agents itself: eligible task nodes are marked ``running`` and handed to a
ProcessRunner, which reports back through ``on_node_output``,
``on_node_completed`` and ``on_node_failed``. After every state change the
eligibility pass runs to a fixpoint, so skips and structural completions
cascade within one call.

Locking: one re-entrant lock per DAG serializes all mutation of that DAG;
an executor-wide lock guards the running-slot set that enforces the global
concurrency cap. A DAG lock may be held while taking the slot lock, never
the other way round. Runner dispatch happens with no lock held.
"""

from __future__ import annotations

import copy
import logging
import threading
from typing import Any, Protocol

from foreman.config import load_dag_max_concurrency
from foreman.dag import build_dag, check_graph, parse_mutation
from foreman.errors import DagValidationError, InvalidStateTransitionError, NotFoundError
from foreman.events import EventEmitter, publish_event
from foreman.models import STRUCTURAL_NODE_TYPES, Dag, DagNode, utcnow
from foreman.store import KIND_DAG, KeyedStore

log = logging.getLogger(__name__)

_OPEN_NODE_STATUSES = {"pending", "running", "waiting_approval"}


class ProcessRunner(Protocol):
    def dispatch(self, dag: Dag, node: DagNode) -> None:
        """Start executing *node*; must not block on the agent finishing."""
        ...


class DagExecutor:
    def __init__(
        self,
        runner: ProcessRunner | None = None,
        *,
        max_concurrency: int | None = None,
        store: KeyedStore | None = None,
        emit: EventEmitter | None = publish_event,
    ) -> None:
        if max_concurrency is None:
            max_concurrency = load_dag_max_concurrency()
        if max_concurrency < 1:
            raise ValueError(f"max_concurrency must be >= 1, got {max_concurrency}")
        self._runner = runner
        self.max_concurrency = max_concurrency
        self._store = store
        self._emit = emit
        self._dags: dict[str, Dag] = {}
        self._locks: dict[str, threading.RLock] = {}
        self._registry_lock = threading.Lock()
        self._slots: set[tuple[str, str]] = set()
        self._slot_lock = threading.Lock()

    # -- plumbing --

    def _dag_lock(self, dag_id: str) -> threading.RLock:
        with self._registry_lock:
            return self._locks.setdefault(dag_id, threading.RLock())

    def _require(self, dag_id: str) -> Dag:
        dag = self._dags.get(dag_id)
        if dag is None:
            raise NotFoundError("dag", dag_id)
        return dag

    @staticmethod
    def _require_node(dag: Dag, node_id: str) -> DagNode:
        node = dag.node(node_id)
        if node is None:
            raise NotFoundError("node", node_id)
        return node

    def _persist(self, dag: Dag) -> None:
        dag.updated_at = utcnow()
        if self._store is not None:
            self._store.put(KIND_DAG, dag.id, dag.to_dict())

    def _emit_dag(self, dag: Dag, event_type: str) -> None:
        if self._emit is not None:
            self._emit(
                event_type,
                dag.id,
                dag.status,
                project=dag.project,
                dag_id=dag.id,
                extra={"name": dag.name},
            )

    def _emit_node(self, dag: Dag, node: DagNode, event_type: str, extra: dict | None = None) -> None:
        if self._emit is not None:
            self._emit(
                event_type,
                node.id,
                node.status,
                project=dag.project,
                dag_id=dag.id,
                extra=extra or {"node": node.to_dict()},
            )

    # -- global concurrency --

    @property
    def running_count(self) -> int:
        with self._slot_lock:
            return len(self._slots)

    def _acquire_slot(self, dag_id: str, node_id: str) -> bool:
        with self._slot_lock:
            key = (dag_id, node_id)
            if key in self._slots:
                return True
            if len(self._slots) >= self.max_concurrency:
                return False
            self._slots.add(key)
            return True

    def _release_slot(self, dag_id: str, node_id: str) -> None:
        with self._slot_lock:
            self._slots.discard((dag_id, node_id))

    def update_max_concurrency(self, max_concurrency: int) -> list[str]:
        if max_concurrency < 1:
            raise ValueError(f"max_concurrency must be >= 1, got {max_concurrency}")
        self.max_concurrency = max_concurrency
        return self.tick()

    # -- node state changes (DAG lock held) --

    def _complete(self, dag: Dag, node: DagNode) -> None:
        node.status = "completed"
        node.completed_at = utcnow()
        self._emit_node(dag, node, "dag:node:completed")

    def _skip(self, dag: Dag, node: DagNode, reason: str) -> None:
        if node.status == "running":
            self._release_slot(dag.id, node.id)
        node.status = "skipped"
        node.error = reason
        node.completed_at = utcnow()
        self._emit_node(dag, node, "dag:node:skipped")

    def _fail(self, dag: Dag, node: DagNode, error: str) -> None:
        if node.status == "running":
            self._release_slot(dag.id, node.id)
        node.status = "failed"
        node.error = error
        node.completed_at = utcnow()
        self._emit_node(dag, node, "dag:node:failed")

    def _await_approval(self, dag: Dag, node: DagNode) -> None:
        node.status = "waiting_approval"
        self._emit_node(dag, node, "dag:node:waiting_approval")

    def _start(self, dag: Dag, node: DagNode) -> None:
        for edge in dag.edges:
            if edge.target != node.id or edge.type != "data_flow":
                continue
            source = dag.node(edge.source)
            if source is not None and source.output:
                node.briefing += f"\n\n--- Input from {source.title} ---\n" + "\n".join(source.output)
        node.status = "running"
        node.started_at = utcnow()
        self._emit_node(dag, node, "dag:node:started")

    def _skip_unresolved_branches(self, dag: Dag, gate: DagNode) -> None:
        """After an any_pass gate resolves, prune the branches it no longer waits on.

        Walks back from the gate's open predecessors, skipping every open
        ancestor that feeds nothing but the gate and already skipped nodes.
        A branch that still feeds other live work keeps running.
        """

        def prunable(node_id: str) -> bool:
            node = dag.node(node_id)
            if node is None or node.status not in _OPEN_NODE_STATUSES:
                return False
            return all(
                succ_id == gate.id or dag.node(succ_id).status == "skipped"
                for succ_id in dag.successors(node_id)
            )

        stack = [pred_id for pred_id in dag.predecessors(gate.id) if prunable(pred_id)]
        while stack:
            node_id = stack.pop()
            if not prunable(node_id):
                continue
            self._skip(dag, dag.node(node_id), f"Branch pruned: gate {gate.id} resolved")
            stack.extend(pred_id for pred_id in dag.predecessors(node_id) if prunable(pred_id))

    # -- eligibility --

    @staticmethod
    def _gate_verdict(condition: str, statuses: list[str]) -> str | None:
        if not statuses:
            return "wait"
        terminal = all(s in ("completed", "failed", "skipped") for s in statuses)
        if condition == "manual":
            return "wait" if terminal else None
        if condition == "any_pass":
            if "completed" in statuses:
                return "wait"
            return "skip" if terminal else None
        if any(s in ("failed", "skipped") for s in statuses):
            return "skip"
        return "wait" if all(s == "completed" for s in statuses) else None

    def _evaluate(self, dag: Dag) -> tuple[bool, list[str]]:
        """Apply eligibility rules until nothing changes.

        Returns whether anything changed and the task nodes that were
        started and now need dispatching.
        """
        started: list[str] = []
        any_change = False
        changed = True
        while changed:
            changed = False
            for node in dag.nodes:
                if node.status != "pending":
                    continue
                statuses = [dag.node(p).status for p in dag.predecessors(node.id)]

                if node.type == "gate":
                    condition = node.gate_condition or "all_pass"
                    verdict = self._gate_verdict(condition, statuses)
                    if verdict == "skip":
                        self._skip(dag, node, "Gate condition can no longer be met")
                    elif verdict == "wait":
                        if dag.approval_mode == "end_only" and condition != "manual":
                            self._complete(dag, node)
                            if condition == "any_pass":
                                self._skip_unresolved_branches(dag, node)
                        else:
                            self._await_approval(dag, node)
                    else:
                        continue
                    changed = True
                    continue

                if any(s in ("failed", "skipped") for s in statuses):
                    self._skip(dag, node, "Upstream node did not complete")
                elif all(s == "completed" for s in statuses):
                    if node.type in STRUCTURAL_NODE_TYPES:
                        self._complete(dag, node)
                    elif self._acquire_slot(dag.id, node.id):
                        self._start(dag, node)
                        started.append(node.id)
                    else:
                        log.debug("Concurrency cap reached; %s/%s stays pending", dag.id, node.id)
                        continue
                else:
                    continue
                changed = True
            any_change = any_change or changed
        return any_change, started

    def _maybe_finalize(self, dag: Dag) -> bool:
        if dag.status != "running":
            return False
        if any(node.status in _OPEN_NODE_STATUSES for node in dag.nodes):
            return False
        sinks = [node for node in dag.nodes if not dag.successors(node.id)]
        dag.status = "completed" if all(n.status == "completed" for n in sinks) else "failed"
        dag.completed_at = utcnow()
        log.info("DAG %s finished: %s", dag.id, dag.status)
        self._emit_dag(dag, "dag:completed")
        return True

    def _after_change(self, dag: Dag, *, force_persist: bool = True) -> list[str]:
        changed, started = self._evaluate(dag)
        finalized = self._maybe_finalize(dag)
        if force_persist or changed or finalized:
            self._persist(dag)
        return started

    def _dispatch(self, dag_id: str, node_ids: list[str]) -> None:
        for node_id in node_ids:
            with self._dag_lock(dag_id):
                dag = self._dags.get(dag_id)
                node = dag.node(node_id) if dag else None
                if dag is None or node is None or node.status != "running":
                    continue
                dag_snapshot = copy.deepcopy(dag)
                node_snapshot = dag_snapshot.node(node_id)
            if self._runner is None:
                log.debug("No process runner; %s/%s awaits external callbacks", dag_id, node_id)
                continue
            try:
                self._runner.dispatch(dag_snapshot, node_snapshot)
            except Exception as exc:
                log.exception("Dispatch of %s/%s failed", dag_id, node_id)
                self.on_node_failed(dag_id, node_id, f"Dispatch failed: {exc}")

    def _advance(self, dag_id: str) -> list[str]:
        with self._dag_lock(dag_id):
            dag = self._dags.get(dag_id)
            if dag is None or dag.status != "running":
                return []
            started = self._after_change(dag, force_persist=False)
        self._dispatch(dag_id, started)
        return started

    def _advance_others(self, exclude: str | None = None) -> list[str]:
        with self._registry_lock:
            dag_ids = [
                dag_id
                for dag_id, dag in self._dags.items()
                if dag.status == "running" and dag_id != exclude
            ]
        started: list[str] = []
        for dag_id in dag_ids:
            started += self._advance(dag_id)
        return started

    # -- control surface --

    def create_dag(self, definition: dict[str, Any]) -> Dag:
        """Validate and register a DAG in status ``created``."""
        dag = build_dag(definition)
        with self._dag_lock(dag.id):
            with self._registry_lock:
                self._dags[dag.id] = dag
            self._persist(dag)
            self._emit_dag(dag, "dag:created")
            log.info("DAG %s created (%s, %d nodes)", dag.id, dag.name, len(dag.nodes))
            return copy.deepcopy(dag)

    def get_dag(self, dag_id: str) -> Dag | None:
        with self._dag_lock(dag_id):
            dag = self._dags.get(dag_id)
            return copy.deepcopy(dag) if dag else None

    def list_dags(self, *, project: str | None = None, status: str | None = None) -> list[Dag]:
        with self._registry_lock:
            dag_ids = list(self._dags)
        dags = [self.get_dag(dag_id) for dag_id in dag_ids]
        return [
            dag
            for dag in dags
            if dag is not None
            and (project is None or dag.project == project)
            and (status is None or dag.status == status)
        ]

    def execute_dag(self, dag_id: str) -> Dag:
        with self._dag_lock(dag_id):
            dag = self._require(dag_id)
            if dag.status == "running":
                return copy.deepcopy(dag)
            if dag.status != "created":
                raise InvalidStateTransitionError("dag", dag_id, dag.status, "running")
            dag.status = "running"
            dag.started_at = utcnow()
            log.info("DAG %s started", dag_id)
            self._emit_dag(dag, "dag:started")
            started = self._after_change(dag)
        self._dispatch(dag_id, started)
        return self.get_dag(dag_id)

    def cancel_dag(self, dag_id: str) -> Dag:
        """Stop a DAG: open nodes are skipped, running nodes fail as cancelled."""
        with self._dag_lock(dag_id):
            dag = self._require(dag_id)
            if dag.status == "paused":
                return copy.deepcopy(dag)
            if dag.status not in ("created", "running"):
                raise InvalidStateTransitionError("dag", dag_id, dag.status, "paused")
            for node in dag.nodes:
                if node.status == "running":
                    self._fail(dag, node, "cancelled")
                elif node.status in ("pending", "waiting_approval"):
                    self._skip(dag, node, "cancelled")
            dag.status = "paused"
            dag.completed_at = utcnow()
            self._persist(dag)
            self._emit_dag(dag, "dag:cancelled")
            log.info("DAG %s cancelled", dag_id)
            snapshot = copy.deepcopy(dag)
        self._advance_others(exclude=dag_id)
        return snapshot

    def approve_gate(self, dag_id: str, node_id: str) -> DagNode:
        """Complete a node waiting for approval (a gate, or a task in per_task mode)."""
        with self._dag_lock(dag_id):
            dag = self._require(dag_id)
            node = self._require_node(dag, node_id)
            if node.status != "waiting_approval":
                raise InvalidStateTransitionError("node", node_id, node.status, "completed")
            self._complete(dag, node)
            if node.type == "gate" and node.gate_condition == "any_pass":
                self._skip_unresolved_branches(dag, node)
            log.info("DAG %s: node %s approved", dag_id, node_id)
            started = self._after_change(dag)
            snapshot = copy.deepcopy(node)
        self._dispatch(dag_id, started)
        # Pruned branches may have released running slots.
        self._advance_others(exclude=dag_id)
        return snapshot

    def reject_gate(self, dag_id: str, node_id: str, reason: str = "Rejected") -> DagNode:
        with self._dag_lock(dag_id):
            dag = self._require(dag_id)
            node = self._require_node(dag, node_id)
            if node.status != "waiting_approval":
                raise InvalidStateTransitionError("node", node_id, node.status, "failed")
            self._fail(dag, node, reason)
            log.info("DAG %s: node %s rejected: %s", dag_id, node_id, reason)
            started = self._after_change(dag)
            snapshot = copy.deepcopy(node)
        self._dispatch(dag_id, started)
        return snapshot

    def add_nodes(
        self,
        dag_id: str,
        parent_node_id: str,
        nodes: list[dict[str, Any]],
        edges: list[dict[str, Any]] | None = None,
    ) -> list[str]:
        """Insert nodes and edges into a running DAG on behalf of a running node.

        New edges may only point at pending or newly added nodes, and the
        merged graph must stay acyclic. Returns the ids of the added nodes.
        """
        new_nodes, new_edges = parse_mutation(nodes, edges)
        with self._dag_lock(dag_id):
            dag = self._require(dag_id)
            if dag.status != "running":
                raise InvalidStateTransitionError("dag", dag_id, dag.status, "running")
            parent = self._require_node(dag, parent_node_id)
            if parent.status != "running":
                raise InvalidStateTransitionError("node", parent_node_id, parent.status, "running")
            for edge in new_edges:
                target = dag.node(edge.target)
                if target is not None and target.status != "pending":
                    raise DagValidationError(
                        f"Cannot add edge {edge.source} -> {edge.target}: target is {target.status}"
                    )
            merged_nodes = dag.nodes + new_nodes
            merged_edges = dag.edges + new_edges
            check_graph(merged_nodes, merged_edges)

            dag.nodes = merged_nodes
            dag.edges = merged_edges
            for node in new_nodes:
                self._emit_node(
                    dag,
                    node,
                    "dag:node:added",
                    extra={"node": node.to_dict(), "parent": parent_node_id},
                )
            log.info("DAG %s: %d nodes added by %s", dag_id, len(new_nodes), parent_node_id)
            started = self._after_change(dag)
        self._dispatch(dag_id, started)
        return [node.id for node in new_nodes]

    def tick(self) -> list[str]:
        """Re-run eligibility for every running DAG; returns newly started node ids."""
        return self._advance_others()

    def delete_dag(self, dag_id: str) -> None:
        with self._dag_lock(dag_id):
            dag = self._require(dag_id)
            if dag.status == "running":
                raise InvalidStateTransitionError("dag", dag_id, dag.status, "deleted")
            with self._registry_lock:
                del self._dags[dag_id]
            if self._store is not None:
                self._store.delete(KIND_DAG, dag_id)
        with self._registry_lock:
            self._locks.pop(dag_id, None)

    def restore(self, dags: list[Dag]) -> None:
        """Register previously persisted DAGs; running nodes keep their slots."""
        for dag in dags:
            restored = copy.deepcopy(dag)
            with self._dag_lock(restored.id):
                with self._registry_lock:
                    self._dags[restored.id] = restored
                for node in restored.nodes:
                    if node.status == "running":
                        with self._slot_lock:
                            self._slots.add((restored.id, node.id))

    # -- process runner callbacks --

    def _live_node(self, dag_id: str, node_id: str, callback: str) -> tuple[Dag, DagNode] | None:
        dag = self._dags.get(dag_id)
        node = dag.node(node_id) if dag else None
        if dag is None or node is None or dag.status != "running" or node.status != "running":
            log.debug("Dropping stale %s for %s/%s", callback, dag_id, node_id)
            return None
        return dag, node

    def on_node_output(self, dag_id: str, node_id: str, line: str) -> bool:
        with self._dag_lock(dag_id):
            live = self._live_node(dag_id, node_id, "output")
            if live is None:
                return False
            dag, node = live
            node.output.append(line)
            self._emit_node(dag, node, "dag:node:output", extra={"node_id": node_id, "line": line})
            return True

    def on_node_completed(
        self,
        dag_id: str,
        node_id: str,
        output: str | list[str] | None = None,
        artifacts: dict[str, Any] | None = None,
    ) -> bool:
        """Record a finished node. Returns False for stale reports."""
        with self._dag_lock(dag_id):
            live = self._live_node(dag_id, node_id, "completion")
            if live is None:
                return False
            dag, node = live
            if isinstance(output, str):
                node.output.append(output)
            elif output:
                node.output.extend(output)
            if artifacts:
                node.artifacts.update(artifacts)
            self._release_slot(dag_id, node_id)
            if dag.approval_mode == "per_task":
                self._await_approval(dag, node)
            else:
                self._complete(dag, node)
            log.info("DAG %s: node %s completed", dag_id, node_id)
            started = self._after_change(dag)
        self._dispatch(dag_id, started)
        self._advance_others(exclude=dag_id)
        return True

    def on_node_failed(self, dag_id: str, node_id: str, error: str) -> bool:
        with self._dag_lock(dag_id):
            live = self._live_node(dag_id, node_id, "failure")
            if live is None:
                return False
            dag, node = live
            self._fail(dag, node, error)
            log.warning("DAG %s: node %s failed: %s", dag_id, node_id, error)
            started = self._after_change(dag)
        self._dispatch(dag_id, started)
        self._advance_others(exclude=dag_id)
        return True
