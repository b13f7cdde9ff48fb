"""DAG definitions: schema, structural validation and construction.

A definition is plain JSON::

    {
      "name": "Add billing page",
      "project": "webapp",
      "approval_mode": "gate_configured",
      "nodes": [
        {"id": "api", "title": "Billing API", "briefing": "..."},
        {"id": "ui", "title": "Billing UI", "briefing": "..."},
        {"id": "review", "type": "gate", "gate_condition": "all_pass"}
      ],
      "edges": [
        {"from": "api", "to": "ui", "type": "data_flow"},
        {"from": "ui", "to": "review"}
      ]
    }
"""

from __future__ import annotations

import uuid
from collections import deque
from collections.abc import Iterable
from typing import Any

from jsonschema import ValidationError, validate

from foreman.errors import DagValidationError
from foreman.models import (
    DEFAULT_GATE_CONDITION,
    VALID_APPROVAL_MODES,
    VALID_DAG_CREATORS,
    VALID_EDGE_TYPES,
    VALID_GATE_CONDITIONS,
    VALID_NODE_TYPES,
    Dag,
    DagEdge,
    DagNode,
)

_STRING_LIST = {"type": "array", "items": {"type": "string"}}

NODE_SCHEMA: dict[str, Any] = {
    "type": "object",
    "required": ["id"],
    "additionalProperties": False,
    "properties": {
        "id": {"type": "string", "minLength": 1},
        "type": {"enum": sorted(VALID_NODE_TYPES)},
        "title": {"type": "string"},
        "briefing": {"type": "string"},
        "role": {"type": ["string", "null"]},
        "agent": {"type": ["string", "null"]},
        "gate_condition": {"enum": [*sorted(VALID_GATE_CONDITIONS), None]},
        "allowed_files": _STRING_LIST,
        "blocked_files": _STRING_LIST,
    },
}

EDGE_SCHEMA: dict[str, Any] = {
    "type": "object",
    "required": ["from", "to"],
    "additionalProperties": False,
    "properties": {
        "from": {"type": "string", "minLength": 1},
        "to": {"type": "string", "minLength": 1},
        "type": {"enum": sorted(VALID_EDGE_TYPES)},
        "label": {"type": ["string", "null"]},
    },
}

DAG_DEFINITION_SCHEMA: dict[str, Any] = {
    "type": "object",
    "required": ["name", "project", "nodes"],
    "properties": {
        "name": {"type": "string", "minLength": 1},
        "project": {"type": "string", "minLength": 1},
        "description": {"type": "string"},
        "created_by": {"enum": sorted(VALID_DAG_CREATORS)},
        "approval_mode": {"enum": sorted(VALID_APPROVAL_MODES)},
        "nodes": {"type": "array", "minItems": 1, "items": NODE_SCHEMA},
        "edges": {"type": "array", "items": EDGE_SCHEMA},
    },
}

MUTATION_SCHEMA: dict[str, Any] = {
    "type": "object",
    "required": ["nodes"],
    "properties": {
        "nodes": {"type": "array", "items": NODE_SCHEMA},
        "edges": {"type": "array", "items": EDGE_SCHEMA},
    },
}


def new_dag_id() -> str:
    return f"dag_{uuid.uuid4().hex[:12]}"


def _check_schema(instance: Any, schema: dict[str, Any]) -> None:
    try:
        validate(instance=instance, schema=schema)
    except ValidationError as e:
        location = "/".join(str(part) for part in e.absolute_path) or "<root>"
        raise DagValidationError(f"Invalid DAG definition at {location}: {e.message}") from None


def find_cycle(node_ids: Iterable[str], edges: Iterable[DagEdge]) -> list[str]:
    """Return the ids left unsorted by Kahn's algorithm (empty if acyclic)."""
    ids = list(node_ids)
    indegree = {node_id: 0 for node_id in ids}
    children: dict[str, list[str]] = {node_id: [] for node_id in ids}
    for edge in edges:
        children[edge.source].append(edge.target)
        indegree[edge.target] += 1
    ready = deque(node_id for node_id in ids if indegree[node_id] == 0)
    visited = 0
    while ready:
        current = ready.popleft()
        visited += 1
        for child in children[current]:
            indegree[child] -= 1
            if indegree[child] == 0:
                ready.append(child)
    if visited == len(ids):
        return []
    return [node_id for node_id in ids if indegree[node_id] > 0]


def topological_waves(dag: Dag) -> list[list[str]]:
    """Group node ids into waves that could run together if everything passed."""
    indegree = {node.id: 0 for node in dag.nodes}
    for edge in dag.edges:
        indegree[edge.target] += 1
    wave = [node.id for node in dag.nodes if indegree[node.id] == 0]
    waves: list[list[str]] = []
    while wave:
        waves.append(wave)
        following: list[str] = []
        for node_id in wave:
            for child in dag.successors(node_id):
                indegree[child] -= 1
                if indegree[child] == 0:
                    following.append(child)
        wave = following
    return waves


def check_graph(nodes: list[DagNode], edges: list[DagEdge]) -> None:
    """Structural checks that JSON schema cannot express."""
    seen: set[str] = set()
    for node in nodes:
        if node.id in seen:
            raise DagValidationError(f"Duplicate node id '{node.id}'")
        seen.add(node.id)
        if node.type != "gate" and node.gate_condition is not None:
            raise DagValidationError(f"Node '{node.id}' is not a gate but sets gate_condition")

    pairs: set[tuple[str, str]] = set()
    for edge in edges:
        for endpoint in (edge.source, edge.target):
            if endpoint not in seen:
                raise DagValidationError(f"Edge {edge.source} -> {edge.target} references unknown node '{endpoint}'")
        if edge.source == edge.target:
            raise DagValidationError(f"Self-loop on node '{edge.source}'")
        if (edge.source, edge.target) in pairs:
            raise DagValidationError(f"Duplicate edge {edge.source} -> {edge.target}")
        pairs.add((edge.source, edge.target))

    cycle = find_cycle(seen, edges)
    if cycle:
        raise DagValidationError(f"DAG contains a cycle through: {', '.join(sorted(cycle))}")


def parse_node(data: dict[str, Any]) -> DagNode:
    node = DagNode.from_dict(data)
    node.status = "pending"
    if node.type == "gate" and node.gate_condition is None:
        node.gate_condition = DEFAULT_GATE_CONDITION
    if not node.title:
        node.title = node.id
    return node


def parse_edges(raw: list[dict[str, Any]] | None) -> list[DagEdge]:
    return [DagEdge.from_dict(edge) for edge in raw or []]


def build_dag(definition: dict[str, Any], *, dag_id: str | None = None) -> Dag:
    """Validate *definition* and return a new Dag in status ``created``."""
    _check_schema(definition, DAG_DEFINITION_SCHEMA)
    nodes = [parse_node(node) for node in definition["nodes"]]
    edges = parse_edges(definition.get("edges"))
    check_graph(nodes, edges)
    return Dag(
        id=dag_id or new_dag_id(),
        name=definition["name"],
        project=definition["project"],
        description=definition.get("description", ""),
        created_by=definition.get("created_by", "manual"),
        approval_mode=definition.get("approval_mode", "gate_configured"),
        nodes=nodes,
        edges=edges,
    )


def parse_mutation(
    nodes: list[dict[str, Any]], edges: list[dict[str, Any]] | None
) -> tuple[list[DagNode], list[DagEdge]]:
    """Schema-check a live mutation request; graph checks happen against the merged DAG."""
    _check_schema({"nodes": nodes, "edges": edges or []}, MUTATION_SCHEMA)
    return [parse_node(node) for node in nodes], parse_edges(edges)
