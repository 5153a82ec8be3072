"""Structural validation and cycle diagnostics for workflow graphs."""

import logging
from dataclasses import dataclass, field
from typing import TYPE_CHECKING

from flowgraph.graph.workflow import NodeKind, WorkflowGraph

if TYPE_CHECKING:
    from flowgraph.nodes import NodeRegistry

logger = logging.getLogger(__name__)


@dataclass
class ValidationResult:
    """Outcome of validating a workflow graph."""

    valid: bool
    errors: list[str] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)
    cycles: list[list[str]] = field(default_factory=list)
    config_errors: list[str] = field(default_factory=list)

    @property
    def error(self) -> str:
        return "; ".join(self.errors) if self.errors else ""

    def to_dict(self) -> dict:
        return {
            "valid": self.valid,
            "errors": self.errors,
            "warnings": self.warnings,
            "cycles": self.cycles,
            "config_errors": self.config_errors,
        }


def detect_cycles(graph: WorkflowGraph) -> list[list[str]]:
    """
    Find cycles with an iterative depth-first search.

    Keeps an explicit visited set and recursion stack keyed by node id. Every
    edge that reaches a node still on the stack yields one cycle: the slice
    of the current path from that node onward.
    """
    adjacency: dict[str, list[str]] = {n.id: [] for n in graph.nodes}
    for edge in graph.edges:
        if edge.source in adjacency and edge.target in adjacency:
            adjacency[edge.source].append(edge.target)

    visited: set[str] = set()
    on_stack: set[str] = set()
    cycles: list[list[str]] = []

    for root in adjacency:
        if root in visited:
            continue

        path: list[str] = [root]
        stack: list[tuple[str, int]] = [(root, 0)]
        visited.add(root)
        on_stack.add(root)

        while stack:
            node_id, next_index = stack[-1]
            neighbors = adjacency[node_id]

            if next_index >= len(neighbors):
                stack.pop()
                path.pop()
                on_stack.discard(node_id)
                continue

            stack[-1] = (node_id, next_index + 1)
            neighbor = neighbors[next_index]

            if neighbor in on_stack:
                cycles.append(path[path.index(neighbor) :])
            elif neighbor not in visited:
                visited.add(neighbor)
                on_stack.add(neighbor)
                path.append(neighbor)
                stack.append((neighbor, 0))

    return cycles


def validate_workflow(
    graph: WorkflowGraph,
    registry: "NodeRegistry | None" = None,
) -> ValidationResult:
    """
    Validate a workflow before execution.

    Structural errors (no trigger node, orphaned nodes, dangling edges,
    duplicate ids) make the graph invalid. Cycles are allowed since loop nodes
    depend on them and are only reported as warnings. When a registry is
    given, each node's config is checked too; those findings make the graph
    invalid as well and are also listed on their own in ``config_errors``.
    """
    errors: list[str] = []
    warnings: list[str] = []

    node_ids: set[str] = set()
    for node in graph.nodes:
        if node.id in node_ids:
            errors.append(f"Duplicate node id: {node.id}")
        node_ids.add(node.id)

    if not any(n.kind == NodeKind.TRIGGER for n in graph.nodes):
        errors.append("Workflow must have at least one trigger node")

    for edge in graph.edges:
        if edge.source not in node_ids:
            errors.append(f"Edge {edge.id} references missing source node {edge.source}")
        if edge.target not in node_ids:
            errors.append(f"Edge {edge.id} references missing target node {edge.target}")

    targets = {e.target for e in graph.edges}
    for node in graph.nodes:
        if node.kind != NodeKind.TRIGGER and node.id not in targets:
            errors.append(f"Node {node.id} is not connected to the workflow")

    cycles = detect_cycles(graph)
    for cycle in cycles:
        message = f"Cycle detected: {' -> '.join(cycle + cycle[:1])}"
        warnings.append(message)
        logger.warning(message)

    config_errors: list[str] = []
    if registry is not None:
        for node in graph.nodes:
            for problem in registry.validate_config(node):
                config_errors.append(f"Node {node.id}: {problem}")
    errors.extend(config_errors)

    return ValidationResult(
        valid=not errors,
        errors=errors,
        warnings=warnings,
        cycles=cycles,
        config_errors=config_errors,
    )
