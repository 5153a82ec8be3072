"""
Workflow graph model.

A workflow is a directed graph of step nodes joined by edges. Nodes carry a
kind (trigger, action, agent, approval, condition, loop, spawn) and a free-form
config map interpreted by the executor registered for that kind. Edges may
carry a guard: either a sentinel (``true``/``false``/``continue``/``exit``)
or a boolean expression evaluated against the source node's result.

Graphs are authored outside the engine and treated as immutable for the
duration of a run.
"""

from datetime import UTC, datetime
from enum import StrEnum
from typing import Any

from pydantic import AliasChoices, BaseModel, Field, field_validator

from flowgraph.graph.edge import Edge


class NodeKind(StrEnum):
    """Kinds of step a workflow node can be."""

    TRIGGER = "trigger"  # Entry point: webhook, manual or scheduled
    ACTION = "action"  # Deterministic operation (HTTP, transform, notification)
    AGENT = "agent"  # Single LLM call
    APPROVAL = "approval"  # Human-in-the-loop gate
    CONDITION = "condition"  # Boolean branch
    LOOP = "loop"  # Bounded re-entrant iteration
    SPAWN = "spawn"  # Dynamic parallel agent fan-out


# Spellings used by older workflow documents
_KIND_ALIASES = {
    "human-approval": NodeKind.APPROVAL,
    "human_approval": NodeKind.APPROVAL,
    "spawn-agent": NodeKind.SPAWN,
    "spawn_agent": NodeKind.SPAWN,
}


class StepNode(BaseModel):
    """
    A single step in a workflow.

    Example:
        StepNode(
            id="check-amount",
            kind=NodeKind.CONDITION,
            label="Large order?",
            config={"expression": "{{amount}} > 1000"},
        )
    """

    id: str
    kind: NodeKind = Field(validation_alias=AliasChoices("kind", "type"))
    label: str = ""
    config: dict[str, Any] = Field(default_factory=dict)

    model_config = {"extra": "allow", "populate_by_name": True}

    @field_validator("kind", mode="before")
    @classmethod
    def _normalize_kind(cls, value: Any) -> Any:
        if isinstance(value, str):
            return _KIND_ALIASES.get(value, value)
        return value

    def max_iterations(self, default: int) -> int:
        """Visit limit for this node: its own ``max_iterations`` config, else ``default``."""
        limit = self.config.get("max_iterations", self.config.get("maxIterations"))
        if isinstance(limit, int) and not isinstance(limit, bool) and limit > 0:
            return limit
        return default


class WorkflowGraph(BaseModel):
    """
    Complete workflow definition.

    Example:
        WorkflowGraph(
            id="refunds",
            name="Refund approval",
            nodes=[trigger, check, approve, pay],
            edges=[
                Edge(id="e1", source="start", target="check"),
                Edge(id="e2", source="check", target="approve", guard="true"),
                Edge(id="e3", source="check", target="pay", guard="false"),
                Edge(id="e4", source="approve", target="pay"),
            ],
        )
    """

    id: str
    name: str = ""
    description: str = ""
    nodes: list[StepNode] = Field(default_factory=list)
    edges: list[Edge] = Field(default_factory=list)
    metadata: dict[str, Any] = Field(
        default_factory=lambda: {
            "created_at": datetime.now(UTC).isoformat(),
            "version": 1,
        }
    )

    model_config = {"extra": "allow"}

    def get_node(self, node_id: str) -> StepNode | None:
        for node in self.nodes:
            if node.id == node_id:
                return node
        return None

    def get_outgoing_edges(self, node_id: str) -> list[Edge]:
        return [e for e in self.edges if e.source == node_id]

    def get_incoming_edges(self, node_id: str) -> list[Edge]:
        return [e for e in self.edges if e.target == node_id]

    def reaches(self, source: str, target: str) -> bool:
        """Whether some path of edges leads from ``source`` to ``target``."""
        seen: set[str] = set()
        pending = [source]
        while pending:
            current = pending.pop()
            if current == target:
                return True
            if current in seen:
                continue
            seen.add(current)
            pending.extend(e.target for e in self.get_outgoing_edges(current))
        return False

    def start_nodes(self) -> list[StepNode]:
        return [n for n in self.nodes if n.kind == NodeKind.TRIGGER]

    def find_start_node(self) -> StepNode | None:
        starts = self.start_nodes()
        return starts[0] if starts else None

    def validate(self) -> list[str]:  # type: ignore[override]
        """Structural validation. Returns a list of error messages."""
        from flowgraph.graph.validator import validate_workflow

        return validate_workflow(self).errors
