"""
Edge Protocol - How nodes connect in a workflow.

An edge joins a source node to a target node and may carry a guard. A guard
is either a sentinel or an expression:

- no guard: unconditional
- ``true`` / ``false``: branch sentinels for condition nodes
- ``continue`` / ``exit``: loop sentinels for loop nodes
- anything else: a boolean expression (SAFE SUBSET ONLY) evaluated against
  the execution context plus the source node's ``result``

Guard evaluation never raises. A guard that fails to evaluate is treated as
not satisfied, so branching stays total.
"""

from collections.abc import Callable
from enum import StrEnum
from typing import Any

from pydantic import AliasChoices, BaseModel, Field

from flowgraph.graph.safe_eval import evaluate_guard


class GuardKind(StrEnum):
    """How an edge guard is interpreted."""

    NONE = "none"
    TRUE = "true"
    FALSE = "false"
    CONTINUE = "continue"
    EXIT = "exit"
    EXPRESSION = "expression"


_SENTINELS = {
    "true": GuardKind.TRUE,
    "false": GuardKind.FALSE,
    "continue": GuardKind.CONTINUE,
    "exit": GuardKind.EXIT,
}


class Edge(BaseModel):
    """
    A directed connection between two nodes.

    Examples:
        # Unconditional
        Edge(id="e1", source="start", target="fetch")

        # Condition branches
        Edge(id="e2", source="check", target="approve", guard="true", label="Yes")
        Edge(id="e3", source="check", target="reject", guard="false", label="No")

        # Expression guard
        Edge(id="e4", source="score", target="escalate", guard="result.score < 0.5")
    """

    id: str
    source: str = Field(description="Source node ID")
    target: str = Field(description="Target node ID")
    guard: str | None = Field(
        default=None,
        validation_alias=AliasChoices("guard", "condition"),
        description="Sentinel (true/false/continue/exit) or boolean expression",
    )
    label: str | None = None

    model_config = {"extra": "allow", "populate_by_name": True}

    @property
    def guard_kind(self) -> GuardKind:
        if self.guard is None or not self.guard.strip():
            return GuardKind.NONE
        return _SENTINELS.get(self.guard.strip().lower(), GuardKind.EXPRESSION)

    def matches_branch(self, branch: bool, context: dict[str, Any]) -> bool:
        """
        Whether this edge belongs to the taken branch of a condition node.

        Unguarded and ``true`` edges follow the true branch, ``false`` edges
        the false branch. Expression guards are evaluated with ``result`` bound
        to the branch value.
        """
        kind = self.guard_kind
        if kind in (GuardKind.NONE, GuardKind.TRUE):
            return branch
        if kind == GuardKind.FALSE:
            return not branch
        if kind == GuardKind.EXPRESSION:
            return evaluate_guard(self.guard, {**context, "result": branch})
        return False

    def is_satisfied(self, context: dict[str, Any]) -> bool:
        """Whether a plain (non-branching) node may follow this edge."""
        kind = self.guard_kind
        if kind in (GuardKind.NONE, GuardKind.TRUE, GuardKind.CONTINUE):
            return True
        if kind in (GuardKind.FALSE, GuardKind.EXIT):
            return False
        return evaluate_guard(self.guard, context)

    @property
    def is_loop_exit(self) -> bool:
        return self.guard_kind in (GuardKind.EXIT, GuardKind.FALSE)

    @property
    def is_loop_continue(self) -> bool:
        return self.guard_kind in (GuardKind.CONTINUE, GuardKind.TRUE)


def loop_edges(
    edges: list[Edge],
    loops_back: Callable[[str], bool] | None = None,
) -> tuple[list[Edge], list[Edge]]:
    """
    Split a loop node's outgoing edges into ``(continue_edges, exit_edges)``.

    ``exit``/``false`` edges and expression-guarded edges are exits; the
    expressions are checked once the loop stops. When a loop declares any
    exit, its unguarded edges belong to the loop body. Otherwise unguarded
    edges are exits next to explicit ``continue`` edges, and without those
    ``loops_back`` decides: edges whose target leads back to the loop are the
    body.
    """
    exits = [e for e in edges if e.is_loop_exit or e.guard_kind == GuardKind.EXPRESSION]
    unguarded = [e for e in edges if e.guard_kind == GuardKind.NONE]
    continues = [e for e in edges if e.is_loop_continue]
    if exits:
        return continues + unguarded, exits
    if continues or loops_back is None:
        return continues, unguarded
    body = [e for e in unguarded if loops_back(e.target)]
    return body, [e for e in unguarded if e not in body]
