"""
Node executors and the kind -> executor registry.

Every NodeKind must have an executor; the registry refuses to build
otherwise, so a graph that validated can always be dispatched.
"""

import logging
from typing import Any

from flowgraph.graph.errors import UnsupportedKindError
from flowgraph.graph.workflow import NodeKind, StepNode
from flowgraph.nodes.action import ActionExecutor
from flowgraph.nodes.agent import AgentExecutor
from flowgraph.nodes.approval import ApprovalExecutor
from flowgraph.nodes.base import NodeContext, NodeExecutor, StepResult, config_value
from flowgraph.nodes.condition import ConditionExecutor
from flowgraph.nodes.loop import LoopExecutor
from flowgraph.nodes.spawn import SpawnExecutor
from flowgraph.nodes.trigger import TriggerExecutor

logger = logging.getLogger(__name__)


def default_executors() -> dict[NodeKind, NodeExecutor]:
    executors: list[NodeExecutor] = [
        TriggerExecutor(),
        ActionExecutor(),
        AgentExecutor(),
        ApprovalExecutor(),
        ConditionExecutor(),
        LoopExecutor(),
        SpawnExecutor(),
    ]
    return {e.kind: e for e in executors}


class NodeRegistry:
    """
    Maps node kinds to executors.

    Example:
        registry = NodeRegistry()
        registry.register(MyActionExecutor())  # replaces the stock action executor
        result = await registry.execute(node, ctx)
    """

    def __init__(self, executors: dict[NodeKind, NodeExecutor] | None = None):
        self._executors = dict(default_executors() if executors is None else executors)
        missing = [k.value for k in NodeKind if k not in self._executors]
        if missing:
            raise ValueError(f"No executor registered for node kinds: {', '.join(missing)}")

    def register(self, executor: NodeExecutor) -> None:
        self._executors[NodeKind(executor.kind)] = executor

    def get(self, kind: NodeKind | str) -> NodeExecutor:
        try:
            return self._executors[NodeKind(kind)]
        except (ValueError, KeyError):
            raise UnsupportedKindError(f"No executor found for node kind: {kind}") from None

    async def execute(self, node: StepNode, ctx: NodeContext) -> StepResult:
        executor = self.get(node.kind)
        logger.info(f"▶ {node.kind.value} node {node.id}" + (f" ({node.label})" if node.label else ""))
        return await executor.execute(node, ctx)

    def validate_config(self, node: StepNode) -> list[str]:
        return self.get(node.kind).validate_config(node.config)

    @property
    def kinds(self) -> list[NodeKind]:
        return list(self._executors)


__all__ = [
    "ActionExecutor",
    "AgentExecutor",
    "ApprovalExecutor",
    "ConditionExecutor",
    "LoopExecutor",
    "NodeContext",
    "NodeExecutor",
    "NodeRegistry",
    "SpawnExecutor",
    "StepResult",
    "TriggerExecutor",
    "config_value",
    "default_executors",
]
