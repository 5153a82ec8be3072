"""
Node Protocol - the contract every step kind implements.

An executor receives the node being run and a NodeContext bundling the
execution state, the graph and the services the engine owns (store, agent
client, HTTP client, fan-out coordinator). It returns a StepResult on
success and raises on failure; the engine classifies what it raises.

Executors hold no state between calls.
"""

import re
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any

import httpx

from flowgraph.graph.errors import ConfigurationError
from flowgraph.graph.workflow import NodeKind, StepNode, WorkflowGraph
from flowgraph.schemas.execution import ExecutionState
from flowgraph.storage.repository import ExecutionRepository

if TYPE_CHECKING:
    from flowgraph.graph.fanout import FanoutCoordinator
    from flowgraph.llm.provider import AgentClient


@dataclass
class StepResult:
    """Outcome of executing one node."""

    success: bool
    data: Any = field(default_factory=dict)
    error: str | None = None
    metadata: dict[str, Any] = field(default_factory=dict)  # e.g. token usage
    variables: dict[str, Any] = field(default_factory=dict)  # merged into execution variables
    should_continue: bool = False  # loop nodes only
    child_execution_ids: list[str] = field(default_factory=list)  # spawn nodes only

    def to_dict(self) -> dict[str, Any]:
        return {
            "success": self.success,
            "data": self.data,
            "error": self.error,
            "metadata": self.metadata,
        }


@dataclass
class NodeContext:
    """Everything an executor may read or use while running a node."""

    state: ExecutionState
    repository: ExecutionRepository
    graph: WorkflowGraph | None = None
    trigger_input: dict[str, Any] = field(default_factory=dict)
    agent_client: "AgentClient | None" = None
    http_client: httpx.AsyncClient | None = None
    fanout: "FanoutCoordinator | None" = None

    @property
    def variables(self) -> dict[str, Any]:
        return self.state.variables

    @property
    def step_results(self) -> dict[str, Any]:
        return self.state.step_results

    def merged(self, **extra: Any) -> dict[str, Any]:
        """Variables overlaid with step results and any extra built-ins."""
        return {**self.state.variables, **self.state.step_results, **extra}


_CAMEL_BOUNDARY = re.compile(r"_([a-z])")


def config_value(config: dict[str, Any], name: str, default: Any = None) -> Any:
    """
    Read a config key by its snake_case name, accepting the camelCase spelling too.

    ``config_value(cfg, "prompt_template")`` finds ``prompt_template`` or
    ``promptTemplate``.
    """
    if name in config:
        return config[name]
    camel = _CAMEL_BOUNDARY.sub(lambda m: m.group(1).upper(), name)
    return config.get(camel, default)


def is_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


class NodeExecutor(ABC):
    """Base class for step-kind executors."""

    kind: NodeKind

    @abstractmethod
    async def execute(self, node: StepNode, ctx: NodeContext) -> StepResult:
        """Run the node. Raise on failure."""

    def validate_config(self, config: dict[str, Any]) -> list[str]:
        """Return configuration problems; empty when valid."""
        return []

    def require_valid_config(self, node: StepNode) -> None:
        errors = self.validate_config(node.config)
        if errors:
            raise ConfigurationError(
                f"Invalid {self.kind.value} configuration for node {node.id}: {', '.join(errors)}"
            )
