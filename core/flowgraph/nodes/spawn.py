"""Spawn nodes: dynamic parallel agent fan-out."""

from typing import Any

from flowgraph.graph.errors import ConfigurationError
from flowgraph.graph.workflow import NodeKind, StepNode
from flowgraph.nodes.base import NodeContext, NodeExecutor, StepResult, config_value, is_number

AGGREGATION_STRATEGIES = ("first", "all", "majority", "custom")
MAX_AGENTS_LIMIT = 10


class SpawnExecutor(NodeExecutor):
    """Hands the node to the engine's fan-out coordinator."""

    kind = NodeKind.SPAWN

    def validate_config(self, config: dict[str, Any]) -> list[str]:
        errors = []
        if not config_value(config, "agent_prompt"):
            errors.append("Agent prompt is required")

        max_agents = config_value(config, "max_agents")
        if not is_number(max_agents) or max_agents < 1:
            errors.append("Max agents must be at least 1")
        elif max_agents > MAX_AGENTS_LIMIT:
            errors.append(f"Max agents cannot exceed {MAX_AGENTS_LIMIT}")

        strategy = config_value(config, "aggregation_strategy")
        if not strategy:
            errors.append("Aggregation strategy is required")
        elif strategy not in AGGREGATION_STRATEGIES:
            errors.append(f"Unsupported aggregation strategy: {strategy}")
        elif strategy == "custom" and not config_value(config, "custom_aggregation"):
            errors.append("Custom aggregation is required when strategy is custom")
        return errors

    async def execute(self, node: StepNode, ctx: NodeContext) -> StepResult:
        self.require_valid_config(node)
        if ctx.fanout is None:
            raise ConfigurationError("No fan-out coordinator configured for spawn nodes")
        return await ctx.fanout.run(node, ctx)
