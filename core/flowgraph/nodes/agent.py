"""Agent nodes: one LLM call with a templated prompt."""

import json
import logging
from typing import Any

from flowgraph.config import DEFAULT_MAX_TOKENS, DEFAULT_TEMPERATURE
from flowgraph.graph.errors import ConfigurationError
from flowgraph.graph.workflow import NodeKind, StepNode
from flowgraph.llm.provider import AgentOptions
from flowgraph.nodes.base import NodeContext, NodeExecutor, StepResult, config_value, is_number
from flowgraph.schemas.execution import utc_now

logger = logging.getLogger(__name__)

MAX_AGENT_TOKENS = 4000


def parse_agent_content(content: str) -> Any:
    """Agents are asked for JSON; fall back to wrapping plain text."""
    try:
        return json.loads(content)
    except (json.JSONDecodeError, TypeError):
        return {"text": content, "raw": content}


class AgentExecutor(NodeExecutor):
    kind = NodeKind.AGENT

    def validate_config(self, config: dict[str, Any]) -> list[str]:
        errors = []
        if not config_value(config, "prompt_template"):
            errors.append("Prompt template is required")
        if not config_value(config, "model"):
            errors.append("Model is required")

        temperature = config_value(config, "temperature")
        if temperature is not None and (not is_number(temperature) or not 0 <= temperature <= 2):
            errors.append("Temperature must be between 0 and 2")

        max_tokens = config_value(config, "max_tokens")
        if max_tokens is not None and (
            not is_number(max_tokens) or not 1 <= max_tokens <= MAX_AGENT_TOKENS
        ):
            errors.append(f"Max tokens must be between 1 and {MAX_AGENT_TOKENS}")
        return errors

    async def execute(self, node: StepNode, ctx: NodeContext) -> StepResult:
        self.require_valid_config(node)
        if ctx.agent_client is None:
            raise ConfigurationError("No agent client configured for agent nodes")

        config = node.config
        context = ctx.merged(
            currentNodeId=node.id,
            executionId=ctx.state.execution_id,
            workflowId=ctx.state.workflow_id,
        )
        options = AgentOptions(
            model=config_value(config, "model"),
            temperature=config_value(config, "temperature", DEFAULT_TEMPERATURE),
            max_tokens=config_value(config, "max_tokens", DEFAULT_MAX_TOKENS),
            system_prompt=config_value(config, "system_prompt"),
        )

        logger.info(f"   🤖 Calling agent model={options.model}")
        response = await ctx.agent_client.call(
            config_value(config, "prompt_template"), context, options
        )

        metadata: dict[str, Any] = {}
        if response.usage is not None:
            metadata["usage"] = response.usage.to_dict()
            logger.info(f"   ✓ Agent replied ({response.usage.total_tokens} tokens)")

        return StepResult(
            success=True,
            data={
                "response": parse_agent_content(response.content),
                "model": response.model,
                "finishReason": response.finish_reason,
                "timestamp": utc_now(),
            },
            metadata=metadata,
        )
