"""Condition nodes: evaluate a boolean expression to pick a branch."""

import logging
from typing import Any

from flowgraph.graph.safe_eval import evaluate_guard
from flowgraph.graph.workflow import NodeKind, StepNode
from flowgraph.nodes.base import NodeContext, NodeExecutor, StepResult, config_value
from flowgraph.schemas.execution import utc_now

logger = logging.getLogger(__name__)


class ConditionExecutor(NodeExecutor):
    """
    Evaluates ``expression`` against variables, step results and run metadata.

    An expression that cannot be evaluated yields ``False`` rather than
    failing the run.
    """

    kind = NodeKind.CONDITION

    def validate_config(self, config: dict[str, Any]) -> list[str]:
        if not config_value(config, "expression"):
            return ["Expression is required"]
        return []

    async def execute(self, node: StepNode, ctx: NodeContext) -> StepResult:
        self.require_valid_config(node)
        expression = config_value(node.config, "expression")
        timestamp = utc_now()

        context = ctx.merged(
            executionId=ctx.state.execution_id,
            workflowId=ctx.state.workflow_id,
            status=ctx.state.status.value,
            timestamp=timestamp,
            variables=ctx.variables,
            stepResults=ctx.step_results,
        )
        result = evaluate_guard(expression, context)

        label = (
            config_value(node.config, "true_label", "Yes")
            if result
            else config_value(node.config, "false_label", "No")
        )
        logger.info(f"   ⑂ Condition '{expression}' -> {result} ({label})")

        return StepResult(
            success=True,
            data={
                "condition": expression,
                "result": result,
                "label": label,
                "evaluatedAt": timestamp,
            },
        )
