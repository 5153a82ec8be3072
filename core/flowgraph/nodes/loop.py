"""
Loop nodes: bounded re-entrant iteration.

The engine increments a node's visit counter before running it, so the
counter doubles as the iteration number. A loop keeps going while the
iteration is below ``max_iterations`` and ``exit_condition`` (if any) is
false. The engine re-queues the loop node while ``should_continue`` is set.
"""

import logging
from typing import Any

from flowgraph.graph.safe_eval import evaluate_guard
from flowgraph.graph.workflow import NodeKind, StepNode
from flowgraph.nodes.base import NodeContext, NodeExecutor, StepResult, config_value

logger = logging.getLogger(__name__)

DEFAULT_MAX_ITERATIONS = 10
MAX_ALLOWED_ITERATIONS = 1000


class LoopExecutor(NodeExecutor):
    kind = NodeKind.LOOP

    def validate_config(self, config: dict[str, Any]) -> list[str]:
        max_iterations = config_value(config, "max_iterations", DEFAULT_MAX_ITERATIONS)
        if (
            not isinstance(max_iterations, int)
            or isinstance(max_iterations, bool)
            or not 1 <= max_iterations <= MAX_ALLOWED_ITERATIONS
        ):
            return [f"Max iterations must be between 1 and {MAX_ALLOWED_ITERATIONS}"]
        return []

    async def execute(self, node: StepNode, ctx: NodeContext) -> StepResult:
        self.require_valid_config(node)
        config = node.config
        max_iterations = config_value(config, "max_iterations", DEFAULT_MAX_ITERATIONS)
        loop_variable = config_value(config, "loop_variable", "iteration")
        exit_condition = config_value(config, "exit_condition")

        iteration = ctx.state.node_visit_counts.get(node.id, 1)
        data: dict[str, Any] = {
            "iterationCount": iteration,
            "maxIterations": max_iterations,
            "loopVariable": loop_variable,
            "loopVariableValue": iteration,
        }

        exit_reason = None
        if iteration >= max_iterations:
            exit_reason = "max_iterations_reached"
        elif exit_condition:
            context = ctx.merged(
                iteration=iteration,
                loopCount=iteration,
                currentIteration=iteration,
            )
            if evaluate_guard(exit_condition, context):
                exit_reason = "condition_met"
                data["exitCondition"] = exit_condition

        should_continue = exit_reason is None
        data["shouldContinue"] = should_continue
        if exit_reason:
            data["exitReason"] = exit_reason
            logger.info(f"   ⟲ Loop {node.id} exiting after {iteration} iterations ({exit_reason})")
        else:
            logger.info(f"   ⟲ Loop {node.id} iteration {iteration}/{max_iterations}")

        return StepResult(
            success=True,
            data=data,
            variables={loop_variable: iteration},
            should_continue=should_continue,
        )
