"""
Fan-out coordinator for spawn nodes.

A spawn node runs N replicas of an agent prompt concurrently and folds their
answers into one result. Each replica is recorded as a completed child
execution linked to the parent, so the parent's ``child_execution_ids``
can be followed to inspect individual answers.

Replicas run under a semaphore; replicas still running when the overall
timeout expires are cancelled and left out of the aggregate.
"""

import asyncio
import json
import logging
from collections import Counter
from dataclasses import dataclass
from typing import Any

from flowgraph.graph.errors import FatalRuntimeError
from flowgraph.graph.safe_eval import evaluate, interpolate
from flowgraph.graph.workflow import StepNode
from flowgraph.llm.provider import AgentClient, AgentOptions
from flowgraph.nodes.base import NodeContext, StepResult, config_value, is_number
from flowgraph.schemas.execution import ExecutionState, ExecutionStatus, NodeStatus, utc_now
from flowgraph.storage.repository import ExecutionRepository

logger = logging.getLogger(__name__)

DEFAULT_REPLICAS = 3
CHILD_TEMPERATURE = 0.7
CHILD_MAX_TOKENS = 1000


@dataclass
class ChildOutcome:
    """Result of one spawned replica."""

    index: int
    execution_id: str
    success: bool
    result: Any = None
    model: str | None = None
    usage: dict[str, int] | None = None
    error: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "agentIndex": self.index,
            "result": self.result,
            "model": self.model,
            "usage": self.usage,
        }


def replica_count(config: dict[str, Any], variables: dict[str, Any]) -> int:
    """
    How many replicas to spawn.

    An explicit ``agentCount``/``spawnCount`` variable wins, then the length
    of an ``items``/``data`` list, then ``min(3, max_agents)``. Always capped
    at ``max_agents``.
    """
    max_agents = int(config_value(config, "max_agents", DEFAULT_REPLICAS))

    dynamic = variables.get("agentCount") or variables.get("spawnCount")
    if is_number(dynamic) and dynamic > 0:
        return min(int(dynamic), max_agents)

    items = variables.get("items") or variables.get("data")
    if isinstance(items, list):
        return min(len(items), max_agents)

    return min(DEFAULT_REPLICAS, max_agents)


def _canonical(value: Any) -> str:
    return json.dumps(value, sort_keys=True, default=str)


def aggregate_majority(results: list[Any]) -> dict[str, Any]:
    """
    Vote over canonical JSON encodings.

    Ties go to the value seen first. ``confidence`` is the winning share of
    all votes cast.
    """
    if not results:
        return {"result": None, "confidence": 0.0, "totalVotes": 0}

    votes = Counter(_canonical(r) for r in results)
    winner, count = max(votes.items(), key=lambda kv: kv[1])
    return {
        "result": json.loads(winner),
        "confidence": count / len(results),
        "totalVotes": len(results),
    }


def aggregate_custom(results: list[Any], expression: str) -> Any:
    """Evaluate a custom expression over the results; falls back to the raw list."""
    context = {
        "results": results,
        "count": len(results),
        "first": results[0] if results else None,
        "last": results[-1] if results else None,
    }
    value, error = evaluate(interpolate(expression, context), context)
    if error is not None:
        logger.warning(f"   ⚠ Custom aggregation failed: {error}")
        return results
    return value


def aggregate(results: list[Any], strategy: str, custom_expression: str | None = None) -> Any:
    if strategy == "first":
        return results[0] if results else None
    if strategy == "majority":
        return aggregate_majority(results)
    if strategy == "custom" and custom_expression:
        return aggregate_custom(results, custom_expression)
    return results


def parse_child_content(content: str, index: int) -> Any:
    try:
        return json.loads(content)
    except (json.JSONDecodeError, TypeError):
        return {"text": content, "raw": content, "agentIndex": index}


class FanoutCoordinator:
    """
    Runs spawn nodes.

    Example:
        coordinator = FanoutCoordinator(agent_client, repository, concurrency=3)
        result = await coordinator.run(node, ctx)
        result.data["aggregatedResult"]
    """

    def __init__(
        self,
        agent_client: AgentClient | None,
        repository: ExecutionRepository,
        concurrency: int = 5,
        timeout: float | None = 120.0,
    ):
        self.agent_client = agent_client
        self.repository = repository
        self.concurrency = max(1, concurrency)
        self.timeout = timeout

    async def run(self, node: StepNode, ctx: NodeContext) -> StepResult:
        if self.agent_client is None:
            raise FatalRuntimeError("No agent client configured for spawn nodes")

        config = node.config
        strategy = config_value(config, "aggregation_strategy", "all")
        requested = replica_count(config, ctx.variables)
        logger.info(f"   ⑃ Spawning {requested} agents at {node.id} (strategy={strategy})")

        semaphore = asyncio.Semaphore(self.concurrency)

        async def bounded(index: int) -> ChildOutcome:
            async with semaphore:
                return await self._run_child(node, ctx, index, requested)

        tasks = [asyncio.create_task(bounded(i)) for i in range(requested)]
        done, pending = await asyncio.wait(tasks, timeout=self.timeout)
        for task in pending:
            task.cancel()
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)
            logger.warning(f"   ⚠ {len(pending)} spawned agents timed out at {node.id}")

        outcomes = sorted(
            (t.result() for t in done if not t.cancelled()),
            key=lambda o: o.index,
        )
        succeeded = [o for o in outcomes if o.success]
        if not succeeded:
            raise FatalRuntimeError("All agent spawns failed")

        results = [o.result for o in succeeded]
        aggregated = aggregate(results, strategy, config_value(config, "custom_aggregation"))

        logger.info(f"   ✓ {len(succeeded)}/{requested} spawned agents succeeded")
        return StepResult(
            success=True,
            data={
                "agentCount": len(succeeded),
                "requestedCount": requested,
                "aggregationStrategy": strategy,
                "aggregatedResult": aggregated,
                "individualResults": [o.to_dict() for o in succeeded],
            },
            child_execution_ids=[o.execution_id for o in succeeded],
        )

    async def _run_child(
        self,
        node: StepNode,
        ctx: NodeContext,
        index: int,
        total: int,
    ) -> ChildOutcome:
        parent = ctx.state
        child_id = f"{parent.execution_id}-agent-{index}"
        context = ctx.merged(
            stepResults=ctx.step_results,
            agentIndex=index,
            totalAgents=total,
            parentExecutionId=parent.execution_id,
            parentWorkflowId=parent.workflow_id,
        )
        options = AgentOptions(
            model=config_value(node.config, "model"),
            temperature=config_value(node.config, "temperature", CHILD_TEMPERATURE),
            max_tokens=config_value(node.config, "max_tokens", CHILD_MAX_TOKENS),
        )

        try:
            response = await self.agent_client.call(
                config_value(node.config, "agent_prompt"), context, options
            )
            result = parse_child_content(response.content, index)

            now = utc_now()
            child = ExecutionState(
                workflow_id=parent.workflow_id,
                execution_id=child_id,
                status=ExecutionStatus.COMPLETED,
                current_node_id=node.id,
                node_statuses={node.id: NodeStatus.COMPLETED},
                node_visit_counts={node.id: 1},
                step_results={node.id: {"agentIndex": index, "result": result, "timestamp": now}},
                variables={k: v for k, v in context.items() if k != "stepResults"},
                started_at=now,
                updated_at=now,
                completed_at=now,
                parent_execution_id=parent.execution_id,
            )
            await self.repository.save_execution(child)

            return ChildOutcome(
                index=index,
                execution_id=child_id,
                success=True,
                result=result,
                model=response.model,
                usage=response.usage.to_dict() if response.usage else None,
            )
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.warning(f"   ✗ Spawned agent {index} failed: {e}")
            return ChildOutcome(index=index, execution_id=child_id, success=False, error=str(e))
