"""Tests for spawn fan-out: replica counting, aggregation and child records."""

import asyncio

import pytest

from conftest import FakeAgentClient, node
from flowgraph.graph.errors import FatalRuntimeError
from flowgraph.graph.fanout import (
    FanoutCoordinator,
    aggregate,
    aggregate_custom,
    aggregate_majority,
    replica_count,
)
from flowgraph.llm.provider import AgentClient
from flowgraph.nodes.base import NodeContext
from flowgraph.schemas.execution import ExecutionState, ExecutionStatus


def spawn_node(strategy="all", max_agents=3, **extra):
    return node(
        "fan",
        "spawn",
        agentPrompt="Review item {{agentIndex}} of {{totalAgents}}",
        maxAgents=max_agents,
        aggregationStrategy=strategy,
        **extra,
    )


def parent_ctx(repository, variables=None) -> NodeContext:
    state = ExecutionState(
        workflow_id="wf-test", execution_id="exec_parent", variables=dict(variables or {})
    )
    return NodeContext(state=state, repository=repository)


class TestReplicaCount:
    def test_explicit_count_wins(self):
        assert replica_count({"maxAgents": 5}, {"agentCount": 4, "items": [1]}) == 4

    def test_capped_at_max_agents(self):
        assert replica_count({"maxAgents": 2}, {"spawnCount": 9}) == 2

    def test_items_length(self):
        assert replica_count({"maxAgents": 5}, {"items": ["a", "b"]}) == 2

    def test_default(self):
        assert replica_count({"maxAgents": 10}, {}) == 3
        assert replica_count({"maxAgents": 1}, {}) == 1


class TestAggregation:
    def test_majority_vote(self):
        outcome = aggregate_majority([{"ok": True}, {"ok": False}, {"ok": True}])
        assert outcome["result"] == {"ok": True}
        assert outcome["confidence"] == pytest.approx(2 / 3)
        assert outcome["totalVotes"] == 3

    def test_majority_ignores_key_order(self):
        outcome = aggregate_majority([{"a": 1, "b": 2}, {"b": 2, "a": 1}, {"a": 0}])
        assert outcome["result"] == {"a": 1, "b": 2}

    def test_majority_tie_goes_to_first_seen(self):
        assert aggregate_majority(["x", "y"])["result"] == "x"

    def test_first_and_all(self):
        assert aggregate([1, 2], "first") == 1
        assert aggregate([1, 2], "all") == [1, 2]

    def test_custom(self):
        assert aggregate_custom([1, 2, 3], "sum(results) / count") == 2
        assert aggregate([{"v": 1}, {"v": 5}], "custom", "last.v") == 5

    def test_custom_failure_returns_results(self, caplog):
        assert aggregate_custom([1, 2], "results[10]") == [1, 2]
        assert "Custom aggregation failed" in caplog.text


class TestFanoutCoordinator:
    @pytest.mark.asyncio
    async def test_majority_run_records_children(self, repository):
        client = FakeAgentClient(['{"ok": true}', '{"ok": false}', '{"ok": true}'])
        coordinator = FanoutCoordinator(client, repository, concurrency=1)

        result = await coordinator.run(spawn_node("majority"), parent_ctx(repository))

        assert result.success
        assert result.data["agentCount"] == 3
        assert result.data["requestedCount"] == 3
        assert result.data["aggregatedResult"]["result"] == {"ok": True}
        assert result.data["aggregatedResult"]["confidence"] == pytest.approx(0.667, abs=1e-3)
        assert [r["agentIndex"] for r in result.data["individualResults"]] == [0, 1, 2]
        assert result.child_execution_ids == [
            "exec_parent-agent-0",
            "exec_parent-agent-1",
            "exec_parent-agent-2",
        ]

        child = await repository.get_execution("exec_parent-agent-1")
        assert child.status == ExecutionStatus.COMPLETED
        assert child.parent_execution_id == "exec_parent"
        assert child.step_results["fan"]["result"] == {"ok": False}

    @pytest.mark.asyncio
    async def test_prompt_context_per_child(self, repository):
        client = FakeAgentClient()
        coordinator = FanoutCoordinator(client, repository, concurrency=1)
        await coordinator.run(spawn_node(max_agents=2), parent_ctx(repository, {"items": [1, 2]}))

        assert [c["context"]["agentIndex"] for c in client.calls] == [0, 1]
        assert all(c["context"]["totalAgents"] == 2 for c in client.calls)
        assert all(c["context"]["parentExecutionId"] == "exec_parent" for c in client.calls)

    @pytest.mark.asyncio
    async def test_partial_failure_excluded(self, repository):
        client = FakeAgentClient([RuntimeError("boom"), '"b"', '"c"'])
        coordinator = FanoutCoordinator(client, repository, concurrency=1)

        result = await coordinator.run(spawn_node("all"), parent_ctx(repository))

        assert result.data["agentCount"] == 2
        assert result.data["aggregatedResult"] == ["b", "c"]
        assert "exec_parent-agent-0" not in result.child_execution_ids
        assert await repository.get_execution("exec_parent-agent-0") is None

    @pytest.mark.asyncio
    async def test_all_failed_raises(self, repository):
        client = FakeAgentClient([RuntimeError("a"), RuntimeError("b")])
        coordinator = FanoutCoordinator(client, repository)
        with pytest.raises(FatalRuntimeError, match="All agent spawns failed"):
            await coordinator.run(spawn_node(max_agents=2), parent_ctx(repository, {"agentCount": 2}))

    @pytest.mark.asyncio
    async def test_requires_client(self, repository):
        coordinator = FanoutCoordinator(None, repository)
        with pytest.raises(FatalRuntimeError, match="No agent client"):
            await coordinator.run(spawn_node(), parent_ctx(repository))

    @pytest.mark.asyncio
    async def test_timed_out_children_are_dropped(self, repository):
        class SlowSecondClient(AgentClient):
            """Replica 1 never answers."""

            def __init__(self):
                self.inner = FakeAgentClient(default='"fast"')

            async def call(self, prompt, context=None, options=None):
                if context["agentIndex"] == 1:
                    await asyncio.Event().wait()
                return await self.inner.call(prompt, context, options)

        coordinator = FanoutCoordinator(SlowSecondClient(), repository, concurrency=3, timeout=0.05)
        result = await coordinator.run(spawn_node(max_agents=3), parent_ctx(repository))

        assert result.data["agentCount"] == 2
        assert result.data["requestedCount"] == 3
        assert result.child_execution_ids == ["exec_parent-agent-0", "exec_parent-agent-2"]
