"""Tests for independent-branch detection and bounded parallel execution."""

import asyncio

import pytest

from conftest import edge, graph, node
from flowgraph.graph.parallel import (
    can_execute_in_parallel,
    execute_parallel,
    find_independent_branches,
    node_dependencies,
)


@pytest.fixture
def diamond():
    #   start -> a -> c
    #   start -> b -> c
    #   start -> d
    return graph(
        [node(n, "trigger" if n == "start" else "action") for n in ("start", "a", "b", "c", "d")],
        [edge("start", "a"), edge("start", "b"), edge("a", "c"), edge("b", "c"), edge("start", "d")],
    )


class TestDependencies:
    def test_node_dependencies_walks_incoming_edges(self, diamond):
        assert node_dependencies(diamond, "c") == {"a", "b", "start"}
        assert node_dependencies(diamond, "start") == set()

    def test_siblings_are_independent(self, diamond):
        assert can_execute_in_parallel(diamond, "a", "b")
        assert can_execute_in_parallel(diamond, "a", "d")

    def test_ancestor_and_descendant_are_not(self, diamond):
        assert not can_execute_in_parallel(diamond, "a", "c")
        assert not can_execute_in_parallel(diamond, "start", "d")
        assert not can_execute_in_parallel(diamond, "a", "a")

    def test_find_independent_branches(self, diamond):
        assert find_independent_branches(diamond, ["a", "b", "c", "d"]) == [["a", "b", "d"], ["c"]]


class TestExecuteParallel:
    @pytest.mark.asyncio
    async def test_results_keep_input_order(self):
        async def run(node_id):
            return node_id.upper()

        outcome = await execute_parallel(["x", "y", "z"], run)

        assert outcome.success
        assert [r.data for r in outcome.results] == ["X", "Y", "Z"]

    @pytest.mark.asyncio
    async def test_failure_isolated_to_branch(self):
        async def run(node_id):
            if node_id == "bad":
                raise ValueError("broken branch")
            return node_id

        outcome = await execute_parallel(["ok", "bad"], run)

        assert not outcome.success
        assert outcome.results[0].success
        assert outcome.results[1].error == "broken branch"

    @pytest.mark.asyncio
    async def test_concurrency_is_bounded(self):
        in_flight = 0
        peak = 0
        saturated = asyncio.Event()
        release = asyncio.Event()

        async def run(node_id):
            nonlocal in_flight, peak
            in_flight += 1
            peak = max(peak, in_flight)
            if in_flight == 2:
                saturated.set()
            await release.wait()
            in_flight -= 1
            return node_id

        task = asyncio.create_task(
            execute_parallel([f"n{i}" for i in range(6)], run, max_concurrency=2)
        )
        await saturated.wait()
        assert in_flight == 2
        release.set()
        outcome = await task

        assert outcome.success
        assert peak == 2

    @pytest.mark.asyncio
    async def test_timeout_fails_every_branch(self):
        async def run(node_id):
            await asyncio.Event().wait()

        outcome = await execute_parallel(["a", "b"], run, timeout=0.01)

        assert not outcome.success
        assert all(not r.success for r in outcome.results)
        assert "timed out" in outcome.results[0].error
