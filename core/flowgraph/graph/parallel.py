"""
Independent-branch concurrency.

When a node fans out to several plain successors that do not depend on one
another, the engine may run them concurrently and join them before it
advances. Two branch heads are independent when there is no edge between
them and neither is reachable from the other by walking incoming edges.
Off by default (``EngineConfig.enable_parallel_branches``).
"""

import asyncio
import logging
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from typing import Any

from flowgraph.graph.workflow import WorkflowGraph

logger = logging.getLogger(__name__)


@dataclass
class BranchResult:
    node_id: str
    success: bool
    data: Any = None
    error: str | None = None


@dataclass
class ParallelExecutionResult:
    success: bool
    results: list[BranchResult] = field(default_factory=list)
    execution_ms: int = 0


def node_dependencies(graph: WorkflowGraph, node_id: str) -> set[str]:
    """Every node with a path into ``node_id``."""
    dependencies: set[str] = set()
    stack = [node_id]
    while stack:
        current = stack.pop()
        for edge in graph.get_incoming_edges(current):
            if edge.source not in dependencies:
                dependencies.add(edge.source)
                stack.append(edge.source)
    dependencies.discard(node_id)
    return dependencies


def can_execute_in_parallel(graph: WorkflowGraph, a: str, b: str) -> bool:
    if a == b:
        return False
    for edge in graph.edges:
        if {edge.source, edge.target} == {a, b}:
            return False
    return a not in node_dependencies(graph, b) and b not in node_dependencies(graph, a)


def find_independent_branches(graph: WorkflowGraph, node_ids: list[str]) -> list[list[str]]:
    """
    Group node ids so that members of a group are pairwise independent.

    Greedy: each id joins the first group it is independent of, preserving
    input order within groups.
    """
    groups: list[list[str]] = []
    for node_id in node_ids:
        for group in groups:
            if all(can_execute_in_parallel(graph, node_id, other) for other in group):
                group.append(node_id)
                break
        else:
            groups.append([node_id])
    return groups


async def execute_parallel(
    node_ids: list[str],
    run_one: Callable[[str], Awaitable[Any]],
    max_concurrency: int = 5,
    timeout: float | None = None,
) -> ParallelExecutionResult:
    """
    Run ``run_one`` for each node id, at most ``max_concurrency`` at a time.

    Results keep input order. An exception in one branch marks that branch
    failed; the others still finish.
    """
    started = time.monotonic()
    semaphore = asyncio.Semaphore(max(1, max_concurrency))

    async def bounded(node_id: str) -> BranchResult:
        async with semaphore:
            try:
                return BranchResult(node_id=node_id, success=True, data=await run_one(node_id))
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.error(f"      ✗ Branch {node_id}: exception - {e}")
                return BranchResult(node_id=node_id, success=False, error=str(e))

    logger.info(f"   ⑂ Fan-out: executing {len(node_ids)} branches in parallel")
    try:
        results = await asyncio.wait_for(
            asyncio.gather(*(bounded(n) for n in node_ids)),
            timeout=timeout,
        )
    except TimeoutError:
        message = f"Parallel execution timed out after {timeout}s"
        logger.error(f"   ✗ {message}")
        return ParallelExecutionResult(
            success=False,
            results=[BranchResult(node_id=n, success=False, error=message) for n in node_ids],
            execution_ms=int((time.monotonic() - started) * 1000),
        )

    succeeded = sum(1 for r in results if r.success)
    logger.info(f"   ⑃ Fan-out complete: {succeeded}/{len(results)} branches succeeded")
    return ParallelExecutionResult(
        success=succeeded == len(results),
        results=list(results),
        execution_ms=int((time.monotonic() - started) * 1000),
    )
