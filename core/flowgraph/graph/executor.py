"""
Execution Engine - drives a workflow graph to completion.

The engine:
1. Validates the graph and seeds a LIFO work stack with the trigger node
2. Pops a node, bumps its visit counter and enforces the iteration limit
3. Dispatches through the NodeRegistry under the kind's retry policy
4. Records the step result and checkpoints the ExecutionState
5. Computes successors (condition branches, loop re-entry, spawn, guards)
6. Repeats until the stack drains, an approval gate pauses the run, a
   failure stops it, or it is cancelled

State lives in the store, never in a suspended coroutine: a paused run is
picked up again by ``resume``/``approve`` from whatever process holds the
same store. Cancellation is cooperative and observed at node boundaries.
"""

import asyncio
import logging
import secrets
import string
import time
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Any

import httpx

from flowgraph.config import EngineConfig
from flowgraph.graph.edge import GuardKind, loop_edges
from flowgraph.graph.errors import (
    ApprovalRejected,
    ConfigurationError,
    ErrorHandler,
    ExecutionNotFound,
    InvalidExecutionState,
    IterationLimitExceeded,
    RecoveryKind,
    StructuralError,
    WorkflowNotFound,
    classify,
    step_failure,
)
from flowgraph.graph.fanout import FanoutCoordinator
from flowgraph.graph.parallel import can_execute_in_parallel, execute_parallel
from flowgraph.graph.retry import RetryOutcome, execute_with_retry, policy_for_kind
from flowgraph.graph.validator import ValidationResult, validate_workflow
from flowgraph.graph.workflow import NodeKind, StepNode, WorkflowGraph
from flowgraph.llm.provider import AgentClient
from flowgraph.nodes import NodeRegistry
from flowgraph.nodes.base import NodeContext, StepResult
from flowgraph.observability.logging import set_trace_context
from flowgraph.observability.monitor import ExecutionObserver
from flowgraph.schemas.execution import (
    ApprovalRequest,
    ExecutionState,
    ExecutionStatus,
    NodeStatus,
    utc_now,
)
from flowgraph.storage import create_store
from flowgraph.storage.backend import DurableStore
from flowgraph.storage.repository import ExecutionRepository, StoreTTLs

logger = logging.getLogger(__name__)

_ID_ALPHABET = string.digits + string.ascii_lowercase

# Kinds whose routing is "follow satisfied edges" and which never pause;
# only these are batched when independent-branch concurrency is on.
_PARALLEL_KINDS = frozenset({NodeKind.ACTION, NodeKind.AGENT})


def generate_execution_id() -> str:
    """``exec_{epoch_ms}_{9 base36 chars}``"""
    suffix = "".join(secrets.choice(_ID_ALPHABET) for _ in range(9))
    return f"exec_{int(time.time() * 1000)}_{suffix}"


@dataclass
class ExecutionResult:
    """Result of driving an execution until it stops (completes, pauses or fails)."""

    execution_id: str
    status: ExecutionStatus
    error: str | None = None
    duration_ms: int = 0
    steps_executed: int = 0
    paused_at: str | None = None
    state: ExecutionState | None = field(default=None, repr=False)

    @property
    def success(self) -> bool:
        return self.status not in (ExecutionStatus.FAILED, ExecutionStatus.CANCELLED)

    @property
    def paused(self) -> bool:
        return self.status == ExecutionStatus.PAUSED

    def to_dict(self) -> dict[str, Any]:
        return {
            "executionId": self.execution_id,
            "status": self.status.value,
            "success": self.success,
            "error": self.error,
            "durationMs": self.duration_ms,
            "stepsExecuted": self.steps_executed,
            "pausedAt": self.paused_at,
        }


class ExecutionEngine:
    """
    Runs workflow graphs against a durable store.

    Example:
        engine = ExecutionEngine(InMemoryStore(), agent_client=LiteLLMAgentClient())
        result = await engine.start(graph, {"amount": 1500})
        if result.paused:
            result = await engine.approve(result.execution_id, "alice@example.com")
    """

    def __init__(
        self,
        store: DurableStore | ExecutionRepository | None = None,
        registry: NodeRegistry | None = None,
        agent_client: AgentClient | None = None,
        http_client: httpx.AsyncClient | None = None,
        observer: ExecutionObserver | None = None,
        config: EngineConfig | None = None,
    ):
        self.config = config or EngineConfig()
        if isinstance(store, ExecutionRepository):
            self.repository = store
        else:
            self.repository = ExecutionRepository(
                store if store is not None else create_store(self.config),
                StoreTTLs(
                    workflow=self.config.workflow_ttl,
                    execution=self.config.execution_ttl,
                    approval=self.config.approval_ttl,
                ),
            )
        self.registry = registry or NodeRegistry()
        self.agent_client = agent_client
        self.http_client = http_client
        self.observer = observer or ExecutionObserver()
        self.fanout = FanoutCoordinator(
            agent_client,
            self.repository,
            concurrency=self.config.spawn_concurrency,
            timeout=self.config.spawn_timeout,
        )
        self._locks: dict[str, asyncio.Lock] = {}

    # ------------------------------------------------------------------
    # Public operations
    # ------------------------------------------------------------------

    def validate(self, graph: WorkflowGraph) -> ValidationResult:
        return validate_workflow(graph, self.registry)

    async def start(
        self,
        graph: WorkflowGraph,
        input: dict[str, Any] | None = None,
        execution_id: str | None = None,
    ) -> ExecutionResult:
        """
        Start a new execution of ``graph``.

        Raises:
            StructuralError: the graph is malformed; nothing is persisted
            ConfigurationError: a node's config is invalid; nothing is persisted
        """
        validation = validate_workflow(graph, self.registry)
        if not validation.valid:
            structural = [e for e in validation.errors if e not in validation.config_errors]
            if structural:
                raise StructuralError(structural)
            raise ConfigurationError(
                "Invalid node configuration: " + "; ".join(validation.config_errors)
            )

        start_node = graph.find_start_node()
        trigger_input = dict(input or {})
        state = ExecutionState(
            workflow_id=graph.id,
            execution_id=execution_id or generate_execution_id(),
            variables=dict(trigger_input),
        )

        await self.repository.save_workflow(graph)
        await self.repository.save_execution(state)

        set_trace_context(execution_id=state.execution_id, workflow_id=graph.id, node_id=None)
        logger.info(f"🚀 Starting workflow {graph.name or graph.id} ({state.execution_id})")
        await self._notify("on_execution_start", state)

        return await self._traverse(graph, state, [start_node.id], trigger_input)

    async def get_status(self, execution_id: str) -> ExecutionState | None:
        return await self.repository.get_execution(execution_id)

    async def resume(
        self,
        execution_id: str,
        payload: dict[str, Any] | None = None,
        graph: WorkflowGraph | None = None,
    ) -> ExecutionResult:
        """
        Continue a paused execution past its approval gate.

        The payload is merged into variables, then routing continues from the
        gate's outgoing edges. The gate itself is not run again.

        Raises:
            ExecutionNotFound: no stored state for ``execution_id``
            InvalidExecutionState: the execution is not paused
            WorkflowNotFound: the workflow was not passed and is no longer stored
        """
        return await self._resume_paused(execution_id, payload, graph)

    async def _resume_paused(
        self,
        execution_id: str,
        payload: dict[str, Any] | None,
        graph: WorkflowGraph | None,
        gate_result: dict[str, Any] | None = None,
    ) -> ExecutionResult:
        state = await self.repository.get_execution(execution_id)
        if state is None:
            raise ExecutionNotFound(execution_id)
        if state.status != ExecutionStatus.PAUSED:
            raise InvalidExecutionState(
                f"Execution {execution_id} is not paused (status: {state.status.value})"
            )

        graph = graph or await self.repository.get_workflow(state.workflow_id)
        if graph is None:
            raise WorkflowNotFound(state.workflow_id)
        node = graph.get_node(state.current_node_id) if state.current_node_id else None
        if node is None:
            raise InvalidExecutionState(f"Current node {state.current_node_id} not found")

        set_trace_context(execution_id=execution_id, workflow_id=state.workflow_id, node_id=None)
        logger.info(f"▶ Resuming execution {execution_id} at {node.id}")

        def reopen(s: ExecutionState) -> None:
            if gate_result is not None:
                s.step_results[node.id] = gate_result
            if payload:
                s.variables.update(payload)
            s.mark_running()

        if not await self._commit(state, reopen):
            return self._result(state)
        await self.repository.delete_approval(execution_id)
        await self._notify("on_execution_start", state)

        successors = self._plain_successors(graph, state, node, state.step_results.get(node.id))
        return await self._traverse(graph, state, successors, {})

    async def cancel(self, execution_id: str) -> bool:
        """
        Mark a running or paused execution cancelled.

        Returns False when the execution does not exist or already finished.
        A node that is mid-flight finishes, but its result is discarded.
        """
        async with self._lock(execution_id):
            state = await self.repository.get_execution(execution_id)
            if state is None or state.is_terminal:
                return False
            was_paused = state.status == ExecutionStatus.PAUSED
            state.mark_cancelled()
            await self.repository.save_execution(state)

        if was_paused:
            await self.repository.delete_approval(execution_id)
        logger.info(f"⏹ Execution {execution_id} cancelled")
        return True

    async def approve(
        self,
        execution_id: str,
        actor: str,
        reason: str | None = None,
        data: dict[str, Any] | None = None,
        graph: WorkflowGraph | None = None,
    ) -> ExecutionResult:
        """
        Approve the pending gate and resume.

        An expired request is deleted and the execution fails instead.
        """
        if not actor:
            raise ValueError("Approver name is required")
        request = await self._pending_request(execution_id)
        if request.require_reason and not reason:
            raise InvalidExecutionState("A reason is required to approve this request")

        if request.is_expired():
            logger.warning(f"⚠ Approval for {execution_id} expired at {request.timeout_at}")
            await self.repository.delete_approval(execution_id)
            return await self._fail_paused(
                execution_id,
                "Approval request expired",
                {"status": "expired", "expiredAt": request.timeout_at},
            )

        logger.info(f"✓ Execution {execution_id} approved by {actor}")
        return await self._resume_paused(
            execution_id,
            data or {},
            graph,
            gate_result={
                "status": "approved",
                "approvedBy": actor,
                "reason": reason,
                "additionalData": data,
                "approvedAt": utc_now(),
            },
        )

    async def reject(
        self,
        execution_id: str,
        actor: str,
        reason: str | None = None,
    ) -> ExecutionResult:
        """Reject the pending gate; the execution fails."""
        if not actor:
            raise ValueError("Rejector name is required")
        await self._pending_request(execution_id)
        await self.repository.delete_approval(execution_id)

        logger.info(f"✗ Execution {execution_id} rejected by {actor}")
        return await self._fail_paused(
            execution_id,
            f"Approval rejected: {reason or 'No reason provided'}",
            {
                "status": "rejected",
                "rejectedBy": actor,
                "reason": reason,
                "rejectedAt": utc_now(),
            },
        )

    async def list_pending_approvals(self) -> list[ApprovalRequest]:
        """Approval requests whose execution is still paused."""
        pending = []
        for request in await self.repository.list_approvals():
            state = await self.repository.get_execution(request.execution_id)
            if state is not None and state.status == ExecutionStatus.PAUSED:
                pending.append(request)
        return sorted(pending, key=lambda r: r.created_at)

    async def cleanup_expired_approvals(self) -> int:
        """Reject every expired request on behalf of ``system``. Returns the count."""
        cleaned = 0
        for request in await self.repository.list_approvals():
            if not request.is_expired():
                continue
            state = await self.repository.get_execution(request.execution_id)
            if state is None or state.status != ExecutionStatus.PAUSED:
                await self.repository.delete_approval(request.execution_id)
            else:
                await self.reject(request.execution_id, "system", "Approval request expired")
            cleaned += 1
        if cleaned:
            logger.info(f"Cleaned up {cleaned} expired approval requests")
        return cleaned

    # ------------------------------------------------------------------
    # Traversal
    # ------------------------------------------------------------------

    async def _traverse(
        self,
        graph: WorkflowGraph,
        state: ExecutionState,
        stack: list[str],
        trigger_input: dict[str, Any],
    ) -> ExecutionResult:
        started = time.monotonic()

        while stack and state.status == ExecutionStatus.RUNNING:
            batch = self._take_batch(graph, stack)
            if len(batch) == 1:
                successors = await self._run_node(graph, state, batch[0], trigger_input)
            else:
                successors = await self._run_batch(graph, state, batch, trigger_input)
            if successors is None:
                break
            stack.extend(successors)

        if state.status == ExecutionStatus.RUNNING and await self._commit(
            state, lambda s: s.mark_completed()
        ):
            logger.info(
                f"✓ Execution {state.execution_id} completed "
                f"({len(state.step_results)} steps)"
            )

        set_trace_context(node_id=None)
        if state.status == ExecutionStatus.FAILED:
            logger.error(f"✗ Execution {state.execution_id} failed: {state.error}")
        elif state.status == ExecutionStatus.PAUSED:
            logger.info(f"⏸ Execution {state.execution_id} paused at {state.current_node_id}")
        elif state.status == ExecutionStatus.CANCELLED:
            logger.info(f"⏹ Execution {state.execution_id} stopped after cancellation")
        await self._notify("on_execution_end", state)

        return self._result(state, duration_ms=int((time.monotonic() - started) * 1000))

    def _take_batch(self, graph: WorkflowGraph, stack: list[str]) -> list[str]:
        batch = [stack.pop()]
        if not self.config.enable_parallel_branches:
            return batch

        first = graph.get_node(batch[0])
        if first is None or first.kind not in _PARALLEL_KINDS:
            return batch
        while stack and len(batch) < self.config.max_parallel_branches:
            candidate = graph.get_node(stack[-1])
            if candidate is None or candidate.kind not in _PARALLEL_KINDS:
                break
            if not all(can_execute_in_parallel(graph, candidate.id, b) for b in batch):
                break
            batch.append(stack.pop())
        return batch

    async def _run_batch(
        self,
        graph: WorkflowGraph,
        state: ExecutionState,
        batch: list[str],
        trigger_input: dict[str, Any],
    ) -> list[str] | None:
        outcome = await execute_parallel(
            batch,
            lambda node_id: self._run_node(graph, state, node_id, trigger_input),
            max_concurrency=self.config.max_parallel_branches,
        )

        successors: list[str] = []
        for branch in outcome.results:
            if not branch.success:
                if state.status == ExecutionStatus.RUNNING:
                    error = branch.error or "Parallel branch failed"
                    await self._commit(state, lambda s, e=error: s.mark_failed(e))
                return None
            if branch.data is None:
                return None
            successors.extend(branch.data)
        return successors

    async def _run_node(
        self,
        graph: WorkflowGraph,
        state: ExecutionState,
        node_id: str,
        trigger_input: dict[str, Any],
    ) -> list[str] | None:
        """
        Run one node. Returns the ids to push, or None when traversal must stop.
        """
        node = graph.get_node(node_id)
        if node is None:
            message = f"Node {node_id} not found in workflow"
            await self._commit(state, lambda s: s.mark_failed(message))
            return None

        visits = state.node_visit_counts.get(node.id, 0) + 1
        limit = node.max_iterations(self.config.max_iterations)
        if visits > limit:
            exc = IterationLimitExceeded(node.id, limit)

            def fail_limit(s: ExecutionState) -> None:
                s.node_statuses[node.id] = NodeStatus.FAILED
                s.mark_failed(str(exc), {"code": "ITERATION_LIMIT", "node_id": node.id})

            await self._commit(state, fail_limit)
            return None

        def begin(s: ExecutionState) -> None:
            s.node_visit_counts[node.id] = visits
            s.current_node_id = node.id
            s.node_statuses[node.id] = NodeStatus.RUNNING

        if not await self._commit(state, begin):
            return None

        set_trace_context(node_id=node.id)
        await self._notify("on_node_start", state, node)

        outcome = await self._dispatch(graph, state, node, trigger_input)
        if not outcome.success:
            return await self._recover(graph, state, node, outcome)

        result: StepResult = outcome.result

        def record(s: ExecutionState) -> None:
            s.step_results[node.id] = result.data
            metadata = dict(result.metadata)
            if outcome.attempts > 1:
                metadata["attempts"] = outcome.attempts
            if metadata:
                s.step_metadata[node.id] = metadata
            s.variables.update(result.variables)
            s.child_execution_ids.extend(result.child_execution_ids)
            s.node_statuses[node.id] = NodeStatus.COMPLETED
            if node.kind == NodeKind.APPROVAL:
                s.mark_paused()

        if not await self._commit(state, record):
            logger.info(f"   ⏹ Discarding result of {node.id}: execution was cancelled")
            if node.kind == NodeKind.APPROVAL:
                await self.repository.delete_approval(state.execution_id)
            return None

        await self._notify("on_node_end", state, node, NodeStatus.COMPLETED)

        if node.kind == NodeKind.APPROVAL:
            return None
        return self._successors(graph, state, node, result)

    async def _dispatch(
        self,
        graph: WorkflowGraph,
        state: ExecutionState,
        node: StepNode,
        trigger_input: dict[str, Any],
    ) -> RetryOutcome:
        ctx = NodeContext(
            state=state,
            repository=self.repository,
            graph=graph,
            trigger_input=trigger_input,
            agent_client=self.agent_client,
            http_client=self.http_client,
            fanout=self.fanout,
        )

        async def attempt() -> StepResult:
            result = await self.registry.execute(node, ctx)
            if not result.success:
                raise step_failure(result.error or f"Node {node.id} reported failure")
            return result

        async def on_retry(attempt_number: int, error: BaseException, delay: float) -> None:
            await self._notify("on_node_retry", state, node, attempt_number, str(error))

        return await execute_with_retry(
            attempt,
            policy_for_kind(node.kind, timeout=self.config.timeout),
            on_retry=on_retry,
            label=f"node {node.id}",
        )

    async def _recover(
        self,
        graph: WorkflowGraph,
        state: ExecutionState,
        node: StepNode,
        outcome: RetryOutcome,
    ) -> list[str] | None:
        """Apply the node's recovery strategy after its retries ran out."""
        handler = ErrorHandler.for_kind(node.kind, self.config.error_webhook, self.http_client)
        decision = await handler.handle_error(outcome.exception or outcome.error, node, state)
        error_class = outcome.error_class or classify(outcome.error or "")
        strategy = handler.create_recovery_strategy(node, graph, error_class)
        error = outcome.error or "Unknown error"
        details = {
            **decision.error.to_dict(),
            "error_class": error_class.value,
            "attempts": outcome.attempts,
            "recovery": strategy.strategy.value,
        }

        if strategy.strategy == RecoveryKind.SKIP:

            def skip(s: ExecutionState) -> None:
                s.node_statuses[node.id] = NodeStatus.SKIPPED
                s.step_metadata[node.id] = {"error": details}

            if not await self._commit(state, skip):
                return None
            logger.warning(f"   ↷ Skipping {node.id} after error: {error}")
            await self._notify("on_node_end", state, node, NodeStatus.SKIPPED, error)
            return self._plain_successors(graph, state, node, None)

        if strategy.strategy == RecoveryKind.FALLBACK:

            def fallback(s: ExecutionState) -> None:
                s.node_statuses[node.id] = NodeStatus.FAILED
                s.step_metadata[node.id] = {"error": details}

            if not await self._commit(state, fallback):
                return None
            logger.warning(f"   ↪ Falling back from {node.id} to {strategy.next_node_id}")
            await self._notify("on_node_end", state, node, NodeStatus.FAILED, error)
            return [strategy.next_node_id]

        if strategy.strategy == RecoveryKind.RETRY and decision.should_retry:
            logger.warning(f"   ↻ Re-queueing {node.id} in {strategy.retry_delay}s")
            await self._notify("on_node_end", state, node, NodeStatus.FAILED, error)
            await asyncio.sleep(strategy.retry_delay or 0)
            return [node.id]

        def fail(s: ExecutionState) -> None:
            s.node_statuses[node.id] = NodeStatus.FAILED
            s.mark_failed(error, details)

        await self._commit(state, fail)
        await self._notify("on_node_end", state, node, NodeStatus.FAILED, error)
        return None

    # ------------------------------------------------------------------
    # Routing
    # ------------------------------------------------------------------

    def _successors(
        self,
        graph: WorkflowGraph,
        state: ExecutionState,
        node: StepNode,
        result: StepResult,
    ) -> list[str]:
        outgoing = graph.get_outgoing_edges(node.id)
        context = state.evaluation_context()

        if node.kind == NodeKind.CONDITION:
            branch = bool(result.data.get("result")) if isinstance(result.data, dict) else False
            return [e.target for e in outgoing if e.matches_branch(branch, context)]

        if node.kind == NodeKind.LOOP:
            continue_edges, exit_edges = loop_edges(
                outgoing, lambda target: graph.reaches(target, node.id)
            )
            if result.should_continue:
                body = [e.target for e in continue_edges]
                if any(graph.reaches(target, node.id) for target in body):
                    # Body edges back into the loop node itself
                    return body
                # Loop node goes back first so the body (pushed on top) runs before it
                return [node.id] + body
            exit_context = {**context, "result": result.data}
            return [
                e.target for e in exit_edges if e.is_loop_exit or e.is_satisfied(exit_context)
            ]

        if node.kind == NodeKind.SPAWN:
            return [e.target for e in outgoing if e.guard_kind == GuardKind.NONE]

        return self._plain_successors(graph, state, node, result.data)

    def _plain_successors(
        self,
        graph: WorkflowGraph,
        state: ExecutionState,
        node: StepNode,
        data: Any,
    ) -> list[str]:
        context = {**state.evaluation_context(), "result": data}
        return [e.target for e in graph.get_outgoing_edges(node.id) if e.is_satisfied(context)]

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _lock(self, execution_id: str) -> asyncio.Lock:
        return self._locks.setdefault(execution_id, asyncio.Lock())

    async def _commit(
        self,
        state: ExecutionState,
        apply: Callable[[ExecutionState], None] | None = None,
    ) -> bool:
        """
        Apply ``apply`` to the state and checkpoint it.

        Returns False without writing when the stored execution has been
        cancelled in the meantime; ``state`` then reflects the cancellation.
        """
        async with self._lock(state.execution_id):
            stored = await self.repository.get_execution(state.execution_id)
            if stored is not None and stored.status == ExecutionStatus.CANCELLED:
                state.status = ExecutionStatus.CANCELLED
                state.completed_at = stored.completed_at
                state.updated_at = stored.updated_at
                return False
            if apply is not None:
                apply(state)
            state.touch()
            await self.repository.save_execution(state)
            return True

    async def _pending_request(self, execution_id: str) -> ApprovalRequest:
        request = await self.repository.get_approval(execution_id)
        if request is None:
            state = await self.repository.get_execution(execution_id)
            if state is None:
                raise ExecutionNotFound(execution_id)
            raise InvalidExecutionState(f"No pending approval for execution {execution_id}")
        return request

    async def _fail_paused(
        self,
        execution_id: str,
        error: str,
        step_result: dict[str, Any],
    ) -> ExecutionResult:
        async with self._lock(execution_id):
            state = await self.repository.get_execution(execution_id)
            if state is None:
                raise ExecutionNotFound(execution_id)
            if state.status != ExecutionStatus.PAUSED:
                raise InvalidExecutionState(
                    f"Execution {execution_id} is not paused (status: {state.status.value})"
                )
            if state.current_node_id:
                state.step_results[state.current_node_id] = step_result
                state.node_statuses[state.current_node_id] = NodeStatus.FAILED
            rejection = ApprovalRejected(error)
            state.mark_failed(
                str(rejection),
                {"code": "APPROVAL_REJECTED", "error_class": classify(rejection).value, **step_result},
            )
            await self.repository.save_execution(state)

        await self._notify("on_execution_end", state)
        return self._result(state)

    def _result(self, state: ExecutionState, duration_ms: int = 0) -> ExecutionResult:
        return ExecutionResult(
            execution_id=state.execution_id,
            status=state.status,
            error=state.error,
            duration_ms=duration_ms,
            steps_executed=len(state.step_results),
            paused_at=state.current_node_id if state.status == ExecutionStatus.PAUSED else None,
            state=state,
        )

    async def _notify(self, hook: str, *args: Any) -> None:
        """Call an observer hook; observer failures are logged, never raised into the run."""
        try:
            await getattr(self.observer, hook)(*args)
        except Exception as e:
            logger.warning(f"Observer {hook} failed: {e}")
