"""
Execution Repository - typed access to workflows, executions and approvals.

Key layout:
    workflow:{workflow_id}     -> WorkflowGraph        (TTL ~24h)
    execution:{execution_id}   -> ExecutionState       (TTL ~1h)
    approval:{execution_id}    -> ApprovalRequest      (TTL ~1h)

At most one approval request exists per execution, since an execution can
only be paused at one gate at a time.
"""

import logging
from dataclasses import dataclass

from flowgraph.graph.errors import ExecutionNotFound
from flowgraph.graph.workflow import WorkflowGraph
from flowgraph.schemas.execution import ApprovalRequest, ExecutionState, ExecutionStatus
from flowgraph.storage.backend import DurableStore

logger = logging.getLogger(__name__)

WORKFLOW_PREFIX = "workflow:"
EXECUTION_PREFIX = "execution:"
APPROVAL_PREFIX = "approval:"


@dataclass
class StoreTTLs:
    workflow: int = 86400
    execution: int = 3600
    approval: int = 3600


class ExecutionRepository:
    """Serializes engine records to and from a DurableStore."""

    def __init__(self, store: DurableStore, ttls: StoreTTLs | None = None):
        self.store = store
        self.ttls = ttls or StoreTTLs()

    # Workflows

    async def save_workflow(self, workflow: WorkflowGraph) -> None:
        await self.store.put(
            f"{WORKFLOW_PREFIX}{workflow.id}",
            workflow.model_dump(mode="json"),
            self.ttls.workflow,
        )

    async def get_workflow(self, workflow_id: str) -> WorkflowGraph | None:
        data = await self.store.get(f"{WORKFLOW_PREFIX}{workflow_id}")
        return WorkflowGraph.model_validate(data) if data else None

    async def delete_workflow(self, workflow_id: str) -> None:
        await self.store.delete(f"{WORKFLOW_PREFIX}{workflow_id}")

    async def list_workflows(self) -> list[WorkflowGraph]:
        workflows = [
            WorkflowGraph.model_validate(d) for d in await self.store.list_by_prefix(WORKFLOW_PREFIX)
        ]
        return sorted(
            workflows,
            key=lambda w: str(w.metadata.get("created_at", "")),
            reverse=True,
        )

    # Executions

    async def save_execution(self, state: ExecutionState) -> None:
        await self.store.put(
            f"{EXECUTION_PREFIX}{state.execution_id}",
            state.model_dump(mode="json"),
            self.ttls.execution,
        )

    async def get_execution(self, execution_id: str) -> ExecutionState | None:
        data = await self.store.get(f"{EXECUTION_PREFIX}{execution_id}")
        return ExecutionState.model_validate(data) if data else None

    async def delete_execution(self, execution_id: str) -> None:
        await self.store.delete(f"{EXECUTION_PREFIX}{execution_id}")

    async def update_execution_status(
        self,
        execution_id: str,
        status: ExecutionStatus,
        **updates,
    ) -> ExecutionState:
        state = await self.get_execution(execution_id)
        if state is None:
            raise ExecutionNotFound(execution_id)
        for field_name, value in updates.items():
            setattr(state, field_name, value)
        state.status = status
        state.touch()
        await self.save_execution(state)
        return state

    async def list_executions(self, workflow_id: str | None = None) -> list[ExecutionState]:
        states = [
            ExecutionState.model_validate(d)
            for d in await self.store.list_by_prefix(EXECUTION_PREFIX)
        ]
        if workflow_id is not None:
            states = [s for s in states if s.workflow_id == workflow_id]
        return sorted(states, key=lambda s: s.started_at, reverse=True)

    # Approvals

    async def save_approval(self, request: ApprovalRequest) -> None:
        await self.store.put(
            f"{APPROVAL_PREFIX}{request.execution_id}",
            request.model_dump(mode="json"),
            self.ttls.approval,
        )

    async def get_approval(self, execution_id: str) -> ApprovalRequest | None:
        data = await self.store.get(f"{APPROVAL_PREFIX}{execution_id}")
        return ApprovalRequest.model_validate(data) if data else None

    async def delete_approval(self, execution_id: str) -> None:
        await self.store.delete(f"{APPROVAL_PREFIX}{execution_id}")

    async def list_approvals(self) -> list[ApprovalRequest]:
        return [
            ApprovalRequest.model_validate(d)
            for d in await self.store.list_by_prefix(APPROVAL_PREFIX)
        ]
