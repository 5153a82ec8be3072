"""
Execution State Schema - Durable record of one workflow run.

The engine rewrites this record after every node, so it must be fully
serializable: a paused or crashed run is reconstructed from the store alone,
never from an in-memory continuation. Timestamps are ISO 8601 strings so a
load/dump round-trip is byte-identical.
"""

from datetime import UTC, datetime
from enum import StrEnum
from typing import Any

from pydantic import BaseModel, Field


def utc_now() -> str:
    """Current time as an ISO 8601 string."""
    return datetime.now(UTC).isoformat()


class ExecutionStatus(StrEnum):
    """Status of a workflow execution."""

    RUNNING = "running"  # Currently executing
    PAUSED = "paused"  # Waiting at an approval gate
    COMPLETED = "completed"  # Work stack drained
    FAILED = "failed"  # Finished with error
    CANCELLED = "cancelled"  # Stopped by request

    @property
    def is_terminal(self) -> bool:
        return self in (
            ExecutionStatus.COMPLETED,
            ExecutionStatus.FAILED,
            ExecutionStatus.CANCELLED,
        )


class NodeStatus(StrEnum):
    """Status of a single node within an execution."""

    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    SKIPPED = "skipped"


class ExecutionState(BaseModel):
    """
    Everything needed to inspect or resume a run.

    ``step_results`` is keyed by node id. Entries are overwritten when a node
    runs again (loops) but never removed.
    """

    workflow_id: str
    execution_id: str
    status: ExecutionStatus = ExecutionStatus.RUNNING
    current_node_id: str | None = None

    node_statuses: dict[str, NodeStatus] = Field(default_factory=dict)
    node_visit_counts: dict[str, int] = Field(default_factory=dict)
    step_results: dict[str, Any] = Field(default_factory=dict)
    step_metadata: dict[str, dict[str, Any]] = Field(default_factory=dict)
    variables: dict[str, Any] = Field(default_factory=dict)

    started_at: str = Field(default_factory=utc_now)
    updated_at: str = Field(default_factory=utc_now)
    completed_at: str | None = None

    error: str | None = None
    error_details: dict[str, Any] | None = None

    parent_execution_id: str | None = None
    child_execution_ids: list[str] = Field(default_factory=list)

    model_config = {"extra": "allow"}

    @property
    def is_terminal(self) -> bool:
        return self.status.is_terminal

    def touch(self) -> None:
        self.updated_at = utc_now()

    def mark_running(self) -> None:
        self.status = ExecutionStatus.RUNNING
        self.touch()

    def mark_paused(self) -> None:
        self.status = ExecutionStatus.PAUSED
        self.touch()

    def mark_completed(self) -> None:
        self.status = ExecutionStatus.COMPLETED
        self.completed_at = utc_now()
        self.touch()

    def mark_failed(self, error: str, details: dict[str, Any] | None = None) -> None:
        self.status = ExecutionStatus.FAILED
        self.error = error
        if details is not None:
            self.error_details = details
        self.completed_at = utc_now()
        self.touch()

    def mark_cancelled(self) -> None:
        self.status = ExecutionStatus.CANCELLED
        self.completed_at = utc_now()
        self.touch()

    def evaluation_context(self) -> dict[str, Any]:
        """Variables merged with step results, as seen by templates and guards."""
        return {**self.variables, **self.step_results}

    def to_json(self) -> str:
        return self.model_dump_json()

    @classmethod
    def from_json(cls, data: str | bytes) -> "ExecutionState":
        return cls.model_validate_json(data)


class ApprovalRequest(BaseModel):
    """
    A pending human decision at an approval gate.

    Exists only while its execution is paused at ``node_id``; deleted on
    approve, reject or expiry.
    """

    execution_id: str
    node_id: str
    message: str
    data: dict[str, Any] = Field(default_factory=dict)
    approver_email: str | None = None
    require_reason: bool = False
    created_at: str = Field(default_factory=utc_now)
    timeout_at: str | None = None

    model_config = {"extra": "allow"}

    def is_expired(self, now: datetime | None = None) -> bool:
        if not self.timeout_at:
            return False
        now = now or datetime.now(UTC)
        return datetime.fromisoformat(self.timeout_at) < now
