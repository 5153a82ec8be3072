"""Serializable records persisted by the engine."""

from flowgraph.schemas.execution import (
    ApprovalRequest,
    ExecutionState,
    ExecutionStatus,
    NodeStatus,
    utc_now,
)

__all__ = [
    "ApprovalRequest",
    "ExecutionState",
    "ExecutionStatus",
    "NodeStatus",
    "utc_now",
]
