"""
Observability: structured logging with trace context, plus execution observers.

Usage:
    from flowgraph.observability import configure_logging, WorkflowMonitor

    configure_logging(level="INFO", format="auto")
    engine = ExecutionEngine(store, observer=WorkflowMonitor())
"""

from flowgraph.observability.logging import (
    clear_trace_context,
    configure_logging,
    get_trace_context,
    set_trace_context,
)
from flowgraph.observability.monitor import (
    CompositeObserver,
    ExecutionMetrics,
    ExecutionObserver,
    NodeMetrics,
    WorkflowHealth,
    WorkflowMonitor,
)

__all__ = [
    "CompositeObserver",
    "ExecutionMetrics",
    "ExecutionObserver",
    "NodeMetrics",
    "WorkflowHealth",
    "WorkflowMonitor",
    "clear_trace_context",
    "configure_logging",
    "get_trace_context",
    "set_trace_context",
]
