"""Graph structures: workflows, nodes, edges, guards, validation, retries and errors.

The execution engine lives in ``flowgraph.graph.executor``; it is not
re-exported here because the storage layer imports this package.
"""

from flowgraph.graph.edge import Edge, GuardKind, loop_edges
from flowgraph.graph.errors import (
    ApprovalRejected,
    ConfigurationError,
    ErrorClass,
    ErrorHandler,
    ExecutionNotFound,
    ExpressionError,
    FatalRuntimeError,
    FlowgraphError,
    HTTPActionError,
    InvalidExecutionState,
    IterationLimitExceeded,
    StructuralError,
    TransientRuntimeError,
    UnsupportedKindError,
    WorkflowNotFound,
    classify,
)
from flowgraph.graph.retry import RetryOutcome, RetryPolicy, execute_with_retry, policy_for_kind
from flowgraph.graph.safe_eval import evaluate, evaluate_guard, interpolate, safe_eval
from flowgraph.graph.validator import ValidationResult, detect_cycles, validate_workflow
from flowgraph.graph.workflow import NodeKind, StepNode, WorkflowGraph

__all__ = [
    # Model
    "Edge",
    "GuardKind",
    "NodeKind",
    "StepNode",
    "WorkflowGraph",
    "loop_edges",
    # Validation
    "ValidationResult",
    "detect_cycles",
    "validate_workflow",
    # Expressions
    "evaluate",
    "evaluate_guard",
    "interpolate",
    "safe_eval",
    # Retry
    "RetryOutcome",
    "RetryPolicy",
    "execute_with_retry",
    "policy_for_kind",
    # Errors
    "ApprovalRejected",
    "ConfigurationError",
    "ErrorClass",
    "ErrorHandler",
    "ExecutionNotFound",
    "ExpressionError",
    "FatalRuntimeError",
    "FlowgraphError",
    "HTTPActionError",
    "InvalidExecutionState",
    "IterationLimitExceeded",
    "StructuralError",
    "TransientRuntimeError",
    "UnsupportedKindError",
    "WorkflowNotFound",
    "classify",
]
