"""
Error taxonomy for workflow execution.

Every failure raised while running a node is mapped onto a closed set of
error classes. The class decides whether the failure is retried, whether
execution may continue past it, and which fallback action applies.

Classification is total: anything not recognised lands in ``UNKNOWN``,
which is treated as retryable.
"""

import logging
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import StrEnum
from typing import TYPE_CHECKING, Any

import httpx

if TYPE_CHECKING:
    from flowgraph.graph.workflow import StepNode, WorkflowGraph
    from flowgraph.schemas.execution import ExecutionState

logger = logging.getLogger(__name__)


class ErrorClass(StrEnum):
    """Closed set of failure classes."""

    TIMEOUT = "timeout"
    NETWORK = "network"
    RATE_LIMIT = "rate_limit"
    AUTH = "auth"
    PERMISSION = "permission"
    NOT_FOUND = "not_found"
    VALIDATION = "validation"
    CONFIG = "config"
    UNKNOWN = "unknown"


RETRYABLE_CLASSES = frozenset(
    {ErrorClass.TIMEOUT, ErrorClass.NETWORK, ErrorClass.RATE_LIMIT, ErrorClass.UNKNOWN}
)
CRITICAL_CLASSES = frozenset({ErrorClass.AUTH, ErrorClass.PERMISSION, ErrorClass.CONFIG})


# ---------------------------------------------------------------------------
# Exceptions
# ---------------------------------------------------------------------------


class FlowgraphError(Exception):
    """Base class for all engine errors."""

    error_class: ErrorClass | None = None


class StructuralError(FlowgraphError):
    """The workflow graph is malformed (missing start, orphan node, dangling edge)."""

    error_class = ErrorClass.VALIDATION

    def __init__(self, errors: list[str]):
        self.errors = list(errors)
        super().__init__("Invalid workflow: " + "; ".join(self.errors))


class ConfigurationError(FlowgraphError):
    """A node's configuration is invalid."""

    error_class = ErrorClass.CONFIG


class TransientRuntimeError(FlowgraphError):
    """A failure worth retrying (timeouts, network blips, rate limits)."""

    def __init__(self, message: str, error_class: ErrorClass = ErrorClass.UNKNOWN):
        super().__init__(message)
        self.error_class = error_class


class FatalRuntimeError(FlowgraphError):
    """A failure that must not be retried."""

    def __init__(self, message: str, error_class: ErrorClass = ErrorClass.VALIDATION):
        super().__init__(message)
        self.error_class = error_class


class HTTPActionError(FlowgraphError):
    """Non-2xx response from an outbound HTTP action."""

    def __init__(self, status_code: int, text: str):
        super().__init__(f"HTTP {status_code}: {text}")
        self.status_code = status_code


class ExpressionError(FlowgraphError):
    """An expression could not be parsed or uses a forbidden construct."""

    error_class = ErrorClass.VALIDATION


class UnsupportedKindError(FlowgraphError):
    """No executor is registered for a node kind."""

    error_class = ErrorClass.CONFIG


class IterationLimitExceeded(FlowgraphError):
    """A node was visited more often than its iteration limit allows."""

    error_class = ErrorClass.VALIDATION

    def __init__(self, node_id: str, limit: int):
        self.node_id = node_id
        self.limit = limit
        super().__init__(f"Maximum iterations ({limit}) exceeded for node {node_id}")


class ApprovalRejected(FlowgraphError):
    """A human rejected an approval gate, or the gate expired."""

    error_class = ErrorClass.VALIDATION


class ExecutionNotFound(FlowgraphError):
    """No persisted execution state exists for the given id."""

    error_class = ErrorClass.NOT_FOUND

    def __init__(self, execution_id: str):
        self.execution_id = execution_id
        super().__init__(f"Execution {execution_id} not found")


class InvalidExecutionState(FlowgraphError):
    """The execution is not in a state that allows the requested operation."""

    error_class = ErrorClass.VALIDATION


class WorkflowNotFound(FlowgraphError):
    """The workflow a paused execution belongs to is no longer stored."""

    error_class = ErrorClass.NOT_FOUND

    def __init__(self, workflow_id: str):
        self.workflow_id = workflow_id
        super().__init__(f"Workflow {workflow_id} not found")


# ---------------------------------------------------------------------------
# Classification
# ---------------------------------------------------------------------------

# Checked in order; first match wins.
_MESSAGE_RULES: list[tuple[tuple[str, ...], ErrorClass]] = [
    (("timeout", "timed out"), ErrorClass.TIMEOUT),
    (("network", "fetch", "connection"), ErrorClass.NETWORK),
    (("rate limit", "rate_limit", "429"), ErrorClass.RATE_LIMIT),
    (("unauthorized", "401"), ErrorClass.AUTH),
    (("forbidden", "403"), ErrorClass.PERMISSION),
    (("not found", "404"), ErrorClass.NOT_FOUND),
    (("validation", "invalid"), ErrorClass.VALIDATION),
    (("configuration", "config"), ErrorClass.CONFIG),
]


def _classify_status(status_code: int) -> ErrorClass:
    if status_code in (408, 504):
        return ErrorClass.TIMEOUT
    if status_code == 429:
        return ErrorClass.RATE_LIMIT
    if status_code == 401:
        return ErrorClass.AUTH
    if status_code == 403:
        return ErrorClass.PERMISSION
    if status_code == 404:
        return ErrorClass.NOT_FOUND
    if status_code in (400, 409, 422):
        return ErrorClass.VALIDATION
    return ErrorClass.UNKNOWN


def classify_message(message: str) -> ErrorClass:
    """Classify a bare error message by keyword."""
    lowered = message.lower()
    for needles, error_class in _MESSAGE_RULES:
        if any(needle in lowered for needle in needles):
            return error_class
    return ErrorClass.UNKNOWN


def classify(exc: BaseException | str) -> ErrorClass:
    """
    Map any raised error onto an ErrorClass.

    Typed engine errors carry their own class. Library errors (httpx, asyncio,
    LLM providers exposing ``status_code``) are recognised by type or status.
    Everything else falls back to keyword matching on the message.
    """
    if isinstance(exc, str):
        return classify_message(exc)

    if isinstance(exc, FlowgraphError) and exc.error_class is not None:
        return exc.error_class

    if isinstance(exc, (TimeoutError, httpx.TimeoutException)):
        return ErrorClass.TIMEOUT

    if isinstance(exc, httpx.HTTPStatusError):
        return _classify_status(exc.response.status_code)

    if isinstance(exc, (httpx.NetworkError, httpx.RemoteProtocolError, ConnectionError)):
        return ErrorClass.NETWORK

    status_code = getattr(exc, "status_code", None)
    if isinstance(status_code, int):
        by_status = _classify_status(status_code)
        if by_status != ErrorClass.UNKNOWN:
            return by_status

    return classify_message(str(exc))


def is_retryable(error_class: ErrorClass) -> bool:
    return error_class in RETRYABLE_CLASSES


def is_critical(error_class: ErrorClass) -> bool:
    return error_class in CRITICAL_CLASSES


def step_failure(message: str) -> FlowgraphError:
    """Exception for an executor that reported failure instead of raising."""
    error_class = classify_message(message)
    if is_retryable(error_class):
        return TransientRuntimeError(message, error_class)
    return FatalRuntimeError(message, error_class)


# ---------------------------------------------------------------------------
# Recovery
# ---------------------------------------------------------------------------


class FallbackAction(StrEnum):
    RETRY_WITH_LONGER_TIMEOUT = "retry_with_longer_timeout"
    RETRY_WITH_DELAY = "retry_with_delay"
    RETRY_WITH_EXPONENTIAL_BACKOFF = "retry_with_exponential_backoff"
    SKIP_NODE = "skip_node"
    STOP_EXECUTION = "stop_execution"


_FALLBACKS: dict[ErrorClass, FallbackAction] = {
    ErrorClass.TIMEOUT: FallbackAction.RETRY_WITH_LONGER_TIMEOUT,
    ErrorClass.RATE_LIMIT: FallbackAction.RETRY_WITH_DELAY,
    ErrorClass.NETWORK: FallbackAction.RETRY_WITH_EXPONENTIAL_BACKOFF,
    ErrorClass.AUTH: FallbackAction.SKIP_NODE,
    ErrorClass.PERMISSION: FallbackAction.SKIP_NODE,
    ErrorClass.NOT_FOUND: FallbackAction.SKIP_NODE,
    ErrorClass.VALIDATION: FallbackAction.SKIP_NODE,
    ErrorClass.CONFIG: FallbackAction.STOP_EXECUTION,
}


def fallback_action(error_class: ErrorClass) -> FallbackAction:
    return _FALLBACKS.get(error_class, FallbackAction.RETRY_WITH_DELAY)


class RecoveryKind(StrEnum):
    FALLBACK = "fallback"
    SKIP = "skip"
    RETRY = "retry"
    STOP = "stop"


@dataclass
class RecoveryStrategy:
    """What the engine should do with a node that failed for good."""

    strategy: RecoveryKind
    next_node_id: str | None = None
    retry_delay: float | None = None


@dataclass
class WorkflowError:
    """Serializable record of a node failure."""

    code: str
    message: str
    node_id: str | None = None
    execution_id: str | None = None
    timestamp: str = field(default_factory=lambda: datetime.now(UTC).isoformat())
    details: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {
            "code": self.code,
            "message": self.message,
            "node_id": self.node_id,
            "execution_id": self.execution_id,
            "timestamp": self.timestamp,
            "details": self.details,
        }


@dataclass
class ErrorDecision:
    should_retry: bool
    should_continue: bool
    fallback_action: FallbackAction
    error: WorkflowError


@dataclass
class ErrorHandlerConfig:
    max_retries: int = 3
    retry_delay: float = 1.0
    fallback_node_id: str | None = None
    error_webhook: str | None = None
    log_errors: bool = True


# Per-kind retry budgets used when judging whether a failed node may continue.
_KIND_HANDLER_CONFIGS: dict[str, dict[str, Any]] = {
    "agent": {"max_retries": 3, "retry_delay": 2.0},
    "action": {"max_retries": 2, "retry_delay": 1.0},
    "trigger": {"max_retries": 1, "retry_delay": 0.5},
    "approval": {"max_retries": 0, "retry_delay": 0.0},
}


class ErrorHandler:
    """
    Turns a node failure into a WorkflowError and a recovery decision.

    Optionally posts each error to a webhook; notification failures are
    logged and never propagate into the run.
    """

    def __init__(
        self,
        config: ErrorHandlerConfig | None = None,
        http_client: httpx.AsyncClient | None = None,
    ):
        self.config = config or ErrorHandlerConfig()
        self._http_client = http_client

    @classmethod
    def for_kind(
        cls,
        kind: str,
        error_webhook: str | None = None,
        http_client: httpx.AsyncClient | None = None,
    ) -> "ErrorHandler":
        overrides = _KIND_HANDLER_CONFIGS.get(str(kind), _KIND_HANDLER_CONFIGS["action"])
        config = ErrorHandlerConfig(error_webhook=error_webhook, **overrides)
        return cls(config, http_client=http_client)

    async def handle_error(
        self,
        exc: BaseException | str,
        node: "StepNode",
        state: "ExecutionState",
    ) -> ErrorDecision:
        error_class = classify(exc)
        error = WorkflowError(
            code=f"{error_class.value.upper()}_ERROR",
            message=str(exc),
            node_id=node.id,
            execution_id=state.execution_id,
            details={
                "node_kind": str(node.kind),
                "node_label": node.label,
                "workflow_id": state.workflow_id,
            },
        )

        if self.config.log_errors:
            logger.error(f"Workflow execution error [{error.code}] at {node.id}: {error.message}")

        visits = state.node_visit_counts.get(node.id, 0)
        within_budget = visits < self.config.max_retries
        decision = ErrorDecision(
            should_retry=is_retryable(error_class) and within_budget,
            should_continue=not is_critical(error_class) and within_budget,
            fallback_action=fallback_action(error_class),
            error=error,
        )

        if self.config.error_webhook:
            await self.notify(error)

        return decision

    async def notify(self, error: WorkflowError) -> None:
        payload = {
            "type": "workflow_error",
            "error": error.to_dict(),
            "timestamp": datetime.now(UTC).isoformat(),
        }
        try:
            if self._http_client is not None:
                await self._http_client.post(self.config.error_webhook, json=payload)
            else:
                async with httpx.AsyncClient(timeout=10.0) as client:
                    await client.post(self.config.error_webhook, json=payload)
        except httpx.HTTPError as e:
            logger.warning(f"Failed to send error notification: {e}")

    def create_recovery_strategy(
        self,
        node: "StepNode",
        graph: "WorkflowGraph",
        error_class: ErrorClass,
    ) -> RecoveryStrategy:
        """
        Pick a recovery strategy for a node that failed after its retries.

        The node's ``on_error`` config chooses between stop (default), skip,
        fallback and retry. Configuration errors always stop.
        """
        if fallback_action(error_class) == FallbackAction.STOP_EXECUTION:
            return RecoveryStrategy(RecoveryKind.STOP)

        on_error = str(node.config.get("on_error", "stop")).lower()

        if on_error == "fallback":
            target = node.config.get("fallback_node_id") or self.config.fallback_node_id
            if target and graph.get_node(target) is not None:
                return RecoveryStrategy(RecoveryKind.FALLBACK, next_node_id=target)
            return RecoveryStrategy(RecoveryKind.STOP)

        if on_error == "skip":
            return RecoveryStrategy(RecoveryKind.SKIP)

        if on_error == "retry" and is_retryable(error_class):
            return RecoveryStrategy(RecoveryKind.RETRY, retry_delay=self.config.retry_delay)

        return RecoveryStrategy(RecoveryKind.STOP)
