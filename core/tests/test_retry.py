"""Tests for error classification, retry policies and the error handler."""

import asyncio
from unittest.mock import AsyncMock

import httpx
import pytest

from conftest import graph, node
from flowgraph.graph.errors import (
    ConfigurationError,
    ErrorClass,
    ErrorHandler,
    FallbackAction,
    FatalRuntimeError,
    HTTPActionError,
    IterationLimitExceeded,
    RecoveryKind,
    TransientRuntimeError,
    classify,
    fallback_action,
    is_critical,
    is_retryable,
    step_failure,
)
from flowgraph.graph.retry import DEFAULT_POLICY, RetryPolicy, execute_with_retry, policy_for_kind
from flowgraph.schemas.execution import ExecutionState


def _status_error(status: int) -> httpx.HTTPStatusError:
    request = httpx.Request("GET", "https://example.test")
    response = httpx.Response(status, request=request)
    return httpx.HTTPStatusError("boom", request=request, response=response)


class TestClassify:
    @pytest.mark.parametrize(
        "message,expected",
        [
            ("Request timed out", ErrorClass.TIMEOUT),
            ("fetch failed: connection reset", ErrorClass.NETWORK),
            ("429 Too Many Requests", ErrorClass.RATE_LIMIT),
            ("401 Unauthorized", ErrorClass.AUTH),
            ("403 Forbidden", ErrorClass.PERMISSION),
            ("resource not found", ErrorClass.NOT_FOUND),
            ("invalid payload", ErrorClass.VALIDATION),
            ("bad configuration", ErrorClass.CONFIG),
            ("something odd", ErrorClass.UNKNOWN),
        ],
    )
    def test_messages(self, message, expected):
        assert classify(message) == expected
        assert classify(RuntimeError(message)) == expected

    def test_typed_errors_carry_their_class(self):
        assert classify(ConfigurationError("nope")) == ErrorClass.CONFIG
        assert classify(TransientRuntimeError("x", ErrorClass.RATE_LIMIT)) == ErrorClass.RATE_LIMIT
        assert classify(FatalRuntimeError("timeout")) == ErrorClass.VALIDATION
        assert classify(IterationLimitExceeded("n", 3)) == ErrorClass.VALIDATION

    def test_library_errors(self):
        assert classify(asyncio.TimeoutError()) == ErrorClass.TIMEOUT
        assert classify(httpx.ReadTimeout("slow")) == ErrorClass.TIMEOUT
        assert classify(httpx.ConnectError("refused")) == ErrorClass.NETWORK
        assert classify(_status_error(429)) == ErrorClass.RATE_LIMIT
        assert classify(_status_error(403)) == ErrorClass.PERMISSION

    def test_http_action_error_uses_status_code(self):
        assert classify(HTTPActionError(401, "denied")) == ErrorClass.AUTH
        assert classify(HTTPActionError(500, "oops")) == ErrorClass.UNKNOWN

    def test_policy_table(self):
        for cls in (ErrorClass.AUTH, ErrorClass.PERMISSION, ErrorClass.CONFIG):
            assert is_critical(cls)
            assert not is_retryable(cls)
        for cls in (ErrorClass.TIMEOUT, ErrorClass.NETWORK, ErrorClass.RATE_LIMIT, ErrorClass.UNKNOWN):
            assert is_retryable(cls)
        assert fallback_action(ErrorClass.CONFIG) == FallbackAction.STOP_EXECUTION
        assert fallback_action(ErrorClass.UNKNOWN) == FallbackAction.RETRY_WITH_DELAY

    def test_step_failure(self):
        assert isinstance(step_failure("connection dropped"), TransientRuntimeError)
        assert isinstance(step_failure("invalid input"), FatalRuntimeError)


class TestRetryPolicy:
    def test_delay_for(self):
        policy = RetryPolicy(base_delay=1.0, backoff_factor=2.0)
        assert [policy.delay_for(a) for a in (1, 2, 3)] == [1.0, 2.0, 4.0]

    def test_per_kind_defaults(self):
        assert policy_for_kind("agent").max_attempts == 3
        assert policy_for_kind("action").backoff_factor == 1.5
        assert policy_for_kind("approval").max_attempts == 1
        assert policy_for_kind("condition").max_attempts == DEFAULT_POLICY.max_attempts
        assert policy_for_kind("agent", timeout=5).timeout == 5


class TestExecuteWithRetry:
    @pytest.mark.asyncio
    async def test_succeeds_on_third_attempt(self):
        calls = 0

        async def flaky():
            nonlocal calls
            calls += 1
            if calls < 3:
                raise TimeoutError("Timeout")
            return "done"

        policy = RetryPolicy(max_attempts=3, base_delay=1.0, backoff_factor=2.0)
        outcome = await execute_with_retry(flaky, policy)

        assert outcome.success
        assert outcome.result == "done"
        assert outcome.attempts == 3
        assert outcome.total_delay == 3.0
        assert asyncio.sleep.await_count == 2

    @pytest.mark.asyncio
    async def test_non_retryable_short_circuits(self):
        op = AsyncMock(side_effect=ConfigurationError("bad config"))
        outcome = await execute_with_retry(op, RetryPolicy(max_attempts=5))

        assert not outcome.success
        assert outcome.attempts == 1
        assert outcome.error_class == ErrorClass.CONFIG
        assert op.await_count == 1
        asyncio.sleep.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_exhaustion_does_not_sleep_after_last_attempt(self):
        op = AsyncMock(side_effect=ConnectionError("connection refused"))
        outcome = await execute_with_retry(op, RetryPolicy(max_attempts=3, base_delay=0.5))

        assert not outcome.success
        assert outcome.attempts == 3
        assert outcome.error == "connection refused"
        assert outcome.error_class == ErrorClass.NETWORK
        assert asyncio.sleep.await_count == 2

    @pytest.mark.asyncio
    async def test_on_retry_callback(self):
        seen = []

        async def on_retry(attempt, error, delay):
            seen.append((attempt, str(error), delay))

        op = AsyncMock(side_effect=[RuntimeError("flaky"), "ok"])
        outcome = await execute_with_retry(
            op, RetryPolicy(max_attempts=2, base_delay=2.0), on_retry=on_retry
        )

        assert outcome.success
        assert seen == [(1, "flaky", 2.0)]

    @pytest.mark.asyncio
    async def test_per_attempt_timeout(self):
        async def hangs():
            await asyncio.Event().wait()

        outcome = await execute_with_retry(
            hangs, RetryPolicy(max_attempts=1, timeout=0.01), label="hangs"
        )
        assert not outcome.success
        assert outcome.error_class == ErrorClass.TIMEOUT

    @pytest.mark.asyncio
    async def test_cancellation_propagates(self):
        op = AsyncMock(side_effect=asyncio.CancelledError())
        with pytest.raises(asyncio.CancelledError):
            await execute_with_retry(op, RetryPolicy(max_attempts=3))


class TestErrorHandler:
    @pytest.mark.asyncio
    async def test_handle_error_decision(self):
        handler = ErrorHandler.for_kind("action")
        step = node("a", "action")
        state = ExecutionState(workflow_id="w", execution_id="e", node_visit_counts={"a": 1})

        decision = await handler.handle_error(TimeoutError("timed out"), step, state)

        assert decision.should_retry
        assert decision.should_continue
        assert decision.error.code == "TIMEOUT_ERROR"
        assert decision.error.node_id == "a"
        assert decision.fallback_action == FallbackAction.RETRY_WITH_LONGER_TIMEOUT

    @pytest.mark.asyncio
    async def test_critical_errors_do_not_continue(self):
        handler = ErrorHandler.for_kind("agent")
        state = ExecutionState(workflow_id="w", execution_id="e")
        decision = await handler.handle_error("401 unauthorized", node("a", "agent"), state)
        assert not decision.should_retry
        assert not decision.should_continue

    @pytest.mark.asyncio
    async def test_webhook_notification(self):
        received = []

        def handler(request: httpx.Request) -> httpx.Response:
            received.append(request)
            return httpx.Response(200)

        async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
            error_handler = ErrorHandler.for_kind(
                "action", error_webhook="https://hooks.test/errors", http_client=client
            )
            state = ExecutionState(workflow_id="w", execution_id="e")
            await error_handler.handle_error("boom", node("a", "action"), state)

        assert len(received) == 1
        assert received[0].url == "https://hooks.test/errors"

    @pytest.mark.asyncio
    async def test_webhook_failure_is_not_raised(self, caplog):
        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectError("down", request=request)

        async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
            error_handler = ErrorHandler.for_kind(
                "action", error_webhook="https://hooks.test/errors", http_client=client
            )
            state = ExecutionState(workflow_id="w", execution_id="e")
            await error_handler.handle_error("boom", node("a", "action"), state)

        assert "Failed to send error notification" in caplog.text

    def test_recovery_strategies(self):
        g = graph(
            [
                node("start", "trigger"),
                node("a", "action", on_error="fallback", fallback_node_id="b"),
                node("b", "action"),
                node("c", "action", on_error="skip"),
                node("d", "action", on_error="retry"),
            ],
            [],
        )
        handler = ErrorHandler.for_kind("action")

        fallback = handler.create_recovery_strategy(g.get_node("a"), g, ErrorClass.UNKNOWN)
        assert fallback.strategy == RecoveryKind.FALLBACK
        assert fallback.next_node_id == "b"

        skip = handler.create_recovery_strategy(g.get_node("c"), g, ErrorClass.VALIDATION)
        assert skip.strategy == RecoveryKind.SKIP

        retry = handler.create_recovery_strategy(g.get_node("d"), g, ErrorClass.NETWORK)
        assert retry.strategy == RecoveryKind.RETRY
        assert retry.retry_delay == 1.0

        stop = handler.create_recovery_strategy(g.get_node("b"), g, ErrorClass.UNKNOWN)
        assert stop.strategy == RecoveryKind.STOP

        config = handler.create_recovery_strategy(g.get_node("c"), g, ErrorClass.CONFIG)
        assert config.strategy == RecoveryKind.STOP
