"""Tests for the persisted execution records."""

from datetime import UTC, datetime, timedelta

from flowgraph.schemas.execution import (
    ApprovalRequest,
    ExecutionState,
    ExecutionStatus,
    NodeStatus,
)


def sample_state() -> ExecutionState:
    return ExecutionState(
        workflow_id="refunds",
        execution_id="exec_1718000000000_k3j2h1g0f",
        status=ExecutionStatus.PAUSED,
        current_node_id="gate",
        node_statuses={"start": NodeStatus.COMPLETED, "gate": NodeStatus.COMPLETED},
        node_visit_counts={"start": 1, "gate": 1},
        step_results={"start": {"amount": 1500}, "gate": {"approvalRequested": True}},
        step_metadata={"start": {"attempts": 2}},
        variables={"amount": 1500, "tags": ["vip"], "nested": {"a": None}},
        child_execution_ids=["exec_1-agent-0"],
    )


class TestExecutionState:
    def test_json_round_trip_is_identical(self):
        state = sample_state()
        encoded = state.to_json()
        decoded = ExecutionState.from_json(encoded)

        assert decoded == state
        assert decoded.to_json() == encoded

    def test_lifecycle_transitions(self):
        state = ExecutionState(workflow_id="w", execution_id="e")
        assert state.status == ExecutionStatus.RUNNING
        assert not state.is_terminal

        state.mark_paused()
        assert state.status == ExecutionStatus.PAUSED
        assert not state.is_terminal

        state.mark_running()
        state.mark_failed("boom", {"code": "UNKNOWN_ERROR"})
        assert state.is_terminal
        assert state.error == "boom"
        assert state.error_details == {"code": "UNKNOWN_ERROR"}
        assert state.completed_at is not None

    def test_terminal_statuses(self):
        assert ExecutionStatus.COMPLETED.is_terminal
        assert ExecutionStatus.CANCELLED.is_terminal
        assert not ExecutionStatus.PAUSED.is_terminal

    def test_evaluation_context_prefers_step_results(self):
        state = ExecutionState(
            workflow_id="w",
            execution_id="e",
            variables={"fetch": "variable", "amount": 5},
            step_results={"fetch": {"status": 200}},
        )
        assert state.evaluation_context() == {"fetch": {"status": 200}, "amount": 5}

    def test_unknown_fields_preserved(self):
        state = ExecutionState.model_validate(
            {"workflow_id": "w", "execution_id": "e", "tenant": "acme"}
        )
        assert ExecutionState.from_json(state.to_json()).tenant == "acme"


class TestApprovalRequest:
    def test_expiry(self):
        now = datetime.now(UTC)
        past = ApprovalRequest(
            execution_id="e",
            node_id="gate",
            message="ok?",
            timeout_at=(now - timedelta(seconds=1)).isoformat(),
        )
        future = past.model_copy(update={"timeout_at": (now + timedelta(hours=1)).isoformat()})
        never = past.model_copy(update={"timeout_at": None})

        assert past.is_expired()
        assert not future.is_expired()
        assert not never.is_expired()
        assert not past.is_expired(now=now - timedelta(minutes=5))
