"""
Approval nodes: human-in-the-loop gates.

Running an approval node persists one ApprovalRequest for the execution.
The engine then pauses; routing past the gate happens on approve/resume.
"""

import logging
import re
from datetime import UTC, datetime, timedelta
from typing import Any

from flowgraph.graph.safe_eval import interpolate
from flowgraph.graph.workflow import NodeKind, StepNode
from flowgraph.nodes.base import NodeContext, NodeExecutor, StepResult, config_value, is_number
from flowgraph.schemas.execution import ApprovalRequest

logger = logging.getLogger(__name__)

EMAIL_PATTERN = re.compile(r"^[^\s@]+@[^\s@]+\.[^\s@]+$")
MAX_TIMEOUT_MINUTES = 10080  # one week


class ApprovalExecutor(NodeExecutor):
    kind = NodeKind.APPROVAL

    def validate_config(self, config: dict[str, Any]) -> list[str]:
        errors = []
        if not config_value(config, "approval_message"):
            errors.append("Approval message is required")

        timeout = config_value(config, "timeout_minutes")
        if timeout is not None and (
            not is_number(timeout) or not 1 <= timeout <= MAX_TIMEOUT_MINUTES
        ):
            errors.append(f"Timeout must be between 1 and {MAX_TIMEOUT_MINUTES} minutes")

        email = config_value(config, "approver_email")
        if email and not EMAIL_PATTERN.match(str(email)):
            errors.append("Invalid approver email address")
        return errors

    async def execute(self, node: StepNode, ctx: NodeContext) -> StepResult:
        self.require_valid_config(node)
        config = node.config

        timeout = config_value(config, "timeout_minutes")
        timeout_at = (
            (datetime.now(UTC) + timedelta(minutes=timeout)).isoformat() if timeout else None
        )
        message = interpolate(
            config_value(config, "approval_message"), ctx.merged(), as_json=False
        )

        request = ApprovalRequest(
            execution_id=ctx.state.execution_id,
            node_id=node.id,
            message=message,
            data={
                **ctx.variables,
                "stepResults": ctx.step_results,
                "nodeLabel": node.label,
            },
            approver_email=config_value(config, "approver_email"),
            require_reason=bool(config_value(config, "require_reason", False)),
            timeout_at=timeout_at,
        )
        await ctx.repository.save_approval(request)
        logger.info(f"   ✋ Approval requested at {node.id}: {message}")

        return StepResult(
            success=True,
            data={
                "approvalRequested": True,
                "message": message,
                "approverEmail": request.approver_email,
                "timeoutAt": timeout_at,
            },
        )
