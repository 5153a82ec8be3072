"""Trigger nodes: the entry point that stamps the incoming payload."""

import logging
from typing import Any

from flowgraph.graph.workflow import NodeKind, StepNode
from flowgraph.nodes.base import NodeContext, NodeExecutor, StepResult, config_value
from flowgraph.schemas.execution import utc_now

logger = logging.getLogger(__name__)

TRIGGER_TYPES = ("webhook", "manual", "schedule")


class TriggerExecutor(NodeExecutor):
    """
    Passes the trigger input through, tagged with how the run was started.

    Webhook signature checks and schedule evaluation happen outside the
    engine; by the time a trigger node runs, the run has already been fired.
    """

    kind = NodeKind.TRIGGER

    def validate_config(self, config: dict[str, Any]) -> list[str]:
        errors = []
        trigger_type = config_value(config, "trigger_type", "manual")
        if trigger_type not in TRIGGER_TYPES:
            errors.append(f"Unsupported trigger type: {trigger_type}")
        if trigger_type == "webhook" and not config_value(config, "webhook_path"):
            errors.append("Webhook path is required for webhook triggers")
        if trigger_type == "schedule" and not config_value(config, "schedule_expression"):
            errors.append("Schedule expression is required for scheduled triggers")
        return errors

    async def execute(self, node: StepNode, ctx: NodeContext) -> StepResult:
        self.require_valid_config(node)
        trigger_type = config_value(node.config, "trigger_type", "manual")

        data = {**ctx.trigger_input, "triggerType": trigger_type, "timestamp": utc_now()}
        if trigger_type == "webhook":
            data["webhookPath"] = config_value(node.config, "webhook_path")
        elif trigger_type == "schedule":
            data["scheduleExpression"] = config_value(node.config, "schedule_expression")
        else:
            data["initiatedBy"] = ctx.trigger_input.get("initiatedBy", "user")

        logger.info(f"   ⚡ Trigger fired ({trigger_type}) with {len(ctx.trigger_input)} input keys")
        return StepResult(success=True, data=data)
