"""
Action nodes: deterministic operations.

Action types:
- http-request: call an HTTP endpoint with httpx
- data-transform: evaluate a template expression over variables and results
- notification: record (and for webhooks, deliver) a notification
- custom: evaluate a sandboxed expression and report it
- echo: return the configured ``output`` map with placeholders filled in
"""

import logging
from typing import Any

import httpx

from flowgraph.graph.errors import HTTPActionError
from flowgraph.graph.safe_eval import interpolate, interpolate_value, safe_eval
from flowgraph.graph.workflow import NodeKind, StepNode
from flowgraph.nodes.base import NodeContext, NodeExecutor, StepResult, config_value
from flowgraph.schemas.execution import utc_now

logger = logging.getLogger(__name__)

ACTION_TYPES = ("http-request", "data-transform", "notification", "custom", "echo")
HTTP_METHODS = ("GET", "POST", "PUT", "PATCH", "DELETE")
NOTIFICATION_TYPES = ("email", "slack", "webhook")
DEFAULT_HTTP_TIMEOUT = 30.0


class ActionExecutor(NodeExecutor):
    """Dispatches on ``action_type``."""

    kind = NodeKind.ACTION

    def validate_config(self, config: dict[str, Any]) -> list[str]:
        errors = []
        action_type = config_value(config, "action_type")
        if not action_type:
            errors.append("Action type is required")
            return errors
        if action_type not in ACTION_TYPES:
            errors.append(f"Unsupported action type: {action_type}")

        if action_type == "http-request":
            if not (config_value(config, "http_url") or config_value(config, "url")):
                errors.append("HTTP URL is required for http-request actions")
            method = str(config_value(config, "http_method", "GET")).upper()
            if method not in HTTP_METHODS:
                errors.append(f"Unsupported HTTP method: {method}")
        elif action_type == "data-transform":
            if not config_value(config, "transform_script"):
                errors.append("Transform script is required for data-transform actions")
        elif action_type == "notification":
            notification_type = config_value(config, "notification_type", "email")
            if notification_type not in NOTIFICATION_TYPES:
                errors.append(f"Unsupported notification type: {notification_type}")
            if notification_type == "webhook" and not config_value(config, "webhook_url"):
                errors.append("Webhook URL is required for webhook notifications")
        elif action_type == "custom":
            if not config_value(config, "custom_script"):
                errors.append("Custom script is required for custom actions")
        return errors

    async def execute(self, node: StepNode, ctx: NodeContext) -> StepResult:
        self.require_valid_config(node)
        action_type = config_value(node.config, "action_type")

        if action_type == "http-request":
            data = await self._http_request(node, ctx)
        elif action_type == "data-transform":
            data = self._transform(node, ctx)
        elif action_type == "notification":
            data = await self._notify(node, ctx)
        elif action_type == "custom":
            data = self._custom(node, ctx)
        else:
            data = self._echo(node, ctx)

        return StepResult(success=True, data=data)

    async def _send(
        self,
        ctx: NodeContext,
        method: str,
        url: str,
        timeout: float,
        **kwargs: Any,
    ) -> httpx.Response:
        if ctx.http_client is not None:
            return await ctx.http_client.request(method, url, timeout=timeout, **kwargs)
        async with httpx.AsyncClient(timeout=timeout) as client:
            return await client.request(method, url, **kwargs)

    async def _http_request(self, node: StepNode, ctx: NodeContext) -> dict[str, Any]:
        config = node.config
        template_ctx = ctx.merged()
        url = interpolate(
            config_value(config, "http_url") or config_value(config, "url"),
            template_ctx,
            as_json=False,
        )
        method = str(config_value(config, "http_method", "GET")).upper()
        headers = {"Content-Type": "application/json"}
        headers.update(interpolate_value(config_value(config, "http_headers", {}) or {}, template_ctx))
        timeout = float(config_value(config, "timeout_seconds", DEFAULT_HTTP_TIMEOUT))

        kwargs: dict[str, Any] = {"headers": headers}
        if method != "GET":
            body = config_value(config, "body")
            kwargs["json"] = (
                interpolate_value(body, template_ctx) if body is not None else ctx.variables
            )

        logger.info(f"   🌐 {method} {url}")
        response = await self._send(ctx, method, url, timeout, **kwargs)

        if not response.is_success:
            raise HTTPActionError(response.status_code, response.text)

        try:
            payload: Any = response.json()
        except ValueError:
            payload = response.text

        return {
            "response": payload,
            "statusCode": response.status_code,
            "headers": dict(response.headers),
        }

    def _transform(self, node: StepNode, ctx: NodeContext) -> dict[str, Any]:
        script = config_value(node.config, "transform_script")
        context = {**ctx.variables, "input": ctx.variables, "data": ctx.step_results}
        processed = interpolate(script, context)
        return {"transformed": safe_eval(processed, context), "original": script}

    async def _notify(self, node: StepNode, ctx: NodeContext) -> dict[str, Any]:
        config = node.config
        notification_type = config_value(config, "notification_type", "email")
        message = interpolate(
            config_value(config, "message", f"Workflow notification from {node.label or node.id}"),
            ctx.merged(),
            as_json=False,
        )
        notification = {
            "type": notification_type,
            "message": message,
            "timestamp": utc_now(),
            "context": ctx.variables,
        }

        if notification_type == "webhook":
            url = config_value(config, "webhook_url")
            response = await self._send(
                ctx, "POST", url, DEFAULT_HTTP_TIMEOUT, json={"notification": notification}
            )
            if not response.is_success:
                raise HTTPActionError(response.status_code, response.text)
        else:
            logger.info(f"   📣 {notification_type} notification: {message}")

        return {"notification": notification, "sent": True}

    def _custom(self, node: StepNode, ctx: NodeContext) -> dict[str, Any]:
        script = config_value(node.config, "custom_script")
        context = ctx.merged()
        return {
            "executed": True,
            "script": script,
            "result": safe_eval(interpolate(script, context), context),
            "context": ctx.variables,
            "timestamp": utc_now(),
        }

    def _echo(self, node: StepNode, ctx: NodeContext) -> Any:
        output = config_value(node.config, "output")
        if output is None:
            return dict(ctx.variables)
        return interpolate_value(output, ctx.merged())
