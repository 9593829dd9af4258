# /chatflow/workflows/nodes/integrations.py

from datetime import timedelta
from typing import Any, Dict, Optional

from chatflow.models.flow import FlowNode
from chatflow.models.session import VariableType, WaitingContext, WaitingKind
from chatflow.services.channel_service import OutboundContent
from chatflow.utils.errors import ExternalServiceError, FlowValidationError
from chatflow.workflows import expressions
from chatflow.workflows.catalog import NodeContext, NodeHandler, variable_key
from chatflow.workflows.results import Advance, Fail, NodeResult, Suspend


class WebhookHandler(NodeHandler):
    """
    Calls an external HTTP endpoint. The response can be stored whole
    (`variable_name`) or picked apart with `response_mapping`
    ({variable: "body.path"}). With `wait_for_callback` the session then
    suspends until the external system posts back to the callback route.
    """
    node_types = ("webhook", "http_request", "api_call")
    side_effecting = True

    def declared_writes(self, node: FlowNode) -> Dict[str, Optional[VariableType]]:
        writes: Dict[str, Optional[VariableType]] = {}
        if variable_key(node):
            writes[variable_key(node)] = None
        for key in (node.data.get("response_mapping") or {}):
            writes[key] = None
        if node.data.get("wait_for_callback"):
            writes[node.data.get("callback_variable", "callback_payload")] = VariableType.OBJECT
        return writes

    async def execute(self, node: FlowNode, ctx: NodeContext) -> NodeResult:
        if ctx.resumed_by_callback:
            key = node.data.get("callback_variable", "callback_payload")
            payload = dict(ctx.resume.payload)
            return Advance(ctx.default_successor(), variables={key: ctx.variable(key, payload)}, output={"callback": payload})

        if ctx.effect_already_done:
            response = ctx.prior_output.get("response", {})
        else:
            if ctx.services.integrations is None:
                raise FlowValidationError("webhook nodes require an integration client")
            response = await ctx.services.integrations.call_webhook(
                ctx.render(ctx.require("url"), strict=True),
                payload=ctx.render_value(node.data.get("body") or node.data.get("payload") or {}),
                method=node.data.get("method", "POST"),
                headers={k: ctx.render(str(v)) for k, v in (node.data.get("headers") or {}).items()},
                timeout=node.data.get("timeout_seconds"),
            )

        variables = {}
        if variable_key(node):
            variables[variable_key(node)] = ctx.variable(variable_key(node), response.get("body"))
        for key, path in (node.data.get("response_mapping") or {}).items():
            value = expressions.resolve_path(path, response)
            variables[key] = ctx.variable(key, None if value is expressions.UNDEFINED else value)

        output = {"response": response}
        if node.data.get("wait_for_callback"):
            timeout_at = None
            if node.data.get("callback_timeout_minutes"):
                timeout_at = ctx.now + timedelta(minutes=float(node.data["callback_timeout_minutes"]))
            waiting = WaitingContext(node_id=node.id, kind=WaitingKind.CALLBACK, timeout_at=timeout_at)
            return Suspend(waiting, variables=variables, output=output)
        return Advance(ctx.default_successor(), variables=variables, output=output)


class AIAssistantHandler(NodeHandler):
    """Asks the AI provider for a completion, stores it and by default sends it to the contact."""
    node_types = ("ai_assistant",)
    side_effecting = True

    def declared_writes(self, node: FlowNode) -> Dict[str, Optional[VariableType]]:
        return {variable_key(node, "ai_response"): VariableType.STRING}

    async def execute(self, node: FlowNode, ctx: NodeContext) -> NodeResult:
        key = variable_key(node, "ai_response")
        if ctx.effect_already_done:
            text = ctx.prior_output.get("response", "")
            return Advance(ctx.default_successor(), variables={key: ctx.variable(key, text)}, output=dict(ctx.prior_output))

        if ctx.services.ai is None:
            raise FlowValidationError("ai_assistant nodes require an AI provider")
        prompt = ctx.render(ctx.require("prompt"))
        config: Dict[str, Any] = {
            k: node.data[k] for k in ("model", "temperature", "max_tokens") if node.data.get(k) is not None
        }
        if node.data.get("system_prompt"):
            config["system_prompt"] = ctx.render(node.data["system_prompt"])

        if "response" in ctx.attempt_output:
            # The completion succeeded on an earlier attempt; only the send failed.
            text = ctx.attempt_output["response"]
        else:
            text = await ctx.services.ai.complete(prompt, config)
        output: Dict[str, Any] = {"response": text}
        if node.data.get("send_response", True) and text:
            try:
                output["message_id"] = await ctx.services.channel.send(
                    ctx.session.conversation_id, ctx.session.channel_type, OutboundContent(type="text", text=text)
                )
            except ExternalServiceError as e:
                return Fail(e.kind, e.message, retryable=e.retryable, output=output)
        return Advance(ctx.default_successor(), variables={key: ctx.variable(key, text)}, output=output)


HANDLERS = [
    WebhookHandler(),
    AIAssistantHandler(),
]
