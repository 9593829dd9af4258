# /chatflow/workflows/nodes/messaging.py

import re
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional, Tuple

from chatflow.models.execution import DelayUnit, TriggerEvent
from chatflow.models.flow import FlowNode
from chatflow.models.session import VariableType, WaitingContext, WaitingKind
from chatflow.services.channel_service import OutboundContent
from chatflow.utils.clock import ensure_utc
from chatflow.utils.errors import FlowValidationError
from chatflow.workflows.catalog import NodeContext, NodeHandler, variable_key
from chatflow.workflows.results import Advance, Branch, Fail, NodeResult, Suspend

MEDIA_TYPES = ("image", "video", "audio", "document", "attachment")
EMAIL_PATTERN = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")
PHONE_PATTERN = re.compile(r"^\+?[0-9][0-9\s\-()]{6,19}$")
DEFAULT_MAX_ATTEMPTS = 3


def _text(node: FlowNode, ctx: NodeContext, *keys: str) -> str:
    for key in keys:
        if node.data.get(key):
            return ctx.render(node.data[key])
    return ""


def normalize_options(raw: Any) -> List[Dict[str, str]]:
    """Options may be plain strings or {id, title} objects; always return the latter."""
    options = []
    for index, item in enumerate(raw or []):
        if isinstance(item, dict):
            option_id = str(item.get("id") or item.get("value") or item.get("title") or index + 1)
            options.append({"id": option_id, "title": str(item.get("title") or item.get("label") or option_id)})
        else:
            options.append({"id": str(item), "title": str(item)})
    return options


def build_content(node: FlowNode, ctx: NodeContext) -> OutboundContent:
    """Translate a node's configuration into channel-neutral content."""
    if node.type in MEDIA_TYPES:
        url = ctx.render(node.data.get("media_url") or node.data.get("url"))
        if not url:
            raise FlowValidationError(f"Node '{node.id}' ({node.type}) has no media url")
        return OutboundContent(
            type=node.type,
            media_url=url,
            caption=_text(node, ctx, "caption") or None,
            filename=node.data.get("filename"),
        )

    if node.type == "template":
        return OutboundContent(
            type="template",
            template_name=ctx.require("template_name"),
            template_params=[ctx.render(str(p)) for p in node.data.get("template_params", [])],
            extra={"language": node.data.get("language", "en")},
        )

    text = _text(node, ctx, "message", "text", "content", "question", "prompt")
    if node.type == "whatsapp_cta_url":
        return OutboundContent(
            type="cta_url",
            text=text,
            extra={"url": ctx.render(ctx.require("url")), "button_text": node.data.get("button_text", "Open")},
        )
    if node.type == "whatsapp_location_request":
        return OutboundContent(type="location_request", text=text)
    if node.type in InteractiveHandler.node_types:
        return OutboundContent(
            type=node.type.replace("whatsapp_", ""),
            text=text,
            options=[
                {"id": o["id"], "title": ctx.render(o["title"])} for o in normalize_options(node.data.get("options"))
            ],
        )

    if not text:
        raise FlowValidationError(f"Node '{node.id}' ({node.type}) has no message text")
    return OutboundContent(type="text", text=text)


async def _send(ctx: NodeContext, content: OutboundContent) -> str:
    return await ctx.services.channel.send(ctx.session.conversation_id, ctx.session.channel_type, content)


class MessageHandler(NodeHandler):
    node_types = ("message", "template", "whatsapp_cta_url", "whatsapp_location_request") + MEDIA_TYPES
    side_effecting = True

    async def execute(self, node: FlowNode, ctx: NodeContext) -> NodeResult:
        if ctx.effect_already_done:
            return Advance(ctx.default_successor(), output=dict(ctx.prior_output))

        content = build_content(node, ctx)
        message_id = await _send(ctx, content)
        return Advance(ctx.default_successor(), output={"message_id": message_id, "text": content.text})


# ==================== Nodes that wait for a reply ====================

class _ReplyHandler(NodeHandler):
    """
    Sends a prompt, suspends for an inbound message, then validates it.
    Invalid replies re-suspend until `max_attempts`, after which the
    "invalid" edge is taken if present; otherwise the step fails.
    """
    side_effecting = True
    default_variable = "user_input"
    default_input_type = "any"

    def declared_writes(self, node: FlowNode) -> Dict[str, Optional[VariableType]]:
        return {variable_key(node, self.default_variable): None}

    def waiting_context(self, node: FlowNode, ctx: NodeContext) -> WaitingContext:
        timeout_at = None
        if node.data.get("timeout_minutes"):
            timeout_at = ctx.now + timedelta(minutes=float(node.data["timeout_minutes"]))
        return WaitingContext(
            node_id=node.id,
            kind=WaitingKind.INPUT,
            expected_input_type=node.data.get("input_type", self.default_input_type),
            variable_name=variable_key(node, self.default_variable),
            validation=dict(node.data.get("validation") or {}),
            options=normalize_options(node.data.get("options")),
            timeout_at=timeout_at,
        )

    def prompt(self, node: FlowNode, ctx: NodeContext) -> Optional[OutboundContent]:
        return build_content(node, ctx)

    def parse_reply(self, node: FlowNode, ctx: NodeContext, waiting: WaitingContext) -> Tuple[Any, Optional[str]]:
        raise NotImplementedError

    def on_valid(self, node: FlowNode, ctx: NodeContext, value: Any, variables: Dict[str, Any]) -> NodeResult:
        return Advance(ctx.successor_for("valid"), variables=variables, output={"accepted": True})

    async def execute(self, node: FlowNode, ctx: NodeContext) -> NodeResult:
        waiting = ctx.session.waiting_context
        if ctx.resumed_by_message and waiting is not None and waiting.node_id == node.id:
            return await self._on_reply(node, ctx, waiting)

        if ctx.effect_already_done:
            return Suspend(self.waiting_context(node, ctx), output=dict(ctx.prior_output))
        content = self.prompt(node, ctx)
        message_id = await _send(ctx, content) if content else None
        return Suspend(self.waiting_context(node, ctx), output={"message_id": message_id})

    async def _on_reply(self, node: FlowNode, ctx: NodeContext, waiting: WaitingContext) -> NodeResult:
        value, error = self.parse_reply(node, ctx, waiting)
        if error is None:
            key = waiting.variable_name or variable_key(node, self.default_variable)
            return self.on_valid(node, ctx, value, {key: ctx.variable(key, value)})

        attempts = waiting.attempts + 1
        max_attempts = int(node.data.get("max_attempts", DEFAULT_MAX_ATTEMPTS))
        if attempts < max_attempts:
            retry_text = _text(node, ctx, "retry_message", "error_message")
            if retry_text:
                await _send(ctx, OutboundContent(type="text", text=retry_text))
            return Suspend(
                waiting.model_copy(update={"attempts": attempts, "last_error": error}),
                output={"attempts": attempts, "error": error},
            )

        invalid_target = ctx.labelled_successor("invalid")
        if invalid_target:
            return Branch(invalid_target, branch_label="invalid", output={"attempts": attempts, "error": error})
        return Fail("validation", f"Invalid reply after {attempts} attempts: {error}")


def validate_value(raw: str, input_type: str, rules: Dict[str, Any]) -> Tuple[Any, Optional[str]]:
    """Convert and check a reply. Returns (value, None) or (None, error)."""
    text = (raw or "").strip()
    if not text:
        return None, "Empty reply"

    value: Any = text
    if input_type == "number":
        try:
            value = int(text) if re.fullmatch(r"[+-]?\d+", text) else float(text.replace(",", "."))
        except ValueError:
            return None, "Not a number"
        if rules.get("min") is not None and value < float(rules["min"]):
            return None, f"Must be at least {rules['min']}"
        if rules.get("max") is not None and value > float(rules["max"]):
            return None, f"Must be at most {rules['max']}"
    elif input_type == "email" and not EMAIL_PATTERN.match(text):
        return None, "Not a valid email address"
    elif input_type == "phone" and not PHONE_PATTERN.match(text):
        return None, "Not a valid phone number"

    if isinstance(value, str):
        if rules.get("min_length") is not None and len(value) < int(rules["min_length"]):
            return None, f"Must be at least {rules['min_length']} characters"
        if rules.get("max_length") is not None and len(value) > int(rules["max_length"]):
            return None, f"Must be at most {rules['max_length']} characters"
        if rules.get("pattern"):
            try:
                if not re.fullmatch(rules["pattern"], value):
                    return None, rules.get("message") or "Reply does not match the expected format"
            except re.error as e:
                raise FlowValidationError(f"Invalid validation pattern: {e}")
    return value, None


class InputHandler(_ReplyHandler):
    node_types = ("input", "data_capture")
    default_input_type = "text"

    def prompt(self, node: FlowNode, ctx: NodeContext) -> Optional[OutboundContent]:
        text = _text(node, ctx, "question", "prompt", "message", "text")
        return OutboundContent(type="text", text=text) if text else None

    def parse_reply(self, node: FlowNode, ctx: NodeContext, waiting: WaitingContext) -> Tuple[Any, Optional[str]]:
        message = ctx.message
        if waiting.expected_input_type == "media":
            if not message.media_url:
                return None, "Expected a file"
            return message.media_url, None
        return validate_value(message.text or "", waiting.expected_input_type, waiting.validation)


class InteractiveHandler(_ReplyHandler):
    """Buttons, lists and polls: the chosen option id labels the branch."""
    node_types = ("whatsapp_interactive_buttons", "whatsapp_interactive_list", "whatsapp_poll")
    default_variable = "selected_option"
    default_input_type = "button"

    def declared_writes(self, node: FlowNode) -> Dict[str, Optional[VariableType]]:
        return {variable_key(node, self.default_variable): VariableType.STRING}

    def parse_reply(self, node: FlowNode, ctx: NodeContext, waiting: WaitingContext) -> Tuple[Any, Optional[str]]:
        payload = ctx.message.payload
        reply_id = str(payload.get("id") or payload.get("button_id") or "").strip().lower()
        reply_text = (ctx.message.text or "").strip().lower()
        for index, option in enumerate(waiting.options, start=1):
            if reply_id and reply_id == option["id"].lower():
                return option["id"], None
            if reply_text and reply_text in (option["id"].lower(), option["title"].lower(), str(index)):
                return option["id"], None
        return None, "Reply does not match any option"

    def on_valid(self, node: FlowNode, ctx: NodeContext, value: Any, variables: Dict[str, Any]) -> NodeResult:
        return Branch(ctx.successor_for(value), branch_label=value, variables=variables, output={"selected": value})


# ==================== Deferred messages ====================

def _parse_datetime(value: Any) -> datetime:
    if isinstance(value, datetime):
        return ensure_utc(value)
    try:
        return ensure_utc(datetime.fromisoformat(str(value).replace("Z", "+00:00")))
    except ValueError:
        raise FlowValidationError(f"Invalid datetime '{value}'")


class FollowUpHandler(NodeHandler):
    """Schedules a message for later and continues immediately."""
    node_types = ("follow_up",)
    side_effecting = True

    async def execute(self, node: FlowNode, ctx: NodeContext) -> NodeResult:
        if ctx.effect_already_done:
            return Advance(ctx.default_successor(), output=dict(ctx.prior_output))
        if ctx.services.timers is None:
            raise FlowValidationError("follow_up nodes require a timer scheduler")

        trigger = TriggerEvent(node.data.get("trigger_event", TriggerEvent.RELATIVE_DELAY.value))
        delay_amount = delay_unit = None
        if trigger == TriggerEvent.SPECIFIC_DATETIME:
            scheduled_for = _parse_datetime(ctx.require("scheduled_for"))
        else:
            delay_amount = int(node.data.get("delay_amount", 0))
            delay_unit = DelayUnit(node.data.get("delay_unit", DelayUnit.HOURS.value))
            scheduled_for = ctx.now + delay_unit.to_timedelta(delay_amount)

        expires_at = None
        if node.data.get("expires_after_hours"):
            expires_at = scheduled_for + timedelta(hours=float(node.data["expires_after_hours"]))

        content = build_content(node, ctx)
        schedule_id = await ctx.services.timers.schedule_message(
            ctx.session,
            node.id,
            ctx.step_order,
            scheduled_for,
            content,
            trigger_event=trigger,
            delay_amount=delay_amount,
            delay_unit=delay_unit.value if delay_unit else None,
            timezone=node.data.get("timezone", "UTC"),
            expires_at=expires_at,
        )
        return Advance(
            ctx.default_successor(),
            output={"schedule_id": schedule_id, "scheduled_for": scheduled_for.isoformat()},
        )


HANDLERS = [
    MessageHandler(),
    InputHandler(),
    InteractiveHandler(),
    FollowUpHandler(),
]
