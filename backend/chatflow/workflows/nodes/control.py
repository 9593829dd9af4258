# /chatflow/workflows/nodes/control.py

from datetime import timedelta

from chatflow.models.execution import DelayUnit
from chatflow.models.flow import FlowNode
from chatflow.models.session import SessionStatus, WaitingContext, WaitingKind
from chatflow.utils.errors import FlowValidationError
from chatflow.workflows import expressions
from chatflow.workflows.catalog import NodeContext, NodeHandler
from chatflow.workflows.results import Advance, Branch, NodeResult, Suspend, Terminate


class StartHandler(NodeHandler):
    """Entry node. Trigger matching happens in the scheduler; here we only move on."""
    node_types = ("start", "trigger")

    async def execute(self, node: FlowNode, ctx: NodeContext) -> NodeResult:
        return Advance(ctx.default_successor(), output={"trigger": node.type})


class EndHandler(NodeHandler):
    node_types = ("end",)

    async def execute(self, node: FlowNode, ctx: NodeContext) -> NodeResult:
        return Terminate(SessionStatus.COMPLETED, reason=node.data.get("reason"))


class ConditionHandler(NodeHandler):
    """
    Picks a successor by evaluating the outgoing edges in declared order.

    A node-level `condition` is shorthand for two edges labelled
    "true"/"false". When nothing matches and there is no default edge the
    flow ends here.
    """
    node_types = ("condition",)

    async def execute(self, node: FlowNode, ctx: NodeContext) -> NodeResult:
        scope = ctx.scope()

        if node.data.get("condition") is not None:
            matched = expressions.evaluate_condition(node.data["condition"], scope)
            label = "true" if matched else "false"
            return Branch(ctx.successor_for(label), branch_label=label, output={"result": matched})

        evaluations = expressions.evaluate_edges(ctx.outgoing, scope)
        chosen = evaluations[-1] if evaluations and evaluations[-1]["matched"] else None
        if chosen is None:
            return Branch(None, branch_label=None, output={"evaluations": evaluations})
        return Branch(chosen["target"], branch_label=chosen["label"], output={"evaluations": evaluations})


def _delay(node: FlowNode) -> timedelta:
    if node.data.get("delay_seconds") is not None:
        return timedelta(seconds=float(node.data["delay_seconds"]))
    amount = node.data.get("delay_amount", node.data.get("duration"))
    if amount is None:
        raise FlowValidationError(f"Wait node '{node.id}' has no delay configured")
    try:
        unit = DelayUnit(node.data.get("delay_unit", DelayUnit.MINUTES.value))
        return unit.to_timedelta(int(amount))
    except (TypeError, ValueError) as e:
        raise FlowValidationError(f"Wait node '{node.id}' has an invalid delay: {e}")


class WaitHandler(NodeHandler):
    """
    Suspends until a timer fires. A fire before `timeout_at` (resume time
    plus the grace window) resumes the flow; later fires time the session
    out in the scheduler before this handler is reached.
    """
    node_types = ("wait", "delay")

    async def execute(self, node: FlowNode, ctx: NodeContext) -> NodeResult:
        if ctx.resumed_by_timer:
            return Advance(ctx.default_successor(), output={"resumed_at": ctx.now.isoformat()})

        delay = _delay(node)
        if delay <= timedelta(0):
            return Advance(ctx.default_successor(), output={"delay_seconds": 0})

        resume_at = ctx.now + delay
        waiting = WaitingContext(
            node_id=node.id,
            kind=WaitingKind.TIMER,
            resume_at=resume_at,
            timeout_at=resume_at + ctx.timer_grace,
        )
        return Suspend(waiting, output={"resume_at": resume_at.isoformat()})


class BotDisableHandler(NodeHandler):
    """Turns the bot off for the conversation and abandons the session."""
    node_types = ("bot_disable",)
    side_effecting = True

    async def execute(self, node: FlowNode, ctx: NodeContext) -> NodeResult:
        reason = ctx.render(node.data.get("reason")) or "bot_disabled"
        if not ctx.effect_already_done:
            if ctx.services.crm is None:
                raise FlowValidationError("bot_disable requires a CRM gateway")
            await ctx.services.crm.disable_bot(ctx.session.tenant_id, ctx.session.conversation_id, reason)
        return Terminate(SessionStatus.ABANDONED, reason=reason, output={"bot_disabled": True})


class BotResetHandler(NodeHandler):
    """Stops the flow so the next inbound message can start a fresh session."""
    node_types = ("bot_reset",)

    async def execute(self, node: FlowNode, ctx: NodeContext) -> NodeResult:
        return Terminate(SessionStatus.ABANDONED, reason="bot_reset", output={"reset": True})


HANDLERS = [
    StartHandler(),
    EndHandler(),
    ConditionHandler(),
    WaitHandler(),
    BotDisableHandler(),
    BotResetHandler(),
]
