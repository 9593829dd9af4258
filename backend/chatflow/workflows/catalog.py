# /chatflow/workflows/catalog.py

"""
Node catalog: the open registry mapping a node type tag to its handler.

Handlers never touch the session store. They read the immutable session
and node configuration through a NodeContext, call collaborators through
EngineServices, and describe what should happen next with a NodeResult.
The interpreter applies that result.
"""

from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, ClassVar, Dict, Iterable, Optional, Tuple, TYPE_CHECKING

from chatflow.models.events import InboundMessage, ResumeInput, ResumeKind
from chatflow.models.flow import FlowEdge, FlowNode, FlowVersion
from chatflow.models.session import FlowSession, SessionVariable, VariableScope, VariableType
from chatflow.utils.errors import FlowValidationError
from chatflow.workflows import expressions
from chatflow.workflows.results import NodeResult

if TYPE_CHECKING:
    from chatflow.services.ai_service import AIProvider
    from chatflow.services.channel_service import ChannelSender
    from chatflow.services.crm_service import CrmGateway
    from chatflow.services.integration_service import IntegrationClient
    from chatflow.jobs.follow_up_job import TimerScheduler


@dataclass
class EngineServices:
    """Collaborators available to node handlers."""
    channel: "ChannelSender"
    ai: Optional["AIProvider"] = None
    integrations: Optional["IntegrationClient"] = None
    crm: Optional["CrmGateway"] = None
    timers: Optional["TimerScheduler"] = None


@dataclass(frozen=True)
class NodeContext:
    session: FlowSession
    flow: FlowVersion
    node: FlowNode
    step_order: int
    attempt: int
    now: datetime
    services: EngineServices
    message: Optional[InboundMessage] = None
    resume: Optional[ResumeInput] = None
    prior_output: Optional[Dict[str, Any]] = None
    # Output of the previous failed attempt at this same step, if any.
    attempt_output: Dict[str, Any] = field(default_factory=dict)
    timer_grace: timedelta = field(default=timedelta(minutes=15))

    # ---------------- Resume helpers ---------------- #

    @property
    def resumed_by_message(self) -> bool:
        return self.resume is not None and self.resume.kind == ResumeKind.MESSAGE

    @property
    def resumed_by_timer(self) -> bool:
        return self.resume is not None and self.resume.kind == ResumeKind.TIMER

    @property
    def resumed_by_callback(self) -> bool:
        return self.resume is not None and self.resume.kind == ResumeKind.CALLBACK

    @property
    def effect_already_done(self) -> bool:
        return self.prior_output is not None

    # ---------------- Interpolation ---------------- #

    def scope(self) -> Dict[str, Any]:
        contact = dict(self.session.contact)
        if self.message is not None:
            contact.update(self.message.contact)
        return expressions.build_scope(
            variables=self.session.visible_variables(self.now),
            message=self.message.as_scope() if self.message else None,
            contact=contact,
            session={
                "id": self.session.session_id,
                "flow_id": self.session.flow_id,
                "conversation_id": self.session.conversation_id,
                "contact_id": self.session.contact_id,
                "channel": self.session.channel_type,
                "tenant_id": self.session.tenant_id,
            },
        )

    def render(self, template: Optional[str], strict: bool = False) -> str:
        return expressions.render(template, self.scope(), strict=strict)

    def render_value(self, value: Any, strict: bool = False) -> Any:
        return expressions.render_value(value, self.scope(), strict=strict)

    # ---------------- Graph helpers ---------------- #

    @property
    def outgoing(self) -> Tuple[FlowEdge, ...]:
        return tuple(self.flow.outgoing_edges(self.node.id))

    def default_successor(self) -> Optional[str]:
        edges = self.outgoing
        for edge in edges:
            if edge.condition is None and (edge.label is None or edge.is_default):
                return edge.target
        return edges[0].target if edges else None

    def labelled_successor(self, label: Optional[str]) -> Optional[str]:
        wanted = (label or "").lower()
        if not wanted:
            return None
        for edge in self.outgoing:
            if (edge.label or "").lower() == wanted:
                return edge.target
        return None

    def successor_for(self, label: Optional[str]) -> Optional[str]:
        """Target of the edge labelled `label`, falling back to the default successor."""
        return self.labelled_successor(label) or self.default_successor()

    # ---------------- Config helpers ---------------- #

    @property
    def config(self) -> Dict[str, Any]:
        return self.node.data

    def require(self, key: str) -> Any:
        value = self.node.data.get(key)
        if value is None or (isinstance(value, str) and not value.strip()):
            raise FlowValidationError(f"Node '{self.node.id}' ({self.node.type}) is missing '{key}'")
        return value

    def variable(self, key: str, value: Any, scope: Optional[str] = None, **kwargs: Any) -> SessionVariable:
        ttl = self.node.data.get("variable_ttl_seconds")
        if ttl and "expires_at" not in kwargs:
            kwargs["expires_at"] = self.now + timedelta(seconds=int(ttl))
        return SessionVariable.build(
            key,
            value,
            scope=VariableScope(scope or self.node.data.get("variable_scope", VariableScope.SESSION.value)),
            node_id=self.node.id,
            is_encrypted=bool(kwargs.pop("is_encrypted", self.node.data.get("encrypt", False))),
            **kwargs,
        )


class NodeHandler:
    """
    Base class for node behaviours.

    Subclasses set `node_types`, implement `execute`, and declare the
    session variables they write so the interpreter can reject undeclared
    writes. Reads default to every `{{token}}` in the node configuration.
    `side_effecting` handlers must consult `ctx.prior_output` and skip
    their effect when it is set.
    """
    node_types: ClassVar[Tuple[str, ...]] = ()
    side_effecting: ClassVar[bool] = False

    def declared_reads(self, node: FlowNode) -> Tuple[str, ...]:
        return expressions.referenced_variables(node.data)

    def declared_writes(self, node: FlowNode) -> Dict[str, Optional[VariableType]]:
        return {}

    def max_retries(self, node: FlowNode) -> Optional[int]:
        value = node.data.get("max_retries")
        return int(value) if value is not None else None

    async def execute(self, node: FlowNode, ctx: NodeContext) -> NodeResult:
        raise NotImplementedError


def variable_key(node: FlowNode, default: Optional[str] = None) -> Optional[str]:
    """The variable a node stores its result in (`variable_name` in its config)."""
    return node.data.get("variable_name") or node.data.get("variable") or default


class NodeCatalog:
    def __init__(self, handlers: Iterable[NodeHandler] = ()):
        self._handlers: Dict[str, NodeHandler] = {}
        for handler in handlers:
            self.register(handler)

    def register(self, handler: NodeHandler, replace: bool = False) -> None:
        if not handler.node_types:
            raise ValueError(f"{type(handler).__name__} declares no node types")
        for node_type in handler.node_types:
            if node_type in self._handlers and not replace:
                raise ValueError(f"Node type '{node_type}' is already registered")
            self._handlers[node_type] = handler

    def get(self, node_type: str) -> NodeHandler:
        handler = self._handlers.get(node_type)
        if handler is None:
            raise FlowValidationError(f"No handler registered for node type '{node_type}'")
        return handler

    def __contains__(self, node_type: str) -> bool:
        return node_type in self._handlers

    def types(self) -> Tuple[str, ...]:
        return tuple(sorted(self._handlers))


def build_default_catalog() -> NodeCatalog:
    """Catalog with every built-in node type."""
    from chatflow.workflows.nodes import control, crm, integrations, messaging

    return NodeCatalog([
        *control.HANDLERS,
        *messaging.HANDLERS,
        *integrations.HANDLERS,
        *crm.HANDLERS,
    ])
