# /chatflow/models/flow.py

from datetime import datetime
from enum import Enum
from typing import Optional, List, Dict, Any
from pydantic import BaseModel, ConfigDict, Field

ENTRY_NODE_TYPES = ("start", "trigger")
DEFAULT_EDGE_LABELS = ("default", "else")


class FlowStatus(str, Enum):
    DRAFT = "draft"
    ACTIVE = "active"
    INACTIVE = "inactive"
    ARCHIVED = "archived"


class FlowNode(BaseModel):
    """A single node of the automation graph. `data` is the node's configuration payload."""
    model_config = ConfigDict(frozen=True)

    id: str
    type: str
    data: Dict[str, Any] = Field(default_factory=dict)


class FlowEdge(BaseModel):
    """
    A directed edge. `label` names the branch (e.g. "true", a button id,
    "default"); `condition` is an optional expression evaluated when the
    source node branches on its outgoing edges.
    """
    model_config = ConfigDict(frozen=True)

    id: Optional[str] = None
    source: str
    target: str
    label: Optional[str] = None
    condition: Optional[Dict[str, Any]] = None

    @property
    def is_default(self) -> bool:
        return (self.label or "").lower() in DEFAULT_EDGE_LABELS


class FlowVersion(BaseModel):
    """
    One immutable version of a tenant's flow. Sessions pin to the version
    that was active when they started.
    """
    model_config = ConfigDict(frozen=True)

    flow_id: str
    version: int = 1
    tenant_id: str
    name: str = ""
    status: FlowStatus = FlowStatus.DRAFT
    priority: int = 0
    activated_at: Optional[datetime] = None
    nodes: List[FlowNode] = Field(default_factory=list)
    edges: List[FlowEdge] = Field(default_factory=list)

    def get_node(self, node_id: Optional[str]) -> Optional[FlowNode]:
        if not node_id:
            return None
        for node in self.nodes:
            if node.id == node_id:
                return node
        return None

    def entry_node(self) -> Optional[FlowNode]:
        for node in self.nodes:
            if node.type in ENTRY_NODE_TYPES:
                return node
        return None

    def outgoing_edges(self, node_id: str) -> List[FlowEdge]:
        """Edges leaving `node_id` in their declared order."""
        return [edge for edge in self.edges if edge.source == node_id]

    @property
    def is_active(self) -> bool:
        return self.status == FlowStatus.ACTIVE
