# /chatflow/services/flow_source.py

import logging
from typing import Dict, List, Optional, Tuple

from chatflow.models.flow import FlowStatus, FlowVersion

# Read-only access to published flow versions. Versions are immutable;
# sessions keep the version they started on.

logger = logging.getLogger(__name__)


class FlowDefinitionSource:
    async def get_flow_version(self, flow_id: str, version: int) -> Optional[FlowVersion]:
        raise NotImplementedError

    async def get_active_version(self, flow_id: str) -> Optional[FlowVersion]:
        raise NotImplementedError

    async def list_active_flows(self, tenant_id: str) -> List[FlowVersion]:
        """The active version of every active flow of a tenant."""
        raise NotImplementedError


class InMemoryFlowSource(FlowDefinitionSource):
    def __init__(self, flows: Optional[List[FlowVersion]] = None):
        self._versions: Dict[Tuple[str, int], FlowVersion] = {}
        for flow in flows or []:
            self.publish(flow)

    def publish(self, flow: FlowVersion) -> None:
        """Store a version. Activating a version deactivates the flow's other versions."""
        if flow.is_active:
            for key, existing in list(self._versions.items()):
                if existing.flow_id == flow.flow_id and existing.is_active and existing.version != flow.version:
                    self._versions[key] = existing.model_copy(update={"status": FlowStatus.INACTIVE})
        self._versions[(flow.flow_id, flow.version)] = flow
        logger.info(f"Flow {flow.flow_id} v{flow.version} stored as {flow.status.value}")

    async def get_flow_version(self, flow_id: str, version: int) -> Optional[FlowVersion]:
        return self._versions.get((flow_id, version))

    async def get_active_version(self, flow_id: str) -> Optional[FlowVersion]:
        active = [f for f in self._versions.values() if f.flow_id == flow_id and f.is_active]
        return max(active, key=lambda f: f.version) if active else None

    async def list_active_flows(self, tenant_id: str) -> List[FlowVersion]:
        return [f for f in self._versions.values() if f.tenant_id == tenant_id and f.is_active]
