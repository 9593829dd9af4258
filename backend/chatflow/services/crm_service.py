# /chatflow/services/crm_service.py

import logging
from typing import Dict, Any, List, Tuple

# CRM side effects triggered by flow nodes: switching the bot off for a
# conversation, moving a contact through a pipeline, writing contact
# properties. The CRM itself lives outside the engine.

logger = logging.getLogger(__name__)


class CrmGateway:
    async def disable_bot(self, tenant_id: str, conversation_id: str, reason: str | None = None) -> None:
        raise NotImplementedError

    async def update_pipeline_stage(self, tenant_id: str, contact_id: str, pipeline_id: str | None, stage_id: str) -> None:
        raise NotImplementedError

    async def update_contact_properties(self, tenant_id: str, contact_id: str, properties: Dict[str, Any]) -> None:
        raise NotImplementedError


class InMemoryCrmGateway(CrmGateway):
    """Keeps CRM writes in memory. Used without MongoDB and in tests."""

    def __init__(self):
        self.disabled_conversations: Dict[Tuple[str, str], str | None] = {}
        self.pipeline_moves: List[Dict[str, Any]] = []
        self.contacts: Dict[Tuple[str, str], Dict[str, Any]] = {}

    async def disable_bot(self, tenant_id: str, conversation_id: str, reason: str | None = None) -> None:
        self.disabled_conversations[(tenant_id, conversation_id)] = reason
        logger.info(f"Bot disabled for conversation {conversation_id} ({reason or 'no reason'})")

    async def update_pipeline_stage(self, tenant_id: str, contact_id: str, pipeline_id: str | None, stage_id: str) -> None:
        self.pipeline_moves.append({
            "tenant_id": tenant_id, "contact_id": contact_id, "pipeline_id": pipeline_id, "stage_id": stage_id,
        })
        logger.info(f"Contact {contact_id} moved to stage {stage_id}")

    async def update_contact_properties(self, tenant_id: str, contact_id: str, properties: Dict[str, Any]) -> None:
        self.contacts.setdefault((tenant_id, contact_id), {}).update(properties)
        logger.info(f"Contact {contact_id} properties updated: {sorted(properties)}")
