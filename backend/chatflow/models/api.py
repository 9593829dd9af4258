# /chatflow/models/api.py

from pydantic import BaseModel, Field
from typing import Any, Dict, List, Optional
from datetime import datetime, timezone

from chatflow.models.events import EngineOutcome

# Request and response bodies of the HTTP surface. Engine outcomes are
# wrapped in APIResponse like every other endpoint.


class InboundMessageRequest(BaseModel):
    message_id: Optional[str] = None
    tenant_id: str
    conversation_id: str
    contact_id: str
    channel_type: str = "whatsapp"
    message_type: str = "text"
    text: Optional[str] = None
    payload: Dict[str, Any] = Field(default_factory=dict)
    media_url: Optional[str] = None
    contact: Dict[str, Any] = Field(default_factory=dict)


class TriggerFlowRequest(BaseModel):
    tenant_id: str
    conversation_id: str
    contact_id: str
    channel_type: str = "whatsapp"
    variables: Dict[str, Any] = Field(default_factory=dict)
    contact: Dict[str, Any] = Field(default_factory=dict)
    entry_node_id: Optional[str] = None
    force: bool = False


class TimerFireRequest(BaseModel):
    schedule_id: Optional[str] = None


class CallbackRequest(BaseModel):
    payload: Dict[str, Any] = Field(default_factory=dict)


class CancelRequest(BaseModel):
    reason: str = Field(default="cancelled by operator", max_length=500)


class SessionView(BaseModel):
    """A session as exposed over HTTP: encrypted variables are masked."""
    session_id: str
    flow_id: str
    flow_version: int
    tenant_id: str
    conversation_id: str
    contact_id: str
    status: str
    current_node_id: Optional[str] = None
    execution_path: List[str]
    variables: Dict[str, Any]
    waiting_for: Optional[Dict[str, Any]] = None
    started_at: datetime
    last_activity_at: datetime
    completed_at: Optional[datetime] = None
    expires_at: Optional[datetime] = None
    node_execution_count: int
    error_count: int
    last_error_kind: Optional[str] = None
    last_error_message: Optional[str] = None


class APIResponse(BaseModel):
    success: bool
    message: str
    data: Optional[Dict] = None
    timestamp: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    version: str

    @classmethod
    def from_outcome(cls, outcome: EngineOutcome, version: str) -> "APIResponse":
        return cls(
            success=outcome.status.value not in ("failed", "retry_later", "not_found", "conflict"),
            message=outcome.detail or outcome.status.value,
            data=outcome.model_dump(mode="json"),
            version=version,
        )
