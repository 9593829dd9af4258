# /chatflow/models/events.py

import hashlib
import json
from datetime import datetime, timezone
from enum import Enum
from typing import Optional, Dict, Any
from pydantic import BaseModel, ConfigDict, Field

from chatflow.models.session import FlowSession, SessionStatus


class InboundMessage(BaseModel):
    """A normalized inbound message handed over by the webhook layer."""
    model_config = ConfigDict(frozen=True)

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
    received_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))

    @property
    def content_hash(self) -> str:
        raw = json.dumps(
            [self.conversation_id, self.message_type, self.text, self.payload, self.media_url],
            sort_keys=True,
            default=str,
        )
        return hashlib.sha256(raw.encode("utf-8")).hexdigest()

    @property
    def dedupe_key(self) -> str:
        return self.message_id or f"hash:{self.content_hash}"

    def as_scope(self) -> Dict[str, Any]:
        return {
            "id": self.message_id,
            "type": self.message_type,
            "text": self.text or "",
            "payload": dict(self.payload),
            "media_url": self.media_url,
            "channel": self.channel_type,
        }


class ResumeKind(str, Enum):
    MESSAGE = "message"
    TIMER = "timer"
    CALLBACK = "callback"


class ResumeInput(BaseModel):
    """The event that wakes a suspended node."""
    model_config = ConfigDict(frozen=True)

    kind: ResumeKind
    message: Optional[InboundMessage] = None
    payload: Dict[str, Any] = Field(default_factory=dict)
    schedule_id: Optional[str] = None


class OutcomeStatus(str, Enum):
    COMPLETED = "completed"
    SUSPENDED = "suspended"
    FAILED = "failed"
    TIMED_OUT = "timed_out"
    ABANDONED = "abandoned"
    PAUSED = "paused"
    ACTIVE = "active"
    DUPLICATE = "duplicate"
    IGNORED = "ignored"
    NO_MATCH = "no_match"
    CONFLICT = "conflict"
    NOT_FOUND = "not_found"
    RETRY_LATER = "retry_later"


_STATUS_OUTCOMES = {
    SessionStatus.COMPLETED: OutcomeStatus.COMPLETED,
    SessionStatus.WAITING: OutcomeStatus.SUSPENDED,
    SessionStatus.FAILED: OutcomeStatus.FAILED,
    SessionStatus.TIMEOUT: OutcomeStatus.TIMED_OUT,
    SessionStatus.ABANDONED: OutcomeStatus.ABANDONED,
    SessionStatus.PAUSED: OutcomeStatus.PAUSED,
    SessionStatus.ACTIVE: OutcomeStatus.ACTIVE,
}


class EngineOutcome(BaseModel):
    """Definite result of one scheduler call, returned to the webhook/API layer."""
    status: OutcomeStatus
    session_id: Optional[str] = None
    session_status: Optional[SessionStatus] = None
    current_node_id: Optional[str] = None
    error_kind: Optional[str] = None
    detail: Optional[str] = None

    @classmethod
    def from_session(cls, session: FlowSession, detail: Optional[str] = None) -> "EngineOutcome":
        return cls(
            status=_STATUS_OUTCOMES[session.status],
            session_id=session.session_id,
            session_status=session.status,
            current_node_id=session.current_node_id,
            error_kind=session.last_error_kind if session.status == SessionStatus.FAILED else None,
            detail=detail or (session.last_error_message if session.status == SessionStatus.FAILED else None),
        )

    @classmethod
    def for_session(cls, status: OutcomeStatus, session: FlowSession, detail: Optional[str] = None) -> "EngineOutcome":
        return cls(
            status=status,
            session_id=session.session_id,
            session_status=session.status,
            current_node_id=session.current_node_id,
            detail=detail,
        )
