# /chatflow/models/session.py

from datetime import datetime, timedelta
from enum import Enum
from typing import Optional, List, Dict, Any, Tuple
from pydantic import BaseModel, ConfigDict, Field

MASKED_VALUE = "***"


class SessionStatus(str, Enum):
    ACTIVE = "active"
    WAITING = "waiting"
    PAUSED = "paused"
    COMPLETED = "completed"
    FAILED = "failed"
    ABANDONED = "abandoned"
    TIMEOUT = "timeout"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATUSES

    @property
    def is_open(self) -> bool:
        return self in OPEN_STATUSES


OPEN_STATUSES = frozenset({SessionStatus.ACTIVE, SessionStatus.WAITING, SessionStatus.PAUSED})
TERMINAL_STATUSES = frozenset({
    SessionStatus.COMPLETED, SessionStatus.FAILED, SessionStatus.ABANDONED, SessionStatus.TIMEOUT
})


class VariableScope(str, Enum):
    GLOBAL = "global"
    FLOW = "flow"
    SESSION = "session"
    NODE = "node"
    USER = "user"


class VariableType(str, Enum):
    STRING = "string"
    NUMBER = "number"
    BOOLEAN = "boolean"
    OBJECT = "object"
    ARRAY = "array"

    @classmethod
    def infer(cls, value: Any) -> "VariableType":
        # bool is a subclass of int, check it first
        if isinstance(value, bool):
            return cls.BOOLEAN
        if isinstance(value, (int, float)):
            return cls.NUMBER
        if isinstance(value, dict):
            return cls.OBJECT
        if isinstance(value, (list, tuple)):
            return cls.ARRAY
        return cls.STRING


class SessionVariable(BaseModel):
    model_config = ConfigDict(frozen=True)

    key: str
    value: Any = None
    type: VariableType = VariableType.STRING
    scope: VariableScope = VariableScope.SESSION
    node_id: Optional[str] = None
    is_encrypted: bool = False
    expires_at: Optional[datetime] = None

    @classmethod
    def build(
        cls,
        key: str,
        value: Any,
        scope: VariableScope = VariableScope.SESSION,
        node_id: Optional[str] = None,
        is_encrypted: bool = False,
        expires_at: Optional[datetime] = None,
    ) -> "SessionVariable":
        if isinstance(value, tuple):
            value = list(value)
        return cls(
            key=key,
            value=value,
            type=VariableType.infer(value),
            scope=scope,
            node_id=node_id,
            is_encrypted=is_encrypted,
            expires_at=expires_at,
        )

    def is_expired(self, now: datetime) -> bool:
        return self.expires_at is not None and now >= self.expires_at

    def display_value(self) -> Any:
        return MASKED_VALUE if self.is_encrypted else self.value


class WaitingKind(str, Enum):
    INPUT = "input"
    TIMER = "timer"
    CALLBACK = "callback"


class WaitingContext(BaseModel):
    """What the suspended node needs before the session can move on."""
    model_config = ConfigDict(frozen=True)

    node_id: str
    kind: WaitingKind = WaitingKind.INPUT
    expected_input_type: str = "any"
    variable_name: Optional[str] = None
    validation: Dict[str, Any] = Field(default_factory=dict)
    options: List[Dict[str, Any]] = Field(default_factory=list)
    resume_at: Optional[datetime] = None
    timeout_at: Optional[datetime] = None
    schedule_id: Optional[str] = None
    attempts: int = 0
    last_error: Optional[str] = None

    def accepts_message(self, message_type: str) -> bool:
        """Whether an inbound message of `message_type` can resume this wait."""
        if self.kind != WaitingKind.INPUT:
            return False
        expected = self.expected_input_type
        if expected == "any":
            return True
        if expected in ("text", "number", "email", "phone"):
            return message_type in ("text", "button", "interactive")
        if expected == "button":
            return message_type in ("button", "interactive", "text")
        if expected == "media":
            return message_type in ("image", "video", "audio", "document")
        return expected == message_type

    def shifted(self, delta: timedelta) -> "WaitingContext":
        return self.model_copy(update={
            "resume_at": self.resume_at + delta if self.resume_at else None,
            "timeout_at": self.timeout_at + delta if self.timeout_at else None,
        })


class BranchRecord(BaseModel):
    model_config = ConfigDict(frozen=True)

    node_id: str
    label: Optional[str] = None
    target: str
    at: datetime


class FlowSession(BaseModel):
    """
    Execution state of one flow instance bound to one conversation.

    Instances are immutable: every change produces a new value through
    `evolve`, and the store replaces the persisted row wholesale.
    """
    model_config = ConfigDict(frozen=True)

    session_id: str
    flow_id: str
    flow_version: int
    tenant_id: str
    conversation_id: str
    contact_id: str
    channel_type: str = "whatsapp"
    status: SessionStatus = SessionStatus.ACTIVE

    current_node_id: Optional[str] = None
    previous_node_id: Optional[str] = None
    trigger_node_id: str
    execution_path: Tuple[str, ...] = ()
    branching_history: Tuple[BranchRecord, ...] = ()

    variables: Dict[str, SessionVariable] = Field(default_factory=dict)
    contact: Dict[str, Any] = Field(default_factory=dict)
    waiting_context: Optional[WaitingContext] = None
    processed_message_ids: Tuple[str, ...] = ()

    started_at: datetime
    last_activity_at: datetime
    paused_at: Optional[datetime] = None
    resumed_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    expires_at: Optional[datetime] = None

    node_execution_count: int = 0
    user_interaction_count: int = 0
    error_count: int = 0
    last_error_kind: Optional[str] = None
    last_error_message: Optional[str] = None

    revision: int = 0

    def evolve(self, **changes: Any) -> "FlowSession":
        return self.model_copy(update=changes)

    @property
    def is_terminal(self) -> bool:
        return self.status.is_terminal

    @property
    def open_key(self) -> Optional[str]:
        """Uniqueness key for open sessions of one (flow, conversation) pair."""
        if self.status.is_open:
            return f"{self.flow_id}:{self.conversation_id}"
        return None

    def is_expired(self, now: datetime) -> bool:
        # Paused sessions have frozen deadlines.
        if self.status == SessionStatus.PAUSED or self.is_terminal:
            return False
        return self.expires_at is not None and now > self.expires_at

    def has_processed(self, message_id: Optional[str]) -> bool:
        return bool(message_id) and message_id in self.processed_message_ids

    def remember_message(self, message_id: Optional[str], keep: int) -> Tuple[str, ...]:
        if not message_id or message_id in self.processed_message_ids:
            return self.processed_message_ids
        ids = self.processed_message_ids + (message_id,)
        return ids[-keep:] if keep else ()

    def with_variables(self, updates: Dict[str, SessionVariable]) -> Dict[str, SessionVariable]:
        merged = dict(self.variables)
        merged.update(updates)
        return merged

    def visible_variables(self, now: datetime) -> Dict[str, Any]:
        """Plain values of every non-expired variable, keyed by name."""
        return {
            key: var.value
            for key, var in self.variables.items()
            if not var.is_expired(now)
        }

    def masked_variables(self) -> Dict[str, Any]:
        return {key: var.display_value() for key, var in self.variables.items()}
