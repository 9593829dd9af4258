# /chatflow/models/execution.py

from datetime import datetime, timedelta
from enum import Enum
from typing import Optional, Dict, Any
from pydantic import BaseModel, ConfigDict, Field


class StepStatus(str, Enum):
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    SKIPPED = "skipped"
    WAITING = "waiting"
    TIMEOUT = "timeout"


# Records in these states mean the node's side effect already happened.
EFFECT_DONE_STATUSES = frozenset({StepStatus.COMPLETED, StepStatus.WAITING})


class StepExecutionRecord(BaseModel):
    """
    One node execution attempt. Written in `running` state before the
    node runs and replaced with its final state afterwards.
    """
    model_config = ConfigDict(frozen=True)

    record_id: str
    session_id: str
    flow_id: str
    node_id: str
    node_type: str
    step_order: int
    status: StepStatus = StepStatus.RUNNING
    input_data: Dict[str, Any] = Field(default_factory=dict)
    output_data: Optional[Dict[str, Any]] = None
    error_kind: Optional[str] = None
    error_message: Optional[str] = None
    retry_count: int = 0
    max_retries: int = 0
    started_at: datetime
    completed_at: Optional[datetime] = None
    duration_ms: Optional[int] = None


class FollowUpStatus(str, Enum):
    SCHEDULED = "scheduled"
    SENT = "sent"
    FAILED = "failed"
    CANCELLED = "cancelled"
    EXPIRED = "expired"


class FollowUpAction(str, Enum):
    RESUME = "resume"
    MESSAGE = "message"


class TriggerEvent(str, Enum):
    CONVERSATION_START = "conversation_start"
    NODE_EXECUTION = "node_execution"
    SPECIFIC_DATETIME = "specific_datetime"
    RELATIVE_DELAY = "relative_delay"


class DelayUnit(str, Enum):
    MINUTES = "minutes"
    HOURS = "hours"
    DAYS = "days"
    WEEKS = "weeks"

    def to_timedelta(self, amount: int) -> timedelta:
        return timedelta(**{self.value: amount})


class FollowUpSchedule(BaseModel):
    """A deferred action: resume a session or send a message at `scheduled_for`."""
    model_config = ConfigDict(frozen=True)

    schedule_id: str
    session_id: Optional[str] = None
    flow_id: str
    tenant_id: str
    conversation_id: str
    contact_id: str
    node_id: str
    channel_type: str = "whatsapp"

    action: FollowUpAction = FollowUpAction.MESSAGE
    message_type: str = "text"
    message_content: Optional[str] = None
    media_url: Optional[str] = None
    caption: Optional[str] = None

    trigger_event: TriggerEvent = TriggerEvent.RELATIVE_DELAY
    delay_amount: Optional[int] = None
    delay_unit: Optional[DelayUnit] = None
    scheduled_for: datetime
    timezone: str = "UTC"

    status: FollowUpStatus = FollowUpStatus.SCHEDULED
    sent_at: Optional[datetime] = None
    failed_reason: Optional[str] = None
    retry_count: int = 0
    max_retries: int = 3

    variables: Dict[str, Any] = Field(default_factory=dict)
    created_at: datetime
    expires_at: Optional[datetime] = None

    def is_expired(self, now: datetime) -> bool:
        return self.expires_at is not None and now > self.expires_at


class DeliveryStatus(str, Enum):
    SUCCESS = "success"
    FAILED = "failed"
    RETRY = "retry"


class FollowUpExecutionLog(BaseModel):
    """One delivery attempt of a follow-up schedule. Append-only."""
    model_config = ConfigDict(frozen=True)

    log_id: str
    schedule_id: str
    session_id: Optional[str] = None
    execution_attempt: int = 1
    status: DeliveryStatus
    message_id: Optional[str] = None
    error_message: Optional[str] = None
    execution_duration_ms: Optional[int] = None
    executed_at: datetime
