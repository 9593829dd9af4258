# /chatflow/services/session_store.py

"""
Persistence contracts for flow sessions, step execution records and
follow-up schedules, plus in-memory implementations used when MongoDB is
not configured and throughout the tests.

Sessions are immutable values. `commit_session` replaces the stored row
wholesale and bumps its `revision`; a commit against a stale revision is
rejected with ConcurrencyError instead of silently overwriting.
"""

import logging
from contextlib import asynccontextmanager
from dataclasses import dataclass
from datetime import datetime
from typing import AsyncIterator, Dict, List, Optional, Tuple

from chatflow.models.execution import (
    EFFECT_DONE_STATUSES, FollowUpExecutionLog, FollowUpSchedule, FollowUpStatus, StepExecutionRecord
)
from chatflow.models.session import FlowSession, SessionStatus
from chatflow.services.lock_service import LockManager, LocalLockManager
from chatflow.utils.errors import ConcurrencyError

logger = logging.getLogger(__name__)


@dataclass
class SessionHandle:
    """A session loaded under its execution lock. Only valid inside `lock_and_load_session`."""
    session_id: str
    session: Optional[FlowSession]
    active: bool = True


class SessionStore:
    def __init__(self, locks: Optional[LockManager] = None):
        self.locks = locks or LocalLockManager()

    # ---------------- Sessions ---------------- #

    async def load_session(self, session_id: str) -> Optional[FlowSession]:
        raise NotImplementedError

    @asynccontextmanager
    async def lock_and_load_session(self, session_id: str, timeout: Optional[float] = None) -> AsyncIterator[SessionHandle]:
        """Hold the session's execution lock and yield its current state."""
        async with self.locks.hold(f"session:{session_id}", timeout):
            handle = SessionHandle(session_id=session_id, session=await self.load_session(session_id))
            try:
                yield handle
            finally:
                handle.active = False

    async def commit_session(self, handle: SessionHandle, new_state: FlowSession) -> FlowSession:
        if not handle.active:
            raise ConcurrencyError(f"Session {handle.session_id} committed outside its lock")
        if handle.session is None or new_state.session_id != handle.session_id:
            raise ConcurrencyError(f"Session {handle.session_id} cannot be committed from this handle")
        stored = await self._replace_session(
            new_state.evolve(revision=handle.session.revision + 1),
            expected_revision=handle.session.revision,
        )
        handle.session = stored
        return stored

    async def _replace_session(self, session: FlowSession, expected_revision: int) -> FlowSession:
        raise NotImplementedError

    async def create_session(self, session: FlowSession) -> FlowSession:
        """Insert a new session. Raises ConcurrencyError if the (flow, conversation) pair already has an open one."""
        raise NotImplementedError

    async def find_open_session(self, flow_id: str, conversation_id: str) -> Optional[FlowSession]:
        raise NotImplementedError

    async def find_open_sessions_for_conversation(self, tenant_id: str, conversation_id: str) -> List[FlowSession]:
        """Open sessions of a conversation, most recently active first."""
        raise NotImplementedError

    async def find_latest_session_for_conversation(self, tenant_id: str, conversation_id: str) -> Optional[FlowSession]:
        raise NotImplementedError

    async def find_session_with_message(self, tenant_id: str, conversation_id: str, dedupe_key: str) -> Optional[FlowSession]:
        """Any session of the conversation, open or closed, that already consumed this message."""
        raise NotImplementedError

    async def find_expired_sessions(self, now: datetime, limit: int = 100) -> List[FlowSession]:
        raise NotImplementedError

    # ---------------- Step records ---------------- #

    async def append_step_record(self, record: StepExecutionRecord) -> None:
        raise NotImplementedError

    async def update_step_record(self, record: StepExecutionRecord) -> None:
        raise NotImplementedError

    async def list_step_records(self, session_id: str) -> List[StepExecutionRecord]:
        raise NotImplementedError

    async def find_effect_record(self, session_id: str, node_id: str, step_order: int) -> Optional[StepExecutionRecord]:
        """Latest completed/waiting record for one step, i.e. proof that its side effect already ran."""
        raise NotImplementedError


class ScheduleStore:
    async def save_schedule(self, schedule: FollowUpSchedule) -> bool:
        """Insert a schedule unless one with the same id exists. Returns whether it was inserted."""
        raise NotImplementedError

    async def get_schedule(self, schedule_id: str) -> Optional[FollowUpSchedule]:
        raise NotImplementedError

    async def claim_due(self, now: datetime, limit: int) -> List[FollowUpSchedule]:
        """Atomically move due `scheduled` rows to `sent` so only one poller runs each."""
        raise NotImplementedError

    async def update_schedule(self, schedule: FollowUpSchedule) -> None:
        raise NotImplementedError

    async def cancel_for_session(self, session_id: str) -> int:
        raise NotImplementedError

    async def list_schedules(self, session_id: str) -> List[FollowUpSchedule]:
        raise NotImplementedError

    async def append_execution_log(self, entry: FollowUpExecutionLog) -> None:
        raise NotImplementedError

    async def list_execution_logs(self, schedule_id: str) -> List[FollowUpExecutionLog]:
        """Delivery attempts for one schedule, oldest first."""
        raise NotImplementedError


# ==================== In-memory implementations ====================

class InMemorySessionStore(SessionStore):
    def __init__(self, locks: Optional[LockManager] = None):
        super().__init__(locks)
        self._sessions: Dict[str, FlowSession] = {}
        self._records: Dict[str, List[StepExecutionRecord]] = {}

    async def load_session(self, session_id: str) -> Optional[FlowSession]:
        return self._sessions.get(session_id)

    async def _replace_session(self, session: FlowSession, expected_revision: int) -> FlowSession:
        current = self._sessions.get(session.session_id)
        if current is None or current.revision != expected_revision:
            raise ConcurrencyError(f"Session {session.session_id} changed since it was loaded")
        self._sessions[session.session_id] = session
        return session

    async def create_session(self, session: FlowSession) -> FlowSession:
        if session.session_id in self._sessions:
            raise ConcurrencyError(f"Session {session.session_id} already exists")
        if session.open_key and any(s.open_key == session.open_key for s in self._sessions.values()):
            raise ConcurrencyError(f"An open session already exists for {session.open_key}")
        self._sessions[session.session_id] = session
        return session

    async def find_open_session(self, flow_id: str, conversation_id: str) -> Optional[FlowSession]:
        key = f"{flow_id}:{conversation_id}"
        return next((s for s in self._sessions.values() if s.open_key == key), None)

    def _for_conversation(self, tenant_id: str, conversation_id: str) -> List[FlowSession]:
        sessions = [
            s for s in self._sessions.values()
            if s.tenant_id == tenant_id and s.conversation_id == conversation_id
        ]
        return sorted(sessions, key=lambda s: s.last_activity_at, reverse=True)

    async def find_open_sessions_for_conversation(self, tenant_id: str, conversation_id: str) -> List[FlowSession]:
        return [s for s in self._for_conversation(tenant_id, conversation_id) if s.status.is_open]

    async def find_latest_session_for_conversation(self, tenant_id: str, conversation_id: str) -> Optional[FlowSession]:
        sessions = self._for_conversation(tenant_id, conversation_id)
        return sessions[0] if sessions else None

    async def find_session_with_message(self, tenant_id: str, conversation_id: str, dedupe_key: str) -> Optional[FlowSession]:
        return next((s for s in self._for_conversation(tenant_id, conversation_id) if s.has_processed(dedupe_key)), None)

    async def find_expired_sessions(self, now: datetime, limit: int = 100) -> List[FlowSession]:
        expired = [s for s in self._sessions.values() if s.is_expired(now)]
        return sorted(expired, key=lambda s: s.expires_at)[:limit]

    async def append_step_record(self, record: StepExecutionRecord) -> None:
        self._records.setdefault(record.session_id, []).append(record)

    async def update_step_record(self, record: StepExecutionRecord) -> None:
        records = self._records.get(record.session_id, [])
        for index, existing in enumerate(records):
            if existing.record_id == record.record_id:
                records[index] = record
                return
        raise KeyError(f"Unknown step record {record.record_id}")

    async def list_step_records(self, session_id: str) -> List[StepExecutionRecord]:
        return list(self._records.get(session_id, []))

    async def find_effect_record(self, session_id: str, node_id: str, step_order: int) -> Optional[StepExecutionRecord]:
        for record in reversed(self._records.get(session_id, [])):
            if record.node_id == node_id and record.step_order == step_order and record.status in EFFECT_DONE_STATUSES:
                return record
        return None

    def all_sessions(self) -> Tuple[FlowSession, ...]:
        return tuple(self._sessions.values())


class InMemoryScheduleStore(ScheduleStore):
    def __init__(self):
        self._schedules: Dict[str, FollowUpSchedule] = {}
        self._logs: List[FollowUpExecutionLog] = []

    async def save_schedule(self, schedule: FollowUpSchedule) -> bool:
        if schedule.schedule_id in self._schedules:
            return False
        self._schedules[schedule.schedule_id] = schedule
        return True

    async def get_schedule(self, schedule_id: str) -> Optional[FollowUpSchedule]:
        return self._schedules.get(schedule_id)

    async def claim_due(self, now: datetime, limit: int) -> List[FollowUpSchedule]:
        due = sorted(
            (s for s in self._schedules.values() if s.status == FollowUpStatus.SCHEDULED and s.scheduled_for <= now),
            key=lambda s: s.scheduled_for,
        )[:limit]
        claimed = []
        for schedule in due:
            updated = schedule.model_copy(update={"status": FollowUpStatus.SENT, "sent_at": now})
            self._schedules[schedule.schedule_id] = updated
            claimed.append(updated)
        return claimed

    async def update_schedule(self, schedule: FollowUpSchedule) -> None:
        self._schedules[schedule.schedule_id] = schedule

    async def cancel_for_session(self, session_id: str) -> int:
        cancelled = 0
        for schedule_id, schedule in list(self._schedules.items()):
            if schedule.session_id == session_id and schedule.status == FollowUpStatus.SCHEDULED:
                self._schedules[schedule_id] = schedule.model_copy(update={"status": FollowUpStatus.CANCELLED})
                cancelled += 1
        return cancelled

    async def list_schedules(self, session_id: str) -> List[FollowUpSchedule]:
        return sorted(
            (s for s in self._schedules.values() if s.session_id == session_id),
            key=lambda s: s.scheduled_for,
        )

    async def append_execution_log(self, entry: FollowUpExecutionLog) -> None:
        self._logs.append(entry)

    async def list_execution_logs(self, schedule_id: str) -> List[FollowUpExecutionLog]:
        return [entry for entry in self._logs if entry.schedule_id == schedule_id]
