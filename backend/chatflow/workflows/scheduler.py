# /chatflow/workflows/scheduler.py

"""
Execution scheduler: turns external events into interpreter invocations.

Every public coroutine returns an EngineOutcome and never raises. Lock
timeouts and store outages become `retry_later` so the transport can
redeliver; everything else is reported with the session's final status.

Session creation is serialized per (flow, conversation) by a creation
lock; the store's unique open-session key backs this up across workers.
"""

import re
import uuid
from datetime import datetime, timedelta
from typing import Any, Awaitable, Callable, Dict, List, Optional

import structlog

from chatflow.config.settings import settings
from chatflow.models.events import EngineOutcome, InboundMessage, OutcomeStatus, ResumeInput, ResumeKind
from chatflow.models.execution import StepExecutionRecord
from chatflow.models.flow import FlowVersion
from chatflow.models.session import FlowSession, SessionStatus, SessionVariable, WaitingContext, WaitingKind
from chatflow.services.cache_service import CacheService
from chatflow.services.flow_source import FlowDefinitionSource
from chatflow.services.session_store import SessionHandle, SessionStore
from chatflow.utils.clock import Clock, system_clock
from chatflow.utils.errors import ConcurrencyError, FlowValidationError, StoreUnavailableError
from chatflow.utils.metrics import inbound_events_counter, session_transitions_counter
from chatflow.workflows.engine import StepInterpreter
from chatflow.workflows.validator import validate_flow_version

log = structlog.get_logger(__name__)

# Outcomes after which an inbound message counts as consumed.
_CONSUMED = frozenset({
    OutcomeStatus.COMPLETED, OutcomeStatus.SUSPENDED, OutcomeStatus.FAILED, OutcomeStatus.TIMED_OUT,
    OutcomeStatus.ABANDONED, OutcomeStatus.ACTIVE, OutcomeStatus.DUPLICATE,
})


# ==================== Trigger matching ====================

def trigger_matches(flow: FlowVersion, message: InboundMessage) -> bool:
    """Whether `message` satisfies the entry node conditions of `flow`."""
    entry = flow.entry_node()
    if entry is None:
        return False
    data = entry.data

    channels = data.get("channel_types") or data.get("channels")
    if channels and message.channel_type not in channels:
        return False

    keywords = [str(k).strip().lower() for k in data.get("keywords") or [] if str(k).strip()]
    match = str(data.get("match") or ("contains" if keywords else "any")).lower()
    if match == "any" or not keywords:
        return match == "any"

    text = (message.text or "").strip().lower()
    if not text:
        return False
    if match == "exact":
        return text in keywords
    if match == "contains":
        return any(k in text for k in keywords)
    if match == "starts_with":
        return any(text.startswith(k) for k in keywords)
    if match == "regex":
        for pattern in keywords:
            try:
                if re.search(pattern, text, re.IGNORECASE):
                    return True
            except re.error:
                log.warning("invalid_trigger_regex", flow_id=flow.flow_id, pattern=pattern)
        return False
    log.warning("unknown_trigger_match", flow_id=flow.flow_id, match=match)
    return False


def select_flow(candidates: List[FlowVersion]) -> Optional[FlowVersion]:
    """Highest priority wins, then the most recently activated, then the lowest flow id."""
    if not candidates:
        return None

    def _key(flow: FlowVersion):
        activated = flow.activated_at.timestamp() if flow.activated_at else float("-inf")
        return (-flow.priority, -activated, flow.flow_id)

    return sorted(candidates, key=_key)[0]


class ExecutionScheduler:
    def __init__(
        self,
        store: SessionStore,
        flows: FlowDefinitionSource,
        interpreter: StepInterpreter,
        cache: Optional[CacheService] = None,
        clock: Clock = system_clock,
        processed_history: int = settings.processed_message_history,
        lock_timeout: float = settings.lock_timeout_seconds,
    ):
        self.store = store
        self.flows = flows
        self.interpreter = interpreter
        self.cache = cache
        self.clock = clock
        self.processed_history = processed_history
        self.lock_timeout = lock_timeout

    @property
    def timers(self):
        return self.interpreter.services.timers

    # ==================== Boundary ====================

    async def _guard(self, kind: str, operation: Callable[[], Awaitable[EngineOutcome]], **context: Any) -> EngineOutcome:
        try:
            outcome = await operation()
        except (ConcurrencyError, StoreUnavailableError) as e:
            log.warning("event_deferred", kind=kind, error_kind=e.kind, error=e.message, **context)
            outcome = EngineOutcome(status=OutcomeStatus.RETRY_LATER, error_kind=e.kind, detail=e.message)
        except Exception as e:
            log.exception("event_failed", kind=kind, **context)
            outcome = EngineOutcome(status=OutcomeStatus.FAILED, error_kind="internal", detail=f"{type(e).__name__}: {e}")
        inbound_events_counter.labels(kind=kind, outcome=outcome.status.value).inc()
        return outcome

    def _lock(self, session_id: str):
        return self.store.lock_and_load_session(session_id, timeout=self.lock_timeout)

    async def _pinned_flow(self, session: FlowSession) -> Optional[FlowVersion]:
        return await self.flows.get_flow_version(session.flow_id, session.flow_version)

    async def _time_out(self, handle: SessionHandle, session: FlowSession, reason: str) -> FlowSession:
        now = self.clock.now()
        timed_out = await self.store.commit_session(handle, session.evolve(
            status=SessionStatus.TIMEOUT,
            waiting_context=None,
            completed_at=now,
            last_activity_at=now,
            last_error_kind="timeout",
            last_error_message=reason,
        ))
        session_transitions_counter.labels(status=SessionStatus.TIMEOUT.value).inc()
        log.info("session_timed_out", session_id=session.session_id, node_id=session.current_node_id, reason=reason)
        return timed_out

    async def _abandon(self, handle: SessionHandle, session: FlowSession, reason: str) -> FlowSession:
        now = self.clock.now()
        abandoned = await self.store.commit_session(handle, session.evolve(
            status=SessionStatus.ABANDONED,
            waiting_context=None,
            completed_at=now,
            last_activity_at=now,
            last_error_message=reason,
        ))
        session_transitions_counter.labels(status=SessionStatus.ABANDONED.value).inc()
        if self.timers is not None:
            await self.timers.cancel_for_session(session.session_id)
        log.info("session_abandoned", session_id=session.session_id, reason=reason)
        return abandoned

    # ==================== Inbound messages ====================

    async def handle_inbound_message(self, message: InboundMessage) -> EngineOutcome:
        outcome = await self._guard(
            "message", lambda: self._handle_inbound_message(message),
            conversation_id=message.conversation_id, message_id=message.message_id,
        )
        if outcome.status in _CONSUMED and outcome.status != OutcomeStatus.DUPLICATE and self.cache is not None:
            await self.cache.mark_processed(message.tenant_id, message.conversation_id, message.dedupe_key)
        return outcome

    async def _handle_inbound_message(self, message: InboundMessage) -> EngineOutcome:
        key = message.dedupe_key
        if self.cache is not None and await self.cache.was_processed(message.tenant_id, message.conversation_id, key):
            log.info("duplicate_message_dropped", conversation_id=message.conversation_id, dedupe_key=key, source="cache")
            return EngineOutcome(status=OutcomeStatus.DUPLICATE, detail="message already processed")

        # Re-evaluate when the target session closes or appears while we wait for a lock.
        for _ in range(3):
            open_sessions = await self.store.find_open_sessions_for_conversation(message.tenant_id, message.conversation_id)
            if open_sessions:
                outcome = await self._deliver_to_session(open_sessions[0].session_id, message)
                if outcome is not None:
                    return outcome
                continue

            latest = await self.store.find_latest_session_for_conversation(message.tenant_id, message.conversation_id)
            if latest is not None and latest.has_processed(key):
                log.info("duplicate_message_dropped", session_id=latest.session_id, dedupe_key=key, source="session")
                return EngineOutcome.for_session(OutcomeStatus.DUPLICATE, latest, "message already processed")

            flow = select_flow([
                f for f in await self.flows.list_active_flows(message.tenant_id) if trigger_matches(f, message)
            ])
            if flow is None:
                log.info("no_flow_matched", conversation_id=message.conversation_id, channel=message.channel_type)
                return EngineOutcome(status=OutcomeStatus.NO_MATCH)

            outcome = await self._create_and_run(
                flow,
                conversation_id=message.conversation_id,
                contact_id=message.contact_id,
                channel_type=message.channel_type,
                contact=dict(message.contact),
                message=message,
                on_existing="route",
            )
            if outcome is not None:
                return outcome

        raise ConcurrencyError(f"Conversation {message.conversation_id} kept changing while routing a message")

    async def _deliver_to_session(self, session_id: str, message: InboundMessage) -> Optional[EngineOutcome]:
        """Apply a message to an open session. None means the session closed meanwhile."""
        async with self._lock(session_id) as handle:
            session = handle.session
            if session is None or session.is_terminal:
                return None
            now = self.clock.now()
            if session.is_expired(now):
                return EngineOutcome.from_session(await self._time_out(handle, session, "session expired"))
            if session.has_processed(message.dedupe_key):
                log.info("duplicate_message_dropped", session_id=session_id, dedupe_key=message.dedupe_key, source="session")
                return EngineOutcome.for_session(OutcomeStatus.DUPLICATE, session, "message already processed")

            if session.status == SessionStatus.PAUSED:
                log.info("message_ignored", session_id=session_id, reason="session paused")
                return EngineOutcome.for_session(OutcomeStatus.IGNORED, session, "session is paused")

            remembered = session.evolve(
                processed_message_ids=session.remember_message(message.dedupe_key, self.processed_history),
                contact={**session.contact, **message.contact},
                last_activity_at=now,
            )
            flow = await self._pinned_flow(session)

            if session.status == SessionStatus.WAITING:
                waiting = session.waiting_context
                if waiting is None or not waiting.accepts_message(message.message_type):
                    log.info("message_ignored", session_id=session_id, reason="not the awaited input",
                             message_type=message.message_type)
                    return EngineOutcome.for_session(OutcomeStatus.IGNORED, session, "session is waiting for other input")
                resume = ResumeInput(kind=ResumeKind.MESSAGE, message=message)
                session = await self.interpreter.run(handle, flow, message=message, resume=resume, state=remembered)
            else:
                # Active at rest: a previous invocation died mid-loop. Continue from the cursor.
                log.warning("session_recovery", session_id=session_id, node_id=session.current_node_id)
                session = await self.interpreter.run(handle, flow, message=message, state=remembered)
            return EngineOutcome.from_session(session)

    # ==================== Session creation ====================

    async def trigger_flow(
        self,
        flow_id: str,
        tenant_id: str,
        conversation_id: str,
        contact_id: str,
        channel_type: str = "whatsapp",
        variables: Optional[Dict[str, Any]] = None,
        contact: Optional[Dict[str, Any]] = None,
        entry_node_id: Optional[str] = None,
        force: bool = False,
    ) -> EngineOutcome:
        """Explicit API start, bypassing trigger matching."""

        async def _trigger() -> EngineOutcome:
            flow = await self.flows.get_active_version(flow_id)
            if flow is None or flow.tenant_id != tenant_id:
                return EngineOutcome(status=OutcomeStatus.NOT_FOUND, detail=f"No active flow {flow_id}")
            outcome = await self._create_and_run(
                flow,
                conversation_id=conversation_id,
                contact_id=contact_id,
                channel_type=channel_type,
                contact=contact or {},
                variables=variables or {},
                entry_node_id=entry_node_id,
                on_existing="force" if force else "conflict",
            )
            return outcome

        return await self._guard("trigger", _trigger, flow_id=flow_id, conversation_id=conversation_id)

    async def _create_and_run(
        self,
        flow: FlowVersion,
        conversation_id: str,
        contact_id: str,
        channel_type: str,
        contact: Dict[str, Any],
        variables: Optional[Dict[str, Any]] = None,
        message: Optional[InboundMessage] = None,
        entry_node_id: Optional[str] = None,
        on_existing: str = "conflict",
    ) -> Optional[EngineOutcome]:
        """
        Create a session at the entry node and run it. When an open session
        already exists: "conflict" reports it, "force" abandons it first and
        "route" returns None so the caller can deliver to it instead.
        """
        check = validate_flow_version(flow, self.interpreter.catalog.types())
        if not check["is_valid"]:
            log.error("flow_version_invalid", flow_id=flow.flow_id, version=flow.version, code=check["error_code"])
            return EngineOutcome(status=OutcomeStatus.FAILED, error_kind=FlowValidationError.kind, detail=check["message"])

        entry = flow.get_node(entry_node_id) if entry_node_id else flow.entry_node()
        if entry is None:
            return EngineOutcome(
                status=OutcomeStatus.FAILED, error_kind=FlowValidationError.kind,
                detail=f"Unknown entry node '{entry_node_id}'",
            )

        async with self.store.locks.hold(f"open:{flow.flow_id}:{conversation_id}", self.lock_timeout):
            # A redelivered copy may have waited here while the first copy ran to completion.
            if message is not None:
                consumed = await self.store.find_session_with_message(
                    flow.tenant_id, conversation_id, message.dedupe_key
                )
                if consumed is not None:
                    log.info("duplicate_message_dropped", session_id=consumed.session_id,
                             dedupe_key=message.dedupe_key, source="creation_lock")
                    return EngineOutcome.for_session(OutcomeStatus.DUPLICATE, consumed, "message already processed")

            existing = await self.store.find_open_session(flow.flow_id, conversation_id)
            if existing is not None:
                if on_existing == "route":
                    return None
                if on_existing != "force":
                    return EngineOutcome.for_session(OutcomeStatus.CONFLICT, existing, "an open session already exists")
                async with self._lock(existing.session_id) as old:
                    if old.session is not None and old.session.status.is_open:
                        await self._abandon(old, old.session, "replaced by an explicit trigger")

            now = self.clock.now()
            session = FlowSession(
                session_id=uuid.uuid4().hex,
                flow_id=flow.flow_id,
                flow_version=flow.version,
                tenant_id=flow.tenant_id,
                conversation_id=conversation_id,
                contact_id=contact_id,
                channel_type=channel_type,
                status=SessionStatus.ACTIVE,
                current_node_id=entry.id,
                trigger_node_id=entry.id,
                variables={key: SessionVariable.build(key, value) for key, value in (variables or {}).items()},
                contact=contact,
                processed_message_ids=(message.dedupe_key,) if message else (),
                started_at=now,
                last_activity_at=now,
                expires_at=now + self.interpreter.session_ttl,
            )
            await self.store.create_session(session)
            session_transitions_counter.labels(status=SessionStatus.ACTIVE.value).inc()
            log.info("session_created", session_id=session.session_id, flow_id=flow.flow_id,
                     flow_version=flow.version, conversation_id=conversation_id, entry_node_id=entry.id)

            async with self._lock(session.session_id) as handle:
                session = await self.interpreter.run(handle, flow, message=message)
        return EngineOutcome.from_session(session)

    # ==================== Timers & callbacks ====================

    async def handle_timer_fire(self, session_id: str, schedule_id: Optional[str] = None) -> EngineOutcome:
        return await self._guard(
            "timer", lambda: self._handle_timer_fire(session_id, schedule_id),
            session_id=session_id, schedule_id=schedule_id,
        )

    async def _handle_timer_fire(self, session_id: str, schedule_id: Optional[str]) -> EngineOutcome:
        async with self._lock(session_id) as handle:
            session = handle.session
            if session is None:
                return EngineOutcome(status=OutcomeStatus.NOT_FOUND, session_id=session_id)
            if session.is_terminal:
                log.info("timer_ignored", session_id=session_id, reason="session is terminal")
                return EngineOutcome.for_session(OutcomeStatus.IGNORED, session, "session is terminal")
            if session.status == SessionStatus.PAUSED:
                log.info("timer_ignored", session_id=session_id, reason="session paused")
                return EngineOutcome.for_session(OutcomeStatus.IGNORED, session, "session is paused")

            now = self.clock.now()
            if session.is_expired(now):
                return EngineOutcome.from_session(await self._time_out(handle, session, "session expired"))

            waiting = session.waiting_context
            if session.status != SessionStatus.WAITING or waiting is None:
                return EngineOutcome.for_session(OutcomeStatus.IGNORED, session, "session is not waiting")
            if schedule_id and waiting.schedule_id and schedule_id != waiting.schedule_id:
                log.info("timer_ignored", session_id=session_id, reason="stale schedule", schedule_id=schedule_id)
                return EngineOutcome.for_session(OutcomeStatus.IGNORED, session, "stale timer")

            if self._deadline_passed(waiting, now):
                return EngineOutcome.from_session(await self._time_out(handle, session, "waiting deadline passed"))
            if waiting.kind != WaitingKind.TIMER:
                return EngineOutcome.for_session(OutcomeStatus.IGNORED, session, "deadline not reached")

            flow = await self._pinned_flow(session)
            resume = ResumeInput(kind=ResumeKind.TIMER, schedule_id=schedule_id)
            session = await self.interpreter.run(handle, flow, resume=resume)
            return EngineOutcome.from_session(session)

    @staticmethod
    def _deadline_passed(waiting: WaitingContext, now: datetime) -> bool:
        # A wait-node timer may fire up to its deadline; input and callback waits end at it.
        if waiting.timeout_at is None:
            return False
        if waiting.kind == WaitingKind.TIMER:
            return now > waiting.timeout_at
        return now >= waiting.timeout_at

    async def handle_callback(self, session_id: str, payload: Optional[Dict[str, Any]] = None) -> EngineOutcome:
        """An external system reporting back to a node waiting for a callback."""

        async def _callback() -> EngineOutcome:
            async with self._lock(session_id) as handle:
                session = handle.session
                if session is None:
                    return EngineOutcome(status=OutcomeStatus.NOT_FOUND, session_id=session_id)
                if session.is_terminal or session.status == SessionStatus.PAUSED:
                    return EngineOutcome.for_session(OutcomeStatus.IGNORED, session, f"session is {session.status.value}")
                waiting = session.waiting_context
                now = self.clock.now()
                if session.is_expired(now) or (waiting is not None and self._deadline_passed(waiting, now)):
                    return EngineOutcome.from_session(await self._time_out(handle, session, "callback deadline passed"))
                if session.status != SessionStatus.WAITING or waiting is None or waiting.kind != WaitingKind.CALLBACK:
                    return EngineOutcome.for_session(OutcomeStatus.IGNORED, session, "session is not waiting for a callback")

                flow = await self._pinned_flow(session)
                resume = ResumeInput(kind=ResumeKind.CALLBACK, payload=payload or {})
                session = await self.interpreter.run(handle, flow, resume=resume)
                return EngineOutcome.from_session(session)

        return await self._guard("callback", _callback, session_id=session_id)

    # ==================== Operator actions ====================

    async def pause_session(self, session_id: str) -> EngineOutcome:
        async def _pause() -> EngineOutcome:
            async with self._lock(session_id) as handle:
                session = handle.session
                if session is None:
                    return EngineOutcome(status=OutcomeStatus.NOT_FOUND, session_id=session_id)
                if session.is_terminal:
                    return EngineOutcome.for_session(OutcomeStatus.IGNORED, session, "session is terminal")
                if session.status == SessionStatus.PAUSED:
                    return EngineOutcome.from_session(session)
                now = self.clock.now()
                if session.is_expired(now):
                    return EngineOutcome.from_session(await self._time_out(handle, session, "session expired"))

                paused = await self.store.commit_session(handle, session.evolve(
                    status=SessionStatus.PAUSED, paused_at=now, last_activity_at=now,
                ))
                session_transitions_counter.labels(status=SessionStatus.PAUSED.value).inc()
                log.info("session_paused", session_id=session_id, node_id=session.current_node_id)
                return EngineOutcome.from_session(paused)

        return await self._guard("pause", _pause, session_id=session_id)

    async def resume_session(self, session_id: str) -> EngineOutcome:
        """
        Unpause. Deadlines were frozen while paused, so every deadline moves
        forward by the paused duration and the resume timer is re-armed.
        """

        async def _resume() -> EngineOutcome:
            async with self._lock(session_id) as handle:
                session = handle.session
                if session is None:
                    return EngineOutcome(status=OutcomeStatus.NOT_FOUND, session_id=session_id)
                if session.status != SessionStatus.PAUSED:
                    return EngineOutcome.for_session(OutcomeStatus.IGNORED, session, "session is not paused")

                now = self.clock.now()
                paused_for = now - session.paused_at if session.paused_at else timedelta(0)
                waiting = session.waiting_context.shifted(paused_for) if session.waiting_context else None
                resumed = session.evolve(
                    status=SessionStatus.WAITING if waiting else SessionStatus.ACTIVE,
                    paused_at=None,
                    resumed_at=now,
                    expires_at=session.expires_at + paused_for if session.expires_at else None,
                    last_activity_at=now,
                    waiting_context=waiting,
                )
                if waiting is not None and self.timers is not None:
                    fire_at = waiting.resume_at if waiting.kind == WaitingKind.TIMER else waiting.timeout_at
                    if fire_at is not None:
                        schedule_id = await self.timers.schedule_resume(
                            resumed, waiting.node_id, resumed.node_execution_count, fire_at,
                            expires_at=waiting.timeout_at, key=f"resumed-{int(now.timestamp())}",
                        )
                        resumed = resumed.evolve(waiting_context=waiting.model_copy(update={"schedule_id": schedule_id}))

                session_transitions_counter.labels(status=resumed.status.value).inc()
                log.info("session_unpaused", session_id=session_id, paused_seconds=paused_for.total_seconds())
                if resumed.status == SessionStatus.ACTIVE:
                    flow = await self._pinned_flow(session)
                    return EngineOutcome.from_session(await self.interpreter.run(handle, flow, state=resumed))
                return EngineOutcome.from_session(await self.store.commit_session(handle, resumed))

        return await self._guard("resume", _resume, session_id=session_id)

    async def cancel_session(self, session_id: str, reason: str = "cancelled by operator") -> EngineOutcome:
        async def _cancel() -> EngineOutcome:
            async with self._lock(session_id) as handle:
                session = handle.session
                if session is None:
                    return EngineOutcome(status=OutcomeStatus.NOT_FOUND, session_id=session_id)
                if session.is_terminal:
                    return EngineOutcome.for_session(OutcomeStatus.IGNORED, session, "session is terminal")
                return EngineOutcome.from_session(await self._abandon(handle, session, reason))

        return await self._guard("cancel", _cancel, session_id=session_id)

    # ==================== Maintenance & inspection ====================

    async def expire_stale_sessions(self, now: Optional[datetime] = None, limit: int = 100) -> int:
        """Time out open sessions whose deadline passed without any event."""
        now = now or self.clock.now()
        expired = 0
        for candidate in await self.store.find_expired_sessions(now, limit):
            try:
                async with self._lock(candidate.session_id) as handle:
                    if handle.session is not None and handle.session.is_expired(now):
                        await self._time_out(handle, handle.session, "session expired")
                        expired += 1
            except ConcurrencyError:
                log.info("expiry_skipped", session_id=candidate.session_id, reason="session busy")
        if expired:
            log.info("sessions_expired", count=expired)
        return expired

    async def get_session(self, session_id: str) -> Optional[FlowSession]:
        return await self.store.load_session(session_id)

    async def list_step_records(self, session_id: str) -> List[StepExecutionRecord]:
        return await self.store.list_step_records(session_id)
