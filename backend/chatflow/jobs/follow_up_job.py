# /chatflow/jobs/follow_up_job.py

"""
Follow-up / timeout scheduling.

The interpreter never sleeps. Wait nodes ask for a resume at a point in
time and follow_up nodes ask for a deferred message; both become
FollowUpSchedule rows. An external poller (backend/scheduler.py, driven by
APScheduler) calls `run_due`, which claims due rows and either injects a
timer-fire event into the execution scheduler or sends the message.

Schedule ids are derived from (session, node, step order), so a node that
is re-run after a crash asks for the same schedule and gets no duplicate.
"""

import logging
import uuid
from datetime import datetime, timedelta
from typing import Any, Dict, Optional, TYPE_CHECKING

from chatflow.models.events import OutcomeStatus
from chatflow.models.execution import (
    DelayUnit, DeliveryStatus, FollowUpAction, FollowUpExecutionLog, FollowUpSchedule, FollowUpStatus, TriggerEvent
)
from chatflow.models.session import FlowSession
from chatflow.services.channel_service import ChannelSender, OutboundContent
from chatflow.services.session_store import ScheduleStore
from chatflow.utils.clock import Clock, system_clock
from chatflow.utils.errors import ExternalServiceError
from chatflow.utils.metrics import follow_up_counter

if TYPE_CHECKING:
    from chatflow.workflows.scheduler import ExecutionScheduler

logger = logging.getLogger(__name__)

RETRY_DELAY = timedelta(minutes=1)

_DELIVERY_STATUS = {
    "sent": DeliveryStatus.SUCCESS,
    "resumed": DeliveryStatus.SUCCESS,
    "retried": DeliveryStatus.RETRY,
    "failed": DeliveryStatus.FAILED,
}


class TimerScheduler:
    """What the engine needs from the timer mechanism."""

    async def schedule_resume(
        self, session: FlowSession, node_id: str, step_order: int, at: datetime, expires_at: Optional[datetime] = None,
        key: Optional[str] = None,
    ) -> str:
        raise NotImplementedError

    async def schedule_message(
        self, session: FlowSession, node_id: str, step_order: int, scheduled_for: datetime, content: OutboundContent, **details: Any
    ) -> str:
        raise NotImplementedError

    async def cancel_for_session(self, session_id: str) -> int:
        raise NotImplementedError


class FollowUpScheduler(TimerScheduler):
    def __init__(
        self,
        store: ScheduleStore,
        channel: ChannelSender,
        clock: Clock = system_clock,
        max_retries: int = 3,
        batch_size: int = 50,
    ):
        self.store = store
        self.channel = channel
        self.clock = clock
        self.max_retries = max_retries
        self.batch_size = batch_size

    # ==================== Scheduling ====================

    async def schedule_resume(
        self, session: FlowSession, node_id: str, step_order: int, at: datetime, expires_at: Optional[datetime] = None,
        key: Optional[str] = None,
    ) -> str:
        schedule_id = f"{session.session_id}:{node_id}:{step_order}"
        if key:
            schedule_id = f"{schedule_id}:{key}"
        schedule = FollowUpSchedule(
            schedule_id=schedule_id,
            session_id=session.session_id,
            flow_id=session.flow_id,
            tenant_id=session.tenant_id,
            conversation_id=session.conversation_id,
            contact_id=session.contact_id,
            node_id=node_id,
            channel_type=session.channel_type,
            action=FollowUpAction.RESUME,
            trigger_event=TriggerEvent.SPECIFIC_DATETIME,
            scheduled_for=at,
            max_retries=self.max_retries,
            created_at=self.clock.now(),
            expires_at=expires_at,
        )
        if await self.store.save_schedule(schedule):
            logger.info(f"Resume for session {session.session_id} at node {node_id} scheduled for {at.isoformat()}")
        return schedule_id

    async def schedule_message(
        self, session: FlowSession, node_id: str, step_order: int, scheduled_for: datetime, content: OutboundContent, **details: Any
    ) -> str:
        schedule_id = f"{session.session_id}:{node_id}:{step_order}:message"
        delay_unit = details.get("delay_unit")
        schedule = FollowUpSchedule(
            schedule_id=schedule_id,
            session_id=session.session_id,
            flow_id=session.flow_id,
            tenant_id=session.tenant_id,
            conversation_id=session.conversation_id,
            contact_id=session.contact_id,
            node_id=node_id,
            channel_type=session.channel_type,
            action=FollowUpAction.MESSAGE,
            message_type=content.type,
            message_content=content.text,
            media_url=content.media_url,
            caption=content.caption,
            trigger_event=details.get("trigger_event", TriggerEvent.RELATIVE_DELAY),
            delay_amount=details.get("delay_amount"),
            delay_unit=DelayUnit(delay_unit) if delay_unit else None,
            scheduled_for=scheduled_for,
            timezone=details.get("timezone", "UTC"),
            max_retries=details.get("max_retries", self.max_retries),
            variables=details.get("variables", {}),
            created_at=self.clock.now(),
            expires_at=details.get("expires_at"),
        )
        if await self.store.save_schedule(schedule):
            follow_up_counter.labels(action="message", status="scheduled").inc()
            logger.info(f"Follow-up {schedule_id} scheduled for {scheduled_for.isoformat()}")
        return schedule_id

    async def cancel_for_session(self, session_id: str) -> int:
        cancelled = await self.store.cancel_for_session(session_id)
        if cancelled:
            follow_up_counter.labels(action="any", status="cancelled").inc(cancelled)
            logger.info(f"Cancelled {cancelled} follow-up(s) for session {session_id}")
        return cancelled

    # ==================== Delivery ====================

    async def run_due(self, engine: "ExecutionScheduler", now: Optional[datetime] = None) -> Dict[str, int]:
        """Claim every due schedule and act on it. Returns counts per result."""
        now = now or self.clock.now()
        summary = {"resumed": 0, "sent": 0, "retried": 0, "failed": 0, "expired": 0}

        for schedule in await self.store.claim_due(now, self.batch_size):
            if schedule.action == FollowUpAction.RESUME:
                result = await self._deliver_resume(engine, schedule, now)
            else:
                result = await self._deliver_message(schedule, now)
            summary[result] += 1
            follow_up_counter.labels(action=schedule.action.value, status=result).inc()

        if any(summary.values()):
            logger.info(f"Follow-up run finished: {summary}")
        return summary

    async def _deliver_resume(self, engine: "ExecutionScheduler", schedule: FollowUpSchedule, now: datetime) -> str:
        # Late fires still go to the engine: it times the session out.
        tick = self.clock.monotonic()
        outcome = await engine.handle_timer_fire(schedule.session_id, schedule_id=schedule.schedule_id)
        if outcome.status == OutcomeStatus.RETRY_LATER:
            reason = f"engine busy: {outcome.detail}"
            result = await self._retry_or_fail(schedule, now, reason)
            await self._log_attempt(schedule, result, tick, error=reason)
            return result
        await self._log_attempt(schedule, "resumed", tick)
        return "resumed"

    async def _deliver_message(self, schedule: FollowUpSchedule, now: datetime) -> str:
        if schedule.is_expired(now):
            await self.store.update_schedule(schedule.model_copy(update={
                "status": FollowUpStatus.EXPIRED, "sent_at": None,
            }))
            logger.info(f"Follow-up {schedule.schedule_id} expired before delivery")
            return "expired"

        content = OutboundContent(
            type=schedule.message_type,
            text=schedule.message_content,
            media_url=schedule.media_url,
            caption=schedule.caption,
        )
        tick = self.clock.monotonic()
        try:
            message_id = await self.channel.send(schedule.conversation_id, schedule.channel_type, content)
        except ExternalServiceError as e:
            if not e.retryable:
                result = await self._fail(schedule, e.message)
            else:
                result = await self._retry_or_fail(schedule, now, e.message)
            await self._log_attempt(schedule, result, tick, error=e.message)
            return result
        await self._log_attempt(schedule, "sent", tick, message_id=message_id)
        return "sent"

    async def _log_attempt(
        self, schedule: FollowUpSchedule, result: str, tick: float,
        message_id: Optional[str] = None, error: Optional[str] = None,
    ) -> None:
        await self.store.append_execution_log(FollowUpExecutionLog(
            log_id=uuid.uuid4().hex,
            schedule_id=schedule.schedule_id,
            session_id=schedule.session_id,
            execution_attempt=schedule.retry_count + 1,
            status=_DELIVERY_STATUS[result],
            message_id=message_id,
            error_message=error,
            execution_duration_ms=int((self.clock.monotonic() - tick) * 1000),
            executed_at=self.clock.now(),
        ))

    async def _retry_or_fail(self, schedule: FollowUpSchedule, now: datetime, reason: str) -> str:
        if schedule.retry_count >= schedule.max_retries:
            return await self._fail(schedule, reason)
        retry_count = schedule.retry_count + 1
        await self.store.update_schedule(schedule.model_copy(update={
            "status": FollowUpStatus.SCHEDULED,
            "sent_at": None,
            "retry_count": retry_count,
            "scheduled_for": now + RETRY_DELAY * (2 ** (retry_count - 1)),
            "failed_reason": reason,
        }))
        logger.warning(f"Follow-up {schedule.schedule_id} will be retried ({retry_count}/{schedule.max_retries}): {reason}")
        return "retried"

    async def _fail(self, schedule: FollowUpSchedule, reason: str) -> str:
        await self.store.update_schedule(schedule.model_copy(update={
            "status": FollowUpStatus.FAILED, "sent_at": None, "failed_reason": reason,
        }))
        logger.error(f"Follow-up {schedule.schedule_id} failed: {reason}")
        return "failed"
