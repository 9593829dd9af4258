# /chatflow/workflows/engine.py

"""
Step interpreter: the session state machine.

`StepInterpreter.run` is called by the execution scheduler while it holds
the session's execution lock. It executes nodes one at a time until the
session suspends, terminates or fails, committing the new immutable
session value after every node:

1. resolve the cursor's node in the pinned flow version
2. write a `running` step record
3. run the handler (bounded by a per-node timeout)
4. retry retryable failures up to the node's limit, one record per attempt
5. finalize the step record, apply the NodeResult, commit

Side-effect idempotency: before a node runs, the interpreter looks for a
completed/waiting record of the same step (session, node, step order) and
hands its output to the handler as `prior_output`. Side-effecting handlers
skip their effect when it is present.
"""

import asyncio
import uuid
from datetime import datetime, timedelta
from typing import Any, Dict, Optional

import structlog

from chatflow.config.settings import settings
from chatflow.models.events import InboundMessage, ResumeInput, ResumeKind
from chatflow.models.execution import StepExecutionRecord, StepStatus
from chatflow.models.flow import FlowNode, FlowVersion
from chatflow.models.session import (
    MASKED_VALUE, BranchRecord, FlowSession, SessionStatus, WaitingContext, WaitingKind
)
from chatflow.services.session_store import SessionHandle, SessionStore
from chatflow.utils.alerting import AlertingService, alerting_service
from chatflow.utils.clock import Clock, system_clock
from chatflow.utils.errors import (
    ExecutionBudgetExceeded, FlowEngineError, FlowValidationError, GraphIntegrityError, NodeTimeoutError
)
from chatflow.utils.metrics import (
    node_executions_counter, session_transitions_counter, step_duration_histogram
)
from chatflow.workflows import expressions
from chatflow.workflows.catalog import EngineServices, NodeCatalog, NodeContext, NodeHandler
from chatflow.workflows.results import Advance, Branch, Fail, NodeResult, Suspend, Terminate

log = structlog.get_logger(__name__)

_RECORD_STATUS = {
    Advance: StepStatus.COMPLETED,
    Branch: StepStatus.COMPLETED,
    Terminate: StepStatus.COMPLETED,
    Suspend: StepStatus.WAITING,
}


def _fire_at(waiting: WaitingContext) -> Optional[datetime]:
    return waiting.resume_at if waiting.kind == WaitingKind.TIMER else waiting.timeout_at


class StepInterpreter:
    def __init__(
        self,
        store: SessionStore,
        catalog: NodeCatalog,
        services: EngineServices,
        clock: Clock = system_clock,
        alerts: AlertingService = alerting_service,
        max_steps: int = settings.max_steps_per_invocation,
        budget_seconds: float = settings.invocation_budget_seconds,
        node_timeout_seconds: float = settings.node_timeout_seconds,
        default_max_retries: int = settings.default_max_retries,
        retry_backoff_seconds: float = settings.retry_backoff_seconds,
        retry_backoff_max_seconds: float = settings.retry_backoff_max_seconds,
        session_ttl: timedelta = timedelta(hours=settings.session_ttl_hours),
        timer_grace: timedelta = timedelta(seconds=settings.timer_grace_seconds),
    ):
        self.store = store
        self.catalog = catalog
        self.services = services
        self.clock = clock
        self.alerts = alerts
        self.max_steps = max_steps
        self.budget_seconds = budget_seconds
        self.node_timeout_seconds = node_timeout_seconds
        self.default_max_retries = default_max_retries
        self.retry_backoff_seconds = retry_backoff_seconds
        self.retry_backoff_max_seconds = retry_backoff_max_seconds
        self.session_ttl = session_ttl
        self.timer_grace = timer_grace

    # ==================== Invocation loop ====================

    async def run(
        self,
        handle: SessionHandle,
        flow: Optional[FlowVersion],
        message: Optional[InboundMessage] = None,
        resume: Optional[ResumeInput] = None,
        state: Optional[FlowSession] = None,
    ) -> FlowSession:
        """
        Drive the locked session until it waits or ends. Returns the committed
        session. `state` is an uncommitted evolution of `handle.session` (e.g.
        with the inbound message id remembered); it is committed with the
        first step.
        """
        session = state or handle.session
        bound = log.bind(session_id=session.session_id, flow_id=session.flow_id)
        started = self.clock.monotonic()
        steps = 0

        if resume is not None:
            if session.status != SessionStatus.WAITING:
                raise FlowValidationError(f"Session {session.session_id} is not waiting")
            changes: Dict[str, Any] = {"status": SessionStatus.ACTIVE}
            if resume.kind == ResumeKind.MESSAGE:
                changes["user_interaction_count"] = session.user_interaction_count + 1
            session = session.evolve(**changes)
            bound.info("session_resumed", node_id=session.current_node_id, resume_kind=resume.kind.value)

        while session.status == SessionStatus.ACTIVE:
            if steps >= self.max_steps or self.clock.monotonic() - started > self.budget_seconds:
                return await self._fail_session(handle, session, ExecutionBudgetExceeded(
                    f"Invocation stopped after {steps} steps / {self.clock.monotonic() - started:.1f}s"
                ))

            node = flow.get_node(session.current_node_id) if flow is not None else None
            if node is None:
                error = GraphIntegrityError(
                    f"Node '{session.current_node_id}' is not part of flow {session.flow_id} v{session.flow_version}"
                )
                await self.alerts.send_critical_alert(error.message, {
                    "session_id": session.session_id,
                    "flow_id": session.flow_id,
                    "flow_version": session.flow_version,
                    "node_id": session.current_node_id,
                })
                return await self._fail_session(handle, session, error)

            try:
                handler = self.catalog.get(node.type)
            except FlowValidationError as e:
                return await self._fail_session(handle, session, e)

            session = await self._execute_step(handle, session, flow, node, handler, message, resume, started)
            resume = None
            steps += 1

        return session

    # ==================== One node ====================

    async def _execute_step(
        self,
        handle: SessionHandle,
        session: FlowSession,
        flow: FlowVersion,
        node: FlowNode,
        handler: NodeHandler,
        message: Optional[InboundMessage],
        resume: Optional[ResumeInput],
        started: float,
    ) -> FlowSession:
        bound = log.bind(session_id=session.session_id, node_id=node.id, node_type=node.type)
        step_order = session.node_execution_count
        prior = await self.store.find_effect_record(session.session_id, node.id, step_order)
        prior_output = (prior.output_data or {}) if prior is not None else None
        if prior_output is not None and handler.side_effecting:
            bound.info("step_effect_already_recorded", step_order=step_order, record_id=prior.record_id)

        configured = handler.max_retries(node)
        max_retries = self.default_max_retries if configured is None else configured
        failed_attempts = 0
        attempt = 0
        attempt_output: Dict[str, Any] = {}

        while True:
            now = self.clock.now()
            ctx = NodeContext(
                session=session,
                flow=flow,
                node=node,
                step_order=step_order,
                attempt=attempt,
                now=now,
                services=self.services,
                message=message,
                resume=resume,
                prior_output=prior_output,
                attempt_output=attempt_output,
                timer_grace=self.timer_grace,
            )
            record = StepExecutionRecord(
                record_id=uuid.uuid4().hex,
                session_id=session.session_id,
                flow_id=session.flow_id,
                node_id=node.id,
                node_type=node.type,
                step_order=step_order,
                input_data=self._input_snapshot(session, handler, node, ctx, resume),
                retry_count=attempt,
                max_retries=max_retries,
                started_at=now,
            )
            await self.store.append_step_record(record)

            tick = self.clock.monotonic()
            result = self._check_writes(handler, node, await self._invoke(handler, node, ctx))
            elapsed = self.clock.monotonic() - tick
            step_duration_histogram.labels(node_type=node.type).observe(elapsed)

            if isinstance(result, Fail):
                failed_attempts += 1
                await self._finish_record(record, result, elapsed)
                can_retry = (
                    result.retryable
                    and attempt < max_retries
                    and self.clock.monotonic() - started <= self.budget_seconds
                )
                if can_retry:
                    attempt += 1
                    attempt_output = dict(result.output)
                    bound.warning("node_retry", attempt=attempt, max_retries=max_retries,
                                  error_kind=result.error_kind, error=result.message)
                    await self._backoff(attempt)
                    continue
                bound.error("node_failed", error_kind=result.error_kind, error=result.message, attempts=attempt + 1)
                return await self._commit(handle, session, self._apply(session, node, result, failed_attempts))

            await self._finish_record(record, result, elapsed)
            bound.info("node_executed", result=type(result).__name__, attempt=attempt)
            break

        if isinstance(result, Suspend):
            result = await self._schedule_timer(session, node, step_order, result)
        return await self._commit(handle, session, self._apply(session, node, result, failed_attempts))

    async def _invoke(self, handler: NodeHandler, node: FlowNode, ctx: NodeContext) -> NodeResult:
        timeout = float(node.data.get("node_timeout_seconds") or self.node_timeout_seconds)
        try:
            return await asyncio.wait_for(handler.execute(node, ctx), timeout=timeout)
        except asyncio.TimeoutError:
            return Fail(NodeTimeoutError.kind, f"Node '{node.id}' did not finish within {timeout}s", retryable=True)
        except FlowEngineError as e:
            return Fail(e.kind, e.message, retryable=e.retryable)
        except Exception as e:
            log.exception("node_handler_crashed", session_id=ctx.session.session_id, node_id=node.id)
            return Fail("internal", f"{type(e).__name__}: {e}", retryable=False)

    def _check_writes(self, handler: NodeHandler, node: FlowNode, result: NodeResult) -> NodeResult:
        """Reject variable writes the handler did not declare for this node."""
        variables = getattr(result, "variables", None)
        if not variables:
            return result
        declared = handler.declared_writes(node)
        for key, variable in variables.items():
            if key not in declared:
                return Fail(FlowValidationError.kind, f"Node '{node.id}' wrote undeclared variable '{key}'")
            expected = declared[key]
            if expected is not None and variable.type != expected:
                return Fail(
                    FlowValidationError.kind,
                    f"Node '{node.id}' wrote '{key}' as {variable.type.value}, declared {expected.value}",
                )
        return result

    async def _backoff(self, attempt: int) -> None:
        if self.retry_backoff_seconds <= 0:
            return
        delay = min(self.retry_backoff_seconds * (2 ** (attempt - 1)), self.retry_backoff_max_seconds)
        await asyncio.sleep(delay)

    async def _schedule_timer(self, session: FlowSession, node: FlowNode, step_order: int, result: Suspend) -> Suspend:
        """Ask the timer scheduler for the resume (or deadline) of a suspended node."""
        waiting = result.waiting_context
        fire_at = _fire_at(waiting)
        if fire_at is None or self.services.timers is None:
            return result
        previous = session.waiting_context
        if (
            waiting.schedule_id
            and previous is not None
            and previous.node_id == node.id
            and previous.schedule_id == waiting.schedule_id
            and _fire_at(previous) == fire_at
        ):
            # Re-suspended on the same deadline: the armed timer still stands.
            return result
        # Once unpaused, the plain step id may already belong to the pre-pause timer.
        key = f"at-{int(fire_at.timestamp())}" if session.resumed_at is not None else None
        schedule_id = await self.services.timers.schedule_resume(
            session, node.id, step_order, fire_at, expires_at=waiting.timeout_at, key=key
        )
        return Suspend(
            waiting.model_copy(update={"schedule_id": schedule_id}),
            variables=result.variables,
            output={**result.output, "schedule_id": schedule_id},
        )

    # ==================== Records & snapshots ====================

    def _input_snapshot(
        self, session: FlowSession, handler: NodeHandler, node: FlowNode, ctx: NodeContext, resume: Optional[ResumeInput]
    ) -> Dict[str, Any]:
        scope = ctx.scope()
        reads: Dict[str, Any] = {}
        for path in handler.declared_reads(node):
            variable = session.variables.get(path.split(".")[0])
            if variable is not None and variable.is_encrypted:
                reads[path] = MASKED_VALUE
                continue
            value = expressions.resolve_path(path, scope)
            reads[path] = None if value is expressions.UNDEFINED else value

        snapshot: Dict[str, Any] = {"reads": reads}
        if ctx.message is not None:
            snapshot["message_id"] = ctx.message.message_id
            snapshot["message_type"] = ctx.message.message_type
        if resume is not None:
            snapshot["resume"] = resume.kind.value
        return snapshot

    async def _finish_record(self, record: StepExecutionRecord, result: NodeResult, elapsed: float) -> None:
        now = self.clock.now()
        output = dict(result.output)
        variables = getattr(result, "variables", None) or {}
        if variables:
            output["writes"] = {key: variable.display_value() for key, variable in variables.items()}

        if isinstance(result, Fail):
            status = StepStatus.TIMEOUT if result.error_kind == NodeTimeoutError.kind else StepStatus.FAILED
            updates = {"error_kind": result.error_kind, "error_message": result.message}
        else:
            status = _RECORD_STATUS[type(result)]
            updates = {}

        await self.store.update_step_record(record.model_copy(update={
            "status": status,
            "output_data": output,
            "completed_at": now,
            "duration_ms": int(elapsed * 1000),
            **updates,
        }))
        node_executions_counter.labels(node_type=record.node_type, status=status.value).inc()

    # ==================== Applying results ====================

    def _apply(self, session: FlowSession, node: FlowNode, result: NodeResult, failed_attempts: int) -> FlowSession:
        now = self.clock.now()
        changes: Dict[str, Any] = {"last_activity_at": now}
        if failed_attempts:
            changes["error_count"] = session.error_count + failed_attempts

        if isinstance(result, Fail):
            changes.update(
                status=SessionStatus.FAILED,
                last_error_kind=result.error_kind,
                last_error_message=result.message,
                completed_at=now,
                waiting_context=None,
            )
            return session.evolve(**changes)

        if result.variables:
            changes["variables"] = session.with_variables(result.variables)

        if isinstance(result, Suspend):
            waiting = result.waiting_context
            changes.update(
                status=SessionStatus.WAITING,
                waiting_context=waiting,
                expires_at=waiting.timeout_at or now + self.session_ttl,
            )
            return session.evolve(**changes)

        # Advance, Branch and Terminate all complete the node.
        changes.update(
            execution_path=session.execution_path + (node.id,),
            node_execution_count=session.node_execution_count + 1,
            previous_node_id=node.id,
            waiting_context=None,
        )

        if isinstance(result, Terminate):
            changes.update(status=result.final_status, completed_at=now)
            if result.reason and result.final_status != SessionStatus.COMPLETED:
                changes["last_error_message"] = result.reason
            return session.evolve(**changes)

        if isinstance(result, Advance) and result.contact_updates:
            changes["contact"] = {**session.contact, **result.contact_updates}
        if isinstance(result, Branch) and result.next_node_id:
            changes["branching_history"] = session.branching_history + (
                BranchRecord(node_id=node.id, label=result.branch_label, target=result.next_node_id, at=now),
            )

        if result.next_node_id:
            changes.update(current_node_id=result.next_node_id, expires_at=now + self.session_ttl)
        else:
            changes.update(status=SessionStatus.COMPLETED, completed_at=now)
        return session.evolve(**changes)

    async def _commit(self, handle: SessionHandle, before: FlowSession, after: FlowSession) -> FlowSession:
        committed = await self.store.commit_session(handle, after)
        if committed.status != before.status:
            session_transitions_counter.labels(status=committed.status.value).inc()
            log.info("session_status_changed", session_id=committed.session_id,
                     from_status=before.status.value, to_status=committed.status.value,
                     node_id=committed.current_node_id)
        if committed.status == SessionStatus.ABANDONED and self.services.timers is not None:
            await self.services.timers.cancel_for_session(committed.session_id)
        return committed

    async def _fail_session(self, handle: SessionHandle, session: FlowSession, error: FlowEngineError) -> FlowSession:
        now = self.clock.now()
        log.error("session_failed", session_id=session.session_id, node_id=session.current_node_id,
                  error_kind=error.kind, error=error.message)
        failed = session.evolve(
            status=SessionStatus.FAILED,
            error_count=session.error_count + 1,
            last_error_kind=error.kind,
            last_error_message=error.message,
            completed_at=now,
            last_activity_at=now,
            waiting_context=None,
        )
        return await self._commit(handle, session, failed)
