# /chatflow/routes/sessions.py

import structlog
from fastapi import APIRouter, Depends, HTTPException
from fastapi.responses import JSONResponse

from chatflow.config.settings import settings
from chatflow.models.api import (
    APIResponse, CallbackRequest, CancelRequest, InboundMessageRequest, SessionView,
    TimerFireRequest, TriggerFlowRequest
)
from chatflow.models.events import EngineOutcome, InboundMessage, OutcomeStatus
from chatflow.models.session import FlowSession
from chatflow.utils.dependencies import get_engine, verify_api_key
from chatflow.workflows.scheduler import ExecutionScheduler

# Thin HTTP surface over the execution scheduler. The webhook layer posts
# normalized inbound messages here; operators pause, resume, cancel and
# inspect sessions. `retry_later` outcomes are returned as 503 so the
# sender redelivers.

router = APIRouter(
    tags=["Flow Sessions"],
    dependencies=[Depends(verify_api_key)]
)

log = structlog.get_logger(__name__)

_HTTP_STATUS = {
    OutcomeStatus.NOT_FOUND: 404,
    OutcomeStatus.CONFLICT: 409,
    OutcomeStatus.RETRY_LATER: 503,
}


def _respond(outcome: EngineOutcome) -> JSONResponse:
    body = APIResponse.from_outcome(outcome, settings.api_version)
    return JSONResponse(body.model_dump(mode="json"), status_code=_HTTP_STATUS.get(outcome.status, 200))


def _view(session: FlowSession) -> SessionView:
    waiting = session.waiting_context
    return SessionView(
        session_id=session.session_id,
        flow_id=session.flow_id,
        flow_version=session.flow_version,
        tenant_id=session.tenant_id,
        conversation_id=session.conversation_id,
        contact_id=session.contact_id,
        status=session.status.value,
        current_node_id=session.current_node_id,
        execution_path=list(session.execution_path),
        variables=session.masked_variables(),
        waiting_for=waiting.model_dump(mode="json", include={
            "node_id", "kind", "expected_input_type", "resume_at", "timeout_at", "attempts",
        }) if waiting else None,
        started_at=session.started_at,
        last_activity_at=session.last_activity_at,
        completed_at=session.completed_at,
        expires_at=session.expires_at,
        node_execution_count=session.node_execution_count,
        error_count=session.error_count,
        last_error_kind=session.last_error_kind,
        last_error_message=session.last_error_message,
    )


# --- Events ---

@router.post("/events/messages")
async def receive_message(body: InboundMessageRequest, engine: ExecutionScheduler = Depends(get_engine)):
    """Route one normalized inbound message to its session, or start a flow."""
    message = InboundMessage(**body.model_dump())
    log.info("Inbound message received.", conversation_id=message.conversation_id, message_id=message.message_id)
    return _respond(await engine.handle_inbound_message(message))


@router.post("/flows/{flow_id}/trigger")
async def trigger_flow(flow_id: str, body: TriggerFlowRequest, engine: ExecutionScheduler = Depends(get_engine)):
    outcome = await engine.trigger_flow(
        flow_id,
        tenant_id=body.tenant_id,
        conversation_id=body.conversation_id,
        contact_id=body.contact_id,
        channel_type=body.channel_type,
        variables=body.variables,
        contact=body.contact,
        entry_node_id=body.entry_node_id,
        force=body.force,
    )
    return _respond(outcome)


@router.post("/sessions/{session_id}/timer")
async def fire_timer(session_id: str, body: TimerFireRequest, engine: ExecutionScheduler = Depends(get_engine)):
    """Timer delivery from an external cron/poller."""
    return _respond(await engine.handle_timer_fire(session_id, schedule_id=body.schedule_id))


@router.post("/sessions/{session_id}/callback")
async def receive_callback(session_id: str, body: CallbackRequest, engine: ExecutionScheduler = Depends(get_engine)):
    return _respond(await engine.handle_callback(session_id, body.payload))


# --- Operator actions ---

@router.post("/sessions/{session_id}/pause")
async def pause_session(session_id: str, engine: ExecutionScheduler = Depends(get_engine)):
    return _respond(await engine.pause_session(session_id))


@router.post("/sessions/{session_id}/resume")
async def resume_session(session_id: str, engine: ExecutionScheduler = Depends(get_engine)):
    return _respond(await engine.resume_session(session_id))


@router.post("/sessions/{session_id}/cancel")
async def cancel_session(session_id: str, body: CancelRequest, engine: ExecutionScheduler = Depends(get_engine)):
    return _respond(await engine.cancel_session(session_id, reason=body.reason))


# --- Inspection ---

@router.get("/sessions/{session_id}", response_model=APIResponse)
async def get_session(session_id: str, engine: ExecutionScheduler = Depends(get_engine)):
    session = await engine.get_session(session_id)
    if session is None:
        raise HTTPException(status_code=404, detail="Session not found")
    return APIResponse(
        success=True,
        message="Session retrieved",
        data={"session": _view(session).model_dump(mode="json")},
        version=settings.api_version
    )


@router.get("/sessions/{session_id}/steps", response_model=APIResponse)
async def list_steps(session_id: str, engine: ExecutionScheduler = Depends(get_engine)):
    """Step execution records in execution order. Snapshots are already masked."""
    if await engine.get_session(session_id) is None:
        raise HTTPException(status_code=404, detail="Session not found")
    records = await engine.list_step_records(session_id)
    return APIResponse(
        success=True,
        message="Step records retrieved",
        data={"steps": [record.model_dump(mode="json") for record in records]},
        version=settings.api_version
    )
