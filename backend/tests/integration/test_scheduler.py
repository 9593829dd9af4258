# backend/tests/integration/test_scheduler.py
import asyncio
from datetime import timedelta

import pytest
import pytest_asyncio

from chatflow.models.events import OutcomeStatus
from chatflow.models.execution import FollowUpStatus
from chatflow.models.session import SessionStatus
from chatflow.services.flow_source import InMemoryFlowSource
from chatflow.utils.errors import StoreUnavailableError
from chatflow.workflows.scheduler import ExecutionScheduler, select_flow, trigger_matches

TENANT = "tenant-1"
CONVERSATION = "conv-1"
CONTACT = "contact-1"

ASK_FLOW = (
    [
        {"id": "start", "type": "start"},
        {"id": "ask", "type": "input", "data": {"question": "Your name?", "variable_name": "name"}},
        {"id": "bye", "type": "message", "data": {"message": "Bye {{name}}"}},
    ],
    [{"source": "start", "target": "ask"}, {"source": "ask", "target": "bye"}],
)
WAIT_FLOW = (
    [
        {"id": "start", "type": "start"},
        {"id": "w1", "type": "wait", "data": {"delay_amount": 1, "delay_unit": "hours"}},
        {"id": "m2", "type": "message", "data": {"message": "Still here"}},
    ],
    [{"source": "start", "target": "w1"}, {"source": "w1", "target": "m2"}],
)


@pytest_asyncio.fixture
async def asking(engine, flows, make_flow, make_message):
    flows.publish(make_flow(*ASK_FLOW))
    outcome = await engine.handle_inbound_message(make_message("hello", message_id="wamid.open"))
    assert outcome.status == OutcomeStatus.SUSPENDED
    return outcome.session_id


@pytest_asyncio.fixture
async def waiting(engine, flows, make_flow):
    flows.publish(make_flow(*WAIT_FLOW))
    outcome = await engine.trigger_flow("flow-1", TENANT, CONVERSATION, CONTACT)
    assert outcome.status == OutcomeStatus.SUSPENDED
    return outcome.session_id


# ==================== Deduplication ====================

@pytest.mark.asyncio
async def test_redelivered_message_is_a_duplicate_while_open(asking, engine, make_message, store, channel):
    records_before = len(await store.list_step_records(asking))

    outcome = await engine.handle_inbound_message(make_message("hello", message_id="wamid.open"))

    assert outcome.status == OutcomeStatus.DUPLICATE
    assert outcome.session_id == asking
    assert len(await store.list_step_records(asking)) == records_before
    assert channel.texts == ["Your name?"]


@pytest.mark.asyncio
async def test_redelivered_reply_is_a_duplicate_after_completion(asking, engine, make_message, store, channel):
    reply = make_message("Asha", message_id="wamid.reply")
    assert (await engine.handle_inbound_message(reply)).status == OutcomeStatus.COMPLETED

    outcome = await engine.handle_inbound_message(reply)

    assert outcome.status == OutcomeStatus.DUPLICATE
    assert len(store.all_sessions()) == 1
    assert channel.texts == ["Your name?", "Bye Asha"]


class YieldingFlowSource(InMemoryFlowSource):
    """Gives other tasks a turn on every lookup, like a real database would."""

    async def list_active_flows(self, tenant_id):
        await asyncio.sleep(0)
        return await super().list_active_flows(tenant_id)


@pytest.mark.asyncio
async def test_concurrent_copies_of_a_first_message_open_one_session(store, interpreter, clock, make_flow, make_message, channel):
    flows = YieldingFlowSource([make_flow(
        [{"id": "start", "type": "start"}, {"id": "m1", "type": "message", "data": {"message": "Hi"}}],
        [{"source": "start", "target": "m1"}],
    )])
    engine = ExecutionScheduler(store, flows, interpreter, clock=clock, lock_timeout=2.0)
    message = make_message("hello", message_id="wamid.same")

    first, second = await asyncio.gather(engine.handle_inbound_message(message), engine.handle_inbound_message(message))

    assert {first.status, second.status} == {OutcomeStatus.COMPLETED, OutcomeStatus.DUPLICATE}
    assert first.session_id == second.session_id
    assert len(store.all_sessions()) == 1
    assert channel.texts == ["Hi"]


# ==================== Expiry ====================

@pytest.mark.asyncio
async def test_reply_exactly_at_expiry_is_accepted(asking, engine, make_message, store, clock):
    session = await store.load_session(asking)
    assert session.expires_at == clock.now() + timedelta(hours=72)
    clock.advance(hours=72)

    outcome = await engine.handle_inbound_message(make_message("Asha"))

    assert outcome.status == OutcomeStatus.COMPLETED


@pytest.mark.asyncio
async def test_reply_after_expiry_times_out_without_running(asking, engine, make_message, store, clock, channel):
    records_before = len(await store.list_step_records(asking))
    clock.advance(hours=72, seconds=1)

    outcome = await engine.handle_inbound_message(make_message("Asha"))

    assert outcome.status == OutcomeStatus.TIMED_OUT
    session = await store.load_session(asking)
    assert session.status == SessionStatus.TIMEOUT
    assert session.last_error_kind == "timeout"
    assert "name" not in session.variables
    assert len(await store.list_step_records(asking)) == records_before
    assert channel.texts == ["Your name?"]


@pytest.mark.asyncio
async def test_redelivery_after_expiry_times_out_instead_of_deduping(asking, engine, make_message, store, clock):
    clock.advance(hours=72, seconds=1)

    outcome = await engine.handle_inbound_message(make_message("hello", message_id="wamid.open"))

    assert outcome.status == OutcomeStatus.TIMED_OUT
    assert (await store.load_session(asking)).status == SessionStatus.TIMEOUT


@pytest.mark.asyncio
async def test_timer_fire_on_expired_active_session_times_it_out(waiting, engine, store, clock):
    async with store.lock_and_load_session(waiting) as handle:
        await store.commit_session(handle, handle.session.evolve(status=SessionStatus.ACTIVE, waiting_context=None))
    clock.advance(hours=72, seconds=1)

    outcome = await engine.handle_timer_fire(waiting)

    assert outcome.status == OutcomeStatus.TIMED_OUT
    assert (await store.load_session(waiting)).status == SessionStatus.TIMEOUT


@pytest.mark.asyncio
async def test_expire_stale_sessions_sweeps_only_overdue(asking, engine, store, clock):
    assert await engine.expire_stale_sessions() == 0
    clock.advance(hours=73)

    assert await engine.expire_stale_sessions() == 1
    assert (await store.load_session(asking)).status == SessionStatus.TIMEOUT
    assert await engine.expire_stale_sessions() == 0


@pytest.mark.asyncio
async def test_input_timeout_fires_at_the_deadline(engine, flows, make_flow, store, clock, schedules):
    flows.publish(make_flow(
        [{"id": "start", "type": "start"}, {"id": "ask", "type": "input", "data": {"question": "OTP?", "timeout_minutes": 30}}],
        [{"source": "start", "target": "ask"}],
    ))
    opened = await engine.trigger_flow("flow-1", TENANT, CONVERSATION, CONTACT)
    session = await store.load_session(opened.session_id)
    schedule = await schedules.get_schedule(session.waiting_context.schedule_id)
    assert schedule.scheduled_for == clock.now() + timedelta(minutes=30)

    clock.advance(minutes=30)
    outcome = await engine.handle_timer_fire(opened.session_id, schedule.schedule_id)

    assert outcome.status == OutcomeStatus.TIMED_OUT


# ==================== Trigger matching & one open session ====================

@pytest.mark.parametrize("entry, text, channel_type, expected", [
    ({}, "anything", "whatsapp", True),
    ({"keywords": ["order"]}, "Where is my ORDER?", "whatsapp", True),
    ({"keywords": ["order"], "match": "exact"}, "order status", "whatsapp", False),
    ({"keywords": ["hi", "hello"], "match": "exact"}, " Hello ", "whatsapp", True),
    ({"keywords": ["track"], "match": "starts_with"}, "track FO1067", "whatsapp", True),
    ({"keywords": ["^fo\\d+$"], "match": "regex"}, "FO1067", "whatsapp", True),
    ({"keywords": ["order"]}, "", "whatsapp", False),
    ({"channel_types": ["instagram"]}, "hi", "whatsapp", False),
    ({"keywords": ["x"], "match": "fuzzy"}, "x", "whatsapp", False),
])
def test_trigger_matches(make_flow, make_message, entry, text, channel_type, expected):
    flow = make_flow([{"id": "start", "type": "trigger", "data": entry}], [])
    assert trigger_matches(flow, make_message(text, channel_type=channel_type)) is expected


def test_select_flow_tie_break(make_flow, clock):
    early, late = clock.now(), clock.now() + timedelta(hours=1)
    low = make_flow([{"id": "start", "type": "start"}], [], flow_id="low", priority=0, activated_at=late)
    old = make_flow([{"id": "start", "type": "start"}], [], flow_id="old", priority=5, activated_at=early)
    new = make_flow([{"id": "start", "type": "start"}], [], flow_id="new", priority=5, activated_at=late)
    twin = make_flow([{"id": "start", "type": "start"}], [], flow_id="aaa", priority=5, activated_at=late)

    assert select_flow([low, old, new]).flow_id == "new"
    assert select_flow([new, twin, old]).flow_id == "aaa"
    assert select_flow([low]).flow_id == "low"
    assert select_flow([]) is None


@pytest.mark.asyncio
async def test_inbound_message_starts_the_matching_flow(engine, flows, make_flow, make_message, channel):
    flows.publish(make_flow(
        [{"id": "start", "type": "trigger", "data": {"keywords": ["refund"]}},
         {"id": "m", "type": "message", "data": {"message": "Refunds take 5 days"}}],
        [{"source": "start", "target": "m"}], flow_id="refunds",
    ))
    flows.publish(make_flow(
        [{"id": "start", "type": "trigger", "data": {"keywords": ["order"]}},
         {"id": "m", "type": "message", "data": {"message": "Send your order id"}}],
        [{"source": "start", "target": "m"}], flow_id="orders",
    ))

    matched = await engine.handle_inbound_message(make_message("where is my order"))
    unmatched = await engine.handle_inbound_message(make_message("hello", conversation_id="conv-2"))

    assert matched.status == OutcomeStatus.COMPLETED
    assert channel.texts == ["Send your order id"]
    assert unmatched.status == OutcomeStatus.NO_MATCH


@pytest.mark.asyncio
async def test_explicit_trigger_conflicts_unless_forced(waiting, engine, store, schedules):
    conflict = await engine.trigger_flow("flow-1", TENANT, CONVERSATION, CONTACT)
    assert conflict.status == OutcomeStatus.CONFLICT
    assert conflict.session_id == waiting

    forced = await engine.trigger_flow("flow-1", TENANT, CONVERSATION, CONTACT, force=True)

    assert forced.status == OutcomeStatus.SUSPENDED
    assert forced.session_id != waiting
    old = await store.load_session(waiting)
    assert old.status == SessionStatus.ABANDONED
    assert [s.status for s in await schedules.list_schedules(waiting)] == [FollowUpStatus.CANCELLED]
    assert [s.session_id for s in await store.find_open_sessions_for_conversation(TENANT, CONVERSATION)] == [forced.session_id]


@pytest.mark.asyncio
async def test_explicit_trigger_of_unknown_or_foreign_flow(engine, flows, make_flow):
    flows.publish(make_flow(*WAIT_FLOW))

    assert (await engine.trigger_flow("nope", TENANT, CONVERSATION, CONTACT)).status == OutcomeStatus.NOT_FOUND
    assert (await engine.trigger_flow("flow-1", "other-tenant", CONVERSATION, CONTACT)).status == OutcomeStatus.NOT_FOUND


@pytest.mark.asyncio
async def test_explicit_trigger_seeds_variables_and_entry_node(engine, flows, make_flow, store, channel):
    flows.publish(make_flow(*ASK_FLOW))

    outcome = await engine.trigger_flow(
        "flow-1", TENANT, CONVERSATION, CONTACT, variables={"name": "Ravi"}, entry_node_id="bye",
    )

    assert outcome.status == OutcomeStatus.COMPLETED
    assert channel.texts == ["Bye Ravi"]
    session = await store.load_session(outcome.session_id)
    assert session.trigger_node_id == "bye"


@pytest.mark.asyncio
async def test_invalid_flow_version_is_not_started(engine, flows, make_flow, store):
    flows.publish(make_flow([{"id": "m", "type": "message"}], []))

    outcome = await engine.trigger_flow("flow-1", TENANT, CONVERSATION, CONTACT)

    assert outcome.status == OutcomeStatus.FAILED
    assert outcome.error_kind == "validation"
    assert store.all_sessions() == ()


# ==================== Pause / resume / cancel ====================

@pytest.mark.asyncio
async def test_paused_session_freezes_its_timer(waiting, engine, follow_up, store, clock, channel, make_message):
    clock.advance(minutes=10)
    assert (await engine.pause_session(waiting)).status == OutcomeStatus.PAUSED
    old_schedule = (await store.load_session(waiting)).waiting_context.schedule_id

    clock.advance(minutes=50)
    assert (await engine.handle_timer_fire(waiting, old_schedule)).status == OutcomeStatus.IGNORED
    assert (await engine.handle_inbound_message(make_message("hi"))).status == OutcomeStatus.IGNORED

    clock.advance(hours=2)
    resumed = await engine.resume_session(waiting)

    assert resumed.status == OutcomeStatus.SUSPENDED
    session = await store.load_session(waiting)
    start = clock.now() - timedelta(hours=3)
    assert session.waiting_context.resume_at == start + timedelta(hours=3, minutes=50)
    assert session.waiting_context.schedule_id == f"{waiting}:w1:1:resumed-{int(clock.now().timestamp())}"
    assert session.paused_at is None
    assert (await engine.handle_timer_fire(waiting, old_schedule)).status == OutcomeStatus.IGNORED

    clock.advance(minutes=50)
    await follow_up.run_due(engine)

    session = await store.load_session(waiting)
    assert session.status == SessionStatus.COMPLETED
    assert session.execution_path == ("start", "w1", "m2")
    assert channel.texts == ["Still here"]


@pytest.mark.asyncio
async def test_reprompt_after_unpause_keeps_the_shifted_deadline(engine, flows, make_flow, follow_up, schedules, store, clock, make_message):
    flows.publish(make_flow(
        [{"id": "start", "type": "start"},
         {"id": "ask", "type": "input", "data": {"question": "OTP?", "input_type": "number", "timeout_minutes": 30}}],
        [{"source": "start", "target": "ask"}],
    ))
    start = clock.now()
    opened = await engine.trigger_flow("flow-1", TENANT, CONVERSATION, CONTACT)
    clock.advance(minutes=10)
    await engine.pause_session(opened.session_id)
    clock.advance(minutes=60)
    await follow_up.run_due(engine)
    await engine.resume_session(opened.session_id)
    armed = (await store.load_session(opened.session_id)).waiting_context.schedule_id

    outcome = await engine.handle_inbound_message(make_message("abc"))

    assert outcome.status == OutcomeStatus.SUSPENDED
    waiting = (await store.load_session(opened.session_id)).waiting_context
    assert waiting.attempts == 1
    assert waiting.schedule_id == armed
    assert (await schedules.get_schedule(armed)).scheduled_for == start + timedelta(minutes=90)

    clock.advance(minutes=20)
    await follow_up.run_due(engine)

    assert (await store.load_session(opened.session_id)).status == SessionStatus.TIMEOUT


@pytest.mark.asyncio
async def test_paused_session_never_expires(waiting, engine, store, clock):
    await engine.pause_session(waiting)
    clock.advance(days=30)

    assert await engine.expire_stale_sessions() == 0
    assert (await engine.pause_session(waiting)).status == OutcomeStatus.PAUSED
    assert (await engine.resume_session(waiting)).status == OutcomeStatus.SUSPENDED


@pytest.mark.asyncio
async def test_resume_of_a_running_session_is_ignored(waiting, engine):
    assert (await engine.resume_session(waiting)).status == OutcomeStatus.IGNORED
    assert (await engine.resume_session("missing")).status == OutcomeStatus.NOT_FOUND


@pytest.mark.asyncio
async def test_cancel_abandons_and_cancels_timers(waiting, engine, schedules, store):
    outcome = await engine.cancel_session(waiting, reason="customer opted out")

    assert outcome.status == OutcomeStatus.ABANDONED
    session = await store.load_session(waiting)
    assert session.last_error_message == "customer opted out"
    assert all(s.status == FollowUpStatus.CANCELLED for s in await schedules.list_schedules(waiting))
    assert (await engine.cancel_session(waiting)).status == OutcomeStatus.IGNORED
    assert (await engine.handle_timer_fire(waiting)).status == OutcomeStatus.IGNORED


# ==================== Callbacks ====================

@pytest_asyncio.fixture
async def awaiting_payment(engine, flows, make_flow, services):
    services.integrations.call_webhook.return_value = {"status_code": 201, "body": {"link": "https://pay/1"}}
    flows.publish(make_flow(
        [
            {"id": "start", "type": "start"},
            {"id": "pay", "type": "webhook", "data": {
                "url": "https://payments.local/links", "wait_for_callback": True, "callback_timeout_minutes": 60,
            }},
            {"id": "done", "type": "message", "data": {"message": "Received {{callback_payload.amount}}"}},
        ],
        [{"source": "start", "target": "pay"}, {"source": "pay", "target": "done"}],
    ))
    outcome = await engine.trigger_flow("flow-1", TENANT, CONVERSATION, CONTACT)
    assert outcome.status == OutcomeStatus.SUSPENDED
    return outcome.session_id


@pytest.mark.asyncio
async def test_callback_resumes_with_payload(awaiting_payment, engine, channel, services):
    outcome = await engine.handle_callback(awaiting_payment, {"amount": 499})

    assert outcome.status == OutcomeStatus.COMPLETED
    assert channel.texts == ["Received 499"]
    assert services.integrations.call_webhook.await_count == 1
    assert (await engine.handle_callback(awaiting_payment, {"amount": 1})).status == OutcomeStatus.IGNORED


@pytest.mark.asyncio
async def test_callback_after_deadline_times_out(awaiting_payment, engine, clock):
    clock.advance(minutes=60)

    outcome = await engine.handle_callback(awaiting_payment, {"amount": 499})

    assert outcome.status == OutcomeStatus.TIMED_OUT


@pytest.mark.asyncio
async def test_callback_for_unknown_session(engine):
    assert (await engine.handle_callback("missing", {})).status == OutcomeStatus.NOT_FOUND


# ==================== Failure boundary ====================

@pytest.mark.asyncio
async def test_busy_session_asks_for_redelivery(waiting, store, flows, interpreter, clock):
    impatient = ExecutionScheduler(store, flows, interpreter, clock=clock, lock_timeout=0.05)
    before = await store.load_session(waiting)

    async with store.locks.hold(f"session:{waiting}"):
        outcome = await impatient.handle_timer_fire(waiting)

    assert outcome.status == OutcomeStatus.RETRY_LATER
    assert outcome.error_kind == "concurrency"
    assert await store.load_session(waiting) == before


@pytest.mark.asyncio
async def test_store_outage_asks_for_redelivery(engine, store, make_message, mocker):
    mocker.patch.object(
        store, "find_open_sessions_for_conversation", side_effect=StoreUnavailableError("mongo down")
    )
    outcome = await engine.handle_inbound_message(make_message("hi"))
    assert outcome.status == OutcomeStatus.RETRY_LATER
    assert outcome.error_kind == "store_unavailable"


@pytest.mark.asyncio
async def test_unexpected_errors_become_failed_outcomes(engine, store, make_message, mocker):
    mocker.patch.object(store, "find_open_sessions_for_conversation", side_effect=RuntimeError("boom"))
    outcome = await engine.handle_inbound_message(make_message("hi"))
    assert outcome.status == OutcomeStatus.FAILED
    assert outcome.error_kind == "internal"
    assert "boom" in outcome.detail
