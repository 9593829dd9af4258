# backend/tests/unit/test_services.py
import asyncio
from datetime import timedelta
from types import SimpleNamespace
from unittest.mock import AsyncMock

import httpx
import pytest

from chatflow.models.execution import FollowUpAction, FollowUpStatus
from chatflow.models.session import FlowSession, SessionStatus
from chatflow.services.ai_service import OpenAIProvider
from chatflow.services.cache_service import CacheService
from chatflow.services.channel_service import HttpChannelSender, OutboundContent
from chatflow.services.db_service import STEP_RECORDS, MongoSessionStore
from chatflow.services.integration_service import HttpIntegrationClient
from chatflow.services.lock_service import LocalLockManager
from chatflow.utils.alerting import AlertingService
from chatflow.utils.circuit_breaker import CircuitBreaker, CircuitOpenError, CircuitState
from chatflow.utils.errors import ConcurrencyError, ExternalServiceError, FlowValidationError
from chatflow.utils.logging import redact_sensitive


def _session(clock, session_id="s-1", **changes):
    return FlowSession(
        session_id=session_id, flow_id="f-1", flow_version=1, tenant_id="t-1", conversation_id="c-1",
        contact_id="p-1", current_node_id="start", trigger_node_id="start",
        started_at=clock.now(), last_activity_at=clock.now(),
    ).evolve(**changes)


# --- Locks & session store ---

@pytest.mark.asyncio
async def test_local_lock_times_out_with_concurrency_error():
    locks = LocalLockManager(default_timeout=0.05)
    async with locks.hold("session:s-1"):
        assert locks.is_locked("session:s-1")
        with pytest.raises(ConcurrencyError):
            async with locks.hold("session:s-1"):
                pass
    assert not locks.is_locked("session:s-1")


@pytest.mark.asyncio
async def test_lock_waiters_are_served_in_order():
    locks = LocalLockManager(default_timeout=1.0)
    order = []

    async def worker(name):
        async with locks.hold("k"):
            order.append(name)
            await asyncio.sleep(0)

    await asyncio.gather(worker("a"), worker("b"), worker("c"))
    assert order == ["a", "b", "c"]


@pytest.mark.asyncio
async def test_commit_bumps_revision_and_rejects_stale_writes(store, clock):
    await store.create_session(_session(clock))

    async with store.lock_and_load_session("s-1") as handle:
        committed = await store.commit_session(handle, handle.session.evolve(current_node_id="m1"))
        assert committed.revision == 1

        stale = handle.session.evolve(revision=0)
        handle.session = stale
        with pytest.raises(ConcurrencyError):
            await store.commit_session(handle, stale.evolve(current_node_id="m2"))

    with pytest.raises(ConcurrencyError):
        await store.commit_session(handle, committed)
    assert (await store.load_session("s-1")).current_node_id == "m1"


@pytest.mark.asyncio
async def test_mongo_step_records_follow_execution_order(mocker):
    collection = mocker.MagicMock()
    cursor = collection.find.return_value.sort.return_value
    cursor.to_list = AsyncMock(return_value=[])
    collection.find_one = AsyncMock(return_value=None)
    store = MongoSessionStore({STEP_RECORDS: collection})

    assert await store.list_step_records("s-1") == []
    collection.find.return_value.sort.assert_called_once_with([("step_order", 1), ("started_at", 1), ("retry_count", 1)])

    assert await store.find_effect_record("s-1", "ask", 1) is None
    assert collection.find_one.call_args.kwargs["sort"] == [("started_at", -1), ("retry_count", -1)]


@pytest.mark.asyncio
async def test_only_one_open_session_per_flow_and_conversation(store, clock):
    await store.create_session(_session(clock, "s-1"))
    with pytest.raises(ConcurrencyError):
        await store.create_session(_session(clock, "s-2"))

    await store.create_session(_session(clock, "s-3", status=SessionStatus.COMPLETED))
    assert (await store.find_open_session("f-1", "c-1")).session_id == "s-1"
    assert [s.session_id for s in await store.find_open_sessions_for_conversation("t-1", "c-1")] == ["s-1"]


# --- Schedules ---

@pytest.mark.asyncio
async def test_resume_schedules_are_keyed_by_step(follow_up, schedules, clock):
    session = _session(clock)
    at = clock.now() + timedelta(hours=1)

    first = await follow_up.schedule_resume(session, "w1", 3, at)
    again = await follow_up.schedule_resume(session, "w1", 3, at + timedelta(hours=5))
    keyed = await follow_up.schedule_resume(session, "w1", 3, at, key="resumed-1")

    assert first == again == "s-1:w1:3"
    assert keyed == "s-1:w1:3:resumed-1"
    stored = await schedules.get_schedule(first)
    assert stored.scheduled_for == at
    assert stored.action == FollowUpAction.RESUME


@pytest.mark.asyncio
async def test_claim_due_and_cancel(follow_up, schedules, clock):
    session = _session(clock)
    content = OutboundContent(text="Still there?")
    await follow_up.schedule_message(session, "f1", 1, clock.now() + timedelta(minutes=5), content)
    await follow_up.schedule_message(session, "f2", 2, clock.now() + timedelta(hours=5), content)

    claimed = await schedules.claim_due(clock.now() + timedelta(minutes=5), limit=10)
    assert [s.schedule_id for s in claimed] == ["s-1:f1:1:message"]
    assert claimed[0].status == FollowUpStatus.SENT
    assert await schedules.claim_due(clock.now() + timedelta(minutes=5), limit=10) == []

    assert await follow_up.cancel_for_session("s-1") == 1
    assert (await schedules.get_schedule("s-1:f2:2:message")).status == FollowUpStatus.CANCELLED


# --- Channel gateway ---

@pytest.mark.asyncio
async def test_http_channel_sender_posts_neutral_payload(mocker):
    sender = HttpChannelSender("https://gateway.local/", token="secret")
    post = mocker.patch.object(
        sender.http_client, "post", AsyncMock(return_value=httpx.Response(200, json={"message_id": "wamid.out"}))
    )

    message_id = await sender.send("c-1", "whatsapp", OutboundContent(text="Hi"))

    assert message_id == "wamid.out"
    args, kwargs = post.call_args
    assert args[0] == "https://gateway.local/conversations/c-1/messages"
    assert kwargs["json"] == {"channel_type": "whatsapp", "content": {"type": "text", "text": "Hi", "template_params": [],
                                                                     "options": [], "extra": {}}}
    assert kwargs["headers"]["Authorization"] == "Bearer secret"


@pytest.mark.asyncio
@pytest.mark.parametrize("status_code, retryable", [(400, False), (503, True)])
async def test_http_channel_sender_maps_errors(mocker, status_code, retryable):
    sender = HttpChannelSender("https://gateway.local")
    mocker.patch.object(sender.http_client, "post", AsyncMock(return_value=httpx.Response(status_code, text="nope")))

    with pytest.raises(ExternalServiceError) as exc_info:
        await sender.send("c-1", "whatsapp", OutboundContent(text="Hi"))
    assert exc_info.value.retryable is retryable


@pytest.mark.asyncio
async def test_gateway_server_errors_open_the_circuit(mocker):
    sender = HttpChannelSender("https://gateway.local")
    post = mocker.patch.object(sender.http_client, "post", AsyncMock(return_value=httpx.Response(503, text="down")))

    for _ in range(sender.circuit_breaker.failure_threshold):
        with pytest.raises(ExternalServiceError):
            await sender.send("c-1", "whatsapp", OutboundContent(text="Hi"))

    assert sender.circuit_breaker.state == CircuitState.OPEN
    with pytest.raises(CircuitOpenError):
        await sender.send("c-1", "whatsapp", OutboundContent(text="Hi"))
    assert post.await_count == sender.circuit_breaker.failure_threshold


@pytest.mark.asyncio
async def test_gateway_rejections_leave_the_circuit_closed(mocker):
    sender = HttpChannelSender("https://gateway.local")
    mocker.patch.object(sender.http_client, "post", AsyncMock(return_value=httpx.Response(400, text="bad")))

    for _ in range(sender.circuit_breaker.failure_threshold + 1):
        with pytest.raises(ExternalServiceError):
            await sender.send("c-1", "whatsapp", OutboundContent(text="Hi"))

    assert sender.circuit_breaker.state == CircuitState.CLOSED


# --- Integrations ---

@pytest.mark.asyncio
async def test_webhook_get_sends_params_and_parses_json(mocker):
    client = HttpIntegrationClient()
    request = mocker.patch.object(
        client.http_client, "request", AsyncMock(return_value=httpx.Response(200, json={"status": "shipped"}))
    )

    response = await client.call_webhook("https://api.local/orders", payload={"id": "FO1"}, method="get")

    assert response == {"status_code": 200, "body": {"status": "shipped"}}
    args, kwargs = request.call_args
    assert args == ("GET", "https://api.local/orders")
    assert kwargs["params"] == {"id": "FO1"}


@pytest.mark.asyncio
async def test_webhook_errors(mocker):
    client = HttpIntegrationClient()
    with pytest.raises(FlowValidationError):
        await client.call_webhook("ftp://files.local/x")
    with pytest.raises(FlowValidationError):
        await client.call_webhook("https://api.local", method="TRACE")

    mocker.patch.object(client.http_client, "request", AsyncMock(return_value=httpx.Response(502)))
    with pytest.raises(ExternalServiceError) as exc_info:
        await client.call_webhook("https://api.local")
    assert exc_info.value.retryable is True

    mocker.patch.object(client.http_client, "request", AsyncMock(return_value=httpx.Response(404)))
    with pytest.raises(ExternalServiceError) as exc_info:
        await client.call_webhook("https://api.local")
    assert exc_info.value.retryable is False


@pytest.mark.asyncio
async def test_webhook_keeps_plain_text_bodies(mocker):
    client = HttpIntegrationClient()
    mocker.patch.object(client.http_client, "request", AsyncMock(return_value=httpx.Response(200, text="OK")))
    assert (await client.call_webhook("https://api.local"))["body"] == "OK"


# --- AI provider ---

@pytest.mark.asyncio
async def test_openai_provider_builds_chat_request(mocker):
    provider = OpenAIProvider(api_key="sk-test", default_model="gpt-4o-mini")
    reply = SimpleNamespace(choices=[SimpleNamespace(message=SimpleNamespace(content="  Sure!  "))])
    create = mocker.patch.object(provider, "_create", AsyncMock(return_value=reply))

    text = await provider.complete("Hello", {"system_prompt": "Be brief", "temperature": 0.1})

    assert text == "Sure!"
    kwargs = create.call_args.kwargs
    assert kwargs["model"] == "gpt-4o-mini"
    assert kwargs["messages"] == [{"role": "system", "content": "Be brief"}, {"role": "user", "content": "Hello"}]
    assert kwargs["temperature"] == 0.1


# --- Cache & circuit breaker ---

@pytest.mark.asyncio
async def test_cache_without_redis_is_a_noop():
    cache = CacheService(None)
    await cache.mark_processed("t", "c", "wamid.1")
    assert await cache.was_processed("t", "c", "wamid.1") is False
    await cache.close()


@pytest.mark.asyncio
async def test_cache_errors_are_treated_as_misses(mocker):
    cache = CacheService("redis://localhost:6379/0")
    mocker.patch.object(cache.redis, "get", AsyncMock(side_effect=ConnectionError("down")))
    assert await cache.was_processed("t", "c", "wamid.1") is False


@pytest.mark.asyncio
async def test_circuit_breaker_opens_after_repeated_failures():
    breaker = CircuitBreaker("test", failure_threshold=2)
    failing = AsyncMock(side_effect=RuntimeError("boom"))

    for _ in range(2):
        with pytest.raises(RuntimeError):
            await breaker.call(failing)

    assert breaker.state == CircuitState.OPEN
    with pytest.raises(CircuitOpenError):
        await breaker.call(failing)
    assert failing.await_count == 2


@pytest.mark.asyncio
async def test_circuit_breaker_ignores_permanent_errors_and_recovers():
    now = [0.0]
    breaker = CircuitBreaker("test", failure_threshold=2, reset_after_seconds=30, probes_to_close=1,
                             monotonic=lambda: now[0])
    rejected = AsyncMock(side_effect=ExternalServiceError("bad request", retryable=False))
    for _ in range(3):
        with pytest.raises(ExternalServiceError):
            await breaker.call(rejected)
    assert breaker.state == CircuitState.CLOSED

    unavailable = AsyncMock(side_effect=ExternalServiceError("unavailable"))
    for _ in range(2):
        with pytest.raises(ExternalServiceError):
            await breaker.call(unavailable)
    assert breaker.state == CircuitState.OPEN

    now[0] = 30.0
    assert await breaker.call(AsyncMock(return_value="ok")) == "ok"
    assert breaker.state == CircuitState.CLOSED


@pytest.mark.asyncio
async def test_repeated_integrity_alerts_are_collapsed(mocker):
    service = AlertingService("https://alerts.local/hook")
    post = mocker.patch.object(
        service.client, "post",
        AsyncMock(return_value=httpx.Response(200, request=httpx.Request("POST", "https://alerts.local/hook"))),
    )
    context = {"flow_id": "f-1", "flow_version": 2, "node_id": "gone", "session_id": "s-1"}

    assert await service.send_critical_alert("node missing", context) is True
    assert await service.send_critical_alert("node missing", {**context, "session_id": "s-2"}) is False
    assert await service.send_critical_alert("node missing", {**context, "node_id": "other"}) is True

    assert post.await_count == 2
    assert post.call_args.kwargs["json"]["severity"] == "critical"
    await service.cleanup()


@pytest.mark.asyncio
async def test_alerts_without_webhook_are_only_logged():
    assert await AlertingService(None).send_critical_alert("node missing", {}) is False


def test_log_redaction_masks_credentials_and_variables():
    event = redact_sensitive(None, "info", {"event": "call", "Authorization": "Bearer x", "variables": {"pin": "1"},
                                            "session_id": "s-1"})
    assert event == {"event": "call", "Authorization": "***", "variables": "***", "session_id": "s-1"}
