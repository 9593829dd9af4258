import os
import pytest
from datetime import timezone
from dotenv import load_dotenv
from unittest.mock import AsyncMock

# Load the test environment FIRST, before any engine imports, so that the
# module-level settings object sees it.
load_dotenv(dotenv_path=os.path.join(os.path.dirname(__file__), "..", ".env.test"))

from chatflow.jobs.follow_up_job import FollowUpScheduler  # noqa: E402
from chatflow.models.events import InboundMessage  # noqa: E402
from chatflow.models.flow import FlowStatus, FlowVersion  # noqa: E402
from chatflow.services.ai_service import AIProvider  # noqa: E402
from chatflow.services.channel_service import ChannelSender, OutboundContent  # noqa: E402
from chatflow.services.crm_service import InMemoryCrmGateway  # noqa: E402
from chatflow.services.flow_source import InMemoryFlowSource  # noqa: E402
from chatflow.services.integration_service import IntegrationClient  # noqa: E402
from chatflow.services.lock_service import LocalLockManager  # noqa: E402
from chatflow.services.session_store import InMemoryScheduleStore, InMemorySessionStore  # noqa: E402
from chatflow.utils.alerting import AlertingService  # noqa: E402
from chatflow.utils.clock import FrozenClock  # noqa: E402
from chatflow.utils.errors import ExternalServiceError  # noqa: E402
from chatflow.workflows.catalog import EngineServices, build_default_catalog  # noqa: E402
from chatflow.workflows.engine import StepInterpreter  # noqa: E402
from chatflow.workflows.scheduler import ExecutionScheduler  # noqa: E402

TENANT = "tenant-1"
CONVERSATION = "conv-1"
CONTACT = "contact-1"


class RecordingChannelSender(ChannelSender):
    """Keeps every outbound message. `failures` makes the next N sends fail."""

    def __init__(self):
        self.sent = []
        self.failures = 0

    async def send(self, conversation_id: str, channel_type: str, content: OutboundContent) -> str:
        if self.failures:
            self.failures -= 1
            raise ExternalServiceError("gateway unavailable")
        self.sent.append((conversation_id, content))
        return f"out-{len(self.sent)}"

    @property
    def texts(self):
        return [content.text for _, content in self.sent]


@pytest.fixture
def clock():
    return FrozenClock()


@pytest.fixture
def channel():
    return RecordingChannelSender()


@pytest.fixture
def crm():
    return InMemoryCrmGateway()


@pytest.fixture
def flows():
    return InMemoryFlowSource()


@pytest.fixture
def store():
    return InMemorySessionStore(LocalLockManager(default_timeout=2.0))


@pytest.fixture
def schedules():
    return InMemoryScheduleStore()


@pytest.fixture
def follow_up(schedules, channel, clock):
    return FollowUpScheduler(schedules, channel, clock=clock, max_retries=3)


@pytest.fixture
def alerts():
    return AsyncMock(spec=AlertingService)


@pytest.fixture
def services(channel, crm, follow_up):
    return EngineServices(
        channel=channel,
        ai=AsyncMock(spec=AIProvider),
        integrations=AsyncMock(spec=IntegrationClient),
        crm=crm,
        timers=follow_up,
    )


@pytest.fixture
def interpreter(store, services, clock, alerts):
    return StepInterpreter(
        store,
        build_default_catalog(),
        services,
        clock=clock,
        alerts=alerts,
        default_max_retries=2,
        retry_backoff_seconds=0,
    )


@pytest.fixture
def engine(store, flows, interpreter, clock):
    return ExecutionScheduler(store, flows, interpreter, clock=clock, lock_timeout=2.0)


@pytest.fixture
def make_flow(clock):
    """Build an active FlowVersion from plain node/edge dicts."""

    def _make(nodes, edges, flow_id="flow-1", version=1, priority=0, activated_at=None, status=FlowStatus.ACTIVE):
        return FlowVersion(
            flow_id=flow_id,
            version=version,
            tenant_id=TENANT,
            name=flow_id,
            status=status,
            priority=priority,
            activated_at=activated_at or clock.now(),
            nodes=nodes,
            edges=edges,
        )

    return _make


@pytest.fixture
def make_message(clock):
    counter = {"n": 0}

    def _make(text="hi", message_id=None, message_type="text", conversation_id=CONVERSATION, **kwargs):
        counter["n"] += 1
        return InboundMessage(
            message_id=message_id or f"wamid.{counter['n']}",
            tenant_id=TENANT,
            conversation_id=conversation_id,
            contact_id=CONTACT,
            message_type=message_type,
            text=text,
            received_at=clock.now().astimezone(timezone.utc),
            **kwargs,
        )

    return _make
