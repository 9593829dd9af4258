# /chatflow/services/channel_service.py

import logging
from typing import Optional, Dict, Any, List

import httpx
import tenacity
from pydantic import BaseModel, Field

from chatflow.config.settings import settings
from chatflow.utils.circuit_breaker import CircuitBreaker, CircuitOpenError
from chatflow.utils.errors import ExternalServiceError
from chatflow.utils.metrics import external_calls_counter

# Outbound messages leave the engine through a ChannelSender. The engine
# never sees channel wire formats; the HTTP sender hands a neutral payload
# to the messaging gateway, which owns WhatsApp/Messenger/etc. specifics.

logger = logging.getLogger(__name__)

RETRYABLE_STATUS_CODES = (408, 425, 429, 500, 502, 503, 504)


class OutboundContent(BaseModel):
    """Channel-neutral description of one outbound message."""
    type: str = "text"
    text: Optional[str] = None
    media_url: Optional[str] = None
    caption: Optional[str] = None
    filename: Optional[str] = None
    template_name: Optional[str] = None
    template_params: List[str] = Field(default_factory=list)
    options: List[Dict[str, Any]] = Field(default_factory=list)
    extra: Dict[str, Any] = Field(default_factory=dict)


class ChannelSender:
    """Sends one message to a conversation and returns the external message id."""

    async def send(self, conversation_id: str, channel_type: str, content: OutboundContent) -> str:
        raise NotImplementedError


class HttpChannelSender(ChannelSender):
    def __init__(self, gateway_url: str, token: Optional[str] = None, timeout: float = 15.0):
        self.gateway_url = gateway_url.rstrip("/")
        self.token = token
        self.http_client = httpx.AsyncClient(timeout=timeout)
        self.circuit_breaker = CircuitBreaker("channel_gateway")

    @tenacity.retry(
        retry=tenacity.retry_if_exception_type((httpx.RequestError, httpx.TimeoutException)),
        stop=tenacity.stop_after_attempt(3),
        wait=tenacity.wait_exponential(multiplier=2, min=1, max=10),
        before_sleep=tenacity.before_sleep_log(logger, logging.WARNING),
        reraise=True,
    )
    async def resilient_api_call(self, func, *args, **kwargs):
        return await self.circuit_breaker.call(func, *args, **kwargs)

    async def _post(self, url: str, payload: Dict[str, Any], headers: Dict[str, str]) -> httpx.Response:
        # Status errors are raised inside the breaker so gateway 5xx responses count against it.
        response = await self.http_client.post(url, json=payload, headers=headers)
        if response.status_code >= 400:
            external_calls_counter.labels(service="channel", status=str(response.status_code)).inc()
            logger.error(f"channel_send_failed for {url}: {response.status_code} - {response.text[:200]}")
            raise ExternalServiceError(
                f"Channel gateway returned {response.status_code}",
                retryable=response.status_code in RETRYABLE_STATUS_CODES,
            )
        return response

    async def send(self, conversation_id: str, channel_type: str, content: OutboundContent) -> str:
        url = f"{self.gateway_url}/conversations/{conversation_id}/messages"
        headers = {"Content-Type": "application/json"}
        if self.token:
            headers["Authorization"] = f"Bearer {self.token}"
        payload = {"channel_type": channel_type, "content": content.model_dump(exclude_none=True)}

        try:
            response = await self.resilient_api_call(self._post, url, payload, headers)
        except CircuitOpenError:
            external_calls_counter.labels(service="channel", status="circuit_open").inc()
            raise
        except (httpx.RequestError, httpx.TimeoutException) as e:
            external_calls_counter.labels(service="channel", status="error").inc()
            raise ExternalServiceError(f"Channel gateway unreachable: {e}")

        message_id = (response.json() or {}).get("message_id")
        if not message_id:
            raise ExternalServiceError("Channel gateway response has no message_id", retryable=False)
        external_calls_counter.labels(service="channel", status="success").inc()
        logger.info(f"Message sent to conversation {conversation_id} via {channel_type}, id: {message_id}")
        return message_id

    async def cleanup(self):
        await self.http_client.aclose()


class LoggingChannelSender(ChannelSender):
    """Sender used when no gateway is configured: logs the message and fabricates an id."""

    def __init__(self):
        self.counter = 0

    async def send(self, conversation_id: str, channel_type: str, content: OutboundContent) -> str:
        self.counter += 1
        logger.info(f"[dry-run] {channel_type} message to {conversation_id}: {content.type} {content.text!r}")
        return f"dry-run-{self.counter}"


def build_channel_sender() -> ChannelSender:
    if settings.channel_gateway_url:
        return HttpChannelSender(settings.channel_gateway_url, settings.channel_gateway_token)
    logger.warning("CHANNEL_GATEWAY_URL not set, outbound messages are only logged.")
    return LoggingChannelSender()
