# /chatflow/services/integration_service.py

import json
import logging
from typing import Optional, Dict, Any

import httpx
import tenacity

from chatflow.utils.errors import ExternalServiceError, FlowValidationError
from chatflow.utils.metrics import external_calls_counter

logger = logging.getLogger(__name__)

ALLOWED_METHODS = ("GET", "POST", "PUT", "PATCH", "DELETE")


class IntegrationClient:
    async def call_webhook(
        self,
        url: str,
        payload: Optional[Dict[str, Any]] = None,
        method: str = "POST",
        headers: Optional[Dict[str, str]] = None,
        timeout: Optional[float] = None,
    ) -> Dict[str, Any]:
        raise NotImplementedError


class HttpIntegrationClient(IntegrationClient):
    """Calls tenant webhooks and HTTP APIs for webhook/http_request/api_call nodes."""

    def __init__(self, timeout: float = 15.0):
        self.timeout = timeout
        self.http_client = httpx.AsyncClient(timeout=timeout, follow_redirects=True)

    @tenacity.retry(
        retry=tenacity.retry_if_exception_type(httpx.TransportError),
        stop=tenacity.stop_after_attempt(2),
        wait=tenacity.wait_exponential(multiplier=1, min=1, max=5),
        before_sleep=tenacity.before_sleep_log(logger, logging.WARNING),
        reraise=True,
    )
    async def _request(self, method: str, url: str, **kwargs) -> httpx.Response:
        return await self.http_client.request(method, url, **kwargs)

    async def call_webhook(
        self,
        url: str,
        payload: Optional[Dict[str, Any]] = None,
        method: str = "POST",
        headers: Optional[Dict[str, str]] = None,
        timeout: Optional[float] = None,
    ) -> Dict[str, Any]:
        method = method.upper()
        if method not in ALLOWED_METHODS:
            raise FlowValidationError(f"Unsupported HTTP method '{method}'")
        if not url.startswith(("http://", "https://")):
            raise FlowValidationError(f"Webhook URL must be http(s): {url}")

        kwargs: Dict[str, Any] = {"headers": headers or {}, "timeout": timeout or self.timeout}
        if method == "GET":
            kwargs["params"] = payload or {}
        else:
            kwargs["json"] = payload or {}

        try:
            response = await self._request(method, url, **kwargs)
        except httpx.TransportError as e:
            external_calls_counter.labels(service="webhook", status="error").inc()
            raise ExternalServiceError(f"Webhook {method} {url} failed: {e}")

        external_calls_counter.labels(service="webhook", status=str(response.status_code)).inc()
        if response.status_code >= 500 or response.status_code == 429:
            raise ExternalServiceError(f"Webhook {url} returned {response.status_code}")
        if response.status_code >= 400:
            raise ExternalServiceError(f"Webhook {url} returned {response.status_code}", retryable=False)

        try:
            body: Any = response.json()
        except (json.JSONDecodeError, ValueError):
            body = response.text
        logger.info(f"Webhook {method} {url} answered {response.status_code}")
        return {"status_code": response.status_code, "body": body}

    async def cleanup(self):
        await self.http_client.aclose()
