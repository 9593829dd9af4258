# /chatflow/services/ai_service.py

import logging
from typing import Optional, Dict, Any

from openai import AsyncOpenAI, APIConnectionError, APIStatusError, APITimeoutError, RateLimitError

from chatflow.config.settings import settings
from chatflow.utils.circuit_breaker import CircuitBreaker
from chatflow.utils.errors import ExternalServiceError, FlowValidationError
from chatflow.utils.metrics import external_calls_counter

# AI completions for `ai_assistant` nodes. Failures surface as
# ExternalServiceError so the interpreter's retry policy applies.

logger = logging.getLogger(__name__)


class AIProvider:
    async def complete(self, prompt: str, config: Dict[str, Any]) -> str:
        raise NotImplementedError


class OpenAIProvider(AIProvider):
    def __init__(self, api_key: str, default_model: str):
        self.client = AsyncOpenAI(api_key=api_key)
        self.default_model = default_model
        self.circuit_breaker = CircuitBreaker("openai")

    async def _create(self, **kwargs):
        return await self.client.chat.completions.create(**kwargs)

    async def complete(self, prompt: str, config: Dict[str, Any]) -> str:
        model = config.get("model") or self.default_model
        messages = []
        if config.get("system_prompt"):
            messages.append({"role": "system", "content": config["system_prompt"]})
        messages.append({"role": "user", "content": prompt})

        try:
            response = await self.circuit_breaker.call(
                self._create,
                model=model,
                messages=messages,
                temperature=float(config.get("temperature", 0.7)),
                max_tokens=int(config.get("max_tokens", 500)),
            )
        except (APIConnectionError, APITimeoutError, RateLimitError) as e:
            external_calls_counter.labels(service="openai", status="error").inc()
            raise ExternalServiceError(f"OpenAI request failed: {e}")
        except APIStatusError as e:
            external_calls_counter.labels(service="openai", status=str(e.status_code)).inc()
            raise ExternalServiceError(f"OpenAI returned {e.status_code}", retryable=e.status_code >= 500)

        text = (response.choices[0].message.content or "").strip()
        external_calls_counter.labels(service="openai", status="success").inc()
        return text


class UnconfiguredAIProvider(AIProvider):
    async def complete(self, prompt: str, config: Dict[str, Any]) -> str:
        raise FlowValidationError("No AI provider is configured for ai_assistant nodes")


def build_ai_provider() -> Optional[AIProvider]:
    if settings.openai_api_key:
        return OpenAIProvider(settings.openai_api_key, settings.openai_model)
    logger.info("OPENAI_API_KEY not set, ai_assistant nodes will fail validation.")
    return UnconfiguredAIProvider()
