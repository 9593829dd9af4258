# /chatflow/utils/circuit_breaker.py

import asyncio
import logging
import time
from enum import Enum
from typing import Any, Awaitable, Callable, Optional

from chatflow.utils.errors import ExternalServiceError

# Per-provider breaker in front of the channel gateway, OpenAI and Redis.
# Permanent errors (a rejected request) say nothing about the provider's
# health and do not count towards opening the circuit.

logger = logging.getLogger(__name__)


class CircuitState(Enum):
    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"


class CircuitOpenError(ExternalServiceError):
    """Raised instead of calling a provider whose circuit is open."""


def _counts_as_failure(error: BaseException) -> bool:
    if isinstance(error, ExternalServiceError):
        return error.retryable
    return True


class CircuitBreaker:
    def __init__(
        self,
        name: str,
        failure_threshold: int = 5,
        reset_after_seconds: float = 60.0,
        probes_to_close: int = 2,
        monotonic: Callable[[], float] = time.monotonic,
    ):
        self.name = name
        self.failure_threshold = failure_threshold
        self.reset_after_seconds = reset_after_seconds
        self.probes_to_close = probes_to_close
        self._monotonic = monotonic
        self.state = CircuitState.CLOSED
        self.consecutive_failures = 0
        self.successful_probes = 0
        self.opened_at: Optional[float] = None
        self._lock = asyncio.Lock()

    async def call(self, func: Callable[..., Awaitable[Any]], *args: Any, **kwargs: Any) -> Any:
        await self._before_call()
        try:
            result = await func(*args, **kwargs)
        except Exception as e:
            if _counts_as_failure(e):
                await self._record_failure()
            raise
        await self._record_success()
        return result

    async def _before_call(self):
        async with self._lock:
            if self.state != CircuitState.OPEN:
                return
            if self.opened_at is not None and self._monotonic() - self.opened_at >= self.reset_after_seconds:
                self.state = CircuitState.HALF_OPEN
                self.successful_probes = 0
                logger.info(f"Circuit '{self.name}' half-open, probing provider")
                return
        raise CircuitOpenError(f"Circuit '{self.name}' is open")

    async def _record_success(self):
        async with self._lock:
            self.consecutive_failures = 0
            if self.state != CircuitState.HALF_OPEN:
                return
            self.successful_probes += 1
            if self.successful_probes >= self.probes_to_close:
                self.state = CircuitState.CLOSED
                self.opened_at = None
                logger.info(f"Circuit '{self.name}' closed again")

    async def _record_failure(self):
        async with self._lock:
            self.consecutive_failures += 1
            half_open = self.state == CircuitState.HALF_OPEN
            if half_open or self.consecutive_failures >= self.failure_threshold:
                if self.state != CircuitState.OPEN:
                    logger.error(f"Circuit '{self.name}' opened after {self.consecutive_failures} consecutive failure(s)")
                self.state = CircuitState.OPEN
                self.opened_at = self._monotonic()
