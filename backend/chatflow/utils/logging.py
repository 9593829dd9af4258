# /chatflow/utils/logging.py

import logging
import sys
import structlog
from chatflow.config.settings import settings

# One log pipeline for the API and the scheduler process: structlog events
# and plain `logging` records both end up rendered by the same formatter.

MASKED = "***"
SENSITIVE_KEYS = {"authorization", "token", "api_key", "password", "secret", "variables"}


def redact_sensitive(_, __, event_dict):
    """Mask credentials and raw session variables if a caller binds them."""
    for key in list(event_dict):
        if key.lower() in SENSITIVE_KEYS:
            event_dict[key] = MASKED
    return event_dict


def _renderer():
    if settings.environment == "development":
        return structlog.dev.ConsoleRenderer()
    return structlog.processors.JSONRenderer()


def setup_logging(level: int = logging.INFO):
    pre_chain = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_log_level,
        structlog.stdlib.add_logger_name,
        structlog.processors.TimeStamper(fmt="iso", utc=True),
        redact_sensitive,
        structlog.processors.format_exc_info,
    ]

    structlog.configure(
        processors=[*pre_chain, structlog.stdlib.ProcessorFormatter.wrap_for_formatter],
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )

    stream = logging.StreamHandler(sys.stdout)
    stream.setFormatter(structlog.stdlib.ProcessorFormatter(processor=_renderer(), foreign_pre_chain=pre_chain))

    root = logging.getLogger()
    root.handlers = [stream]
    root.setLevel(level)

    # Request lines and job ticks drown out engine events.
    for noisy in ("uvicorn.access", "apscheduler", "httpx"):
        logging.getLogger(noisy).setLevel(logging.WARNING)
