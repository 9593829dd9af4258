# /chatflow/utils/errors.py

from typing import Optional

# Error taxonomy for the flow engine. Node handlers raise these (or return
# a Fail result); the interpreter turns them into step/session failures.


class FlowEngineError(Exception):
    kind = "internal"
    retryable = False

    def __init__(self, message: str, retryable: Optional[bool] = None):
        super().__init__(message)
        self.message = message
        if retryable is not None:
            self.retryable = retryable


class FlowValidationError(FlowEngineError):
    """Malformed node config or an unresolvable required variable."""
    kind = "validation"


class ExternalServiceError(FlowEngineError):
    """A channel send, webhook or AI call failed."""
    kind = "external_service"
    retryable = True


class NodeTimeoutError(FlowEngineError):
    kind = "timeout"
    retryable = True


class ConcurrencyError(FlowEngineError):
    """The session lock could not be taken in time. Session state is untouched."""
    kind = "concurrency"
    retryable = True


class GraphIntegrityError(FlowEngineError):
    """The cursor points at a node that does not exist in the pinned flow version."""
    kind = "graph_integrity"


class ExecutionBudgetExceeded(FlowEngineError):
    kind = "execution_budget"


class StoreUnavailableError(FlowEngineError):
    """The session store could not be reached. The caller should redeliver the event."""
    kind = "store_unavailable"
    retryable = True
