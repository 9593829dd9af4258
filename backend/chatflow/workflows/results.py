# /chatflow/workflows/results.py

"""
Results a node handler hands back to the interpreter.

Exactly one of these is returned per node execution attempt:

- Advance:   move to a single deterministic successor (None ends the flow)
- Branch:    move to the successor chosen by evaluating outgoing edges
- Suspend:   stop here until input, a timer or a callback arrives
- Terminate: end the session with an explicit final status
- Fail:      the attempt failed; the interpreter decides whether to retry

Variable writes travel with the result so the interpreter can apply them
atomically with the cursor move.
"""

from dataclasses import dataclass, field
from typing import Optional, Dict, Any, Union

from chatflow.models.session import SessionStatus, SessionVariable, WaitingContext


@dataclass(frozen=True)
class Advance:
    next_node_id: Optional[str]
    variables: Dict[str, SessionVariable] = field(default_factory=dict)
    contact_updates: Dict[str, Any] = field(default_factory=dict)
    output: Dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class Branch:
    next_node_id: Optional[str]
    branch_label: Optional[str]
    variables: Dict[str, SessionVariable] = field(default_factory=dict)
    output: Dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class Suspend:
    waiting_context: WaitingContext
    variables: Dict[str, SessionVariable] = field(default_factory=dict)
    output: Dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class Terminate:
    final_status: SessionStatus = SessionStatus.COMPLETED
    reason: Optional[str] = None
    variables: Dict[str, SessionVariable] = field(default_factory=dict)
    output: Dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class Fail:
    error_kind: str
    message: str
    retryable: bool = False
    output: Dict[str, Any] = field(default_factory=dict)


NodeResult = Union[Advance, Branch, Suspend, Terminate, Fail]
