# /chatflow/workflows/validator.py

"""
Pure validation functions for flow graphs.

These checks run when a flow version is published and again when the
execution scheduler loads a version for a new session. They are:
- Pure (no side effects)
- Deterministic (same input = same output)
- Free of database, network and logging calls
"""

from typing import Optional, Iterable, TypedDict

from chatflow.models.flow import FlowVersion, ENTRY_NODE_TYPES


class ValidationResult(TypedDict):
    """Result of a validation check."""
    is_valid: bool
    error_code: Optional[str]
    message: Optional[str]


_VALID: ValidationResult = {"is_valid": True, "error_code": None, "message": None}


def _invalid(code: str, message: str) -> ValidationResult:
    return {"is_valid": False, "error_code": code, "message": message}


def validate_entry_node(flow: FlowVersion) -> ValidationResult:
    """A flow must have exactly one start/trigger node."""
    entries = [n for n in flow.nodes if n.type in ENTRY_NODE_TYPES]
    if not entries:
        return _invalid("MISSING_ENTRY_NODE", f"Flow '{flow.flow_id}' has no start or trigger node")
    if len(entries) > 1:
        ids = ", ".join(n.id for n in entries)
        return _invalid("MULTIPLE_ENTRY_NODES", f"Flow '{flow.flow_id}' has several entry nodes: {ids}")
    return _VALID


def validate_unique_node_ids(flow: FlowVersion) -> ValidationResult:
    seen = set()
    for node in flow.nodes:
        if not node.id:
            return _invalid("EMPTY_NODE_ID", "Node id cannot be empty")
        if node.id in seen:
            return _invalid("DUPLICATE_NODE_ID", f"Node id '{node.id}' is used more than once")
        seen.add(node.id)
    return _VALID


def validate_edges(flow: FlowVersion) -> ValidationResult:
    """Every edge must connect two existing nodes and never point back at the entry node."""
    node_ids = {n.id for n in flow.nodes}
    entry = flow.entry_node()
    for edge in flow.edges:
        if edge.source not in node_ids:
            return _invalid("UNKNOWN_EDGE_SOURCE", f"Edge source '{edge.source}' is not a node of this flow")
        if edge.target not in node_ids:
            return _invalid("UNKNOWN_EDGE_TARGET", f"Edge target '{edge.target}' is not a node of this flow")
        if entry is not None and edge.target == entry.id:
            return _invalid("EDGE_TO_ENTRY", f"Edge from '{edge.source}' points back at the entry node")
    return _VALID


def validate_node_types(flow: FlowVersion, known_types: Iterable[str]) -> ValidationResult:
    known = set(known_types)
    unknown = sorted({n.type for n in flow.nodes if n.type not in known})
    if unknown:
        return _invalid("UNKNOWN_NODE_TYPE", f"Flow uses unregistered node types: {', '.join(unknown)}")
    return _VALID


def validate_flow_version(flow: FlowVersion, known_types: Iterable[str]) -> ValidationResult:
    """Run every graph check and return the first failure."""
    for result in (
        validate_unique_node_ids(flow),
        validate_entry_node(flow),
        validate_edges(flow),
        validate_node_types(flow, known_types),
    ):
        if not result["is_valid"]:
            return result
    return _VALID
