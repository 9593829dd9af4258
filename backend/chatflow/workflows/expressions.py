# /chatflow/workflows/expressions.py

"""
Variable interpolation and condition evaluation.

Tokens look like `{{name}}` or `{{contact.first_name}}` or
`{{order.items.0.sku}}`. A scope is a plain dict with four reserved
namespaces (`message`, `contact`, `session`, `variables`); every session
variable is also reachable at the top level by its own name, unless it
collides with a reserved namespace.

Unresolvable references become the UNDEFINED sentinel instead of raising.
Conditions against UNDEFINED never match, except the ones that test for
absence (`not_exists`, `is_empty`).

Everything here is pure and safe to call concurrently.
"""

import json
import re
from collections.abc import Mapping
from typing import Any, Dict, List, Optional, Sequence, Tuple, TypedDict

from chatflow.models.flow import FlowEdge
from chatflow.utils.errors import FlowValidationError

RESERVED_NAMESPACES = ("message", "contact", "session", "variables")
TOKEN_PATTERN = re.compile(r"\{\{\s*([A-Za-z_][\w\-]*(?:\.[\w\-]+)*)\s*\}\}")


class _Undefined:
    _instance = None

    def __new__(cls):
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __bool__(self):
        return False

    def __str__(self):
        return ""

    def __repr__(self):
        return "UNDEFINED"


UNDEFINED = _Undefined()


class EdgeEvaluation(TypedDict):
    edge_id: Optional[str]
    label: Optional[str]
    target: str
    matched: bool


def build_scope(
    variables: Optional[Dict[str, Any]] = None,
    message: Optional[Dict[str, Any]] = None,
    contact: Optional[Dict[str, Any]] = None,
    session: Optional[Dict[str, Any]] = None,
) -> Dict[str, Any]:
    variables = dict(variables or {})
    scope: Dict[str, Any] = {
        key: value for key, value in variables.items() if key not in RESERVED_NAMESPACES
    }
    scope["variables"] = variables
    scope["message"] = dict(message or {})
    scope["contact"] = dict(contact or {})
    scope["session"] = dict(session or {})
    return scope


def resolve_path(path: str, scope: Mapping) -> Any:
    """Walk a dotted path through mappings and sequences."""
    current: Any = scope
    for part in path.split("."):
        if isinstance(current, Mapping):
            if part not in current:
                return UNDEFINED
            current = current[part]
        elif isinstance(current, (list, tuple)):
            try:
                current = current[int(part)]
            except (ValueError, IndexError):
                return UNDEFINED
        else:
            return UNDEFINED
    return current


def _stringify(value: Any) -> str:
    if value is UNDEFINED or value is None:
        return ""
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, (dict, list)):
        return json.dumps(value, default=str)
    return str(value)


def render(template: Optional[str], scope: Mapping, strict: bool = False) -> str:
    """
    Substitute every `{{token}}` in `template`.

    With `strict=True` an unresolvable token raises FlowValidationError;
    otherwise it renders as an empty string.
    """
    if not template:
        return ""

    def _replace(match: re.Match) -> str:
        value = resolve_path(match.group(1), scope)
        if value is UNDEFINED and strict:
            raise FlowValidationError(f"Unresolvable variable '{match.group(1)}'")
        return _stringify(value)

    return TOKEN_PATTERN.sub(_replace, template)


def render_value(value: Any, scope: Mapping, strict: bool = False) -> Any:
    """
    Interpolate a structured value (e.g. a webhook body). A string that is
    exactly one token keeps the raw type of the resolved value.
    """
    if isinstance(value, str):
        single = TOKEN_PATTERN.fullmatch(value.strip())
        if single:
            resolved = resolve_path(single.group(1), scope)
            if resolved is UNDEFINED:
                if strict:
                    raise FlowValidationError(f"Unresolvable variable '{single.group(1)}'")
                return None
            return resolved
        return render(value, scope, strict=strict)
    if isinstance(value, Mapping):
        return {key: render_value(item, scope, strict) for key, item in value.items()}
    if isinstance(value, (list, tuple)):
        return [render_value(item, scope, strict) for item in value]
    return value


def referenced_variables(value: Any) -> Tuple[str, ...]:
    """Every token path referenced anywhere in a structured value, in first-seen order."""
    found: List[str] = []

    def _walk(item: Any) -> None:
        if isinstance(item, str):
            for match in TOKEN_PATTERN.finditer(item):
                if match.group(1) not in found:
                    found.append(match.group(1))
        elif isinstance(item, Mapping):
            for nested in item.values():
                _walk(nested)
        elif isinstance(item, (list, tuple)):
            for nested in item:
                _walk(nested)

    _walk(value)
    return tuple(found)


# ==================== Conditions ====================

def _to_number(value: Any) -> Optional[float]:
    if isinstance(value, bool) or value is None or value is UNDEFINED:
        return None
    if isinstance(value, (int, float)):
        return float(value)
    try:
        return float(str(value).strip())
    except ValueError:
        return None


def _text(value: Any, case_sensitive: bool) -> str:
    text = _stringify(value)
    return text if case_sensitive else text.lower()


def _is_empty(value: Any) -> bool:
    if value is UNDEFINED or value is None:
        return True
    if isinstance(value, str):
        return not value.strip()
    if isinstance(value, (list, tuple, dict)):
        return len(value) == 0
    return False


def _equals(left: Any, right: Any, case_sensitive: bool) -> bool:
    left_num, right_num = _to_number(left), _to_number(right)
    if left_num is not None and right_num is not None and (
        isinstance(left, (int, float)) or isinstance(right, (int, float))
    ):
        return left_num == right_num
    if isinstance(left, bool) or isinstance(right, bool):
        return _text(left, False) == _text(right, False)
    return _text(left, case_sensitive) == _text(right, case_sensitive)


def _compare(left: Any, right: Any, op: str) -> bool:
    left_num, right_num = _to_number(left), _to_number(right)
    if left_num is None or right_num is None:
        return False
    return {
        "gt": left_num > right_num,
        "gte": left_num >= right_num,
        "lt": left_num < right_num,
        "lte": left_num <= right_num,
    }[op]


def _regex(left: Any, pattern: Any, case_sensitive: bool) -> bool:
    try:
        compiled = re.compile(str(pattern), 0 if case_sensitive else re.IGNORECASE)
    except re.error as e:
        raise FlowValidationError(f"Invalid regex '{pattern}': {e}")
    return compiled.search(_stringify(left)) is not None


_OPERATOR_ALIASES = {
    "==": "equals", "eq": "equals", "equal": "equals",
    "!=": "not_equals", "ne": "not_equals",
    ">": "gt", ">=": "gte", "<": "lt", "<=": "lte",
    "matches": "regex", "exist": "exists", "is_set": "exists",
    "not_exist": "not_exists", "is_not_set": "not_exists",
}

OPERATORS = (
    "equals", "not_equals", "contains", "not_contains", "starts_with", "ends_with",
    "gt", "gte", "lt", "lte", "regex", "in", "exists", "not_exists", "is_empty", "is_not_empty",
)


def evaluate_condition(condition: Mapping, scope: Mapping) -> bool:
    """
    Evaluate a condition document.

    Leaf form: {"variable": "message.text", "operator": "contains", "value": "yes"}
    Compound forms: {"all": [...]}, {"any": [...]}, {"not": {...}}
    """
    if not isinstance(condition, Mapping):
        raise FlowValidationError(f"Condition must be an object, got {type(condition).__name__}")

    if "all" in condition:
        return all(evaluate_condition(c, scope) for c in condition["all"])
    if "any" in condition:
        return any(evaluate_condition(c, scope) for c in condition["any"])
    if "not" in condition:
        return not evaluate_condition(condition["not"], scope)

    path = condition.get("variable") or condition.get("left")
    if not path:
        raise FlowValidationError("Condition is missing 'variable'")
    op = str(condition.get("operator", "equals")).lower()
    op = _OPERATOR_ALIASES.get(op, op)
    if op not in OPERATORS:
        raise FlowValidationError(f"Unknown condition operator '{op}'")

    left = resolve_path(str(path).strip("{} "), scope)
    case_sensitive = bool(condition.get("case_sensitive", False))

    if op == "not_exists":
        return left is UNDEFINED or left is None
    if op == "is_empty":
        return _is_empty(left)
    if left is UNDEFINED:
        return False
    if op == "exists":
        return left is not None
    if op == "is_not_empty":
        return not _is_empty(left)

    right = render_value(condition.get("value"), scope)

    if op == "equals":
        return _equals(left, right, case_sensitive)
    if op == "not_equals":
        return not _equals(left, right, case_sensitive)
    if op == "contains":
        if isinstance(left, (list, tuple)):
            return any(_equals(item, right, case_sensitive) for item in left)
        return _text(right, case_sensitive) in _text(left, case_sensitive)
    if op == "not_contains":
        if isinstance(left, (list, tuple)):
            return not any(_equals(item, right, case_sensitive) for item in left)
        return _text(right, case_sensitive) not in _text(left, case_sensitive)
    if op == "starts_with":
        return _text(left, case_sensitive).startswith(_text(right, case_sensitive))
    if op == "ends_with":
        return _text(left, case_sensitive).endswith(_text(right, case_sensitive))
    if op == "regex":
        return _regex(left, right, case_sensitive)
    if op == "in":
        options = right if isinstance(right, (list, tuple)) else [
            part.strip() for part in _stringify(right).split(",")
        ]
        return any(_equals(left, option, case_sensitive) for option in options)
    return _compare(left, right, op)


def _ordered(edges: Sequence[FlowEdge]) -> List[FlowEdge]:
    return [e for e in edges if not e.is_default] + [e for e in edges if e.is_default]


def _edge_matches(edge: FlowEdge, scope: Mapping) -> bool:
    if edge.is_default:
        return True
    if edge.condition is None:
        return False
    return evaluate_condition(edge.condition, scope)


def evaluate_edges(edges: Sequence[FlowEdge], scope: Mapping) -> List[EdgeEvaluation]:
    """
    Evaluate outgoing edges in declared order, default/else edges last, and
    stop at the first match. Edges after it are never evaluated, so a broken
    condition further down cannot fail a branch that already resolved.
    Edges without a condition only match when they are default edges.
    """
    evaluations: List[EdgeEvaluation] = []
    for edge in _ordered(edges):
        matched = _edge_matches(edge, scope)
        evaluations.append({"edge_id": edge.id, "label": edge.label, "target": edge.target, "matched": matched})
        if matched:
            break
    return evaluations

