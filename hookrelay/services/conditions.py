"""
Condition evaluation for forwarding rules.

A condition is {"field": "body.event.type", "operator": "equals", "value": "push"}
evaluated against a request view {"body", "headers", "method", "query"}.
Every operator fails closed: a missing field, a bad regex or a value that
won't coerce makes the condition False instead of raising.
"""
import json
import logging
import math
import re
from typing import Any

logger = logging.getLogger(__name__)


class _Missing:
    """Sentinel for a path that did not resolve (distinct from a present None)."""

    _instance = None

    def __new__(cls):
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __repr__(self) -> str:
        return "MISSING"

    def __bool__(self) -> bool:
        return False


MISSING = _Missing()


def split_path(path: str) -> list[str]:
    return [segment for segment in (path or "").split(".") if segment != ""]


def resolve_path(data: Any, path: str) -> Any:
    """
    Walk a dotted path through nested dicts and lists.
    List segments must be integer indexes. Returns MISSING on any miss.
    """
    segments = split_path(path)
    if not segments:
        return MISSING

    current = data
    for segment in segments:
        if isinstance(current, dict):
            if segment not in current:
                return MISSING
            current = current[segment]
        elif isinstance(current, list):
            try:
                index = int(segment)
            except ValueError:
                return MISSING
            if index < 0 or index >= len(current):
                return MISSING
            current = current[index]
        else:
            return MISSING
    return current


def build_request_view(body: Any, headers: dict, method: str, query: dict) -> dict:
    """
    The structure conditions are resolved against. Header names are
    lower-cased so `headers.x-github-event` matches regardless of casing.
    """
    return {
        "body": body,
        "headers": {str(k).lower(): v for k, v in (headers or {}).items()},
        "method": (method or "").upper(),
        "query": dict(query or {}),
    }


def stringify(value: Any) -> str:
    """String form used by the string operators. Objects compare by their JSON."""
    if value is None:
        return "null"
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, (dict, list)):
        return json.dumps(value, sort_keys=True, separators=(",", ":"))
    if isinstance(value, float) and value.is_integer():
        return str(int(value))
    return str(value)


def to_number(value: Any) -> float:
    """float() coercion; anything non-numeric becomes NaN."""
    if isinstance(value, bool) or value is None:
        return math.nan
    try:
        return float(value)
    except (TypeError, ValueError):
        return math.nan


def _equals(actual: Any, expected: Any) -> bool:
    if isinstance(actual, (dict, list)) or isinstance(expected, (dict, list)):
        return actual == expected
    return stringify(actual) == stringify(expected)


def _regex(actual: Any, pattern: Any) -> bool:
    return re.search(str(pattern), stringify(actual)) is not None


def _greater_than(actual: Any, expected: Any) -> bool:
    # NaN compares False both ways
    return to_number(actual) > to_number(expected)


def _less_than(actual: Any, expected: Any) -> bool:
    return to_number(actual) < to_number(expected)


OPERATORS = {
    "equals": _equals,
    "notEquals": lambda actual, expected: not _equals(actual, expected),
    "contains": lambda actual, expected: stringify(expected) in stringify(actual),
    "startsWith": lambda actual, expected: stringify(actual).startswith(stringify(expected)),
    "endsWith": lambda actual, expected: stringify(actual).endswith(stringify(expected)),
    "regex": _regex,
    "greaterThan": _greater_than,
    "lessThan": _less_than,
}


def evaluate_condition(condition: dict, view: dict) -> bool:
    """Evaluate one condition. Never raises."""
    try:
        field = condition.get("field") or ""
        operator = condition.get("operator") or "equals"
        expected = condition.get("value")

        actual = resolve_path(view, field)

        if operator == "exists":
            return actual is not MISSING and actual is not None
        if actual is MISSING:
            return False

        fn = OPERATORS.get(operator)
        if fn is None:
            logger.warning("Unknown condition operator: %s", operator)
            return False
        return bool(fn(actual, expected))
    except Exception as e:
        logger.debug("Condition evaluation failed (field=%s): %s", condition.get("field"), str(e))
        return False


def evaluate_conditions(conditions: list[dict], view: dict) -> bool:
    """AND across conditions. An empty list matches."""
    for condition in conditions or []:
        if not evaluate_condition(condition, view):
            return False
    return True
