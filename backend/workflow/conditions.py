"""Condition evaluation for until-condition retries.

A condition is checked either against the live automation session
(selector visibility, URL match, in-page script) or against an API
response stored in the execution context (status code, JSON path match,
expression predicate). Every check returns ``(met, details)``; the
details string feeds the execution trace log and never raises.

API response shape stored under ``contextKey`` (default "apiResponse"):
    {"status": 200, "statusText": "OK", "headers": {...}, "body": {...},
     "duration": 123, "timestamp": "..."}

"api-javascript" predicates are Python expressions over ``response``
and ``context``, e.g. ``response.status == 200 and len(response.body.items) > 0``.
"""

import json
import re
from dataclasses import dataclass
from typing import Any, Optional

import structlog

from core.constants import ConditionType, DEFAULT_API_CONTEXT_KEY, MatchType
from workflow.context import ExecutionContext, resolve_path

logger = structlog.get_logger(__name__)

_MISSING = object()

_SAFE_BUILTINS = {
    "True": True, "False": False, "None": None,
    "len": len, "int": int, "float": float, "str": str,
    "bool": bool, "list": list, "dict": dict, "abs": abs,
    "min": min, "max": max, "any": any, "all": all,
    "isinstance": isinstance,
}


@dataclass
class Condition:
    """A retry-until condition as authored on a node."""
    type: ConditionType
    value: Optional[str] = None
    selector_type: str = "css"
    visibility: str = "visible"
    timeout: Optional[int] = None
    expected_status: Optional[int] = None
    json_path: Optional[str] = None
    expected_value: Any = None
    match_type: MatchType = MatchType.EQUALS
    context_key: str = DEFAULT_API_CONTEXT_KEY

    @property
    def is_api(self) -> bool:
        return self.type in (ConditionType.API_STATUS, ConditionType.API_JSON_PATH, ConditionType.API_SCRIPT)

    @classmethod
    def from_dict(cls, data: dict) -> "Condition":
        expected_status = data.get("expectedStatus")
        return cls(
            type=ConditionType(data.get("type", ConditionType.SELECTOR.value)),
            value=data.get("value"),
            selector_type=data.get("selectorType") or "css",
            visibility=data.get("visibility") or "visible",
            timeout=data.get("timeout"),
            expected_status=int(expected_status) if expected_status not in (None, "") else None,
            json_path=data.get("jsonPath"),
            expected_value=data.get("expectedValue"),
            match_type=MatchType(data.get("matchType") or MatchType.EQUALS.value),
            context_key=data.get("contextKey") or DEFAULT_API_CONTEXT_KEY,
        )

    def to_dict(self) -> dict:
        return {
            "type": self.type.value,
            "value": self.value,
            "selectorType": self.selector_type,
            "visibility": self.visibility,
            "timeout": self.timeout,
            "expectedStatus": self.expected_status,
            "jsonPath": self.json_path,
            "expectedValue": self.expected_value,
            "matchType": self.match_type.value,
            "contextKey": self.context_key,
        }


@dataclass
class ConditionResult:
    met: bool
    details: str = ""


# ─── Helpers ──────────────────────────────────────────────────

class _DotDict(dict):
    """Dict with attribute access for predicate expressions."""
    def __getattr__(self, name):
        try:
            return self[name]
        except KeyError:
            raise AttributeError(f"No key '{name}'")


def _make_dot_dict(obj, _depth=0, _max_depth=50):
    """Recursively convert dicts to _DotDict for expression-friendly access."""
    if _depth >= _max_depth:
        return obj
    if isinstance(obj, dict) and not isinstance(obj, _DotDict):
        return _DotDict({k: _make_dot_dict(v, _depth + 1, _max_depth) for k, v in obj.items()})
    elif isinstance(obj, list):
        return [_make_dot_dict(item, _depth + 1, _max_depth) for item in obj]
    return obj


def _truncate(value: str, limit: int = 100) -> str:
    return value if len(value) <= limit else value[:limit] + "..."


def _format_value(value: Any) -> str:
    if isinstance(value, (dict, list)):
        return _truncate(json.dumps(value, default=str))
    return _truncate(_js_string(value))


def _js_string(value: Any) -> str:
    """String form used for comparisons (booleans and None as in JSON)."""
    if value is True:
        return "true"
    if value is False:
        return "false"
    if value is None:
        return "null"
    if isinstance(value, float) and value.is_integer():
        return str(int(value))
    return str(value)


def compile_url_pattern(pattern: str) -> "re.Pattern[str]":
    """``/.../`` is a regular expression, anything else a literal substring."""
    if len(pattern) >= 2 and pattern.startswith("/") and pattern.endswith("/"):
        return re.compile(pattern[1:-1])
    return re.compile(re.escape(pattern))


def match_value(actual: Any, expected: Any, match_type: MatchType) -> bool:
    """Compare string forms of two values with a match operator."""
    actual_str = _js_string(actual)
    expected_str = _js_string(expected)

    if match_type == MatchType.CONTAINS:
        return expected_str in actual_str
    if match_type == MatchType.STARTS_WITH:
        return actual_str.startswith(expected_str)
    if match_type == MatchType.ENDS_WITH:
        return actual_str.endswith(expected_str)
    if match_type == MatchType.REGEX:
        try:
            return re.search(expected_str, actual_str) is not None
        except re.error:
            return False
    return actual_str == expected_str


def run_update_step(expression: str, context: ExecutionContext) -> Any:
    """Evaluate a loop update expression against the context.

    Example: ``set_variable("page", variables["page"] + 1)``
    """
    namespace = {
        "data": context.data,
        "variables": context.variables,
        "get_data": context.get_data,
        "set_data": context.set_data,
        "get_variable": context.get_variable,
        "set_variable": context.set_variable,
    }
    return eval(expression, {"__builtins__": _SAFE_BUILTINS}, namespace)


def get_nested_value(obj: Any, path: str) -> Any:
    """Walk a dot path (list indices allowed); returns _MISSING when absent."""
    try:
        return resolve_path(path, obj)
    except KeyError:
        return _MISSING


# ─── Evaluator ────────────────────────────────────────────────

class ConditionEvaluator:
    """Checks retry-until conditions against a session or stored API response."""

    async def evaluate(self, condition: Condition, context: ExecutionContext) -> ConditionResult:
        try:
            if condition.is_api:
                return self._check_api(condition, context)
            return await self._check_session(condition, context)
        except Exception as e:
            logger.warning("Condition check error", condition=condition.type.value, error=str(e))
            return ConditionResult(False, f"Error: {e}")

    async def _check_session(self, condition: Condition, context: ExecutionContext) -> ConditionResult:
        session = context.session
        if session is None:
            return ConditionResult(False, "No automation session available")

        kind = condition.type.value
        value = condition.value or ""

        if condition.type == ConditionType.SELECTOR:
            try:
                visible = await session.is_visible(value, condition.selector_type)
            except Exception:
                visible = False
            wants_invisible = condition.visibility == "invisible"
            met = not visible if wants_invisible else visible
            state = "visible" if visible else "invisible"
            return ConditionResult(
                met, f"{kind} | selector: {value} | expected: {condition.visibility} | got: {state}"
            )

        if condition.type == ConditionType.URL:
            current_url = await session.current_url()
            try:
                met = compile_url_pattern(value).search(current_url) is not None
            except re.error:
                met = value in current_url
            return ConditionResult(met, f"{kind} | pattern: {value} | got: {_truncate(current_url)}")

        if condition.type == ConditionType.JAVASCRIPT:
            met = bool(await session.evaluate(value))
            return ConditionResult(
                met, f"{kind} | expression: {_truncate(value)} | result: {_js_string(met)}"
            )

        return ConditionResult(False, "Unknown condition type")

    def _check_api(self, condition: Condition, context: ExecutionContext) -> ConditionResult:
        response = context.get_data(condition.context_key)
        if not response:
            return ConditionResult(False, "API response not found")

        kind = condition.type.value

        if condition.type == ConditionType.API_STATUS:
            if condition.expected_status is None:
                return ConditionResult(False, "Expected status not specified")
            actual = response.get("status")
            return ConditionResult(
                actual == condition.expected_status,
                f"{kind} | expected: {condition.expected_status} | equals | got: {actual}",
            )

        if condition.type == ConditionType.API_JSON_PATH:
            if not condition.json_path or condition.expected_value is None:
                return ConditionResult(False, "JSON path or expected value not specified")
            expected_str = _format_value(condition.expected_value)
            actual = get_nested_value(response.get("body"), condition.json_path)
            if actual is _MISSING:
                return ConditionResult(
                    False,
                    f"{kind} | jsonPath: {condition.json_path} | expected: {expected_str} | got: undefined",
                )
            met = match_value(actual, condition.expected_value, condition.match_type)
            return ConditionResult(
                met,
                f"{kind} | expected: {expected_str} | {condition.match_type.value} | got: {_format_value(actual)}",
            )

        if condition.type == ConditionType.API_SCRIPT:
            if not condition.value:
                return ConditionResult(False, "Expression not specified")
            namespace = {
                "response": _make_dot_dict({
                    "status": response.get("status"),
                    "statusText": response.get("statusText"),
                    "headers": response.get("headers"),
                    "body": response.get("body"),
                    "duration": response.get("duration"),
                    "timestamp": response.get("timestamp"),
                }),
                "context": _make_dot_dict({
                    "data": context.data,
                    "variables": context.variables,
                }),
            }
            try:
                met = bool(eval(condition.value, {"__builtins__": _SAFE_BUILTINS}, namespace))
            except Exception as e:
                logger.warning("API expression condition error", error=str(e))
                return ConditionResult(False, f"Expression error: {e}")
            return ConditionResult(
                met, f"{kind} | expression: {_truncate(condition.value)} | result: {_js_string(met)}"
            )

        return ConditionResult(False, "Unknown condition type")
