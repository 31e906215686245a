"""Per-execution context shared by the executor and step handlers."""

import re
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Optional

import structlog

from workflow.session import AutomationSession

logger = structlog.get_logger(__name__)

_REFERENCE_PATTERN = re.compile(r"\$\{\s*([A-Za-z_][\w.\-]*)\s*\}")


def resolve_path(path: str, namespace: Any) -> Any:
    """Resolve a dot-notation path like 'data.apiResponse.body.items.0'."""
    current = namespace
    for part in path.split("."):
        if part == "":
            continue
        if isinstance(current, dict):
            if part in current:
                current = current[part]
            else:
                raise KeyError(f"Cannot resolve '{part}' in path '{path}'")
        elif isinstance(current, (list, tuple)):
            try:
                current = current[int(part)]
            except (ValueError, IndexError):
                raise KeyError(f"Cannot resolve '{part}' in path '{path}'")
        elif hasattr(current, part):
            current = getattr(current, part)
        else:
            raise KeyError(f"Cannot resolve '{part}' in path '{path}'")
    return current


@dataclass
class StepRecord:
    """Output of one executed node."""
    node_id: str
    output: Any = None
    duration_ms: float = 0
    attempts: int = 1
    suppressed_error: Optional[str] = None


@dataclass
class ExecutionContext:
    """State owned by exactly one execution.

    Holds the automation session, a key/value data store (API responses,
    flags set by the scheduler), workflow variables used for
    ``${variables.x}`` interpolation, and per-node results.
    """

    execution_id: str
    session: Optional[AutomationSession] = None
    data: dict[str, Any] = field(default_factory=dict)
    variables: dict[str, Any] = field(default_factory=dict)
    steps: dict[str, StepRecord] = field(default_factory=dict)
    current_node_id: Optional[str] = None
    trace_hook: Optional[Callable[..., None]] = field(default=None, repr=False)
    pause_hook: Optional[Callable[[str], Awaitable[None]]] = field(default=None, repr=False)

    def set_data(self, key: str, value: Any) -> None:
        self.data[key] = value

    def get_data(self, key: str, default: Any = None) -> Any:
        return self.data.get(key, default)

    def set_variable(self, key: str, value: Any) -> None:
        """Set a workflow variable."""
        self.variables[key] = value

    def get_variable(self, key: str, default: Any = None) -> Any:
        """Get a workflow variable."""
        return self.variables.get(key, default)

    def set_step_result(self, record: StepRecord) -> None:
        self.steps[record.node_id] = record

    def get_step_output(self, node_id: str) -> Any:
        record = self.steps.get(node_id)
        return record.output if record else None

    def interpolate(self, value: Any) -> Any:
        """Replace ``${variables.x}`` / ``${data.x}`` references in a string.

        A string that is exactly one reference resolves to the referenced
        value itself (keeping its type). Unresolvable references are left
        untouched.
        """
        if not isinstance(value, str) or "${" not in value:
            return value

        namespace = {"variables": self.variables, "data": self.data}
        whole = _REFERENCE_PATTERN.fullmatch(value.strip())
        if whole:
            try:
                return resolve_path(whole.group(1), namespace)
            except KeyError:
                return value

        def _sub(match: re.Match) -> str:
            try:
                return str(resolve_path(match.group(1), namespace))
            except KeyError:
                return match.group(0)

        return _REFERENCE_PATTERN.sub(_sub, value)

    def interpolate_number(self, value: Any, default: Optional[float] = None) -> Optional[float]:
        """Interpolate and coerce to a number, falling back to ``default``."""
        resolved = self.interpolate(value)
        if resolved is None or resolved == "":
            return default
        if isinstance(resolved, bool):
            return default
        if isinstance(resolved, (int, float)):
            return resolved
        try:
            number = float(resolved)
        except (TypeError, ValueError):
            logger.warning("Not a number, using default", value=value, default=default)
            return default
        return int(number) if number.is_integer() else number

    def trace(self, message: str, **fields: Any) -> None:
        """Record a trace line for the current node (no-op unless tracing)."""
        if self.trace_hook is not None:
            self.trace_hook(message, **fields)

    async def request_pause(self) -> None:
        """Suspend the execution as a workflow-defined wait-pause."""
        if self.pause_hook is None:
            raise RuntimeError("Pausing is not available outside a running execution")
        await self.pause_hook(self.current_node_id or "")

    def to_dict(self) -> dict:
        return {
            "execution_id": self.execution_id,
            "current_node_id": self.current_node_id,
            "variables": self.variables,
            "steps": {
                node_id: {
                    "output": r.output,
                    "duration_ms": r.duration_ms,
                    "attempts": r.attempts,
                    "suppressed_error": r.suppressed_error,
                }
                for node_id, r in self.steps.items()
            },
        }
