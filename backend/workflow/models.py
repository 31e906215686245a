"""Workflow graph and execution data structures.

Workflows are authored by the visual editor and stored as JSON:
{
    "nodes": [
        {"id": "start", "type": "start", "position": {"x": 0, "y": 0}, "data": {}},
        {
            "id": "n1",
            "type": "navigate",
            "data": {
                "url": "https://example.com",
                "retryEnabled": true, "retryCount": 2, "retryDelay": 500,
                "waitForSelector": "#app", "waitForSelectorTimeout": 5000,
                "bypass": false, "breakpoint": true
            }
        }
    ],
    "edges": [
        {"id": "e1", "source": "start", "target": "n1",
         "sourceHandle": "output", "targetHandle": "input"}
    ]
}

Edges whose target handle ends with "-input" feed a property of the
target node (data edges); all other edges are control flow.
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Optional

from core.constants import (
    BreakpointScope,
    BreakpointTiming,
    EventType,
    OutcomeStatus,
    PROPERTY_INPUT_SUFFIX,
    START_NODE_TYPE,
)
from core.exceptions import StepError


# ─── Graph ────────────────────────────────────────────────────

@dataclass
class Node:
    """A single typed step in a workflow graph."""
    id: str
    type: str
    data: dict[str, Any] = field(default_factory=dict)
    position: dict[str, float] = field(default_factory=dict)

    @property
    def is_start(self) -> bool:
        return self.type == START_NODE_TYPE

    @property
    def bypass(self) -> bool:
        return bool(self.data.get("bypass", False))

    @property
    def breakpoint(self) -> bool:
        return bool(self.data.get("breakpoint", False))

    @property
    def fail_silently(self) -> bool:
        return bool(self.data.get("failSilently", False))

    @classmethod
    def from_dict(cls, data: dict) -> "Node":
        return cls(
            id=str(data.get("id", "")),
            type=str(data.get("type", "")),
            data=dict(data.get("data") or {}),
            position=dict(data.get("position") or {}),
        )

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "type": self.type,
            "position": self.position,
            "data": self.data,
        }


@dataclass
class Edge:
    """A directed connection between two nodes."""
    source: str
    target: str
    id: Optional[str] = None
    source_handle: Optional[str] = None
    target_handle: Optional[str] = None

    @property
    def is_property_input(self) -> bool:
        """True for data edges that feed a node property."""
        return bool(self.target_handle) and self.target_handle.endswith(PROPERTY_INPUT_SUFFIX)

    @property
    def is_control_flow(self) -> bool:
        return not self.is_property_input

    @classmethod
    def from_dict(cls, data: dict) -> "Edge":
        return cls(
            id=data.get("id"),
            source=str(data.get("source", "")),
            target=str(data.get("target", "")),
            source_handle=data.get("sourceHandle"),
            target_handle=data.get("targetHandle"),
        )

    def to_dict(self) -> dict:
        return {
            "id": self.id or f"{self.source}-{self.target}",
            "source": self.source,
            "target": self.target,
            "sourceHandle": self.source_handle,
            "targetHandle": self.target_handle,
        }


@dataclass
class Workflow:
    """A workflow graph: nodes plus the edges between them."""
    nodes: list[Node] = field(default_factory=list)
    edges: list[Edge] = field(default_factory=list)
    metadata: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_dict(cls, data: dict) -> "Workflow":
        if not isinstance(data, dict):
            raise TypeError(f"Workflow definition must be an object, got {type(data).__name__}")
        return cls(
            nodes=[Node.from_dict(n) for n in data.get("nodes") or []],
            edges=[Edge.from_dict(e) for e in data.get("edges") or []],
            metadata=dict(data.get("metadata") or {}),
        )

    @classmethod
    def coerce(cls, value: "Workflow | dict") -> "Workflow":
        """Accept either a Workflow or its JSON dict form."""
        if isinstance(value, Workflow):
            return value
        return cls.from_dict(value)

    def to_dict(self) -> dict:
        return {
            "nodes": [n.to_dict() for n in self.nodes],
            "edges": [e.to_dict() for e in self.edges],
            "metadata": self.metadata,
        }


# ─── Breakpoints ──────────────────────────────────────────────

@dataclass
class BreakpointConfig:
    """Debugger breakpoint policy for one execution."""
    enabled: bool = False
    breakpoint_at: BreakpointTiming = BreakpointTiming.PRE
    breakpoint_for: BreakpointScope = BreakpointScope.MARKED

    @classmethod
    def from_dict(cls, data: Optional[dict]) -> Optional["BreakpointConfig"]:
        if data is None:
            return None
        return cls(
            enabled=bool(data.get("enabled", False)),
            breakpoint_at=BreakpointTiming(data.get("breakpointAt", BreakpointTiming.PRE.value)),
            breakpoint_for=BreakpointScope(data.get("breakpointFor", BreakpointScope.MARKED.value)),
        )

    def to_dict(self) -> dict:
        return {
            "enabled": self.enabled,
            "breakpointAt": self.breakpoint_at.value,
            "breakpointFor": self.breakpoint_for.value,
        }


def should_trigger_breakpoint(
    node: Node,
    timing: BreakpointTiming,
    config: Optional[BreakpointConfig],
) -> bool:
    """Decide whether the debugger should pause at this node and check-point."""
    if config is None or not config.enabled:
        return False
    if config.breakpoint_at != BreakpointTiming.BOTH and config.breakpoint_at != timing:
        return False
    if config.breakpoint_for == BreakpointScope.MARKED:
        return node.breakpoint
    return True


# ─── Outcomes ─────────────────────────────────────────────────

@dataclass
class StepOutcome:
    """Tri-state result returned by the retry and wait coordinators.

    SUCCESS carries the operation's value, FAILURE carries the error the
    caller must surface, SUPPRESSED means a failure was absorbed because
    the node is configured to fail silently.
    """
    status: OutcomeStatus
    value: Any = None
    error: Optional[BaseException] = None
    attempts: int = 0
    detail: Optional[str] = None

    @classmethod
    def success(cls, value: Any = None, attempts: int = 1, detail: Optional[str] = None) -> "StepOutcome":
        return cls(OutcomeStatus.SUCCESS, value=value, attempts=attempts, detail=detail)

    @classmethod
    def failure(cls, error: BaseException, attempts: int = 1, detail: Optional[str] = None) -> "StepOutcome":
        return cls(OutcomeStatus.FAILURE, error=error, attempts=attempts, detail=detail)

    @classmethod
    def suppressed(cls, error: BaseException, attempts: int = 1, detail: Optional[str] = None) -> "StepOutcome":
        return cls(OutcomeStatus.SUPPRESSED, error=error, attempts=attempts, detail=detail)

    @property
    def ok(self) -> bool:
        return self.status != OutcomeStatus.FAILURE

    @property
    def is_suppressed(self) -> bool:
        return self.status == OutcomeStatus.SUPPRESSED

    def unwrap(self) -> Any:
        """Return the value, raising the stored error on failure."""
        if self.status == OutcomeStatus.FAILURE:
            if self.error is None:
                raise StepError(self.detail or "Step failed")
            raise self.error
        return self.value


# ─── Events ───────────────────────────────────────────────────

@dataclass
class ExecutionEvent:
    """An event pushed to the event sink."""
    type: EventType
    execution_id: Optional[str] = None
    node_id: Optional[str] = None
    message: Optional[str] = None
    data: dict[str, Any] = field(default_factory=dict)
    timestamp: str = field(default_factory=lambda: datetime.now(timezone.utc).isoformat())

    def to_dict(self) -> dict:
        return {
            "type": self.type.value,
            "executionId": self.execution_id,
            "nodeId": self.node_id,
            "message": self.message,
            "data": self.data,
            "timestamp": self.timestamp,
        }
