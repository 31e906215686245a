"""Workflow graph validation and execution ordering."""

from typing import Optional

import structlog

from core.constants import DEFAULT_OUTPUT_HANDLE, START_NODE_TYPE
from core.exceptions import WorkflowValidationError
from workflow.models import Edge, Node, Workflow

logger = structlog.get_logger(__name__)


class WorkflowParser:
    """Validates a workflow graph and computes its execution order.

    Every edge, control flow or property input, is a precedence
    constraint: its source runs before its target. The order is a
    depth-first topological sort rooted at the start node, followed by
    any nodes the start node does not reach, in declaration order.
    """

    def __init__(self, workflow: Workflow):
        self.workflow = workflow
        self._nodes: dict[str, Node] = {}
        self._duplicates: list[str] = []
        for node in workflow.nodes:
            if node.id in self._nodes:
                self._duplicates.append(node.id)
                continue
            self._nodes[node.id] = node

        self._dependencies: dict[str, list[str]] = {node_id: [] for node_id in self._nodes}
        for edge in workflow.edges:
            if edge.source in self._nodes and edge.target in self._nodes:
                deps = self._dependencies[edge.target]
                if edge.source not in deps:
                    deps.append(edge.source)

        self._start_node_id: Optional[str] = next(
            (n.id for n in self._nodes.values() if n.type == START_NODE_TYPE),
            None,
        )

    # ─── Lookups ──────────────────────────────────────────────

    @property
    def start_node_id(self) -> Optional[str]:
        return self._start_node_id

    def get_node(self, node_id: str) -> Optional[Node]:
        return self._nodes.get(node_id)

    def get_start_node(self) -> Optional[Node]:
        return self._nodes.get(self._start_node_id) if self._start_node_id else None

    def get_property_inputs(self, node_id: str) -> list[Edge]:
        return [e for e in self.workflow.edges if e.target == node_id and e.is_property_input]

    def get_output_handles(self, node_id: str) -> list[str]:
        """Distinct source handles of the node's control flow edges, in edge order."""
        return list(dict.fromkeys(
            e.source_handle or DEFAULT_OUTPUT_HANDLE
            for e in self.workflow.edges
            if e.source == node_id and e.is_control_flow
        ))

    def get_nodes_reachable_from_handle(self, node_id: str, handle: str) -> list[str]:
        """Nodes downstream of one output handle over control flow edges, in execution order."""
        pending = [
            e.target for e in self.workflow.edges
            if e.source == node_id and e.is_control_flow
            and (e.source_handle or DEFAULT_OUTPUT_HANDLE) == handle
        ]
        reached: set[str] = set()
        while pending:
            current = pending.pop()
            if current in reached or current == node_id or current not in self._nodes:
                continue
            reached.add(current)
            pending.extend(e.target for e in self.workflow.edges if e.source == current and e.is_control_flow)
        return [n for n in self.get_execution_order() if n in reached]

    @property
    def node_ids(self) -> list[str]:
        return list(self._nodes.keys())

    # ─── Validation ───────────────────────────────────────────

    def validate(self) -> list[str]:
        """Return every structural problem found in the graph (empty if valid)."""
        errors: list[str] = []

        if not self.workflow.nodes:
            errors.append("Workflow must contain at least one node")
            return errors

        for node in self.workflow.nodes:
            if not node.id:
                errors.append("Every node must have an id")
                break

        for node_id in dict.fromkeys(self._duplicates):
            errors.append(f"Duplicate node id: {node_id}")

        for edge in self.workflow.edges:
            label = edge.id or f"{edge.source}->{edge.target}"
            if edge.source not in self._nodes:
                errors.append(f"Edge {label} references unknown source node: {edge.source}")
            if edge.target not in self._nodes:
                errors.append(f"Edge {label} references unknown target node: {edge.target}")

        if self._start_node_id is None:
            errors.append("Workflow must contain a Start node")
        else:
            try:
                self.get_execution_order()
            except WorkflowValidationError as e:
                errors.extend(e.errors)

        incoming: dict[str, int] = {}
        for edge in self.workflow.edges:
            if edge.is_control_flow and edge.target in self._nodes:
                incoming[edge.target] = incoming.get(edge.target, 0) + 1
        for node_id, count in incoming.items():
            if count > 1 and self._nodes[node_id].type != START_NODE_TYPE:
                errors.append(f"Node {node_id} has multiple input connections (only one allowed)")

        return errors

    def ensure_valid(self) -> None:
        """Raise WorkflowValidationError if the graph is invalid."""
        errors = self.validate()
        if errors:
            logger.info("Workflow validation failed", errors=errors)
            raise WorkflowValidationError(errors)

    # ─── Ordering ─────────────────────────────────────────────

    def get_execution_order(self) -> list[str]:
        """Topologically order node ids, dependencies first."""
        if self._start_node_id is None:
            raise WorkflowValidationError(["Workflow must contain a Start node"])

        visited: set[str] = set()
        visiting: set[str] = set()
        order: list[str] = []

        def visit(node_id: str) -> None:
            if node_id in visiting:
                raise WorkflowValidationError(
                    [f"Circular dependency detected involving node: {node_id}"]
                )
            if node_id in visited:
                return
            visiting.add(node_id)
            for dep in self._dependencies.get(node_id, []):
                visit(dep)
            visiting.discard(node_id)
            visited.add(node_id)
            order.append(node_id)

        visit(self._start_node_id)
        for node_id in self._nodes:
            if node_id not in visited:
                visit(node_id)

        return order
