"""
Base interface for step handlers.

Every node type (navigate, click, type, api call, ...) is implemented by a
StepHandler subclass registered under its type string. The engine calls
``run()``, which times and logs ``execute()``; a handler signals failure by
raising.
"""

import time
from abc import ABC, abstractmethod
from typing import TYPE_CHECKING, Any, Dict

import structlog

if TYPE_CHECKING:
    from workflow.context import ExecutionContext
    from workflow.models import Node

logger = structlog.get_logger(__name__)


class StepHandler(ABC):
    """
    Abstract base class for node type implementations.

    Subclasses must implement:
    - execute(node, context) -> Any
    - node_type (class attribute)
    - display_name (class attribute)
    """

    node_type: str = "base"
    display_name: str = "Base Step"
    description: str = "Abstract step handler"

    @abstractmethod
    async def execute(self, node: "Node", context: "ExecutionContext") -> Any:
        """
        Execute the step for one node.

        Args:
            node: The node being executed (type, data)
            context: Execution context (session, data store, variables)

        Returns:
            Step output, stored as the node's result

        Raises:
            Any exception to fail the step
        """
        pass

    async def run(self, node: "Node", context: "ExecutionContext") -> Any:
        """
        Run the step with timing and logging.

        This is the entry point called by the executor.
        """
        start = time.monotonic()
        logger.debug(
            "Step starting",
            node_id=node.id,
            node_type=node.type,
            execution_id=context.execution_id,
        )
        try:
            output = await self.execute(node, context)
        except Exception as e:
            logger.info(
                "Step raised",
                node_id=node.id,
                node_type=node.type,
                error=str(e),
                duration_ms=round((time.monotonic() - start) * 1000, 2),
            )
            raise

        logger.debug(
            "Step completed",
            node_id=node.id,
            node_type=node.type,
            duration_ms=round((time.monotonic() - start) * 1000, 2),
        )
        return output

    @classmethod
    def get_config_schema(cls) -> Dict[str, Any]:
        """
        Return JSON schema for node data.

        Override in subclasses to define expected config shape.
        """
        return {"type": "object", "properties": {}}
