"""
Step Handler Registry: maps node type strings to their handlers.

The set of node types is open: plugins and applications register their
handlers at startup. Resolving an unregistered type fails loudly.
"""

from typing import Dict, Optional, Type, Union

from core.exceptions import UnknownStepTypeError
from tasks.base_task import StepHandler

HandlerSpec = Union[StepHandler, Type[StepHandler]]


class StepHandlerRegistry:
    """Central registry for node type implementations.

    A handler may be registered as a class (a fresh instance per
    dispatch) or as a ready instance (shared across dispatches).
    """

    def __init__(self):
        self._handlers: Dict[str, HandlerSpec] = {}

    def register(self, node_type: str, handler: HandlerSpec) -> None:
        """Register (or replace) the handler for a node type."""
        self._handlers[node_type] = handler

    def unregister(self, node_type: str) -> None:
        self._handlers.pop(node_type, None)

    def get(self, node_type: str) -> Optional[HandlerSpec]:
        return self._handlers.get(node_type)

    def has(self, node_type: str) -> bool:
        return node_type in self._handlers

    def resolve(self, node_type: str, node_id: Optional[str] = None) -> StepHandler:
        """Return a handler instance for ``node_type``.

        Raises:
            UnknownStepTypeError: If no handler is registered
        """
        handler = self._handlers.get(node_type)
        if handler is None:
            raise UnknownStepTypeError(node_type, node_id)
        if isinstance(handler, type):
            return handler()
        return handler

    def list_all(self) -> list:
        """List registered node types with metadata."""
        return [
            {
                "node_type": node_type,
                "display_name": handler.display_name,
                "description": handler.description,
                "config_schema": handler.get_config_schema(),
            }
            for node_type, handler in self._handlers.items()
        ]

    def list_types(self) -> list:
        return sorted(self._handlers)

    @property
    def available_types(self) -> list:
        return list(self._handlers.keys())


# Singleton
_registry: Optional[StepHandlerRegistry] = None


def get_handler_registry() -> StepHandlerRegistry:
    """Get or create the process-wide handler registry."""
    global _registry
    if _registry is None:
        _registry = StepHandlerRegistry()
    return _registry
