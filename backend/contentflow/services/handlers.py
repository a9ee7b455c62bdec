"""
Node handler registry.

A node handler is any callable

    handler(node_type, config, api_keys, input_data) -> value | awaitable

The engine never looks inside a handler; it only awaits the result. The
registry maps node type names to per-type functions and is itself a node
handler, so it can be passed straight to the engine.
"""

from __future__ import annotations

import inspect
from contextvars import ContextVar
from typing import Any, Awaitable, Callable, Mapping

from contentflow.services.errors import HandlerError

NodeHandler = Callable[[str, Mapping[str, Any], Mapping[str, str], dict[str, Any]], Any]

# Per-type handler signature: (config, api_keys, input_data) -> value | awaitable
TypeHandler = Callable[[Mapping[str, Any], Mapping[str, str], dict[str, Any]], Any]

# (run_id, node_id) of the node being dispatched; set by the runner for each call.
current_node: ContextVar[tuple[str, str] | None] = ContextVar("current_node", default=None)


class HandlerRegistry:
    def __init__(self) -> None:
        self._handlers: dict[str, TypeHandler] = {}

    def handler(self, node_type: str):
        """
        Decorator that registers a handler function for a node type.

        Usage:
            @registry.handler("script-generator")
            async def _script(config, api_keys, input_data):
                return {"script": ...}
        """
        def decorator(fn: TypeHandler) -> TypeHandler:
            self._handlers[node_type] = fn
            return fn
        return decorator

    def register(self, node_type: str, fn: TypeHandler) -> None:
        self._handlers[node_type] = fn

    def has_handler(self, node_type: str) -> bool:
        return node_type in self._handlers

    def get(self, node_type: str) -> TypeHandler | None:
        return self._handlers.get(node_type)

    @property
    def node_types(self) -> list[str]:
        return sorted(self._handlers)

    async def __call__(
        self,
        node_type: str,
        config: Mapping[str, Any],
        api_keys: Mapping[str, str],
        input_data: dict[str, Any],
    ) -> Any:
        fn = self._handlers.get(node_type)
        if fn is None:
            ctx = current_node.get()
            raise HandlerError(ctx[1] if ctx else None, f"No handler for node type '{node_type}'")
        return await resolve(fn(config, api_keys, input_data))


async def resolve(result: Any | Awaitable[Any]) -> Any:
    """Await the result if the handler returned an awaitable."""
    if inspect.isawaitable(result):
        return await result
    return result
