"""
Port router: picks what each output port of a completed node delivers.

Decision nodes produce a two-slot value `[yes, no]` with exactly one slot
populated; the empty slot routes NO_VALUE so the unchosen branch never
runs. Other nodes may return named or indexed `outputs`; anything else is
delivered whole on every port.
"""

from __future__ import annotations

from typing import Any, Literal, Mapping, Sequence

from contentflow.models.graph import Graph, GraphConnection, GraphNode
from contentflow.models.node_registry import DECISION_OUTPUT_PORTS, NO_PORT, YES_PORT
from contentflow.services.errors import DecisionOutputError


class _NoValue:
    """Routing sentinel for an empty branch slot (distinct from None)."""

    _instance: "_NoValue | None" = None

    def __new__(cls) -> "_NoValue":
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __repr__(self) -> str:
        return "NO_VALUE"

    def __bool__(self) -> bool:
        return False


NO_VALUE = _NoValue()

PORT_ALIASES: dict[str, tuple[str, ...]] = {
    "0": ("script", "text", "yes", "primary", "default"),
    "1": ("prompts", "no", "secondary"),
}


def _slots(value: Any) -> Sequence[Any] | None:
    """The indexed output slots of a value, if it has any."""
    if isinstance(value, (list, tuple)):
        return value
    if isinstance(value, Mapping) and isinstance(value.get("outputs"), (list, tuple)):
        return value["outputs"]
    return None


def decision_slots(node: GraphNode, value: Any) -> Sequence[Any]:
    """
    Validate a decision node's result and return its `[yes, no]` slots.

    Raises DecisionOutputError unless there are exactly two slots with
    exactly one populated.
    """
    slots = _slots(value)
    if slots is None or len(slots) != DECISION_OUTPUT_PORTS:
        raise DecisionOutputError(
            node.id,
            f"Decision node {node.id} must return {DECISION_OUTPUT_PORTS} output slots, "
            f"got {type(value).__name__}",
        )
    populated = [slot is not None for slot in slots]
    if populated.count(True) != 1:
        raise DecisionOutputError(
            node.id,
            f"Decision node {node.id} must populate exactly one of YES/NO, "
            f"got {populated.count(True)}",
        )
    return slots


def route(node: GraphNode, value: Any, source_port: int) -> Any:
    """What `node`'s output `source_port` delivers, or NO_VALUE."""
    if node.is_decision:
        slots = _slots(value)
        if slots is None or source_port >= len(slots) or slots[source_port] is None:
            return NO_VALUE
        return slots[source_port]

    if isinstance(value, Mapping):
        outputs = value.get("outputs")
        if isinstance(outputs, (list, tuple)):
            if source_port >= len(outputs) or outputs[source_port] is None:
                return NO_VALUE
            return outputs[source_port]
        if isinstance(outputs, Mapping):
            port_key = str(source_port)
            if port_key in outputs:
                return outputs[port_key]
            for alias in PORT_ALIASES.get(port_key, ()):
                if alias in outputs:
                    return outputs[alias]
            if outputs.get("default") is not None:
                return outputs["default"]
            return value

    return value


def deliveries(graph: Graph, node_id: str, value: Any) -> list[tuple[GraphConnection, Any]]:
    """`(connection, routed value)` for every outbound connection of a node."""
    node = graph.node(node_id)
    return [(conn, route(node, value, conn.source_port)) for conn in graph.outbound(node_id)]


def branch_taken(value: Any) -> Literal["yes", "no"] | None:
    slots = _slots(value)
    if slots is None or len(slots) != DECISION_OUTPUT_PORTS:
        return None
    if slots[YES_PORT] is not None and slots[NO_PORT] is None:
        return "yes"
    if slots[NO_PORT] is not None and slots[YES_PORT] is None:
        return "no"
    return None
