"""
Graph models: the editor's persisted workflow shape and the validated,
immutable graph the engine executes.

Graphs are built on demand by the graph builder for a single run and are
never persisted. Nodes and connections are frozen so the engine and any
observer can share them without copying.
"""

from __future__ import annotations

from types import MappingProxyType
from typing import Any, Literal, Mapping

from pydantic import BaseModel, ConfigDict, Field, field_validator


NodeRole = Literal["source", "work", "decision", "dual_output", "loop", "preview"]


# ---------------------------------------------------------------------------
# Persisted (editor) shape
# ---------------------------------------------------------------------------


class WorkflowNode(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    id: str
    type: str
    position: dict[str, float] | None = None
    data: dict[str, Any] = Field(default_factory=dict)
    input_port_count: int | None = Field(default=None, alias="inputPortCount")
    output_port_count: int | None = Field(default=None, alias="outputPortCount")

    @field_validator("data", mode="before")
    @classmethod
    def _none_data_is_empty(cls, value: Any) -> Any:
        return {} if value is None else value


class WorkflowConnection(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    id: str | None = None
    source_id: str = Field(alias="sourceId")
    source_port: int = Field(default=0, alias="sourcePort")
    target_id: str = Field(alias="targetId")
    target_port: int = Field(default=0, alias="targetPort")

    @field_validator("source_port", "target_port", mode="before")
    @classmethod
    def _none_port_is_zero(cls, value: Any) -> Any:
        return 0 if value is None else value


class WorkflowDocument(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    nodes: list[WorkflowNode] = Field(default_factory=list)
    connections: list[WorkflowConnection] = Field(default_factory=list)

    @classmethod
    def from_payload(cls, payload: Mapping[str, Any]) -> "WorkflowDocument":
        """Accept either `connections` or the editor's older `edges` key."""
        data = {k: v for k, v in payload.items() if v is not None}
        if not data.get("connections") and data.get("edges"):
            data["connections"] = data["edges"]
        return cls.model_validate(data)


# ---------------------------------------------------------------------------
# Executable graph
# ---------------------------------------------------------------------------


class GraphNode(BaseModel):
    model_config = ConfigDict(frozen=True, arbitrary_types_allowed=True)

    id: str
    type: str
    role: NodeRole = "work"
    config: Mapping[str, Any] = Field(default_factory=lambda: MappingProxyType({}))
    input_port_count: int = 1
    output_port_count: int = 1
    optional_inputs: frozenset[int] = frozenset()
    requires: tuple[tuple[str, str], ...] = ()

    @field_validator("config", mode="after")
    @classmethod
    def _read_only_config(cls, value: Mapping[str, Any]) -> Mapping[str, Any]:
        return MappingProxyType(dict(value))

    @property
    def is_decision(self) -> bool:
        return self.role == "decision"

    @property
    def is_loop(self) -> bool:
        return self.role == "loop"

    @property
    def is_preview(self) -> bool:
        return self.role == "preview"

    def unmet_requirement(self) -> str | None:
        """Skip reason for the first required config value that is missing."""
        for key, reason in self.requires:
            if not self.config.get(key):
                return reason
        return None


class GraphConnection(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str
    source_id: str
    source_port: int = 0
    target_id: str
    target_port: int = 0

    @property
    def key(self) -> tuple[str, int, str, int]:
        return (self.source_id, self.source_port, self.target_id, self.target_port)


class Graph(BaseModel):
    """
    Immutable adjacency view of one workflow.

    `inputs[node_id][port]` is the single connection bound to that input
    port (or None). `outputs[node_id][port]` is the fan-out of that output
    port as `(target_id, target_port)` pairs.
    """

    model_config = ConfigDict(frozen=True, arbitrary_types_allowed=True)

    nodes: Mapping[str, GraphNode]
    connections: tuple[GraphConnection, ...]
    inputs: Mapping[str, tuple[GraphConnection | None, ...]]
    outputs: Mapping[str, tuple[tuple[tuple[str, int], ...], ...]]

    def node(self, node_id: str) -> GraphNode:
        return self.nodes[node_id]

    def connection(self, connection_id: str) -> GraphConnection:
        return next(c for c in self.connections if c.id == connection_id)

    def inbound(self, node_id: str) -> list[GraphConnection]:
        """Connections bound to the node's input ports, in port order."""
        return [c for c in self.inputs.get(node_id, ()) if c is not None]

    def outbound(self, node_id: str) -> list[GraphConnection]:
        return [c for c in self.connections if c.source_id == node_id]

    def predecessors(self, node_id: str) -> set[str]:
        return {c.source_id for c in self.inbound(node_id)}

    def successors(self, node_id: str) -> set[str]:
        return {target for port in self.outputs.get(node_id, ()) for target, _ in port}


class ValidationDiagnostic(BaseModel):
    level: Literal["error", "warning"] = "error"
    message: str
    node_id: str | None = None
    connection_id: str | None = None
    field: str | None = None
