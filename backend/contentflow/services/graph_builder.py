"""
Graph builder: turns an editor workflow (nodes + port-indexed connections)
into a validated, immutable Graph.

Pipeline: Parse → Resolve port counts → Validate connections → Build Graph

Every problem is collected as a ValidationDiagnostic before raising, so
the editor can highlight all broken nodes and wires in one pass.
"""

from __future__ import annotations

from typing import Any, Iterable, Mapping

from contentflow.models.graph import (
    Graph,
    GraphConnection,
    GraphNode,
    ValidationDiagnostic,
    WorkflowConnection,
    WorkflowDocument,
    WorkflowNode,
)
from contentflow.models.node_registry import DECISION_OUTPUT_PORTS, get_node_spec
from contentflow.services.errors import GraphValidationError

# Editor-only keys that never reach a handler.
UI_ONLY_KEYS = frozenset({"label", "lastResult", "inputPorts", "outputPorts"})

# Anything exposing a `has_handler(node_type)` check (see HandlerRegistry).
HandlerLookup = Any


# ---------------------------------------------------------------------------
# Public API
# ---------------------------------------------------------------------------


def build_graph(
    nodes: Iterable[WorkflowNode | Mapping[str, Any]],
    connections: Iterable[WorkflowConnection | Mapping[str, Any]],
    *,
    registry: HandlerLookup | None = None,
) -> Graph:
    """
    Validate and freeze a workflow.

    Raises GraphValidationError with every diagnostic found. When a handler
    registry is supplied, dispatchable node types without a handler are
    reported too.
    """
    graph, diagnostics = validate_workflow(nodes, connections, registry=registry)
    if graph is None:
        raise GraphValidationError(diagnostics)
    return graph


def validate_workflow(
    nodes: Iterable[WorkflowNode | Mapping[str, Any]],
    connections: Iterable[WorkflowConnection | Mapping[str, Any]],
    *,
    registry: HandlerLookup | None = None,
) -> tuple[Graph | None, list[ValidationDiagnostic]]:
    """
    Same checks as build_graph without raising.

    Returns (graph, diagnostics); graph is None when any error was found.
    Warnings (e.g. an overridden decision port count) come back either way.
    """
    diagnostics: list[ValidationDiagnostic] = []

    # 1. Parse
    parsed_nodes = [_coerce(WorkflowNode, n, diagnostics) for n in nodes]
    parsed_conns = [_coerce(WorkflowConnection, c, diagnostics) for c in connections]

    node_map: dict[str, WorkflowNode] = {}
    for node in parsed_nodes:
        if node is None:
            continue
        if not node.id:
            diagnostics.append(ValidationDiagnostic(message="Node missing 'id' field"))
            continue
        if node.id in node_map:
            diagnostics.append(ValidationDiagnostic(
                message=f"Duplicate node ID '{node.id}'",
                node_id=node.id,
            ))
            continue
        node_map[node.id] = node

    if not node_map and not diagnostics:
        diagnostics.append(ValidationDiagnostic(
            message="Workflow must contain at least one node",
        ))

    # 2. Resolve node types and port counts
    graph_nodes: dict[str, GraphNode] = {}
    for nid, node in node_map.items():
        graph_node = _resolve_node(node, diagnostics, registry)
        if graph_node is not None:
            graph_nodes[nid] = graph_node

    # 3. Validate connections
    graph_conns = _validate_connections(
        [c for c in parsed_conns if c is not None],
        node_map,
        graph_nodes,
        diagnostics,
    )

    if any(d.level == "error" for d in diagnostics):
        return None, diagnostics

    # 4. Build adjacency
    inputs: dict[str, list[GraphConnection | None]] = {
        nid: [None] * n.input_port_count for nid, n in graph_nodes.items()
    }
    outputs: dict[str, list[list[tuple[str, int]]]] = {
        nid: [[] for _ in range(n.output_port_count)] for nid, n in graph_nodes.items()
    }
    for conn in graph_conns:
        inputs[conn.target_id][conn.target_port] = conn
        outputs[conn.source_id][conn.source_port].append((conn.target_id, conn.target_port))

    graph = Graph(
        nodes=graph_nodes,
        connections=tuple(graph_conns),
        inputs={nid: tuple(slots) for nid, slots in inputs.items()},
        outputs={nid: tuple(tuple(port) for port in ports) for nid, ports in outputs.items()},
    )
    return graph, diagnostics


def build_graph_from_document(
    document: WorkflowDocument | Mapping[str, Any],
    *,
    registry: HandlerLookup | None = None,
) -> Graph:
    """Build a Graph from the persisted `{nodes, connections|edges}` shape."""
    if isinstance(document, WorkflowDocument):
        return build_graph(document.nodes, document.connections, registry=registry)
    nodes = document.get("nodes") or []
    connections = document.get("connections") or document.get("edges") or []
    return build_graph(nodes, connections, registry=registry)


def connection_id(source_id: str, source_port: int, target_id: str, target_port: int) -> str:
    return f"conn-{source_id}-{source_port}-{target_id}-{target_port}"


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _coerce(model: type, raw: Any, diagnostics: list[ValidationDiagnostic]):
    if isinstance(raw, model):
        return raw
    try:
        return model.model_validate(raw)
    except ValueError as e:
        ident = raw.get("id") if isinstance(raw, Mapping) else None
        diagnostics.append(ValidationDiagnostic(
            message=f"Malformed {model.__name__}: {e}",
            node_id=ident if model is WorkflowNode else None,
            connection_id=ident if model is WorkflowConnection else None,
        ))
        return None


def _declared_count(node: WorkflowNode, attr: str, data_key: str) -> Any:
    declared = getattr(node, attr)
    if declared is None:
        declared = node.data.get(data_key)
    return declared


def _resolve_node(
    node: WorkflowNode,
    diagnostics: list[ValidationDiagnostic],
    registry: HandlerLookup | None,
) -> GraphNode | None:
    spec = get_node_spec(node.type)
    if spec is None:
        diagnostics.append(ValidationDiagnostic(
            message=f"Unknown node type '{node.type}'",
            node_id=node.id,
            field="type",
        ))
        return None

    if registry is not None and spec.role != "preview" and not registry.has_handler(node.type):
        diagnostics.append(ValidationDiagnostic(
            message=f"No handler registered for node type '{node.type}'",
            node_id=node.id,
            field="type",
        ))

    counts: dict[str, int] = {}
    for attr, data_key, default in (
        ("input_port_count", "inputPorts", spec.inputs),
        ("output_port_count", "outputPorts", spec.outputs),
    ):
        declared = _declared_count(node, attr, data_key)
        if declared is None:
            counts[attr] = default
            continue
        if isinstance(declared, bool) or not isinstance(declared, int) or declared < 0:
            diagnostics.append(ValidationDiagnostic(
                message=f"Node '{node.id}' has invalid {attr} {declared!r}",
                node_id=node.id,
                field=attr,
            ))
            counts[attr] = default
            continue
        counts[attr] = declared

    if spec.fixed_outputs and counts["output_port_count"] != DECISION_OUTPUT_PORTS:
        diagnostics.append(ValidationDiagnostic(
            level="warning",
            message=(
                f"Node '{node.id}' ({node.type}) always has {DECISION_OUTPUT_PORTS} "
                f"output ports; declared {counts['output_port_count']} ignored"
            ),
            node_id=node.id,
            field="output_port_count",
        ))
        counts["output_port_count"] = DECISION_OUTPUT_PORTS

    config = {k: v for k, v in node.data.items() if k not in UI_ONLY_KEYS}
    return GraphNode(
        id=node.id,
        type=node.type,
        role=spec.role,
        config=config,
        input_port_count=counts["input_port_count"],
        output_port_count=counts["output_port_count"],
        optional_inputs=frozenset(spec.optional_inputs),
        requires=spec.requires,
    )


def _validate_connections(
    connections: list[WorkflowConnection],
    node_map: dict[str, WorkflowNode],
    graph_nodes: dict[str, GraphNode],
    diagnostics: list[ValidationDiagnostic],
) -> list[GraphConnection]:
    built: list[GraphConnection] = []
    seen_ids: dict[str, tuple[str, int, str, int]] = {}
    bound: dict[tuple[str, int], str] = {}

    for conn in connections:
        cid = conn.id or connection_id(
            conn.source_id, conn.source_port, conn.target_id, conn.target_port
        )
        endpoints = (conn.source_id, conn.source_port, conn.target_id, conn.target_port)
        # An id-less repeat of the same connection falls through to the binding check.
        if cid in seen_ids and (conn.id is not None or seen_ids[cid] != endpoints):
            diagnostics.append(ValidationDiagnostic(
                message=f"Duplicate connection ID '{cid}'",
                connection_id=cid,
            ))
            continue
        seen_ids.setdefault(cid, endpoints)

        ok = True
        for end, nid in (("source", conn.source_id), ("target", conn.target_id)):
            if nid not in node_map:
                diagnostics.append(ValidationDiagnostic(
                    message=f"Connection '{cid}' references non-existent {end} node '{nid}'",
                    connection_id=cid,
                    field=f"{end}_id",
                ))
                ok = False
        if not ok:
            continue

        source = graph_nodes.get(conn.source_id)
        target = graph_nodes.get(conn.target_id)
        if source is None or target is None:
            # Unknown type already reported; ports cannot be checked.
            continue

        if not 0 <= conn.source_port < source.output_port_count:
            diagnostics.append(ValidationDiagnostic(
                message=(
                    f"Connection '{cid}' uses output port {conn.source_port} of "
                    f"'{source.id}' which has {source.output_port_count} output port(s)"
                ),
                node_id=source.id,
                connection_id=cid,
                field="source_port",
            ))
            ok = False
        if not 0 <= conn.target_port < target.input_port_count:
            diagnostics.append(ValidationDiagnostic(
                message=(
                    f"Connection '{cid}' uses input port {conn.target_port} of "
                    f"'{target.id}' which has {target.input_port_count} input port(s)"
                ),
                node_id=target.id,
                connection_id=cid,
                field="target_port",
            ))
            ok = False
        if not ok:
            continue

        slot = (conn.target_id, conn.target_port)
        if slot in bound:
            diagnostics.append(ValidationDiagnostic(
                message=(
                    f"Input port {conn.target_port} of '{conn.target_id}' is already "
                    f"bound by connection '{bound[slot]}'"
                ),
                node_id=conn.target_id,
                connection_id=cid,
                field="target_port",
            ))
            continue
        bound[slot] = cid

        built.append(GraphConnection(
            id=cid,
            source_id=conn.source_id,
            source_port=conn.source_port,
            target_id=conn.target_id,
            target_port=conn.target_port,
        ))

    return built
