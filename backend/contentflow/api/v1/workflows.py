"""
Workflow execution API endpoints.

Graphs arrive in the editor's persisted shape (`nodes` plus `connections`
or the older `edges`). Nothing is stored: each request builds its graph,
runs it, and returns or streams the result. Runs in flight can be
cancelled by id.
"""

from typing import Any, Dict, List, Optional

from fastapi import APIRouter, HTTPException, Request
from fastapi.responses import StreamingResponse
from pydantic import BaseModel, Field

from contentflow.models.run import RunOptions
from contentflow.services.cycle_detector import classify, topological_order
from contentflow.services.errors import GraphValidationError, HardCycleError
from contentflow.services.graph_builder import validate_workflow
from contentflow.services.remote_handler import RemoteNodeHandler
from contentflow.services.workflow_executor import WorkflowEngine, execute_workflow_streaming

router = APIRouter(prefix="/workflows")


class RunOptionsRequest(BaseModel):
    halt_on_failure: Optional[bool] = None
    continue_on_partial: Optional[bool] = None
    node_timeout_seconds: Optional[float] = None
    max_iterations: Optional[int] = Field(default=None, ge=1)


class WorkflowRequest(BaseModel):
    nodes: List[Dict[str, Any]]
    connections: Optional[List[Dict[str, Any]]] = None
    edges: Optional[List[Dict[str, Any]]] = None
    api_keys: Dict[str, str] = Field(default_factory=dict)
    options: Optional[RunOptionsRequest] = None
    run_id: Optional[str] = None

    def payload(self) -> Dict[str, Any]:
        return {"nodes": self.nodes, "connections": self.connections or self.edges or []}

    def run_options(self) -> RunOptions:
        opts = self.options or RunOptionsRequest()
        return RunOptions.from_env(
            halt_on_failure=opts.halt_on_failure,
            continue_on_partial=opts.continue_on_partial,
            node_timeout_seconds=opts.node_timeout_seconds,
            default_max_iterations=opts.max_iterations,
            api_keys=self.api_keys,
        )


def _get_engine(request: Request) -> WorkflowEngine:
    state = request.app.state
    if getattr(state, "node_handler", None) is None:
        state.node_handler = RemoteNodeHandler()
    engine = getattr(state, "engine", None)
    if engine is None or engine.handler is not state.node_handler:
        engine = WorkflowEngine(state.node_handler, RunOptions.from_env())
        state.engine = engine
    return engine


def _validation_error(exc: GraphValidationError) -> HTTPException:
    detail: Dict[str, Any] = {
        "message": "Workflow validation failed",
        "diagnostics": [d.model_dump() for d in exc.diagnostics],
    }
    if isinstance(exc, HardCycleError):
        detail["message"] = "Workflow contains a cycle that does not pass through a loop node"
        detail["cycle_nodes"] = sorted(exc.cycle_nodes)
        detail["cycles"] = exc.cycles
    return HTTPException(status_code=422, detail=detail)


@router.post("/validate")
async def validate_workflow_raw(request: WorkflowRequest):
    """
    Validate a raw editor graph without running it.
    Returns loop edges and an execution order, or diagnostics.
    """
    payload = request.payload()
    graph, diagnostics = validate_workflow(payload["nodes"], payload["connections"])
    if graph is None:
        raise _validation_error(GraphValidationError(diagnostics))

    classification = classify(graph)
    if classification.hard_cycles:
        raise _validation_error(HardCycleError([list(c) for c in classification.hard_cycles]))

    return {
        "valid": True,
        "diagnostics": [d.model_dump() for d in diagnostics],
        "loop_edges": [c.id for c in classification.loop_edges],
        "execution_order": topological_order(graph, classification),
    }


@router.post("/execute")
async def execute_workflow_raw(request: WorkflowRequest, http_request: Request):
    """
    Build and execute a raw editor graph.
    Returns the full RunResult once every node has settled.
    """
    engine = _get_engine(http_request)
    document = request.payload()

    try:
        handle = engine.start(document, run_id=request.run_id, options=request.run_options())
    except GraphValidationError as exc:
        raise _validation_error(exc)

    result = await handle.wait()
    return result.model_dump()


@router.post("/execute/stream")
async def execute_workflow_stream(request: WorkflowRequest, http_request: Request):
    """
    Execute a raw editor graph and stream node status changes as SSE.
    """
    engine = _get_engine(http_request)
    document = request.payload()

    try:
        graph, _ = engine.prepare(document)
    except GraphValidationError as exc:
        raise _validation_error(exc)

    return StreamingResponse(
        execute_workflow_streaming(
            graph,
            engine.handler,
            request.run_options(),
            engine=engine,
            run_id=request.run_id,
        ),
        media_type="text/event-stream",
        headers={"Cache-Control": "no-cache", "X-Accel-Buffering": "no"},
    )


@router.post("/runs/{run_id}/cancel")
async def cancel_run(run_id: str, http_request: Request):
    """Cancel an in-flight run."""
    engine = _get_engine(http_request)
    if not engine.cancel(run_id):
        raise HTTPException(status_code=404, detail=f"Run {run_id} not found or already finished")
    return {"run_id": run_id, "cancelled": True}


@router.post("/runs/{run_id}/nodes/{node_id}/cancel")
async def cancel_node(run_id: str, node_id: str, http_request: Request):
    """Cancel one executing node; the rest of the run carries on."""
    engine = _get_engine(http_request)
    if not engine.cancel_node(run_id, node_id):
        raise HTTPException(
            status_code=404,
            detail=f"Node {node_id} is not executing in run {run_id}",
        )
    return {"run_id": run_id, "node_id": node_id, "cancelled": True}
