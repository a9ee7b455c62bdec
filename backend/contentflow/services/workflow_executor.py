"""
Workflow execution engine.

Takes a validated Graph, dispatches every ready node to the node handler
as its own asyncio task, routes results through the port router into the
run state tracker, and re-evaluates readiness after each completion.

Key concepts:
- Decision nodes (judgment, yes/no, decision) return `[yes, no]`; only the
  populated branch feeds downstream nodes.
- Loop nodes re-run their body while feedback keeps arriving, up to
  `maxIterations` passes.
- Preview nodes never reach the handler; they complete with their input.
- A node failure never escapes the run loop: descendants are skipped and
  independent branches keep running (unless halt_on_failure is set).

Ready-queue execution: nodes start as soon as their inputs settle, and
`asyncio.wait(FIRST_COMPLETED)` drives re-evaluation.
"""

from __future__ import annotations

import asyncio
import json
import logging
import time
import uuid
from collections import Counter
from typing import Any, AsyncIterator, Callable, Mapping

from contentflow.models.graph import Graph, GraphNode, WorkflowDocument
from contentflow.models.run import NodeStatus, RunOptions, RunResult, StatusChange
from contentflow.services.cycle_detector import (
    CycleClassification,
    ensure_acyclic,
    topological_order,
)
from contentflow.services.errors import NodeTimeoutError, RunCancelledError
from contentflow.services.graph_builder import build_graph_from_document
from contentflow.services.handlers import HandlerRegistry, NodeHandler, current_node, resolve
from contentflow.services.loop_controller import LoopCondition, LoopController, LoopDecision
from contentflow.services.port_router import decision_slots
from contentflow.services.run_state import RunStateTracker
from contentflow.services.scheduler import InputState, Scheduler

logger = logging.getLogger(__name__)

GraphSource = Graph | WorkflowDocument | Mapping[str, Any]


# ---------------------------------------------------------------------------
# Node runner
# ---------------------------------------------------------------------------


def build_input_data(
    graph: Graph,
    node_id: str,
    states: dict[int, tuple[InputState, Any]],
) -> dict[str, Any]:
    """
    Map source node id -> routed value for every input carrying a value.

    When one source feeds several input ports of the same node, keys become
    `"{source_id}:{source_port}"` so nothing is overwritten.
    """
    slots = graph.inputs.get(node_id, ())
    per_source = Counter(slots[port].source_id for port in states)
    data: dict[str, Any] = {}
    for port in sorted(states):
        state, value = states[port]
        if state != InputState.VALUE:
            continue
        conn = slots[port]
        if per_source[conn.source_id] > 1:
            data[f"{conn.source_id}:{conn.source_port}"] = value
        else:
            data[conn.source_id] = value
    return data


def _node_timeout(node: GraphNode, default: float | None) -> float | None:
    raw = node.config.get("timeoutSeconds")
    if raw is None:
        return default
    try:
        parsed = float(raw)
    except (TypeError, ValueError):
        return default
    return parsed if parsed > 0 else default


class NodeRunner:
    """Invokes the node handler for one node under an optional deadline."""

    def __init__(
        self,
        handler: NodeHandler,
        run_id: str,
        api_keys: Mapping[str, str] | None = None,
        default_timeout: float | None = None,
    ):
        self.handler = handler
        self.run_id = run_id
        self.api_keys = dict(api_keys or {})
        self.default_timeout = default_timeout

    async def run(
        self,
        node: GraphNode,
        input_data: dict[str, Any],
        config: Mapping[str, Any] | None = None,
    ) -> Any:
        timeout = _node_timeout(node, self.default_timeout)
        cfg = dict(node.config if config is None else config)
        token = current_node.set((self.run_id, node.id))
        try:
            pending = resolve(self.handler(node.type, cfg, self.api_keys, input_data))
            if timeout is None:
                value = await pending
            else:
                try:
                    value = await asyncio.wait_for(pending, timeout)
                except asyncio.TimeoutError as e:
                    raise NodeTimeoutError(node.id, timeout) from e
        finally:
            current_node.reset(token)

        if node.is_decision:
            decision_slots(node, value)
        return value


# ---------------------------------------------------------------------------
# Run handle
# ---------------------------------------------------------------------------


class RunHandle:
    """Control surface for one in-flight run."""

    def __init__(
        self,
        run_id: str,
        graph: Graph,
        classification: CycleClassification,
        tracker: RunStateTracker,
        loops: LoopController,
    ):
        self.run_id = run_id
        self.graph = graph
        self.classification = classification
        self.tracker = tracker
        self.loops = loops
        self._cancel_requested = asyncio.Event()
        self._task: asyncio.Task[RunResult] | None = None
        self._run: _Run | None = None

    @property
    def done(self) -> bool:
        return self._task is not None and self._task.done()

    @property
    def cancel_requested(self) -> bool:
        return self._cancel_requested.is_set()

    def cancel(self) -> None:
        """Stop dispatching, cancel in-flight nodes and skip the rest."""
        if not self._cancel_requested.is_set():
            logger.info("Cancel requested for run %s", self.run_id)
        self._cancel_requested.set()

    def cancel_node(self, node_id: str) -> bool:
        """
        Cancel one executing node. It fails with reason `cancelled`, nodes that
        depend on it are skipped and the rest of the run carries on.

        Returns False when the node is not executing.
        """
        if self._run is None or self.done:
            return False
        return self._run.cancel_node(node_id)

    def on_status_change(self, callback: Callable[[StatusChange], Any]) -> Callable[[], None]:
        return self.tracker.on_status_change(callback)

    def events(self) -> AsyncIterator[StatusChange]:
        """Every status change from now on; ends when the run finishes."""
        queue = self.tracker.subscribe()

        async def _iterate() -> AsyncIterator[StatusChange]:
            while True:
                change = await queue.get()
                if change is None:
                    break
                yield change

        return _iterate()

    def snapshot(self):
        return self.tracker.snapshot()

    async def wait(self) -> RunResult:
        if self._task is None:
            raise RuntimeError(f"Run {self.run_id} was never started")
        return await asyncio.shield(self._task)

    async def result(self, *, raise_on_cancel: bool = False) -> RunResult:
        result = await self.wait()
        if raise_on_cancel and result.status == "cancelled":
            raise RunCancelledError(self.run_id)
        return result


# ---------------------------------------------------------------------------
# Engine
# ---------------------------------------------------------------------------


class WorkflowEngine:
    def __init__(
        self,
        handler: NodeHandler,
        options: RunOptions | None = None,
        *,
        loop_condition: LoopCondition | None = None,
    ):
        self.handler = handler
        self.options = options or RunOptions()
        self.loop_condition = loop_condition
        self._runs: dict[str, RunHandle] = {}

    # ---- setup ----

    def prepare(self, source: GraphSource) -> tuple[Graph, CycleClassification]:
        """Build (if needed) and cycle-check a graph; raises before any node runs."""
        if isinstance(source, Graph):
            graph = source
        else:
            registry = self.handler if isinstance(self.handler, HandlerRegistry) else None
            graph = build_graph_from_document(source, registry=registry)
        return graph, ensure_acyclic(graph)

    def start(
        self,
        source: GraphSource,
        *,
        run_id: str | None = None,
        options: RunOptions | None = None,
    ) -> RunHandle:
        graph, classification = self.prepare(source)
        run_options = options or self.options
        run_id = run_id or str(uuid.uuid4())

        tracker = RunStateTracker(run_id, graph)
        loops = LoopController(
            graph,
            classification,
            default_max_iterations=run_options.default_max_iterations,
            condition=self.loop_condition,
        )
        handle = RunHandle(run_id, graph, classification, tracker, loops)
        run = _Run(handle, self.handler, run_options)
        handle._run = run
        handle._task = asyncio.create_task(run.drive())

        self._runs[run_id] = handle
        handle._task.add_done_callback(lambda _: self._runs.pop(run_id, None))
        return handle

    # ---- control ----

    def get(self, run_id: str) -> RunHandle | None:
        return self._runs.get(run_id)

    def cancel(self, handle_or_id: RunHandle | str) -> bool:
        handle = handle_or_id if isinstance(handle_or_id, RunHandle) else self._runs.get(handle_or_id)
        if handle is None or handle.done:
            return False
        handle.cancel()
        return True

    def cancel_node(self, run_id: str, node_id: str) -> bool:
        handle = self._runs.get(run_id)
        return handle is not None and handle.cancel_node(node_id)

    def cancel_all(self) -> int:
        return sum(self.cancel(run_id) for run_id in list(self._runs))

    async def run(self, source: GraphSource, *, options: RunOptions | None = None) -> RunResult:
        return await self.start(source, options=options).wait()


class _Run:
    """The ready-queue loop for one run."""

    def __init__(self, handle: RunHandle, handler: NodeHandler, options: RunOptions):
        self.handle = handle
        self.graph = handle.graph
        self.tracker = handle.tracker
        self.loops = handle.loops
        self.options = options
        self.scheduler = Scheduler(
            handle.graph,
            handle.classification,
            handle.loops,
            continue_on_partial=options.continue_on_partial,
        )
        self.runner = NodeRunner(
            handler,
            handle.run_id,
            api_keys=options.api_keys,
            default_timeout=options.node_timeout_seconds,
        )
        self.pending: dict[asyncio.Task, str] = {}
        self.stop_reason: str | None = None
        self.first_failure: tuple[str, str] | None = None
        self.aborted: str | None = None
        self.cancelled_nodes: set[str] = set()

    # ---- loop ----

    async def drive(self) -> RunResult:
        start_time = time.perf_counter()
        run_id = self.handle.run_id
        logger.info("Run %s started with %d node(s)", run_id, len(self.graph.nodes))

        cancel_waiter = asyncio.create_task(self.handle._cancel_requested.wait())
        try:
            await self._loop(cancel_waiter)
        except asyncio.CancelledError:
            # The run task itself was cancelled: settle state before propagating.
            self.stop_reason = "cancelled"
            raise
        except Exception as e:
            self.aborted = f"{type(e).__name__}: {e}"
            self.stop_reason = self.stop_reason or "aborted"
            logger.exception("Run %s aborted: %s", run_id, self.aborted)
        finally:
            await self._shutdown(cancel_waiter)
            self._settle_remaining(self.stop_reason or "upstream_skipped")
            self.tracker.close()

        result = self._result(start_time)
        logger.info(
            "Run %s finished: %s in %dms", run_id, result.status, result.total_execution_time_ms
        )
        return result

    async def _shutdown(self, cancel_waiter: asyncio.Task) -> None:
        cancel_waiter.cancel()
        if not self.pending:
            return
        if self.stop_reason is None:
            self.stop_reason = "cancelled"
        for task in self.pending:
            task.cancel()
        await asyncio.gather(*self.pending, return_exceptions=True)
        self.pending.clear()

    async def _loop(self, cancel_waiter: asyncio.Task) -> None:
        run_id = self.handle.run_id
        while True:
            if self.handle.cancel_requested:
                self.stop_reason = "cancelled"
                break
            if self.stop_reason is not None:
                break

            self._advance_loops()
            self._skip(self.scheduler.doomed(self.tracker))

            ready = self.scheduler.next_ready(self.tracker)
            unmet = [
                (nid, reason) for nid in ready
                if (reason := self.graph.node(nid).unmet_requirement())
            ]
            self._skip(unmet)
            for node_id in ready:
                if self.tracker.status(node_id) == NodeStatus.IDLE:
                    self._dispatch(node_id)

            if not self.pending:
                if unmet:
                    continue
                # Quiescent: settle what can never run, then let loops close.
                stalled = self.scheduler.stalled(self.tracker)
                if stalled:
                    self._skip(stalled)
                    continue
                active = self.loops.active_loops()
                if active and not any(
                    self.loops.feedback_ready(lid, self.tracker) for lid in active
                ):
                    for loop_id in active:
                        self.loops.stop(loop_id, "stalled")
                    continue
                if active:
                    continue
                break

            done, _ = await asyncio.wait(
                [*self.pending, cancel_waiter], return_when=asyncio.FIRST_COMPLETED
            )
            for task in done:
                if task is cancel_waiter:
                    continue
                node_id = self.pending.pop(task)
                if node_id in self.cancelled_nodes:
                    self.cancelled_nodes.discard(node_id)
                    continue
                if not task.result() and self.options.halt_on_failure:
                    self.stop_reason = "halted"
                    logger.warning("Run %s halting after failure of node %s", run_id, node_id)

    def cancel_node(self, node_id: str) -> bool:
        if self.tracker.status(node_id) != NodeStatus.EXECUTING:
            return False
        for task, pending_id in self.pending.items():
            if pending_id == node_id and not task.done():
                logger.info("Cancel requested for node %s (run %s)", node_id, self.handle.run_id)
                self.cancelled_nodes.add(node_id)
                task.cancel()
                return True
        return False

    def _dispatch(self, node_id: str) -> None:
        iteration = self.loops.iteration_for(node_id)
        states = self.scheduler.input_states(node_id, self.tracker)
        input_data = build_input_data(self.graph, node_id, states)
        self.tracker.transition(node_id, NodeStatus.READY, iteration=iteration)
        task = asyncio.create_task(self._execute(node_id, input_data, iteration))
        self.pending[task] = node_id
        logger.debug("Started execution of node %s (run %s)", node_id, self.handle.run_id)

    async def _execute(self, node_id: str, input_data: dict[str, Any], iteration: int | None) -> bool:
        """Run one node and record its outcome; never raises."""
        node = self.graph.node(node_id)
        self.tracker.transition(node_id, NodeStatus.EXECUTING, iteration=iteration)
        try:
            if node.is_preview:
                value = next(iter(input_data.values()), None)
            else:
                value = await self.runner.run(node, input_data, self._config_for(node))

        except asyncio.CancelledError:
            self.tracker.transition(
                node_id,
                NodeStatus.FAILED,
                error="Execution cancelled",
                reason=self.stop_reason or "cancelled",
                iteration=iteration,
            )
            return False

        except NodeTimeoutError as e:
            logger.warning("Node %s timed out (run %s): %s", node_id, self.handle.run_id, e)
            self._fail(node_id, f"{type(e).__name__}: {e}", "timeout", iteration)
            return False

        except Exception as e:
            error_msg = f"{type(e).__name__}: {e}"
            logger.exception("Node %s failed (run %s): %s", node_id, self.handle.run_id, error_msg)
            self._fail(node_id, error_msg, None, iteration)
            return False

        self.tracker.transition(node_id, NodeStatus.COMPLETED, value=value, iteration=iteration)
        return True

    def _config_for(self, node: GraphNode) -> dict[str, Any]:
        cfg = dict(node.config)
        if node.is_loop:
            ctx = self.loops.contexts[node.id]
            cfg["currentIteration"] = ctx.iteration_count
            cfg["maxIterations"] = ctx.max_iterations
        return cfg

    def _fail(self, node_id: str, error: str, reason: str | None, iteration: int | None) -> None:
        if self.first_failure is None:
            self.first_failure = (node_id, error)
        self.tracker.transition(
            node_id, NodeStatus.FAILED, error=error, reason=reason, iteration=iteration
        )

    def _skip(self, nodes: list[tuple[str, str]]) -> None:
        for node_id, reason in nodes:
            logger.warning("Skipping node %s (run %s): %s", node_id, self.handle.run_id, reason)
            self.tracker.transition(node_id, NodeStatus.SKIPPED, reason=reason)

    def _advance_loops(self) -> None:
        for loop_id in self.loops.active_loops():
            if not self.loops.feedback_ready(loop_id, self.tracker):
                continue
            fed_back = self.loops.fed_back(loop_id, self.tracker)
            loop_value = (
                self.tracker.value(loop_id)
                if self.tracker.status(loop_id) == NodeStatus.COMPLETED
                else None
            )
            if self.loops.admit(loop_id, fed_back, loop_value) != LoopDecision.CONTINUE:
                continue

            iteration = self.loops.contexts[loop_id].current_iteration
            for node_id in self.graph.nodes:
                if node_id not in self.loops.body(loop_id):
                    continue
                self.tracker.clear_injected(node_id)
                if self.tracker.is_terminal(node_id):
                    self.tracker.transition(
                        node_id, NodeStatus.IDLE, reason="loop_reset", iteration=iteration
                    )
            for nested in self.loops.nested_loops(loop_id):
                self.loops.reset(nested)
            for port, value in fed_back.items():
                self.tracker.inject(loop_id, port, value)

    def _settle_remaining(self, reason: str) -> None:
        for node_id in self.tracker.with_status(NodeStatus.IDLE, NodeStatus.READY):
            self.tracker.transition(node_id, NodeStatus.SKIPPED, reason=reason)
        for loop_id in self.loops.active_loops():
            self.loops.stop(loop_id, reason)

    def _result(self, start_time: float) -> RunResult:
        snapshot = self.tracker.snapshot()
        failed = [nid for nid, rec in snapshot.items() if rec.status == NodeStatus.FAILED]

        if self.stop_reason == "cancelled":
            status = "cancelled"
            error = f"Run {self.handle.run_id} was cancelled"
        elif self.aborted is not None:
            status = "failed"
            error = f"Run {self.handle.run_id} aborted: {self.aborted}"
        elif failed:
            status = "failed"
            node_id, message = self.first_failure or (failed[0], snapshot[failed[0]].error)
            if self.stop_reason == "halted":
                error = f"Execution stopped at node {node_id}: {message}"
            else:
                error = f"Node {node_id} failed: {message}"
        else:
            status = "completed"
            error = None

        return RunResult(
            run_id=self.handle.run_id,
            status=status,
            success=status == "completed",
            outputs={
                nid: rec.value for nid, rec in snapshot.items()
                if rec.status == NodeStatus.COMPLETED
            },
            nodes=snapshot,
            loops={lid: ctx.model_copy() for lid, ctx in self.loops.contexts.items()},
            total_execution_time_ms=int((time.perf_counter() - start_time) * 1000),
            error=error,
        )


# ---------------------------------------------------------------------------
# Convenience entry points
# ---------------------------------------------------------------------------


async def execute_workflow(
    source: GraphSource,
    handler: NodeHandler,
    options: RunOptions | None = None,
    *,
    on_status_change: Callable[[StatusChange], Any] | None = None,
    loop_condition: LoopCondition | None = None,
) -> RunResult:
    """Run a workflow to completion and return its RunResult."""
    engine = WorkflowEngine(handler, options, loop_condition=loop_condition)
    handle = engine.start(source)
    if on_status_change is not None:
        handle.on_status_change(on_status_change)
    return await handle.wait()


def _sse(event: dict[str, Any]) -> str:
    return f"data: {json.dumps(event, default=str)}\n\n"


async def execute_workflow_streaming(
    source: GraphSource,
    handler: NodeHandler,
    options: RunOptions | None = None,
    *,
    engine: WorkflowEngine | None = None,
    run_id: str | None = None,
):
    """
    Run a workflow and yield SSE events as node states change.

    Yields JSON events:
    - {"event": "workflow_start", "run_id": ..., "execution_order": [...], "total_nodes": N}
    - {"event": "node_status", "node_id": ..., "state": ..., "previous": ..., ...}
    - {"event": "workflow_complete", "success": true, "outputs": {...}, ...}
    - {"event": "workflow_error", "status": "failed" | "cancelled", "error": ..., ...}

    Graph errors are raised before the first event.
    """
    engine = engine or WorkflowEngine(handler, options)
    handle = engine.start(source, run_id=run_id, options=options)
    events = handle.events()

    yield _sse({
        "event": "workflow_start",
        "run_id": handle.run_id,
        "execution_order": topological_order(handle.graph, handle.classification),
        "loop_edges": [c.id for c in handle.classification.loop_edges],
        "total_nodes": len(handle.graph.nodes),
    })

    try:
        async for change in events:
            yield _sse(change.to_event())

        result = await handle.wait()
        summary = {
            "run_id": result.run_id,
            "status": result.status,
            "success": result.success,
            "outputs": result.outputs,
            "total_execution_time_ms": result.total_execution_time_ms,
        }
        if result.success:
            yield _sse({"event": "workflow_complete", **summary})
        else:
            yield _sse({"event": "workflow_error", "error": result.error, **summary})
    finally:
        # Client went away mid-stream.
        if not handle.done:
            handle.cancel()
            await handle.wait()
