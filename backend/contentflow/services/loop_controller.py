"""
Loop controller: bounded re-execution of loop bodies.

A loop-node L owns the nodes that lie on a path from L to one of its
feedback sources (the nodes whose output travels back into L along a loop
edge). After a pass, once every feedback source is terminal and nothing in
the body is running, the fed-back value decides whether the body runs
again. Nodes outside the body that consume body outputs wait until the
loop stops.
"""

from __future__ import annotations

import logging
from collections import defaultdict
from enum import Enum
from typing import Any, Callable, Mapping

from contentflow.models.graph import Graph
from contentflow.models.run import LoopContext, NodeStatus
from contentflow.services.cycle_detector import CycleClassification
from contentflow.services.port_router import NO_VALUE, route
from contentflow.services.run_state import RunStateTracker

logger = logging.getLogger(__name__)

LoopCondition = Callable[[LoopContext, dict[int, Any]], bool]

_STOP_FLAGS = ("continue", "hasMoreIterations")


class LoopDecision(str, Enum):
    CONTINUE = "continue"
    STOP = "stop"


def default_condition(context: LoopContext, fed_back: dict[int, Any]) -> bool:
    """Keep going unless a fed-back mapping says `continue`/`hasMoreIterations` is false."""
    return not any(_signals_stop(value) for value in fed_back.values())


def _signals_stop(value: Any) -> bool:
    return isinstance(value, Mapping) and any(value.get(flag) is False for flag in _STOP_FLAGS)


def max_iterations_for(config: Mapping[str, Any], default: int) -> int:
    raw = config.get("maxIterations", config.get("iterations"))
    if raw is None:
        raw = default
    try:
        parsed = int(raw)
    except (TypeError, ValueError):
        parsed = default
    return max(parsed, 1)


class LoopController:
    def __init__(
        self,
        graph: Graph,
        classification: CycleClassification,
        default_max_iterations: int = 10,
        condition: LoopCondition | None = None,
    ):
        self.graph = graph
        self.classification = classification
        self.condition = condition or default_condition
        self.contexts: dict[str, LoopContext] = {}
        self._bodies: dict[str, frozenset[str]] = {}

        forward: dict[str, set[str]] = defaultdict(set)
        backward: dict[str, set[str]] = defaultdict(set)
        for conn in classification.ordinary_edges:
            forward[conn.source_id].add(conn.target_id)
            backward[conn.target_id].add(conn.source_id)

        for loop_id, node in graph.nodes.items():
            if not node.is_loop:
                continue
            sources = classification.feedback_sources(loop_id)
            body = _reachable([loop_id], forward) & _reachable(sources, backward)
            body |= {loop_id, *sources} if sources else {loop_id}
            self._bodies[loop_id] = frozenset(body)
            self.contexts[loop_id] = LoopContext(
                loop_id=loop_id,
                max_iterations=max_iterations_for(node.config, default_max_iterations),
                body=[nid for nid in graph.nodes if nid in body],
                feedback_sources=sources,
                active=bool(sources),
                stop_reason=None if sources else "no_feedback_edge",
            )

    # ------------------------------------------------------------------
    # Membership
    # ------------------------------------------------------------------

    def body(self, loop_id: str) -> frozenset[str]:
        return self._bodies[loop_id]

    def active_loops(self) -> list[str]:
        return [lid for lid, ctx in self.contexts.items() if ctx.active]

    def is_active_body_member(self, node_id: str) -> bool:
        return any(node_id in self._bodies[lid] for lid in self.active_loops())

    def blocks(self, source_id: str, target_id: str) -> bool:
        """True while `source_id` sits in an active loop body that `target_id` is outside of."""
        return any(
            source_id in self._bodies[lid] and target_id not in self._bodies[lid]
            for lid in self.active_loops()
        )

    def iteration_for(self, node_id: str) -> int | None:
        """Pass number of the innermost active loop containing the node."""
        containing = [
            lid for lid in self.active_loops() if node_id in self._bodies[lid]
        ]
        if not containing:
            return None
        innermost = min(containing, key=lambda lid: len(self._bodies[lid]))
        return self.contexts[innermost].current_iteration

    # ------------------------------------------------------------------
    # Pass control
    # ------------------------------------------------------------------

    def feedback_ready(self, loop_id: str, tracker: RunStateTracker) -> bool:
        ctx = self.contexts[loop_id]
        if not ctx.active:
            return False
        if not tracker.is_terminal(loop_id):
            return False
        if not all(tracker.is_terminal(src) for src in ctx.feedback_sources):
            return False
        return not any(
            tracker.status(nid) in (NodeStatus.READY, NodeStatus.EXECUTING)
            for nid in self._bodies[loop_id]
        )

    def fed_back(self, loop_id: str, tracker: RunStateTracker) -> dict[int, Any]:
        """Values travelling back along this loop's edges, keyed by loop-node input port."""
        values: dict[int, Any] = {}
        for conn in self.classification.loop_edges:
            if conn.target_id != loop_id:
                continue
            if tracker.status(conn.source_id) != NodeStatus.COMPLETED:
                continue
            routed = route(self.graph.node(conn.source_id), tracker.value(conn.source_id), conn.source_port)
            if routed is not NO_VALUE:
                values[conn.target_port] = routed
        return values

    def admit(
        self,
        loop_id: str,
        fed_back: dict[int, Any],
        loop_value: Any = None,
    ) -> LoopDecision:
        """Close the finished pass and decide whether another one starts."""
        ctx = self.contexts[loop_id]
        ctx.iteration_count += 1

        if not fed_back:
            return self._stop(ctx, "no_feedback")
        if ctx.iteration_count >= ctx.max_iterations:
            return self._stop(ctx, "max_iterations")
        if _signals_stop(loop_value):
            return self._stop(ctx, "condition")
        try:
            keep_going = self.condition(ctx, fed_back)
        except Exception:
            logger.exception("Loop condition for %s raised; stopping the loop", loop_id)
            return self._stop(ctx, "condition_error")
        if not keep_going:
            return self._stop(ctx, "condition")

        ctx.current_iteration = ctx.iteration_count + 1
        logger.info(
            "Loop %s continuing to pass %d of %d",
            loop_id, ctx.current_iteration, ctx.max_iterations,
        )
        return LoopDecision.CONTINUE

    def nested_loops(self, loop_id: str) -> list[str]:
        return [
            lid for lid in self.contexts
            if lid != loop_id and lid in self._bodies[loop_id]
        ]

    def reset(self, loop_id: str) -> None:
        """Re-initialise a nested loop for a fresh outer pass."""
        ctx = self.contexts[loop_id]
        ctx.iteration_count = 0
        ctx.current_iteration = 1
        ctx.active = bool(ctx.feedback_sources)
        ctx.stop_reason = None if ctx.active else "no_feedback_edge"

    def stop(self, loop_id: str, reason: str) -> None:
        ctx = self.contexts[loop_id]
        if ctx.active:
            self._stop(ctx, reason)

    def _stop(self, ctx: LoopContext, reason: str) -> LoopDecision:
        ctx.active = False
        ctx.stop_reason = reason
        logger.info(
            "Loop %s stopped after %d pass(es): %s",
            ctx.loop_id, ctx.iteration_count, reason,
        )
        return LoopDecision.STOP


def _reachable(starts: list[str], adjacency: dict[str, set[str]]) -> set[str]:
    seen: set[str] = set(starts)
    frontier = list(starts)
    while frontier:
        nid = frontier.pop()
        for nxt in adjacency.get(nid, ()):
            if nxt not in seen:
                seen.add(nxt)
                frontier.append(nxt)
    return seen
