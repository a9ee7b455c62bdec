"""
Scheduler: decides which idle nodes can run now.

Only ordinary edges are dependencies. Each bound input port of an idle
node is classified from its source's state:

- value     source completed and the routed slot carries a value
            (or the loop controller injected a value on the port)
- pending   source not terminal yet, or held inside an active loop body
- no_value  source completed but routed nothing (unchosen branch)
- dead      source failed or was skipped

A node is ready when nothing is pending, no required port is dead or
empty, and at least one bound port carries a value (or none are bound).
"""

from __future__ import annotations

import logging
from enum import Enum
from typing import Any, Literal

from contentflow.models.graph import Graph
from contentflow.models.run import NodeStatus
from contentflow.services.cycle_detector import CycleClassification
from contentflow.services.loop_controller import LoopController
from contentflow.services.port_router import NO_VALUE, route
from contentflow.services.run_state import RunStateTracker

logger = logging.getLogger(__name__)

Verdict = Literal["ready", "wait", "doomed", "stalled"]


class InputState(str, Enum):
    VALUE = "value"
    PENDING = "pending"
    NO_VALUE = "no_value"
    DEAD = "dead"


class Scheduler:
    def __init__(
        self,
        graph: Graph,
        classification: CycleClassification,
        loops: LoopController | None = None,
        *,
        continue_on_partial: bool = False,
    ):
        self.graph = graph
        self.classification = classification
        self.loops = loops
        self.continue_on_partial = continue_on_partial
        self._loop_edge_ids = classification.loop_edge_ids

    # ------------------------------------------------------------------
    # Input classification
    # ------------------------------------------------------------------

    def input_states(
        self, node_id: str, tracker: RunStateTracker
    ) -> dict[int, tuple[InputState, Any]]:
        """Port -> (state, routed value) for every bound, non-ignored input."""
        states: dict[int, tuple[InputState, Any]] = {}
        injected = tracker.injected(node_id)

        for port, conn in enumerate(self.graph.inputs.get(node_id, ())):
            if conn is None:
                continue
            if conn.id in self._loop_edge_ids:
                # Loop edges only count once the controller fed a value back.
                if port in injected:
                    states[port] = (InputState.VALUE, injected[port])
                continue

            source = conn.source_id
            status = tracker.status(source)
            if self.loops is not None and self.loops.blocks(source, node_id):
                states[port] = (InputState.PENDING, None)
            elif not status.is_terminal:
                states[port] = (InputState.PENDING, None)
            elif status == NodeStatus.COMPLETED:
                routed = route(self.graph.node(source), tracker.value(source), conn.source_port)
                if routed is NO_VALUE:
                    states[port] = (InputState.NO_VALUE, None)
                else:
                    states[port] = (InputState.VALUE, routed)
            else:
                states[port] = (InputState.DEAD, None)

        return states

    def verdict(self, node_id: str, tracker: RunStateTracker) -> Verdict:
        node = self.graph.node(node_id)
        states = self.input_states(node_id, tracker)

        required = {p: s for p, (s, _) in states.items() if p not in node.optional_inputs}
        if not self.continue_on_partial and InputState.DEAD in required.values():
            return "doomed"
        if any(s == InputState.PENDING for s, _ in states.values()):
            return "wait"
        if InputState.NO_VALUE in required.values():
            return "stalled"
        if states and not any(s == InputState.VALUE for s, _ in states.values()):
            return "stalled"
        return "ready"

    # ------------------------------------------------------------------
    # Queries used by the run loop
    # ------------------------------------------------------------------

    def next_ready(self, tracker: RunStateTracker) -> list[str]:
        ready = [
            nid for nid in tracker.with_status(NodeStatus.IDLE)
            if self.verdict(nid, tracker) == "ready"
        ]
        if ready:
            logger.debug("Run %s ready: %s", tracker.run_id, ", ".join(ready))
        return ready

    def doomed(self, tracker: RunStateTracker) -> list[tuple[str, str]]:
        """Idle nodes with a required failed/skipped input, with the skip reason."""
        found: list[tuple[str, str]] = []
        for nid in tracker.with_status(NodeStatus.IDLE):
            if self.verdict(nid, tracker) != "doomed":
                continue
            found.append((nid, self._dead_reason(nid, tracker)))
        return found

    def stalled(self, tracker: RunStateTracker) -> list[tuple[str, str]]:
        """
        Idle nodes that can never become ready; only meaningful at quiescence.

        Reason is `branch_not_taken` when any input routed nothing,
        otherwise `upstream_failed` or `upstream_skipped` by what ended the
        dead inputs.
        """
        found: list[tuple[str, str]] = []
        for nid in tracker.with_status(NodeStatus.IDLE):
            verdict = self.verdict(nid, tracker)
            if verdict in ("ready", "wait"):
                continue
            if verdict == "doomed":
                found.append((nid, self._dead_reason(nid, tracker)))
                continue
            states = self.input_states(nid, tracker)
            if any(s == InputState.NO_VALUE for s, _ in states.values()):
                found.append((nid, "branch_not_taken"))
            else:
                found.append((nid, self._dead_reason(nid, tracker)))
        return found

    def _dead_reason(self, node_id: str, tracker: RunStateTracker) -> str:
        for conn in self.graph.inbound(node_id):
            if conn.id in self._loop_edge_ids:
                continue
            if tracker.status(conn.source_id) == NodeStatus.FAILED:
                return "upstream_failed"
        return "upstream_skipped"
