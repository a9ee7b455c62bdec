"""
Tests for readiness decisions made by the Scheduler.

Node states are driven by hand through a RunStateTracker so each rule can
be checked without running handlers.
"""

import sys
from pathlib import Path

backend_root = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(backend_root))

from contentflow.models.run import NodeStatus
from contentflow.services.cycle_detector import classify
from contentflow.services.graph_builder import build_graph
from contentflow.services.loop_controller import LoopController
from contentflow.services.run_state import RunStateTracker
from contentflow.services.scheduler import InputState, Scheduler


def node(node_id: str, node_type: str, **data) -> dict:
    return {"id": node_id, "type": node_type, "data": data}


def conn(source: str, target: str, source_port: int = 0, target_port: int = 0) -> dict:
    return {"sourceId": source, "sourcePort": source_port, "targetId": target, "targetPort": target_port}


def setup_run(nodes, connections, *, continue_on_partial=False):
    graph = build_graph(nodes, connections)
    classification = classify(graph)
    loops = LoopController(graph, classification)
    scheduler = Scheduler(graph, classification, loops, continue_on_partial=continue_on_partial)
    return scheduler, RunStateTracker("run-test", graph), loops


def complete(tracker, node_id, value="out"):
    tracker.transition(node_id, NodeStatus.READY)
    tracker.transition(node_id, NodeStatus.EXECUTING)
    tracker.transition(node_id, NodeStatus.COMPLETED, value=value)


def fail(tracker, node_id):
    tracker.transition(node_id, NodeStatus.READY)
    tracker.transition(node_id, NodeStatus.EXECUTING)
    tracker.transition(node_id, NodeStatus.FAILED, error="ValueError: boom")


class TestReadiness:
    """Tests for basic dependency ordering."""

    def test_chain_runs_in_order(self):
        scheduler, tracker, _ = setup_run(
            [node("A", "input-node"), node("B", "script-generator"), node("C", "voice-generator")],
            [conn("A", "B"), conn("B", "C")],
        )
        assert scheduler.next_ready(tracker) == ["A"]

        tracker.transition("A", NodeStatus.READY)
        tracker.transition("A", NodeStatus.EXECUTING)
        assert scheduler.next_ready(tracker) == []

        tracker.transition("A", NodeStatus.COMPLETED, value="topic")
        assert scheduler.next_ready(tracker) == ["B"]
        assert scheduler.input_states("B", tracker) == {0: (InputState.VALUE, "topic")}

    def test_independent_sources_ready_together(self):
        scheduler, tracker, _ = setup_run(
            [node("A", "input-node"), node("B", "input-node"), node("V", "video-assembly")],
            [conn("A", "V"), conn("B", "V", target_port=1)],
        )
        assert scheduler.next_ready(tracker) == ["A", "B"]

    def test_multi_input_waits_for_all_ports(self):
        scheduler, tracker, _ = setup_run(
            [node("A", "input-node"), node("B", "input-node"), node("V", "video-assembly")],
            [conn("A", "V"), conn("B", "V", target_port=1)],
        )
        complete(tracker, "A")
        assert scheduler.verdict("V", tracker) == "wait"

        complete(tracker, "B")
        assert scheduler.next_ready(tracker) == ["V"]


class TestBranchesAndFailures:
    """Tests for unchosen branches and dead inputs."""

    def decision_run(self):
        return setup_run(
            [
                node("A", "input-node"),
                node("J", "yes-no-node"),
                node("Y", "script-generator"),
                node("N", "trash-node"),
            ],
            [conn("A", "J"), conn("J", "Y", source_port=0), conn("J", "N", source_port=1)],
        )

    def test_only_chosen_branch_becomes_ready(self):
        scheduler, tracker, _ = self.decision_run()
        complete(tracker, "A")
        complete(tracker, "J", ["approved", None])

        assert scheduler.next_ready(tracker) == ["Y"]
        assert scheduler.verdict("N", tracker) == "stalled"
        assert scheduler.stalled(tracker) == [("N", "branch_not_taken")]

    def test_failed_source_dooms_dependents(self):
        scheduler, tracker, _ = setup_run(
            [node("A", "input-node"), node("B", "script-generator"), node("C", "voice-generator")],
            [conn("A", "B"), conn("B", "C")],
        )
        fail(tracker, "A")
        assert scheduler.doomed(tracker) == [("B", "upstream_failed")]

        tracker.transition("B", NodeStatus.SKIPPED, reason="upstream_failed")
        assert scheduler.doomed(tracker) == [("C", "upstream_skipped")]

    def test_continue_on_partial_runs_with_surviving_inputs(self):
        nodes = [node("A", "input-node"), node("B", "input-node"), node("V", "video-assembly")]
        connections = [conn("A", "V"), conn("B", "V", target_port=1)]

        strict, tracker, _ = setup_run(nodes, connections)
        fail(tracker, "A")
        complete(tracker, "B")
        assert strict.verdict("V", tracker) == "doomed"

        partial, tracker, _ = setup_run(nodes, connections, continue_on_partial=True)
        fail(tracker, "A")
        complete(tracker, "B")
        assert partial.next_ready(tracker) == ["V"]

    def test_continue_on_partial_with_every_input_dead(self):
        """Test a node with no surviving input is skipped for the failure upstream."""
        nodes = [node("A", "input-node"), node("B", "input-node"), node("V", "video-assembly")]
        connections = [conn("A", "V"), conn("B", "V", target_port=1)]

        scheduler, tracker, _ = setup_run(nodes, connections, continue_on_partial=True)
        fail(tracker, "A")
        tracker.transition("B", NodeStatus.SKIPPED, reason="no_file_uploaded")

        assert scheduler.verdict("V", tracker) == "stalled"
        assert scheduler.stalled(tracker) == [("V", "upstream_failed")]

        scheduler, tracker, _ = setup_run(nodes, connections, continue_on_partial=True)
        tracker.transition("A", NodeStatus.SKIPPED, reason="cancelled")
        tracker.transition("B", NodeStatus.SKIPPED, reason="cancelled")

        assert scheduler.stalled(tracker) == [("V", "upstream_skipped")]

    def test_optional_inputs_do_not_doom(self):
        """Test a decision-node runs on whichever of its inputs survived."""
        scheduler, tracker, _ = setup_run(
            [node("A", "input-node"), node("B", "input-node"), node("D", "decision-node")],
            [conn("A", "D"), conn("B", "D", target_port=1)],
        )
        fail(tracker, "A")
        complete(tracker, "B")
        assert scheduler.doomed(tracker) == []
        assert scheduler.next_ready(tracker) == ["D"]

    def test_none_result_is_a_value(self):
        scheduler, tracker, _ = setup_run(
            [node("A", "input-node"), node("B", "script-generator")],
            [conn("A", "B")],
        )
        complete(tracker, "A", None)
        assert scheduler.input_states("B", tracker) == {0: (InputState.VALUE, None)}
        assert scheduler.next_ready(tracker) == ["B"]


class TestLoopEdges:
    """Tests for how loop edges and loop bodies affect readiness."""

    def loop_run(self):
        return setup_run(
            [
                node("A", "input-node"),
                node("L", "loop-node", maxIterations=3),
                node("B", "script-generator"),
                node("E", "export-publisher"),
            ],
            [conn("A", "L"), conn("L", "B"), conn("B", "L", target_port=1), conn("B", "E")],
        )

    def test_loop_node_ready_without_feedback(self):
        scheduler, tracker, _ = self.loop_run()
        complete(tracker, "A")
        assert scheduler.next_ready(tracker) == ["L"]
        assert 1 not in scheduler.input_states("L", tracker)

    def test_injected_feedback_counts_as_value(self):
        scheduler, tracker, _ = self.loop_run()
        complete(tracker, "A", "seed")
        tracker.inject("L", 1, "draft")
        assert scheduler.input_states("L", tracker) == {
            0: (InputState.VALUE, "seed"),
            1: (InputState.VALUE, "draft"),
        }

    def test_exit_waits_while_loop_is_active(self):
        scheduler, tracker, loops = self.loop_run()
        complete(tracker, "A")
        complete(tracker, "L")
        complete(tracker, "B", "draft")

        assert scheduler.verdict("E", tracker) == "wait"
        assert scheduler.stalled(tracker) == []

        loops.stop("L", "max_iterations")
        assert scheduler.next_ready(tracker) == ["E"]
