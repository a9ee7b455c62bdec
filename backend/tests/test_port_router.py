"""
Tests for output-port routing.
"""

import pytest

import sys
from pathlib import Path

backend_root = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(backend_root))

from contentflow.models.graph import GraphNode
from contentflow.services.errors import DecisionOutputError
from contentflow.services.graph_builder import build_graph
from contentflow.services.port_router import (
    NO_VALUE,
    branch_taken,
    decision_slots,
    deliveries,
    route,
)

JUDGE = GraphNode(id="J", type="judgment-node", role="decision", output_port_count=2)
FILE = GraphNode(id="F", type="file-input-node", role="dual_output", input_port_count=0, output_port_count=2)
WORK = GraphNode(id="W", type="script-generator")


class TestDecisionRouting:
    """YES/NO slot routing for decision nodes."""

    def test_yes_branch(self):
        value = [{"v": 1}, None]
        assert route(JUDGE, value, 0) == {"v": 1}
        assert route(JUDGE, value, 1) is NO_VALUE

    def test_no_branch(self):
        value = [None, {"v": 2}]
        assert route(JUDGE, value, 0) is NO_VALUE
        assert route(JUDGE, value, 1) == {"v": 2}

    def test_outputs_mapping_shape(self):
        value = {"judgment": "needs work", "outputs": [None, "retry"]}
        assert route(JUDGE, value, 0) is NO_VALUE
        assert route(JUDGE, value, 1) == "retry"

    def test_unshaped_value_routes_nothing(self):
        assert route(JUDGE, "oops", 0) is NO_VALUE
        assert route(JUDGE, "oops", 1) is NO_VALUE

    def test_branch_taken(self):
        assert branch_taken(["x", None]) == "yes"
        assert branch_taken({"outputs": [None, "x"]}) == "no"
        assert branch_taken(["x", "y"]) is None
        assert branch_taken("x") is None


class TestDecisionSlots:
    """Validation of decision handler results."""

    def test_valid_slots(self):
        assert list(decision_slots(JUDGE, ["x", None])) == ["x", None]

    @pytest.mark.parametrize("value", [
        ["x", "y"],
        [None, None],
        ["x"],
        ["x", None, None],
        "x",
        {"judgment": "pass"},
    ])
    def test_invalid_slots_raise(self, value):
        with pytest.raises(DecisionOutputError) as exc_info:
            decision_slots(JUDGE, value)
        assert exc_info.value.node_id == "J"


class TestNamedOutputs:
    """Routing of `outputs` mappings and lists on non-decision nodes."""

    def test_aliases_map_to_ports(self):
        value = {"outputs": {"script": "the script", "prompts": ["p1", "p2"]}}
        assert route(FILE, value, 0) == "the script"
        assert route(FILE, value, 1) == ["p1", "p2"]

    def test_numeric_key_wins_over_alias(self):
        value = {"outputs": {"0": "numbered", "script": "aliased"}}
        assert route(FILE, value, 0) == "numbered"

    def test_default_then_whole_value(self):
        with_default = {"outputs": {"default": "fallback"}}
        assert route(FILE, with_default, 1) == "fallback"

        without = {"outputs": {"other": 1}, "meta": True}
        assert route(FILE, without, 1) == without

    def test_indexed_outputs(self):
        value = {"outputs": ["first", None]}
        assert route(FILE, value, 0) == "first"
        assert route(FILE, value, 1) is NO_VALUE

    def test_plain_value_goes_to_every_port(self):
        assert route(FILE, "same", 0) == "same"
        assert route(FILE, "same", 1) == "same"
        assert route(WORK, ["a", "list"], 0) == ["a", "list"]

    def test_none_is_a_real_value(self):
        """Test a handler returning None delivers None, not NO_VALUE."""
        assert route(WORK, None, 0) is None
        assert NO_VALUE is not None
        assert not NO_VALUE


class TestDeliveries:
    def test_deliveries_for_every_outbound_connection(self):
        graph = build_graph(
            [
                {"id": "J", "type": "yes-no-node", "data": {}},
                {"id": "Y", "type": "text-preview-node", "data": {}},
                {"id": "N", "type": "text-preview-node", "data": {}},
            ],
            [
                {"sourceId": "J", "sourcePort": 0, "targetId": "Y", "targetPort": 0},
                {"sourceId": "J", "sourcePort": 1, "targetId": "N", "targetPort": 0},
            ],
        )
        routed = {conn.target_id: value for conn, value in deliveries(graph, "J", ["ok", None])}
        assert routed == {"Y": "ok", "N": NO_VALUE}
