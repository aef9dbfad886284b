"""Tests for the connection rule checker."""

from __future__ import annotations

import pytest

from xraygraph.connection_rules import find_node_by_id, is_valid_connection
from xraygraph.models import NodeType


class TestIsValidConnection:
    """Allowed and forbidden node type pairs."""

    @pytest.mark.parametrize("source,target", [
        (NodeType.DEVICE, NodeType.INBOUND),
        (NodeType.DEVICE, NodeType.OUTBOUND_PROXY),
        (NodeType.INBOUND, NodeType.ROUTING),
        (NodeType.INBOUND, NodeType.OUTBOUND_TERMINAL),
        (NodeType.ROUTING, NodeType.ROUTING),
        (NodeType.ROUTING, NodeType.BALANCER),
        (NodeType.BALANCER, NodeType.OUTBOUND_PROXY),
        (NodeType.OUTBOUND_PROXY, NodeType.INBOUND),
        (NodeType.SIMPLE_RULES, NodeType.SIMPLE_BLOCK),
        (NodeType.SIMPLE_SERVER, NodeType.SIMPLE_SERVER),
    ])
    def test_allowed(self, source, target):
        assert is_valid_connection(source, target).valid

    def test_terminal_output_cannot_be_a_source(self):
        check = is_valid_connection(NodeType.OUTBOUND_TERMINAL, NodeType.INBOUND)
        assert not check.valid
        assert "Terminal OUTPUT" in check.reason

    def test_forbidden_pair_names_both_types(self):
        check = is_valid_connection(NodeType.BALANCER, NodeType.ROUTING)
        assert not check.valid
        assert check.reason == "Cannot connect balancer to routing"

    def test_proxy_cannot_reach_routing_directly(self):
        assert not is_valid_connection(NodeType.OUTBOUND_PROXY, NodeType.ROUTING).valid

    def test_simple_exits_have_no_outgoing(self):
        for target in NodeType:
            assert not is_valid_connection(NodeType.SIMPLE_INTERNET, target).valid
            assert not is_valid_connection(NodeType.SIMPLE_BLOCK, target).valid


class TestFindNodeById:
    def test_found_and_missing(self, make_node):
        a = make_node(NodeType.INBOUND, "a", tag="a")
        b = make_node(NodeType.ROUTING, "b", tag="b")
        assert find_node_by_id([a, b], "b") is b
        assert find_node_by_id([a, b], "zzz") is None
