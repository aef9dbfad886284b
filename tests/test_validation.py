"""Tests for the graph validation engine."""

from __future__ import annotations

from unittest.mock import patch

from xraygraph.models import (
    DeviceConnectionType,
    InboundProtocol,
    Network,
    NodeType,
    OutboundProtocol,
    RealitySettings,
    Security,
    SimpleRule,
    TransportSettings,
    User,
)
from xraygraph.validation import IssueLevel, get_node_validation_status, validate_graph


def _messages(issues, node_id=None):
    return [i.message for i in issues if node_id is None or i.node_id == node_id]


class TestNodeChecks:
    """Per-node field validation."""

    def test_inbound_bad_port_and_uuid(self, make_node):
        node = make_node(
            NodeType.INBOUND, "in", tag="in1", port=70000,
            users=[User(email="a", id="not-a-uuid")],
        )
        result = validate_graph([node], [])
        msgs = _messages(result.errors, "in")
        assert "Invalid port: 70000. Must be 1-65535" in msgs
        assert 'User 1 has invalid UUID: "not-a-uuid"' in msgs
        assert not result.valid

    def test_trojan_user_needs_password(self, make_node):
        node = make_node(
            NodeType.INBOUND, "in", tag="t", protocol=InboundProtocol.TROJAN,
            users=[User(email="a")],
        )
        result = validate_graph([node], [])
        assert "User 1 requires a password for Trojan" in _messages(result.errors)

    def test_routing_port_grammar(self, make_node):
        node = make_node(NodeType.ROUTING, "r", tag="r", port="80;443")
        result = validate_graph([node], [])
        assert any("Invalid port format" in m for m in _messages(result.errors, "r"))

    def test_routing_without_predicates_warns(self, make_node):
        node = make_node(NodeType.ROUTING, "r", tag="r")
        result = validate_graph([node], [])
        assert "Routing node has no rules defined" in _messages(result.warnings, "r")

    def test_proxy_requires_address_and_port(self, make_node):
        node = make_node(NodeType.OUTBOUND_PROXY, "p", tag="p", protocol=OutboundProtocol.VLESS)
        msgs = _messages(validate_graph([node], []).errors, "p")
        assert "Proxy OUTPUT requires a server address" in msgs
        assert "Proxy OUTPUT requires a valid server port (1-65535)" in msgs

    def test_simple_server_reality_needs_raw_and_key(self, make_node):
        node = make_node(
            NodeType.SIMPLE_SERVER, "s", host="1.2.3.4", uuid="0f8e3c1a-2b4d-4e6f-8a9b-1c2d3e4f5a6b",
            network=Network.WS, security=Security.REALITY, ws_path="/ws",
        )
        msgs = _messages(validate_graph([node], []).errors, "s")
        assert any("Reality security only works with RAW or XHTTP" in m for m in msgs)
        assert "Reality security requires a public key" in msgs

    def test_simple_rules_value_required(self, make_node):
        node = make_node(NodeType.SIMPLE_RULES, "rules", rules=[
            SimpleRule(type="domain", value=""),
            SimpleRule(type="all"),
        ])
        msgs = _messages(validate_graph([node], []).errors, "rules")
        assert msgs == ["Rule 1 (domain) has no value"]


class TestStructure:
    """Whole-graph structural checks."""

    def test_duplicate_tags_report_both_nodes(self, make_node):
        a = make_node(NodeType.OUTBOUND_TERMINAL, "a", tag="dup")
        b = make_node(NodeType.OUTBOUND_TERMINAL, "b", tag="dup")
        result = validate_graph([a, b], [])
        dup = [i for i in result.errors if i.message == 'Duplicate tag: "dup"']
        assert {i.node_id for i in dup} == {"a", "b"}

    def test_port_conflict_is_per_server(self, make_node):
        a = make_node(NodeType.INBOUND, "a", tag="a", port=443, server_id="s1")
        b = make_node(NodeType.INBOUND, "b", tag="b", port=443, server_id="s1")
        c = make_node(NodeType.INBOUND, "c", tag="c", port=443, server_id="s2")
        result = validate_graph([a, b, c], [])
        conflicted = {i.node_id for i in result.errors if i.message.startswith("Port conflict")}
        assert conflicted == {"a", "b"}

    def test_inbound_without_outgoing(self, make_node):
        node = make_node(NodeType.INBOUND, "in", tag="in1")
        result = validate_graph([node], [])
        assert any("no outgoing connections" in m for m in _messages(result.warnings, "in"))
        assert result.infos and result.infos[0].level is IssueLevel.INFO

    def test_long_chain_still_reports_other_errors(self, make_node, make_edge):
        chain = [make_node(NodeType.ROUTING, f"r{i}", tag=f"r{i}", domain=["a.com"])
                 for i in range(1500)]
        edges = [make_edge(a, b) for a, b in zip(chain, chain[1:])]
        a = make_node(NodeType.OUTBOUND_TERMINAL, "a", tag="dup")
        b = make_node(NodeType.OUTBOUND_TERMINAL, "b", tag="dup")
        result = validate_graph(chain + [a, b], edges)
        assert not result.valid
        assert {i.node_id for i in result.errors if i.message == 'Duplicate tag: "dup"'} == {"a", "b"}
        assert not [i for i in result.errors if "Cycle detected" in i.message]

    def test_long_ring_is_one_cycle(self, make_node, make_edge):
        ring = [make_node(NodeType.ROUTING, f"r{i}", tag=f"r{i}", domain=["a.com"])
                for i in range(1500)]
        edges = [make_edge(a, b) for a, b in zip(ring, ring[1:] + ring[:1])]
        result = validate_graph(ring, edges)
        cycles = [i for i in result.errors if "Cycle detected" in i.message]
        assert [i.node_id for i in cycles] == ["r0"]

    def test_inbound_without_terminal_and_dead_end_proxy(self, example_graph):
        nodes, edges = example_graph
        result = validate_graph(nodes, edges)
        assert (
            "INPUT node cannot reach any terminal OUTPUT (Freedom/Blackhole/DNS). "
            "Traffic has no final destination."
        ) in _messages(result.warnings, "in")
        assert (
            "Proxy OUTPUT is a dead-end — no connection to a downstream INPUT node. "
            "In infrastructure mode, connect it to an INPUT on the exit server."
        ) in _messages(result.warnings, "out")
        assert not any("cannot reach" in m for m in _messages(result.warnings, "out"))

    def test_outputs_without_incoming(self, make_node):
        term = make_node(NodeType.OUTBOUND_TERMINAL, "t", tag="direct")
        proxy = make_node(NodeType.OUTBOUND_PROXY, "p", tag="p", protocol=OutboundProtocol.VLESS,
                          server_address="h", server_port=443)
        result = validate_graph([term, proxy], [])
        assert _messages(result.warnings, "t") == ["Terminal OUTPUT has no incoming connections"]
        assert "Proxy OUTPUT has no incoming connections" in _messages(result.warnings, "p")

    def test_upstream_proxy_info(self, make_node, make_edge):
        lonely = make_node(NodeType.INBOUND, "in", tag="in1", port=443)
        fed = make_node(NodeType.INBOUND, "fed", tag="fed", port=8443)
        proxy = make_node(NodeType.OUTBOUND_PROXY, "p", tag="p", protocol=OutboundProtocol.VLESS,
                          server_address="h", server_port=8443)
        result = validate_graph([lonely, fed, proxy], [make_edge(proxy, fed)])
        assert _messages(result.infos, "in") == [
            "No upstream OUTPUT connects to this INPUT. "
            "It's OK if you're just planning the infrastructure side."
        ]
        assert _messages(result.infos, "fed") == []

    def test_routing_ring_is_a_cycle(self, make_node, make_edge):
        r1 = make_node(NodeType.ROUTING, "r1", tag="r1", domain=["a.com"])
        r2 = make_node(NodeType.ROUTING, "r2", tag="r2", domain=["b.com"])
        r3 = make_node(NodeType.ROUTING, "r3", tag="r3", domain=["c.com"])
        edges = [make_edge(r1, r2), make_edge(r2, r3), make_edge(r3, r1)]
        result = validate_graph([r1, r2, r3], edges)
        cycles = [i for i in result.errors if "Cycle detected" in i.message]
        assert len(cycles) == 1

    def test_proxy_chain_ring_is_not_a_cycle(self, make_node, make_edge):
        in_a = make_node(NodeType.INBOUND, "in-a", tag="in-a", port=443)
        in_b = make_node(NodeType.INBOUND, "in-b", tag="in-b", port=8443)
        out_a = make_node(NodeType.OUTBOUND_PROXY, "out-a", tag="out-a",
                          protocol=OutboundProtocol.VLESS, server_address="b", server_port=8443)
        out_b = make_node(NodeType.OUTBOUND_PROXY, "out-b", tag="out-b",
                          protocol=OutboundProtocol.VLESS, server_address="a", server_port=443)
        edges = [
            make_edge(out_a, in_b), make_edge(in_b, out_b),
            make_edge(out_b, in_a), make_edge(in_a, out_a),
        ]
        result = validate_graph([in_a, in_b, out_a, out_b], edges)
        assert not [i for i in result.errors if "Cycle detected" in i.message]

    def test_invalid_existing_edge_is_reported(self, make_node, make_edge):
        term = make_node(NodeType.OUTBOUND_TERMINAL, "t", tag="direct")
        inbound = make_node(NodeType.INBOUND, "in", tag="in1")
        result = validate_graph([term, inbound], [make_edge(term, inbound)])
        assert any("Terminal OUTPUT nodes" in m for m in _messages(result.errors, "t"))

    def test_device_protocol_mismatch_flags_both_ends(self, make_node, make_edge):
        device = make_node(NodeType.DEVICE, "dev", connection_type=DeviceConnectionType.HTTP)
        proxy = make_node(NodeType.OUTBOUND_PROXY, "p", tag="p", protocol=OutboundProtocol.SOCKS,
                          server_address="h", server_port=1080)
        result = validate_graph([device, proxy], [make_edge(device, proxy)])
        assert _messages(result.errors, "dev")
        assert any("incompatible" in m for m in _messages(result.errors, "p"))

    def test_cross_group_transport_checked_on_source(self, make_node, make_edge):
        out = make_node(NodeType.OUTBOUND_PROXY, "o", tag="o", protocol=OutboundProtocol.VLESS,
                        server_address="h", server_port=443, server_id="s1")
        inbound = make_node(NodeType.INBOUND, "i", tag="i", server_id="s2")
        transport = TransportSettings(
            network=Network.GRPC, security=Security.REALITY,
            reality_settings=RealitySettings(short_id="ab"),
        )
        result = validate_graph([out, inbound], [make_edge(out, inbound, transport=transport)])
        msgs = _messages(result.errors, "o")
        assert "Reality security requires a publicKey" in msgs
        assert any("currently: grpc" in m for m in msgs)

    def test_same_group_transport_is_ignored(self, make_node, make_edge):
        out = make_node(NodeType.OUTBOUND_PROXY, "o", tag="o", protocol=OutboundProtocol.VLESS,
                        server_address="h", server_port=443, server_id="s1")
        inbound = make_node(NodeType.INBOUND, "i", tag="i", server_id="s1")
        transport = TransportSettings(security=Security.REALITY)
        result = validate_graph([out, inbound], [make_edge(out, inbound, transport=transport)])
        assert not any("publicKey" in m for m in _messages(result.errors))


class TestReferences:
    def test_unknown_inbound_tag(self, make_node):
        r = make_node(NodeType.ROUTING, "r", tag="r", inbound_tag="ghost")
        result = validate_graph([r], [])
        assert any('"ghost"' in m for m in _messages(result.warnings, "r"))

    def test_balancer_selector_is_prefix(self, make_node):
        bal = make_node(NodeType.BALANCER, "b", tag="b", selector=["proxy-", "nope"])
        out = make_node(NodeType.OUTBOUND_TERMINAL, "o", tag="proxy-1")
        msgs = _messages(validate_graph([bal, out], []).warnings, "b")
        assert 'Balancer selector "nope" doesn\'t match any OUTPUT tag' in msgs
        assert not any('"proxy-"' in m for m in msgs)

    def test_dangling_inbound_tag_and_selector_together(self, make_node):
        r = make_node(NodeType.ROUTING, "r", tag="r", domain=["a.com"], inbound_tag="ghost")
        bal = make_node(NodeType.BALANCER, "b", tag="b", selector=["zzz"])
        out = make_node(NodeType.OUTBOUND_PROXY, "o", tag="proxy-1", protocol=OutboundProtocol.VLESS,
                        server_address="h", server_port=443)
        inbound = make_node(NodeType.INBOUND, "in", tag="in1")
        result = validate_graph([r, bal, out, inbound], [])
        assert _messages(result.warnings, "r") == [
            "Routing references inboundTag \"ghost\" which doesn't match any INPUT tag",
        ]
        assert _messages(result.warnings, "b") == [
            "Balancer selector \"zzz\" doesn't match any OUTPUT tag",
        ]


class TestEntryPoint:
    def test_valid_example_graph(self, example_graph):
        nodes, edges = example_graph
        result = validate_graph(nodes, edges)
        assert result.valid

    def test_internal_error_returns_empty_valid(self, example_graph):
        nodes, edges = example_graph
        with patch("xraygraph.validation._validate", side_effect=RuntimeError("boom")):
            result = validate_graph(nodes, edges)
        assert result.valid
        assert result.errors == [] and result.warnings == []

    def test_node_status(self, make_node):
        a = make_node(NodeType.OUTBOUND_TERMINAL, "a", tag="dup")
        b = make_node(NodeType.OUTBOUND_TERMINAL, "b", tag="dup")
        c = make_node(NodeType.OUTBOUND_TERMINAL, "c", tag="lonely")
        result = validate_graph([a, b, c], [])
        assert get_node_validation_status("a", result) == (IssueLevel.ERROR, 1)
        assert get_node_validation_status("c", result)[0] is IssueLevel.WARNING
        assert get_node_validation_status("missing", result) == ("valid", 0)
