"""Shared fixtures for xraygraph tests."""

from __future__ import annotations

import itertools

import pytest

from xraygraph.models import (
    DATA_CLASSES,
    Edge,
    EdgeData,
    InboundProtocol,
    Node,
    NodeType,
    OutboundProtocol,
)


@pytest.fixture
def make_node():
    """Factory fixture for creating test Node instances.

    Keyword arguments are passed straight to the node type's data class.
    """
    counter = itertools.count(1)

    def _make(node_type: NodeType, node_id: str = None, **data) -> Node:
        node_id = node_id or f"{node_type.value}-{next(counter)}"
        return Node(id=node_id, type=node_type, data=DATA_CLASSES[node_type](**data))

    return _make


@pytest.fixture
def make_edge():
    """Factory fixture for creating test Edge instances."""
    counter = itertools.count(1)

    def _make(source, target, priority: int = None, transport=None, edge_id: str = None) -> Edge:
        source_id = source.id if isinstance(source, Node) else source
        target_id = target.id if isinstance(target, Node) else target
        return Edge(
            id=edge_id or f"e{next(counter)}",
            source=source_id,
            target=target_id,
            data=EdgeData(priority=priority, transport=transport),
        )

    return _make


@pytest.fixture
def example_graph(make_node, make_edge):
    """INPUT in1 → routing(domain:example.com) → proxy out1."""
    inbound = make_node(NodeType.INBOUND, "in", tag="in1", protocol=InboundProtocol.VLESS, port=443)
    routing = make_node(NodeType.ROUTING, "route", tag="r1", domain=["domain:example.com"])
    proxy = make_node(
        NodeType.OUTBOUND_PROXY, "out",
        tag="out1", protocol=OutboundProtocol.VLESS,
        server_address="exit.example.net", server_port=443,
    )
    nodes = [inbound, routing, proxy]
    edges = [make_edge(inbound, routing), make_edge(routing, proxy)]
    return nodes, edges
