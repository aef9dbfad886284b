"""连线规则：哪些节点类型之间允许建立边。

编辑器新建连线时调用，验证引擎也会对已有的边再检查一遍
(外部导入的图可能包含编辑器不会产生的边)。
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Optional

from xraygraph.models import Node, NodeType

_ALLOWED: dict[NodeType, frozenset[NodeType]] = {
    # 设备连接到 INPUT (socks/http) 或客户端侧的代理 OUTPUT
    NodeType.DEVICE: frozenset({
        NodeType.INBOUND,
        NodeType.OUTBOUND_PROXY,
        NodeType.SIMPLE_SERVER,
        NodeType.SIMPLE_RULES,
    }),
    NodeType.INBOUND: frozenset({
        NodeType.ROUTING,
        NodeType.BALANCER,
        NodeType.OUTBOUND_TERMINAL,
        NodeType.OUTBOUND_PROXY,
    }),
    NodeType.ROUTING: frozenset({
        NodeType.ROUTING,
        NodeType.BALANCER,
        NodeType.OUTBOUND_TERMINAL,
        NodeType.OUTBOUND_PROXY,
    }),
    NodeType.BALANCER: frozenset({
        NodeType.OUTBOUND_TERMINAL,
        NodeType.OUTBOUND_PROXY,
    }),
    # 代理链：服务器 A 的 OUTPUT → 服务器 B 的 INPUT
    NodeType.OUTBOUND_PROXY: frozenset({NodeType.INBOUND}),
    NodeType.OUTBOUND_TERMINAL: frozenset(),
    NodeType.SIMPLE_RULES: frozenset({
        NodeType.SIMPLE_SERVER,
        NodeType.SIMPLE_INTERNET,
        NodeType.SIMPLE_BLOCK,
    }),
    NodeType.SIMPLE_SERVER: frozenset({NodeType.SIMPLE_SERVER}),
    NodeType.SIMPLE_INTERNET: frozenset(),
    NodeType.SIMPLE_BLOCK: frozenset(),
}


@dataclass
class ConnectionCheck:
    valid: bool
    reason: Optional[str] = None


def is_valid_connection(source_type: NodeType, target_type: NodeType) -> ConnectionCheck:
    """判断 source_type → target_type 的连线是否合法。"""
    if source_type is NodeType.OUTBOUND_TERMINAL:
        return ConnectionCheck(
            False,
            "Terminal OUTPUT nodes (freedom/blackhole/dns) cannot have outgoing connections",
        )

    if target_type not in _ALLOWED[source_type]:
        return ConnectionCheck(
            False, f"Cannot connect {source_type.value} to {target_type.value}"
        )
    return ConnectionCheck(True)


def find_node_by_id(nodes: list[Node], node_id: str) -> Optional[Node]:
    for node in nodes:
        if node.id == node_id:
            return node
    return None
