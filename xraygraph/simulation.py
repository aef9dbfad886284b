"""流量模拟：假设一条请求从某个 INPUT 进入，沿图走到出口。

走法与导出后的 xray 行为保持一致：
  - INPUT：按 priority 扫描出边，取第一个匹配的路由节点；
    都不匹配时退回第一条直连 OUTPUT / 均衡器的边；
  - 路由节点：能走到这里说明已经匹配，直接取第一条出边；
  - 均衡器：按 selector 过滤候选，random 随机选，roundRobin / leastPing
    在模拟里一律取第一个 (不模拟轮询状态和延迟)；
  - 代理 OUTPUT：连到另一台服务器的 INPUT 就继续走，否则在此结束。
模拟从不抛异常，所有失败都以 success=False 的结果返回。
"""

from __future__ import annotations

import logging
import random
from dataclasses import dataclass, field
from typing import Callable, Optional, Union

from xraygraph.matching import TrafficRequest, routing_matches
from xraygraph.models import (
    BalancerStrategy,
    Edge,
    GraphIndex,
    Node,
    NodeType,
    OutboundProtocol,
)

logger = logging.getLogger(__name__)


@dataclass
class SimulationStep:
    node_id: str
    tag: str
    node_type: NodeType
    description: str


@dataclass
class SimulationResult:
    success: bool
    path: list[SimulationStep] = field(default_factory=list)
    highlight_node_ids: list[str] = field(default_factory=list)
    highlight_edge_ids: list[str] = field(default_factory=list)
    final_outbound: Optional[str] = None
    explanation: str = ""


_TERMINAL_ACTIONS = {
    OutboundProtocol.FREEDOM: "Direct connection to internet",
    OutboundProtocol.BLACKHOLE: "Traffic blocked",
    OutboundProtocol.DNS: "DNS query forwarded",
}


def _preview(values: list[str]) -> str:
    return ", ".join(values[:2]) + ("..." if len(values) > 2 else "")


def describe_node(node: Node) -> str:
    d = node.data
    t = node.type
    if t is NodeType.DEVICE:
        return f"Device ({d.connection_type.value})"
    if t is NodeType.INBOUND:
        return f"{d.protocol.value.upper()} INPUT :{d.port}"
    if t is NodeType.ROUTING:
        parts = []
        if d.domain:
            parts.append(f"domain: {_preview(d.domain)}")
        if d.ip:
            parts.append(f"ip: {_preview(d.ip)}")
        if d.port:
            parts.append(f"port: {d.port}")
        if d.protocol:
            parts.append(f"proto: {', '.join(d.protocol)}")
        if d.network:
            parts.append(f"net: {d.network}")
        return f"Routing [{'; '.join(parts)}]" if parts else "Routing [catch-all]"
    if t is NodeType.BALANCER:
        return f"Balancer ({d.strategy.value})"
    if t is NodeType.OUTBOUND_TERMINAL:
        return f"{d.protocol.value.capitalize()} OUTPUT (terminal)"
    if t is NodeType.OUTBOUND_PROXY:
        return f"OUTPUT {d.protocol.value.upper()} → {_address(d)}"
    if t is NodeType.SIMPLE_SERVER:
        return f"Server {d.protocol.upper()} → {d.host or '?'}:{d.port}"
    if t is NodeType.SIMPLE_RULES:
        return f"Rules ({len(d.rules)})"
    return node.display_name


def _address(data) -> str:
    return f"{data.server_address or '?'}:{data.server_port or '?'}"


# ---------------------------------------------------------------------------
# 单步转移
# ---------------------------------------------------------------------------

Transition = Union[Edge, SimulationResult]


class _Walk:
    """一次模拟的可变状态：路径、高亮列表。"""

    def __init__(self, request: TrafficRequest, index: GraphIndex, rng) -> None:
        self.request = request
        self.index = index
        self.rng = rng
        self.path: list[SimulationStep] = []
        self.node_ids: list[str] = []
        self.edge_ids: list[str] = []

    def finish(self, success: bool, explanation: str, final_outbound: Optional[str] = None) -> SimulationResult:
        return SimulationResult(
            success=success,
            path=self.path,
            highlight_node_ids=self.node_ids,
            highlight_edge_ids=self.edge_ids,
            final_outbound=final_outbound,
            explanation=explanation,
        )

    def dead_end(self, node: Node) -> SimulationResult:
        return self.finish(False, f'Dead end at "{node.display_name}" — no outgoing connections.')


def _from_inbound(walk: _Walk, node: Node) -> Transition:
    outgoing = walk.index.by_priority(node.id)
    if not outgoing:
        return walk.dead_end(node)

    fallback: Optional[Edge] = None
    for edge in outgoing:
        target = walk.index.target(edge)
        if target is None:
            continue
        if target.type is NodeType.ROUTING:
            if routing_matches(target.data, walk.request, node.data.tag):
                return edge
        elif fallback is None:
            fallback = edge

    if fallback is not None:
        return fallback
    r = walk.request
    return walk.finish(
        False,
        f'No routing rule matched for {r.domain}:{r.port} ({r.protocol}) from "{node.data.tag}".',
    )


def _follow_first(walk: _Walk, node: Node) -> Transition:
    """路由节点 (以及其它非终点节点) 取 priority 最高的第一条出边。"""
    outgoing = walk.index.by_priority(node.id)
    if not outgoing:
        return walk.dead_end(node)
    return outgoing[0]


def _from_balancer(walk: _Walk, node: Node) -> Transition:
    outgoing = walk.index.by_priority(node.id)
    if not outgoing:
        return walk.dead_end(node)

    selector = node.data.selector
    candidates = []
    for edge in outgoing:
        target = walk.index.target(edge)
        if target is None:
            continue
        tag = target.tag or ""
        if not selector or any(tag.startswith(s) for s in selector):
            candidates.append(edge)

    if not candidates:
        # selector 一个都没匹配上，退回第一条出边
        return outgoing[0]

    if node.data.strategy is BalancerStrategy.RANDOM:
        chosen = candidates[walk.rng.randrange(len(candidates))]
    else:
        chosen = candidates[0]

    target = walk.index.target(chosen)
    walk.path[-1].description += f" → selected: {target.display_name}"
    return chosen


def _at_terminal(walk: _Walk, node: Node) -> Transition:
    data = node.data
    action = _TERMINAL_ACTIONS.get(data.protocol, "Unknown")
    return walk.finish(True, f'{action} via "{data.tag}".', final_outbound=data.tag)


def _at_proxy(walk: _Walk, node: Node) -> Transition:
    # 代理链：下一跳是另一台服务器的 INPUT 时继续
    # 只看优先级最高的一条出边，其余出边不参与代理链
    for edge in walk.index.by_priority(node.id)[:1]:
        target = walk.index.target(edge)
        if target is not None and target.type is NodeType.INBOUND:
            return edge

    data = node.data
    return walk.finish(
        True,
        f'Traffic forwarded to {_address(data)} via "{data.tag}".',
        final_outbound=data.tag,
    )


def _at_simple_exit(walk: _Walk, node: Node) -> Transition:
    action = "Traffic blocked" if node.type is NodeType.SIMPLE_BLOCK else "Direct connection to internet"
    return walk.finish(True, f'{action} via "{node.display_name}".', final_outbound=node.display_name)


_HANDLERS: dict[NodeType, Callable[[_Walk, Node], Transition]] = {
    NodeType.DEVICE: _follow_first,
    NodeType.INBOUND: _from_inbound,
    NodeType.ROUTING: _follow_first,
    NodeType.BALANCER: _from_balancer,
    NodeType.OUTBOUND_TERMINAL: _at_terminal,
    NodeType.OUTBOUND_PROXY: _at_proxy,
    NodeType.SIMPLE_SERVER: _follow_first,
    NodeType.SIMPLE_RULES: _follow_first,
    NodeType.SIMPLE_INTERNET: _at_simple_exit,
    NodeType.SIMPLE_BLOCK: _at_simple_exit,
}


# ---------------------------------------------------------------------------
# 入口
# ---------------------------------------------------------------------------

def run_simulation(
    request: TrafficRequest,
    nodes: list[Node],
    edges: list[Edge],
    rng: Optional[random.Random] = None,
) -> SimulationResult:
    """模拟一次请求。rng 只用于 random 策略的均衡器，便于测试固定结果。"""
    try:
        return _simulate(request, GraphIndex(nodes, edges), rng or random)
    except Exception as e:
        logger.exception("模拟过程出错")
        return SimulationResult(success=False, explanation=f"Simulation failed: {e}")


def _simulate(request: TrafficRequest, index: GraphIndex, rng) -> SimulationResult:
    start = next(
        (n for n in index.of_type(NodeType.INBOUND) if n.data.tag == request.inbound_tag),
        None,
    )
    if start is None:
        return SimulationResult(success=False, explanation=f'INPUT "{request.inbound_tag}" not found.')

    walk = _Walk(request, index, rng)
    visited: set[str] = set()
    current = start

    while True:
        if current.id in visited:
            walk.path.append(SimulationStep(
                node_id=current.id,
                tag=current.display_name,
                node_type=current.type,
                description="Cycle detected — stopping.",
            ))
            return walk.finish(False, "Traffic entered a cycle. This is likely a misconfiguration.")

        visited.add(current.id)
        walk.node_ids.append(current.id)
        walk.path.append(SimulationStep(
            node_id=current.id,
            tag=current.display_name,
            node_type=current.type,
            description=describe_node(current),
        ))

        step = _HANDLERS[current.type](walk, current)
        if isinstance(step, SimulationResult):
            return step

        walk.edge_ids.append(step.id)
        nxt = index.target(step)
        if nxt is None:
            return walk.finish(False, f'Dead end at "{current.display_name}" — edge leads to a missing node.')
        current = nxt
