"""xray 配置文档 → 拓扑图 (反向编译)。

为每个 inbound / outbound / balancer / rule 分配新的节点 id，
再用 tag → id 表把规则与负载均衡里的引用还原成边。
"""

from __future__ import annotations

import json
import logging
import uuid
from collections.abc import Mapping
from dataclasses import dataclass, field
from typing import Any, Optional, Union

import yaml

from xraygraph.models import (
    OUTBOUND_TYPES,
    TERMINAL_PROTOCOLS,
    BalancerData,
    BalancerStrategy,
    Edge,
    InboundData,
    InboundProtocol,
    Node,
    NodeType,
    OutboundData,
    OutboundProtocol,
    Position,
    ProjectMode,
    RoutingData,
    User,
)
from xraygraph.transport import parse_stream_settings

logger = logging.getLogger(__name__)


class ConfigParseError(ValueError):
    """输入无法解析，或缺少必需的顶层字段。"""


@dataclass
class ImportSummary:
    inbound_count: int = 0
    outbound_count: int = 0
    routing_count: int = 0
    balancer_count: int = 0
    edge_count: int = 0
    warnings: list[str] = field(default_factory=list)
    mode: ProjectMode = ProjectMode.CLIENT


@dataclass
class ImportResult:
    nodes: list[Node]
    edges: list[Edge]
    mode: ProjectMode
    summary: ImportSummary


# 自动布局：按节点类型分列，从左到右
_LAYERS = {
    NodeType.INBOUND: 0,
    NodeType.ROUTING: 1,
    NodeType.BALANCER: 2,
    NodeType.OUTBOUND_PROXY: 3,
    NodeType.OUTBOUND_TERMINAL: 3,
}
LAYER_SPACING = 300
NODE_SPACING = 150
START_X = 50
START_Y = 50


def decode_document(content: Union[str, Mapping], what: str = "file") -> dict:
    """str 先按 JSON 解析，失败再按 YAML；必须得到一个对象。"""
    if isinstance(content, Mapping):
        return dict(content)

    try:
        data = json.loads(content)
    except (TypeError, ValueError):
        try:
            data = yaml.safe_load(content)
        except yaml.YAMLError:
            data = None

    if not isinstance(data, dict):
        raise ConfigParseError(f"Invalid JSON: could not parse the {what}.")
    return data


def _new_id() -> str:
    return str(uuid.uuid4())


def _as_list(value: Any) -> list:
    return list(value) if isinstance(value, list) else []


def _as_int(value: Any) -> Optional[int]:
    if isinstance(value, bool):
        return None
    if isinstance(value, int):
        return value
    if isinstance(value, str) and value.isdigit():
        return int(value)
    return None


# ---------------------------------------------------------------------------
# inbound / outbound
# ---------------------------------------------------------------------------

def _parse_users(settings: Any, protocol: InboundProtocol) -> list[User]:
    if not isinstance(settings, dict):
        return []
    users = []
    for client in _as_list(settings.get("clients")):
        if not isinstance(client, dict):
            continue
        user = User(email=client.get("email") or "", level=_as_int(client.get("level")))
        if protocol is InboundProtocol.TROJAN:
            user.password = client.get("password") or ""
        else:
            user.id = client.get("id") or ""
        users.append(user)
    return users


def parse_inbound(inbound: dict, protocol: InboundProtocol) -> InboundData:
    sniffing = inbound.get("sniffing")
    return InboundData(
        tag=inbound.get("tag") or "",
        protocol=protocol,
        listen=inbound.get("listen") or "0.0.0.0",
        port=_as_int(inbound.get("port")) or 443,
        sniffing=bool(sniffing.get("enabled")) if isinstance(sniffing, dict) else False,
        users=_parse_users(inbound.get("settings"), protocol),
        transport=parse_stream_settings(inbound.get("streamSettings")),
    )


def _outbound_address(settings: Any, protocol: OutboundProtocol) -> tuple[Optional[str], Optional[int]]:
    """vless/vmess 读 vnext[0]，其余读 servers[0]。"""
    if not isinstance(settings, dict):
        return None, None

    entries = []
    if protocol in (OutboundProtocol.VLESS, OutboundProtocol.VMESS):
        entries = _as_list(settings.get("vnext"))
    if not entries:
        entries = _as_list(settings.get("servers"))
    if not entries or not isinstance(entries[0], dict):
        return None, None

    first = entries[0]
    return first.get("address") or None, _as_int(first.get("port")) or None


def parse_outbound(outbound: dict, protocol: OutboundProtocol) -> OutboundData:
    data = OutboundData(
        tag=outbound.get("tag") or "",
        protocol=protocol,
    )
    if protocol not in TERMINAL_PROTOCOLS:
        data.server_address, data.server_port = _outbound_address(outbound.get("settings"), protocol)
        data.transport = parse_stream_settings(outbound.get("streamSettings"))
    return data


def parse_routing_rule(rule: dict, index: int) -> RoutingData:
    inbound_tags = _as_list(rule.get("inboundTag"))
    network = rule.get("network")
    port = rule.get("port")
    return RoutingData(
        tag=f"rule-{index + 1}",
        domain=_as_list(rule.get("domain")),
        ip=_as_list(rule.get("ip")),
        port=str(port) if port not in (None, "") else None,
        protocol=_as_list(rule.get("protocol")),
        network=network if network in ("tcp", "udp") else None,
        inbound_tag=inbound_tags[0] if inbound_tags else None,
    )


# ---------------------------------------------------------------------------
# 布局 & 模式检测
# ---------------------------------------------------------------------------

def auto_layout(nodes: list[Node]) -> None:
    """按类型分层，每层纵向等距排列。只是确定性的摆放，不做图布局优化。"""
    layers: dict[int, list[Node]] = {}
    for node in nodes:
        layers.setdefault(_LAYERS.get(node.type, 1), []).append(node)

    for layer, group in layers.items():
        x = START_X + layer * LAYER_SPACING
        total_height = len(group) * NODE_SPACING
        start_y = START_Y + max(0, (4 * NODE_SPACING - total_height) / 2)
        for i, node in enumerate(group):
            node.position = Position(x=x, y=start_y + i * NODE_SPACING)


def detect_mode(document: dict) -> ProjectMode:
    """多个不同端口的 inbound + 任一代理 outbound → infrastructure。"""
    outbounds = [o for o in _as_list(document.get("outbounds")) if isinstance(o, dict)]
    inbounds = [i for i in _as_list(document.get("inbounds")) if isinstance(i, dict)]

    terminal = {p.value for p in TERMINAL_PROTOCOLS}
    has_proxy = any(o.get("protocol") not in terminal for o in outbounds)
    ports = {str(i.get("port")) for i in inbounds}

    if has_proxy and len(inbounds) > 1 and len(ports) > 1:
        return ProjectMode.INFRASTRUCTURE
    return ProjectMode.CLIENT


# ---------------------------------------------------------------------------
# 入口
# ---------------------------------------------------------------------------

def import_xray_config(
    document: Union[str, Mapping],
    create_routing_nodes: bool = True,
    auto_layout_nodes: bool = True,
    force_mode: Optional[ProjectMode] = None,
) -> ImportResult:
    """把一份 xray 配置 (JSON/YAML 文本或已解码的 dict) 还原为节点与边。"""
    config = decode_document(document)
    if "inbounds" not in config and "outbounds" not in config:
        raise ConfigParseError("Invalid xray config: must have inbounds or outbounds.")

    nodes: list[Node] = []
    edges: list[Edge] = []
    warnings: list[str] = []
    tag_to_id: dict[str, str] = {}
    by_id: dict[str, Node] = {}

    def add_node(node_type: NodeType, data) -> str:
        node = Node(id=_new_id(), type=node_type, data=data)
        nodes.append(node)
        by_id[node.id] = node
        if getattr(data, "tag", None):
            tag_to_id[data.tag] = node.id
        return node.id

    def add_edge(source: str, target: str) -> None:
        edges.append(Edge(id=_new_id(), source=source, target=target))

    # ---- 1. inbounds ----
    for inbound in _as_list(config.get("inbounds")):
        if not isinstance(inbound, dict):
            continue
        try:
            protocol = InboundProtocol(inbound.get("protocol"))
        except ValueError:
            warnings.append(f'Unknown inbound protocol "{inbound.get("protocol")}" (skipped)')
            continue
        add_node(NodeType.INBOUND, parse_inbound(inbound, protocol))

    # ---- 2. outbounds ----
    for outbound in _as_list(config.get("outbounds")):
        if not isinstance(outbound, dict):
            continue
        try:
            protocol = OutboundProtocol(outbound.get("protocol") or "freedom")
        except ValueError:
            warnings.append(f'Unknown outbound protocol "{outbound.get("protocol")}" (skipped)')
            continue
        node_type = (
            NodeType.OUTBOUND_TERMINAL if protocol in TERMINAL_PROTOCOLS
            else NodeType.OUTBOUND_PROXY
        )
        add_node(node_type, parse_outbound(outbound, protocol))

    routing = config.get("routing") if isinstance(config.get("routing"), dict) else {}

    # ---- 3. balancers ----
    for balancer in _as_list(routing.get("balancers")):
        if not isinstance(balancer, dict):
            continue
        strategy_raw = balancer.get("strategy")
        try:
            strategy = BalancerStrategy(
                strategy_raw.get("type") if isinstance(strategy_raw, dict) else "random"
            )
        except ValueError:
            strategy = BalancerStrategy.RANDOM
        selector = [s for s in _as_list(balancer.get("selector")) if isinstance(s, str)]
        balancer_id = add_node(
            NodeType.BALANCER,
            BalancerData(tag=balancer.get("tag") or "", strategy=strategy, selector=selector),
        )

        # selector 可以是完整 tag 或前缀
        linked: set[str] = set()
        for pattern in selector:
            for tag, target_id in tag_to_id.items():
                if target_id in linked or not tag.startswith(pattern):
                    continue
                if by_id[target_id].type in OUTBOUND_TYPES:
                    add_edge(balancer_id, target_id)
                    linked.add(target_id)

    # ---- 4. rules ----
    rules = [r for r in _as_list(routing.get("rules")) if isinstance(r, dict)]
    for i, rule in enumerate(rules):
        inbound_tags = [t for t in _as_list(rule.get("inboundTag")) if isinstance(t, str)]
        outbound_tag = rule.get("outboundTag")
        balancer_tag = rule.get("balancerTag")

        if not create_routing_nodes:
            # 不建路由节点：规则直接折叠为 inbound → outbound 边
            target_id = tag_to_id.get(outbound_tag) if outbound_tag else None
            if target_id is None:
                continue
            for tag in inbound_tags:
                if tag in tag_to_id:
                    add_edge(tag_to_id[tag], target_id)
            continue

        route_id = _new_id()
        route = Node(id=route_id, type=NodeType.ROUTING, data=parse_routing_rule(rule, i))
        nodes.append(route)
        by_id[route_id] = route

        for tag in inbound_tags:
            if tag in tag_to_id:
                add_edge(tag_to_id[tag], route_id)

        if outbound_tag:
            if outbound_tag in tag_to_id:
                add_edge(route_id, tag_to_id[outbound_tag])
            else:
                warnings.append(f'Routing rule {i + 1}: outboundTag "{outbound_tag}" not found')
        if balancer_tag:
            if balancer_tag in tag_to_id:
                add_edge(route_id, tag_to_id[balancer_tag])
            else:
                warnings.append(f'Routing rule {i + 1}: balancerTag "{balancer_tag}" not found')

    # ---- 5. 布局 / 模式 ----
    if auto_layout_nodes:
        auto_layout(nodes)

    mode = force_mode or detect_mode(config)

    if any(r.get("type") and r.get("type") != "field" for r in rules):
        warnings.append("Advanced routing rule types may need manual adjustment")

    for warning in warnings:
        logger.warning("导入: %s", warning)

    summary = ImportSummary(
        inbound_count=sum(1 for n in nodes if n.type is NodeType.INBOUND),
        outbound_count=sum(1 for n in nodes if n.type in OUTBOUND_TYPES),
        routing_count=sum(1 for n in nodes if n.type is NodeType.ROUTING),
        balancer_count=sum(1 for n in nodes if n.type is NodeType.BALANCER),
        edge_count=len(edges),
        warnings=warnings,
        mode=mode,
    )
    logger.info(
        "导入完成: %d 个 INPUT, %d 个 OUTPUT, %d 条路由, %d 个均衡器, %d 条边 (%s)",
        summary.inbound_count, summary.outbound_count, summary.routing_count,
        summary.balancer_count, summary.edge_count, mode.value,
    )
    return ImportResult(nodes=nodes, edges=edges, mode=mode, summary=summary)
