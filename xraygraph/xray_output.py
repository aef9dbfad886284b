"""把拓扑图编译为 xray 配置文档 (通用模式)。

节点按 serverId 分组，每组输出一个文档；只有两端都在组内的边参与本组的
路由生成，跨组边只为两端节点提供传输设置。编译不会重新验证，缺失或非法
字段一律回落到默认值，保证编辑到一半的图也能导出。
"""

from __future__ import annotations

import json
import logging
import re
from dataclasses import dataclass
from typing import Any, Callable, Optional

import yaml

from xraygraph.models import (
    DEFAULT_PRIORITY,
    BalancerStrategy,
    Edge,
    GraphIndex,
    InboundData,
    InboundProtocol,
    Node,
    NodeType,
    OutboundData,
    OutboundProtocol,
    OUTBOUND_TYPES,
    Server,
    TransportSettings,
)
from xraygraph.transport import build_stream_settings

logger = logging.getLogger(__name__)

LOG_LEVEL = "warning"
DOMAIN_STRATEGY = "AsIs"
SNIFFING = {"enabled": True, "destOverride": ["http", "tls"]}


@dataclass
class ExportResult:
    filename: str
    config: dict


def export_config(
    nodes: list[Node],
    edges: list[Edge],
    servers: Optional[list[Server]] = None,
    mode: Optional[str] = None,
) -> list[ExportResult]:
    """编译整张图，返回一个或多个 {filename, config}。"""
    if mode == "simple":
        from xraygraph.simple_output import export_simple_config

        return export_simple_config(nodes, edges)

    full = GraphIndex(nodes, edges)
    # 设备节点只在编辑器里有意义，不进入配置
    config_nodes = [n for n in full.nodes if n.type is not NodeType.DEVICE]
    server_map = {s.id: s for s in servers or []}

    groups: dict[str, list[Node]] = {}
    unassigned: list[Node] = []
    for node in config_nodes:
        if node.server_id and node.server_id in server_map:
            groups.setdefault(node.server_id, []).append(node)
        else:
            unassigned.append(node)

    if not groups:
        results = [build_single_config(config_nodes, full.edges, full, "config.json")]
    else:
        results = []
        for server_id, group in groups.items():
            filename = f"{slugify(server_map[server_id].name)}_config.json"
            results.append(_build_group(group, full, filename))
        if unassigned:
            results.append(_build_group(unassigned, full, "unassigned_config.json"))

    logger.info("编译完成: %d 个配置文件", len(results))
    return results


def _build_group(group: list[Node], full: GraphIndex, filename: str) -> ExportResult:
    ids = {n.id for n in group}
    local_edges = [e for e in full.edges if e.source in ids and e.target in ids]
    return build_single_config(group, local_edges, full, filename)


def slugify(name: str) -> str:
    return re.sub(r"[^a-z0-9]+", "-", name.lower()).rstrip("-")


# ---------------------------------------------------------------------------
# 单个文档
# ---------------------------------------------------------------------------

def build_single_config(
    nodes: list[Node],
    edges: list[Edge],
    full: GraphIndex,
    filename: str,
) -> ExportResult:
    """nodes/edges 是本组内容；full 是整张图，用于查找跨组边的传输设置。"""
    inbounds: list[dict] = []
    outbounds: list[dict] = []

    for node in nodes:
        section = _SECTIONS[node.type]
        if section is None:
            continue
        builder, target = section
        entry = builder(node, full)
        (inbounds if target == "inbounds" else outbounds).append(entry)

    rules, balancers = build_routing_rules(GraphIndex(nodes, edges))

    routing: dict[str, Any] = {"domainStrategy": DOMAIN_STRATEGY, "rules": rules}
    if balancers:
        routing["balancers"] = balancers

    config = {
        "log": {"loglevel": LOG_LEVEL},
        "inbounds": inbounds,
        "outbounds": outbounds,
        "routing": routing,
    }
    return ExportResult(filename=filename, config=config)


def _incoming_transport(node_id: str, full: GraphIndex) -> Optional[TransportSettings]:
    for edge in full.incoming(node_id):
        if full.is_cross_group(edge) and edge.transport is not None:
            return edge.transport
    return None


def _outgoing_transport(node_id: str, full: GraphIndex) -> Optional[TransportSettings]:
    for edge in full.outgoing(node_id):
        if full.is_cross_group(edge) and edge.transport is not None:
            return edge.transport
    return None


def _build_inbound(node: Node, full: GraphIndex) -> dict:
    data: InboundData = node.data
    # 优先级：跨组边 > 节点内联 (旧版) > 默认 raw/none
    stream = build_stream_settings(_incoming_transport(node.id, full) or data.transport)

    inbound: dict[str, Any] = {
        "tag": data.tag,
        "protocol": data.protocol.value,
        "listen": data.listen or "0.0.0.0",
        "port": data.port,
        "settings": build_inbound_settings(data),
    }
    if data.sniffing:
        inbound["sniffing"] = dict(SNIFFING)
    if stream:
        inbound["streamSettings"] = stream
    return inbound


def _build_outbound(node: Node, full: GraphIndex) -> dict:
    data: OutboundData = node.data
    outbound: dict[str, Any] = {"tag": data.tag, "protocol": data.protocol.value}

    settings = build_outbound_settings(data)
    if settings is not None:
        outbound["settings"] = settings

    edge_transport = None
    if node.type is NodeType.OUTBOUND_PROXY:
        edge_transport = _outgoing_transport(node.id, full)
    stream = build_stream_settings(edge_transport or data.transport)
    if stream:
        outbound["streamSettings"] = stream
    return outbound


_SECTIONS: dict[NodeType, Optional[tuple[Callable[[Node, GraphIndex], dict], str]]] = {
    NodeType.DEVICE: None,
    NodeType.INBOUND: (_build_inbound, "inbounds"),
    NodeType.ROUTING: None,
    NodeType.BALANCER: None,
    NodeType.OUTBOUND_TERMINAL: (_build_outbound, "outbounds"),
    NodeType.OUTBOUND_PROXY: (_build_outbound, "outbounds"),
    NodeType.SIMPLE_SERVER: None,
    NodeType.SIMPLE_RULES: None,
    NodeType.SIMPLE_INTERNET: None,
    NodeType.SIMPLE_BLOCK: None,
}


# ---------------------------------------------------------------------------
# 各协议 settings
# ---------------------------------------------------------------------------

def _level(user) -> dict:
    return {"level": user.level} if user.level is not None else {}


def build_inbound_settings(data: InboundData) -> dict:
    p = data.protocol
    if p in (InboundProtocol.VLESS, InboundProtocol.VMESS):
        clients = [{"id": u.id or "", "email": u.email, **_level(u)} for u in data.users]
        settings: dict[str, Any] = {"clients": clients or [{"id": "", "email": "default"}]}
        if p is InboundProtocol.VLESS:
            settings["decryption"] = "none"
        return settings
    if p is InboundProtocol.TROJAN:
        clients = [
            {"password": u.password or "", "email": u.email, **_level(u)} for u in data.users
        ]
        return {"clients": clients or [{"password": "", "email": "default"}]}
    if p is InboundProtocol.SHADOWSOCKS:
        return {"method": "aes-256-gcm", "password": ""}
    if p is InboundProtocol.SOCKS:
        return {"auth": "noauth"}
    if p is InboundProtocol.DOKODEMO_DOOR:
        return {"followRedirect": True}
    return {}


def build_outbound_settings(data: OutboundData) -> Optional[dict]:
    p = data.protocol
    address = data.server_address or ""
    port = data.server_port or 443

    if p is OutboundProtocol.FREEDOM:
        return {"domainStrategy": "UseIP"}
    if p is OutboundProtocol.BLACKHOLE:
        return {"response": {"type": "none"}}
    if p is OutboundProtocol.DNS:
        return {}
    if p is OutboundProtocol.VLESS:
        return {"vnext": [{"address": address, "port": port,
                           "users": [{"id": "", "encryption": "none"}]}]}
    if p is OutboundProtocol.VMESS:
        return {"vnext": [{"address": address, "port": port,
                           "users": [{"id": "", "security": "auto"}]}]}
    if p is OutboundProtocol.TROJAN:
        return {"servers": [{"address": address, "port": port, "password": ""}]}
    if p is OutboundProtocol.SHADOWSOCKS:
        return {"servers": [{"address": address, "port": port,
                             "method": "aes-256-gcm", "password": ""}]}
    if p in (OutboundProtocol.HTTP, OutboundProtocol.SOCKS):
        return {"servers": [{"address": address, "port": data.server_port or 1080}]}
    return None


# ---------------------------------------------------------------------------
# 路由规则 & 负载均衡
# ---------------------------------------------------------------------------

def make_rule(
    outbound_tag: Optional[str] = None,
    balancer_tag: Optional[str] = None,
    *,
    domain: Optional[list[str]] = None,
    ip: Optional[list[str]] = None,
    port: Optional[str] = None,
    protocol: Optional[list[str]] = None,
    network: Optional[str] = None,
    inbound_tag: Optional[str] = None,
) -> dict:
    """按固定键顺序生成一条 field 规则，空条件省略。简化模式也用它。"""
    rule: dict[str, Any] = {"type": "field"}
    if domain:
        rule["domain"] = list(domain)
    if ip:
        rule["ip"] = list(ip)
    if port:
        rule["port"] = port
    if protocol:
        rule["protocol"] = list(protocol)
    if network:
        rule["network"] = network
    if inbound_tag:
        rule["inboundTag"] = [inbound_tag]
    if balancer_tag is not None:
        rule["balancerTag"] = balancer_tag
    elif outbound_tag is not None:
        rule["outboundTag"] = outbound_tag
    return rule


def _routing_order(index: GraphIndex) -> list[Node]:
    """路由节点按 INPUT → 路由 边的 priority 排序，与模拟器的匹配顺序一致。"""
    routing_nodes = index.of_type(NodeType.ROUTING)

    def key(item: tuple[int, Node]) -> tuple[int, int]:
        pos, node = item
        priorities = [e.priority for e in index.incoming(node.id)]
        return (min(priorities) if priorities else DEFAULT_PRIORITY, pos)

    return [n for _, n in sorted(enumerate(routing_nodes), key=key)]


def build_routing_rules(index: GraphIndex) -> tuple[list[dict], list[dict]]:
    rules: list[dict] = []
    balancers: list[dict] = []

    for node in index.of_type(NodeType.BALANCER):
        data = node.data
        # 手写前缀 + 直接连线的 OUTPUT tag
        selector = list(data.selector)
        for edge in index.outgoing(node.id):
            target = index.target(edge)
            if target is not None and target.type in OUTBOUND_TYPES:
                if target.tag not in selector:
                    selector.append(target.tag)
        balancer: dict[str, Any] = {"tag": data.tag, "selector": selector}
        if data.strategy is not BalancerStrategy.RANDOM:
            balancer["strategy"] = {"type": data.strategy.value}
        balancers.append(balancer)

    for node in _routing_order(index):
        data = node.data
        for edge in index.by_priority(node.id):
            target = index.target(edge)
            if target is None:
                continue
            if target.type is NodeType.BALANCER:
                target_args = {"balancer_tag": target.tag}
            elif target.type in OUTBOUND_TYPES:
                target_args = {"outbound_tag": target.tag}
            else:
                # 路由 → 路由：下游节点自己会生成规则，跳过以免重复
                continue
            rules.append(make_rule(
                domain=data.domain,
                ip=data.ip,
                port=data.port,
                protocol=data.protocol,
                network=data.network,
                inbound_tag=data.inbound_tag,
                **target_args,
            ))

    # INPUT 直连 OUTPUT (中间没有路由节点)
    for node in index.of_type(NodeType.INBOUND):
        for edge in index.by_priority(node.id):
            target = index.target(edge)
            if target is not None and target.type in OUTBOUND_TYPES:
                rules.append(make_rule(target.tag, inbound_tag=node.data.tag))

    return rules, balancers


# ---------------------------------------------------------------------------
# 序列化
# ---------------------------------------------------------------------------

def config_to_json(config: dict) -> str:
    return json.dumps(config, indent=2, ensure_ascii=False)


def config_to_yaml(config: dict) -> str:
    return yaml.dump(config, allow_unicode=True, default_flow_style=False, sort_keys=False)
