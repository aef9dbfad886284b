"""图验证引擎：静态检查拓扑图的结构与语义，返回分级问题列表。

检查顺序 (只影响消息分组，不影响结论)：
  1. 单节点字段检查
  2. 跨分组边的传输设置检查
  3. 全图结构检查 (重复 tag、端口冲突、可达性、环 …)
  4. 交叉引用检查 (inboundTag、balancer selector)

编辑器每次改动都会调用，因此内部异常只记录日志，返回空的 "valid" 结果。
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from enum import Enum
from typing import Callable, Optional, Union

from xraygraph.connection_rules import is_valid_connection
from xraygraph.matching import PORT_RANGE_RE, has_predicates
from xraygraph.models import (
    BalancerData,
    DeviceConnectionType,
    DeviceData,
    Edge,
    GraphIndex,
    InboundData,
    InboundProtocol,
    Network,
    Node,
    NodeType,
    OutboundData,
    OutboundProtocol,
    OUTBOUND_TYPES,
    RoutingData,
    Security,
    SimpleRulesData,
    SimpleServerData,
    TransportSettings,
)

logger = logging.getLogger(__name__)

UUID_RE = re.compile(
    r"^[0-9a-f]{8}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{12}$", re.IGNORECASE
)
IP_RE = re.compile(r"^(?:\d{1,3}\.){3}\d{1,3}$")


class IssueLevel(Enum):
    ERROR = "error"
    WARNING = "warning"
    INFO = "info"


@dataclass
class ValidationIssue:
    level: IssueLevel
    message: str
    node_id: Optional[str] = None


@dataclass
class ValidationResult:
    valid: bool
    errors: list[ValidationIssue] = field(default_factory=list)
    warnings: list[ValidationIssue] = field(default_factory=list)
    infos: list[ValidationIssue] = field(default_factory=list)


class _Issues(list):
    """按级别追加问题的小工具。"""

    def error(self, node_id: Optional[str], message: str) -> None:
        self.append(ValidationIssue(IssueLevel.ERROR, message, node_id))

    def warning(self, node_id: Optional[str], message: str) -> None:
        self.append(ValidationIssue(IssueLevel.WARNING, message, node_id))

    def info(self, node_id: Optional[str], message: str) -> None:
        self.append(ValidationIssue(IssueLevel.INFO, message, node_id))


def is_valid_port(port: object) -> bool:
    return isinstance(port, int) and not isinstance(port, bool) and 1 <= port <= 65535


def is_valid_ip(ip: str) -> bool:
    if ip in ("0.0.0.0", "127.0.0.1"):
        return True
    if not IP_RE.match(ip):
        return False
    return all(0 <= int(octet) <= 255 for octet in ip.split("."))


def _blank(value: Optional[str]) -> bool:
    return not value or not value.strip()


# ---------------------------------------------------------------------------
# 1. 单节点检查
# ---------------------------------------------------------------------------

_NEEDS_USERS = {InboundProtocol.VLESS, InboundProtocol.VMESS, InboundProtocol.TROJAN}
_UUID_USERS = {InboundProtocol.VLESS, InboundProtocol.VMESS}


def _validate_inbound(node: Node, data: InboundData, issues: _Issues) -> None:
    if _blank(data.tag):
        issues.error(node.id, "INPUT node requires a tag")

    if not is_valid_port(data.port):
        issues.error(node.id, f"Invalid port: {data.port}. Must be 1-65535")

    if data.listen and data.listen != "0.0.0.0" and not is_valid_ip(data.listen):
        issues.warning(node.id, f'Listen address "{data.listen}" may not be a valid IP')

    if data.protocol in _NEEDS_USERS:
        if not data.users:
            issues.warning(node.id, f"{data.protocol.value} INPUT has no users configured")
        for i, user in enumerate(data.users, start=1):
            if data.protocol in _UUID_USERS and user.id and not UUID_RE.match(user.id):
                issues.error(node.id, f'User {i} has invalid UUID: "{user.id}"')
            if data.protocol is InboundProtocol.TROJAN and _blank(user.password):
                issues.error(node.id, f"User {i} requires a password for Trojan")


def _validate_routing(node: Node, data: RoutingData, issues: _Issues) -> None:
    if _blank(data.tag):
        issues.error(node.id, "Routing node requires a tag")

    if not has_predicates(data):
        issues.warning(node.id, "Routing node has no rules defined")

    if data.port and not PORT_RANGE_RE.match(data.port):
        issues.error(
            node.id, f'Invalid port format: "{data.port}". Use "80,443" or "1000-2000"'
        )


def _validate_balancer(node: Node, data: BalancerData, issues: _Issues) -> None:
    if _blank(data.tag):
        issues.error(node.id, "Balancer node requires a tag")

    if not data.selector:
        issues.warning(node.id, "Balancer has no selectors — connections will define targets")


def _validate_outbound(node: Node, data: OutboundData, issues: _Issues) -> None:
    if _blank(data.tag):
        issues.error(node.id, "OUTPUT node requires a tag")

    if node.type is NodeType.OUTBOUND_PROXY:
        if _blank(data.server_address):
            issues.error(node.id, "Proxy OUTPUT requires a server address")
        if not is_valid_port(data.server_port):
            issues.error(node.id, "Proxy OUTPUT requires a valid server port (1-65535)")


def _validate_simple_server(node: Node, data: SimpleServerData, issues: _Issues) -> None:
    if _blank(data.host):
        issues.error(node.id, "Server requires a host address")

    if not is_valid_port(data.port):
        issues.error(node.id, f"Invalid port: {data.port}. Must be 1-65535")

    if data.protocol in ("vless", "vmess"):
        if _blank(data.uuid):
            issues.warning(node.id, f"{data.protocol} server should have a UUID configured")
        elif not UUID_RE.match(data.uuid):
            issues.error(node.id, f'Invalid UUID: "{data.uuid}"')

    if data.protocol in ("trojan", "shadowsocks") and _blank(data.password):
        issues.warning(node.id, f"{data.protocol} server should have a password configured")

    if data.security is Security.REALITY:
        if data.network not in (Network.RAW, Network.XHTTP):
            issues.error(
                node.id,
                "Reality security only works with RAW or XHTTP transport "
                f"(currently: {data.network.value})",
            )
        if not data.reality_public_key:
            issues.error(node.id, "Reality security requires a public key")

    if data.security is Security.TLS and not data.sni:
        issues.warning(node.id, "TLS security should have an SNI configured")

    if data.network is Network.WS and not data.ws_path:
        issues.warning(node.id, "WebSocket transport should have a path configured")

    if data.network is Network.GRPC and not data.grpc_service_name:
        issues.warning(node.id, "gRPC transport should have a service name configured")


def _validate_simple_rules(node: Node, data: SimpleRulesData, issues: _Issues) -> None:
    if not data.rules:
        issues.warning(node.id, "Rules node has no rules defined — will match nothing")
        return
    for i, rule in enumerate(data.rules, start=1):
        if rule.type != "all" and _blank(rule.value):
            issues.error(node.id, f"Rule {i} ({rule.type}) has no value")


_NODE_VALIDATORS: dict[NodeType, Optional[Callable]] = {
    NodeType.DEVICE: None,
    NodeType.INBOUND: _validate_inbound,
    NodeType.ROUTING: _validate_routing,
    NodeType.BALANCER: _validate_balancer,
    NodeType.OUTBOUND_TERMINAL: _validate_outbound,
    NodeType.OUTBOUND_PROXY: _validate_outbound,
    NodeType.SIMPLE_SERVER: _validate_simple_server,
    NodeType.SIMPLE_RULES: _validate_simple_rules,
    NodeType.SIMPLE_INTERNET: None,
    NodeType.SIMPLE_BLOCK: None,
}


# ---------------------------------------------------------------------------
# 2. 跨分组边的传输设置
# ---------------------------------------------------------------------------

def validate_transport(node_id: str, transport: TransportSettings, issues: _Issues) -> None:
    if transport.security is Security.REALITY and transport.network not in (
        Network.RAW,
        Network.XHTTP,
    ):
        issues.error(
            node_id,
            "Reality security only works with RAW or XHTTP transport "
            f"(currently: {transport.network.value})",
        )

    if transport.network is Network.WS:
        if not (transport.ws_settings and transport.ws_settings.path):
            issues.warning(node_id, "WebSocket transport should have a path configured")

    if transport.network is Network.GRPC:
        if not (transport.grpc_settings and transport.grpc_settings.service_name):
            issues.warning(node_id, "gRPC transport should have a serviceName configured")

    if transport.security is Security.TLS:
        if not (transport.tls_settings and transport.tls_settings.server_name):
            issues.warning(node_id, "TLS security should have a serverName configured")

    if transport.security is Security.REALITY:
        reality = transport.reality_settings
        if not (reality and reality.public_key):
            issues.error(node_id, "Reality security requires a publicKey")
        if not (reality and reality.short_id):
            issues.warning(node_id, "Reality security should have a shortId configured")
        if not (reality and reality.server_name):
            issues.warning(node_id, "Reality security should have a serverName configured")


def _validate_edges(index: GraphIndex, issues: _Issues) -> None:
    for edge in index.edges:
        # 同一服务器内部的边强制 raw/none，无需检查
        if not index.is_cross_group(edge):
            continue
        if edge.transport is not None:
            # 问题挂在源节点上，便于显示徽标
            validate_transport(edge.source, edge.transport, issues)


# ---------------------------------------------------------------------------
# 3. 结构检查
# ---------------------------------------------------------------------------

def _check_connections(index: GraphIndex, issues: _Issues) -> None:
    """对已有的边重新套用连线规则 (外部导入的图可能不合法)。"""
    for edge in index.edges:
        source, target = index.source(edge), index.target(edge)
        if source is None or target is None:
            issues.warning(
                edge.source if source else None,
                f'Connection "{edge.id}" references a missing node',
            )
            continue
        check = is_valid_connection(source.type, target.type)
        if not check.valid:
            issues.error(source.id, check.reason or "Invalid connection")


def _check_duplicate_tags(index: GraphIndex, issues: _Issues) -> None:
    tags: dict[str, list[str]] = {}
    for node in index.nodes:
        tag = node.tag
        if tag and tag.strip():
            tags.setdefault(tag, []).append(node.id)

    for tag, node_ids in tags.items():
        if len(node_ids) > 1:
            for node_id in node_ids:
                issues.error(node_id, f'Duplicate tag: "{tag}"')


def _check_port_conflicts(index: GraphIndex, issues: _Issues) -> None:
    # 同一服务器上的 INPUT 才会争用端口
    ports: dict[tuple[Optional[str], object], list[str]] = {}
    for node in index.of_type(NodeType.INBOUND):
        ports.setdefault((node.server_id, node.data.port), []).append(node.id)

    for (_, port), node_ids in ports.items():
        if len(node_ids) > 1:
            for node_id in node_ids:
                issues.error(
                    node_id, f"Port conflict: port {port} used by multiple INPUT nodes"
                )


def _check_inbounds(index: GraphIndex, issues: _Issues) -> None:
    for node in index.of_type(NodeType.INBOUND):
        if not index.outgoing(node.id):
            issues.warning(node.id, "INPUT node has no outgoing connections")

    for node in index.of_type(NodeType.INBOUND):
        upstream_types = {
            src.type for src in map(index.source, index.incoming(node.id)) if src is not None
        }
        if NodeType.OUTBOUND_PROXY not in upstream_types:
            issues.info(
                node.id,
                "No upstream OUTPUT connects to this INPUT. "
                "It's OK if you're just planning the infrastructure side.",
            )


def _check_device_compat(index: GraphIndex, issues: _Issues) -> None:
    """设备与代理 OUTPUT 的协议族必须一致，不一致时两端都报错。"""
    for device in index.of_type(NodeType.DEVICE):
        data: DeviceData = device.data
        conn = data.connection_type
        required = (
            OutboundProtocol.HTTP if conn is DeviceConnectionType.HTTP else OutboundProtocol.SOCKS
        )
        for edge in index.outgoing(device.id):
            target = index.target(edge)
            if target is None or target.type is not NodeType.OUTBOUND_PROXY:
                continue
            out: OutboundData = target.data
            if out.protocol is required:
                continue
            issues.error(
                device.id,
                f'Device with "{conn.value}" connection must connect to a '
                f'"{required.value}" OUTPUT, but "{out.tag}" uses "{out.protocol.value}"',
            )
            issues.error(
                target.id,
                f'OUTPUT protocol "{out.protocol.value}" is incompatible with connected '
                f'device using "{conn.value}". Expected "{required.value}"',
            )


def _check_orphans(index: GraphIndex, issues: _Issues) -> None:
    messages = {
        NodeType.OUTBOUND_TERMINAL: "Terminal OUTPUT has no incoming connections",
        NodeType.OUTBOUND_PROXY: "Proxy OUTPUT has no incoming connections",
        NodeType.SIMPLE_SERVER: "Server has no incoming connections",
        NodeType.SIMPLE_INTERNET: "Terminal node has no incoming connections",
        NodeType.SIMPLE_BLOCK: "Terminal node has no incoming connections",
    }
    for node in index.nodes:
        message = messages.get(node.type)
        if message and not index.incoming(node.id):
            issues.warning(node.id, message)

    for node in index.of_type(NodeType.OUTBOUND_PROXY):
        if not index.outgoing(node.id):
            issues.warning(
                node.id,
                "Proxy OUTPUT is a dead-end — no connection to a downstream INPUT node. "
                "In infrastructure mode, connect it to an INPUT on the exit server.",
            )


def _can_reach_terminal(index: GraphIndex, start: str, terminal_ids: set[str]) -> bool:
    """沿有向边 (包括代理链跳转) 搜索终端 OUTPUT。"""
    visited: set[str] = set()
    stack = [start]
    while stack:
        node_id = stack.pop()
        if node_id in terminal_ids:
            return True
        if node_id in visited:
            continue
        visited.add(node_id)
        stack.extend(e.target for e in index.outgoing(node_id))
    return False


def _check_reachability(index: GraphIndex, issues: _Issues) -> None:
    terminal_ids = {n.id for n in index.of_type(NodeType.OUTBOUND_TERMINAL)}
    for node in index.of_type(NodeType.INBOUND):
        if not _can_reach_terminal(index, node.id, terminal_ids):
            issues.warning(
                node.id,
                "INPUT node cannot reach any terminal OUTPUT (Freedom/Blackhole/DNS). "
                "Traffic has no final destination.",
            )


def _detect_cycles(index: GraphIndex, issues: _Issues) -> None:
    """DFS + 栈内集合找环；代理链 (outbound-proxy → inbound) 不算环。"""
    adjacency: dict[str, list[str]] = {n.id: [] for n in index.nodes}
    for edge in index.edges:
        source, target = index.source(edge), index.target(edge)
        if source is None:
            continue
        if (
            source.type is NodeType.OUTBOUND_PROXY
            and target is not None
            and target.type is NodeType.INBOUND
        ):
            continue
        adjacency[source.id].append(edge.target)

    visited: set[str] = set()

    def dfs(root: str) -> Optional[str]:
        """返回被重新进入的节点 id，没有环则返回 None。"""
        visited.add(root)
        in_stack = {root}
        stack = [(root, iter(adjacency.get(root, ())))]
        while stack:
            node_id, neighbors = stack[-1]
            for neighbor in neighbors:
                if neighbor in in_stack:
                    return neighbor
                if neighbor not in visited:
                    visited.add(neighbor)
                    in_stack.add(neighbor)
                    stack.append((neighbor, iter(adjacency.get(neighbor, ()))))
                    break
            else:
                stack.pop()
                in_stack.discard(node_id)
        return None

    reported: set[str] = set()
    for node in index.nodes:
        if node.id in visited:
            continue
        hit = dfs(node.id)
        if hit is not None and hit not in reported:
            reported.add(hit)
            issues.error(hit, "Cycle detected in graph — traffic would loop indefinitely")


def _validate_structure(index: GraphIndex, issues: _Issues) -> None:
    _check_connections(index, issues)
    _check_duplicate_tags(index, issues)
    _check_port_conflicts(index, issues)
    _check_inbounds(index, issues)
    _check_device_compat(index, issues)
    _check_orphans(index, issues)
    _check_reachability(index, issues)
    _detect_cycles(index, issues)


# ---------------------------------------------------------------------------
# 4. 交叉引用
# ---------------------------------------------------------------------------

def _validate_references(index: GraphIndex, issues: _Issues) -> None:
    inbound_tags = {n.tag for n in index.of_type(NodeType.INBOUND) if n.tag}
    outbound_tags = [n.tag for n in index.of_type(*OUTBOUND_TYPES) if n.tag]

    for node in index.of_type(NodeType.ROUTING):
        ref = node.data.inbound_tag
        if ref and ref not in inbound_tags:
            issues.warning(
                node.id,
                f"Routing references inboundTag \"{ref}\" which doesn't match any INPUT tag",
            )

    for node in index.of_type(NodeType.BALANCER):
        for sel in node.data.selector:
            # selector 是前缀模式
            if not any(tag.startswith(sel) for tag in outbound_tags):
                issues.warning(
                    node.id, f"Balancer selector \"{sel}\" doesn't match any OUTPUT tag"
                )


# ---------------------------------------------------------------------------
# 入口
# ---------------------------------------------------------------------------

def validate_graph(nodes: list[Node], edges: list[Edge]) -> ValidationResult:
    """验证整张图。从不抛异常。"""
    try:
        return _validate(nodes, edges)
    except Exception:
        logger.exception("图验证内部错误，返回空结果")
        return ValidationResult(valid=True)


def _validate(nodes: list[Node], edges: list[Edge]) -> ValidationResult:
    index = GraphIndex(nodes, edges)
    issues = _Issues()

    for node in index.nodes:
        validator = _NODE_VALIDATORS[node.type]
        if validator is not None:
            validator(node, node.data, issues)

    _validate_edges(index, issues)
    _validate_structure(index, issues)
    _validate_references(index, issues)

    result = ValidationResult(
        valid=not any(i.level is IssueLevel.ERROR for i in issues),
        errors=[i for i in issues if i.level is IssueLevel.ERROR],
        warnings=[i for i in issues if i.level is IssueLevel.WARNING],
        infos=[i for i in issues if i.level is IssueLevel.INFO],
    )
    logger.debug(
        "验证完成: %d 错误, %d 警告, %d 提示",
        len(result.errors), len(result.warnings), len(result.infos),
    )
    return result


def get_node_validation_status(
    node_id: str, result: ValidationResult
) -> tuple[Union[IssueLevel, str], int]:
    """单个节点的徽标状态：(级别或 "valid", 问题数)。"""
    errors = [i for i in result.errors if i.node_id == node_id]
    if errors:
        return IssueLevel.ERROR, len(errors)
    warnings = [i for i in result.warnings if i.node_id == node_id]
    if warnings:
        return IssueLevel.WARNING, len(warnings)
    return "valid", 0
