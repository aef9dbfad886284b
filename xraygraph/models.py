"""拓扑图统一数据模型：节点、边、传输设置，以及一次性构建的邻接索引。

验证、导出、导入、模拟四个组件都只读这里的对象，从不修改。
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Optional, Union

logger = logging.getLogger(__name__)

# 未设置 priority 的边排在最后
DEFAULT_PRIORITY = 999


class NodeType(Enum):
    DEVICE = "device"
    INBOUND = "inbound"
    ROUTING = "routing"
    BALANCER = "balancer"
    OUTBOUND_TERMINAL = "outbound-terminal"
    OUTBOUND_PROXY = "outbound-proxy"
    # 单用户简化模式
    SIMPLE_SERVER = "simple-server"
    SIMPLE_RULES = "simple-rules"
    SIMPLE_INTERNET = "simple-internet"
    SIMPLE_BLOCK = "simple-block"


class InboundProtocol(Enum):
    HTTP = "http"
    SOCKS = "socks"
    VLESS = "vless"
    VMESS = "vmess"
    TROJAN = "trojan"
    SHADOWSOCKS = "shadowsocks"
    DOKODEMO_DOOR = "dokodemo-door"


class OutboundProtocol(Enum):
    FREEDOM = "freedom"
    BLACKHOLE = "blackhole"
    DNS = "dns"
    HTTP = "http"
    SOCKS = "socks"
    VLESS = "vless"
    VMESS = "vmess"
    TROJAN = "trojan"
    SHADOWSOCKS = "shadowsocks"


TERMINAL_PROTOCOLS = {OutboundProtocol.FREEDOM, OutboundProtocol.BLACKHOLE, OutboundProtocol.DNS}


class Network(Enum):
    RAW = "raw"
    WS = "ws"
    GRPC = "grpc"
    XHTTP = "xhttp"


class Security(Enum):
    NONE = "none"
    TLS = "tls"
    REALITY = "reality"


class BalancerStrategy(Enum):
    RANDOM = "random"
    LEAST_PING = "leastPing"
    ROUND_ROBIN = "roundRobin"


class DeviceConnectionType(Enum):
    TUN2SOCKS = "tun2socks"
    SOCKS = "socks"
    HTTP = "http"


class EdgeType(Enum):
    DEFAULT = "default"
    CONDITIONAL = "conditional"


class ProjectMode(Enum):
    CLIENT = "client"
    INFRASTRUCTURE = "infrastructure"
    HYBRID = "hybrid"


# ---------------------------------------------------------------------------
# 传输层
# ---------------------------------------------------------------------------

@dataclass
class WsSettings:
    path: Optional[str] = None
    headers: Optional[dict[str, str]] = None


@dataclass
class GrpcSettings:
    service_name: Optional[str] = None
    multi_mode: Optional[bool] = None


@dataclass
class XhttpSettings:
    path: Optional[str] = None
    host: Optional[str] = None


@dataclass
class TlsSettings:
    server_name: Optional[str] = None
    alpn: Optional[list[str]] = None
    fingerprint: Optional[str] = None


@dataclass
class RealitySettings:
    server_name: Optional[str] = None
    fingerprint: Optional[str] = None
    public_key: Optional[str] = None
    short_id: Optional[str] = None
    spider_x: Optional[str] = None


@dataclass
class TransportSettings:
    """一跳的传输设置。Reality 只能与 raw / xhttp 搭配。"""

    network: Network = Network.RAW
    security: Security = Security.NONE
    ws_settings: Optional[WsSettings] = None
    grpc_settings: Optional[GrpcSettings] = None
    xhttp_settings: Optional[XhttpSettings] = None
    tls_settings: Optional[TlsSettings] = None
    reality_settings: Optional[RealitySettings] = None


# ---------------------------------------------------------------------------
# 节点数据 (按 NodeType 区分的变体)
# ---------------------------------------------------------------------------

@dataclass
class User:
    email: str = ""
    id: Optional[str] = None
    password: Optional[str] = None
    level: Optional[int] = None


@dataclass
class DeviceData:
    name: str = "My Device"
    connection_type: DeviceConnectionType = DeviceConnectionType.SOCKS
    server_id: Optional[str] = None


@dataclass
class InboundData:
    tag: str = ""
    protocol: InboundProtocol = InboundProtocol.VLESS
    listen: str = "0.0.0.0"
    port: int = 443
    sniffing: bool = False
    users: list[User] = field(default_factory=list)
    # 旧版内联传输设置，边上的 transport 优先
    transport: Optional[TransportSettings] = None
    server_id: Optional[str] = None


@dataclass
class RoutingData:
    tag: str = ""
    domain: list[str] = field(default_factory=list)
    ip: list[str] = field(default_factory=list)
    port: Optional[str] = None
    protocol: list[str] = field(default_factory=list)
    network: Optional[str] = None
    inbound_tag: Optional[str] = None
    server_id: Optional[str] = None


@dataclass
class BalancerData:
    tag: str = ""
    strategy: BalancerStrategy = BalancerStrategy.RANDOM
    selector: list[str] = field(default_factory=list)
    server_id: Optional[str] = None


@dataclass
class OutboundData:
    """终端 (freedom/blackhole/dns) 与代理 outbound 共用。"""

    tag: str = ""
    protocol: OutboundProtocol = OutboundProtocol.FREEDOM
    server_address: Optional[str] = None
    server_port: Optional[int] = None
    transport: Optional[TransportSettings] = None
    server_id: Optional[str] = None


@dataclass
class SimpleServerData:
    name: str = "Server"
    host: str = ""
    port: int = 443
    protocol: str = "vless"
    uuid: Optional[str] = None
    password: Optional[str] = None
    network: Network = Network.RAW
    security: Security = Security.NONE
    ws_path: Optional[str] = None
    ws_host: Optional[str] = None
    grpc_service_name: Optional[str] = None
    xhttp_path: Optional[str] = None
    xhttp_host: Optional[str] = None
    sni: Optional[str] = None
    fingerprint: Optional[str] = None
    alpn: Optional[str] = None
    reality_public_key: Optional[str] = None
    reality_short_id: Optional[str] = None
    reality_spider_x: Optional[str] = None
    server_id: Optional[str] = None


@dataclass
class SimpleRule:
    type: str = "domain"  # domain / geosite / geoip / all
    value: str = ""


@dataclass
class SimpleRulesData:
    label: str = "Rules"
    rules: list[SimpleRule] = field(default_factory=list)
    server_id: Optional[str] = None


@dataclass
class SimpleInternetData:
    label: str = "Internet"
    server_id: Optional[str] = None


@dataclass
class SimpleBlockData:
    label: str = "Block"
    server_id: Optional[str] = None


NodeData = Union[
    DeviceData,
    InboundData,
    RoutingData,
    BalancerData,
    OutboundData,
    SimpleServerData,
    SimpleRulesData,
    SimpleInternetData,
    SimpleBlockData,
]

# 每种节点类型对应的数据类，用于构造与解码时的类型检查
DATA_CLASSES: dict[NodeType, type] = {
    NodeType.DEVICE: DeviceData,
    NodeType.INBOUND: InboundData,
    NodeType.ROUTING: RoutingData,
    NodeType.BALANCER: BalancerData,
    NodeType.OUTBOUND_TERMINAL: OutboundData,
    NodeType.OUTBOUND_PROXY: OutboundData,
    NodeType.SIMPLE_SERVER: SimpleServerData,
    NodeType.SIMPLE_RULES: SimpleRulesData,
    NodeType.SIMPLE_INTERNET: SimpleInternetData,
    NodeType.SIMPLE_BLOCK: SimpleBlockData,
}

TAGGED_TYPES = {
    NodeType.INBOUND,
    NodeType.ROUTING,
    NodeType.BALANCER,
    NodeType.OUTBOUND_TERMINAL,
    NodeType.OUTBOUND_PROXY,
}

OUTBOUND_TYPES = {NodeType.OUTBOUND_TERMINAL, NodeType.OUTBOUND_PROXY}


@dataclass
class Position:
    x: float = 0
    y: float = 0


@dataclass
class Node:
    id: str
    type: NodeType
    data: NodeData
    position: Position = field(default_factory=Position)

    @property
    def tag(self) -> Optional[str]:
        if self.type in TAGGED_TYPES:
            return self.data.tag
        return None

    @property
    def server_id(self) -> Optional[str]:
        return getattr(self.data, "server_id", None)

    @property
    def display_name(self) -> str:
        """tag → name → label → id，用于模拟路径展示。"""
        for attr in ("tag", "name", "label"):
            value = getattr(self.data, attr, None)
            if value:
                return value
        return self.id


# ---------------------------------------------------------------------------
# 边 / 服务器
# ---------------------------------------------------------------------------

@dataclass
class EdgeData:
    priority: Optional[int] = None
    label: Optional[str] = None
    transport: Optional[TransportSettings] = None


@dataclass
class Edge:
    id: str
    source: str
    target: str
    type: EdgeType = EdgeType.DEFAULT
    data: EdgeData = field(default_factory=EdgeData)

    @property
    def priority(self) -> int:
        if self.data.priority is None:
            return DEFAULT_PRIORITY
        return self.data.priority

    @property
    def transport(self) -> Optional[TransportSettings]:
        return self.data.transport


@dataclass
class Server:
    """外部服务器记录，仅用于导出时分组。"""

    id: str
    name: str = "Server"
    host: str = ""
    ssh_port: int = 22
    ssh_user: Optional[str] = None


# ---------------------------------------------------------------------------
# 邻接索引
# ---------------------------------------------------------------------------

class GraphIndex:
    """每次入口调用构建一次的邻接索引，避免每步都扫描全部边。"""

    def __init__(self, nodes: list[Node], edges: list[Edge]) -> None:
        self.nodes = list(nodes)
        self.edges = list(edges)
        self._by_id: dict[str, Node] = {n.id: n for n in self.nodes}
        self._out: dict[str, list[Edge]] = {}
        self._in: dict[str, list[Edge]] = {}
        for edge in self.edges:
            self._out.setdefault(edge.source, []).append(edge)
            self._in.setdefault(edge.target, []).append(edge)

    def node(self, node_id: str) -> Optional[Node]:
        return self._by_id.get(node_id)

    def outgoing(self, node_id: str) -> list[Edge]:
        """出边，保持输入顺序。"""
        return list(self._out.get(node_id, ()))

    def by_priority(self, node_id: str) -> list[Edge]:
        """出边按 priority 升序 (稳定排序)。"""
        return sorted(self._out.get(node_id, ()), key=lambda e: e.priority)

    def incoming(self, node_id: str) -> list[Edge]:
        return list(self._in.get(node_id, ()))

    def source(self, edge: Edge) -> Optional[Node]:
        return self._by_id.get(edge.source)

    def target(self, edge: Edge) -> Optional[Node]:
        return self._by_id.get(edge.target)

    def of_type(self, *types: NodeType) -> list[Node]:
        return [n for n in self.nodes if n.type in types]

    def server_of(self, node_id: str) -> Optional[str]:
        node = self._by_id.get(node_id)
        return node.server_id if node else None

    def is_cross_group(self, edge: Edge) -> bool:
        """两端 serverId 不同的边才是真实的网络跳。"""
        return self.server_of(edge.source) != self.server_of(edge.target)
