"""项目文件 (.xray-graph) 导入：dict → 模型对象。

项目文件里的节点/边基本照原样保存 (camelCase 字段)，这里只做
版本检查、字段默认值和枚举的安全解码，未知枚举值回落到默认值。
"""

from __future__ import annotations

import logging
import uuid
from collections.abc import Mapping
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Callable, Optional, Union

from xraygraph.models import (
    BalancerData,
    BalancerStrategy,
    DeviceConnectionType,
    DeviceData,
    Edge,
    EdgeData,
    EdgeType,
    InboundData,
    InboundProtocol,
    Node,
    NodeData,
    NodeType,
    OutboundData,
    OutboundProtocol,
    Position,
    ProjectMode,
    RoutingData,
    Server,
    SimpleBlockData,
    SimpleInternetData,
    SimpleRule,
    SimpleRulesData,
    SimpleServerData,
    User,
)
from xraygraph.parsers.xray import ConfigParseError, decode_document
from xraygraph.transport import parse_network, parse_security, parse_stream_settings

logger = logging.getLogger(__name__)


@dataclass
class ProjectMetadata:
    created_at: str
    updated_at: str


@dataclass
class Project:
    name: str
    mode: ProjectMode
    nodes: list[Node] = field(default_factory=list)
    edges: list[Edge] = field(default_factory=list)
    servers: list[Server] = field(default_factory=list)
    metadata: Optional[ProjectMetadata] = None


def _enum(cls: type[Enum], value: Any, default: Enum) -> Enum:
    try:
        return cls(value)
    except ValueError:
        return default


def _str(d: dict, key: str, default: Optional[str] = None) -> Optional[str]:
    value = d.get(key)
    return value if isinstance(value, str) and value else default


def _int(d: dict, key: str, default: Optional[int] = None) -> Optional[int]:
    value = d.get(key)
    if isinstance(value, int) and not isinstance(value, bool):
        return value
    return default


def _str_list(d: dict, key: str) -> list[str]:
    value = d.get(key)
    if not isinstance(value, list):
        return []
    return [v for v in value if isinstance(v, str)]


def _transport(d: dict):
    value = d.get("transport")
    return parse_stream_settings(value) if isinstance(value, dict) else None


# ---------------------------------------------------------------------------
# 各节点类型的 data 解码
# ---------------------------------------------------------------------------

def _device(d: dict) -> DeviceData:
    return DeviceData(
        name=_str(d, "name", "My Device"),
        connection_type=_enum(DeviceConnectionType, d.get("connectionType"), DeviceConnectionType.SOCKS),
        server_id=_str(d, "serverId"),
    )


def _inbound(d: dict) -> InboundData:
    users = []
    for u in d.get("users") or []:
        if isinstance(u, dict):
            users.append(User(
                email=_str(u, "email", ""),
                id=u.get("id") if isinstance(u.get("id"), str) else None,
                password=u.get("password") if isinstance(u.get("password"), str) else None,
                level=_int(u, "level"),
            ))
    return InboundData(
        tag=_str(d, "tag", ""),
        protocol=_enum(InboundProtocol, d.get("protocol"), InboundProtocol.VLESS),
        listen=_str(d, "listen", "0.0.0.0"),
        port=_int(d, "port", 443),
        sniffing=bool(d.get("sniffing", False)),
        users=users,
        transport=_transport(d),
        server_id=_str(d, "serverId"),
    )


def _routing(d: dict) -> RoutingData:
    return RoutingData(
        tag=_str(d, "tag", ""),
        domain=_str_list(d, "domain"),
        ip=_str_list(d, "ip"),
        port=str(d["port"]) if d.get("port") not in (None, "") else None,
        protocol=_str_list(d, "protocol"),
        network=_str(d, "network"),
        inbound_tag=_str(d, "inboundTag"),
        server_id=_str(d, "serverId"),
    )


def _balancer(d: dict) -> BalancerData:
    return BalancerData(
        tag=_str(d, "tag", ""),
        strategy=_enum(BalancerStrategy, d.get("strategy"), BalancerStrategy.RANDOM),
        selector=_str_list(d, "selector"),
        server_id=_str(d, "serverId"),
    )


def _outbound(d: dict) -> OutboundData:
    return OutboundData(
        tag=_str(d, "tag", ""),
        protocol=_enum(OutboundProtocol, d.get("protocol"), OutboundProtocol.FREEDOM),
        server_address=_str(d, "serverAddress"),
        server_port=_int(d, "serverPort"),
        transport=_transport(d),
        server_id=_str(d, "serverId"),
    )


def _simple_server(d: dict) -> SimpleServerData:
    return SimpleServerData(
        name=_str(d, "name", "Server"),
        host=_str(d, "host", ""),
        port=_int(d, "port", 443),
        protocol=_str(d, "protocol", "vless"),
        uuid=_str(d, "uuid"),
        password=_str(d, "password"),
        network=parse_network(d.get("network")),
        security=parse_security(d.get("security")),
        ws_path=_str(d, "wsPath"),
        ws_host=_str(d, "wsHost"),
        grpc_service_name=_str(d, "grpcServiceName"),
        xhttp_path=_str(d, "xhttpPath"),
        xhttp_host=_str(d, "xhttpHost"),
        sni=_str(d, "sni"),
        fingerprint=_str(d, "fingerprint"),
        alpn=_str(d, "alpn"),
        reality_public_key=_str(d, "realityPublicKey"),
        reality_short_id=_str(d, "realityShortId"),
        reality_spider_x=_str(d, "realitySpiderX"),
        server_id=_str(d, "serverId"),
    )


def _simple_rules(d: dict) -> SimpleRulesData:
    rules = [
        SimpleRule(type=_str(r, "type", "domain"), value=_str(r, "value", ""))
        for r in d.get("rules") or []
        if isinstance(r, dict)
    ]
    return SimpleRulesData(label=_str(d, "label", "Rules"), rules=rules, server_id=_str(d, "serverId"))


_DECODERS: dict[NodeType, Callable[[dict], NodeData]] = {
    NodeType.DEVICE: _device,
    NodeType.INBOUND: _inbound,
    NodeType.ROUTING: _routing,
    NodeType.BALANCER: _balancer,
    NodeType.OUTBOUND_TERMINAL: _outbound,
    NodeType.OUTBOUND_PROXY: _outbound,
    NodeType.SIMPLE_SERVER: _simple_server,
    NodeType.SIMPLE_RULES: _simple_rules,
    NodeType.SIMPLE_INTERNET: lambda d: SimpleInternetData(
        label=_str(d, "label", "Internet"), server_id=_str(d, "serverId")),
    NodeType.SIMPLE_BLOCK: lambda d: SimpleBlockData(
        label=_str(d, "label", "Block"), server_id=_str(d, "serverId")),
}


def node_from_dict(raw: dict) -> Optional[Node]:
    """未知节点类型返回 None，由调用方跳过。"""
    data = raw.get("data") if isinstance(raw.get("data"), dict) else {}
    try:
        node_type = NodeType(raw.get("type") or data.get("nodeType"))
    except ValueError:
        logger.warning("未知节点类型 %r，跳过", raw.get("type"))
        return None

    pos = raw.get("position") if isinstance(raw.get("position"), dict) else {}
    return Node(
        id=_str(raw, "id") or str(uuid.uuid4()),
        type=node_type,
        data=_DECODERS[node_type](data),
        position=Position(x=pos.get("x", 0) or 0, y=pos.get("y", 0) or 0),
    )


def edge_from_dict(raw: dict) -> Optional[Edge]:
    source, target = _str(raw, "source"), _str(raw, "target")
    if not source or not target:
        return None

    data = raw.get("data") if isinstance(raw.get("data"), dict) else {}
    return Edge(
        id=_str(raw, "id") or str(uuid.uuid4()),
        source=source,
        target=target,
        type=_enum(EdgeType, raw.get("type"), EdgeType.DEFAULT),
        data=EdgeData(
            priority=_int(data, "priority"),
            label=_str(data, "label"),
            transport=_transport(data),
        ),
    )


def server_from_dict(raw: dict) -> Server:
    return Server(
        id=_str(raw, "id") or str(uuid.uuid4()),
        name=_str(raw, "name", "Server"),
        host=_str(raw, "host", ""),
        ssh_port=_int(raw, "sshPort") or 22,
        ssh_user=_str(raw, "sshUser"),
    )


def is_project_document(document: dict) -> bool:
    return "version" in document and "nodes" in document


def import_project_file(content: Union[str, Mapping]) -> Project:
    project = decode_document(content, what="project file")
    if not project.get("version"):
        raise ConfigParseError("Invalid .xray-graph file: missing version field.")

    now = datetime.now(timezone.utc).isoformat()
    metadata = project.get("metadata") if isinstance(project.get("metadata"), dict) else {}

    nodes = [n for n in map(node_from_dict, _dicts(project.get("nodes"))) if n is not None]
    edges = [e for e in map(edge_from_dict, _dicts(project.get("edges"))) if e is not None]
    servers = [server_from_dict(s) for s in _dicts(project.get("servers"))]

    result = Project(
        name=_str(project, "name", "Imported Project"),
        mode=_enum(ProjectMode, project.get("mode"), ProjectMode.CLIENT),
        nodes=nodes,
        edges=edges,
        servers=servers,
        metadata=ProjectMetadata(
            created_at=_str(metadata, "createdAt", now),
            updated_at=_str(metadata, "updatedAt", now),
        ),
    )
    logger.info("项目 [%s] 载入: %d 个节点, %d 条边, %d 台服务器",
                result.name, len(nodes), len(edges), len(servers))
    return result


def _dicts(value: Any) -> list[dict]:
    if not isinstance(value, list):
        return []
    return [v for v in value if isinstance(v, dict)]
