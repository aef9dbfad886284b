"""单用户简化模式：server / internet / block / rules 四种节点生成客户端配置。

客户端配置固定一个本地 socks 入口；服务器串联 (server → server) 时，
为链上的下一台服务器额外生成一份服务端配置。
传输设置与规则生成复用通用模式的同一套工具函数。
"""

from __future__ import annotations

import logging
from typing import Any, Optional

from xraygraph.models import (
    Edge,
    GraphIndex,
    Network,
    Node,
    NodeType,
    Security,
    SimpleServerData,
    GrpcSettings,
    RealitySettings,
    TlsSettings,
    TransportSettings,
    WsSettings,
    XhttpSettings,
)
from xraygraph.transport import build_stream_settings
from xraygraph.xray_output import (
    DOMAIN_STRATEGY,
    LOG_LEVEL,
    SNIFFING,
    ExportResult,
    make_rule,
    slugify,
)

logger = logging.getLogger(__name__)

DIRECT_TAG = "direct"
BLOCK_TAG = "block"

_FREEDOM = {"tag": DIRECT_TAG, "protocol": "freedom", "settings": {"domainStrategy": "UseIP"}}
_BLACKHOLE = {"tag": BLOCK_TAG, "protocol": "blackhole", "settings": {"response": {"type": "none"}}}


def build_simple_transport(data: SimpleServerData) -> TransportSettings:
    transport = TransportSettings(network=data.network, security=data.security)

    if data.network is Network.WS:
        transport.ws_settings = WsSettings(
            path=data.ws_path,
            headers={"Host": data.ws_host} if data.ws_host else None,
        )
    elif data.network is Network.GRPC:
        transport.grpc_settings = GrpcSettings(service_name=data.grpc_service_name)
    elif data.network is Network.XHTTP:
        transport.xhttp_settings = XhttpSettings(path=data.xhttp_path, host=data.xhttp_host)

    if data.security is Security.TLS:
        alpn = [s.strip() for s in (data.alpn or "").split(",") if s.strip()]
        transport.tls_settings = TlsSettings(
            server_name=data.sni,
            fingerprint=data.fingerprint,
            alpn=alpn or None,
        )
    elif data.security is Security.REALITY:
        transport.reality_settings = RealitySettings(
            server_name=data.sni,
            fingerprint=data.fingerprint,
            public_key=data.reality_public_key,
            short_id=data.reality_short_id,
            spider_x=data.reality_spider_x,
        )

    return transport


def _simple_outbound_settings(data: SimpleServerData) -> Optional[dict]:
    if data.protocol == "vless":
        user = {"id": data.uuid or "", "encryption": "none"}
        return {"vnext": [{"address": data.host, "port": data.port, "users": [user]}]}
    if data.protocol == "vmess":
        user = {"id": data.uuid or "", "security": "auto"}
        return {"vnext": [{"address": data.host, "port": data.port, "users": [user]}]}
    if data.protocol == "trojan":
        return {"servers": [{"address": data.host, "port": data.port,
                             "password": data.password or ""}]}
    if data.protocol == "shadowsocks":
        return {"servers": [{"address": data.host, "port": data.port,
                             "method": "aes-256-gcm", "password": data.password or ""}]}
    return None


def build_simple_outbound(data: SimpleServerData, tag: str) -> dict:
    outbound: dict[str, Any] = {"tag": tag, "protocol": data.protocol}
    settings = _simple_outbound_settings(data)
    if settings is not None:
        outbound["settings"] = settings
    stream = build_stream_settings(build_simple_transport(data))
    if stream:
        outbound["streamSettings"] = stream
    return outbound


def _simple_inbound_settings(data: SimpleServerData) -> dict:
    """链上下一台服务器的入口 settings。"""
    if data.protocol == "vless":
        return {"clients": [{"id": data.uuid or "", "email": "default"}], "decryption": "none"}
    if data.protocol == "vmess":
        return {"clients": [{"id": data.uuid or "", "email": "default"}]}
    if data.protocol == "trojan":
        return {"clients": [{"password": data.password or "", "email": "default"}]}
    if data.protocol == "shadowsocks":
        return {"method": "aes-256-gcm", "password": data.password or ""}
    return {}


def _proxy_tag(node: Node) -> str:
    return f"proxy-{node.id}"


def _resolve_tag(node: Node) -> Optional[str]:
    resolvers = {
        NodeType.SIMPLE_SERVER: _proxy_tag,
        NodeType.SIMPLE_INTERNET: lambda n: DIRECT_TAG,
        NodeType.SIMPLE_BLOCK: lambda n: BLOCK_TAG,
    }
    resolver = resolvers.get(node.type)
    return resolver(node) if resolver else None


def _chain_targets(index: GraphIndex, node: Node) -> list[Node]:
    targets = [index.target(edge) for edge in index.outgoing(node.id)]
    return [t for t in targets if t is not None and t.type is NodeType.SIMPLE_SERVER]


def _rules_for(condition_type: str, value: str, outbound_tag: str) -> dict:
    if condition_type == "domain":
        return make_rule(outbound_tag, domain=[f"domain:{value}"])
    if condition_type == "geosite":
        return make_rule(outbound_tag, domain=[f"geosite:{value}"])
    if condition_type == "geoip":
        return make_rule(outbound_tag, ip=[f"geoip:{value}"])
    # all：不带条件，全匹配
    return make_rule(outbound_tag)


def export_simple_config(nodes: list[Node], edges: list[Edge]) -> list[ExportResult]:
    index = GraphIndex(nodes, edges)
    outbounds: list[dict] = []
    rules: list[dict] = []

    servers = index.of_type(NodeType.SIMPLE_SERVER)
    # 每个被链接的下游服务器各生成一份服务端配置，proxySettings 只取第一个
    chained: dict[str, Node] = {}
    for node in servers:
        outbound = build_simple_outbound(node.data, _proxy_tag(node))
        targets = _chain_targets(index, node)
        if targets:
            outbound["proxySettings"] = {"tag": _proxy_tag(targets[0])}
        for target in targets:
            chained.setdefault(target.id, target)
        outbounds.append(outbound)

    has_direct = bool(index.of_type(NodeType.SIMPLE_INTERNET))
    has_block = bool(index.of_type(NodeType.SIMPLE_BLOCK))

    for node in index.of_type(NodeType.SIMPLE_RULES):
        outbound_tag = None
        for edge in index.outgoing(node.id):
            target = index.target(edge)
            if target is not None:
                outbound_tag = _resolve_tag(target)
                if outbound_tag:
                    break
        if not outbound_tag:
            logger.warning("规则节点 %s 没有连接到任何出口，跳过", node.id)
            continue

        has_direct = has_direct or outbound_tag == DIRECT_TAG
        has_block = has_block or outbound_tag == BLOCK_TAG
        for condition in node.data.rules:
            rules.append(_rules_for(condition.type, condition.value, outbound_tag))

    if has_direct:
        outbounds.append(dict(_FREEDOM))
    if has_block:
        outbounds.append(dict(_BLACKHOLE))

    # 没有规则时 xray 默认走第一个 outbound，无需额外规则
    client_config = {
        "log": {"loglevel": LOG_LEVEL},
        "inbounds": [{
            "tag": "socks-in",
            "protocol": "socks",
            "listen": "127.0.0.1",
            "port": 1080,
            "settings": {"auth": "noauth", "udp": True},
            "sniffing": dict(SNIFFING),
        }],
        "outbounds": outbounds,
        "routing": {"domainStrategy": DOMAIN_STRATEGY, "rules": rules},
    }
    results = [ExportResult(filename="config.json", config=client_config)]

    for target in chained.values():
        results.append(_build_server_config(target))

    logger.info("简化模式编译完成: %d 个配置文件", len(results))
    return results


def _build_server_config(node: Node) -> ExportResult:
    data: SimpleServerData = node.data
    inbound: dict[str, Any] = {
        "tag": "inbound",
        "protocol": data.protocol,
        "listen": "0.0.0.0",
        "port": data.port,
        "settings": _simple_inbound_settings(data),
    }
    stream = build_stream_settings(build_simple_transport(data))
    if stream:
        inbound["streamSettings"] = stream

    config = {
        "log": {"loglevel": LOG_LEVEL},
        "inbounds": [inbound],
        "outbounds": [dict(_FREEDOM)],
        "routing": {"domainStrategy": DOMAIN_STRATEGY, "rules": []},
    }
    return ExportResult(filename=f"{slugify(data.name)}_server_config.json", config=config)
