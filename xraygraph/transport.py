"""TransportSettings 与 xray streamSettings 之间的互相转换。

导出 (通用模式、简化模式) 与导入共用这一套编解码，保证往返一致：
  - raw 在线上写作 tcp，读回时 tcp → raw；
  - 空的子设置块与默认的 tcp/none 整体省略。
"""

from __future__ import annotations

import logging
from typing import Any, Optional

from xraygraph.models import (
    GrpcSettings,
    Network,
    RealitySettings,
    Security,
    TlsSettings,
    TransportSettings,
    WsSettings,
    XhttpSettings,
)

logger = logging.getLogger(__name__)


def parse_network(value: Any) -> Network:
    """线上/旧版的 tcp 视为 raw；未知值回落到 raw。"""
    if value == "tcp":
        return Network.RAW
    try:
        return Network(value)
    except ValueError:
        return Network.RAW


def parse_security(value: Any) -> Security:
    try:
        return Security(value)
    except ValueError:
        return Security.NONE


def wire_network(network: Network) -> str:
    return "tcp" if network is Network.RAW else network.value


# ---------------------------------------------------------------------------
# TransportSettings → streamSettings
# ---------------------------------------------------------------------------

def _compact(d: dict) -> dict:
    """去掉值为 None / 空串 / 空容器的键，False 保留。"""
    return {k: v for k, v in d.items() if v is not None and v != "" and v != [] and v != {}}


def build_stream_settings(transport: Optional[TransportSettings]) -> dict:
    """生成 streamSettings；默认的 tcp/none 返回空 dict，由调用方省略。"""
    if transport is None:
        return {}

    stream: dict[str, Any] = {
        "network": wire_network(transport.network),
        "security": transport.security.value,
    }

    if transport.network is Network.WS and transport.ws_settings:
        ws = _compact({
            "path": transport.ws_settings.path,
            "headers": transport.ws_settings.headers,
        })
        if ws:
            stream["wsSettings"] = ws

    if transport.network is Network.GRPC and transport.grpc_settings:
        grpc = _compact({
            "serviceName": transport.grpc_settings.service_name,
            "multiMode": transport.grpc_settings.multi_mode,
        })
        if grpc:
            stream["grpcSettings"] = grpc

    if transport.network is Network.XHTTP and transport.xhttp_settings:
        xhttp = _compact({
            "path": transport.xhttp_settings.path,
            "host": transport.xhttp_settings.host,
        })
        if xhttp:
            stream["xhttpSettings"] = xhttp

    if transport.security is Security.TLS and transport.tls_settings:
        tls = _compact({
            "serverName": transport.tls_settings.server_name,
            "alpn": transport.tls_settings.alpn,
            "fingerprint": transport.tls_settings.fingerprint,
        })
        if tls:
            stream["tlsSettings"] = tls

    if transport.security is Security.REALITY and transport.reality_settings:
        r = transport.reality_settings
        reality = _compact({
            "serverName": r.server_name,
            "fingerprint": r.fingerprint,
            "publicKey": r.public_key,
            "shortId": r.short_id,
            "spiderX": r.spider_x,
        })
        if reality:
            stream["realitySettings"] = reality

    # 默认 tcp/none 不写入配置
    if stream == {"network": "tcp", "security": "none"}:
        return {}
    return stream


# ---------------------------------------------------------------------------
# streamSettings → TransportSettings
# ---------------------------------------------------------------------------

def _str_or_none(value: Any) -> Optional[str]:
    return value if isinstance(value, str) and value else None


def parse_stream_settings(stream: Optional[dict]) -> TransportSettings:
    """解析 streamSettings (或项目文件里同形状的 transport 对象)。"""
    if not isinstance(stream, dict) or not stream:
        return TransportSettings()

    network_raw = stream.get("network") or "tcp"
    transport = TransportSettings(
        network=parse_network(network_raw),
        security=parse_security(stream.get("security") or "none"),
    )

    ws = stream.get("wsSettings")
    if transport.network is Network.WS and isinstance(ws, dict) and ws:
        headers = ws.get("headers")
        transport.ws_settings = WsSettings(
            path=_str_or_none(ws.get("path")),
            headers=dict(headers) if isinstance(headers, dict) and headers else None,
        )

    grpc = stream.get("grpcSettings")
    if transport.network is Network.GRPC and isinstance(grpc, dict) and grpc:
        multi = grpc.get("multiMode")
        transport.grpc_settings = GrpcSettings(
            service_name=_str_or_none(grpc.get("serviceName")),
            multi_mode=multi if isinstance(multi, bool) else None,
        )

    xhttp = stream.get("xhttpSettings")
    if transport.network is Network.XHTTP and isinstance(xhttp, dict) and xhttp:
        transport.xhttp_settings = XhttpSettings(
            path=_str_or_none(xhttp.get("path")),
            host=_str_or_none(xhttp.get("host")),
        )

    tls = stream.get("tlsSettings")
    if transport.security is Security.TLS and isinstance(tls, dict) and tls:
        alpn = tls.get("alpn")
        transport.tls_settings = TlsSettings(
            server_name=_str_or_none(tls.get("serverName")),
            alpn=list(alpn) if isinstance(alpn, list) and alpn else None,
            fingerprint=_str_or_none(tls.get("fingerprint")),
        )

    reality = stream.get("realitySettings")
    if transport.security is Security.REALITY and isinstance(reality, dict) and reality:
        transport.reality_settings = RealitySettings(
            server_name=_str_or_none(reality.get("serverName")),
            fingerprint=_str_or_none(reality.get("fingerprint")),
            public_key=_str_or_none(reality.get("publicKey")),
            short_id=_str_or_none(reality.get("shortId")),
            spider_x=_str_or_none(reality.get("spiderX")),
        )

    return transport
