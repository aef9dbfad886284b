"""路由规则匹配语义 (导出、导入、模拟三方共用，只在此处定义一次)。

这里是对真实 geosite / geoip 匹配的近似：
  - geosite 只内置几个常见分类的关键词表，未识别的分类一律不匹配；
  - IP 规则在模拟中永不匹配 (不做 DNS 解析)，但若同一路由已有
    domain 条件，则 IP 条件不再额外要求命中。
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass

from xraygraph.models import RoutingData

logger = logging.getLogger(__name__)

# "80" / "80,443" / "1000-2000,8443"
PORT_RANGE_RE = re.compile(r"^(\d+(-\d+)?)(,\d+(-\d+)?)*$")

# geosite 近似表：分类名 → 域名关键词正则
_GEOSITE_PATTERNS: dict[str, re.Pattern] = {
    "google": re.compile(r"google\.|youtube\.|gmail\.|gstatic\.", re.IGNORECASE),
    "facebook": re.compile(r"facebook\.|fb\.|instagram\.|whatsapp\.", re.IGNORECASE),
    "twitter": re.compile(r"twitter\.|x\.com|twimg\.", re.IGNORECASE),
    "cn": re.compile(r"\.cn$|baidu\.|qq\.|taobao\.|alibaba\.", re.IGNORECASE),
    "geolocation-cn": re.compile(r"\.cn$|baidu\.|qq\.|taobao\.|alibaba\.", re.IGNORECASE),
}


@dataclass
class TrafficRequest:
    """一次假设的连接：目标域名、传输协议 (tcp/udp)、端口、进入的 INPUT tag。"""

    domain: str
    protocol: str = "tcp"
    port: int = 443
    inbound_tag: str = ""


def _suffix_match(domain: str, target: str) -> bool:
    return domain == target or domain.endswith("." + target)


def match_domain_rule(rule: str, domain: str) -> bool:
    """按 regexp: / domain: / full: / geosite: / 纯字符串 五种语法匹配域名。"""
    lower = domain.lower()

    if rule.startswith("regexp:"):
        try:
            return re.search(rule[7:], lower, re.IGNORECASE) is not None
        except re.error:
            return False

    if rule.startswith("domain:"):
        return _suffix_match(lower, rule[7:].lower())

    if rule.startswith("full:"):
        return lower == rule[5:].lower()

    if rule.startswith("geosite:"):
        pattern = _GEOSITE_PATTERNS.get(rule[8:].lower())
        if pattern is None:
            return False
        return pattern.search(lower) is not None

    # 纯字符串按后缀匹配
    return _suffix_match(lower, rule.lower())


def match_ip_rule(rule: str, domain: str) -> bool:
    """IP / geoip 规则无法对域名求值，始终返回 False。"""
    return False


def match_port_rule(rule: str, port: int) -> bool:
    """端口规则："80"、"1000-2000"、"80,443,8080" 的任意组合。"""
    for part in rule.split(","):
        part = part.strip()
        if "-" in part:
            start, _, end = part.partition("-")
            try:
                if int(start) <= port <= int(end):
                    return True
            except ValueError:
                continue
        else:
            try:
                if int(part) == port:
                    return True
            except ValueError:
                continue
    return False


def match_protocol_rule(rules: list[str], protocol: str) -> bool:
    return any(r.lower() == protocol.lower() for r in rules)


def has_predicates(routing: RoutingData) -> bool:
    """是否设置了任何匹配条件 (inboundTag 也算)。"""
    return bool(
        routing.domain
        or routing.ip
        or routing.port
        or routing.protocol
        or routing.network
        or routing.inbound_tag
    )


def routing_matches(routing: RoutingData, request: TrafficRequest, source_inbound_tag: str) -> bool:
    """路由节点是否匹配请求。

    类别之间为 AND，类别内部为 OR；没有任何条件的路由节点匹配一切。
    inboundTag 只作为额外限制，不影响 "无条件即全匹配" 的判断。
    """
    if routing.inbound_tag and routing.inbound_tag != source_inbound_tag:
        return False

    has_rules = False
    matched = True

    if routing.domain:
        has_rules = True
        if not any(match_domain_rule(r, request.domain) for r in routing.domain):
            matched = False

    if routing.ip:
        has_rules = True
        ip_match = any(match_ip_rule(r, request.domain) for r in routing.ip)
        # 已有 domain 条件时不再要求 IP 命中
        if not ip_match and not routing.domain:
            matched = False

    if routing.port:
        has_rules = True
        if not match_port_rule(routing.port, request.port):
            matched = False

    if routing.protocol:
        has_rules = True
        if not match_protocol_rule(routing.protocol, request.protocol):
            matched = False

    if routing.network:
        has_rules = True
        if routing.network != request.protocol:
            matched = False

    if not has_rules:
        return True
    return matched
