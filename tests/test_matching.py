"""Tests for shared routing match semantics."""

from __future__ import annotations

import pytest

from xraygraph.matching import (
    TrafficRequest,
    match_domain_rule,
    match_ip_rule,
    match_port_rule,
    routing_matches,
)
from xraygraph.models import RoutingData


class TestDomainRule:
    @pytest.mark.parametrize("rule,domain,expected", [
        ("domain:example.com", "example.com", True),
        ("domain:example.com", "www.example.com", True),
        ("domain:example.com", "badexample.com", False),
        ("full:example.com", "example.com", True),
        ("full:example.com", "www.example.com", False),
        ("regexp:^api\\.", "API.example.com", True),
        ("regexp:[", "example.com", False),
        ("geosite:google", "www.youtube.com", True),
        ("geosite:cn", "www.baidu.com", True),
        ("geosite:netflix", "netflix.com", False),
        ("example.com", "mail.example.com", True),
    ])
    def test_grammar(self, rule, domain, expected):
        assert match_domain_rule(rule, domain) is expected

    def test_ip_rules_never_match(self):
        assert match_ip_rule("geoip:private", "127.0.0.1") is False


class TestPortRule:
    def test_list_and_range(self):
        assert match_port_rule("80,443,1000-2000", 443)
        assert match_port_rule("80,443,1000-2000", 1500)
        assert not match_port_rule("80,443", 8080)

    def test_garbage_parts_are_ignored(self):
        assert match_port_rule("abc,443", 443)
        assert not match_port_rule("x-y", 1)


class TestRoutingMatches:
    """AND across categories, OR within a category."""

    def _req(self, **kwargs):
        defaults = dict(domain="example.com", protocol="tcp", port=443, inbound_tag="in1")
        defaults.update(kwargs)
        return TrafficRequest(**defaults)

    def test_no_predicates_is_catch_all(self):
        assert routing_matches(RoutingData(tag="r"), self._req(), "in1")
        assert routing_matches(RoutingData(tag="r"), self._req(domain="x.org", port=1), "in1")

    def test_or_within_domain(self):
        r = RoutingData(domain=["domain:a.com", "domain:example.com"])
        assert routing_matches(r, self._req(), "in1")

    def test_and_across_categories(self):
        r = RoutingData(domain=["domain:example.com"], port="80")
        assert not routing_matches(r, self._req(port=443), "in1")
        assert routing_matches(r, self._req(port=80), "in1")

    def test_ip_alone_never_matches(self):
        r = RoutingData(ip=["geoip:cn"])
        assert not routing_matches(r, self._req(), "in1")

    def test_ip_ignored_once_domain_present(self):
        r = RoutingData(domain=["domain:example.com"], ip=["geoip:cn"])
        assert routing_matches(r, self._req(), "in1")

    def test_network_compares_with_request_protocol(self):
        r = RoutingData(network="udp")
        assert not routing_matches(r, self._req(protocol="tcp"), "in1")
        assert routing_matches(r, self._req(protocol="udp"), "in1")

    def test_inbound_tag_restricts(self):
        r = RoutingData(inbound_tag="in1")
        assert routing_matches(r, self._req(), "in1")
        assert not routing_matches(r, self._req(), "in2")
