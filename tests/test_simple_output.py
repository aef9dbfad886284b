"""Tests for the single-user (simple) compiler."""

from __future__ import annotations

from xraygraph.models import Network, NodeType, Security, SimpleRule
from xraygraph.simple_output import build_simple_transport, export_simple_config
from xraygraph.transport import build_stream_settings
from xraygraph.xray_output import export_config

UUID = "0f8e3c1a-2b4d-4e6f-8a9b-1c2d3e4f5a6b"


class TestClientConfig:
    def test_rules_and_exits(self, make_node, make_edge):
        server = make_node(NodeType.SIMPLE_SERVER, "srv", name="Tokyo", host="jp.example.com",
                           uuid=UUID)
        rules = make_node(NodeType.SIMPLE_RULES, "rules", rules=[
            SimpleRule(type="geosite", value="cn"),
            SimpleRule(type="geoip", value="cn"),
            SimpleRule(type="domain", value="bank.example"),
        ])
        internet = make_node(NodeType.SIMPLE_INTERNET, "net")
        nodes = [server, rules, internet]
        edges = [make_edge(rules, internet)]

        [result] = export_config(nodes, edges, mode="simple")
        config = result.config
        assert result.filename == "config.json"
        assert config["inbounds"][0]["tag"] == "socks-in"
        assert config["inbounds"][0]["listen"] == "127.0.0.1"
        assert config["inbounds"][0]["settings"] == {"auth": "noauth", "udp": True}

        assert [o["tag"] for o in config["outbounds"]] == ["proxy-srv", "direct"]
        assert config["outbounds"][0]["settings"]["vnext"][0]["users"][0]["id"] == UUID
        assert config["routing"]["rules"] == [
            {"type": "field", "domain": ["geosite:cn"], "outboundTag": "direct"},
            {"type": "field", "ip": ["geoip:cn"], "outboundTag": "direct"},
            {"type": "field", "domain": ["domain:bank.example"], "outboundTag": "direct"},
        ]

    def test_all_rule_has_no_condition(self, make_node, make_edge):
        rules = make_node(NodeType.SIMPLE_RULES, "rules", rules=[SimpleRule(type="all")])
        block = make_node(NodeType.SIMPLE_BLOCK, "blk")
        [result] = export_simple_config([rules, block], [make_edge(rules, block)])
        assert result.config["routing"]["rules"] == [{"type": "field", "outboundTag": "block"}]
        assert result.config["outbounds"][-1]["protocol"] == "blackhole"

    def test_unconnected_rules_are_skipped(self, make_node):
        rules = make_node(NodeType.SIMPLE_RULES, "rules", rules=[SimpleRule(value="a.com")])
        [result] = export_simple_config([rules], [])
        assert result.config["routing"]["rules"] == []


class TestChainedServers:
    def test_chain_emits_server_document(self, make_node, make_edge):
        entry = make_node(NodeType.SIMPLE_SERVER, "a", name="Entry", host="a.example", uuid=UUID)
        exit_ = make_node(NodeType.SIMPLE_SERVER, "b", name="Exit Node", host="b.example",
                          port=8443, protocol="trojan", password="pw")
        results = export_simple_config([entry, exit_], [make_edge(entry, exit_)])

        assert [r.filename for r in results] == ["config.json", "exit-node_server_config.json"]
        client_out = results[0].config["outbounds"][0]
        assert client_out["proxySettings"] == {"tag": "proxy-b"}

        server = results[1].config
        assert server["inbounds"][0] == {
            "tag": "inbound",
            "protocol": "trojan",
            "listen": "0.0.0.0",
            "port": 8443,
            "settings": {"clients": [{"password": "pw", "email": "default"}]},
        }
        assert server["outbounds"] == [
            {"tag": "direct", "protocol": "freedom", "settings": {"domainStrategy": "UseIP"}},
        ]


class TestSimpleTransport:
    def test_ws_tls_with_alpn_list(self, make_node):
        node = make_node(NodeType.SIMPLE_SERVER, network=Network.WS, security=Security.TLS,
                         ws_path="/ws", ws_host="cdn.example", sni="cdn.example",
                         alpn="h2, http/1.1")
        stream = build_stream_settings(build_simple_transport(node.data))
        assert stream == {
            "network": "ws",
            "security": "tls",
            "wsSettings": {"path": "/ws", "headers": {"Host": "cdn.example"}},
            "tlsSettings": {"serverName": "cdn.example", "alpn": ["h2", "http/1.1"]},
        }

    def test_reality(self, make_node):
        node = make_node(NodeType.SIMPLE_SERVER, security=Security.REALITY, sni="www.microsoft.com",
                         fingerprint="chrome", reality_public_key="pk", reality_short_id="ab")
        stream = build_stream_settings(build_simple_transport(node.data))
        assert stream["network"] == "tcp"
        assert stream["realitySettings"] == {
            "serverName": "www.microsoft.com",
            "fingerprint": "chrome",
            "publicKey": "pk",
            "shortId": "ab",
        }


class TestChainFanOut:
    """One server chained to several downstream servers."""

    def test_every_downstream_server_gets_a_document(self, make_node, make_edge):
        entry = make_node(NodeType.SIMPLE_SERVER, "a", name="A", host="a.example", uuid=UUID)
        first = make_node(NodeType.SIMPLE_SERVER, "b", name="B", host="b.example", uuid=UUID)
        second = make_node(NodeType.SIMPLE_SERVER, "c", name="C", host="c.example", uuid=UUID)
        edges = [make_edge(entry, first), make_edge(entry, second)]
        results = export_simple_config([entry, first, second], edges)

        assert [r.filename for r in results] == [
            "config.json", "b_server_config.json", "c_server_config.json",
        ]
        assert results[0].config["outbounds"][0]["proxySettings"] == {"tag": "proxy-b"}

    def test_shared_downstream_server_written_once(self, make_node, make_edge):
        a = make_node(NodeType.SIMPLE_SERVER, "a", name="A", host="a.example", uuid=UUID)
        b = make_node(NodeType.SIMPLE_SERVER, "b", name="B", host="b.example", uuid=UUID)
        c = make_node(NodeType.SIMPLE_SERVER, "c", name="C", host="c.example", uuid=UUID)
        results = export_simple_config([a, b, c], [make_edge(a, c), make_edge(b, c)])
        assert [r.filename for r in results] == ["config.json", "c_server_config.json"]
