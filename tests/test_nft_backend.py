"""nftables 后端测试。Tests for command building and ``nft -j`` parsing."""

from __future__ import annotations

import json

import pytest

from portrelay.errors import ValidationError
from portrelay.port_spec import PortSpec
from portrelay.tools.nft_backend import (
    LiveRule,
    NftCommandBuilder,
    find_matching,
    parse_live_rules,
    parse_route_device,
    render_restart_script,
)
from portrelay.tools.rule_store import AddressFamily, PortRule, Protocol

from test_utils import nft_listing, nft_rule_json


@pytest.fixture
def builder() -> NftCommandBuilder:
    return NftCommandBuilder("wg-quick-nat-rules", "prerouting")


class TestNftCommandBuilder:
    """命令构造测试。Command builder tests."""

    def test_add_rule_for_range(self, builder):
        rule = PortRule.build("8080-8085", "tcp", "10.0.0.2")
        command = builder.add_rule(rule, "eth0")
        assert command.mutating
        assert command.render() == (
            "nft add rule ip wg-quick-nat-rules prerouting "
            "iifname eth0 tcp dport 8080-8085 dnat to 10.0.0.2"
        )

    def test_add_rule_ipv6_uses_ip6_family(self, builder):
        rule = PortRule.build(53, "udp", "fd42:42:42::2")
        argv = builder.add_rule(rule, "ens3").argv
        assert argv[:4] == ("nft", "add", "rule", "ip6")
        assert argv[-1] == "fd42:42:42::2"

    def test_list_rules_uses_json(self, builder):
        command = builder.list_rules(AddressFamily.IPV4)
        assert not command.mutating
        assert command.render() == "nft -j list chain ip wg-quick-nat-rules prerouting"

    def test_ensure_namespace(self, builder):
        table, chain = builder.ensure_namespace(AddressFamily.IPV6)
        assert table.render() == "nft add table ip6 wg-quick-nat-rules"
        assert chain.argv[-1] == "{ type nat hook prerouting priority -100; }"
        assert "'{ type nat hook prerouting priority -100; }'" in chain.render()

    def test_delete_rule_by_handle(self, builder):
        command = builder.delete_rule(AddressFamily.IPV4, 12)
        assert command.render() == "nft delete rule ip wg-quick-nat-rules prerouting handle 12"
        with pytest.raises(ValidationError):
            builder.delete_rule(AddressFamily.IPV4, -1)

    def test_sudo_prefix(self):
        sudo = NftCommandBuilder("wg-quick-nat-rules", "prerouting", use_sudo=True)
        assert sudo.list_rules(AddressFamily.IPV4).argv[:3] == ("sudo", "-n", "nft")

    def test_restart_daemon(self, builder):
        assert builder.restart_daemon("wg0").render() == "systemctl restart wg-quick@wg0"

    @pytest.mark.parametrize("name", ["", "bad name", "eth0;reboot", "x" * 65])
    def test_names_are_validated(self, builder, name):
        with pytest.raises(ValidationError):
            builder.add_rule(PortRule.build(80, "tcp", "10.0.0.2"), name)

    def test_table_name_validated(self):
        with pytest.raises(ValidationError):
            NftCommandBuilder("nat; rm -rf /", "prerouting")


class TestParseLiveRules:
    """JSON 解析测试。``nft -j`` parsing tests."""

    def test_single_port_and_range(self):
        text = nft_listing(
            nft_rule_json("ip", "tcp", "8080-8085", "10.0.0.2", 4),
            nft_rule_json("ip", "udp", "53", "10.0.0.2", 5),
        )
        rules = parse_live_rules(text, AddressFamily.IPV4)
        assert rules == [
            LiveRule(AddressFamily.IPV4, Protocol.TCP, PortSpec(8080, 8085), "10.0.0.2", 4, "eth0"),
            LiveRule(AddressFamily.IPV4, Protocol.UDP, PortSpec(53, 53), "10.0.0.2", 5, "eth0"),
        ]
        assert str(rules[0]) == "8080-8085/tcp -> 10.0.0.2"

    def test_empty_chain(self):
        assert parse_live_rules(nft_listing(), AddressFamily.IPV4) == []
        assert parse_live_rules("", AddressFamily.IPV4) == []

    def test_skips_unrelated_rules(self):
        masquerade = {
            "rule": {
                "family": "ip",
                "table": "wg-quick-nat-rules",
                "chain": "prerouting",
                "handle": 7,
                "expr": [{"masquerade": None}],
            }
        }
        other_table = nft_rule_json("ip", "tcp", "22", "10.0.0.9", 8, table="filter")
        text = nft_listing(masquerade, other_table, nft_rule_json("ip", "tcp", "443", "10.0.0.2", 9))
        rules = parse_live_rules(text, AddressFamily.IPV4, table="wg-quick-nat-rules", chain="prerouting")
        assert [rule.handle for rule in rules] == [9]

    def test_single_element_set(self):
        rule = nft_rule_json("ip", "tcp", "22", "10.0.0.2", 3)
        rule["rule"]["expr"][1]["match"]["right"] = {"set": [22]}
        assert parse_live_rules(nft_listing(rule), AddressFamily.IPV4)[0].port_spec == PortSpec(22, 22)

    def test_out_of_range_port_is_skipped(self):
        rule = nft_rule_json("ip", "tcp", "22", "10.0.0.2", 3)
        rule["rule"]["expr"][1]["match"]["right"] = 0
        assert parse_live_rules(nft_listing(rule), AddressFamily.IPV4) == []

    def test_malformed_json_raises(self):
        with pytest.raises(ValueError):
            parse_live_rules("Error: not json", AddressFamily.IPV4)

    def test_ignores_other_family(self):
        text = nft_listing(nft_rule_json("ip6", "tcp", "80", "fd42:42:42::2", 2))
        assert parse_live_rules(text, AddressFamily.IPV4) == []
        assert len(parse_live_rules(text, AddressFamily.IPV6)) == 1

    def test_matches_normalizes_ipv6(self):
        text = nft_listing(nft_rule_json("ip6", "tcp", "80", "fd42:42:42:0::2", 2))
        live = parse_live_rules(text, AddressFamily.IPV6)
        rule = PortRule.build(80, "tcp", "fd42:42:42::2")
        assert find_matching(live, rule) == live
        assert find_matching(live, PortRule.build(80, "udp", "fd42:42:42::2")) == []

    def test_to_dict(self):
        live = parse_live_rules(nft_listing(nft_rule_json("ip", "tcp", "80", "10.0.0.2", 2)), AddressFamily.IPV4)
        assert json.loads(json.dumps(live[0].to_dict()))["port_spec"] == "80"


class TestHelpers:
    """其他辅助函数测试。Route parsing and restart script tests."""

    def test_parse_route_device(self):
        output = "8.8.8.8 via 203.0.113.1 dev ens3 src 203.0.113.7 uid 0 \\    cache"
        assert parse_route_device(output) == "ens3"
        assert parse_route_device("unreachable") is None

    def test_restart_script(self, builder):
        script = render_restart_script(
            builder.restart_daemon("wg0"),
            "/tmp/restart wg.sh",
            [builder.list_rules(AddressFamily.IPV4)],
        )
        assert script.startswith("#!/bin/sh\n")
        assert "if systemctl restart wg-quick@wg0; then" in script
        assert "nft -j list chain ip wg-quick-nat-rules prerouting || true" in script
        assert script.rstrip().endswith("rm -f '/tmp/restart wg.sh'")
