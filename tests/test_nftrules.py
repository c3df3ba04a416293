import ipaddress

import pytest

from cgtproxy import nftrules
from cgtproxy.config import DNSHijack, TProxy
from cgtproxy.types import Target, TargetOp


def test_next_ip_wraps_at_top_of_ipv4():
    assert nftrules.next_ip("255.255.255.255") == ipaddress.IPv4Address("0.0.0.0")


@pytest.mark.parametrize("text", ["10.0.0.255", "192.168.1.1", "::", "fe80::ffff"])
def test_next_ip_is_successor(text):
    addr = ipaddress.ip_address(text)
    result = nftrules.next_ip(text)
    assert result.version == addr.version
    assert int(result) == int(addr) + 1


@pytest.mark.parametrize("cidr", ["10.0.0.0/8", "192.168.1.0/24", "fd00::/64"])
def test_last_ip_is_inside_and_next_is_outside(cidr):
    network = ipaddress.ip_network(cidr)
    last = nftrules.last_ip(cidr)
    assert last in network
    assert nftrules.next_ip(last) not in network


def test_last_ip_of_unmasked_cidr_uses_network():
    assert nftrules.last_ip("10.1.2.3/8") == nftrules.last_ip("10.0.0.0/8")


def test_bypass_single_address_interval():
    addr = ipaddress.ip_address("192.168.1.1")
    assert nftrules.bypass_set_elements(["192.168.1.1"], 4) == [(addr, nftrules.next_ip(addr))]


def test_bypass_cidr_interval_covers_network():
    network = ipaddress.ip_network("172.16.0.0/12")
    [(start, end)] = nftrules.bypass_set_elements(["172.16.5.0/12"], 4)
    assert start == network.network_address
    assert end == nftrules.next_ip(network.broadcast_address)


def test_bypass_wrong_version_raises():
    with pytest.raises(ValueError):
        nftrules.bypass_set_elements(["fd00::/8"], 4)


def test_bypass_invalid_entry_raises():
    with pytest.raises(ValueError):
        nftrules.bypass_set_elements(["not-an-address"], 4)


def test_bypass_unknown_version_raises():
    with pytest.raises(ValueError):
        nftrules.bypass_set_elements([], 5)


def test_bypass_set_statements():
    statements = nftrules.bypass_set(nftrules.BYPASS_SET, ["10.0.0.0/8", "127.0.0.1"], 4)
    assert len(statements) == 2
    assert statements[0].startswith(f"add set {nftrules.TABLE} {nftrules.BYPASS_SET} ")
    assert "flags interval" in statements[0]
    network = ipaddress.ip_network("10.0.0.0/8")
    assert f"{network.network_address}-{network.broadcast_address}" in statements[1]
    assert "127.0.0.1" in statements[1]


def test_bypass_set_empty_has_only_declaration():
    statements = nftrules.bypass_set(nftrules.BYPASS6_SET, [], 6)
    assert len(statements) == 1
    assert nftrules.BYPASS6_SET in statements[0]


@pytest.mark.parametrize(
    "tproxy, expects",
    [
        (TProxy(name="tproxy1", no_udp=True, no_ipv6=False, port=7893, mark=100),
         "meta l4proto tcp tproxy to :7893"),
        (TProxy(name="tproxy2", no_udp=False, no_ipv6=True, port=7894, mark=101),
         "meta l4proto { tcp, udp } tproxy ip to :7894"),
        (TProxy(name="tproxy3", no_udp=False, no_ipv6=False, port=7895, mark=103),
         "meta l4proto { tcp, udp } tproxy to :7895"),
        (TProxy(name="tproxy4", no_udp=True, no_ipv6=True, port=7896, mark=104),
         "meta l4proto tcp tproxy ip to :7896"),
    ],
)
def test_tproxy_chain(tproxy, expects):
    name, rules = nftrules.tproxy_chain(tproxy)
    assert name == tproxy.name
    assert rules == [expects]


def test_mark_chain():
    tproxy = TProxy(name="tproxy1", port=7893, mark=100)
    name, rules = nftrules.mark_chain(tproxy)
    assert name == "tproxy1-MARK"
    assert len(rules) == 1
    assert rules[0].endswith(str(tproxy.mark))


def test_dns_chain_requires_hijack():
    with pytest.raises(ValueError):
        nftrules.dns_chain(TProxy(name="tproxy1", port=7893, mark=100))


@pytest.mark.parametrize("tcp, count", [(False, 1), (True, 2)])
def test_dns_chain_rules(tcp, count):
    tproxy = TProxy(name="tproxy1", port=7893, mark=100,
                    dns_hijack=DNSHijack(ip=None, port=5353, tcp=tcp))
    name, rules = nftrules.dns_chain(tproxy)
    assert name == "tproxy1-DNS"
    assert len(rules) == count
    for rule in rules:
        assert "dport 53" in rule
        assert rule.endswith("127.0.0.1:5353")


def test_cgroup_level_rule_matches_listing():
    assert nftrules.cgroup_level_rule(3) == "socket cgroupv2 level 3 vmap @cgroup-vmap"


def test_cgroup_level_rule_rejects_negative():
    with pytest.raises(ValueError):
        nftrules.cgroup_level_rule(-1)


def test_verdict_for_targets():
    goto = nftrules.verdict_for_target(Target(TargetOp.TPROXY, "tproxy1-MARK"))
    assert goto.startswith("goto ")
    assert goto.endswith("tproxy1-MARK")
    assert nftrules.verdict_for_target(Target(TargetOp.DROP)) == "drop"
    assert nftrules.verdict_for_target(Target(TargetOp.DIRECT)) == "return"


def test_verdict_quotes_unusual_chain_names():
    chain = "my proxy-MARK"
    assert f'"{chain}"' in nftrules.verdict_for_target(Target(TargetOp.TPROXY, chain))


def test_verdict_for_noop_raises():
    with pytest.raises(ValueError):
        nftrules.verdict_for_target(Target(TargetOp.NOOP))


def test_with_debug_counter():
    rule = nftrules.cgroup_level_rule(2)
    assert nftrules.with_debug_counter(rule, False) == rule
    debug = nftrules.with_debug_counter(rule, True)
    assert debug.startswith("counter")
    assert debug.endswith(rule)


def test_base_chain_rules_reference_sets():
    mangle = nftrules.output_mangle_rules()
    assert sum(f"@{nftrules.BYPASS_SET} " in r for r in mangle) == 1
    assert sum(f"@{nftrules.BYPASS6_SET} " in r for r in mangle) == 1
    assert all(r.endswith("return") for r in mangle)
    assert nftrules.output_nat_rules()[-1].endswith(f"@{nftrules.MARK_DNS_MAP}")
    prerouting = nftrules.prerouting_rules()
    assert prerouting[-1].endswith(f"@{nftrules.MARK_TPROXY_MAP}")
    assert prerouting[:2] == mangle[1:3]