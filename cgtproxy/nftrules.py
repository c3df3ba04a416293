"""Statements and rule bodies that make up the nft table managed by cgtproxy."""

from __future__ import annotations

import ipaddress
import re
from collections.abc import Iterable

from .config import IPV4_LOCALHOST, TProxy
from .types import Target, TargetOp

TABLE_FAMILY = "inet"
TABLE_NAME = "cgtproxy"
TABLE = f"{TABLE_FAMILY} {TABLE_NAME}"

BYPASS_SET = "bypass"
BYPASS6_SET = "bypass6"
CGROUP_MAP = "cgroup-vmap"
MARK_TPROXY_MAP = "mark-vmap"
MARK_DNS_MAP = "mark-dns-vmap"

CGROUP_MAP_SPEC = "type cgroupsv2 : verdict;"
MARK_MAP_SPEC = "type mark : verdict;"

OUTPUT_MANGLE_CHAIN = "output-mangle"
OUTPUT_MANGLE_CHAIN_SPEC = "type route hook output priority mangle; policy accept;"
OUTPUT_NAT_CHAIN = "output-nat"
OUTPUT_NAT_CHAIN_SPEC = "type nat hook output priority dstnat; policy accept;"
PREROUTING_CHAIN = "prerouting"
PREROUTING_CHAIN_SPEC = "type filter hook prerouting priority mangle; policy accept;"

MARK_CHAIN_SUFFIX = "-MARK"
DNS_CHAIN_SUFFIX = "-DNS"
DNS_PORT = 53

IPAddress = ipaddress.IPv4Address | ipaddress.IPv6Address
IPNetwork = ipaddress.IPv4Network | ipaddress.IPv6Network

_IDENTIFIER = re.compile(r"[A-Za-z_][A-Za-z0-9_./-]*\Z")
_SET_KEY_TYPES = {4: "ipv4_addr", 6: "ipv6_addr"}


def quote_name(name: str) -> str:
    """Return ``name`` as it must be written in an nft statement."""
    if _IDENTIFIER.match(name):
        return name
    if '"' in name or not name:
        raise ValueError(f"invalid nft object name {name!r}")
    return f'"{name}"'


def _as_address(address: str | IPAddress) -> IPAddress:
    if isinstance(address, (ipaddress.IPv4Address, ipaddress.IPv6Address)):
        return address
    return ipaddress.ip_address(address)


def next_ip(address: str | IPAddress) -> IPAddress:
    """Return the address after ``address``, wrapping around at the top."""
    addr = _as_address(address)
    return type(addr)((int(addr) + 1) % (1 << addr.max_prefixlen))


def _previous_ip(addr: IPAddress) -> IPAddress:
    return type(addr)((int(addr) - 1) % (1 << addr.max_prefixlen))


def last_ip(network: str | IPNetwork) -> IPAddress:
    """Return the highest address inside ``network``."""
    if not isinstance(network, (ipaddress.IPv4Network, ipaddress.IPv6Network)):
        network = ipaddress.ip_network(network, strict=False)
    return network.broadcast_address


def _bypass_bounds(entry: str) -> tuple[IPAddress, IPAddress]:
    try:
        addr = ipaddress.ip_address(entry)
    except ValueError:
        if "/" not in entry:
            raise ValueError(f"{entry!r} is neither an IP address nor a CIDR") from None
        network = ipaddress.ip_network(entry, strict=False)
        return network.network_address, last_ip(network)
    if isinstance(addr, ipaddress.IPv6Address) and addr.ipv4_mapped is not None:
        addr = addr.ipv4_mapped
    return addr, addr


def bypass_set_elements(
    entries: Iterable[str], version: int
) -> list[tuple[IPAddress, IPAddress]]:
    """Turn bypass entries into half-open intervals ``(start, end)``."""
    if version not in _SET_KEY_TYPES:
        raise ValueError(f"unsupported IP version {version!r}")
    intervals = []
    for entry in entries:
        first, last = _bypass_bounds(entry)
        if first.version != version:
            raise ValueError(f"{entry!r} is not an IPv{version} address or network")
        intervals.append((first, next_ip(last)))
    return intervals


def _render_interval(start: IPAddress, end: IPAddress) -> str:
    last = _previous_ip(end)
    if last == start:
        return str(start)
    return f"{start}-{last}"


def bypass_set(name: str, entries: Iterable[str], version: int) -> list[str]:
    """Return the statements that declare and fill an interval bypass set."""
    intervals = bypass_set_elements(entries, version)
    set_name = quote_name(name)
    statements = [
        f"add set {TABLE} {set_name} {{ type {_SET_KEY_TYPES[version]}; flags interval; }}"
    ]
    if intervals:
        elements = ", ".join(_render_interval(start, end) for start, end in intervals)
        statements.append(f"add element {TABLE} {set_name} {{ {elements} }}")
    return statements


def _bypass_rules() -> list[str]:
    return [
        f"ip daddr @{BYPASS_SET} return",
        f"ip6 daddr @{BYPASS6_SET} return",
    ]


def output_mangle_rules() -> list[str]:
    """Rule bodies that head the output mangle chain, before any cgroup rule."""
    return [
        "ct direction reply return",
        *_bypass_rules(),
        "meta l4proto != { tcp, udp } return",
    ]


def output_nat_rules() -> list[str]:
    """Rule bodies of the output NAT chain."""
    return [f"meta mark vmap @{MARK_DNS_MAP}"]


def prerouting_rules() -> list[str]:
    """Rule bodies of the prerouting chain."""
    return [*_bypass_rules(), f"meta mark vmap @{MARK_TPROXY_MAP}"]


def mark_chain(tproxy: TProxy) -> tuple[str, list[str]]:
    """Return the name and rules of the chain that marks traffic for ``tproxy``."""
    return tproxy.name + MARK_CHAIN_SUFFIX, [f"meta mark set {tproxy.mark}"]


def tproxy_chain(tproxy: TProxy) -> tuple[str, list[str]]:
    """Return the name and rules of the chain that hands traffic to ``tproxy``."""
    protocols = "tcp" if tproxy.no_udp else "{ tcp, udp }"
    family = " ip" if tproxy.no_ipv6 else ""
    return tproxy.name, [f"meta l4proto {protocols} tproxy{family} to :{tproxy.port}"]


def dns_chain(tproxy: TProxy) -> tuple[str, list[str]]:
    """Return the name and rules of the chain that hijacks DNS for ``tproxy``."""
    hijack = tproxy.dns_hijack
    if hijack is None:
        raise ValueError(f"tproxy {tproxy.name!r} has no dns-hijack")
    address = ipaddress.IPv4Address(hijack.ip or IPV4_LOCALHOST)
    protocols = ["udp", "tcp"] if hijack.tcp else ["udp"]
    rules = [
        f"meta l4proto {proto} th dport {DNS_PORT} dnat ip to {address}:{hijack.port}"
        for proto in protocols
    ]
    return tproxy.name + DNS_CHAIN_SUFFIX, rules


def cgroup_level_rule(level: int) -> str:
    """Rule body dispatching sockets by their cgroup at ``level``."""
    if isinstance(level, bool) or not isinstance(level, int) or level < 0:
        raise ValueError(f"invalid cgroup level {level!r}")
    return f"socket cgroupv2 level {level} vmap @{CGROUP_MAP}"


def verdict_for_target(target: Target) -> str:
    """Return the verdict a cgroup map element carries for ``target``."""
    if target.op is TargetOp.DIRECT:
        return "return"
    if target.op is TargetOp.TPROXY:
        if not target.chain:
            raise ValueError("tproxy target has no chain")
        return f"goto {quote_name(target.chain)}"
    if target.op is TargetOp.DROP:
        return "drop"
    raise ValueError(f"target {target.op} has no verdict")


def with_debug_counter(rule: str, debug: bool = False) -> str:
    """Prefix ``rule`` with a counter when debugging."""
    return f"counter {rule}" if debug else rule