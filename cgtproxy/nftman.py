"""Maintains the nft table that sends cgroup traffic to TPROXY servers."""

from __future__ import annotations

import errno
import ipaddress
import logging
import os
from collections.abc import Iterable, Iterator
from contextlib import contextmanager
from dataclasses import dataclass

from .config import TProxy
from .connector import Connector, NftError, list_ruleset
from .interfaces import NetlinkConnector
from .nftrules import (
    BYPASS6_SET,
    BYPASS_SET,
    CGROUP_MAP,
    CGROUP_MAP_SPEC,
    MARK_DNS_MAP,
    MARK_MAP_SPEC,
    MARK_TPROXY_MAP,
    OUTPUT_MANGLE_CHAIN,
    OUTPUT_MANGLE_CHAIN_SPEC,
    OUTPUT_NAT_CHAIN,
    OUTPUT_NAT_CHAIN_SPEC,
    PREROUTING_CHAIN,
    PREROUTING_CHAIN_SPEC,
    TABLE,
    TABLE_NAME,
    bypass_set,
    cgroup_level_rule,
    dns_chain,
    mark_chain,
    output_mangle_rules,
    output_nat_rules,
    prerouting_rules,
    quote_name,
    tproxy_chain,
    verdict_for_target,
    with_debug_counter,
)
from .types import Route

NFT_TABLE_NAME = TABLE_NAME

_LOG = logging.getLogger(__name__)


class NFTManagerError(Exception):
    """Changing the nft table failed."""


def split_bypass(bypass: Iterable[str] | None) -> tuple[list[str], list[str]]:
    """Split bypass entries into IPv4 and IPv6 entries, keeping their order."""
    ipv4: list[str] = []
    ipv6: list[str] = []
    for entry in bypass or ():
        try:
            addr = ipaddress.ip_address(entry)
        except ValueError:
            if "/" not in entry:
                raise NFTManagerError(f"invalid bypass entry {entry!r}") from None
            try:
                version = ipaddress.ip_network(entry, strict=False).version
            except ValueError as exc:
                raise NFTManagerError(f"invalid bypass entry {entry!r}: {exc}") from exc
        else:
            mapped = isinstance(addr, ipaddress.IPv6Address) and addr.ipv4_mapped is not None
            version = 4 if mapped else addr.version
        (ipv4 if version == 4 else ipv6).append(entry)
    return ipv4, ipv6


@dataclass(frozen=True)
class _CgroupElement:
    key: str
    full_path: str
    inode: int
    verdict: str

    def render(self) -> str:
        return f'"{self.key}" : {self.verdict}'


@contextmanager
def _wrapped(action: str) -> Iterator[None]:
    try:
        yield
    except NFTManagerError:
        raise
    except (NftError, OSError, ValueError) as exc:
        raise NFTManagerError(f"{action}: {exc}") from exc


class NFTManager:
    """Creates and updates the ``inet cgtproxy`` table."""

    def __init__(
        self,
        cgroup_root: str | None = None,
        bypass: Iterable[str] | None = None,
        logger: logging.Logger | None = None,
        connector: NetlinkConnector | None = None,
        debug: bool = False,
    ):
        if cgroup_root is not None and not cgroup_root:
            raise NFTManagerError("cgroupv2 file system mount point is missing.")
        root = cgroup_root or ""
        self._cgroup_root = root.rstrip("/") or ("/" if root else "")
        self._bypass_ipv4, self._bypass_ipv6 = split_bypass(bypass)
        self._log = logger or _LOG
        self._connector: NetlinkConnector = connector if connector is not None else Connector()
        self._debug = debug
        self._table_created = False
        self._elements: dict[str, _CgroupElement] = {}
        self._log.debug("NFTManager created.")

    def _relative(self, path: str) -> str:
        path = os.path.normpath(path)
        if self._cgroup_root and path.startswith(self._cgroup_root):
            path = path[len(self._cgroup_root):]
        if not path.startswith("/"):
            path = "/" + path
        return path

    def _add_chain(self, conn, name: str, spec: str | None = None) -> None:
        suffix = f" {{ {spec} }}" if spec else ""
        conn.add(f"add chain {TABLE} {quote_name(name)}{suffix}")

    def _add_rule(self, conn, chain: str, body: str, counter: bool = True) -> None:
        if counter:
            body = with_debug_counter(body, self._debug)
        conn.add(f"add rule {TABLE} {quote_name(chain)} {body}")

    def _add_map_elements(self, conn, elements: Iterable[_CgroupElement]) -> None:
        rendered = ", ".join(element.render() for element in elements)
        if rendered:
            conn.add(f"add element {TABLE} {CGROUP_MAP} {{ {rendered} }}")

    def _dump(self) -> None:
        if not self._debug:
            return
        try:
            self._log.debug("Dump nft ruleset.\n%s", list_ruleset())
        except NftError as exc:
            self._log.warning("Failed to dump nft ruleset: %s", exc)

    def _gen_element(self, route: Route) -> _CgroupElement:
        full_path = route.path
        relative = self._relative(full_path)
        if relative in self._elements:
            raise FileExistsError(errno.EEXIST, "cgroup already has a route", full_path)
        inode = os.stat(full_path).st_ino
        key = relative.lstrip("/")
        if '"' in key:
            raise ValueError(f"unsupported cgroup path {full_path!r}")
        route.path = relative
        self._log.debug("Inode of cgroup %s is %d.", relative, inode)
        return _CgroupElement(key, full_path, inode, verdict_for_target(route.target))

    def _fill_output_mangle_chain(self, conn) -> None:
        for body in output_mangle_rules():
            self._add_rule(conn, OUTPUT_MANGLE_CHAIN, body)

    def init_structure(self) -> None:
        """Create the table with its sets, maps and base chains."""
        self._log.debug("Initialing nft table structure.")
        with _wrapped("flush initial content"):
            conn = self._connector.connect()
            conn.add(f"add table {TABLE}")
            self._table_created = True
            with _wrapped("create table"):
                conn.flush()

            for statement in bypass_set(BYPASS_SET, self._bypass_ipv4, 4):
                conn.add(statement)
            for statement in bypass_set(BYPASS6_SET, self._bypass_ipv6, 6):
                conn.add(statement)

            conn.add(f"add map {TABLE} {CGROUP_MAP} {{ {CGROUP_MAP_SPEC} }}")
            self._elements = {}
            conn.add(f"add map {TABLE} {MARK_TPROXY_MAP} {{ {MARK_MAP_SPEC} }}")
            conn.add(f"add map {TABLE} {MARK_DNS_MAP} {{ {MARK_MAP_SPEC} }}")

            self._add_chain(conn, OUTPUT_MANGLE_CHAIN, OUTPUT_MANGLE_CHAIN_SPEC)
            self._fill_output_mangle_chain(conn)

            self._add_chain(conn, OUTPUT_NAT_CHAIN, OUTPUT_NAT_CHAIN_SPEC)
            for body in output_nat_rules():
                self._add_rule(conn, OUTPUT_NAT_CHAIN, body)

            self._add_chain(conn, PREROUTING_CHAIN, PREROUTING_CHAIN_SPEC)
            for body in prerouting_rules():
                self._add_rule(conn, PREROUTING_CHAIN, body)

            conn.flush()
        self._log.debug("nft table structure initialized.")
        self._dump()

    def add_chain_and_rules_for_tproxies(self, tproxies: Iterable[TProxy]) -> None:
        """Create the mark, TPROXY and DNS chains for each server."""
        tproxies = list(tproxies)
        if not tproxies:
            return
        names = ", ".join(tp.name for tp in tproxies)
        with _wrapped(f"add chain and rules to nft table for tproxies {names}"):
            conn = self._connector.connect()
            for tp in tproxies:
                self._log.debug("Generating chain and rules for tproxy %s.", tp.name)

                name, rules = mark_chain(tp)
                self._add_chain(conn, name)
                for body in rules:
                    self._add_rule(conn, name, body)

                name, rules = tproxy_chain(tp)
                self._add_chain(conn, name)
                for body in rules:
                    self._add_rule(conn, name, body)
                conn.add(
                    f"add element {TABLE} {MARK_TPROXY_MAP} "
                    f"{{ {tp.mark} : goto {quote_name(name)} }}"
                )

                if tp.dns_hijack is not None:
                    name, rules = dns_chain(tp)
                    self._add_chain(conn, name)
                    for body in rules:
                        self._add_rule(conn, name, body, counter=False)
                    conn.add(
                        f"add element {TABLE} {MARK_DNS_MAP} "
                        f"{{ {tp.mark} : goto {quote_name(name)} }}"
                    )
            conn.flush()
        self._log.debug("Chain and rules added for tproxies %s.", names)
        self._dump()

    def add_routes(self, routes: list[Route]) -> None:
        """Map cgroups to their targets; route paths become relative to the cgroup root."""
        if not routes:
            return
        with _wrapped(f"add {len(routes)} routes to nftable"):
            conn = self._connector.connect()
            elements = dict(self._elements)
            added = []
            for route in routes:
                self._log.debug("Generating set element for %s (%s).", route.path, route.target)
                element = self._gen_element(route)
                added.append(element)
                elements[route.path] = element
            self._add_map_elements(conn, added)

            levels = sorted({path.count("/") for path in elements})
            self._log.debug("Existing levels: %s", levels)

            conn.add(f"flush chain {TABLE} {OUTPUT_MANGLE_CHAIN}")
            self._fill_output_mangle_chain(conn)
            for level in reversed(levels):
                self._add_rule(conn, OUTPUT_MANGLE_CHAIN, cgroup_level_rule(level))

            conn.flush()
            self._elements = elements
        self._log.info("New cgroup routes added to nft. size: %d", len(routes))
        self._dump()

    def remove_routes(self, paths: Iterable[str]) -> None:
        """Forget the cgroups at the given paths."""
        paths = list(paths)
        with _wrapped(f"remove {len(paths)} cgroup(s) from nftable"):
            remaining = dict(self._elements)
            removed = False
            for path in paths:
                relative = self._relative(path)
                self._log.info("Removing rule from nft for cgroup %s.", relative)
                if remaining.pop(relative, None) is None:
                    self._log.debug("Nothing to do with cgroup %s.", relative)
                    continue
                removed = True
            if not removed:
                return

            # nft resolves cgroup paths while parsing, so elements of cgroups
            # already gone cannot be named; rebuild the map from the survivors.
            alive = {}
            for relative, element in remaining.items():
                if os.path.isdir(element.full_path):
                    alive[relative] = element
                else:
                    self._log.debug("Cgroup %s vanished, dropping its element.", relative)

            conn = self._connector.connect()
            conn.add(f"flush map {TABLE} {CGROUP_MAP}")
            self._add_map_elements(conn, alive.values())
            conn.flush()
            self._elements = alive
        self._dump()

    def clear(self) -> None:
        """Delete the table; a table that is already gone is not an error."""
        if not self._table_created:
            return
        with _wrapped("remove nftable."):
            conn = self._connector.connect()
            conn.add(f"delete table {TABLE}")
            try:
                conn.flush()
            except NftError as exc:
                if not exc.not_found:
                    raise
                self._log.debug("Table %s not exist, nothing to remove.", NFT_TABLE_NAME)
            self._elements = {}
        self._dump()

    def release(self) -> None:
        """Release the underlying connector."""
        with _wrapped("release NFTManager"):
            self._connector.release()