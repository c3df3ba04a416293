"""Turns cgroup events into nft routes and keeps the policy routing in place."""

from __future__ import annotations

import asyncio
import errno
import ipaddress
import logging
import re
import subprocess
from collections.abc import AsyncIterable, Iterable, Iterator
from contextlib import contextmanager
from dataclasses import dataclass

from .config import Config, Rule
from .interfaces import NFTManagerProtocol
from .types import CGroupEvents, CgroupEventType, Route, Target, TargetOp

LOCAL_ROUTE_CIDRS = ("0.0.0.0/0", "0::0/0")
MARK_CHAIN_SUFFIX = "-MARK"
IP_BINARY = "ip"
_EEXIST_TEXT = "File exists"

_LOG = logging.getLogger(__name__)


class RouteManagerError(Exception):
    """Setting up or updating routes failed."""


@contextmanager
def _wrapped(action: str) -> Iterator[None]:
    try:
        yield
    except RouteManagerError as exc:
        raise RouteManagerError(f"{action}: {exc}") from exc
    except Exception as exc:
        raise RouteManagerError(f"{action}: {exc}") from exc


def _family_flag(family: int) -> str:
    if family not in (4, 6):
        raise ValueError(f"unsupported address family {family!r}")
    return f"-{family}"


class IpRouting:
    """Policy rules and routes managed through the ``ip`` command."""

    def __init__(self, ip: str = IP_BINARY):
        self._ip = ip

    def _run(self, *args: str) -> None:
        command = [self._ip, *args]
        try:
            result = subprocess.run(command, capture_output=True, text=True, check=False)
        except OSError as exc:
            raise RouteManagerError(f"cannot run {self._ip}: {exc}") from exc
        if result.returncode == 0:
            return
        stderr = (result.stderr or "").strip()
        if _EEXIST_TEXT in stderr:
            raise FileExistsError(errno.EEXIST, stderr)
        raise RouteManagerError(f"{' '.join(command)} failed: {stderr}")

    def add_rule(self, mark: int, table: int, family: int) -> None:
        """ip rule add fwmark <mark> lookup <table>"""
        self._run(_family_flag(family), "rule", "add", "fwmark", str(mark), "lookup", str(table))

    def delete_rule(self, mark: int, table: int, family: int) -> None:
        """ip rule del fwmark <mark> lookup <table>"""
        self._run(_family_flag(family), "rule", "del", "fwmark", str(mark), "lookup", str(table))

    def _route(self, action: str, cidr: str, table: int) -> None:
        family = ipaddress.ip_network(cidr).version
        self._run(
            _family_flag(family), "route", action, "local", cidr, "dev", "lo", "table", str(table)
        )

    def add_local_route(self, cidr: str, table: int) -> None:
        """ip route add local <cidr> dev lo table <table>"""
        self._route("add", cidr, table)

    def delete_local_route(self, cidr: str, table: int) -> None:
        """ip route del local <cidr> dev lo table <table>"""
        self._route("del", cidr, table)


@dataclass(frozen=True)
class _Matcher:
    pattern: re.Pattern[str]
    target: Target
    rule: Rule


def _join_errors(errors: list[Exception]) -> BaseException | None:
    if not errors:
        return None
    if len(errors) == 1:
        return errors[0]
    return ExceptionGroup("handle cgroup events", errors)


class RouteManager:
    """Routes traffic of cgroups to the targets chosen by the configured rules."""

    def __init__(
        self,
        nft: NFTManagerProtocol | None,
        config: Config | None,
        events: AsyncIterable[CGroupEvents] | None = None,
        logger: logging.Logger | None = None,
        routing: IpRouting | None = None,
    ):
        if nft is None:
            raise RouteManagerError("nft manager is missing.")
        if config is None:
            raise RouteManagerError("config is missing.")
        self._nft = nft
        self._cfg = config
        self._events = events
        self._log = logger or _LOG
        self._routing = routing if routing is not None else IpRouting()
        with _wrapped("create the nftable rule manager"):
            self._matchers = [self._compile(rule) for rule in config.rules]
        self._rules: list[tuple[int, int, int]] = []
        self._routes: list[str] = []
        self._log.debug("Create a new route manager.")

    def _compile(self, rule: Rule) -> _Matcher:
        pattern = re.compile(rule.match)
        if rule.direct:
            target = Target(TargetOp.DIRECT)
        elif rule.drop:
            target = Target(TargetOp.DROP)
        elif rule.tproxy:
            tproxy = self._cfg.tproxies.get(rule.tproxy)
            if tproxy is None:
                raise RouteManagerError(f"unknown tproxy {rule.tproxy!r} in {rule.match!r} rule")
            target = Target(TargetOp.TPROXY, tproxy.name + MARK_CHAIN_SUFFIX)
        else:
            raise RouteManagerError(f"rule {rule.match!r} has no action")
        return _Matcher(pattern, target, rule)

    def match(self, path: str) -> Target:
        """Return the target of the first rule matching ``path``, or a no-op target."""
        for matcher in self._matchers:
            if matcher.pattern.search(path):
                self._log.debug("Rule found for cgroup %s: %s", path, matcher.rule)
                return matcher.target
        return Target()

    def handle_new_cgroups(self, paths: Iterable[str]) -> None:
        """Route newly created cgroups according to the rules."""
        paths = list(paths)
        with _wrapped(f"handle {len(paths)} new cgroups"):
            routes = []
            for path in paths:
                self._log.debug("Checking route for cgroup %s.", path)
                target = self.match(path)
                if target.op is TargetOp.NOOP:
                    self._log.debug("No rule match cgroup %s.", path)
                    continue
                routes.append(Route(path=path, target=target))
            self._nft.add_routes(routes)

    def handle_delete_cgroups(self, paths: Iterable[str]) -> None:
        """Forget routes of removed cgroups."""
        paths = list(paths)
        with _wrapped("handle delete cgroup"):
            self._log.debug("Handling delete cgroups. size: %d", len(paths))
            self._nft.remove_routes(paths)

    def _add_rule_with_family(self, mark: int, family: int) -> None:
        table = self._cfg.route_table
        try:
            self._routing.add_rule(mark, table, family)
        except FileExistsError:
            self._log.info("Rule already exists.")
        self._rules.append((mark, table, family))

    def _add_rule(self, mark: int) -> None:
        with _wrapped("add route rule"):
            self._log.info("Adding route rule. mark: %d, table: %d", mark, self._cfg.route_table)
            self._add_rule_with_family(mark, 4)
            try:
                self._add_rule_with_family(mark, 6)
            except Exception as exc:
                self._log.error(
                    "Failed to add ipv6 rule. mark: %d, table: %d, error: %s",
                    mark,
                    self._cfg.route_table,
                    exc,
                )

    def _add_route(self) -> None:
        with _wrapped("add route"):
            self._log.info("Adding route. table: %d", self._cfg.route_table)
            for cidr in LOCAL_ROUTE_CIDRS:
                self._routing.add_local_route(cidr, self._cfg.route_table)
                self._routes.append(cidr)

    def _remove_route(self) -> None:
        for cidr in self._routes:
            try:
                self._routing.delete_local_route(cidr, self._cfg.route_table)
            except Exception as exc:
                self._log.warning("Failed to remove route %s: %s", cidr, exc)
        self._routes = []

    def _initialize_nftable_rules(self) -> None:
        with _wrapped("initializing nftable rules"):
            self._nft.init_structure()
            self._nft.add_chain_and_rules_for_tproxies(list(self._cfg.tproxies.values()))
            for tproxy in self._cfg.tproxies.values():
                self._add_rule(tproxy.mark)

    def _remove_nftable_rules(self) -> None:
        try:
            self._nft.clear()
        except Exception as exc:
            self._log.error("Failed to delete nft table: %s", exc)
        for mark, table, family in self._rules:
            try:
                self._routing.delete_rule(mark, table, family)
            except Exception as exc:
                self._log.error(
                    "Failed to delete route rule (mark %d, table %d, IPv%d): %s",
                    mark,
                    table,
                    family,
                    exc,
                )
        self._rules = []
        try:
            self._nft.release()
        except Exception as exc:
            self._log.error("Failed to release NFTManager: %s", exc)

    def _handle_batch(self, batch: CGroupEvents) -> BaseException | None:
        new = [e.path for e in batch.events if e.event_type is CgroupEventType.NEW]
        deleted = [e.path for e in batch.events if e.event_type is CgroupEventType.DELETE]
        errors: list[Exception] = []
        try:
            self.handle_new_cgroups(new)
        except RouteManagerError as exc:
            errors.append(exc)
        try:
            self.handle_delete_cgroups(deleted)
        except RouteManagerError as exc:
            errors.append(exc)
        return _join_errors(errors)

    async def run_route_manager(self) -> None:
        """Set up routing, then apply cgroup events until cancelled; clean up on exit."""
        try:
            with _wrapped("running route manager"):
                self._add_route()
            try:
                with _wrapped("running route manager"):
                    self._initialize_nftable_rules()
                if self._events is not None:
                    async for batch in self._events:
                        error = await asyncio.to_thread(self._handle_batch, batch)
                        if batch.result is not None:
                            if not batch.result.done():
                                batch.result.set_result(error)
                        elif error is not None:
                            self._log.error("Failed to handle cgroup events: %s", error)
                await asyncio.Event().wait()
            finally:
                self._remove_nftable_rules()
        finally:
            self._remove_route()