"""Protocols connecting the components of the proxy manager."""

from __future__ import annotations

from collections.abc import AsyncIterator, Iterable
from typing import Any, Protocol, runtime_checkable

from .config import TProxy
from .types import CGroupEvents, Route


@runtime_checkable
class CGroupMonitor(Protocol):
    """Watches the cgroup file system and publishes batches of events."""

    def events(self) -> AsyncIterator[CGroupEvents]:
        """Iterate over event batches until the monitor stops."""

    async def run_cgroup_monitor(self) -> None:
        """Watch the file system until cancelled."""


@runtime_checkable
class CGTProxyRunner(Protocol):
    """The assembled service."""

    async def run_cgtproxy(self) -> None:
        """Run every component until one fails or the task is cancelled."""


@runtime_checkable
class NetlinkConnector(Protocol):
    """Hands out connections used to change the nft ruleset."""

    def connect(self) -> Any:
        """Return a connection ready to queue statements."""

    def release(self) -> None:
        """Free whatever the connector keeps open."""


@runtime_checkable
class NFTManagerProtocol(Protocol):
    """Maintains the nft table that routes cgroup traffic."""

    def add_chain_and_rules_for_tproxies(self, tproxies: Iterable[TProxy]) -> None:
        """Create the chains for the given TPROXY servers."""

    def add_routes(self, routes: list[Route]) -> None:
        """Map cgroups to their targets."""

    def clear(self) -> None:
        """Remove the table."""

    def init_structure(self) -> None:
        """Create the table with its sets, maps and base chains."""

    def release(self) -> None:
        """Release the underlying connector."""

    def remove_routes(self, paths: Iterable[str]) -> None:
        """Forget the cgroups at the given paths."""


@runtime_checkable
class RouteManagerProtocol(Protocol):
    """Turns cgroup events into routes."""

    async def run_route_manager(self) -> None:
        """Consume cgroup events until they end or the task is cancelled."""